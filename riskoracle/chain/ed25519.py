"""
Ed25519 signature-verification instruction (generic precompile layout).

  u8 num_signatures | u8 padding |
  offsets[num_signatures], 14 bytes each, u16 LE:
      signature_offset, signature_instruction_index,
      public_key_offset, public_key_instruction_index,
      message_data_offset, message_data_size, message_instruction_index
  payload ...

An instruction index of 0xFFFF means "this instruction's own data".
"""

import struct
from dataclasses import dataclass
from typing import Callable, List, Sequence, Tuple

from nacl.exceptions import CryptoError
from nacl.signing import VerifyKey

from riskoracle.chain.types import ED25519_PROGRAM_ID, Instruction
from riskoracle.errors import MalformedQuoteError, SignatureVerificationError

CURRENT_INSTRUCTION = 0xFFFF
PUBKEY_LEN = 32
SIGNATURE_LEN = 64

_HEADER = 2
_OFFSETS = struct.Struct("<HHHHHHH")


@dataclass(frozen=True)
class SignatureOffsets:
    signature_offset: int
    signature_instruction_index: int
    public_key_offset: int
    public_key_instruction_index: int
    message_data_offset: int
    message_data_size: int
    message_instruction_index: int

    @property
    def instruction_indexes(self) -> Tuple[int, int, int]:
        return (
            self.signature_instruction_index,
            self.public_key_instruction_index,
            self.message_instruction_index,
        )


@dataclass(frozen=True)
class SignedEntry:
    pubkey: bytes
    signature: bytes
    message: bytes


def build_ed25519_instruction(
    entries: Sequence[Tuple[bytes, bytes, bytes]],
    instruction_index: int = CURRENT_INSTRUCTION,
) -> Instruction:
    """entries: (pubkey, signature, message) triples."""
    if not entries:
        raise ValueError("at least one signature is required")
    if len(entries) > 255:
        raise ValueError("at most 255 signatures fit one instruction")

    offsets = b""
    payload = b""
    pos = _HEADER + _OFFSETS.size * len(entries)
    for pubkey, signature, message in entries:
        if len(pubkey) != PUBKEY_LEN or len(signature) != SIGNATURE_LEN:
            raise ValueError("bad pubkey or signature length")
        pk_off = pos
        sig_off = pk_off + PUBKEY_LEN
        msg_off = sig_off + SIGNATURE_LEN
        offsets += _OFFSETS.pack(
            sig_off, instruction_index,
            pk_off, instruction_index,
            msg_off, len(message), instruction_index,
        )
        payload += pubkey + signature + message
        pos = msg_off + len(message)

    data = struct.pack("<BB", len(entries), 0) + offsets + payload
    if len(data) > 0xFFFF:
        raise ValueError("ed25519 instruction data exceeds 65535 bytes")
    return Instruction(program_id=ED25519_PROGRAM_ID, accounts=(), data=data)


def parse_offsets(data: bytes) -> List[SignatureOffsets]:
    if len(data) < _HEADER:
        raise MalformedQuoteError("ed25519 instruction data too short")
    count = data[0]
    if count == 0:
        raise MalformedQuoteError("ed25519 instruction carries no signatures")
    end = _HEADER + _OFFSETS.size * count
    if len(data) < end:
        raise MalformedQuoteError("ed25519 offsets truncated")
    return [
        SignatureOffsets(*_OFFSETS.unpack_from(data, _HEADER + i * _OFFSETS.size))
        for i in range(count)
    ]


def _slice(data: bytes, offset: int, size: int, what: str) -> bytes:
    if offset + size > len(data):
        raise MalformedQuoteError(f"ed25519 {what} out of bounds")
    return bytes(data[offset:offset + size])


def parse_ed25519_instruction(
    data: bytes,
    own_index: int,
) -> List[SignedEntry]:
    """Extract (pubkey, signature, message) from an instruction that references only itself.

    own_index is the instruction's position in the transaction; offsets may
    point at it either explicitly or with the 0xFFFF marker.
    """
    entries = []
    for off in parse_offsets(data):
        for idx in off.instruction_indexes:
            if idx not in (own_index, CURRENT_INSTRUCTION):
                raise MalformedQuoteError(
                    f"ed25519 offsets reference instruction {idx}, expected {own_index}"
                )
        entries.append(SignedEntry(
            pubkey=_slice(data, off.public_key_offset, PUBKEY_LEN, "public key"),
            signature=_slice(data, off.signature_offset, SIGNATURE_LEN, "signature"),
            message=_slice(data, off.message_data_offset, off.message_data_size, "message"),
        ))
    return entries


def verify_ed25519_instruction(
    data: bytes,
    load_instruction_data: Callable[[int], bytes],
) -> int:
    """Precompile semantics: every referenced signature must verify.

    load_instruction_data(index) returns another instruction's data; 0xFFFF
    resolves to `data` itself. Returns the number of verified signatures.
    """
    try:
        offsets = parse_offsets(data)
    except MalformedQuoteError as e:
        raise SignatureVerificationError(e.message)

    def source(index: int) -> bytes:
        if index == CURRENT_INSTRUCTION:
            return data
        try:
            return load_instruction_data(index)
        except IndexError:
            raise SignatureVerificationError(f"instruction index {index} out of range")

    for off in offsets:
        try:
            pubkey = _slice(source(off.public_key_instruction_index), off.public_key_offset, PUBKEY_LEN, "public key")
            signature = _slice(source(off.signature_instruction_index), off.signature_offset, SIGNATURE_LEN, "signature")
            message = _slice(source(off.message_instruction_index), off.message_data_offset, off.message_data_size, "message")
        except MalformedQuoteError as e:
            raise SignatureVerificationError(e.message)
        try:
            VerifyKey(pubkey).verify(message, signature)
        except (CryptoError, ValueError) as e:
            raise SignatureVerificationError(f"invalid ed25519 signature: {e}")
    return len(offsets)
