"""
Sysvar account codecs: Clock, SlotHashes, Instructions.

Layouts follow the Solana runtime (little-endian):

  Clock         slot u64 | epoch_start_timestamp i64 | epoch u64 |
                leader_schedule_epoch u64 | unix_timestamp i64
  SlotHashes    u64 count | (slot u64 | hash[32])*        newest first
  Instructions  u16 count | u16 offset* | instruction* | u16 current index
                instruction = u16 n_accounts | (u8 flags | key[32])* |
                              program_id[32] | u16 data_len | data
"""

import struct
from dataclasses import dataclass
from typing import List, Sequence, Tuple

from riskoracle.chain.types import AccountMeta, Instruction
from riskoracle.errors import MalformedQuoteError

MAX_SLOT_HASHES = 512

_CLOCK = struct.Struct("<QqQQq")
_SIGNER = 0b01
_WRITABLE = 0b10


@dataclass(frozen=True)
class Clock:
    slot: int
    epoch_start_timestamp: int = 0
    epoch: int = 0
    leader_schedule_epoch: int = 0
    unix_timestamp: int = 0

    def to_bytes(self) -> bytes:
        return _CLOCK.pack(
            self.slot,
            self.epoch_start_timestamp,
            self.epoch,
            self.leader_schedule_epoch,
            self.unix_timestamp,
        )

    @classmethod
    def from_bytes(cls, data: bytes) -> "Clock":
        if len(data) < _CLOCK.size:
            raise MalformedQuoteError("clock sysvar data too short")
        return cls(*_CLOCK.unpack_from(data))


def get_slot(clock_data: bytes) -> int:
    return Clock.from_bytes(clock_data).slot


class SlotHashes:
    """Recent (slot, hash) history, newest first."""

    def __init__(self, entries: Sequence[Tuple[int, bytes]] = ()):
        self.entries: List[Tuple[int, bytes]] = list(entries)[:MAX_SLOT_HASHES]

    def push(self, slot: int, hash_: bytes) -> None:
        self.entries.insert(0, (slot, bytes(hash_)))
        del self.entries[MAX_SLOT_HASHES:]

    def get(self, slot: int):
        for s, h in self.entries:
            if s == slot:
                return h
        return None

    def newest(self) -> Tuple[int, bytes]:
        if not self.entries:
            raise LookupError("slot hash history is empty")
        return self.entries[0]

    def to_bytes(self) -> bytes:
        out = struct.pack("<Q", len(self.entries))
        for slot, h in self.entries:
            out += struct.pack("<Q", slot) + h
        return out

    @classmethod
    def from_bytes(cls, data: bytes) -> "SlotHashes":
        if len(data) < 8:
            raise MalformedQuoteError("slot hashes sysvar data too short")
        (count,) = struct.unpack_from("<Q", data, 0)
        if len(data) < 8 + count * 40:
            raise MalformedQuoteError("slot hashes sysvar data truncated")
        entries = []
        for i in range(count):
            off = 8 + i * 40
            (slot,) = struct.unpack_from("<Q", data, off)
            entries.append((slot, bytes(data[off + 8:off + 40])))
        return cls(entries)


# -------------------------
# Instructions sysvar
# -------------------------

def serialize_instructions(instructions: Sequence[Instruction], current_index: int) -> bytes:
    bodies = []
    for ix in instructions:
        body = struct.pack("<H", len(ix.accounts))
        for meta in ix.accounts:
            flags = (_SIGNER if meta.is_signer else 0) | (_WRITABLE if meta.is_writable else 0)
            body += struct.pack("<B", flags) + meta.pubkey
        body += ix.program_id + struct.pack("<H", len(ix.data)) + ix.data
        bodies.append(body)

    header_len = 2 + 2 * len(bodies)
    offsets = []
    pos = header_len
    for body in bodies:
        offsets.append(pos)
        pos += len(body)

    out = struct.pack("<H", len(bodies))
    out += b"".join(struct.pack("<H", o) for o in offsets)
    out += b"".join(bodies)
    out += struct.pack("<H", current_index)
    return out


def load_current_index(data: bytes) -> int:
    if len(data) < 4:
        raise MalformedQuoteError("instructions sysvar data too short")
    (index,) = struct.unpack_from("<H", data, len(data) - 2)
    return index


def load_instruction_count(data: bytes) -> int:
    if len(data) < 2:
        raise MalformedQuoteError("instructions sysvar data too short")
    return struct.unpack_from("<H", data, 0)[0]


def load_instruction_at(data: bytes, index: int) -> Instruction:
    """Decode the index-th instruction of the executing transaction."""
    count = load_instruction_count(data)
    if index < 0 or index >= count:
        raise MalformedQuoteError(f"no instruction at index {index} (transaction has {count})")
    try:
        (pos,) = struct.unpack_from("<H", data, 2 + 2 * index)
        (n_accounts,) = struct.unpack_from("<H", data, pos)
        pos += 2
        metas = []
        for _ in range(n_accounts):
            flags = data[pos]
            key = bytes(data[pos + 1:pos + 33])
            if len(key) != 32:
                raise MalformedQuoteError("truncated account key")
            metas.append(AccountMeta(key, bool(flags & _SIGNER), bool(flags & _WRITABLE)))
            pos += 33
        program_id = bytes(data[pos:pos + 32])
        pos += 32
        (data_len,) = struct.unpack_from("<H", data, pos)
        pos += 2
        ix_data = bytes(data[pos:pos + data_len])
    except (struct.error, IndexError):
        raise MalformedQuoteError(f"instruction {index} is truncated")
    if len(program_id) != 32 or len(ix_data) != data_len:
        raise MalformedQuoteError(f"instruction {index} is truncated")
    return Instruction(program_id=program_id, accounts=tuple(metas), data=ix_data)
