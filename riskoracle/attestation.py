"""
Oracle attestations and quotes.

Each oracle signs one 88-byte message with its Ed25519 key:

  feed_id[32] | value i128 LE [16] | slot u64 LE [8] | slot_hash[32]

`value` is fixed-point with 18 decimal places, so every party reads the
same number. (slot, slot_hash) is the freshness marker.
"""

import base64
import struct
from dataclasses import dataclass, field
from decimal import ROUND_HALF_EVEN, Context, Decimal
from typing import List, Sequence

from nacl.exceptions import CryptoError
from nacl.signing import SigningKey, VerifyKey

VALUE_DECIMALS = 18
MESSAGE_LEN = 88
SIGNATURE_LEN = 64

_SCALE = Decimal(10) ** VALUE_DECIMALS
_I128_MIN = -(1 << 127)
_I128_MAX = (1 << 127) - 1
# wide enough for any i128 at 18 places; the default 28 digits would round
_CTX = Context(prec=80)


def to_fixed(value: Decimal) -> int:
    scaled = _CTX.multiply(Decimal(value), _SCALE).to_integral_value(
        rounding=ROUND_HALF_EVEN, context=_CTX
    )
    raw = int(scaled)
    if raw < _I128_MIN or raw > _I128_MAX:
        raise ValueError(f"value {value} does not fit a 128-bit fixed-point number")
    return raw


def from_fixed(raw: int) -> Decimal:
    return _CTX.divide(Decimal(raw), _SCALE)


def quantize(value: Decimal) -> Decimal:
    """Round to the precision that survives a trip through the signed message."""
    return from_fixed(to_fixed(value))


def median(values: Sequence[Decimal]) -> Decimal:
    ordered = sorted(values)
    if not ordered:
        raise ValueError("median of no values")
    mid = len(ordered) // 2
    if len(ordered) % 2:
        return ordered[mid]
    return quantize(_CTX.divide(_CTX.add(ordered[mid - 1], ordered[mid]), 2))


def encode_message(feed_id: bytes, value: Decimal, slot: int, slot_hash: bytes) -> bytes:
    if len(feed_id) != 32 or len(slot_hash) != 32:
        raise ValueError("feed_id and slot_hash must be 32 bytes")
    return (
        bytes(feed_id)
        + to_fixed(value).to_bytes(16, "little", signed=True)
        + struct.pack("<Q", slot)
        + bytes(slot_hash)
    )


def decode_message(message: bytes):
    """Return (feed_id, value, slot, slot_hash)."""
    if len(message) != MESSAGE_LEN:
        raise ValueError(f"attestation message must be {MESSAGE_LEN} bytes, got {len(message)}")
    feed_id = bytes(message[0:32])
    value = from_fixed(int.from_bytes(message[32:48], "little", signed=True))
    (slot,) = struct.unpack_from("<Q", message, 48)
    slot_hash = bytes(message[56:88])
    return feed_id, value, slot, slot_hash


@dataclass(frozen=True)
class OracleAttestation:
    oracle_pubkey: bytes
    feed_id: bytes
    value: Decimal
    slot: int
    slot_hash: bytes
    signature: bytes

    @property
    def message(self) -> bytes:
        return encode_message(self.feed_id, self.value, self.slot, self.slot_hash)

    def verify(self) -> bool:
        try:
            VerifyKey(self.oracle_pubkey).verify(self.message, self.signature)
            return True
        except (CryptoError, ValueError, TypeError, ArithmeticError, struct.error):
            return False

    def to_dict(self) -> dict:
        return {
            "pubkey": self.oracle_pubkey.hex(),
            "feed_id": self.feed_id.hex(),
            "value": str(self.value),
            "slot": self.slot,
            "slot_hash": self.slot_hash.hex(),
            "signature": base64.b64encode(self.signature).decode(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "OracleAttestation":
        """Parse an attestation from an untrusted peer; any defect is a ValueError."""
        try:
            value = Decimal(str(data["value"]))
            if not value.is_finite():
                raise ValueError(f"attestation value is not finite: {value}")
            to_fixed(value)
        except ArithmeticError:
            raise ValueError(f"attestation value is not a fixed-point number: {data['value']!r}")

        slot = data["slot"]
        if isinstance(slot, bool) or not isinstance(slot, int) or not 0 <= slot < 1 << 64:
            raise ValueError(f"attestation slot out of range: {slot!r}")

        oracle_pubkey = bytes.fromhex(data["pubkey"])
        feed_id = bytes.fromhex(data["feed_id"])
        slot_hash = bytes.fromhex(data["slot_hash"])
        signature = base64.b64decode(data["signature"], validate=True)
        if len(oracle_pubkey) != 32 or len(feed_id) != 32 or len(slot_hash) != 32:
            raise ValueError("attestation pubkey, feed_id and slot_hash must be 32 bytes")
        if len(signature) != SIGNATURE_LEN:
            raise ValueError(f"attestation signature must be {SIGNATURE_LEN} bytes, got {len(signature)}")

        return cls(
            oracle_pubkey=oracle_pubkey,
            feed_id=feed_id,
            value=value,
            slot=slot,
            slot_hash=slot_hash,
            signature=signature,
        )


def sign_attestation(
    signing_key: SigningKey,
    feed_id: bytes,
    value: Decimal,
    slot: int,
    slot_hash: bytes,
) -> OracleAttestation:
    value = quantize(value)
    message = encode_message(feed_id, value, slot, slot_hash)
    signed = signing_key.sign(message)
    return OracleAttestation(
        oracle_pubkey=bytes(signing_key.verify_key),
        feed_id=bytes(feed_id),
        value=value,
        slot=slot,
        slot_hash=bytes(slot_hash),
        signature=signed.signature,
    )


@dataclass(frozen=True)
class Quote:
    """Consensus value for one feed plus the attestations chosen to carry it on-chain."""

    feed_id: bytes
    value: Decimal
    slot: int
    slot_hash: bytes
    attestations: List[OracleAttestation] = field(default_factory=list)
    num_samples: int = 0

    @property
    def signers(self) -> List[bytes]:
        return [a.oracle_pubkey for a in self.attestations]
