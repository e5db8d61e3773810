"""
Oracle queue account: the set of keys currently allowed to sign attestations.

  discriminator[8] | u32 LE key count | key[32]*
"""

import hashlib
import struct
from dataclasses import dataclass
from typing import Tuple

from riskoracle.errors import UnauthorizedSignerError

QUEUE_DISCRIMINATOR = hashlib.sha256(b"account:OracleQueue").digest()[:8]


@dataclass(frozen=True)
class OracleQueue:
    oracle_keys: Tuple[bytes, ...] = ()

    def is_member(self, key: bytes) -> bool:
        return bytes(key) in self.oracle_keys

    def to_bytes(self) -> bytes:
        return (
            QUEUE_DISCRIMINATOR
            + struct.pack("<I", len(self.oracle_keys))
            + b"".join(self.oracle_keys)
        )

    @classmethod
    def from_bytes(cls, data: bytes) -> "OracleQueue":
        if len(data) < 12 or bytes(data[:8]) != QUEUE_DISCRIMINATOR:
            raise UnauthorizedSignerError("account is not an oracle queue")
        (count,) = struct.unpack_from("<I", data, 8)
        if len(data) < 12 + 32 * count:
            raise UnauthorizedSignerError("oracle queue account data truncated")
        keys = tuple(bytes(data[12 + 32 * i:44 + 32 * i]) for i in range(count))
        return cls(keys)

    def with_oracle(self, key: bytes) -> "OracleQueue":
        if self.is_member(key):
            return self
        return OracleQueue(self.oracle_keys + (bytes(key),))

    def without_oracle(self, key: bytes) -> "OracleQueue":
        return OracleQueue(tuple(k for k in self.oracle_keys if k != bytes(key)))
