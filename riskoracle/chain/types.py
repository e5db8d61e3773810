"""
Ledger primitives: public keys, instructions, transactions, accounts.

Public keys are raw 32-byte values; base58 is only their text form.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Union

import base58

PUBKEY_LEN = 32


def pubkey(value: Union[str, bytes]) -> bytes:
    """Normalise a base58 string or raw bytes into a 32-byte public key."""
    if isinstance(value, str):
        try:
            raw = base58.b58decode(value)
        except ValueError:
            raise ValueError(f"invalid base58 public key: {value!r}")
    else:
        raw = bytes(value)
    if len(raw) != PUBKEY_LEN:
        raise ValueError(f"public key must be {PUBKEY_LEN} bytes, got {len(raw)}")
    return raw


def pubkey_str(key: bytes) -> str:
    return base58.b58encode(bytes(key)).decode("ascii")


# Well-known ids
CLOCK_SYSVAR_ID = pubkey("SysvarC1ock11111111111111111111111111111111")
SLOT_HASHES_SYSVAR_ID = pubkey("SysvarS1otHashes111111111111111111111111111")
INSTRUCTIONS_SYSVAR_ID = pubkey("Sysvar1nstructions1111111111111111111111111")
ED25519_PROGRAM_ID = pubkey("Ed25519SigVerify111111111111111111111111111")
SYSVAR_OWNER_ID = pubkey("Sysvar1111111111111111111111111111111111111")


@dataclass(frozen=True)
class AccountMeta:
    pubkey: bytes
    is_signer: bool = False
    is_writable: bool = False


@dataclass(frozen=True)
class Instruction:
    program_id: bytes
    accounts: tuple = ()
    data: bytes = b""


@dataclass
class Transaction:
    instructions: List[Instruction] = field(default_factory=list)
    fee_payer: Optional[bytes] = None

    def add(self, *instructions: Instruction) -> "Transaction":
        self.instructions.extend(instructions)
        return self


@dataclass
class Account:
    """Stored ledger account."""

    owner: bytes
    data: bytes = b""
    lamports: int = 0


@dataclass
class AccountInfo:
    """An account as a program sees it during one instruction."""

    key: bytes
    owner: bytes
    data: bytearray
    is_signer: bool = False
    is_writable: bool = False
