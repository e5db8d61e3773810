"""
LocalLedger — in-memory ledger used as transport and slot source.

Transactions run their instructions in order. Any ProgramError aborts the
transaction and restores every account to its pre-transaction state, so a
failed transaction leaves nothing observable behind except its logs.

Sysvar accounts (clock, slot hashes, instructions) are materialised for each
instruction from ledger state; they are always read-only.
"""

import hashlib
import logging
import struct
from dataclasses import dataclass, field, replace
from typing import Callable, Dict, List, Optional, Tuple

from riskoracle.chain.ed25519 import verify_ed25519_instruction
from riskoracle.chain.sysvars import Clock, SlotHashes, serialize_instructions
from riskoracle.chain.types import (
    CLOCK_SYSVAR_ID,
    ED25519_PROGRAM_ID,
    INSTRUCTIONS_SYSVAR_ID,
    SLOT_HASHES_SYSVAR_ID,
    SYSVAR_OWNER_ID,
    Account,
    AccountInfo,
    Instruction,
    Transaction,
    pubkey_str,
)
from riskoracle.errors import AccountAccessError, ProgramError

log = logging.getLogger("risk-oracle.ledger")

SYSTEM_PROGRAM_ID = bytes(32)
SLOT_DURATION_MS = 400

_SYSVARS = (CLOCK_SYSVAR_ID, SLOT_HASHES_SYSVAR_ID, INSTRUCTIONS_SYSVAR_ID)


class ProgramContext:
    """Per-instruction handle a program uses for logs and return data."""

    def __init__(self, program_id: bytes, index: int, logs: List[str]):
        self.program_id = program_id
        self.index = index
        self._logs = logs
        self.return_data: Optional[bytes] = None

    def log(self, message: str) -> None:
        self._logs.append(f"Program log: {message}")

    def set_return_data(self, data: bytes) -> None:
        self.return_data = bytes(data)


Program = Callable[[bytes, List[AccountInfo], bytes, ProgramContext], None]


@dataclass
class TransactionReceipt:
    signature: str
    slot: int
    ok: bool
    error: Optional[ProgramError] = None
    logs: List[str] = field(default_factory=list)
    return_data: Optional[bytes] = None


class LocalLedger:
    def __init__(self, slot: int = 1000, genesis_timestamp: int = 1_700_000_000):
        self.accounts: Dict[bytes, Account] = {}
        self.programs: Dict[bytes, Program] = {}
        self.genesis_timestamp = genesis_timestamp
        self.slot = 0
        self.slot_hashes = SlotHashes()
        self._tx_count = 0
        self._last_hash = hashlib.sha256(b"genesis").digest()
        self.advance(slot)

    # -------------------------
    # State
    # -------------------------

    def set_account(self, key: bytes, owner: bytes, data: bytes = b"", lamports: int = 0) -> None:
        self.accounts[bytes(key)] = Account(owner=bytes(owner), data=bytes(data), lamports=lamports)

    def get_account(self, key: bytes) -> Optional[Account]:
        return self.accounts.get(bytes(key))

    def register_program(self, program_id: bytes, program: Program) -> None:
        self.programs[bytes(program_id)] = program

    def advance(self, slots: int = 1) -> None:
        """Close `slots` slots, recording each one's hash in the slot history."""
        for _ in range(slots):
            self._last_hash = hashlib.sha256(self._last_hash + struct.pack("<Q", self.slot)).digest()
            self.slot_hashes.push(self.slot, self._last_hash)
            self.slot += 1

    def clock(self) -> Clock:
        return Clock(
            slot=self.slot,
            epoch_start_timestamp=self.genesis_timestamp,
            epoch=self.slot // 432_000,
            leader_schedule_epoch=self.slot // 432_000 + 1,
            unix_timestamp=self.genesis_timestamp + self.slot * SLOT_DURATION_MS // 1000,
        )

    async def latest_slot_hash(self) -> Tuple[int, bytes]:
        return self.slot_hashes.newest()

    # -------------------------
    # Transport
    # -------------------------

    def send_transaction(self, tx: Transaction) -> TransactionReceipt:
        self._tx_count += 1
        signature = pubkey_str(hashlib.sha256(
            struct.pack("<QQ", self.slot, self._tx_count)
            + b"".join(ix.program_id + ix.data for ix in tx.instructions)
        ).digest())

        snapshot = {k: replace(a) for k, a in self.accounts.items()}
        logs: List[str] = []
        return_data = None
        try:
            for index, ix in enumerate(tx.instructions):
                data = self._execute(tx, index, ix, logs)
                if data is not None:
                    return_data = data
        except ProgramError as e:
            self.accounts = snapshot
            log.info(f"Transaction {signature[:16]}... failed: {e}")
            return TransactionReceipt(signature, self.slot, ok=False, error=e, logs=logs)
        except Exception:
            self.accounts = snapshot
            raise

        log.info(f"Transaction {signature[:16]}... confirmed at slot {self.slot}")
        return TransactionReceipt(signature, self.slot, ok=True, logs=logs, return_data=return_data)

    def _execute(self, tx: Transaction, index: int, ix: Instruction, logs: List[str]):
        name = pubkey_str(ix.program_id)
        logs.append(f"Program {name} invoke [1]")

        if ix.program_id == ED25519_PROGRAM_ID:
            try:
                verify_ed25519_instruction(ix.data, lambda i: tx.instructions[i].data)
            except ProgramError as e:
                logs.append(f"Program {name} failed: {e}")
                raise
            logs.append(f"Program {name} success")
            return None

        program = self.programs.get(ix.program_id)
        if program is None:
            raise ProgramError(f"program {name} is not deployed")

        infos: Dict[bytes, AccountInfo] = {}
        ordered = []
        for meta in ix.accounts:
            info = infos.get(meta.pubkey)
            if info is None:
                info = self._account_info(tx, index, meta)
                infos[meta.pubkey] = info
            else:
                info.is_writable = info.is_writable or meta.is_writable
                info.is_signer = info.is_signer or meta.is_signer
            ordered.append(info)
        before = {k: bytes(i.data) for k, i in infos.items()}

        ctx = ProgramContext(ix.program_id, index, logs)
        try:
            program(ix.program_id, ordered, ix.data, ctx)
            for key, info in infos.items():
                if bytes(info.data) == before[key]:
                    continue
                if not info.is_writable or key in _SYSVARS:
                    raise AccountAccessError(f"instruction modified read-only account {pubkey_str(key)}")
                stored = self.accounts.get(key)
                if stored is None:
                    self.accounts[key] = Account(owner=info.owner, data=bytes(info.data))
                else:
                    stored.data = bytes(info.data)
        except ProgramError as e:
            logs.append(f"Program {name} failed: {e}")
            raise

        logs.append(f"Program {name} success")
        return ctx.return_data

    def _account_info(self, tx: Transaction, index: int, meta) -> AccountInfo:
        key = meta.pubkey
        if key == CLOCK_SYSVAR_ID:
            return AccountInfo(key, SYSVAR_OWNER_ID, bytearray(self.clock().to_bytes()))
        if key == SLOT_HASHES_SYSVAR_ID:
            return AccountInfo(key, SYSVAR_OWNER_ID, bytearray(self.slot_hashes.to_bytes()))
        if key == INSTRUCTIONS_SYSVAR_ID:
            data = serialize_instructions(tx.instructions, index)
            return AccountInfo(key, SYSVAR_OWNER_ID, bytearray(data))

        stored = self.accounts.get(key)
        if stored is None:
            return AccountInfo(key, SYSTEM_PROGRAM_ID, bytearray(), meta.is_signer, meta.is_writable)
        return AccountInfo(key, stored.owner, bytearray(stored.data), meta.is_signer, meta.is_writable)
