"""
Quote verifier — the on-chain trust boundary.

  UNVERIFIED -> SIGNATURES_CHECKED -> FEED_MATCHED -> FRESHNESS_CHECKED -> VERIFIED
  any state  -> REJECTED

Signature validity is established by the Ed25519 program earlier in the same
transaction; this verifier only reads what that instruction carried. It reads
the queue, clock, slot hashes and instructions accounts and never writes.
Nothing is persisted between calls.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Optional, Tuple

from riskoracle.attestation import MESSAGE_LEN, decode_message, median, to_fixed
from riskoracle.chain.ed25519 import parse_ed25519_instruction
from riskoracle.chain.queue import OracleQueue
from riskoracle.chain.sysvars import (
    SlotHashes,
    get_slot,
    load_current_index,
    load_instruction_at,
    load_instruction_count,
)
from riskoracle.chain.types import (
    CLOCK_SYSVAR_ID,
    ED25519_PROGRAM_ID,
    INSTRUCTIONS_SYSVAR_ID,
    SLOT_HASHES_SYSVAR_ID,
    AccountInfo,
    pubkey_str,
)
from riskoracle.errors import (
    FeedMismatchError,
    MalformedQuoteError,
    ProgramError,
    StaleQuoteError,
    UnauthorizedSignerError,
)

log = logging.getLogger("risk-oracle.verifier")

DEFAULT_MAX_AGE_SLOTS = 50


class VerifierState(Enum):
    UNVERIFIED = "unverified"
    SIGNATURES_CHECKED = "signatures_checked"
    FEED_MATCHED = "feed_matched"
    FRESHNESS_CHECKED = "freshness_checked"
    VERIFIED = "verified"
    REJECTED = "rejected"


@dataclass(frozen=True)
class VerifiedQuote:
    feed_id: bytes
    value: Decimal
    slot: int
    slot_hash: bytes
    signers: Tuple[bytes, ...]

    @property
    def raw_value(self) -> int:
        return to_fixed(self.value)


@dataclass(frozen=True)
class VerificationResult:
    state: VerifierState
    quote: Optional[VerifiedQuote] = None
    error: Optional[ProgramError] = None

    @property
    def ok(self) -> bool:
        return self.state is VerifierState.VERIFIED


@dataclass(frozen=True)
class _Signed:
    pubkey: bytes
    feed_id: bytes
    value: Decimal
    slot: int
    slot_hash: bytes


class QuoteVerifier:
    """Builder-configured verifier; one instance per invocation.

        quote = (QuoteVerifier()
                 .queue(queue_info)
                 .clock(clock_info)
                 .slot_hashes(slot_hashes_info)
                 .instructions(ix_info)
                 .max_age(50)
                 .verify_instruction_at(0, feed_id))
    """

    def __init__(self):
        self._queue: Optional[AccountInfo] = None
        self._clock: Optional[AccountInfo] = None
        self._slot_hashes: Optional[AccountInfo] = None
        self._instructions: Optional[AccountInfo] = None
        self._queue_owner: Optional[bytes] = None
        self.max_age_slots = DEFAULT_MAX_AGE_SLOTS
        self.required_signatures = 1
        self.state = VerifierState.UNVERIFIED

    # -------------------------
    # Configuration
    # -------------------------

    def queue(self, account: AccountInfo) -> "QuoteVerifier":
        self._queue = account
        return self

    def clock(self, account: AccountInfo) -> "QuoteVerifier":
        self._clock = account
        return self

    def slot_hashes(self, account: AccountInfo) -> "QuoteVerifier":
        self._slot_hashes = account
        return self

    def instructions(self, account: AccountInfo) -> "QuoteVerifier":
        self._instructions = account
        return self

    def max_age(self, slots: int = DEFAULT_MAX_AGE_SLOTS) -> "QuoteVerifier":
        if slots < 0:
            raise ValueError("max_age must be non-negative")
        self.max_age_slots = slots
        return self

    def min_signatures(self, n: int = 1) -> "QuoteVerifier":
        if n < 1:
            raise ValueError("min_signatures must be at least 1")
        self.required_signatures = n
        return self

    def queue_owner(self, program_id: bytes) -> "QuoteVerifier":
        self._queue_owner = bytes(program_id)
        return self

    # -------------------------
    # Entry points
    # -------------------------

    def verify_instruction_at(self, index: int, expected_feed_id: bytes) -> VerifiedQuote:
        """Verify the Ed25519 instruction at a fixed position in the transaction."""
        return self._run(lambda data: index, expected_feed_id)

    def verify_scan(self, expected_feed_id: bytes) -> VerifiedQuote:
        """Verify the nearest Ed25519 instruction preceding the current one."""
        return self._run(_scan_for_ed25519, expected_feed_id)

    def check(self, expected_feed_id: bytes, index: Optional[int] = 0) -> VerificationResult:
        """Non-raising form. index=None scans instead of using a fixed position."""
        try:
            if index is None:
                quote = self.verify_scan(expected_feed_id)
            else:
                quote = self.verify_instruction_at(index, expected_feed_id)
        except ProgramError as e:
            return VerificationResult(self.state, error=e)
        return VerificationResult(self.state, quote=quote)

    # -------------------------
    # State machine
    # -------------------------

    def _run(self, locate, expected_feed_id: bytes) -> VerifiedQuote:
        self.state = VerifierState.UNVERIFIED
        try:
            quote = self._verify(locate, bytes(expected_feed_id))
        except ProgramError as e:
            log.warning(f"Quote rejected in state {self.state.value}: {e}")
            self.state = VerifierState.REJECTED
            raise
        self.state = VerifierState.VERIFIED
        return quote

    def _verify(self, locate, expected_feed_id: bytes) -> VerifiedQuote:
        queue = self._require(self._queue, "queue", None)
        clock = self._require(self._clock, "clock", CLOCK_SYSVAR_ID)
        slot_hashes = self._require(self._slot_hashes, "slot hashes", SLOT_HASHES_SYSVAR_ID)
        instructions = self._require(self._instructions, "instructions", INSTRUCTIONS_SYSVAR_ID)

        # 1. locate and parse
        ix_data = bytes(instructions.data)
        index = locate(ix_data)
        signed = _load_signed(ix_data, index)
        first = signed[0]

        # 2. signer membership
        if self._queue_owner is not None and queue.owner != self._queue_owner:
            raise UnauthorizedSignerError(
                f"queue {pubkey_str(queue.key)} is not owned by {pubkey_str(self._queue_owner)}"
            )
        oracle_queue = OracleQueue.from_bytes(bytes(queue.data))
        members = {}
        for entry in signed:
            if oracle_queue.is_member(entry.pubkey) and entry.pubkey not in members:
                members[entry.pubkey] = entry
        if len(members) < self.required_signatures:
            raise UnauthorizedSignerError(
                f"{len(members)} queue member signature(s), {self.required_signatures} required"
            )
        self.state = VerifierState.SIGNATURES_CHECKED

        # 3. feed match
        if first.feed_id != expected_feed_id:
            raise FeedMismatchError(
                f"quote feed {first.feed_id.hex()} does not match expected {expected_feed_id.hex()}"
            )
        self.state = VerifierState.FEED_MATCHED

        # 4. freshness
        current_slot = get_slot(bytes(clock.data))
        if first.slot > current_slot:
            raise StaleQuoteError(f"quote slot {first.slot} is ahead of current slot {current_slot}")
        age = current_slot - first.slot
        if age > self.max_age_slots:
            raise StaleQuoteError(f"quote is {age} slots old, max {self.max_age_slots}")
        known = SlotHashes.from_bytes(bytes(slot_hashes.data)).get(first.slot)
        if known is None:
            raise StaleQuoteError(f"slot {first.slot} is no longer in recent slot hashes")
        if known != first.slot_hash:
            raise StaleQuoteError(f"slot hash for slot {first.slot} does not match ledger history")
        self.state = VerifierState.FRESHNESS_CHECKED

        # 5. value
        value = median([e.value for e in members.values()])
        log.debug(f"Verified feed {expected_feed_id.hex()[:16]} value={value} signers={len(members)}")
        return VerifiedQuote(
            feed_id=first.feed_id,
            value=value,
            slot=first.slot,
            slot_hash=first.slot_hash,
            signers=tuple(members),
        )

    @staticmethod
    def _require(account: Optional[AccountInfo], name: str, expected_key: Optional[bytes]) -> AccountInfo:
        if account is None:
            raise MalformedQuoteError(f"{name} account not supplied")
        if expected_key is not None and account.key != expected_key:
            raise MalformedQuoteError(f"{name} account is not the {name} sysvar")
        return account


def _scan_for_ed25519(ix_data: bytes) -> int:
    current = load_current_index(ix_data)
    for index in range(min(current, load_instruction_count(ix_data)) - 1, -1, -1):
        if load_instruction_at(ix_data, index).program_id == ED25519_PROGRAM_ID:
            return index
    raise MalformedQuoteError("no ed25519 instruction precedes this instruction")


def _load_signed(ix_data: bytes, index: int):
    current = load_current_index(ix_data)
    if index >= current:
        raise MalformedQuoteError(
            f"verification instruction at {index} must precede the current instruction {current}"
        )
    ix = load_instruction_at(ix_data, index)
    if ix.program_id != ED25519_PROGRAM_ID:
        raise MalformedQuoteError(f"instruction {index} is not an ed25519 verification")

    signed = []
    for entry in parse_ed25519_instruction(ix.data, index):
        if len(entry.message) != MESSAGE_LEN:
            raise MalformedQuoteError(f"signed message is {len(entry.message)} bytes, expected {MESSAGE_LEN}")
        feed_id, value, slot, slot_hash = decode_message(entry.message)
        signed.append(_Signed(entry.pubkey, feed_id, value, slot, slot_hash))

    first = signed[0]
    for entry in signed[1:]:
        if (entry.feed_id, entry.slot, entry.slot_hash) != (first.feed_id, first.slot, first.slot_hash):
            raise MalformedQuoteError("signed messages disagree on feed or freshness marker")
    return signed
