"""
Risk score consumer program.

Accounts (all read-only, in order):
  0 queue          oracle queue account, must be the configured queue address
  1 clock          clock sysvar
  2 slot_hashes    slot hashes sysvar
  3 instructions   instructions sysvar
  4 query_account  the address whose risk score was quoted

Instruction data:
  empty     FeedId is recomputed from the risk score feed for query_account
  32 bytes  FeedId pinned by the caller (reduced trust: no recomputation)

On success the verified value is set as return data, i128 LE fixed-point
with 18 decimals.
"""

import logging
from typing import List, Optional

from riskoracle.canonical import FEED_ID_LEN, feed_id
from riskoracle.chain.runtime import ProgramContext
from riskoracle.chain.types import AccountInfo, pubkey_str
from riskoracle.errors import MalformedQuoteError, UnauthorizedSignerError
from riskoracle.feeds.risk_score import risk_score_feed
from riskoracle.program.verifier import DEFAULT_MAX_AGE_SLOTS, QuoteVerifier, VerifiedQuote

log = logging.getLogger("risk-oracle.program")

NUM_ACCOUNTS = 5


class RiskScoreProgram:
    def __init__(
        self,
        program_id: bytes,
        queue_address: bytes,
        queue_owner: Optional[bytes] = None,
        max_age_slots: int = DEFAULT_MAX_AGE_SLOTS,
        min_signatures: int = 1,
        instruction_index: int = 0,
    ):
        if queue_address is None or len(queue_address) != 32:
            raise ValueError("queue_address must be the 32-byte address of the trusted oracle queue")
        self.program_id = bytes(program_id)
        self.queue_address = bytes(queue_address)
        self.queue_owner = bytes(queue_owner) if queue_owner is not None else None
        self.max_age_slots = max_age_slots
        self.min_signatures = min_signatures
        self.instruction_index = instruction_index

    def __call__(self, program_id: bytes, accounts: List[AccountInfo], data: bytes, ctx: ProgramContext) -> None:
        quote = self.process(accounts, data, ctx)
        ctx.set_return_data(quote.raw_value.to_bytes(16, "little", signed=True))

    def process(self, accounts: List[AccountInfo], data: bytes, ctx: ProgramContext) -> VerifiedQuote:
        if len(accounts) != NUM_ACCOUNTS:
            raise MalformedQuoteError(f"expected {NUM_ACCOUNTS} accounts, got {len(accounts)}")
        queue, clock, slot_hashes, instructions, query_account = accounts

        if queue.key != self.queue_address:
            raise UnauthorizedSignerError(
                f"queue {pubkey_str(queue.key)} is not the configured queue {pubkey_str(self.queue_address)}"
            )

        if len(data) == 0:
            expected = feed_id(risk_score_feed(query_account.key))
        elif len(data) == FEED_ID_LEN:
            expected = bytes(data)
            ctx.log("Using caller-supplied feed id (feed not recomputed)")
        else:
            raise MalformedQuoteError(f"instruction data must be empty or {FEED_ID_LEN} bytes, got {len(data)}")

        verifier = (
            QuoteVerifier()
            .queue(queue)
            .clock(clock)
            .slot_hashes(slot_hashes)
            .instructions(instructions)
            .max_age(self.max_age_slots)
            .min_signatures(self.min_signatures)
        )
        if self.queue_owner is not None:
            verifier.queue_owner(self.queue_owner)

        quote = verifier.verify_instruction_at(self.instruction_index, expected)

        ctx.log(f"Address: {pubkey_str(query_account.key)}")
        ctx.log(f"Risk score: {quote.value.normalize():f}")
        log.info(f"Verified risk score {quote.value} for {pubkey_str(query_account.key)} "
                 f"({len(quote.signers)} signer(s), slot {quote.slot})")
        return quote
