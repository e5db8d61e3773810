"""
Transaction assembly for quote verification.

The Ed25519 verification instruction must sit at the index the consuming
program is configured to read (0 by default); every offset inside it points
at that same index.
"""

from typing import Optional, Sequence

from riskoracle.attestation import Quote
from riskoracle.canonical import FEED_ID_LEN
from riskoracle.chain.ed25519 import build_ed25519_instruction
from riskoracle.chain.types import (
    CLOCK_SYSVAR_ID,
    INSTRUCTIONS_SYSVAR_ID,
    SLOT_HASHES_SYSVAR_ID,
    AccountMeta,
    Instruction,
    Transaction,
    pubkey,
)


def build_verification_instruction(quote: Quote, instruction_index: int = 0) -> Instruction:
    if not quote.attestations:
        raise ValueError("quote carries no attestations")
    if not 0 <= instruction_index < 0xFFFF:
        raise ValueError(f"instruction index out of range: {instruction_index}")
    entries = [(a.oracle_pubkey, a.signature, a.message) for a in quote.attestations]
    return build_ed25519_instruction(entries, instruction_index)


def build_risk_score_instruction(program_id, queue, query_account, feed_id: Optional[bytes] = None) -> Instruction:
    """Risk score program call; pass feed_id only for the pinned (reduced trust) mode."""
    data = b""
    if feed_id is not None:
        if len(feed_id) != FEED_ID_LEN:
            raise ValueError(f"feed id must be {FEED_ID_LEN} bytes")
        data = bytes(feed_id)
    return Instruction(
        program_id=pubkey(program_id),
        accounts=(
            AccountMeta(pubkey(queue)),
            AccountMeta(CLOCK_SYSVAR_ID),
            AccountMeta(SLOT_HASHES_SYSVAR_ID),
            AccountMeta(INSTRUCTIONS_SYSVAR_ID),
            AccountMeta(pubkey(query_account)),
        ),
        data=data,
    )


def assemble_transaction(
    quote: Quote,
    program_ix: Instruction,
    instruction_index: int = 0,
    preceding: Sequence[Instruction] = (),
    fee_payer: Optional[bytes] = None,
) -> Transaction:
    """[*preceding, verification, program_ix]; len(preceding) must equal instruction_index."""
    if len(preceding) != instruction_index:
        raise ValueError(
            f"{len(preceding)} preceding instruction(s) cannot place verification at index {instruction_index}"
        )
    tx = Transaction(fee_payer=fee_payer)
    tx.add(*preceding)
    tx.add(build_verification_instruction(quote, instruction_index), program_ix)
    return tx
