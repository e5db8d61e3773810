from dataclasses import replace
from decimal import Decimal

import pytest
from nacl.signing import SigningKey

from helpers import ADDRESS, COUNTER, OTHER_ADDRESS, PROGRAM_ID, QUEUE, QUEUE_PROGRAM, counter_program
from riskoracle.attestation import from_fixed
from riskoracle.canonical import feed_id
from riskoracle.chain.queue import OracleQueue
from riskoracle.chain.types import (
    CLOCK_SYSVAR_ID,
    INSTRUCTIONS_SYSVAR_ID,
    SLOT_HASHES_SYSVAR_ID,
    AccountMeta,
    Instruction,
    Transaction,
)
from riskoracle.client.instructions import (
    assemble_transaction,
    build_risk_score_instruction,
    build_verification_instruction,
)
from riskoracle.errors import (
    FeedMismatchError,
    MalformedQuoteError,
    StaleQuoteError,
    UnauthorizedSignerError,
)
from riskoracle.feed import Scale
from riskoracle.feeds.risk_score import risk_score_feed
from riskoracle.program.risk_score import RiskScoreProgram
from riskoracle.program.verifier import QuoteVerifier, VerifierState

COUNTER_PROGRAM = bytes([5]) * 32
INSPECTOR_PROGRAM = bytes([8]) * 32


def score(receipt) -> Decimal:
    return from_fixed(int.from_bytes(receipt.return_data, "little", signed=True))


def submit(ledger, quote, address=ADDRESS, pinned=None):
    program_ix = build_risk_score_instruction(PROGRAM_ID, QUEUE, address, feed_id=pinned)
    return ledger.send_transaction(assemble_transaction(quote, program_ix))


class TestVerified:

    def test_single_signature(self, ledger, feed, oracle_keys, make_quote) -> None:
        receipt = submit(ledger, make_quote(feed, oracle_keys[:1], ["55"]))
        assert receipt.ok, receipt.error
        assert score(receipt) == Decimal(55)
        assert f"Program log: Address: {ADDRESS}" in receipt.logs
        assert "Program log: Risk score: 55" in receipt.logs

    def test_value_is_median_of_signed_values(self, ledger, feed, oracle_keys, make_quote) -> None:
        receipt = submit(ledger, make_quote(feed, oracle_keys, ["40", "44", "41"]))
        assert score(receipt) == Decimal(41)

    def test_quote_at_window_edge(self, ledger, feed, oracle_keys, make_quote) -> None:
        quote = make_quote(feed, oracle_keys[:1], ["10"])
        ledger.advance(49)
        assert submit(ledger, quote).ok

    def test_verifier_reads_only(self, ledger, feed, oracle_keys, make_quote) -> None:
        before = {k: a.data for k, a in ledger.accounts.items()}
        submit(ledger, make_quote(feed, oracle_keys[:1], ["10"]))
        assert {k: a.data for k, a in ledger.accounts.items()} == before


class TestThreshold:

    def test_fewer_signatures_than_required(self, ledger, feed, oracle_keys, make_quote) -> None:
        ledger.register_program(PROGRAM_ID, RiskScoreProgram(PROGRAM_ID, QUEUE, min_signatures=2))
        receipt = submit(ledger, make_quote(feed, oracle_keys[:1], ["55"]))
        assert isinstance(receipt.error, UnauthorizedSignerError)

    def test_threshold_met(self, ledger, feed, oracle_keys, make_quote) -> None:
        ledger.register_program(PROGRAM_ID, RiskScoreProgram(PROGRAM_ID, QUEUE, min_signatures=2))
        assert submit(ledger, make_quote(feed, oracle_keys[:2], ["55", "56"])).ok

    def test_non_member_signer(self, ledger, feed, oracle_keys, make_quote) -> None:
        only_first = OracleQueue((bytes(oracle_keys[0].verify_key),))
        ledger.set_account(QUEUE, QUEUE_PROGRAM, only_first.to_bytes())
        receipt = submit(ledger, make_quote(feed, oracle_keys[1:2], ["55"]))
        assert isinstance(receipt.error, UnauthorizedSignerError)

    def test_non_members_do_not_count(self, ledger, feed, oracle_keys, make_quote) -> None:
        only_first = OracleQueue((bytes(oracle_keys[0].verify_key),))
        ledger.set_account(QUEUE, QUEUE_PROGRAM, only_first.to_bytes())
        ledger.register_program(PROGRAM_ID, RiskScoreProgram(PROGRAM_ID, QUEUE, min_signatures=2))
        receipt = submit(ledger, make_quote(feed, oracle_keys, ["55", "55", "55"]))
        assert isinstance(receipt.error, UnauthorizedSignerError)

    def test_duplicate_signer_counts_once(self, ledger, feed, oracle_keys, make_quote) -> None:
        ledger.register_program(PROGRAM_ID, RiskScoreProgram(PROGRAM_ID, QUEUE, min_signatures=2))
        quote = make_quote(feed, [oracle_keys[0], oracle_keys[0]], ["55", "55"])
        assert isinstance(submit(ledger, quote).error, UnauthorizedSignerError)

    def test_wrong_queue_address(self, ledger, feed, oracle_keys, make_quote) -> None:
        ledger.register_program(PROGRAM_ID, RiskScoreProgram(PROGRAM_ID, queue_address=bytes([12]) * 32))
        receipt = submit(ledger, make_quote(feed, oracle_keys[:1], ["55"]))
        assert isinstance(receipt.error, UnauthorizedSignerError)

    def test_queue_owner_enforced(self, ledger, feed, oracle_keys, make_quote) -> None:
        ledger.register_program(PROGRAM_ID, RiskScoreProgram(PROGRAM_ID, QUEUE, queue_owner=bytes([13]) * 32))
        receipt = submit(ledger, make_quote(feed, oracle_keys[:1], ["55"]))
        assert isinstance(receipt.error, UnauthorizedSignerError)

    def test_queue_account_not_a_queue(self, ledger, feed, oracle_keys, make_quote) -> None:
        ledger.set_account(QUEUE, QUEUE_PROGRAM, b"\x00" * 64)
        receipt = submit(ledger, make_quote(feed, oracle_keys[:1], ["55"]))
        assert isinstance(receipt.error, UnauthorizedSignerError)

    def test_self_made_queue_rejected(self, ledger, feed, make_quote) -> None:
        attacker = SigningKey(bytes([0x66]) * 32)
        forged = bytes([14]) * 32
        ledger.set_account(forged, bytes([0x66]) * 32, OracleQueue((bytes(attacker.verify_key),)).to_bytes())
        quote = make_quote(feed, [attacker], ["0"])
        program_ix = build_risk_score_instruction(PROGRAM_ID, forged, ADDRESS)
        receipt = ledger.send_transaction(assemble_transaction(quote, program_ix))
        assert not receipt.ok
        assert isinstance(receipt.error, UnauthorizedSignerError)
        assert receipt.return_data is None

    def test_queue_address_required(self) -> None:
        with pytest.raises(TypeError):
            RiskScoreProgram(PROGRAM_ID)
        with pytest.raises(ValueError, match="queue_address"):
            RiskScoreProgram(PROGRAM_ID, None)
        with pytest.raises(ValueError, match="queue_address"):
            RiskScoreProgram(PROGRAM_ID, b"\x01" * 31)


class TestFeedMatch:

    def test_quote_for_another_address(self, ledger, oracle_keys, make_quote) -> None:
        quote = make_quote(risk_score_feed(OTHER_ADDRESS), oracle_keys[:1], ["55"])
        receipt = submit(ledger, quote, address=ADDRESS)
        assert isinstance(receipt.error, FeedMismatchError)
        assert receipt.error.code == 3

    def test_modified_pipeline(self, ledger, feed, oracle_keys, make_quote) -> None:
        tampered = replace(feed, tasks=feed.tasks[:2] + (Scale(Decimal(20)),) + feed.tasks[3:])
        receipt = submit(ledger, make_quote(tampered, oracle_keys[:1], ["55"]))
        assert isinstance(receipt.error, FeedMismatchError)

    def test_pinned_mode(self, ledger, feed, oracle_keys, make_quote) -> None:
        receipt = submit(ledger, make_quote(feed, oracle_keys[:1], ["55"]), pinned=feed_id(feed))
        assert receipt.ok
        assert any("feed not recomputed" in line for line in receipt.logs)

    def test_pinned_mode_mismatch(self, ledger, feed, oracle_keys, make_quote) -> None:
        other = feed_id(risk_score_feed(OTHER_ADDRESS))
        receipt = submit(ledger, make_quote(feed, oracle_keys[:1], ["55"]), pinned=other)
        assert isinstance(receipt.error, FeedMismatchError)


class TestFreshness:

    def test_too_old(self, ledger, feed, oracle_keys, make_quote) -> None:
        quote = make_quote(feed, oracle_keys[:1], ["55"])
        ledger.advance(50)
        receipt = submit(ledger, quote)
        assert isinstance(receipt.error, StaleQuoteError)
        assert receipt.error.code == 4

    def test_configured_window(self, ledger, feed, oracle_keys, make_quote) -> None:
        ledger.register_program(PROGRAM_ID, RiskScoreProgram(PROGRAM_ID, QUEUE, max_age_slots=5))
        quote = make_quote(feed, oracle_keys[:1], ["55"])
        ledger.advance(5)
        assert isinstance(submit(ledger, quote).error, StaleQuoteError)

    def test_unknown_slot_hash(self, ledger, feed, oracle_keys, make_quote) -> None:
        slot, _ = ledger.slot_hashes.newest()
        quote = make_quote(feed, oracle_keys[:1], ["55"], slot=slot, slot_hash=bytes([0xEE]) * 32)
        assert isinstance(submit(ledger, quote).error, StaleQuoteError)

    def test_pruned_slot(self, ledger, feed, oracle_keys, make_quote) -> None:
        ledger.register_program(PROGRAM_ID, RiskScoreProgram(PROGRAM_ID, QUEUE, max_age_slots=10_000))
        quote = make_quote(feed, oracle_keys[:1], ["55"])
        ledger.advance(600)
        receipt = submit(ledger, quote)
        assert isinstance(receipt.error, StaleQuoteError)
        assert "no longer in recent slot hashes" in receipt.error.message

    def test_future_slot(self, ledger, feed, oracle_keys, make_quote) -> None:
        quote = make_quote(feed, oracle_keys[:1], ["55"], slot=ledger.slot + 3)
        assert isinstance(submit(ledger, quote).error, StaleQuoteError)


class TestMalformed:

    def test_missing_verification_instruction(self, ledger) -> None:
        program_ix = build_risk_score_instruction(PROGRAM_ID, QUEUE, ADDRESS)
        receipt = ledger.send_transaction(Transaction([program_ix]))
        assert isinstance(receipt.error, MalformedQuoteError)
        assert receipt.error.code == 1

    def test_verification_at_wrong_index(self, ledger, feed, oracle_keys, make_quote) -> None:
        ledger.register_program(COUNTER_PROGRAM, counter_program)
        quote = make_quote(feed, oracle_keys[:1], ["55"])
        noop = Instruction(COUNTER_PROGRAM, (AccountMeta(COUNTER, is_writable=True),))
        program_ix = build_risk_score_instruction(PROGRAM_ID, QUEUE, ADDRESS)
        tx = assemble_transaction(quote, program_ix, instruction_index=1, preceding=[noop])
        receipt = ledger.send_transaction(tx)
        assert isinstance(receipt.error, MalformedQuoteError)

    def test_wrong_account_count(self, ledger, feed, oracle_keys, make_quote) -> None:
        quote = make_quote(feed, oracle_keys[:1], ["55"])
        full = build_risk_score_instruction(PROGRAM_ID, QUEUE, ADDRESS)
        short = Instruction(PROGRAM_ID, full.accounts[:4])
        receipt = ledger.send_transaction(Transaction([build_verification_instruction(quote, 0), short]))
        assert isinstance(receipt.error, MalformedQuoteError)

    def test_bad_instruction_data_length(self, ledger, feed, oracle_keys, make_quote) -> None:
        quote = make_quote(feed, oracle_keys[:1], ["55"])
        full = build_risk_score_instruction(PROGRAM_ID, QUEUE, ADDRESS)
        odd = Instruction(PROGRAM_ID, full.accounts, b"\x01\x02\x03")
        receipt = ledger.send_transaction(Transaction([build_verification_instruction(quote, 0), odd]))
        assert isinstance(receipt.error, MalformedQuoteError)

    def test_forged_sysvar_account(self, ledger, feed, oracle_keys, make_quote) -> None:
        quote = make_quote(feed, oracle_keys[:1], ["55"])
        full = build_risk_score_instruction(PROGRAM_ID, QUEUE, ADDRESS)
        accounts = list(full.accounts)
        accounts[2] = AccountMeta(bytes([14]) * 32)
        forged = Instruction(PROGRAM_ID, tuple(accounts))
        receipt = ledger.send_transaction(Transaction([build_verification_instruction(quote, 0), forged]))
        assert isinstance(receipt.error, MalformedQuoteError)


class TestAtomicity:

    def test_rejection_discards_earlier_writes(self, ledger, feed, oracle_keys, make_quote) -> None:
        ledger.set_account(COUNTER, bytes(32), b"\x00")
        ledger.register_program(COUNTER_PROGRAM, counter_program)
        quote = make_quote(feed, oracle_keys[:1], ["55"])
        ledger.advance(60)
        tx = assemble_transaction(quote, build_risk_score_instruction(PROGRAM_ID, QUEUE, ADDRESS))
        tx.instructions.insert(1, Instruction(COUNTER_PROGRAM, (AccountMeta(COUNTER, is_writable=True),)))
        receipt = ledger.send_transaction(tx)
        assert isinstance(receipt.error, StaleQuoteError)
        assert ledger.get_account(COUNTER).data == b"\x00"

    def test_accepted_quote_keeps_writes(self, ledger, feed, oracle_keys, make_quote) -> None:
        ledger.set_account(COUNTER, bytes(32), b"\x00")
        ledger.register_program(COUNTER_PROGRAM, counter_program)
        quote = make_quote(feed, oracle_keys[:1], ["55"])
        tx = assemble_transaction(quote, build_risk_score_instruction(PROGRAM_ID, QUEUE, ADDRESS))
        tx.instructions.insert(1, Instruction(COUNTER_PROGRAM, (AccountMeta(COUNTER, is_writable=True),)))
        assert ledger.send_transaction(tx).ok
        assert ledger.get_account(COUNTER).data == b"\x01"


class TestVerifierStates:

    @pytest.fixture
    def inspect_quote(self, ledger):
        """Deploys a program that runs QuoteVerifier.check and records the result."""
        results = []

        def program(program_id, accounts, data, ctx):
            queue, clock, slot_hashes, instructions = accounts
            verifier = (QuoteVerifier().queue(queue).clock(clock)
                        .slot_hashes(slot_hashes).instructions(instructions))
            index = None if data == b"scan" else 0
            results.append((verifier.check(data[-32:] if len(data) >= 32 else b"", index), verifier.state))

        ledger.register_program(INSPECTOR_PROGRAM, program)

        def run(quote, data):
            ix = Instruction(INSPECTOR_PROGRAM, (
                AccountMeta(QUEUE), AccountMeta(CLOCK_SYSVAR_ID),
                AccountMeta(SLOT_HASHES_SYSVAR_ID), AccountMeta(INSTRUCTIONS_SYSVAR_ID),
            ), data)
            receipt = ledger.send_transaction(assemble_transaction(quote, ix))
            assert receipt.ok
            return results[-1]

        return run

    def test_verified(self, inspect_quote, feed, oracle_keys, make_quote) -> None:
        result, state = inspect_quote(make_quote(feed, oracle_keys[:2], ["55", "57"]), feed_id(feed))
        assert result.ok
        assert state is VerifierState.VERIFIED
        assert result.quote.value == Decimal(56)
        assert result.quote.signers == tuple(bytes(k.verify_key) for k in oracle_keys[:2])

    def test_rejected_after_signature_check(self, inspect_quote, feed, oracle_keys, make_quote) -> None:
        other = feed_id(risk_score_feed(OTHER_ADDRESS))
        result, state = inspect_quote(make_quote(feed, oracle_keys[:1], ["55"]), other)
        assert not result.ok
        assert state is VerifierState.REJECTED
        assert result.state is VerifierState.REJECTED
        assert isinstance(result.error, FeedMismatchError)

    def test_scan_finds_preceding_instruction(self, inspect_quote, feed, oracle_keys, make_quote) -> None:
        result, _ = inspect_quote(make_quote(feed, oracle_keys[:1], ["55"]), b"scan")
        # scan mode has no expected feed id, so the match fails after locating the quote
        assert isinstance(result.error, FeedMismatchError)

    def test_builder_validation(self) -> None:
        with pytest.raises(ValueError):
            QuoteVerifier().min_signatures(0)
        with pytest.raises(ValueError):
            QuoteVerifier().max_age(-1)

    def test_unconfigured_verifier(self) -> None:
        verifier = QuoteVerifier()
        result = verifier.check(bytes(32))
        assert isinstance(result.error, MalformedQuoteError)
        assert verifier.state is VerifierState.REJECTED
