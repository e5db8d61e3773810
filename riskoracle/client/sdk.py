"""
Risk Oracle Client
Requests a risk score quote and submits it for on-chain verification.

  python -m riskoracle.client.sdk <address> [--json]
"""

import argparse
import asyncio
import json
import logging
from decimal import Decimal
from typing import Optional, Protocol

from riskoracle.attestation import Quote, from_fixed
from riskoracle.chain.types import Transaction, pubkey, pubkey_str
from riskoracle.client.gateway import Gateway
from riskoracle.client.instructions import assemble_transaction, build_risk_score_instruction
from riskoracle.client.quorum import request_quote
from riskoracle.config import Settings
from riskoracle.errors import ConsensusError, RiskOracleError
from riskoracle.feeds.risk_score import risk_score_feed

log = logging.getLogger("risk-oracle.client")


class Transport(Protocol):
    def send_transaction(self, tx: Transaction): ...


async def quote_risk_score(address, settings: Settings, gateway: Gateway) -> Quote:
    return await request_quote(
        risk_score_feed(address),
        gateway,
        variable_overrides=settings.variable_overrides(),
        min_oracle_samples=settings.min_samples,
        max_spread_pct=settings.max_spread_pct,
        num_signatures=settings.num_signatures,
    )


async def fetch_risk_score(
    address,
    settings: Settings,
    gateway: Gateway,
    transport: Transport,
    program_id: Optional[bytes] = None,
    queue: Optional[bytes] = None,
):
    """Quote, assemble [ed25519 verify, risk score] and submit. Returns the receipt."""
    program_id = program_id or settings.program_id
    queue = queue or settings.queue
    if program_id is None or queue is None:
        raise ValueError("program id and oracle queue must be configured")

    quote = await quote_risk_score(address, settings, gateway)
    program_ix = build_risk_score_instruction(program_id, queue, pubkey(address))
    receipt = transport.send_transaction(assemble_transaction(quote, program_ix))
    if receipt.ok:
        log.info(f"Risk score for {pubkey_str(pubkey(address))} verified in {receipt.signature}")
    else:
        log.error(f"Verification transaction failed: {receipt.error}")
    return receipt


def risk_score_from_receipt(receipt) -> Decimal:
    if not receipt.ok or receipt.return_data is None or len(receipt.return_data) != 16:
        raise ValueError("receipt carries no verified risk score")
    return from_fixed(int.from_bytes(receipt.return_data, "little", signed=True))


def main(argv: Optional[list] = None) -> int:
    parser = argparse.ArgumentParser(description="Request a risk score quote")
    parser.add_argument("address", help="Solana address (base58)")
    parser.add_argument("--json", action="store_true", help="print the quote as JSON")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")
    settings = Settings.from_env()
    gateway = Gateway.from_settings(settings)

    try:
        quote = asyncio.run(quote_risk_score(args.address, settings, gateway))
    except ConsensusError as e:
        log.error(f"No quote: {e.message} (samples: {', '.join(str(s) for s in e.samples)})")
        return 1
    except RiskOracleError as e:
        log.error(f"No quote: {e.message}")
        return 1

    if args.json:
        print(json.dumps({
            "feed_id": quote.feed_id.hex(),
            "value": str(quote.value),
            "slot": quote.slot,
            "slot_hash": quote.slot_hash.hex(),
            "num_samples": quote.num_samples,
            "attestations": [a.to_dict() for a in quote.attestations],
        }, indent=2))
    else:
        print("=" * 80)
        print(f"RISK SCORE (median): {quote.value.normalize():f}")
        print(f"Feed id: {quote.feed_id.hex()}")
        print(f"Slot: {quote.slot}  samples: {quote.num_samples}  signatures: {len(quote.attestations)}")
        print("=" * 80)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
