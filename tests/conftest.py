from decimal import Decimal

import pytest
from nacl.signing import SigningKey

from helpers import ADDRESS, PROGRAM_ID, QUEUE, QUEUE_PROGRAM, fixed_fetch, node_transport
from riskoracle.attestation import Quote, median, sign_attestation
from riskoracle.canonical import feed_id
from riskoracle.chain.queue import OracleQueue
from riskoracle.chain.runtime import LocalLedger
from riskoracle.client.gateway import Gateway, OracleEndpoint
from riskoracle.feeds.risk_score import risk_score_feed
from riskoracle.oracle.server import OracleNode
from riskoracle.program.risk_score import RiskScoreProgram


@pytest.fixture
def oracle_keys():
    return [SigningKey(bytes([0x40 + i]) * 32) for i in range(3)]


@pytest.fixture
def feed():
    return risk_score_feed(ADDRESS)


@pytest.fixture
def ledger(oracle_keys):
    """Ledger with a queue holding every oracle key and the risk score program deployed."""
    ledger = LocalLedger(slot=1000)
    queue = OracleQueue(tuple(bytes(k.verify_key) for k in oracle_keys))
    ledger.set_account(QUEUE, QUEUE_PROGRAM, queue.to_bytes())
    ledger.register_program(PROGRAM_ID, RiskScoreProgram(PROGRAM_ID, QUEUE))
    return ledger


@pytest.fixture
def make_quote(ledger):
    """make_quote(feed, keys, values, slot=None, slot_hash=None) -> Quote signed at the ledger's newest slot."""

    def _make(feed, keys, values, slot=None, slot_hash=None):
        newest_slot, newest_hash = ledger.slot_hashes.newest()
        slot = newest_slot if slot is None else slot
        slot_hash = newest_hash if slot_hash is None else slot_hash
        fid = feed_id(feed)
        attestations = [
            sign_attestation(k, fid, Decimal(v), slot, slot_hash)
            for k, v in zip(keys, values)
        ]
        return Quote(
            feed_id=fid,
            value=median([Decimal(v) for v in values]) if values else Decimal(0),
            slot=slot,
            slot_hash=slot_hash,
            attestations=attestations,
            num_samples=len(attestations),
        )

    return _make


@pytest.fixture
def make_gateway(ledger, oracle_keys):
    """make_gateway(scores, failures={index: status}, calls=dict, **gateway_kwargs)."""

    def _make(scores, keys=None, failures=None, calls=None, transport=None, **kwargs):
        keys = oracle_keys if keys is None else keys
        failures = failures or {}
        nodes = {}
        endpoints = []
        for i, (key, score) in enumerate(zip(keys, scores)):
            host = f"oracle{i}.test"
            nodes[host] = failures.get(i) or OracleNode(key, fetch=fixed_fetch(score))
            endpoints.append(OracleEndpoint(f"http://{host}", bytes(key.verify_key)))
        kwargs.setdefault("timeout", 2.0)
        return Gateway(
            endpoints,
            slot_source=ledger,
            transport=transport or node_transport(nodes, calls),
            **kwargs,
        )

    return _make
