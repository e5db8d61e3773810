import stat

import pytest
from fastapi.testclient import TestClient
from nacl.signing import SigningKey

from helpers import API_KEY, fixed_fetch
from riskoracle.attestation import OracleAttestation
from riskoracle.canonical import feed_id
from riskoracle.errors import TaskExecutionError
from riskoracle.oracle.keys import load_or_create_signing_key
from riskoracle.oracle.server import OracleNode, create_app

SLOT_HASH = bytes([0x11]) * 32


def attest_body(feed, **overrides):
    body = {
        "feed": feed.to_dict(),
        "feed_id": feed_id(feed).hex(),
        "slot": 1234,
        "slot_hash": SLOT_HASH.hex(),
        "variable_overrides": {"RANGE_API_KEY": API_KEY},
    }
    body.update(overrides)
    return body


@pytest.fixture
def seen():
    return []


@pytest.fixture
def client(oracle_keys, seen):
    node = OracleNode(oracle_keys[0], fetch=fixed_fetch("7.5", seen))
    return TestClient(create_app(node))


class TestHealth:

    def test_reports_pubkey(self, client, oracle_keys) -> None:
        r = client.get("/health")
        assert r.status_code == 200
        assert r.json()["status"] == "ok"
        assert r.json()["pubkey"] == bytes(oracle_keys[0].verify_key).hex()


class TestAttest:

    def test_signed_attestation(self, client, feed, oracle_keys) -> None:
        r = client.post("/oracle/attest", json=attest_body(feed))
        assert r.status_code == 200
        att = OracleAttestation.from_dict(r.json())
        assert att.verify()
        assert att.oracle_pubkey == bytes(oracle_keys[0].verify_key)
        assert att.feed_id == feed_id(feed)
        assert att.value == 75
        assert (att.slot, att.slot_hash) == (1234, SLOT_HASH)

    def test_secret_used_but_not_returned(self, client, feed, seen) -> None:
        r = client.post("/oracle/attest", json=attest_body(feed))
        assert seen[0][1]["X-API-KEY"] == API_KEY
        assert API_KEY not in r.text

    def test_accepts_prefixed_feed_id(self, client, feed) -> None:
        r = client.post("/oracle/attest", json=attest_body(feed, feed_id="0x" + feed_id(feed).hex()))
        assert r.status_code == 200

    def test_feed_id_mismatch(self, client, feed) -> None:
        r = client.post("/oracle/attest", json=attest_body(feed, feed_id="00" * 32))
        assert r.status_code == 400
        assert "mismatch" in r.json()["detail"]

    def test_invalid_feed(self, client, feed) -> None:
        body = attest_body(feed)
        body["feed"]["tasks"] = []
        r = client.post("/oracle/attest", json=body)
        assert r.status_code == 400

    def test_bad_slot_hash(self, client, feed) -> None:
        r = client.post("/oracle/attest", json=attest_body(feed, slot_hash="abcd"))
        assert r.status_code == 400

    def test_negative_slot(self, client, feed) -> None:
        r = client.post("/oracle/attest", json=attest_body(feed, slot=-1))
        assert r.status_code == 422

    def test_missing_override(self, client, feed) -> None:
        r = client.post("/oracle/attest", json=attest_body(feed, variable_overrides={}))
        assert r.status_code == 502
        assert "RANGE_API_KEY" in r.json()["detail"]

    def test_source_failure(self, oracle_keys, feed) -> None:
        def down(url, headers):
            raise TaskExecutionError("source returned HTTP 503")

        client = TestClient(create_app(OracleNode(oracle_keys[0], fetch=down)))
        r = client.post("/oracle/attest", json=attest_body(feed))
        assert r.status_code == 502
        assert API_KEY not in r.text


class TestSigningKey:

    def test_created_with_private_mode(self, tmp_path) -> None:
        path = tmp_path / "keys" / "oracle.key"
        key = load_or_create_signing_key(path)
        assert isinstance(key, SigningKey)
        assert stat.S_IMODE(path.stat().st_mode) == 0o600
        assert path.read_text() == bytes(key).hex()

    def test_reloaded(self, tmp_path) -> None:
        path = tmp_path / "oracle.key"
        first = load_or_create_signing_key(path)
        second = load_or_create_signing_key(str(path))
        assert bytes(first) == bytes(second)
        assert first.verify_key == second.verify_key
