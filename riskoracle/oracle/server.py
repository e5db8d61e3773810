"""
Risk Oracle — Oracle Node
Runs feeds on request and signs the result with the node's Ed25519 key.

  GET  /health          status + public key
  POST /oracle/attest   {feed, feed_id, slot, slot_hash, variable_overrides}
                        -> signed attestation

The node recomputes the FeedId from the unresolved feed it received and
refuses to sign for a different one. Variable overrides are used to run the
feed and then discarded; they are never logged or returned.
"""

import argparse
import logging
from typing import Dict, Optional

import uvicorn
from fastapi import FastAPI, HTTPException
from nacl.signing import SigningKey
from pydantic import BaseModel, Field

from riskoracle import __version__
from riskoracle.attestation import OracleAttestation, sign_attestation
from riskoracle.canonical import feed_id, parse_feed_id
from riskoracle.config import Settings
from riskoracle.errors import FeedValidationError, TaskExecutionError
from riskoracle.feed import Feed
from riskoracle.oracle.keys import load_or_create_signing_key
from riskoracle.oracle.tasks import Fetch, execute_feed, http_get

log = logging.getLogger("risk-oracle.node")


class AttestRequest(BaseModel):
    feed: dict
    feed_id: str
    slot: int = Field(ge=0, lt=1 << 64)
    slot_hash: str
    variable_overrides: Dict[str, str] = Field(default_factory=dict)


class OracleNode:
    def __init__(self, signing_key: SigningKey, fetch: Fetch = http_get):
        self.signing_key = signing_key
        self.fetch = fetch

    @property
    def pubkey(self) -> bytes:
        return bytes(self.signing_key.verify_key)

    def attest(self, request: AttestRequest) -> OracleAttestation:
        feed = Feed.from_dict(request.feed).validate()
        try:
            claimed = parse_feed_id(request.feed_id)
            slot_hash = bytes.fromhex(request.slot_hash)
        except ValueError as e:
            raise FeedValidationError(f"bad request field: {e}")
        if len(slot_hash) != 32:
            raise FeedValidationError("slot_hash must be 32 bytes")

        computed = feed_id(feed)
        if computed != claimed:
            raise FeedValidationError(
                f"feed id mismatch: claimed {claimed.hex()}, computed {computed.hex()}"
            )

        value = execute_feed(feed, request.variable_overrides, self.fetch)
        try:
            attestation = sign_attestation(self.signing_key, computed, value, request.slot, slot_hash)
        except ValueError as e:
            raise TaskExecutionError(f"feed result cannot be signed: {e}")
        log.info(f"Attested feed {computed.hex()[:16]} value={attestation.value} slot={request.slot}")
        return attestation


def create_app(node: OracleNode) -> FastAPI:
    app = FastAPI(
        title="Risk Oracle Node",
        description="Runs feed pipelines and signs the result",
        version=__version__,
    )

    @app.get("/health")
    def health():
        return {
            "status": "ok",
            "version": __version__,
            "pubkey": node.pubkey.hex(),
        }

    @app.post("/oracle/attest")
    def attest(request: AttestRequest):
        try:
            attestation = node.attest(request)
        except FeedValidationError as e:
            log.warning(f"Rejected attest request: {e.message}")
            raise HTTPException(status_code=400, detail=e.message)
        except TaskExecutionError as e:
            log.warning(f"Feed execution failed: {e.message}")
            raise HTTPException(status_code=502, detail=e.message)
        return attestation.to_dict()

    return app


def main(argv: Optional[list] = None) -> None:
    settings = Settings.from_env()
    parser = argparse.ArgumentParser(description="Risk oracle node")
    parser.add_argument("--host", default=settings.node_host)
    parser.add_argument("--port", type=int, default=settings.node_port)
    parser.add_argument("--key-path", default=str(settings.key_path))
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")
    node = OracleNode(load_or_create_signing_key(args.key_path))
    log.info(f"Risk oracle node starting on :{args.port}")
    log.info(f"  Public key: {node.pubkey.hex()}")
    uvicorn.run(create_app(node), host=args.host, port=args.port)


if __name__ == "__main__":
    main()
