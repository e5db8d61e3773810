"""
Gateway — client-side front for a queue's oracle nodes.

Fans one attest request out to every node, retrying transport failures per
node, and gives up on nodes that have not answered inside the window. Also
owns the slot source that supplies the freshness marker.
"""

import asyncio
import base64
import logging
from dataclasses import dataclass
from typing import List, Optional, Protocol, Sequence, Tuple

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from riskoracle.attestation import OracleAttestation
from riskoracle.chain.sysvars import SlotHashes
from riskoracle.chain.types import SLOT_HASHES_SYSVAR_ID, pubkey_str
from riskoracle.client.crossbar import CrossbarClient, FeedStore
from riskoracle.config import Settings
from riskoracle.errors import MalformedQuoteError, NetworkError, RiskOracleError, TaskExecutionError
from riskoracle.feed import Feed

log = logging.getLogger("risk-oracle.gateway")


@dataclass(frozen=True)
class OracleEndpoint:
    url: str
    pubkey: bytes


class SlotSource(Protocol):
    async def latest_slot_hash(self) -> Tuple[int, bytes]: ...


class RpcSlotSource:
    """Newest (slot, hash) from the SlotHashes sysvar over JSON-RPC."""

    def __init__(self, rpc_url: str, timeout: float = 5.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.rpc_url = rpc_url
        self.timeout = timeout
        self.transport = transport

    async def latest_slot_hash(self) -> Tuple[int, bytes]:
        payload = {
            "jsonrpc": "2.0",
            "id": 1,
            "method": "getAccountInfo",
            "params": [
                pubkey_str(SLOT_HASHES_SYSVAR_ID),
                {"encoding": "base64", "commitment": "confirmed"},
            ],
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                r = await client.post(self.rpc_url, json=payload)
                r.raise_for_status()
                body = r.json()
        except (httpx.HTTPError, ValueError) as e:
            raise NetworkError(f"slot hash lookup failed: {e}", url=self.rpc_url)

        if "error" in body:
            raise NetworkError(f"slot hash lookup failed: {body['error']}", url=self.rpc_url)
        try:
            encoded = body["result"]["value"]["data"][0]
            return SlotHashes.from_bytes(base64.b64decode(encoded)).newest()
        except (KeyError, IndexError, TypeError, ValueError, LookupError, MalformedQuoteError) as e:
            raise NetworkError(f"unexpected slot hashes response: {e!r}", url=self.rpc_url)


class Gateway:
    def __init__(
        self,
        endpoints: Sequence[OracleEndpoint],
        slot_source: SlotSource,
        store: Optional[FeedStore] = None,
        timeout: float = 5.0,
        retries: int = 2,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if retries < 1:
            raise ValueError("retries must be at least 1")
        self.endpoints = list(endpoints)
        self.slot_source = slot_source
        self.store = store
        self.timeout = timeout
        self.retries = retries
        self.transport = transport

    @classmethod
    def from_settings(cls, settings: Settings, slot_source: Optional[SlotSource] = None) -> "Gateway":
        if slot_source is None:
            if not settings.rpc_url:
                raise ValueError("RISK_ORACLE_RPC_URL is required for the slot hash source")
            slot_source = RpcSlotSource(settings.rpc_url, timeout=settings.timeout)
        store = CrossbarClient(settings.crossbar_url, timeout=settings.timeout) if settings.crossbar_url else None
        return cls(
            endpoints=[OracleEndpoint(url, key) for url, key in settings.nodes],
            slot_source=slot_source,
            store=store,
            timeout=settings.timeout,
            retries=settings.retries,
        )

    async def latest_slot_hash(self) -> Tuple[int, bytes]:
        return await self.slot_source.latest_slot_hash()

    async def publish_feed(self, feed: Feed) -> None:
        """Best-effort upload to the metadata store."""
        if self.store is None:
            return
        try:
            await self.store.store_feed(feed)
        except NetworkError as e:
            log.warning(f"Feed store unavailable, continuing without it: {e.message}")

    # -------------------------
    # Fan-out
    # -------------------------

    async def collect(self, body: dict) -> List[Tuple[OracleEndpoint, OracleAttestation]]:
        """POST `body` to every node; return the responses that arrived in time.

        `body` carries variable overrides and must never be logged.
        """
        if not self.endpoints:
            return []
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            tasks = [
                (endpoint, asyncio.ensure_future(self._fetch(client, endpoint, body)))
                for endpoint in self.endpoints
            ]
            done, pending = await asyncio.wait([t for _, t in tasks], timeout=self.timeout)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        results = []
        for endpoint, task in tasks:
            if task not in done:
                log.warning(f"Oracle {endpoint.url} did not respond within {self.timeout}s")
                continue
            exc = task.exception()
            if exc is not None:
                if not isinstance(exc, RiskOracleError):
                    raise exc
                log.warning(f"Oracle {endpoint.url} failed: {exc.message}")
                continue
            results.append((endpoint, task.result()))
        return results

    async def _fetch(self, client: httpx.AsyncClient, endpoint: OracleEndpoint, body: dict) -> OracleAttestation:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.retries),
            wait=wait_exponential(multiplier=0.1, max=1),
            retry=retry_if_exception_type(NetworkError),
            reraise=True,
        ):
            with attempt:
                return await self._post(client, endpoint, body)

    async def _post(self, client: httpx.AsyncClient, endpoint: OracleEndpoint, body: dict) -> OracleAttestation:
        url = f"{endpoint.url}/oracle/attest"
        try:
            r = await client.post(url, json=body)
        except httpx.TimeoutException:
            raise NetworkError("timed out", url=url)
        except httpx.HTTPError as e:
            raise NetworkError(f"transport error: {type(e).__name__}", url=url)

        if r.status_code >= 500:
            raise NetworkError(f"HTTP {r.status_code}", url=url)
        if r.status_code >= 400:
            raise TaskExecutionError(f"request rejected with HTTP {r.status_code}: {_detail(r)}")
        try:
            return OracleAttestation.from_dict(r.json())
        except (KeyError, TypeError, ValueError, ArithmeticError) as e:
            raise TaskExecutionError(f"malformed attestation: {e!r}")


def _detail(response: httpx.Response) -> str:
    try:
        return str(response.json().get("detail", ""))
    except (ValueError, AttributeError):
        return ""
