"""
Feed metadata store keyed by FeedId.

Publishing a feed lets later requests refer to it by id. The store is a
cache, not a trust boundary: nothing read back from it is used without
recomputing its FeedId.
"""

import logging
from typing import Dict, Optional, Protocol

import httpx

from riskoracle.canonical import feed_id, parse_feed_id
from riskoracle.errors import FeedValidationError, NetworkError
from riskoracle.feed import Feed

log = logging.getLogger("risk-oracle.crossbar")


class FeedStore(Protocol):
    async def store_feed(self, feed: Feed) -> bytes: ...

    async def load_feed(self, feed_id: bytes) -> Optional[Feed]: ...


class InMemoryFeedStore:
    def __init__(self):
        self.feeds: Dict[bytes, Feed] = {}

    async def store_feed(self, feed: Feed) -> bytes:
        fid = feed_id(feed)
        self.feeds[fid] = feed
        return fid

    async def load_feed(self, fid: bytes) -> Optional[Feed]:
        return self.feeds.get(bytes(fid))


class CrossbarClient:
    """HTTP metadata store: POST /feeds, GET /feeds/{feed_id_hex}."""

    def __init__(self, base_url: str, timeout: float = 5.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=self.transport)

    async def store_feed(self, feed: Feed) -> bytes:
        fid = feed_id(feed)
        try:
            async with self._client() as client:
                r = await client.post("/feeds", json={"feed": feed.to_dict()})
                r.raise_for_status()
                body = r.json()
        except (httpx.HTTPError, ValueError) as e:
            raise NetworkError(f"crossbar store failed: {e}", url=self.base_url)

        returned = body.get("feedId") if isinstance(body, dict) else None
        try:
            if returned is None or parse_feed_id(returned) != fid:
                log.warning(f"Crossbar returned feed id {returned}, local id is {fid.hex()}")
        except ValueError:
            log.warning(f"Crossbar returned malformed feed id {returned!r}")
        return fid

    async def load_feed(self, fid: bytes) -> Optional[Feed]:
        try:
            async with self._client() as client:
                r = await client.get(f"/feeds/{bytes(fid).hex()}")
                if r.status_code == 404:
                    return None
                r.raise_for_status()
                body = r.json()
        except (httpx.HTTPError, ValueError) as e:
            raise NetworkError(f"crossbar load failed: {e}", url=self.base_url)

        try:
            feed = Feed.from_dict(body["feed"])
            computed = feed_id(feed)
        except (FeedValidationError, KeyError, TypeError) as e:
            log.warning(f"Crossbar returned an unusable feed for {bytes(fid).hex()}: {e}")
            return None
        if computed != bytes(fid):
            log.warning(f"Crossbar feed for {bytes(fid).hex()} hashes to {computed.hex()}; ignoring")
            return None
        return feed
