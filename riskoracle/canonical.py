"""
Feed canonicalization — Feed -> bytes -> FeedId.

Encoding v1 (all integers big-endian):

  str      u32 byte length | utf-8 bytes
  decimal  str of the canonical decimal text ("10.0" -> "10", never "1E+1")
  task     u8 tag | u32 body length | body
             httpFetch    url | u32 header count | (key | value)*
             jsonExtract  path
             scale        multiplier
             clamp        lower | on_exceeds_lower | upper | on_exceeds_upper
  feed     u8 version | name | u32 task count | task* |
           u32 min_job_responses | u32 min_oracle_samples | decimal max_job_range_pct

The canonical bytes are the feed body prefixed with its u32 length.
FeedId = SHA-256(canonical bytes), full 32-byte digest.

Placeholder tokens such as ${RANGE_API_KEY} are encoded as written.
This module never sees resolved secrets.
"""

import hashlib
import struct
from decimal import Decimal

from riskoracle.errors import FeedValidationError
from riskoracle.feed import Clamp, Feed, HttpFetch, JsonExtract, Scale

ENCODING_VERSION = 1
FEED_ID_LEN = 32


def canonical_decimal(value: Decimal) -> str:
    if not isinstance(value, Decimal) or not value.is_finite():
        raise FeedValidationError(f"not a finite Decimal: {value!r}")
    if value == 0:
        return "0"
    # format() is exact; normalize() would round to the context precision
    text = format(value, "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text


def _str(text: str) -> bytes:
    raw = text.encode("utf-8")
    return struct.pack(">I", len(raw)) + raw


def _dec(value: Decimal) -> bytes:
    return _str(canonical_decimal(value))


def _task_body(task) -> bytes:
    if isinstance(task, HttpFetch):
        out = _str(task.url) + struct.pack(">I", len(task.headers))
        for h in task.headers:
            out += _str(h.key) + _str(h.value)
        return out
    if isinstance(task, JsonExtract):
        return _str(task.path)
    if isinstance(task, Scale):
        return _dec(task.multiplier)
    if isinstance(task, Clamp):
        return (
            _dec(task.lower_bound)
            + _dec(task.on_exceeds_lower)
            + _dec(task.upper_bound)
            + _dec(task.on_exceeds_upper)
        )
    raise FeedValidationError(f"unsupported task type {type(task).__name__}")


def canonicalize(feed: Feed) -> bytes:
    """Byte-stable encoding of a validated feed."""
    feed.validate()

    body = struct.pack(">B", ENCODING_VERSION)
    body += _str(feed.name)
    body += struct.pack(">I", len(feed.tasks))
    for task in feed.tasks:
        task_body = _task_body(task)
        body += struct.pack(">BI", task.TAG, len(task_body)) + task_body
    body += struct.pack(">II", feed.min_job_responses, feed.min_oracle_samples)
    body += _dec(feed.max_job_range_pct)

    return struct.pack(">I", len(body)) + body


def feed_hash(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


def feed_id(feed: Feed) -> bytes:
    return feed_hash(canonicalize(feed))


def feed_id_hex(feed: Feed) -> str:
    return "0x" + feed_id(feed).hex()


def parse_feed_id(text: str) -> bytes:
    """Accept a FeedId as hex, with or without a 0x prefix."""
    if text.startswith(("0x", "0X")):
        text = text[2:]
    try:
        raw = bytes.fromhex(text)
    except ValueError:
        raise ValueError(f"feed id is not hex: {text!r}")
    if len(raw) != FEED_ID_LEN:
        raise ValueError(f"feed id must be {FEED_ID_LEN} bytes, got {len(raw)}")
    return raw
