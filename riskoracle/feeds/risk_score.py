# feeds/risk_score.py
"""
Address Risk Score Feed — Range.org

  1. GET api.range.org/v1/risk/address   (API key via ${RANGE_API_KEY})
  2. $.riskScore                         0-10
  3. x10                                 0-100
  4. clamp [0, 100]                      out-of-range values pinned to the bound

The API key stays a placeholder: oracles resolve it locally, so it never
reaches the FeedId or the ledger.
"""

from decimal import Decimal
from typing import Union

from riskoracle.chain.types import pubkey, pubkey_str
from riskoracle.feed import Clamp, Feed, Header, HttpFetch, JsonExtract, Scale

FEED_NAME = "Risk Score"
RANGE_API = "https://api.range.org/v1/risk/address"
API_KEY_VAR = "RANGE_API_KEY"


def risk_score_feed(address: Union[str, bytes]) -> Feed:
    """Feed for one Solana address, given as base58 text or 32 raw bytes."""
    b58 = pubkey_str(pubkey(address))
    return Feed(
        name=FEED_NAME,
        tasks=(
            HttpFetch(
                url=f"{RANGE_API}?address={b58}&network=solana",
                headers=(
                    Header("accept", "application/json"),
                    Header("X-API-KEY", "${" + API_KEY_VAR + "}"),
                ),
            ),
            JsonExtract("$.riskScore"),
            Scale(Decimal(10)),
            Clamp(
                lower_bound=Decimal(0),
                on_exceeds_lower=Decimal(0),
                upper_bound=Decimal(100),
                on_exceeds_upper=Decimal(100),
            ),
        ),
        min_job_responses=1,
        min_oracle_samples=1,
        max_job_range_pct=Decimal(100),
    )
