"""
Quorum quote requester
- Fans the feed out to every oracle behind the gateway
- Verifies each attestation (signature, registered key, feed, freshness)
- Enforces the availability quorum
- Enforces sample coherence (spread around the median)
- Selects the attestations that go on-chain
"""

import logging
from decimal import Decimal
from typing import Dict, Mapping, Optional, Sequence

from riskoracle.attestation import OracleAttestation, Quote, median
from riskoracle.canonical import feed_id
from riskoracle.client.gateway import Gateway
from riskoracle.errors import ConsensusError
from riskoracle.feed import Feed

log = logging.getLogger("risk-oracle.quorum")

# -------------------------
# Helpers
# -------------------------


def spread_pct(values: Sequence[Decimal], center: Decimal) -> Decimal:
    """(max - min) as a percentage of |center|."""
    lo, hi = min(values), max(values)
    if lo == hi:
        return Decimal(0)
    if center == 0:
        return Decimal("Infinity")
    return (hi - lo) / abs(center) * 100


def select_attestations(samples: Sequence[OracleAttestation], center: Decimal, count: int):
    """The `count` attestations closest to `center`, ties broken by public key."""
    ranked = sorted(samples, key=lambda a: (abs(a.value - center), a.oracle_pubkey))
    return ranked[:count]


# -------------------------
# Request
# -------------------------


async def request_quote(
    feed: Feed,
    gateway: Gateway,
    variable_overrides: Optional[Mapping[str, str]] = None,
    min_oracle_samples: Optional[int] = None,
    max_spread_pct: Optional[Decimal] = None,
    num_signatures: int = 1,
) -> Quote:
    """Collect attestations for `feed` and reduce them to a Quote.

    min_oracle_samples and max_spread_pct default to the feed's own
    min_oracle_samples and max_job_range_pct.
    """
    if min_oracle_samples is None:
        min_oracle_samples = feed.min_oracle_samples
    if max_spread_pct is None:
        max_spread_pct = feed.max_job_range_pct
    if num_signatures < 1:
        raise ValueError("num_signatures must be at least 1")
    if min_oracle_samples < 1:
        raise ValueError("min_oracle_samples must be at least 1")
    if max_spread_pct < 0:
        raise ValueError("max_spread_pct must not be negative")

    fid = feed_id(feed)
    overrides = dict(variable_overrides or {})
    log.info(f"Requesting quote for feed {fid.hex()} from {len(gateway.endpoints)} oracle(s)"
             + (f", overrides: {', '.join(sorted(overrides))}" if overrides else ""))

    await gateway.publish_feed(feed)
    slot, slot_hash = await gateway.latest_slot_hash()

    body = {
        "feed": feed.to_dict(),
        "feed_id": fid.hex(),
        "slot": slot,
        "slot_hash": slot_hash.hex(),
        "variable_overrides": overrides,
    }
    responses = await gateway.collect(body)

    samples: Dict[bytes, OracleAttestation] = {}
    for endpoint, att in responses:
        if att.oracle_pubkey != endpoint.pubkey:
            log.warning(f"Oracle {endpoint.url} signed with an unregistered key")
            continue
        if not att.verify():
            log.warning(f"Oracle {endpoint.url} returned an invalid signature")
            continue
        if att.feed_id != fid:
            log.warning(f"Oracle {endpoint.url} attested feed {att.feed_id.hex()}, expected {fid.hex()}")
            continue
        if (att.slot, att.slot_hash) != (slot, slot_hash):
            log.warning(f"Oracle {endpoint.url} attested slot {att.slot}, expected {slot}")
            continue
        if att.oracle_pubkey in samples:
            log.warning(f"Oracle {endpoint.url} duplicates an identity already sampled")
            continue
        samples[att.oracle_pubkey] = att

    values = [a.value for a in samples.values()]

    # -------------------------
    # Quorum enforcement
    # -------------------------

    if len(samples) < min_oracle_samples:
        raise ConsensusError(
            f"Availability quorum not met: {len(samples)}/{len(gateway.endpoints)} "
            f"valid responses, {min_oracle_samples} required",
            samples=values,
        )

    center = median(values)
    spread = spread_pct(values, center)
    if spread > max_spread_pct:
        raise ConsensusError(
            f"Sample coherence failure: spread {spread:.2f}% exceeds {max_spread_pct}% "
            f"around median {center}",
            samples=values,
        )

    if num_signatures > len(samples):
        raise ConsensusError(
            f"{num_signatures} signatures requested, only {len(samples)} distinct oracles responded",
            samples=values,
        )

    selected = select_attestations(list(samples.values()), center, num_signatures)
    log.info(f"Quote for {fid.hex()[:16]}: median {center} from {len(samples)} sample(s), "
             f"spread {spread:.2f}%, {len(selected)} signature(s)")
    return Quote(
        feed_id=fid,
        value=center,
        slot=slot,
        slot_hash=slot_hash,
        attestations=selected,
        num_samples=len(samples),
    )
