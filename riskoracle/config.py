"""
Runtime settings, read from RISK_ORACLE_* environment variables.

  RISK_ORACLE_RPC_URL          JSON-RPC endpoint used for the slot hash source
  RISK_ORACLE_NODES            url=pubkeyhex,url=pubkeyhex,...
  RISK_ORACLE_CROSSBAR_URL     optional feed metadata store
  RISK_ORACLE_QUEUE            oracle queue address (base58), no default
  RISK_ORACLE_PROGRAM_ID       risk score program address (base58)
  RISK_ORACLE_TIMEOUT          seconds to wait for oracle responses
  RISK_ORACLE_RETRIES          attempts per oracle
  RISK_ORACLE_MIN_SAMPLES      minimum distinct oracle responses
  RISK_ORACLE_MAX_SPREAD_PCT   maximum sample spread, percent of median
  RISK_ORACLE_NUM_SIGNATURES   attestations embedded in a quote
  RISK_ORACLE_MAX_AGE_SLOTS    staleness window enforced on-chain
  RISK_ORACLE_NODE_HOST / RISK_ORACLE_NODE_PORT / RISK_ORACLE_KEY_PATH
  RANGE_API_KEY                resolved into ${RANGE_API_KEY} by oracles
"""

import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Dict, Mapping, Optional, Tuple

from riskoracle.chain.types import pubkey
from riskoracle.feeds.risk_score import API_KEY_VAR
from riskoracle.oracle.keys import DEFAULT_KEY_PATH

PREFIX = "RISK_ORACLE_"


@dataclass(frozen=True)
class Settings:
    rpc_url: Optional[str] = None
    nodes: Tuple[Tuple[str, bytes], ...] = ()
    crossbar_url: Optional[str] = None
    queue: Optional[bytes] = None
    program_id: Optional[bytes] = None
    timeout: float = 5.0
    retries: int = 2
    min_samples: int = 1
    max_spread_pct: Decimal = Decimal(100)
    num_signatures: int = 1
    max_age_slots: int = 50
    node_host: str = "0.0.0.0"
    node_port: int = 9100
    key_path: Path = DEFAULT_KEY_PATH
    range_api_key: Optional[str] = None

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ

        def get(name, default=None):
            value = env.get(PREFIX + name, "").strip()
            return value if value else default

        def number(name, kind, default):
            raw = get(name)
            if raw is None:
                return default
            try:
                return kind(raw)
            except (ValueError, InvalidOperation):
                raise ValueError(f"{PREFIX}{name} is not a valid {kind.__name__}: {raw!r}")

        def address(name):
            raw = get(name)
            return pubkey(raw) if raw is not None else None

        return cls(
            rpc_url=get("RPC_URL"),
            nodes=parse_nodes(get("NODES", "")),
            crossbar_url=get("CROSSBAR_URL"),
            queue=address("QUEUE"),
            program_id=address("PROGRAM_ID"),
            timeout=number("TIMEOUT", float, 5.0),
            retries=number("RETRIES", int, 2),
            min_samples=number("MIN_SAMPLES", int, 1),
            max_spread_pct=number("MAX_SPREAD_PCT", Decimal, Decimal(100)),
            num_signatures=number("NUM_SIGNATURES", int, 1),
            max_age_slots=number("MAX_AGE_SLOTS", int, 50),
            node_host=get("NODE_HOST", "0.0.0.0"),
            node_port=number("NODE_PORT", int, 9100),
            key_path=Path(get("KEY_PATH", str(DEFAULT_KEY_PATH))),
            range_api_key=env.get(API_KEY_VAR) or None,
        )

    def variable_overrides(self) -> Dict[str, str]:
        if self.range_api_key:
            return {API_KEY_VAR: self.range_api_key}
        return {}


def parse_nodes(text: str) -> Tuple[Tuple[str, bytes], ...]:
    """Parse 'url=pubkeyhex,url=pubkeyhex' into (url, pubkey) pairs."""
    nodes = []
    for item in text.split(","):
        item = item.strip()
        if not item:
            continue
        url, sep, key_hex = item.rpartition("=")
        if not sep or not url:
            raise ValueError(f"node entry must be url=pubkeyhex: {item!r}")
        try:
            key = bytes.fromhex(key_hex)
        except ValueError:
            raise ValueError(f"node pubkey is not hex: {key_hex!r}")
        if len(key) != 32:
            raise ValueError(f"node pubkey must be 32 bytes: {key_hex!r}")
        nodes.append((url.rstrip("/"), key))
    return tuple(nodes)
