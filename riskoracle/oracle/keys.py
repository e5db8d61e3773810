# oracle/keys.py
"""
Persistent Ed25519 signing key for an oracle node.
The key is generated once and stored as a hex seed; consumers pin the
public key through the oracle queue.
"""

import os
from pathlib import Path
from typing import Union

from nacl.signing import SigningKey

DEFAULT_KEY_PATH = Path.home() / ".risk-oracle" / "oracle_ed25519.key"


def load_or_create_signing_key(path: Union[str, Path] = DEFAULT_KEY_PATH) -> SigningKey:
    """Load an existing Ed25519 key or generate a new persistent one."""
    path = Path(path)
    if path.exists():
        seed_hex = path.read_text().strip()
        return SigningKey(bytes.fromhex(seed_hex))

    sk = SigningKey.generate()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(bytes(sk).hex())
    os.chmod(str(path), 0o600)
    return sk
