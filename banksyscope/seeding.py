"""Deterministic seed derivation; avoids Python's salted hash and global RNG state."""
import hashlib
import json
from typing import Any



SALT_PCA = "reduce.pca"
SALT_UMAP = "reduce.umap"
SALT_CLUSTER = "cluster"


def _token_to_str(token: Any) -> str:
    return json.dumps(token, sort_keys=True, separators=(",", ":"), default=str)


def derive_seed(seed: int, *salt: Any) -> int:
    """Stable uint32 seed from a combo seed and a component-specific salt."""
    parts = [str(int(seed))] + [_token_to_str(tok) for tok in salt]
    digest = hashlib.sha256("|".join(parts).encode("utf-8")).digest()
    offset = int.from_bytes(digest[:8], "big")
    return int((int(seed) + offset) % (2**32))
