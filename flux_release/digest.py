"""Digests of chart values and artifacts."""

import hashlib
import json
from typing import Any

__all__ = [
    "digest_values",
    "digest_bytes",
]

ALGORITHM = "sha256"


def digest_values(values: dict[str, Any] | None) -> str:
    """Return the canonical digest of a set of chart values.

    Key order does not change the digest; an empty and a missing set of
    values produce the same digest.
    """
    canonical = json.dumps(
        values or {}, sort_keys=True, separators=(",", ":"), default=str
    )
    return digest_bytes(canonical.encode("utf-8"))


def digest_bytes(content: bytes) -> str:
    """Return the digest of raw content in `algorithm:hex` form."""
    return f"{ALGORITHM}:{hashlib.new(ALGORITHM, content).hexdigest()}"
