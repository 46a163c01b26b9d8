from __future__ import annotations

import hashlib
import re

_STABLE_KEY_RE = re.compile(r"^[0-9a-f]{64}$")


def stable_key(key: str) -> str:
    """Map a free-form resource key (usually a URL) to a filesystem-safe id."""
    if not isinstance(key, str):
        raise TypeError(f"cache key must be a str, got {type(key).__name__}")
    return hashlib.sha256(key.encode("utf-8", "surrogatepass")).hexdigest()


def is_stable_key(value: str) -> bool:
    return bool(value) and _STABLE_KEY_RE.match(value) is not None
