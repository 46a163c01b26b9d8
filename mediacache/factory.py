from typing import Any, Optional

import requests

from mediacache.cache_store import CacheStore, default_cache_dir
from mediacache.loader import RangeLoader


def _kb(config: Any, key: str, default_kb: int) -> int:
    try:
        kb = int(config.get(key, default_kb))
    except (TypeError, ValueError):
        kb = default_kb
    return max(1, kb) * 1024


def create_cache_store(config: Any) -> CacheStore:
    """Build the process's cache from a ConfigManager (or any dict-like config)."""
    return CacheStore(
        cache_dir=config.get("cache_dir") or default_cache_dir(),
        byte_limit=_kb(config, "cache_byte_limit_kb", 51200),
        single_file_byte_limit=_kb(config, "cache_single_file_limit_kb", 5120),
        debug_logs=bool(config.get("cache_debug", False)),
    )


def create_range_loader(config: Any, cache: CacheStore, session: Optional[requests.Session] = None) -> RangeLoader:
    headers = config.get("loader_headers") or {}
    if not isinstance(headers, dict):
        headers = {}
    return RangeLoader(
        cache,
        session=session,
        chunk_bytes=_kb(config, "loader_chunk_kb", 1024),
        headers={str(k): str(v) for k, v in headers.items()},
        timeout=(
            float(config.get("loader_connect_timeout_seconds", 10)),
            float(config.get("loader_read_timeout_seconds", 60)),
        ),
    )
