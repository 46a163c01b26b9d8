"""
Cache-first range loader.

Turns "give me bytes N.. of this URL" into a cache lookup and, on a miss, a
ranged GET against the origin whose body is stored back into the cache.
Open-ended requests are capped to ``chunk_bytes`` so a single request never
pulls a whole file. Retrying is left to the caller.
"""

from __future__ import annotations

import logging
import re
from typing import Dict, NamedTuple, Optional, Tuple

import requests

from mediacache.cache_store import CacheStore
from mediacache.errors import LoaderError
from mediacache.models import Metadata

LOG = logging.getLogger(__name__)

DEFAULT_CHUNK_BYTES = 1 << 20

_DEFAULT_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/121.0.0.0 Safari/537.36"
)

_CONTENT_RANGE_RE = re.compile(r"^\s*bytes\s+(\d+)-(\d+)/(\d+|\*)\s*$", re.IGNORECASE)


class LoadResult(NamedTuple):
    data: bytes
    content_type: str
    content_length: Optional[int]
    from_cache: bool


def parse_content_range(value: Optional[str]) -> Optional[Tuple[int, int, Optional[int]]]:
    # Example: "bytes 0-0/12345" or "bytes 0-0/*"
    if not value:
        return None
    m = _CONTENT_RANGE_RE.match(value)
    if not m:
        return None
    total_raw = m.group(3)
    total = None if total_raw == "*" else int(total_raw)
    return int(m.group(1)), int(m.group(2)), total


def format_range_header(start: int, end_inclusive: int) -> str:
    return f"bytes={int(start)}-{int(end_inclusive)}"


def _content_type(r: requests.Response, default: str = "application/octet-stream") -> str:
    ct = r.headers.get("Content-Type") or ""
    return ct.split(";")[0].strip() or default


def _read_body(r: requests.Response, skip: int, limit: int) -> bytes:
    out = bytearray()
    for chunk in r.iter_content(chunk_size=256 * 1024):
        if not chunk:
            continue
        if skip:
            if len(chunk) <= skip:
                skip -= len(chunk)
                continue
            chunk = chunk[skip:]
            skip = 0
        out.extend(chunk)
        if len(out) >= limit:
            break
    return bytes(out[:limit])


class RangeLoader:
    def __init__(
        self,
        cache: CacheStore,
        session: Optional[requests.Session] = None,
        chunk_bytes: int = DEFAULT_CHUNK_BYTES,
        headers: Optional[Dict[str, str]] = None,
        timeout: Tuple[float, float] = (10, 60),
    ):
        self.cache = cache
        self.chunk_bytes = max(1, int(chunk_bytes))
        self.headers = dict(headers or {})
        self.timeout = timeout
        if session is None:
            session = requests.Session()
            adapter = requests.adapters.HTTPAdapter(pool_connections=8, pool_maxsize=8)
            session.mount("http://", adapter)
            session.mount("https://", adapter)
        self.session = session

    def _request_headers(self) -> Dict[str, str]:
        hdrs = dict(self.headers)
        hdrs.setdefault("User-Agent", _DEFAULT_UA)
        hdrs.setdefault("Accept", "*/*")
        # Ranged fetches must be byte-exact, so no transparent compression.
        hdrs.setdefault("Accept-Encoding", "identity")
        return hdrs

    def _get(self, url: str, start: int, end_inclusive: int) -> requests.Response:
        hdrs = self._request_headers()
        hdrs["Range"] = format_range_header(start, end_inclusive)
        try:
            return self.session.get(url, headers=hdrs, stream=True, timeout=self.timeout, allow_redirects=True)
        except requests.RequestException as e:
            raise LoaderError(f"origin fetch failed for {url}: {e}") from e

    def load(self, url: str, start: int, length: Optional[int] = None) -> LoadResult:
        """Return bytes ``[start, start + length)`` of ``url``.

        ``length=None`` means "everything from ``start``" and is capped to
        ``chunk_bytes``. When the total length is already known the request
        is also clamped to the end of the resource; reading at or past the
        end returns no data. The result may be shorter than requested when
        the origin clamps the range at the end of the resource.
        """
        start = int(start)
        if start < 0:
            raise ValueError(f"start must be >= 0, got {start}")
        if length is None:
            length = self.chunk_bytes
        length = int(length)
        if length <= 0:
            raise ValueError(f"length must be positive, got {length}")

        known = self.cache.metadata_for(url)
        if known is not None and known.content_length is not None:
            # Never ask past EOF, or the short tail fragment can never satisfy a later lookup.
            remaining = known.content_length - start
            if remaining <= 0:
                return LoadResult(b"", known.content_type, known.content_length, True)
            length = min(length, remaining)

        hit = self.cache.get_sync(url, (start, start + length))
        if hit is not None:
            return LoadResult(hit.data, hit.content_type, hit.content_length, True)

        r = self._get(url, start, start + length - 1)
        try:
            if r.status_code == 200:
                # Origin ignored Range and returned the full body. Serve it, do not cache it.
                LOG.debug("Origin ignored Range for %s; serving uncached", url)
                data = _read_body(r, start, length)
                total = None
                try:
                    total = int(r.headers.get("Content-Length", "")) or None
                except ValueError:
                    pass
                return LoadResult(data, _content_type(r), total, False)
            if r.status_code != 206:
                raise LoaderError(f"origin returned HTTP {r.status_code} for {url}", r.status_code)

            parsed = parse_content_range(r.headers.get("Content-Range", ""))
            served_start, total = start, None
            if parsed:
                served_start, _, total = parsed
            if served_start != start:
                raise LoaderError(f"origin served range starting at {served_start}, wanted {start}", r.status_code)

            data = _read_body(r, 0, length)
            metadata = Metadata(_content_type(r), total)
        finally:
            r.close()

        if data:
            self.cache.set_sync(url, data, start, metadata)
        return LoadResult(data, metadata.content_type, metadata.content_length, False)

    def content_info(self, url: str) -> Metadata:
        """Return content type and total length, probing the origin if the cache has none."""
        known = self.cache.metadata_for(url)
        if known is not None:
            return known

        r = self._get(url, 0, 0)
        try:
            if r.status_code == 206:
                parsed = parse_content_range(r.headers.get("Content-Range", ""))
                total = parsed[2] if parsed else None
            elif r.status_code == 200:
                total = None
                try:
                    total = int(r.headers.get("Content-Length", "")) or None
                except ValueError:
                    pass
            else:
                raise LoaderError(f"origin returned HTTP {r.status_code} for {url}", r.status_code)
            metadata = Metadata(_content_type(r), total)
        finally:
            r.close()

        self.cache.set_sync(url, b"", 0, metadata)
        return metadata
