from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, NamedTuple, Optional

from dateutil import parser as dateparser

from mediacache.ranges import ByteRange, contains, overlaps


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(dt: datetime) -> str:
    """Return a UTC ISO 8601 string; equal-width strings sort chronologically."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_timestamp(value: str) -> datetime:
    dt = dateparser.isoparse(value)
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


class Metadata(NamedTuple):
    content_type: str
    content_length: Optional[int] = None


class CacheHit(NamedTuple):
    data: bytes
    content_type: str
    content_length: Optional[int]


@dataclass
class Fragment:
    offset: int
    size: int
    last_access: datetime = field(default_factory=utc_now)

    @property
    def range(self) -> ByteRange:
        return (self.offset, self.offset + self.size)

    def contains(self, r: ByteRange) -> bool:
        return contains(self.range, r)

    def overlaps(self, r: ByteRange) -> bool:
        return overlaps(self.range, r)

    def copy(self) -> "Fragment":
        return Fragment(offset=self.offset, size=self.size, last_access=self.last_access)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "offset": self.offset,
            "size": self.size,
            "lastAccessTime": format_timestamp(self.last_access),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Fragment":
        offset = int(data["offset"])
        size = int(data["size"])
        if offset < 0 or size < 0:
            raise ValueError(f"invalid fragment record: offset={offset} size={size}")
        return cls(offset=offset, size=size, last_access=parse_timestamp(str(data["lastAccessTime"])))


@dataclass
class Entry:
    """Content metadata plus the stored fragments of one resource."""

    content_type: str
    content_length: Optional[int] = None
    fragments: List[Fragment] = field(default_factory=list)

    @property
    def metadata(self) -> Metadata:
        return Metadata(self.content_type, self.content_length)

    @property
    def byte_count(self) -> int:
        return sum(f.size for f in self.fragments)

    def fragment_containing(self, r: ByteRange) -> Optional[Fragment]:
        for frag in self.fragments:
            if frag.contains(r):
                return frag
        return None

    def fragments_overlapping(self, r: ByteRange) -> List[Fragment]:
        return [f for f in self.fragments if f.overlaps(r)]

    def remove(self, fragment: Fragment) -> bool:
        # Identity, not equality: two records may briefly share offset and size.
        for i, frag in enumerate(self.fragments):
            if frag is fragment:
                del self.fragments[i]
                return True
        return False

    def sort(self) -> None:
        self.fragments.sort(key=lambda f: f.offset)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "contentType": self.content_type,
            "contentLength": self.content_length,
            "fragments": [f.to_dict() for f in sorted(self.fragments, key=lambda f: f.offset)],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Entry":
        content_type = data.get("contentType")
        if not isinstance(content_type, str):
            raise ValueError("entry record has no contentType")
        content_length = data.get("contentLength")
        if content_length is not None:
            content_length = int(content_length)
            if content_length < 0:
                content_length = None
        fragments: List[Fragment] = []
        for raw in data.get("fragments") or []:
            if not isinstance(raw, dict):
                continue
            try:
                fragments.append(Fragment.from_dict(raw))
            except (KeyError, TypeError, ValueError, OverflowError):
                continue
        return cls(content_type=content_type, content_length=content_length, fragments=fragments)
