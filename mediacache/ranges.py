"""
Predicates over half-open byte ranges.

A range is a ``(start, end)`` tuple where ``start`` is the first byte and
``end`` is one past the last byte, so ``(0, 100)`` holds 100 bytes.
"""

from __future__ import annotations

from typing import Tuple

ByteRange = Tuple[int, int]


def normalize(start: int, end: int) -> ByteRange:
    start = int(start)
    end = int(end)
    if start < 0:
        raise ValueError(f"range start must be >= 0, got {start}")
    if end < start:
        raise ValueError(f"range end {end} is before start {start}")
    return (start, end)


def range_length(r: ByteRange) -> int:
    return max(0, r[1] - r[0])


def contains(outer: ByteRange, inner: ByteRange) -> bool:
    return outer[0] <= inner[0] and inner[1] <= outer[1]


def intersects(a: ByteRange, b: ByteRange) -> bool:
    # Shares at least one byte.
    return a[0] < b[1] and b[0] < a[1]


def overlaps(a: ByteRange, b: ByteRange) -> bool:
    """True when the ranges share a byte or sit directly next to each other.

    Adjacency counts so that consecutive writes coalesce into one fragment.
    """
    return intersects(a, b) or a[1] == b[0] or b[1] == a[0]
