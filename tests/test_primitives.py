import os

import pytest

from mediacache import ranges
from mediacache.fragment_store import FragmentStore, fragment_filename, parse_fragment_filename
from mediacache.keys import is_stable_key, stable_key


def test_overlaps_counts_adjacent_ranges():
    assert ranges.overlaps((0, 10), (10, 20))
    assert ranges.overlaps((10, 20), (0, 10))
    assert ranges.overlaps((0, 10), (5, 6))
    assert not ranges.overlaps((0, 10), (11, 20))


def test_intersects_requires_a_shared_byte():
    assert ranges.intersects((0, 10), (9, 12))
    assert not ranges.intersects((0, 10), (10, 20))


def test_contains_and_length():
    assert ranges.contains((0, 100), (0, 100))
    assert ranges.contains((0, 100), (40, 60))
    assert not ranges.contains((0, 100), (90, 101))
    assert ranges.range_length((5, 5)) == 0
    assert ranges.range_length((7, 3)) == 0
    assert ranges.range_length((3, 7)) == 4


def test_normalize_rejects_bad_ranges():
    assert ranges.normalize("3", 8) == (3, 8)
    with pytest.raises(ValueError):
        ranges.normalize(-1, 5)
    with pytest.raises(ValueError):
        ranges.normalize(10, 5)


def test_stable_key_is_deterministic_hex():
    a = stable_key("https://example.com/video.mp4?token=1")
    assert a == stable_key("https://example.com/video.mp4?token=1")
    assert a != stable_key("https://example.com/video.mp4?token=2")
    assert is_stable_key(a)
    assert not is_stable_key("https://example.com")
    assert not is_stable_key(a.upper())


def test_stable_key_rejects_non_strings():
    with pytest.raises(TypeError):
        stable_key(b"bytes")


def test_fragment_filename_round_trips_keys_with_separator_characters():
    # Raw keys may contain "~"; the hashed key never does.
    key = stable_key("weird~key~123")
    assert parse_fragment_filename(fragment_filename(key, 4096)) == (key, 4096)
    assert parse_fragment_filename("manifest.json") is None
    assert parse_fragment_filename(f"{key}~") is None
    assert parse_fragment_filename(f".tmp_{key}~0_1") is None


def test_store_write_read_and_extend(tmp_path):
    store = FragmentStore(str(tmp_path / "c"))
    store.ensure_root()
    key = stable_key("k")

    store.write(key, 100, b"hello")
    assert store.read(key, 100, 1, 3) == b"ell"
    assert store.size(key, 100) == 5

    store.write_at(key, 100, 5, b" world")
    assert store.read(key, 100, 0, 64) == b"hello world"
    assert [n for n in os.listdir(store.root) if n.startswith(".tmp_")] == []


def test_store_missing_file_reads_none(tmp_path):
    store = FragmentStore(str(tmp_path))
    key = stable_key("k")
    assert store.read(key, 0, 0, 10) is None
    assert store.size(key, 0) is None
    assert store.delete(key, 0) is False


def test_scan_ignores_foreign_files(tmp_path):
    store = FragmentStore(str(tmp_path))
    key = stable_key("k")
    store.write(key, 0, b"abc")
    (tmp_path / "manifest.json").write_text("{}")
    (tmp_path / "notes.txt").write_text("x")
    (tmp_path / f"{key}~12").mkdir()

    found = store.scan()
    assert [(f.stable_key, f.offset, f.size) for f in found] == [(key, 0, 3)]


def test_wipe_recreates_empty_root(tmp_path):
    store = FragmentStore(str(tmp_path / "c"))
    store.ensure_root()
    store.write(stable_key("k"), 0, b"abc")
    store.wipe()
    assert os.path.isdir(store.root)
    assert os.listdir(store.root) == []


def test_only_canonical_offsets_parse():
    key = stable_key("k")
    assert parse_fragment_filename(f"{key}~0") == (key, 0)
    assert parse_fragment_filename(f"{key}~007") is None
    assert parse_fragment_filename(f"{key}~٠٧") is None
    assert parse_fragment_filename(f"{key}~7\n") is None
    assert parse_fragment_filename(f"{key}~7 ") is None


def test_scan_skips_non_canonical_names(tmp_path):
    store = FragmentStore(str(tmp_path))
    key = stable_key("k")
    store.write(key, 7, b"abc")
    (tmp_path / f"{key}~007").write_bytes(b"zzz")

    assert [(f.stable_key, f.offset) for f in store.scan()] == [(key, 7)]
