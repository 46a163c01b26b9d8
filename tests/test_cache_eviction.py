from datetime import datetime, timedelta, timezone

from mediacache import CacheStore, Metadata

META = Metadata("audio/mpeg", 10_000)
PAYLOAD = bytes(range(250)) + bytes(range(50))  # 300 bytes


class _Clock:
    def __init__(self):
        self.now = datetime(2026, 1, 1, tzinfo=timezone.utc)

    def __call__(self):
        self.now += timedelta(seconds=1)
        return self.now


def _store(tmp_path, byte_limit=1000, single_file_byte_limit=1000):
    store = CacheStore(
        cache_dir=str(tmp_path / "cache"),
        byte_limit=byte_limit,
        single_file_byte_limit=single_file_byte_limit,
        clock=_Clock(),
    )
    assert store.wait_until_ready(timeout=5)
    return store


def test_global_lru_evicts_oldest_fragments_across_keys(tmp_path):
    store = _store(tmp_path)
    try:
        for i in range(5):
            store.set_sync(f"https://cdn.example/{i}.mp4", PAYLOAD, 0, META)

        assert store.byte_count <= 1000
        assert store.get_sync("https://cdn.example/0.mp4", (0, 300)) is None
        assert store.get_sync("https://cdn.example/1.mp4", (0, 300)) is None
        for i in (2, 3, 4):
            hit = store.get_sync(f"https://cdn.example/{i}.mp4", (0, 300))
            assert hit is not None
            assert hit.data == PAYLOAD
    finally:
        store.close()


def test_reads_refresh_recency(tmp_path):
    store = _store(tmp_path)
    try:
        for i in range(3):
            store.set_sync(f"k{i}", PAYLOAD, 0, META)
        assert store.get_sync("k0", (0, 10)) is not None

        store.set_sync("k3", PAYLOAD, 0, META)

        assert store.get_sync("k1", (0, 10)) is None
        assert store.get_sync("k0", (0, 10)) is not None
        assert store.get_sync("k2", (0, 10)) is not None
        assert store.get_sync("k3", (0, 10)) is not None
    finally:
        store.close()


def test_eviction_is_per_fragment_and_drops_empty_entries(tmp_path):
    store = _store(tmp_path)
    try:
        store.set_sync("a", PAYLOAD, 0, META)
        store.set_sync("b", PAYLOAD, 0, META)
        store.set_sync("a", PAYLOAD, 5000)  # second fragment of "a", newest
        assert store.stats() == (2, 3, 900)

        store.set_sync("c", PAYLOAD, 0, META)

        # Only the oldest fragment of "a" went; its newer fragment keeps the entry alive.
        assert [(f.offset, f.size) for f in store.fragments_for("a")] == [(5000, 300)]
        assert store.stats() == (3, 3, 900)
        assert store.entry_count == 3

        store.set_sync("d", PAYLOAD, 0, META)
        assert store.fragments_for("b") == []
        assert store.metadata_for("b") is None
    finally:
        store.close()


def test_under_budget_nothing_is_evicted(tmp_path):
    store = _store(tmp_path, byte_limit=10_000)
    try:
        for i in range(5):
            store.set_sync(f"k{i}", PAYLOAD, 0, META)
        assert store.byte_count == 1500
        assert store.stats()[1] == 5
    finally:
        store.close()
