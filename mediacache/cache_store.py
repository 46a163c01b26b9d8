"""
Disk-backed byte-range cache for streaming media fragments.

Why this exists:
- Players re-request the same byte ranges on every play and every seek.
- A loader asks this cache first, and stores what it fetched from the origin.
- One instance is shared by every playback session in the process.

Design notes:
- Every manifest/filesystem operation runs on one worker thread, in order.
  That is the only synchronization: byte accounting and the manifest are
  cache-wide, so per-entry locks would not protect anything useful.
- Startup reconciliation is the first task on the worker, so anything
  issued before it finishes simply waits in the queue behind it.
- Overlapping or touching writes for one key are merged into a single file
  (capped at ``single_file_byte_limit``) instead of fragmenting the cache.
- Eviction is global LRU over fragments, not per key.
- The manifest is saved only on ``save_manifest()``/``close()``; a crash
  loses recent bookkeeping, which reconciliation repairs on the next start.
"""

from __future__ import annotations

import logging
import os
import tempfile
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime
from typing import Callable, List, Optional, Tuple

from mediacache.errors import CacheClosedError, MissingMetadataError
from mediacache.fragment_store import FragmentStore
from mediacache.keys import stable_key
from mediacache.manifest import MANIFEST_FILENAME, Manifest
from mediacache.models import CacheHit, Entry, Fragment, Metadata, utc_now
from mediacache.ranges import ByteRange, range_length

LOG = logging.getLogger(__name__)

DEFAULT_BYTE_LIMIT = 50 * 1024 * 1024
DEFAULT_SINGLE_FILE_BYTE_LIMIT = 5 * 1024 * 1024


def default_cache_dir() -> str:
    return os.path.join(tempfile.gettempdir(), "mediacache")


def _as_metadata(metadata) -> Optional[Metadata]:
    if metadata is None or isinstance(metadata, Metadata):
        return metadata
    content_type, content_length = metadata
    return Metadata(str(content_type), None if content_length is None else int(content_length))


class _Pending:
    """A participant of a merge: an existing fragment or the incoming payload."""

    __slots__ = ("offset", "size", "fragment", "payload")

    def __init__(self, offset: int, size: int, fragment: Optional[Fragment] = None, payload: Optional[bytes] = None):
        self.offset = offset
        self.size = size
        self.fragment = fragment
        self.payload = payload

    @property
    def is_new(self) -> bool:
        return self.fragment is None


class CacheStore:
    def __init__(
        self,
        cache_dir: Optional[str] = None,
        byte_limit: int = DEFAULT_BYTE_LIMIT,
        single_file_byte_limit: int = DEFAULT_SINGLE_FILE_BYTE_LIMIT,
        debug_logs: bool = False,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        byte_limit = int(byte_limit)
        single_file_byte_limit = int(single_file_byte_limit)
        if byte_limit <= 0:
            raise ValueError(f"byte_limit must be positive, got {byte_limit}")
        if single_file_byte_limit <= 0:
            raise ValueError(f"single_file_byte_limit must be positive, got {single_file_byte_limit}")

        self.cache_dir = os.path.abspath(cache_dir or default_cache_dir())
        self.byte_limit = byte_limit
        self.single_file_byte_limit = single_file_byte_limit
        self.debug_logs = bool(debug_logs)
        self._clock = clock or utc_now

        self._store = FragmentStore(self.cache_dir)
        self._manifest = Manifest(os.path.join(self.cache_dir, MANIFEST_FILENAME))
        self._byte_count = 0

        self._ready = threading.Event()
        self._closed = False
        self._close_lock = threading.Lock()
        self._worker_ident: Optional[int] = None
        self._startup_error: Optional[BaseException] = None

        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="MediaCache")
        self._executor.submit(self._startup)

    # --- readiness ---

    @property
    def is_ready(self) -> bool:
        return self._ready.is_set()

    def wait_until_ready(self, timeout: Optional[float] = None) -> bool:
        return self._ready.wait(timeout)

    @property
    def startup_error(self) -> Optional[BaseException]:
        return self._startup_error

    @property
    def byte_count(self) -> int:
        return self._byte_count

    @property
    def entry_count(self) -> int:
        return self._call_sync(lambda: len(self._manifest))

    def _startup(self) -> None:
        self._worker_ident = threading.get_ident()
        try:
            self._store.ensure_root()
            self._manifest = Manifest.load(self.cache_dir)
            report = self._manifest.reconcile(self._store, self.single_file_byte_limit)
            LOG.info(
                "Cache ready at %s: %d entries, dropped %d records, re-attached %d files, deleted %d orphans",
                self.cache_dir,
                len(self._manifest),
                report.dropped_records,
                report.reattached_files,
                report.deleted_orphans,
            )
        except OSError as e:
            # Cache unavailability must never block playback: continue empty.
            self._startup_error = e
            self._manifest = Manifest(os.path.join(self.cache_dir, MANIFEST_FILENAME))
            LOG.error("Cache reconciliation failed for %s, starting empty: %s", self.cache_dir, e)
        finally:
            self._update_byte_count()
            self._ready.set()

    # --- worker plumbing ---

    def _on_worker(self) -> bool:
        return self._worker_ident is not None and threading.get_ident() == self._worker_ident

    def _submit(self, fn: Callable, callback: Optional[Callable] = None) -> Future:
        # The callback only sees successful results; failures travel through the Future alone.
        with self._close_lock:
            if self._closed:
                raise CacheClosedError("cache store is closed")
            fut = self._executor.submit(fn)
        if callback is not None:

            def _done(f: Future) -> None:
                if f.cancelled() or f.exception() is not None:
                    return
                try:
                    callback(f.result())
                except Exception:
                    LOG.exception("Cache callback raised")

            fut.add_done_callback(_done)
        return fut

    def _call_sync(self, fn: Callable):
        if self._on_worker():
            return fn()
        return self._submit(fn).result()

    def _log(self, msg: str, *args) -> None:
        LOG.log(logging.INFO if self.debug_logs else logging.DEBUG, msg, *args)

    # --- public operations ---

    def get(self, key: str, byte_range: ByteRange, callback: Optional[Callable[[Optional[CacheHit]], None]] = None) -> Future:
        """Look up ``byte_range`` asynchronously; the Future resolves to a CacheHit or None.

        ``callback`` is called with the result on success only. Errors are
        reported through the returned Future.
        """
        return self._submit(lambda: self._get(key, byte_range), callback)

    def get_sync(self, key: str, byte_range: ByteRange) -> Optional[CacheHit]:
        return self._call_sync(lambda: self._get(key, byte_range))

    def set(
        self,
        key: str,
        data: bytes,
        offset: int,
        metadata=None,
        callback: Optional[Callable[[None], None]] = None,
    ) -> Future:
        """Store ``data`` at ``offset`` asynchronously.

        ``metadata`` (content type, total length) is required for the first
        write of a key; omitting it then fails the Future with
        MissingMetadataError. As with ``get``, ``callback`` runs only when
        the write succeeds, so check the Future for errors.
        """
        return self._submit(lambda: self._set(key, data, offset, metadata), callback)

    def set_sync(self, key: str, data: bytes, offset: int, metadata=None) -> None:
        self._call_sync(lambda: self._set(key, data, offset, metadata))

    def clear(self) -> None:
        self._call_sync(self._clear)

    def save_manifest(self) -> Future:
        return self._submit(self._save_manifest)

    def fragments_for(self, key: str) -> List[Fragment]:
        def _op() -> List[Fragment]:
            entry = self._manifest.get(stable_key(key))
            if entry is None:
                return []
            return [f.copy() for f in sorted(entry.fragments, key=lambda f: f.offset)]

        return self._call_sync(_op)

    def metadata_for(self, key: str) -> Optional[Metadata]:
        def _op() -> Optional[Metadata]:
            entry = self._manifest.get(stable_key(key))
            return entry.metadata if entry is not None else None

        return self._call_sync(_op)

    def stats(self) -> Tuple[int, int, int]:
        """Return ``(entries, fragments, bytes)``."""

        def _op() -> Tuple[int, int, int]:
            return (len(self._manifest), len(self._manifest.all_fragments()), self._byte_count)

        return self._call_sync(_op)

    def close(self) -> None:
        """Save the manifest and stop the worker.

        Safe to call from a callback; the worker then stops once the
        callback returns.
        """
        with self._close_lock:
            if self._closed:
                return
            self._closed = True
            on_worker = self._on_worker()
            save = None if on_worker else self._executor.submit(self._save_manifest)
        try:
            if save is None:
                self._save_manifest()
            else:
                save.result()
        except OSError as e:
            LOG.warning("Failed to save cache manifest on close: %s", e)
        self._executor.shutdown(wait=not on_worker)

    def __enter__(self) -> "CacheStore":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # --- operations (worker thread only) ---

    def _get(self, key: str, byte_range: ByteRange) -> Optional[CacheHit]:
        start, end = int(byte_range[0]), int(byte_range[1])
        length = range_length((start, end))
        if start < 0 or length <= 0:
            return None

        skey = stable_key(key)
        entry = self._manifest.get(skey)
        if entry is None:
            self._log("Cache miss (no entry) %s [%d, %d)", skey[:12], start, end)
            return None
        frag = entry.fragment_containing((start, end))
        if frag is None:
            self._log("Cache miss %s [%d, %d)", skey[:12], start, end)
            return None

        data = self._store.read(skey, frag.offset, start - frag.offset, length)
        if data is None or len(data) != length:
            # Removed or truncated behind our back: degrade to a miss.
            LOG.warning(
                "Cache file for %s at offset %d is missing or short; dropping record",
                skey[:12],
                frag.offset,
            )
            self._remove_fragment(skey, entry, frag)
            self._update_byte_count()
            return None

        frag.last_access = self._clock()
        self._log("Cache hit %s [%d, %d) from fragment at %d", skey[:12], start, end, frag.offset)
        return CacheHit(data, entry.content_type, entry.content_length)

    def _set(self, key: str, data: bytes, offset: int, metadata) -> None:
        offset = int(offset)
        if offset < 0:
            raise ValueError(f"offset must be >= 0, got {offset}")
        metadata = _as_metadata(metadata)
        skey = stable_key(key)

        entry = self._manifest.get(skey)
        created = entry is None
        if entry is None:
            if metadata is None:
                raise MissingMetadataError(
                    f"no cache entry for key {key!r} and no metadata supplied to create one"
                )
            entry = Entry(content_type=metadata.content_type, content_length=metadata.content_length)
            self._manifest.put(skey, entry)
            self._log("Cache entry created %s (%s, %s bytes)", skey[:12], entry.content_type, entry.content_length)

        payload = bytes(data[: self.single_file_byte_limit])
        size = len(payload)
        if size == 0:
            return

        new_range = (offset, offset + size)
        if entry.fragment_containing(new_range) is not None:
            return

        before = self._byte_count
        overlapping = entry.fragments_overlapping(new_range)
        if overlapping:
            self._merge(skey, entry, overlapping, offset, payload)
        else:
            try:
                self._store.write(skey, offset, payload)
            except OSError as e:
                LOG.warning("Failed to write cache fragment %s at %d: %s", skey[:12], offset, e)
                if created:
                    self._manifest.pop(skey)
                return
            entry.fragments.append(Fragment(offset=offset, size=size, last_access=self._clock()))
            self._log("Cache stored %s [%d, %d)", skey[:12], offset, offset + size)

        self._update_byte_count()
        if self._byte_count != before:
            self._trim()

    def _merge(self, skey: str, entry: Entry, overlapping: List[Fragment], offset: int, payload: bytes) -> None:
        limit = self.single_file_byte_limit
        parts = [_Pending(f.offset, f.size, fragment=f) for f in overlapping]
        parts.append(_Pending(offset, len(payload), payload=payload))
        # Lowest offset becomes the target file; an existing file wins a tie.
        parts.sort(key=lambda p: (p.offset, p.is_new))
        target = parts[0]
        rest = parts[1:]

        if target.is_new:
            try:
                self._store.write(skey, target.offset, payload)
            except OSError as e:
                LOG.warning("Failed to write cache fragment %s at %d: %s", skey[:12], target.offset, e)
                return
            target.fragment = Fragment(offset=target.offset, size=target.size)
            entry.fragments.append(target.fragment)

        extent = target.size
        consumed: List[_Pending] = []
        for i, part in enumerate(rest):
            rel = part.offset - target.offset
            if extent >= limit or rel >= limit or rel > extent:
                # Beyond the single-file cap (or would leave a hole): discard.
                consumed.extend(rest[i:])
                break

            want = min(part.size, limit - rel)
            if part.is_new:
                chunk = payload[:want]
            else:
                chunk = self._store.read(skey, part.offset, 0, want) or b""
                if len(chunk) != want:
                    LOG.warning("Cache file for %s at offset %d vanished during merge", skey[:12], part.offset)
                    consumed.append(part)
                    continue

            try:
                self._store.write_at(skey, target.offset, rel, chunk)
            except OSError as e:
                LOG.warning("Failed to merge into cache fragment %s at %d: %s", skey[:12], target.offset, e)
                consumed.extend(rest[i:])
                break

            extent = max(extent, rel + len(chunk))
            consumed.append(part)
            if want < part.size:
                consumed.extend(rest[i + 1 :])
                break

        for part in consumed:
            if part.fragment is not None:
                self._remove_fragment(skey, entry, part.fragment)

        target.fragment.size = extent
        target.fragment.last_access = self._clock()
        self._log(
            "Cache merged %d fragments of %s into [%d, %d)",
            len(consumed) + 1,
            skey[:12],
            target.offset,
            target.offset + extent,
        )

    def _trim(self) -> None:
        if self._byte_count <= self.byte_limit:
            return
        candidates = self._manifest.all_fragments()
        candidates.sort(key=lambda kf: kf[1].last_access)
        evicted = 0
        for skey, frag in candidates:
            if self._byte_count <= self.byte_limit:
                break
            entry = self._manifest.get(skey)
            if entry is None:
                continue
            self._remove_fragment(skey, entry, frag)
            self._byte_count -= frag.size
            evicted += 1
        self._update_byte_count()
        self._log("Cache trimmed %d fragments, now %d/%d bytes", evicted, self._byte_count, self.byte_limit)

    def _clear(self) -> None:
        self._manifest.clear()
        self._store.wipe()
        self._update_byte_count()
        LOG.info("Cache cleared at %s", self.cache_dir)

    def _save_manifest(self) -> None:
        self._manifest.save()
        self._log("Cache manifest saved (%d entries)", len(self._manifest))

    # --- helpers ---

    def _remove_fragment(self, skey: str, entry: Entry, frag: Fragment) -> None:
        self._store.delete(skey, frag.offset)
        entry.remove(frag)
        self._drop_if_empty(skey, entry)

    def _drop_if_empty(self, skey: str, entry: Entry) -> None:
        if not entry.fragments and self._manifest.get(skey) is entry:
            self._manifest.pop(skey)

    def _update_byte_count(self) -> None:
        self._byte_count = self._manifest.byte_count()
