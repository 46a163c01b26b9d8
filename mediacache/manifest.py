"""
Persisted index of cached resources.

The manifest maps a stable key to its Entry and is stored as one JSON
document in the cache root. It is only saved opportunistically, so after a
crash it can disagree with the files on disk. ``reconcile`` repairs that at
startup: the files are the source of truth for what bytes exist, the
manifest is the source of truth for content metadata.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Tuple

from mediacache.fragment_store import FragmentFile, FragmentStore
from mediacache.keys import is_stable_key
from mediacache.models import Entry, Fragment
from mediacache.ranges import intersects

LOG = logging.getLogger(__name__)

MANIFEST_FILENAME = "manifest.json"


@dataclass
class ReconcileReport:
    dropped_records: int = 0
    resized_records: int = 0
    reattached_files: int = 0
    deleted_orphans: int = 0
    dropped_overlaps: int = 0
    removed_entries: int = 0
    stray_files: int = 0


class Manifest:
    def __init__(self, path: str, entries: Optional[Dict[str, Entry]] = None):
        self.path = path
        self._entries: Dict[str, Entry] = dict(entries or {})

    # --- mapping helpers ---

    def get(self, stable_key: str) -> Optional[Entry]:
        return self._entries.get(stable_key)

    def put(self, stable_key: str, entry: Entry) -> None:
        self._entries[stable_key] = entry

    def pop(self, stable_key: str) -> Optional[Entry]:
        return self._entries.pop(stable_key, None)

    def items(self) -> List[Tuple[str, Entry]]:
        return list(self._entries.items())

    def clear(self) -> None:
        self._entries.clear()

    def __contains__(self, stable_key: object) -> bool:
        return stable_key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._entries))

    def byte_count(self) -> int:
        return sum(entry.byte_count for entry in self._entries.values())

    def all_fragments(self) -> List[Tuple[str, Fragment]]:
        out: List[Tuple[str, Fragment]] = []
        for key, entry in self._entries.items():
            for frag in entry.fragments:
                out.append((key, frag))
        return out

    # --- persistence ---

    def to_dict(self) -> Dict[str, object]:
        return {key: entry.to_dict() for key, entry in sorted(self._entries.items())}

    @classmethod
    def from_dict(cls, path: str, data: object) -> "Manifest":
        entries: Dict[str, Entry] = {}
        if not isinstance(data, dict):
            return cls(path, entries)
        for key, raw in data.items():
            if not isinstance(key, str) or not is_stable_key(key) or not isinstance(raw, dict):
                LOG.debug("Skipping malformed manifest record %r", key)
                continue
            try:
                entries[key] = Entry.from_dict(raw)
            except (TypeError, ValueError) as e:
                LOG.debug("Skipping malformed manifest entry %s: %s", key, e)
        return cls(path, entries)

    @classmethod
    def load(cls, cache_dir: str) -> "Manifest":
        """Load the saved manifest; a missing or corrupt document yields an empty one."""
        path = os.path.join(cache_dir, MANIFEST_FILENAME)
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return cls(path)
        except (OSError, ValueError) as e:
            LOG.warning("Cache manifest %s is unreadable, starting empty: %s", path, e)
            return cls(path)
        return cls.from_dict(path, data)

    def save(self) -> None:
        tmp = self.path + ".tmp"
        try:
            with open(tmp, "w", encoding="utf-8") as f:
                json.dump(self.to_dict(), f, indent=2, sort_keys=True)
            os.replace(tmp, self.path)
        except OSError:
            try:
                os.remove(tmp)
            except OSError:
                pass
            raise

    # --- startup repair ---

    def reconcile(self, store: FragmentStore, single_file_byte_limit: int) -> ReconcileReport:
        """Bring the manifest in line with the fragment files under ``store``.

        Raises OSError when the cache directory cannot be listed.
        """
        report = ReconcileReport()
        report.stray_files = store.remove_stray_files()

        on_disk: Dict[Tuple[str, int], FragmentFile] = {}
        for ff in store.scan():
            on_disk[(ff.stable_key, ff.offset)] = ff

        referenced = set()
        for key, entry in self.items():
            kept: List[Fragment] = []
            for frag in entry.fragments:
                ff = on_disk.get((key, frag.offset))
                if ff is None or (key, frag.offset) in referenced:
                    report.dropped_records += 1
                    continue
                disk_size = ff.size
                if disk_size <= 0 or disk_size > single_file_byte_limit:
                    # Not a usable fragment; the file itself is removed below as an orphan.
                    report.dropped_records += 1
                    continue
                if disk_size != frag.size:
                    # A merge grew the file (or a write was cut short) after the last save.
                    frag.size = disk_size
                    report.resized_records += 1
                referenced.add((key, frag.offset))
                kept.append(frag)
            entry.fragments = kept

        for (key, offset), ff in on_disk.items():
            if (key, offset) in referenced:
                continue
            entry = self.get(key)
            size = ff.size
            if entry is None or size <= 0 or size > single_file_byte_limit:
                # Without an Entry there is no trustworthy content metadata.
                store.delete(key, offset)
                report.deleted_orphans += 1
                continue
            entry.fragments.append(
                Fragment(offset=offset, size=size, last_access=ff.modified)
            )
            referenced.add((key, offset))
            report.reattached_files += 1

        for key, entry in self.items():
            entry.sort()
            kept = []
            for frag in entry.fragments:
                if kept and intersects(kept[-1].range, frag.range):
                    store.delete(key, frag.offset)
                    report.dropped_overlaps += 1
                    continue
                kept.append(frag)
            entry.fragments = kept
            if not entry.fragments:
                self.pop(key)
                report.removed_entries += 1

        return report
