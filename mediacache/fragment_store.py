"""
On-disk fragment files.

Each fragment is one file directly under the cache root named
``<stable key>~<offset>``. The stable key is a fixed-width hex digest, so the
name parses unambiguously back into (key, offset) during reconciliation.
Writes of new files go through a dot-prefixed temp file and ``os.replace``
so a crash never leaves a half-written file under a fragment name.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional, Tuple

LOG = logging.getLogger(__name__)

_FRAGMENT_RE = re.compile(r"([0-9a-f]{64})~(0|[1-9][0-9]*)")
_TEMP_PREFIX = ".tmp_"


@dataclass(frozen=True)
class FragmentFile:
    stable_key: str
    offset: int
    size: int
    modified: datetime


def fragment_filename(stable_key: str, offset: int) -> str:
    return f"{stable_key}~{int(offset)}"


def parse_fragment_filename(name: str) -> Optional[Tuple[str, int]]:
    m = _FRAGMENT_RE.fullmatch(name or "")
    if not m:
        return None
    return m.group(1), int(m.group(2))


class FragmentStore:
    def __init__(self, root: str):
        self.root = os.path.abspath(root)

    def ensure_root(self) -> None:
        os.makedirs(self.root, exist_ok=True)

    def path_for(self, stable_key: str, offset: int) -> str:
        return os.path.join(self.root, fragment_filename(stable_key, offset))

    def write(self, stable_key: str, offset: int, data: bytes) -> None:
        """Create (or replace) a fragment file holding exactly ``data``."""
        final_path = self.path_for(stable_key, offset)
        tmp_path = os.path.join(
            self.root,
            f"{_TEMP_PREFIX}{fragment_filename(stable_key, offset)}_{int(time.time() * 1000)}",
        )
        try:
            with open(tmp_path, "wb") as f:
                f.write(data)
            os.replace(tmp_path, final_path)
        except OSError:
            self._unlink_quietly(tmp_path)
            raise

    def write_at(self, stable_key: str, offset: int, position: int, data: bytes) -> None:
        """Overwrite/extend an existing fragment file starting at ``position``."""
        with open(self.path_for(stable_key, offset), "r+b") as f:
            f.seek(position)
            f.write(data)
            f.flush()
            os.fsync(f.fileno())

    def read(self, stable_key: str, offset: int, position: int, length: int) -> Optional[bytes]:
        """Read up to ``length`` bytes at ``position``; None if the file is gone."""
        try:
            with open(self.path_for(stable_key, offset), "rb") as f:
                f.seek(position)
                return f.read(length)
        except FileNotFoundError:
            return None

    def size(self, stable_key: str, offset: int) -> Optional[int]:
        try:
            return os.stat(self.path_for(stable_key, offset)).st_size
        except FileNotFoundError:
            return None

    def delete(self, stable_key: str, offset: int) -> bool:
        return self._unlink_quietly(self.path_for(stable_key, offset))

    def scan(self) -> List[FragmentFile]:
        """List every fragment file under the root. Raises OSError if unreadable."""
        found: List[FragmentFile] = []
        with os.scandir(self.root) as it:
            for de in it:
                parsed = parse_fragment_filename(de.name)
                if parsed is None:
                    continue
                try:
                    if not de.is_file(follow_symlinks=False):
                        continue
                    st = de.stat(follow_symlinks=False)
                except FileNotFoundError:
                    continue
                key, offset = parsed
                found.append(
                    FragmentFile(
                        stable_key=key,
                        offset=offset,
                        size=int(st.st_size),
                        modified=datetime.fromtimestamp(st.st_mtime, tz=timezone.utc),
                    )
                )
        return found

    def remove_stray_files(self) -> int:
        """Delete temp files left behind by writes interrupted mid-way."""
        removed = 0
        with os.scandir(self.root) as it:
            for de in it:
                if de.name.startswith(_TEMP_PREFIX) and self._unlink_quietly(de.path):
                    removed += 1
        return removed

    def wipe(self) -> None:
        try:
            shutil.rmtree(self.root)
        except FileNotFoundError:
            pass
        except OSError as e:
            LOG.warning("Failed to remove cache directory %s: %s", self.root, e)
        self.ensure_root()

    def _unlink_quietly(self, path: str) -> bool:
        try:
            os.remove(path)
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            LOG.warning("Failed to delete cache file %s: %s", path, e)
            return False
