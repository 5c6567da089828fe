# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Artifact Cache

Single responsibility: Content-addressed blob store with a durable index.

Layout under the cache root::

    index.json            fingerprint -> CacheEntry
    .index.lock           advisory lock guarding index writes
    blobs/ab/abcdef...    payloads, named by fingerprint

Payload files are written once and never rewritten. Artifacts are evicted
only under size pressure (least-recently-validated first) or on checksum
mismatch; metadata entries additionally expire by TTL. Entries pinned by an
in-flight transaction are never evicted.
"""

import fcntl
import hashlib
import json
import logging
import os
import tempfile
import threading
from contextlib import contextmanager
from datetime import datetime, UTC
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Set, Union

from pydantic import ValidationError

from keg.core.logging import log_event
from keg.models.package_models import CacheEntry, CacheKind

logger = logging.getLogger(__name__)

INDEX_VERSION = 1


def sha256_hex(payload: bytes) -> str:
    return hashlib.sha256(payload).hexdigest()


def metadata_fingerprint(name: str, version: str, checksum: str) -> str:
    """Fingerprint of parsed formula metadata: hash of name, version and source checksum."""
    return sha256_hex("\0".join([name, version, checksum]).encode())


class ArtifactCache:
    """Durable content-addressed cache shared by the resolver and installer"""

    def __init__(self, root: Path, budget_bytes: int = 10 * 1024 * 1024 * 1024):
        """
        Initialize the cache.

        Args:
            root: Cache directory (created if missing)
            budget_bytes: Total payload size above which eviction runs
        """
        self.root = Path(root)
        self.budget_bytes = budget_bytes
        self.blobs_dir = self.root / "blobs"
        self.index_file = self.root / "index.json"
        self.lock_file = self.root / ".index.lock"

        self.blobs_dir.mkdir(parents=True, exist_ok=True)

        self._lock = threading.RLock()
        self._pins: Dict[str, int] = {}
        self._dirty = False
        self._removed: Set[str] = set()  # Dropped here since the last save
        self._entries: Dict[str, CacheEntry] = self._load_index()

    # -------------------------------------------------------------------------
    # Index persistence
    # -------------------------------------------------------------------------

    def _load_index(self) -> Dict[str, CacheEntry]:
        if not self.index_file.exists():
            return {}

        try:
            data = json.loads(self.index_file.read_text())
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to load cache index, starting empty: {e}")
            return {}

        entries = {}
        for fingerprint, raw in data.get("entries", {}).items():
            try:
                entry = CacheEntry.model_validate(raw)
            except ValidationError as e:
                logger.warning(f"Dropping malformed cache entry {fingerprint}: {e}")
                continue
            if (self.root / entry.location).exists():
                entries[fingerprint] = entry
        return entries

    def _save_index(self):
        """Merge with the index on disk, then rewrite it, all under the file lock."""
        with open(self.lock_file, "a") as lock:
            fcntl.flock(lock.fileno(), fcntl.LOCK_EX)
            try:
                self._merge(self._load_index())
                data = {
                    "version": INDEX_VERSION,
                    "entries": {fp: e.model_dump(mode="json") for fp, e in self._entries.items()},
                }
                fd, tmp = tempfile.mkstemp(dir=self.root, prefix=".index.", suffix=".tmp")
                with os.fdopen(fd, "w") as f:
                    json.dump(data, f, indent=2)
                os.replace(tmp, self.index_file)
            finally:
                fcntl.flock(lock.fileno(), fcntl.LOCK_UN)
        self._removed.clear()
        self._dirty = False

    def _merge(self, on_disk: Dict[str, CacheEntry]):
        """Adopt entries other handles wrote and forget ones whose payload is gone."""
        for fingerprint, entry in on_disk.items():
            if fingerprint in self._removed:
                continue
            mine = self._entries.get(fingerprint)
            if mine is None:
                self._entries[fingerprint] = entry
            elif entry.last_validated > mine.last_validated:
                mine.last_validated = entry.last_validated

        for fingerprint, entry in list(self._entries.items()):
            if not self.path_for(entry).exists():
                del self._entries[fingerprint]

    def flush(self):
        """Persist pending index changes (last-validated timestamps)."""
        with self._lock:
            if self._dirty:
                self._save_index()

    def close(self):
        self.flush()

    # -------------------------------------------------------------------------
    # Contract
    # -------------------------------------------------------------------------

    def _blob_location(self, fingerprint: str) -> str:
        return f"blobs/{fingerprint[:2]}/{fingerprint}"

    def path_for(self, entry: CacheEntry) -> Path:
        return self.root / entry.location

    def lookup(self, fingerprint: str) -> Optional[CacheEntry]:
        """
        Find a live entry and mark it validated.

        Returns:
            A copy of the entry, or None if absent, expired or its payload vanished
        """
        with self._lock:
            entry = self._entries.get(fingerprint)
            if entry is None:
                # Another handle may have stored it since we last looked
                self._merge(self._load_index())
                entry = self._entries.get(fingerprint)
            if entry is None:
                return None

            if entry.is_expired() and not self._pins.get(fingerprint):
                logger.debug(f"Cache entry expired: {fingerprint}")
                self._drop(fingerprint)
                self._save_index()
                return None

            if not self.path_for(entry).exists():
                logger.warning(f"Cache payload missing for {fingerprint}, dropping entry")
                self._entries.pop(fingerprint, None)
                self._removed.add(fingerprint)
                self._save_index()
                return None

            entry.last_validated = datetime.now(UTC)
            self._dirty = True
            return entry.model_copy()

    def store(
        self,
        fingerprint: str,
        payload: bytes,
        size: Optional[int] = None,
        kind: CacheKind = CacheKind.ARTIFACT,
        ttl_seconds: Optional[int] = None,
        pin: bool = False
    ) -> CacheEntry:
        """
        Store a payload under its fingerprint.

        Storing an existing fingerprint is a no-op that returns the existing
        entry. Eviction runs afterwards; ``pin=True`` pins the entry before
        eviction so it survives even when it alone exceeds the budget.

        Raises:
            ValueError: If ``size`` disagrees with the payload length
        """
        if size is not None and size != len(payload):
            raise ValueError(f"Declared size {size} does not match payload length {len(payload)}")

        with self._lock:
            existing = self._entries.get(fingerprint)
            if existing is not None and self.path_for(existing).exists() and not existing.is_expired():
                logger.debug(f"Duplicate store ignored for {fingerprint}")
                if pin:
                    self._pins[fingerprint] = self._pins.get(fingerprint, 0) + 1
                return existing.model_copy()

            location = self._blob_location(fingerprint)
            path = self.root / location
            if not (path.exists() and path.stat().st_size == len(payload)):
                self._write_blob(path, payload)

            entry = CacheEntry(
                fingerprint=fingerprint,
                kind=kind,
                location=location,
                size=len(payload),
                ttl_seconds=ttl_seconds if kind == CacheKind.METADATA else None,
            )
            self._entries[fingerprint] = entry
            self._removed.discard(fingerprint)
            self._save_index()

            # Pinned only once the entry is durable; eviction failures do not undo the store
            if pin:
                self._pins[fingerprint] = self._pins.get(fingerprint, 0) + 1
            try:
                self.evict_if_over_budget()
            except OSError as e:
                logger.error(f"Eviction after storing {fingerprint} failed: {e}")
            return entry.model_copy()

    def _write_blob(self, path: Path, payload: bytes):
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=".blob.", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

    def read(self, entry: Union[CacheEntry, str]) -> bytes:
        """
        Read a payload.

        Raises:
            KeyError: If a fingerprint has no entry
        """
        with self._lock:
            if isinstance(entry, str):
                entry = self._entries[entry]
            return self.path_for(entry).read_bytes()

    def evict_if_over_budget(self) -> List[str]:
        """
        Evict expired metadata, then least-recently-validated entries until
        the total size fits the budget. Pinned entries are skipped.

        Returns:
            Evicted fingerprints
        """
        with self._lock:
            evicted = []
            for fingerprint, entry in list(self._entries.items()):
                if entry.is_expired() and not self._pins.get(fingerprint):
                    self._drop(fingerprint)
                    evicted.append(fingerprint)

            total = self.total_size
            if total > self.budget_bytes:
                candidates = sorted(
                    (e for fp, e in self._entries.items() if not self._pins.get(fp)),
                    key=lambda e: e.last_validated
                )
                for entry in candidates:
                    if total <= self.budget_bytes:
                        break
                    self._drop(entry.fingerprint)
                    total -= entry.size
                    evicted.append(entry.fingerprint)

                if total > self.budget_bytes:
                    logger.warning(
                        f"Cache over budget ({total} > {self.budget_bytes} bytes) "
                        f"with only pinned entries left"
                    )

            if evicted:
                log_event(logger, "cache_evicted", entries=len(evicted), total_bytes=total, budget_bytes=self.budget_bytes)
                self._save_index()
            return evicted

    def _drop(self, fingerprint: str):
        entry = self._entries.pop(fingerprint, None)
        self._removed.add(fingerprint)
        if entry is not None:
            self.path_for(entry).unlink(missing_ok=True)

    # -------------------------------------------------------------------------
    # Pinning
    # -------------------------------------------------------------------------

    def pin(self, fingerprint: str):
        """
        Protect an entry from eviction until ``unpin``.

        Raises:
            KeyError: If the fingerprint is not cached
        """
        with self._lock:
            if fingerprint not in self._entries:
                raise KeyError(fingerprint)
            self._pins[fingerprint] = self._pins.get(fingerprint, 0) + 1

    def unpin(self, fingerprint: str):
        with self._lock:
            count = self._pins.get(fingerprint, 0)
            if count <= 1:
                self._pins.pop(fingerprint, None)
            else:
                self._pins[fingerprint] = count - 1

    def is_pinned(self, fingerprint: str) -> bool:
        with self._lock:
            return self._pins.get(fingerprint, 0) > 0

    @contextmanager
    def pinned(self, fingerprints: Iterable[str]) -> Iterator[None]:
        """Pin entries for the duration of a block."""
        held = []
        try:
            for fingerprint in fingerprints:
                self.pin(fingerprint)
                held.append(fingerprint)
            yield
        finally:
            for fingerprint in held:
                self.unpin(fingerprint)

    # -------------------------------------------------------------------------
    # Maintenance
    # -------------------------------------------------------------------------

    def verify(self, fingerprint: str) -> bool:
        """
        Recompute an artifact's digest against its fingerprint.

        A mismatching, unpinned entry is removed.
        """
        with self._lock:
            entry = self._entries.get(fingerprint)
            if entry is None:
                return False
            if entry.kind != CacheKind.ARTIFACT:
                return True

            actual = sha256_hex(self.path_for(entry).read_bytes())
            if actual == fingerprint:
                return True

            logger.warning(f"Cached artifact {fingerprint} is corrupt (digest {actual})")
            if not self._pins.get(fingerprint):
                self._drop(fingerprint)
                self._save_index()
            return False

    def remove(self, fingerprint: str) -> bool:
        """Remove an unpinned entry. Returns False if absent or pinned."""
        with self._lock:
            if fingerprint not in self._entries:
                return False
            if self._pins.get(fingerprint):
                logger.warning(f"Refusing to remove pinned cache entry {fingerprint}")
                return False
            self._drop(fingerprint)
            self._save_index()
            return True

    def clear(self) -> int:
        """Remove every unpinned entry. Returns the number removed."""
        with self._lock:
            removable = [fp for fp in self._entries if not self._pins.get(fp)]
            for fingerprint in removable:
                self._drop(fingerprint)
            self._save_index()
            return len(removable)

    def __contains__(self, fingerprint: str) -> bool:
        with self._lock:
            return fingerprint in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    @property
    def total_size(self) -> int:
        with self._lock:
            return sum(e.size for e in self._entries.values())

    def stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        with self._lock:
            return {
                "total_entries": len(self._entries),
                "artifact_entries": sum(1 for e in self._entries.values() if e.kind == CacheKind.ARTIFACT),
                "metadata_entries": sum(1 for e in self._entries.values() if e.kind == CacheKind.METADATA),
                "pinned_entries": len(self._pins),
                "total_bytes": self.total_size,
                "budget_bytes": self.budget_bytes,
            }
