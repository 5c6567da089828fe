# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Receipt Store

Single responsibility: Durable ledger of installed packages.

The store is the only source of truth for "is X installed"; nothing here
scans the Cellar. ``commit_lock`` is the single advisory lock that serializes
installer commit phases system-wide.
"""

import fcntl
import json
import logging
import os
import tempfile
import threading
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import ContextManager, Dict, Iterator, List, Optional

from pydantic import ValidationError

from keg.core.errors import InstallError
from keg.models.package_models import Receipt

logger = logging.getLogger(__name__)


class ReceiptStore(ABC):
    """Keyed record set of Receipts, one per package name"""

    @abstractmethod
    def get(self, name: str) -> Optional[Receipt]:
        ...

    @abstractmethod
    def all(self) -> List[Receipt]:
        ...

    @abstractmethod
    def put(self, receipt: Receipt):
        """Write a receipt, replacing any receipt with the same name."""

    @abstractmethod
    def delete(self, name: str) -> bool:
        ...

    @abstractmethod
    def commit_lock(self, timeout: Optional[float] = None) -> ContextManager[None]:
        """Exclusive lock held for the whole commit phase of a transaction."""

    def is_installed(self, name: str) -> bool:
        return self.get(name) is not None

    def snapshot(self) -> Dict[str, Receipt]:
        """Consistent copy of every receipt, keyed by name."""
        return {r.name: r for r in self.all()}

    def dependents_of(self, name: str) -> List[str]:
        """Installed packages that keep ``name`` as a runtime dependency."""
        return sorted(
            r.name for r in self.all()
            if name in r.runtime_dependency_names
        )

    def close(self):
        pass


class MemoryReceiptStore(ReceiptStore):
    """In-process receipt store for tests and dry runs"""

    def __init__(self):
        self._receipts: Dict[str, Receipt] = {}
        self._mutex = threading.RLock()
        self._commit = threading.Lock()

    def get(self, name: str) -> Optional[Receipt]:
        with self._mutex:
            receipt = self._receipts.get(name)
            return receipt.model_copy(deep=True) if receipt else None

    def all(self) -> List[Receipt]:
        with self._mutex:
            return [r.model_copy(deep=True) for _, r in sorted(self._receipts.items())]

    def put(self, receipt: Receipt):
        with self._mutex:
            self._receipts[receipt.name] = receipt.model_copy(deep=True)

    def delete(self, name: str) -> bool:
        with self._mutex:
            return self._receipts.pop(name, None) is not None

    @contextmanager
    def commit_lock(self, timeout: Optional[float] = None) -> Iterator[None]:
        acquired = self._commit.acquire(timeout=-1 if timeout is None else timeout)
        if not acquired:
            raise InstallError("Timed out waiting for the installer lock")
        try:
            yield
        finally:
            self._commit.release()


class FileReceiptStore(ReceiptStore):
    """
    Receipt store persisted as one JSON document per package.

    Layout::

        receipts/<name>.json
        receipts/.lock
    """

    def __init__(self, receipts_dir: Path):
        """
        Initialize the store.

        Args:
            receipts_dir: Directory holding receipt files (created if missing)
        """
        self.receipts_dir = Path(receipts_dir)
        self.receipts_dir.mkdir(parents=True, exist_ok=True)
        self.lock_path = self.receipts_dir / ".lock"
        self._mutex = threading.RLock()
        self._commit = threading.Lock()

    def _path(self, name: str) -> Path:
        if "/" in name or name.startswith("."):
            raise ValueError(f"Invalid package name for receipt: {name!r}")
        return self.receipts_dir / f"{name}.json"

    def _read(self, path: Path) -> Optional[Receipt]:
        try:
            return Receipt.model_validate_json(path.read_text())
        except FileNotFoundError:
            return None
        except (ValidationError, json.JSONDecodeError) as e:
            logger.error(f"Corrupt receipt {path.name}: {e}")
            raise InstallError(f"Corrupt receipt {path}: {e}", packages=[path.stem])

    def get(self, name: str) -> Optional[Receipt]:
        with self._mutex:
            return self._read(self._path(name))

    def all(self) -> List[Receipt]:
        with self._mutex:
            receipts = []
            for path in sorted(self.receipts_dir.glob("*.json")):
                receipt = self._read(path)
                if receipt is not None:
                    receipts.append(receipt)
            return receipts

    def put(self, receipt: Receipt):
        path = self._path(receipt.name)
        with self._mutex:
            fd, tmp = tempfile.mkstemp(dir=self.receipts_dir, prefix=".receipt.", suffix=".tmp")
            try:
                with os.fdopen(fd, "w") as f:
                    f.write(receipt.model_dump_json(indent=2))
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp, path)
            except BaseException:
                Path(tmp).unlink(missing_ok=True)
                raise
        logger.debug(f"Wrote receipt for {receipt.name} {receipt.version}")

    def delete(self, name: str) -> bool:
        with self._mutex:
            try:
                self._path(name).unlink()
                return True
            except FileNotFoundError:
                return False

    @contextmanager
    def commit_lock(self, timeout: Optional[float] = None) -> Iterator[None]:
        """
        Hold the system-wide installer lock.

        Args:
            timeout: Seconds to wait; None waits forever

        Raises:
            InstallError: If the lock could not be acquired in time
        """
        if not self._commit.acquire(timeout=-1 if timeout is None else timeout):
            raise InstallError("Timed out waiting for the installer lock")
        try:
            with open(self.lock_path, "a") as lock_file:
                self._flock(lock_file, timeout)
                try:
                    yield
                finally:
                    fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)
        finally:
            self._commit.release()

    def _flock(self, lock_file, timeout: Optional[float]):
        if timeout is None:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
            return

        deadline = time.monotonic() + timeout
        while True:
            try:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                return
            except BlockingIOError:
                if time.monotonic() >= deadline:
                    raise InstallError(f"Another keg process holds {self.lock_path}")
                time.sleep(0.05)
