# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Transactional Installer

Single responsibility: Apply an installation plan all-or-nothing

A transaction has two phases:

1. Stage - every install/upgrade node is fetched (or taken from the cache),
   verified and unpacked into a private staging directory, concurrently and
   with bounded parallelism. Nothing outside the staging area is touched, so
   any failure here leaves the system exactly as it was.
2. Commit - under the system-wide commit lock, staged kegs are renamed into
   the Cellar in plan order and their receipts written. Every step is
   journaled; a failure rolls the journal back in reverse. Cancellation is
   deferred while this phase runs.

Linking runs after a successful commit and never fails the transaction.
"""

import asyncio
import hashlib
import io
import logging
import os
import shutil
import stat
import tarfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import unquote, urlparse

from keg.core.config import Config
from keg.core.logging import log_event
from keg.core.errors import (
    ChecksumMismatch,
    CommitIOError,
    DependentsExist,
    InstallError,
    KegError,
    PackageNotInstalled,
    StagingIOError,
    TransactionCancelled,
    TransportError,
    sanitize_error_for_user,
)
from keg.models.package_models import (
    ArtifactRef,
    CacheKind,
    InstallationPlan,
    InstallPhase,
    InstallResult,
    NodeAction,
    ProgressCallback,
    ProgressEvent,
    Receipt,
    ReceiptDependency,
    ResolvedNode,
    TransactionOperation,
    TransactionRecord,
    TransactionStatus,
)

from .cache import ArtifactCache
from .download import Fetcher
from .linker import Linker
from .receipts import ReceiptStore
from .transactions import TransactionLogger

logger = logging.getLogger(__name__)


@dataclass
class _JournalEntry:
    """What the commit phase did for one node"""
    node: ResolvedNode
    keg: Path
    previous: Optional[Receipt]
    backup: Optional[Path] = None
    staged: Optional[Path] = None
    moved: bool = False
    receipt: Optional[Receipt] = None


def _emit(progress: Optional[ProgressCallback], package: str, phase: InstallPhase, bytes_so_far: int = 0):
    if progress is None:
        return
    try:
        progress(ProgressEvent(package=package, phase=phase, bytes_so_far=bytes_so_far))
    except Exception:
        logger.exception(f"Progress callback failed for {package} ({phase.value})")


def _is_cancelled(cancel: Optional[Any]) -> bool:
    return cancel is not None and cancel.is_set()


async def _in_thread(func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    """
    Run ``func`` in a worker thread.

    A cancelled caller still waits for the thread to return before the
    cancellation propagates, so nothing the thread touches outlives the
    coroutine that started it.
    """
    future = asyncio.ensure_future(asyncio.to_thread(func, *args, **kwargs))
    try:
        return await asyncio.shield(future)
    except asyncio.CancelledError:
        while not future.done():
            try:
                await asyncio.wait([future])
            except asyncio.CancelledError:
                continue
        if not future.cancelled() and future.exception() is not None:
            logger.debug(f"{func.__name__} failed after cancellation: {future.exception()}")
        raise


class TransactionalInstaller:
    """Stages and commits installation plans"""

    def __init__(
        self,
        config: Config,
        cache: ArtifactCache,
        receipts: ReceiptStore,
        fetcher: Fetcher,
        transaction_logger: Optional[TransactionLogger] = None,
        linker: Optional[Linker] = None
    ):
        """
        Initialize installer.

        Args:
            config: Engine configuration (prefix, platform, workers)
            cache: Artifact cache
            receipts: Receipt store; its commit lock serializes commits
            fetcher: Transport used on cache misses
            transaction_logger: Transaction journal
            linker: Prefix linker
        """
        self.config = config
        self.cache = cache
        self.receipts = receipts
        self.fetcher = fetcher
        self.transaction_logger = transaction_logger or TransactionLogger(config.transactions_log)
        self.linker = linker or Linker(config.prefix, config.cellar_dir, config.link_dirs)

    def keg_path(self, name: str, version: str) -> Path:
        return self.config.cellar_dir / name / version

    # =========================================================================
    # APPLY
    # =========================================================================

    async def apply(
        self,
        plan: InstallationPlan,
        progress: Optional[ProgressCallback] = None,
        cancel: Optional[Any] = None
    ) -> InstallResult:
        """
        Apply a plan atomically.

        Args:
            plan: Dependency-first plan from the resolver
            progress: Called at step boundaries; its exceptions are logged
                and never affect the transaction
            cancel: Object with ``is_set()`` (asyncio.Event or
                threading.Event), honoured until the commit phase starts

        Returns:
            Install result (zero actions when everything is installed)

        Raises:
            TransportError: If an artifact could not be fetched; nothing changed
            StagingIOError: If an artifact could not be cached or unpacked; nothing changed
            TransactionCancelled: If cancelled before commit; nothing changed
            CommitIOError: If moving into place failed; see ``rolled_back``
        """
        skipped = [n.name for n in plan.nodes if n.action == NodeAction.SKIP]
        if plan.is_noop:
            logger.info("Nothing to do: every package in the plan is already installed")
            return InstallResult(skipped=skipped)

        names = [n.name for n in plan.actionable]
        transaction = self.transaction_logger.create_transaction(TransactionOperation.INSTALL, names)
        transaction.status = TransactionStatus.IN_PROGRESS
        self.transaction_logger.log(transaction)

        staging_root = self.config.staging_dir / transaction.id
        pinned: List[str] = []
        try:
            try:
                staged = await self._stage_all(plan, staging_root, pinned, progress, cancel)
                if _is_cancelled(cancel):
                    raise TransactionCancelled(names)
            except (Exception, asyncio.CancelledError) as e:
                self._finish(transaction, TransactionStatus.FAILED, e)
                raise

            result = await self._run_commit(plan, staged, transaction, progress)
            result.skipped = skipped + result.skipped
            self._finish(transaction, TransactionStatus.COMPLETED)
            log_event(
                logger, "transaction_completed",
                transaction_id=transaction.id,
                installed=len(result.installed),
                upgraded=len(result.upgraded),
                skipped=len(result.skipped)
            )
            return result
        finally:
            shutil.rmtree(staging_root, ignore_errors=True)
            for fingerprint in pinned:
                self.cache.unpin(fingerprint)
            self.cache.flush()

    def _finish(
        self,
        transaction: TransactionRecord,
        status: TransactionStatus,
        error: Optional[BaseException] = None
    ) -> TransactionRecord:
        rolled_back = isinstance(error, InstallError) and error.rolled_back
        if rolled_back:
            status = TransactionStatus.ROLLED_BACK
        if isinstance(error, asyncio.CancelledError):
            message = "cancelled"
        else:
            message = sanitize_error_for_user(error) if error is not None else None
        return self.transaction_logger.finish(transaction, status, error=message, rolled_back=rolled_back)

    async def _run_commit(
        self,
        plan: InstallationPlan,
        staged: Dict[str, Path],
        transaction: TransactionRecord,
        progress: Optional[ProgressCallback]
    ) -> InstallResult:
        commit = asyncio.ensure_future(asyncio.to_thread(self._commit, plan, staged, transaction.id, progress))
        cancelled = False
        while True:
            try:
                result = await asyncio.shield(commit)
                break
            except asyncio.CancelledError:
                cancelled = True
                logger.warning(f"Cancellation deferred until transaction {transaction.id} commits")
            except Exception as e:
                self._finish(transaction, TransactionStatus.FAILED, e)
                raise

        if cancelled:
            self._finish(transaction, TransactionStatus.COMPLETED)
            raise asyncio.CancelledError()
        return result

    # =========================================================================
    # STAGING
    # =========================================================================

    async def _stage_all(
        self,
        plan: InstallationPlan,
        staging_root: Path,
        pinned: List[str],
        progress: Optional[ProgressCallback],
        cancel: Optional[Any]
    ) -> Dict[str, Path]:
        semaphore = asyncio.Semaphore(self.config.max_workers)
        tasks = {
            node.name: asyncio.create_task(
                self._stage_node(node, staging_root, semaphore, pinned, progress, cancel)
            )
            for node in plan.actionable
        }

        try:
            await asyncio.wait(tasks.values(), return_when=asyncio.FIRST_EXCEPTION)
            for name, task in tasks.items():
                if task.done() and not task.cancelled() and task.exception() is not None:
                    logger.error(f"Staging failed for {name}, cancelling remaining downloads")
                    raise task.exception()
        finally:
            for task in tasks.values():
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks.values(), return_exceptions=True)

        return {name: task.result() for name, task in tasks.items()}

    async def _stage_node(
        self,
        node: ResolvedNode,
        staging_root: Path,
        semaphore: asyncio.Semaphore,
        pinned: List[str],
        progress: Optional[ProgressCallback],
        cancel: Optional[Any]
    ) -> Path:
        async with semaphore:
            if _is_cancelled(cancel):
                raise TransactionCancelled([node.name])

            if node.formula is None:
                raise StagingIOError(node.name, f"no formula available for version {node.version}")
            artifact = node.formula.artifact_for(self.config.platform, self.config.build_from_source)
            if artifact is None:
                raise StagingIOError(node.name, f"no artifact for platform {self.config.platform}")
            if self.config.build_from_source or self.config.platform not in node.formula.binaries:
                # Source archives need a build step this installer does not run
                raise StagingIOError(
                    node.name,
                    f"{artifact.url} is a source archive and building from source is not supported"
                )

            payload = await self._obtain(node, artifact, pinned, progress)

            if _is_cancelled(cancel):
                raise TransactionCancelled([node.name])

            target = staging_root / node.name
            await _in_thread(self._unpack, node, artifact, payload, target)
            _emit(progress, node.name, InstallPhase.STAGE, len(payload))
            logger.debug(f"Staged {node.name} {node.version} at {target}")
            return target

    async def _obtain(
        self,
        node: ResolvedNode,
        artifact: ArtifactRef,
        pinned: List[str],
        progress: Optional[ProgressCallback]
    ) -> bytes:
        """Cached payload when valid, otherwise a verified download stored in the cache."""
        fingerprint = artifact.sha256

        entry = self.cache.lookup(fingerprint)
        if entry is not None:
            try:
                self.cache.pin(fingerprint)
                pinned.append(fingerprint)
            except KeyError:
                entry = None

        if entry is not None:
            try:
                payload = await _in_thread(self.cache.read, entry)
            except OSError as e:
                logger.warning(f"Cached artifact for {node.name} is unreadable ({e}), fetching again")
                payload = b""
            if hashlib.sha256(payload).hexdigest() == fingerprint:
                logger.info(f"Using cached artifact for {node.name} {node.version}")
                return payload
            logger.warning(f"Cached artifact for {node.name} is corrupt, fetching again")
            pinned.remove(fingerprint)
            self.cache.unpin(fingerprint)
            self.cache.remove(fingerprint)

        _emit(progress, node.name, InstallPhase.FETCH, 0)
        try:
            payload = await self.fetcher.fetch(
                artifact.url,
                fingerprint,
                progress=lambda count: _emit(progress, node.name, InstallPhase.FETCH, count)
            )
        except TransportError as e:
            if e.package is None:
                e.package = node.name
                e.details["package"] = node.name
            raise

        actual = hashlib.sha256(payload).hexdigest()
        if actual != fingerprint:
            raise ChecksumMismatch(artifact.url, fingerprint, actual, package=node.name)

        # Listed before the thread starts so a cancelled store is still unpinned
        pinned.append(fingerprint)
        try:
            await _in_thread(
                self.cache.store, fingerprint, payload, kind=CacheKind.ARTIFACT, pin=True
            )
        except OSError as e:
            pinned.remove(fingerprint)
            raise StagingIOError(node.name, f"could not cache artifact: {e}")
        return payload

    def _unpack(self, node: ResolvedNode, artifact: ArtifactRef, payload: bytes, target: Path):
        """
        Unpack a payload into ``target`` as a keg root.

        Bottles (``<name>/<version>/...``) and archives with a single
        top-level directory are flattened to that directory. Payloads that
        are not tar archives are installed as a single executable in bin/.
        """
        scratch = target.with_name(f".{target.name}.unpack")
        try:
            buffer = io.BytesIO(payload)
            if not tarfile.is_tarfile(buffer):
                filename = Path(unquote(urlparse(artifact.url).path)).name or node.name
                executable = target / "bin" / filename
                executable.parent.mkdir(parents=True)
                executable.write_bytes(payload)
                executable.chmod(executable.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
                return

            buffer.seek(0)
            scratch.mkdir(parents=True)
            with tarfile.open(fileobj=buffer, mode="r:*") as archive:
                archive.extractall(scratch, filter="data")

            root = scratch
            bottle = scratch / node.name / node.version
            entries = list(scratch.iterdir())
            if bottle.is_dir():
                root = bottle
            elif len(entries) == 1 and entries[0].is_dir() and not entries[0].is_symlink():
                root = entries[0]

            os.rename(root, target)
        except (OSError, tarfile.TarError) as e:
            raise StagingIOError(node.name, str(e))
        finally:
            shutil.rmtree(scratch, ignore_errors=True)

    # =========================================================================
    # COMMIT
    # =========================================================================

    def _commit(
        self,
        plan: InstallationPlan,
        staged: Dict[str, Path],
        transaction_id: str,
        progress: Optional[ProgressCallback]
    ) -> InstallResult:
        result = InstallResult(transaction_id=transaction_id)
        with self.receipts.commit_lock(self.config.lock_timeout):
            journal: List[_JournalEntry] = []
            for node in plan.actionable:
                if not node.retained:
                    logger.debug(f"Not committing build-only dependency {node.name}")
                    continue

                current = self.receipts.get(node.name)
                if current is not None and current.version == node.version and set(current.variants) == set(node.variants):
                    logger.info(f"{node.name} {node.version} was installed concurrently, skipping")
                    result.skipped.append(node.name)
                    continue

                entry = _JournalEntry(node=node, keg=self.keg_path(node.name, node.version), previous=current)
                journal.append(entry)
                try:
                    self._commit_node(entry, staged[node.name], plan, transaction_id)
                except (OSError, InstallError) as e:
                    logger.error(f"Commit failed for {node.name}: {e}; rolling back {len(journal)} packages")
                    errors = self._rollback(journal, progress)
                    raise CommitIOError(node.name, str(e), rolled_back=not errors, rollback_errors=errors)

                _emit(progress, node.name, InstallPhase.COMMIT)
                if node.action == NodeAction.UPGRADE:
                    result.upgraded.append(node.name)
                else:
                    result.installed.append(node.name)

            obsolete = self._finalize(journal, transaction_id)
            self._link_all(journal, result, progress)

        self._discard(obsolete)
        return result

    def _commit_node(self, entry: _JournalEntry, staged: Path, plan: InstallationPlan, transaction_id: str):
        node = entry.node
        keg = entry.keg

        if keg.exists() or keg.is_symlink():
            entry.backup = keg.with_name(f".{keg.name}.backup-{transaction_id}")
            os.rename(keg, entry.backup)

        keg.parent.mkdir(parents=True, exist_ok=True)
        os.rename(staged, keg)
        entry.staged = staged
        entry.moved = True

        dependencies = [ReceiptDependency(name=plan.nodes[i].name) for i in node.dependencies]
        dependencies += [ReceiptDependency(name=plan.nodes[i].name, build_only=True) for i in node.build_dependencies]
        receipt = Receipt(
            name=node.name,
            version=node.version,
            variants=sorted(node.variants),
            files=self._list_files(keg),
            dependencies=dependencies,
            transaction_id=transaction_id,
        )
        self.receipts.put(receipt)
        entry.receipt = receipt
        log_event(logger, "package_committed", package=node.name, version=node.version, transaction_id=transaction_id)

    def _list_files(self, keg: Path) -> List[str]:
        files = []
        for path in sorted(keg.rglob("*")):
            if path.is_symlink() or not path.is_dir():
                files.append(str(path.relative_to(self.config.prefix)))
        return files

    def _rollback(self, journal: List[_JournalEntry], progress: Optional[ProgressCallback]) -> List[str]:
        """Undo journal entries in reverse order. Returns errors that could not be undone."""
        errors = []
        for entry in reversed(journal):
            name = entry.node.name
            try:
                if entry.moved:
                    # Back into staging; the transaction cleanup deletes it
                    os.rename(entry.keg, entry.staged)
                if entry.backup is not None:
                    os.rename(entry.backup, entry.keg)
                if entry.previous is not None:
                    self.receipts.put(entry.previous)
                else:
                    self.receipts.delete(name)
                self._remove_if_empty(entry.keg.parent)
                log_event(logger, "package_rolled_back", package=name, version=entry.node.version)
            except (OSError, InstallError) as e:
                log_event(logger, "rollback_failed", level="ERROR", package=name, error=str(e))
                errors.append(f"{name}: {e}")
            _emit(progress, name, InstallPhase.ROLLBACK)
        return errors

    def _finalize(self, journal: List[_JournalEntry], transaction_id: str) -> List[Path]:
        """
        Move replaced kegs out of the Cellar.

        Only renames happen here, under the commit lock. Returns the backups
        and moved kegs for ``_discard`` to delete once the lock is released.
        """
        obsolete = []
        for entry in journal:
            if entry.backup is not None:
                obsolete.append(entry.backup)

            previous = entry.previous
            if previous is None or previous.version == entry.node.version:
                continue

            old_keg = self.keg_path(previous.name, previous.version)
            aside = self.config.staging_dir / transaction_id / f"{previous.name}-{previous.version}.obsolete"
            try:
                os.rename(old_keg, aside)
            except FileNotFoundError:
                continue
            except OSError as e:
                logger.warning(f"Could not retire {previous.name} {previous.version}: {e}")
                continue
            obsolete.append(aside)
            logger.info(f"Removed {previous.name} {previous.version}")
        return obsolete

    def _discard(self, obsolete: List[Path]):
        """Delete retired trees. Failures only leave clutter."""
        for path in obsolete:
            try:
                shutil.rmtree(path)
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.warning(f"Left {path} behind: {e}")

    def _link_all(self, journal: List[_JournalEntry], result: InstallResult, progress: Optional[ProgressCallback]):
        for entry in journal:
            node = entry.node
            try:
                if entry.previous is not None:
                    self.linker.unlink(node.name)
                report = self.linker.link(node.name, node.version)
            except OSError as e:
                logger.error(f"Linking {node.name} failed: {e}")
                result.link_conflicts.append(f"{node.name}: {e}")
                continue

            result.linked.append(node.name)
            result.link_conflicts.extend(f"{node.name}: {c}" for c in report.conflicts)
            _emit(progress, node.name, InstallPhase.LINK)

    def _remove_if_empty(self, directory: Path):
        try:
            directory.rmdir()
        except OSError:
            pass

    # =========================================================================
    # UNINSTALL
    # =========================================================================

    async def uninstall(self, name: str, force: bool = False) -> TransactionRecord:
        """
        Remove an installed package.

        Args:
            name: Package name
            force: Remove even if other receipts depend on it

        Returns:
            Completed transaction record

        Raises:
            PackageNotInstalled: If no receipt exists
            DependentsExist: If other packages depend on it and not forced
            InstallError: If removal failed (the package is restored)
        """
        transaction = self.transaction_logger.create_transaction(TransactionOperation.UNINSTALL, [name])
        transaction.status = TransactionStatus.IN_PROGRESS
        self.transaction_logger.log(transaction)

        try:
            broken = await _in_thread(self._uninstall, name, force, transaction.id)
        except KegError as e:
            logger.error(f"Uninstall of {name} failed: {e}")
            self._finish(transaction, TransactionStatus.FAILED, e)
            raise

        logger.info(f"Package {name} removed successfully")
        if broken:
            return self.transaction_logger.finish(
                transaction,
                TransactionStatus.COMPLETED,
                error=f"Forced removal of {name} left dangling dependencies in {', '.join(broken)}"
            )
        return self._finish(transaction, TransactionStatus.COMPLETED)

    def _uninstall(self, name: str, force: bool, transaction_id: str) -> List[str]:
        """Remove ``name`` under the commit lock. Returns dependents left with a dangling edge."""
        with self.receipts.commit_lock(self.config.lock_timeout):
            receipt = self.receipts.get(name)
            if receipt is None:
                raise PackageNotInstalled(name)

            dependents = self.receipts.dependents_of(name)
            if dependents:
                if not force:
                    raise DependentsExist(name, dependents)
                log_event(
                    logger, "dependency_edges_broken", level="WARNING",
                    package=name, dependents=dependents, transaction_id=transaction_id
                )

            keg = self.keg_path(name, receipt.version)
            aside = self.config.staging_dir / f"{name}-{receipt.version}.remove-{transaction_id}"
            self.linker.unlink(name)

            try:
                if keg.exists():
                    aside.parent.mkdir(parents=True, exist_ok=True)
                    os.rename(keg, aside)
                self.receipts.delete(name)
            except (OSError, InstallError) as e:
                self._restore_uninstall(receipt, keg, aside)
                raise InstallError(
                    f"Uninstall of {name} failed: {e}; the package was restored",
                    packages=[name],
                    rolled_back=True
                )

            for relative in receipt.files:
                path = self.config.prefix / relative
                if keg in path.parents:
                    continue
                path.unlink(missing_ok=True)
            self._remove_if_empty(keg.parent)

        self._discard([aside])
        return dependents

    def _restore_uninstall(self, receipt: Receipt, keg: Path, aside: Path):
        try:
            if aside.exists() and not keg.exists():
                os.rename(aside, keg)
            self.receipts.put(receipt)
            self.linker.link(receipt.name, receipt.version)
        except (OSError, InstallError) as e:
            logger.error(f"Could not restore {receipt.name} after failed uninstall: {e}")
