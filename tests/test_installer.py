# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Integration Tests for the Transactional Installer

Runs real plans against a temporary prefix: staging failures must be full
no-ops, commit failures must roll back completely, and build-only
dependencies must never leave receipts behind.
"""

import asyncio
import logging
import threading

import pytest

from keg.core.errors import (
    ChecksumMismatch,
    CommitIOError,
    DependentsExist,
    DownloadFailed,
    PackageNotInstalled,
    StagingIOError,
    TransactionCancelled,
)
from keg.engine.cache import ArtifactCache, sha256_hex
from keg.engine.installer import TransactionalInstaller, _in_thread
from keg.engine.receipts import FileReceiptStore
from keg.engine.transactions import TransactionLogger
from keg.models.package_models import (
    ArtifactRef,
    DependencyKind,
    Formula,
    InstallPhase,
    TransactionStatus,
)


class FailingReceiptStore(FileReceiptStore):
    """Receipt store whose writes fail for one package"""

    def __init__(self, receipts_dir, fail_for):
        super().__init__(receipts_dir)
        self.fail_for = fail_for

    def put(self, receipt):
        if receipt.name == self.fail_for:
            raise OSError(28, "No space left on device")
        super().put(receipt)


class BlockingReceiptStore(FileReceiptStore):
    """Receipt store whose writes wait until released"""

    def __init__(self, receipts_dir):
        super().__init__(receipts_dir)
        self.entered = threading.Event()
        self.release = threading.Event()

    def put(self, receipt):
        self.entered.set()
        self.release.wait(5)
        super().put(receipt)


class FullDiskCache(ArtifactCache):
    """Cache that cannot store anything"""

    def store(self, *args, **kwargs):
        raise OSError(28, "No space left on device")


class RecordingInstaller(TransactionalInstaller):
    """Installer noting whether the commit lock is held while old trees are deleted"""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.discarded = []

    def _discard(self, obsolete):
        self.discarded.append((list(obsolete), self.receipts._commit.locked()))
        super()._discard(obsolete)


def installer_with(config, cache, fetcher, receipts, cls=TransactionalInstaller):
    return cls(
        config, cache, receipts, fetcher,
        transaction_logger=TransactionLogger(config.transactions_log)
    )


def kegs(config):
    if not config.cellar_dir.exists():
        return []
    return sorted(str(p.relative_to(config.cellar_dir)) for p in config.cellar_dir.glob("*/*"))


def assert_untouched(config, receipts):
    assert receipts.all() == []
    assert kegs(config) == []
    assert not (config.prefix / "bin").exists() or list((config.prefix / "bin").iterdir()) == []
    if config.staging_dir.exists():
        assert list(config.staging_dir.iterdir()) == []


@pytest.fixture
def three_packages(repo):
    repo.add("lib1", "1.0")
    repo.add("lib2", "2.0")
    repo.add("app", "3.0", deps=["lib1", "lib2"])
    return repo


class TestApply:
    """Test successful transactions"""

    @pytest.mark.asyncio
    async def test_wget_installs_runtime_but_not_build_deps(self, config, repo, resolver, installer, receipts):
        """Test build-only pkg-config leaves no receipt or keg"""
        repo.add("pkg-config", "0.29.2")
        repo.add("openssl@3", "3.3.1", files={"bin/openssl": b"x", "lib/libssl.so.3": b"so"})
        repo.add("wget", "1.24.5", deps=[("pkg-config", DependencyKind.BUILD), "openssl@3"])

        plan = resolver.resolve(["wget"], receipts.snapshot())
        result = await installer.apply(plan)

        assert sorted(r.name for r in receipts.all()) == ["openssl@3", "wget"]
        assert kegs(config) == ["openssl@3/3.3.1", "wget/1.24.5"]
        assert result.installed == ["openssl@3", "wget"]
        assert result.linked == ["openssl@3", "wget"]
        assert (config.prefix / "bin" / "wget").is_symlink()
        assert (config.prefix / "lib" / "libssl.so.3").is_symlink()

        wget = receipts.get("wget")
        assert wget.files == ["Cellar/wget/1.24.5/bin/wget"]
        assert wget.transaction_id == result.transaction_id
        assert [(d.name, d.build_only) for d in wget.dependencies] == [
            ("openssl@3", False),
            ("pkg-config", True),
        ]

        last = installer.transaction_logger.get_transaction(result.transaction_id)
        assert last["status"] == TransactionStatus.COMPLETED.value

    @pytest.mark.asyncio
    async def test_noop_plan(self, repo, resolver, installer, receipts, fetcher):
        """Test an already-installed plan succeeds with zero actions"""
        repo.add("jq", "1.7.1")
        await installer.apply(resolver.resolve(["jq"], receipts.snapshot()))
        fetcher.calls.clear()

        result = await installer.apply(resolver.resolve(["jq"], receipts.snapshot()))

        assert not result.changed
        assert result.skipped == ["jq"]
        assert fetcher.calls == []

    @pytest.mark.asyncio
    async def test_single_directory_archive_is_flattened(self, config, repo, resolver, installer, receipts, tarball):
        """Test a bottle with one top-level directory is flattened into the keg"""
        payload = tarball({"hello-2.12/bin/hello": b"hi", "hello-2.12/share/doc/README": b"doc"})
        repo.add("hello", "2.12", payload=payload)

        await installer.apply(resolver.resolve(["hello"], receipts.snapshot()))

        assert (config.cellar_dir / "hello" / "2.12" / "bin" / "hello").read_bytes() == b"hi"

    @pytest.mark.asyncio
    async def test_single_file_artifact(self, config, repo, resolver, installer, receipts):
        """Test a non-archive payload becomes an executable in bin/"""
        repo.add("yq", "4.44", payload=b"\x7fELF fake binary")

        await installer.apply(resolver.resolve(["yq"], receipts.snapshot()))

        name = repo.url_for("yq", "4.44").rsplit("/", 1)[-1]
        assert (config.cellar_dir / "yq" / "4.44" / "bin" / name).exists()
        assert (config.prefix / "bin" / name).is_symlink()

    @pytest.mark.asyncio
    async def test_upgrade_replaces_old_version(self, config, repo, resolver, installer, receipts):
        """Test an upgrade swaps kegs, receipts and links"""
        repo.add("jq", "1.6")
        await installer.apply(resolver.resolve(["jq"], receipts.snapshot()))
        repo.add("jq", "1.7.1")

        plan = resolver.resolve(["jq==latest"], receipts.snapshot())
        result = await installer.apply(plan)

        assert result.upgraded == ["jq"]
        assert receipts.get("jq").version == "1.7.1"
        assert kegs(config) == ["jq/1.7.1"]
        assert "1.7.1" in (config.prefix / "bin" / "jq").read_text()

    @pytest.mark.asyncio
    async def test_second_install_uses_cache(self, repo, resolver, installer, receipts, fetcher, cache):
        """Test artifacts are fetched once and unpinned afterwards"""
        formula = repo.add("jq", "1.7.1")
        await installer.apply(resolver.resolve(["jq"], receipts.snapshot()))
        await installer.uninstall("jq")

        await installer.apply(resolver.resolve(["jq"], receipts.snapshot()))

        assert fetcher.calls == [repo.url_for("jq", "1.7.1")]
        fingerprint = formula.binaries["linux-x86_64"].sha256
        assert fingerprint in cache
        assert not cache.is_pinned(fingerprint)

    @pytest.mark.asyncio
    async def test_progress_callback_errors_are_ignored(self, repo, resolver, installer, receipts):
        """Test a raising progress callback never fails the transaction"""
        repo.add("jq", "1.7.1")
        phases = []

        def progress(event):
            phases.append(event.phase)
            raise RuntimeError("UI crashed")

        result = await installer.apply(resolver.resolve(["jq"], receipts.snapshot()), progress=progress)

        assert result.installed == ["jq"]
        assert InstallPhase.FETCH in phases
        assert InstallPhase.COMMIT in phases
        assert InstallPhase.LINK in phases

    @pytest.mark.asyncio
    async def test_concurrent_applies_serialize(self, repo, resolver, installer, receipts):
        """Test overlapping transactions never double-install"""
        repo.add("jq", "1.7.1")
        first = resolver.resolve(["jq"], receipts.snapshot())
        second = resolver.resolve(["jq"], receipts.snapshot())

        results = await asyncio.gather(installer.apply(first), installer.apply(second))

        assert sorted(len(r.installed) for r in results) == [0, 1]
        assert any("jq" in r.skipped for r in results)
        assert [r.name for r in receipts.all()] == ["jq"]


    @pytest.mark.asyncio
    async def test_replaced_keg_deleted_after_lock_release(self, config, cache, fetcher, repo, resolver, receipts):
        """Test an upgrade deletes the old keg only once the commit lock is free"""
        installer = installer_with(config, cache, fetcher, receipts, cls=RecordingInstaller)
        repo.add("jq", "1.6")
        await installer.apply(resolver.resolve(["jq"], receipts.snapshot()))
        repo.add("jq", "1.7.1")

        await installer.apply(resolver.resolve(["jq==latest"], receipts.snapshot()))

        paths, locked = installer.discarded[-1]
        assert locked is False
        assert len(paths) == 1
        assert not paths[0].exists()
        assert kegs(config) == ["jq/1.7.1"]

    @pytest.mark.asyncio
    async def test_pinned_artifact_survives_concurrent_eviction(self, config, fetcher, repo, resolver, receipts):
        """Test a store under a tiny budget never evicts an artifact the transaction holds"""
        tiny = ArtifactCache(config.cache_dir / "tiny", budget_bytes=1)
        installer = installer_with(config, tiny, fetcher, receipts)
        formula = repo.add("jq", "1.7.1")
        fingerprint = formula.binaries[config.platform].sha256
        filler = b"unrelated payload"
        seen = []

        def progress(event):
            if event.phase == InstallPhase.STAGE:
                tiny.store(sha256_hex(filler), filler)
                seen.append((fingerprint in tiny, sha256_hex(filler) in tiny))

        result = await installer.apply(resolver.resolve(["jq"], receipts.snapshot()), progress=progress)

        assert seen == [(True, False)]
        assert result.installed == ["jq"]
        assert not tiny.is_pinned(fingerprint)


class TestStagingFailures:
    """Test failures before commit leave no trace"""

    @pytest.mark.asyncio
    async def test_download_failure_is_noop(self, config, three_packages, resolver, installer, receipts, fetcher):
        """Test package 2 of 3 failing to download changes nothing"""
        fetcher.fail(three_packages.url_for("lib2", "2.0"))
        plan = resolver.resolve(["app"], receipts.snapshot())
        assert plan.names == ["lib1", "lib2", "app"]

        with pytest.raises(DownloadFailed) as exc_info:
            await installer.apply(plan)

        assert exc_info.value.package == "lib2"
        assert_untouched(config, receipts)
        last = installer.transaction_logger.list_transactions(1)[0]
        assert last["status"] == TransactionStatus.FAILED.value
        assert last["error"].startswith("DownloadFailed: ")

    @pytest.mark.asyncio
    async def test_unpack_failure_is_noop(self, config, three_packages, resolver, installer, receipts, tarball):
        """Test package 2 of 3 failing to unpack changes nothing"""
        three_packages.add("lib2", "2.0", payload=tarball({"../escape": b"evil"}))
        plan = resolver.resolve(["app"], receipts.snapshot())

        with pytest.raises(StagingIOError) as exc_info:
            await installer.apply(plan)

        assert exc_info.value.package == "lib2"
        assert exc_info.value.state_changed is False
        assert_untouched(config, receipts)
        assert not (config.prefix.parent / "escape").exists()

    @pytest.mark.asyncio
    async def test_checksum_mismatch_is_noop(self, config, three_packages, resolver, installer, receipts, fetcher):
        """Test a payload with the wrong digest is rejected"""
        fetcher.register(three_packages.url_for("lib2", "2.0"), b"tampered")
        plan = resolver.resolve(["app"], receipts.snapshot())

        with pytest.raises(ChecksumMismatch):
            await installer.apply(plan)

        assert_untouched(config, receipts)

    @pytest.mark.asyncio
    async def test_cancel_before_commit(self, config, three_packages, resolver, installer, receipts):
        """Test cancellation before commit aborts cleanly"""
        cancel = asyncio.Event()
        cancel.set()

        with pytest.raises(TransactionCancelled):
            await installer.apply(resolver.resolve(["app"], receipts.snapshot()), cancel=cancel)

        assert_untouched(config, receipts)


    @pytest.mark.asyncio
    async def test_failed_apply_releases_cache_pins(self, config, cache, three_packages, resolver, installer, receipts, fetcher):
        """Test cached artifacts pinned by a failed transaction are unpinned"""
        await installer.apply(resolver.resolve(["lib1"], receipts.snapshot()))
        await installer.uninstall("lib1")
        fetcher.fail(three_packages.url_for("lib2", "2.0"))

        with pytest.raises(DownloadFailed):
            await installer.apply(resolver.resolve(["app"], receipts.snapshot()))

        assert cache.stats()["pinned_entries"] == 0
        assert_untouched(config, receipts)

    @pytest.mark.asyncio
    async def test_disk_full_while_caching_is_staging_error(self, config, three_packages, resolver, receipts, fetcher):
        """Test an OSError from the cache fails staging and closes the journal"""
        installer = installer_with(config, FullDiskCache(config.cache_dir), fetcher, receipts)

        with pytest.raises(StagingIOError) as exc_info:
            await installer.apply(resolver.resolve(["app"], receipts.snapshot()))

        assert exc_info.value.state_changed is False
        assert "No space left" in str(exc_info.value)
        assert installer.transaction_logger.incomplete() == []
        assert installer.transaction_logger.list_transactions(1)[0]["status"] == TransactionStatus.FAILED.value
        assert_untouched(config, receipts)

    @pytest.mark.asyncio
    async def test_source_only_formula_is_refused(self, config, repo, resolver, installer, receipts, fetcher, tarball):
        """Test a formula with only a source archive is never committed as a keg"""
        payload = tarball({"hello-2.12/configure": b"#!/bin/sh\n", "hello-2.12/hello.c": b"int main;\n"})
        url = "https://ftp.example.test/hello-2.12.tar.gz"
        fetcher.register(url, payload)
        repo.store.add(Formula(name="hello", version="2.12", source=ArtifactRef(url=url, sha256=sha256_hex(payload))))

        with pytest.raises(StagingIOError, match="source") as exc_info:
            await installer.apply(resolver.resolve(["hello"], receipts.snapshot()))

        assert exc_info.value.package == "hello"
        assert fetcher.calls == []
        assert_untouched(config, receipts)


class TestCancellation:
    """Test cancellation of in-flight transactions"""

    @pytest.mark.asyncio
    async def test_cancel_during_commit_is_deferred(self, config, cache, fetcher, repo, resolver):
        """Test a task cancelled mid-commit finishes the commit before raising"""
        receipts = BlockingReceiptStore(config.receipts_dir)
        installer = installer_with(config, cache, fetcher, receipts)
        repo.add("jq", "1.7.1")

        task = asyncio.create_task(installer.apply(resolver.resolve(["jq"], receipts.snapshot())))
        assert await asyncio.to_thread(receipts.entered.wait, 5)
        task.cancel()
        await asyncio.sleep(0.05)
        assert not task.done()
        receipts.release.set()

        with pytest.raises(asyncio.CancelledError):
            await task

        assert receipts.get("jq").version == "1.7.1"
        assert kegs(config) == ["jq/1.7.1"]
        assert installer.transaction_logger.incomplete() == []
        assert installer.transaction_logger.list_transactions(1)[0]["status"] == TransactionStatus.COMPLETED.value

    @pytest.mark.asyncio
    async def test_cancelled_caller_waits_for_worker_thread(self):
        """Test a cancelled worker call returns only after the thread is done"""
        started = threading.Event()
        release = threading.Event()
        finished = []

        def work():
            started.set()
            release.wait(5)
            finished.append(True)

        task = asyncio.create_task(_in_thread(work))
        assert await asyncio.to_thread(started.wait, 5)
        task.cancel()
        await asyncio.sleep(0.05)
        assert not task.done()
        release.set()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert finished == [True]


class TestCommitFailures:
    """Test rollback when moving into place fails"""

    def make_installer(self, config, cache, fetcher, fail_for):
        receipts = FailingReceiptStore(config.receipts_dir, fail_for)
        installer = TransactionalInstaller(
            config, cache, receipts, fetcher,
            transaction_logger=TransactionLogger(config.transactions_log)
        )
        return installer, receipts

    @pytest.mark.asyncio
    async def test_failure_at_package_two_rolls_back_everything(self, config, cache, fetcher, three_packages, resolver):
        """Test package 2 of 3 failing at commit undoes package 1"""
        installer, receipts = self.make_installer(config, cache, fetcher, fail_for="lib2")
        plan = resolver.resolve(["app"], receipts.snapshot())

        with pytest.raises(CommitIOError) as exc_info:
            await installer.apply(plan)

        error = exc_info.value
        assert error.package == "lib2"
        assert error.rolled_back is True
        assert error.state_changed is False
        assert receipts.all() == []
        assert kegs(config) == []
        assert not (config.prefix / "bin" / "lib1").exists()

        entries = installer.transaction_logger.list_transactions(1)
        assert entries[0]["status"] == TransactionStatus.ROLLED_BACK.value
        assert entries[0]["rolled_back"] is True

    @pytest.mark.asyncio
    async def test_failed_upgrade_restores_previous_version(self, config, cache, fetcher, repo, resolver):
        """Test rollback restores the replaced keg and receipt"""
        repo.add("jq", "1.6")
        repo.add("app", "1.0", deps=["jq"])
        installer, receipts = self.make_installer(config, cache, fetcher, fail_for="app")
        await installer.apply(resolver.resolve(["jq"], receipts.snapshot()))
        repo.add("jq", "1.7.1")

        plan = resolver.resolve(["jq==latest", "app"], receipts.snapshot())
        with pytest.raises(CommitIOError):
            await installer.apply(plan)

        assert receipts.get("jq").version == "1.6"
        assert kegs(config) == ["jq/1.6"]
        assert "1.6" in (config.prefix / "bin" / "jq").read_text()


class TestUninstall:
    """Test package removal"""

    @pytest.mark.asyncio
    async def test_refuses_with_dependents(self, repo, resolver, installer, receipts):
        """Test a runtime dependency cannot be removed"""
        repo.add("openssl@3", "3.3.1")
        repo.add("wget", "1.24.5", deps=["openssl@3"])
        await installer.apply(resolver.resolve(["wget"], receipts.snapshot()))

        with pytest.raises(DependentsExist) as exc_info:
            await installer.uninstall("openssl@3")

        assert exc_info.value.dependents == ["wget"]
        assert receipts.is_installed("openssl@3")

    @pytest.mark.asyncio
    async def test_removes_keg_links_and_receipt(self, config, repo, resolver, installer, receipts):
        """Test uninstall leaves nothing behind"""
        repo.add("jq", "1.7.1")
        await installer.apply(resolver.resolve(["jq"], receipts.snapshot()))

        record = await installer.uninstall("jq")

        assert record.status == TransactionStatus.COMPLETED
        assert receipts.get("jq") is None
        assert kegs(config) == []
        assert not (config.prefix / "bin" / "jq").is_symlink()

    @pytest.mark.asyncio
    async def test_force_removes_despite_dependents(self, repo, resolver, installer, receipts, caplog):
        """Test force skips the dependents check and records the dangling edges"""
        repo.add("openssl@3", "3.3.1")
        repo.add("wget", "1.24.5", deps=["openssl@3"])
        await installer.apply(resolver.resolve(["wget"], receipts.snapshot()))

        with caplog.at_level(logging.WARNING, logger="keg"):
            record = await installer.uninstall("openssl@3", force=True)

        assert not receipts.is_installed("openssl@3")
        assert record.status == TransactionStatus.COMPLETED
        assert "wget" in record.error
        assert installer.transaction_logger.get_transaction(record.id)["error"] == record.error
        events = [r for r in caplog.records if r.getMessage() == "dependency_edges_broken"]
        assert len(events) == 1
        assert events[0].dependents == ["wget"]

    @pytest.mark.asyncio
    async def test_not_installed(self, installer):
        """Test removing an unknown package fails"""
        with pytest.raises(PackageNotInstalled):
            await installer.uninstall("ghost")
