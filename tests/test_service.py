# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Integration Tests for KegService
"""

import json

import pytest

from keg.core.errors import FormulaNotFound, PackageNotInstalled
from keg.engine import KegService
from keg.engine.formula_store import CachedFormulaStore
from keg.engine.plan import plan_summary
from keg.models.package_models import DependencyKind, TransactionOperation


@pytest.fixture
def service(config, repo, fetcher):
    return KegService(config=config, formula_store=repo.store, fetcher=fetcher)


class TestServiceOperations:
    """Test resolve, install and uninstall through the service"""

    @pytest.mark.asyncio
    async def test_install_and_list(self, service, repo):
        """Test install resolves against receipts and records them"""
        repo.add("oniguruma", "6.9.9")
        repo.add("jq", "1.7.1", deps=["oniguruma"])

        result = await service.install(["jq"])

        assert result.installed == ["oniguruma", "jq"]
        assert [r.name for r in service.list_installed()] == ["jq", "oniguruma"]
        assert service.transactions(limit=1)[0]["status"] == "completed"
        await service.close()

    @pytest.mark.asyncio
    async def test_resolve_failure_touches_nothing(self, service, config):
        """Test resolution errors raise before any transaction"""
        with pytest.raises(FormulaNotFound):
            await service.install(["ghost"])

        assert service.list_installed() == []
        assert service.transactions() == []
        assert not config.cellar_dir.exists()

    @pytest.mark.asyncio
    async def test_uninstall(self, service, repo):
        """Test uninstall removes the receipt and logs a transaction"""
        repo.add("jq", "1.7.1")
        await service.install(["jq"])

        record = await service.uninstall("jq")

        assert record.status.value == "completed"
        assert service.list_installed() == []
        with pytest.raises(PackageNotInstalled):
            await service.uninstall("jq")

    @pytest.mark.asyncio
    async def test_outdated(self, service, repo):
        """Test outdated lists packages with a newer formula"""
        repo.add("jq", "1.6")
        repo.add("wget", "1.24.5")
        await service.install(["jq==1.6", "wget"])
        repo.add("jq", "1.7.1")

        assert service.outdated() == [{"name": "jq", "installed": "1.6", "latest": "1.7.1"}]

    @pytest.mark.asyncio
    async def test_upgrade_every_outdated_package(self, service, repo):
        """Test upgrade moves all outdated packages in one transaction"""
        repo.add("jq", "1.6")
        repo.add("wget", "1.24.4")
        repo.add("tree", "2.1.1")
        await service.install(["jq==1.6", "wget==1.24.4", "tree"])
        repo.add("jq", "1.7.1")
        repo.add("wget", "1.24.5")

        result = await service.upgrade()

        assert sorted(result.upgraded) == ["jq", "wget"]
        assert {r.name: r.version for r in service.list_installed()} == {
            "jq": "1.7.1", "tree": "2.1.1", "wget": "1.24.5",
        }
        assert service.outdated() == []
        assert service.transactions(limit=1)[0]["packages"] == result.upgraded

    @pytest.mark.asyncio
    async def test_upgrade_named_packages_only(self, service, repo):
        """Test upgrade leaves packages outside ``names`` alone"""
        repo.add("jq", "1.6")
        repo.add("wget", "1.24.4")
        await service.install(["jq==1.6", "wget==1.24.4"])
        repo.add("jq", "1.7.1")
        repo.add("wget", "1.24.5")

        result = await service.upgrade(["jq"])

        assert result.upgraded == ["jq"]
        assert service.outdated() == [{"name": "wget", "installed": "1.24.4", "latest": "1.24.5"}]

    @pytest.mark.asyncio
    async def test_upgrade_nothing_outdated(self, service, repo):
        """Test upgrade with everything current starts no transaction"""
        repo.add("jq", "1.7.1")
        await service.install(["jq"])

        result = await service.upgrade()

        assert not result.changed
        assert len(service.transactions()) == 2

    @pytest.mark.asyncio
    async def test_upgrade_unknown_package(self, service):
        """Test naming a package that is not installed fails"""
        with pytest.raises(PackageNotInstalled):
            await service.upgrade(["ghost"])


class TestPlanSummary:
    """Test plan rendering"""

    def test_summary_lines(self, service, repo):
        """Test install and build-only markers"""
        repo.add("pkg-config", "0.29.2")
        repo.add("curl", "8.8.0", variants=["http3"])
        repo.add("wget", "1.24.5", deps=[("pkg-config", DependencyKind.BUILD), "curl[http3]"])

        lines = service.plan_summary(service.resolve(["wget"]))

        assert "+ pkg-config 0.29.2 (build only)" in lines
        assert "+ curl 8.8.0 [http3]" in lines
        assert lines[-1] == "+ wget 1.24.5"

    @pytest.mark.asyncio
    async def test_summary_upgrade_and_skip(self, service, repo):
        """Test upgrade and already-installed lines"""
        repo.add("oniguruma", "6.9.9")
        repo.add("jq", "1.6", deps=["oniguruma"])
        await service.install(["jq"])
        repo.add("jq", "1.7.1", deps=["oniguruma"])

        lines = plan_summary(service.resolve(["jq==latest"]))

        assert lines == ["= oniguruma 6.9.9 (already installed)", "^ jq 1.6 -> 1.7.1"]


class TestDefaultComposition:
    """Test the service wires its own collaborators"""

    @pytest.mark.asyncio
    async def test_reads_formula_index(self, config):
        """Test the default store reads the formula index through the cache"""
        config.formula_index_file.parent.mkdir(parents=True)
        config.formula_index_file.write_text(json.dumps({
            "formulae": [{"name": "jq", "version": "1.7.1"}]
        }))

        service = KegService(config=config)
        try:
            assert isinstance(service.formula_store, CachedFormulaStore)
            assert service.resolve(["jq"]).names == ["jq"]
        finally:
            await service.close()


class TestServiceHistory:
    """Test transaction queries"""

    @pytest.mark.asyncio
    async def test_history_and_interrupted(self, service, repo):
        """Test per-package history and unfinished transactions"""
        repo.add("jq", "1.7.1")
        await service.install(["jq"])
        await service.uninstall("jq")
        stuck = service.transaction_logger.create_transaction(TransactionOperation.INSTALL, ["wget"])
        service.transaction_logger.log(stuck)

        history = service.history("jq")

        assert [t["operation"] for t in history] == ["uninstall", "install"]
        assert [t["id"] for t in service.interrupted_transactions()] == [stuck.id]
