# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Keg Service - Modular Composition

Composes focused modules into a unified package engine.
Each module does one thing well, following Unix philosophy.
"""

import logging
from typing import Any, Dict, List, Optional, Sequence, Union

from keg.core.config import Config, load_config
from keg.core.errors import PackageNotInstalled
from keg.models.package_models import (
    ConstraintKind,
    InstallationPlan,
    InstallResult,
    PackageSpec,
    ProgressCallback,
    Receipt,
    TransactionRecord,
    VersionConstraint,
)

from .cache import ArtifactCache
from .download import Downloader, Fetcher, RetryConfig
from .formula_store import CachedFormulaStore, FormulaIndexStore, FormulaStore
from .installer import TransactionalInstaller
from .linker import Linker
from .plan import plan_summary
from .receipts import FileReceiptStore, ReceiptStore
from .resolver import DependencyResolver, ResolverOptions
from .transactions import TransactionLogger
from .versions import newest_version, versions_equal

logger = logging.getLogger(__name__)

SpecLike = Union[str, PackageSpec]


class KegService:
    """
    Unified package engine (modular composition).

    Composes:
    - FormulaStore: Known formulae (metadata-cached)
    - DependencyResolver: Requests -> installation plan
    - ArtifactCache: Downloaded artifacts
    - ReceiptStore: Installed packages
    - TransactionalInstaller: Stage, commit, link
    - TransactionLogger: Log transactions
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        formula_store: Optional[FormulaStore] = None,
        fetcher: Optional[Fetcher] = None,
        receipts: Optional[ReceiptStore] = None,
        cache: Optional[ArtifactCache] = None
    ):
        """
        Initialize Keg Service.

        Args:
            config: Engine configuration (loaded from YAML if omitted)
            formula_store: Formula source (the formula index file if omitted)
            fetcher: Artifact transport (an HTTP downloader if omitted)
            receipts: Receipt store (file-backed under the prefix if omitted)
            cache: Artifact cache (under ``cache_dir`` if omitted)
        """
        self.config = config or load_config()

        self.cache = cache or ArtifactCache(self.config.cache_dir, self.config.cache_budget_bytes)
        if formula_store is None:
            formula_store = CachedFormulaStore(
                FormulaIndexStore(self.config.formula_index_file),
                self.cache,
                ttl=self.config.metadata_ttl
            )
        self.formula_store = formula_store
        self.receipts = receipts or FileReceiptStore(self.config.receipts_dir)

        self._owns_fetcher = fetcher is None
        self.fetcher = fetcher or Downloader(
            self.config.downloads_dir,
            RetryConfig.from_config(self.config),
            user_agent=self.config.user_agent
        )

        # Initialize modular components
        self.resolver = DependencyResolver(self.formula_store, ResolverOptions.from_config(self.config))
        self.transaction_logger = TransactionLogger(self.config.transactions_log)
        self.linker = Linker(self.config.prefix, self.config.cellar_dir, self.config.link_dirs)
        self.installer = TransactionalInstaller(
            self.config,
            self.cache,
            self.receipts,
            self.fetcher,
            transaction_logger=self.transaction_logger,
            linker=self.linker
        )

        interrupted = self.transaction_logger.incomplete()
        if interrupted:
            logger.warning(
                f"{len(interrupted)} transactions never completed: "
                f"{', '.join(t['id'] for t in interrupted)}"
            )
        logger.info(f"KegService initialized for prefix {self.config.prefix}")

    # =========================================================================
    # RESOLUTION
    # =========================================================================

    def resolve(self, specs: Sequence[SpecLike], cancel: Optional[Any] = None) -> InstallationPlan:
        """Resolve specs against the currently installed receipts."""
        return self.resolver.resolve(specs, self.receipts.snapshot(), cancel=cancel)

    def plan_summary(self, plan: InstallationPlan) -> List[str]:
        return plan_summary(plan)

    # =========================================================================
    # OPERATIONS
    # =========================================================================

    async def install(
        self,
        specs: Sequence[SpecLike],
        progress: Optional[ProgressCallback] = None,
        cancel: Optional[Any] = None
    ) -> InstallResult:
        """
        Resolve and apply in one call.

        Raises:
            ResolutionError: If no plan exists; nothing was touched
            TransportError: If an artifact could not be fetched
            InstallError: If staging or commit failed
        """
        plan = self.resolve(specs, cancel=cancel)
        for line in plan_summary(plan):
            logger.info(line)
        return await self.installer.apply(plan, progress=progress, cancel=cancel)

    async def upgrade(
        self,
        names: Optional[Sequence[str]] = None,
        progress: Optional[ProgressCallback] = None,
        cancel: Optional[Any] = None
    ) -> InstallResult:
        """
        Move outdated packages to their newest versions in one transaction.

        Each package keeps the variants it was installed with.

        Args:
            names: Packages to upgrade; every outdated package if omitted

        Raises:
            PackageNotInstalled: If a named package has no receipt
            ResolutionError: If the newest versions cannot be installed together
        """
        for name in names or []:
            if not self.receipts.is_installed(name):
                raise PackageNotInstalled(name)

        outdated = [o for o in self.outdated() if names is None or o["name"] in names]
        if not outdated:
            logger.info("Every requested package is up to date")
            return InstallResult()

        specs = []
        for entry in outdated:
            receipt = self.receipts.get(entry["name"])
            specs.append(PackageSpec(
                name=entry["name"],
                constraint=VersionConstraint(kind=ConstraintKind.LATEST),
                variants=frozenset(receipt.variants if receipt else [])
            ))
            logger.info(f"Upgrading {entry['name']} {entry['installed']} -> {entry['latest']}")
        return await self.install(specs, progress=progress, cancel=cancel)

    async def uninstall(self, name: str, force: bool = False) -> TransactionRecord:
        return await self.installer.uninstall(name, force=force)

    # =========================================================================
    # QUERIES
    # =========================================================================

    def list_installed(self) -> List[Receipt]:
        return self.receipts.all()

    def outdated(self) -> List[Dict[str, str]]:
        """
        Installed packages whose newest available version differs.

        Returns:
            ``{"name", "installed", "latest"}`` per outdated package
        """
        outdated = []
        for receipt in self.receipts.all():
            available = [f.version for f in self.formula_store.lookup_formula(receipt.name)]
            latest = newest_version(available)
            if latest is None or versions_equal(latest, receipt.version):
                continue
            outdated.append({"name": receipt.name, "installed": receipt.version, "latest": latest})
        return outdated

    def transactions(self, limit: int = 50) -> List[Dict[str, Any]]:
        return self.transaction_logger.list_transactions(limit)

    def history(self, name: str, limit: int = 20) -> List[Dict[str, Any]]:
        """Transactions that touched ``name``, newest first."""
        return self.transaction_logger.history(name, limit)

    def interrupted_transactions(self) -> List[Dict[str, Any]]:
        """
        Transactions that never recorded an outcome.

        Staging never touches the Cellar, so an interrupted staging phase
        leaves only clutter under the staging directory; an interrupted
        commit may have left a keg without its receipt.
        """
        return self.transaction_logger.incomplete()

    async def close(self):
        """Flush the cache index and release the owned HTTP client."""
        self.cache.close()
        self.receipts.close()
        if self._owns_fetcher and isinstance(self.fetcher, Downloader):
            await self.fetcher.close()
