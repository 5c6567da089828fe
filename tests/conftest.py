# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Test Fixtures and Utilities

Provides an in-memory formula repository with matching bottles, a fake
fetcher, and engine components rooted in a temporary prefix.
"""

import hashlib
import io
import tarfile
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

import pytest

from keg.core.config import Config
from keg.core.errors import DownloadFailed
from keg.engine.cache import ArtifactCache
from keg.engine.formula_store import InMemoryFormulaStore
from keg.engine.installer import TransactionalInstaller
from keg.engine.linker import Linker
from keg.engine.receipts import FileReceiptStore
from keg.engine.resolver import DependencyResolver, ResolverOptions
from keg.engine.transactions import TransactionLogger
from keg.models.package_models import (
    ArtifactRef,
    Dependency,
    DependencyKind,
    Formula,
    PackageSpec,
    VariantDefinition,
)

PLATFORM = "linux-x86_64"


# ============================================================================
# Archive Builders
# ============================================================================

def make_tarball(files: Dict[str, bytes], compression: str = "gz") -> bytes:
    """Build a tar archive in memory from ``{path: content}``."""
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode=f"w:{compression}") as archive:
        for path, content in sorted(files.items()):
            info = tarfile.TarInfo(path)
            info.size = len(content)
            info.mode = 0o755 if path.split("/")[-2:-1] == ["bin"] else 0o644
            archive.addfile(info, io.BytesIO(content))
    return buffer.getvalue()


def make_bottle(name: str, version: str, files: Dict[str, bytes]) -> bytes:
    """Bottle layout: every path lives under ``<name>/<version>/``."""
    return make_tarball({f"{name}/{version}/{path}": content for path, content in files.items()})


def sha256(payload: bytes) -> str:
    return hashlib.sha256(payload).hexdigest()


# ============================================================================
# Fake Transport
# ============================================================================

class FakeFetcher:
    """Fetcher serving registered payloads from memory"""

    def __init__(self):
        self.payloads: Dict[str, bytes] = {}
        self.failures: Dict[str, Exception] = {}
        self.calls: List[str] = []

    def register(self, url: str, payload: bytes):
        self.payloads[url] = payload

    def fail(self, url: str, error: Optional[Exception] = None):
        self.failures[url] = error or DownloadFailed(url, "connection reset")

    async def fetch(self, url: str, expected_checksum: str, progress=None) -> bytes:
        self.calls.append(url)
        if url in self.failures:
            raise self.failures[url]
        if url not in self.payloads:
            raise DownloadFailed(url, "HTTP 404")
        payload = self.payloads[url]
        if progress is not None:
            progress(len(payload))
        return payload


# ============================================================================
# Formula Repository
# ============================================================================

DepLike = Tuple[str, DependencyKind]


class FormulaRepo:
    """Formula store plus the bottles its artifacts point at"""

    def __init__(self, fetcher: FakeFetcher):
        self.store = InMemoryFormulaStore()
        self.fetcher = fetcher

    def url_for(self, name: str, version: str) -> str:
        return f"https://bottles.example.test/{name}-{version}.{PLATFORM}.tar.gz"

    def add(
        self,
        name: str,
        version: str,
        deps: Iterable = (),
        files: Optional[Dict[str, bytes]] = None,
        variants: Iterable[str] = (),
        conflicts: Iterable[str] = (),
        payload: Optional[bytes] = None
    ) -> Formula:
        """
        Register a formula and its bottle.

        ``deps`` items are spec strings (runtime), ``(spec, kind)`` pairs or
        ready-made Dependency objects.
        """
        if payload is None:
            files = files if files is not None else {f"bin/{name}": f"#!/bin/sh\necho {name} {version}\n".encode()}
            payload = make_bottle(name, version, files)
        url = self.url_for(name, version)
        self.fetcher.register(url, payload)

        dependencies = []
        for dep in deps:
            if isinstance(dep, Dependency):
                dependencies.append(dep)
            elif isinstance(dep, tuple):
                dependencies.append(Dependency(spec=PackageSpec.parse(dep[0]), kind=dep[1]))
            else:
                dependencies.append(Dependency(spec=PackageSpec.parse(dep)))

        formula = Formula(
            name=name,
            version=version,
            dependencies=dependencies,
            binaries={PLATFORM: ArtifactRef(url=url, sha256=sha256(payload))},
            variants=[VariantDefinition(name=v) for v in variants],
            conflicts=list(conflicts),
        )
        self.store.add(formula)
        return formula


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def config(tmp_path: Path) -> Config:
    """Engine configuration rooted in a temporary directory."""
    return Config(
        prefix=tmp_path / "prefix",
        cache_dir=tmp_path / "cache",
        platform=PLATFORM,
        max_workers=2,
        max_retries=0,
        retry_delay=0.0,
    )


@pytest.fixture
def fetcher() -> FakeFetcher:
    return FakeFetcher()


@pytest.fixture
def repo(fetcher: FakeFetcher) -> FormulaRepo:
    return FormulaRepo(fetcher)


@pytest.fixture
def resolver(repo: FormulaRepo) -> DependencyResolver:
    return DependencyResolver(repo.store, ResolverOptions())


@pytest.fixture
def cache(config: Config) -> ArtifactCache:
    return ArtifactCache(config.cache_dir, config.cache_budget_bytes)


@pytest.fixture
def receipts(config: Config) -> FileReceiptStore:
    return FileReceiptStore(config.receipts_dir)


@pytest.fixture
def installer(config, cache, receipts, fetcher) -> TransactionalInstaller:
    return TransactionalInstaller(
        config,
        cache,
        receipts,
        fetcher,
        transaction_logger=TransactionLogger(config.transactions_log),
        linker=Linker(config.prefix, config.cellar_dir, config.link_dirs),
    )


@pytest.fixture
def tarball():
    """Archive builder, ``tarball({path: bytes})``."""
    return make_tarball
