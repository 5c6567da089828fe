# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Package engine components.

This package contains:
- resolver: Requests -> dependency-first installation plan
- cache: Content-addressed artifact and metadata cache
- receipts: Durable ledger of installed packages
- installer: Staged, all-or-nothing plan application
- download / linker / transactions: Installer collaborators
- service: Composition of all of the above
"""

from .cache import ArtifactCache, metadata_fingerprint
from .download import Downloader, Fetcher, RetryConfig
from .formula_store import CachedFormulaStore, FormulaIndexStore, FormulaStore, InMemoryFormulaStore
from .installer import TransactionalInstaller
from .linker import Linker, LinkReport
from .plan import plan_summary
from .receipts import FileReceiptStore, MemoryReceiptStore, ReceiptStore
from .resolver import DependencyResolver, RelaxationPolicy, ResolverOptions
from .service import KegService
from .transactions import TransactionLogger

__all__ = [
    "ArtifactCache",
    "CachedFormulaStore",
    "DependencyResolver",
    "Downloader",
    "Fetcher",
    "FileReceiptStore",
    "FormulaIndexStore",
    "FormulaStore",
    "InMemoryFormulaStore",
    "KegService",
    "Linker",
    "LinkReport",
    "MemoryReceiptStore",
    "ReceiptStore",
    "RelaxationPolicy",
    "ResolverOptions",
    "RetryConfig",
    "TransactionalInstaller",
    "TransactionLogger",
    "metadata_fingerprint",
    "plan_summary",
]
