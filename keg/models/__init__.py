# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

from keg.models.package_models import (
    ArtifactRef,
    CacheEntry,
    CacheKind,
    ConflictReport,
    ConflictRequirement,
    ConstraintKind,
    Dependency,
    DependencyKind,
    Formula,
    InstallationPlan,
    InstallPhase,
    InstallResult,
    NodeAction,
    PackageSpec,
    ProgressCallback,
    ProgressEvent,
    Receipt,
    ReceiptDependency,
    ResolvedNode,
    TransactionOperation,
    TransactionRecord,
    TransactionStatus,
    VariantDefinition,
    VersionConstraint,
)

__all__ = [
    "ArtifactRef",
    "CacheEntry",
    "CacheKind",
    "ConflictReport",
    "ConflictRequirement",
    "ConstraintKind",
    "Dependency",
    "DependencyKind",
    "Formula",
    "InstallationPlan",
    "InstallPhase",
    "InstallResult",
    "NodeAction",
    "PackageSpec",
    "ProgressCallback",
    "ProgressEvent",
    "Receipt",
    "ReceiptDependency",
    "ResolvedNode",
    "TransactionOperation",
    "TransactionRecord",
    "TransactionStatus",
    "VariantDefinition",
    "VersionConstraint",
]
