# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Package Data Models

Defines data structures for the engine: package specs, formulae, the
resolved plan, cache entries, receipts and transaction records.
"""

import re
from typing import Callable, Dict, FrozenSet, List, Optional
from datetime import datetime, UTC
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ConstraintKind(str, Enum):
    """How a spec constrains the version"""
    EXACT = "exact"
    RANGE = "range"
    LATEST = "latest"
    ANY = "any"


class DependencyKind(str, Enum):
    """Kind of dependency edge"""
    BUILD = "build"
    RUNTIME = "runtime"
    OPTIONAL = "optional"
    RECOMMENDED = "recommended"

    @property
    def is_soft(self) -> bool:
        """Soft edges may be dropped when unsatisfiable"""
        return self in (DependencyKind.OPTIONAL, DependencyKind.RECOMMENDED)


class NodeAction(str, Enum):
    """What the installer does with a resolved node"""
    INSTALL = "install"
    UPGRADE = "upgrade"
    SKIP = "skip"


class CacheKind(str, Enum):
    """Cache entry kind"""
    ARTIFACT = "artifact"
    METADATA = "metadata"


class TransactionStatus(str, Enum):
    """Transaction status"""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


class TransactionOperation(str, Enum):
    """Type of transaction operation"""
    INSTALL = "install"
    UNINSTALL = "uninstall"


class InstallPhase(str, Enum):
    """Step boundaries reported to progress callbacks"""
    FETCH = "fetch"
    STAGE = "stage"
    COMMIT = "commit"
    LINK = "link"
    ROLLBACK = "rollback"


# =============================================================================
# SPECS
# =============================================================================

_SPEC_RE = re.compile(
    r"^\s*(?P<name>[A-Za-z0-9][A-Za-z0-9@._+\-]*)"
    r"\s*(?:\[(?P<variants>[^\]]*)\])?"
    r"\s*(?P<constraint>.*?)\s*$"
)


class VersionConstraint(BaseModel):
    """
    Version constraint attached to a spec.

    ``expression`` holds the version for EXACT and a PEP 440 specifier set
    (e.g. ``>=1.2,<2``) for RANGE; it is empty for LATEST and ANY.
    """
    model_config = ConfigDict(frozen=True)

    kind: ConstraintKind = ConstraintKind.ANY
    expression: Optional[str] = None

    def __str__(self) -> str:
        if self.kind == ConstraintKind.EXACT:
            return f"=={self.expression}"
        if self.kind == ConstraintKind.RANGE:
            return str(self.expression)
        return self.kind.value

    @classmethod
    def parse(cls, text: Optional[str]) -> "VersionConstraint":
        """
        Parse a constraint string.

        Examples:
            ``""`` / ``"*"`` / ``"any"`` -> ANY
            ``"latest"`` / ``"==latest"`` -> LATEST
            ``"==1.2.3"`` / ``"1.2.3"`` -> EXACT
            ``">=1.0,<2"`` -> RANGE
        """
        text = (text or "").strip()
        if text in ("", "*", "any"):
            return cls(kind=ConstraintKind.ANY)
        if text in ("latest", "==latest"):
            return cls(kind=ConstraintKind.LATEST)
        if text.startswith("==") and "," not in text and "*" not in text:
            return cls(kind=ConstraintKind.EXACT, expression=text[2:].strip())
        if text[0].isdigit():
            return cls(kind=ConstraintKind.EXACT, expression=text)
        return cls(kind=ConstraintKind.RANGE, expression=text.replace(" ", ""))


class PackageSpec(BaseModel):
    """A named package with version constraint and variant flags"""
    model_config = ConfigDict(frozen=True)

    name: str
    constraint: VersionConstraint = Field(default_factory=VersionConstraint)
    variants: FrozenSet[str] = Field(default_factory=frozenset)

    @field_validator("name")
    @classmethod
    def _name_not_empty(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("Package name cannot be empty")
        return v.strip()

    def __str__(self) -> str:
        text = self.name
        if self.variants:
            text += f"[{','.join(sorted(self.variants))}]"
        if self.constraint.kind != ConstraintKind.ANY:
            text += str(self.constraint) if self.constraint.kind != ConstraintKind.LATEST else "==latest"
        return text

    @classmethod
    def parse(cls, text: str) -> "PackageSpec":
        """
        Parse ``name[variant,...]<constraint>``.

        ``@`` belongs to the name (``openssl@3``), so the newest version is
        requested as ``name==latest``.

        Raises:
            ValueError: If the text is not a valid spec
        """
        match = _SPEC_RE.match(text or "")
        if not match:
            raise ValueError(f"Invalid package spec: {text!r}")
        variants = match.group("variants") or ""
        return cls(
            name=match.group("name"),
            constraint=VersionConstraint.parse(match.group("constraint")),
            variants=frozenset(v.strip() for v in variants.split(",") if v.strip())
        )


# =============================================================================
# FORMULAE
# =============================================================================

class Dependency(BaseModel):
    """Dependency edge declared by a formula"""
    model_config = ConfigDict(frozen=True)

    spec: PackageSpec
    kind: DependencyKind = DependencyKind.RUNTIME
    variant: Optional[str] = None  # Edge only applies when this variant is chosen

    @field_validator("spec", mode="before")
    @classmethod
    def _parse_spec(cls, v):
        if isinstance(v, str):
            return PackageSpec.parse(v)
        return v

    @property
    def name(self) -> str:
        return self.spec.name


class ArtifactRef(BaseModel):
    """Downloadable payload with its declared SHA-256"""
    model_config = ConfigDict(frozen=True)

    url: str
    sha256: str

    @field_validator("sha256")
    @classmethod
    def _normalize_checksum(cls, v: str) -> str:
        return v.strip().lower()


class VariantDefinition(BaseModel):
    """Named build option"""
    model_config = ConfigDict(frozen=True)

    name: str
    description: str = ""


class Formula(BaseModel):
    """Structured description of one version of a package"""
    model_config = ConfigDict(frozen=True)

    name: str
    version: str
    description: str = ""
    homepage: Optional[str] = None
    license: Optional[str] = None
    dependencies: List[Dependency] = Field(default_factory=list)
    source: Optional[ArtifactRef] = None
    binaries: Dict[str, ArtifactRef] = Field(default_factory=dict)
    variants: List[VariantDefinition] = Field(default_factory=list)
    conflicts: List[str] = Field(default_factory=list)

    @property
    def variant_names(self) -> FrozenSet[str]:
        return frozenset(v.name for v in self.variants)

    @property
    def checksum(self) -> str:
        """Source checksum, used in the metadata fingerprint"""
        return self.source.sha256 if self.source else ""

    def artifact_for(self, platform: str, build_from_source: bool = False) -> Optional[ArtifactRef]:
        """Binary for the platform when available, otherwise the source."""
        if not build_from_source and platform in self.binaries:
            return self.binaries[platform]
        return self.source


# =============================================================================
# RESOLUTION
# =============================================================================

class ResolvedNode(BaseModel):
    """
    One package in an installation plan.

    ``dependencies`` and ``build_dependencies`` are indices into the plan's
    node table; every index is smaller than this node's own index.
    """
    model_config = ConfigDict(frozen=True)

    name: str
    version: str
    formula: Optional[Formula] = None
    variants: FrozenSet[str] = Field(default_factory=frozenset)
    dependencies: List[int] = Field(default_factory=list)
    build_dependencies: List[int] = Field(default_factory=list)
    action: NodeAction = NodeAction.INSTALL
    retained: bool = True  # False when only reachable via build edges
    installed_version: Optional[str] = None


class InstallationPlan(BaseModel):
    """Dependency-first ordered sequence of resolved nodes"""
    model_config = ConfigDict(frozen=True)

    nodes: List[ResolvedNode] = Field(default_factory=list)
    requested: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)

    @property
    def names(self) -> List[str]:
        return [node.name for node in self.nodes]

    @property
    def actionable(self) -> List[ResolvedNode]:
        """Nodes the installer has to fetch and stage"""
        return [n for n in self.nodes if n.action != NodeAction.SKIP]

    @property
    def is_noop(self) -> bool:
        return not self.actionable

    def get(self, name: str) -> Optional[ResolvedNode]:
        for node in self.nodes:
            if node.name == name:
                return node
        return None

    def index_of(self, name: str) -> int:
        for index, node in enumerate(self.nodes):
            if node.name == name:
                return index
        raise KeyError(name)

    def runtime_dependencies_of(self, node: ResolvedNode) -> List[ResolvedNode]:
        return [self.nodes[i] for i in node.dependencies]

    def build_dependencies_of(self, node: ResolvedNode) -> List[ResolvedNode]:
        return [self.nodes[i] for i in node.build_dependencies]


class ConflictRequirement(BaseModel):
    """A single requester's constraint on a conflicting package"""
    requester_chain: List[str]
    constraint: str
    kind: str


class ConflictReport(BaseModel):
    """Diagnostics for an unsatisfiable package"""
    package: str
    requirements: List[ConflictRequirement] = Field(default_factory=list)
    available_versions: List[str] = Field(default_factory=list)
    reason: str = ""

    def describe(self) -> List[str]:
        lines = [f"{self.package}: {self.reason}" if self.reason else self.package]
        for req in self.requirements:
            chain = " -> ".join(req.requester_chain) or "(requested)"
            lines.append(f"  {chain} requires {self.package} {req.constraint} ({req.kind})")
        if self.available_versions:
            lines.append(f"  available: {', '.join(self.available_versions)}")
        return lines


# =============================================================================
# CACHE
# =============================================================================

class CacheEntry(BaseModel):
    """Content-addressed cache record"""
    fingerprint: str
    kind: CacheKind = CacheKind.ARTIFACT
    location: str  # Relative to the cache root
    size: int
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    last_validated: datetime = Field(default_factory=lambda: datetime.now(UTC))
    ttl_seconds: Optional[int] = None  # Metadata only; artifacts never expire by TTL

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.kind != CacheKind.METADATA or self.ttl_seconds is None:
            return False
        now = now or datetime.now(UTC)
        return (now - self.last_validated).total_seconds() > self.ttl_seconds


# =============================================================================
# RECEIPTS
# =============================================================================

class ReceiptDependency(BaseModel):
    """Dependency recorded at install time"""
    name: str
    build_only: bool = False


class Receipt(BaseModel):
    """Durable record that a package version is installed"""
    name: str
    version: str
    variants: List[str] = Field(default_factory=list)
    files: List[str] = Field(default_factory=list)  # Relative to the prefix
    dependencies: List[ReceiptDependency] = Field(default_factory=list)
    installed_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    transaction_id: Optional[str] = None

    @property
    def runtime_dependency_names(self) -> List[str]:
        return [d.name for d in self.dependencies if not d.build_only]


# =============================================================================
# TRANSACTIONS
# =============================================================================

class TransactionRecord(BaseModel):
    """Transaction record for installer operations"""
    id: str
    operation: TransactionOperation
    packages: List[str] = Field(default_factory=list)
    status: TransactionStatus
    started_at: datetime
    completed_at: Optional[datetime] = None
    error: Optional[str] = None
    rolled_back: bool = False

    def to_dict(self) -> Dict:
        """Convert to dictionary for serialization"""
        return {
            "id": self.id,
            "operation": self.operation.value,
            "packages": self.packages,
            "status": self.status.value,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "error": self.error,
            "rolled_back": self.rolled_back,
        }


class ProgressEvent(BaseModel):
    """Step boundary reported to UI callbacks"""
    package: str
    phase: InstallPhase
    bytes_so_far: int = 0


ProgressCallback = Callable[[ProgressEvent], None]


class InstallResult(BaseModel):
    """Outcome of a successful apply"""
    transaction_id: Optional[str] = None
    installed: List[str] = Field(default_factory=list)
    upgraded: List[str] = Field(default_factory=list)
    skipped: List[str] = Field(default_factory=list)
    linked: List[str] = Field(default_factory=list)
    link_conflicts: List[str] = Field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.installed or self.upgraded)
