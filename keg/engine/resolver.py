# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Dependency Resolver

Single responsibility: Turn requested specs into a dependency-first plan

Resolution runs in two passes over per-call state, so concurrent calls
never share anything mutable:

1. Selection - a FIFO work queue collects every requester's constraint on a
   name and picks the highest formula version satisfying all of them.
   Installed receipts that already satisfy every constraint short-circuit
   expansion. When a later requester invalidates an earlier pick, the old
   pick's outgoing requirements are withdrawn and the name is re-expanded
   (bounded backtracking).
2. Graph - an explicit-stack depth-first walk over the deduplicated
   selection detects back-edges (circular dependencies) and emits nodes in
   post-order, roots in request order.
"""

import logging
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Deque, Dict, FrozenSet, Iterable, List, Mapping, Optional, Sequence, Set, Tuple, Union

from keg.core.errors import (
    CircularDependency,
    FormulaConflict,
    FormulaNotFound,
    ResolutionCancelled,
    VersionConflict,
)
from keg.models.package_models import (
    ConflictReport,
    ConflictRequirement,
    Dependency,
    DependencyKind,
    Formula,
    InstallationPlan,
    NodeAction,
    PackageSpec,
    Receipt,
    ResolvedNode,
)

from .formula_store import FormulaStore
from .versions import newest_version, parse_version, satisfies, select_highest

logger = logging.getLogger(__name__)


class RelaxationPolicy(str, Enum):
    """What to do with optional/recommended edges that cannot be satisfied"""
    DROP = "drop"
    WARN = "warn"
    STRICT = "strict"


@dataclass(frozen=True)
class ResolverOptions:
    """Resolver behaviour switches"""
    relaxation_policy: RelaxationPolicy = RelaxationPolicy.WARN
    include_optional: bool = False
    include_recommended: bool = True
    include_build: bool = True
    max_backtracks: int = 100

    @classmethod
    def from_config(cls, config: Any) -> "ResolverOptions":
        return cls(
            relaxation_policy=RelaxationPolicy(config.relaxation_policy),
            include_optional=config.include_optional,
            include_recommended=config.include_recommended,
            max_backtracks=config.max_backtracks,
        )


@dataclass(frozen=True)
class _Requirement:
    """One requester's constraint on a name"""
    spec: PackageSpec
    kind: DependencyKind
    requester: Optional[str]  # None for a top-level request
    chain: Tuple[str, ...]  # Root-first path ending at the requester

    def describe(self) -> str:
        who = " -> ".join(self.chain) or "request"
        variants = f" [{','.join(sorted(self.spec.variants))}]" if self.spec.variants else ""
        return f"{who}: {self.spec.constraint}{variants}"


@dataclass
class _Selection:
    """Chosen version for a name during selection"""
    name: str
    version: str
    formula: Optional[Formula]
    variants: FrozenSet[str]
    action: NodeAction
    installed_version: Optional[str] = None
    edges: List[Dependency] = field(default_factory=list)

    def same_choice(self, other: "_Selection") -> bool:
        return (
            self.version == other.version
            and self.action == other.action
            and self.variants == other.variants
        )


class _Resolution:
    """State of a single resolve() call"""

    def __init__(
        self,
        store: FormulaStore,
        installed: Dict[str, Receipt],
        options: ResolverOptions,
        cancel: Optional[Any]
    ):
        self.store = store
        self.installed = installed
        self.options = options
        self.cancel = cancel

        self.formulae: Dict[str, List[Formula]] = {}
        self.requirements: Dict[str, List[_Requirement]] = {}
        self.selections: Dict[str, _Selection] = {}
        # (requester, name) -> soft requirement set aside to make ``name`` resolvable
        self.dropped: Dict[Tuple[str, str], _Requirement] = {}
        self.backtracks = 0

        self.queue: Deque[str] = deque()
        self.queued: Set[str] = set()

    # -------------------------------------------------------------------------
    # Selection pass
    # -------------------------------------------------------------------------

    def run(self, requests: Sequence[PackageSpec]) -> InstallationPlan:
        roots: List[str] = []
        for spec in requests:
            if spec.name not in roots:
                roots.append(spec.name)
            self._require(_Requirement(spec, DependencyKind.RUNTIME, None, ()))

        while self.queue:
            name = self.queue.popleft()
            self.queued.discard(name)
            self._check_cancelled(name)
            self._select(name)

        return self._build_plan(roots, requests)

    def _check_cancelled(self, pending: Optional[str]):
        if self.cancel is not None and self.cancel.is_set():
            logger.info(f"Resolution cancelled before expanding {pending}")
            raise ResolutionCancelled(pending)

    def _require(self, requirement: _Requirement):
        self.requirements.setdefault(requirement.spec.name, []).append(requirement)
        self._enqueue(requirement.spec.name)

    def _enqueue(self, name: str):
        if name not in self.queued:
            self.queue.append(name)
            self.queued.add(name)

    def _lookup(self, name: str) -> List[Formula]:
        # One lookup per name keeps the call on a single store snapshot
        if name not in self.formulae:
            found = [f for f in self.store.lookup_formula(name) if f.name == name]
            self.formulae[name] = found
        return self.formulae[name]

    def _select(self, name: str):
        requirements = self.requirements.get(name, [])
        if not requirements:
            # Orphaned by a withdrawn requester
            self._unselect(name)
            return

        formulae = self._lookup(name)
        available = [f.version for f in formulae]
        newest = newest_version(available)

        while True:
            requirements = self.requirements.get(name, [])
            if not requirements:
                self._unselect(name)
                return

            selection = self._choose(name, formulae, requirements, newest)
            if selection is not None:
                break

            if not self._relax(name, requirements):
                hard = [r for r in requirements if not self._is_soft(r)]
                if not formulae and not self.installed.get(name):
                    raise FormulaNotFound(name, hard[0].chain if hard else ())
                raise self._conflict(name, hard or requirements, available, "no version satisfies every constraint")

        self._restore_satisfied(name, selection, newest)
        requirements = self.requirements[name]

        previous = self.selections.get(name)
        if previous is not None and previous.same_choice(selection):
            return

        if previous is not None:
            self.backtracks += 1
            logger.debug(f"Backtracking {name}: {previous.version} -> {selection.version}")
            if self.backtracks > self.options.max_backtracks:
                raise self._conflict(
                    name, requirements, available,
                    f"gave up after {self.options.max_backtracks} backtracks"
                )
            self._withdraw(name)

        self.selections[name] = selection
        chain = requirements[0].chain + (name,)
        for dep in selection.edges:
            if (name, dep.name) in self.dropped:
                continue
            self._require(_Requirement(dep.spec, dep.kind, name, chain))

    def _choose(
        self,
        name: str,
        formulae: List[Formula],
        requirements: List[_Requirement],
        newest: Optional[str]
    ) -> Optional[_Selection]:
        variants = frozenset().union(*(r.spec.variants for r in requirements))
        receipt = self.installed.get(name)

        if receipt is not None and self._fits(receipt.version, frozenset(receipt.variants), requirements, variants, newest):
            formula = next((f for f in formulae if f.version == receipt.version), None)
            return _Selection(
                name=name,
                version=receipt.version,
                formula=formula,
                variants=frozenset(receipt.variants),
                action=NodeAction.SKIP,
                installed_version=receipt.version,
            )

        eligible = {f.version: f for f in formulae if variants <= f.variant_names}
        try:
            version = select_highest(eligible, [r.spec.constraint for r in requirements], newest)
        except ValueError as e:
            raise self._conflict(name, requirements, list(eligible), str(e))
        if version is None:
            return None

        formula = eligible[version]
        return _Selection(
            name=name,
            version=formula.version,
            formula=formula,
            variants=variants,
            action=NodeAction.UPGRADE if receipt is not None else NodeAction.INSTALL,
            installed_version=receipt.version if receipt is not None else None,
            edges=self._active_edges(formula, variants),
        )

    @staticmethod
    def _sort_key(version: str):
        try:
            return (1, parse_version(version))
        except ValueError:
            return (0, parse_version("0"))

    def _fits(
        self,
        version: str,
        offered_variants: FrozenSet[str],
        requirements: List[_Requirement],
        variants: FrozenSet[str],
        newest: Optional[str]
    ) -> bool:
        if not variants <= offered_variants:
            return False
        for requirement in requirements:
            try:
                if not satisfies(version, requirement.spec.constraint, newest):
                    return False
            except ValueError as e:
                raise self._conflict(requirement.spec.name, [requirement], [], str(e))
        return True

    def _active_edges(self, formula: Formula, variants: FrozenSet[str]) -> List[Dependency]:
        edges = []
        for dep in formula.dependencies:
            if dep.variant is not None:
                if dep.variant not in variants:
                    continue
            elif dep.kind == DependencyKind.OPTIONAL and not self.options.include_optional:
                continue
            elif dep.kind == DependencyKind.RECOMMENDED and not self.options.include_recommended:
                continue
            if dep.kind == DependencyKind.BUILD and not self.options.include_build:
                continue
            edges.append(dep)
        return edges

    def _is_soft(self, requirement: _Requirement) -> bool:
        return (
            requirement.kind.is_soft
            and self.options.relaxation_policy != RelaxationPolicy.STRICT
        )

    def _relax(self, name: str, requirements: List[_Requirement]) -> bool:
        """Set aside the most recent soft requirement on ``name``. False if none is left."""
        for requirement in reversed(requirements):
            if not self._is_soft(requirement):
                continue
            self.requirements[name].remove(requirement)
            self.dropped[(requirement.requester or "", name)] = requirement
            logger.debug(f"Relaxing {requirement.describe()}")
            return True
        return False

    def _restore_satisfied(self, name: str, selection: _Selection, newest: Optional[str]):
        """Put back set-aside soft requirements that the chosen version meets after all."""
        for edge, requirement in list(self.dropped.items()):
            if edge[1] != name:
                continue
            if self._fits(selection.version, selection.variants, [requirement], requirement.spec.variants, newest):
                del self.dropped[edge]
                self.requirements.setdefault(name, []).append(requirement)
                logger.debug(f"Restored {requirement.describe()}: met by {name} {selection.version}")

    def _relaxation_warnings(self) -> List[str]:
        warnings = []
        for (_, name), requirement in self.dropped.items():
            message = (
                f"Dropped {requirement.kind.value} dependency {name} "
                f"({requirement.describe()}): cannot be satisfied"
            )
            if self.options.relaxation_policy == RelaxationPolicy.WARN:
                logger.warning(message)
                warnings.append(message)
            else:
                logger.debug(message)
        return warnings

    def _withdraw(self, requester: str):
        """Remove every requirement the current pick of ``requester`` contributed."""
        for target, requirements in self.requirements.items():
            kept = [r for r in requirements if r.requester != requester]
            if len(kept) != len(requirements):
                self.requirements[target] = kept
                self._enqueue(target)
        self.dropped = {edge: r for edge, r in self.dropped.items() if edge[0] != requester}

    def _unselect(self, name: str):
        if name in self.selections:
            self._withdraw(name)
            del self.selections[name]

    def _conflict(
        self,
        name: str,
        requirements: Iterable[_Requirement],
        available: Sequence[str],
        reason: str
    ) -> VersionConflict:
        requirements = list(requirements)
        report = ConflictReport(
            package=name,
            requirements=[
                ConflictRequirement(
                    requester_chain=list(r.chain),
                    constraint=r.describe().split(": ", 1)[1],
                    kind=r.kind.value,
                )
                for r in requirements
            ],
            available_versions=sorted(set(available), key=self._sort_key),
            reason=reason,
        )
        logger.info(f"Version conflict on {name}: {reason}")
        return VersionConflict(name, [r.describe() for r in requirements], report)

    # -------------------------------------------------------------------------
    # Graph pass
    # -------------------------------------------------------------------------

    def _children(self, name: str) -> List[Tuple[str, DependencyKind]]:
        selection = self.selections[name]
        children = []
        seen = set()
        for dep in selection.edges:
            if dep.name in seen or dep.name not in self.selections:
                continue
            if (name, dep.name) in self.dropped:
                continue
            seen.add(dep.name)
            children.append((dep.name, dep.kind))
        return children

    def _build_plan(self, roots: List[str], requests: Sequence[PackageSpec]) -> InstallationPlan:
        grey, black = 1, 2
        state: Dict[str, int] = {}
        order: List[str] = []

        for root in roots:
            if root in state or root not in self.selections:
                continue
            state[root] = grey
            path = [root]
            stack = [iter(self._children(root))]
            while stack:
                child = next(stack[-1], None)
                if child is None:
                    stack.pop()
                    finished = path.pop()
                    state[finished] = black
                    order.append(finished)
                    continue

                child_name = child[0]
                if state.get(child_name) == grey:
                    cycle = path[path.index(child_name):] + [child_name]
                    raise CircularDependency(cycle)
                if child_name in state:
                    continue

                self._check_cancelled(child_name)
                state[child_name] = grey
                path.append(child_name)
                stack.append(iter(self._children(child_name)))

        self._check_formula_conflicts(order)

        retained = self._retained(roots)
        position = {name: index for index, name in enumerate(order)}
        nodes = []
        for name in order:
            selection = self.selections[name]
            runtime, build = [], []
            for child_name, kind in self._children(name):
                (build if kind == DependencyKind.BUILD else runtime).append(position[child_name])
            nodes.append(ResolvedNode(
                name=name,
                version=selection.version,
                formula=selection.formula,
                variants=selection.variants,
                dependencies=runtime,
                build_dependencies=build,
                action=selection.action,
                retained=name in retained,
                installed_version=selection.installed_version,
            ))

        return InstallationPlan(
            nodes=nodes,
            requested=[str(spec) for spec in requests],
            warnings=self._relaxation_warnings(),
        )

    def _retained(self, roots: List[str]) -> Set[str]:
        """Names reachable from a root without crossing a build edge."""
        retained: Set[str] = set()
        pending = [r for r in roots if r in self.selections]
        while pending:
            name = pending.pop()
            if name in retained:
                continue
            retained.add(name)
            for child_name, kind in self._children(name):
                if kind != DependencyKind.BUILD:
                    pending.append(child_name)
        return retained

    def _check_formula_conflicts(self, order: List[str]):
        chosen = set(order)
        for name in order:
            formula = self.selections[name].formula
            if formula is None:
                continue
            for other in formula.conflicts:
                if other in chosen or other in self.installed:
                    raise FormulaConflict(name, other)


class DependencyResolver:
    """Resolves requested specs against a formula store (read-only, reentrant)"""

    def __init__(self, formula_store: FormulaStore, options: Optional[ResolverOptions] = None):
        """
        Initialize dependency resolver.

        Args:
            formula_store: Source of formulae
            options: Resolver behaviour switches
        """
        self.formula_store = formula_store
        self.options = options or ResolverOptions()

    def resolve(
        self,
        requests: Sequence[Union[PackageSpec, str]],
        installed: Union[Mapping[str, Receipt], Iterable[Receipt], None] = None,
        cancel: Optional[Any] = None
    ) -> InstallationPlan:
        """
        Resolve requests into an installation plan.

        Args:
            requests: Specs in request order (strings are parsed)
            installed: Receipt snapshot, as a mapping or iterable
            cancel: Object with ``is_set()`` (e.g. threading.Event), checked
                between package expansions

        Returns:
            Dependency-first installation plan

        Raises:
            FormulaNotFound: If a required name has no formula
            VersionConflict: If no version satisfies every hard constraint
            CircularDependency: If the selected graph has a cycle
            FormulaConflict: If two selected formulae conflict
            ResolutionCancelled: If ``cancel`` was set
        """
        specs = [PackageSpec.parse(r) if isinstance(r, str) else r for r in requests]

        if installed is None:
            snapshot: Dict[str, Receipt] = {}
        elif isinstance(installed, Mapping):
            snapshot = dict(installed)
        else:
            snapshot = {r.name: r for r in installed}

        logger.info(f"Resolving {', '.join(str(s) for s in specs)}")
        plan = _Resolution(self.formula_store, snapshot, self.options, cancel).run(specs)
        logger.info(
            f"Resolved {len(plan.nodes)} packages "
            f"({len(plan.actionable)} to install or upgrade)"
        )
        return plan
