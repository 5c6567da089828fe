# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Version Matching

Single responsibility: Parse formula versions and test them against constraints
"""

import logging
import re
from functools import lru_cache
from typing import Iterable, List, Optional

from packaging.specifiers import InvalidSpecifier, SpecifierSet
from packaging.version import InvalidVersion, Version

from keg.models.package_models import ConstraintKind, VersionConstraint

logger = logging.getLogger(__name__)

_NUMERIC_PREFIX = re.compile(r"^v?(\d+(?:\.\d+)*)(.*)$")


@lru_cache(maxsize=4096)
def parse_version(text: str) -> Version:
    """
    Parse a formula version.

    Formula versions are not always PEP 440 (``1.1.1w``, ``9e``); the
    non-numeric tail is kept as a local label so ``1.1.1w`` sorts just
    above ``1.1.1``.

    Raises:
        ValueError: If the version has no numeric release part
    """
    try:
        return Version(text)
    except InvalidVersion:
        pass

    match = _NUMERIC_PREFIX.match(text.strip())
    if not match:
        raise ValueError(f"Unparseable version: {text!r}")

    release, tail = match.group(1), match.group(2)
    label = re.sub(r"[^a-z0-9]+", ".", tail.lower()).strip(".")
    try:
        return Version(f"{release}+{label}" if label else release)
    except InvalidVersion as e:
        raise ValueError(f"Unparseable version: {text!r}") from e


@lru_cache(maxsize=1024)
def specifier_for(expression: str) -> SpecifierSet:
    """
    Build a specifier set for a RANGE constraint.

    Raises:
        ValueError: If the expression is not a valid specifier set
    """
    try:
        return SpecifierSet(expression)
    except InvalidSpecifier as e:
        raise ValueError(f"Invalid version range {expression!r}: {e}") from e


def versions_equal(left: str, right: str) -> bool:
    if left == right:
        return True
    try:
        return parse_version(left) == parse_version(right)
    except ValueError:
        return False


def satisfies(version: str, constraint: VersionConstraint, newest: Optional[str] = None) -> bool:
    """
    Check a version against a constraint.

    Args:
        version: Candidate version
        constraint: Constraint to test
        newest: Highest available version, needed for LATEST

    Returns:
        True if the version satisfies the constraint
    """
    if constraint.kind == ConstraintKind.ANY:
        return True

    if constraint.kind == ConstraintKind.LATEST:
        return newest is not None and versions_equal(version, newest)

    if constraint.kind == ConstraintKind.EXACT:
        return versions_equal(version, constraint.expression or "")

    try:
        parsed = parse_version(version)
    except ValueError:
        return False
    return specifier_for(constraint.expression or "").contains(parsed, prereleases=True)


def sort_versions(versions: Iterable[str], reverse: bool = False) -> List[str]:
    """Sort version strings, skipping unparseable ones."""
    parsed = []
    for v in versions:
        try:
            parsed.append((parse_version(v), v))
        except ValueError:
            logger.debug(f"Skipping unparseable version {v!r}")
    parsed.sort(key=lambda pair: pair[0], reverse=reverse)
    return [v for _, v in parsed]


def newest_version(versions: Iterable[str]) -> Optional[str]:
    ordered = sort_versions(versions, reverse=True)
    return ordered[0] if ordered else None


def select_highest(
    candidates: Iterable[str],
    constraints: Iterable[VersionConstraint],
    newest: Optional[str] = None
) -> Optional[str]:
    """
    Highest candidate satisfying every constraint.

    Raises:
        ValueError: If a RANGE expression is invalid
    """
    constraints = list(constraints)
    for version in sort_versions(candidates, reverse=True):
        if all(satisfies(version, c, newest) for c in constraints):
            return version
    return None
