# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Formula Store

Single responsibility: Serve every known version of a formula by name.

The formula parser is an external collaborator; these stores hold what it
produced. ``CachedFormulaStore`` puts parsed formulae into the metadata side
of the artifact cache so repeated sessions skip the parser.
"""

import hashlib
import json
import logging
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Protocol, Sequence, runtime_checkable

from pydantic import ValidationError

from keg.core.errors import ConfigurationError
from keg.models.package_models import CacheKind, Formula

from .cache import ArtifactCache, metadata_fingerprint

logger = logging.getLogger(__name__)


@runtime_checkable
class FormulaStore(Protocol):
    """Read-only source of formulae"""

    def lookup_formula(self, name: str) -> Sequence[Formula]:
        """All known versions of ``name`` (empty when unknown)."""
        ...

    def all_names(self) -> Sequence[str]:
        ...


class InMemoryFormulaStore:
    """Formula store backed by a dictionary"""

    def __init__(self, formulae: Optional[Iterable[Formula]] = None):
        self._formulae: Dict[str, List[Formula]] = {}
        self.revision = 0
        for formula in formulae or []:
            self.add(formula)

    def add(self, formula: Formula):
        """Add or replace one formula version."""
        versions = [f for f in self._formulae.get(formula.name, []) if f.version != formula.version]
        versions.append(formula)
        self._formulae[formula.name] = versions
        self.revision += 1

    def lookup_formula(self, name: str) -> List[Formula]:
        return list(self._formulae.get(name, []))

    def all_names(self) -> List[str]:
        return sorted(self._formulae)


class FormulaIndexStore(InMemoryFormulaStore):
    """
    Formula store loaded from a JSON index written by the formula translator.

    Format::

        {"last_updated": "...", "formulae": [{"name": ..., "version": ...}, ...]}
    """

    def __init__(self, index_file: Path):
        """
        Initialize the index store.

        Args:
            index_file: Path to formula-index.json

        Raises:
            ConfigurationError: If the index exists but cannot be parsed
        """
        super().__init__()
        self.index_file = Path(index_file)
        self.last_updated: Optional[str] = None
        self._load_index()

    def _load_index(self):
        if not self.index_file.exists():
            logger.warning(f"No formula index found at {self.index_file}")
            return

        raw = self.index_file.read_bytes()
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Failed to parse formula index: {e}", config_file=str(self.index_file))

        skipped = 0
        for entry in data.get("formulae", []):
            try:
                self.add(Formula.model_validate(entry))
            except ValidationError as e:
                skipped += 1
                logger.error(f"Skipping invalid formula entry {entry.get('name', '?')}: {e}")

        self.last_updated = data.get("last_updated")
        self.revision = hashlib.sha256(raw).hexdigest()
        logger.info(
            f"Loaded {sum(len(v) for v in self._formulae.values())} formulae "
            f"({skipped} skipped) from {self.index_file}"
        )


class CachedFormulaStore:
    """
    Formula store that memoizes a slower source in the metadata cache.

    Each formula version is stored under
    ``metadata_fingerprint(name, version, source checksum)``; a per-name
    listing is stored under a fingerprint that includes the source revision,
    so a refreshed source never reuses a stale listing.
    """

    def __init__(self, source: FormulaStore, cache: ArtifactCache, ttl: int = 3600):
        self.source = source
        self.cache = cache
        self.ttl = ttl

    def _listing_fingerprint(self, name: str) -> str:
        revision = str(getattr(self.source, "revision", ""))
        return metadata_fingerprint(name, "*", f"listing:{revision}")

    def _load_cached(self, name: str) -> Optional[List[Formula]]:
        listing = self.cache.lookup(self._listing_fingerprint(name))
        if listing is None:
            return None

        formulae = []
        for fingerprint in json.loads(self.cache.read(listing)):
            entry = self.cache.lookup(fingerprint)
            if entry is None:
                return None
            formulae.append(Formula.model_validate_json(self.cache.read(entry)))
        return formulae

    def lookup_formula(self, name: str) -> List[Formula]:
        cached = self._load_cached(name)
        if cached is not None:
            logger.debug(f"Loaded {len(cached)} versions of {name} from metadata cache")
            return cached

        formulae = list(self.source.lookup_formula(name))
        if not formulae:
            return []

        fingerprints = []
        for formula in formulae:
            fingerprint = metadata_fingerprint(formula.name, formula.version, formula.checksum)
            payload = formula.model_dump_json().encode()
            self.cache.store(fingerprint, payload, kind=CacheKind.METADATA, ttl_seconds=self.ttl)
            fingerprints.append(fingerprint)

        listing = json.dumps(fingerprints).encode()
        self.cache.store(self._listing_fingerprint(name), listing, kind=CacheKind.METADATA, ttl_seconds=self.ttl)
        return formulae

    def all_names(self) -> Sequence[str]:
        return self.source.all_names()
