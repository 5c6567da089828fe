# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Linker

Single responsibility: Expose kegs under the prefix through symlinks

Every file under ``<keg>/{bin,lib,include,share}`` gets a relative symlink at
the same path under the prefix. Parent directories in the prefix are real
directories, so several kegs can share ``lib/pkgconfig`` and the like.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator, List, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)


@dataclass
class LinkReport:
    """Outcome of linking one keg"""
    name: str
    version: str
    linked: List[str] = field(default_factory=list)
    replaced: List[str] = field(default_factory=list)
    unchanged: int = 0
    conflicts: List[str] = field(default_factory=list)


class Linker:
    """Creates and removes prefix symlinks into the Cellar"""

    def __init__(self, prefix: Path, cellar_dir: Path, link_dirs: Sequence[str] = ("bin", "lib", "include", "share")):
        self.prefix = Path(prefix)
        self.cellar_dir = Path(cellar_dir)
        self.link_dirs = tuple(link_dirs)

    def _owner(self, target: str) -> Optional[Tuple[str, str]]:
        """(name, version) of the keg a link target lives in, if any."""
        try:
            relative = Path(target).relative_to(self.cellar_dir)
        except ValueError:
            return None
        parts = relative.parts
        if len(parts) < 2:
            return None
        return parts[0], parts[1]

    @staticmethod
    def _resolve_link(link: Path) -> str:
        return os.path.normpath(os.path.join(link.parent, os.readlink(link)))

    def link(self, name: str, version: str) -> LinkReport:
        """
        Link a keg into the prefix.

        Idempotent. Links into another version of ``name`` are replaced;
        paths owned by another package or by nobody are left alone and
        reported as conflicts.

        Raises:
            FileNotFoundError: If the keg does not exist
        """
        keg = self.cellar_dir / name / version
        if not keg.is_dir():
            raise FileNotFoundError(f"Keg not found: {keg}")

        report = LinkReport(name=name, version=version)
        for directory in self.link_dirs:
            root = keg / directory
            if not root.is_dir():
                continue
            for source in sorted(root.rglob("*")):
                if source.is_dir() and not source.is_symlink():
                    continue
                self._link_one(keg, source, report)

        logger.info(
            f"Linked {name} {version}: {len(report.linked)} new, "
            f"{len(report.replaced)} replaced, {report.unchanged} unchanged, "
            f"{len(report.conflicts)} conflicts"
        )
        return report

    def _link_one(self, keg: Path, source: Path, report: LinkReport):
        relative = source.relative_to(keg)
        target = self.prefix / relative
        wanted = os.path.normpath(str(source))

        try:
            target.parent.mkdir(parents=True, exist_ok=True)
        except (FileExistsError, NotADirectoryError):
            report.conflicts.append(f"{relative.parent} (not a directory)")
            return

        if target.is_symlink():
            current = self._resolve_link(target)
            if current == wanted:
                report.unchanged += 1
                return
            owner = self._owner(current)
            if owner is None or owner[0] != report.name:
                holder = owner[0] if owner else current
                report.conflicts.append(f"{relative} (linked to {holder})")
                logger.warning(f"Not linking {relative}: already linked to {holder}")
                return
            target.unlink()
            report.replaced.append(str(relative))
        elif target.exists():
            report.conflicts.append(f"{relative} (file exists)")
            logger.warning(f"Not linking {relative}: an unmanaged file exists")
            return
        else:
            report.linked.append(str(relative))

        os.symlink(os.path.relpath(source, target.parent), target)

    def _links(self) -> Iterator[Path]:
        for directory in self.link_dirs:
            root = self.prefix / directory
            if not root.is_dir():
                continue
            for dirpath, dirnames, filenames in os.walk(root):
                base = Path(dirpath)
                for entry in dirnames + filenames:
                    path = base / entry
                    if path.is_symlink():
                        yield path

    def links_for(self, name: str) -> List[Path]:
        """Prefix symlinks pointing into any keg of ``name``."""
        found = []
        for link in self._links():
            owner = self._owner(self._resolve_link(link))
            if owner is not None and owner[0] == name:
                found.append(link)
        return sorted(found)

    def unlink(self, name: str) -> List[str]:
        """
        Remove every prefix symlink into ``Cellar/<name>/``.

        Returns:
            Removed link paths, relative to the prefix
        """
        removed = []
        for link in self.links_for(name):
            link.unlink()
            removed.append(str(link.relative_to(self.prefix)))
            self._remove_empty_parents(link.parent)
        if removed:
            logger.info(f"Unlinked {len(removed)} files of {name}")
        return removed

    def prune(self) -> List[str]:
        """
        Remove dangling symlinks under the link directories.

        Returns:
            Removed link paths, relative to the prefix
        """
        removed = []
        for link in list(self._links()):
            if os.path.exists(self._resolve_link(link)):
                continue
            link.unlink()
            removed.append(str(link.relative_to(self.prefix)))
            self._remove_empty_parents(link.parent)
        if removed:
            logger.info(f"Pruned {len(removed)} dangling links")
        return removed

    def _remove_empty_parents(self, directory: Path):
        roots = {self.prefix / d for d in self.link_dirs}
        while directory not in roots and self.prefix in directory.parents:
            try:
                directory.rmdir()
            except OSError:
                return
            directory = directory.parent
