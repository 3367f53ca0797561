"""Mirror a (transformed) source subtree into its destination directory."""

from __future__ import annotations

import filecmp
import logging
import os
import shutil
import stat
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Tuple

from ..errors import JobError

LOGGER = logging.getLogger(__name__)

_VCS_METADATA = ".git"


class MaterializeError(JobError):
    """Raised when the source subtree is missing or cannot be mirrored."""

    stage = "materialize"


@dataclass(slots=True)
class MaterializationResult:
    """Paths (relative to the destination) touched by one mirror merge."""

    destination: str
    bootstrap: bool
    added: Tuple[str, ...] = ()
    modified: Tuple[str, ...] = ()
    deleted: Tuple[str, ...] = ()
    skipped: bool = False

    @property
    def changed(self) -> bool:
        return bool(self.added or self.modified or self.deleted)

    def to_dict(self) -> dict[str, Any]:
        return {
            "destination": self.destination,
            "bootstrap": self.bootstrap,
            "skipped": self.skipped,
            "added": list(self.added),
            "modified": list(self.modified),
            "deleted": list(self.deleted),
        }


def _scan(root: Path) -> Dict[str, Path]:
    """Map relative posix paths to files and symlinks below ``root``.

    Git metadata is never reported, and symlinked directories count as leaves.
    """
    entries: Dict[str, Path] = {}
    if not root.is_dir():
        return entries
    for current, dirnames, filenames in os.walk(root):
        base = Path(current)
        kept = []
        for name in sorted(dirnames):
            if name == _VCS_METADATA:
                continue
            candidate = base / name
            if candidate.is_symlink():
                entries[candidate.relative_to(root).as_posix()] = candidate
            else:
                kept.append(name)
        dirnames[:] = kept
        for name in filenames:
            if name == _VCS_METADATA:
                continue
            candidate = base / name
            entries[candidate.relative_to(root).as_posix()] = candidate
    return entries


def _is_executable(path: Path) -> bool:
    return bool(path.stat().st_mode & (stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH))


def _same_entry(source: Path, target: Path) -> bool:
    if source.is_symlink() or target.is_symlink():
        return source.is_symlink() and target.is_symlink() and os.readlink(source) == os.readlink(target)
    if not target.is_file():
        return False
    if source.stat().st_size != target.stat().st_size:
        return False
    if _is_executable(source) != _is_executable(target):
        return False
    return filecmp.cmp(source, target, shallow=False)


def _remove(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    elif path.exists() or path.is_symlink():
        path.unlink()


def _prune_empty_dirs(root: Path) -> None:
    for current, dirnames, filenames in os.walk(root, topdown=False):
        path = Path(current)
        if path == root or _VCS_METADATA in path.relative_to(root).parts:
            continue
        if not any(path.iterdir()):
            path.rmdir()


class Materializer:
    """Mirror merge with bootstrap-aware deletion."""

    def source_subtree(self, tree_root: Path, truncation_prefix: str | None) -> Path:
        """Return the directory whose contents are mirrored."""
        if not truncation_prefix:
            return tree_root
        subtree = tree_root / truncation_prefix
        if not subtree.is_dir() or subtree.is_symlink():
            raise MaterializeError(
                f"truncDir '{truncation_prefix}' not found after transformation",
                details={"truncation_prefix": truncation_prefix},
            )
        return subtree

    def materialize(
        self,
        tree_root: Path,
        destination_root: Path,
        *,
        truncation_prefix: str | None = None,
        destination: str | None = None,
        label: str = "job",
    ) -> MaterializationResult:
        """Make ``destination_root`` mirror the source subtree of ``tree_root``.

        A destination that is missing or empty is populated without deletions
        (bootstrap).  Otherwise files absent from the source are deleted so the
        destination converges on the source (delta).
        """
        name = destination or destination_root.name
        source_root = self.source_subtree(tree_root, truncation_prefix)
        source_entries = _scan(source_root)

        if destination_root.exists() and not destination_root.is_dir():
            raise MaterializeError(f"Destination {name} exists and is not a directory")
        bootstrap = not destination_root.exists() or not any(destination_root.iterdir())

        if not source_entries and not truncation_prefix:
            LOGGER.warning("[%s] fetched tree is empty; leaving %s untouched", label, name)
            return MaterializationResult(destination=name, bootstrap=bootstrap, skipped=True)

        destination_root.mkdir(parents=True, exist_ok=True)
        existing = _scan(destination_root)

        deleted: list[str] = []
        if not bootstrap:
            for relative in sorted(set(existing) - set(source_entries), reverse=True):
                _remove(existing[relative])
                deleted.append(relative)
            if deleted:
                _prune_empty_dirs(destination_root)

        added: list[str] = []
        modified: list[str] = []
        for relative in sorted(source_entries):
            source = source_entries[relative]
            target = destination_root / relative
            present = relative in existing and (target.exists() or target.is_symlink())
            if present and _same_entry(source, target):
                continue
            try:
                if target.exists() or target.is_symlink():
                    _remove(target)
                target.parent.mkdir(parents=True, exist_ok=True)
                if source.is_symlink():
                    os.symlink(os.readlink(source), target)
                else:
                    shutil.copy2(source, target)
            except OSError as error:
                raise MaterializeError(f"Failed to copy {relative} into {name}: {error}") from error
            (modified if present else added).append(relative)

        result = MaterializationResult(
            destination=name,
            bootstrap=bootstrap,
            added=tuple(added),
            modified=tuple(modified),
            deleted=tuple(sorted(deleted)),
        )
        LOGGER.info(
            "[%s] %s materialization of %s: +%d ~%d -%d",
            label,
            "bootstrap" if bootstrap else "delta",
            name,
            len(result.added),
            len(result.modified),
            len(result.deleted),
        )
        return result


__all__ = ["MaterializationResult", "MaterializeError", "Materializer"]
