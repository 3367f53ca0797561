"""Disposable worktrees that give every job a private copy of the aggregate repo."""

from __future__ import annotations

import logging
import tempfile
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from .vcs import GitError, GitRepository, run_git

LOGGER = logging.getLogger(__name__)

# ``git worktree add/remove`` update shared administrative files; one at a time.
_WORKTREE_LOCK = threading.Lock()


@contextmanager
def job_worktree(repo: GitRepository, revision: str, *, label: str = "job") -> Iterator[GitRepository]:
    """Check out ``revision`` into a detached temporary worktree of ``repo``.

    The worktree shares the object store with ``repo`` but has its own index, so
    staging inside it never disturbs the aggregate working copy or sibling jobs.
    """
    base_dir = tempfile.TemporaryDirectory(prefix=f"xsync-{label}-")
    try:
        worktree_root = Path(base_dir.name) / "worktree"
        with _WORKTREE_LOCK:
            add = run_git(
                ["worktree", "add", "--detach", str(worktree_root), revision],
                cwd=repo.root,
                check=False,
            )
        if add.returncode != 0:
            message = add.stderr.strip() or add.stdout.strip() or "unable to create temporary worktree"
            raise GitError(f"Failed to create worktree for {label}: {message}")
        LOGGER.debug("Created worktree %s at %s", worktree_root, revision)
        try:
            yield GitRepository(worktree_root)
        finally:
            with _WORKTREE_LOCK:
                run_git(
                    ["worktree", "remove", "--force", str(worktree_root)],
                    cwd=repo.root,
                    check=False,
                )
    finally:
        base_dir.cleanup()


def prune_worktrees(repo: GitRepository) -> None:
    """Drop administrative entries of worktrees whose directories are gone."""
    with _WORKTREE_LOCK:
        run_git(["worktree", "prune"], cwd=repo.root, check=False)


__all__ = ["job_worktree", "prune_worktrees"]
