"""Shallow, path-filtered checkouts of external source repositories."""

from __future__ import annotations

import logging
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, List

from ..config import JobSpec
from ..errors import JobError, RunCancelled
from ..tools.vcs import GitError, remote_default_branch, run_git
from .deadline import Deadline

LOGGER = logging.getLogger(__name__)


class FetchError(JobError):
    """Raised when a source cannot be cloned or its branch cannot be resolved."""

    stage = "fetch"


@dataclass(slots=True)
class FetchedTree:
    """Job-scoped working copy of one source repository."""

    root: Path
    url: str
    branch: str
    commit: str | None
    path_filters: tuple[str, ...]

    def is_empty(self) -> bool:
        """Return ``True`` when nothing besides git metadata was checked out."""
        return not any(entry.name != ".git" for entry in self.root.iterdir())


class SourceFetcher:
    """Clone the minimal slice of a source needed by one job."""

    def __init__(self, host: str = "github.com", *, depth: int = 1) -> None:
        self.host = host
        self.depth = depth

    def _git(self, args: List[str], *, cwd: Path, deadline: Deadline, action: str) -> str:
        timeout = deadline.require(FetchError, action)
        try:
            return run_git(args, cwd=cwd, timeout=timeout, cancel=deadline.cancel).stdout
        except GitError as error:
            if error.details.get("cancelled"):
                raise RunCancelled(f"Run cancelled during {action}") from error
            raise FetchError(f"{action} failed: {error}", details=error.details) from error

    def resolve_branch(self, job: JobSpec, url: str, deadline: Deadline) -> str:
        """Return the configured branch, or ask the remote for its default branch."""
        if job.branch:
            return job.branch
        timeout = deadline.require(FetchError, "resolving the default branch")
        try:
            branch = remote_default_branch(url, timeout=timeout, cancel=deadline.cancel)
        except GitError as error:
            if error.details.get("cancelled"):
                raise RunCancelled("Run cancelled while resolving the default branch") from error
            raise FetchError(f"Could not resolve the default branch of {url}: {error}") from error
        LOGGER.info("[%s] using default branch %s", job.label, branch)
        return branch

    @contextmanager
    def fetch(self, job: JobSpec, *, deadline: Deadline | None = None) -> Iterator[FetchedTree]:
        """Materialise ``job``'s source in a temporary directory.

        With ``path_filters`` the clone is sparse in non-cone mode so every
        pattern is honoured literally; without filters the whole tree is
        checked out.  The directory is removed when the block exits.
        """
        deadline = deadline or Deadline()
        url = job.clone_url(self.host)
        branch = self.resolve_branch(job, url, deadline)

        workspace = tempfile.TemporaryDirectory(prefix="xsync-fetch-")
        try:
            root = Path(workspace.name) / "tree"
            clone_args = [
                "clone",
                "--quiet",
                "--depth",
                str(self.depth),
                "--filter=blob:none",
                "--branch",
                branch,
            ]
            if job.path_filters:
                clone_args.append("--no-checkout")
            clone_args.extend([url, str(root)])
            self._git(clone_args, cwd=Path(workspace.name), deadline=deadline, action=f"clone {url}@{branch}")

            if job.path_filters:
                self._git(
                    ["sparse-checkout", "set", "--no-cone", *job.path_filters],
                    cwd=root,
                    deadline=deadline,
                    action="sparse-checkout set",
                )
                self._git(["checkout", "--quiet"], cwd=root, deadline=deadline, action="checkout")

            commit = self._git(["rev-parse", "HEAD"], cwd=root, deadline=deadline, action="rev-parse").strip() or None
            tree = FetchedTree(
                root=root,
                url=url,
                branch=branch,
                commit=commit,
                path_filters=tuple(job.path_filters),
            )
            LOGGER.info(
                "[%s] fetched %s@%s (%s)%s",
                job.label,
                url,
                branch,
                (commit or "unknown")[:12],
                f" filters={list(job.path_filters)}" if job.path_filters else "",
            )
            yield tree
        finally:
            workspace.cleanup()


__all__ = ["FetchError", "FetchedTree", "SourceFetcher"]
