"""Minimal git helpers
The helpers below provide just enough structure to query remotes, stage and
serialise path-scoped changes, apply patches, and roll destinations back to a
known-good checkpoint.
"""

from __future__ import annotations

import shutil
import subprocess
import tempfile
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import List, Mapping, Sequence

from ..errors import SyncError
from .process import ProcessCancelled, ProcessTimeout, merge_env, run_process


class GitError(SyncError):
    """Raised when a git command fails or the repository cannot be used."""


# Keep git from prompting for credentials or opening editors in unattended runs.
_GIT_ENV = {"GIT_TERMINAL_PROMPT": "0", "GIT_EDITOR": "true", "LC_ALL": "C"}


def _decode(payload: bytes) -> str:
    return payload.decode("utf-8", errors="replace") if payload else ""


def run_git_bytes(
    args: Sequence[str],
    *,
    cwd: Path | str,
    check: bool = True,
    input: bytes | None = None,
    timeout: float | None = None,
    cancel: threading.Event | None = None,
    env: Mapping[str, str] | None = None,
) -> subprocess.CompletedProcess[bytes]:
    """Run a git command and return undecoded output."""
    command = ["git", *args]
    try:
        process = run_process(
            command,
            cwd=cwd,
            env=merge_env({**_GIT_ENV, **(env or {})}),
            input=input,
            timeout=timeout,
            cancel=cancel,
        )
    except ProcessTimeout as error:
        raise GitError(
            f"git {' '.join(args)} timed out after {error.timeout:.1f}s",
            details={"timeout": error.timeout, "stderr": _decode(error.stderr)},
        ) from error
    except ProcessCancelled as error:
        raise GitError(f"git {' '.join(args)} was cancelled", details={"cancelled": True}) from error

    if check and process.returncode != 0:
        message = _decode(process.stderr).strip() or _decode(process.stdout).strip() or "unknown git error"
        raise GitError(
            f"git {' '.join(args)} failed: {message}",
            details={"returncode": process.returncode},
        )
    return process


def run_git(
    args: Sequence[str],
    *,
    cwd: Path | str,
    check: bool = True,
    timeout: float | None = None,
    cancel: threading.Event | None = None,
    env: Mapping[str, str] | None = None,
) -> subprocess.CompletedProcess[str]:
    """Run a git command and return decoded output."""
    process = run_git_bytes(args, cwd=cwd, check=check, timeout=timeout, cancel=cancel, env=env)
    return subprocess.CompletedProcess(process.args, process.returncode, _decode(process.stdout), _decode(process.stderr))


def remote_default_branch(
    url: str,
    *,
    timeout: float | None = None,
    cancel: threading.Event | None = None,
) -> str:
    """Return the branch the remote's ``HEAD`` points at.

    Uses ``git ls-remote --symref`` so that only refs are exchanged.
    """

    result = run_git(["ls-remote", "--symref", url, "HEAD"], cwd=Path.cwd(), timeout=timeout, cancel=cancel)
    for line in result.stdout.splitlines():
        if not line.startswith("ref:"):
            continue
        ref = line[len("ref:"):].split("\t", 1)[0].strip()
        if ref.startswith("refs/heads/"):
            return ref[len("refs/heads/"):]
    raise GitError(f"Unable to resolve the default branch of {url}")


@dataclass(slots=True)
class GitCheckpoint:
    """Snapshot of (part of) the working tree at a point in time.

    The checkpoint records the current ``HEAD``, the paths it covers, and the
    set of pre-existing untracked files under those paths.  Rolling back
    restores index and worktree of the covered paths to the recorded commit and
    removes only the untracked files that appeared after the checkpoint was
    taken.
    """

    repo: "GitRepository"
    label: str
    head: str
    paths: tuple[str, ...]
    baseline_untracked: tuple[str, ...]
    created_at: float

    def rollback(self) -> None:
        """Restore the repository to the checkpoint."""

        self.repo.restore_checkpoint(self)


class GitRepository:
    """Lightweight wrapper around ``git`` commands."""

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root).resolve()
        if not (self.root / ".git").exists():
            raise GitError(f"Not a git repository: {self.root}")

    # ------------------------------------------------------------------ git IO
    def _run_git(
        self,
        args: Sequence[str],
        *,
        check: bool = True,
        timeout: float | None = None,
        cancel: threading.Event | None = None,
        env: Mapping[str, str] | None = None,
    ) -> subprocess.CompletedProcess[str]:
        return run_git(args, cwd=self.root, check=check, timeout=timeout, cancel=cancel, env=env)

    def git_bytes(
        self,
        *args: str,
        check: bool = True,
        input: bytes | None = None,
        env: Mapping[str, str] | None = None,
    ) -> subprocess.CompletedProcess[bytes]:
        """Execute ``git`` and keep its output as raw bytes."""

        return run_git_bytes(list(args), cwd=self.root, check=check, input=input, env=env)

    def git_common_dir(self) -> Path:
        """Return the git directory shared by every worktree of this repository."""

        result = self._run_git(["rev-parse", "--git-common-dir"])
        path = Path(result.stdout.strip())
        if not path.is_absolute():
            path = self.root / path
        return path.resolve()

    def list_tracked_paths(self, *patterns: str) -> List[Path]:
        """Return tracked paths that match the supplied git pathspec patterns.

        When no patterns are supplied the entire tracked file list is returned.
        Paths are reported relative to the repository root.
        """

        args: List[str] = ["ls-files", "-z"]
        if patterns:
            args.extend(["--", *patterns])

        result = self._run_git(args, check=False)
        if result.returncode != 0:
            message = result.stderr.strip() or result.stdout.strip() or "unable to list tracked paths"
            raise GitError(f"git ls-files failed: {message}")

        return [Path(entry) for entry in result.stdout.split("\0") if entry]

    # -------------------------------------------------------------- revisions
    def head(self) -> str | None:
        """Return the commit ``HEAD`` points at, or ``None`` for an unborn branch."""

        result = self._run_git(["rev-parse", "--verify", "-q", "HEAD"], check=False)
        if result.returncode != 0:
            return None
        head = result.stdout.strip()
        return head or None

    def paths_in_revision(self, revision: str, *paths: str) -> set[str]:
        """Return the subset of ``paths`` that exist as files or trees in ``revision``."""

        if not paths:
            return set()
        result = self._run_git(["ls-tree", "-z", "--name-only", revision, "--", *paths], check=True)
        listed = {entry for entry in result.stdout.split("\0") if entry}
        return {path for path in paths if path.rstrip("/") in listed}

    def current_branch(self) -> str | None:
        """Return the current branch name or ``None`` when detached."""

        result = self._run_git(["rev-parse", "--abbrev-ref", "HEAD"], check=False)
        if result.returncode != 0:
            return None
        branch = result.stdout.strip()
        if not branch or branch == "HEAD":
            return None
        return branch

    # ------------------------------------------------------------- repo status
    def status_entries(self, *paths: str) -> List[tuple[str, Path]]:
        """Return porcelain status entries as ``(status, path)`` pairs.

        Untracked directories are expanded into individual files.
        """

        args: List[str] = ["status", "--porcelain", "-z", "--untracked-files=all", "--no-renames"]
        if paths:
            args.extend(["--", *paths])
        result = self._run_git(args, check=True)
        entries: List[tuple[str, Path]] = []
        for record in result.stdout.split("\0"):
            if not record:
                continue
            status = record[:2].strip() or record[:2]
            entries.append((status, Path(record[3:])))
        return entries

    def untracked_files(self, *paths: str) -> List[Path]:
        """Return the untracked files below ``paths`` (the whole tree by default)."""

        return [path for status, path in self.status_entries(*paths) if status == "??"]

    def has_changes(self, *paths: str) -> bool:
        """Return ``True`` when ``paths`` differ from ``HEAD`` in index or worktree."""

        return bool(self.status_entries(*paths))

    # ----------------------------------------------------------- diff helpers
    def stage(self, *paths: str) -> None:
        """Stage additions, modifications and deletions below ``paths``."""

        self._run_git(["add", "--all", "--", *paths], check=True)

    def has_staged_changes(self, *paths: str) -> bool:
        """Return ``True`` when the index differs from ``HEAD`` below ``paths``."""

        result = self._run_git(["diff", "--cached", "--quiet", "--", *paths], check=False)
        if result.returncode not in (0, 1):
            message = result.stderr.strip() or "unknown git error"
            raise GitError(f"git diff --cached --quiet failed: {message}")
        return result.returncode == 1

    def staged_diff(self, *paths: str) -> bytes:
        """Return the staged delta below ``paths`` as a binary-safe patch."""

        result = self.git_bytes("diff", "--cached", "--binary", "--no-renames", "--no-color", "--", *paths)
        return result.stdout

    def patch_paths(self, patch: bytes) -> List[Path]:
        """Return the repository-relative paths a patch touches."""

        result = self.git_bytes("apply", "--numstat", "-z", "-", input=patch, check=False)
        if result.returncode != 0:
            message = _decode(result.stderr).strip() or "unable to parse patch"
            raise GitError(f"git apply --numstat failed: {message}")
        paths: List[Path] = []
        for record in _decode(result.stdout).split("\0"):
            if not record:
                continue
            parts = record.split("\t", 2)
            if len(parts) == 3 and parts[2]:
                paths.append(Path(parts[2]))
        return paths

    def apply_patch(self, patch_path: Path, *, three_way: bool = True) -> subprocess.CompletedProcess[str]:
        """Apply the patch file at ``patch_path``; the caller inspects the result."""

        args: List[str] = ["apply", "--whitespace=nowarn"]
        if three_way:
            args.append("--3way")
        args.append(str(patch_path))
        return self._run_git(args, check=False)

    # ------------------------------------------------------------- checkpoints
    def create_checkpoint(self, label: str | None = None, *, paths: Sequence[str] = ()) -> GitCheckpoint:
        """Record ``HEAD`` and the untracked files below ``paths``."""

        head = self.head()
        if head is None:
            raise GitError("Cannot checkpoint a repository without commits.")
        scope = tuple(paths)
        baseline_untracked = tuple(sorted(path.as_posix() for path in self.untracked_files(*scope)))
        return GitCheckpoint(
            repo=self,
            label=label or head,
            head=head,
            paths=scope,
            baseline_untracked=baseline_untracked,
            created_at=time.time(),
        )

    def restore_checkpoint(self, checkpoint: GitCheckpoint) -> None:
        """Restore the paths covered by ``checkpoint`` to their recorded state."""

        if checkpoint.repo is not self:
            raise GitError("Checkpoint does not belong to this repository.")

        pathspec = list(checkpoint.paths) or ["."]
        # Dropping the index entries first also clears unmerged stages left by ``apply --3way``.
        self._run_git(["rm", "-r", "-f", "--cached", "--quiet", "--ignore-unmatch", "--", *pathspec], check=True)
        existing = pathspec if not checkpoint.paths else sorted(self.paths_in_revision(checkpoint.head, *pathspec))
        if existing:
            self._run_git(
                ["restore", "--source", checkpoint.head, "--staged", "--worktree", "--", *existing],
                check=True,
            )

        baseline = {Path(entry) for entry in checkpoint.baseline_untracked}
        current_untracked = set(self.untracked_files(*checkpoint.paths))
        extra = sorted(
            (path for path in current_untracked if path not in baseline),
            key=lambda item: len(item.parts),
            reverse=True,
        )

        for relative in extra:
            target = self.root / relative
            if target.is_dir() and not target.is_symlink():
                shutil.rmtree(target, ignore_errors=True)
            elif target.exists() or target.is_symlink():
                target.unlink(missing_ok=True)

    # ---------------------------------------------------------------- commits
    def commit_paths(
        self,
        message: str,
        paths: Sequence[str],
        *,
        author_name: str | None = None,
        author_email: str | None = None,
    ) -> str | None:
        """Commit the staged state of ``paths`` and return the new commit SHA.

        The tree is built in a scratch index seeded from ``HEAD`` that only
        receives the index entries below ``paths``, so changes staged elsewhere
        stay out of the commit and file/directory swaps need no worktree
        lookups.  Returns ``None`` when there was nothing to commit.
        """

        parent = self.head()
        if parent is None:
            raise GitError("Cannot commit onto a repository without commits.")
        staged = self._run_git(["ls-files", "-s", "-z", "--", *paths], check=True).stdout
        entries = [entry for entry in staged.split("\0") if entry]
        if any(entry.split(" ", 2)[2].split("\t", 1)[0] != "0" for entry in entries):
            raise GitError(f"Cannot commit unmerged paths below {', '.join(paths)}")

        with tempfile.TemporaryDirectory(prefix="xsync-index-") as scratch:
            env = {"GIT_INDEX_FILE": str(Path(scratch) / "index")}
            self._run_git(["read-tree", parent], env=env)
            self._run_git(["rm", "-r", "-f", "--cached", "--quiet", "--ignore-unmatch", "--", *paths], env=env)
            if entries:
                self.git_bytes(
                    "update-index",
                    "-z",
                    "--index-info",
                    input="".join(f"{entry}\0" for entry in entries).encode("utf-8"),
                    env=env,
                )
            tree = self._run_git(["write-tree"], env=env).stdout.strip()

        parent_tree = self._run_git(["rev-parse", f"{parent}^{{tree}}"]).stdout.strip()
        if tree == parent_tree:
            return None

        args: List[str] = []
        if author_name:
            args.extend(["-c", f"user.name={author_name}"])
        if author_email:
            args.extend(["-c", f"user.email={author_email}"])
        args.extend(["commit-tree", tree, "-p", parent, "-m", message])
        commit = self._run_git(args).stdout.strip()
        summary = message.partition("\n")[0]
        self._run_git(["update-ref", "-m", f"commit: {summary}", "HEAD", commit, parent])
        return commit

    # -------------------------------------------------------------- remotes
    def push(self, remote: str, branch: str, *, timeout: float | None = None) -> None:
        """Push ``branch`` to ``remote``."""

        self._run_git(["push", remote, f"HEAD:refs/heads/{branch}"], check=True, timeout=timeout)


__all__ = [
    "GitCheckpoint",
    "GitError",
    "GitRepository",
    "remote_default_branch",
    "run_git",
    "run_git_bytes",
]
