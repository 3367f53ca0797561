"""Git, process and locking helpers used by the sync pipeline."""

from .lock import LOCK_FILENAME, RunLockTimeout, run_lock
from .process import ProcessCancelled, ProcessTimeout, run_process
from .vcs import GitCheckpoint, GitError, GitRepository, remote_default_branch
from .worktree import job_worktree, prune_worktrees

__all__ = [
    "GitCheckpoint",
    "GitError",
    "GitRepository",
    "LOCK_FILENAME",
    "ProcessCancelled",
    "ProcessTimeout",
    "RunLockTimeout",
    "job_worktree",
    "prune_worktrees",
    "remote_default_branch",
    "run_lock",
    "run_process",
]
