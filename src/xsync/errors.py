"""Exception hierarchy shared by the sync pipeline."""

from __future__ import annotations

from typing import Any, Mapping


class SyncError(RuntimeError):
    """Base class for every error raised by the sync pipeline."""

    def __init__(self, message: str, *, details: Mapping[str, Any] | None = None) -> None:
        super().__init__(message)
        self.details: dict[str, Any] = dict(details or {})


class JobError(SyncError):
    """Failure confined to a single job; sibling jobs keep running."""

    stage = "job"


class RunCancelled(SyncError):
    """Raised when the invocation was cancelled before it could finish."""


__all__ = ["JobError", "RunCancelled", "SyncError"]
