"""Per-job time budget and cooperative cancellation."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Type

from ..errors import JobError, RunCancelled


@dataclass(slots=True)
class Deadline:
    """Wall-clock budget of one job plus the run-wide cancellation flag."""

    timeout: float | None = None
    cancel: threading.Event = field(default_factory=threading.Event)
    started: float = field(default_factory=time.monotonic)

    def remaining(self) -> float | None:
        if self.timeout is None:
            return None
        return max(self.timeout - (time.monotonic() - self.started), 0.0)

    def require(self, error_cls: Type[JobError], action: str) -> float | None:
        """Return the remaining budget before ``action``.

        Raises :class:`RunCancelled` when the run was cancelled and
        ``error_cls`` when the budget is already spent.
        """
        if self.cancel.is_set():
            raise RunCancelled(f"Run cancelled before {action}")
        remaining = self.remaining()
        if remaining is not None and remaining <= 0:
            raise error_cls(
                f"Job timed out after {self.timeout:.0f}s before {action}",
                details={"timeout": self.timeout},
            )
        return remaining


__all__ = ["Deadline"]
