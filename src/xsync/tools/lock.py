"""Run-level mutual exclusion so only one pipeline writes the aggregate repo."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from filelock import FileLock, Timeout

from ..errors import SyncError

LOGGER = logging.getLogger(__name__)

LOCK_FILENAME = "xsync.lock"


class RunLockTimeout(SyncError):
    """Raised when another invocation holds the run lock for too long."""


@contextmanager
def run_lock(lock_path: Path, *, timeout: float | None = None) -> Iterator[Path]:
    """Hold the run lock at ``lock_path`` for the duration of the block.

    ``timeout=None`` queues behind the running invocation indefinitely.
    """
    lock = FileLock(str(lock_path), timeout=-1 if timeout is None else timeout)
    LOGGER.debug("Acquiring run lock %s", lock_path)
    try:
        lock.acquire()
    except Timeout as error:
        raise RunLockTimeout(
            f"Timed out acquiring run lock {lock_path} after {timeout}s; another sync is still running",
            details={"lock_path": str(lock_path), "timeout": timeout},
        ) from error
    try:
        yield lock_path
    finally:
        lock.release()
        LOGGER.debug("Released run lock %s", lock_path)


__all__ = ["LOCK_FILENAME", "RunLockTimeout", "run_lock"]
