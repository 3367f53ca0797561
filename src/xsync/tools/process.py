"""Subprocess execution with deadlines and cooperative cancellation."""

from __future__ import annotations

import os
import signal
import subprocess
import threading
import time
from contextlib import suppress
from pathlib import Path
from typing import Dict, Mapping, Sequence

__all__ = ["ProcessCancelled", "ProcessTimeout", "merge_env", "run_process"]

# How often a blocked wait wakes up to look at the cancellation flag.
_POLL_INTERVAL = 0.5


class ProcessTimeout(RuntimeError):
    """Raised when a command outlives its time budget."""

    def __init__(self, command: Sequence[str], timeout: float, stdout: bytes, stderr: bytes) -> None:
        super().__init__(f"{' '.join(command)} timed out after {timeout:.1f}s")
        self.command = tuple(command)
        self.timeout = timeout
        self.stdout = stdout
        self.stderr = stderr


class ProcessCancelled(RuntimeError):
    """Raised when the cancellation flag was set while a command was running."""

    def __init__(self, command: Sequence[str]) -> None:
        super().__init__(f"{' '.join(command)} was cancelled")
        self.command = tuple(command)


def merge_env(extra: Mapping[str, str] | None) -> Dict[str, str]:
    """Merge provided environment overrides with the current process state."""
    env: Dict[str, str] = os.environ.copy()
    if extra:
        env.update({str(key): str(value) for key, value in extra.items()})
    return env


def _kill_group(process: subprocess.Popen[bytes]) -> None:
    # The child leads its own session, so the whole group goes down with it.
    with suppress(ProcessLookupError):
        os.killpg(process.pid, signal.SIGKILL)


def run_process(
    command: Sequence[str],
    *,
    cwd: Path | str,
    env: Mapping[str, str] | None = None,
    input: bytes | None = None,
    timeout: float | None = None,
    cancel: threading.Event | None = None,
) -> subprocess.CompletedProcess[bytes]:
    """Run ``command`` and return its raw output.

    ``timeout`` bounds the wall-clock time of the command; when it expires the
    whole process group is killed and :class:`ProcessTimeout` is raised.  When
    ``cancel`` is set while waiting the command is killed and
    :class:`ProcessCancelled` is raised.  A non-zero exit status is *not* an
    error here; callers decide what it means.
    """

    if cancel is not None and cancel.is_set():
        raise ProcessCancelled(command)

    process = subprocess.Popen(  # noqa: S603 - commands come from trusted configuration
        list(command),
        cwd=str(cwd),
        env=dict(env) if env is not None else None,
        stdin=subprocess.PIPE if input is not None else subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        start_new_session=True,
    )
    deadline = time.monotonic() + timeout if timeout is not None else None
    pending_input = input

    while True:
        wait: float | None = _POLL_INTERVAL if cancel is not None else None
        if deadline is not None:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                _kill_group(process)
                stdout, stderr = process.communicate()
                raise ProcessTimeout(command, timeout or 0.0, stdout or b"", stderr or b"")
            wait = remaining if wait is None else min(wait, remaining)
        try:
            stdout, stderr = process.communicate(input=pending_input, timeout=wait)
            break
        except subprocess.TimeoutExpired:
            # Input is only written on the first call; retries must not resend it.
            pending_input = None
            if cancel is not None and cancel.is_set():
                _kill_group(process)
                process.communicate()
                raise ProcessCancelled(command) from None

    return subprocess.CompletedProcess(process.args, process.returncode, stdout or b"", stderr or b"")
