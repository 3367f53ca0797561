"""Run a job's transformation commands against its fetched tree.

Commands are opaque: this stage only starts them, waits, and looks at the exit
status.  Whatever they do to the tree (rewrite files, rename extensions, delete
sources) is what the materializer sees afterwards.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Sequence

from ..errors import JobError, RunCancelled
from ..tools.process import ProcessCancelled, ProcessTimeout, merge_env, run_process
from .deadline import Deadline

LOGGER = logging.getLogger(__name__)

# Characters of command output kept in error messages.
_OUTPUT_TAIL = 4000

# In-process alternative to a shell command; raises to signal failure.
TransformHook = Callable[[Path], None]


class TransformError(JobError):
    """Raised when a transformation command fails or times out."""

    stage = "transform"


@dataclass(slots=True)
class CommandResult:
    """Outcome of one transformation command."""

    index: int
    command: str
    exit_code: int
    stdout: str
    stderr: str


def _tail(payload: bytes) -> str:
    text = payload.decode("utf-8", errors="replace") if payload else ""
    return text[-_OUTPUT_TAIL:]


def hook_environment(tree_root: Path, *, workspace: Path | None = None, destination: str | None = None) -> Dict[str, str]:
    """Variables exposed to every transformation command."""
    root = str(tree_root.resolve())
    env = {"SYNC_INPUT_DIR": root, "CLONE_DIR": root}
    if workspace is not None:
        env["SYNC_WORKSPACE"] = str(workspace.resolve())
    if destination is not None:
        env["SYNC_DEST_DIR"] = destination
    return env


class TransformRunner:
    """Execute shell commands (and optional in-process hooks) in order."""

    def __init__(self, shell: Sequence[str] = ("bash", "-c"), *, hooks: Sequence[TransformHook] = ()) -> None:
        self.shell = tuple(shell)
        self.hooks = tuple(hooks)

    def run(
        self,
        commands: Sequence[str],
        tree_root: Path,
        *,
        deadline: Deadline | None = None,
        env: Mapping[str, str] | None = None,
        label: str = "job",
    ) -> List[CommandResult]:
        """Run ``commands`` with ``tree_root`` as working directory.

        The first failing command aborts the stage with :class:`TransformError`.
        """
        deadline = deadline or Deadline()
        environment = merge_env({**hook_environment(tree_root), **(env or {})})
        results: List[CommandResult] = []

        for index, command in enumerate(commands):
            timeout = deadline.require(TransformError, f"transform command #{index + 1}")
            LOGGER.info("[%s] running transform #%d: %s", label, index + 1, command)
            try:
                process = run_process(
                    [*self.shell, command],
                    cwd=tree_root,
                    env=environment,
                    timeout=timeout,
                    cancel=deadline.cancel,
                )
            except ProcessTimeout as error:
                raise TransformError(
                    f"Transform command #{index + 1} timed out after {error.timeout:.1f}s: {command}",
                    details={
                        "index": index,
                        "command": command,
                        "stdout": _tail(error.stdout),
                        "stderr": _tail(error.stderr),
                    },
                ) from error
            except ProcessCancelled as error:
                raise RunCancelled(f"Run cancelled during transform command #{index + 1}") from error
            except OSError as error:
                raise TransformError(
                    f"Transform command #{index + 1} could not be started: {error}",
                    details={"index": index, "command": command},
                ) from error

            result = CommandResult(
                index=index,
                command=command,
                exit_code=process.returncode,
                stdout=_tail(process.stdout),
                stderr=_tail(process.stderr),
            )
            results.append(result)
            if process.returncode != 0:
                output = result.stderr.strip() or result.stdout.strip() or "no output"
                raise TransformError(
                    f"Transform command #{index + 1} exited with {process.returncode}: {command}\n{output}",
                    details={
                        "index": index,
                        "command": command,
                        "exit_code": process.returncode,
                        "stdout": result.stdout,
                        "stderr": result.stderr,
                    },
                )

        for hook in self.hooks:
            deadline.require(TransformError, "transform hook")
            name = getattr(hook, "__name__", repr(hook))
            LOGGER.info("[%s] running transform hook %s", label, name)
            try:
                hook(tree_root)
            except TransformError:
                raise
            except Exception as error:  # noqa: BLE001 - hooks are arbitrary user code
                raise TransformError(f"Transform hook {name} failed: {error}", details={"hook": name}) from error

        return results


__all__ = ["CommandResult", "TransformError", "TransformHook", "TransformRunner", "hook_environment"]
