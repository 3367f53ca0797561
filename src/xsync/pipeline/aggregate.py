"""Fan-in stage: apply every job's patch and produce at most one commit.

The aggregator is the only writer of the aggregate working copy.  It walks
``COLLECTING -> APPLYING -> {COMMITTED, NOOP_CLEAN, FAILED}``; any failure while
applying or committing rolls every destination back to ``HEAD`` so a
half-applied tree is never committed.
"""

from __future__ import annotations

import logging
import re
import tempfile
from dataclasses import dataclass
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import Any, Dict, Iterable, List, Tuple

from ..errors import SyncError
from ..telemetry import emit_event
from ..tools.vcs import GitError, GitRepository
from .artifacts import PatchArtifact

LOGGER = logging.getLogger(__name__)

_PATCH_FAILED_RE = re.compile(r"error: patch failed: (?P<path>.+?)(?::(?P<line>\d+))?$")
_PATCH_DOES_NOT_APPLY_RE = re.compile(r"error: (?P<path>.+?): patch does not apply")
_INDEX_MISMATCH_RE = re.compile(r"error: (?P<path>.+?): does not (?:match|exist in) index")
_CONFLICT_RE = re.compile(r"^U (?P<path>.+)$")
_WITH_CONFLICTS_RE = re.compile(r"Applied patch to '(?P<path>.+?)' with conflicts")


class AggregationState(str, Enum):
    """Lifecycle of one aggregation run."""

    COLLECTING = "collecting"
    APPLYING = "applying"
    COMMITTED = "committed"
    NOOP_CLEAN = "noop-clean"
    FAILED = "failed"


class AggregationConflictError(SyncError):
    """Raised when artifacts overlap or a patch cannot be merged cleanly."""

    def __init__(
        self,
        message: str,
        *,
        destination: str | None = None,
        conflicts: Iterable[str] = (),
        details: dict[str, Any] | None = None,
    ) -> None:
        payload = dict(details or {})
        payload.setdefault("destination", destination)
        payload.setdefault("conflicts", list(conflicts))
        super().__init__(message, details=payload)
        self.destination = destination
        self.conflicts: Tuple[str, ...] = tuple(payload["conflicts"])


@dataclass(slots=True)
class AggregateResult:
    """Terminal outcome of the aggregation stage."""

    state: AggregationState
    commit: str | None = None
    applied: Tuple[str, ...] = ()
    error: str | None = None
    conflicts: Tuple[str, ...] = ()
    pushed: bool = False
    push_error: str | None = None

    @property
    def ok(self) -> bool:
        return self.state in (AggregationState.COMMITTED, AggregationState.NOOP_CLEAN)

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "commit": self.commit,
            "applied": list(self.applied),
            "error": self.error,
            "conflicts": list(self.conflicts),
            "pushed": self.pushed,
            "push_error": self.push_error,
        }


def _parse_apply_failures(output: str) -> Tuple[str, ...]:
    """Collect the paths git reported as conflicting or unappliable."""
    paths: List[str] = []
    for raw_line in output.splitlines():
        line = raw_line.strip()
        for pattern in (
            _PATCH_FAILED_RE,
            _PATCH_DOES_NOT_APPLY_RE,
            _INDEX_MISMATCH_RE,
            _CONFLICT_RE,
            _WITH_CONFLICTS_RE,
        ):
            match = pattern.search(line)
            if match:
                path = match.group("path")
                if path not in paths:
                    paths.append(path)
                break
    return tuple(paths)


def _within(path: str, destination: str) -> bool:
    return path == destination or path.startswith(destination + "/")


def _validate_patch_path(path: Path, destination: str) -> None:
    """Enforce that a patch only touches files below its own destination."""
    posix = PurePosixPath(path.as_posix())
    if posix.is_absolute() or ".." in posix.parts:
        raise AggregationConflictError(f"Patch for {destination} escapes the repository: {path}", destination=destination)
    if posix.parts and posix.parts[0] == ".git":
        raise AggregationConflictError(f"Patch for {destination} targets .git", destination=destination)
    if not _within(posix.as_posix(), destination):
        raise AggregationConflictError(
            f"Patch for {destination} touches {posix} outside its destination",
            destination=destination,
            conflicts=[posix.as_posix()],
        )


class PatchAggregator:
    """Single-writer aggregation over one working copy."""

    def __init__(
        self,
        repo: GitRepository,
        *,
        commit_message: str,
        author_name: str | None = None,
        author_email: str | None = None,
        push_remote: str | None = None,
        push_branch: str | None = None,
    ) -> None:
        self.repo = repo
        self.commit_message = commit_message
        self.author_name = author_name
        self.author_email = author_email
        self.push_remote = push_remote
        self.push_branch = push_branch
        self.state = AggregationState.COLLECTING
        self._artifacts: Dict[str, PatchArtifact] = {}

    @property
    def destinations(self) -> List[str]:
        return sorted(self._artifacts)

    # ------------------------------------------------------------ collecting
    def collect(self, artifact: PatchArtifact | None) -> None:
        """Accept one job's artifact; ``None`` or an empty patch is ignored."""
        if self.state is not AggregationState.COLLECTING:
            raise SyncError(f"Cannot collect artifacts while {self.state.value}")
        if artifact is None or not artifact.patch.strip():
            return
        destination = artifact.destination
        for existing in self._artifacts:
            if _within(destination, existing) or _within(existing, destination):
                self.state = AggregationState.FAILED
                raise AggregationConflictError(
                    f"Artifacts for {existing} and {destination} overlap",
                    destination=destination,
                    conflicts=[existing, destination],
                )
        self._artifacts[destination] = artifact

    # -------------------------------------------------------------- applying
    def _apply(self, artifact: PatchArtifact) -> None:
        for path in self.repo.patch_paths(artifact.patch):
            _validate_patch_path(path, artifact.destination)

        with tempfile.NamedTemporaryFile("wb", suffix=".patch", delete=False) as handle:
            handle.write(artifact.patch)
            temp_path = Path(handle.name)
        try:
            result = self.repo.apply_patch(temp_path, three_way=True)
        finally:
            temp_path.unlink(missing_ok=True)

        if result.returncode != 0:
            output = "\n".join(part for part in (result.stderr, result.stdout) if part)
            conflicts = _parse_apply_failures(output)
            raise AggregationConflictError(
                f"Patch for {artifact.destination} did not apply cleanly: {output.strip() or 'unknown error'}",
                destination=artifact.destination,
                conflicts=conflicts,
            )
        emit_event("artifact_applied", destination=artifact.destination, job=artifact.job, bytes=artifact.size)

    def _push(self, result: AggregateResult) -> None:
        if not self.push_remote:
            return
        branch = self.push_branch or self.repo.current_branch()
        if not branch:
            result.push_error = "HEAD is detached and no push branch is configured"
            return
        try:
            self.repo.push(self.push_remote, branch)
        except GitError as error:
            LOGGER.error("Push to %s/%s failed: %s", self.push_remote, branch, error)
            result.push_error = str(error)
            return
        result.pushed = True

    def run(self) -> AggregateResult:
        """Apply every collected artifact and commit the combined result once."""
        if self.state is AggregationState.FAILED:
            return AggregateResult(state=self.state, error="aggregation already failed")

        destinations = self.destinations
        if not destinations:
            self.state = AggregationState.NOOP_CLEAN
            LOGGER.info("No artifacts to apply; nothing to commit.")
            emit_event("aggregate_finished", state=self.state.value, applied=[])
            return AggregateResult(state=self.state)

        dirty = [path.as_posix() for _, path in self.repo.status_entries(*destinations)]
        if dirty:
            self.state = AggregationState.FAILED
            error = AggregationConflictError(
                "Destinations have uncommitted changes; refusing to apply patches over them",
                conflicts=dirty,
            )
            LOGGER.error("%s: %s", error, ", ".join(dirty))
            emit_event("aggregate_finished", state=self.state.value, error=str(error), conflicts=dirty)
            return AggregateResult(state=self.state, error=str(error), conflicts=error.conflicts)

        checkpoint = self.repo.create_checkpoint("xsync-aggregate", paths=destinations)
        self.state = AggregationState.APPLYING
        try:
            for destination in destinations:
                self._apply(self._artifacts[destination])
            present = [item for item in destinations if (self.repo.root / item).exists()]
            if present:
                self.repo.stage(*present)
            if not self.repo.has_staged_changes(*destinations):
                checkpoint.rollback()
                self.state = AggregationState.NOOP_CLEAN
                LOGGER.info("Applied artifacts produce no net change; nothing to commit.")
                emit_event("aggregate_finished", state=self.state.value, applied=destinations)
                return AggregateResult(state=self.state, applied=tuple(destinations))
            commit = self.repo.commit_paths(
                self.commit_message,
                destinations,
                author_name=self.author_name,
                author_email=self.author_email,
            )
        except (AggregationConflictError, GitError) as error:
            self.state = AggregationState.FAILED
            LOGGER.error("Aggregation failed, rolling back %d destination(s): %s", len(destinations), error)
            message = str(error)
            try:
                checkpoint.rollback()
            except GitError as rollback_error:
                LOGGER.error("Rollback of %s failed: %s", ", ".join(destinations), rollback_error)
                message = f"{message}; rollback failed: {rollback_error}"
            conflicts = error.conflicts if isinstance(error, AggregationConflictError) else ()
            emit_event("aggregate_finished", state=self.state.value, error=message, conflicts=conflicts)
            return AggregateResult(state=self.state, error=message, conflicts=tuple(conflicts))

        if commit is None:
            self.state = AggregationState.NOOP_CLEAN
            return AggregateResult(state=self.state, applied=tuple(destinations))

        self.state = AggregationState.COMMITTED
        result = AggregateResult(state=self.state, commit=commit, applied=tuple(destinations))
        LOGGER.info("Committed %s covering %d destination(s)", commit[:12], len(destinations))
        self._push(result)
        emit_event(
            "aggregate_finished",
            state=self.state.value,
            commit=commit,
            applied=destinations,
            pushed=result.pushed,
            push_error=result.push_error,
        )
        return result


def aggregate(
    repo: GitRepository,
    artifacts: Iterable[PatchArtifact | None],
    *,
    commit_message: str,
    author_name: str | None = None,
    author_email: str | None = None,
    push_remote: str | None = None,
    push_branch: str | None = None,
) -> AggregateResult:
    """Collect ``artifacts`` and run the aggregator once."""
    aggregator = PatchAggregator(
        repo,
        commit_message=commit_message,
        author_name=author_name,
        author_email=author_email,
        push_remote=push_remote,
        push_branch=push_branch,
    )
    try:
        for artifact in artifacts:
            aggregator.collect(artifact)
    except AggregationConflictError as error:
        LOGGER.error("Rejected artifacts: %s", error)
        emit_event("aggregate_finished", state=AggregationState.FAILED.value, error=str(error))
        return AggregateResult(state=AggregationState.FAILED, error=str(error), conflicts=error.conflicts)
    return aggregator.run()


__all__ = [
    "AggregateResult",
    "AggregationConflictError",
    "AggregationState",
    "PatchAggregator",
    "aggregate",
]
