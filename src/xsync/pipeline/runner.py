"""Scatter/gather driver for one sync invocation.

Every job runs Fetch -> Transform -> Materialize -> DiffExtract inside its own
disposable worktree of the aggregate repository, on a bounded thread pool.  Job
failures are caught and recorded; they never reach sibling jobs.  Once every
job is terminal the aggregator applies the surviving artifacts and commits
once.  The whole invocation runs under the run lock.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum, IntEnum
from pathlib import Path
from typing import Any, Dict, List, Sequence

from ..config import JobSpec, SyncConfig
from ..errors import JobError, RunCancelled, SyncError
from ..telemetry import emit_event
from ..tools.lock import LOCK_FILENAME, run_lock
from ..tools.vcs import GitError, GitRepository
from ..tools.worktree import job_worktree, prune_worktrees
from .aggregate import AggregateResult, AggregationState, aggregate
from .artifacts import ArtifactError, PatchArtifact, load_artifacts
from .deadline import Deadline
from .diff import DiffError, DiffExtractor
from .fetch import SourceFetcher
from .materialize import MaterializationResult, MaterializeError, Materializer
from .transform import TransformRunner, hook_environment

LOGGER = logging.getLogger(__name__)


class ExitStatus(IntEnum):
    """Process exit codes reported by the CLI."""

    OK = 0
    FAILED = 1
    CONFIG = 2
    PARTIAL = 3
    CANCELLED = 130


class JobStatus(str, Enum):
    """Terminal state of one job."""

    CHANGED = "changed"
    UNCHANGED = "unchanged"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(slots=True)
class JobOutcome:
    """What one job produced, or why it produced nothing."""

    index: int
    job: JobSpec
    status: JobStatus
    stage: str | None = None
    error: str | None = None
    artifact: PatchArtifact | None = None
    materialization: MaterializationResult | None = None
    source_commit: str | None = None
    duration: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.status in (JobStatus.CHANGED, JobStatus.UNCHANGED)

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "job": self.job.label,
            "destination": self.job.destination,
            "status": self.status.value,
            "stage": self.stage,
            "error": self.error,
            "source_commit": self.source_commit,
            "patch_bytes": self.artifact.size if self.artifact else 0,
            "materialization": self.materialization.to_dict() if self.materialization else None,
            "duration": round(self.duration, 3),
        }


@dataclass(slots=True)
class RunSummary:
    """Per-job results plus the aggregate outcome of one invocation."""

    outcomes: List[JobOutcome] = field(default_factory=list)
    aggregate: AggregateResult | None = None
    cancelled: bool = False
    started_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    finished_at: str | None = None

    @property
    def failed(self) -> List[JobOutcome]:
        return [outcome for outcome in self.outcomes if outcome.status is JobStatus.FAILED]

    @property
    def exit_status(self) -> ExitStatus:
        if self.cancelled:
            return ExitStatus.CANCELLED
        if self.aggregate is not None and not self.aggregate.ok:
            return ExitStatus.FAILED
        failed = self.failed
        if failed and len(failed) == len(self.outcomes):
            return ExitStatus.FAILED
        if failed:
            return ExitStatus.PARTIAL
        return ExitStatus.OK

    def to_dict(self) -> dict[str, Any]:
        return {
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "cancelled": self.cancelled,
            "exit_status": int(self.exit_status),
            "jobs": [outcome.to_dict() for outcome in self.outcomes],
            "aggregate": self.aggregate.to_dict() if self.aggregate else None,
        }


def _default_workers(job_count: int) -> int:
    return max(1, min(job_count, os.cpu_count() or 1))


class SyncRunner:
    """Run the whole job list once and converge into a single commit."""

    def __init__(
        self,
        config: SyncConfig,
        *,
        repo: GitRepository | None = None,
        fetcher: SourceFetcher | None = None,
        transformer: TransformRunner | None = None,
        materializer: Materializer | None = None,
        extractor: DiffExtractor | None = None,
        max_workers: int | None = None,
        job_timeout: float | None = None,
        push: bool | None = None,
        cancel_event: threading.Event | None = None,
    ) -> None:
        settings = config.settings
        self.config = config
        self.repo = repo or GitRepository(config.resolve_repo_root())
        self.fetcher = fetcher or SourceFetcher(settings.host)
        self.transformer = transformer or TransformRunner()
        self.materializer = materializer or Materializer()
        self.extractor = extractor or DiffExtractor()
        self.max_workers = max_workers or settings.max_workers
        self.job_timeout = job_timeout if job_timeout is not None else settings.job_timeout
        self.push = settings.push.enabled if push is None else push
        self.cancel_event = cancel_event or threading.Event()

    # ------------------------------------------------------------- lifecycle
    def cancel(self) -> None:
        """Ask running jobs to stop; an aggregation already underway completes."""
        if not self.cancel_event.is_set():
            LOGGER.warning("Cancellation requested; abandoning in-flight jobs.")
        self.cancel_event.set()

    @property
    def lock_path(self) -> Path:
        return self.repo.git_common_dir() / LOCK_FILENAME

    def _base_revision(self) -> str:
        head = self.repo.head()
        if head is None:
            raise GitError(f"Aggregate repository {self.repo.root} has no commits yet.")
        return head

    # ------------------------------------------------------------------ jobs
    def run_job(self, index: int, job: JobSpec, base: str) -> JobOutcome:
        """Run one job pipeline in a private worktree based on ``base``."""
        deadline = Deadline(timeout=self.job_timeout, cancel=self.cancel_event)
        started = time.monotonic()
        stage = "setup"
        materialization: MaterializationResult | None = None
        source_commit: str | None = None
        emit_event("job_started", index=index, job=job.label, source=job.source, destination=job.destination)

        def finish(status: JobStatus, **extra: Any) -> JobOutcome:
            outcome = JobOutcome(
                index=index,
                job=job,
                status=status,
                materialization=materialization,
                source_commit=source_commit,
                duration=time.monotonic() - started,
                **extra,
            )
            emit_event(
                "job_finished",
                index=index,
                job=job.label,
                status=status.value,
                stage=outcome.stage,
                duration=round(outcome.duration, 3),
            )
            return outcome

        try:
            deadline.require(JobError, "starting the job")
            with job_worktree(self.repo, base, label=f"job{index}") as worktree:
                stage = "fetch"
                with self.fetcher.fetch(job, deadline=deadline) as tree:
                    source_commit = tree.commit
                    stage = "transform"
                    if job.transform_commands:
                        self.transformer.run(
                            job.transform_commands,
                            tree.root,
                            deadline=deadline,
                            env=hook_environment(tree.root, workspace=worktree.root, destination=job.destination),
                            label=job.label,
                        )
                    stage = "materialize"
                    deadline.require(MaterializeError, "materialization")
                    materialization = self.materializer.materialize(
                        tree.root,
                        worktree.root / job.destination,
                        truncation_prefix=job.truncation_prefix,
                        destination=job.destination,
                        label=job.label,
                    )
                stage = "diff"
                deadline.require(DiffError, "diff extraction")
                artifact = None
                if not materialization.skipped:
                    artifact = self.extractor.extract(worktree, job, source_commit=source_commit)
        except RunCancelled as error:
            LOGGER.warning("[%s] cancelled during %s", job.label, stage)
            return finish(JobStatus.CANCELLED, stage=stage, error=str(error))
        except JobError as error:
            failed_stage = error.stage if error.stage != "job" else stage
            LOGGER.error("[%s] failed at %s: %s", job.label, failed_stage, error)
            emit_event("job_stage_failed", index=index, job=job.label, stage=failed_stage, details=error.details)
            return finish(JobStatus.FAILED, stage=failed_stage, error=str(error))
        except (SyncError, OSError) as error:
            LOGGER.error("[%s] failed at %s: %s", job.label, stage, error)
            emit_event("job_stage_failed", index=index, job=job.label, stage=stage, error=str(error))
            return finish(JobStatus.FAILED, stage=stage, error=str(error))

        status = JobStatus.CHANGED if artifact is not None else JobStatus.UNCHANGED
        return finish(status, artifact=artifact)

    def run_jobs(self, base: str, jobs: Sequence[JobSpec] | None = None) -> List[JobOutcome]:
        """Scatter ``jobs`` over the worker pool and gather every terminal outcome."""
        jobs = list(self.config.jobs if jobs is None else jobs)
        if not jobs:
            return []
        workers = self.max_workers or _default_workers(len(jobs))
        outcomes: Dict[int, JobOutcome] = {}
        LOGGER.info("Running %d job(s) on %d worker(s)", len(jobs), workers)

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="xsync-job") as pool:
            futures: Dict[Future[JobOutcome], int] = {
                pool.submit(self.run_job, index, job, base): index for index, job in enumerate(jobs)
            }
            for future in as_completed(futures):
                index = futures[future]
                job = jobs[index]
                if future.cancelled():
                    outcomes[index] = JobOutcome(index=index, job=job, status=JobStatus.CANCELLED, stage="queued")
                    continue
                try:
                    outcomes[index] = future.result()
                except Exception as error:  # noqa: BLE001 - one broken job must not sink the run
                    LOGGER.exception("[%s] crashed", job.label)
                    outcomes[index] = JobOutcome(
                        index=index,
                        job=job,
                        status=JobStatus.FAILED,
                        stage="internal",
                        error=f"{type(error).__name__}: {error}",
                    )
                if self.cancel_event.is_set():
                    for pending in futures:
                        pending.cancel()

        return [outcomes[index] for index in sorted(outcomes)]

    # ------------------------------------------------------------ aggregation
    def _aggregate(self, artifacts: Sequence[PatchArtifact | None]) -> AggregateResult:
        settings = self.config.settings
        return aggregate(
            self.repo,
            artifacts,
            commit_message=settings.commit_message,
            author_name=settings.author_name,
            author_email=settings.author_email,
            push_remote=settings.push.remote if self.push else None,
            push_branch=settings.push.branch,
        )

    def run(self) -> RunSummary:
        """Process the entire job list once."""
        summary = RunSummary()
        with run_lock(self.lock_path, timeout=self.config.settings.lock_timeout):
            base = self._base_revision()
            try:
                summary.outcomes = self.run_jobs(base)
            finally:
                prune_worktrees(self.repo)

            if self.cancel_event.is_set():
                summary.cancelled = True
                LOGGER.warning("Run cancelled; skipping aggregation.")
            else:
                # Single writer from here on; cancellation no longer interrupts.
                summary.aggregate = self._aggregate([outcome.artifact for outcome in summary.outcomes if outcome.succeeded])

        summary.finished_at = datetime.now(timezone.utc).isoformat()
        emit_event(
            "run_finished",
            exit_status=int(summary.exit_status),
            failed=[outcome.job.label for outcome in summary.failed],
            aggregate=summary.aggregate.state.value if summary.aggregate else None,
        )
        return summary

    # ------------------------------------------------------- distributed mode
    def run_single(self, index: int, artifact_dir: Path) -> JobOutcome:
        """Run job ``index`` alone and write its artifact into ``artifact_dir``."""
        try:
            job = self.config.jobs[index]
        except IndexError:
            raise SyncError(f"No job with index {index}; the configuration defines {len(self.config.jobs)}") from None
        base = self._base_revision()
        try:
            outcome = self.run_job(index, job, base)
        finally:
            prune_worktrees(self.repo)
        if outcome.artifact is not None:
            path = outcome.artifact.write(artifact_dir, index=index)
            LOGGER.info("[%s] wrote artifact %s", job.label, path)
        return outcome

    def aggregate_directory(self, artifact_dir: Path) -> AggregateResult:
        """Apply every artifact file found in ``artifact_dir`` under the run lock."""
        with run_lock(self.lock_path, timeout=self.config.settings.lock_timeout):
            self._base_revision()
            try:
                artifacts = load_artifacts(artifact_dir)
            except ArtifactError as error:
                LOGGER.error("%s", error)
                return AggregateResult(state=AggregationState.FAILED, error=str(error))
            LOGGER.info("Loaded %d artifact(s) from %s", len(artifacts), artifact_dir)
            return self._aggregate(artifacts)


def run_sync(config: SyncConfig, **options: Any) -> RunSummary:
    """Convenience wrapper: build a :class:`SyncRunner` and run it once."""
    return SyncRunner(config, **options).run()


__all__ = [
    "ExitStatus",
    "JobOutcome",
    "JobStatus",
    "RunSummary",
    "SyncRunner",
    "run_sync",
]
