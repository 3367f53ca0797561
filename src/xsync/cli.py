"""CLI commands for syncing external repositories into one aggregate repository."""

from __future__ import annotations

import json
import logging
import signal
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, Optional

import typer

from .config import DEFAULT_CONFIG_NAME, ConfigError, SyncConfig, load_config
from .errors import SyncError
from .pipeline.aggregate import AggregateResult
from .pipeline.runner import ExitStatus, JobOutcome, JobStatus, RunSummary, SyncRunner
from .tools.lock import RunLockTimeout
from .tools.vcs import GitError

APP_HELP = "Mirror path-filtered slices of external git repositories into this repository."

app = typer.Typer(help=APP_HELP)

LOGGER = logging.getLogger(__name__)


def _configure_logging(verbose: bool, quiet: bool) -> None:
    level = logging.DEBUG if verbose else logging.WARNING if quiet else logging.INFO
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s", force=True)
    # Structured events are only interesting when asked for.
    logging.getLogger("xsync.telemetry").setLevel(logging.INFO if verbose else logging.WARNING)


def _load(config: str, repo_root: Optional[Path]) -> SyncConfig:
    """Load and validate the job configuration or exit with the config status."""
    try:
        loaded = load_config(Path(config))
    except ConfigError as error:
        typer.echo(f"Configuration error: {error}", err=True)
        raise typer.Exit(code=int(ExitStatus.CONFIG)) from error
    if repo_root is not None:
        loaded.settings = loaded.settings.model_copy(update={"repo_root": str(repo_root.resolve())})
    return loaded


def _build_runner(
    sync_config: SyncConfig,
    *,
    workers: Optional[int],
    timeout: Optional[float],
    push: Optional[bool],
) -> SyncRunner:
    try:
        return SyncRunner(sync_config, max_workers=workers, job_timeout=timeout, push=push)
    except GitError as error:
        typer.echo(f"Failed to open repository at {sync_config.resolve_repo_root()}: {error}", err=True)
        raise typer.Exit(code=int(ExitStatus.FAILED)) from error


@contextmanager
def _cancel_on_signals(runner: SyncRunner) -> Iterator[None]:
    """Route SIGINT/SIGTERM to the runner's cancellation event."""
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    def handler(signum: int, _frame: Any) -> None:
        LOGGER.warning("Received %s", signal.Signals(signum).name)
        runner.cancel()

    previous = {sig: signal.signal(sig, handler) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        yield
    finally:
        for sig, original in previous.items():
            signal.signal(sig, original)


def _write_json(path: Path, payload: Dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, indent=2) + "\n", encoding="utf-8")


def _render_outcome(outcome: JobOutcome) -> None:
    line = f"- [{outcome.status.value}] {outcome.job.label} -> {outcome.job.destination}"
    result = outcome.materialization
    if result is not None and outcome.status is not JobStatus.FAILED:
        mode = "bootstrap" if result.bootstrap else "delta"
        line += f" ({mode}: +{len(result.added)} ~{len(result.modified)} -{len(result.deleted)})"
    typer.echo(f"{line} {outcome.duration:.1f}s")
    if outcome.error:
        typer.echo(f"    ! {outcome.stage or 'job'}: {outcome.error}")


def _render_aggregate(result: AggregateResult) -> None:
    if result.commit:
        typer.echo(f"Aggregate: {result.state.value} {result.commit[:7]} ({len(result.applied)} destination(s))")
    else:
        typer.echo(f"Aggregate: {result.state.value}")
    if result.error:
        typer.echo(f"    ! {result.error}")
    for path in result.conflicts:
        typer.echo(f"    conflict: {path}")
    if result.pushed:
        typer.echo("Push: done")
    elif result.push_error:
        typer.echo(f"Push: failed :: {result.push_error}")


def _render_summary(summary: RunSummary) -> None:
    """Display a concise summary of one sync run."""
    typer.echo("Sync summary:")
    if not summary.outcomes:
        typer.echo("No jobs configured.")
    for outcome in summary.outcomes:
        _render_outcome(outcome)
    if summary.aggregate is not None:
        _render_aggregate(summary.aggregate)
    elif summary.cancelled:
        typer.echo("Aggregate: skipped (cancelled)")
    typer.echo(f"Outcome: {summary.exit_status.name.lower()}")


_CONFIG_OPTION = typer.Option(DEFAULT_CONFIG_NAME, "--config", "-c", help="Path to the sync job configuration.")
_REPO_ROOT_OPTION = typer.Option(
    None,
    "--repo-root",
    help="Aggregate repository root (overrides settings.repo_root).",
)
_VERBOSE_OPTION = typer.Option(False, "--verbose", "-v", help="Log debug output and telemetry events.")
_QUIET_OPTION = typer.Option(False, "--quiet", "-q", help="Only log warnings and errors.")


@app.command()
def run(
    config: str = _CONFIG_OPTION,
    repo_root: Optional[Path] = _REPO_ROOT_OPTION,
    workers: Optional[int] = typer.Option(None, "--workers", "-j", min=1, help="Maximum concurrent jobs."),
    timeout: Optional[float] = typer.Option(None, "--timeout", min=0.001, help="Per-job timeout in seconds."),
    push: Optional[bool] = typer.Option(
        None,
        "--push/--no-push",
        help="Push the aggregate commit (defaults to settings.push.enabled).",
    ),
    summary_json: Optional[Path] = typer.Option(None, "--summary-json", help="Write the run summary as JSON."),
    verbose: bool = _VERBOSE_OPTION,
    quiet: bool = _QUIET_OPTION,
) -> None:
    """Run every configured job once and commit the combined result."""
    _configure_logging(verbose, quiet)
    sync_config = _load(config, repo_root)
    runner = _build_runner(sync_config, workers=workers, timeout=timeout, push=push)

    try:
        with _cancel_on_signals(runner):
            summary = runner.run()
    except RunLockTimeout as error:
        typer.echo(f"Another sync is still running: {error}", err=True)
        raise typer.Exit(code=int(ExitStatus.FAILED)) from error
    except SyncError as error:
        typer.echo(f"Sync failed: {error}", err=True)
        raise typer.Exit(code=int(ExitStatus.FAILED)) from error

    _render_summary(summary)
    if summary_json is not None:
        _write_json(summary_json, summary.to_dict())
    raise typer.Exit(code=int(summary.exit_status))


@app.command()
def validate(config: str = _CONFIG_OPTION) -> None:
    """Validate the job configuration without touching the network or filesystem."""
    sync_config = _load(config, None)
    typer.echo(f"Loaded configuration from {config}")
    typer.echo(f"Jobs: {len(sync_config.jobs)}")
    for job in sync_config.jobs:
        filters = ", ".join(job.path_filters) or "(entire tree)"
        typer.echo(f"- {job.label} -> {job.destination} [{filters}]")


@app.command()
def matrix(config: str = _CONFIG_OPTION) -> None:
    """Print the CI fan-out job matrix as JSON."""
    sync_config = _load(config, None)
    typer.echo(json.dumps(sync_config.to_matrix(), separators=(",", ":")))


@app.command()
def job(
    index: int = typer.Option(..., "--index", "-i", min=0, help="Zero-based job index from the matrix."),
    artifact_dir: Path = typer.Option(..., "--artifact-dir", help="Directory receiving the patch artifact."),
    config: str = _CONFIG_OPTION,
    repo_root: Optional[Path] = _REPO_ROOT_OPTION,
    timeout: Optional[float] = typer.Option(None, "--timeout", min=0.001, help="Job timeout in seconds."),
    verbose: bool = _VERBOSE_OPTION,
    quiet: bool = _QUIET_OPTION,
) -> None:
    """Run a single job and write its patch artifact (distributed mode)."""
    _configure_logging(verbose, quiet)
    sync_config = _load(config, repo_root)
    runner = _build_runner(sync_config, workers=1, timeout=timeout, push=False)

    try:
        with _cancel_on_signals(runner):
            outcome = runner.run_single(index, artifact_dir)
    except SyncError as error:
        typer.echo(f"Job failed: {error}", err=True)
        raise typer.Exit(code=int(ExitStatus.FAILED)) from error

    _render_outcome(outcome)
    if outcome.status is JobStatus.CANCELLED:
        raise typer.Exit(code=int(ExitStatus.CANCELLED))
    if outcome.status is JobStatus.FAILED:
        raise typer.Exit(code=int(ExitStatus.FAILED))


@app.command()
def aggregate(
    artifact_dir: Path = typer.Option(..., "--artifact-dir", help="Directory holding patch artifacts."),
    config: str = _CONFIG_OPTION,
    repo_root: Optional[Path] = _REPO_ROOT_OPTION,
    push: Optional[bool] = typer.Option(None, "--push/--no-push", help="Push the aggregate commit."),
    verbose: bool = _VERBOSE_OPTION,
    quiet: bool = _QUIET_OPTION,
) -> None:
    """Apply every artifact in a directory and commit once (distributed mode)."""
    _configure_logging(verbose, quiet)
    sync_config = _load(config, repo_root)
    runner = _build_runner(sync_config, workers=None, timeout=None, push=push)

    try:
        result = runner.aggregate_directory(artifact_dir)
    except SyncError as error:
        typer.echo(f"Aggregation failed: {error}", err=True)
        raise typer.Exit(code=int(ExitStatus.FAILED)) from error

    _render_aggregate(result)
    if not result.ok:
        raise typer.Exit(code=int(ExitStatus.FAILED))


if __name__ == "__main__":
    app()
