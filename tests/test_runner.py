from __future__ import annotations

import json
import logging
import shutil
import threading
from pathlib import Path

import pytest

from xsync.config import load_config
from xsync.pipeline.aggregate import AggregationState
from xsync.pipeline.artifacts import load_artifacts
from xsync.pipeline.runner import ExitStatus, JobStatus, SyncRunner
from xsync.tools.lock import LOCK_FILENAME, RunLockTimeout, run_lock

from conftest import SyncSandbox, commit_all, commit_count, git, tracked_files, write_files


def _runner(sandbox: SyncSandbox, jobs, settings=None, **options) -> SyncRunner:
    config = load_config(sandbox.write_config(jobs, settings))
    return SyncRunner(config, **options)


def test_deleted_source_file_is_removed_with_one_commit_per_run(sandbox: SyncSandbox) -> None:
    config = load_config(sandbox.write_config([sandbox.job()]))
    start = commit_count(sandbox.aggregate)

    first = SyncRunner(config).run()

    assert first.exit_status is ExitStatus.OK
    assert first.outcomes[0].status is JobStatus.CHANGED
    assert first.outcomes[0].materialization is not None
    assert first.outcomes[0].materialization.bootstrap is True
    assert first.aggregate is not None and first.aggregate.state is AggregationState.COMMITTED
    assert commit_count(sandbox.aggregate) == start + 1
    assert tracked_files(sandbox.aggregate, "synced") == [
        "synced/docs/guide/intro.md",
        "synced/docs/p.md",
        "synced/docs/q.md",
    ]

    (sandbox.source / "docs" / "q.md").unlink()
    commit_all(sandbox.source, "drop q")

    second = SyncRunner(config).run()

    assert second.exit_status is ExitStatus.OK
    assert second.outcomes[0].materialization is not None
    assert second.outcomes[0].materialization.deleted == ("q.md",)
    assert commit_count(sandbox.aggregate) == start + 2
    assert tracked_files(sandbox.aggregate, "synced") == ["synced/docs/guide/intro.md", "synced/docs/p.md"]
    assert not (sandbox.aggregate / "synced" / "docs" / "q.md").exists()

    third = SyncRunner(config).run()

    assert third.outcomes[0].status is JobStatus.UNCHANGED
    assert third.aggregate is not None and third.aggregate.state is AggregationState.NOOP_CLEAN
    assert commit_count(sandbox.aggregate) == start + 2


def test_file_and_directory_swaps_converge(sandbox: SyncSandbox) -> None:
    write_files(sandbox.aggregate, {"synced/docs/guide": "was a file\n"})
    commit_all(sandbox.aggregate, "seed mirror with a guide file")
    config = load_config(sandbox.write_config([sandbox.job()]))
    start = commit_count(sandbox.aggregate)

    first = SyncRunner(config).run()

    assert first.exit_status is ExitStatus.OK, first.aggregate
    assert first.outcomes[0].materialization is not None
    assert first.outcomes[0].materialization.bootstrap is False
    assert commit_count(sandbox.aggregate) == start + 1
    assert tracked_files(sandbox.aggregate, "synced") == [
        "synced/docs/guide/intro.md",
        "synced/docs/p.md",
        "synced/docs/q.md",
    ]
    assert (sandbox.aggregate / "synced" / "docs" / "guide").is_dir()

    shutil.rmtree(sandbox.source / "docs" / "guide")
    write_files(sandbox.source, {"docs/guide": "now a file\n"})
    commit_all(sandbox.source, "guide becomes a file")

    second = SyncRunner(config).run()

    assert second.exit_status is ExitStatus.OK, second.aggregate
    assert commit_count(sandbox.aggregate) == start + 2
    assert tracked_files(sandbox.aggregate, "synced") == ["synced/docs/guide", "synced/docs/p.md", "synced/docs/q.md"]
    assert (sandbox.aggregate / "synced" / "docs" / "guide").read_text(encoding="utf-8") == "now a file\n"
    assert git(sandbox.aggregate, "status", "--porcelain").strip() == ""


def test_only_the_filtered_subtree_reaches_the_destination(sandbox: SyncSandbox) -> None:
    runner = _runner(sandbox, [sandbox.job()])

    runner.run()

    files = tracked_files(sandbox.aggregate, "synced")
    assert "synced/docs/p.md" in files
    assert not any("main.py" in name or name.endswith("README.md") for name in files)
    assert git(sandbox.aggregate, "log", "-1", "--format=%s").strip() == "chore: auto-sync external sources"


def test_failing_job_does_not_block_its_siblings(sandbox: SyncSandbox) -> None:
    runner = _runner(
        sandbox,
        [
            sandbox.job(destDir="synced/broken", scripts=["exit 7"]),
            sandbox.job(destDir="synced/docs"),
        ],
        {"max_workers": 2},
    )

    summary = runner.run()

    broken, healthy = summary.outcomes
    assert broken.status is JobStatus.FAILED
    assert broken.stage == "transform"
    assert "exited with 7" in (broken.error or "")
    assert healthy.status is JobStatus.CHANGED
    assert summary.exit_status is ExitStatus.PARTIAL
    assert tracked_files(sandbox.aggregate, "synced/broken") == []
    assert "synced/docs/p.md" in tracked_files(sandbox.aggregate, "synced")


def test_every_job_failing_is_a_total_failure(sandbox: SyncSandbox) -> None:
    runner = _runner(sandbox, [sandbox.job(truncDir="missing")])
    head = git(sandbox.aggregate, "rev-parse", "HEAD").strip()

    summary = runner.run()

    assert summary.outcomes[0].stage == "materialize"
    assert summary.exit_status is ExitStatus.FAILED
    assert git(sandbox.aggregate, "rev-parse", "HEAD").strip() == head


def test_unknown_branch_fails_the_fetch_stage(sandbox: SyncSandbox) -> None:
    summary = _runner(sandbox, [sandbox.job(branch="nope")]).run()

    assert summary.outcomes[0].status is JobStatus.FAILED
    assert summary.outcomes[0].stage == "fetch"


def test_empty_filter_leaves_existing_destination_alone(sandbox: SyncSandbox) -> None:
    write_files(sandbox.aggregate, {"synced/docs/existing.md": "keep me\n"})
    commit_all(sandbox.aggregate, "existing mirror")
    runner = _runner(sandbox, [sandbox.job(checkout=["/nothing/**"], truncDir=None)])

    summary = runner.run()

    assert summary.outcomes[0].status is JobStatus.UNCHANGED
    assert summary.outcomes[0].materialization is not None
    assert summary.outcomes[0].materialization.skipped is True
    assert (sandbox.aggregate / "synced" / "docs" / "existing.md").exists()


def test_transform_output_is_what_gets_mirrored(sandbox: SyncSandbox) -> None:
    write_files(sandbox.source, {"docs/page.mdx": "# Page\n"})
    commit_all(sandbox.source, "add mdx")
    runner = _runner(
        sandbox,
        [
            sandbox.job(
                scripts=[
                    'find docs -name "*.mdx" | while read -r f; do mv "$f" "${f%.mdx}.md"; done',
                    'test -n "$SYNC_WORKSPACE" && test "$SYNC_DEST_DIR" = synced/docs',
                ]
            )
        ],
    )

    summary = runner.run()

    assert summary.exit_status is ExitStatus.OK
    files = tracked_files(sandbox.aggregate, "synced")
    assert "synced/docs/page.md" in files
    assert "synced/docs/page.mdx" not in files


def test_job_timeout_fails_only_that_job(sandbox: SyncSandbox) -> None:
    runner = _runner(sandbox, [sandbox.job(scripts=["sleep 30"])], job_timeout=1.0)

    summary = runner.run()

    assert summary.outcomes[0].status is JobStatus.FAILED
    assert "timed out" in (summary.outcomes[0].error or "")


def test_cancelled_run_skips_aggregation(sandbox: SyncSandbox) -> None:
    cancel = threading.Event()
    cancel.set()
    runner = _runner(sandbox, [sandbox.job()], cancel_event=cancel)
    head = git(sandbox.aggregate, "rev-parse", "HEAD").strip()

    summary = runner.run()

    assert summary.cancelled is True
    assert summary.aggregate is None
    assert summary.exit_status is ExitStatus.CANCELLED
    assert summary.outcomes[0].status is JobStatus.CANCELLED
    assert git(sandbox.aggregate, "rev-parse", "HEAD").strip() == head


def test_second_invocation_waits_for_the_run_lock(sandbox: SyncSandbox) -> None:
    runner = _runner(sandbox, [sandbox.job()], {"lock_timeout": 0.2})

    with run_lock(runner.lock_path):
        with pytest.raises(RunLockTimeout):
            runner.run()

    assert runner.lock_path.name == LOCK_FILENAME
    assert runner.run().exit_status is ExitStatus.OK


def test_worktrees_are_cleaned_up(sandbox: SyncSandbox) -> None:
    _runner(sandbox, [sandbox.job(), sandbox.job(destDir="synced/other", scripts=["exit 1"])]).run()

    listing = git(sandbox.aggregate, "worktree", "list", "--porcelain").splitlines()
    worktrees = [line for line in listing if line.startswith("worktree ")]
    assert len(worktrees) == 1


def test_distributed_job_and_aggregate(sandbox: SyncSandbox, tmp_path: Path) -> None:
    artifact_dir = tmp_path / "artifacts"
    runner = _runner(sandbox, [sandbox.job(), sandbox.job(destDir="synced/copy")])
    start = commit_count(sandbox.aggregate)

    for index in range(2):
        outcome = runner.run_single(index, artifact_dir)
        assert outcome.status is JobStatus.CHANGED

    assert len(load_artifacts(artifact_dir)) == 2
    assert commit_count(sandbox.aggregate) == start

    result = runner.aggregate_directory(artifact_dir)

    assert result.state is AggregationState.COMMITTED
    assert commit_count(sandbox.aggregate) == start + 1
    assert "synced/copy/p.md" in tracked_files(sandbox.aggregate, "synced")


def test_telemetry_events_and_summary_json(sandbox: SyncSandbox, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO, logger="xsync.telemetry")

    summary = _runner(sandbox, [sandbox.job()]).run()

    events = [json.loads(record.getMessage())["event"] for record in caplog.records if record.name == "xsync.telemetry"]
    assert {"job_started", "job_finished", "artifact_applied", "aggregate_finished", "run_finished"} <= set(events)
    payload = json.loads(json.dumps(summary.to_dict()))
    assert payload["exit_status"] == 0
    assert payload["jobs"][0]["status"] == "changed"
    assert payload["aggregate"]["state"] == "committed"
