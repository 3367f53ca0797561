from __future__ import annotations

import json
from pathlib import Path

from typer.testing import CliRunner

from xsync.cli import app

from conftest import SyncSandbox, commit_count, tracked_files


def test_validate_lists_jobs(sandbox: SyncSandbox) -> None:
    config_path = sandbox.write_config([sandbox.job(), sandbox.job(destDir="synced/all", checkout=[])])

    result = CliRunner().invoke(app, ["validate", "--config", str(config_path)])

    assert result.exit_code == 0, result.output
    assert "Jobs: 2" in result.output
    assert "synced/docs [/docs/**]" in result.output
    assert "synced/all [(entire tree)]" in result.output


def test_invalid_config_exits_with_config_status(tmp_path: Path) -> None:
    config_path = tmp_path / "sync-config.yaml"
    config_path.write_text("- repo: owner/project\n", encoding="utf-8")

    result = CliRunner().invoke(app, ["validate", "-c", str(config_path)])

    assert result.exit_code == 2
    assert "destDir" in result.output or "required" in result.output.lower()


def test_matrix_prints_json(sandbox: SyncSandbox) -> None:
    config_path = sandbox.write_config([sandbox.job()])

    result = CliRunner().invoke(app, ["matrix", "-c", str(config_path)])

    assert result.exit_code == 0, result.output
    matrix = json.loads(result.output)
    assert matrix["include"][0]["destDir"] == "synced/docs"
    assert matrix["include"][0]["index"] == 0


def test_run_commits_and_writes_summary(sandbox: SyncSandbox, tmp_path: Path) -> None:
    config_path = sandbox.write_config([sandbox.job()])
    summary_path = tmp_path / "out" / "summary.json"
    start = commit_count(sandbox.aggregate)

    result = CliRunner().invoke(
        app,
        ["run", "-c", str(config_path), "--workers", "2", "--summary-json", str(summary_path), "--quiet"],
    )

    assert result.exit_code == 0, result.output
    assert "[changed] synced/docs -> synced/docs" in result.output
    assert "Aggregate: committed" in result.output
    assert commit_count(sandbox.aggregate) == start + 1
    summary = json.loads(summary_path.read_text(encoding="utf-8"))
    assert summary["exit_status"] == 0
    assert summary["jobs"][0]["status"] == "changed"


def test_run_reports_partial_failure(sandbox: SyncSandbox) -> None:
    config_path = sandbox.write_config([sandbox.job(), sandbox.job(destDir="synced/bad", truncDir="absent")])

    result = CliRunner().invoke(app, ["run", "-c", str(config_path), "--quiet"])

    assert result.exit_code == 3, result.output
    assert "[failed] synced/bad" in result.output
    assert "materialize:" in result.output
    assert "Outcome: partial" in result.output


def test_repo_root_override(sandbox: SyncSandbox, tmp_path: Path) -> None:
    config_path = tmp_path / "elsewhere" / "sync-config.yaml"
    config_path.parent.mkdir()
    config_path.write_text(
        "- repo: {url}\n  checkout: [/docs/**]\n  truncDir: docs\n  destDir: mirrored\n".format(url=sandbox.source_url),
        encoding="utf-8",
    )

    result = CliRunner().invoke(app, ["run", "-c", str(config_path), "--repo-root", str(sandbox.aggregate), "-q"])

    assert result.exit_code == 0, result.output
    assert "mirrored/p.md" in tracked_files(sandbox.aggregate, "mirrored")


def test_missing_repository_fails(tmp_path: Path) -> None:
    config_path = tmp_path / "sync-config.yaml"
    config_path.write_text("- repo: owner/project\n  destDir: out\n", encoding="utf-8")

    result = CliRunner().invoke(app, ["run", "-c", str(config_path), "-q"])

    assert result.exit_code == 1
    assert "Failed to open repository" in result.output


def test_job_and_aggregate_commands(sandbox: SyncSandbox, tmp_path: Path) -> None:
    config_path = sandbox.write_config([sandbox.job(), sandbox.job(destDir="synced/copy")])
    artifact_dir = tmp_path / "artifacts"
    start = commit_count(sandbox.aggregate)
    runner = CliRunner()

    for index in ("0", "1"):
        result = runner.invoke(
            app,
            ["job", "-c", str(config_path), "--index", index, "--artifact-dir", str(artifact_dir), "-q"],
        )
        assert result.exit_code == 0, result.output

    assert sorted(path.name for path in artifact_dir.iterdir()) == [
        "000-synced-docs.patch.json",
        "001-synced-copy.patch.json",
    ]
    assert commit_count(sandbox.aggregate) == start

    result = runner.invoke(app, ["aggregate", "-c", str(config_path), "--artifact-dir", str(artifact_dir), "-q"])

    assert result.exit_code == 0, result.output
    assert "Aggregate: committed" in result.output
    assert commit_count(sandbox.aggregate) == start + 1


def test_job_index_out_of_range(sandbox: SyncSandbox, tmp_path: Path) -> None:
    config_path = sandbox.write_config([sandbox.job()])

    result = CliRunner().invoke(
        app,
        ["job", "-c", str(config_path), "--index", "5", "--artifact-dir", str(tmp_path / "a"), "-q"],
    )

    assert result.exit_code == 1
    assert "No job with index 5" in result.output
