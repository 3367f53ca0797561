from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Mapping, Sequence

import pytest

from xsync.config import DEFAULT_COMMIT_MESSAGE, JobSpec
from xsync.pipeline.aggregate import AggregationState, PatchAggregator, aggregate
from xsync.pipeline.artifacts import PatchArtifact
from xsync.pipeline.diff import DiffExtractor
from xsync.tools.vcs import GitError, GitRepository
from xsync.tools.worktree import job_worktree

from conftest import commit_all, commit_count, git, init_repo, tracked_files, write_files


def _artifact(
    repo: GitRepository,
    destination: str,
    files: Mapping[str, str] | None = None,
    deletions: Sequence[str] = (),
) -> PatchArtifact:
    """Produce an artifact the same way a job does: inside a throwaway worktree."""
    base = repo.head()
    assert base is not None
    job = JobSpec.model_validate({"repo": "owner/project", "destDir": destination})
    with job_worktree(repo, base) as worktree:
        write_files(worktree.root, {f"{destination}/{name}": content for name, content in (files or {}).items()})
        for name in deletions:
            (worktree.root / destination / name).unlink()
        artifact = DiffExtractor().extract(worktree, job)
    assert artifact is not None
    return artifact


def _aggregate(repo: GitRepository, artifacts: Sequence[PatchArtifact | None], **options: str):
    return aggregate(
        repo,
        artifacts,
        commit_message=DEFAULT_COMMIT_MESSAGE,
        author_name="xsync-bot",
        author_email="bot@example.com",
        **options,
    )


def test_two_artifacts_produce_exactly_one_commit(tmp_path: Path) -> None:
    repo = GitRepository(init_repo(tmp_path / "repo", {"README.md": "r\n", "beta/old.md": "old\n"}))
    before = commit_count(repo.root)
    first = _artifact(repo, "alpha", {"a.md": "a\n"})
    second = _artifact(repo, "beta", {"b.md": "b\n"}, deletions=["old.md"])

    result = _aggregate(repo, [first, None, second])

    assert result.state is AggregationState.COMMITTED
    assert result.applied == ("alpha", "beta")
    assert commit_count(repo.root) == before + 1
    assert result.commit == repo.head()
    assert git(repo.root, "log", "-1", "--format=%s|%an").strip() == f"{DEFAULT_COMMIT_MESSAGE}|xsync-bot"
    assert tracked_files(repo.root, "alpha", "beta") == ["alpha/a.md", "beta/b.md"]
    assert not repo.has_changes()


def test_no_artifacts_is_a_clean_noop(tmp_path: Path) -> None:
    repo = GitRepository(init_repo(tmp_path / "repo"))
    head = repo.head()

    result = _aggregate(repo, [None, None])

    assert result.state is AggregationState.NOOP_CLEAN
    assert result.ok
    assert repo.head() == head


def test_conflict_rolls_back_every_destination(tmp_path: Path) -> None:
    repo = GitRepository(init_repo(tmp_path / "repo", {"synced/docs/p.md": "line one\n"}))
    clean = _artifact(repo, "alpha", {"a.md": "a\n"})
    conflicting = _artifact(repo, "synced/docs", {"p.md": "from source\n"})
    write_files(repo.root, {"synced/docs/p.md": "local edit\n"})
    head = commit_all(repo.root, "local edit")

    result = _aggregate(repo, [clean, conflicting])

    assert result.state is AggregationState.FAILED
    assert not result.ok
    assert "synced/docs/p.md" in result.conflicts
    assert repo.head() == head
    assert (repo.root / "synced" / "docs" / "p.md").read_text(encoding="utf-8") == "local edit\n"
    assert not (repo.root / "alpha" / "a.md").exists()
    assert not repo.has_changes()


def test_overlapping_artifacts_are_rejected(tmp_path: Path) -> None:
    repo = GitRepository(init_repo(tmp_path / "repo"))
    outer = _artifact(repo, "synced", {"x.md": "x\n"})
    inner = _artifact(repo, "synced/inner", {"y.md": "y\n"})

    result = _aggregate(repo, [outer, inner])

    assert result.state is AggregationState.FAILED
    assert set(result.conflicts) == {"synced", "synced/inner"}
    assert not repo.has_changes()


def test_patch_outside_its_destination_is_rejected(tmp_path: Path) -> None:
    repo = GitRepository(init_repo(tmp_path / "repo"))
    honest = _artifact(repo, "beta", {"b.md": "b\n"})
    forged = PatchArtifact(destination="alpha", patch=honest.patch, job="forged")
    head = repo.head()

    result = _aggregate(repo, [forged])

    assert result.state is AggregationState.FAILED
    assert "outside its destination" in (result.error or "")
    assert repo.head() == head
    assert not (repo.root / "beta").exists()


def test_dirty_destination_aborts_without_touching_it(tmp_path: Path) -> None:
    repo = GitRepository(init_repo(tmp_path / "repo", {"alpha/a.md": "a\n"}))
    artifact = _artifact(repo, "alpha", {"a.md": "from source\n"})
    write_files(repo.root, {"alpha/a.md": "uncommitted\n"})

    result = _aggregate(repo, [artifact])

    assert result.state is AggregationState.FAILED
    assert result.conflicts == ("alpha/a.md",)
    assert (repo.root / "alpha" / "a.md").read_text(encoding="utf-8") == "uncommitted\n"


def test_unrelated_dirty_files_are_left_alone(tmp_path: Path) -> None:
    repo = GitRepository(init_repo(tmp_path / "repo", {"notes.txt": "n\n"}))
    artifact = _artifact(repo, "alpha", {"a.md": "a\n"})
    write_files(repo.root, {"notes.txt": "work in progress\n"})

    result = _aggregate(repo, [artifact])

    assert result.state is AggregationState.COMMITTED
    assert git(repo.root, "show", "--name-only", "--format=", "HEAD").split() == ["alpha/a.md"]
    assert (repo.root / "notes.txt").read_text(encoding="utf-8") == "work in progress\n"


def test_empty_artifacts_are_ignored(tmp_path: Path) -> None:
    repo = GitRepository(init_repo(tmp_path / "repo"))
    aggregator = PatchAggregator(repo, commit_message="msg")
    aggregator.collect(None)
    aggregator.collect(PatchArtifact(destination="x", patch=b""))

    assert aggregator.destinations == []
    assert aggregator.run().state is AggregationState.NOOP_CLEAN


def test_commit_is_pushed_when_a_remote_is_configured(tmp_path: Path) -> None:
    remote = tmp_path / "remote.git"
    subprocess.run(["git", "init", "--bare", "--quiet", str(remote)], check=True, capture_output=True)
    repo = GitRepository(init_repo(tmp_path / "repo"))
    git(repo.root, "remote", "add", "origin", str(remote))
    artifact = _artifact(repo, "alpha", {"a.md": "a\n"})

    result = _aggregate(repo, [artifact], push_remote="origin", push_branch="sync")

    assert result.pushed is True
    assert result.push_error is None
    assert git(remote, "rev-parse", "refs/heads/sync").strip() == result.commit


def test_push_failure_keeps_the_commit(tmp_path: Path) -> None:
    repo = GitRepository(init_repo(tmp_path / "repo"))
    git(repo.root, "remote", "add", "origin", str(tmp_path / "nowhere.git"))
    artifact = _artifact(repo, "alpha", {"a.md": "a\n"})

    result = _aggregate(repo, [artifact], push_remote="origin")

    assert result.state is AggregationState.COMMITTED
    assert result.pushed is False
    assert result.push_error
    assert repo.head() == result.commit


def test_failed_rollback_is_reported_instead_of_raised(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    repo = GitRepository(init_repo(tmp_path / "repo", {"synced/docs/p.md": "line one\n"}))
    conflicting = _artifact(repo, "synced/docs", {"p.md": "from source\n"})
    write_files(repo.root, {"synced/docs/p.md": "local edit\n"})
    commit_all(repo.root, "local edit")

    def broken_restore(self: GitRepository, checkpoint: object) -> None:
        raise GitError("restore exploded")

    monkeypatch.setattr(GitRepository, "restore_checkpoint", broken_restore)

    result = _aggregate(repo, [conflicting])

    assert result.state is AggregationState.FAILED
    assert "rollback failed: restore exploded" in (result.error or "")
    assert "synced/docs/p.md" in result.conflicts
