from __future__ import annotations

import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping

import pytest
import yaml

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))


def git(cwd: Path, *args: str) -> str:
    """Run git in ``cwd`` with a fixed identity and return stdout."""

    result = subprocess.run(
        [
            "git",
            "-c",
            "user.name=Fixture Author",
            "-c",
            "user.email=fixture@example.com",
            "-c",
            "commit.gpgsign=false",
            *args,
        ],
        cwd=cwd,
        check=True,
        capture_output=True,
        text=True,
    )
    return result.stdout


def init_repo(root: Path, files: Mapping[str, str] | None = None, *, branch: str = "main") -> Path:
    """Create a git repository at ``root`` with one commit containing ``files``."""

    root.mkdir(parents=True, exist_ok=True)
    git(root, "init", "--quiet")
    git(root, "symbolic-ref", "HEAD", f"refs/heads/{branch}")
    write_files(root, files or {"README.md": "fixture\n"})
    commit_all(root, "initial commit")
    return root


def write_files(root: Path, files: Mapping[str, str]) -> None:
    for relative, content in files.items():
        target = root / relative
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")


def commit_all(root: Path, message: str) -> str:
    git(root, "add", "--all")
    git(root, "commit", "--quiet", "--allow-empty", "-m", message)
    return git(root, "rev-parse", "HEAD").strip()


def commit_count(root: Path) -> int:
    return int(git(root, "rev-list", "--count", "HEAD").strip())


def tracked_files(root: Path, *paths: str) -> List[str]:
    output = git(root, "ls-files", "--", *paths)
    return sorted(line for line in output.splitlines() if line)


@dataclass(slots=True)
class SyncSandbox:
    """A source repository plus an aggregate repository under ``tmp_path``."""

    source: Path
    aggregate: Path

    @property
    def source_url(self) -> str:
        return self.source.as_uri()

    def job(self, **overrides: Any) -> Dict[str, Any]:
        entry: Dict[str, Any] = {
            "repo": self.source_url,
            "checkout": ["/docs/**"],
            "truncDir": "docs",
            "destDir": "synced/docs",
        }
        entry.update(overrides)
        return entry

    def write_config(self, jobs: Iterable[Mapping[str, Any]], settings: Mapping[str, Any] | None = None) -> Path:
        payload: Any = [dict(job) for job in jobs]
        if settings is not None:
            payload = {"settings": dict(settings), "jobs": payload}
        config_path = self.aggregate / "sync-config.yaml"
        config_path.write_text(yaml.safe_dump(payload, sort_keys=False), encoding="utf-8")
        commit_all(self.aggregate, "add sync config")
        return config_path


@pytest.fixture()
def sandbox(tmp_path: Path) -> SyncSandbox:
    """Source with docs/ and src/ trees, and an aggregate repo with one commit."""

    source = init_repo(
        tmp_path / "source",
        {
            "README.md": "source readme\n",
            "docs/p.md": "# P\n",
            "docs/q.md": "# Q\n",
            "docs/guide/intro.md": "# Intro\n",
            "src/main.py": "print('hello')\n",
        },
    )
    aggregate = init_repo(tmp_path / "aggregate", {"README.md": "aggregate\n"})
    return SyncSandbox(source=source, aggregate=aggregate)
