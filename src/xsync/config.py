"""Sync configuration: YAML job lists parsed into typed job descriptors.

The configuration file is either a plain list of job entries::

    - repo: owner/project
      checkout: [/docs/**]
      truncDir: docs
      destDir: synced/project/docs

or a mapping with ``settings`` and ``jobs`` keys.  Validation problems are
collected for the whole file and reported together as one :class:`ConfigError`
before any network or filesystem work starts.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Any, Dict, List, Mapping, Optional, Sequence

import yaml
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import SyncError

DEFAULT_CONFIG_NAME = "sync-config.yaml"
DEFAULT_COMMIT_MESSAGE = "chore: auto-sync external sources"
DEFAULT_JOB_TIMEOUT = 1800.0

_URL_PREFIXES = ("git@", "file:", "ssh:", "http:", "https:", "git:")


class ConfigError(SyncError):
    """Raised when the job configuration is malformed."""

    def __init__(self, message: str, *, problems: Sequence[str] = ()) -> None:
        super().__init__(message, details={"problems": list(problems)})
        self.problems: List[str] = list(problems)

    def __str__(self) -> str:
        base = super().__str__()
        if not self.problems:
            return base
        listing = "\n".join(f"  - {problem}" for problem in self.problems)
        return f"{base}\n{listing}"


class RecordModel(BaseModel):
    """Base model rejecting unknown keys."""

    model_config = ConfigDict(extra="forbid", frozen=True, populate_by_name=True)


def _normalise_relative(value: str, *, label: str) -> str:
    """Return a clean posix relative path or raise ``ValueError``."""
    raw = value.strip().replace("\\", "/")
    path = PurePosixPath(raw)
    if path.is_absolute():
        raise ValueError(f"{label} must be relative to the repository root: {value!r}")
    parts = [part for part in path.parts if part not in ("", ".")]
    if any(part == ".." for part in parts):
        raise ValueError(f"{label} may not escape its root: {value!r}")
    return "/".join(parts)


class JobSpec(RecordModel):
    """One external-source to local-destination synchronisation task."""

    source: str = Field(validation_alias=AliasChoices("repo", "source"))
    destination: str = Field(validation_alias=AliasChoices("destDir", "destination"))
    branch: Optional[str] = None
    path_filters: List[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("checkout", "path_filters"),
    )
    transform_commands: List[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("scripts", "transform_commands"),
    )
    truncation_prefix: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("truncDir", "truncation_prefix"),
    )
    name: Optional[str] = None

    @field_validator("source")
    @classmethod
    def _check_source(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("source must not be empty")
        return cleaned

    @field_validator("destination")
    @classmethod
    def _check_destination(cls, value: str) -> str:
        cleaned = _normalise_relative(value, label="destDir")
        if not cleaned:
            raise ValueError("destDir may not be the repository root")
        if cleaned.split("/", 1)[0] == ".git":
            raise ValueError("destDir may not point inside .git")
        return cleaned

    @field_validator("branch", "name", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value.strip() if isinstance(value, str) else value

    @field_validator("path_filters", "transform_commands", mode="before")
    @classmethod
    def _none_to_list(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, str):
            return [value]
        return value

    @field_validator("path_filters")
    @classmethod
    def _strip_filters(cls, value: List[str]) -> List[str]:
        filters = [entry.strip() for entry in value if entry.strip()]
        # Ordered set: keep the first occurrence of each pattern.
        return list(dict.fromkeys(filters))

    @field_validator("truncation_prefix", mode="before")
    @classmethod
    def _check_prefix(cls, value: Any) -> Any:
        if value is None:
            return None
        if not isinstance(value, str):
            return value
        cleaned = _normalise_relative(value, label="truncDir")
        return cleaned or None

    @property
    def label(self) -> str:
        """Human-friendly identifier used in logs and summaries."""
        return self.name or self.destination

    def clone_url(self, host: str) -> str:
        """Resolve ``source`` into something ``git clone`` understands."""
        source = self.source
        if "://" in source or source.startswith(_URL_PREFIXES):
            return source
        candidate = Path(source).expanduser()
        if source.startswith(("/", ".", "~")) or candidate.exists():
            return str(candidate.resolve())
        return f"https://{host}/{source.strip('/')}.git"

    def to_entry(self) -> Dict[str, Any]:
        """Render the job back into the YAML field names."""
        entry: Dict[str, Any] = {"repo": self.source}
        if self.branch:
            entry["branch"] = self.branch
        if self.path_filters:
            entry["checkout"] = list(self.path_filters)
        if self.transform_commands:
            entry["scripts"] = list(self.transform_commands)
        if self.truncation_prefix:
            entry["truncDir"] = self.truncation_prefix
        entry["destDir"] = self.destination
        if self.name:
            entry["name"] = self.name
        return entry


class PushSettings(RecordModel):
    """Optional push of the aggregate commit."""

    enabled: bool = False
    remote: str = "origin"
    branch: Optional[str] = None


class SyncSettings(RecordModel):
    """Run-wide options shared by every job."""

    host: str = Field(default_factory=lambda: os.environ.get("GH_HOST") or "github.com")
    repo_root: str = "."
    commit_message: str = DEFAULT_COMMIT_MESSAGE
    author_name: str = "xsync-bot"
    author_email: str = "xsync-bot@users.noreply.github.com"
    max_workers: Optional[int] = Field(default=None, ge=1)
    job_timeout: Optional[float] = Field(default=DEFAULT_JOB_TIMEOUT, gt=0)
    lock_timeout: Optional[float] = Field(default=None, ge=0)
    push: PushSettings = Field(default_factory=PushSettings)


@dataclass(slots=True)
class SyncConfig:
    """Validated configuration for one pipeline invocation."""

    jobs: List[JobSpec]
    settings: SyncSettings = field(default_factory=SyncSettings)
    path: Path | None = None

    def resolve_repo_root(self) -> Path:
        """Resolve the aggregate repository root relative to the config file."""
        root = Path(self.settings.repo_root).expanduser()
        if not root.is_absolute():
            base = self.path.parent if self.path is not None else Path.cwd()
            root = base / root
        return root.resolve()

    def to_matrix(self) -> Dict[str, Any]:
        """Return the ``{"include": [...]}`` fan-out matrix for CI runners."""
        include = []
        for index, job in enumerate(self.jobs):
            entry = job.to_entry()
            entry["index"] = index
            include.append(entry)
        return {"include": include}


def _format_location(prefix: str, loc: Sequence[Any]) -> str:
    rendered = prefix
    for item in loc:
        rendered += f"[{item}]" if isinstance(item, int) else f".{item}"
    return rendered


def _check_destinations(jobs: Sequence[JobSpec]) -> List[str]:
    """Report duplicate or nested destinations."""
    problems: List[str] = []
    seen: Dict[str, int] = {}
    for index, job in enumerate(jobs):
        if job.destination in seen:
            problems.append(
                f"jobs[{index}].destDir: '{job.destination}' is already used by jobs[{seen[job.destination]}]"
            )
            continue
        seen[job.destination] = index

    for inner, inner_index in seen.items():
        for outer, outer_index in seen.items():
            if inner.startswith(outer + "/"):
                problems.append(
                    f"jobs[{inner_index}].destDir: '{inner}' is nested inside "
                    f"jobs[{outer_index}].destDir '{outer}'"
                )
    return problems


def parse_jobs(entries: Any) -> List[JobSpec]:
    """Validate raw job entries and return them as ordered :class:`JobSpec` objects."""
    if entries is None:
        entries = []
    if not isinstance(entries, list):
        raise ConfigError("Job list must be a sequence of mappings.")

    jobs: List[JobSpec] = []
    problems: List[str] = []
    for index, entry in enumerate(entries):
        prefix = f"jobs[{index}]"
        if not isinstance(entry, Mapping):
            problems.append(f"{prefix}: expected a mapping, got {type(entry).__name__}")
            continue
        try:
            jobs.append(JobSpec.model_validate(dict(entry)))
        except ValidationError as error:
            for item in error.errors():
                problems.append(f"{_format_location(prefix, item['loc'])}: {item['msg']}")

    if not problems:
        problems.extend(_check_destinations(jobs))
    if problems:
        raise ConfigError("Invalid job configuration.", problems=problems)
    return jobs


def parse_config(data: Any, *, path: Path | None = None) -> SyncConfig:
    """Build a :class:`SyncConfig` from already-loaded YAML data."""
    if isinstance(data, list) or data is None:
        return SyncConfig(jobs=parse_jobs(data), path=path)
    if not isinstance(data, Mapping):
        raise ConfigError("Configuration must be a list of jobs or a mapping with a 'jobs' key.")

    unknown = sorted(set(data) - {"settings", "jobs"})
    if unknown:
        raise ConfigError(
            "Unknown top-level configuration keys.",
            problems=[f"{key}: not a recognised section" for key in unknown],
        )

    try:
        settings = SyncSettings.model_validate(data.get("settings") or {})
    except ValidationError as error:
        problems = [_format_location("settings", item["loc"]) + f": {item['msg']}" for item in error.errors()]
        raise ConfigError("Invalid settings.", problems=problems) from error

    return SyncConfig(jobs=parse_jobs(data.get("jobs")), settings=settings, path=path)


def load_config(config_path: Path | str) -> SyncConfig:
    """Load YAML configuration from disk and validate it."""
    path = Path(config_path)
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")

    try:
        with path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle)
    except yaml.YAMLError as error:
        raise ConfigError(f"Failed to parse config: {error}") from error

    return parse_config(data, path=path.resolve())


__all__ = [
    "ConfigError",
    "DEFAULT_COMMIT_MESSAGE",
    "DEFAULT_CONFIG_NAME",
    "JobSpec",
    "PushSettings",
    "SyncConfig",
    "SyncSettings",
    "load_config",
    "parse_config",
    "parse_jobs",
]
