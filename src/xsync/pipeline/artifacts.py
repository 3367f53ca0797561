"""Portable patch artifacts handed from job workers to the aggregator.

An artifact is written as a small JSON document with the patch payload
base64-encoded, so it survives transport between processes or machines
(CI artifact uploads, shared volumes) byte for byte, binary hunks included.
"""

from __future__ import annotations

import base64
import hashlib
import json
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, List, Mapping

from ..errors import SyncError

__all__ = [
    "ARTIFACT_SUFFIX",
    "ArtifactError",
    "PatchArtifact",
    "artifact_filename",
    "load_artifacts",
]

ARTIFACT_SUFFIX = ".patch.json"
FORMAT_VERSION = 1

_UNSAFE = re.compile(r"[^a-z0-9_.-]+")
_HYPHEN_COLLAPSE = re.compile(r"-{2,}")


class ArtifactError(SyncError):
    """Raised when an artifact file cannot be read or is malformed."""


@dataclass(slots=True)
class PatchArtifact:
    """Serialised destination delta of one job."""

    destination: str
    patch: bytes
    job: str | None = None
    source_commit: str | None = None
    created_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @property
    def digest(self) -> str:
        return hashlib.sha256(self.patch).hexdigest()

    @property
    def size(self) -> int:
        return len(self.patch)

    def to_dict(self) -> dict[str, Any]:
        """Return a plain ``dict`` representation suitable for JSON."""
        return {
            "format_version": FORMAT_VERSION,
            "job": self.job,
            "destination": self.destination,
            "source_commit": self.source_commit,
            "created_at": self.created_at,
            "sha256": self.digest,
            "encoding": "base64",
            "patch": base64.b64encode(self.patch).decode("ascii"),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "PatchArtifact":
        version = payload.get("format_version")
        if version != FORMAT_VERSION:
            raise ArtifactError(f"Unsupported artifact format version: {version!r}")
        destination = payload.get("destination")
        content = payload.get("patch")
        if not isinstance(destination, str) or not destination:
            raise ArtifactError("Artifact is missing its destination")
        if not isinstance(content, str):
            raise ArtifactError(f"Artifact for {destination} has no patch payload")
        try:
            patch = base64.b64decode(content, validate=True)
        except ValueError as error:
            raise ArtifactError(f"Artifact for {destination} has a corrupt payload") from error
        artifact = cls(
            destination=destination,
            patch=patch,
            job=payload.get("job"),
            source_commit=payload.get("source_commit"),
            created_at=str(payload.get("created_at") or ""),
        )
        expected = payload.get("sha256")
        if expected and expected != artifact.digest:
            raise ArtifactError(f"Artifact for {destination} failed its checksum")
        return artifact

    def write(self, directory: Path, *, index: int | None = None) -> Path:
        """Write the artifact into ``directory`` and return its path."""
        directory.mkdir(parents=True, exist_ok=True)
        target = directory / artifact_filename(self.destination, index=index)
        target.write_text(json.dumps(self.to_dict(), indent=2), encoding="utf-8")
        return target

    @classmethod
    def read(cls, path: Path) -> "PatchArtifact":
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as error:
            raise ArtifactError(f"Unable to read artifact {path}: {error}") from error
        if not isinstance(payload, Mapping):
            raise ArtifactError(f"Artifact {path} is not a JSON object")
        return cls.from_dict(payload)


def artifact_filename(destination: str, *, index: int | None = None) -> str:
    """Filesystem-friendly artifact name derived from the destination path."""
    slug = _UNSAFE.sub("-", destination.lower())
    slug = _HYPHEN_COLLAPSE.sub("-", slug).strip("-") or "destination"
    if len(slug) > 80:
        digest = hashlib.sha256(slug.encode("utf-8")).hexdigest()[:8]
        slug = f"{slug[:71].rstrip('-')}-{digest}"
    prefix = f"{index:03d}-" if index is not None else ""
    return f"{prefix}{slug}{ARTIFACT_SUFFIX}"


def load_artifacts(directory: Path) -> List[PatchArtifact]:
    """Read every artifact below ``directory`` in a stable order."""
    if not directory.exists():
        return []
    return [PatchArtifact.read(path) for path in sorted(directory.rglob(f"*{ARTIFACT_SUFFIX}"))]
