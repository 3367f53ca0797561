"""Turn one job's destination delta into a patch artifact."""

from __future__ import annotations

import logging

from ..config import JobSpec
from ..errors import JobError
from ..tools.vcs import GitError, GitRepository
from .artifacts import PatchArtifact

LOGGER = logging.getLogger(__name__)


class DiffError(JobError):
    """Raised when the destination delta cannot be staged or serialised."""

    stage = "diff"


class DiffExtractor:
    """Stage and serialise exactly one destination path."""

    def extract(
        self,
        repo: GitRepository,
        job: JobSpec,
        *,
        source_commit: str | None = None,
    ) -> PatchArtifact | None:
        """Return the staged delta below ``job.destination`` or ``None`` when unchanged.

        Staging is pathspec-scoped, so changes anywhere else in ``repo`` never
        leak into the artifact.
        """
        destination = job.destination
        try:
            if not (repo.root / destination).exists() and not repo.list_tracked_paths(destination):
                LOGGER.info("[%s] %s was never populated", job.label, destination)
                return None
            repo.stage(destination)
            if not repo.has_staged_changes(destination):
                LOGGER.info("[%s] no changes below %s", job.label, destination)
                return None
            patch = repo.staged_diff(destination)
        except GitError as error:
            raise DiffError(f"Could not extract changes for {destination}: {error}") from error

        if not patch.strip():
            return None
        artifact = PatchArtifact(
            destination=destination,
            patch=patch,
            job=job.label,
            source_commit=source_commit,
        )
        LOGGER.info("[%s] captured %d byte patch for %s", job.label, artifact.size, destination)
        return artifact


__all__ = ["DiffError", "DiffExtractor"]
