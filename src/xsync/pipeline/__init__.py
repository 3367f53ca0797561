"""Per-job pipeline stages and the aggregation barrier."""

from .aggregate import AggregateResult, AggregationConflictError, AggregationState, PatchAggregator, aggregate
from .artifacts import PatchArtifact, load_artifacts
from .deadline import Deadline
from .diff import DiffError, DiffExtractor
from .fetch import FetchedTree, FetchError, SourceFetcher
from .materialize import MaterializationResult, MaterializeError, Materializer
from .runner import ExitStatus, JobOutcome, JobStatus, RunSummary, SyncRunner, run_sync
from .transform import TransformError, TransformHook, TransformRunner, hook_environment

__all__ = [
    "AggregateResult",
    "AggregationConflictError",
    "AggregationState",
    "Deadline",
    "DiffError",
    "DiffExtractor",
    "ExitStatus",
    "FetchError",
    "FetchedTree",
    "JobOutcome",
    "JobStatus",
    "MaterializationResult",
    "MaterializeError",
    "Materializer",
    "PatchAggregator",
    "PatchArtifact",
    "RunSummary",
    "SourceFetcher",
    "SyncRunner",
    "TransformError",
    "TransformHook",
    "TransformRunner",
    "aggregate",
    "hook_environment",
    "load_artifacts",
    "run_sync",
]
