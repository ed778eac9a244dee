"""Sync pipeline: merge/dedup, city aggregation, error taxonomy and the coordinator."""

from .errors import (
    CloudReadFailure,
    CloudWriteFailure,
    ExtractionFailure,
    FailureKind,
    ImportParseFailure,
    NoRecordsFound,
    PersistenceFailure,
    PipelineError,
)
from .merge import MergeResult, merge
from .results import CommandResult, ExportSnapshot, ImportProgress
from .stats import aggregate, summarize
from .coordinator import CustomerPipeline, ExtractionPolicy, build_pipeline

__all__ = [
    "CloudReadFailure",
    "CloudWriteFailure",
    "ExtractionFailure",
    "FailureKind",
    "ImportParseFailure",
    "NoRecordsFound",
    "PersistenceFailure",
    "PipelineError",
    "MergeResult",
    "merge",
    "CommandResult",
    "ExportSnapshot",
    "ImportProgress",
    "aggregate",
    "summarize",
    "CustomerPipeline",
    "ExtractionPolicy",
    "build_pipeline",
]
