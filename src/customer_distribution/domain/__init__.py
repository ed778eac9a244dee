"""Customer records and the small value types shared across the pipeline."""

from .models import (
    CityStat,
    CloudErrorType,
    CloudLinkStatus,
    Customer,
    FileInput,
    RecordValidationError,
    SyncStatus,
)
from .timestamps import now_timestamp, timestamp_sort_key

__all__ = [
    "CityStat",
    "CloudErrorType",
    "CloudLinkStatus",
    "Customer",
    "FileInput",
    "RecordValidationError",
    "SyncStatus",
    "now_timestamp",
    "timestamp_sort_key",
]
