from __future__ import annotations

from enum import Enum
from typing import List, Optional

from ..domain.models import CloudErrorType


class FailureKind(str, Enum):
    EXTRACTION = "extraction-failure"
    NO_RECORDS = "no-records-found"
    PERSISTENCE = "persistence-failure"
    CLOUD_READ = "cloud-read-failure"
    CLOUD_WRITE = "cloud-write-failure"
    IMPORT_PARSE = "import-parse-failure"


class PipelineError(Exception):
    """Base for failures surfaced by the command surface as a classified result."""

    kind: FailureKind = FailureKind.EXTRACTION

    def __init__(self, message: str, *, error_type: Optional[CloudErrorType] = None) -> None:
        super().__init__(message)
        self.message = message
        self.error_type = error_type


class ExtractionFailure(PipelineError):
    kind = FailureKind.EXTRACTION

    def __init__(self, message: str, *, source_name: Optional[str] = None) -> None:
        super().__init__(message)
        self.source_name = source_name


class NoRecordsFound(PipelineError):
    kind = FailureKind.NO_RECORDS

    def __init__(self, message: str, *, failed_files: Optional[List[str]] = None) -> None:
        super().__init__(message)
        self.failed_files = list(failed_files or [])


class PersistenceFailure(PipelineError):
    kind = FailureKind.PERSISTENCE


class CloudReadFailure(PipelineError):
    kind = FailureKind.CLOUD_READ


class CloudWriteFailure(PipelineError):
    kind = FailureKind.CLOUD_WRITE


class ImportParseFailure(PipelineError):
    kind = FailureKind.IMPORT_PARSE
