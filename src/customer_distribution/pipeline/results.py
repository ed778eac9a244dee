from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..domain.models import CloudErrorType, Customer
from .errors import FailureKind, PipelineError


@dataclass
class ImportProgress:
    current: int
    total: int
    extracted_count: int


@dataclass
class CommandResult:
    """Outcome of one command; failures are classified, never raised."""

    ok: bool
    customers: List[Customer] = field(default_factory=list)
    message: str = ""
    failure: Optional[FailureKind] = None
    error_type: Optional[CloudErrorType] = None
    source: Optional[str] = None
    added: int = 0
    failed_files: List[str] = field(default_factory=list)
    export: Optional["ExportSnapshot"] = None

    @classmethod
    def from_error(cls, exc: PipelineError, customers: List[Customer], **extra: Any) -> "CommandResult":
        return cls(
            ok=False,
            customers=list(customers),
            message=exc.message,
            failure=exc.kind,
            error_type=exc.error_type,
            **extra,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "message": self.message,
            "failure": self.failure.value if self.failure else None,
            "errorType": self.error_type.value if self.error_type else None,
            "source": self.source,
            "added": self.added,
            "failedFiles": list(self.failed_files),
            "count": len(self.customers),
        }


@dataclass
class ExportSnapshot:
    filename: str
    content: str
    count: int
