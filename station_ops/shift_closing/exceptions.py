"""Exceptions raised by the shift-closing engine."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from station_ops.shift_closing.models import ClosingStep

SEVERITY_ERROR = "error"
SEVERITY_WARNING = "warning"


@dataclass(frozen=True)
class FieldIssue:
    """One missing or invalid field found while validating a step."""

    step: ClosingStep
    entity_id: str
    field: str
    message: str
    severity: str = SEVERITY_ERROR

    @property
    def blocking(self) -> bool:
        return self.severity == SEVERITY_ERROR

    def to_dict(self) -> Dict[str, Any]:
        return {
            "step": self.step.value,
            "entityId": self.entity_id,
            "field": self.field,
            "message": self.message,
            "severity": self.severity,
        }


class ShiftClosingError(Exception):
    """Base class for shift-closing failures."""


class StepValidationError(ShiftClosingError):
    """A step has blocking issues; the session did not advance."""

    def __init__(self, step: ClosingStep, issues: List[FieldIssue]):
        self.step = step
        self.issues = list(issues)
        blocking = [i for i in self.issues if i.blocking]
        summary = "; ".join(i.message for i in blocking[:5])
        if len(blocking) > 5:
            summary += f" (+{len(blocking) - 5} more)"
        super().__init__(f"Step '{step.value}' is incomplete: {summary}")


class PersistenceFailure(ShiftClosingError):
    """Draft backend could not read or write."""


class SubmissionFailure(ShiftClosingError):
    """The shift-closing API rejected the close. The session stays editable."""

    def __init__(self, message: str, upstream: Optional[BaseException] = None):
        super().__init__(message)
        self.upstream = upstream


class SessionClosedError(ShiftClosingError):
    """The shift was already closed through this session."""


class SessionBusyError(ShiftClosingError):
    """An I/O operation is still pending on this session."""
