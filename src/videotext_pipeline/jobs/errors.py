"""
Failure taxonomy for job submission and execution.

Every failure a caller can observe maps onto one `ErrorKind`:

  admission          rejected before any resource was allocated (retry later)
  validation         terminal; bad input or plan limit, never retried
  transient          external transform / collaborator failure, retried once
  hung_task          watchdog kill (no progress), retried once
  deadline_exceeded  runtime cap under load; final and not charged
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    ADMISSION = "admission"
    VALIDATION = "validation"
    TRANSIENT = "transient"
    HUNG_TASK = "hung_task"
    DEADLINE_EXCEEDED = "deadline_exceeded"


class PipelineError(RuntimeError):
    kind: ErrorKind = ErrorKind.TRANSIENT
    no_charge: bool = False

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind.value, "message": self.message, "no_charge": self.no_charge}


# --- admission ---


class AdmissionError(PipelineError):
    kind = ErrorKind.ADMISSION

    def __init__(self, message: str = "", *, retry_after_s: int = 60) -> None:
        super().__init__(message)
        self.retry_after_s = int(retry_after_s)


class RateLimited(AdmissionError):
    pass


class BacklogFull(AdmissionError):
    pass


class ConcurrencyLimit(AdmissionError):
    pass


# --- validation ---


class ValidationError(PipelineError):
    kind = ErrorKind.VALIDATION


class InvalidInput(ValidationError):
    pass


class ChunkCountInvalid(ValidationError):
    pass


class ChunkIndexInvalid(ValidationError):
    pass


class MissingChunk(ValidationError):
    def __init__(self, index: int) -> None:
        super().__init__(f"Missing chunk {int(index)}")
        self.index = int(index)


class SizeExceeded(ValidationError):
    pass


class UploadNotFound(ValidationError):
    pass


class DurationExceeded(ValidationError):
    pass


class PlanNotAllowed(ValidationError):
    pass


class AccessDenied(ValidationError):
    pass


# --- execution ---


class TransientError(PipelineError):
    kind = ErrorKind.TRANSIENT


class HungTask(PipelineError):
    kind = ErrorKind.HUNG_TASK


class DeadlineExceeded(PipelineError):
    kind = ErrorKind.DEADLINE_EXCEEDED
    no_charge = True


class OperationKilled(RuntimeError):
    """Raised inside a transform after its progress channel was killed."""


def classify(exc: BaseException) -> ErrorKind:
    if isinstance(exc, PipelineError):
        return exc.kind
    return ErrorKind.TRANSIENT


def error_payload(exc: BaseException) -> dict[str, Any]:
    if isinstance(exc, PipelineError):
        return exc.to_dict()
    return {"kind": ErrorKind.TRANSIENT.value, "message": str(exc) or type(exc).__name__, "no_charge": False}
