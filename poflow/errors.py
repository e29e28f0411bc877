"""Error taxonomy for stage handlers and its classification."""

from __future__ import annotations

from enum import Enum
from typing import Optional


class StageError(Exception):
    """Base class for errors raised by stage handlers."""

    retryable: bool = False
    reason: str = "stage_error"

    def __init__(self, message: str, *, stage: Optional[str] = None) -> None:
        super().__init__(message)
        self.stage = stage


class TransientError(StageError):
    """Temporary failure of a collaborator; retried with backoff."""

    retryable = True
    reason = "transient"


class QuotaExceededError(TransientError):
    """Collaborator rate or usage limit; retried with a longer backoff."""

    reason = "quota_exceeded"


class ValidationError(StageError):
    """Extracted data failed a consistency check."""

    reason = "validation_failed"


class FatalConfigurationError(StageError):
    """Missing required input or malformed job; never retried."""

    reason = "fatal_configuration"


class InvalidTransition(Exception):
    """Raised when a workflow status change is not allowed."""

    def __init__(self, current: str, target: str) -> None:
        super().__init__(f"Cannot transition workflow from {current} to {target}")
        self.current = current
        self.target = target


class StageFailed(Exception):
    """Raised out of a queue handler after the failure was recorded."""

    def __init__(self, workflow_id: str, stage: str, cause: BaseException) -> None:
        super().__init__(f"{stage} failed for workflow {workflow_id}: {cause}")
        self.workflow_id = workflow_id
        self.stage = stage
        self.cause = cause


class ErrorClass(str, Enum):
    TRANSIENT = "transient"
    QUOTA = "quota"
    VALIDATION = "validation"
    FATAL = "fatal"


def classify_error(exc: BaseException) -> ErrorClass:
    """Map an exception raised by a stage handler onto the retry taxonomy.

    Exceptions outside the taxonomy are treated as transient so that an
    unexpected collaborator failure gets the normal retry budget.
    """
    if isinstance(exc, QuotaExceededError):
        return ErrorClass.QUOTA
    if isinstance(exc, TransientError):
        return ErrorClass.TRANSIENT
    if isinstance(exc, ValidationError):
        return ErrorClass.VALIDATION
    if isinstance(exc, FatalConfigurationError):
        return ErrorClass.FATAL
    return ErrorClass.TRANSIENT


def describe_error(stage: str, exc: BaseException) -> str:
    """Human readable error message stored on a failed workflow."""
    detail = str(exc) or exc.__class__.__name__
    return f"{stage} failed: {detail}"
