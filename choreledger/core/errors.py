"""Engine error taxonomy and classification into structured responses."""

import traceback
from enum import Enum
from typing import Any

from fastapi.exceptions import RequestValidationError
from pydantic import BaseModel, Field

from choreledger.core.db_client import DatabaseError, DuplicateRecordError, RecordNotFoundError


class ErrorCategory(Enum):
    """Categories of errors surfaced by the engine."""

    NOT_FOUND = "not_found"
    FORBIDDEN = "forbidden"
    INVALID_TRANSITION = "invalid_transition"
    ALREADY_EXISTS = "already_exists"
    EXPIRED = "expired"
    EXTERNAL_FAILURE = "external_failure"
    INVARIANT_VIOLATION = "invariant_violation"
    UNAUTHENTICATED = "unauthenticated"
    VALIDATION = "validation"
    UNKNOWN = "unknown"


class ErrorSeverity(Enum):
    """Severity levels for errors."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCode:
    """Stable error codes exposed to API clients."""

    # Lookup
    ERR_NOT_FOUND = "ERR_NOT_FOUND"

    # Authorization
    ERR_FORBIDDEN = "ERR_FORBIDDEN"
    ERR_FORBIDDEN_TRANSITION = "ERR_FORBIDDEN_TRANSITION"
    ERR_UNAUTHENTICATED = "ERR_UNAUTHENTICATED"
    ERR_DEACTIVATED = "ERR_DEACTIVATED"

    # Task lifecycle
    ERR_INVALID_TRANSITION = "ERR_INVALID_TRANSITION"
    ERR_INVALID_ASSIGNEE = "ERR_INVALID_ASSIGNEE"
    ERR_TASK_HAS_SUBMISSIONS = "ERR_TASK_HAS_SUBMISSIONS"
    ERR_TASK_ALREADY_COMPLETED = "ERR_TASK_ALREADY_COMPLETED"
    ERR_STALE_SUBMISSION = "ERR_STALE_SUBMISSION"
    ERR_REWARD_LOCKED = "ERR_REWARD_LOCKED"

    # Membership
    ERR_ALREADY_IN_FAMILY = "ERR_ALREADY_IN_FAMILY"
    ERR_DUPLICATE_ENTRY = "ERR_DUPLICATE_ENTRY"
    ERR_INVALID_OR_EXPIRED_INVITE = "ERR_INVALID_OR_EXPIRED_INVITE"

    # Settlement
    ERR_TRANSFER_FAILED = "ERR_TRANSFER_FAILED"
    ERR_INVARIANT_VIOLATION = "ERR_INVARIANT_VIOLATION"

    # Generic errors
    ERR_VALIDATION = "ERR_VALIDATION"
    ERR_UNKNOWN = "ERR_UNKNOWN"


HTTP_STATUS_BY_CATEGORY: dict[ErrorCategory, int] = {
    ErrorCategory.NOT_FOUND: 404,
    ErrorCategory.FORBIDDEN: 403,
    ErrorCategory.INVALID_TRANSITION: 409,
    ErrorCategory.ALREADY_EXISTS: 409,
    ErrorCategory.EXPIRED: 410,
    ErrorCategory.EXTERNAL_FAILURE: 502,
    ErrorCategory.INVARIANT_VIOLATION: 500,
    ErrorCategory.UNAUTHENTICATED: 401,
    ErrorCategory.VALIDATION: 422,
    ErrorCategory.UNKNOWN: 500,
}


class ErrorResponse(BaseModel):
    """Structured error response returned to API clients."""

    code: str
    message: str
    category: ErrorCategory
    severity: ErrorSeverity
    retryable: bool = False
    detail: str | None = Field(default=None, description="Diagnostic detail, only populated in debug mode")


class EngineError(Exception):
    """Base class for domain errors raised by the engine."""

    code: str = ErrorCode.ERR_UNKNOWN
    category: ErrorCategory = ErrorCategory.UNKNOWN
    severity: ErrorSeverity = ErrorSeverity.MEDIUM
    retryable: bool = False
    default_message: str = "An unexpected error occurred."

    def __init__(self, message: str | None = None, **context: Any) -> None:
        self.message = message or self.default_message
        self.context = context
        super().__init__(self.message)

    @property
    def http_status(self) -> int:
        return HTTP_STATUS_BY_CATEGORY[self.category]

    def to_response(self, *, debug: bool = False) -> ErrorResponse:
        detail = None
        if debug and self.context:
            detail = ", ".join(f"{key}={value}" for key, value in self.context.items())
        return ErrorResponse(
            code=self.code,
            message=self.message,
            category=self.category,
            severity=self.severity,
            retryable=self.retryable,
            detail=detail,
        )


class NotFoundError(EngineError):
    code = ErrorCode.ERR_NOT_FOUND
    category = ErrorCategory.NOT_FOUND
    severity = ErrorSeverity.LOW
    default_message = "The requested record was not found."


class ForbiddenError(EngineError):
    code = ErrorCode.ERR_FORBIDDEN
    category = ErrorCategory.FORBIDDEN
    default_message = "You don't have permission for this action."


class ForbiddenTransitionError(EngineError):
    """Raised when the actor may not set the requested status directly."""

    code = ErrorCode.ERR_FORBIDDEN_TRANSITION
    category = ErrorCategory.FORBIDDEN
    default_message = "This status change is not allowed for you."


class InvalidTransitionError(EngineError):
    """Raised when a task is not in a state that allows the operation."""

    code = ErrorCode.ERR_INVALID_TRANSITION
    category = ErrorCategory.INVALID_TRANSITION
    severity = ErrorSeverity.LOW
    default_message = "This action cannot be performed in the current state."


class InvalidAssigneeError(InvalidTransitionError):
    code = ErrorCode.ERR_INVALID_ASSIGNEE
    default_message = "Tasks can only be assigned to an active child of the family."


class TaskHasSubmissionsError(InvalidTransitionError):
    code = ErrorCode.ERR_TASK_HAS_SUBMISSIONS
    default_message = "Tasks with submissions cannot be deleted."


class TaskAlreadyCompletedError(InvalidTransitionError):
    code = ErrorCode.ERR_TASK_ALREADY_COMPLETED
    default_message = "This task has already been approved or completed."


class StaleSubmissionError(InvalidTransitionError):
    code = ErrorCode.ERR_STALE_SUBMISSION
    default_message = "Only the latest submission of a task can be decided."


class RewardLockedError(InvalidTransitionError):
    code = ErrorCode.ERR_REWARD_LOCKED
    default_message = "The reward cannot change once work has been submitted."


class AlreadyInFamilyError(EngineError):
    code = ErrorCode.ERR_ALREADY_IN_FAMILY
    category = ErrorCategory.ALREADY_EXISTS
    severity = ErrorSeverity.LOW
    default_message = "You already belong to, or have requested to join, a family."


class DuplicateEntryError(EngineError):
    code = ErrorCode.ERR_DUPLICATE_ENTRY
    category = ErrorCategory.ALREADY_EXISTS
    severity = ErrorSeverity.LOW
    default_message = "This record already exists."


class InvalidOrExpiredInviteError(EngineError):
    """Raised for invite codes that are unknown, inactive, expired or used up."""

    code = ErrorCode.ERR_INVALID_OR_EXPIRED_INVITE
    category = ErrorCategory.EXPIRED
    severity = ErrorSeverity.LOW
    default_message = "This invite code is invalid or has expired."

    def __init__(self, message: str | None = None, *, reason: str = "invalid", **context: Any) -> None:
        self.reason = reason
        super().__init__(message, reason=reason, **context)


class TransferFailedError(EngineError):
    """Raised by ledger clients when a transfer could not be executed."""

    code = ErrorCode.ERR_TRANSFER_FAILED
    category = ErrorCategory.EXTERNAL_FAILURE
    severity = ErrorSeverity.HIGH
    retryable = True
    default_message = "The reward transfer failed. It can be retried."


class InvariantViolationError(EngineError):
    code = ErrorCode.ERR_INVARIANT_VIOLATION
    category = ErrorCategory.INVARIANT_VIOLATION
    severity = ErrorSeverity.CRITICAL
    default_message = "Stored state is inconsistent."


class UnauthenticatedError(EngineError):
    code = ErrorCode.ERR_UNAUTHENTICATED
    category = ErrorCategory.UNAUTHENTICATED
    default_message = "Authentication required."


class DeactivatedError(UnauthenticatedError):
    code = ErrorCode.ERR_DEACTIVATED
    default_message = "This account has been deactivated."


def classify_error_with_response(exception: Exception, *, debug: bool = False) -> ErrorResponse:
    """Classify any exception and return a structured response.

    Engine errors map to their own code and category. Store and built-in errors
    raised below the service layer are mapped onto the nearest category;
    anything else becomes ``ERR_UNKNOWN``.

    Args:
        exception: The exception raised during execution
        debug: Include the formatted traceback as ``detail``

    Returns:
        ErrorResponse with code, message, category and severity
    """
    if isinstance(exception, EngineError):
        response = exception.to_response(debug=debug)
    elif isinstance(exception, RecordNotFoundError):
        response = NotFoundError().to_response()
    elif isinstance(exception, DuplicateRecordError):
        response = DuplicateEntryError().to_response()
    elif isinstance(exception, PermissionError):
        response = ForbiddenError().to_response()
    elif isinstance(exception, RequestValidationError):
        problems = [
            f"{'.'.join(str(part) for part in error['loc'][1:]) or 'body'}: {error['msg']}"
            for error in exception.errors()
        ]
        response = ErrorResponse(
            code=ErrorCode.ERR_VALIDATION,
            message="; ".join(problems) or "Invalid input.",
            category=ErrorCategory.VALIDATION,
            severity=ErrorSeverity.LOW,
        )
    elif isinstance(exception, ValueError):
        response = ErrorResponse(
            code=ErrorCode.ERR_VALIDATION,
            message=str(exception) or "Invalid input.",
            category=ErrorCategory.VALIDATION,
            severity=ErrorSeverity.LOW,
        )
    elif isinstance(exception, DatabaseError):
        response = ErrorResponse(
            code=ErrorCode.ERR_UNKNOWN,
            message="A storage error occurred.",
            category=ErrorCategory.UNKNOWN,
            severity=ErrorSeverity.HIGH,
            retryable=True,
        )
    else:
        response = ErrorResponse(
            code=ErrorCode.ERR_UNKNOWN,
            message="An unexpected error occurred.",
            category=ErrorCategory.UNKNOWN,
            severity=ErrorSeverity.MEDIUM,
        )

    if debug:
        trace = "".join(traceback.format_exception(type(exception), exception, exception.__traceback__))
        response.detail = f"{response.detail}\n{trace}" if response.detail else trace
    return response


def http_status_for(response: ErrorResponse) -> int:
    """HTTP status code for a classified error response."""
    return HTTP_STATUS_BY_CATEGORY[response.category]
