"""Application error categories for the intake pipeline.

Errors carry a category so callers can decide between surfacing, retrying or
recording a failure without inspecting concrete types. ``status_for`` maps the
categories onto the HTTP-like status codes returned in submission outcomes.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class ErrorCategory(str, Enum):
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    VERIFICATION = "verification"
    TRANSIENT = "transient"
    PERSISTENCE = "persistence"
    CONSISTENCY = "consistency"
    INTERNAL = "internal"


@dataclass
class IntakeError(Exception):
    """Base structured application error."""

    message: str
    category: ErrorCategory = ErrorCategory.INTERNAL
    details: dict | None = None

    def __str__(self) -> str:  # pragma: no cover - trivial
        return self.message


class ValidationError(IntakeError):
    def __init__(self, message: str, details: dict | None = None) -> None:
        super().__init__(message, ErrorCategory.VALIDATION, details)


class NotFoundError(IntakeError):
    def __init__(self, message: str, details: dict | None = None) -> None:
        super().__init__(message, ErrorCategory.NOT_FOUND, details)


class VerificationFailure(IntakeError):
    def __init__(self, message: str, details: dict | None = None) -> None:
        super().__init__(message, ErrorCategory.VERIFICATION, details)


class TransientServiceError(IntakeError):
    def __init__(self, message: str, details: dict | None = None) -> None:
        super().__init__(message, ErrorCategory.TRANSIENT, details)


class PersistenceError(IntakeError):
    def __init__(self, message: str, details: dict | None = None) -> None:
        super().__init__(message, ErrorCategory.PERSISTENCE, details)


class ConsistencyError(IntakeError):
    def __init__(self, message: str, details: dict | None = None) -> None:
        super().__init__(message, ErrorCategory.CONSISTENCY, details)


class DecryptionError(IntakeError):
    def __init__(self, message: str = "Error decrypting data", details: dict | None = None) -> None:
        super().__init__(message, ErrorCategory.INTERNAL, details)


class ConfigurationError(Exception):
    """Raised when settings cannot be loaded or validated."""


CATEGORY_TO_STATUS: dict[ErrorCategory, int] = {
    ErrorCategory.VALIDATION: 400,
    ErrorCategory.NOT_FOUND: 404,
    ErrorCategory.VERIFICATION: 400,
    ErrorCategory.TRANSIENT: 503,
    ErrorCategory.PERSISTENCE: 500,
    ErrorCategory.CONSISTENCY: 500,
    ErrorCategory.INTERNAL: 500,
}


def status_for(exc: Exception) -> int:
    """Map an exception onto a response status, defaulting to 500."""
    if isinstance(exc, IntakeError):
        return CATEGORY_TO_STATUS.get(exc.category, 500)
    return 500


def exception_is_transient(exc: BaseException) -> bool:
    return isinstance(exc, TransientServiceError) or (
        isinstance(exc, IntakeError) and exc.category == ErrorCategory.TRANSIENT
    )


TRANSIENT_EXCEPTIONS: tuple[type[Exception], ...] = (TransientServiceError,)


def error_message(exc: BaseException) -> str:
    """Readable message for any exception, preferring an ``IntakeError`` message."""
    if isinstance(exc, IntakeError):
        return exc.message
    return str(exc) or type(exc).__name__


def error_category(exc: BaseException) -> ErrorCategory:
    return exc.category if isinstance(exc, IntakeError) else ErrorCategory.INTERNAL
