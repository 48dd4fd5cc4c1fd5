"""
Intake Common package - shared library for the credential intake services.

Errors, configuration, logging, crypto helpers, caching, resilience primitives
and the persistence layer used by the pipeline.
"""

__version__ = "0.1.0"

from .errors import (
    ConfigurationError,
    ConsistencyError,
    DecryptionError,
    ErrorCategory,
    IntakeError,
    NotFoundError,
    PersistenceError,
    TransientServiceError,
    ValidationError,
    VerificationFailure,
)

__all__ = [
    "ConfigurationError",
    "ConsistencyError",
    "DecryptionError",
    "ErrorCategory",
    "IntakeError",
    "NotFoundError",
    "PersistenceError",
    "TransientServiceError",
    "ValidationError",
    "VerificationFailure",
]
