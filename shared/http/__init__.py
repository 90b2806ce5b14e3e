"""HTTP helpers and the error taxonomy used across services."""

from .errors import (
    ConflictError,
    ForbiddenError,
    ProblemDetails,
    ProblemDetailsException,
    RecordNotFoundError,
    StorageFailureError,
    UnauthenticatedError,
    UpstreamUnavailableError,
    ValidationFailedError,
    register_exception_handlers,
)

__all__ = [
    "ConflictError",
    "ForbiddenError",
    "ProblemDetails",
    "ProblemDetailsException",
    "RecordNotFoundError",
    "StorageFailureError",
    "UnauthenticatedError",
    "UpstreamUnavailableError",
    "ValidationFailedError",
    "register_exception_handlers",
]
