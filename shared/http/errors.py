"""Problem details (RFC 7807) responses and the service error taxonomy.

Every failure carries a stable ``category`` label next to the usual
``type``/``title``/``status``/``detail`` members. Internal exception text is
never copied into a response body.
"""

from __future__ import annotations

from http import HTTPStatus
from typing import Any, Mapping, cast

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from starlette.exceptions import HTTPException as StarletteHTTPException

from shared.observability.logger import get_logger

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

logger = get_logger(__name__)

PROBLEM_BASE_URI = "https://patient-service/problems"

_PROBLEM_FIELDS = {"type", "title", "status", "detail", "instance"}


class ProblemDetails(BaseModel):
    """Representation of an RFC 7807 problem details payload."""

    type: str = Field(default="about:blank")
    title: str = Field(default="An error occurred")
    status: int = Field(default=status.HTTP_500_INTERNAL_SERVER_ERROR)
    category: str = Field(default="internal", description="Stable failure category label")
    detail: str | None = Field(default=None)
    instance: str | None = Field(default=None)
    errors: list[Any] | None = Field(default=None)

    model_config = ConfigDict(extra="allow")


class ProblemDetailsException(RuntimeError):
    """Base exception carrying structured problem details metadata."""

    default_status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_title = "Service Error"
    category = "internal"

    def __init__(
        self,
        detail: str | None = None,
        *,
        status_code: int | None = None,
        title: str | None = None,
        extensions: Mapping[str, Any] | None = None,
    ) -> None:
        message = detail or title or self.default_title
        super().__init__(message)
        self.detail = message
        self.status_code = status_code or self.default_status_code
        self.title = title or self.default_title
        self.extensions = dict(extensions or {})

    @property
    def problem_type(self) -> str:
        return f"{PROBLEM_BASE_URI}/{self.category}"

    def to_problem_details(self, *, instance: str | None = None) -> ProblemDetails:
        return ProblemDetails(
            type=self.problem_type,
            title=self.title,
            status=self.status_code,
            category=self.category,
            detail=self.detail,
            instance=instance,
            **self.extensions,
        )


class UnauthenticatedError(ProblemDetailsException):
    """No verified token accompanied the request."""

    default_status_code = status.HTTP_401_UNAUTHORIZED
    default_title = "Unauthenticated"
    category = "unauthenticated"


class ValidationFailedError(ProblemDetailsException):
    """Missing or malformed input; nothing was mutated."""

    default_status_code = status.HTTP_400_BAD_REQUEST
    default_title = "Validation Failed"
    category = "validation"

    def __init__(self, detail: str, *, fields: list[str] | None = None) -> None:
        extensions = {"fields": fields} if fields else None
        super().__init__(detail, extensions=extensions)
        self.fields = list(fields or [])


class RecordNotFoundError(ProblemDetailsException):
    """The referenced patient record does not exist."""

    default_status_code = status.HTTP_404_NOT_FOUND
    default_title = "Not Found"
    category = "not_found"

    def __init__(self, detail: str, *, patient_id: int | None = None) -> None:
        extensions = {"patientId": patient_id} if patient_id is not None else None
        super().__init__(detail, extensions=extensions)
        self.patient_id = patient_id


class ForbiddenError(ProblemDetailsException):
    """The caller lacks the role an operation requires."""

    default_status_code = status.HTTP_403_FORBIDDEN
    default_title = "Forbidden"
    category = "forbidden"

    def __init__(self, detail: str, *, required_role: str) -> None:
        super().__init__(detail, extensions={"requiredRole": required_role})
        self.required_role = required_role


class ConflictError(ProblemDetailsException):
    """A uniqueness rule was violated; callers should re-fetch rather than retry."""

    default_status_code = status.HTTP_409_CONFLICT
    default_title = "Conflict"
    category = "conflict"


class UpstreamUnavailableError(ProblemDetailsException):
    """The identity provider could not be reached or answered with an error."""

    default_status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_title = "Upstream Unavailable"
    category = "upstream_unavailable"

    def __init__(self, upstream: str, *, reason: str | None = None) -> None:
        super().__init__(
            f"The '{upstream}' service is temporarily unavailable.",
            extensions={"upstream": upstream},
        )
        self.upstream = upstream
        self.reason = reason


class StorageFailureError(ProblemDetailsException):
    """Unexpected record store failure. The detail stays generic on purpose."""

    default_status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_title = "Storage Failure"
    category = "storage_failure"

    def __init__(self, operation: str) -> None:
        super().__init__(f"Failed to {operation}")
        self.operation = operation


def _problem_response(problem: ProblemDetails) -> JSONResponse:
    payload = problem.model_dump(mode="json", exclude_none=True)
    return JSONResponse(
        payload,
        status_code=problem.status,
        media_type="application/problem+json",
    )


def _status_title(status_code: int) -> str:
    try:
        return HTTPStatus(status_code).phrase
    except ValueError:  # pragma: no cover - non-standard status
        return "HTTP Error"


_STATUS_CATEGORIES = {
    status.HTTP_400_BAD_REQUEST: "validation",
    status.HTTP_401_UNAUTHORIZED: "unauthenticated",
    status.HTTP_403_FORBIDDEN: "forbidden",
    status.HTTP_404_NOT_FOUND: "not_found",
    status.HTTP_405_METHOD_NOT_ALLOWED: "method_not_allowed",
    status.HTTP_409_CONFLICT: "conflict",
}


def _http_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    http_exc = cast(StarletteHTTPException, exc)
    detail = http_exc.detail if isinstance(http_exc.detail, str) else None
    if http_exc.status_code == status.HTTP_404_NOT_FOUND and detail in (None, "Not Found"):
        logger.warning("route_not_found", method=request.method, path=request.url.path)
        detail = "The requested resource does not exist"
    category = _STATUS_CATEGORIES.get(http_exc.status_code, "http_error")
    problem = ProblemDetails(
        type=f"{PROBLEM_BASE_URI}/{category}",
        title=_status_title(http_exc.status_code),
        status=http_exc.status_code,
        category=category,
        detail=detail,
        instance=request.url.path,
    )
    response = _problem_response(problem)
    if http_exc.headers:
        response.headers.update(http_exc.headers)
    return response


def _validation_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    validation_error = cast(RequestValidationError, exc)
    errors = [
        {key: value for key, value in error.items() if key in {"loc", "msg", "type"}}
        for error in validation_error.errors()
    ]
    problem = ProblemDetails(
        type=f"{PROBLEM_BASE_URI}/validation",
        title=ValidationFailedError.default_title,
        status=status.HTTP_400_BAD_REQUEST,
        category="validation",
        detail="One or more request parameters failed validation.",
        instance=request.url.path,
        errors=errors,
    )
    return _problem_response(problem)


def _problem_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    problem_exc = cast(ProblemDetailsException, exc)
    if isinstance(problem_exc, StorageFailureError):
        logger.error(
            "storage_failure",
            operation=problem_exc.operation,
            path=request.url.path,
            cause=repr(problem_exc.__cause__),
        )
    return _problem_response(problem_exc.to_problem_details(instance=request.url.path))


def _unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled_exception", error=str(exc), path=request.url.path)
    problem = ProblemDetails(
        type=f"{PROBLEM_BASE_URI}/internal",
        title="Internal Server Error",
        status=status.HTTP_500_INTERNAL_SERVER_ERROR,
        category="internal",
        detail="Something went wrong",
        instance=request.url.path,
    )
    return _problem_response(problem)


def register_exception_handlers(app: FastAPI) -> None:
    """Register handlers that render every failure as problem details."""

    app.add_exception_handler(ProblemDetailsException, _problem_exception_handler)
    app.add_exception_handler(StarletteHTTPException, _http_exception_handler)
    app.add_exception_handler(RequestValidationError, _validation_exception_handler)
    app.add_exception_handler(Exception, _unhandled_exception_handler)
