"""Starlette middleware adding correlation ids and request logging."""

from __future__ import annotations

import time
from typing import Awaitable, Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import ASGIApp

from .logger import generate_request_id, get_logger, request_context

__all__ = ["CorrelationIdMiddleware", "RequestLoggingMiddleware"]

_MAX_REQUEST_ID_LENGTH = 128


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Reuse an inbound request id (or mint one) and echo it on the response."""

    def __init__(
        self,
        app: ASGIApp,
        *,
        header_name: str = "X-Request-ID",
        correlation_header: str = "X-Correlation-ID",
    ) -> None:
        super().__init__(app)
        self.header_name = header_name
        self.correlation_header = correlation_header

    def _resolve_request_id(self, request: Request) -> str:
        for header in (self.header_name, self.correlation_header):
            value = (request.headers.get(header) or "").strip()
            if value:
                return value[:_MAX_REQUEST_ID_LENGTH]
        return generate_request_id()

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        request_id = self._resolve_request_id(request)
        request.state.request_id = request_id

        with request_context(request_id=request_id):
            response = await call_next(request)

        response.headers.setdefault(self.header_name, request_id)
        response.headers.setdefault(self.correlation_header, request_id)
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log one structured entry per request, including the caller when known.

    Authentication happens inside the route dependencies, which leave the
    resolved identity on ``request.state.identity``.
    """

    def __init__(self, app: ASGIApp, *, header_name: str = "X-Response-Time") -> None:
        super().__init__(app)
        self._header_name = header_name
        self._logger = get_logger("http")

    @staticmethod
    def _caller_fields(request: Request) -> dict[str, object]:
        identity = getattr(request.state, "identity", None)
        if identity is None:
            return {"user_id": "anonymous", "username": "anonymous", "roles": "none"}
        roles = ",".join(sorted(identity.roles)) or "none"
        return {
            "user_id": identity.subject_id,
            "username": identity.username or "unknown",
            "roles": roles,
        }

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        start = time.perf_counter()
        fields: dict[str, object] = {
            "method": request.method,
            "path": request.url.path,
            "client": request.client.host if request.client else None,
        }

        try:
            response = await call_next(request)
        except Exception:
            fields["duration_ms"] = (time.perf_counter() - start) * 1000.0
            self._logger.bind(**fields, **self._caller_fields(request)).exception(
                "http_request_failed"
            )
            raise

        duration_ms = (time.perf_counter() - start) * 1000.0
        if self._header_name:
            response.headers[self._header_name] = f"{duration_ms / 1000.0:.6f}s"

        self._logger.bind(
            **fields,
            **self._caller_fields(request),
            status_code=response.status_code,
            duration_ms=duration_ms,
        ).info("http_request_completed")
        return response
