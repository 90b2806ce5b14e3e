"""Observability utilities shared across the patient services."""

from .audit import (
    AccessAudit,
    AuditRepository,
    LogAuditRepository,
    get_audit_repository,
    record_access_audit,
)
from .logger import (
    bind_caller,
    configure_logging,
    generate_request_id,
    get_logger,
    get_request_id,
    request_context,
)
from .middleware import CorrelationIdMiddleware, RequestLoggingMiddleware

__all__ = [
    "AccessAudit",
    "AuditRepository",
    "CorrelationIdMiddleware",
    "LogAuditRepository",
    "RequestLoggingMiddleware",
    "bind_caller",
    "configure_logging",
    "generate_request_id",
    "get_audit_repository",
    "get_logger",
    "get_request_id",
    "record_access_audit",
    "request_context",
]
