"""Access audit trail for patient record operations."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol

import structlog

from .logger import get_logger, get_request_id

__all__ = [
    "AccessAudit",
    "AuditRepository",
    "LogAuditRepository",
    "get_audit_repository",
    "record_access_audit",
]


@dataclass(slots=True)
class AccessAudit:
    """Who did what to which patient record, and whether it was allowed."""

    event: str
    actor: str | None = None
    actor_id: str | None = None
    patient_id: int | None = None
    success: bool = True
    request_id: str | None = None
    service: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "event": self.event,
            "actor": self.actor,
            "actorId": self.actor_id,
            "patientId": self.patient_id,
            "success": self.success,
            "requestId": self.request_id,
            "service": self.service,
            "metadata": dict(self.metadata),
            "createdAt": self.created_at.isoformat(),
        }


class AuditRepository(Protocol):
    async def persist(self, audit: AccessAudit) -> None:  # pragma: no cover - interface
        """Store ``audit``."""


class LogAuditRepository:
    """Write audit entries to the ``audit`` logger."""

    def __init__(self) -> None:
        self._logger = get_logger("audit")

    async def persist(self, audit: AccessAudit) -> None:
        self._logger.info("access_audit", **audit.to_dict())


_DEFAULT_REPOSITORY: AuditRepository | None = None


def get_audit_repository() -> AuditRepository:
    global _DEFAULT_REPOSITORY
    if _DEFAULT_REPOSITORY is None:
        _DEFAULT_REPOSITORY = LogAuditRepository()
    return _DEFAULT_REPOSITORY


async def record_access_audit(
    event: str,
    *,
    actor: str | None = None,
    actor_id: str | None = None,
    patient_id: int | None = None,
    success: bool = True,
    metadata: dict[str, Any] | None = None,
    repository: AuditRepository | None = None,
) -> AccessAudit:
    """Build an :class:`AccessAudit` from the current request context and persist it."""

    context = structlog.contextvars.get_contextvars()
    entry = AccessAudit(
        event=event,
        actor=actor,
        actor_id=actor_id,
        patient_id=patient_id,
        success=success,
        request_id=get_request_id(),
        service=context.get("service"),
        metadata=dict(metadata or {}),
    )
    await (repository or get_audit_repository()).persist(entry)
    return entry
