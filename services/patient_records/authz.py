"""Role gate for patient record operations."""

from __future__ import annotations

from enum import Enum

from shared.http.errors import ForbiddenError
from shared.observability.audit import record_access_audit
from shared.observability.logger import get_logger

from .identity import Identity

logger = get_logger(__name__)


class AccessDecision(str, Enum):
    ALLOW = "allow"
    DENY = "deny"


def authorize(identity: Identity, required_role: str) -> AccessDecision:
    """Allow exactly when ``required_role`` is one of the caller's roles."""

    if required_role in identity.roles:
        return AccessDecision.ALLOW
    return AccessDecision.DENY


async def require_role(
    identity: Identity,
    required_role: str,
    *,
    action: str,
    denial_message: str | None = None,
) -> None:
    """Raise :class:`ForbiddenError` unless ``identity`` holds ``required_role``.

    A denial is logged as a warning and written to the audit trail first.
    """

    if authorize(identity, required_role) is AccessDecision.ALLOW:
        return

    logger.warning(
        "access_denied",
        username=identity.username,
        subject_id=identity.subject_id,
        required_role=required_role,
        action=action,
    )
    await record_access_audit(
        "access_denied",
        actor=identity.username,
        actor_id=identity.subject_id,
        success=False,
        metadata={"action": action, "requiredRole": required_role},
    )
    raise ForbiddenError(
        denial_message or f"This operation requires {required_role} privileges",
        required_role=required_role,
    )


__all__ = ["AccessDecision", "authorize", "require_role"]
