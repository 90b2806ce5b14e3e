from __future__ import annotations

import pytest

from services.patient_records.authz import AccessDecision, authorize, require_role
from shared.http.errors import ForbiddenError
from tests.fakes import CapturingAuditRepository, make_identity


@pytest.mark.parametrize(
    ("roles", "required", "expected"),
    [
        (("doctor",), "doctor", AccessDecision.ALLOW),
        (("doctor", "patient"), "patient", AccessDecision.ALLOW),
        (("patient",), "doctor", AccessDecision.DENY),
        ((), "doctor", AccessDecision.DENY),
        (("Doctor",), "doctor", AccessDecision.DENY),
    ],
)
def test_authorize_requires_exact_role(
    roles: tuple[str, ...], required: str, expected: AccessDecision
) -> None:
    assert authorize(make_identity("abc", *roles), required) is expected


@pytest.mark.anyio("asyncio")
async def test_require_role_passes_silently(audit_log: CapturingAuditRepository) -> None:
    await require_role(make_identity("abc", "doctor"), "doctor", action="patient.list")

    assert audit_log.entries == []


@pytest.mark.anyio("asyncio")
async def test_require_role_denial_is_audited(audit_log: CapturingAuditRepository) -> None:
    identity = make_identity("abc", "patient", username="jane")

    with pytest.raises(ForbiddenError) as excinfo:
        await require_role(identity, "doctor", action="patient.delete")

    assert excinfo.value.status_code == 403
    assert excinfo.value.detail == "This operation requires doctor privileges"
    assert excinfo.value.extensions == {"requiredRole": "doctor"}

    [entry] = audit_log.entries
    assert entry.event == "access_denied"
    assert entry.success is False
    assert entry.actor == "jane"
    assert entry.metadata == {"action": "patient.delete", "requiredRole": "doctor"}


@pytest.mark.anyio("asyncio")
async def test_require_role_uses_custom_denial_message() -> None:
    with pytest.raises(ForbiddenError) as excinfo:
        await require_role(
            make_identity("abc", "doctor"),
            "patient",
            action="patient.read_self",
            denial_message="This endpoint is only accessible to patients",
        )

    assert excinfo.value.detail == "This endpoint is only accessible to patients"
