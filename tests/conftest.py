from __future__ import annotations

import sys
from pathlib import Path
from typing import Iterator

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from services.patient_records.config import AccessSettings
from services.patient_records.identity import Identity
from shared.observability import audit
from tests.fakes import CapturingAuditRepository, make_identity


@pytest.fixture
def anyio_backend() -> str:
    """Limit ``pytest-anyio`` to the asyncio backend."""

    return "asyncio"


@pytest.fixture(autouse=True)
def audit_log(monkeypatch: pytest.MonkeyPatch) -> Iterator[CapturingAuditRepository]:
    """Capture audit entries instead of logging them."""

    repository = CapturingAuditRepository()
    monkeypatch.setattr(audit, "_DEFAULT_REPOSITORY", repository)
    yield repository


@pytest.fixture
def access() -> AccessSettings:
    return AccessSettings()


@pytest.fixture
def doctor() -> Identity:
    return make_identity("doctor-1", "doctor", username="dr.house")


@pytest.fixture
def patient_identity() -> Identity:
    return make_identity("sub-1", "patient", username="jane")
