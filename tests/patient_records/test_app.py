from __future__ import annotations

from typing import AsyncIterator

import httpx
import pytest
from httpx import ASGITransport, AsyncClient

from services.patient_records import app as app_module
from services.patient_records.app import create_app
from services.patient_records.config import (
    DatabaseSettings,
    PatientServiceSettings,
    ServiceSettings,
)
from services.patient_records.storage import (
    InMemoryPatientRepository,
    SqlPatientRepository,
    StorageError,
)
from tests.fakes import (
    CapturingAuditRepository,
    FakeDirectory,
    StaticTokenVerifier,
    make_record,
)

TOKENS = {
    "doctor-token": {
        "sub": "doctor-1",
        "preferred_username": "dr.house",
        "realm_access": {"roles": ["doctor"]},
    },
    "patient-token": {
        "sub": "kc-jane",
        "preferred_username": "jane",
        "realm_access": {"roles": ["patient"]},
    },
    "roleless-token": {"sub": "kc-nobody"},
}

DOCTOR = {"Authorization": "Bearer doctor-token"}
PATIENT = {"Authorization": "Bearer patient-token"}


class _UnreachableRepository(InMemoryPatientRepository):
    async def ping(self) -> None:
        raise StorageError("database is down")


@pytest.fixture
def repository() -> InMemoryPatientRepository:
    return InMemoryPatientRepository(
        [
            make_record(1, first_name="Jane", last_name="Doe", email="jane@example.org"),
            make_record(2, first_name="John", last_name="Roe", email="john@example.org"),
        ]
    )


@pytest.fixture
def directory() -> FakeDirectory:
    return FakeDirectory({"new@example.org": "kc-new"})


def _build_client(
    repository: InMemoryPatientRepository,
    directory: FakeDirectory | None = None,
    settings: PatientServiceSettings | None = None,
) -> AsyncClient:
    app = create_app(
        settings or PatientServiceSettings(),
        repository=repository,
        verifier=StaticTokenVerifier(TOKENS),
        directory=directory,
    )
    return AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",  # FastAPI ignores the host for ASGI transports
    )


@pytest.fixture
async def client(
    repository: InMemoryPatientRepository, directory: FakeDirectory
) -> AsyncIterator[AsyncClient]:
    async with _build_client(repository, directory) as client:
        yield client


@pytest.mark.anyio("asyncio")
async def test_health_reports_up(client: AsyncClient) -> None:
    response = await client.get("/actuator/health")

    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] == "UP"
    assert payload["service"] == "patient-service"
    assert "timestamp" in payload


@pytest.mark.anyio("asyncio")
async def test_health_reports_down_when_store_unreachable() -> None:
    async with _build_client(_UnreachableRepository()) as client:
        response = await client.get("/actuator/health")

    assert response.status_code == 503
    assert response.json()["status"] == "DOWN"


@pytest.mark.anyio("asyncio")
async def test_info_describes_service(client: AsyncClient) -> None:
    response = await client.get("/actuator/info")

    assert response.status_code == 200
    assert response.json()["app"]["name"] == "patient-service"


@pytest.mark.anyio("asyncio")
async def test_request_id_is_echoed(client: AsyncClient) -> None:
    response = await client.get("/actuator/info", headers={"X-Request-ID": "req-42"})

    assert response.headers["X-Request-ID"] == "req-42"
    assert response.headers["X-Correlation-ID"] == "req-42"
    assert "X-Response-Time" in response.headers


@pytest.mark.anyio("asyncio")
@pytest.mark.parametrize("headers", [{}, {"Authorization": "Bearer forged"}])
async def test_patient_routes_require_authentication(
    client: AsyncClient, headers: dict[str, str]
) -> None:
    response = await client.get("/patients", headers=headers)

    assert response.status_code == 401
    assert response.headers["content-type"].startswith("application/problem+json")
    assert response.json()["category"] == "unauthenticated"


@pytest.mark.anyio("asyncio")
async def test_patient_cannot_list_records(
    client: AsyncClient, audit_log: CapturingAuditRepository
) -> None:
    response = await client.get("/patients", headers=PATIENT)

    assert response.status_code == 403
    problem = response.json()
    assert problem["detail"] == "This operation requires doctor privileges"
    assert problem["category"] == "forbidden"
    assert problem["requiredRole"] == "doctor"
    assert audit_log.events() == ["access_denied"]


@pytest.mark.anyio("asyncio")
async def test_caller_without_roles_is_forbidden(client: AsyncClient) -> None:
    response = await client.get(
        "/patients/me", headers={"Authorization": "Bearer roleless-token"}
    )

    assert response.status_code == 403
    assert response.json()["detail"] == "This endpoint is only accessible to patients"


@pytest.mark.anyio("asyncio")
async def test_doctor_lists_and_searches(client: AsyncClient) -> None:
    response = await client.get("/patients", params={"search": "doe"}, headers=DOCTOR)

    assert response.status_code == 200
    payload = response.json()
    assert payload["message"] == "Patients retrieved successfully"
    assert payload["count"] == 1
    assert [item["lastName"] for item in payload["data"]] == ["Doe"]


@pytest.mark.anyio("asyncio")
async def test_doctor_creates_prelinked_patient(
    client: AsyncClient, repository: InMemoryPatientRepository
) -> None:
    response = await client.post(
        "/patients",
        json={
            "firstName": "Nina",
            "lastName": "New",
            "dateOfBirth": "1990-01-31",
            "email": "new@example.org",
            "gender": "other",
        },
        headers=DOCTOR,
    )

    assert response.status_code == 201
    data = response.json()["data"]
    assert data["userId"] == "kc-new"
    assert data["createdBy"] == "dr.house"
    assert data["dateOfBirth"] == "1990-01-31"
    assert len(repository) == 3


@pytest.mark.anyio("asyncio")
async def test_create_with_missing_fields_is_rejected(client: AsyncClient) -> None:
    response = await client.post("/patients", json={"firstName": "Nina"}, headers=DOCTOR)

    assert response.status_code == 400
    problem = response.json()
    assert problem["detail"] == "firstName, lastName, dateOfBirth, and email are required"
    assert problem["fields"] == ["lastName", "dateOfBirth", "email"]


@pytest.mark.anyio("asyncio")
async def test_malformed_body_is_a_validation_problem(client: AsyncClient) -> None:
    response = await client.post(
        "/patients",
        json={"firstName": "Nina", "dateOfBirth": "not-a-date"},
        headers=DOCTOR,
    )

    assert response.status_code == 400
    problem = response.json()
    assert problem["category"] == "validation"
    assert problem["errors"]


@pytest.mark.anyio("asyncio")
async def test_read_update_delete_round(client: AsyncClient) -> None:
    read = await client.get("/patients/1", headers=DOCTOR)
    assert read.status_code == 200
    assert read.json()["data"]["firstName"] == "Jane"

    updated = await client.put("/patients/1", json={"phone": "555-0100"}, headers=DOCTOR)
    assert updated.status_code == 200
    assert updated.json()["message"] == "Patient updated successfully"
    assert updated.json()["data"]["phone"] == "555-0100"
    assert updated.json()["data"]["lastName"] == "Doe"

    deleted = await client.delete("/patients/1", headers=DOCTOR)
    assert deleted.status_code == 200
    assert deleted.json()["data"]["phone"] == "555-0100"

    missing = await client.get("/patients/1", headers=DOCTOR)
    assert missing.status_code == 404
    assert missing.json()["detail"] == "Patient with ID 1 not found"
    assert missing.json()["patientId"] == 1


@pytest.mark.anyio("asyncio")
async def test_link_then_read_own_record(client: AsyncClient) -> None:
    before = await client.get("/patients/me", headers=PATIENT)
    assert before.status_code == 404

    linked = await client.post(
        "/internal/link-user", json={"userId": "kc-jane", "email": "jane@example.org"}
    )
    assert linked.status_code == 200
    assert linked.json() == {
        "message": "Patient record linked successfully",
        "patientId": 1,
        "created": False,
        "alreadyLinked": False,
        "linked": True,
    }

    again = await client.post(
        "/internal/link-user", json={"userId": "kc-jane", "email": "jane@example.org"}
    )
    assert again.json()["alreadyLinked"] is True

    me = await client.get("/patients/me", headers=PATIENT)
    assert me.status_code == 200
    assert me.json()["message"] == "Patient data retrieved successfully"
    assert me.json()["data"]["id"] == 1


@pytest.mark.anyio("asyncio")
async def test_link_creates_record_for_unknown_email(
    client: AsyncClient, repository: InMemoryPatientRepository
) -> None:
    response = await client.post(
        "/internal/link-user",
        json={"userId": "kc-fresh", "email": "fresh@example.org", "firstName": "Fay"},
    )

    assert response.status_code == 200
    assert response.json()["created"] is True
    record = await repository.find_by_subject_id("kc-fresh")
    assert record is not None and record.first_name == "Fay"


@pytest.mark.anyio("asyncio")
async def test_link_requires_identity_and_email(client: AsyncClient) -> None:
    response = await client.post("/internal/link-user", json={"email": "jane@example.org"})

    assert response.status_code == 400
    assert response.json()["detail"] == "userId and email are required"


@pytest.mark.anyio("asyncio")
async def test_internal_routes_demand_configured_token(
    repository: InMemoryPatientRepository,
) -> None:
    settings = PatientServiceSettings(service=ServiceSettings(internal_token="s3cret"))
    link = {"userId": "kc-jane", "email": "jane@example.org"}

    async with _build_client(repository, settings=settings) as client:
        missing = await client.post("/internal/link-user", json=link)
        wrong = await client.post(
            "/internal/link-user", json=link, headers={"X-Internal-Token": "guess"}
        )
        bearer_only = await client.post("/internal/link-user", json=link, headers=DOCTOR)
        accepted = await client.post(
            "/internal/link-user", json=link, headers={"X-Internal-Token": "s3cret"}
        )

    for rejected in (missing, wrong, bearer_only):
        assert rejected.status_code == 401
        assert rejected.json()["category"] == "unauthenticated"
    assert accepted.status_code == 200
    assert accepted.json()["patientId"] == 1
    stored = await repository.find_by_id(1)
    assert stored is not None and stored.user_id == "kc-jane"


@pytest.mark.anyio("asyncio")
async def test_unknown_route_is_a_problem(client: AsyncClient) -> None:
    response = await client.get("/nothing-here")

    assert response.status_code == 404
    assert response.json()["detail"] == "The requested resource does not exist"


@pytest.mark.anyio("asyncio")
async def test_failed_startup_releases_clients(monkeypatch: pytest.MonkeyPatch) -> None:
    http_clients: list[httpx.AsyncClient] = []
    closed_stores: list[SqlPatientRepository] = []

    class _RecordingClient(httpx.AsyncClient):
        def __init__(self, *args: object, **kwargs: object) -> None:
            super().__init__(*args, **kwargs)  # type: ignore[arg-type]
            http_clients.append(self)

    class _UnreachableSqlRepository(SqlPatientRepository):
        async def create_schema(self) -> None:
            raise StorageError("connection refused")

        async def close(self) -> None:
            closed_stores.append(self)
            await super().close()

    monkeypatch.setattr(app_module.httpx, "AsyncClient", _RecordingClient)
    monkeypatch.setattr(app_module, "SqlPatientRepository", _UnreachableSqlRepository)
    settings = PatientServiceSettings(
        database=DatabaseSettings(url="sqlite+aiosqlite:///unused.db", create_schema=True)
    )
    app = create_app(settings)

    with pytest.raises(StorageError):
        async with app.router.lifespan_context(app):
            pass  # pragma: no cover - startup fails first

    assert len(http_clients) == 1 and http_clients[0].is_closed
    assert len(closed_stores) == 1
