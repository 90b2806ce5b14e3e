from __future__ import annotations

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from shared.http.errors import (
    ConflictError,
    ForbiddenError,
    ProblemDetailsException,
    RecordNotFoundError,
    StorageFailureError,
    UpstreamUnavailableError,
    ValidationFailedError,
    register_exception_handlers,
)


def _app() -> FastAPI:
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/conflict")
    async def conflict() -> None:
        raise ConflictError("A patient with this userId already exists")

    @app.get("/storage")
    async def storage() -> None:
        raise StorageFailureError("retrieve patients") from RuntimeError("password=hunter2")

    @app.get("/items/{item_id}")
    async def item(item_id: int) -> dict[str, int]:
        return {"id": item_id}

    return app


@pytest.mark.parametrize(
    ("error", "status_code", "category"),
    [
        (ValidationFailedError("bad", fields=["email"]), 400, "validation"),
        (ForbiddenError("no", required_role="doctor"), 403, "forbidden"),
        (RecordNotFoundError("gone", patient_id=3), 404, "not_found"),
        (ConflictError("taken"), 409, "conflict"),
        (StorageFailureError("delete patient"), 500, "storage_failure"),
        (UpstreamUnavailableError("keycloak"), 503, "upstream_unavailable"),
    ],
)
def test_error_taxonomy(error: ProblemDetailsException, status_code: int, category: str) -> None:
    problem = error.to_problem_details(instance="/patients")

    assert problem.status == status_code
    assert problem.category == category
    assert problem.type.endswith(f"/{category}")
    assert problem.instance == "/patients"


def test_extensions_are_carried() -> None:
    problem = RecordNotFoundError("Patient with ID 3 not found", patient_id=3).to_problem_details()

    assert problem.model_dump(exclude_none=True)["patientId"] == 3


@pytest.mark.anyio("asyncio")
async def test_handlers_render_problem_json() -> None:
    async with AsyncClient(transport=ASGITransport(app=_app()), base_url="http://test") as client:
        conflict = await client.get("/conflict")
        storage = await client.get("/storage")
        invalid = await client.get("/items/abc")
        missing = await client.get("/missing")

    assert conflict.status_code == 409
    assert conflict.headers["content-type"].startswith("application/problem+json")
    assert conflict.json()["detail"] == "A patient with this userId already exists"

    assert storage.status_code == 500
    assert storage.json()["detail"] == "Failed to retrieve patients"
    assert "hunter2" not in storage.text

    assert invalid.status_code == 400
    assert invalid.json()["category"] == "validation"
    assert invalid.json()["errors"][0]["loc"] == ["path", "item_id"]

    assert missing.status_code == 404
    assert missing.json()["category"] == "not_found"
