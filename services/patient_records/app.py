"""FastAPI application exposing the patient record service."""

from __future__ import annotations

import hmac
from contextlib import AsyncExitStack, asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator

import httpx
from fastapi import APIRouter, Depends, FastAPI, Header, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import Field

from shared.http.errors import UnauthenticatedError, register_exception_handlers
from shared.observability.logger import bind_caller, configure_logging, get_logger
from shared.observability.middleware import CorrelationIdMiddleware, RequestLoggingMiddleware

from .config import PatientServiceSettings, get_settings
from .handlers import PatientHandlers
from .identity import Identity, KeycloakTokenVerifier, TokenVerifier, resolve_identity
from .keycloak import IdentityDirectory, KeycloakAdminClient
from .models import (
    CamelModel,
    LinkRequest,
    PatientCreate,
    PatientRecord,
    PatientUpdate,
)
from .reconciler import IdentityLinkReconciler
from .storage import PatientRepository, SqlPatientRepository, StorageError

logger = get_logger(__name__)

_bearer = HTTPBearer(auto_error=False)


class PatientResponse(CamelModel):
    message: str
    data: PatientRecord


class PatientListResponse(CamelModel):
    message: str
    count: int
    data: list[PatientRecord] = Field(default_factory=list)


class LinkResponse(CamelModel):
    message: str
    patient_id: int
    created: bool
    already_linked: bool
    linked: bool = True


def _wire(
    app: FastAPI,
    settings: PatientServiceSettings,
    repository: PatientRepository,
    verifier: TokenVerifier,
    directory: IdentityDirectory | None,
) -> None:
    app.state.repository = repository
    app.state.verifier = verifier
    app.state.reconciler = IdentityLinkReconciler(repository)
    app.state.handlers = PatientHandlers(repository, directory, settings.access)


def get_handlers(request: Request) -> PatientHandlers:
    return request.app.state.handlers


def get_reconciler(request: Request) -> IdentityLinkReconciler:
    return request.app.state.reconciler


async def get_identity(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer),
) -> Identity:
    """Verify the bearer token and expose the caller as an :class:`Identity`."""

    if credentials is None or not credentials.credentials:
        raise UnauthenticatedError("Authentication required")
    verifier: TokenVerifier = request.app.state.verifier
    claims = await verifier.verify(credentials.credentials)
    identity = resolve_identity(claims)
    request.state.identity = identity
    bind_caller(subject_id=identity.subject_id, username=identity.username)
    return identity


async def require_internal_caller(
    request: Request,
    internal_token: str | None = Header(default=None, alias="X-Internal-Token"),
) -> None:
    """Check the shared secret on internal routes when one is configured."""

    settings: PatientServiceSettings = request.app.state.settings
    expected = settings.service.internal_token
    if expected is None:
        return
    if internal_token is None or not hmac.compare_digest(
        internal_token.encode(), expected.get_secret_value().encode()
    ):
        logger.warning("internal_caller_rejected", path=request.url.path)
        raise UnauthenticatedError("Internal endpoint requires a valid X-Internal-Token")


actuator_router = APIRouter(prefix="/actuator", tags=["health"])
internal_router = APIRouter(
    prefix="/internal", tags=["internal"], dependencies=[Depends(require_internal_caller)]
)
patients_router = APIRouter(prefix="/patients", tags=["patients"])


@actuator_router.get("/health")
async def health(request: Request) -> JSONResponse:
    """Report UP when the record store answers, DOWN otherwise."""

    settings: PatientServiceSettings = request.app.state.settings
    payload: dict[str, Any] = {
        "status": "UP",
        "service": settings.service.name,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    try:
        await request.app.state.repository.ping()
    except StorageError as exc:
        logger.error("health_check_failed", error=str(exc))
        payload["status"] = "DOWN"
        return JSONResponse(payload, status_code=status.HTTP_503_SERVICE_UNAVAILABLE)
    return JSONResponse(payload)


@actuator_router.get("/info")
async def info(request: Request) -> dict[str, Any]:
    settings: PatientServiceSettings = request.app.state.settings
    return {
        "app": {
            "name": settings.service.name,
            "description": settings.service.description,
            "version": settings.service.version,
        }
    }


@internal_router.post("/link-user", response_model=LinkResponse)
async def link_user(
    payload: LinkRequest,
    reconciler: IdentityLinkReconciler = Depends(get_reconciler),
) -> LinkResponse:
    """Link an identity-provider account to a patient record, creating one if needed.

    Meant for service-to-service calls. No bearer token is required, only the
    internal token when one is configured.
    """

    result = await reconciler.reconcile(payload)
    return LinkResponse(
        message=result.message,
        patient_id=result.patient_id,
        created=result.created,
        already_linked=result.already_linked,
    )


@patients_router.get("/me", response_model=PatientResponse)
async def read_own_patient(
    identity: Identity = Depends(get_identity),
    handlers: PatientHandlers = Depends(get_handlers),
) -> PatientResponse:
    record = await handlers.get_self(identity)
    return PatientResponse(message="Patient data retrieved successfully", data=record)


@patients_router.post("", response_model=PatientResponse, status_code=status.HTTP_201_CREATED)
async def create_patient(
    payload: PatientCreate,
    identity: Identity = Depends(get_identity),
    handlers: PatientHandlers = Depends(get_handlers),
) -> PatientResponse:
    record = await handlers.create(identity, payload)
    return PatientResponse(message="Patient created successfully", data=record)


@patients_router.get("", response_model=PatientListResponse)
async def list_patients(
    search: str | None = Query(default=None, description="Matches first name, last name or email"),
    limit: int | None = Query(default=None),
    offset: int | None = Query(default=None),
    identity: Identity = Depends(get_identity),
    handlers: PatientHandlers = Depends(get_handlers),
) -> PatientListResponse:
    page = await handlers.list(identity, search=search, limit=limit, offset=offset)
    return PatientListResponse(
        message="Patients retrieved successfully", count=page.count, data=page.items
    )


@patients_router.get("/{patient_id}", response_model=PatientResponse)
async def read_patient(
    patient_id: int,
    identity: Identity = Depends(get_identity),
    handlers: PatientHandlers = Depends(get_handlers),
) -> PatientResponse:
    record = await handlers.get(identity, patient_id)
    return PatientResponse(message="Patient retrieved successfully", data=record)


@patients_router.put("/{patient_id}", response_model=PatientResponse)
async def update_patient(
    patient_id: int,
    payload: PatientUpdate,
    identity: Identity = Depends(get_identity),
    handlers: PatientHandlers = Depends(get_handlers),
) -> PatientResponse:
    record = await handlers.update(identity, patient_id, payload)
    return PatientResponse(message="Patient updated successfully", data=record)


@patients_router.delete("/{patient_id}", response_model=PatientResponse)
async def delete_patient(
    patient_id: int,
    identity: Identity = Depends(get_identity),
    handlers: PatientHandlers = Depends(get_handlers),
) -> PatientResponse:
    record = await handlers.delete(identity, patient_id)
    return PatientResponse(message="Patient deleted successfully", data=record)


def create_app(
    settings: PatientServiceSettings | None = None,
    *,
    repository: PatientRepository | None = None,
    verifier: TokenVerifier | None = None,
    directory: IdentityDirectory | None = None,
) -> FastAPI:
    """Build the application.

    When both ``repository`` and ``verifier`` are supplied the app is wired
    immediately and the caller owns their lifecycle. Otherwise the lifespan
    builds the SQL store and Keycloak clients from ``settings`` and disposes
    of them on shutdown, or as soon as startup fails.
    """

    settings = settings or get_settings()
    configure_logging(service_name=settings.service.name, level=settings.service.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if getattr(app.state, "handlers", None) is not None:
            yield
            return

        async with AsyncExitStack() as stack:
            http_client = await stack.enter_async_context(
                httpx.AsyncClient(timeout=settings.keycloak.timeout)
            )
            store = repository
            if store is None:
                database = settings.database
                engine_options: dict[str, Any] = {"echo": database.echo}
                if not database.url.startswith("sqlite"):
                    engine_options.update(
                        pool_size=database.pool_size,
                        max_overflow=database.max_overflow,
                        pool_timeout=database.pool_timeout,
                    )
                sql_store = SqlPatientRepository(database.url, **engine_options)
                stack.push_async_callback(sql_store.close)
                if database.create_schema:
                    await sql_store.create_schema()
                store = sql_store
            _wire(
                app,
                settings,
                store,
                verifier or KeycloakTokenVerifier(settings.keycloak, http_client),
                directory or KeycloakAdminClient(settings.keycloak, http_client),
            )
            logger.info("service_started", port=settings.service.port)
            try:
                yield
            finally:
                logger.info("service_stopped")

    app = FastAPI(
        title="Patient Record Service",
        version=settings.service.version,
        lifespan=lifespan,
    )
    app.state.settings = settings
    if repository is not None and verifier is not None:
        _wire(app, settings, repository, verifier, directory)

    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(CorrelationIdMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.service.gateway_url],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_exception_handlers(app)

    app.include_router(actuator_router)
    app.include_router(internal_router)
    app.include_router(patients_router)
    return app


__all__ = [
    "LinkResponse",
    "PatientListResponse",
    "PatientResponse",
    "create_app",
    "get_handlers",
    "get_identity",
    "get_reconciler",
    "require_internal_caller",
]
