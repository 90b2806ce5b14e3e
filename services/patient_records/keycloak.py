"""Keycloak admin API lookups used to pre-link new patient records."""

from __future__ import annotations

from typing import Any, Protocol

import httpx
from fastapi import status
from pydantic import BaseModel, ConfigDict

from shared.http.errors import UpstreamUnavailableError
from shared.observability.logger import get_logger

from .config import KeycloakSettings
from .resilience import RetryPolicy, call_async_with_retry

logger = get_logger(__name__)

UPSTREAM_NAME = "keycloak"


class DirectoryUser(BaseModel):
    """The subset of a Keycloak user representation the service relies on."""

    model_config = ConfigDict(extra="ignore")

    id: str
    username: str | None = None
    email: str | None = None


class IdentityDirectory(Protocol):
    """Best-effort lookup of identity-provider accounts by email."""

    async def find_by_email(self, email: str) -> DirectoryUser | None:  # pragma: no cover
        ...


class _TransientUpstreamError(RuntimeError):
    """A failure worth retrying (network error or 5xx)."""


class KeycloakAdminClient:
    """Thin client over the Keycloak admin REST API.

    Each lookup obtains a fresh admin token with the password grant on the
    admin realm, then searches users of the service realm by exact email.
    Transport failures and 5xx responses are retried per ``retry_policy``;
    anything still failing surfaces as :class:`UpstreamUnavailableError`.
    """

    def __init__(
        self,
        settings: KeycloakSettings,
        http_client: httpx.AsyncClient,
        *,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self._settings = settings
        self._http = http_client
        self._retry_policy = retry_policy or RetryPolicy(
            attempts=settings.retry_attempts,
            retry_exceptions=(_TransientUpstreamError,),
        )

    @property
    def _base_url(self) -> str:
        return self._settings.auth_server_url.rstrip("/")

    async def _send(self, request: httpx.Request) -> httpx.Response:
        try:
            response = await self._http.send(request)
        except httpx.HTTPError as exc:
            raise _TransientUpstreamError(str(exc) or exc.__class__.__name__) from exc
        if response.status_code >= status.HTTP_500_INTERNAL_SERVER_ERROR:
            raise _TransientUpstreamError(f"status {response.status_code}")
        return response

    async def _request(self, request: httpx.Request) -> httpx.Response:
        try:
            response = await call_async_with_retry(
                self._send, request, policy=self._retry_policy
            )
        except _TransientUpstreamError as exc:
            logger.warning("keycloak_request_failed", url=str(request.url), error=str(exc))
            raise UpstreamUnavailableError(UPSTREAM_NAME, reason=str(exc)) from exc
        if response.is_error:
            logger.warning(
                "keycloak_request_rejected",
                url=str(request.url),
                status_code=response.status_code,
            )
            raise UpstreamUnavailableError(
                UPSTREAM_NAME, reason=f"status {response.status_code}"
            )
        return response

    async def _admin_token(self) -> str:
        settings = self._settings
        if not settings.admin_username or settings.admin_password is None:
            raise UpstreamUnavailableError(UPSTREAM_NAME, reason="admin credentials not configured")

        request = self._http.build_request(
            "POST",
            f"{self._base_url}/realms/{settings.admin_realm}/protocol/openid-connect/token",
            data={
                "client_id": settings.admin_client_id,
                "username": settings.admin_username,
                "password": settings.admin_password.get_secret_value(),
                "grant_type": "password",
            },
            timeout=settings.timeout,
        )
        payload: Any = (await self._request(request)).json()
        token = payload.get("access_token") if isinstance(payload, dict) else None
        if not token:
            raise UpstreamUnavailableError(UPSTREAM_NAME, reason="token response missing access_token")
        return str(token)

    async def find_by_email(self, email: str) -> DirectoryUser | None:
        """Return the first realm user registered with ``email``, if any."""

        token = await self._admin_token()
        request = self._http.build_request(
            "GET",
            f"{self._base_url}/admin/realms/{self._settings.realm}/users",
            params={"email": email, "exact": "true"},
            headers={"Authorization": f"Bearer {token}"},
            timeout=self._settings.timeout,
        )
        users: Any = (await self._request(request)).json()
        if not isinstance(users, list) or not users:
            return None
        return DirectoryUser.model_validate(users[0])


__all__ = [
    "DirectoryUser",
    "IdentityDirectory",
    "KeycloakAdminClient",
]
