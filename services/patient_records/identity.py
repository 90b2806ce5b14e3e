"""Caller identity: token verification and claim normalisation."""

from __future__ import annotations

import asyncio
import time
from typing import Any, Mapping, Protocol

import httpx
import jwt
from pydantic import BaseModel, ConfigDict, Field

from shared.http.errors import UnauthenticatedError
from shared.observability.logger import get_logger

from .config import KeycloakSettings

logger = get_logger(__name__)


class Identity(BaseModel):
    """The authenticated caller of a single request."""

    model_config = ConfigDict(frozen=True)

    subject_id: str
    username: str | None = None
    email: str | None = None
    roles: frozenset[str] = Field(default_factory=frozenset)


def _extract_roles(claims: Mapping[str, Any]) -> frozenset[str]:
    realm_access = claims.get("realm_access")
    if not isinstance(realm_access, Mapping):
        return frozenset()
    roles = realm_access.get("roles")
    if not isinstance(roles, (list, tuple, set, frozenset)):
        return frozenset()
    return frozenset(role for role in roles if isinstance(role, str) and role)


def resolve_identity(claims: Mapping[str, Any] | None) -> Identity:
    """Map verified access-token claims onto an :class:`Identity`.

    A missing claim set or ``sub`` means the request is unauthenticated. An
    absent role claim only means the caller holds no roles.
    """

    if not claims:
        raise UnauthenticatedError("Authentication required")
    subject_id = claims.get("sub")
    if not isinstance(subject_id, str) or not subject_id.strip():
        raise UnauthenticatedError("Access token does not identify a subject")

    username = claims.get("preferred_username")
    email = claims.get("email")
    return Identity(
        subject_id=subject_id,
        username=username if isinstance(username, str) else None,
        email=email if isinstance(email, str) else None,
        roles=_extract_roles(claims),
    )


class TokenVerifier(Protocol):
    """Verifies a bearer token and returns its claims."""

    async def verify(self, token: str) -> Mapping[str, Any]:  # pragma: no cover - interface
        ...


class KeycloakTokenVerifier:
    """Verify realm-issued JWTs against the realm's published signing keys.

    Keys are fetched lazily and refreshed when a token names an unknown key id
    (Keycloak key rotation). Such refreshes happen at most once per
    ``jwks_refresh_interval`` seconds.
    """

    def __init__(self, settings: KeycloakSettings, http_client: httpx.AsyncClient) -> None:
        self._settings = settings
        self._http = http_client
        self._keys: dict[str, jwt.PyJWK] = {}
        self._lock = asyncio.Lock()
        self._refreshed_at: float | None = None

    async def _refresh_keys(self) -> None:
        try:
            response = await self._http.get(self._settings.jwks_url)
            response.raise_for_status()
            key_set = jwt.PyJWKSet.from_dict(response.json())
        except (httpx.HTTPError, ValueError, jwt.PyJWTError) as exc:
            logger.warning("jwks_refresh_failed", url=self._settings.jwks_url, error=str(exc))
            raise UnauthenticatedError("Unable to verify access token") from exc
        self._keys = {key.key_id: key for key in key_set.keys if key.key_id}
        self._refreshed_at = time.monotonic()

    def _refresh_due(self) -> bool:
        if not self._keys or self._refreshed_at is None:
            return True
        elapsed = time.monotonic() - self._refreshed_at
        return elapsed >= self._settings.jwks_refresh_interval

    async def _signing_key(self, key_id: str) -> jwt.PyJWK:
        if key_id not in self._keys:
            async with self._lock:
                if key_id not in self._keys and self._refresh_due():
                    await self._refresh_keys()
        try:
            return self._keys[key_id]
        except KeyError:
            raise UnauthenticatedError("Access token signed with an unknown key") from None

    async def verify(self, token: str) -> Mapping[str, Any]:
        try:
            header = jwt.get_unverified_header(token)
        except jwt.PyJWTError as exc:
            raise UnauthenticatedError("Malformed access token") from exc

        key_id = header.get("kid")
        if not key_id:
            raise UnauthenticatedError("Access token does not name a signing key")
        signing_key = await self._signing_key(key_id)

        audience = self._settings.audience
        try:
            return jwt.decode(
                token,
                key=signing_key.key,
                algorithms=self._settings.algorithms,
                issuer=self._settings.issuer,
                audience=audience,
                options={"verify_aud": audience is not None, "require": ["exp", "sub"]},
            )
        except jwt.ExpiredSignatureError as exc:
            raise UnauthenticatedError("Access token has expired") from exc
        except jwt.PyJWTError as exc:
            logger.info("token_rejected", reason=exc.__class__.__name__)
            raise UnauthenticatedError("Invalid access token") from exc


__all__ = [
    "Identity",
    "KeycloakTokenVerifier",
    "TokenVerifier",
    "resolve_identity",
]
