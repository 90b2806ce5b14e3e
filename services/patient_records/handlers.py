"""Role-gated patient operations, independent of the HTTP layer."""

from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator

from shared.http.errors import (
    ConflictError,
    RecordNotFoundError,
    StorageFailureError,
    UpstreamUnavailableError,
    ValidationFailedError,
)
from shared.observability.audit import record_access_audit
from shared.observability.logger import get_logger

from .authz import require_role
from .config import AccessSettings
from .identity import Identity
from .keycloak import IdentityDirectory
from .models import PatientCreate, PatientDraft, PatientPage, PatientRecord, PatientUpdate
from .storage.base import PatientRepository, StorageError, SubjectConflictError

logger = get_logger(__name__)

_REQUIRED_CREATE_FIELDS = (
    ("firstName", "first_name"),
    ("lastName", "last_name"),
    ("dateOfBirth", "date_of_birth"),
    ("email", "email"),
)


@contextmanager
def _storage_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except SubjectConflictError as exc:
        raise ConflictError("A patient with this userId already exists") from exc
    except StorageError as exc:
        raise StorageFailureError(operation) from exc


def _not_found(patient_id: int) -> RecordNotFoundError:
    return RecordNotFoundError(f"Patient with ID {patient_id} not found", patient_id=patient_id)


class PatientHandlers:
    """CRUD over patient records for operators plus self-service reads.

    Every method takes the caller's :class:`Identity` and checks its role before
    the record store is touched.
    """

    def __init__(
        self,
        repository: PatientRepository,
        directory: IdentityDirectory | None,
        access: AccessSettings,
    ) -> None:
        self._repository = repository
        self._directory = directory
        self._access = access

    async def _require_operator(self, identity: Identity, action: str) -> None:
        await require_role(
            identity,
            self._access.operator_role,
            action=action,
            denial_message=f"This operation requires {self._access.operator_role} privileges",
        )

    async def _lookup_subject_id(self, email: str) -> str | None:
        if self._directory is None:
            return None
        try:
            user = await self._directory.find_by_email(email)
        except (UpstreamUnavailableError, ValueError) as exc:
            logger.warning("directory_lookup_failed", error=str(exc))
            return None
        return user.id if user is not None else None

    async def create(self, identity: Identity, payload: PatientCreate) -> PatientRecord:
        await self._require_operator(identity, "patient.create")

        missing = [alias for alias, name in _REQUIRED_CREATE_FIELDS if getattr(payload, name) is None]
        if missing:
            raise ValidationFailedError(
                "firstName, lastName, dateOfBirth, and email are required",
                fields=missing,
            )

        subject_id = await self._lookup_subject_id(str(payload.email))
        draft = PatientDraft(
            **payload.model_dump(),
            user_id=subject_id,
            created_by=identity.username,
        )
        with _storage_errors("create patient"):
            record = await self._repository.create(draft)

        logger.info(
            "patient_created",
            patient_id=record.id,
            doctor_id=identity.subject_id,
            linked=record.linked,
        )
        await record_access_audit(
            "patient_created",
            actor=identity.username,
            actor_id=identity.subject_id,
            patient_id=record.id,
            metadata={"linked": record.linked},
        )
        return record

    def _clamp_page(self, limit: int | None, offset: int | None) -> tuple[int, int]:
        resolved_limit = self._access.default_list_limit if limit is None else limit
        resolved_limit = max(1, min(resolved_limit, self._access.max_list_limit))
        return resolved_limit, max(0, offset or 0)

    async def list(
        self,
        identity: Identity,
        *,
        search: str | None = None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> PatientPage:
        await self._require_operator(identity, "patient.list")
        resolved_limit, resolved_offset = self._clamp_page(limit, offset)
        needle = search.strip() if search else None

        with _storage_errors("retrieve patients"):
            page = await self._repository.find_page(
                search=needle or None, limit=resolved_limit, offset=resolved_offset
            )

        logger.info(
            "patients_listed",
            total=page.count,
            returned=len(page.items),
            doctor_id=identity.subject_id,
        )
        return page

    async def get(self, identity: Identity, patient_id: int) -> PatientRecord:
        await self._require_operator(identity, "patient.read")
        with _storage_errors("retrieve patient"):
            record = await self._repository.find_by_id(patient_id)
        if record is None:
            raise _not_found(patient_id)

        await record_access_audit(
            "patient_read",
            actor=identity.username,
            actor_id=identity.subject_id,
            patient_id=record.id,
        )
        return record

    async def get_self(self, identity: Identity) -> PatientRecord:
        await require_role(
            identity,
            self._access.subject_role,
            action="patient.read_self",
            denial_message="This endpoint is only accessible to patients",
        )
        with _storage_errors("retrieve patient data"):
            record = await self._repository.find_by_subject_id(identity.subject_id)
        if record is None:
            raise RecordNotFoundError(
                "No patient record found for your account. Please contact your healthcare provider."
            )

        logger.info("patient_self_access", patient_id=record.id)
        await record_access_audit(
            "patient_self_read",
            actor=identity.username,
            actor_id=identity.subject_id,
            patient_id=record.id,
        )
        return record

    async def update(
        self, identity: Identity, patient_id: int, payload: PatientUpdate
    ) -> PatientRecord:
        await self._require_operator(identity, "patient.update")
        changes = payload.changes()
        with _storage_errors("update patient"):
            record = await self._repository.update(
                patient_id, changes, updated_by=identity.username
            )
        if record is None:
            raise _not_found(patient_id)

        logger.info(
            "patient_updated",
            patient_id=record.id,
            doctor_id=identity.subject_id,
            fields=sorted(changes),
        )
        await record_access_audit(
            "patient_updated",
            actor=identity.username,
            actor_id=identity.subject_id,
            patient_id=record.id,
            metadata={"fields": sorted(changes)},
        )
        return record

    async def delete(self, identity: Identity, patient_id: int) -> PatientRecord:
        await self._require_operator(identity, "patient.delete")
        with _storage_errors("delete patient"):
            record = await self._repository.delete(patient_id)
        if record is None:
            raise _not_found(patient_id)

        logger.info("patient_deleted", patient_id=record.id, doctor_id=identity.subject_id)
        await record_access_audit(
            "patient_deleted",
            actor=identity.username,
            actor_id=identity.subject_id,
            patient_id=record.id,
        )
        return record


__all__ = ["PatientHandlers"]
