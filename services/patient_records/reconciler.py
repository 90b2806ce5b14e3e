"""Find-or-create-or-link reconciliation of external identities with patients.

Given a subject id and an email the reconciler guarantees that, afterwards,
some patient record with that email is linked, and that no record ever holds
two subject ids or shares one with another record:

* no record with the email: create one, linked at creation;
* one unlinked record: link it in place;
* one linked record: report the existing link and change nothing, even when
  the stored subject id differs from the requested one (first link wins);
* several records with the email: refuse, since picking one would be a guess.

Reconciliations for the same email are serialised within the process. Across
processes the record store arbitrates, and a lost race surfaces as
:class:`~shared.http.errors.ConflictError`. It must not be retried blindly;
the caller should re-fetch to observe the winning link.
"""

from __future__ import annotations

import asyncio
import weakref

from shared.http.errors import ConflictError, StorageFailureError, ValidationFailedError
from shared.observability.audit import record_access_audit
from shared.observability.logger import get_logger

from .models import LinkRequest, LinkResult, PatientDraft, PatientRecord
from .storage.base import PatientRepository, StorageError, SubjectConflictError

logger = get_logger(__name__)

IMPLICIT_CREATOR = "identity-link"


class IdentityLinkReconciler:
    """Reconcile identity-provider accounts with patient records."""

    def __init__(self, repository: PatientRepository) -> None:
        self._repository = repository
        self._email_locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def _lock_for(self, email: str) -> asyncio.Lock:
        lock = self._email_locks.get(email)
        if lock is None:
            lock = asyncio.Lock()
            self._email_locks[email] = lock
        return lock

    @staticmethod
    def _validate(request: LinkRequest) -> tuple[str, str]:
        missing = [
            alias
            for alias, value in (("userId", request.user_id), ("email", request.email))
            if not value
        ]
        if missing:
            logger.warning("link_request_invalid", missing=missing)
            raise ValidationFailedError("userId and email are required", fields=missing)
        return str(request.user_id), str(request.email)

    async def reconcile(self, request: LinkRequest) -> LinkResult:
        subject_id, email = self._validate(request)
        logger.info("link_request_received", subject_id=subject_id)

        try:
            async with self._lock_for(email):
                result = await self._reconcile_email(request, subject_id, email)
        except SubjectConflictError as exc:
            logger.warning("link_conflict", subject_id=subject_id, error=str(exc))
            raise ConflictError(
                "This account is already linked to a patient record; re-fetch the record instead of retrying"
            ) from exc
        except StorageError as exc:
            logger.error("link_storage_failure", subject_id=subject_id, error=str(exc))
            raise StorageFailureError("link patient record") from exc

        await record_access_audit(
            "patient_linked",
            actor_id=subject_id,
            patient_id=result.patient_id,
            metadata={"created": result.created, "alreadyLinked": result.already_linked},
        )
        return result

    async def _reconcile_email(
        self, request: LinkRequest, subject_id: str, email: str
    ) -> LinkResult:
        matches = await self._repository.find_by_email(email)
        if not matches:
            return await self._create_linked(request, subject_id, email)
        if len(matches) > 1:
            logger.warning(
                "link_ambiguous_email",
                subject_id=subject_id,
                patient_ids=[record.id for record in matches],
            )
            raise ConflictError(
                "Multiple patient records share this email; the link must be resolved manually",
                extensions={"patientIds": [record.id for record in matches]},
            )
        return await self._link_existing(matches[0], subject_id)

    async def _create_linked(
        self, request: LinkRequest, subject_id: str, email: str
    ) -> LinkResult:
        record = await self._repository.create(
            PatientDraft(
                user_id=subject_id,
                email=email,
                first_name=request.first_name,
                last_name=request.last_name,
                created_by=IMPLICIT_CREATOR,
            )
        )
        logger.info("link_created_patient", patient_id=record.id, subject_id=subject_id)
        return LinkResult(patient_id=record.id, created=True, already_linked=False)

    async def _link_existing(self, record: PatientRecord, subject_id: str) -> LinkResult:
        if record.linked:
            if record.user_id != subject_id:
                logger.warning(
                    "link_kept_existing_subject",
                    patient_id=record.id,
                    requested_subject_id=subject_id,
                )
            else:
                logger.info("link_already_present", patient_id=record.id)
            return LinkResult(patient_id=record.id, created=False, already_linked=True)

        if not await self._repository.link_subject(record.id, subject_id):
            # Someone else linked (or removed) the record between our read and write.
            raise SubjectConflictError(subject_id)

        logger.info("link_existing_patient", patient_id=record.id, subject_id=subject_id)
        return LinkResult(patient_id=record.id, created=False, already_linked=False)


__all__ = ["IMPLICIT_CREATOR", "IdentityLinkReconciler"]
