"""Record store contract shared by the in-memory and SQL backends."""

from __future__ import annotations

from typing import Any, Mapping, Protocol

from ..models import PatientDraft, PatientPage, PatientRecord


class StorageError(RuntimeError):
    """Base error for record store operations."""


class SubjectConflictError(StorageError):
    """Raised when a write would give two records the same subject id."""

    def __init__(self, subject_id: str | None, *, original: Exception | None = None) -> None:
        super().__init__(f"Subject id '{subject_id}' is already linked to a patient record.")
        self.subject_id = subject_id
        self.original = original


class PatientRepository(Protocol):
    """Operations the service needs from patient storage.

    ``create``, ``update`` and ``link_subject`` enforce subject-id uniqueness and
    raise :class:`SubjectConflictError` when it would be violated.
    """

    async def find_by_id(self, patient_id: int) -> PatientRecord | None:
        ...

    async def find_by_email(self, email: str) -> list[PatientRecord]:
        """Return every record with exactly ``email``, oldest first."""

    async def find_by_subject_id(self, subject_id: str) -> PatientRecord | None:
        ...

    async def create(self, draft: PatientDraft) -> PatientRecord:
        ...

    async def update(
        self, patient_id: int, changes: Mapping[str, Any], *, updated_by: str | None
    ) -> PatientRecord | None:
        """Apply ``changes`` and return the new state, or ``None`` if absent."""

    async def link_subject(self, patient_id: int, subject_id: str) -> bool:
        """Set the subject id only if the record is still unlinked.

        Returns ``False`` when the record is gone or was linked in the meantime.
        """

    async def delete(self, patient_id: int) -> PatientRecord | None:
        """Remove the record and return its prior state."""

    async def find_page(
        self, *, search: str | None, limit: int, offset: int
    ) -> PatientPage:
        """Case-insensitive substring match on first name, last name or email.

        Ordered by last name then first name.
        """

    async def ping(self) -> None:
        ...

    async def close(self) -> None:
        ...


__all__ = ["PatientRepository", "StorageError", "SubjectConflictError"]
