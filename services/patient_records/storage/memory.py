"""In-process record store used for tests and local development."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime, timezone
from typing import Any, Mapping

from ..models import MUTABLE_FIELDS, PatientDraft, PatientPage, PatientRecord
from .base import SubjectConflictError


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _sort_key(record: PatientRecord) -> tuple[str, str, int]:
    # Missing names sort first, matching NULLS FIRST in the SQL store.
    return (record.last_name or "", record.first_name or "", record.id)


class InMemoryPatientRepository:
    """Dictionary-backed :class:`PatientRepository` with sequential ids.

    Each operation completes without awaiting, so under a single event loop
    every call is atomic with respect to the others.
    """

    def __init__(self, records: Iterable[PatientRecord] | None = None) -> None:
        self._records: dict[int, PatientRecord] = {}
        self._next_id = 1
        for record in records or ():
            self._ensure_subject_free(record.user_id)
            self._records[record.id] = record
            self._next_id = max(self._next_id, record.id + 1)

    def __len__(self) -> int:
        return len(self._records)

    def _ensure_subject_free(self, subject_id: str | None, *, ignore: int | None = None) -> None:
        if subject_id is None:
            return
        for record in self._records.values():
            if record.id != ignore and record.user_id == subject_id:
                raise SubjectConflictError(subject_id)

    async def find_by_id(self, patient_id: int) -> PatientRecord | None:
        return self._records.get(patient_id)

    async def find_by_email(self, email: str) -> list[PatientRecord]:
        matches = [record for record in self._records.values() if record.email == email]
        return sorted(matches, key=lambda record: record.id)

    async def find_by_subject_id(self, subject_id: str) -> PatientRecord | None:
        for record in self._records.values():
            if record.user_id == subject_id:
                return record
        return None

    async def create(self, draft: PatientDraft) -> PatientRecord:
        self._ensure_subject_free(draft.user_id)
        now = _utcnow()
        record = PatientRecord(
            id=self._next_id,
            **draft.model_dump(),
            created_at=now,
            updated_at=now,
        )
        self._records[record.id] = record
        self._next_id += 1
        return record

    async def update(
        self, patient_id: int, changes: Mapping[str, Any], *, updated_by: str | None
    ) -> PatientRecord | None:
        current = self._records.get(patient_id)
        if current is None:
            return None
        values = {key: value for key, value in changes.items() if key in MUTABLE_FIELDS}
        updated = current.model_copy(
            update={**values, "updated_by": updated_by, "updated_at": _utcnow()}
        )
        self._records[patient_id] = updated
        return updated

    async def link_subject(self, patient_id: int, subject_id: str) -> bool:
        current = self._records.get(patient_id)
        if current is None or current.user_id is not None:
            return False
        self._ensure_subject_free(subject_id, ignore=patient_id)
        self._records[patient_id] = current.model_copy(
            update={"user_id": subject_id, "updated_at": _utcnow()}
        )
        return True

    async def delete(self, patient_id: int) -> PatientRecord | None:
        return self._records.pop(patient_id, None)

    async def find_page(
        self, *, search: str | None, limit: int, offset: int
    ) -> PatientPage:
        needle = search.lower() if search else None
        matches = [
            record
            for record in self._records.values()
            if needle is None
            or any(
                needle in (value or "").lower()
                for value in (record.first_name, record.last_name, record.email)
            )
        ]
        matches.sort(key=_sort_key)
        return PatientPage(count=len(matches), items=matches[offset : offset + limit])

    async def ping(self) -> None:
        return None

    async def close(self) -> None:
        return None


__all__ = ["InMemoryPatientRepository"]
