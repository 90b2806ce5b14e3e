"""SQLAlchemy (asyncio) record store over the ``patients`` table."""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Mapping

from sqlalchemy import (
    Column,
    Date,
    DateTime,
    Enum,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    delete,
    func,
    insert,
    or_,
    select,
    text,
    update,
)
from sqlalchemy.engine import RowMapping
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine

from shared.observability.logger import get_logger

from ..models import MUTABLE_FIELDS, PatientDraft, PatientPage, PatientRecord
from .base import StorageError, SubjectConflictError

logger = get_logger(__name__)

metadata = MetaData()

patients = Table(
    "patients",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(255), nullable=True, unique=True, comment="Identity provider subject id"),
    Column("first_name", String(255), nullable=True),
    Column("last_name", String(255), nullable=True),
    Column("date_of_birth", Date, nullable=True),
    Column("gender", Enum("male", "female", "other", name="patient_gender"), nullable=True),
    Column("email", String(255), nullable=True),
    Column("phone", String(64), nullable=True),
    Column("address", Text, nullable=True),
    Column("created_by", String(255), nullable=True),
    Column("updated_by", String(255), nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    Index("ix_patients_email", "email"),
    Index("ix_patients_name", "last_name", "first_name"),
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_record(row: RowMapping) -> PatientRecord:
    return PatientRecord.model_validate(dict(row))


def _column_values(values: Mapping[str, Any]) -> dict[str, Any]:
    """Convert enum members to their stored string form."""

    return {
        key: getattr(value, "value", value) if key == "gender" else value
        for key, value in values.items()
    }


class SqlPatientRepository:
    """Record store backed by any SQLAlchemy async dialect.

    Subject-id uniqueness is enforced by the ``user_id`` unique constraint, so
    the guarantee holds across service instances sharing the database.
    """

    def __init__(
        self,
        database_url: str | None = None,
        *,
        engine: AsyncEngine | None = None,
        **engine_options: Any,
    ) -> None:
        if engine is None:
            if not database_url:
                raise ValueError("database_url is required when no engine is supplied")
            engine = create_async_engine(database_url, **engine_options)
        self._engine = engine

    @property
    def engine(self) -> AsyncEngine:
        return self._engine

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncConnection]:
        """Provide a transactional connection scope with storage error mapping."""

        try:
            async with self._engine.begin() as connection:
                yield connection
        except IntegrityError as exc:
            raise self._integrity_error(exc) from exc
        except SQLAlchemyError as exc:
            raise StorageError(f"Record store operation failed: {exc.__class__.__name__}") from exc

    @staticmethod
    def _integrity_error(exc: IntegrityError) -> StorageError:
        params = exc.params if isinstance(exc.params, Mapping) else {}
        message = str(exc.orig).lower()
        if "user_id" in message or "patients_user_id" in message:
            return SubjectConflictError(params.get("user_id"), original=exc)
        return StorageError("Database constraint violated")

    async def create_schema(self) -> None:
        """Create the ``patients`` table and indexes when missing."""

        async with self.transaction() as connection:
            await connection.run_sync(metadata.create_all)
        logger.info("database_synchronized", table=patients.name)

    async def ping(self) -> None:
        async with self.transaction() as connection:
            await connection.execute(text("SELECT 1"))

    async def close(self) -> None:
        await self._engine.dispose()

    async def _fetch_one(self, statement: Any) -> PatientRecord | None:
        async with self.transaction() as connection:
            row = (await connection.execute(statement)).mappings().first()
        return _to_record(row) if row is not None else None

    async def find_by_id(self, patient_id: int) -> PatientRecord | None:
        return await self._fetch_one(select(patients).where(patients.c.id == patient_id))

    async def find_by_email(self, email: str) -> list[PatientRecord]:
        statement = select(patients).where(patients.c.email == email).order_by(patients.c.id)
        async with self.transaction() as connection:
            rows = (await connection.execute(statement)).mappings().all()
        return [_to_record(row) for row in rows]

    async def find_by_subject_id(self, subject_id: str) -> PatientRecord | None:
        return await self._fetch_one(select(patients).where(patients.c.user_id == subject_id))

    async def create(self, draft: PatientDraft) -> PatientRecord:
        now = _utcnow()
        values = _column_values(draft.model_dump())
        statement = (
            insert(patients)
            .values(**values, created_at=now, updated_at=now)
            .returning(*patients.c)
        )
        async with self.transaction() as connection:
            row = (await connection.execute(statement)).mappings().one()
        return _to_record(row)

    async def update(
        self, patient_id: int, changes: Mapping[str, Any], *, updated_by: str | None
    ) -> PatientRecord | None:
        values = _column_values(
            {key: value for key, value in changes.items() if key in MUTABLE_FIELDS}
        )
        statement = (
            update(patients)
            .where(patients.c.id == patient_id)
            .values(**values, updated_by=updated_by, updated_at=_utcnow())
            .returning(*patients.c)
        )
        async with self.transaction() as connection:
            row = (await connection.execute(statement)).mappings().first()
        return _to_record(row) if row is not None else None

    async def link_subject(self, patient_id: int, subject_id: str) -> bool:
        # The IS NULL guard makes the link a compare-and-set at row level.
        statement = (
            update(patients)
            .where(patients.c.id == patient_id, patients.c.user_id.is_(None))
            .values(user_id=subject_id, updated_at=_utcnow())
        )
        async with self.transaction() as connection:
            result = await connection.execute(statement)
        return result.rowcount == 1

    async def delete(self, patient_id: int) -> PatientRecord | None:
        async with self.transaction() as connection:
            row = (
                await connection.execute(
                    select(patients).where(patients.c.id == patient_id).with_for_update()
                )
            ).mappings().first()
            if row is None:
                return None
            await connection.execute(delete(patients).where(patients.c.id == patient_id))
        return _to_record(row)

    async def find_page(
        self, *, search: str | None, limit: int, offset: int
    ) -> PatientPage:
        count_statement = select(func.count()).select_from(patients)
        page_statement = select(patients)
        if search:
            # Wildcard characters in the search text match literally.
            matches = or_(
                patients.c.first_name.icontains(search, autoescape=True),
                patients.c.last_name.icontains(search, autoescape=True),
                patients.c.email.icontains(search, autoescape=True),
            )
            count_statement = count_statement.where(matches)
            page_statement = page_statement.where(matches)

        page_statement = (
            page_statement.order_by(
                patients.c.last_name.asc().nulls_first(),
                patients.c.first_name.asc().nulls_first(),
                patients.c.id.asc(),
            )
            .limit(limit)
            .offset(offset)
        )
        async with self.transaction() as connection:
            total = (await connection.execute(count_statement)).scalar_one()
            rows = (await connection.execute(page_statement)).mappings().all()
        return PatientPage(count=total, items=[_to_record(row) for row in rows])


__all__ = ["SqlPatientRepository", "metadata", "patients"]
