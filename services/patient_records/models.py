"""Pydantic models for patient records and the identity-link exchange."""

from __future__ import annotations

import re
from datetime import date, datetime
from enum import Enum
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

# Fields an operator may change through a partial update.
MUTABLE_FIELDS = (
    "first_name",
    "last_name",
    "date_of_birth",
    "gender",
    "email",
    "phone",
    "address",
)


def to_camel(value: str) -> str:
    """Convert ``snake_case`` ``value`` into ``camelCase`` for JSON aliases."""

    first, *rest = value.split("_")
    return first + "".join(token.capitalize() for token in rest)


def _strip_or_none(value: Any) -> Any:
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return value


class CamelModel(BaseModel):
    """Base model applying camelCase aliases and ignoring unknown fields."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


class Gender(str, Enum):
    MALE = "male"
    FEMALE = "female"
    OTHER = "other"


class _ContactFields(CamelModel):
    """Demographic and contact fields shared by drafts and requests."""

    first_name: Optional[str] = None
    last_name: Optional[str] = None
    date_of_birth: Optional[date] = None
    gender: Optional[Gender] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None

    @field_validator("first_name", "last_name", "email", "phone", "address", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        return _strip_or_none(value)

    @field_validator("gender", mode="before")
    @classmethod
    def _normalize_gender(cls, value: Any) -> Any:
        value = _strip_or_none(value)
        return value.lower() if isinstance(value, str) else value

    @field_validator("email")
    @classmethod
    def _validate_email(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not _EMAIL_PATTERN.match(value):
            raise ValueError("email must be a valid email address")
        return value


class PatientCreate(_ContactFields):
    """Operator-supplied payload for creating a patient record.

    Required fields are checked by the create handler so that a missing field is
    reported the same way regardless of transport.
    """


class PatientUpdate(_ContactFields):
    """Partial update; fields left out (or blank) keep their stored value."""

    def changes(self) -> dict[str, Any]:
        supplied = self.model_dump(exclude_unset=True)
        return {
            key: value
            for key, value in supplied.items()
            if key in MUTABLE_FIELDS and value is not None
        }


class PatientDraft(_ContactFields):
    """Everything the record store needs to insert a new row."""

    user_id: Optional[str] = None
    created_by: Optional[str] = None


class PatientRecord(CamelModel):
    """A stored patient record. ``user_id`` holds the linked subject id."""

    id: int
    user_id: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    date_of_birth: Optional[date] = None
    gender: Optional[Gender] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    created_by: Optional[str] = None
    updated_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def linked(self) -> bool:
        return self.user_id is not None


class PatientPage(CamelModel):
    """One page of a filtered listing plus the total number of matches."""

    count: int = Field(ge=0)
    items: list[PatientRecord] = Field(default_factory=list)


class LinkRequest(CamelModel):
    """Identity-link payload sent by the identity provider integration."""

    user_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("userId", "subjectId", "user_id"),
    )
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None

    @field_validator("user_id", "email", "first_name", "last_name", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        return _strip_or_none(value)


class LinkResult(CamelModel):
    """Outcome of reconciling an external identity with a patient record."""

    patient_id: int
    created: bool
    already_linked: bool

    @property
    def message(self) -> str:
        if self.created:
            return "Patient record created and linked successfully"
        if self.already_linked:
            return "Patient record already linked"
        return "Patient record linked successfully"


__all__ = [
    "CamelModel",
    "Gender",
    "LinkRequest",
    "LinkResult",
    "MUTABLE_FIELDS",
    "PatientCreate",
    "PatientDraft",
    "PatientPage",
    "PatientRecord",
    "PatientUpdate",
    "to_camel",
]
