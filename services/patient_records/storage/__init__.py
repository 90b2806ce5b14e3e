"""Record store backends for the patient record service."""

from .base import PatientRepository, StorageError, SubjectConflictError
from .memory import InMemoryPatientRepository
from .sql import SqlPatientRepository

__all__ = [
    "InMemoryPatientRepository",
    "PatientRepository",
    "SqlPatientRepository",
    "StorageError",
    "SubjectConflictError",
]
