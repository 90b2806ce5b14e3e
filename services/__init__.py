"""Service packages of the patient record platform."""

__all__ = ["patient_records"]
