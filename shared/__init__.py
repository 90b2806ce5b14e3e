"""Shared building blocks for the patient services."""
