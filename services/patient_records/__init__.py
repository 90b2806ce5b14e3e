"""Patient record service: identity linking and role-gated patient CRUD."""

SERVICE_NAME = "patient-service"

__all__ = ["SERVICE_NAME"]
