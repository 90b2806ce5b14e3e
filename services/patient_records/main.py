"""Process entry point for the patient record service."""

from __future__ import annotations

from .app import create_app
from .config import get_settings

app = create_app()


def run() -> None:  # pragma: no cover - process entry point
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "services.patient_records.main:app",
        host=settings.service.host,
        port=settings.service.port,
        log_config=None,
    )


if __name__ == "__main__":  # pragma: no cover
    run()
