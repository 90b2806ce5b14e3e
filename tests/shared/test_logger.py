"""Tests for the shared observability logging helpers."""

from __future__ import annotations

from datetime import datetime, timezone
from types import SimpleNamespace
from typing import Iterator

import pytest
import structlog

from shared.observability.logger import (
    _render_line,
    bind_caller,
    configure_logging,
    generate_request_id,
    get_request_id,
    request_context,
)


@pytest.fixture(autouse=True)
def _clean_context() -> Iterator[None]:
    structlog.contextvars.clear_contextvars()
    yield
    structlog.contextvars.clear_contextvars()


def test_request_context_binds_and_restores() -> None:
    structlog.contextvars.bind_contextvars(outer="kept")

    with request_context("req-1") as request_id:
        bind_caller(subject_id="abc", username="jane")
        context = structlog.contextvars.get_contextvars()

        assert request_id == "req-1"
        assert get_request_id() == "req-1"
        assert context["request_id"] == "req-1"
        assert context["caller_id"] == "abc"
        assert context["caller"] == "jane"
        assert context["outer"] == "kept"

    assert get_request_id() is None
    assert structlog.contextvars.get_contextvars() == {"outer": "kept"}


def test_request_context_generates_id() -> None:
    with request_context() as request_id:
        assert len(request_id) == 32
        assert get_request_id() == request_id

    assert generate_request_id() != generate_request_id()


def test_bind_caller_skips_unknown_values() -> None:
    bind_caller(subject_id="abc", username=None)

    assert structlog.contextvars.get_contextvars() == {"caller_id": "abc"}


def test_configure_logging_rejects_unknown_level() -> None:
    with pytest.raises(ValueError):
        configure_logging(level="CHATTY")


def test_configure_logging_is_repeatable() -> None:
    configure_logging(service_name="patient-service", level="debug")
    configure_logging(service_name="patient-service", level="INFO")

    assert structlog.contextvars.get_contextvars()["service"] == "patient-service"


def test_render_line_keeps_json_braces() -> None:
    record = {
        "time": datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc),
        "level": SimpleNamespace(name="INFO"),
        "message": '{"event": "patient_created"}',
        "extra": {"service": "patient-service", "request_id": "req-1"},
    }

    line = _render_line(record)

    assert "| patient-service | req-1 |" in line
    assert '{{"event": "patient_created"}}' in line
    assert line.endswith("\n")
