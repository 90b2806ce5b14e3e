"""Structured logging for the patient services.

Log calls go through ``structlog`` (JSON event dictionaries) and are handed to
``loguru`` sinks via the standard library bridge, so third-party loggers such
as ``uvicorn`` and ``sqlalchemy`` share the same output.
"""

from __future__ import annotations

import logging
import sys
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from types import FrameType
from typing import Any, Iterator, Mapping

import structlog
from loguru import logger as loguru_logger

__all__ = [
    "bind_caller",
    "configure_logging",
    "generate_request_id",
    "get_logger",
    "get_request_id",
    "request_context",
]

_REQUEST_ID: ContextVar[str | None] = ContextVar("request_id", default=None)
_CONFIGURED = False
_SERVICE_NAME: str | None = None

_NOISY_LOGGERS = ("httpx", "httpcore", "sqlalchemy.engine", "uvicorn.access")


def _render_line(record: Mapping[str, Any]) -> str:
    extra = record.get("extra") or {}
    service = extra.get("service", "-")
    request_id = extra.get("request_id") or "-"
    message = str(record.get("message", ""))
    # loguru runs str.format over the returned template; JSON braces must survive.
    message = message.replace("{", "{{").replace("}", "}}")
    return (
        f"{record['time'].isoformat()} | {record['level'].name:<8} | "
        f"{service} | {request_id} | {message}\n"
    )


def _level_name(level: str | int) -> str:
    if isinstance(level, int):
        name = logging.getLevelName(level)
    else:
        name = level.strip().upper()
    if not isinstance(name, str) or not isinstance(logging.getLevelName(name), int):
        raise ValueError(f"Unknown log level: {level!r}")
    return name


class _InterceptHandler(logging.Handler):
    """Forward standard ``logging`` records into loguru."""

    def emit(self, record: logging.LogRecord) -> None:  # pragma: no cover - bridge
        try:
            level: str | int = loguru_logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame: FrameType | None = logging.currentframe()
        depth = 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        bound = loguru_logger.bind(logger=record.name)
        request_id = _REQUEST_ID.get()
        if request_id:
            bound = bound.bind(request_id=request_id)
        bound.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def configure_logging(*, service_name: str | None = None, level: str | int = "INFO") -> None:
    """Install the structlog/loguru pipeline once per process.

    Repeated calls only refresh the ``service`` field attached to every entry.
    """

    global _CONFIGURED, _SERVICE_NAME

    level_name = _level_name(level)

    if not _CONFIGURED:
        loguru_logger.remove()
        loguru_logger.add(
            sys.stdout,
            level=level_name,
            format=_render_line,
            colorize=False,
            enqueue=True,
            backtrace=False,
            diagnose=False,
        )
        logging.basicConfig(handlers=[_InterceptHandler()], level=level_name, force=True)
        logging.captureWarnings(True)
        for name in _NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)

        structlog.configure(
            processors=[
                structlog.contextvars.merge_contextvars,
                structlog.processors.add_log_level,
                structlog.processors.TimeStamper(fmt="iso", utc=True),
                structlog.processors.StackInfoRenderer(),
                structlog.processors.format_exc_info,
                structlog.processors.JSONRenderer(),
            ],
            context_class=dict,
            logger_factory=structlog.stdlib.LoggerFactory(),
            wrapper_class=structlog.stdlib.BoundLogger,
            cache_logger_on_first_use=True,
        )
        _CONFIGURED = True

    if service_name:
        _SERVICE_NAME = service_name
        loguru_logger.configure(extra={"service": service_name})
        structlog.contextvars.bind_contextvars(service=service_name)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Return a structlog logger, optionally named."""

    return structlog.get_logger(name) if name else structlog.get_logger()


def generate_request_id() -> str:
    return uuid.uuid4().hex


def get_request_id() -> str | None:
    """Return the request id bound to the running context, if any."""

    return _REQUEST_ID.get()


def bind_caller(*, subject_id: str | None, username: str | None) -> None:
    """Attach the authenticated caller to every log entry of the current request."""

    values = {"caller_id": subject_id, "caller": username}
    structlog.contextvars.bind_contextvars(
        **{key: value for key, value in values.items() if value}
    )


@contextmanager
def request_context(request_id: str | None = None, **extra: Any) -> Iterator[str]:
    """Bind a request id and ``extra`` context for the duration of the block.

    Context that was bound before entering is restored on exit, including any
    caller bound through :func:`bind_caller` inside the block being dropped.
    """

    extra.pop("request_id", None)
    rid = request_id or generate_request_id()
    token = _REQUEST_ID.set(rid)

    values = dict(extra)
    if _SERVICE_NAME:
        values.setdefault("service", _SERVICE_NAME)

    previous = structlog.contextvars.get_contextvars()
    structlog.contextvars.bind_contextvars(request_id=rid, **values)

    try:
        with loguru_logger.contextualize(request_id=rid, **extra):
            yield rid
    finally:
        structlog.contextvars.clear_contextvars()
        if previous:
            structlog.contextvars.bind_contextvars(**previous)
        _REQUEST_ID.reset(token)
