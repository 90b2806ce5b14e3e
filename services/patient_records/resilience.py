"""Retry helper for outbound calls to the identity provider."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff; only ``retry_exceptions`` are retried."""

    attempts: int = 2
    initial_delay: float = 0.1
    max_delay: float = 1.0
    retry_exceptions: tuple[type[BaseException], ...] = (Exception,)


async def call_async_with_retry(
    func: Callable[..., Awaitable[T]],
    *args: Any,
    policy: RetryPolicy | None = None,
    **kwargs: Any,
) -> T:
    """Await ``func`` under ``policy``, re-raising the last failure."""

    resolved = policy or RetryPolicy()
    retrying = AsyncRetrying(
        retry=retry_if_exception_type(resolved.retry_exceptions),
        stop=stop_after_attempt(resolved.attempts),
        wait=wait_exponential(
            multiplier=resolved.initial_delay,
            min=resolved.initial_delay,
            max=resolved.max_delay,
        ),
        reraise=True,
    )
    async for attempt in retrying:
        with attempt:
            return await func(*args, **kwargs)
    raise RuntimeError("Retry loop finished without calling the function.")  # pragma: no cover


__all__ = ["RetryPolicy", "call_async_with_retry"]
