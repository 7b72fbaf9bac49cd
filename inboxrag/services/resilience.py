from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
import random
from typing import Any, Awaitable, Callable, TypeVar

from inboxrag.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

T = TypeVar("T")

TransientException = (TimeoutError, OSError)


def _default_retryable(exc: Exception) -> bool:
    # Retry only transient network/timeout failures by default.
    if isinstance(exc, TransientException):
        return True
    status = getattr(exc, "status_code", None)
    if isinstance(status, int) and status >= 500:
        return True
    return False


@dataclass(frozen=True)
class RetryPolicy:
    # Centralize external retry behavior for deterministic policy changes.
    timeout_ms: int
    max_attempts: int
    backoff_ms: int


async def retry_async(
    func: Callable[[], Awaitable[Any]],
    *,
    policy: RetryPolicy,
    retryable: Callable[[Exception], bool] | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> Any:
    # Retry helper with jittered backoff for transient failures only.
    retryable = retryable or _default_retryable
    attempt = 1
    while True:
        try:
            return await asyncio.wait_for(func(), timeout=policy.timeout_ms / 1000.0)
        except Exception as exc:  # noqa: BLE001 - caller handles non-transient failures
            if attempt >= max(policy.max_attempts, 1) or not retryable(exc):
                raise
            # Track retry volume so operators can detect retry storms.
            increment_counter("external_retries_total")
            jitter = random.uniform(0.5, 1.5)
            sleep_s = (policy.backoff_ms / 1000.0) * (2 ** (attempt - 1)) * jitter
            await sleep(sleep_s)
            attempt += 1


async def with_timeout(
    awaitable: Awaitable[T],
    *,
    timeout_ms: int,
    error: Callable[[str], Exception],
    operation: str,
) -> T:
    # Convert timeouts into the caller's retryable infrastructure error.
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout_ms / 1000.0)
    except asyncio.TimeoutError as exc:
        increment_counter(f"{operation}_timeouts_total")
        logger.warning("operation_timeout operation=%s timeout_ms=%s", operation, timeout_ms)
        raise error(f"{operation} timed out after {timeout_ms}ms") from exc


def backoff_delay_ms(attempt: int, *, base_ms: int, max_ms: int) -> int:
    """Exponential backoff for the given 1-based attempt, capped at ``max_ms``."""
    if attempt < 1:
        attempt = 1
    return int(min(max_ms, base_ms * (2 ** (attempt - 1))))
