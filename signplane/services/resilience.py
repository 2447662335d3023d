from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, TypeVar

from sqlalchemy.exc import SQLAlchemyError

from signplane.core.errors import EnforcementUnavailableError


logger = logging.getLogger(__name__)

T = TypeVar("T")

TransientException = (TimeoutError, OSError)


@dataclass(frozen=True)
class BestEffortResult(Generic[T]):
    # Outcome of a call whose failure must never reach the caller.
    ok: bool
    value: T | None = None
    error: str | None = None


async def best_effort(
    func: Callable[[], Awaitable[T]],
    *,
    operation: str,
    timeout_ms: int,
) -> BestEffortResult[T]:
    # Bounded, swallow-and-log convention for audit writes and telemetry-style calls.
    try:
        value = await asyncio.wait_for(func(), timeout=timeout_ms / 1000.0)
    except asyncio.CancelledError:
        raise
    except Exception as exc:  # noqa: BLE001 - best-effort calls never propagate
        logger.warning("best_effort_failed operation=%s error=%s", operation, type(exc).__name__, exc_info=exc)
        return BestEffortResult(ok=False, error=type(exc).__name__)
    return BestEffortResult(ok=True, value=value)


async def fail_closed(
    func: Callable[[], Awaitable[T]],
    *,
    operation: str,
    timeout_ms: int,
) -> T:
    # Bounded convention for reads that gate a decision; any dependency failure becomes a denial.
    try:
        return await asyncio.wait_for(func(), timeout=timeout_ms / 1000.0)
    except (SQLAlchemyError, TimeoutError, asyncio.TimeoutError, OSError) as exc:
        logger.warning("fail_closed_triggered operation=%s error=%s", operation, type(exc).__name__, exc_info=exc)
        raise EnforcementUnavailableError(f"{operation} dependency unavailable") from exc


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
    timeout_ms: int
    max_attempts: int
    backoff_ms: int


async def retry_async(
    func: Callable[[], Awaitable[Any]],
    *,
    policy: RetryPolicy,
    retryable: Callable[[Exception], bool] | None = None,
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
            jitter = random.uniform(0.5, 1.5)
            sleep_s = (policy.backoff_ms / 1000.0) * (2 ** (attempt - 1)) * jitter
            await asyncio.sleep(sleep_s)
            attempt += 1
