from __future__ import annotations

import asyncio

import pytest
from sqlalchemy.exc import OperationalError

from signplane.core.errors import EnforcementUnavailableError
from signplane.services.resilience import RetryPolicy, best_effort, fail_closed, retry_async


@pytest.mark.asyncio
async def test_best_effort_swallows_errors_and_timeouts() -> None:
    async def _boom() -> None:
        raise RuntimeError("nope")

    async def _slow() -> None:
        await asyncio.sleep(1)

    async def _ok() -> int:
        return 7

    failed = await best_effort(_boom, operation="unit", timeout_ms=100)
    timed_out = await best_effort(_slow, operation="unit", timeout_ms=10)
    succeeded = await best_effort(_ok, operation="unit", timeout_ms=100)

    assert failed.ok is False
    assert failed.error == "RuntimeError"
    assert timed_out.ok is False
    assert succeeded.ok is True
    assert succeeded.value == 7


@pytest.mark.asyncio
async def test_fail_closed_turns_storage_failures_into_denials() -> None:
    async def _db_down() -> None:
        raise OperationalError("SELECT 1", {}, Exception("connection refused"))

    async def _slow() -> None:
        await asyncio.sleep(1)

    with pytest.raises(EnforcementUnavailableError):
        await fail_closed(_db_down, operation="unit", timeout_ms=100)
    with pytest.raises(EnforcementUnavailableError):
        await fail_closed(_slow, operation="unit", timeout_ms=10)


@pytest.mark.asyncio
async def test_fail_closed_passes_domain_errors_through() -> None:
    async def _missing() -> None:
        raise LookupError("missing")

    with pytest.raises(LookupError):
        await fail_closed(_missing, operation="unit", timeout_ms=100)


@pytest.mark.asyncio
async def test_retry_async_retries_transient_failures_only() -> None:
    calls = {"count": 0}

    async def _flaky() -> str:
        calls["count"] += 1
        if calls["count"] < 3:
            raise OSError("reset")
        return "ok"

    policy = RetryPolicy(timeout_ms=100, max_attempts=3, backoff_ms=1)
    assert await retry_async(_flaky, policy=policy) == "ok"
    assert calls["count"] == 3

    async def _bad_request() -> None:
        raise ValueError("bad")

    with pytest.raises(ValueError):
        await retry_async(_bad_request, policy=policy)
