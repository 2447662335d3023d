from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any
from uuid import uuid4

from arq import cron
from arq.connections import RedisSettings
from sqlalchemy.exc import SQLAlchemyError

from signplane.core.config import get_settings
from signplane.core.logging import configure_logging
from signplane.core.timeutil import utc_now
from signplane.persistence.db import SessionLocal
from signplane.services.registry import sweep_stale
from signplane.services.rollouts import start_due_rollouts


logger = logging.getLogger(__name__)

REGISTRY_SWEEP_LOCK_KEY = "signplane:maintenance:registry_sweep:lock"
ROLLOUT_SCHEDULER_LOCK_KEY = "signplane:maintenance:rollout_scheduler:lock"


@dataclass(slots=True)
class MaintenanceLock:
    key: str
    token: str
    redis: Any | None


def _is_missing_table_error(exc: Exception) -> bool:
    # Workers may start before migrations; missing tables are a waiting state, not a crash.
    message = str(exc).lower()
    return "undefinedtableerror" in message or "does not exist" in message or "no such table" in message


async def acquire_lock(redis: Any | None, key: str, ttl_s: int) -> MaintenanceLock | None:
    # One worker per cycle; without redis (scripts, tests) the caller is the only runner.
    token = uuid4().hex
    if redis is None:
        return MaintenanceLock(key=key, token=token, redis=None)
    acquired = await redis.set(key, token, nx=True, ex=max(5, ttl_s))
    if not acquired:
        return None
    return MaintenanceLock(key=key, token=token, redis=redis)


async def release_lock(lock: MaintenanceLock) -> None:
    # Release only while still the owner so an expired lock is never deleted from under a newer holder.
    if lock.redis is None:
        return
    current = await lock.redis.get(lock.key)
    value = current.decode("utf-8") if isinstance(current, (bytes, bytearray)) else str(current or "")
    if value == lock.token:
        await lock.redis.delete(lock.key)


async def run_registry_sweep_cycle(*, redis: Any | None = None) -> dict[str, Any]:
    settings = get_settings()
    lock = await acquire_lock(redis, REGISTRY_SWEEP_LOCK_KEY, settings.registry_sweep_interval_s)
    if lock is None:
        return {"status": "skipped_lock", "marked_offline": 0}
    try:
        try:
            async with SessionLocal() as session:
                marked = await sweep_stale(session, now=utc_now())
        except SQLAlchemyError as exc:
            if _is_missing_table_error(exc):
                return {"status": "waiting_for_migrations", "marked_offline": 0}
            raise
        return {"status": "ok", "marked_offline": marked}
    finally:
        await release_lock(lock)


async def run_rollout_scheduler_cycle(*, redis: Any | None = None) -> dict[str, Any]:
    settings = get_settings()
    lock = await acquire_lock(redis, ROLLOUT_SCHEDULER_LOCK_KEY, settings.rollout_scheduler_interval_s)
    if lock is None:
        return {"status": "skipped_lock", "started": []}
    try:
        try:
            async with SessionLocal() as session:
                started = await start_due_rollouts(session, now=utc_now())
        except SQLAlchemyError as exc:
            if _is_missing_table_error(exc):
                return {"status": "waiting_for_migrations", "started": []}
            raise
        return {"status": "ok", "started": started}
    finally:
        await release_lock(lock)


async def sweep_registry(ctx) -> dict[str, Any]:
    result = await run_registry_sweep_cycle(redis=ctx.get("redis"))
    logger.info("registry_sweep_cycle status=%s marked_offline=%s", result["status"], result["marked_offline"])
    return result


async def start_scheduled_rollouts(ctx) -> dict[str, Any]:
    result = await run_rollout_scheduler_cycle(redis=ctx.get("redis"))
    logger.info("rollout_scheduler_cycle status=%s started=%s", result["status"], len(result["started"]))
    return result


def _minutes_for(interval_s: int) -> set[int]:
    # arq cron granularity is one minute; shorter intervals still run every minute.
    step = max(1, int(interval_s) // 60)
    return set(range(0, 60, step))


async def _startup(ctx) -> None:
    configure_logging()
    logger.info("maintenance_worker_started")


async def _shutdown(ctx) -> None:
    logger.info("maintenance_worker_stopped")


class WorkerSettings:
    # Keep worker configuration as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.worker_queue_name
    functions = [sweep_registry, start_scheduled_rollouts]
    cron_jobs = [
        cron(sweep_registry, minute=_minutes_for(settings.registry_sweep_interval_s), second=0, run_at_startup=True),
        cron(start_scheduled_rollouts, minute=_minutes_for(settings.rollout_scheduler_interval_s), second=30),
    ]
    on_startup = _startup
    on_shutdown = _shutdown
