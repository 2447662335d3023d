from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from signplane.core.config import get_settings
from signplane.core.timeutil import ensure_utc, isoformat, utc_now
from signplane.domain.enums import ReportedServiceStatus, ServiceKind, ServiceStatus
from signplane.domain.models import ServiceRegistryEntry
from signplane.persistence.repos import registry as registry_repo


logger = logging.getLogger(__name__)


def stale_after() -> timedelta:
    return timedelta(seconds=get_settings().heartbeat_stale_after_s)


def default_instance_id(service_kind: str, location_id: str) -> str:
    return f"{service_kind}-{location_id}"


def effective_status(entry: ServiceRegistryEntry, *, now: datetime | None = None) -> ServiceStatus:
    # Staleness is recomputed on every read so a dead service shows offline before any sweep runs.
    last = ensure_utc(entry.last_heartbeat)
    if last is None:
        return ServiceStatus.OFFLINE
    current = now or utc_now()
    if current - last > stale_after():
        return ServiceStatus.OFFLINE
    try:
        return ServiceStatus(entry.status)
    except ValueError:
        return ServiceStatus.UNKNOWN


def serialize_entry(entry: ServiceRegistryEntry, *, now: datetime | None = None) -> dict[str, Any]:
    return {
        "service": entry.service_kind,
        "location_id": entry.location_id,
        "instance_id": entry.instance_id,
        "status": effective_status(entry, now=now).value,
        "stored_status": entry.status,
        "version": entry.version,
        "base_url": entry.base_url,
        "last_heartbeat": isoformat(entry.last_heartbeat),
        "metadata": entry.metadata_json or {},
    }


@dataclass
class HealthSummary:
    total: int = 0
    online: int = 0
    degraded: int = 0
    offline: int = 0
    unknown: int = 0
    by_service: dict[str, dict[str, int]] = field(default_factory=dict)
    by_location: dict[str, dict[str, int]] = field(default_factory=dict)
    services: list[dict[str, Any]] = field(default_factory=list)

    def add(self, service_kind: str, location_id: str, status: ServiceStatus) -> None:
        self.total += 1
        setattr(self, status.value, getattr(self, status.value) + 1)
        for bucket, key in ((self.by_service, service_kind), (self.by_location, location_id)):
            counts = bucket.setdefault(key, {"total": 0, "online": 0, "degraded": 0, "offline": 0, "unknown": 0})
            counts["total"] += 1
            counts[status.value] += 1

    def as_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "online": self.online,
            "degraded": self.degraded,
            "offline": self.offline,
            "unknown": self.unknown,
            "by_service": self.by_service,
            "by_location": self.by_location,
            "services": self.services,
        }


async def record_heartbeat(
    session: AsyncSession,
    *,
    service_kind: str | ServiceKind,
    location_id: str,
    instance_id: str | None = None,
    status: str | ReportedServiceStatus = ReportedServiceStatus.ONLINE,
    version: str | None = None,
    base_url: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> datetime:
    # Idempotent upsert; repeated identical heartbeats leave one row with a fresh timestamp.
    kind = ServiceKind(service_kind)
    reported = ReportedServiceStatus(status)
    resolved_instance = instance_id or default_instance_id(kind.value, location_id)
    now = utc_now()
    await registry_repo.upsert_heartbeat(
        session,
        service_kind=kind.value,
        location_id=location_id,
        instance_id=resolved_instance,
        status=reported.value,
        version=version,
        base_url=base_url,
        metadata=metadata,
        now=now,
    )
    logger.debug(
        "heartbeat_recorded service=%s location_id=%s instance_id=%s status=%s",
        kind.value,
        location_id,
        resolved_instance,
        reported.value,
    )
    return now


async def get_health_summary(
    session: AsyncSession,
    *,
    account_id: str | None = None,
    location_id: str | None = None,
    now: datetime | None = None,
) -> HealthSummary:
    current = now or utc_now()
    entries = await registry_repo.list_entries(session, account_id=account_id, location_id=location_id)
    summary = HealthSummary()
    for entry in entries:
        status = effective_status(entry, now=current)
        summary.add(entry.service_kind, entry.location_id, status)
        summary.services.append(serialize_entry(entry, now=current))
    return summary


async def sweep_stale(session: AsyncSession, *, now: datetime | None = None) -> int:
    # Persists what readers already compute; repeated runs transition nothing new.
    current = now or utc_now()
    transitioned = await registry_repo.mark_stale_offline(session, cutoff=current - stale_after(), now=current)
    if transitioned:
        logger.info("registry_sweep_marked_offline count=%s", transitioned)
    return transitioned


async def list_location_services(
    session: AsyncSession,
    location_id: str,
    *,
    now: datetime | None = None,
) -> list[dict[str, Any]]:
    entries = await registry_repo.list_entries(session, location_id=location_id)
    return [serialize_entry(entry, now=now) for entry in entries]


async def get_service(
    session: AsyncSession,
    *,
    service_kind: str,
    location_id: str,
    instance_id: str | None = None,
) -> ServiceRegistryEntry | None:
    return await registry_repo.get_entry(
        session, service_kind=service_kind, location_id=location_id, instance_id=instance_id
    )


async def deregister_service(
    session: AsyncSession,
    *,
    service_kind: str,
    location_id: str,
    instance_id: str | None = None,
) -> bool:
    resolved_instance = instance_id or default_instance_id(service_kind, location_id)
    removed = await registry_repo.delete_entry(
        session, service_kind=service_kind, location_id=location_id, instance_id=resolved_instance
    )
    if removed:
        logger.info(
            "service_deregistered service=%s location_id=%s instance_id=%s",
            service_kind,
            location_id,
            resolved_instance,
        )
    return removed
