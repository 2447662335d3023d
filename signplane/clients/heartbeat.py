from __future__ import annotations

import asyncio
from datetime import datetime
import logging
import time
from typing import Any
from uuid import uuid4

import httpx

from signplane.core.config import get_settings
from signplane.core.timeutil import utc_now
from signplane.domain.enums import ReportedServiceStatus, ServiceKind


logger = logging.getLogger(__name__)


class HeartbeatClient:
    """Periodic liveness sender used by downstream execution services.

    Sending never raises: a failed or slow heartbeat is logged and counted,
    and the next interval simply tries again. The registry derives staleness
    on its side, so a missed beat needs no local handling.
    """

    def __init__(
        self,
        *,
        base_url: str,
        service_key: str,
        service: str | ServiceKind,
        location_id: str,
        instance_id: str | None = None,
        version: str | None = None,
        service_base_url: str | None = None,
        interval_s: float | None = None,
        timeout_ms: int | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        settings = get_settings()
        self.base_url = base_url.rstrip("/")
        self.service_key = service_key
        self.service = ServiceKind(service)
        self.location_id = location_id
        self.instance_id = instance_id or f"{self.service.value}-{uuid4().hex[:8]}"
        self.version = version or "unknown"
        self.service_base_url = service_base_url
        self.interval_s = interval_s if interval_s is not None else settings.heartbeat_client_interval_s
        self.timeout_s = (timeout_ms if timeout_ms is not None else settings.heartbeat_client_timeout_ms) / 1000.0
        self._http = http_client
        self._status = ReportedServiceStatus.ONLINE
        self._task: asyncio.Task[None] | None = None
        self._started_at = time.monotonic()
        self.last_success: datetime | None = None
        self.consecutive_failures = 0

    def _payload(self) -> dict[str, Any]:
        return {
            "service": self.service.value,
            "location_id": self.location_id,
            "instance_id": self.instance_id,
            "status": self._status.value,
            "version": self.version,
            "base_url": self.service_base_url,
            "metadata": {
                "uptime_s": int(time.monotonic() - self._started_at),
                "timestamp": utc_now().isoformat(),
            },
        }

    async def _post(self, client: httpx.AsyncClient) -> httpx.Response:
        return await client.post(
            f"{self.base_url}/v1/heartbeat",
            json=self._payload(),
            headers={get_settings().service_key_header: self.service_key},
            timeout=self.timeout_s,
        )

    async def send(self) -> bool:
        # Fire-and-forget: every failure mode ends in a logged False.
        try:
            if self._http is not None:
                response = await self._post(self._http)
            else:
                async with httpx.AsyncClient(timeout=self.timeout_s) as client:
                    response = await self._post(client)
            response.raise_for_status()
        except (httpx.HTTPError, OSError) as exc:
            self.consecutive_failures += 1
            logger.warning(
                "heartbeat_send_failed service=%s location_id=%s failures=%s error=%s",
                self.service.value,
                self.location_id,
                self.consecutive_failures,
                type(exc).__name__,
            )
            return False
        self.consecutive_failures = 0
        self.last_success = utc_now()
        return True

    async def set_status(self, status: str | ReportedServiceStatus) -> bool:
        # Status changes are reported immediately rather than waiting for the next tick.
        self._status = ReportedServiceStatus(status)
        return await self.send()

    async def _run(self) -> None:
        while True:
            await self.send()
            await asyncio.sleep(self.interval_s)

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            logger.warning("heartbeat_already_running service=%s", self.service.value)
            return
        logger.info("heartbeat_started service=%s location_id=%s", self.service.value, self.location_id)
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("heartbeat_stopped service=%s", self.service.value)

    def status(self) -> dict[str, Any]:
        return {
            "running": self._task is not None and not self._task.done(),
            "status": self._status.value,
            "last_success": self.last_success.isoformat() if self.last_success else None,
            "consecutive_failures": self.consecutive_failures,
        }
