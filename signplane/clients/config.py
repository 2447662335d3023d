from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging
from typing import Any

import httpx

from signplane.core.config import get_settings
from signplane.core.timeutil import utc_now
from signplane.services.resilience import RetryPolicy, retry_async


logger = logging.getLogger(__name__)


@dataclass
class CachedConfig:
    data: dict[str, Any]
    cached_at: datetime


class ConfigClient:
    """Read-only consumer of served configuration with last-known-good fallback.

    A fetch that times out or fails returns the most recent successful
    response for the same resource, or ``None`` when nothing was ever
    fetched.
    """

    def __init__(
        self,
        *,
        base_url: str,
        service_key: str,
        location_id: str,
        timeout_ms: int | None = None,
        max_attempts: int = 2,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        settings = get_settings()
        self.base_url = base_url.rstrip("/")
        self.service_key = service_key
        self.location_id = location_id
        resolved_timeout = timeout_ms if timeout_ms is not None else settings.config_client_timeout_ms
        self._policy = RetryPolicy(timeout_ms=resolved_timeout, max_attempts=max_attempts, backoff_ms=200)
        self._http = http_client
        self._cache: dict[str, CachedConfig] = {}
        self.last_fetch: datetime | None = None

    async def _get(self, path: str) -> dict[str, Any]:
        headers = {get_settings().service_key_header: self.service_key}
        timeout = self._policy.timeout_ms / 1000.0

        async def _call() -> httpx.Response:
            if self._http is not None:
                response = await self._http.get(f"{self.base_url}{path}", headers=headers, timeout=timeout)
            else:
                async with httpx.AsyncClient(timeout=timeout) as client:
                    response = await client.get(f"{self.base_url}{path}", headers=headers)
            if response.status_code >= 500:
                response.raise_for_status()
            return response

        def _retryable(exc: Exception) -> bool:
            if isinstance(exc, (httpx.TimeoutException, httpx.NetworkError, TimeoutError)):
                return True
            if isinstance(exc, httpx.HTTPStatusError):
                return exc.response.status_code >= 500
            return False

        response = await retry_async(_call, policy=self._policy, retryable=_retryable)
        response.raise_for_status()
        body = response.json()
        # Served responses use the {data, meta} envelope.
        return body.get("data", body) if isinstance(body, dict) else body

    async def _fetch(self, key: str, path: str) -> dict[str, Any] | None:
        try:
            data = await self._get(path)
        except (httpx.HTTPError, TimeoutError, OSError, ValueError) as exc:
            cached = self._cache.get(key)
            logger.warning(
                "config_fetch_failed key=%s error=%s cached=%s",
                key,
                type(exc).__name__,
                cached is not None,
            )
            return cached.data if cached else None
        self._cache[key] = CachedConfig(data=data, cached_at=utc_now())
        self.last_fetch = utc_now()
        return data

    async def get_location_config(self) -> dict[str, Any] | None:
        return await self._fetch("location", f"/v1/config/location/{self.location_id}")

    async def get_screen_config(self) -> dict[str, Any] | None:
        return await self._fetch("screens", f"/v1/config/screens/{self.location_id}")

    async def get_feature_flags(self) -> dict[str, Any] | None:
        return await self._fetch("features", f"/v1/config/features/{self.location_id}")

    async def is_feature_enabled(self, flag_key: str, default: bool = False) -> bool:
        flags = await self.get_feature_flags()
        if not flags:
            return default
        flag = (flags.get("flags") or {}).get(flag_key)
        if not isinstance(flag, dict):
            return default
        return bool(flag.get("enabled", default))

    def clear_cache(self) -> None:
        self._cache.clear()

    def cache_status(self) -> dict[str, Any]:
        return {
            "last_fetch": self.last_fetch.isoformat() if self.last_fetch else None,
            "cached_keys": sorted(self._cache),
        }
