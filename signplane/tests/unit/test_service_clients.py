from __future__ import annotations

import json

import httpx
import pytest

from signplane.clients.config import ConfigClient
from signplane.clients.heartbeat import HeartbeatClient


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_heartbeat_client_posts_service_identity() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"data": {"success": True}})

    async with _client(handler) as http:
        client = HeartbeatClient(
            base_url="http://control-plane/",
            service_key="svc-key",
            service="kds",
            location_id="loc-1",
            instance_id="kds-a",
            version="2.0.0",
            http_client=http,
        )
        assert await client.send() is True

    body = json.loads(seen[0].content)
    assert seen[0].url.path == "/v1/heartbeat"
    assert seen[0].headers["X-Service-Key"] == "svc-key"
    assert body["service"] == "kds"
    assert body["instance_id"] == "kds-a"
    assert body["status"] == "online"
    assert client.status()["consecutive_failures"] == 0


@pytest.mark.asyncio
async def test_heartbeat_client_never_raises_on_failure() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    async with _client(handler) as http:
        client = HeartbeatClient(
            base_url="http://control-plane",
            service_key="svc-key",
            service="pos-lite",
            location_id="loc-1",
            http_client=http,
        )
        assert await client.send() is False
        assert await client.set_status("degraded") is False

    assert client.consecutive_failures == 2
    assert client.status()["status"] == "degraded"


@pytest.mark.asyncio
async def test_config_client_falls_back_to_last_known_good() -> None:
    state = {"healthy": True}

    def handler(request: httpx.Request) -> httpx.Response:
        if not state["healthy"]:
            return httpx.Response(503, json={"error": {"code": "SERVICE_UNAVAILABLE"}})
        return httpx.Response(
            200,
            json={"data": {"location_id": "loc-1", "flags": {"promo_banner": {"enabled": True, "config": {}}}}},
        )

    async with _client(handler) as http:
        client = ConfigClient(
            base_url="http://control-plane",
            service_key="svc-key",
            location_id="loc-1",
            max_attempts=1,
            http_client=http,
        )
        fresh = await client.get_feature_flags()
        state["healthy"] = False
        cached = await client.get_feature_flags()
        assert await client.is_feature_enabled("promo_banner") is True
        assert await client.is_feature_enabled("unknown", default=True) is True
        # Nothing was ever fetched for screens, so there is nothing to fall back to.
        assert await client.get_screen_config() is None

    assert fresh == cached
    assert client.cache_status()["cached_keys"] == ["features"]
