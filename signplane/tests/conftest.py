from __future__ import annotations

import os
import tempfile

# Settings and the engine are built at import time; point them at an isolated store first.
os.environ["DATABASE_URL"] = os.environ.get(
    "SIGNPLANE_TEST_DATABASE_URL",
    f"sqlite+aiosqlite:///{tempfile.gettempdir()}/signplane-tests-{os.getpid()}.db",
)
os.environ.setdefault("SERVICE_KEY", "test-service-key")
os.environ.setdefault("SESSION_TOKEN_SECRET", "test-session-secret")
os.environ.setdefault("DEVICE_TOKEN_SECRET", "test-device-secret")
os.environ.setdefault("PAYMENT_MODE", "test")
os.environ.setdefault("PAYMENT_WEBHOOK_SECRET", "whsec_test")

import pytest

from signplane.domain.models import Base
from signplane.persistence.db import engine


@pytest.fixture(autouse=True)
async def reset_schema_between_tests() -> None:
    # Every test starts from an empty schema so fixtures never leak across tests.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    # Dispose the async engine to prevent cross-loop connection reuse between tests.
    await engine.dispose()
