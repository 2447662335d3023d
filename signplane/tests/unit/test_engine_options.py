from __future__ import annotations

from signplane.core.config import Settings
from signplane.persistence.db import engine_options


def test_sqlite_store_gets_busy_timeout_and_no_pool_sizing() -> None:
    options = engine_options(Settings(database_url="sqlite+aiosqlite:///./signplane-test.db"))

    assert options == {"connect_args": {"timeout": 15}}


def test_postgres_store_bounds_pool_and_statement_time() -> None:
    options = engine_options(
        Settings(
            database_url="postgresql+asyncpg://signplane:signplane@db:5432/signplane",
            api_db_pool_size=0,
            api_db_max_overflow=4,
            api_db_statement_timeout_ms=2500,
        )
    )

    assert options["pool_size"] == 1
    assert options["max_overflow"] == 4
    assert options["pool_pre_ping"] is True
    assert options["connect_args"] == {"server_settings": {"statement_timeout": "2500"}}


def test_postgres_statement_timeout_can_be_disabled() -> None:
    options = engine_options(
        Settings(
            database_url="postgresql+asyncpg://signplane:signplane@db:5432/signplane",
            api_db_statement_timeout_ms=0,
        )
    )

    assert "connect_args" not in options
