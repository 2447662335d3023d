from __future__ import annotations

from typing import Any

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from signplane.core.config import Settings, get_settings


def engine_options(settings: Settings) -> dict[str, Any]:
    """Engine keyword arguments for the configured store.

    Postgres gets a bounded asyncpg pool and a server-side statement timeout
    so heartbeat bursts cannot starve pairing requests. SQLite (tests, local
    demos) keeps driver defaults plus a busy timeout, since audit rows,
    enforcement log entries and mirrored events are written on their own
    connections next to the request's session.
    """
    if make_url(settings.database_url).get_backend_name() == "sqlite":
        return {"connect_args": {"timeout": 15}}
    options: dict[str, Any] = {
        "pool_pre_ping": True,
        "pool_size": max(1, int(settings.api_db_pool_size)),
        "max_overflow": max(0, int(settings.api_db_max_overflow)),
        "pool_timeout": 30,
        "pool_recycle": 1800,
    }
    if settings.api_db_statement_timeout_ms > 0:
        options["connect_args"] = {
            "server_settings": {"statement_timeout": str(int(settings.api_db_statement_timeout_ms))}
        }
    return options


engine = create_async_engine(get_settings().database_url, **engine_options(get_settings()))
SessionLocal = async_sessionmaker(engine, expire_on_commit=False)


def dialect_name(session: AsyncSession) -> str:
    # Registry upserts need the dialect-specific insert construct.
    return session.get_bind().dialect.name
