"""Database configuration for the Artspace API.

The async engine connects to Supabase Postgres using ``DATABASE_URL``. Supabase
hands out ``postgresql://`` connection strings, so the DSN is converted to the
``postgresql+asyncpg`` driver before the engine is built.
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from dotenv import find_dotenv, load_dotenv
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from . import migrations

logger = logging.getLogger(__name__)

_DOTENV_PATH = find_dotenv(filename=".env", raise_error_if_not_found=False, usecwd=True)
if _DOTENV_PATH:
    load_dotenv(_DOTENV_PATH)

_DATABASE_URL_ENV = "DATABASE_URL"


def _build_async_database_url(raw_url: str) -> str:
    """Ensure the database URL uses the asyncpg driver."""

    if raw_url.startswith("postgresql+asyncpg://"):
        return raw_url
    if raw_url.startswith("postgres://"):
        raw_url = raw_url.replace("postgres://", "postgresql://", 1)
    if raw_url.startswith("postgresql://"):
        return raw_url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return raw_url


def _is_pooled_connection(url: str) -> bool:
    pooled_indicators = (".pooler.supabase.com", "pgbouncer=true", "supavisor")
    return any(indicator in url for indicator in pooled_indicators)


def get_database_url() -> str:
    try:
        raw_url = os.environ[_DATABASE_URL_ENV]
    except KeyError as exc:  # pragma: no cover - configuration error should be explicit
        raise RuntimeError(
            "DATABASE_URL environment variable must be set to connect to Supabase"
        ) from exc
    return _build_async_database_url(raw_url)


def get_engine_kwargs(url: str) -> dict:
    """Engine configuration for the given connection string."""

    kwargs: dict = {
        "echo": False,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_pre_ping": True,
        "pool_recycle": 3600,
    }

    # Transaction mode poolers (port 6543) cannot use prepared statements.
    if _is_pooled_connection(url) and ":6543" in url:
        logger.info("Using transaction mode pooled connection - disabling prepared statements")
        kwargs["connect_args"] = {"statement_cache_size": 0}
    else:
        logger.info("Database configured: prepared statements enabled")

    return kwargs


_database_url = get_database_url()
ASYNC_ENGINE = create_async_engine(_database_url, **get_engine_kwargs(_database_url))
ASYNC_SESSION_FACTORY = async_sessionmaker(
    ASYNC_ENGINE, expire_on_commit=False, class_=AsyncSession
)


@asynccontextmanager
async def lifespan(app):  # pragma: no cover - FastAPI hook
    """Apply the schema on startup and dispose of the engine on shutdown."""

    try:
        applied, _ = await migrations.ensure_schema(ASYNC_ENGINE)
        if applied:
            logger.info("Database schema applied during startup")
    except RuntimeError:
        logger.exception("Failed to apply database schema during startup")
        raise

    yield
    await ASYNC_ENGINE.dispose()


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency that yields an ``AsyncSession``."""

    async with ASYNC_SESSION_FACTORY() as session:
        yield session
