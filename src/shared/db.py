"""
Database helpers: connection pool management, schema initialisation,
the scoped-transaction helper, and health checks.

Uses ``asyncpg`` for async PostgreSQL access.  The pool is the only
shared mutable resource in the service: every unit of work acquires its
own connection (with a bounded acquire timeout) and either commits or
rolls back before releasing it.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import asyncpg

from shared.config import DatabaseSettings
from shared.errors import GatekeeperError, StorageError

logger = logging.getLogger("shared.db")

# Errors that mean "the database is unavailable or rejected the statement".
STORAGE_ERRORS = (
    asyncpg.PostgresError,
    asyncpg.InterfaceError,
    asyncio.TimeoutError,
    OSError,
)


# ---------------------------------------------------------------------------
# Connection pool
# ---------------------------------------------------------------------------


async def get_connection_pool(
    settings: DatabaseSettings, password: Optional[str] = None
) -> asyncpg.Pool:
    """Create and return an ``asyncpg`` connection pool.

    Raises:
        asyncpg.PostgresError: If the connection cannot be established.
    """
    pool = await asyncpg.create_pool(
        host=settings.host,
        port=settings.port,
        database=settings.database,
        user=settings.user,
        password=password,
        min_size=settings.min_size,
        max_size=settings.max_size,
        timeout=settings.acquire_timeout_seconds,
        command_timeout=settings.command_timeout_seconds,
    )
    logger.info(
        "Database pool created: %s@%s/%s (size %d-%d)",
        settings.user,
        settings.host,
        settings.database,
        settings.min_size,
        settings.max_size,
    )
    return pool


# ---------------------------------------------------------------------------
# Scoped unit of work
# ---------------------------------------------------------------------------


@asynccontextmanager
async def transaction(
    pool: asyncpg.Pool, acquire_timeout: float = 10.0
) -> AsyncIterator[asyncpg.Connection]:
    """Acquire a connection and run the body inside one transaction.

    Commits when the body finishes, rolls back on any exception.  Driver,
    timeout and socket errors are re-raised as :class:`StorageError`;
    domain errors (:class:`GatekeeperError`) propagate unchanged so callers
    keep their specific meaning.
    """
    try:
        async with pool.acquire(timeout=acquire_timeout) as conn:
            async with conn.transaction():
                yield conn
    except GatekeeperError:
        raise
    except STORAGE_ERRORS as exc:
        logger.error("Database unit of work failed: %s", exc)
        raise StorageError(str(exc)) from exc


# ---------------------------------------------------------------------------
# Schema initialisation
# ---------------------------------------------------------------------------

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS oauth_states (
        id          UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        state_token TEXT NOT NULL UNIQUE,
        telegram_id BIGINT NOT NULL,
        created_at  TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        expires_at  TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_oauth_states_expires
    ON oauth_states (expires_at)
    """,
    """
    CREATE TABLE IF NOT EXISTS user_links (
        id                UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        discord_id        BIGINT NOT NULL UNIQUE,
        telegram_id       BIGINT NOT NULL UNIQUE,
        guild_id          BIGINT NOT NULL,
        created_at        TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at        TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        added_to_group_at TIMESTAMPTZ,
        last_check        TIMESTAMPTZ
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_user_links_guild
    ON user_links (guild_id)
    """,
    """
    CREATE TABLE IF NOT EXISTS allowed_guilds (
        id         UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        guild_id   BIGINT NOT NULL UNIQUE,
        name       TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS allowed_roles (
        id         UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        guild_id   BIGINT NOT NULL,
        role_id    BIGINT NOT NULL,
        name       TEXT NOT NULL,
        is_admin   BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        UNIQUE (guild_id, role_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS telegram_groups (
        id                UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        guild_id          BIGINT NOT NULL UNIQUE,
        telegram_group_id BIGINT NOT NULL,
        owner             TEXT NOT NULL,
        created_at        TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at        TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS allowed_channels (
        id         UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        guild_id   BIGINT NOT NULL,
        channel_id BIGINT NOT NULL UNIQUE,
        name       TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_log (
        id        BIGSERIAL PRIMARY KEY,
        timestamp TIMESTAMPTZ DEFAULT NOW(),
        service   TEXT NOT NULL,
        action    TEXT NOT NULL,
        details   JSONB,
        success   BOOLEAN NOT NULL
    )
    """,
)


async def init_database(pool: asyncpg.Pool) -> None:
    """Create tables and indexes if they do not exist.

    Idempotent (uses IF NOT EXISTS).  ``gen_random_uuid()`` is built in
    from PostgreSQL 13 onwards.
    """
    async with pool.acquire() as conn:
        async with conn.transaction():
            for statement in _SCHEMA_STATEMENTS:
                await conn.execute(statement)
    logger.info("Database schema initialised (%d statements)", len(_SCHEMA_STATEMENTS))


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------


async def health_check(pool: asyncpg.Pool, timeout: float = 5.0) -> bool:
    """Verify the database is reachable and responsive."""
    try:
        async with pool.acquire(timeout=timeout) as conn:
            result = await conn.fetchval("SELECT 1;")
            return result == 1
    except STORAGE_ERRORS:
        logger.exception("Database health check failed")
        return False
