"""
PostgreSQL storage for pending OAuth states, user links and the
read-only scoping tables (allowed guilds, their roles and the Telegram
group each guild gates).

Uses ``asyncpg``.  All queries use parameterized placeholders ($1, $2,
...), **never** string interpolation.

Every method accepts an optional ``conn``: pass the connection yielded
by :meth:`LinkStore.transaction` to run inside a unit of work, or omit
it to run a single statement on the pool.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, List, Optional
from uuid import UUID

import asyncpg

from shared.db import transaction
from shared.errors import Conflict
from shared.models import AllowedGuild, PendingLinkState, UserLink

logger = logging.getLogger("shared.link_store")

_LINK_COLUMNS = (
    "id, discord_id, telegram_id, guild_id, created_at, updated_at, "
    "added_to_group_at, last_check"
)


def _rowcount(status: str) -> int:
    # asyncpg command status format: "DELETE <rowcount>"
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (ValueError, IndexError, AttributeError):
        logger.debug("Unexpected command status string: %s", status)
        return 0


class LinkStore:
    """Owns the ``oauth_states`` and ``user_links`` tables.

    Args:
        pool: An ``asyncpg`` connection pool (created via
              :func:`shared.db.get_connection_pool`).
        acquire_timeout: Seconds to wait for a pooled connection before
              failing with :class:`shared.errors.StorageError`.
    """

    def __init__(self, pool: asyncpg.Pool, acquire_timeout: float = 10.0) -> None:
        self._pool = pool
        self._acquire_timeout = acquire_timeout

    def _executor(self, conn: Optional[Any]) -> Any:
        return conn if conn is not None else self._pool

    # ------------------------------------------------------------------
    # Units of work
    # ------------------------------------------------------------------

    def transaction(self):
        """Scoped transaction on a freshly acquired connection."""
        return transaction(self._pool, self._acquire_timeout)

    @asynccontextmanager
    async def savepoint(self, conn: asyncpg.Connection) -> AsyncIterator[None]:
        """Nested transaction: a failed statement only rolls back this block."""
        async with conn.transaction():
            yield

    # ------------------------------------------------------------------
    # Pending OAuth states
    # ------------------------------------------------------------------

    async def create_pending_state(
        self,
        telegram_id: int,
        token: str,
        ttl_seconds: int,
        conn: Optional[Any] = None,
    ) -> PendingLinkState:
        row = await self._executor(conn).fetchrow(
            """
            INSERT INTO oauth_states (state_token, telegram_id, expires_at)
            VALUES ($1, $2, NOW() + make_interval(secs => $3))
            RETURNING id, state_token, telegram_id, created_at, expires_at
            """,
            token,
            telegram_id,
            float(ttl_seconds),
        )
        return PendingLinkState.from_record(row)

    async def consume_pending_state(
        self, token: str, conn: Optional[Any] = None
    ) -> Optional[PendingLinkState]:
        """Atomically fetch-and-delete an unexpired state.

        Returns ``None`` when the token is unknown, already consumed or
        past ``expires_at``.
        """
        row = await self._executor(conn).fetchrow(
            """
            DELETE FROM oauth_states
            WHERE state_token = $1 AND expires_at > NOW()
            RETURNING id, state_token, telegram_id, created_at, expires_at
            """,
            token,
        )
        return PendingLinkState.from_record(row) if row else None

    async def purge_expired_states(self, conn: Optional[Any] = None) -> int:
        status = await self._executor(conn).execute(
            "DELETE FROM oauth_states WHERE expires_at <= NOW()"
        )
        return _rowcount(status)

    # ------------------------------------------------------------------
    # User links
    # ------------------------------------------------------------------

    async def find_link_by_telegram_id(
        self, telegram_id: int, conn: Optional[Any] = None
    ) -> Optional[UserLink]:
        row = await self._executor(conn).fetchrow(
            f"SELECT {_LINK_COLUMNS} FROM user_links WHERE telegram_id = $1",
            telegram_id,
        )
        return UserLink.from_record(row) if row else None

    async def find_link_by_discord_id(
        self, discord_id: int, conn: Optional[Any] = None
    ) -> Optional[UserLink]:
        row = await self._executor(conn).fetchrow(
            f"SELECT {_LINK_COLUMNS} FROM user_links WHERE discord_id = $1",
            discord_id,
        )
        return UserLink.from_record(row) if row else None

    async def create_link(
        self,
        discord_id: int,
        telegram_id: int,
        guild_id: int,
        conn: Optional[Any] = None,
    ) -> UserLink:
        """Insert a new link.

        Raises:
            Conflict: If either id is already linked (unique constraint).
        """
        try:
            row = await self._executor(conn).fetchrow(
                f"""
                INSERT INTO user_links (discord_id, telegram_id, guild_id)
                VALUES ($1, $2, $3)
                RETURNING {_LINK_COLUMNS}
                """,
                discord_id,
                telegram_id,
                guild_id,
            )
        except asyncpg.UniqueViolationError as exc:
            logger.warning(
                "Unique violation creating link discord_id=%s telegram_id=%s: %s",
                discord_id,
                telegram_id,
                exc,
            )
            raise Conflict() from exc
        return UserLink.from_record(row)

    async def mark_added_to_group(
        self, link_id: UUID, conn: Optional[Any] = None
    ) -> None:
        await self._executor(conn).execute(
            "UPDATE user_links SET added_to_group_at = NOW(), updated_at = NOW() "
            "WHERE id = $1",
            link_id,
        )

    async def mark_checked(self, link_id: UUID, conn: Optional[Any] = None) -> None:
        await self._executor(conn).execute(
            "UPDATE user_links SET last_check = NOW(), updated_at = NOW() "
            "WHERE id = $1",
            link_id,
        )

    async def list_links_for_guild(
        self, guild_id: int, conn: Optional[Any] = None
    ) -> List[UserLink]:
        rows = await self._executor(conn).fetch(
            f"SELECT {_LINK_COLUMNS} FROM user_links "
            "WHERE guild_id = $1 ORDER BY created_at",
            guild_id,
        )
        return [UserLink.from_record(row) for row in rows]

    async def delete_link(self, discord_id: int, conn: Optional[Any] = None) -> bool:
        status = await self._executor(conn).execute(
            "DELETE FROM user_links WHERE discord_id = $1",
            discord_id,
        )
        return _rowcount(status) > 0


class ScopeStore:
    """Read-only access to the scoping tables maintained by admin tooling."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    def _executor(self, conn: Optional[Any]) -> Any:
        return conn if conn is not None else self._pool

    async def list_allowed_guilds(self, conn: Optional[Any] = None) -> List[AllowedGuild]:
        rows = await self._executor(conn).fetch(
            """
            SELECT g.guild_id, g.name, t.telegram_group_id
            FROM allowed_guilds g
            LEFT JOIN telegram_groups t ON t.guild_id = g.guild_id
            ORDER BY g.guild_id
            """
        )
        return [AllowedGuild.from_record(row) for row in rows]

    async def allowed_role_ids(
        self, guild_id: int, conn: Optional[Any] = None
    ) -> frozenset[int]:
        """Role ids that qualify a member of *guild_id* for the group."""
        rows = await self._executor(conn).fetch(
            "SELECT role_id FROM allowed_roles WHERE guild_id = $1",
            guild_id,
        )
        return frozenset(int(row["role_id"]) for row in rows)

    async def telegram_group_for(
        self, guild_id: int, conn: Optional[Any] = None
    ) -> Optional[int]:
        """Telegram group mapped to *guild_id*, or ``None`` if unmapped."""
        group_id = await self._executor(conn).fetchval(
            "SELECT telegram_group_id FROM telegram_groups WHERE guild_id = $1",
            guild_id,
        )
        return int(group_id) if group_id is not None else None

