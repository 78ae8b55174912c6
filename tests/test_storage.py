"""
Unit tests for the storage layer: the scoped-transaction helper and the
SQL-facing stores, with ``asyncpg`` replaced by mocks.
"""

import asyncio
import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import asyncpg
import pytest

from shared.db import health_check, transaction
from shared.errors import Conflict, StorageError
from shared.link_store import LinkStore, ScopeStore, _rowcount
from shared.models import PendingLinkState, UserLink


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class _AsyncCM:
    def __init__(self, value=None, error=None):
        self.value = value
        self.error = error
        self.exited_with = "not-exited"

    async def __aenter__(self):
        if self.error is not None:
            raise self.error
        return self.value

    async def __aexit__(self, exc_type, exc, tb):
        self.exited_with = exc_type
        return False


def _conn():
    conn = MagicMock()
    conn.tx = _AsyncCM()
    conn.transaction = MagicMock(return_value=conn.tx)
    conn.fetchrow = AsyncMock()
    conn.fetch = AsyncMock(return_value=[])
    conn.execute = AsyncMock()
    conn.fetchval = AsyncMock()
    return conn


def _pool(conn, acquire_error=None):
    pool = MagicMock()
    pool.acquire = MagicMock(return_value=_AsyncCM(conn, acquire_error))
    pool.fetchrow = conn.fetchrow
    pool.fetch = conn.fetch
    pool.execute = conn.execute
    pool.fetchval = conn.fetchval
    return pool


def _link_row(**overrides):
    now = datetime.now(timezone.utc)
    row = {
        "id": uuid.uuid4(),
        "discord_id": 7,
        "telegram_id": 42,
        "guild_id": 1000,
        "created_at": now,
        "updated_at": now,
        "added_to_group_at": None,
        "last_check": None,
    }
    row.update(overrides)
    return row


# ---------------------------------------------------------------------------
# shared.db.transaction
# ---------------------------------------------------------------------------


class TestTransaction:
    @pytest.mark.asyncio
    async def test_yields_connection_inside_transaction(self):
        conn = _conn()
        pool = _pool(conn)

        async with transaction(pool, acquire_timeout=3) as got:
            assert got is conn

        pool.acquire.assert_called_once_with(timeout=3)
        assert conn.tx.exited_with is None

    @pytest.mark.asyncio
    async def test_driver_error_becomes_storage_error_and_rolls_back(self):
        conn = _conn()
        with pytest.raises(StorageError):
            async with transaction(_pool(conn)):
                raise OSError("connection reset")
        assert conn.tx.exited_with is OSError

    @pytest.mark.asyncio
    async def test_acquire_timeout_becomes_storage_error(self):
        pool = _pool(_conn(), acquire_error=asyncio.TimeoutError())
        with pytest.raises(StorageError):
            async with transaction(pool):
                pass

    @pytest.mark.asyncio
    async def test_domain_errors_pass_through(self):
        """A Conflict raised in the body is not re-labelled as a storage error."""
        with pytest.raises(Conflict):
            async with transaction(_pool(_conn())):
                raise Conflict()


class TestHealthCheck:
    @pytest.mark.asyncio
    async def test_healthy(self):
        conn = _conn()
        conn.fetchval.return_value = 1
        assert await health_check(_pool(conn)) is True

    @pytest.mark.asyncio
    async def test_unreachable(self):
        pool = _pool(_conn(), acquire_error=OSError("refused"))
        assert await health_check(pool) is False


# ---------------------------------------------------------------------------
# LinkStore
# ---------------------------------------------------------------------------


class TestLinkStore:
    @pytest.mark.asyncio
    async def test_create_pending_state(self):
        conn = _conn()
        now = datetime.now(timezone.utc)
        conn.fetchrow.return_value = {
            "id": uuid.uuid4(),
            "state_token": "tok",
            "telegram_id": 42,
            "created_at": now,
            "expires_at": now + timedelta(minutes=15),
        }
        store = LinkStore(_pool(conn))

        state = await store.create_pending_state(42, "tok", 900, conn=conn)

        assert isinstance(state, PendingLinkState)
        assert state.token == "tok"
        args = conn.fetchrow.await_args.args
        assert args[1:] == ("tok", 42, 900.0)

    @pytest.mark.asyncio
    async def test_consume_filters_expired_and_deletes(self):
        conn = _conn()
        conn.fetchrow.return_value = None
        store = LinkStore(_pool(conn))

        assert await store.consume_pending_state("tok") is None
        sql = conn.fetchrow.await_args.args[0]
        assert "DELETE FROM oauth_states" in sql
        assert "expires_at > NOW()" in sql

    @pytest.mark.asyncio
    async def test_create_link_unique_violation_is_conflict(self):
        conn = _conn()
        conn.fetchrow.side_effect = asyncpg.UniqueViolationError("duplicate key")
        store = LinkStore(_pool(conn))

        with pytest.raises(Conflict):
            await store.create_link(7, 42, 1000, conn=conn)

    @pytest.mark.asyncio
    async def test_create_link_returns_model(self):
        conn = _conn()
        conn.fetchrow.return_value = _link_row()
        store = LinkStore(_pool(conn))

        link = await store.create_link(7, 42, 1000, conn=conn)

        assert isinstance(link, UserLink)
        assert (link.discord_id, link.telegram_id, link.guild_id) == (7, 42, 1000)

    @pytest.mark.asyncio
    async def test_list_links_for_guild(self):
        conn = _conn()
        conn.fetch.return_value = [_link_row(discord_id=1), _link_row(discord_id=2)]
        store = LinkStore(_pool(conn))

        links = await store.list_links_for_guild(1000)

        assert [l.discord_id for l in links] == [1, 2]
        assert conn.fetch.await_args.args[1] == 1000

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status,expected", [("DELETE 1", True), ("DELETE 0", False)])
    async def test_delete_link_reports_whether_a_row_went(self, status, expected):
        conn = _conn()
        conn.execute.return_value = status
        store = LinkStore(_pool(conn))
        assert await store.delete_link(7) is expected

    @pytest.mark.asyncio
    async def test_savepoint_opens_nested_transaction(self):
        conn = _conn()
        store = LinkStore(_pool(conn))
        with pytest.raises(OSError):
            async with store.savepoint(conn):
                raise OSError("statement failed")
        assert conn.tx.exited_with is OSError

    def test_rowcount_tolerates_odd_status(self):
        assert _rowcount("DELETE 3") == 3
        assert _rowcount("") == 0
        assert _rowcount(None) == 0


class TestScopeStore:
    @pytest.mark.asyncio
    async def test_allowed_role_ids(self):
        conn = _conn()
        conn.fetch.return_value = [{"role_id": 555}, {"role_id": 777}]
        scopes = ScopeStore(_pool(conn))

        assert await scopes.allowed_role_ids(1000) == frozenset({555, 777})

    @pytest.mark.asyncio
    async def test_list_allowed_guilds(self):
        conn = _conn()
        conn.fetch.return_value = [
            {"guild_id": 1000, "name": "Home", "telegram_group_id": -100500},
            {"guild_id": 2000, "name": "Partner", "telegram_group_id": None},
        ]
        scopes = ScopeStore(_pool(conn))

        home, partner = await scopes.list_allowed_guilds()
        assert (home.guild_id, home.name, home.telegram_group_id) == (1000, "Home", -100500)
        assert partner.telegram_group_id is None
        assert "LEFT JOIN telegram_groups" in conn.fetch.await_args.args[0]

    @pytest.mark.asyncio
    async def test_telegram_group_for_mapped_guild(self):
        conn = _conn()
        conn.fetchval.return_value = -100777
        scopes = ScopeStore(_pool(conn))

        assert await scopes.telegram_group_for(2000, conn=conn) == -100777
        assert conn.fetchval.await_args.args[1] == 2000

    @pytest.mark.asyncio
    async def test_telegram_group_for_unmapped_guild(self):
        conn = _conn()
        conn.fetchval.return_value = None
        scopes = ScopeStore(_pool(conn))

        assert await scopes.telegram_group_for(2000) is None
