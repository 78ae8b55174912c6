"""
Shared fixtures: in-memory stand-ins for the stores, the Discord gateway
and the dispatcher, so the linker and verifier can be exercised without
PostgreSQL or network access.
"""

from __future__ import annotations

import dataclasses
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

import pytest

from shared.config import settings_from_dict
from shared.discord_client import DiscordGateway
from shared.errors import Conflict, DispatcherClosed, StorageError
from shared.models import AllowedGuild, DiscordIdentity, PendingLinkState, UserLink

HOME_GUILD = 1000
GROUP_ID = -100500


def _now() -> datetime:
    return datetime.now(timezone.utc)


def make_settings(**overrides):
    config = {
        "database": {"database": "rolegate_test"},
        "discord": {
            "client_id": "client-1",
            "oauth_redirect_uri": "https://gate.test/oauth/callback",
            "guild_id": HOME_GUILD,
        },
        "telegram": {
            "group_id": GROUP_ID,
            "account_link_url": "https://gate.test/oauth/start",
        },
        "verifier": {"member_delay_seconds": 0},
    }
    for section, values in overrides.items():
        config.setdefault(section, {}).update(values)
    return settings_from_dict(config)


class FakeLinkStore:
    """Dictionary-backed ``LinkStore``.

    ``fail_on`` holds method names that raise ``StorageError``; ``raise_on``
    maps method names to a specific exception instance.  ``events`` is
    shared with :class:`RecordingDispatcher` to check call ordering.
    """

    def __init__(self, events: Optional[list] = None) -> None:
        self.states: Dict[str, PendingLinkState] = {}
        self.links: Dict[uuid.UUID, UserLink] = {}
        self.fail_on: set[str] = set()
        self.raise_on: Dict[str, Exception] = {}
        self.events = events if events is not None else []
        self.transactions = 0
        self.savepoints = 0

    def _maybe_fail(self, name: str) -> None:
        if name in self.raise_on:
            raise self.raise_on[name]
        if name in self.fail_on:
            raise StorageError(f"{name} failed")

    @asynccontextmanager
    async def transaction(self):
        self._maybe_fail("transaction")
        self.transactions += 1
        yield object()

    @asynccontextmanager
    async def savepoint(self, conn):
        self.savepoints += 1
        yield

    # -- pending states --

    async def create_pending_state(self, telegram_id, token, ttl_seconds, conn=None):
        self._maybe_fail("create_pending_state")
        now = _now()
        state = PendingLinkState(
            id=uuid.uuid4(),
            token=token,
            telegram_id=telegram_id,
            created_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
        )
        self.states[token] = state
        return state

    async def consume_pending_state(self, token, conn=None):
        self._maybe_fail("consume_pending_state")
        state = self.states.pop(token, None)
        if state is None or state.expires_at <= _now():
            return None
        return state

    async def purge_expired_states(self, conn=None):
        self._maybe_fail("purge_expired_states")
        now = _now()
        expired = [t for t, s in self.states.items() if s.expires_at <= now]
        for token in expired:
            del self.states[token]
        return len(expired)

    def expire(self, token: str) -> None:
        state = self.states[token]
        self.states[token] = dataclasses.replace(
            state, expires_at=_now() - timedelta(seconds=1)
        )

    # -- links --

    def add_link(self, discord_id: int, telegram_id: int, guild_id: int = HOME_GUILD) -> UserLink:
        now = _now()
        link = UserLink(
            id=uuid.uuid4(),
            discord_id=discord_id,
            telegram_id=telegram_id,
            guild_id=guild_id,
            created_at=now,
            updated_at=now,
        )
        self.links[link.id] = link
        return link

    async def find_link_by_telegram_id(self, telegram_id, conn=None):
        self._maybe_fail("find_link_by_telegram_id")
        return next((l for l in self.links.values() if l.telegram_id == telegram_id), None)

    async def find_link_by_discord_id(self, discord_id, conn=None):
        self._maybe_fail("find_link_by_discord_id")
        return next((l for l in self.links.values() if l.discord_id == discord_id), None)

    async def create_link(self, discord_id, telegram_id, guild_id, conn=None):
        self._maybe_fail("create_link")
        for link in self.links.values():
            if link.discord_id == discord_id or link.telegram_id == telegram_id:
                raise Conflict()
        return self.add_link(discord_id, telegram_id, guild_id)

    async def mark_added_to_group(self, link_id, conn=None):
        self._maybe_fail("mark_added_to_group")
        self.links[link_id] = dataclasses.replace(
            self.links[link_id], added_to_group_at=_now()
        )

    async def mark_checked(self, link_id, conn=None):
        self._maybe_fail("mark_checked")
        self.links[link_id] = dataclasses.replace(self.links[link_id], last_check=_now())

    async def list_links_for_guild(self, guild_id, conn=None):
        self._maybe_fail("list_links_for_guild")
        return [l for l in self.links.values() if l.guild_id == guild_id]

    async def delete_link(self, discord_id, conn=None):
        self.events.append(("delete_link", discord_id))
        self._maybe_fail("delete_link")
        for link_id, link in list(self.links.items()):
            if link.discord_id == discord_id:
                del self.links[link_id]
                return True
        return False


class FakeScopeStore:
    def __init__(self) -> None:
        self.guilds: List[AllowedGuild] = []
        self.roles: Dict[int, frozenset] = {}

    def allow(
        self,
        guild_id: int,
        *role_ids: int,
        name: str = "guild",
        telegram_group_id: Optional[int] = None,
    ) -> None:
        self.guilds.append(
            AllowedGuild(guild_id=guild_id, name=name, telegram_group_id=telegram_group_id)
        )
        self.roles[guild_id] = frozenset(role_ids)

    async def list_allowed_guilds(self, conn=None):
        return list(self.guilds)

    async def allowed_role_ids(self, guild_id, conn=None):
        return self.roles.get(guild_id, frozenset())

    async def telegram_group_for(self, guild_id, conn=None):
        return next(
            (g.telegram_group_id for g in self.guilds if g.guild_id == guild_id), None
        )


class FakeDiscord(DiscordGateway):
    """Scripted Discord: codes map to identities, members to roles or errors."""

    def __init__(self) -> None:
        self.identities: Dict[str, DiscordIdentity] = {}
        self.members: Dict[Tuple[int, int], object] = {}
        self.exchange_error: Optional[Exception] = None
        self.role_lookups: List[Tuple[int, int]] = []

    def authorize_url(self, state: str) -> str:
        return f"https://discord.test/oauth2/authorize?state={state}"

    async def exchange_code(self, code: str) -> str:
        if self.exchange_error is not None:
            raise self.exchange_error
        return f"token-for-{code}"

    async def fetch_identity(self, access_token: str) -> DiscordIdentity:
        return self.identities[access_token.removeprefix("token-for-")]

    async def fetch_member_roles(self, guild_id: int, user_id: int) -> List[int]:
        self.role_lookups.append((guild_id, user_id))
        result = self.members[(guild_id, user_id)]
        if isinstance(result, Exception):
            raise result
        return list(result)


class RecordingDispatcher:
    """Collects enqueued actions instead of performing them."""

    def __init__(self, events: Optional[list] = None) -> None:
        self.actions: list = []
        self.events = events if events is not None else []
        self.closed = False

    def enqueue(self, action) -> None:
        self.events.append(("enqueue", action))
        if self.closed:
            raise DispatcherClosed("closed")
        self.actions.append(action)


@pytest.fixture
def events():
    return []


@pytest.fixture
def store(events):
    return FakeLinkStore(events)


@pytest.fixture
def scopes():
    return FakeScopeStore()


@pytest.fixture
def discord():
    return FakeDiscord()


@pytest.fixture
def dispatcher(events):
    return RecordingDispatcher(events)


@pytest.fixture
def settings():
    return make_settings()
