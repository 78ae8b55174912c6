"""
Role verification cycle: walks every linked user of every allowed guild
and revokes group access for those who no longer hold a qualifying role.

A cycle runs inside one database transaction.  Per-user writes run in
savepoints so a single failed statement only affects that user.  For a
user who no longer qualifies the ``Remove`` action is enqueued *before*
the link is deleted: a link is never dropped without a removal having
been requested.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import asdict, dataclass
from typing import Awaitable, Callable, Optional

import asyncpg

from dispatcher.actions import ActionDispatcher, Remove
from shared.audit import AuditLogger
from shared.config import Settings
from shared.discord_client import DiscordGateway
from shared.errors import (
    DispatcherClosed,
    MemberNotFound,
    StorageError,
    UpstreamError,
)
from shared.link_store import LinkStore, ScopeStore
from shared.models import UserLink

logger = logging.getLogger("verifier.cycle")

# Statement-level failures stay with the user whose savepoint rolled back.
# Lost connections (PostgresConnectionError, InterfaceError, OSError)
# propagate and abort the cycle.
_WRITE_ERRORS = (StorageError, asyncpg.PostgresError)


@dataclass
class VerificationStats:
    users_checked: int = 0
    users_removed: int = 0
    users_failed: int = 0
    guilds_skipped: int = 0
    duration_seconds: float = 0.0

    def as_dict(self) -> dict:
        return asdict(self)


class RoleVerifier:
    """Reconciles group membership with current Discord roles.

    Args:
        store: Link store (pending states and links).
        scopes: Read-only scoping tables.
        discord: Discord gateway used for member role lookups.
        dispatcher: Queue receiving ``Remove`` actions.
        settings: Immutable service configuration.
        audit: Optional audit trail.
        sleep: Coroutine used for the per-user delay (tests pass a no-op).
    """

    def __init__(
        self,
        store: LinkStore,
        scopes: ScopeStore,
        discord: DiscordGateway,
        dispatcher: ActionDispatcher,
        settings: Settings,
        audit: Optional[AuditLogger] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._store = store
        self._scopes = scopes
        self._discord = discord
        self._dispatcher = dispatcher
        self._settings = settings
        self._audit = audit
        self._sleep = sleep

    def _record(self, action: str, details: dict, success: bool = True) -> None:
        if self._audit is not None:
            self._audit.record("verifier", action, details, success=success)

    async def _purge_expired_states(self) -> None:
        try:
            async with self._store.transaction() as conn:
                purged = await self._store.purge_expired_states(conn=conn)
        except StorageError:
            logger.warning("Could not purge expired OAuth states", exc_info=True)
            return
        if purged:
            logger.info("Purged %d expired OAuth state(s)", purged)

    async def run_cycle(self) -> VerificationStats:
        """Run one full verification pass and return its counters.

        Raises:
            StorageError: The cycle transaction or the roster reads failed.
        """
        stats = VerificationStats()
        started = time.monotonic()
        logger.info("Starting role verification cycle")

        await self._purge_expired_states()

        delay = self._settings.verifier.member_delay_seconds
        async with self._store.transaction() as conn:
            guilds = await self._scopes.list_allowed_guilds(conn=conn)
            for guild in guilds:
                allowed_roles = await self._scopes.allowed_role_ids(
                    guild.guild_id, conn=conn
                )
                if not allowed_roles:
                    logger.warning(
                        "No allowed roles configured for guild %s; skipping",
                        guild.guild_id,
                    )
                    stats.guilds_skipped += 1
                    continue

                group_id = guild.telegram_group_id or self._settings.telegram.group_id
                links = await self._store.list_links_for_guild(guild.guild_id, conn=conn)
                logger.info(
                    "Verifying %d linked user(s) in guild %s", len(links), guild.guild_id
                )
                for index, link in enumerate(links):
                    if index and delay > 0:
                        await self._sleep(delay)
                    await self._verify_user(conn, link, allowed_roles, group_id, stats)

        stats.duration_seconds = round(time.monotonic() - started, 3)
        logger.info(
            "Verification cycle finished: checked=%d removed=%d failed=%d "
            "guilds_skipped=%d in %.1fs",
            stats.users_checked,
            stats.users_removed,
            stats.users_failed,
            stats.guilds_skipped,
            stats.duration_seconds,
        )
        self._record("verification_cycle", stats.as_dict())
        return stats

    async def _verify_user(
        self,
        conn,
        link: UserLink,
        allowed_roles: frozenset[int],
        group_id: int,
        stats: VerificationStats,
    ) -> None:
        stats.users_checked += 1

        try:
            roles = await self._discord.fetch_member_roles(link.guild_id, link.discord_id)
        except MemberNotFound:
            if not self._settings.verifier.remove_departed_members:
                logger.warning(
                    "discord_id=%s is no longer in guild %s; keeping link",
                    link.discord_id,
                    link.guild_id,
                )
                stats.users_failed += 1
                return
            logger.info(
                "discord_id=%s left guild %s; treating as unqualified",
                link.discord_id,
                link.guild_id,
            )
            roles = []
        except UpstreamError as exc:
            logger.warning(
                "Could not fetch roles for discord_id=%s: %s", link.discord_id, exc.message
            )
            stats.users_failed += 1
            return
        except Exception:
            logger.exception(
                "Unexpected error fetching roles for discord_id=%s", link.discord_id
            )
            stats.users_failed += 1
            return

        if allowed_roles.intersection(roles):
            try:
                async with self._store.savepoint(conn):
                    await self._store.mark_checked(link.id, conn=conn)
            except asyncpg.PostgresConnectionError:
                raise
            except _WRITE_ERRORS:
                logger.warning(
                    "Failed to stamp last_check for discord_id=%s",
                    link.discord_id,
                    exc_info=True,
                )
            return

        try:
            self._dispatcher.enqueue(Remove(telegram_id=link.telegram_id, group_id=group_id))
        except DispatcherClosed:
            logger.error(
                "Failed to enqueue removal for telegram_id=%s; link kept",
                link.telegram_id,
            )
            stats.users_failed += 1
            self._record(
                "remove_enqueue_failed",
                {"discord_id": link.discord_id, "telegram_id": link.telegram_id},
                success=False,
            )
            return

        try:
            async with self._store.savepoint(conn):
                await self._store.delete_link(link.discord_id, conn=conn)
        except asyncpg.PostgresConnectionError:
            raise
        except _WRITE_ERRORS:
            # Removal already requested; the link is retried next cycle.
            logger.error(
                "Failed to delete link for discord_id=%s after enqueueing removal",
                link.discord_id,
                exc_info=True,
            )
            stats.users_failed += 1
            self._record(
                "link_delete_failed",
                {"discord_id": link.discord_id, "telegram_id": link.telegram_id},
                success=False,
            )
            return

        stats.users_removed += 1
        logger.info(
            "Removed discord_id=%s / telegram_id=%s: no qualifying role in guild %s",
            link.discord_id,
            link.telegram_id,
            link.guild_id,
        )
        self._record(
            "link_removed",
            {
                "discord_id": link.discord_id,
                "telegram_id": link.telegram_id,
                "guild_id": link.guild_id,
            },
        )
