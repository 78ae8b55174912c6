"""
OAuth linker: ties one Telegram account to one Discord account.

Flow::

    start(telegram_id)      -> pending state + Discord authorize URL
    callback(code, state)   -> consume state, exchange code, fetch identity,
                               check uniqueness + insert (one transaction),
                               enqueue Invite to the guild's group,
                               stamp added_to_group_at

Each callback step is a hard fail point.  The pending state is consumed
(and committed) before Discord is contacted, so a token is usable at most
once even if a later step fails; the user simply restarts the flow.
"""

from __future__ import annotations

import logging
import secrets
from typing import Optional

from dispatcher.actions import ActionDispatcher, Invite
from shared.audit import AuditLogger
from shared.config import Settings
from shared.discord_client import DiscordGateway
from shared.errors import (
    AlreadyLinked,
    Conflict,
    DispatcherClosed,
    GatekeeperError,
    InvalidInput,
    InvalidOrExpiredState,
)
from shared.link_store import LinkStore, ScopeStore

logger = logging.getLogger("linker.oauth")

# 32 random bytes -> 43 url-safe characters, well above 128 bits.
_TOKEN_BYTES = 32

# telegram_id is stored as BIGINT.
_MAX_TELEGRAM_ID = 2**63 - 1


def validate_telegram_id(telegram_id: object) -> int:
    if isinstance(telegram_id, bool) or not isinstance(telegram_id, int):
        raise InvalidInput("telegram_id must be an integer")
    if telegram_id < 1:
        raise InvalidInput("telegram_id must be a positive integer")
    if telegram_id > _MAX_TELEGRAM_ID:
        raise InvalidInput("telegram_id is out of range")
    return telegram_id


class OAuthLinker:
    """Orchestrates the Discord authorization-code flow.

    Args:
        store: State store for pending states and links.
        scopes: Scoping tables, used to find the guild's Telegram group.
        discord: Discord gateway (real client or a test fake).
        dispatcher: Queue receiving the ``Invite`` action.
        settings: Immutable service configuration.
        audit: Optional audit trail.
    """

    def __init__(
        self,
        store: LinkStore,
        scopes: ScopeStore,
        discord: DiscordGateway,
        dispatcher: ActionDispatcher,
        settings: Settings,
        audit: Optional[AuditLogger] = None,
    ) -> None:
        self._store = store
        self._scopes = scopes
        self._discord = discord
        self._dispatcher = dispatcher
        self._settings = settings
        self._audit = audit

    def _record(self, action: str, details: dict, success: bool = True) -> None:
        if self._audit is not None:
            self._audit.record("linker", action, details, success=success)

    # ------------------------------------------------------------------
    # start
    # ------------------------------------------------------------------

    async def start(self, telegram_id: int) -> str:
        """Create a pending state for *telegram_id* and return the redirect URL.

        Raises:
            InvalidInput: *telegram_id* is not a positive 64-bit integer.
            AlreadyLinked: the Telegram account already has an active link.
            StorageError: the database failed.
        """
        telegram_id = validate_telegram_id(telegram_id)
        logger.info("Starting OAuth flow for telegram_id=%s", telegram_id)

        async with self._store.transaction() as conn:
            existing = await self._store.find_link_by_telegram_id(telegram_id, conn=conn)
            if existing is not None:
                logger.warning(
                    "telegram_id=%s is already linked to discord_id=%s",
                    telegram_id,
                    existing.discord_id,
                )
                raise AlreadyLinked()

            token = secrets.token_urlsafe(_TOKEN_BYTES)
            state = await self._store.create_pending_state(
                telegram_id,
                token,
                self._settings.oauth.state_ttl_seconds,
                conn=conn,
            )

        logger.info(
            "Created OAuth state for telegram_id=%s (expires %s)",
            telegram_id,
            state.expires_at.isoformat(),
        )
        return self._discord.authorize_url(state.token)

    # ------------------------------------------------------------------
    # callback
    # ------------------------------------------------------------------

    async def callback(self, code: str, state_token: str) -> str:
        """Complete the flow and return the linked Discord username.

        Raises:
            InvalidInput: *code* or *state_token* missing.
            InvalidOrExpiredState: unknown, consumed or expired token.
            UpstreamError: Discord token exchange or identity fetch failed.
            Conflict: the Discord account is linked to another Telegram account.
            AlreadyLinked: the Telegram account got linked in the meantime.
            StorageError: the database failed.
        """
        if not code:
            raise InvalidInput("missing authorization code")
        if not state_token:
            raise InvalidInput("missing state")

        # 1. consume the pending state (committed on its own: one-shot)
        async with self._store.transaction() as conn:
            pending = await self._store.consume_pending_state(state_token, conn=conn)
        if pending is None:
            logger.warning("Invalid or expired OAuth state presented")
            raise InvalidOrExpiredState()
        telegram_id = pending.telegram_id
        logger.info("Found valid OAuth state for telegram_id=%s", telegram_id)

        # 2-3. Discord round-trips
        try:
            access_token = await self._discord.exchange_code(code)
            identity = await self._discord.fetch_identity(access_token)
        except GatekeeperError as exc:
            self._record(
                "link_failed",
                {"telegram_id": telegram_id, "reason": type(exc).__name__},
                success=False,
            )
            raise
        logger.info(
            "Retrieved Discord identity discord_id=%s username=%s",
            identity.id,
            identity.username,
        )

        # 4-5. uniqueness check + insert, atomically
        guild_id = self._settings.discord.guild_id
        try:
            async with self._store.transaction() as conn:
                by_discord = await self._store.find_link_by_discord_id(
                    identity.id, conn=conn
                )
                if by_discord is not None:
                    if by_discord.telegram_id == telegram_id:
                        raise AlreadyLinked()
                    raise Conflict()
                by_telegram = await self._store.find_link_by_telegram_id(
                    telegram_id, conn=conn
                )
                if by_telegram is not None:
                    raise AlreadyLinked()
                link = await self._store.create_link(
                    identity.id, telegram_id, guild_id, conn=conn
                )
                group_id = await self._scopes.telegram_group_for(guild_id, conn=conn)
        except (Conflict, AlreadyLinked) as exc:
            logger.warning(
                "Refusing link discord_id=%s telegram_id=%s: %s",
                identity.id,
                telegram_id,
                exc.message,
            )
            self._record(
                "link_refused",
                {
                    "discord_id": identity.id,
                    "telegram_id": telegram_id,
                    "reason": type(exc).__name__,
                },
                success=False,
            )
            raise

        self._record(
            "link_created",
            {"discord_id": identity.id, "telegram_id": telegram_id, "guild_id": guild_id},
        )
        if group_id is None:
            group_id = self._settings.telegram.group_id

        # 6. fire-and-forget invite; the link stays even if this fails
        try:
            self._dispatcher.enqueue(Invite(telegram_id=telegram_id, group_id=group_id))
        except DispatcherClosed:
            logger.error(
                "Failed to enqueue invite for telegram_id=%s; link kept", telegram_id
            )
            self._record("invite_enqueue_failed", {"telegram_id": telegram_id}, success=False)
        else:
            logger.info(
                "Enqueued invite for telegram_id=%s to group %s", telegram_id, group_id
            )
            # 7. stamp only after a successful enqueue
            try:
                async with self._store.transaction() as conn:
                    await self._store.mark_added_to_group(link.id, conn=conn)
            except GatekeeperError:
                logger.error(
                    "Failed to mark telegram_id=%s as added to group", telegram_id
                )

        logger.info(
            "Linked discord_id=%s (%s) to telegram_id=%s",
            identity.id,
            identity.username,
            telegram_id,
        )
        return identity.username
