"""
Telegram side of the gate: invite a user into the group, or remove them.

``GroupGateway`` is the capability the dispatcher depends on;
``TelegramGroupGateway`` implements it with the ``python-telegram-bot``
Bot API client.  The bot must be an administrator of the group with the
"invite users" and "ban users" rights.
"""

from __future__ import annotations

import html
import logging
from abc import ABC, abstractmethod

from telegram import Bot
from telegram.constants import ParseMode

logger = logging.getLogger("dispatcher.telegram_group")


class GroupGateway(ABC):
    """Side-effecting group membership operations."""

    @abstractmethod
    async def send_invite(self, telegram_id: int, group_id: int) -> None:
        """Create a single-use invite for *group_id* and DM it to the user."""
        ...

    @abstractmethod
    async def remove_member(self, telegram_id: int, group_id: int) -> None:
        """Remove the user from *group_id* while allowing a later re-join."""
        ...


def make_invite_message(link: str) -> str:
    return "\n".join(
        [
            "<b>Your accounts are linked!</b>",
            "",
            f'<a href="{html.escape(link, quote=True)}">Tap here to join the group</a>',
            "",
            "This link works once.",
        ]
    )


class TelegramGroupGateway(GroupGateway):
    """``python-telegram-bot`` implementation of :class:`GroupGateway`."""

    def __init__(self, bot: Bot) -> None:
        self._bot = bot

    async def send_invite(self, telegram_id: int, group_id: int) -> None:
        invite = await self._bot.create_chat_invite_link(
            chat_id=group_id,
            member_limit=1,
            name=f"rolegate:{telegram_id}",
        )
        logger.debug("Invite link created for telegram_id=%s", telegram_id)
        await self._bot.send_message(
            chat_id=telegram_id,
            text=make_invite_message(invite.invite_link),
            parse_mode=ParseMode.HTML,
        )
        logger.info("Invite sent to telegram_id=%s", telegram_id)

    async def remove_member(self, telegram_id: int, group_id: int) -> None:
        # Ban + unban is a kick that leaves the user free to re-join later.
        await self._bot.ban_chat_member(chat_id=group_id, user_id=telegram_id)
        logger.debug("telegram_id=%s banned, unbanning to allow re-entry", telegram_id)
        await self._bot.unban_chat_member(
            chat_id=group_id, user_id=telegram_id, only_if_banned=True
        )
        logger.info("telegram_id=%s removed from group %s", telegram_id, group_id)
