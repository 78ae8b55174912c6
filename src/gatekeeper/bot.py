"""
Telegram bot handlers.

The bot only points users at the account-link page; group membership
itself is managed by :mod:`dispatcher.telegram_group`.
"""

from __future__ import annotations

import html
import logging
from urllib.parse import urlencode

from telegram import Update
from telegram.constants import ChatType, ParseMode
from telegram.ext import ContextTypes

from shared.audit import AuditLogger

logger = logging.getLogger("gatekeeper.bot")


def build_link_url(account_link_url: str, telegram_id: int) -> str:
    separator = "&" if "?" in account_link_url else "?"
    return f"{account_link_url}{separator}{urlencode({'telegram_id': telegram_id})}"


async def handle_start(
    update: Update, context: ContextTypes.DEFAULT_TYPE
) -> None:
    """Handle ``/start``: send the account link URL in private chats."""
    chat = update.effective_chat
    user = update.effective_user
    if chat is None or user is None or update.message is None:
        return
    if chat.type != ChatType.PRIVATE:
        logger.debug("Ignoring /start in %s chat %s", chat.type, chat.id)
        return

    url = build_link_url(context.bot_data["account_link_url"], user.id)
    await update.message.reply_text(
        "Link your Discord account to join the group:\n"
        f'<a href="{html.escape(url)}">Link account</a>',
        parse_mode=ParseMode.HTML,
    )
    logger.info("Sent account link to telegram_id=%s", user.id)

    audit: AuditLogger | None = context.bot_data.get("audit")
    if audit:
        audit.record("bot", "command_start", {"telegram_id": user.id})


async def error_handler(
    update: object, context: ContextTypes.DEFAULT_TYPE
) -> None:
    """Global error handler for unhandled exceptions in handlers."""
    logger.error("Unhandled error in bot handler", exc_info=context.error)

    if isinstance(update, Update) and update.effective_chat:
        try:
            await context.bot.send_message(
                chat_id=update.effective_chat.id,
                text="An error occurred. Please try again.",
            )
        except Exception:
            logger.exception("Failed to send error message to user")

    audit: AuditLogger | None = context.bot_data.get("audit")
    if audit:
        audit.record(
            "bot",
            "unhandled_error",
            {"error": str(context.error)},
            success=False,
        )
