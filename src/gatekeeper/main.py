"""
Service entry point: loads configuration and secrets, wires the
components together and runs them until SIGINT / SIGTERM.

Runs as a long-lived systemd service.  Four tasks share one event loop:

    - the HTTP server (uvicorn) serving the OAuth routes and ``/cron``
    - Telegram long-polling for the ``/start`` command
    - the action dispatcher consumer
    - the verification scheduler

Shutdown tears them down in reverse dependency order: stop accepting
requests, stop scheduling cycles, stop polling, drain the dispatcher
(it still needs the bot), then close the bot, Discord client, audit
trail and database pool.
"""

from __future__ import annotations

import asyncio
import logging
import signal
from pathlib import Path
from typing import Optional

import uvicorn
from telegram import Update
from telegram.ext import Application, CommandHandler

from dispatcher.actions import ActionDispatcher
from dispatcher.telegram_group import TelegramGroupGateway
from gatekeeper.bot import error_handler, handle_start
from linker.oauth import OAuthLinker
from linker.web import create_app
from shared.audit import AuditLogger
from shared.config import Settings, load_config
from shared.db import get_connection_pool, health_check, init_database
from shared.discord_client import DiscordClient
from shared.link_store import LinkStore, ScopeStore
from shared.secrets import load_secrets
from verifier.cycle import RoleVerifier
from verifier.scheduler import VerificationScheduler

logger = logging.getLogger("gatekeeper.main")


# ---------------------------------------------------------------------------
# Telegram application
# ---------------------------------------------------------------------------


def build_application(
    token: str, settings: Settings, audit: Optional[AuditLogger] = None
) -> Application:
    """Construct the ``python-telegram-bot`` Application (not yet running)."""
    app = Application.builder().token(token).build()
    app.bot_data["account_link_url"] = settings.telegram.account_link_url
    app.bot_data["audit"] = audit
    app.add_handler(CommandHandler("start", handle_start))
    app.add_error_handler(error_handler)
    return app


# ---------------------------------------------------------------------------
# Graceful shutdown
# ---------------------------------------------------------------------------


def _handle_signal(sig: int, shutdown: asyncio.Event) -> None:
    """Signal handler: sets the shutdown event so the main loop exits cleanly."""
    logger.info("Received signal %s, initiating graceful shutdown...", sig)
    shutdown.set()


async def _await_stopped(task: asyncio.Task, name: str, timeout: float = 30.0) -> None:
    try:
        await asyncio.wait_for(task, timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning("%s did not stop within %.0fs; cancelled", name, timeout)
    except asyncio.CancelledError:
        pass
    except Exception:
        logger.exception("%s exited with an error", name)


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------


async def main(config_path: Optional[Path] = None) -> None:
    """Top-level async entry point for the gatekeeper service."""
    # --- config & secrets ---
    settings = load_config(config_path)
    secrets = load_secrets()

    shutdown = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, _handle_signal, sig, shutdown)

    pool = None
    audit = None
    discord = None
    try:
        # --- database ---
        pool = await get_connection_pool(
            settings.database, password=secrets.database_password
        )
        await init_database(pool)
        audit = AuditLogger(pool, settings.audit.log_path)

        store = LinkStore(pool, settings.database.acquire_timeout_seconds)
        scopes = ScopeStore(pool)

        # --- platforms ---
        discord = DiscordClient(
            settings.discord,
            client_secret=secrets.discord_client_secret,
            bot_token=secrets.discord_bot_token,
        )
        application = build_application(secrets.telegram_bot_token, settings, audit)
        dispatcher = ActionDispatcher(TelegramGroupGateway(application.bot))

        # --- domain ---
        linker = OAuthLinker(store, scopes, discord, dispatcher, settings, audit)
        verifier = RoleVerifier(store, scopes, discord, dispatcher, settings, audit)
        scheduler = VerificationScheduler(
            verifier,
            interval_seconds=settings.verifier.interval_seconds,
            run_on_startup=settings.verifier.run_on_startup,
            audit=audit,
        )

        async def probe() -> bool:
            return await health_check(pool)

        web_app = create_app(linker, scheduler.trigger, secrets.cron_secret, probe)
        server = uvicorn.Server(
            uvicorn.Config(
                web_app,
                host=settings.api.host,
                port=settings.api.port,
                log_config=None,
                access_log=False,
            )
        )

        # --- start ---
        await application.initialize()
        await application.start()
        await application.updater.start_polling(allowed_updates=Update.ALL_TYPES)

        dispatcher_task = asyncio.create_task(dispatcher.run(), name="dispatcher")
        scheduler_task = asyncio.create_task(scheduler.run(), name="scheduler")
        server_task = asyncio.create_task(server.serve(), name="http-server")
        shutdown_task = asyncio.create_task(shutdown.wait(), name="shutdown")

        logger.info(
            "Gatekeeper running: http=%s:%d group=%s guild=%s",
            settings.api.host,
            settings.api.port,
            settings.telegram.group_id,
            settings.discord.guild_id,
        )
        audit.record("gatekeeper", "startup", {"port": settings.api.port})

        # uvicorn may consume the signal itself, ending the server task first
        done, _ = await asyncio.wait(
            {shutdown_task, server_task, scheduler_task, dispatcher_task},
            return_when=asyncio.FIRST_COMPLETED,
        )
        for task in done - {shutdown_task}:
            if not task.cancelled() and task.exception() is not None:
                logger.error(
                    "Task %s failed", task.get_name(), exc_info=task.exception()
                )
        shutdown_task.cancel()

        # --- teardown, reverse order ---
        server.should_exit = True
        await _await_stopped(server_task, "HTTP server")

        scheduler.stop()
        await _await_stopped(scheduler_task, "Verification scheduler", timeout=300.0)

        if application.updater.running:
            await application.updater.stop()

        await dispatcher.close()
        await _await_stopped(dispatcher_task, "Action dispatcher")
        counts = dispatcher.counts
        logger.info(
            "Dispatcher drained: processed=%d failed=%d",
            counts["processed"],
            counts["failed"],
        )

        if application.running:
            await application.stop()
        await application.shutdown()
        audit.record("gatekeeper", "shutdown", counts)
    finally:
        if discord is not None:
            try:
                await discord.close()
            except Exception:
                logger.exception("Failed to close Discord client")
        if audit is not None:
            try:
                await audit.close()
            except Exception:
                logger.exception("Failed to flush/close audit logger")
        if pool is not None:
            try:
                await pool.close()
            except Exception:
                logger.exception("Failed to close database pool")
        logger.info("Gatekeeper shut down cleanly.")


def run() -> None:
    """Synchronous entry point (called from ``__main__`` or systemd)."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    )
    asyncio.run(main())


if __name__ == "__main__":
    run()
