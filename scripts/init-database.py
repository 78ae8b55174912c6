#!/usr/bin/env python3
"""
Create the rolegate schema and report what is configured.

Usage:
  /opt/rolegate/venv/bin/python3 /opt/rolegate/scripts/init-database.py
  /opt/rolegate/venv/bin/python3 /opt/rolegate/scripts/init-database.py --seed-home-guild "My Server"

Allowed roles, channels and extra guild-to-group mappings are managed
outside this service; this script only ensures the tables exist and,
optionally, registers the configured home guild and its Telegram group
so the verifier has something to scan.
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from shared.config import load_config
from shared.db import get_connection_pool, init_database
from shared.secrets import get_optional_secret

logger = logging.getLogger("scripts.init_database")

_COUNTED_TABLES = (
    "oauth_states",
    "user_links",
    "allowed_guilds",
    "allowed_roles",
    "allowed_channels",
    "telegram_groups",
)


async def initialise(config_path: Optional[Path], seed_guild_name: Optional[str]) -> None:
    settings = load_config(config_path)
    pool = await get_connection_pool(
        settings.database, password=get_optional_secret("database_password")
    )
    try:
        await init_database(pool)

        if seed_guild_name:
            guild_id = settings.discord.guild_id
            await pool.execute(
                """
                INSERT INTO allowed_guilds (guild_id, name)
                VALUES ($1, $2)
                ON CONFLICT (guild_id) DO UPDATE SET name = EXCLUDED.name
                """,
                guild_id,
                seed_guild_name,
            )
            await pool.execute(
                """
                INSERT INTO telegram_groups (guild_id, telegram_group_id, owner)
                VALUES ($1, $2, $3)
                ON CONFLICT (guild_id) DO UPDATE
                SET telegram_group_id = EXCLUDED.telegram_group_id,
                    owner = EXCLUDED.owner,
                    updated_at = NOW()
                """,
                guild_id,
                settings.telegram.group_id,
                seed_guild_name,
            )
            logger.info(
                "Registered home guild %s (%s) for group %s",
                guild_id,
                seed_guild_name,
                settings.telegram.group_id,
            )

        for table in _COUNTED_TABLES:
            count = await pool.fetchval(f"SELECT COUNT(*) FROM {table}")
            logger.info("%-17s %d row(s)", table, count)

        roles = await pool.fetchval(
            "SELECT COUNT(*) FROM allowed_roles WHERE guild_id = $1",
            settings.discord.guild_id,
        )
        if not roles:
            logger.warning(
                "No allowed roles for home guild %s: the verifier will skip it",
                settings.discord.guild_id,
            )
    finally:
        await pool.close()


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Initialise the rolegate database")
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to settings.toml (default: $ROLEGATE_CONFIG or /etc/rolegate/settings.toml)",
    )
    parser.add_argument(
        "--seed-home-guild",
        metavar="NAME",
        default=None,
        help=(
            "Register the configured discord.guild_id under this name and map it "
            "to telegram.group_id"
        ),
    )
    return parser


def main() -> int:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    )
    args = _build_parser().parse_args()
    if args.config is not None and not args.config.exists():
        logger.error("Config file not found: %s", args.config)
        return 2
    asyncio.run(initialise(args.config, args.seed_home_guild))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
