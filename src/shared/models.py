"""Row types for the persisted state."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping, Optional
from uuid import UUID


@dataclass(frozen=True, slots=True)
class PendingLinkState:
    """Single-use token binding a Telegram user to an OAuth attempt."""

    id: UUID
    token: str
    telegram_id: int
    created_at: datetime
    expires_at: datetime

    @classmethod
    def from_record(cls, row: Mapping[str, Any]) -> "PendingLinkState":
        return cls(
            id=row["id"],
            token=row["state_token"],
            telegram_id=int(row["telegram_id"]),
            created_at=row["created_at"],
            expires_at=row["expires_at"],
        )


@dataclass(frozen=True, slots=True)
class UserLink:
    """Durable pairing of one Discord identity to one Telegram identity."""

    id: UUID
    discord_id: int
    telegram_id: int
    guild_id: int
    created_at: datetime
    updated_at: datetime
    added_to_group_at: Optional[datetime] = None
    last_check: Optional[datetime] = None

    @classmethod
    def from_record(cls, row: Mapping[str, Any]) -> "UserLink":
        return cls(
            id=row["id"],
            discord_id=int(row["discord_id"]),
            telegram_id=int(row["telegram_id"]),
            guild_id=int(row["guild_id"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            added_to_group_at=row["added_to_group_at"],
            last_check=row["last_check"],
        )


@dataclass(frozen=True, slots=True)
class AllowedGuild:
    guild_id: int
    name: str
    # Telegram group gated by this guild; None means the configured default.
    telegram_group_id: Optional[int] = None

    @classmethod
    def from_record(cls, row: Mapping[str, Any]) -> "AllowedGuild":
        group_id = row["telegram_group_id"]
        return cls(
            guild_id=int(row["guild_id"]),
            name=row["name"],
            telegram_group_id=int(group_id) if group_id is not None else None,
        )


@dataclass(frozen=True, slots=True)
class DiscordIdentity:
    """The subset of ``GET /users/@me`` the linker needs."""

    id: int
    username: str
