"""
Configuration loading: reads ``settings.toml`` once at startup and turns
it into an immutable :class:`Settings` value.

The settings object is passed explicitly into every component; nothing
in the service looks configuration up from module globals.  Secrets are
deliberately absent here (see :mod:`shared.secrets`).
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional

import toml

logger = logging.getLogger("shared.config")

_DEFAULT_CONFIG_PATH = Path("/etc/rolegate/settings.toml")

_REQUIRED_KEYS = [
    ("database", "database"),
    ("discord", "client_id"),
    ("discord", "oauth_redirect_uri"),
    ("discord", "guild_id"),
    ("telegram", "group_id"),
    ("telegram", "account_link_url"),
]


@dataclass(frozen=True)
class DatabaseSettings:
    database: str
    host: str = "localhost"
    port: int = 5432
    user: str = "rolegate"
    min_size: int = 2
    max_size: int = 10
    acquire_timeout_seconds: float = 10.0
    command_timeout_seconds: float = 30.0


@dataclass(frozen=True)
class DiscordSettings:
    client_id: str
    oauth_redirect_uri: str
    guild_id: int
    api_base_url: str = "https://discord.com/api/v10"
    authorize_url: str = "https://discord.com/oauth2/authorize"
    request_timeout_seconds: float = 10.0


@dataclass(frozen=True)
class TelegramSettings:
    group_id: int
    account_link_url: str


@dataclass(frozen=True)
class OAuthSettings:
    state_ttl_seconds: int = 900


@dataclass(frozen=True)
class VerifierSettings:
    interval_seconds: float = 24 * 60 * 60
    member_delay_seconds: float = 1.0
    remove_departed_members: bool = True
    run_on_startup: bool = False


@dataclass(frozen=True)
class ApiSettings:
    host: str = "0.0.0.0"
    port: int = 8080


@dataclass(frozen=True)
class AuditSettings:
    log_path: Path = Path("/var/log/rolegate/audit.log")


@dataclass(frozen=True)
class Settings:
    database: DatabaseSettings
    discord: DiscordSettings
    telegram: TelegramSettings
    oauth: OAuthSettings
    verifier: VerifierSettings
    api: ApiSettings
    audit: AuditSettings


def _validate_required(config: Dict[str, Any]) -> None:
    for keys in _REQUIRED_KEYS:
        obj = config
        for k in keys:
            if not isinstance(obj, dict) or k not in obj:
                raise KeyError(f"Missing required config key: {'.'.join(keys)}")
            obj = obj[k]


def _section(cls, name: str, values: Dict[str, Any]):
    unknown = sorted(set(values) - {f.name for f in fields(cls)})
    if unknown:
        raise ValueError(f"Unknown key(s) in [{name}]: {', '.join(unknown)}")
    return cls(**values)


def settings_from_dict(config: Dict[str, Any]) -> Settings:
    """Build :class:`Settings` from an already-parsed TOML mapping.

    Raises:
        KeyError: If a required key is missing.
        ValueError: If a numeric key cannot be coerced or a section holds
            an unknown key.
    """
    _validate_required(config)

    db = dict(config["database"])
    discord = dict(config["discord"])
    telegram = dict(config["telegram"])
    oauth = dict(config.get("oauth", {}))
    verifier = dict(config.get("verifier", {}))
    api = dict(config.get("api", {}))
    audit = dict(config.get("audit", {}))

    if "log_path" in audit:
        audit["log_path"] = Path(audit["log_path"])

    settings = Settings(
        database=_section(DatabaseSettings, "database", db),
        discord=_section(
            DiscordSettings,
            "discord",
            {**discord, "guild_id": int(discord["guild_id"])},
        ),
        telegram=_section(
            TelegramSettings,
            "telegram",
            {**telegram, "group_id": int(telegram["group_id"])},
        ),
        oauth=_section(OAuthSettings, "oauth", oauth),
        verifier=_section(VerifierSettings, "verifier", verifier),
        api=_section(ApiSettings, "api", api),
        audit=_section(AuditSettings, "audit", audit),
    )

    if settings.oauth.state_ttl_seconds <= 0:
        raise ValueError("oauth.state_ttl_seconds must be positive")
    if settings.verifier.interval_seconds <= 0:
        raise ValueError("verifier.interval_seconds must be positive")
    return settings


def load_config(path: Optional[Path] = None) -> Settings:
    """Load and validate settings from a TOML file.

    *path* defaults to ``$ROLEGATE_CONFIG``, then ``/etc/rolegate/settings.toml``.

    Raises:
        FileNotFoundError: If the config file does not exist.
        KeyError: If required keys are missing.
        ValueError: If a value is invalid or a key is unknown.
    """
    if path is None:
        path = Path(os.environ.get("ROLEGATE_CONFIG", str(_DEFAULT_CONFIG_PATH)))
    raw = toml.load(path)
    settings = settings_from_dict(raw)
    logger.info("Loaded configuration from %s", path)
    return settings
