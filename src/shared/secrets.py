"""
Secrets and keychain integration: retrieves credentials from the
system keychain at startup.

Credentials (bot tokens, the Discord client secret, the cron secret)
are **never** stored in ``settings.toml``.  They live in the system
keychain (``secret-tool`` / ``libsecret``) and are read once when the
service starts; an environment variable fallback exists for containers
and development machines.
"""

from __future__ import annotations

import logging
import os
import subprocess
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger("shared.secrets")

_SERVICE = "rolegate"


# ---------------------------------------------------------------------------
# System keychain
# ---------------------------------------------------------------------------


def _env_key(key_name: str) -> str:
    return f"ROLEGATE_{key_name.upper().replace('-', '_')}"


def _lookup_keychain(key_name: str, service: str) -> Optional[str]:
    try:
        result = subprocess.run(
            ["secret-tool", "lookup", "service", service, "key", key_name],
            capture_output=True,
            text=True,
            timeout=10,
        )
    except FileNotFoundError:
        logger.debug("secret-tool not installed; skipping keychain lookup")
        return None
    except subprocess.TimeoutExpired:
        logger.warning("secret-tool timed out looking up '%s'", key_name)
        return None
    secret = result.stdout.strip()
    return secret or None


def get_secret(key_name: str, service: str = _SERVICE) -> str:
    """Retrieve a secret from the system keychain.

    Uses ``secret-tool`` (libsecret) under the hood::

        secret-tool lookup service rolegate key <key_name>

    Falls back to the environment variable ``ROLEGATE_<KEY_NAME>``.

    Raises:
        RuntimeError: If the secret is found in neither place.
    """
    secret = _lookup_keychain(key_name, service)
    if secret:
        return secret

    env_key = _env_key(key_name)
    env_val = os.environ.get(env_key)
    if env_val:
        logger.info("Using env var for secret '%s' (%s)", key_name, env_key)
        return env_val

    raise RuntimeError(
        f"Secret '{key_name}' not found in keychain (service={service}) "
        f"or environment variable {env_key}"
    )


def get_optional_secret(key_name: str, service: str = _SERVICE) -> Optional[str]:
    """Like :func:`get_secret` but returns ``None`` when the secret is absent."""
    try:
        return get_secret(key_name, service)
    except RuntimeError:
        return None


@dataclass(frozen=True)
class Secrets:
    """All credentials the service needs, resolved once at startup."""

    discord_client_secret: str
    discord_bot_token: str
    telegram_bot_token: str
    cron_secret: str
    database_password: Optional[str] = None

    def __repr__(self) -> str:
        return "Secrets(<redacted>)"


def load_secrets() -> Secrets:
    """Resolve every required secret, failing fast on the first missing one."""
    return Secrets(
        discord_client_secret=get_secret("discord_client_secret"),
        discord_bot_token=get_secret("discord_bot_token"),
        telegram_bot_token=get_secret("telegram_bot_token"),
        cron_secret=get_secret("cron_secret"),
        database_password=get_optional_secret("database_password"),
    )
