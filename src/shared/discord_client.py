"""
Discord REST client used by the OAuth linker and the role verifier.

The ``DiscordGateway`` ABC is what the rest of the codebase depends on;
``DiscordClient`` is the production implementation over ``httpx``.
Tests substitute an in-memory fake so no network calls are made.

Any failure to get a usable answer from Discord (transport error,
timeout, non-2xx status, malformed payload) is reported as
:class:`shared.errors.UpstreamError`.  A 404 on the guild-member
endpoint is reported as the more specific
:class:`shared.errors.MemberNotFound`.
"""

from __future__ import annotations

import logging
import urllib.parse
from abc import ABC, abstractmethod
from typing import Any, List, Optional

import httpx

from shared.config import DiscordSettings
from shared.errors import MemberNotFound, UpstreamError
from shared.models import DiscordIdentity

logger = logging.getLogger("shared.discord_client")


class DiscordGateway(ABC):
    """Capabilities the linker and the verifier need from Discord."""

    @abstractmethod
    def authorize_url(self, state: str) -> str:
        """Return the OAuth authorization URL carrying *state*."""
        ...

    @abstractmethod
    async def exchange_code(self, code: str) -> str:
        """Exchange an authorization code for a user access token."""
        ...

    @abstractmethod
    async def fetch_identity(self, access_token: str) -> DiscordIdentity:
        """Return the identity behind *access_token*."""
        ...

    @abstractmethod
    async def fetch_member_roles(self, guild_id: int, user_id: int) -> List[int]:
        """Return the role ids *user_id* currently holds in *guild_id*."""
        ...


class DiscordClient(DiscordGateway):
    """``httpx``-based implementation of :class:`DiscordGateway`.

    Args:
        settings: The ``[discord]`` configuration section.
        client_secret: OAuth client secret (from the keychain).
        bot_token: Bot token used for guild-member lookups.
        http_client: Optional pre-built ``httpx.AsyncClient`` (tests pass
              one backed by ``httpx.MockTransport``).
    """

    def __init__(
        self,
        settings: DiscordSettings,
        client_secret: str,
        bot_token: str,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._settings = settings
        self._client_secret = client_secret
        self._bot_token = bot_token
        self._api = settings.api_base_url.rstrip("/")
        self._http = http_client or httpx.AsyncClient(
            timeout=settings.request_timeout_seconds
        )

    async def close(self) -> None:
        await self._http.aclose()

    # ------------------------------------------------------------------
    # OAuth
    # ------------------------------------------------------------------

    def authorize_url(self, state: str) -> str:
        params = {
            "client_id": self._settings.client_id,
            "redirect_uri": self._settings.oauth_redirect_uri,
            "response_type": "code",
            "scope": "identify",
            "state": state,
        }
        return f"{self._settings.authorize_url}?{urllib.parse.urlencode(params)}"

    async def exchange_code(self, code: str) -> str:
        logger.debug("Exchanging authorization code for access token")
        payload = await self._request(
            "POST",
            "/oauth2/token",
            what="Token exchange",
            data={
                "client_id": self._settings.client_id,
                "client_secret": self._client_secret,
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": self._settings.oauth_redirect_uri,
            },
        )
        token = payload.get("access_token") if isinstance(payload, dict) else None
        if not token:
            raise UpstreamError("Token exchange response has no access_token")
        return str(token)

    async def fetch_identity(self, access_token: str) -> DiscordIdentity:
        logger.debug("Fetching Discord user information")
        payload = await self._request(
            "GET",
            "/users/@me",
            what="User info request",
            headers={"Authorization": f"Bearer {access_token}"},
        )
        try:
            return DiscordIdentity(
                id=int(payload["id"]),
                username=str(payload["username"]),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise UpstreamError(f"Invalid Discord user payload: {exc}") from exc

    # ------------------------------------------------------------------
    # Guild members
    # ------------------------------------------------------------------

    async def fetch_member_roles(self, guild_id: int, user_id: int) -> List[int]:
        payload = await self._request(
            "GET",
            f"/guilds/{guild_id}/members/{user_id}",
            what="Guild member request",
            headers={"Authorization": f"Bot {self._bot_token}"},
            not_found=MemberNotFound,
        )
        roles = payload.get("roles") if isinstance(payload, dict) else None
        if not isinstance(roles, list):
            raise UpstreamError("Guild member payload has no roles list")
        try:
            return [int(role) for role in roles]
        except (TypeError, ValueError) as exc:
            raise UpstreamError(f"Invalid role id in member payload: {exc}") from exc

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _request(
        self,
        method: str,
        path: str,
        *,
        what: str,
        not_found: Optional[type[UpstreamError]] = None,
        **kwargs: Any,
    ) -> Any:
        try:
            resp = await self._http.request(method, f"{self._api}{path}", **kwargs)
        except httpx.HTTPError as exc:
            logger.error("%s failed to send: %s", what, exc)
            raise UpstreamError(f"{what} failed: {exc}") from exc

        if resp.status_code == 404 and not_found is not None:
            raise not_found(f"{what} returned 404")
        if resp.status_code == 429:
            retry_after = resp.headers.get("Retry-After", "?")
            logger.warning("%s rate limited (retry after %ss)", what, retry_after)
            raise UpstreamError(f"{what} rate limited")
        if resp.status_code >= 400:
            logger.error("%s failed: HTTP %d", what, resp.status_code)
            raise UpstreamError(f"{what} failed: HTTP {resp.status_code}")

        try:
            return resp.json()
        except ValueError as exc:
            logger.error("%s returned invalid JSON", what)
            raise UpstreamError(f"{what} returned invalid JSON") from exc
