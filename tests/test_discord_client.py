"""
Unit tests for the httpx-based Discord client, driven by
``httpx.MockTransport``.
"""

from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from conftest import make_settings
from shared.discord_client import DiscordClient
from shared.errors import MemberNotFound, UpstreamError


def _client(handler):
    settings = make_settings()
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return DiscordClient(
        settings.discord, client_secret="s3cret", bot_token="bot-token", http_client=http
    )


class TestAuthorizeUrl:
    def test_contains_oauth_parameters(self):
        client = _client(lambda request: httpx.Response(200))
        url = urlparse(client.authorize_url("abc"))
        params = parse_qs(url.query)

        assert f"{url.scheme}://{url.netloc}{url.path}" == "https://discord.com/oauth2/authorize"
        assert params["client_id"] == ["client-1"]
        assert params["redirect_uri"] == ["https://gate.test/oauth/callback"]
        assert params["response_type"] == ["code"]
        assert params["scope"] == ["identify"]
        assert params["state"] == ["abc"]


class TestExchangeCode:
    @pytest.mark.asyncio
    async def test_posts_form_and_returns_token(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["method"] = request.method
            seen["path"] = request.url.path
            seen["form"] = parse_qs(request.content.decode())
            return httpx.Response(200, json={"access_token": "tok", "token_type": "Bearer"})

        token = await _client(handler).exchange_code("the-code")

        assert token == "tok"
        assert seen["method"] == "POST"
        assert seen["path"].endswith("/oauth2/token")
        assert seen["form"]["code"] == ["the-code"]
        assert seen["form"]["grant_type"] == ["authorization_code"]

    @pytest.mark.asyncio
    async def test_rejected_code_is_upstream_error(self):
        client = _client(lambda request: httpx.Response(400, json={"error": "invalid_grant"}))
        with pytest.raises(UpstreamError):
            await client.exchange_code("bad")

    @pytest.mark.asyncio
    async def test_missing_token_is_upstream_error(self):
        client = _client(lambda request: httpx.Response(200, json={}))
        with pytest.raises(UpstreamError):
            await client.exchange_code("code")

    @pytest.mark.asyncio
    async def test_transport_error_is_upstream_error(self):
        def handler(request):
            raise httpx.ConnectTimeout("timed out", request=request)

        with pytest.raises(UpstreamError):
            await _client(handler).exchange_code("code")


class TestFetchIdentity:
    @pytest.mark.asyncio
    async def test_returns_id_and_username(self):
        def handler(request):
            assert request.headers["Authorization"] == "Bearer tok"
            return httpx.Response(200, json={"id": "80351110224678912", "username": "nelly"})

        identity = await _client(handler).fetch_identity("tok")
        assert identity.id == 80351110224678912
        assert identity.username == "nelly"

    @pytest.mark.asyncio
    async def test_invalid_json_is_upstream_error(self):
        client = _client(lambda request: httpx.Response(200, content=b"<html>"))
        with pytest.raises(UpstreamError):
            await client.fetch_identity("tok")


class TestFetchMemberRoles:
    @pytest.mark.asyncio
    async def test_uses_bot_token_and_parses_roles(self):
        def handler(request):
            assert request.headers["Authorization"] == "Bot bot-token"
            assert request.url.path.endswith("/guilds/1000/members/7")
            return httpx.Response(200, json={"roles": ["555", "777"]})

        roles = await _client(handler).fetch_member_roles(1000, 7)
        assert roles == [555, 777]

    @pytest.mark.asyncio
    async def test_unknown_member_raises_member_not_found(self):
        client = _client(lambda request: httpx.Response(404, json={"code": 10007}))
        with pytest.raises(MemberNotFound):
            await client.fetch_member_roles(1000, 7)

    @pytest.mark.asyncio
    async def test_rate_limit_is_upstream_error(self):
        client = _client(
            lambda request: httpx.Response(429, headers={"Retry-After": "2"}, json={})
        )
        with pytest.raises(UpstreamError) as excinfo:
            await client.fetch_member_roles(1000, 7)
        assert not isinstance(excinfo.value, MemberNotFound)
