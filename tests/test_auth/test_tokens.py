"""Tests for the IDCS token endpoint client."""

from __future__ import annotations

from urllib.parse import parse_qsl

import httpx
import pytest

from oca_auth.auth.tokens import (
    exchange_code_for_tokens,
    extract_error_detail,
    format_http_error,
    refresh_access_token,
    token_endpoint,
)
from oca_auth.exceptions import ConfigError, TokenExchangeError

IDCS = "https://idcs.example.com"


def _form(request: httpx.Request) -> dict[str, str]:
    return dict(parse_qsl(request.content.decode("utf-8")))


class TestRefreshAccessToken:
    async def test_posts_refresh_grant(self, make_client) -> None:
        client, transport = make_client(
            lambda request: httpx.Response(
                200, json={"access_token": "new", "refresh_token": "r2", "expires_in": 1200}
            )
        )
        tokens = await refresh_access_token(IDCS + "/", "client-1", "r1", client=client)

        assert tokens.access_token == "new"
        assert tokens.refresh_token == "r2"
        assert tokens.expires_in == 1200

        request = transport.requests[0]
        assert request.method == "POST"
        assert str(request.url) == "https://idcs.example.com/oauth2/v1/token"
        assert request.headers["content-type"] == "application/x-www-form-urlencoded"
        assert _form(request) == {
            "grant_type": "refresh_token",
            "refresh_token": "r1",
            "client_id": "client-1",
        }

    async def test_invalid_grant_detail(self, make_client) -> None:
        client, _ = make_client(
            lambda request: httpx.Response(
                400, json={"error": "invalid_grant", "error_description": "Refresh token expired"}
            )
        )
        with pytest.raises(TokenExchangeError) as exc_info:
            await refresh_access_token(IDCS, "client-1", "r1", client=client)

        assert str(exc_info.value) == (
            "Token refresh failed: 400 (invalid_grant: Refresh token expired)"
        )
        assert exc_info.value.status_code == 400

    async def test_malformed_idcs_url_sends_nothing(self, make_client) -> None:
        client, transport = make_client(lambda request: httpx.Response(200, json={}))
        with pytest.raises(ConfigError, match="Invalid IDCS URL"):
            await refresh_access_token("idcs.example.com", "client-1", "r1", client=client)
        assert transport.requests == []

    async def test_transport_error(self, make_client) -> None:
        def _boom(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        client, _ = make_client(_boom)
        with pytest.raises(TokenExchangeError, match="Token refresh failed: connection refused") as exc_info:
            await refresh_access_token(IDCS, "client-1", "r1", client=client)
        assert exc_info.value.status_code is None

    async def test_malformed_success_body(self, make_client) -> None:
        client, _ = make_client(lambda request: httpx.Response(200, json={"token_type": "Bearer"}))
        with pytest.raises(TokenExchangeError, match="malformed token response"):
            await refresh_access_token(IDCS, "client-1", "r1", client=client)

    async def test_undecodable_success_body(self, make_client) -> None:
        client, _ = make_client(
            lambda request: httpx.Response(
                200,
                content=b'{"access_token": "\xff"}',
                headers={"content-type": "application/json"},
            )
        )
        with pytest.raises(TokenExchangeError, match="malformed token response"):
            await refresh_access_token(IDCS, "client-1", "r1", client=client)


class TestExchangeCode:
    async def test_posts_authorization_code_grant(self, make_client) -> None:
        client, transport = make_client(
            lambda request: httpx.Response(200, json={"access_token": "a", "token_type": "Bearer"})
        )
        tokens = await exchange_code_for_tokens(
            IDCS, "client-1", "code-1", "http://127.0.0.1:48801/auth/oca", "verifier-1",
            client=client,
        )
        assert tokens.access_token == "a"
        assert tokens.refresh_token is None
        assert _form(transport.requests[0]) == {
            "grant_type": "authorization_code",
            "code": "code-1",
            "redirect_uri": "http://127.0.0.1:48801/auth/oca",
            "client_id": "client-1",
            "code_verifier": "verifier-1",
        }

    async def test_unauthorized_without_detail(self, make_client) -> None:
        client, _ = make_client(lambda request: httpx.Response(401))
        with pytest.raises(TokenExchangeError) as exc_info:
            await exchange_code_for_tokens(IDCS, "c", "code", "http://127.0.0.1/cb", "v", client=client)
        assert str(exc_info.value) == "Token exchange failed: 401"

    async def test_malformed_idcs_url(self) -> None:
        with pytest.raises(ConfigError, match="Invalid IDCS URL"):
            await exchange_code_for_tokens("", "c", "code", "http://127.0.0.1/cb", "v")


class TestErrorDetail:
    def _response(self, status: int, **kwargs) -> httpx.Response:
        return httpx.Response(status, request=httpx.Request("POST", IDCS), **kwargs)

    def test_error_only(self) -> None:
        response = self._response(400, json={"error": "invalid_client"})
        assert extract_error_detail(response) == "invalid_client"

    def test_message_fallback(self) -> None:
        response = self._response(503, json={"message": "Service unavailable"})
        assert extract_error_detail(response) == "Service unavailable"

    def test_empty_json_has_no_detail(self) -> None:
        response = self._response(503, json={})
        assert extract_error_detail(response) is None
        assert format_http_error("Token refresh", response) == "Token refresh failed: 503"

    def test_undecodable_json_falls_back_to_text(self) -> None:
        response = self._response(
            400, content=b'{"error": "\xff"}', headers={"content-type": "application/json"}
        )
        detail = extract_error_detail(response)
        assert detail is not None
        assert detail.startswith('{"error": ')
        assert format_http_error("Token refresh", response).startswith("Token refresh failed: 400 (")

    def test_plain_text_collapsed_and_truncated(self) -> None:
        body = "upstream   exploded\n\n" + "x" * 400
        response = self._response(
            502, content=body.encode(), headers={"content-type": "text/plain"}
        )
        detail = extract_error_detail(response)
        assert detail is not None
        assert detail.startswith("upstream exploded x")
        assert len(detail) == 240

    def test_token_endpoint(self) -> None:
        assert token_endpoint("https://idcs.example.com/") == (
            "https://idcs.example.com/oauth2/v1/token"
        )
