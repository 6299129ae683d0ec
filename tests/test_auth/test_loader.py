"""Tests for the credential loader: freshness, single-flight refresh, signing."""

from __future__ import annotations

import asyncio
from urllib.parse import parse_qsl

import httpx
import pytest

from oca_auth.auth.loader import (
    OAUTH_DUMMY_KEY,
    REAUTH_HINT,
    CredentialLoader,
    FreshnessState,
    OcaBearerAuth,
    with_reauth_hint,
)
from oca_auth.discovery.cache import DiscoveryCache
from oca_auth.discovery.engine import DiscoveryEngine
from oca_auth.exceptions import TokenRefreshError
from oca_auth.models import (
    ApiKeyCredential,
    DiscoverySettings,
    ModelRegistryEntry,
    OAuthCredential,
    ProviderRegistry,
)

NOW = 1_700_000_000.0
NOW_MS = int(NOW * 1000)
IDCS = "https://idcs.example.com"
GATEWAY = "https://gateway.example.com/litellm"


def _oauth(access: str = "access-0", expires: int = NOW_MS + 60_000, refresh: str = "refresh-0") -> OAuthCredential:
    return OAuthCredential(
        access=access, refresh=refresh, expires=expires,
        enterprise_url=IDCS, account_id="client-1",
    )


class Gateway:
    """Mock identity service plus LiteLLM gateway."""

    def __init__(self, refresh_status: int = 200, refresh_body: dict | None = None) -> None:
        self.refresh_calls = 0
        self.refresh_status = refresh_status
        self.refresh_body = refresh_body or {
            "access_token": "access-1", "refresh_token": "refresh-1", "expires_in": 1800,
        }
        self.discovery_tokens: list[str] = []
        self.api_calls: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/oauth2/v1/token":
            self.refresh_calls += 1
            self.last_refresh_form = dict(parse_qsl(request.content.decode()))
            return httpx.Response(self.refresh_status, json=self.refresh_body)
        if request.url.path == "/litellm/models":
            self.discovery_tokens.append(request.headers["Authorization"])
            return httpx.Response(200, json={"data": [{"id": "oca/gpt-5.3-codex"}, {"id": "oca/llama-4"}]})
        if request.url.path == "/litellm/chat/completions":
            self.api_calls.append(request)
            return httpx.Response(200, json={"ok": True})
        return httpx.Response(404)


@pytest.fixture
def gateway() -> Gateway:
    return Gateway()


@pytest.fixture
def loader_factory(memory_store, make_client):
    def _make(handler, settings: DiscoverySettings | None = None) -> CredentialLoader:
        client, _ = make_client(handler)
        engine = DiscoveryEngine(
            cache=DiscoveryCache(),
            settings=settings or DiscoverySettings(base_urls=[GATEWAY]),
            client=client,
        )
        return CredentialLoader(memory_store, discovery=engine, client=client, clock=lambda: NOW)

    return _make


def _getter(credential):
    async def get():
        return credential

    return get


class TestReauthHint:
    def test_appended_once(self) -> None:
        message = with_reauth_hint("Token refresh failed: 400 (invalid_grant)")
        assert message.endswith(REAUTH_HINT)
        assert with_reauth_hint(message) == message


class TestEnsureFresh:
    async def test_fresh_credential_is_not_refreshed(self, loader_factory, gateway: Gateway) -> None:
        loader = loader_factory(gateway)
        credential = _oauth()

        assert await loader.ensure_fresh(credential) is credential
        assert gateway.refresh_calls == 0
        assert loader.state is FreshnessState.FRESH

    async def test_expired_credential_is_refreshed_and_persisted(
        self, loader_factory, gateway: Gateway, memory_store
    ) -> None:
        loader = loader_factory(gateway)

        fresh = await loader.ensure_fresh(_oauth(expires=NOW_MS - 1))

        assert fresh.access == "access-1"
        assert fresh.refresh == "refresh-1"
        assert fresh.expires == NOW_MS + 1_800_000
        assert fresh.enterprise_url == IDCS
        assert fresh.account_id == "client-1"
        assert memory_store.sets == [("oca", fresh)]
        assert gateway.last_refresh_form == {
            "grant_type": "refresh_token", "refresh_token": "refresh-0", "client_id": "client-1",
        }
        assert loader.state is FreshnessState.FRESH

    async def test_missing_refresh_token_in_response_keeps_previous(self, loader_factory) -> None:
        gateway = Gateway(refresh_body={"access_token": "access-1"})
        loader = loader_factory(gateway)

        fresh = await loader.ensure_fresh(_oauth(expires=NOW_MS - 1))

        assert fresh.refresh == "refresh-0"
        assert fresh.expires == NOW_MS + 3_600_000

    async def test_concurrent_callers_share_one_refresh(self, loader_factory, gateway: Gateway) -> None:
        loader = loader_factory(gateway)
        expired = _oauth(expires=NOW_MS - 1)

        results = await asyncio.gather(*(loader.ensure_fresh(expired) for _ in range(5)))

        assert gateway.refresh_calls == 1
        assert {r.access for r in results} == {"access-1"}

    async def test_stale_snapshot_reuses_refreshed_credential(self, loader_factory, gateway: Gateway) -> None:
        loader = loader_factory(gateway)
        expired = _oauth(expires=NOW_MS - 1)

        await loader.ensure_fresh(expired)
        again = await loader.ensure_fresh(expired)

        assert again.access == "access-1"
        assert gateway.refresh_calls == 1

    async def test_rejected_refresh_carries_hint(self, loader_factory, memory_store) -> None:
        gateway = Gateway(
            refresh_status=400,
            refresh_body={"error": "invalid_grant", "error_description": "Refresh token expired"},
        )
        loader = loader_factory(gateway)

        with pytest.raises(TokenRefreshError) as exc_info:
            await loader.ensure_fresh(_oauth(expires=NOW_MS - 1))

        message = str(exc_info.value)
        assert "invalid_grant" in message
        assert message.count(REAUTH_HINT) == 1
        assert exc_info.value.status_code == 400
        assert loader.state is FreshnessState.FAILED
        assert memory_store.sets == []

    async def test_concurrent_callers_share_the_failure(self, loader_factory) -> None:
        gateway = Gateway(refresh_status=401, refresh_body={"error": "invalid_grant"})
        loader = loader_factory(gateway)
        expired = _oauth(expires=NOW_MS - 1)

        results = await asyncio.gather(
            *(loader.ensure_fresh(expired) for _ in range(3)), return_exceptions=True
        )

        assert gateway.refresh_calls == 1
        assert all(isinstance(r, TokenRefreshError) for r in results)

    async def test_missing_refresh_token_fails_without_network(self, loader_factory, gateway: Gateway) -> None:
        loader = loader_factory(gateway)

        with pytest.raises(TokenRefreshError, match="no refresh token") as exc_info:
            await loader.ensure_fresh(_oauth(expires=NOW_MS - 1, refresh=""))

        assert str(exc_info.value).endswith(REAUTH_HINT)
        assert gateway.refresh_calls == 0

    async def test_malformed_idcs_url_fails_without_network(self, loader_factory, gateway: Gateway) -> None:
        loader = loader_factory(gateway)
        credential = OAuthCredential(
            access="", refresh="r", expires=0, enterprise_url="idcs.example.com"
        )

        with pytest.raises(TokenRefreshError, match="Invalid IDCS URL"):
            await loader.ensure_fresh(credential)
        assert gateway.refresh_calls == 0

    async def test_undecodable_error_body_carries_hint(self, loader_factory) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                400, content=b'{"error": "\xff"}', headers={"content-type": "application/json"}
            )

        loader = loader_factory(handler)

        with pytest.raises(TokenRefreshError) as exc_info:
            await loader.ensure_fresh(_oauth(expires=NOW_MS - 1))

        assert str(exc_info.value).startswith("Token refresh failed: 400")
        assert str(exc_info.value).endswith(REAUTH_HINT)
        assert exc_info.value.status_code == 400
        assert loader.state is FreshnessState.FAILED

    async def test_unexpected_error_becomes_refresh_error(
        self, loader_factory, memory_store, gateway: Gateway, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        async def broken_set(identity, credential):
            raise RuntimeError("store offline")

        monkeypatch.setattr(memory_store, "set", broken_set)
        loader = loader_factory(gateway)

        with pytest.raises(TokenRefreshError, match="store offline") as exc_info:
            await loader.ensure_fresh(_oauth(expires=NOW_MS - 1))

        assert str(exc_info.value).endswith(REAUTH_HINT)
        assert loader.state is FreshnessState.FAILED

    async def test_failure_is_not_sticky(self, loader_factory) -> None:
        gateway = Gateway(refresh_status=500, refresh_body={})
        loader = loader_factory(gateway)
        expired = _oauth(expires=NOW_MS - 1)

        with pytest.raises(TokenRefreshError):
            await loader.ensure_fresh(expired)
        gateway.refresh_status = 200
        gateway.refresh_body = {"access_token": "access-2", "expires_in": 60}

        assert (await loader.ensure_fresh(expired)).access == "access-2"
        assert gateway.refresh_calls == 2


class TestLoad:
    async def test_no_credential(self, loader_factory, gateway: Gateway) -> None:
        decoration = await loader_factory(gateway).load(_getter(None))
        assert decoration.base_url is None
        assert decoration.auth is None

    async def test_api_key_discovers_base_url(self, loader_factory, gateway: Gateway) -> None:
        provider = ProviderRegistry()
        decoration = await loader_factory(gateway).load(_getter(ApiKeyCredential(key="sk-1")), provider)

        assert decoration.base_url == GATEWAY
        assert decoration.api_key is None
        assert decoration.auth is None
        assert decoration.fetch is None
        assert gateway.discovery_tokens == ["Bearer sk-1"]
        assert set(provider.models) == {"gpt-5.3-codex", "llama-4"}

    async def test_oauth_decoration(self, loader_factory, gateway: Gateway) -> None:
        provider = ProviderRegistry()
        decoration = await loader_factory(gateway).load(_getter(_oauth()), provider)

        assert decoration.api_key == OAUTH_DUMMY_KEY
        assert decoration.base_url == GATEWAY
        assert decoration.auth is not None
        assert decoration.fetch is not None
        assert gateway.discovery_tokens == ["Bearer access-0"]
        assert provider.models["gpt-5.3-codex"].capabilities.reasoning is True

    async def test_expired_oauth_refreshes_before_discovery(self, loader_factory, gateway: Gateway) -> None:
        await loader_factory(gateway).load(_getter(_oauth(expires=NOW_MS - 1)))

        assert gateway.refresh_calls == 1
        assert gateway.discovery_tokens == ["Bearer access-1"]

    async def test_existing_registry_entries_survive(self, loader_factory, gateway: Gateway) -> None:
        provider = ProviderRegistry(models={"custom": ModelRegistryEntry(id="custom", name="Mine")})
        await loader_factory(gateway).load(_getter(_oauth()), provider)

        assert provider.models["custom"].name == "Mine"
        assert "llama-4" in provider.models

    async def test_explicit_base_url_wins(self, loader_factory, gateway: Gateway) -> None:
        loader = loader_factory(
            gateway, DiscoverySettings(explicit_base_url="https://pinned.example.com")
        )
        decoration = await loader.load(_getter(_oauth()))
        assert decoration.base_url == "https://pinned.example.com"

    async def test_discovery_failure_is_swallowed(self, loader_factory) -> None:
        loader = loader_factory(lambda request: httpx.Response(503))
        decoration = await loader.load(_getter(ApiKeyCredential(key="sk-1")))
        assert decoration.base_url is None

    async def test_undecodable_discovery_body_is_swallowed(self, loader_factory) -> None:
        loader = loader_factory(
            lambda request: httpx.Response(
                200, content=b'{"data": ["\xff"]}', headers={"content-type": "application/json"}
            )
        )
        provider = ProviderRegistry()

        decoration = await loader.load(_getter(ApiKeyCredential(key="sk-1")), provider)

        assert decoration.base_url == GATEWAY
        assert provider.models == {}

    async def test_refresh_failure_propagates(self, loader_factory) -> None:
        gateway = Gateway(refresh_status=400, refresh_body={"error": "invalid_grant"})
        with pytest.raises(TokenRefreshError, match="invalid_grant"):
            await loader_factory(gateway).load(_getter(_oauth(expires=NOW_MS - 1)))


class TestRequestSigning:
    async def test_fetch_injects_bearer_and_keeps_request(self, loader_factory, gateway: Gateway) -> None:
        decoration = await loader_factory(gateway).load(_getter(_oauth()))

        request = httpx.Request(
            "POST", f"{GATEWAY}/chat/completions",
            headers={"X-Trace": "t-1", "Authorization": f"Bearer {OAUTH_DUMMY_KEY}"},
            json={"model": "llama-4"},
        )
        response = await decoration.fetch(request)

        assert response.status_code == 200
        sent = gateway.api_calls[0]
        assert sent.headers["Authorization"] == "Bearer access-0"
        assert sent.headers["X-Trace"] == "t-1"
        assert b"llama-4" in sent.content

    async def test_auth_rereads_live_credential(self, loader_factory, gateway: Gateway) -> None:
        holder = {"credential": _oauth()}

        async def get():
            return holder["credential"]

        loader = loader_factory(gateway)
        decoration = await loader.load(get)
        holder["credential"] = _oauth(access="access-new")

        await decoration.fetch(httpx.Request("POST", f"{GATEWAY}/chat/completions"))

        assert gateway.api_calls[0].headers["Authorization"] == "Bearer access-new"

    async def test_auth_refreshes_expired_live_credential(self, loader_factory, gateway: Gateway) -> None:
        holder = {"credential": _oauth()}

        async def get():
            return holder["credential"]

        decoration = await loader_factory(gateway).load(get)
        holder["credential"] = _oauth(expires=NOW_MS - 1)

        await decoration.fetch(httpx.Request("POST", f"{GATEWAY}/chat/completions"))

        assert gateway.refresh_calls == 1
        assert gateway.api_calls[0].headers["Authorization"] == "Bearer access-1"

    async def test_auth_passes_non_oauth_through(self, loader_factory, gateway: Gateway) -> None:
        holder: dict = {"credential": _oauth()}

        async def get():
            return holder["credential"]

        decoration = await loader_factory(gateway).load(get)
        holder["credential"] = ApiKeyCredential(key="sk-1")

        await decoration.fetch(
            httpx.Request("POST", f"{GATEWAY}/chat/completions", headers={"Authorization": "Bearer sk-1"})
        )

        assert gateway.api_calls[0].headers["Authorization"] == "Bearer sk-1"

    async def test_auth_with_async_client(self, loader_factory, gateway: Gateway) -> None:
        decoration = await loader_factory(gateway).load(_getter(_oauth()))
        async with httpx.AsyncClient(
            transport=httpx.MockTransport(gateway), base_url=GATEWAY, auth=decoration.auth
        ) as client:
            await client.post("/chat/completions", json={})

        assert gateway.api_calls[0].headers["Authorization"] == "Bearer access-0"

    def test_sync_client_is_refused(self, loader_factory, gateway: Gateway) -> None:
        auth = OcaBearerAuth(loader_factory(gateway), _getter(_oauth()))
        with httpx.Client(transport=httpx.MockTransport(gateway), auth=auth) as client:
            with pytest.raises(RuntimeError, match="AsyncClient"):
                client.get(f"{GATEWAY}/chat/completions")
