"""Per-request credential loader for the ``oca`` provider.

The host calls :meth:`CredentialLoader.load` before talking to the
provider. The loader:

1. Reads the current credential through the host's getter.
2. For OAuth credentials, makes sure the access token is fresh. At most
   one refresh runs at a time per loader; concurrent callers share it.
   A refreshed credential is persisted through the host store before it
   is used.
3. Runs discovery with the bearer token (access token or API key) and
   merges the discovered models into the host's provider registry.
4. Returns a :class:`RequestDecoration` telling the host which base URL
   to use and, for OAuth, how to sign each outgoing request.

Refresh failures are fatal for the call and always carry
:data:`REAUTH_HINT`. Discovery failures are not: the decoration simply has
no base URL.

Freshness is tracked per loader as a small state machine::

    FRESH --(expired, nothing in flight)--> REFRESHING
    REFRESHING --(token exchanged and persisted)--> FRESH
    REFRESHING --(any error)--> FAILED
"""

from __future__ import annotations

import asyncio
import enum
import logging
import time
from dataclasses import dataclass
from typing import AsyncGenerator, Awaitable, Callable, Generator, Optional

import httpx

from oca_auth.auth.base import HostCredentialStore, StoredCredential
from oca_auth.auth.oauth_flow import DEFAULT_EXPIRES_IN
from oca_auth.auth.tokens import refresh_access_token
from oca_auth.config import oauth_config
from oca_auth.discovery.engine import DiscoveryEngine
from oca_auth.exceptions import TokenExchangeError, TokenRefreshError
from oca_auth.models import ApiKeyCredential, DiscoveryResult, OAuthCredential, ProviderRegistry
from oca_auth.registry import PROVIDER_ID, merge_discovered_models

logger = logging.getLogger(__name__)

OAUTH_DUMMY_KEY = "opencode-oauth-dummy-key"
REAUTH_HINT = "Run `oca-auth login` to sign in to Oracle Code Assist again."

CredentialGetter = Callable[[], Awaitable[Optional[StoredCredential]]]
Fetch = Callable[[httpx.Request], Awaitable[httpx.Response]]


class FreshnessState(str, enum.Enum):
    FRESH = "fresh"
    REFRESHING = "refreshing"
    FAILED = "failed"


def with_reauth_hint(message: str) -> str:
    """Append :data:`REAUTH_HINT` unless *message* already mentions it."""
    if REAUTH_HINT in message:
        return message
    return f"{message.rstrip().rstrip('.')}. {REAUTH_HINT}"


@dataclass
class RequestDecoration:
    """What the host should apply to its provider requests.

    Attributes:
        api_key: Placeholder key for SDKs that insist on one. Set for OAuth
            only, where the real token travels in the Authorization header.
        base_url: Resolved API base URL, or ``None`` if nothing is known.
        auth: ``httpx.Auth`` that signs each request with a fresh token.
        fetch: Sends a request through :attr:`auth`.
    """

    api_key: Optional[str] = None
    base_url: Optional[str] = None
    auth: Optional[httpx.Auth] = None
    fetch: Optional[Fetch] = None


class OcaBearerAuth(httpx.Auth):
    """Sign requests with the live credential's access token.

    The credential is read again on every request, so a login or refresh
    performed elsewhere is picked up immediately. Non-OAuth credentials
    leave the request untouched.
    """

    def __init__(self, loader: CredentialLoader, get_credential: CredentialGetter) -> None:
        self._loader = loader
        self._get_credential = get_credential

    def sync_auth_flow(self, request: httpx.Request) -> Generator[httpx.Request, httpx.Response, None]:
        raise RuntimeError("OcaBearerAuth requires an httpx.AsyncClient")

    async def async_auth_flow(
        self, request: httpx.Request
    ) -> AsyncGenerator[httpx.Request, httpx.Response]:
        credential = await self._get_credential()
        if isinstance(credential, OAuthCredential):
            fresh = await self._loader.ensure_fresh(credential)
            request.headers["Authorization"] = f"Bearer {fresh.access}"
        yield request


class CredentialLoader:
    """Coordinate token freshness, discovery and request signing.

    Args:
        store: Host store that receives refreshed credentials.
        discovery: Discovery engine. A default engine sharing the
            process-wide cache is created when omitted.
        provider_id: Identity the credential is stored under.
        client: Optional HTTP client for refreshes, discovery and ``fetch``.
        clock: Returns the current time in seconds.

    Example::

        loader = CredentialLoader(CredentialStore())
        decoration = await loader.load(lambda: store.get("oca"), provider)
        async with httpx.AsyncClient(base_url=decoration.base_url,
                                     auth=decoration.auth) as client:
            await client.post("/chat/completions", json=payload)
    """

    def __init__(
        self,
        store: HostCredentialStore,
        discovery: Optional[DiscoveryEngine] = None,
        provider_id: str = PROVIDER_ID,
        client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._discovery = discovery if discovery is not None else DiscoveryEngine(client=client)
        self._provider_id = provider_id
        self._client = client
        self._clock = clock
        self._latest: Optional[OAuthCredential] = None
        self._refreshing: Optional[asyncio.Task[OAuthCredential]] = None
        self._state = FreshnessState.FRESH

    @property
    def state(self) -> FreshnessState:
        return self._state

    @property
    def discovery(self) -> DiscoveryEngine:
        return self._discovery

    @property
    def latest(self) -> Optional[OAuthCredential]:
        """The freshest OAuth credential this loader has produced."""
        return self._latest

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    async def load(
        self,
        get_credential: CredentialGetter,
        provider: Optional[ProviderRegistry] = None,
    ) -> RequestDecoration:
        """Prepare the host's next provider call.

        Args:
            get_credential: Returns the host's current credential snapshot.
            provider: Host registry to merge discovered models into.

        Raises:
            TokenRefreshError: If an expired OAuth credential cannot be
                refreshed. The message ends with :data:`REAUTH_HINT`.
            ConfigError: If ``OCA_BASE_URL`` is malformed.
        """
        credential = await get_credential()
        if credential is None:
            return RequestDecoration()

        if isinstance(credential, ApiKeyCredential):
            base_url = await self._resolve(credential.key, provider)
            return RequestDecoration(base_url=base_url)

        fresh = await self.ensure_fresh(credential)
        base_url = await self._resolve(fresh.access, provider)
        auth = OcaBearerAuth(self, get_credential)
        return RequestDecoration(
            api_key=OAUTH_DUMMY_KEY,
            base_url=base_url,
            auth=auth,
            fetch=self._fetcher(auth),
        )

    async def ensure_fresh(self, credential: OAuthCredential) -> OAuthCredential:
        """Return an unexpired credential, refreshing *credential* if needed.

        The newer (by expiry) of *credential* and the last refreshed one is
        used as long as it has not expired.
        """
        current = credential
        if self._latest is not None and self._latest.expires > credential.expires:
            current = self._latest
        if not current.is_expired(self._now_ms()):
            return current
        return await self._join_refresh(current)

    async def refresh(self, credential: OAuthCredential) -> OAuthCredential:
        """Refresh *credential* now, whether or not it has expired."""
        return await self._join_refresh(credential)

    async def _join_refresh(self, credential: OAuthCredential) -> OAuthCredential:
        task = self._refreshing
        if task is None:
            task = asyncio.get_running_loop().create_task(self._refresh(credential))
            self._refreshing = task
            self._state = FreshnessState.REFRESHING
        return await asyncio.shield(task)

    async def _refresh(self, previous: OAuthCredential) -> OAuthCredential:
        logger.info("Refreshing OCA access token")
        try:
            if not previous.refresh:
                raise TokenRefreshError("OCA credential has no refresh token")
            cfg = oauth_config(previous)
            tokens = await refresh_access_token(
                cfg.idcs_url, cfg.client_id, previous.refresh, client=self._client
            )
            credential = OAuthCredential(
                access=tokens.access_token,
                refresh=tokens.refresh_token or previous.refresh,
                expires=self._now_ms() + (tokens.expires_in or DEFAULT_EXPIRES_IN) * 1000,
                enterprise_url=previous.enterprise_url,
                account_id=previous.account_id,
            )
            await self._store.set(self._provider_id, credential)
        except Exception as exc:
            self._state = FreshnessState.FAILED
            logger.warning("OCA token refresh failed: %s", exc)
            status = exc.status_code if isinstance(exc, TokenExchangeError) else None
            raise TokenRefreshError(with_reauth_hint(str(exc)), status_code=status) from exc
        finally:
            self._refreshing = None

        self._latest = credential
        self._state = FreshnessState.FRESH
        logger.info("Refreshed OCA access token")
        return credential

    async def _resolve(
        self, token: str, provider: Optional[ProviderRegistry]
    ) -> Optional[str]:
        result: Optional[DiscoveryResult] = None
        if token:
            result = await self._discovery.discover(token)
        if result is not None:
            merge_discovered_models(provider, result)

        override = self._discovery.settings().explicit_base_url
        if override:
            return override
        return result.base_url if result is not None else None

    def _fetcher(self, auth: httpx.Auth) -> Fetch:
        async def fetch(request: httpx.Request) -> httpx.Response:
            if self._client is not None:
                return await self._client.send(request, auth=auth)
            async with httpx.AsyncClient() as client:
                return await client.send(request, auth=auth)

        return fetch
