"""Host-facing plugin surface for the ``oca`` provider.

A host wires the plugin up once and then uses three things:

- :attr:`OcaAuthPlugin.provider` -- the provider id, ``"oca"``.
- :attr:`OcaAuthPlugin.loader` -- awaited before every provider call; see
  :meth:`~oca_auth.auth.loader.CredentialLoader.load`.
- :attr:`OcaAuthPlugin.methods` -- the login methods offered to the user:
  interactive OAuth against Oracle IDCS and a static API key.

Hosts that discover providers dynamically find the plugin under the
``oca_auth.plugins`` entry-point group; see :func:`discover_plugins`.
"""

from __future__ import annotations

import importlib.metadata
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Literal, Mapping, Optional

import httpx

from oca_auth.auth.base import HostCredentialStore
from oca_auth.auth.loader import CredentialLoader, RequestDecoration
from oca_auth.auth.oauth_flow import AuthorizationRequest, OAuthFlow
from oca_auth.config import oauth_config
from oca_auth.models import ProviderRegistry
from oca_auth.registry import PROVIDER_ID

logger = logging.getLogger(__name__)

ENTRY_POINT_GROUP = "oca_auth.plugins"

OAUTH_LABEL = "Login with Oracle IDCS"
API_KEY_LABEL = "Use API Key"


@dataclass
class Prompt:
    """A single text input the host asks for before authorizing."""

    key: str
    message: str
    placeholder: str = ""
    type: str = "text"


@dataclass
class AuthMethod:
    """One way of signing in, as presented by the host.

    OAuth methods carry ``authorize``; API-key methods leave the key entry
    to the host.
    """

    type: Literal["oauth", "api"]
    label: str
    prompts: list[Prompt] = field(default_factory=list)
    authorize: Optional[Callable[[Mapping[str, str]], Awaitable[AuthorizationRequest]]] = field(
        default=None, repr=False
    )


class OcaAuthPlugin:
    """Credential plugin for Oracle Code Assist.

    Args:
        store: The host's credential store.
        client: Optional HTTP client shared by refreshes, discovery and the
            code exchange.
        flow: OAuth flow to authorize through. One is created lazily.
        credential_loader: Loader to use instead of a default one.

    Example::

        plugin = OcaAuthPlugin(store)
        oauth = plugin.methods[0]
        request = await oauth.authorize({})
        print(request.url)
        result = await request.callback()
    """

    provider = PROVIDER_ID

    def __init__(
        self,
        store: HostCredentialStore,
        *,
        client: Optional[httpx.AsyncClient] = None,
        flow: Optional[OAuthFlow] = None,
        credential_loader: Optional[CredentialLoader] = None,
    ) -> None:
        self._store = store
        self._client = client
        self._flow = flow
        self._loader = credential_loader or CredentialLoader(store, client=client)

    @property
    def credential_loader(self) -> CredentialLoader:
        return self._loader

    @property
    def flow(self) -> OAuthFlow:
        if self._flow is None:
            self._flow = OAuthFlow(client=self._client)
        return self._flow

    async def loader(
        self,
        get_credential: Callable[[], Awaitable[Any]],
        provider: Optional[ProviderRegistry] = None,
    ) -> RequestDecoration:
        return await self._loader.load(get_credential, provider)

    @property
    def methods(self) -> list[AuthMethod]:
        """The login methods, with the resolved IDCS defaults as placeholders."""
        defaults = oauth_config()
        return [
            AuthMethod(
                type="oauth",
                label=OAUTH_LABEL,
                prompts=[
                    Prompt(
                        key="idcsUrl",
                        message="IDCS URL (Enter to use default)",
                        placeholder=defaults.idcs_url,
                    ),
                    Prompt(
                        key="clientId",
                        message="OAuth client ID (Enter to use default)",
                        placeholder=defaults.client_id,
                    ),
                ],
                authorize=self.authorize,
            ),
            AuthMethod(type="api", label=API_KEY_LABEL),
        ]

    async def authorize(self, inputs: Optional[Mapping[str, str]] = None) -> AuthorizationRequest:
        """Start an OAuth login from the host's prompt answers.

        Blank answers fall back to the configured defaults.

        Raises:
            ConfigError: If the IDCS URL is malformed.
            AuthError: If the callback listener cannot start.
        """
        inputs = inputs or {}
        return await self.flow.begin_authorization(
            idcs_url=inputs.get("idcsUrl"),
            client_id=inputs.get("clientId"),
        )

    async def close(self) -> None:
        """Stop any pending login and its callback listener."""
        if self._flow is not None:
            await self._flow.close()


def discover_plugins(store: HostCredentialStore) -> dict[str, Any]:
    """Instantiate every plugin registered under :data:`ENTRY_POINT_GROUP`.

    Plugins that fail to load are logged as warnings and skipped.

    Returns:
        Plugin instances keyed by their provider id.
    """
    plugins: dict[str, Any] = {}
    for ep in importlib.metadata.entry_points(group=ENTRY_POINT_GROUP):
        try:
            plugin = ep.load()(store)
        except Exception as exc:
            logger.warning("Failed to load plugin '%s': %s", ep.name, exc)
            continue
        plugins[getattr(plugin, "provider", ep.name)] = plugin
        logger.debug("Loaded plugin '%s' from %s", ep.name, ep.value)
    return plugins
