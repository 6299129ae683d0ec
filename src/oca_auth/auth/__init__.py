"""Authentication for the ``oca`` provider.

The main entry points are:

- :class:`CredentialLoader` -- called by the host before each provider
  request; keeps OAuth tokens fresh and resolves the base URL.
- :class:`OAuthFlow` -- interactive PKCE login through a loopback
  redirect listener.
- :class:`HostCredentialStore` -- abstract store the host implements;
  :class:`CredentialStore` is the file-backed version used by the CLI.
- :func:`refresh_access_token` / :func:`exchange_code_for_tokens` -- the
  IDCS token endpoint client.

Typical usage::

    from oca_auth.auth import CredentialLoader, CredentialStore

    store = CredentialStore()
    loader = CredentialLoader(store)
    decoration = await loader.load(lambda: store.get("oca"))
"""

from oca_auth.auth.base import HostCredentialStore
from oca_auth.auth.credential_store import CredentialStore
from oca_auth.auth.loader import (
    OAUTH_DUMMY_KEY,
    REAUTH_HINT,
    CredentialLoader,
    FreshnessState,
    RequestDecoration,
)
from oca_auth.auth.oauth_flow import AuthorizationRequest, OAuthFlow
from oca_auth.auth.tokens import exchange_code_for_tokens, refresh_access_token

__all__ = [
    "OAUTH_DUMMY_KEY",
    "REAUTH_HINT",
    "AuthorizationRequest",
    "CredentialLoader",
    "CredentialStore",
    "FreshnessState",
    "HostCredentialStore",
    "OAuthFlow",
    "RequestDecoration",
    "exchange_code_for_tokens",
    "refresh_access_token",
]
