"""Credential commands for the ``oca-auth`` command line.

Typical workflow::

    oca-auth login               # browser sign-in through Oracle IDCS
    oca-auth status              # what is stored and when it expires
    oca-auth models              # discover the models the account can use
    oca-auth logout

Every command works against the file-backed
:class:`~oca_auth.auth.credential_store.CredentialStore`, the same store a
host would hand to :class:`~oca_auth.plugin.OcaAuthPlugin`.
"""

from __future__ import annotations

import asyncio
import webbrowser
from datetime import datetime, timezone
from typing import Any, Coroutine, Optional, TypeVar

import typer

from oca_auth.auth.credential_store import CredentialStore
from oca_auth.auth.loader import CredentialLoader
from oca_auth.auth.oauth_flow import OAuthFlow
from oca_auth.exceptions import AuthError, OcaAuthError
from oca_auth.exit_codes import EXIT_AUTH_FAILURE, EXIT_INVALID_USAGE
from oca_auth.models import ApiKeyCredential, OAuthCredential, ProviderRegistry
from oca_auth.output import (
    error,
    format_response,
    info,
    print_data,
    print_table,
    success,
    suggest,
    warning,
)
from oca_auth.registry import DISCOVERY_OPTIONS_KEY, PROVIDER_ID

T = TypeVar("T")


def _run(coro: Coroutine[Any, Any, T]) -> T:
    """Run *coro* to completion, turning library errors into clean exits."""
    try:
        return asyncio.run(coro)
    except OcaAuthError as exc:
        error(str(exc))
        raise typer.Exit(code=exc.exit_code) from None


def _format_expiry(expires_ms: int) -> str:
    return datetime.fromtimestamp(expires_ms / 1000, tz=timezone.utc).isoformat(timespec="seconds")


async def _require_credential(store: CredentialStore) -> Any:
    credential = await store.get(PROVIDER_ID)
    if credential is None:
        raise AuthError("Not signed in. Run `oca-auth login` or `oca-auth login-key` first.")
    return credential


# ------------------------------------------------------------------ #
# login
# ------------------------------------------------------------------ #


def login_command(
    idcs_url: Optional[str] = typer.Option(
        None, "--idcs-url", help="Oracle IDCS URL (default: OCA_IDCS_URL or built-in)."
    ),
    client_id: Optional[str] = typer.Option(
        None, "--client-id", help="OAuth client id (default: OCA_CLIENT_ID or built-in)."
    ),
    no_browser: bool = typer.Option(
        False, "--no-browser", help="Print the sign-in URL without opening a browser."
    ),
) -> None:
    """Sign in through Oracle IDCS in the browser.

    Starts a loopback listener for the OAuth redirect, prints the
    authorization URL and waits up to five minutes for the sign-in to
    finish. The resulting tokens are stored for the ``oca`` provider.

    Example::

        oca-auth login --no-browser
    """
    _run(_login(idcs_url, client_id, open_browser=not no_browser))
    success("Signed in to Oracle Code Assist.")
    suggest("Check it: oca-auth status")


async def _login(idcs_url: Optional[str], client_id: Optional[str], open_browser: bool) -> None:
    store = CredentialStore()
    flow = OAuthFlow()
    try:
        request = await flow.begin_authorization(idcs_url, client_id)
        info("Open this URL to sign in:")
        print_data(request.url)
        if open_browser and not webbrowser.open(request.url):
            warning("Could not open a browser; open the URL above manually.")
        info(request.instructions)
        result = await request.callback()
    finally:
        await flow.close()

    if result.type != "success":
        raise AuthError(f"Login failed: {result.error or 'unknown error'}")
    await store.set(PROVIDER_ID, result.to_credential())


# ------------------------------------------------------------------ #
# login-key
# ------------------------------------------------------------------ #


def login_key_command(
    key: Optional[str] = typer.Option(
        None, "--key", help="API key. Prompted for (hidden) when omitted."
    ),
) -> None:
    """Store a static API key instead of signing in.

    Example::

        oca-auth login-key
    """
    if key is None:
        key = typer.prompt("API key", hide_input=True)
    key = key.strip()
    if not key:
        error("API key must not be empty.")
        raise typer.Exit(code=EXIT_INVALID_USAGE)

    _run(CredentialStore().set(PROVIDER_ID, ApiKeyCredential(key=key)))
    success("Stored API key for Oracle Code Assist.")


# ------------------------------------------------------------------ #
# status
# ------------------------------------------------------------------ #


def status_command() -> None:
    """Show which credential is stored and when it expires.

    Secrets are never printed.
    """
    credential = _run(CredentialStore().get(PROVIDER_ID))
    if credential is None:
        info("Not signed in.")
        suggest("Sign in: oca-auth login")
        raise typer.Exit(code=EXIT_AUTH_FAILURE)

    data: dict[str, Any] = {"provider": PROVIDER_ID, "type": credential.type}
    if isinstance(credential, OAuthCredential):
        data["expires"] = _format_expiry(credential.expires)
        data["expired"] = credential.is_expired()
        data["refreshable"] = bool(credential.refresh)
        if credential.enterprise_url:
            data["idcs_url"] = credential.enterprise_url
        if credential.account_id:
            data["client_id"] = credential.account_id
    format_response(data)


# ------------------------------------------------------------------ #
# refresh
# ------------------------------------------------------------------ #


def refresh_command() -> None:
    """Exchange the stored refresh token for a new access token now."""
    credential = _run(_refresh())
    success(f"Refreshed access token (expires {_format_expiry(credential.expires)}).")


async def _refresh() -> OAuthCredential:
    store = CredentialStore()
    credential = await _require_credential(store)
    if not isinstance(credential, OAuthCredential):
        raise AuthError("The stored credential is an API key; there is nothing to refresh.")
    return await CredentialLoader(store).refresh(credential)


# ------------------------------------------------------------------ #
# models
# ------------------------------------------------------------------ #


def models_command() -> None:
    """Discover the API base URL and list the models it serves."""
    base_url, provider = _run(_discover())
    if base_url is None or not provider.models:
        warning("No models discovered. Check OCA_BASE_URL / OCA_BASE_URLS and your credential.")
        raise typer.Exit(code=EXIT_AUTH_FAILURE)

    info(f"Base URL: {base_url}")
    rows = []
    for model_id, entry in sorted(provider.models.items()):
        bucket = entry.options.get(DISCOVERY_OPTIONS_KEY, {})
        reasoning = bool(entry.capabilities and entry.capabilities.reasoning)
        rows.append([model_id, "yes" if reasoning else "no", str(bucket.get("transport", ""))])
    print_table(["id", "reasoning", "transport"], rows, title="OCA models")


async def _discover() -> tuple[Optional[str], ProviderRegistry]:
    store = CredentialStore()
    await _require_credential(store)
    provider = ProviderRegistry(id=PROVIDER_ID, name="Oracle Code Assist")
    decoration = await CredentialLoader(store).load(lambda: store.get(PROVIDER_ID), provider)
    return decoration.base_url, provider


# ------------------------------------------------------------------ #
# logout
# ------------------------------------------------------------------ #


def logout_command() -> None:
    """Delete the stored credential."""
    if CredentialStore().clear(PROVIDER_ID):
        success("Signed out of Oracle Code Assist.")
    else:
        info("No credential stored.")
