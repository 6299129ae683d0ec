"""OAuth2 Authorization Code flow with PKCE against Oracle IDCS.

This module provides :class:`OAuthFlow`, the engine behind the interactive
``Login with Oracle IDCS`` method. A login attempt goes through these steps:

1. :meth:`OAuthFlow.begin_authorization` validates the IDCS URL, starts the
   loopback :class:`CallbackListener`, generates the PKCE pair, ``state``
   and ``nonce``, and returns the authorization URL together with a
   deferred ``callback()``.
2. The user completes the login in a browser; IDCS redirects to
   ``http://127.0.0.1:48801/auth/oca``.
3. The listener checks ``state``, consumes the pending authorization and
   exchanges the code via
   :func:`~oca_auth.auth.tokens.exchange_code_for_tokens`.
4. ``callback()`` resolves to an
   :class:`~oca_auth.models.AuthorizationResult` (``success`` or
   ``failed``) and the listener is released.

Only one authorization is outstanding at a time. Starting a new one rejects
the previous one with
:class:`~oca_auth.exceptions.AuthorizationSupersededError`; its
``callback()`` resolves as ``failed``. An attempt that receives no redirect
within five minutes fails with a timeout.

Also exports :func:`generate_pkce_pair`, :func:`generate_state`,
:func:`generate_nonce` and :func:`build_authorization_url`.
"""

from __future__ import annotations

import asyncio
import base64
import hashlib
import html
import logging
import secrets
import string
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional
from urllib.parse import urlencode

import httpx
from aiohttp import web

from oca_auth.auth.tokens import exchange_code_for_tokens
from oca_auth.config import (
    OAUTH_PORT,
    OAUTH_REDIRECT_PATH,
    oauth_config,
    validate_idcs_url,
)
from oca_auth.exceptions import (
    AuthError,
    AuthorizationSupersededError,
    OAuthCallbackError,
    OcaAuthError,
)
from oca_auth.models import AuthorizationResult, TokenResponse

logger = logging.getLogger(__name__)

AUTHORIZE_PATH = "/oauth2/v1/authorize"
SCOPE = "openid offline_access"
CALLBACK_TIMEOUT = 5 * 60.0
DEFAULT_EXPIRES_IN = 3600

# RFC 7636 section 4.1: unreserved characters
_VERIFIER_ALPHABET = string.ascii_letters + string.digits + "-._~"
VERIFIER_LENGTH = 43

INSTRUCTIONS = (
    "Complete authorization in your browser. This window will close automatically."
)


def generate_pkce_pair() -> tuple[str, str]:
    """Generate a PKCE code_verifier and code_challenge (S256).

    Returns:
        A tuple of ``(code_verifier, code_challenge)``.
    """
    code_verifier = "".join(
        secrets.choice(_VERIFIER_ALPHABET) for _ in range(VERIFIER_LENGTH)
    )
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    code_challenge = base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")
    return code_verifier, code_challenge


def generate_state() -> str:
    """Return an unguessable ``state`` value (base64url of 32 random bytes)."""
    return secrets.token_urlsafe(32)


def generate_nonce() -> str:
    """Return an OpenID Connect ``nonce`` (base64url of 32 random bytes)."""
    return secrets.token_urlsafe(32)


def build_authorization_url(
    idcs_url: str,
    client_id: str,
    code_challenge: str,
    state: str,
    nonce: str,
    redirect_uri: str,
) -> str:
    """Build the IDCS ``/oauth2/v1/authorize`` URL for a PKCE login."""
    params = {
        "client_id": client_id,
        "response_type": "code",
        "scope": SCOPE,
        "code_challenge": code_challenge,
        "code_challenge_method": "S256",
        "redirect_uri": redirect_uri,
        "state": state,
        "nonce": nonce,
    }
    return f"{idcs_url.rstrip('/')}{AUTHORIZE_PATH}?{urlencode(params)}"


# --- Callback pages ---


def _page(title: str, heading: str, body: str, close: bool = False) -> str:
    script = "<script>setTimeout(() => window.close(), 2000)</script>" if close else ""
    return (
        "<!doctype html>\n<html>\n"
        f"  <head><title>{title}</title></head>\n"
        f"  <body>\n    <h1>{heading}</h1>\n    <p>{body}</p>\n    {script}\n  </body>\n"
        "</html>"
    )


SUCCESS_PAGE = _page(
    "OCA Authorization Successful",
    "Authorization Successful",
    "You can close this window and return to your terminal.",
    close=True,
)


def error_page(message: str) -> str:
    """Render the failure page with *message* HTML-escaped."""
    return _page("OCA Authorization Failed", "Authorization Failed", html.escape(message))


# --- Loopback listener ---


RedirectHandler = Callable[[dict[str, str]], tuple[int, str]]


class CallbackListener:
    """Single-route ``aiohttp`` server bound to the loopback interface.

    Every ``GET`` on the redirect path hands the query parameters to
    *handler*, which returns ``(status, html)``. Other paths answer 404 and
    other methods 405. :meth:`start` and :meth:`stop` are both idempotent.

    Args:
        handler: Called with the redirect's query parameters.
        port: TCP port to bind. ``0`` picks a free port (tests).
        path: The redirect path to serve.
        host: Interface to bind; loopback only.
    """

    def __init__(
        self,
        handler: RedirectHandler,
        port: int = OAUTH_PORT,
        path: str = OAUTH_REDIRECT_PATH,
        host: str = "127.0.0.1",
    ) -> None:
        self._handler = handler
        self._port = port
        self._path = path
        self._host = host
        self._runner: Optional[web.AppRunner] = None

    @property
    def is_running(self) -> bool:
        return self._runner is not None

    @property
    def port(self) -> int:
        """The bound port once started, else the configured one."""
        if self._runner is not None and self._runner.addresses:
            return int(self._runner.addresses[0][1])
        return self._port

    @property
    def redirect_uri(self) -> str:
        return f"http://{self._host}:{self.port}{self._path}"

    async def start(self) -> None:
        if self._runner is not None:
            return
        app = web.Application()
        app.router.add_get(self._path, self._handle_callback)
        runner = web.AppRunner(app, access_log=None)
        await runner.setup()
        try:
            await web.TCPSite(runner, self._host, self._port).start()
        except OSError:
            await runner.cleanup()
            raise
        self._runner = runner
        logger.debug("OAuth callback listener started on %s", self.redirect_uri)

    async def stop(self) -> None:
        runner = self._runner
        if runner is None:
            return
        self._runner = None
        await runner.cleanup()
        logger.debug("OAuth callback listener stopped")

    async def _handle_callback(self, request: web.Request) -> web.Response:
        params = {key: request.query[key] for key in request.query.keys()}
        status, page = self._handler(params)
        return web.Response(status=status, text=page, content_type="text/html")


# --- Flow ---


@dataclass
class PendingAuthorization:
    """State for the one outstanding authorization attempt.

    Consumed exactly once by the redirect handler (matched on ``state``) and
    settled through :attr:`future`.
    """

    verifier: str
    state: str
    idcs_url: str
    client_id: str
    redirect_uri: str
    future: "asyncio.Future[TokenResponse]" = field(repr=False)
    timeout_handle: Optional[asyncio.TimerHandle] = field(default=None, repr=False)

    def resolve(self, tokens: TokenResponse) -> None:
        if self.future.done():
            return
        self._disarm()
        self.future.set_result(tokens)

    def reject(self, error: Exception) -> None:
        if self.future.done():
            return
        self._disarm()
        self.future.set_exception(error)
        # Mark retrieved; callback() re-raises it when awaited.
        self.future.exception()

    def _disarm(self) -> None:
        if self.timeout_handle is not None:
            self.timeout_handle.cancel()
            self.timeout_handle = None


@dataclass
class AuthorizationRequest:
    """What :meth:`OAuthFlow.begin_authorization` hands to the host."""

    url: str
    callback: Callable[[], Awaitable[AuthorizationResult]] = field(repr=False)
    instructions: str = INSTRUCTIONS
    method: str = "auto"


class OAuthFlow:
    """Drive interactive PKCE logins through a shared loopback listener.

    The listener is acquired when an authorization starts and released when
    the last outstanding authorization settles, whatever the outcome.

    Args:
        port: Listener port (``0`` for an ephemeral port in tests).
        timeout: Seconds to wait for the redirect before failing.
        client: Optional HTTP client for the code exchange.
        clock: Returns the current time in seconds; used for ``expires``.

    Example::

        flow = OAuthFlow()
        request = await flow.begin_authorization()
        webbrowser.open(request.url)
        result = await request.callback()
    """

    def __init__(
        self,
        *,
        port: int = OAUTH_PORT,
        timeout: float = CALLBACK_TIMEOUT,
        client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._listener = CallbackListener(self._handle_redirect, port=port)
        self._timeout = timeout
        self._client = client
        self._clock = clock
        self._pending: Optional[PendingAuthorization] = None
        self._exchanges: set[asyncio.Task[Any]] = set()

    @property
    def listener(self) -> CallbackListener:
        return self._listener

    @property
    def pending(self) -> Optional[PendingAuthorization]:
        return self._pending

    async def begin_authorization(
        self,
        idcs_url: Optional[str] = None,
        client_id: Optional[str] = None,
    ) -> AuthorizationRequest:
        """Start a login attempt and return its URL and deferred callback.

        Blank inputs fall back to :func:`~oca_auth.config.oauth_config`.

        Raises:
            ConfigError: If the IDCS URL is malformed. Nothing is started.
            AuthError: If the loopback port cannot be bound.
        """
        defaults = oauth_config()
        idcs = validate_idcs_url((idcs_url or "").strip() or defaults.idcs_url)
        client = (client_id or "").strip() or defaults.client_id

        try:
            await self._listener.start()
        except OSError as exc:
            raise AuthError(
                f"Cannot listen for the OAuth callback on port {self._listener.port}: {exc}"
            ) from exc

        verifier, challenge = generate_pkce_pair()
        state = generate_state()
        redirect_uri = self._listener.redirect_uri

        self._supersede()
        loop = asyncio.get_running_loop()
        pending = PendingAuthorization(
            verifier=verifier,
            state=state,
            idcs_url=idcs,
            client_id=client,
            redirect_uri=redirect_uri,
            future=loop.create_future(),
        )
        pending.timeout_handle = loop.call_later(self._timeout, self._expire, pending)
        self._pending = pending

        url = build_authorization_url(
            idcs, client, challenge, state, generate_nonce(), redirect_uri
        )

        async def callback() -> AuthorizationResult:
            return await self._complete(pending)

        return AuthorizationRequest(url=url, callback=callback)

    async def close(self) -> None:
        """Cancel any outstanding authorization and stop the listener."""
        if self._pending is not None:
            pending, self._pending = self._pending, None
            pending.reject(OAuthCallbackError("Authorization cancelled"))
        for task in list(self._exchanges):
            task.cancel()
        await self._listener.stop()

    def _supersede(self) -> None:
        if self._pending is None:
            return
        previous, self._pending = self._pending, None
        logger.info("Superseding pending authorization with a new login attempt")
        previous.reject(
            AuthorizationSupersededError("Authorization superseded by a newer login attempt")
        )

    def _expire(self, pending: PendingAuthorization) -> None:
        if self._pending is not pending:
            return
        self._pending = None
        pending.reject(OAuthCallbackError("OAuth callback timeout"))

    def _reject_pending(self, error: OAuthCallbackError) -> None:
        pending, self._pending = self._pending, None
        if pending is not None:
            pending.reject(error)

    def _handle_redirect(self, params: dict[str, str]) -> tuple[int, str]:
        error = params.get("error")
        if error:
            message = params.get("error_description") or error
            self._reject_pending(OAuthCallbackError(message))
            return 200, error_page(message)

        code = params.get("code")
        if not code:
            message = "Missing authorization code"
            self._reject_pending(OAuthCallbackError(message))
            return 400, error_page(message)

        pending = self._pending
        received = params.get("state", "")
        if pending is None or not secrets.compare_digest(
            received.encode("utf-8"), pending.state.encode("utf-8")
        ):
            message = "Invalid state"
            self._reject_pending(OAuthCallbackError(message))
            return 400, error_page(message)

        self._pending = None
        task = asyncio.get_running_loop().create_task(self._exchange(pending, code))
        self._exchanges.add(task)
        task.add_done_callback(self._exchanges.discard)
        return 200, SUCCESS_PAGE

    async def _exchange(self, pending: PendingAuthorization, code: str) -> None:
        try:
            tokens = await exchange_code_for_tokens(
                pending.idcs_url,
                pending.client_id,
                code,
                pending.redirect_uri,
                pending.verifier,
                client=self._client,
            )
        except OcaAuthError as exc:
            pending.reject(exc)
        except asyncio.CancelledError:
            pending.reject(OAuthCallbackError("Authorization cancelled"))
            raise
        except Exception as exc:
            logger.debug("OAuth code exchange crashed", exc_info=True)
            pending.reject(OAuthCallbackError(f"Token exchange failed: {exc}"))
        else:
            pending.resolve(tokens)

    async def _complete(self, pending: PendingAuthorization) -> AuthorizationResult:
        try:
            tokens = await pending.future
        except OcaAuthError as exc:
            logger.warning("OAuth authorization failed: %s", exc)
            return AuthorizationResult(type="failed", error=str(exc))
        finally:
            await self._release(pending)

        expires_in = tokens.expires_in or DEFAULT_EXPIRES_IN
        return AuthorizationResult(
            type="success",
            access=tokens.access_token,
            refresh=tokens.refresh_token or "",
            expires=int(self._clock() * 1000) + expires_in * 1000,
            account_id=pending.client_id,
            enterprise_url=pending.idcs_url,
        )

    async def _release(self, pending: PendingAuthorization) -> None:
        if self._pending is pending:
            self._pending = None
            pending.reject(OAuthCallbackError("Authorization cancelled"))
        if self._pending is None:
            await self._listener.stop()
