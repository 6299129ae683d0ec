"""IDCS token endpoint client.

Implements the two grants oca-auth needs against
``POST {idcs_url}/oauth2/v1/token``:

- :func:`exchange_code_for_tokens` -- ``authorization_code`` with a PKCE
  ``code_verifier`` (used once, at the end of the interactive login).
- :func:`refresh_access_token` -- ``refresh_token`` (used by the
  credential loader whenever the access token has expired).

Both validate the IDCS URL before touching the network and raise
:class:`~oca_auth.exceptions.TokenExchangeError` with the HTTP status and
whatever detail the identity service returned.
"""

from __future__ import annotations

import logging
import re
from typing import Optional

import httpx
from pydantic import ValidationError

from oca_auth.config import validate_idcs_url
from oca_auth.exceptions import TokenExchangeError
from oca_auth.models import TokenResponse

logger = logging.getLogger(__name__)

TOKEN_PATH = "/oauth2/v1/token"
TOKEN_TIMEOUT = 30.0
MAX_ERROR_DETAIL = 240


def token_endpoint(idcs_url: str) -> str:
    """Return the token endpoint for a validated IDCS URL."""
    return f"{idcs_url.rstrip('/')}{TOKEN_PATH}"


async def refresh_access_token(
    idcs_url: str,
    client_id: str,
    refresh_token: str,
    *,
    client: Optional[httpx.AsyncClient] = None,
) -> TokenResponse:
    """Exchange a refresh token for a new access token.

    Args:
        idcs_url: Identity-service base URL.
        client_id: OAuth client id the refresh token was issued to.
        refresh_token: The stored refresh token.
        client: Optional shared HTTP client. A short-lived one is created
            when omitted.

    Returns:
        The parsed :class:`~oca_auth.models.TokenResponse`.

    Raises:
        ConfigError: If *idcs_url* is malformed (no request is sent).
        TokenExchangeError: If the endpoint rejects the grant or is
            unreachable.
    """
    url = token_endpoint(validate_idcs_url(idcs_url))
    data = {
        "grant_type": "refresh_token",
        "refresh_token": refresh_token,
        "client_id": client_id,
    }
    return await _post_token("Token refresh", url, data, client)


async def exchange_code_for_tokens(
    idcs_url: str,
    client_id: str,
    code: str,
    redirect_uri: str,
    verifier: str,
    *,
    client: Optional[httpx.AsyncClient] = None,
) -> TokenResponse:
    """Exchange an authorization code (plus PKCE verifier) for tokens.

    Raises:
        ConfigError: If *idcs_url* is malformed (no request is sent).
        TokenExchangeError: If the endpoint rejects the code or is
            unreachable.
    """
    url = token_endpoint(validate_idcs_url(idcs_url))
    data = {
        "grant_type": "authorization_code",
        "code": code,
        "redirect_uri": redirect_uri,
        "client_id": client_id,
        "code_verifier": verifier,
    }
    return await _post_token("Token exchange", url, data, client)


async def _post_token(
    operation: str,
    url: str,
    data: dict[str, str],
    client: Optional[httpx.AsyncClient],
) -> TokenResponse:
    headers = {"Accept": "application/json"}
    logger.debug("%s: POST %s", operation, url)
    try:
        if client is None:
            async with httpx.AsyncClient(timeout=TOKEN_TIMEOUT) as owned:
                response = await owned.post(url, data=data, headers=headers)
        else:
            response = await client.post(url, data=data, headers=headers)
    except httpx.HTTPError as exc:
        raise TokenExchangeError(f"{operation} failed: {exc}") from exc

    if not response.is_success:
        raise TokenExchangeError(
            format_http_error(operation, response), status_code=response.status_code
        )

    try:
        return TokenResponse.model_validate(response.json())
    except (ValueError, ValidationError) as exc:
        raise TokenExchangeError(
            f"{operation} failed: malformed token response", status_code=response.status_code
        ) from exc


def extract_error_detail(response: httpx.Response) -> Optional[str]:
    """Pull a human-readable error out of a failed token response.

    JSON bodies yield ``"error: error_description"``, then ``error``, then
    ``message``, and no detail when none of those is present. Anything
    else falls back to the body text with whitespace collapsed and cut at
    240 characters.
    """
    content_type = response.headers.get("content-type", "")
    if "json" in content_type:
        try:
            body = response.json()
        except ValueError:
            body = None
        else:
            if not isinstance(body, dict):
                return None
            error = body.get("error")
            description = body.get("error_description")
            if isinstance(error, str) and error and isinstance(description, str) and description:
                return f"{error}: {description}"
            if isinstance(error, str) and error:
                return error
            message = body.get("message")
            if isinstance(message, str) and message:
                return message
            return None

    text = re.sub(r"\s+", " ", response.text).strip()
    if not text:
        return None
    return text[:MAX_ERROR_DETAIL]


def format_http_error(operation: str, response: httpx.Response) -> str:
    """Build ``"<operation> failed: <status> (<detail>)"`` for *response*."""
    detail = extract_error_detail(response)
    if detail:
        return f"{operation} failed: {response.status_code} ({detail})"
    return f"{operation} failed: {response.status_code}"
