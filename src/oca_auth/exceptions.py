"""Exception hierarchy for oca-auth.

All exceptions inherit from :class:`OcaAuthError`, which carries an
``exit_code`` attribute mapped to a constant from :mod:`oca_auth.exit_codes`.
The CLI entry point catches ``OcaAuthError`` and exits with that code; the
host surfaces the message of anything raised from the credential loader.

Subclass hierarchy::

    OcaAuthError (exit 1)
    +-- ConfigError                        (exit 2)
    +-- AuthError                          (exit 3)
    |   +-- TokenExchangeError
    |   |   +-- TokenRefreshError
    |   +-- OAuthCallbackError
    |       +-- AuthorizationSupersededError
"""

from oca_auth.exit_codes import (
    EXIT_AUTH_FAILURE,
    EXIT_GENERIC_FAILURE,
    EXIT_INVALID_USAGE,
)


class OcaAuthError(Exception):
    """Base exception for all oca-auth errors.

    Args:
        message: Human-readable error description.
        exit_code: Optional override for the class-level exit code.
    """

    exit_code: int = EXIT_GENERIC_FAILURE

    def __init__(self, message: str, exit_code: int | None = None):
        super().__init__(message)
        if exit_code is not None:
            self.exit_code = exit_code


class ConfigError(OcaAuthError):
    """Raised for malformed configuration such as an invalid IDCS or base URL.

    Always raised before any network call is attempted.
    """

    exit_code = EXIT_INVALID_USAGE


class AuthError(OcaAuthError):
    """Raised when authentication fails or a credential cannot be used."""

    exit_code = EXIT_AUTH_FAILURE


class TokenExchangeError(AuthError):
    """Raised when the IDCS token endpoint rejects a grant or cannot be reached.

    Attributes:
        status_code: HTTP status returned by the token endpoint, or ``None``
            for transport-level failures.
    """

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class TokenRefreshError(TokenExchangeError):
    """Raised when a stored OAuth credential cannot be refreshed.

    The message always ends with the re-authentication hint so the host can
    show it to the user as-is.
    """


class OAuthCallbackError(AuthError):
    """Raised inside the OAuth flow when the redirect callback reports a failure."""


class AuthorizationSupersededError(OAuthCallbackError):
    """Raised for a pending authorization replaced by a newer one."""
