"""Numeric process exit codes following `clig.dev <https://clig.dev/>`_ conventions.

Each constant maps to a specific error category and is referenced by the
corresponding :class:`~oca_auth.exceptions.OcaAuthError` subclass.

Example::

    $ oca-auth refresh
    $ echo $?
    3   # EXIT_AUTH_FAILURE -- the refresh token was rejected
"""

EXIT_SUCCESS = 0
"""The command completed successfully."""

EXIT_GENERIC_FAILURE = 1
"""An unclassified error occurred."""

EXIT_INVALID_USAGE = 2
"""The command was invoked with invalid arguments or configuration."""

EXIT_AUTH_FAILURE = 3
"""Authentication failed or the stored credential can no longer be used."""
