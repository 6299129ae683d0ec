"""Configuration: environment overrides, URL validation, and XDG paths.

This module handles every piece of configuration oca-auth reads:

* **Environment file** -- :func:`load_env` reads an optional ``.env`` once
  per process via :mod:`dotenv`, never overwriting variables that are
  already set.
* **OAuth coordinates** -- :func:`oauth_config` resolves the IDCS URL and
  client id with precedence credential > environment > built-in default.
* **Base-URL candidates** -- :func:`resolve_discovery_settings` and
  :func:`candidate_base_urls` build the ordered list of LiteLLM endpoints
  that discovery probes, filtered by :func:`is_safe_base_url`.
* **Validation** -- :func:`validate_idcs_url` and :func:`validate_base_url`
  fail fast with :class:`~oca_auth.exceptions.ConfigError` before any
  network call.
* **Directory layout** -- XDG Base Directory compliant on Linux/BSD,
  ``~/.oca-auth/`` on macOS and Windows. See :func:`get_config_dir` and
  :func:`get_data_dir`.

Recognised environment variables:

``OCA_BASE_URL``
    Single explicit API base URL. Disables the candidate list.
``OCA_BASE_URLS``
    Comma-separated candidate base URLs probed before the defaults.
``OCA_IDCS_URL`` / ``OCA_CLIENT_ID``
    Identity-service URL and OAuth client id overrides.
``OCA_ENV_FILE``
    Path of the ``.env`` file to load (default ``./.env``, then
    ``.env`` in the configuration directory).
"""

from __future__ import annotations

import ipaddress
import logging
import os
import platform
import tempfile
from pathlib import Path
from typing import Optional, Union
from urllib.parse import urlsplit

from dotenv import load_dotenv

from oca_auth.exceptions import ConfigError
from oca_auth.models import (
    ApiKeyCredential,
    DiscoverySettings,
    OAuthConfig,
    OAuthCredential,
)

logger = logging.getLogger(__name__)

_APP_NAME = "oca-auth"

# Public OAuth client registered for Oracle Code Assist command-line tools.
DEFAULT_IDCS_URL = "https://idcs-9dc693e80d9b469480d7afe00e743931.identity.oraclecloud.com"
DEFAULT_CLIENT_ID = "a8331954c0cf48ba99b5dd223a14c6ea"

OAUTH_PORT = 48801
OAUTH_REDIRECT_PATH = "/auth/oca"

DEFAULT_BASE_URLS: tuple[str, ...] = (
    "https://code-internal.aiservice.us-chicago-1.oci.oraclecloud.com/20250206/app/litellm",
    "https://code.aiservice.us-chicago-1.oci.oraclecloud.com/20250206/app/litellm",
)

ENV_BASE_URL = "OCA_BASE_URL"
ENV_BASE_URLS = "OCA_BASE_URLS"
ENV_IDCS_URL = "OCA_IDCS_URL"
ENV_CLIENT_ID = "OCA_CLIENT_ID"
ENV_FILE = "OCA_ENV_FILE"

_BLOCKED_HOSTS = frozenset({
    "metadata.google.internal",
    "metadata",
    "100.100.100.200",
    "fd00:ec2::254",
})


# --- Environment file ---


_env_loaded = False


def load_env(path: Optional[Union[str, Path]] = None) -> bool:
    """Load the local ``.env`` file once per process.

    Variables already present in ``os.environ`` always win. Subsequent
    calls are no-ops until :func:`reset_env_cache` is called.

    Args:
        path: Explicit file to load. Defaults to ``$OCA_ENV_FILE``, else
            ``./.env``, else ``.env`` in :func:`get_config_dir`.

    Returns:
        ``True`` if a file was read on this call.
    """
    global _env_loaded
    if _env_loaded:
        return False
    _env_loaded = True

    if path is not None:
        candidates = [Path(path)]
    elif os.environ.get(ENV_FILE):
        candidates = [Path(os.environ[ENV_FILE])]
    else:
        candidates = [Path.cwd() / ".env", get_config_dir() / ".env"]

    for candidate in candidates:
        env_path = candidate.expanduser()
        if env_path.is_file():
            logger.debug("Loading environment overrides from %s", env_path)
            return load_dotenv(env_path, override=False)
    return False


def reset_env_cache() -> None:
    """Allow the next :func:`load_env` call to read the file again."""
    global _env_loaded
    _env_loaded = False


def _env(name: str) -> Optional[str]:
    value = os.environ.get(name, "").strip()
    return value or None


# --- OAuth coordinates ---


def oauth_config(
    credential: Optional[Union[OAuthCredential, ApiKeyCredential]] = None,
) -> OAuthConfig:
    """Resolve the IDCS URL and client id for an OAuth exchange.

    Precedence (high to low):
        1. ``enterprise_url`` / ``account_id`` stored on the credential
        2. ``OCA_IDCS_URL`` / ``OCA_CLIENT_ID``
        3. Built-in defaults

    The URL is returned as configured; callers validate it with
    :func:`validate_idcs_url` before use.
    """
    load_env()
    enterprise_url = None
    account_id = None
    if isinstance(credential, OAuthCredential):
        enterprise_url = credential.enterprise_url
        account_id = credential.account_id
    return OAuthConfig(
        idcs_url=enterprise_url or _env(ENV_IDCS_URL) or DEFAULT_IDCS_URL,
        client_id=account_id or _env(ENV_CLIENT_ID) or DEFAULT_CLIENT_ID,
    )


# --- URL validation ---


def _is_http_url(url: str) -> bool:
    try:
        parts = urlsplit(url)
    except ValueError:
        return False
    return parts.scheme in ("http", "https") and bool(parts.hostname)


def validate_idcs_url(url: str) -> str:
    """Validate an identity-service URL and strip trailing slashes.

    Raises:
        ConfigError: If *url* is not an absolute http(s) URL with a host.
    """
    candidate = (url or "").strip()
    if not _is_http_url(candidate):
        raise ConfigError(f"Invalid IDCS URL: {url!r} (expected an http(s) URL)")
    return candidate.rstrip("/")


def validate_base_url(url: str) -> str:
    """Validate an explicit API base URL and strip trailing slashes.

    Raises:
        ConfigError: If *url* is not an absolute http(s) URL with a host.
    """
    candidate = (url or "").strip()
    if not _is_http_url(candidate):
        raise ConfigError(f"Invalid base URL: {url!r} (expected an http(s) URL)")
    return candidate.rstrip("/")


def _is_loopback(host: str) -> bool:
    if host == "localhost":
        return True
    try:
        return ipaddress.ip_address(host).is_loopback
    except ValueError:
        return False


def is_safe_base_url(url: str) -> bool:
    """Return ``True`` if *url* may receive a bearer token during discovery.

    Rules:
        * Only ``http`` and ``https`` schemes.
        * Plaintext ``http`` is accepted for loopback hosts only.
        * Link-local ranges and cloud metadata endpoints are rejected.
    """
    if not _is_http_url(url):
        return False
    parts = urlsplit(url)
    host = (parts.hostname or "").lower()
    if host in _BLOCKED_HOSTS:
        return False
    try:
        address = ipaddress.ip_address(host)
    except ValueError:
        address = None
    if address is not None and address.is_link_local:
        return False
    if parts.scheme == "http" and not _is_loopback(host):
        return False
    return True


# --- Base-URL candidates ---


def resolve_discovery_settings() -> DiscoverySettings:
    """Read the base-URL overrides from the environment.

    Raises:
        ConfigError: If ``OCA_BASE_URL`` is set but malformed.
    """
    load_env()
    explicit = _env(ENV_BASE_URL)
    raw_list = os.environ.get(ENV_BASE_URLS, "")
    return DiscoverySettings(
        explicit_base_url=validate_base_url(explicit) if explicit else None,
        base_urls=[item.strip() for item in raw_list.split(",") if item.strip()],
    )


def candidate_base_urls(settings: DiscoverySettings) -> list[str]:
    """Return the ordered base URLs that discovery should probe.

    An explicit override is returned alone. Otherwise the configured list
    (unsafe entries dropped with a warning) is followed by the built-in
    defaults; duplicates keep their first position.
    """
    if settings.explicit_base_url:
        return [settings.explicit_base_url]

    urls: list[str] = []
    for url in settings.base_urls:
        if not is_safe_base_url(url):
            logger.warning("Ignoring unsafe base URL from %s: %s", ENV_BASE_URLS, url)
            continue
        urls.append(url.rstrip("/"))
    urls.extend(DEFAULT_BASE_URLS)
    return list(dict.fromkeys(urls))


# --- XDG path resolution ---


def _is_xdg_platform() -> bool:
    """Return True if the platform supports XDG Base Directory spec (Linux/FreeBSD)."""
    return platform.system() == "Linux" or platform.system().endswith("BSD")


def _fallback_base_dir() -> Path:
    """Fallback base directory for non-XDG platforms (macOS, Windows)."""
    return Path.home() / f".{_APP_NAME}"


def _xdg_base(env_var: str, default_segments: tuple[str, ...]) -> Path:
    """Resolve an XDG base directory from an env var with fallback segments under $HOME."""
    env_value = os.environ.get(env_var, "")
    if env_value:
        return Path(env_value)
    base = Path.home()
    for seg in default_segments:
        base = base / seg
    return base


def get_config_dir() -> Path:
    """Return the configuration directory, creating it if necessary.

    On Linux/BSD: ``$XDG_CONFIG_HOME/oca-auth/`` (default ``~/.config/oca-auth/``).
    On macOS/Windows: ``~/.oca-auth/``.
    """
    if _is_xdg_platform():
        path = _xdg_base("XDG_CONFIG_HOME", (".config",)) / _APP_NAME
    else:
        path = _fallback_base_dir()
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_data_dir() -> Path:
    """Return the data directory (credentials, crash logs), creating it if necessary.

    On Linux/BSD: ``$XDG_DATA_HOME/oca-auth/`` (default ``~/.local/share/oca-auth/``).
    On macOS/Windows: ``~/.oca-auth/data/``.
    """
    if _is_xdg_platform():
        path = _xdg_base("XDG_DATA_HOME", (".local", "share")) / _APP_NAME
    else:
        path = _fallback_base_dir() / "data"
    path.mkdir(parents=True, exist_ok=True)
    return path


# --- Atomic file writes ---


def atomic_write(path: Path, data: str, mode: Optional[int] = None) -> None:
    """Write data to file atomically using temp file + rename.

    The temporary file is created in the same directory as *path* so that
    ``os.replace`` is an atomic rename on POSIX systems. When *mode* is
    given it is applied before any content is written.
    """
    path.parent.mkdir(parents=True, exist_ok=True)

    fd = None
    tmp_path: Optional[str] = None
    try:
        fd = tempfile.NamedTemporaryFile(
            mode="w",
            dir=path.parent,
            prefix=f".{path.name}.",
            suffix=".tmp",
            delete=False,
            encoding="utf-8",
        )
        tmp_path = fd.name
        if mode is not None:
            os.chmod(tmp_path, mode)
        fd.write(data)
        fd.flush()
        os.fsync(fd.fileno())
        fd.close()
        fd = None  # prevent double-close below
        os.replace(tmp_path, path)
    except BaseException:
        if fd is not None:
            fd.close()
        if tmp_path is not None:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
        raise
