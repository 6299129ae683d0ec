"""Shared test fixtures for oca-auth.

Provides environment isolation, fake host stores and helpers for building
``httpx.MockTransport`` clients. These fixtures are automatically
discovered by pytest and available to all test modules without explicit
imports.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable, Optional

import httpx
import pytest

from oca_auth.auth.base import HostCredentialStore, StoredCredential
from oca_auth.config import reset_env_cache
from oca_auth.discovery.cache import reset_discovery_cache
from oca_auth.output import reset_output

ENV_VARS = (
    "OCA_BASE_URL",
    "OCA_BASE_URLS",
    "OCA_IDCS_URL",
    "OCA_CLIENT_ID",
    "OCA_ENV_FILE",
    "NO_COLOR",
)


# ---------------------------------------------------------------------------
# Auto-reset global state between tests
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _reset_globals() -> None:
    """Reset the env-file latch, the discovery cache and the OutputManager.

    The OutputManager caches references to sys.stdout/sys.stderr at
    creation time; when Typer's CliRunner redirects those streams the
    cached references go stale, so a fresh manager is created per test.
    """
    reset_env_cache()
    reset_discovery_cache()
    yield
    reset_output()
    reset_discovery_cache()
    reset_env_cache()
    # The CLI callback detaches the package logger from the root logger.
    package_logger = logging.getLogger("oca_auth")
    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)
    package_logger.setLevel(logging.NOTSET)
    package_logger.propagate = True


@pytest.fixture(autouse=True)
def isolated_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Isolate environment variables and XDG directories to *tmp_path*.

    Clears every ``OCA_*`` override, points the XDG directories into the
    temporary directory and changes the working directory there so that
    no real ``.env`` file is picked up.
    """
    for var in ENV_VARS:
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "config"))
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / "data"))
    monkeypatch.chdir(tmp_path)
    return tmp_path


# ---------------------------------------------------------------------------
# Host store double
# ---------------------------------------------------------------------------


class MemoryStore(HostCredentialStore):
    """In-memory host store that records every ``set`` call."""

    def __init__(self, initial: Optional[dict[str, StoredCredential]] = None) -> None:
        self.items: dict[str, StoredCredential] = dict(initial or {})
        self.sets: list[tuple[str, StoredCredential]] = []

    async def set(self, identity: str, credential: StoredCredential) -> None:
        self.sets.append((identity, credential))
        self.items[identity] = credential

    async def get(self, identity: str) -> Optional[StoredCredential]:
        return self.items.get(identity)


@pytest.fixture
def memory_store() -> MemoryStore:
    return MemoryStore()


# ---------------------------------------------------------------------------
# HTTP helpers
# ---------------------------------------------------------------------------


Handler = Callable[[httpx.Request], httpx.Response]


class RecordingTransport(httpx.MockTransport):
    """MockTransport that keeps every request it served."""

    def __init__(self, handler: Handler) -> None:
        self.requests: list[httpx.Request] = []

        def _record(request: httpx.Request) -> httpx.Response:
            self.requests.append(request)
            return handler(request)

        super().__init__(_record)


@pytest.fixture
def make_client() -> Callable[[Handler], tuple[httpx.AsyncClient, RecordingTransport]]:
    """Build an ``httpx.AsyncClient`` around a recording mock transport."""

    def _make(handler: Handler) -> tuple[httpx.AsyncClient, RecordingTransport]:
        transport = RecordingTransport(handler)
        return httpx.AsyncClient(transport=transport), transport

    return _make
