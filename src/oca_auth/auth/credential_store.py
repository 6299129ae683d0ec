"""File-backed credential store used by the ``oca-auth`` command line.

Stores credentials in ``~/.local/share/oca-auth/credentials/<identity>.json``
(XDG) or the platform-equivalent directory. Files are written atomically
via :func:`~oca_auth.config.atomic_write` with ``0o600`` permissions so
that tokens are never world-readable, even momentarily.

Each identity (normally ``"oca"``) maps to exactly one JSON file holding
either credential shape, tagged by ``type``::

    {"type": "oauth", "access": "...", "refresh": "...", "expires": 1760000000000,
     "enterpriseUrl": "https://idcs-....identity.oraclecloud.com",
     "accountId": "a8331954c0cf48ba99b5dd223a14c6ea"}

    {"type": "api", "key": "..."}

Secrets are stored as-is; protecting them beyond file permissions is left
to the host.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Optional

from pydantic import TypeAdapter, ValidationError

from oca_auth.auth.base import HostCredentialStore, StoredCredential
from oca_auth.config import atomic_write, get_data_dir
from oca_auth.models import Credential

logger = logging.getLogger(__name__)

_CREDENTIAL_ADAPTER: TypeAdapter[StoredCredential] = TypeAdapter(Credential)


def _credentials_dir() -> Path:
    """Return the credentials directory, creating it if needed."""
    path = get_data_dir() / "credentials"
    path.mkdir(parents=True, exist_ok=True)
    return path


class CredentialStore(HostCredentialStore):
    """Read/write one credential file per identity.

    Args:
        directory: Where credential files live. Defaults to
            ``<data dir>/credentials``.

    Example::

        store = CredentialStore()
        await store.set("oca", ApiKeyCredential(key="sk-123"))
        credential = await store.get("oca")
        assert credential.key == "sk-123"
    """

    def __init__(self, directory: Optional[Path] = None) -> None:
        self._directory = directory

    @property
    def directory(self) -> Path:
        if self._directory is not None:
            return self._directory
        return _credentials_dir()

    def path_for(self, identity: str) -> Path:
        """The filesystem path of *identity*'s credential file."""
        return self.directory / f"{identity}.json"

    async def set(self, identity: str, credential: StoredCredential) -> None:
        """Persist *credential* atomically with ``0o600`` permissions.

        Raises:
            OSError: If the file cannot be written (permissions, disk full, etc.).
        """
        data = credential.model_dump(mode="json", by_alias=True, exclude_none=True)
        text = json.dumps(data, indent=2) + "\n"
        atomic_write(self.path_for(identity), text, mode=0o600)
        logger.debug("Stored %s credential for %s", credential.type, identity)

    async def get(self, identity: str) -> Optional[StoredCredential]:
        """Load the stored credential.

        Returns:
            The credential, or ``None`` if the file does not exist or
            cannot be parsed.
        """
        path = self.path_for(identity)
        if not path.is_file():
            return None
        try:
            return _CREDENTIAL_ADAPTER.validate_json(path.read_text(encoding="utf-8"))
        except (ValidationError, OSError) as exc:
            logger.warning("Ignoring unreadable credential file %s: %s", path, exc)
            return None

    def clear(self, identity: str) -> bool:
        """Delete *identity*'s credential file.

        Returns:
            ``True`` if a file was removed, ``False`` if there was none.
        """
        path = self.path_for(identity)
        if path.is_file():
            path.unlink()
            return True
        return False
