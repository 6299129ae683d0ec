"""Abstract interface to the host's credential store.

The host owns credentials; oca-auth only reads snapshots and asks the host
to persist new ones. Any object implementing :class:`HostCredentialStore`
can back a :class:`~oca_auth.auth.loader.CredentialLoader`:

- :meth:`~HostCredentialStore.set` is called after every successful
  refresh or authorization, before the new credential is used.
- :meth:`~HostCredentialStore.get` returns the current snapshot, or
  ``None`` when nothing is stored.

See Also:
    :class:`oca_auth.auth.credential_store.CredentialStore` for the
    file-backed implementation the CLI uses.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional, Union

from oca_auth.models import ApiKeyCredential, OAuthCredential

StoredCredential = Union[OAuthCredential, ApiKeyCredential]


class HostCredentialStore(ABC):
    """Where the host keeps one credential per provider identity.

    Example::

        class MemoryStore(HostCredentialStore):
            def __init__(self):
                self.items = {}

            async def set(self, identity, credential):
                self.items[identity] = credential

            async def get(self, identity):
                return self.items.get(identity)
    """

    @abstractmethod
    async def set(self, identity: str, credential: StoredCredential) -> None:
        """Persist *credential* for *identity*, replacing any previous one.

        Raises:
            OSError: Implementations may propagate storage failures; the
                loader treats them as refresh failures.
        """
        ...

    @abstractmethod
    async def get(self, identity: str) -> Optional[StoredCredential]:
        """Return the stored credential for *identity*, or ``None``."""
        ...
