"""Canonical Pydantic models shared across all oca-auth modules.

This is the single source of truth for data shapes in the project. The
models fall into three groups:

**Credentials and tokens** -- what the host stores and what IDCS returns:
    :class:`OAuthCredential`, :class:`ApiKeyCredential`, the
    :data:`Credential` union, :class:`TokenResponse`, :class:`OAuthConfig`
    and :class:`AuthorizationResult`.

**Discovery** -- produced by :mod:`oca_auth.discovery`:
    :class:`TransportKind`, :class:`DiscoverySettings`,
    :class:`DiscoveredModel` and :class:`DiscoveryResult`.

**Model registry** -- host-owned records that discovery merges into:
    :class:`ApiLink`, :class:`Modalities`, :class:`Capabilities`,
    :class:`CacheCost`, :class:`Cost`, :class:`Limit`,
    :class:`ModelRegistryEntry` and :class:`ProviderRegistry`.

Field aliases mirror the host's camelCase wire format (``enterpriseUrl``,
``providerID``); every model also accepts the snake_case field names.
"""

from __future__ import annotations

import enum
import time
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


# --- Credentials ---


class OAuthCredential(BaseModel):
    """An OAuth credential snapshot as held by the host's credential store.

    Snapshots are immutable; a refresh produces a new instance that the
    loader asks the host to persist.

    Attributes:
        access: The current access token (may be empty or expired).
        refresh: The refresh token. An empty value cannot be repaired.
        expires: Access-token expiry as epoch milliseconds.
        enterprise_url: IDCS URL the credential was issued by.
        account_id: OAuth client id the credential was issued to.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    type: Literal["oauth"] = "oauth"
    access: str = ""
    refresh: str = ""
    expires: int = 0
    enterprise_url: Optional[str] = Field(default=None, alias="enterpriseUrl")
    account_id: Optional[str] = Field(default=None, alias="accountId")

    def is_expired(self, now_ms: Optional[int] = None) -> bool:
        """Return ``True`` when there is no access token or it has expired."""
        if now_ms is None:
            now_ms = int(time.time() * 1000)
        return not self.access or self.expires <= now_ms


class ApiKeyCredential(BaseModel):
    """A static API key credential."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    type: Literal["api"] = "api"
    key: str = ""


Credential = Annotated[
    Union[OAuthCredential, ApiKeyCredential], Field(discriminator="type")
]
"""Tagged union of every credential kind, discriminated on ``type``."""


class TokenResponse(BaseModel):
    """JSON body returned by the IDCS token endpoint."""

    model_config = ConfigDict(extra="allow")

    access_token: str
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    token_type: str = "Bearer"


class OAuthConfig(BaseModel):
    """Resolved identity-service coordinates for one OAuth exchange."""

    idcs_url: str
    client_id: str


class AuthorizationResult(BaseModel):
    """Outcome of an interactive authorization, as handed back to the host.

    ``type == "failed"`` carries only ``error``; a success carries the fresh
    tokens plus the IDCS coordinates they were issued for.
    """

    model_config = ConfigDict(populate_by_name=True)

    type: Literal["success", "failed"]
    access: str = ""
    refresh: str = ""
    expires: int = 0
    account_id: Optional[str] = Field(default=None, alias="accountId")
    enterprise_url: Optional[str] = Field(default=None, alias="enterpriseUrl")
    error: Optional[str] = None

    def to_credential(self) -> OAuthCredential:
        """Convert a successful result into a storable :class:`OAuthCredential`.

        Raises:
            ValueError: If the authorization failed.
        """
        if self.type != "success":
            raise ValueError("Cannot build a credential from a failed authorization")
        return OAuthCredential(
            access=self.access,
            refresh=self.refresh,
            expires=self.expires,
            enterprise_url=self.enterprise_url,
            account_id=self.account_id,
        )


# --- Discovery ---


class TransportKind(str, enum.Enum):
    """Which client transport a model is served through.

    ``NATIVE`` models speak the OpenAI Responses API; ``COMPATIBLE`` models
    only the OpenAI-compatible chat completions API.
    """

    NATIVE = "native"
    COMPATIBLE = "compatible"


class DiscoverySettings(BaseModel):
    """Base-URL overrides read from the environment."""

    explicit_base_url: Optional[str] = Field(
        default=None, description="OCA_BASE_URL: single override, skips probing fallbacks"
    )
    base_urls: list[str] = Field(
        default_factory=list, description="OCA_BASE_URLS: candidates tried before defaults"
    )


class DiscoveredModel(BaseModel):
    """One model advertised by a discovery endpoint.

    Attributes:
        id: Model id with any ``oca/`` provider prefix stripped.
        reasoning_capable: Whether the model supports reasoning output.
        transport_kind: Which transport the model should be called through.
        raw_metadata: The untouched descriptor from the payload.
        extra: ``model_info`` keys with no typed field here, kept for the
            registry's discovery bucket.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    reasoning_capable: bool = False
    transport_kind: TransportKind = TransportKind.COMPATIBLE
    name: Optional[str] = None
    context_window: Optional[int] = None
    max_output_tokens: Optional[int] = None
    input_cost_per_token: Optional[float] = None
    output_cost_per_token: Optional[float] = None
    supports_vision: Optional[bool] = None
    extra: dict[str, Any] = Field(default_factory=dict)
    raw_metadata: dict[str, Any] = Field(default_factory=dict)


class DiscoveryResult(BaseModel):
    """A working base URL together with the models it serves."""

    model_config = ConfigDict(frozen=True)

    base_url: str
    models: tuple[DiscoveredModel, ...] = ()
    path: Optional[str] = Field(
        default=None, description="Discovery path that answered, e.g. /v1/models"
    )

    @property
    def model_ids(self) -> list[str]:
        return [m.id for m in self.models]


# --- Model registry ---


class ApiLink(BaseModel):
    """How the host reaches a model: upstream id, base URL and SDK package."""

    id: str
    url: str
    npm: str


class Modalities(BaseModel):
    text: bool = True
    audio: bool = False
    image: bool = False
    video: bool = False
    pdf: bool = False


class Capabilities(BaseModel):
    """Capability flags. ``None`` means the host has no opinion yet."""

    temperature: Optional[bool] = None
    reasoning: Optional[bool] = None
    attachment: Optional[bool] = None
    toolcall: Optional[bool] = None
    input: Optional[Modalities] = None
    output: Optional[Modalities] = None


class CacheCost(BaseModel):
    read: float = 0
    write: float = 0


class Cost(BaseModel):
    """Price per million tokens."""

    input: float = 0
    output: float = 0
    cache: CacheCost = Field(default_factory=CacheCost)


class Limit(BaseModel):
    context: int = 128_000
    output: int = 16_384


class ModelRegistryEntry(BaseModel):
    """A host-owned model record.

    The discovery merge fills gaps in these records and never deletes them.
    ``options`` is the single extension bucket: discovery metadata without a
    typed home is kept there under a namespaced key.
    """

    model_config = ConfigDict(populate_by_name=True, validate_assignment=True)

    id: Optional[str] = None
    provider_id: Optional[str] = Field(default=None, alias="providerID")
    name: Optional[str] = None
    api: Optional[ApiLink] = None
    status: Optional[str] = None
    capabilities: Optional[Capabilities] = None
    cost: Optional[Cost] = None
    limit: Optional[Limit] = None
    options: dict[str, Any] = Field(default_factory=dict)
    headers: Optional[dict[str, str]] = None


class ProviderRegistry(BaseModel):
    """The host's provider record with its models keyed by model id."""

    model_config = ConfigDict(populate_by_name=True)

    id: str = "oca"
    name: Optional[str] = None
    options: dict[str, Any] = Field(default_factory=dict)
    models: dict[str, ModelRegistryEntry] = Field(default_factory=dict)
