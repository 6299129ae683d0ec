"""Merge discovered models into the host's model registry.

The registry belongs to the host and may carry user customisation, so the
merge only ever adds:

* **Always refreshed** from discovery: ``id``, ``provider_id``, the whole
  ``api`` link (upstream id, base URL, SDK package),
  ``capabilities.reasoning`` and the ``options["oca_discovery"]`` bucket.
* **Filled when absent or still at the built-in default**: ``name``,
  ``status``, ``cost``, ``limit``, the remaining capability flags and
  ``headers``.
* Everything else, including unknown ``options`` keys, is left alone.
  Entries are never deleted.

Merging the same discovery result twice yields the same registry.
"""

from __future__ import annotations

from typing import Any, Optional

from oca_auth.models import (
    ApiLink,
    Capabilities,
    CacheCost,
    Cost,
    DiscoveredModel,
    DiscoveryResult,
    Limit,
    Modalities,
    ModelRegistryEntry,
    ProviderRegistry,
    TransportKind,
)

PROVIDER_ID = "oca"
DISCOVERY_OPTIONS_KEY = "oca_discovery"
DEFAULT_STATUS = "active"

NPM_PACKAGES: dict[TransportKind, str] = {
    TransportKind.NATIVE: "@ai-sdk/openai",
    TransportKind.COMPATIBLE: "@ai-sdk/openai-compatible",
}

_PER_MILLION = 1_000_000


def npm_package_for(model: DiscoveredModel) -> str:
    return NPM_PACKAGES[model.transport_kind]


def _discovered_cost(model: DiscoveredModel) -> Cost:
    return Cost(
        input=(model.input_cost_per_token or 0) * _PER_MILLION,
        output=(model.output_cost_per_token or 0) * _PER_MILLION,
        cache=CacheCost(),
    )


def _discovered_limit(model: DiscoveredModel) -> Limit:
    default = Limit()
    return Limit(
        context=model.context_window or default.context,
        output=model.max_output_tokens or default.output,
    )


def _discovery_bucket(model: DiscoveredModel, base_url: str) -> dict[str, Any]:
    bucket: dict[str, Any] = {
        "base_url": base_url,
        "transport": model.transport_kind.value,
    }
    if model.extra:
        bucket["metadata"] = dict(model.extra)
    return bucket


def _merge_capabilities(current: Optional[Capabilities], model: DiscoveredModel) -> Capabilities:
    caps = current.model_copy(deep=True) if current is not None else Capabilities()
    caps.reasoning = model.reasoning_capable
    if caps.temperature is None:
        caps.temperature = True
    if caps.toolcall is None:
        caps.toolcall = True
    if caps.attachment is None:
        caps.attachment = bool(model.supports_vision)
    if caps.input is None:
        caps.input = Modalities(image=bool(model.supports_vision))
    if caps.output is None:
        caps.output = Modalities()
    return caps


def merge_discovered_model(
    entry: Optional[ModelRegistryEntry],
    model: DiscoveredModel,
    base_url: str,
    provider_id: str = PROVIDER_ID,
) -> ModelRegistryEntry:
    """Merge one discovered model into *entry*, creating it when ``None``.

    The entry is updated in place and returned.
    """
    if entry is None:
        entry = ModelRegistryEntry()

    entry.id = model.id
    entry.provider_id = provider_id
    entry.api = ApiLink(id=model.id, url=base_url, npm=npm_package_for(model))
    entry.capabilities = _merge_capabilities(entry.capabilities, model)

    if not entry.name:
        entry.name = model.name or model.id
    if not entry.status:
        entry.status = DEFAULT_STATUS
    if entry.cost is None or entry.cost == Cost():
        entry.cost = _discovered_cost(model)
    if entry.limit is None or entry.limit == Limit():
        entry.limit = _discovered_limit(model)
    if entry.headers is None:
        entry.headers = {}

    options = dict(entry.options)
    options[DISCOVERY_OPTIONS_KEY] = _discovery_bucket(model, base_url)
    entry.options = options
    return entry


def merge_discovered_models(
    provider: Optional[ProviderRegistry], result: DiscoveryResult
) -> Optional[ProviderRegistry]:
    """Merge every model of *result* into *provider*'s registry.

    A missing provider is a no-op. Existing entries not mentioned by the
    result are kept untouched.
    """
    if provider is None:
        return None
    for model in result.models:
        provider.models[model.id] = merge_discovered_model(
            provider.models.get(model.id), model, result.base_url, provider.id
        )
    return provider
