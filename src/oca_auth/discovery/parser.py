"""Parse LiteLLM model listings into :class:`~oca_auth.models.DiscoveredModel` objects.

Three payload shapes are accepted, all with a top-level ``data`` array:

* OpenAI style (``/models``, ``/v1/models``)::

    {"data": [{"id": "oca/gpt-5", "object": "model"}]}

* LiteLLM model info (``/v1/model/info``)::

    {"data": [{"model_name": "oca/gpt-5",
               "litellm_params": {"model": "oca/gpt-5"},
               "model_info": {"is_reasoning_model": true,
                              "supported_api_list": ["responses"],
                              "context_window": 400000}}]}

* A mix of the two.

Ids lose their ``oca/`` prefix. Reasoning support and the transport kind
come from explicit ``model_info`` flags when present and from id heuristics
otherwise.
"""

from __future__ import annotations

import math
import re
from typing import Any, Optional

from oca_auth.models import DiscoveredModel, TransportKind

PROVIDER_PREFIX = "oca/"

# model_info keys mapped onto typed DiscoveredModel fields
_TYPED_INFO_KEYS = frozenset({
    "is_reasoning_model",
    "supported_api_list",
    "context_window",
    "max_input_tokens",
    "max_output_tokens",
    "input_cost_per_token",
    "output_cost_per_token",
    "supports_vision",
})

_REASONING_MARKERS = ("codex", "gpt-5", "reasoner", "thinking", "r1")
_O_SERIES = re.compile(r"^o[134](?:$|[-/])")


def normalize_model_id(raw: Any) -> Optional[str]:
    """Strip the provider prefix; return ``None`` for empty or non-string ids."""
    if not isinstance(raw, str):
        return None
    model_id = raw.strip()
    if model_id.startswith(PROVIDER_PREFIX):
        model_id = model_id[len(PROVIDER_PREFIX):]
    return model_id or None


def is_reasoning_model(model_id: str, explicit: Optional[bool] = None) -> bool:
    """Decide whether *model_id* supports reasoning output.

    An explicit flag from the payload always wins.
    """
    if explicit is not None:
        return explicit
    model = model_id.lower()
    if any(marker in model for marker in _REASONING_MARKERS):
        return True
    return bool(_O_SERIES.match(model))


def transport_kind_for(model_id: str, supported_apis: Optional[list[Any]] = None) -> TransportKind:
    """Pick the transport for *model_id*.

    A ``responses`` entry in ``supported_api_list`` selects the native
    transport, as do ``gpt-5`` and ``codex`` ids.
    """
    if supported_apis and any(
        isinstance(api, str) and "responses" in api.lower() for api in supported_apis
    ):
        return TransportKind.NATIVE
    model = model_id.lower()
    if "gpt-5" in model or "codex" in model:
        return TransportKind.NATIVE
    return TransportKind.COMPATIBLE


def _is_number(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, float):
        return math.isfinite(value)
    return isinstance(value, int)


def _as_int(value: Any) -> Optional[int]:
    if not _is_number(value):
        return None
    return int(value) if value > 0 else None


def _as_float(value: Any) -> Optional[float]:
    if not _is_number(value):
        return None
    try:
        return float(value)
    except OverflowError:
        return None


def _as_bool(value: Any) -> Optional[bool]:
    return value if isinstance(value, bool) else None


def parse_model(item: Any) -> Optional[DiscoveredModel]:
    """Turn one ``data`` entry into a :class:`DiscoveredModel`.

    Returns ``None`` for entries without a usable id.
    """
    if not isinstance(item, dict):
        return None

    params = item.get("litellm_params")
    params = params if isinstance(params, dict) else {}
    model_id = normalize_model_id(item.get("id")) or normalize_model_id(params.get("model"))
    if model_id is None:
        return None

    info = item.get("model_info")
    info = info if isinstance(info, dict) else {}
    supported_apis = info.get("supported_api_list")
    supported_apis = supported_apis if isinstance(supported_apis, list) else None

    name = item.get("model_name")
    return DiscoveredModel(
        id=model_id,
        reasoning_capable=is_reasoning_model(model_id, _as_bool(info.get("is_reasoning_model"))),
        transport_kind=transport_kind_for(model_id, supported_apis),
        name=normalize_model_id(name) if isinstance(name, str) else None,
        context_window=_as_int(info.get("context_window")) or _as_int(info.get("max_input_tokens")),
        max_output_tokens=_as_int(info.get("max_output_tokens")),
        input_cost_per_token=_as_float(info.get("input_cost_per_token")),
        output_cost_per_token=_as_float(info.get("output_cost_per_token")),
        supports_vision=_as_bool(info.get("supports_vision")),
        extra={k: v for k, v in info.items() if k not in _TYPED_INFO_KEYS and v is not None},
        raw_metadata=item,
    )


def parse_models_payload(body: Any) -> list[DiscoveredModel]:
    """Parse a discovery response body; duplicate ids keep their first entry."""
    if not isinstance(body, dict):
        return []
    data = body.get("data")
    if not isinstance(data, list):
        return []

    models: dict[str, DiscoveredModel] = {}
    for item in data:
        model = parse_model(item)
        if model is not None and model.id not in models:
            models[model.id] = model
    return list(models.values())
