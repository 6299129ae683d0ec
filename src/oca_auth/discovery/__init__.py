"""Base-URL and model discovery against the OCA LiteLLM gateway.

This package provides :class:`DiscoveryEngine`, which races the candidate
base URLs and parses the first model listing that answers, and
:class:`DiscoveryCache`, the single-flight cache shared by every loader in
the process.
"""

from oca_auth.discovery.cache import (
    DiscoveryCache,
    get_discovery_cache,
    reset_discovery_cache,
    set_discovery_cache,
)
from oca_auth.discovery.engine import DISCOVERY_PATHS, DiscoveryEngine
from oca_auth.discovery.parser import parse_models_payload

__all__ = [
    "DISCOVERY_PATHS",
    "DiscoveryCache",
    "DiscoveryEngine",
    "get_discovery_cache",
    "parse_models_payload",
    "reset_discovery_cache",
    "set_discovery_cache",
]
