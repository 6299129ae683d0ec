"""Base-URL and model discovery for the Oracle Code Assist LiteLLM gateway.

:class:`DiscoveryEngine` finds which candidate base URL answers for the
caller's bearer token and which models it serves:

* Candidates come from :func:`~oca_auth.config.candidate_base_urls`
  (explicit override alone, else ``OCA_BASE_URLS`` then the built-in
  defaults).
* Every candidate is probed concurrently. Within one candidate the paths
  in :data:`DISCOVERY_PATHS` are tried strictly in order until one answers
  2xx.
* The first candidate to answer wins; the remaining probes are cancelled.
* Timeouts, connection errors and error statuses are skipped silently. When
  nothing answers, discovery yields ``None`` and callers carry on without
  a resolved base URL.

Results are kept in a :class:`~oca_auth.discovery.cache.DiscoveryCache`
(the process-wide one unless another is injected).
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

import httpx

from oca_auth.config import candidate_base_urls, resolve_discovery_settings
from oca_auth.discovery.cache import DiscoveryCache, get_discovery_cache
from oca_auth.discovery.parser import parse_models_payload
from oca_auth.models import DiscoveryResult, DiscoverySettings

logger = logging.getLogger(__name__)

DISCOVERY_PATHS: tuple[str, ...] = ("/models", "/v1/models", "/v1/model/info")
PROBE_TIMEOUT = 10.0


class DiscoveryEngine:
    """Resolve the API base URL and model catalog for a bearer token.

    Args:
        cache: Where results are kept. Defaults to the process-wide cache.
        settings: Base-URL overrides. Read from the environment on each
            discovery when omitted.
        client: Optional HTTP client used for every probe.
        timeout: Per-attempt timeout in seconds.

    Example::

        engine = DiscoveryEngine()
        result = await engine.discover(access_token)
        if result:
            print(result.base_url, result.model_ids)
    """

    def __init__(
        self,
        cache: Optional[DiscoveryCache] = None,
        settings: Optional[DiscoverySettings] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = PROBE_TIMEOUT,
    ) -> None:
        self._cache = cache
        self._settings = settings
        self._client = client
        self._timeout = timeout

    @property
    def cache(self) -> DiscoveryCache:
        return self._cache if self._cache is not None else get_discovery_cache()

    def settings(self) -> DiscoverySettings:
        """Return the injected settings or read them from the environment.

        Raises:
            ConfigError: If ``OCA_BASE_URL`` is malformed.
        """
        if self._settings is not None:
            return self._settings
        return resolve_discovery_settings()

    async def discover(self, token: str) -> Optional[DiscoveryResult]:
        """Return the cached discovery result, probing the network on a miss.

        Concurrent callers share one probe run.
        """
        settings = self.settings()
        return await self.cache.get_or_compute(lambda: self.probe(token, settings))

    async def resolve_base_url(self, token: Optional[str]) -> Optional[str]:
        """Return the explicit override, else the discovered base URL."""
        settings = self.settings()
        if settings.explicit_base_url:
            return settings.explicit_base_url
        if not token:
            return None
        result = await self.discover(token)
        return result.base_url if result else None

    async def probe(
        self, token: str, settings: Optional[DiscoverySettings] = None
    ) -> Optional[DiscoveryResult]:
        """Probe every candidate concurrently; bypasses the cache."""
        candidates = candidate_base_urls(settings or self.settings())
        if not candidates:
            return None

        if self._client is not None:
            return await self._race(self._client, candidates, token)
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            return await self._race(client, candidates, token)

    async def _race(
        self, client: httpx.AsyncClient, candidates: list[str], token: str
    ) -> Optional[DiscoveryResult]:
        tasks = [
            asyncio.ensure_future(self._probe_base_url(client, url, token))
            for url in candidates
        ]
        try:
            for next_done in asyncio.as_completed(tasks):
                result = await next_done
                if result is not None:
                    logger.info(
                        "Discovered OCA base URL %s via %s (%d models)",
                        result.base_url,
                        result.path,
                        len(result.models),
                    )
                    return result
        finally:
            for task in tasks:
                task.cancel()
        logger.info("No OCA base URL answered discovery (%d candidates)", len(candidates))
        return None

    async def _probe_base_url(
        self, client: httpx.AsyncClient, base_url: str, token: str
    ) -> Optional[DiscoveryResult]:
        root = base_url.rstrip("/")
        headers = {"Authorization": f"Bearer {token}", "Accept": "application/json"}
        for path in DISCOVERY_PATHS:
            url = f"{root}{path}"
            try:
                response = await client.get(url, headers=headers, timeout=self._timeout)
            except httpx.HTTPError as exc:
                logger.debug("Discovery probe %s failed: %s", url, exc)
                continue
            if not response.is_success:
                logger.debug("Discovery probe %s answered %s", url, response.status_code)
                continue
            try:
                models = tuple(parse_models_payload(_json_body(response)))
            except ValueError as exc:
                logger.debug("Discovery probe %s returned an unusable body: %s", url, exc)
                continue
            return DiscoveryResult(base_url=base_url, models=models, path=path)
        return None


def _json_body(response: httpx.Response) -> object:
    if "json" not in response.headers.get("content-type", ""):
        return {}
    try:
        return response.json()
    except ValueError:
        return {}
