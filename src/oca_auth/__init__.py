"""oca-auth -- credential management for the Oracle Code Assist provider.

This package plugs into a host CLI and keeps its ``oca`` provider
authenticated. It handles the interactive OAuth2 (PKCE) login against
Oracle IDCS, refreshes access tokens before every provider call, falls
back to static API keys, and discovers which LiteLLM endpoint serves the
account and which models it exposes.

Typical host wiring::

    from oca_auth.plugin import OcaAuthPlugin

    plugin = OcaAuthPlugin(store)
    decoration = await plugin.loader(get_credential, provider)
    # decoration.base_url / decoration.auth are ready for httpx.

Modules:
    plugin: Host-facing plugin surface (provider id, loader, login methods).
    auth: OAuth flow, token client, credential loader and stores.
    discovery: Base-URL probing and model catalog parsing.
    registry: Merging discovered models into the host's model registry.
    models: Pydantic models shared across the package.
    config: Environment resolution, URL validation and XDG paths.
    exceptions: Exception hierarchy with exit-code mapping.
"""

__version__ = "0.3.0"
