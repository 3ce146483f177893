"""Provider registry for human-in-the-loop handoff."""

from __future__ import annotations

from typing import TYPE_CHECKING

from botbridge.hitl.brevo import BrevoProvider
from botbridge.hitl.hubspot import HubSpotHelpDeskProvider, HubSpotInboxProvider
from botbridge.hitl.salesforce import SalesforceProvider

if TYPE_CHECKING:
    import httpx

    from botbridge.config import Settings
    from botbridge.hitl.base import HitlProvider
    from botbridge.platform.client import PlatformClient
    from botbridge.services.state_service import StateStore

PROVIDERS: dict[
    str,
    type[BrevoProvider]
    | type[HubSpotInboxProvider]
    | type[HubSpotHelpDeskProvider]
    | type[SalesforceProvider],
] = {
    "brevo": BrevoProvider,
    "hubspot-inbox": HubSpotInboxProvider,
    "hubspot-help-desk": HubSpotHelpDeskProvider,
    "salesforce": SalesforceProvider,
}


def get_provider(
    name: str,
    settings: Settings,
    platform: PlatformClient,
    store: StateStore,
    http_client: httpx.AsyncClient | None = None,
) -> HitlProvider:
    """Create the handoff provider registered under ``name``.

    Raises ValueError if the provider is unknown and ConfigurationError if its
    settings are incomplete. State is kept under the provider's own name.
    """
    provider_cls = PROVIDERS.get(name)
    if provider_cls is None:
        msg = f"Unknown provider: {name!r}. Available: {list(PROVIDERS)}"
        raise ValueError(msg)
    return provider_cls.from_settings(
        settings, platform, store.for_integration(name), http_client=http_client
    )


def list_providers() -> list[str]:
    """Return the list of supported provider names."""
    return list(PROVIDERS.keys())
