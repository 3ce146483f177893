"""SharePoint connector lifecycle: registration, webhook passes, resync, teardown.

Persisted state is a single document per integration instance::

    {"subscriptions": {"<library>": {"webhookSubscriptionId": "...",
                                     "changeToken": "..."}}}

Every operation reads it once at the start and writes it once at the end.
Callers must serialize operations; see ``botbridge.api.sharepoint``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from botbridge.exceptions import ConfigurationError, IntegrationError
from botbridge.services.state_service import delete_state, get_state, set_state
from botbridge.sharepoint.auth import CertificateCredential
from botbridge.sharepoint.client import SharepointClient
from botbridge.sharepoint.routing import KbRouter
from botbridge.sharepoint.sync import SharepointSync

if TYPE_CHECKING:
    from collections.abc import Callable

    from sqlalchemy.ext.asyncio import AsyncSession

    from botbridge.config import Settings
    from botbridge.platform.client import PlatformClient
    from botbridge.sharepoint.client import Library

logger = logging.getLogger(__name__)

INTEGRATION = "sharepoint"
STATE_NAME = "configuration"


@dataclass
class Subscription:
    """Webhook subscription and change cursor of one library."""

    webhook_subscription_id: str
    change_token: str

    def to_json(self) -> dict[str, str]:
        return {
            "webhookSubscriptionId": self.webhook_subscription_id,
            "changeToken": self.change_token,
        }

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> Subscription:
        return cls(
            webhook_subscription_id=str(data.get("webhookSubscriptionId", "")),
            change_token=str(data.get("changeToken", "")),
        )


def build_router(settings: Settings) -> KbRouter:
    """Build the KB router from settings; at least one KB must be reachable."""
    router = KbRouter(settings.sharepoint_kb_routes(), settings.sharepoint_kb_id)
    if not router.kb_ids:
        msg = "Configure SHAREPOINT_KB_ID or SHAREPOINT_FOLDER_KB_MAP so documents have a KB"
        raise ConfigurationError(msg)
    return router


def default_client_factory(settings: Settings) -> Callable[[str], SharepointClient]:
    """Return a factory creating one client per library with a shared credential."""
    credential = CertificateCredential.from_settings(settings)

    def factory(library: str) -> SharepointClient:
        return SharepointClient.from_settings(settings, library, credential=credential)

    return factory


async def load_subscriptions(session: AsyncSession, settings: Settings) -> dict[str, Subscription]:
    state = await get_state(session, INTEGRATION, STATE_NAME, settings.state_scope_id)
    if state is None:
        return {}
    raw = state.get("subscriptions") or {}
    return {lib: Subscription.from_json(sub) for lib, sub in raw.items()}


async def _save_subscriptions(
    session: AsyncSession, settings: Settings, subscriptions: dict[str, Subscription]
) -> None:
    payload = {"subscriptions": {lib: sub.to_json() for lib, sub in subscriptions.items()}}
    await set_state(session, INTEGRATION, STATE_NAME, settings.state_scope_id, payload)


async def register(
    session: AsyncSession,
    settings: Settings,
    platform: PlatformClient,
    webhook_url: str,
    client_factory: Callable[[str], SharepointClient] | None = None,
) -> dict[str, Subscription]:
    """Subscribe every configured library and perform its initial full load.

    Any failure aborts registration; webhooks created so far are removed
    again before the error propagates.
    """
    libraries = settings.sharepoint_libraries()
    if not libraries:
        msg = "No document library configured (SHAREPOINT_DOCUMENT_LIBRARY_NAMES)"
        raise ConfigurationError(msg)
    router = build_router(settings)
    factory = client_factory or default_client_factory(settings)

    subscriptions: dict[str, Subscription] = {}
    created: list[tuple[str, str]] = []
    try:
        for library in libraries:
            client = factory(library)
            logger.info("(%s) Creating webhook → %s", library, webhook_url)
            subscription_id = await client.register_webhook(webhook_url)
            created.append((library, subscription_id))

            logger.info("(%s) Performing initial full sync", library)
            token = await SharepointSync(client, platform, router).load_all_documents()
            subscriptions[library] = Subscription(subscription_id, token)
    except Exception:
        for library, subscription_id in created:
            await _remove_webhook(factory, library, subscription_id)
        raise

    await _save_subscriptions(session, settings, subscriptions)
    return subscriptions


async def handle_notification(
    session: AsyncSession,
    settings: Settings,
    platform: PlatformClient,
    client_factory: Callable[[str], SharepointClient] | None = None,
) -> dict[str, str]:
    """Run one incremental pass over every registered library.

    Returns the change token stored for each library afterwards. A library
    whose change log cannot be read keeps its previous token.
    """
    subscriptions = await load_subscriptions(session, settings)
    if not subscriptions:
        logger.warning("Change notification received but no library is registered")
        return {}

    router = build_router(settings)
    factory = client_factory or default_client_factory(settings)
    for library, subscription in subscriptions.items():
        sync = SharepointSync(factory(library), platform, router)
        logger.info("(%s) Running incremental sync", library)
        try:
            subscription.change_token = await sync.sync_changes(subscription.change_token)
        except IntegrationError:
            logger.exception("(%s) Incremental sync failed; token left unchanged", library)

    await _save_subscriptions(session, settings, subscriptions)
    return {lib: sub.change_token for lib, sub in subscriptions.items()}


async def resync(
    session: AsyncSession,
    settings: Settings,
    platform: PlatformClient,
    client_factory: Callable[[str], SharepointClient] | None = None,
) -> dict[str, Subscription]:
    """Reload every registered library from scratch and reset its token."""
    subscriptions = await load_subscriptions(session, settings)
    if not subscriptions:
        msg = "SharePoint sync is not registered"
        raise ConfigurationError(msg)

    router = build_router(settings)
    factory = client_factory or default_client_factory(settings)
    for library, subscription in subscriptions.items():
        logger.info("(%s) Performing full resync", library)
        sync = SharepointSync(factory(library), platform, router)
        subscription.change_token = await sync.load_all_documents()

    await _save_subscriptions(session, settings, subscriptions)
    return subscriptions


async def _remove_webhook(
    factory: Callable[[str], SharepointClient], library: str, subscription_id: str
) -> None:
    try:
        await factory(library).unregister_webhook(subscription_id)
    except IntegrationError as exc:
        logger.warning("(%s) Could not delete webhook %s: %s", library, subscription_id, exc)


async def unregister(
    session: AsyncSession,
    settings: Settings,
    client_factory: Callable[[str], SharepointClient] | None = None,
) -> list[str]:
    """Remove webhooks (best-effort) and forget the stored state.

    Returns the libraries that were registered.
    """
    subscriptions = await load_subscriptions(session, settings)
    if subscriptions:
        try:
            factory = client_factory or default_client_factory(settings)
        except ConfigurationError as exc:
            logger.warning("Cannot reach SharePoint, leaving webhooks in place: %s", exc)
        else:
            for library, subscription in subscriptions.items():
                subscription_id = subscription.webhook_subscription_id
                logger.info("(%s) Deleting webhook %s", library, subscription_id)
                await _remove_webhook(factory, library, subscription_id)
    await delete_state(session, INTEGRATION, STATE_NAME, settings.state_scope_id)
    return list(subscriptions)


async def list_site_libraries(
    settings: Settings,
    client_factory: Callable[[str], SharepointClient] | None = None,
) -> list[Library]:
    """List the document libraries available at the configured site."""
    libraries = settings.sharepoint_libraries()
    factory = client_factory or default_client_factory(settings)
    return await factory(libraries[0] if libraries else "").list_libraries()
