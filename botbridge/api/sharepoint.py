"""SharePoint sync API: change-notification webhook and operator endpoints."""

from __future__ import annotations

import asyncio
import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Query
from fastapi.responses import PlainTextResponse
from sqlalchemy.ext.asyncio import AsyncSession

from botbridge.api.deps import (
    SharepointClientFactory,
    get_platform,
    get_session,
    get_settings,
    get_sharepoint_client_factory,
    require_admin,
)
from botbridge.config import Settings
from botbridge.platform.client import PlatformClient
from botbridge.schemas.sharepoint import (
    LibraryResponse,
    NotificationResponse,
    RegisterRequest,
    SubscriptionResponse,
    SubscriptionsResponse,
    UnregisterResponse,
)
from botbridge.services import sharepoint_service
from botbridge.services.sharepoint_service import Subscription

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sharepoint", tags=["sharepoint"])

WEBHOOK_PATH = "/api/sharepoint/webhook"

# Serialize passes so two deliveries never read-modify-write the same
# change tokens concurrently within this process.
_sync_lock = asyncio.Lock()


def _subscriptions_response(subscriptions: dict[str, Subscription]) -> SubscriptionsResponse:
    return SubscriptionsResponse(
        registered=bool(subscriptions),
        subscriptions=[
            SubscriptionResponse(
                library=library,
                webhook_subscription_id=sub.webhook_subscription_id,
                change_token=sub.change_token,
            )
            for library, sub in subscriptions.items()
        ],
    )


@router.get("/webhook", response_class=PlainTextResponse)
async def validate_webhook(
    validationtoken: Annotated[str, Query()] = "",
) -> PlainTextResponse:
    """Answer SharePoint's subscription validation handshake."""
    return PlainTextResponse(validationtoken)


@router.post("/webhook", response_model=None)
async def receive_notification(
    session: Annotated[AsyncSession, Depends(get_session)],
    settings: Annotated[Settings, Depends(get_settings)],
    platform: Annotated[PlatformClient, Depends(get_platform)],
    factory: Annotated[SharepointClientFactory | None, Depends(get_sharepoint_client_factory)],
    validationtoken: Annotated[str | None, Query()] = None,
) -> PlainTextResponse | NotificationResponse:
    """Run an incremental pass; the delivery's body is not needed."""
    if validationtoken is not None:
        return PlainTextResponse(validationtoken)
    async with _sync_lock:
        tokens = await sharepoint_service.handle_notification(session, settings, platform, factory)
    return NotificationResponse(tokens=tokens)


@router.post("/register", response_model=SubscriptionsResponse)
async def register(
    _: Annotated[None, Depends(require_admin)],
    session: Annotated[AsyncSession, Depends(get_session)],
    settings: Annotated[Settings, Depends(get_settings)],
    platform: Annotated[PlatformClient, Depends(get_platform)],
    factory: Annotated[SharepointClientFactory | None, Depends(get_sharepoint_client_factory)],
    body: RegisterRequest | None = None,
) -> SubscriptionsResponse:
    """Create a webhook per library and load every library from scratch."""
    webhook_url = (body.webhook_url if body else None) or settings.webhook_url(WEBHOOK_PATH)
    async with _sync_lock:
        subscriptions = await sharepoint_service.register(
            session, settings, platform, webhook_url, factory
        )
    logger.info("Registered %d SharePoint libraries", len(subscriptions))
    return _subscriptions_response(subscriptions)


@router.post("/resync", response_model=SubscriptionsResponse)
async def resync(
    _: Annotated[None, Depends(require_admin)],
    session: Annotated[AsyncSession, Depends(get_session)],
    settings: Annotated[Settings, Depends(get_settings)],
    platform: Annotated[PlatformClient, Depends(get_platform)],
    factory: Annotated[SharepointClientFactory | None, Depends(get_sharepoint_client_factory)],
) -> SubscriptionsResponse:
    """Reload every registered library and reset its change token."""
    async with _sync_lock:
        subscriptions = await sharepoint_service.resync(session, settings, platform, factory)
    return _subscriptions_response(subscriptions)


@router.post("/unregister", response_model=UnregisterResponse)
async def unregister(
    _: Annotated[None, Depends(require_admin)],
    session: Annotated[AsyncSession, Depends(get_session)],
    settings: Annotated[Settings, Depends(get_settings)],
    factory: Annotated[SharepointClientFactory | None, Depends(get_sharepoint_client_factory)],
) -> UnregisterResponse:
    """Remove the webhooks and forget the stored change tokens."""
    async with _sync_lock:
        libraries = await sharepoint_service.unregister(session, settings, factory)
    return UnregisterResponse(libraries=libraries)


@router.get("/status", response_model=SubscriptionsResponse)
async def status(
    _: Annotated[None, Depends(require_admin)],
    session: Annotated[AsyncSession, Depends(get_session)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> SubscriptionsResponse:
    subscriptions = await sharepoint_service.load_subscriptions(session, settings)
    return _subscriptions_response(subscriptions)


@router.get("/libraries", response_model=list[LibraryResponse])
async def libraries(
    _: Annotated[None, Depends(require_admin)],
    settings: Annotated[Settings, Depends(get_settings)],
    factory: Annotated[SharepointClientFactory | None, Depends(get_sharepoint_client_factory)],
) -> list[LibraryResponse]:
    found = await sharepoint_service.list_site_libraries(settings, factory)
    return [LibraryResponse(id=lib.id, name=lib.name, web_url=lib.web_url) for lib in found]
