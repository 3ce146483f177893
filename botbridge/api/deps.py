"""Shared API dependencies: settings, DB session, upstream clients, admin auth."""

from __future__ import annotations

import secrets
from collections.abc import AsyncGenerator, Callable
from typing import Annotated

import httpx
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from botbridge.config import Settings
from botbridge.hitl.base import HitlProvider
from botbridge.hitl.registry import get_provider
from botbridge.platform.client import PlatformClient
from botbridge.services.state_service import StateStore
from botbridge.sharepoint.client import SharepointClient

security = HTTPBearer(auto_error=False)

SharepointClientFactory = Callable[[str], SharepointClient]


def get_settings(request: Request) -> Settings:
    """Get application settings from app state."""
    settings: Settings = request.app.state.settings
    return settings


async def get_session(request: Request) -> AsyncGenerator[AsyncSession]:
    """Get a database session."""
    session_factory = request.app.state.session_factory
    async with session_factory() as session:
        yield session


def get_platform(request: Request) -> PlatformClient:
    """Get the host platform client from app state."""
    platform: PlatformClient = request.app.state.platform
    return platform


def get_state_store(request: Request) -> StateStore:
    """Get the integration state store from app state."""
    store: StateStore = request.app.state.state_store
    return store


def get_http_client(request: Request) -> httpx.AsyncClient | None:
    """Get the shared upstream HTTP client, None when the app runs without one."""
    client: httpx.AsyncClient | None = getattr(request.app.state, "http_client", None)
    return client


def get_sharepoint_client_factory(request: Request) -> SharepointClientFactory | None:
    """Factory building one SharePoint client per library, None for the default."""
    factory: SharepointClientFactory | None = request.app.state.sharepoint_client_factory
    return factory


def get_hitl_provider(
    provider: str,
    settings: Annotated[Settings, Depends(get_settings)],
    platform: Annotated[PlatformClient, Depends(get_platform)],
    store: Annotated[StateStore, Depends(get_state_store)],
    http_client: Annotated[httpx.AsyncClient | None, Depends(get_http_client)],
) -> HitlProvider:
    """Resolve the ``{provider}`` path parameter to a configured provider."""
    try:
        return get_provider(provider, settings, platform, store, http_client)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


async def require_admin(
    settings: Annotated[Settings, Depends(get_settings)],
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)] = None,
) -> None:
    """Require the admin bearer token. Raises 401 otherwise."""
    if (
        credentials is None
        or not settings.admin_token
        or not secrets.compare_digest(credentials.credentials, settings.admin_token)
    ):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
