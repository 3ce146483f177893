"""Human-in-the-loop handoff API endpoints."""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Request

from botbridge.api.deps import get_hitl_provider, get_platform, get_settings, require_admin
from botbridge.config import Settings
from botbridge.hitl.base import (
    HitlProvider,
    HitlSessionRequest,
    HitlUser,
    InboundEvent,
    OutboundMessage,
)
from botbridge.hitl.registry import list_providers
from botbridge.hitl.signature import WebhookSignatureError
from botbridge.platform.client import PlatformClient
from botbridge.schemas.hitl import (
    CreateUserRequest,
    CreateUserResponse,
    OutboundMessageRequest,
    ProviderRegisterRequest,
    ProvidersResponse,
    SessionResponse,
    StartSessionRequest,
    StatusResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/hitl", tags=["hitl"])


def _to_message(body: OutboundMessageRequest) -> OutboundMessage:
    return OutboundMessage(
        type=body.type,
        text=body.text,
        url=body.url,
        title=body.title,
        address=body.address,
        latitude=body.latitude,
        longitude=body.longitude,
        items=[_to_message(item) for item in body.items],
    )


@router.get("/providers", response_model=ProvidersResponse)
async def providers(_: Annotated[None, Depends(require_admin)]) -> ProvidersResponse:
    return ProvidersResponse(providers=list_providers())


@router.post("/{provider}/register", response_model=StatusResponse)
async def register_provider(
    provider: str,
    _: Annotated[None, Depends(require_admin)],
    settings: Annotated[Settings, Depends(get_settings)],
    handoff: Annotated[HitlProvider, Depends(get_hitl_provider)],
    body: ProviderRegisterRequest | None = None,
) -> StatusResponse:
    """Validate the provider's credentials and create its vendor resources."""
    webhook_url = (body.webhook_url if body else None) or settings.webhook_url(
        f"/api/hitl/{provider}/webhook"
    )
    await handoff.register(webhook_url)
    return StatusResponse()


@router.post("/{provider}/users", response_model=CreateUserResponse, status_code=201)
async def create_user(
    _: Annotated[None, Depends(require_admin)],
    handoff: Annotated[HitlProvider, Depends(get_hitl_provider)],
    body: CreateUserRequest,
) -> CreateUserResponse:
    user_id = await handoff.create_user(
        HitlUser(name=body.name, email=body.email, phone=body.phone, picture_url=body.picture_url)
    )
    return CreateUserResponse(user_id=user_id)


@router.post("/{provider}/sessions", response_model=SessionResponse, status_code=201)
async def start_session(
    _: Annotated[None, Depends(require_admin)],
    handoff: Annotated[HitlProvider, Depends(get_hitl_provider)],
    body: StartSessionRequest,
) -> SessionResponse:
    conversation_id = await handoff.start_session(
        HitlSessionRequest(
            user_id=body.user_id,
            title=body.title,
            description=body.description,
            attributes=body.attributes,
        )
    )
    return SessionResponse(conversation_id=conversation_id)


@router.post("/{provider}/sessions/{conversation_id}/messages", response_model=StatusResponse)
async def send_message(
    conversation_id: str,
    _: Annotated[None, Depends(require_admin)],
    platform: Annotated[PlatformClient, Depends(get_platform)],
    handoff: Annotated[HitlProvider, Depends(get_hitl_provider)],
    body: OutboundMessageRequest,
) -> StatusResponse:
    """Forward a bot-side message to the agent of a session."""
    conversation = await platform.get_conversation(conversation_id)
    await handoff.send(conversation, _to_message(body))
    return StatusResponse()


@router.delete("/{provider}/sessions/{conversation_id}", response_model=StatusResponse)
async def end_session(
    conversation_id: str,
    _: Annotated[None, Depends(require_admin)],
    handoff: Annotated[HitlProvider, Depends(get_hitl_provider)],
) -> StatusResponse:
    await handoff.end_session(conversation_id)
    return StatusResponse()


@router.post("/{provider}/webhook", response_model=StatusResponse)
async def receive_event(
    request: Request,
    handoff: Annotated[HitlProvider, Depends(get_hitl_provider)],
) -> StatusResponse:
    """Apply an inbound vendor delivery."""
    event = InboundEvent(
        body=await request.body(),
        headers=dict(request.headers),
        method=request.method,
        url=str(request.url),
    )
    try:
        await handoff.on_inbound_event(event)
    except WebhookSignatureError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc
    return StatusResponse()
