"""Human-in-the-loop handoff request/response schemas."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class ProvidersResponse(BaseModel):
    providers: list[str]


class ProviderRegisterRequest(BaseModel):
    """``webhook_url`` defaults to this service's webhook for the provider."""

    webhook_url: str | None = None


class CreateUserRequest(BaseModel):
    name: str | None = Field(default=None, max_length=200)
    email: str | None = Field(default=None, max_length=320)
    phone: str | None = Field(default=None, max_length=50)
    picture_url: str | None = None


class CreateUserResponse(BaseModel):
    user_id: str


class StartSessionRequest(BaseModel):
    user_id: str = Field(min_length=1)
    title: str | None = None
    description: str | None = None
    attributes: dict[str, Any] = Field(default_factory=dict)


class SessionResponse(BaseModel):
    conversation_id: str


class OutboundMessageRequest(BaseModel):
    """Bot-side message to forward; ``items`` holds the parts of a bloc."""

    type: str = Field(min_length=1)
    text: str | None = None
    url: str | None = None
    title: str | None = None
    address: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    items: list[OutboundMessageRequest] = Field(default_factory=list)


class StatusResponse(BaseModel):
    status: str = "ok"
