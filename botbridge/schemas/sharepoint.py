"""SharePoint sync request/response schemas."""

from __future__ import annotations

from pydantic import BaseModel


class RegisterRequest(BaseModel):
    """Request to register the library webhooks.

    ``webhook_url`` defaults to this service's public webhook endpoint.
    """

    webhook_url: str | None = None


class SubscriptionResponse(BaseModel):
    """Webhook subscription and change cursor of one library."""

    library: str
    webhook_subscription_id: str
    change_token: str


class SubscriptionsResponse(BaseModel):
    """Persisted subscriptions of every registered library."""

    registered: bool
    subscriptions: list[SubscriptionResponse]


class NotificationResponse(BaseModel):
    """Change tokens stored after an incremental pass."""

    status: str = "ok"
    tokens: dict[str, str]


class UnregisterResponse(BaseModel):
    """Libraries whose registration was removed."""

    libraries: list[str]


class LibraryResponse(BaseModel):
    """Document library available at the configured site."""

    id: str
    name: str
    web_url: str
