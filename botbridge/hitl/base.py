"""Base protocol and data classes for human-in-the-loop handoff providers."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from botbridge.platform.client import PlatformConversation


@dataclass
class HitlUser:
    """An end user to be handed over to a human agent.

    Vendors identify users by email, phone or both; which one is required
    depends on the provider.
    """

    name: str | None = None
    email: str | None = None
    phone: str | None = None
    picture_url: str | None = None


@dataclass
class HitlSessionRequest:
    """Request to open a handoff session for a platform user."""

    user_id: str
    title: str | None = None
    description: str | None = None
    attributes: dict[str, Any] = field(default_factory=dict)


@dataclass
class OutboundMessage:
    """A bot-side message forwarded to the human agent.

    ``type`` follows the platform message types: text, image, audio, video,
    file, location and bloc (a list of nested messages in ``items``).
    """

    type: str
    text: str | None = None
    url: str | None = None
    title: str | None = None
    address: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    items: list[OutboundMessage] = field(default_factory=list)


@dataclass
class InboundEvent:
    """A raw webhook delivery from a vendor."""

    body: bytes
    headers: dict[str, str] = field(default_factory=dict)
    method: str = "POST"
    url: str = ""

    def header(self, name: str) -> str | None:
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return None


@runtime_checkable
class HitlProvider(Protocol):
    """Protocol for vendor-specific handoff implementations."""

    provider: str

    async def register(self, webhook_url: str) -> None:
        """Validate configuration and create vendor-side resources."""
        ...

    async def create_user(self, user: HitlUser) -> str:
        """Create (or find) the platform user for ``user``. Returns its id."""
        ...

    async def start_session(self, request: HitlSessionRequest) -> str:
        """Open a vendor conversation. Returns the platform conversation id."""
        ...

    async def send(self, conversation: PlatformConversation, message: OutboundMessage) -> None:
        """Forward a bot-side message to the agent."""
        ...

    async def end_session(self, conversation_id: str) -> None:
        """Close the handoff session of a platform conversation."""
        ...

    async def on_inbound_event(self, event: InboundEvent) -> None:
        """Apply a vendor webhook delivery to the platform."""
        ...
