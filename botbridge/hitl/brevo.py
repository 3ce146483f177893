"""Brevo conversations handoff provider."""

from __future__ import annotations

import json
import logging
import secrets
from typing import TYPE_CHECKING, Any

from botbridge.exceptions import ConfigurationError
from botbridge.hitl.events import emit_started, emit_stopped, hitl_conversation, post_agent_message
from botbridge.remote import HttpAdapter

if TYPE_CHECKING:
    import httpx

    from botbridge.config import Settings
    from botbridge.hitl.base import HitlSessionRequest, HitlUser, InboundEvent, OutboundMessage
    from botbridge.platform.client import PlatformClient, PlatformConversation
    from botbridge.services.state_service import StateStore

logger = logging.getLogger(__name__)

BREVO_API_URL = "https://api.brevo.com/v3"
BOT_SENDER_NAME = "Botpress"
SESSION_REQUEST_HEADER = "*New HITL Conversation Request"
BOT_MESSAGE_PREFIX = "*Botpress User"
NO_AGENT = "No agent found"


def make_visitor_id(email: str) -> str:
    """Build a Brevo visitor id from the email's local part and random hex."""
    local = email.split("@", 1)[0][:15]
    return f"{local}_{secrets.token_hex(8)}"


def session_summary(email: str, title: str | None, description: str | None) -> str:
    return (
        f"{SESSION_REQUEST_HEADER}*\n"
        f"*User Email*: {email}\n"
        f"*Subject*: {title or 'N/A'}\n\n"
        f"*Description*:\n{description or ''}\n"
    )


class BrevoApi(HttpAdapter):
    """Minimal client for the Brevo conversations API."""

    def __init__(
        self,
        api_key: str,
        agent_id: str,
        *,
        base_url: str = BREVO_API_URL,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ) -> None:
        super().__init__(http_client=http_client, timeout=timeout)
        self._api_key = api_key
        self._agent_id = agent_id
        self._base_url = base_url.rstrip("/")

    async def _call(self, method: str, path: str, action: str, **kwargs: Any) -> dict[str, Any]:
        response = await self._send(
            method,
            f"{self._base_url}{path}",
            action=action,
            headers={"api-key": self._api_key, "Accept": "application/json"},
            **kwargs,
        )
        return response.json() if response.content else {}

    async def create_conversation(self, visitor_id: str, text: str) -> dict[str, Any]:
        return await self._call(
            "POST",
            "/conversations/messages",
            "Create Brevo conversation",
            json={"visitorId": visitor_id, "text": text, "agentId": self._agent_id},
        )

    async def send_message(self, text: str, visitor_id: str) -> dict[str, Any]:
        return await self._call(
            "POST",
            "/conversations/messages",
            "Send Brevo message",
            json={
                "visitorId": visitor_id,
                "text": f"{BOT_MESSAGE_PREFIX} ({visitor_id})*: {text}",
                "agentId": self._agent_id,
                "receivedFrom": BOT_SENDER_NAME,
            },
        )

    async def get_account_details(self) -> dict[str, Any]:
        return await self._call("GET", "/account", "Get Brevo account")


class BrevoProvider:
    """Hands conversations over to Brevo agents.

    Users are identified by email. The Brevo visitor id doubles as the
    vendor conversation id on the platform side.
    """

    provider = "brevo"

    def __init__(self, api: BrevoApi, platform: PlatformClient, store: StateStore) -> None:
        self._api = api
        self._platform = platform
        self._store = store

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        platform: PlatformClient,
        store: StateStore,
        http_client: httpx.AsyncClient | None = None,
    ) -> BrevoProvider:
        if not settings.brevo_api_key or not settings.brevo_agent_id:
            msg = "Brevo requires BREVO_API_KEY and BREVO_AGENT_ID"
            raise ConfigurationError(msg)
        api = BrevoApi(
            settings.brevo_api_key,
            settings.brevo_agent_id,
            http_client=http_client,
            timeout=settings.http_timeout_seconds,
        )
        return cls(api, platform, store)

    async def register(self, webhook_url: str) -> None:
        account = await self._api.get_account_details()
        logger.info(
            "Brevo account %s validated; point its webhook at %s",
            account.get("email", "?"),
            webhook_url,
        )

    async def create_user(self, user: HitlUser) -> str:
        if not user.email:
            msg = "Brevo users need an email address"
            raise ValueError(msg)
        platform_user = await self._platform.get_or_create_user(
            {"id": user.email}, name=user.name, picture_url=user.picture_url
        )
        await self._store.set("userInfo", platform_user.id, {"email": user.email})
        return platform_user.id

    async def start_session(self, request: HitlSessionRequest) -> str:
        info = await self._store.get("userInfo", request.user_id)
        email = (info or {}).get("email")
        if not email:
            msg = f"No email stored for user {request.user_id}; create the user first"
            raise ValueError(msg)

        visitor_id = make_visitor_id(email)
        await self._api.create_conversation(
            visitor_id, session_summary(email, request.title, request.description)
        )
        conversation = await hitl_conversation(self._platform, visitor_id)
        await emit_started(
            self._platform, conversation.id, request.user_id, request.title, request.description
        )
        logger.info("Started Brevo session %s for %s", visitor_id, request.user_id)
        return conversation.id

    async def send(self, conversation: PlatformConversation, message: OutboundMessage) -> None:
        if message.type != "text":
            logger.warning("Brevo only relays text; ignoring %s message", message.type)
            return
        visitor_id = conversation.tags.get("id")
        if not visitor_id:
            msg = f"Conversation {conversation.id} has no Brevo visitor id"
            raise ValueError(msg)
        await self._api.send_message(message.text or "", visitor_id)

    async def end_session(self, conversation_id: str) -> None:
        # Brevo has no API to close a conversation.
        logger.info("End of Brevo session %s requested; nothing to do", conversation_id)

    async def on_inbound_event(self, event: InboundEvent) -> None:
        try:
            data = json.loads(event.body)
        except (json.JSONDecodeError, UnicodeDecodeError):
            logger.error("Ignoring malformed Brevo webhook body")
            return
        if not isinstance(data, dict):
            logger.error("Ignoring Brevo webhook with non-object body")
            return

        name = data.get("eventName")
        if name == "conversationFragment":
            await self._on_fragment(data)
        elif name == "conversationTranscript":
            await self._on_transcript(data)
        else:
            logger.debug("Ignoring Brevo event %s", name)

    async def _on_fragment(self, data: dict[str, Any]) -> None:
        visitor_id = (data.get("visitor") or {}).get("id")
        messages = data.get("messages") or []
        if not visitor_id or not messages:
            logger.error("Brevo fragment without visitor or messages")
            return
        text = messages[0].get("text") or ""
        if text.startswith((SESSION_REQUEST_HEADER, BOT_MESSAGE_PREFIX)):
            return

        agents = data.get("agents") or []
        agent_id = str(agents[0].get("id", ""))[:36] if agents else ""
        conversation = await hitl_conversation(self._platform, visitor_id)
        await post_agent_message(
            self._platform,
            conversation.id,
            agent_id or NO_AGENT,
            text,
            agent_name=agents[0].get("name") if agents else None,
        )

    async def _on_transcript(self, data: dict[str, Any]) -> None:
        visitor_id = (data.get("visitor") or {}).get("id")
        if not visitor_id:
            logger.error("Brevo transcript without visitor")
            return
        conversation = await hitl_conversation(self._platform, visitor_id)
        await emit_stopped(self._platform, conversation.id)
