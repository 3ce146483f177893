"""Salesforce Messaging for In-App and Web (MIAW) handoff provider.

Salesforce pushes conversation events over server-sent events. A transport
translator service subscribes to that stream on our behalf and forwards each
event to the provider webhook as JSON::

    {"type": "data", "data": {"event": "CONVERSATION_MESSAGE",
                              "data": {"conversationId": "...",
                                       "conversationEntry": {...}}}}

``conversationEntry.entryPayload`` is itself a JSON document (a string on
the wire). Other envelope types (``end``, ``error``) are logged.
"""

from __future__ import annotations

import json
import logging
import uuid
from typing import TYPE_CHECKING, Any
from urllib.parse import urlparse

from botbridge.exceptions import ConfigurationError, RemoteError
from botbridge.hitl.events import (
    emit_assigned,
    emit_started,
    emit_stopped,
    hitl_conversation,
    post_agent_message,
)
from botbridge.remote import HttpAdapter
from botbridge.services.datetime_service import format_iso, now_utc

if TYPE_CHECKING:
    import httpx

    from botbridge.config import Settings
    from botbridge.hitl.base import HitlSessionRequest, HitlUser, InboundEvent, OutboundMessage
    from botbridge.platform.client import PlatformClient, PlatformConversation
    from botbridge.services.state_service import StateStore

logger = logging.getLogger(__name__)

SESSION_STATE = "messaging"
CLIENT_VERSION = "1.2.3"

_IGNORED_TRANSPORT_EVENTS = [
    "ping",
    "CONVERSATION_TYPING_STOPPED_INDICATOR",
    "CONVERSATION_TYPING_STARTED_INDICATOR",
    "CONVERSATION_READ_ACKNOWLEDGEMENT",
    "CONVERSATION_DELIVERY_ACKNOWLEDGEMENT",
    "CONVERSATION_END_USER_CONSENT_UPDATED",
    "CONVERSATION_ROUTING_RESULT",
]


def file_name_from_url(url: str, fallback_stem: str) -> str:
    path = urlparse(url).path
    name = path.rsplit("/", 1)[-1]
    if "." in name:
        return f"{fallback_stem}.{name.rsplit('.', 1)[-1]}"
    return fallback_stem


def format_location(message: OutboundMessage) -> str:
    parts: list[str] = []
    if message.title:
        parts.extend([message.title, ""])
    if message.address:
        parts.extend([message.address, ""])
    parts.extend([f"Latitude: {message.latitude}", f"Longitude: {message.longitude}"])
    return "\n".join(parts)


def _entry_payload(entry: dict[str, Any]) -> dict[str, Any]:
    raw = entry.get("entryPayload") or {}
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError:
            logger.error("Undecodable Salesforce entry payload")
            return {}
    return raw if isinstance(raw, dict) else {}


class SalesforceMessagingApi(HttpAdapter):
    """MIAW REST API plus the SSE transport translator.

    ``access_token`` is the unauthenticated-user session token; it is set by
    :meth:`create_unauthenticated_token` or passed in for an existing session.
    """

    def __init__(
        self,
        *,
        endpoint: str,
        organization_id: str,
        developer_name: str,
        transport_url: str,
        transport_secret: str,
        access_token: str | None = None,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ) -> None:
        super().__init__(http_client=http_client, timeout=timeout)
        self._endpoint = endpoint.rstrip("/")
        self._organization_id = organization_id
        self._developer_name = developer_name
        self._transport_url = transport_url.rstrip("/")
        self._transport_secret = transport_secret
        self.access_token = access_token

    @property
    def base_url(self) -> str:
        return f"{self._endpoint}/iamessage/api/v2"

    def _headers(self) -> dict[str, str]:
        headers = {"X-Org-Id": self._organization_id}
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"
        return headers

    async def _call(self, method: str, path: str, action: str, **kwargs: Any) -> dict[str, Any]:
        response = await self._send(
            method, f"{self.base_url}{path}", action=action, headers=self._headers(), **kwargs
        )
        if not response.content:
            return {}
        data = response.json()
        return data if isinstance(data, dict) else {}

    async def create_unauthenticated_token(self) -> str:
        data = await self._call(
            "POST",
            "/authorization/unauthenticated/access-token",
            "Create Salesforce session token",
            json={
                "orgId": self._organization_id,
                "esDeveloperName": self._developer_name,
                "capabilitiesVersion": "1",
                "platform": "Web",
                "context": {"appName": "botpressHITL", "clientVersion": CLIENT_VERSION},
            },
        )
        token = data.get("accessToken")
        if not token:
            msg = "Salesforce returned no access token"
            raise RemoteError(msg)
        self.access_token = str(token)
        return self.access_token

    async def create_conversation(
        self, conversation_id: str, routing_attributes: dict[str, Any]
    ) -> None:
        await self._call(
            "POST",
            "/conversation",
            "Create Salesforce conversation",
            json={
                "conversationId": conversation_id,
                "routingAttributes": routing_attributes,
                "esDeveloperName": self._developer_name,
            },
        )

    async def send_message(self, conversation_id: str, text: str) -> None:
        await self._call(
            "POST",
            f"/conversation/{conversation_id}/message",
            "Send Salesforce message",
            json={
                "message": {
                    "id": str(uuid.uuid4()),
                    "messageType": "StaticContentMessage",
                    "staticContent": {"formatType": "Text", "text": text},
                },
                "esDeveloperName": self._developer_name,
                "isNewMessagingSession": False,
            },
        )

    async def send_file(
        self,
        conversation_id: str,
        file_url: str,
        *,
        title: str | None = None,
        text: str | None = None,
    ) -> None:
        """Upload a file to the conversation; on failure send its URL instead."""
        file_id = str(uuid.uuid4())
        try:
            download = await self._send("GET", file_url, action=f"Download {file_url}")
            entry = {
                "esDeveloperName": self._developer_name,
                "message": {"id": str(uuid.uuid4()), "fileId": file_id, "text": text or ""},
            }
            await self._call(
                "POST",
                f"/conversation/{conversation_id}/file",
                "Send Salesforce file",
                files={
                    "messageEntry": (None, json.dumps(entry), "application/json"),
                    "fileData": (
                        title or file_name_from_url(file_url, file_id),
                        download.content,
                        "application/octet-stream",
                    ),
                },
            )
        except RemoteError as exc:
            hint = ""
            if exc.status_code == 413:
                hint = " (file too large, 5 MB maximum)"
            elif exc.status_code == 415:
                hint = " (unsupported file type)"
            logger.warning("Failed to send file %s%s: %s; sending its URL", file_url, hint, exc)
            await self.send_message(conversation_id, file_url)

    async def close_conversation(self, conversation_id: str) -> None:
        await self._call(
            "DELETE",
            f"/conversation/{conversation_id}",
            "Close Salesforce conversation",
            params={"esDeveloperName": self._developer_name},
        )

    # ── Transport translator ─────────────────────────

    async def start_transport(self, webhook_url: str) -> str:
        """Start forwarding this session's event stream to ``webhook_url``."""
        if not self.access_token:
            msg = "Cannot start the event transport without a Salesforce session"
            raise RemoteError(msg)
        response = await self._send(
            "POST",
            f"{self._transport_url}/api/v1/sse",
            action="Start Salesforce event transport",
            headers={"secret": self._transport_secret},
            json={
                "sse": {
                    "headers": self._headers(),
                    "ignore": {"onEvent": _IGNORED_TRANSPORT_EVENTS},
                    "end": {"onRawMatch": ["force_end_tt_transport", "Jwt is expired"]},
                },
                "target": {"debug": True, "url": f"{self._endpoint}/eventrouter/v1/sse"},
                "webhook": {"url": webhook_url},
            },
        )
        key = (response.json().get("data") or {}).get("key")
        if not key:
            msg = "Transport translator returned no transport key"
            raise RemoteError(msg)
        return str(key)

    async def stop_transport(self, transport_key: str) -> None:
        try:
            await self._send(
                "DELETE",
                f"{self._transport_url}/api/v1/sse",
                action="Stop Salesforce event transport",
                headers={"secret": self._transport_secret, "transport-key": transport_key},
            )
        except RemoteError as exc:
            logger.error("Failed to stop event transport %s: %s", transport_key, exc)


class SalesforceProvider:
    """Hands conversations over to Salesforce Messaging agents.

    Each platform conversation keeps its encrypted session token in the
    ``messaging`` state document and carries the tags ``id`` (Salesforce
    conversation id), ``transportKey``, ``assignedAt`` and ``closedAt``.
    """

    provider = "salesforce"

    def __init__(
        self,
        settings: Settings,
        platform: PlatformClient,
        store: StateStore,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._settings = settings
        self._platform = platform
        self._store = store
        self._http_client = http_client

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        platform: PlatformClient,
        store: StateStore,
        http_client: httpx.AsyncClient | None = None,
    ) -> SalesforceProvider:
        required = {
            "SALESFORCE_ENDPOINT": settings.salesforce_endpoint,
            "SALESFORCE_ORGANIZATION_ID": settings.salesforce_organization_id,
            "SALESFORCE_DEVELOPER_NAME": settings.salesforce_developer_name,
            "SALESFORCE_TRANSPORT_URL": settings.salesforce_transport_url,
            "SALESFORCE_TRANSPORT_SECRET": settings.salesforce_transport_secret,
        }
        missing = [name for name, value in required.items() if not value]
        if missing:
            msg = f"Salesforce is missing settings: {', '.join(missing)}"
            raise ConfigurationError(msg)
        return cls(settings, platform, store, http_client)

    def api(self, access_token: str | None = None) -> SalesforceMessagingApi:
        settings = self._settings
        return SalesforceMessagingApi(
            endpoint=settings.salesforce_endpoint,
            organization_id=settings.salesforce_organization_id,
            developer_name=settings.salesforce_developer_name,
            transport_url=settings.salesforce_transport_url,
            transport_secret=settings.salesforce_transport_secret,
            access_token=access_token,
            http_client=self._http_client,
            timeout=settings.http_timeout_seconds,
        )

    async def _session_api(self, conversation: PlatformConversation) -> SalesforceMessagingApi:
        session = await self._store.get_secret(SESSION_STATE, conversation.id)
        if not session or not session.get("accessToken"):
            msg = f"No Salesforce session stored for conversation {conversation.id}"
            raise ValueError(msg)
        return self.api(str(session["accessToken"]))

    async def register(self, webhook_url: str) -> None:
        # A token request proves endpoint, organization and deployment are valid.
        await self.api().create_unauthenticated_token()
        logger.info("Salesforce configuration validated; events go to %s", webhook_url)

    async def create_user(self, user: HitlUser) -> str:
        tags = {"id": user.email or user.phone or str(uuid.uuid4())}
        platform_user = await self._platform.get_or_create_user(
            tags, name=user.name, picture_url=user.picture_url
        )
        return platform_user.id

    async def start_session(self, request: HitlSessionRequest) -> str:
        api = self.api()
        token = await api.create_unauthenticated_token()
        salesforce_id = str(uuid.uuid4())
        await api.create_conversation(salesforce_id, request.attributes)
        transport_key = await api.start_transport(
            self._settings.webhook_url(f"/api/hitl/{self.provider}/webhook")
        )

        conversation = await hitl_conversation(
            self._platform, salesforce_id, transportKey=transport_key
        )
        await self._store.set_secret(SESSION_STATE, conversation.id, {"accessToken": token})
        await emit_started(
            self._platform, conversation.id, request.user_id, request.title, request.description
        )
        logger.info("Started Salesforce session %s", salesforce_id)
        return conversation.id

    async def send(self, conversation: PlatformConversation, message: OutboundMessage) -> None:
        if conversation.tags.get("closedAt"):
            logger.error("Refusing to send to closed conversation %s", conversation.id)
            return

        not_assigned = self._settings.salesforce_conversation_not_assigned_message
        if not conversation.tags.get("assignedAt") and not_assigned:
            system = await self._platform.get_or_create_user({"id": conversation.id}, name="System")
            await self._platform.create_message(conversation.id, system.id, {"text": not_assigned})
            return

        api = await self._session_api(conversation)
        salesforce_id = conversation.tags["id"]
        try:
            await self._deliver(api, salesforce_id, message)
        except RemoteError as exc:
            if exc.status_code != 403:
                raise
            logger.error("Salesforce session of %s is no longer valid: %s", conversation.id, exc)
            await self._close(conversation, api)

    async def _deliver(
        self, api: SalesforceMessagingApi, salesforce_id: str, message: OutboundMessage
    ) -> None:
        kind = message.type
        if kind in ("text", "markdown"):
            await api.send_message(salesforce_id, message.text or "")
        elif kind in ("audio", "video"):
            await api.send_message(salesforce_id, message.url or "")
        elif kind in ("image", "file"):
            await api.send_file(salesforce_id, message.url or "", title=message.title)
        elif kind == "location":
            await api.send_message(salesforce_id, format_location(message))
        elif kind == "bloc":
            for item in message.items:
                await self._deliver(api, salesforce_id, item)
        else:
            logger.warning("Unsupported message type %s for Salesforce", kind)

    async def end_session(self, conversation_id: str) -> None:
        conversation = await self._platform.get_conversation(conversation_id)
        if conversation.tags.get("closedAt"):
            logger.info("Salesforce conversation %s already closed", conversation_id)
            return
        api = await self._session_api(conversation)
        await api.close_conversation(conversation.tags["id"])
        await self._close(conversation, api)

    async def _close(
        self, conversation: PlatformConversation, api: SalesforceMessagingApi | None = None
    ) -> None:
        transport_key = conversation.tags.get("transportKey")
        if transport_key:
            await (api or self.api()).stop_transport(transport_key)
        await self._platform.update_conversation(
            conversation.id, {"closedAt": format_iso(now_utc())}
        )
        await emit_stopped(self._platform, conversation.id)

    # ── Inbound ──────────────────────────────────────

    async def on_inbound_event(self, event: InboundEvent) -> None:
        try:
            envelope = json.loads(event.body)
        except (json.JSONDecodeError, UnicodeDecodeError):
            logger.error("Ignoring malformed transport delivery")
            return
        if not isinstance(envelope, dict):
            logger.error("Ignoring transport delivery with non-object body")
            return
        if envelope.get("type") != "data":
            logger.info("Transport %s: %s", envelope.get("type"), envelope.get("data"))
            return

        data = envelope.get("data") or {}
        name = data.get("event")
        payload = data.get("data") or {}
        if isinstance(payload, str):
            try:
                payload = json.loads(payload)
            except json.JSONDecodeError:
                logger.error("Undecodable payload for transport event %s", name)
                return
        salesforce_id = payload.get("conversationId")
        if not salesforce_id:
            logger.warning("Transport event %s without conversationId", name)
            return

        conversation = await hitl_conversation(self._platform, str(salesforce_id))
        entry = payload.get("conversationEntry") or {}
        if name == "CONVERSATION_PARTICIPANT_CHANGED":
            await self._on_participant_changed(conversation, entry)
        elif name == "CONVERSATION_MESSAGE":
            await self._on_message(conversation, entry)
        elif name == "CONVERSATION_CLOSE_CONVERSATION":
            if not conversation.tags.get("closedAt"):
                await self._close(conversation)
        else:
            logger.debug("Ignoring transport event %s", name)

    async def _on_participant_changed(
        self, conversation: PlatformConversation, entry: dict[str, Any]
    ) -> None:
        for change in _entry_payload(entry).get("entries") or []:
            participant = change.get("participant") or {}
            if participant.get("role") != "Agent":
                continue
            if change.get("operation") == "add":
                agent = await self._platform.get_or_create_user(
                    {"id": str(participant.get("subject", ""))}, name=change.get("displayName")
                )
                await self._platform.update_conversation(
                    conversation.id, {"assignedAt": format_iso(now_utc())}
                )
                await emit_assigned(self._platform, conversation.id, agent.id)
            elif change.get("operation") == "remove":
                logger.info("Agent left Salesforce conversation %s", conversation.id)

    async def _on_message(self, conversation: PlatformConversation, entry: dict[str, Any]) -> None:
        sender = entry.get("sender") or {}
        if sender.get("role") == "EndUser":
            return
        message = _entry_payload(entry).get("abstractMessage") or {}
        text = (message.get("staticContent") or {}).get("text")
        if not text:
            logger.debug("Ignoring non-text Salesforce entry in %s", conversation.id)
            return
        await post_agent_message(
            self._platform,
            conversation.id,
            str(sender.get("subject") or "salesforce-agent"),
            text,
            agent_name=entry.get("senderDisplayName"),
        )
