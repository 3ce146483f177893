"""HubSpot custom-channel handoff providers (Inbox and Help Desk).

Both providers talk to HubSpot through a custom channel connected to an inbox
or help desk. The OAuth access token lives encrypted in integration state and
is refreshed on demand. Channel identifiers and the current thread id are
kept in the ``channelInfo`` state document; the end user of the active
session is kept in ``userInfo``.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING, Any

from botbridge.exceptions import AuthError, ConfigurationError, RemoteError
from botbridge.hitl.events import (
    emit_assigned,
    emit_started,
    emit_stopped,
    hitl_conversation,
    post_agent_message,
)
from botbridge.hitl.signature import SIGNATURE_HEADER, TIMESTAMP_HEADER, verify_signature
from botbridge.remote import HttpAdapter
from botbridge.services.datetime_service import format_iso, now_utc, parse_datetime

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable
    from typing import Self

    import httpx

    from botbridge.config import Settings
    from botbridge.hitl.base import HitlSessionRequest, HitlUser, InboundEvent, OutboundMessage
    from botbridge.platform.client import PlatformClient, PlatformConversation
    from botbridge.services.state_service import StateStore

logger = logging.getLogger(__name__)

HUBSPOT_API_URL = "https://api.hubapi.com"
CHANNEL_NAME = "Botpress"
CHANNEL_ACCOUNT_NAME = "Botpress Channel"
REGISTER_POLL_ATTEMPTS = 6
# Stored tokens are treated as expired this long before HubSpot expires them.
TOKEN_EXPIRY_MARGIN_SECONDS = 60

CREDENTIALS_STATE = "credentials"
CHANNEL_STATE = "channelInfo"
USER_STATE = "userInfo"

_CHANNEL_CAPABILITIES = {
    "deliveryIdentifierTypes": ["CHANNEL_SPECIFIC_OPAQUE_ID"],
    "richText": ["HYPERLINK", "TEXT_ALIGNMENT", "BLOCKQUOTE"],
    "threadingModel": "INTEGRATION_THREAD_ID",
    "allowInlineImages": True,
    "allowOutgoingMessages": True,
    "allowConversationStart": True,
    "maxFileAttachmentCount": 1,
    "allowMultipleRecipients": False,
    "outgoingAttachmentTypes": ["FILE"],
    "maxFileAttachmentSizeBytes": 1000000,
    "maxTotalFileAttachmentSizeBytes": 1000000,
    "allowedFileAttachmentMimeTypes": ["image/png"],
}


def delivery_identifier(identifier: str) -> dict[str, str]:
    """Return the HubSpot sender identifier for an email or phone number."""
    kind = "HS_EMAIL_ADDRESS" if "@" in identifier else "HS_PHONE_NUMBER"
    return {"type": kind, "value": identifier}


@dataclass
class ChannelInfo:
    """Connected custom channel and the thread of the current session."""

    channel_id: str
    channel_account_id: str
    integration_thread_id: str = ""

    def to_json(self) -> dict[str, str]:
        return {
            "channelId": self.channel_id,
            "channelAccountId": self.channel_account_id,
            "integrationThreadId": self.integration_thread_id,
        }

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> ChannelInfo:
        return cls(
            channel_id=str(data.get("channelId", "")),
            channel_account_id=str(data.get("channelAccountId", "")),
            integration_thread_id=str(data.get("integrationThreadId", "")),
        )


class HubSpotApi(HttpAdapter):
    """HubSpot conversations and custom-channel API.

    A 401 refreshes the access token and retries, at most ``max_retries``
    times. With ``backoff`` the n-th retry first waits 2**(n-1) seconds.
    """

    def __init__(
        self,
        *,
        client_id: str,
        client_secret: str,
        refresh_token: str,
        developer_api_key: str,
        app_id: str,
        store: StateStore,
        scope_id: str,
        max_retries: int = 1,
        backoff: bool = False,
        base_url: str = HUBSPOT_API_URL,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        super().__init__(http_client=http_client, timeout=timeout)
        self._client_id = client_id
        self._client_secret = client_secret
        self._refresh_token = refresh_token
        self._developer_api_key = developer_api_key
        self._app_id = app_id
        self._store = store
        self._scope_id = scope_id
        self._max_retries = max_retries
        self._backoff = backoff
        self._base_url = base_url.rstrip("/")
        self._sleep = sleep

    # ── Credentials ──────────────────────────────────

    async def refresh_access_token(self) -> str:
        try:
            response = await self._send(
                "POST",
                f"{self._base_url}/oauth/v1/token",
                action="Refresh HubSpot access token",
                data={
                    "client_id": self._client_id,
                    "client_secret": self._client_secret,
                    "refresh_token": self._refresh_token,
                    "grant_type": "refresh_token",
                },
            )
        except RemoteError as exc:
            raise AuthError(exc.message) from exc
        data = response.json()
        token = data.get("access_token")
        if not token:
            msg = "HubSpot token response carries no access_token"
            raise AuthError(msg)
        credentials = {"accessToken": str(token)}
        expires_in = data.get("expires_in")
        if isinstance(expires_in, int) and expires_in > TOKEN_EXPIRY_MARGIN_SECONDS:
            expires_at = now_utc() + timedelta(seconds=expires_in - TOKEN_EXPIRY_MARGIN_SECONDS)
            credentials["expiresAt"] = format_iso(expires_at)
        await self._store.set_secret(CREDENTIALS_STATE, self._scope_id, credentials)
        logger.info("Refreshed HubSpot access token")
        return str(token)

    async def _access_token(self) -> str:
        credentials = await self._store.get_secret(CREDENTIALS_STATE, self._scope_id)
        if credentials and credentials.get("accessToken"):
            expires_at = credentials.get("expiresAt")
            if not expires_at or parse_datetime(str(expires_at)) > now_utc():
                return str(credentials["accessToken"])
            logger.debug("Stored HubSpot access token expired at %s", expires_at)
        return await self.refresh_access_token()

    # ── Transport ────────────────────────────────────

    async def _authorized(
        self, method: str, path: str, action: str, **kwargs: Any
    ) -> dict[str, Any]:
        token = await self._access_token()
        retries = 0
        while True:
            try:
                response = await self._send(
                    method,
                    f"{self._base_url}{path}",
                    action=action,
                    headers={"Authorization": f"Bearer {token}"},
                    **kwargs,
                )
            except RemoteError as exc:
                if exc.status_code != 401 or retries >= self._max_retries:
                    raise
                retries += 1
                if self._backoff:
                    delay = 2 ** (retries - 1)
                    logger.warning("%s got 401; retrying in %ss", action, delay)
                    await self._sleep(delay)
                else:
                    logger.warning("%s got 401; refreshing token", action)
                token = await self.refresh_access_token()
                continue
            return response.json() if response.content else {}

    async def _developer(
        self, method: str, path: str, action: str, **kwargs: Any
    ) -> dict[str, Any]:
        """Call a developer endpoint authenticated with the developer API key."""
        response = await self._send(
            method,
            f"{self._base_url}{path}",
            action=action,
            params={"hapikey": self._developer_api_key, "appId": self._app_id},
            **kwargs,
        )
        return response.json() if response.content else {}

    # ── Lookups ──────────────────────────────────────

    async def get_thread_info(self, thread_id: str) -> dict[str, Any]:
        return await self._authorized(
            "GET",
            f"/conversations/v3/conversations/threads/{thread_id}",
            f"Get HubSpot thread {thread_id}",
        )

    async def get_actor_email(self, actor_id: str) -> str | None:
        data = await self._authorized(
            "GET",
            f"/conversations/v3/conversations/actors/{actor_id}",
            f"Get HubSpot actor {actor_id}",
        )
        return data.get("email")

    async def get_contact_phone(self, contact_id: str) -> str | None:
        data = await self._authorized(
            "GET",
            f"/crm/v3/objects/contacts/{contact_id}",
            f"Get HubSpot contact {contact_id}",
            params={"properties": "phone"},
        )
        return (data.get("properties") or {}).get("phone")

    # ── Custom channel ───────────────────────────────

    async def create_custom_channel(self, webhook_url: str) -> str:
        data = await self._developer(
            "POST",
            "/conversations/v3/custom-channels",
            "Create HubSpot custom channel",
            json={
                "name": CHANNEL_NAME,
                "webhookUrl": webhook_url,
                "capabilities": _CHANNEL_CAPABILITIES,
                "channelDescription": "Botpress custom channel integration.",
            },
        )
        channel_id = data.get("id")
        if not channel_id:
            msg = "HubSpot returned no custom channel id"
            raise RemoteError(msg)
        return str(channel_id)

    async def get_custom_channels(self) -> list[dict[str, Any]]:
        data = await self._developer(
            "GET", "/conversations/v3/custom-channels", "List HubSpot custom channels"
        )
        return list(data.get("results") or [])

    async def connect_custom_channel(self, channel_id: str, inbox_id: str, name: str) -> str:
        data = await self._authorized(
            "POST",
            f"/conversations/v3/custom-channels/{channel_id}/channel-accounts",
            f"Connect HubSpot channel {channel_id}",
            json={
                "inboxId": inbox_id,
                "name": name,
                "deliveryIdentifier": {"type": "CHANNEL_SPECIFIC_OPAQUE_ID", "value": "botpress"},
                "authorized": True,
            },
        )
        account_id = data.get("id")
        if not account_id:
            msg = f"HubSpot returned no channel account for channel {channel_id}"
            raise RemoteError(msg)
        return str(account_id)

    # ── Messages ─────────────────────────────────────

    async def _post_message(
        self, channel: ChannelInfo, body: dict[str, Any], action: str
    ) -> dict[str, Any]:
        return await self._authorized(
            "POST",
            f"/conversations/v3/custom-channels/{channel.channel_id}/messages",
            action,
            json={
                **body,
                "messageDirection": "INCOMING",
                "integrationThreadId": channel.integration_thread_id,
                "channelAccountId": channel.channel_account_id,
            },
        )

    async def create_conversation(
        self,
        channel: ChannelInfo,
        name: str,
        identifier: str,
        title: str | None,
        description: str | None,
    ) -> str:
        data = await self._post_message(
            channel,
            {
                "text": f"Name: {name} \nTitle: {title or ''} \nDescription: {description or ''}",
                "senders": [{"name": name, "deliveryIdentifier": delivery_identifier(identifier)}],
            },
            "Create HubSpot conversation",
        )
        thread_id = data.get("conversationsThreadId")
        if not thread_id:
            msg = "HubSpot returned no conversationsThreadId"
            raise RemoteError(msg)
        return str(thread_id)

    async def send_message(
        self, channel: ChannelInfo, text: str, name: str, identifier: str
    ) -> dict[str, Any]:
        return await self._post_message(
            channel,
            {
                "type": "MESSAGE",
                "text": text,
                "senders": [{"name": name, "deliveryIdentifier": delivery_identifier(identifier)}],
            },
            "Send HubSpot message",
        )


@dataclass
class HubSpotConfig:
    developer_api_key: str
    refresh_token: str
    app_id: str
    client_id: str
    client_secret: str
    target_id: str

    def missing(self) -> list[str]:
        return [name for name, value in vars(self).items() if not value]


class _HubSpotProvider:
    """Behavior shared by the Inbox and Help Desk providers."""

    provider = ""
    max_retries = 1
    backoff = False

    def __init__(
        self,
        config: HubSpotConfig,
        platform: PlatformClient,
        store: StateStore,
        scope_id: str,
        *,
        webhook_url: str = "",
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._config = config
        self._platform = platform
        self._store = store
        self._scope_id = scope_id
        self._webhook_url = webhook_url
        self._sleep = sleep
        self.api = HubSpotApi(
            client_id=config.client_id,
            client_secret=config.client_secret,
            refresh_token=config.refresh_token,
            developer_api_key=config.developer_api_key,
            app_id=config.app_id,
            store=store,
            scope_id=scope_id,
            max_retries=self.max_retries,
            backoff=self.backoff,
            http_client=http_client,
            timeout=timeout,
            sleep=sleep,
        )

    @classmethod
    def _config_from_settings(cls, settings: Settings) -> HubSpotConfig:
        raise NotImplementedError

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        platform: PlatformClient,
        store: StateStore,
        http_client: httpx.AsyncClient | None = None,
    ) -> Self:
        config = cls._config_from_settings(settings)
        missing = config.missing()
        if missing:
            msg = f"{cls.provider} is missing settings: {', '.join(missing)}"
            raise ConfigurationError(msg)
        return cls(
            config,
            platform,
            store,
            settings.state_scope_id,
            webhook_url=settings.webhook_url(f"/api/hitl/{cls.provider}/webhook"),
            http_client=http_client,
            timeout=settings.http_timeout_seconds,
        )

    async def _channel(self) -> ChannelInfo:
        data = await self._store.get(CHANNEL_STATE, self._scope_id)
        if not data:
            msg = f"{self.provider} is not registered: no custom channel connected"
            raise ConfigurationError(msg)
        return ChannelInfo.from_json(data)

    async def _user_info(self) -> dict[str, Any]:
        info = await self._store.get(USER_STATE, self._scope_id)
        if not info:
            msg = f"No {self.provider} user created yet"
            raise ValueError(msg)
        return info

    @staticmethod
    def _identifier(info: dict[str, Any]) -> str:
        return str(info.get("email") or info.get("phoneNumber") or "")

    async def register(self, webhook_url: str) -> None:
        """Create the custom channel, wait until HubSpot lists it, then connect it."""
        await self.api.refresh_access_token()
        channel_id = await self.api.create_custom_channel(webhook_url)
        logger.info("Created HubSpot custom channel %s", channel_id)

        for attempt in range(REGISTER_POLL_ATTEMPTS):
            channels = await self.api.get_custom_channels()
            if any(str(channel.get("id")) == channel_id for channel in channels):
                logger.info("Channel %s listed after %d attempt(s)", channel_id, attempt + 1)
                break
            delay = 2**attempt
            logger.warning("Channel %s not listed yet; retrying in %ss", channel_id, delay)
            await self._sleep(delay)
        else:
            logger.warning("Channel %s never showed up; connecting anyway", channel_id)

        account_id = await self.api.connect_custom_channel(
            channel_id, self._config.target_id, CHANNEL_ACCOUNT_NAME
        )
        await self._store.set(
            CHANNEL_STATE, self._scope_id, ChannelInfo(channel_id, account_id).to_json()
        )
        logger.info("Connected channel %s to %s", channel_id, self._config.target_id)

    async def create_user(self, user: HitlUser) -> str:
        info: dict[str, str] = {"name": user.name or ""}
        tags: dict[str, str] = {}
        if user.email:
            info["email"] = user.email
            tags = {"id": user.email, "email": user.email}
        elif user.phone:
            info["phoneNumber"] = user.phone
            tags = {"id": user.phone, "phone": user.phone}
        else:
            msg = "HubSpot users need an email address or a phone number"
            raise ValueError(msg)
        platform_user = await self._platform.get_or_create_user(
            tags, name=user.name, picture_url=user.picture_url
        )
        await self._store.set(USER_STATE, self._scope_id, info)
        return platform_user.id

    async def start_session(self, request: HitlSessionRequest) -> str:
        info = await self._user_info()
        channel = await self._channel()
        channel.integration_thread_id = str(uuid.uuid4())
        await self._store.set(CHANNEL_STATE, self._scope_id, channel.to_json())

        thread_id = await self.api.create_conversation(
            channel,
            str(info.get("name") or ""),
            self._identifier(info),
            request.title,
            request.description,
        )
        conversation = await hitl_conversation(self._platform, thread_id)
        await emit_started(
            self._platform, conversation.id, request.user_id, request.title, request.description
        )
        logger.info("Started %s session on thread %s", self.provider, thread_id)
        return conversation.id

    async def send(self, conversation: PlatformConversation, message: OutboundMessage) -> None:
        if message.type != "text":
            logger.warning("%s only relays text; ignoring %s message", self.provider, message.type)
            return
        info = await self._user_info()
        channel = await self._channel()
        await self.api.send_message(
            channel, message.text or "", str(info.get("name") or ""), self._identifier(info)
        )

    async def end_session(self, conversation_id: str) -> None:
        logger.info("End of %s session %s requested; nothing to do", self.provider, conversation_id)

    # ── Inbound ──────────────────────────────────────

    def _authenticate(self, event: InboundEvent) -> None:
        """Reject forged deliveries. Only providers with signed webhooks check."""

    async def on_inbound_event(self, event: InboundEvent) -> None:
        if not event.body:
            logger.warning("%s webhook received an empty body", self.provider)
            return
        self._authenticate(event)
        try:
            payload = json.loads(event.body)
        except (json.JSONDecodeError, UnicodeDecodeError):
            logger.error("Ignoring malformed %s webhook body", self.provider)
            return

        if isinstance(payload, list):
            for item in payload:
                await self._on_property_change(item)
            return
        if isinstance(payload, dict) and payload.get("type") == "OUTGOING_CHANNEL_MESSAGE_CREATED":
            await self._on_agent_message(payload)
            return
        logger.warning("Unhandled %s event format", self.provider)

    async def _on_property_change(self, event: dict[str, Any]) -> None:
        if event.get("subscriptionType") != "conversation.propertyChange":
            return
        prop, value = event.get("propertyName"), event.get("propertyValue")
        if prop == "assignedTo" and value:
            await self._on_assigned(str(event["objectId"]))
        elif prop == "status" and value == "CLOSED":
            conversation = await hitl_conversation(self._platform, str(event["objectId"]))
            await emit_stopped(self._platform, conversation.id)

    async def _on_assigned(self, thread_id: str) -> None:
        thread = await self.api.get_thread_info(thread_id)
        contact_id = str(thread.get("associatedContactId", ""))
        senders = thread.get("senders") or [{}]
        is_email = (senders[0].get("deliveryIdentifier") or {}).get("type") == "HS_EMAIL_ADDRESS"
        if is_email:
            identifier = await self.api.get_actor_email(contact_id)
        else:
            identifier = await self.api.get_contact_phone(contact_id)
        if not identifier:
            logger.error(
                "No %s found for contact %s", "email" if is_email else "phone number", contact_id
            )
            return

        conversation = await hitl_conversation(self._platform, str(thread.get("id", thread_id)))
        key = "email" if is_email else "phone"
        user = await self._platform.get_or_create_user({"id": identifier, key: identifier})
        await emit_assigned(self._platform, conversation.id, user.id)

    async def _on_agent_message(self, payload: dict[str, Any]) -> None:
        message = payload.get("message") or {}
        thread_id = message.get("conversationsThreadId")
        if not thread_id:
            msg = "HubSpot message carries no conversationsThreadId"
            raise ValueError(msg)
        senders = message.get("senders") or [{}]
        conversation = await hitl_conversation(self._platform, str(thread_id))
        await post_agent_message(
            self._platform,
            conversation.id,
            str(senders[0].get("actorId", "")),
            message.get("text") or "",
            agent_name=senders[0].get("name"),
        )


class HubSpotInboxProvider(_HubSpotProvider):
    """Custom channel connected to a HubSpot conversations inbox."""

    provider = "hubspot-inbox"

    @classmethod
    def _config_from_settings(cls, settings: Settings) -> HubSpotConfig:
        return HubSpotConfig(
            developer_api_key=settings.hubspot_inbox_developer_api_key,
            refresh_token=settings.hubspot_inbox_refresh_token,
            app_id=settings.hubspot_inbox_app_id,
            client_id=settings.hubspot_inbox_client_id,
            client_secret=settings.hubspot_inbox_client_secret,
            target_id=settings.hubspot_inbox_inbox_id,
        )

    async def create_user(self, user: HitlUser) -> str:
        if not user.email:
            msg = "HubSpot Inbox users need an email address"
            raise ValueError(msg)
        return await super().create_user(user)


class HubSpotHelpDeskProvider(_HubSpotProvider):
    """Custom channel connected to a HubSpot help desk; webhooks are signed."""

    provider = "hubspot-help-desk"
    max_retries = 5
    backoff = True

    @classmethod
    def _config_from_settings(cls, settings: Settings) -> HubSpotConfig:
        return HubSpotConfig(
            developer_api_key=settings.hubspot_help_desk_developer_api_key,
            refresh_token=settings.hubspot_help_desk_refresh_token,
            app_id=settings.hubspot_help_desk_app_id,
            client_id=settings.hubspot_help_desk_client_id,
            client_secret=settings.hubspot_help_desk_client_secret,
            target_id=settings.hubspot_help_desk_help_desk_id,
        )

    def _authenticate(self, event: InboundEvent) -> None:
        verify_signature(
            self._config.client_secret,
            method=event.method,
            url=self._webhook_url or event.url,
            body=event.body.decode("utf-8", errors="replace"),
            signature=event.header(SIGNATURE_HEADER),
            timestamp=event.header(TIMESTAMP_HEADER),
        )
