"""Tests for the HubSpot Inbox and Help Desk handoff providers."""

from __future__ import annotations

import json
from datetime import timedelta

import httpx
import pytest

from botbridge.config import Settings
from botbridge.exceptions import AuthError, ConfigurationError, RemoteError
from botbridge.hitl.base import HitlSessionRequest, HitlUser, InboundEvent, OutboundMessage
from botbridge.hitl.hubspot import (
    CHANNEL_STATE,
    CREDENTIALS_STATE,
    ChannelInfo,
    HubSpotConfig,
    HubSpotHelpDeskProvider,
    HubSpotInboxProvider,
    delivery_identifier,
)
from botbridge.hitl.signature import (
    SIGNATURE_HEADER,
    TIMESTAMP_HEADER,
    WebhookSignatureError,
    compute_signature,
)
from botbridge.services.datetime_service import format_iso, now_millis, now_utc
from botbridge.services.state_service import StateStore
from tests.fakes import FakePlatform

WEBHOOK_URL = "https://bridge.example.com/api/hitl/hubspot-help-desk/webhook"

CONFIG = HubSpotConfig(
    developer_api_key="dev-key",
    refresh_token="refresh",
    app_id="app-1",
    client_id="client-1",
    client_secret="client-secret",
    target_id="inbox-1",
)


class FakeHubSpot:
    """Routes HubSpot API calls to canned responses."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.token_count = 0
        self.unauthorized = 0
        self.listed_after = 0
        self.list_calls = 0
        self.token_status = 200
        self.thread = {
            "id": "thread-1",
            "associatedContactId": "contact-1",
            "senders": [{"deliveryIdentifier": {"type": "HS_EMAIL_ADDRESS"}}],
        }

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path == "/oauth/v1/token":
            if self.token_status != 200:
                return httpx.Response(self.token_status, json={"message": "bad refresh token"})
            self.token_count += 1
            return httpx.Response(
                200, json={"access_token": f"tok-{self.token_count}", "expires_in": 1800}
            )
        if "Authorization" in request.headers and self.unauthorized:
            self.unauthorized -= 1
            return httpx.Response(401, json={"message": "expired"})
        if path == "/conversations/v3/custom-channels" and request.method == "POST":
            return httpx.Response(200, json={"id": "ch-1"})
        if path == "/conversations/v3/custom-channels":
            self.list_calls += 1
            listed = self.list_calls > self.listed_after
            return httpx.Response(200, json={"results": [{"id": "ch-1"}] if listed else []})
        if path.endswith("/channel-accounts"):
            return httpx.Response(200, json={"id": "acct-1"})
        if path.endswith("/messages"):
            return httpx.Response(200, json={"conversationsThreadId": "thread-1"})
        if "/threads/" in path:
            return httpx.Response(200, json=self.thread)
        if "/actors/" in path:
            return httpx.Response(200, json={"email": "agent@example.com"})
        if "/crm/v3/objects/contacts/" in path:
            return httpx.Response(200, json={"properties": {"phone": "+15550100"}})
        return httpx.Response(404)

    def authorized(self) -> list[httpx.Request]:
        return [r for r in self.requests if "Authorization" in r.headers]

    def message_bodies(self) -> list[dict[str, object]]:
        return [json.loads(r.content) for r in self.requests if r.url.path.endswith("/messages")]


class Sleeper:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def hubspot() -> FakeHubSpot:
    return FakeHubSpot()


@pytest.fixture
def sleeper() -> Sleeper:
    return Sleeper()


@pytest.fixture
def store(state_store: StateStore) -> StateStore:
    return state_store.for_integration("hubspot")


def _build(
    cls: type[HubSpotInboxProvider] | type[HubSpotHelpDeskProvider],
    hubspot: FakeHubSpot,
    platform: FakePlatform,
    store: StateStore,
    sleeper: Sleeper,
) -> HubSpotInboxProvider | HubSpotHelpDeskProvider:
    return cls(
        CONFIG,
        platform,  # type: ignore[arg-type]
        store,
        "int-1",
        webhook_url=WEBHOOK_URL,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(hubspot)),
        sleep=sleeper,
    )


@pytest.fixture
def inbox(
    hubspot: FakeHubSpot, platform: FakePlatform, store: StateStore, sleeper: Sleeper
) -> HubSpotInboxProvider:
    provider = _build(HubSpotInboxProvider, hubspot, platform, store, sleeper)
    assert isinstance(provider, HubSpotInboxProvider)
    return provider


@pytest.fixture
def help_desk(
    hubspot: FakeHubSpot, platform: FakePlatform, store: StateStore, sleeper: Sleeper
) -> HubSpotHelpDeskProvider:
    provider = _build(HubSpotHelpDeskProvider, hubspot, platform, store, sleeper)
    assert isinstance(provider, HubSpotHelpDeskProvider)
    return provider


async def _connect(store: StateStore) -> None:
    await store.set(CHANNEL_STATE, "int-1", ChannelInfo("ch-1", "acct-1").to_json())


class TestHelpers:
    def test_delivery_identifier(self) -> None:
        assert delivery_identifier("a@x.com") == {"type": "HS_EMAIL_ADDRESS", "value": "a@x.com"}
        assert delivery_identifier("+1555") == {"type": "HS_PHONE_NUMBER", "value": "+1555"}

    def test_channel_info_json(self) -> None:
        info = ChannelInfo("c", "a", "t")
        assert info.to_json() == {
            "channelId": "c",
            "channelAccountId": "a",
            "integrationThreadId": "t",
        }
        assert ChannelInfo.from_json(info.to_json()) == info

    def test_from_settings_lists_missing_fields(
        self, platform: FakePlatform, store: StateStore
    ) -> None:
        settings = Settings(hubspot_inbox_developer_api_key="k", hubspot_inbox_app_id="1")
        with pytest.raises(ConfigurationError, match="refresh_token"):
            HubSpotInboxProvider.from_settings(settings, platform, store)  # type: ignore[arg-type]


class TestAccessToken:
    async def test_refresh_stores_encrypted_token(
        self, inbox: HubSpotInboxProvider, store: StateStore
    ) -> None:
        assert await inbox.api.refresh_access_token() == "tok-1"
        credentials = await store.get_secret(CREDENTIALS_STATE, "int-1")
        assert credentials is not None
        assert credentials["accessToken"] == "tok-1"
        assert "expiresAt" in credentials

    async def test_stored_token_is_reused(
        self, inbox: HubSpotInboxProvider, hubspot: FakeHubSpot
    ) -> None:
        await inbox.api.get_thread_info("thread-1")
        await inbox.api.get_thread_info("thread-1")
        assert hubspot.token_count == 1
        assert hubspot.authorized()[-1].headers["Authorization"] == "Bearer tok-1"

    async def test_expired_token_is_refreshed(
        self, inbox: HubSpotInboxProvider, hubspot: FakeHubSpot, store: StateStore
    ) -> None:
        expired = format_iso(now_utc() - timedelta(minutes=1))
        await store.set_secret(
            CREDENTIALS_STATE, "int-1", {"accessToken": "old", "expiresAt": expired}
        )
        await inbox.api.get_thread_info("thread-1")
        assert hubspot.authorized()[-1].headers["Authorization"] == "Bearer tok-1"

    async def test_refresh_failure_is_an_auth_error(
        self, inbox: HubSpotInboxProvider, hubspot: FakeHubSpot
    ) -> None:
        hubspot.token_status = 400
        with pytest.raises(AuthError, match="bad refresh token"):
            await inbox.api.refresh_access_token()

    async def test_inbox_retries_once_on_401(
        self, inbox: HubSpotInboxProvider, hubspot: FakeHubSpot, sleeper: Sleeper
    ) -> None:
        hubspot.unauthorized = 1
        await inbox.api.get_thread_info("thread-1")
        assert hubspot.token_count == 2
        assert sleeper.delays == []

    async def test_inbox_gives_up_after_one_retry(
        self, inbox: HubSpotInboxProvider, hubspot: FakeHubSpot
    ) -> None:
        hubspot.unauthorized = 2
        with pytest.raises(RemoteError) as exc_info:
            await inbox.api.get_thread_info("thread-1")
        assert exc_info.value.status_code == 401

    async def test_help_desk_backs_off_exponentially(
        self, help_desk: HubSpotHelpDeskProvider, hubspot: FakeHubSpot, sleeper: Sleeper
    ) -> None:
        hubspot.unauthorized = 3
        await help_desk.api.get_thread_info("thread-1")
        assert sleeper.delays == [1, 2, 4]
        assert hubspot.token_count == 4

    async def test_help_desk_gives_up_after_five_retries(
        self, help_desk: HubSpotHelpDeskProvider, hubspot: FakeHubSpot, sleeper: Sleeper
    ) -> None:
        hubspot.unauthorized = 10
        with pytest.raises(RemoteError):
            await help_desk.api.get_thread_info("thread-1")
        assert sleeper.delays == [1, 2, 4, 8, 16]


class TestRegister:
    async def test_creates_and_connects_channel(
        self, inbox: HubSpotInboxProvider, hubspot: FakeHubSpot, store: StateStore
    ) -> None:
        await inbox.register(WEBHOOK_URL)

        create = next(
            r
            for r in hubspot.requests
            if r.method == "POST" and r.url.path.endswith("custom-channels")
        )
        assert create.url.params["hapikey"] == "dev-key"
        assert create.url.params["appId"] == "app-1"
        assert json.loads(create.content)["webhookUrl"] == WEBHOOK_URL

        connect = next(r for r in hubspot.requests if r.url.path.endswith("/channel-accounts"))
        assert json.loads(connect.content)["inboxId"] == "inbox-1"
        assert await store.get(CHANNEL_STATE, "int-1") == {
            "channelId": "ch-1",
            "channelAccountId": "acct-1",
            "integrationThreadId": "",
        }

    async def test_polls_until_channel_is_listed(
        self, inbox: HubSpotInboxProvider, hubspot: FakeHubSpot, sleeper: Sleeper
    ) -> None:
        hubspot.listed_after = 2
        await inbox.register(WEBHOOK_URL)
        assert hubspot.list_calls == 3
        assert sleeper.delays == [1, 2]

    async def test_connects_even_if_never_listed(
        self,
        inbox: HubSpotInboxProvider,
        hubspot: FakeHubSpot,
        sleeper: Sleeper,
        store: StateStore,
    ) -> None:
        hubspot.listed_after = 100
        await inbox.register(WEBHOOK_URL)
        assert sleeper.delays == [1, 2, 4, 8, 16, 32]
        assert await store.get(CHANNEL_STATE, "int-1") is not None


class TestSession:
    async def test_inbox_requires_email(self, inbox: HubSpotInboxProvider) -> None:
        with pytest.raises(ValueError, match="email"):
            await inbox.create_user(HitlUser(phone="+1555"))

    async def test_help_desk_accepts_phone(
        self, help_desk: HubSpotHelpDeskProvider, platform: FakePlatform, store: StateStore
    ) -> None:
        user_id = await help_desk.create_user(HitlUser(name="Ann", phone="+1555"))
        assert platform.users[user_id].tags == {"id": "+1555", "phone": "+1555"}
        assert await store.get("userInfo", "int-1") == {"name": "Ann", "phoneNumber": "+1555"}

    async def test_user_needs_email_or_phone(self, help_desk: HubSpotHelpDeskProvider) -> None:
        with pytest.raises(ValueError, match="email address or a phone number"):
            await help_desk.create_user(HitlUser(name="Ann"))

    async def test_start_session_requires_registration(
        self, inbox: HubSpotInboxProvider
    ) -> None:
        await inbox.create_user(HitlUser(name="Ann", email="ann@example.com"))
        with pytest.raises(ConfigurationError, match="not registered"):
            await inbox.start_session(HitlSessionRequest(user_id="u"))

    async def test_start_session_and_send(
        self,
        inbox: HubSpotInboxProvider,
        hubspot: FakeHubSpot,
        platform: FakePlatform,
        store: StateStore,
    ) -> None:
        await _connect(store)
        user_id = await inbox.create_user(HitlUser(name="Ann", email="ann@example.com"))
        conversation_id = await inbox.start_session(
            HitlSessionRequest(user_id=user_id, title="Refund", description="Order 42")
        )

        channel = await store.get(CHANNEL_STATE, "int-1")
        assert channel is not None
        thread_tag = channel["integrationThreadId"]
        assert thread_tag

        [opening] = hubspot.message_bodies()
        assert opening["integrationThreadId"] == thread_tag
        assert opening["channelAccountId"] == "acct-1"
        assert opening["messageDirection"] == "INCOMING"
        assert opening["text"] == "Name: Ann \nTitle: Refund \nDescription: Order 42"
        assert opening["senders"] == [
            {
                "name": "Ann",
                "deliveryIdentifier": {"type": "HS_EMAIL_ADDRESS", "value": "ann@example.com"},
            }
        ]

        conversation = platform.conversations[conversation_id]
        assert conversation.tags["id"] == "thread-1"
        assert platform.event_types() == ["hitlStarted"]

        await inbox.send(conversation, OutboundMessage(type="text", text="Hello"))
        reply = hubspot.message_bodies()[-1]
        assert reply["type"] == "MESSAGE"
        assert reply["text"] == "Hello"


class TestInbound:
    async def test_agent_message(
        self, inbox: HubSpotInboxProvider, platform: FakePlatform
    ) -> None:
        body = {
            "type": "OUTGOING_CHANNEL_MESSAGE_CREATED",
            "message": {
                "conversationsThreadId": "thread-1",
                "text": "On it",
                "senders": [{"actorId": "A-123", "name": "Bob"}],
            },
        }
        await inbox.on_inbound_event(InboundEvent(body=json.dumps(body).encode()))

        [message] = platform.messages
        assert message["payload"] == {"text": "On it"}
        assert platform.users[message["userId"]].tags == {"id": "A-123"}
        assert platform.conversations[message["conversationId"]].tags["id"] == "thread-1"

    async def test_agent_message_without_thread_is_rejected(
        self, inbox: HubSpotInboxProvider
    ) -> None:
        body = {"type": "OUTGOING_CHANNEL_MESSAGE_CREATED", "message": {"text": "x"}}
        with pytest.raises(ValueError, match="conversationsThreadId"):
            await inbox.on_inbound_event(InboundEvent(body=json.dumps(body).encode()))

    async def test_assignment_by_email(
        self, inbox: HubSpotInboxProvider, platform: FakePlatform
    ) -> None:
        body = [
            {
                "subscriptionType": "conversation.propertyChange",
                "objectId": 1,
                "propertyName": "assignedTo",
                "propertyValue": "42",
            }
        ]
        await inbox.on_inbound_event(InboundEvent(body=json.dumps(body).encode()))

        [event] = platform.events
        assert event["type"] == "hitlAssigned"
        agent = platform.users[event["payload"]["userId"]]
        assert agent.tags == {"id": "agent@example.com", "email": "agent@example.com"}

    async def test_assignment_by_phone(
        self, inbox: HubSpotInboxProvider, hubspot: FakeHubSpot, platform: FakePlatform
    ) -> None:
        hubspot.thread["senders"] = [{"deliveryIdentifier": {"type": "HS_PHONE_NUMBER"}}]
        body = [
            {
                "subscriptionType": "conversation.propertyChange",
                "objectId": 1,
                "propertyName": "assignedTo",
                "propertyValue": "42",
            }
        ]
        await inbox.on_inbound_event(InboundEvent(body=json.dumps(body).encode()))

        agent = platform.users[platform.events[0]["payload"]["userId"]]
        assert agent.tags == {"id": "+15550100", "phone": "+15550100"}

    async def test_closed_status_stops_session(
        self, inbox: HubSpotInboxProvider, platform: FakePlatform
    ) -> None:
        body = [
            {
                "subscriptionType": "conversation.propertyChange",
                "objectId": "thread-1",
                "propertyName": "status",
                "propertyValue": "CLOSED",
            },
            {"subscriptionType": "conversation.creation", "objectId": "thread-2"},
        ]
        await inbox.on_inbound_event(InboundEvent(body=json.dumps(body).encode()))
        assert platform.event_types() == ["hitlStopped"]

    async def test_empty_and_malformed_bodies_are_ignored(
        self, inbox: HubSpotInboxProvider, platform: FakePlatform
    ) -> None:
        await inbox.on_inbound_event(InboundEvent(body=b""))
        await inbox.on_inbound_event(InboundEvent(body=b"{nope"))
        await inbox.on_inbound_event(InboundEvent(body=b'{"type": "OTHER"}'))
        assert platform.events == []


class TestHelpDeskSignature:
    def _signed(self, body: bytes, *, secret: str = "client-secret") -> InboundEvent:
        timestamp = str(now_millis())
        signature = compute_signature(secret, "POST", WEBHOOK_URL, body.decode(), timestamp)
        return InboundEvent(
            body=body,
            headers={SIGNATURE_HEADER.lower(): signature, TIMESTAMP_HEADER.lower(): timestamp},
            method="POST",
            url="http://internal:8000/api/hitl/hubspot-help-desk/webhook",
        )

    async def test_valid_signature_is_accepted(
        self, help_desk: HubSpotHelpDeskProvider, platform: FakePlatform
    ) -> None:
        body = json.dumps(
            [
                {
                    "subscriptionType": "conversation.propertyChange",
                    "objectId": "thread-1",
                    "propertyName": "status",
                    "propertyValue": "CLOSED",
                }
            ]
        ).encode()
        await help_desk.on_inbound_event(self._signed(body))
        assert platform.event_types() == ["hitlStopped"]

    async def test_forged_signature_is_rejected(
        self, help_desk: HubSpotHelpDeskProvider, platform: FakePlatform
    ) -> None:
        with pytest.raises(WebhookSignatureError):
            await help_desk.on_inbound_event(self._signed(b"[]", secret="wrong"))
        assert platform.events == []

    async def test_inbox_does_not_check_signatures(
        self, inbox: HubSpotInboxProvider, platform: FakePlatform
    ) -> None:
        await inbox.on_inbound_event(InboundEvent(body=b"[]"))
        assert platform.events == []
