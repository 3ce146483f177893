"""Tests for the handoff provider endpoints."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING

import httpx
import pytest

from tests.conftest import admin_headers, create_test_client

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from botbridge.config import Settings
    from tests.fakes import FakePlatform


class BrevoRecorder:
    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(200, json={"id": "m-1", "email": "owner@example.com"})


@pytest.fixture
def brevo() -> BrevoRecorder:
    return BrevoRecorder()


@pytest.fixture
async def client(
    test_settings: Settings, platform: FakePlatform, brevo: BrevoRecorder
) -> AsyncGenerator[httpx.AsyncClient]:
    test_settings.brevo_api_key = "key-1"
    test_settings.brevo_agent_id = "agent-1"
    test_settings.hubspot_help_desk_developer_api_key = "dev"
    test_settings.hubspot_help_desk_refresh_token = "refresh"
    test_settings.hubspot_help_desk_app_id = "123"
    test_settings.hubspot_help_desk_client_id = "cid"
    test_settings.hubspot_help_desk_client_secret = "secret"
    test_settings.hubspot_help_desk_help_desk_id = "hd-1"
    async with create_test_client(
        test_settings,
        platform=platform,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(brevo)),
    ) as ac:
        yield ac


class TestProviders:
    async def test_lists_providers(self, client: httpx.AsyncClient) -> None:
        resp = await client.get("/api/hitl/providers", headers=admin_headers())
        assert resp.status_code == 200
        assert resp.json() == {
            "providers": ["brevo", "hubspot-inbox", "hubspot-help-desk", "salesforce"]
        }

    async def test_operator_endpoints_require_admin(self, client: httpx.AsyncClient) -> None:
        assert (await client.get("/api/hitl/providers")).status_code == 401
        resp = await client.post("/api/hitl/brevo/sessions", json={"user_id": "u"})
        assert resp.status_code == 401

    async def test_unknown_provider(self, client: httpx.AsyncClient) -> None:
        resp = await client.post("/api/hitl/zendesk/register", headers=admin_headers())
        assert resp.status_code == 404
        assert "Unknown provider" in resp.json()["detail"]

    async def test_unconfigured_provider(self, client: httpx.AsyncClient) -> None:
        resp = await client.post("/api/hitl/salesforce/register", headers=admin_headers())
        assert resp.status_code == 422
        assert "SALESFORCE_ENDPOINT" in resp.json()["detail"]


class TestBrevoFlow:
    async def test_session_round_trip(
        self, client: httpx.AsyncClient, platform: FakePlatform, brevo: BrevoRecorder
    ) -> None:
        resp = await client.post("/api/hitl/brevo/register", headers=admin_headers())
        assert resp.json() == {"status": "ok"}

        resp = await client.post(
            "/api/hitl/brevo/users",
            headers=admin_headers(),
            json={"name": "Ann", "email": "ann@example.com"},
        )
        assert resp.status_code == 201
        user_id = resp.json()["user_id"]

        resp = await client.post(
            "/api/hitl/brevo/sessions",
            headers=admin_headers(),
            json={"user_id": user_id, "title": "Refund"},
        )
        assert resp.status_code == 201
        conversation_id = resp.json()["conversation_id"]
        visitor_id = platform.conversations[conversation_id].tags["id"]

        resp = await client.post(
            f"/api/hitl/brevo/sessions/{conversation_id}/messages",
            headers=admin_headers(),
            json={"type": "text", "text": "Still there?"},
        )
        assert resp.status_code == 200
        sent = json.loads(brevo.requests[-1].content)
        assert sent["text"] == f"*Botpress User ({visitor_id})*: Still there?"

        resp = await client.post(
            "/api/hitl/brevo/webhook",
            json={
                "eventName": "conversationFragment",
                "visitor": {"id": visitor_id},
                "messages": [{"text": "Yes, looking into it"}],
                "agents": [{"id": "agent-9", "name": "Bob"}],
            },
        )
        assert resp.status_code == 200
        assert platform.messages[-1]["payload"] == {"text": "Yes, looking into it"}
        assert platform.messages[-1]["conversationId"] == conversation_id

        resp = await client.delete(
            f"/api/hitl/brevo/sessions/{conversation_id}", headers=admin_headers()
        )
        assert resp.status_code == 200

    async def test_user_without_email_is_rejected(self, client: httpx.AsyncClient) -> None:
        resp = await client.post(
            "/api/hitl/brevo/users", headers=admin_headers(), json={"name": "Ann"}
        )
        assert resp.status_code == 422

    async def test_session_requires_user_id(self, client: httpx.AsyncClient) -> None:
        resp = await client.post("/api/hitl/brevo/sessions", headers=admin_headers(), json={})
        assert resp.status_code == 422
        assert resp.json()["detail"][0]["field"] == "user_id"

    async def test_message_to_unknown_conversation(self, client: httpx.AsyncClient) -> None:
        resp = await client.post(
            "/api/hitl/brevo/sessions/conv-404/messages",
            headers=admin_headers(),
            json={"type": "text", "text": "hi"},
        )
        assert resp.status_code == 404


class TestWebhookAuthentication:
    async def test_unsigned_help_desk_delivery_is_rejected(
        self, client: httpx.AsyncClient, platform: FakePlatform
    ) -> None:
        resp = await client.post(
            "/api/hitl/hubspot-help-desk/webhook",
            json=[{"subscriptionType": "conversation.propertyChange", "objectId": 1}],
        )
        assert resp.status_code == 401
        assert "signature" in resp.json()["detail"]
        assert platform.events == []

    async def test_forged_help_desk_delivery_is_rejected(self, client: httpx.AsyncClient) -> None:
        resp = await client.post(
            "/api/hitl/hubspot-help-desk/webhook",
            content=b"[]",
            headers={
                "X-HubSpot-Signature-V3": "forged",
                "X-HubSpot-Request-Timestamp": "9999999999999",
            },
        )
        assert resp.status_code == 401
