"""Tests for the SharePoint connector lifecycle (register, notify, resync, unregister)."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from botbridge.exceptions import AuthError, ConfigurationError, RemoteError
from botbridge.services import sharepoint_service
from botbridge.services.sharepoint_service import (
    STATE_NAME,
    Subscription,
    build_router,
    load_subscriptions,
)
from botbridge.services.state_service import get_state, set_state
from botbridge.sharepoint.client import ChangeRecord, ChangeType
from tests.fakes import FakePlatform, FakeSharepointClient

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from botbridge.config import Settings


class ExpiredLibrary(FakeSharepointClient):
    """Library whose token acquisition fails when a webhook is deleted."""

    async def unregister_webhook(self, subscription_id: str) -> None:
        self.unregistered.append(subscription_id)
        raise AuthError("expired certificate")


def _libraries() -> dict[str, FakeSharepointClient]:
    return {
        "Docs": FakeSharepointClient(
            "Docs",
            paths={"1": "/sites/T/Docs/a.txt"},
            contents={"/sites/T/Docs/a.txt": b"a"},
            token="docs-0",
        ),
        "Policies": FakeSharepointClient(
            "Policies",
            paths={"2": "/sites/T/Policies/b.pdf"},
            contents={"/sites/T/Policies/b.pdf": b"b"},
            token="pol-0",
        ),
    }


class TestBuildRouter:
    def test_requires_some_kb(self, test_settings: Settings) -> None:
        test_settings.sharepoint_kb_id = ""
        with pytest.raises(ConfigurationError, match="SHAREPOINT_KB_ID"):
            build_router(test_settings)

    def test_routes_from_settings(self, test_settings: Settings) -> None:
        test_settings.sharepoint_folder_kb_map = '{"kb-hr": ["HR"]}'
        assert build_router(test_settings).kb_ids == ["kb-hr", "kb-default"]


class TestSubscription:
    def test_json_shape(self) -> None:
        sub = Subscription("sub-1", "tok")
        assert sub.to_json() == {"webhookSubscriptionId": "sub-1", "changeToken": "tok"}
        assert Subscription.from_json(sub.to_json()) == sub


class TestRegister:
    async def test_registers_every_library_and_stores_tokens(
        self, db_session: AsyncSession, test_settings: Settings, platform: FakePlatform
    ) -> None:
        test_settings.sharepoint_document_library_names = "Docs,Policies"
        libraries = _libraries()

        subs = await sharepoint_service.register(
            db_session, test_settings, platform, "https://hook", libraries.__getitem__
        )

        assert {lib: sub.change_token for lib, sub in subs.items()} == {
            "Docs": "docs-0",
            "Policies": "pol-0",
        }
        assert libraries["Docs"].webhooks == {"sub-Docs-1": "https://hook"}
        assert platform.keys() == {"kb-default/Docs/a.txt", "kb-default/Policies/b.pdf"}

        stored = await get_state(db_session, "sharepoint", STATE_NAME, "int-1")
        assert stored == {
            "subscriptions": {
                "Docs": {"webhookSubscriptionId": "sub-Docs-1", "changeToken": "docs-0"},
                "Policies": {"webhookSubscriptionId": "sub-Policies-1", "changeToken": "pol-0"},
            }
        }

    async def test_failure_removes_created_webhooks_and_stores_nothing(
        self, db_session: AsyncSession, test_settings: Settings, platform: FakePlatform
    ) -> None:
        test_settings.sharepoint_document_library_names = "Docs,Policies"
        libraries = _libraries()
        libraries["Policies"].token = None

        with pytest.raises(RemoteError):
            await sharepoint_service.register(
                db_session, test_settings, platform, "https://hook", libraries.__getitem__
            )

        assert libraries["Docs"].unregistered == ["sub-Docs-1"]
        assert libraries["Policies"].unregistered == ["sub-Policies-1"]
        assert await load_subscriptions(db_session, test_settings) == {}

    async def test_cleanup_failure_keeps_original_error_and_cleans_the_rest(
        self, db_session: AsyncSession, test_settings: Settings, platform: FakePlatform
    ) -> None:
        test_settings.sharepoint_document_library_names = "Docs,Policies"
        libraries = _libraries()
        libraries["Docs"] = ExpiredLibrary(
            "Docs",
            paths={"1": "/sites/T/Docs/a.txt"},
            contents={"/sites/T/Docs/a.txt": b"a"},
            token="docs-0",
        )
        libraries["Policies"].token = None

        with pytest.raises(RemoteError, match="initial change token"):
            await sharepoint_service.register(
                db_session, test_settings, platform, "https://hook", libraries.__getitem__
            )

        assert libraries["Docs"].unregistered == ["sub-Docs-1"]
        assert libraries["Policies"].unregistered == ["sub-Policies-1"]

    async def test_requires_a_library(
        self, db_session: AsyncSession, test_settings: Settings, platform: FakePlatform
    ) -> None:
        test_settings.sharepoint_document_library_names = ""
        with pytest.raises(ConfigurationError, match="No document library"):
            await sharepoint_service.register(
                db_session, test_settings, platform, "https://hook", _libraries().__getitem__
            )


class TestHandleNotification:
    async def test_unregistered_is_a_noop(
        self, db_session: AsyncSession, test_settings: Settings, platform: FakePlatform
    ) -> None:
        tokens = await sharepoint_service.handle_notification(
            db_session, test_settings, platform, _libraries().__getitem__
        )
        assert tokens == {}

    async def test_advances_tokens_per_library(
        self, db_session: AsyncSession, test_settings: Settings, platform: FakePlatform
    ) -> None:
        await set_state(
            db_session,
            "sharepoint",
            STATE_NAME,
            "int-1",
            {
                "subscriptions": {
                    "Docs": {"webhookSubscriptionId": "s1", "changeToken": "d-1"},
                    "Policies": {"webhookSubscriptionId": "s2", "changeToken": "p-1"},
                }
            },
        )
        libraries = _libraries()
        libraries["Docs"].changes = [
            ChangeRecord(change_type=int(ChangeType.ADD), item_id="1", token="d-2")
        ]

        tokens = await sharepoint_service.handle_notification(
            db_session, test_settings, platform, libraries.__getitem__
        )

        assert tokens == {"Docs": "d-2", "Policies": "p-1"}
        assert libraries["Docs"].change_requests == ["d-1"]
        assert platform.keys() == {"kb-default/Docs/a.txt"}
        subs = await load_subscriptions(db_session, test_settings)
        assert subs["Docs"].change_token == "d-2"
        assert subs["Docs"].webhook_subscription_id == "s1"

    async def test_library_failure_keeps_its_token(
        self, db_session: AsyncSession, test_settings: Settings, platform: FakePlatform
    ) -> None:
        await set_state(
            db_session,
            "sharepoint",
            STATE_NAME,
            "int-1",
            {
                "subscriptions": {
                    "Docs": {"webhookSubscriptionId": "s1", "changeToken": "d-1"},
                    "Policies": {"webhookSubscriptionId": "s2", "changeToken": "p-1"},
                }
            },
        )
        libraries = _libraries()

        async def broken(since_token: str) -> list[ChangeRecord]:
            raise RemoteError("change log unavailable", 503)

        libraries["Docs"].get_changes = broken  # type: ignore[method-assign]
        libraries["Policies"].changes = [
            ChangeRecord(change_type=int(ChangeType.ADD), item_id="2", token="p-2")
        ]

        tokens = await sharepoint_service.handle_notification(
            db_session, test_settings, platform, libraries.__getitem__
        )
        assert tokens == {"Docs": "d-1", "Policies": "p-2"}


class TestResyncAndUnregister:
    async def test_resync_requires_registration(
        self, db_session: AsyncSession, test_settings: Settings, platform: FakePlatform
    ) -> None:
        with pytest.raises(ConfigurationError, match="not registered"):
            await sharepoint_service.resync(
                db_session, test_settings, platform, _libraries().__getitem__
            )

    async def test_resync_reloads_and_resets_tokens(
        self, db_session: AsyncSession, test_settings: Settings, platform: FakePlatform
    ) -> None:
        await set_state(
            db_session,
            "sharepoint",
            STATE_NAME,
            "int-1",
            {"subscriptions": {"Docs": {"webhookSubscriptionId": "s1", "changeToken": "old"}}},
        )
        subs = await sharepoint_service.resync(
            db_session, test_settings, platform, _libraries().__getitem__
        )
        assert subs == {"Docs": Subscription("s1", "docs-0")}
        assert platform.keys() == {"kb-default/Docs/a.txt"}

    async def test_unregister_removes_webhooks_and_state(
        self, db_session: AsyncSession, test_settings: Settings
    ) -> None:
        await set_state(
            db_session,
            "sharepoint",
            STATE_NAME,
            "int-1",
            {"subscriptions": {"Docs": {"webhookSubscriptionId": "s1", "changeToken": "t"}}},
        )
        libraries = _libraries()

        removed = await sharepoint_service.unregister(
            db_session, test_settings, libraries.__getitem__
        )

        assert removed == ["Docs"]
        assert libraries["Docs"].unregistered == ["s1"]
        assert await get_state(db_session, "sharepoint", STATE_NAME, "int-1") is None

    async def test_unregister_forgets_state_when_webhook_delete_fails(
        self, db_session: AsyncSession, test_settings: Settings
    ) -> None:
        await set_state(
            db_session,
            "sharepoint",
            STATE_NAME,
            "int-1",
            {
                "subscriptions": {
                    "Docs": {"webhookSubscriptionId": "s1", "changeToken": "t"},
                    "Policies": {"webhookSubscriptionId": "s2", "changeToken": "u"},
                }
            },
        )
        libraries = _libraries()
        libraries["Docs"] = ExpiredLibrary("Docs")

        removed = await sharepoint_service.unregister(
            db_session, test_settings, libraries.__getitem__
        )

        assert removed == ["Docs", "Policies"]
        assert libraries["Docs"].unregistered == ["s1"]
        assert libraries["Policies"].unregistered == ["s2"]
        assert await get_state(db_session, "sharepoint", STATE_NAME, "int-1") is None

    async def test_unregister_without_credentials_still_forgets_state(
        self, db_session: AsyncSession, test_settings: Settings
    ) -> None:
        await set_state(
            db_session,
            "sharepoint",
            STATE_NAME,
            "int-1",
            {"subscriptions": {"Docs": {"webhookSubscriptionId": "s1", "changeToken": "t"}}},
        )

        assert await sharepoint_service.unregister(db_session, test_settings) == ["Docs"]
        assert await get_state(db_session, "sharepoint", STATE_NAME, "int-1") is None

    async def test_list_site_libraries(self, test_settings: Settings) -> None:
        libraries = _libraries()
        found = await sharepoint_service.list_site_libraries(
            test_settings, libraries.__getitem__
        )
        assert [lib.name for lib in found] == ["Docs"]
