"""Client for the host chatbot platform API (files, conversations, users, events)."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from botbridge.exceptions import RemoteError
from botbridge.remote import HttpAdapter

if TYPE_CHECKING:
    import httpx

    from botbridge.config import Settings

logger = logging.getLogger(__name__)


@dataclass
class PlatformFile:
    """A file stored in the platform's file store."""

    id: str
    key: str
    tags: dict[str, str] = field(default_factory=dict)
    size: int | None = None


@dataclass
class PlatformConversation:
    """A conversation on one of the bot's channels."""

    id: str
    channel: str
    tags: dict[str, str] = field(default_factory=dict)


@dataclass
class PlatformUser:
    """A platform user (end user or human agent)."""

    id: str
    tags: dict[str, str] = field(default_factory=dict)
    name: str | None = None


def _file_from_json(data: dict[str, Any]) -> PlatformFile:
    return PlatformFile(
        id=str(data["id"]),
        key=str(data.get("key", "")),
        tags={str(k): str(v) for k, v in (data.get("tags") or {}).items()},
        size=data.get("size"),
    )


def _conversation_from_json(data: dict[str, Any]) -> PlatformConversation:
    return PlatformConversation(
        id=str(data["id"]),
        channel=str(data.get("channel", "")),
        tags={str(k): str(v) for k, v in (data.get("tags") or {}).items()},
    )


def _user_from_json(data: dict[str, Any]) -> PlatformUser:
    return PlatformUser(
        id=str(data["id"]),
        tags={str(k): str(v) for k, v in (data.get("tags") or {}).items()},
        name=data.get("name"),
    )


class PlatformClient(HttpAdapter):
    """Thin async wrapper over the platform REST API.

    Every failure surfaces as :class:`~botbridge.exceptions.RemoteError`
    (:class:`~botbridge.exceptions.NotFoundError` for 404s).
    """

    def __init__(
        self,
        base_url: str,
        token: str,
        bot_id: str,
        integration_id: str = "",
        *,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ) -> None:
        super().__init__(http_client=http_client, timeout=timeout)
        self._base_url = base_url.rstrip("/")
        self._token = token
        self._bot_id = bot_id
        self._integration_id = integration_id

    @classmethod
    def from_settings(
        cls, settings: Settings, http_client: httpx.AsyncClient | None = None
    ) -> PlatformClient:
        return cls(
            settings.platform_api_url,
            settings.platform_token,
            settings.platform_bot_id,
            settings.platform_integration_id,
            http_client=http_client,
            timeout=settings.http_timeout_seconds,
        )

    def _headers(self) -> dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self._token}",
            "x-bot-id": self._bot_id,
        }
        if self._integration_id:
            headers["x-integration-id"] = self._integration_id
        return headers

    async def _call(
        self, method: str, path: str, action: str, **kwargs: Any
    ) -> dict[str, Any]:
        response = await self._send(
            method,
            f"{self._base_url}{path}",
            action=action,
            headers=self._headers(),
            **kwargs,
        )
        if not response.content:
            return {}
        data = response.json()
        return data if isinstance(data, dict) else {}

    # ── Files ────────────────────────────────────────

    async def upload_file(
        self,
        key: str,
        content: bytes,
        content_type: str,
        tags: dict[str, str],
        *,
        index: bool = True,
    ) -> PlatformFile:
        """Create or replace the file stored under ``key`` and upload its bytes."""
        data = await self._call(
            "PUT",
            "/v1/files",
            f"Upsert file {key}",
            json={
                "key": key,
                "size": len(content),
                "contentType": content_type,
                "tags": tags,
                "index": index,
            },
        )
        file_data = data.get("file") or {}
        upload_url = file_data.get("uploadUrl")
        if not upload_url:
            msg = f"Upsert file {key} returned no upload URL"
            raise RemoteError(msg)

        # The upload URL is pre-signed; platform credentials must not be sent there.
        await self._send(
            "PUT",
            upload_url,
            action=f"Upload content of {key}",
            content=content,
            headers={"Content-Type": content_type},
        )
        return _file_from_json(file_data)

    async def list_files(self, tags: dict[str, str]) -> list[PlatformFile]:
        """List every file whose tags include all of ``tags``."""
        files: list[PlatformFile] = []
        next_token: str | None = None
        while True:
            params: dict[str, str] = {"tags": json.dumps(tags, sort_keys=True)}
            if next_token:
                params["nextToken"] = next_token
            data = await self._call("GET", "/v1/files", "List files", params=params)
            files.extend(_file_from_json(item) for item in data.get("files", []))
            next_token = (data.get("meta") or {}).get("nextToken")
            if not next_token:
                return files

    async def delete_file(self, file_id: str) -> None:
        await self._call("DELETE", f"/v1/files/{file_id}", f"Delete file {file_id}")

    # ── Conversations, users, messages, events ───────

    async def get_or_create_conversation(
        self, channel: str, tags: dict[str, str]
    ) -> PlatformConversation:
        data = await self._call(
            "POST",
            "/v1/chat/conversations/get-or-create",
            "Get or create conversation",
            json={"channel": channel, "tags": tags},
        )
        return _conversation_from_json(data["conversation"])

    async def get_conversation(self, conversation_id: str) -> PlatformConversation:
        data = await self._call(
            "GET",
            f"/v1/chat/conversations/{conversation_id}",
            f"Get conversation {conversation_id}",
        )
        return _conversation_from_json(data["conversation"])

    async def update_conversation(
        self, conversation_id: str, tags: dict[str, str]
    ) -> PlatformConversation:
        data = await self._call(
            "PUT",
            f"/v1/chat/conversations/{conversation_id}",
            f"Update conversation {conversation_id}",
            json={"tags": tags},
        )
        return _conversation_from_json(data["conversation"])

    async def get_or_create_user(
        self,
        tags: dict[str, str],
        *,
        name: str | None = None,
        picture_url: str | None = None,
    ) -> PlatformUser:
        body: dict[str, Any] = {"tags": tags}
        if name is not None:
            body["name"] = name
        if picture_url is not None:
            body["pictureUrl"] = picture_url
        data = await self._call(
            "POST", "/v1/chat/users/get-or-create", "Get or create user", json=body
        )
        return _user_from_json(data["user"])

    async def get_user(self, user_id: str) -> PlatformUser:
        data = await self._call("GET", f"/v1/chat/users/{user_id}", f"Get user {user_id}")
        return _user_from_json(data["user"])

    async def create_message(
        self,
        conversation_id: str,
        user_id: str,
        payload: dict[str, Any],
        *,
        type: str = "text",
        tags: dict[str, str] | None = None,
    ) -> str:
        data = await self._call(
            "POST",
            "/v1/chat/messages",
            "Create message",
            json={
                "conversationId": conversation_id,
                "userId": user_id,
                "type": type,
                "payload": payload,
                "tags": tags or {},
            },
        )
        return str((data.get("message") or {}).get("id", ""))

    async def create_event(
        self,
        type: str,
        payload: dict[str, Any],
        *,
        conversation_id: str | None = None,
    ) -> None:
        body: dict[str, Any] = {"type": type, "payload": payload}
        if conversation_id is not None:
            body["conversationId"] = conversation_id
        await self._call("POST", "/v1/chat/events", f"Create event {type}", json=body)
        logger.debug("Emitted platform event %s", type)
