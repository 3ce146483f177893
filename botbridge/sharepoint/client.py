"""SharePoint document library client.

Site and library discovery go through Microsoft Graph; item listing, path
resolution, downloads, the change log and webhook subscriptions go through
the SharePoint REST API of the configured site.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import IntEnum
from typing import TYPE_CHECKING, Any
from urllib.parse import unquote

from botbridge.exceptions import ConfigurationError, IntegrationError, NotFoundError, RemoteError
from botbridge.remote import HttpAdapter
from botbridge.services.datetime_service import expiry_in, format_iso
from botbridge.sharepoint.auth import GRAPH_SCOPE, CertificateCredential, sharepoint_host

if TYPE_CHECKING:
    import httpx

    from botbridge.config import Settings

logger = logging.getLogger(__name__)

GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"

# SharePoint caps webhook subscriptions at 180 days.
WEBHOOK_EXPIRY_DAYS = 180

_FILE_OBJECT_TYPE = 0


class ChangeType(IntEnum):
    """SharePoint change types this connector reacts to."""

    ADD = 1
    UPDATE = 2
    DELETE = 3


@dataclass(frozen=True)
class Library:
    id: str
    name: str
    web_url: str


@dataclass(frozen=True)
class ListItem:
    """An entry of a document library (file or folder)."""

    id: str
    file_system_object_type: int

    @property
    def is_file(self) -> bool:
        return self.file_system_object_type == _FILE_OBJECT_TYPE


@dataclass(frozen=True)
class ChangeRecord:
    """One entry of a library's change log.

    ``change_type`` keeps the raw SharePoint value so types other than
    :class:`ChangeType` can be recognised and skipped.
    """

    change_type: int
    item_id: str
    token: str


def _odata_literal(value: str) -> str:
    """Quote a string for use inside an OData function call."""
    return "'" + value.replace("'", "''") + "'"


class SharepointClient(HttpAdapter):
    """Client bound to one site and one document library."""

    def __init__(
        self,
        primary_domain: str,
        site_name: str,
        library: str,
        credential: CertificateCredential,
        *,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ) -> None:
        super().__init__(http_client=http_client, timeout=timeout)
        self.host = sharepoint_host(primary_domain)
        self.site_name = site_name
        self.library = library
        self._credential = credential
        self._site_id: str | None = None

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        library: str,
        *,
        credential: CertificateCredential | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> SharepointClient:
        if not settings.sharepoint_primary_domain or not settings.sharepoint_site_name:
            msg = "SHAREPOINT_PRIMARY_DOMAIN and SHAREPOINT_SITE_NAME must be configured"
            raise ConfigurationError(msg)
        return cls(
            settings.sharepoint_primary_domain,
            settings.sharepoint_site_name,
            library,
            credential or CertificateCredential.from_settings(settings),
            http_client=http_client,
            timeout=settings.http_timeout_seconds,
        )

    @property
    def site_url(self) -> str:
        return f"https://{self.host}/sites/{self.site_name}"

    @property
    def _list_url(self) -> str:
        return f"{self.site_url}/_api/web/lists/getbytitle({_odata_literal(self.library)})"

    async def _graph(self, method: str, path: str, action: str, **kwargs: Any) -> httpx.Response:
        token = await self._credential.get_token(GRAPH_SCOPE)
        headers = {"Authorization": f"Bearer {token}", "Accept": "application/json"}
        return await self._send(
            method, f"{GRAPH_BASE_URL}{path}", action=action, headers=headers, **kwargs
        )

    async def _rest(self, method: str, url: str, action: str, **kwargs: Any) -> httpx.Response:
        token = await self._credential.get_token(f"https://{self.host}/.default")
        headers = {
            "Authorization": f"Bearer {token}",
            "Accept": "application/json;odata=nometadata",
        }
        if "json" in kwargs:
            headers["Content-Type"] = "application/json;odata=nometadata"
        return await self._send(method, url, action=action, headers=headers, **kwargs)

    # ── Site and libraries ───────────────────────────

    async def resolve_site(self) -> str:
        """Return the Graph site id, resolving it on first use.

        The first successful resolution is kept for the lifetime of the client.
        """
        if self._site_id is not None:
            return self._site_id

        path = f"/sites/{self.host}:/sites/{self.site_name}"
        try:
            response = await self._graph("GET", path, f"Resolve site {self.site_name}")
        except RemoteError as exc:
            msg = f"Cannot resolve SharePoint site {self.host}/sites/{self.site_name}: {exc.body}"
            raise ConfigurationError(msg) from exc

        site_id = response.json().get("id")
        if not site_id:
            msg = f"Site lookup for {self.site_name} returned no id: {response.text}"
            raise ConfigurationError(msg)
        if self._site_id is None:
            self._site_id = str(site_id)
        return self._site_id

    async def list_libraries(self) -> list[Library]:
        site_id = await self.resolve_site()
        response = await self._graph("GET", f"/sites/{site_id}/drives", "List libraries")
        return [
            Library(id=str(d["id"]), name=str(d.get("name", "")), web_url=str(d.get("webUrl", "")))
            for d in response.json().get("value", [])
        ]

    # ── Items ────────────────────────────────────────

    async def list_items(self) -> list[ListItem]:
        """List every file and folder of the library."""
        items: list[ListItem] = []
        url: str | None = f"{self._list_url}/items"
        params: dict[str, str] | None = {"$select": "Id,FileSystemObjectType", "$top": "5000"}
        while url:
            response = await self._rest("GET", url, f"List items of {self.library}", params=params)
            data = response.json()
            items.extend(
                ListItem(
                    id=str(raw["Id"]),
                    file_system_object_type=int(raw["FileSystemObjectType"]),
                )
                for raw in data.get("value", [])
            )
            url = data.get("odata.nextLink")
            # The next link already carries the query.
            params = None
        return items

    async def get_file_name(self, item_id: str) -> str | None:
        """Return the server-relative path of an item.

        Returns None when the item no longer exists (HTTP 404). Any other
        failure raises RemoteError so transient errors are not mistaken for
        deletions.
        """
        try:
            response = await self._rest(
                "GET",
                f"{self._list_url}/items({item_id})",
                f"Resolve item {item_id}",
                params={"$select": "FileRef"},
            )
        except NotFoundError:
            logger.debug("Item %s no longer exists in %s", item_id, self.library)
            return None
        file_ref = response.json().get("FileRef")
        return str(file_ref) if file_ref else None

    async def download_file(self, path: str) -> bytes:
        """Download a file by server-relative path.

        Raises NotFoundError on 404 and RemoteError for any other failure.
        """
        response = await self._rest(
            "GET",
            f"{self.site_url}/_api/web/GetFileByServerRelativePath(decodedurl=@p)/$value",
            f"Download {path}",
            params={"@p": _odata_literal(unquote(path))},
        )
        return response.content

    # ── Change log ───────────────────────────────────

    async def get_changes(self, since_token: str) -> list[ChangeRecord]:
        """Return item changes strictly after ``since_token``, oldest first."""
        query = {
            "query": {
                "Add": True,
                "Update": True,
                "DeleteObject": True,
                "Item": True,
                "ChangeTokenStart": {"StringValue": since_token},
            }
        }
        response = await self._rest(
            "POST", f"{self._list_url}/GetChanges", f"Get changes of {self.library}", json=query
        )
        return [
            ChangeRecord(
                change_type=int(raw["ChangeType"]),
                item_id=str(raw.get("ItemId", "")),
                token=str(raw["ChangeToken"]["StringValue"]),
            )
            for raw in response.json().get("value", [])
        ]

    async def get_latest_change_token(self) -> str | None:
        """Return the library's current change token."""
        response = await self._rest(
            "GET",
            self._list_url,
            f"Read change token of {self.library}",
            params={"$select": "CurrentChangeToken"},
        )
        token = (response.json().get("CurrentChangeToken") or {}).get("StringValue")
        return str(token) if token else None

    # ── Webhooks ─────────────────────────────────────

    async def register_webhook(self, callback_url: str) -> str:
        """Subscribe ``callback_url`` to change notifications of the library."""
        response = await self._rest(
            "POST",
            f"{self._list_url}/subscriptions",
            f"Register webhook for {self.library}",
            json={
                "resource": self._list_url,
                "notificationUrl": callback_url,
                "expirationDateTime": format_iso(expiry_in(WEBHOOK_EXPIRY_DAYS)),
            },
        )
        subscription_id = response.json().get("id")
        if not subscription_id:
            msg = f"Webhook registration for {self.library} returned no id: {response.text}"
            raise RemoteError(msg, status_code=response.status_code, body=response.text)
        logger.info("Registered webhook %s for %s", subscription_id, self.library)
        return str(subscription_id)

    async def unregister_webhook(self, subscription_id: str) -> None:
        """Remove a webhook subscription. Failures are logged, never raised."""
        try:
            await self._rest(
                "DELETE",
                f"{self._list_url}/subscriptions({_odata_literal(subscription_id)})",
                f"Delete webhook {subscription_id}",
            )
        except IntegrationError as exc:
            logger.warning("Could not delete webhook %s: %s", subscription_id, exc)
            return
        logger.info("Deleted webhook %s for %s", subscription_id, self.library)

    # ── Arbitrary files (Excel import) ───────────────

    async def get_file_content_by_url(self, file_url: str) -> bytes:
        """Download ``/<library>/<path>`` from the site through Graph drives."""
        parts = [part for part in file_url.strip().lstrip("/").split("/") if part]
        if len(parts) < 2:
            msg = f"Invalid file path {file_url!r}. Expected /<documentLibrary>/<filePath>"
            raise ValueError(msg)
        library_name, file_path = parts[0], "/" + "/".join(parts[1:])

        libraries = await self.list_libraries()
        wanted = {library_name.lower(), unquote(library_name).lower()}
        drive = next((lib for lib in libraries if lib.name.lower() in wanted), None)
        if drive is None:
            available = ", ".join(lib.name for lib in libraries)
            logger.warning("Library %s not found; available: %s", library_name, available)
            msg = f'Document library "{library_name}" not found. Available libraries: {available}'
            raise NotFoundError(msg, status_code=404)

        site_id = await self.resolve_site()
        response = await self._graph(
            "GET",
            f"/sites/{site_id}/drives/{drive.id}/root:{file_path}:/content",
            f"Fetch {file_url}",
            follow_redirects=True,
        )
        return response.content
