"""SharePoint library → knowledge-base synchronization.

A library is mirrored in two ways:

* a full load at registration (or operator resync) that rebuilds every KB the
  library routes documents into, returning the change token captured right
  after the library was listed;
* incremental passes, one per webhook delivery, that replay the library's
  change log since the stored token and return the token to store next.

A full load fails as a whole on any upstream error. An incremental pass
applies records strictly in feed order and isolates failures per record:
a failed record is logged and skipped, and the returned token still moves
past it.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from botbridge.exceptions import NotFoundError, RemoteError
from botbridge.sharepoint.client import ChangeType
from botbridge.sharepoint.kb import KnowledgeBaseMirror, delete_source_everywhere
from botbridge.sharepoint.routing import is_supported, normalize_path

if TYPE_CHECKING:
    from botbridge.platform.client import PlatformClient
    from botbridge.sharepoint.client import ChangeRecord, SharepointClient
    from botbridge.sharepoint.routing import KbRouter

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RoutedDocument:
    """A supported library document and the KBs it is mirrored into."""

    source_id: str
    server_path: str
    relative_path: str
    kb_ids: list[str]


class SharepointSync:
    """Keeps the KBs fed by one document library in step with it."""

    def __init__(
        self,
        client: SharepointClient,
        platform: PlatformClient,
        router: KbRouter,
    ) -> None:
        self._client = client
        self._platform = platform
        self._router = router
        self._mirrors: dict[str, KnowledgeBaseMirror] = {}

    def mirror(self, kb_id: str) -> KnowledgeBaseMirror:
        if kb_id not in self._mirrors:
            self._mirrors[kb_id] = KnowledgeBaseMirror(self._platform, kb_id)
        return self._mirrors[kb_id]

    def route(self, source_id: str, server_path: str | None) -> RoutedDocument | None:
        """Return where a document goes, or None when it is not mirrored.

        Unresolvable paths, unsupported extensions and documents matching no
        KB are all skipped silently.
        """
        if not server_path or not is_supported(server_path):
            return None
        relative_path = normalize_path(server_path)
        kb_ids = self._router.kb_ids_for(relative_path)
        if not kb_ids:
            return None
        return RoutedDocument(source_id, server_path, relative_path, kb_ids)

    # ── Full load ────────────────────────────────────

    async def load_all_documents(self) -> str:
        """Rebuild every KB fed by this library and return the starting token.

        Only KBs that receive at least one document are cleared. Downloads and
        uploads run concurrently. A document that disappears before it is
        downloaded is skipped; any other failure aborts the load.
        """
        library = self._client.library
        items = await self._client.list_items()
        token = await self._client.get_latest_change_token()
        if not token:
            msg = f"({library}) Cannot obtain initial change token"
            raise RemoteError(msg)

        docs = [item for item in items if item.is_file]
        paths = await asyncio.gather(*(self._client.get_file_name(doc.id) for doc in docs))
        routed = [
            document
            for doc, path in zip(docs, paths, strict=True)
            if (document := self.route(doc.id, path)) is not None
        ]
        logger.info(
            "(%s) Full load: %d items, %d files, %d to mirror",
            library,
            len(items),
            len(docs),
            len(routed),
        )

        kb_ids_to_clear = list(dict.fromkeys(kb for doc in routed for kb in doc.kb_ids))
        await asyncio.gather(*(self.mirror(kb_id).delete_all_files() for kb_id in kb_ids_to_clear))
        await asyncio.gather(*(self._load_document(doc) for doc in routed))
        return token

    async def _load_document(self, doc: RoutedDocument) -> None:
        try:
            content = await self._client.download_file(doc.server_path)
        except NotFoundError:
            logger.warning("Skipping %s: deleted before it could be downloaded", doc.server_path)
            return
        await asyncio.gather(
            *(
                self.mirror(kb_id).add_file(doc.source_id, doc.relative_path, content)
                for kb_id in doc.kb_ids
            )
        )

    # ── Incremental pass ─────────────────────────────

    async def sync_changes(self, old_token: str) -> str:
        """Apply the change log since ``old_token`` and return the next token.

        Returns ``old_token`` unchanged when there is nothing new.
        """
        changes = await self._client.get_changes(old_token)
        if not changes:
            return old_token

        for change in changes:
            logger.debug(
                "(%s) ChangeType=%s ItemId=%s",
                self._client.library,
                change.change_type,
                change.item_id,
            )
            try:
                await self._apply(change)
            except Exception:
                logger.exception(
                    "(%s) Failed to apply change %s for item %s; moving on",
                    self._client.library,
                    change.change_type,
                    change.item_id,
                )
        return changes[-1].token

    async def _apply(self, change: ChangeRecord) -> None:
        if change.change_type == ChangeType.DELETE:
            await delete_source_everywhere(self._platform, change.item_id)
            return
        if change.change_type not in (ChangeType.ADD, ChangeType.UPDATE):
            logger.debug("Ignoring change type %s for item %s", change.change_type, change.item_id)
            return

        path = await self._client.get_file_name(change.item_id)
        doc = self.route(change.item_id, path)
        if doc is None:
            return

        content = await self._client.download_file(doc.server_path)
        for kb_id in doc.kb_ids:
            mirror = self.mirror(kb_id)
            if change.change_type == ChangeType.ADD:
                await mirror.add_file(doc.source_id, doc.relative_path, content)
            else:
                await mirror.update_file(doc.source_id, doc.relative_path, content)
