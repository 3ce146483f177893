"""Knowledge-base mirror: the platform file store seen as one KB's document set."""

from __future__ import annotations

import asyncio
import logging
import mimetypes
from typing import TYPE_CHECKING

from botbridge.exceptions import RemoteError

if TYPE_CHECKING:
    from botbridge.platform.client import PlatformClient, PlatformFile

logger = logging.getLogger(__name__)

KB_SOURCE_TAG = "knowledge-base"


def guess_content_type(path: str) -> str:
    content_type, _ = mimetypes.guess_type(path)
    return content_type or "application/octet-stream"


async def _delete_files(platform: PlatformClient, files: list[PlatformFile], scope: str) -> None:
    """Delete files concurrently; raise once every deletion has settled if any failed."""
    results = await asyncio.gather(
        *(platform.delete_file(f.id) for f in files),
        return_exceptions=True,
    )
    failed: list[str] = []
    for file, result in zip(files, results, strict=True):
        if isinstance(result, BaseException):
            if not isinstance(result, Exception):
                raise result
            logger.error("Failed to delete %s (%s) from %s: %s", file.key, file.id, scope, result)
            failed.append(file.key)
    if failed:
        msg = f"{len(failed)} of {len(files)} deletions failed in {scope}: {', '.join(failed)}"
        raise RemoteError(msg)


async def delete_source_everywhere(platform: PlatformClient, source_id: str) -> int:
    """Remove every mirrored copy of a source item, whichever KB holds it.

    Returns the number of files removed; zero is not an error.
    """
    files = await platform.list_files({"spId": source_id})
    if not files:
        logger.debug("spId=%s not found in any KB", source_id)
        return 0
    await _delete_files(platform, files, f"spId={source_id}")
    for file in files:
        logger.info("Deleted %s (spId=%s)", file.key, source_id)
    return len(files)


class KnowledgeBaseMirror:
    """Mirrored files of one knowledge base, keyed by SharePoint item id.

    Keys are ``<kbId>/<relative path>`` so the same document can live in
    several KBs. Updates delete then re-add, keeping at most one file per
    (kbId, spId).
    """

    def __init__(self, platform: PlatformClient, kb_id: str) -> None:
        self._platform = platform
        self.kb_id = kb_id

    def build_key(self, relative_path: str) -> str:
        return f"{self.kb_id}/{relative_path}"

    async def find_by_source_id(self, source_id: str) -> PlatformFile | None:
        files = await self._platform.list_files({"spId": source_id, "kbId": self.kb_id})
        if not files:
            return None
        if len(files) > 1:
            logger.warning(
                "Found %d files for spId=%s in KB %s; using %s",
                len(files),
                source_id,
                self.kb_id,
                files[0].key,
            )
        return files[0]

    async def add_file(self, source_id: str, relative_path: str, content: bytes) -> None:
        key = self.build_key(relative_path)
        logger.info("Add → %s", key)
        await self._platform.upload_file(
            key,
            content,
            guess_content_type(relative_path),
            {"source": KB_SOURCE_TAG, "kbId": self.kb_id, "spId": source_id},
            index=True,
        )

    async def update_file(self, source_id: str, relative_path: str, content: bytes) -> None:
        """Replace the mirrored copy; a missing copy makes this a plain add."""
        logger.info("Update → %s", self.build_key(relative_path))
        existing = await self.find_by_source_id(source_id)
        if existing is not None:
            await self._platform.delete_file(existing.id)
        await self.add_file(source_id, relative_path, content)

    async def delete_file(self, source_id: str) -> None:
        existing = await self.find_by_source_id(source_id)
        if existing is None:
            logger.info("Delete skipped: no file with spId=%s in KB %s", source_id, self.kb_id)
            return
        logger.info("Delete → %s (spId=%s)", existing.key, source_id)
        await self._platform.delete_file(existing.id)

    async def delete_all_files(self) -> None:
        """Remove every file tagged with this KB.

        Deletions run concurrently. Every failure is logged and a RemoteError
        listing them is raised after all deletions have settled.
        """
        files = await self._platform.list_files({"kbId": self.kb_id})
        logger.info("Delete ALL %d files in KB %s", len(files), self.kb_id)
        if files:
            await _delete_files(self._platform, files, f"KB {self.kb_id}")
