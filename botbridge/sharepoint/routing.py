"""Path normalization and folder → knowledge-base routing."""

from __future__ import annotations

import re
from posixpath import splitext
from typing import TYPE_CHECKING
from urllib.parse import unquote

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

_SITE_PREFIX = re.compile(r"^/sites/[^/]+/")

SUPPORTED_FILE_EXTENSIONS = (".txt", ".html", ".pdf", ".doc", ".docx")


def normalize_path(server_relative_path: str) -> str:
    """Strip the ``/sites/<site>/`` prefix and URL-decode the remainder.

    ``/sites/Team/Shared%20Documents/HR/a.docx`` → ``Shared Documents/HR/a.docx``
    """
    return unquote(_SITE_PREFIX.sub("", server_relative_path, count=1))


def is_supported(path: str) -> bool:
    """Return True when the file extension is one the knowledge base indexes."""
    return splitext(path)[1].lower() in SUPPORTED_FILE_EXTENSIONS


def _segments(path: str) -> list[str]:
    return [part.casefold() for part in path.strip("/").split("/") if part]


class KbRouter:
    """Decides which knowledge bases a document is mirrored into.

    ``routes`` maps a kbId to folder prefixes. A prefix matches whole path
    segments, case-insensitively, either from the start of the normalized path
    or from just below the library's root folder, so both ``HR`` and
    ``Shared Documents/HR`` route ``Shared Documents/HR/policy.docx``. A blank
    prefix matches every document. The default KB only receives documents
    that no prefix matched.
    """

    def __init__(
        self,
        routes: Mapping[str, Sequence[str]] | None = None,
        default_kb_id: str | None = None,
    ) -> None:
        self._routes = [
            (kb_id, [_segments(prefix) for prefix in prefixes])
            for kb_id, prefixes in (routes or {}).items()
        ]
        self.default_kb_id = default_kb_id or None

    @property
    def kb_ids(self) -> list[str]:
        """Every KB this router can send documents to."""
        ids = [kb_id for kb_id, _ in self._routes]
        if self.default_kb_id and self.default_kb_id not in ids:
            ids.append(self.default_kb_id)
        return ids

    def kb_ids_for(self, relative_path: str) -> list[str]:
        """Return the KBs ``relative_path`` routes to, in configuration order.

        An empty list means the document is not mirrored anywhere.
        """
        segments = _segments(relative_path)
        candidates = [segments, segments[1:]]

        matched: list[str] = []
        for kb_id, prefixes in self._routes:
            if kb_id in matched:
                continue
            if any(
                candidate[: len(prefix)] == prefix
                for prefix in prefixes
                for candidate in candidates
            ):
                matched.append(kb_id)

        if not matched and self.default_kb_id:
            matched.append(self.default_kb_id)
        return matched
