"""Shared helpers for turning upstream HTTP responses into connector errors."""

from __future__ import annotations

import json
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

import httpx

from botbridge.exceptions import NotFoundError, RemoteError

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

_MAX_BODY_CHARS = 500


def upstream_message(response: httpx.Response) -> str:
    """Extract the most specific error message from an upstream response body.

    Understands the OData (``{"error": {"message": ...}}`` or
    ``{"odata.error": {"message": {"value": ...}}}``), HubSpot and Brevo
    (``{"message": ...}``) shapes; anything else yields the raw body.
    """
    text = response.text
    try:
        data: Any = json.loads(text) if text else None
    except json.JSONDecodeError:
        return text[:_MAX_BODY_CHARS]

    if isinstance(data, dict):
        error = data.get("error") or data.get("odata.error")
        if isinstance(error, dict):
            message = error.get("message")
            if isinstance(message, dict):
                message = message.get("value")
            if message:
                return str(message)
        elif isinstance(error, str) and error:
            return error
        for key in ("message", "error_description", "detail"):
            if data.get(key):
                return str(data[key])
    return text[:_MAX_BODY_CHARS]


def check_response(response: httpx.Response, action: str) -> httpx.Response:
    """Return the response when it succeeded, otherwise raise.

    A 404 raises :class:`NotFoundError`; every other non-2xx status raises
    :class:`RemoteError` carrying the status and upstream message.
    """
    if response.is_success:
        return response
    message = upstream_message(response)
    detail = f"{action} failed ({response.status_code}): {message}"
    if response.status_code == 404:
        raise NotFoundError(detail, status_code=404, body=response.text)
    raise RemoteError(detail, status_code=response.status_code, body=response.text)


class HttpAdapter:
    """Base for upstream API adapters.

    An injected ``httpx.AsyncClient`` is reused for every call (tests pass one
    built on ``httpx.MockTransport``); otherwise a short-lived client is opened
    per request.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ) -> None:
        self._http_client = http_client
        self._timeout = timeout

    @asynccontextmanager
    async def _client(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._http_client is not None:
            yield self._http_client
            return
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            yield client

    async def _send(self, method: str, url: str, *, action: str, **kwargs: Any) -> httpx.Response:
        """Issue a request and raise a connector error unless it succeeded."""
        async with self._client() as client:
            try:
                response = await client.request(method, url, **kwargs)
            except httpx.HTTPError as exc:
                msg = f"{action} failed: {exc}"
                raise RemoteError(msg) from exc
        return check_response(response, action)
