"""Integration state persistence.

Each connector keeps small JSON documents (change tokens, channel info,
vendor credentials) addressed by ``(integration, name, scope_id)``. Secret
documents are encrypted with the application secret before they are stored.
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any

from sqlalchemy import select

from botbridge.exceptions import InternalServerError
from botbridge.models.state import IntegrationState
from botbridge.services.crypto_service import decrypt_payload, encrypt_payload
from botbridge.services.datetime_service import format_iso, now_utc

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = logging.getLogger(__name__)


async def _find(
    session: AsyncSession, integration: str, name: str, scope_id: str
) -> IntegrationState | None:
    stmt = select(IntegrationState).where(
        IntegrationState.integration == integration,
        IntegrationState.name == name,
        IntegrationState.scope_id == scope_id,
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


def _decode(row: IntegrationState, secret_key: str | None) -> dict[str, Any]:
    if row.encrypted:
        if secret_key is None:
            msg = f"State {row.integration}/{row.name} is encrypted but no key was given"
            raise InternalServerError(msg)
        try:
            return decrypt_payload(row.payload, secret_key)
        except ValueError as exc:
            msg = f"Cannot decrypt state {row.integration}/{row.name}/{row.scope_id}"
            raise InternalServerError(msg) from exc
    try:
        data = json.loads(row.payload)
    except json.JSONDecodeError as exc:
        msg = f"Corrupted state {row.integration}/{row.name}/{row.scope_id}"
        raise InternalServerError(msg) from exc
    if not isinstance(data, dict):
        msg = f"State {row.integration}/{row.name}/{row.scope_id} is not an object"
        raise InternalServerError(msg)
    return data


async def get_state(
    session: AsyncSession,
    integration: str,
    name: str,
    scope_id: str,
    *,
    secret_key: str | None = None,
) -> dict[str, Any] | None:
    """Return a stored state payload, or None if it was never written."""
    row = await _find(session, integration, name, scope_id)
    if row is None:
        return None
    return _decode(row, secret_key)


async def set_state(
    session: AsyncSession,
    integration: str,
    name: str,
    scope_id: str,
    payload: dict[str, Any],
    *,
    secret_key: str | None = None,
) -> None:
    """Create or overwrite a state payload and commit.

    When ``secret_key`` is given the payload is stored encrypted.
    """
    if secret_key is not None:
        serialized = encrypt_payload(payload, secret_key)
    else:
        serialized = json.dumps(payload, sort_keys=True)

    row = await _find(session, integration, name, scope_id)
    timestamp = format_iso(now_utc())
    if row is None:
        row = IntegrationState(
            integration=integration,
            name=name,
            scope_id=scope_id,
            payload=serialized,
            encrypted=secret_key is not None,
            updated_at=timestamp,
        )
        session.add(row)
    else:
        row.payload = serialized
        row.encrypted = secret_key is not None
        row.updated_at = timestamp
    await session.commit()
    logger.debug("Stored state %s/%s/%s", integration, name, scope_id)


async def delete_state(session: AsyncSession, integration: str, name: str, scope_id: str) -> bool:
    """Delete a state payload. Returns False when nothing was stored."""
    row = await _find(session, integration, name, scope_id)
    if row is None:
        return False
    await session.delete(row)
    await session.commit()
    return True


class StateStore:
    """State access for long-lived adapters that do not own a DB session.

    Every call opens a short session from the factory, so adapters can be
    shared between requests.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        integration: str,
        secret_key: str,
    ) -> None:
        self._session_factory = session_factory
        self.integration = integration
        self._secret_key = secret_key

    async def get(self, name: str, scope_id: str) -> dict[str, Any] | None:
        async with self._session_factory() as session:
            return await get_state(session, self.integration, name, scope_id)

    async def set(self, name: str, scope_id: str, payload: dict[str, Any]) -> None:
        async with self._session_factory() as session:
            await set_state(session, self.integration, name, scope_id, payload)

    async def get_secret(self, name: str, scope_id: str) -> dict[str, Any] | None:
        async with self._session_factory() as session:
            return await get_state(
                session, self.integration, name, scope_id, secret_key=self._secret_key
            )

    async def set_secret(self, name: str, scope_id: str, payload: dict[str, Any]) -> None:
        async with self._session_factory() as session:
            await set_state(
                session, self.integration, name, scope_id, payload, secret_key=self._secret_key
            )

    async def delete(self, name: str, scope_id: str) -> bool:
        async with self._session_factory() as session:
            return await delete_state(session, self.integration, name, scope_id)

    def for_integration(self, integration: str) -> StateStore:
        """Return a store sharing this factory and key for another integration."""
        return StateStore(self._session_factory, integration, self._secret_key)
