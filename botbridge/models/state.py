"""Persisted integration state."""

from __future__ import annotations

from sqlalchemy import Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from botbridge.models.base import Base


class IntegrationState(Base):
    """One named JSON document owned by an integration.

    ``scope_id`` distinguishes instances of the same state: the integration
    id for integration-wide state, a user id or conversation id otherwise.
    """

    __tablename__ = "integration_states"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    integration: Mapped[str] = mapped_column(String, nullable=False)
    name: Mapped[str] = mapped_column(String, nullable=False)
    scope_id: Mapped[str] = mapped_column(String, nullable=False)
    payload: Mapped[str] = mapped_column(Text, nullable=False)
    encrypted: Mapped[bool] = mapped_column(default=False, nullable=False)
    updated_at: Mapped[str] = mapped_column(Text, nullable=False)

    __table_args__ = (UniqueConstraint("integration", "name", "scope_id"),)
