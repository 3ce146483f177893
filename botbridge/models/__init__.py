"""SQLAlchemy ORM models for Botbridge."""

from botbridge.models.base import Base
from botbridge.models.state import IntegrationState

__all__ = [
    "Base",
    "IntegrationState",
]
