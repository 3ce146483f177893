"""Health check endpoint."""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy import func, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from botbridge.api.deps import get_session, get_settings
from botbridge.config import Settings
from botbridge.models import IntegrationState
from botbridge.services.sharepoint_service import INTEGRATION, STATE_NAME

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    status: str
    version: str
    database: str
    state_store: str
    stored_states: int | None = None
    sharepoint_registered: bool | None = None


@router.get("/api/health", response_model=HealthResponse)
async def health_check(
    session: Annotated[AsyncSession, Depends(get_session)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> HealthResponse:
    """Health check endpoint for monitoring and load balancers.

    Besides the database connection, reports whether the integration state
    table is readable and whether SharePoint sync is registered.
    """
    db_status = "ok"
    try:
        await session.execute(text("SELECT 1"))
    except SQLAlchemyError:
        logger.warning("Health check database query failed", exc_info=True)
        db_status = "error"

    state_status = "error"
    stored_states: int | None = None
    sharepoint_registered: bool | None = None
    if db_status == "ok":
        try:
            stored_states = await session.scalar(
                select(func.count()).select_from(IntegrationState)
            )
            sharepoint_id = await session.scalar(
                select(IntegrationState.id).where(
                    IntegrationState.integration == INTEGRATION,
                    IntegrationState.name == STATE_NAME,
                    IntegrationState.scope_id == settings.state_scope_id,
                )
            )
        except SQLAlchemyError:
            logger.warning("Health check state table query failed", exc_info=True)
        else:
            state_status = "ok"
            sharepoint_registered = sharepoint_id is not None

    return HealthResponse(
        status="ok" if db_status == state_status == "ok" else "degraded",
        version="0.1.0",
        database=db_status,
        state_store=state_status,
        stored_states=stored_states,
        sharepoint_registered=sharepoint_registered,
    )
