"""Platform side effects shared by every handoff provider.

Vendor conversations are mirrored as platform conversations on the ``hitl``
channel tagged with the vendor's conversation id; agents are platform users
tagged with their vendor id.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from botbridge.platform.client import PlatformClient, PlatformConversation

logger = logging.getLogger(__name__)

HITL_CHANNEL = "hitl"


async def hitl_conversation(
    platform: PlatformClient, vendor_conversation_id: str, **tags: str
) -> PlatformConversation:
    """Return the platform conversation mirroring a vendor conversation."""
    return await platform.get_or_create_conversation(
        HITL_CHANNEL, {"id": vendor_conversation_id, **tags}
    )


async def emit_started(
    platform: PlatformClient,
    conversation_id: str,
    user_id: str,
    title: str | None,
    description: str | None,
) -> None:
    await platform.create_event(
        "hitlStarted",
        {
            "conversationId": conversation_id,
            "userId": user_id,
            "title": title or "Untitled ticket",
            "description": description or "",
        },
        conversation_id=conversation_id,
    )


async def emit_assigned(platform: PlatformClient, conversation_id: str, agent_user_id: str) -> None:
    logger.info("Agent %s assigned to conversation %s", agent_user_id, conversation_id)
    await platform.create_event(
        "hitlAssigned",
        {"conversationId": conversation_id, "userId": agent_user_id},
        conversation_id=conversation_id,
    )


async def emit_stopped(platform: PlatformClient, conversation_id: str) -> None:
    logger.info("Handoff session %s stopped", conversation_id)
    await platform.create_event(
        "hitlStopped",
        {"conversationId": conversation_id},
        conversation_id=conversation_id,
    )


async def post_agent_message(
    platform: PlatformClient,
    conversation_id: str,
    agent_tag: str,
    text: str,
    *,
    agent_name: str | None = None,
) -> None:
    """Relay an agent's text reply into the platform conversation."""
    agent = await platform.get_or_create_user({"id": agent_tag}, name=agent_name)
    await platform.create_message(conversation_id, agent.id, {"text": text})
