"""Conversation ownership as an explicit variant.

Stored metadata keeps the wire-compatible ``status`` / ``handledBy`` string
pair. Everything inside the package works with :data:`Handoff` instead, so
``human-handled`` owned by the AI sentinel cannot be constructed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping, Union

from .models import ConversationStatus

logger = logging.getLogger(__name__)

AI_AGENT_ID = "ai-agent"


@dataclass(frozen=True)
class AiHandled:
    pass


@dataclass(frozen=True)
class HumanHandled:
    agent_id: str

    def __post_init__(self) -> None:
        if not self.agent_id or self.agent_id == AI_AGENT_ID:
            raise ValueError("human-handled conversations need a human agent id")


@dataclass(frozen=True)
class Closed:
    handled_by: str = AI_AGENT_ID


Handoff = Union[AiHandled, HumanHandled, Closed]


def handoff_status(handoff: Handoff) -> ConversationStatus:
    if isinstance(handoff, AiHandled):
        return "ai-handled"
    if isinstance(handoff, HumanHandled):
        return "human-handled"
    if isinstance(handoff, Closed):
        return "closed"
    raise TypeError(f"unknown handoff state: {handoff!r}")


def handled_by(handoff: Handoff) -> str:
    if isinstance(handoff, AiHandled):
        return AI_AGENT_ID
    if isinstance(handoff, HumanHandled):
        return handoff.agent_id
    if isinstance(handoff, Closed):
        return handoff.handled_by
    raise TypeError(f"unknown handoff state: {handoff!r}")


def handoff_fields(handoff: Handoff) -> dict[str, str]:
    return {"status": handoff_status(handoff), "handledBy": handled_by(handoff)}


def parse_handoff(metadata: Mapping[str, Any]) -> Handoff:
    status = metadata.get("status") or "ai-handled"
    owner = metadata.get("handledBy") or AI_AGENT_ID
    if status == "human-handled":
        if owner == AI_AGENT_ID:
            logger.warning("metadata claims human-handled but is owned by %s; treating as ai-handled", owner)
            return AiHandled()
        return HumanHandled(agent_id=owner)
    if status == "closed":
        return Closed(handled_by=owner)
    if status != "ai-handled":
        logger.warning("unknown conversation status %r; treating as ai-handled", status)
    return AiHandled()


def transition(
    current: Handoff,
    *,
    status: ConversationStatus,
    agent_id: str | None,
) -> Handoff:
    """Resolve a requested status change against the current owner."""
    if status == "ai-handled":
        return AiHandled()
    if status == "human-handled":
        if agent_id:
            return HumanHandled(agent_id=agent_id)
        if isinstance(current, HumanHandled):
            return current
        raise ValueError("agentId is required to hand a conversation to a human")
    if status == "closed":
        return Closed(handled_by=agent_id or handled_by(current))
    raise ValueError(f"unsupported status: {status}")
