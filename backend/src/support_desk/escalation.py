"""Heuristic escalation rules for customer conversations.

``detect_escalation`` is pure: it only looks at a transcript and returns at
most one decision. Creating the notification and e-mailing staff happens in
:class:`EscalationRaiser` so the rules can be exercised against fixed
transcripts.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Sequence

from .conversations import ConversationStore
from .email_alerts import StaffAlerter
from .mailbox import NotificationMailbox
from .models import NOTIFICATION_HELP_NEEDED, NOTIFICATION_ORDER_CONFIRMED, Message, Notification

logger = logging.getLogger(__name__)

DIRECT_HELP_PHRASES = (
    "help me",
    "aidez-moi",
    "besoin d'aide",
    "need help",
    "s'il vous plaît",
    "please help",
    "pouvez-vous m'aider",
    "can you help",
    "j'ai besoin",
    "i need",
)

HELP_PHRASES = (
    "help",
    "aide",
    "besoin",
    "need",
    "assist",
    "support",
    "question",
    "problème",
    "problem",
    "urgent",
    "important",
    "comment",
    "how",
    "pourquoi",
    "why",
    "quand",
    "when",
    "où",
    "where",
    "qui",
    "who",
    "aidez",
    "help me",
    "s'il vous plaît",
    "please",
    "merci",
    "thanks",
    "pouvez-vous",
    "can you",
    "pourriez-vous",
    "could you",
    "je ne comprends pas",
    "i don't understand",
    "expliquer",
    "explain",
    "clarifier",
    "clarify",
)

ORDER_PHRASES = (
    "commander",
    "commande",
    "acheter",
    "order",
    "buy",
    "j'aimerais",
    "je voudrais",
    "i would like",
    "i want",
    "menu",
    "prix",
    "price",
    "coût",
    "cost",
    "livraison",
    "delivery",
    "emporter",
    "takeout",
)

UNCERTAINTY_PHRASES = (
    "je ne comprends pas",
    "je ne peux pas",
    "je ne suis pas sûr",
    "je ne sais pas",
    "je n'ai pas cette information",
    "i don't understand",
    "i can't",
    "i'm not sure",
    "i don't know",
    "i don't have that information",
    "désolé",
    "sorry",
    "malheureusement",
    "unfortunately",
)

CONFIRMATION_PHRASES = ("commande", "confirmé", "order", "confirmed")


@dataclass(frozen=True)
class EscalationDecision:
    rule: str
    type: str
    title: str
    body: str
    user_id: str
    urgent: bool | None
    last_message: str
    ai_response: str | None = None

    def extra(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"lastMessage": self.last_message}
        if self.urgent is not None:
            payload["urgent"] = self.urgent
        if self.ai_response is not None:
            payload["aiResponse"] = self.ai_response
        return payload


def _excerpt(text: str, limit: int = 50) -> str:
    return text[:limit] + ("..." if len(text) > limit else "")


def _matches(text: str, phrases: Sequence[str]) -> list[str]:
    return [phrase for phrase in phrases if phrase in text]


def detect_escalation(user_id: str, transcript: Sequence[Message]) -> EscalationDecision | None:
    """Apply the escalation rules to a stored transcript.

    The transcript ends either with the inbound user turn or with that turn
    followed by the assistant's reply. Rules run strongest first and the
    first match wins.
    """
    if not transcript:
        return None

    reply: Message | None = None
    inbound_index = len(transcript) - 1
    if transcript[-1].role == "assistant":
        if len(transcript) < 2 or transcript[-2].role != "user":
            return None
        reply = transcript[-1]
        inbound_index -= 1
    inbound = transcript[inbound_index]
    if inbound.role != "user":
        return None
    prior = transcript[:inbound_index]

    content = inbound.content
    lowered = content.lower()

    if _matches(lowered, DIRECT_HELP_PHRASES):
        return EscalationDecision(
            rule="direct_help_request",
            type=NOTIFICATION_HELP_NEEDED,
            title="Customer Needs Help",
            body=f'Customer {user_id} is explicitly asking for help: "{_excerpt(content)}"',
            user_id=user_id,
            urgent=True,
            last_message=content,
        )

    if len(prior) < 2 and len(_matches(lowered, HELP_PHRASES)) >= 2:
        return EscalationDecision(
            rule="early_help_signal",
            type=NOTIFICATION_HELP_NEEDED,
            title="Customer Likely Needs Help",
            body=f'Customer {user_id} used multiple help-related phrases: "{_excerpt(content)}"',
            user_id=user_id,
            urgent=True,
            last_message=content,
        )

    if len(prior) >= 2 and prior[-1].role == "assistant" and _matches(lowered, HELP_PHRASES):
        return EscalationDecision(
            rule="follow_up_after_answer",
            type=NOTIFICATION_HELP_NEEDED,
            title="Customer Needs Clarification",
            body=f'Customer {user_id} is asking follow-up questions after AI response: "{_excerpt(lowered)}"',
            user_id=user_id,
            urgent=False,
            last_message=lowered,
        )

    if reply is None:
        return None
    answer = reply.content.lower()

    if _matches(answer, UNCERTAINTY_PHRASES):
        return EscalationDecision(
            rule="ai_uncertainty",
            type=NOTIFICATION_HELP_NEEDED,
            title="AI Knowledge Gap",
            body=f'Customer {user_id} asked something the AI is uncertain about: "{_excerpt(lowered)}"',
            user_id=user_id,
            urgent=True,
            last_message=lowered,
            ai_response=answer,
        )

    if _matches(lowered, ORDER_PHRASES) and _matches(answer, CONFIRMATION_PHRASES):
        return EscalationDecision(
            rule="order_confirmation",
            type=NOTIFICATION_ORDER_CONFIRMED,
            title="New Order",
            body=f"Customer {user_id} has placed an order that should be processed.",
            user_id=user_id,
            urgent=None,
            last_message=lowered,
            ai_response=answer,
        )

    return None


class EscalationRaiser:
    def __init__(self, mailbox: NotificationMailbox, alerter: StaffAlerter | None = None) -> None:
        self._mailbox = mailbox
        self._alerter = alerter

    def raise_for(self, decision: EscalationDecision) -> Notification:
        notification = self._mailbox.create(
            decision.type,
            decision.title,
            decision.body,
            user_id=decision.user_id,
            extra=decision.extra(),
        )
        logger.info("escalation %s raised notification %s for %s", decision.rule, notification.id, decision.user_id)
        if self._alerter is not None:
            self._alerter.notify(notification)
        return notification


@dataclass(frozen=True)
class SweepResult:
    checked: int
    raised: int


def sweep_conversations(
    store: ConversationStore,
    raiser: EscalationRaiser,
    *,
    now_ms: int,
    window_seconds: int = 5 * 60,
) -> SweepResult:
    """Re-run detection for AI-handled conversations still waiting on a reply."""
    checked = 0
    raised = 0
    for summary in store.list_conversations(limit=None):
        if summary.status != "ai-handled" or summary.last_role != "user":
            continue
        if now_ms - summary.last_timestamp >= window_seconds * 1000:
            continue
        checked += 1
        decision = detect_escalation(summary.user_id, store.get_history(summary.user_id))
        if decision is None:
            continue
        raiser.raise_for(decision)
        raised += 1
    return SweepResult(checked=checked, raised=raised)
