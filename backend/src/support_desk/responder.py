from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable

from .completion import ChatMessage, CompletionClient, CompletionError, ask_with_retry
from .conversations import ConversationStore
from .escalation import EscalationRaiser, detect_escalation
from .handoff import AiHandled, Closed, HumanHandled
from .kv_store import StorageError
from .models import Message, ReplyKind

logger = logging.getLogger(__name__)

EXIT_PHRASES = ("exit", "quitter", "au revoir")
MENU_KEYWORDS = ("menu", "carte", "tarifs", "plats")

UNSUPPORTED_TYPE_REPLY = "Type de message non pris en charge."
EMPTY_MESSAGE_REPLY = "Désolé, je n'ai pas reçu de message. Pourriez-vous réessayer?"
APOLOGY_REPLY = "Désolé, une erreur s'est produite. Veuillez réessayer."
HUMAN_HANDOFF_REPLY = "Message received and waiting for human agent response."
MENU_REPLY = "merci de demander, Voici notre menu."


@dataclass(frozen=True)
class AssistantReply:
    kind: ReplyKind
    text: str
    handled_by: str | None = None
    document: dict[str, Any] | None = None

    @property
    def needs_human(self) -> bool:
        return self.kind == "human_handoff"


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0


class AssistantResponder:
    """Produces the next assistant turn for an inbound customer message."""

    def __init__(
        self,
        *,
        store: ConversationStore,
        completion: CompletionClient,
        raiser: EscalationRaiser,
        system_prompt: str,
        goodbye_text: str,
        retry: RetryPolicy | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._store = store
        self._completion = completion
        self._raiser = raiser
        self._system_prompt = system_prompt
        self._goodbye_text = goodbye_text
        self._retry = retry or RetryPolicy()
        self._sleep = sleep

    def handle_message(self, user_id: str, message_type: str, content: str | None) -> AssistantReply:
        if message_type != "text":
            return AssistantReply(kind="text", text=UNSUPPORTED_TYPE_REPLY)
        text = (content or "").strip()
        if not text:
            return AssistantReply(kind="text", text=EMPTY_MESSAGE_REPLY)

        try:
            return self._respond(user_id, text)
        except StorageError:
            logger.exception("storage failure while answering %s", user_id)
            return AssistantReply(kind="text", text=APOLOGY_REPLY)

    def _respond(self, user_id: str, text: str) -> AssistantReply:
        handoff = self._store.get_handoff(user_id)
        if isinstance(handoff, HumanHandled):
            self._store.append_message(user_id, "user", text)
            logger.info("conversation %s is with %s; skipping completion", user_id, handoff.agent_id)
            return AssistantReply(kind="human_handoff", text=HUMAN_HANDOFF_REPLY, handled_by=handoff.agent_id)
        if not isinstance(handoff, (AiHandled, Closed)):
            raise TypeError(f"unknown handoff state: {handoff!r}")

        lowered = text.lower()
        if lowered in EXIT_PHRASES:
            self._append_exchange(user_id, text, self._goodbye_text)
            return AssistantReply(kind="text", text=self._goodbye_text)

        if any(keyword in lowered for keyword in MENU_KEYWORDS):
            self._append_exchange(user_id, text, MENU_REPLY)
            return AssistantReply(
                kind="document",
                text=MENU_REPLY,
                document={"type": "menu_request", "text": MENU_REPLY},
            )

        history = self._store.get_history(user_id)
        messages: list[ChatMessage] = [{"role": "system", "content": self._system_prompt}]
        messages.extend({"role": message.role, "content": message.content} for message in history)
        messages.append({"role": "user", "content": text})

        try:
            answer = ask_with_retry(
                self._completion,
                messages,
                attempts=self._retry.attempts,
                base_delay=self._retry.base_delay,
                max_delay=self._retry.max_delay,
                sleep=self._sleep,
            )
        except CompletionError as exc:
            logger.error("completion failed for %s after retries: %s", user_id, exc.message)
            self._store.append_message(user_id, "user", text)
            return AssistantReply(kind="text", text=APOLOGY_REPLY)

        transcript = self._append_exchange(user_id, text, answer)
        decision = detect_escalation(user_id, transcript)
        if decision is not None:
            try:
                self._raiser.raise_for(decision)
            except StorageError:
                logger.exception("could not raise %s notification for %s", decision.type, user_id)
        return AssistantReply(kind="text", text=answer)

    def _append_exchange(self, user_id: str, question: str, answer: str) -> list[Message]:
        self._store.append_message(user_id, "user", question)
        return self._store.append_message(user_id, "assistant", answer)
