from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable

from .handoff import (
    AiHandled,
    Closed,
    Handoff,
    HumanHandled,
    handoff_fields,
    parse_handoff,
    transition,
)
from .kv_store import KeyValueStore, StorageError, now_ms
from .models import ConversationMetadata, ConversationStatus, ConversationSummary, Message, MessageRole

logger = logging.getLogger(__name__)

HISTORY_PREFIX = "chat_history:"
METADATA_PREFIX = "chat_metadata:"


class ConversationNotFoundError(KeyError):
    """Raised when a conversation has no stored history."""


def history_key(user_id: str) -> str:
    return f"{HISTORY_PREFIX}{user_id}"


def metadata_key(user_id: str) -> str:
    return f"{METADATA_PREFIX}{user_id}"


@dataclass(frozen=True)
class ConversationSnapshot:
    user_id: str
    messages: list[Message]
    metadata: ConversationMetadata

    @property
    def handoff(self) -> Handoff:
        return parse_handoff(self.metadata.to_record())


def _metadata_from(handoff: Handoff, *, created_at: int, last_updated: int, extra: dict[str, Any] | None = None) -> ConversationMetadata:
    payload: dict[str, Any] = dict(extra or {})
    payload.update(handoff_fields(handoff))
    payload["createdAt"] = created_at
    payload["lastUpdated"] = last_updated
    return ConversationMetadata.model_validate(payload)


class ConversationStore:
    """History and ownership metadata for every customer conversation."""

    def __init__(
        self,
        kv: KeyValueStore,
        *,
        history_limit: int = 30,
        ttl_seconds: int = 60 * 60 * 24,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._kv = kv
        self._history_limit = max(1, history_limit)
        self._ttl_seconds = ttl_seconds
        self._clock = clock

    def _read_messages(self, user_id: str) -> list[Message]:
        raw = self._kv.get(history_key(user_id))
        if not isinstance(raw, list):
            return []
        return [Message.model_validate(item) for item in raw if isinstance(item, dict)]

    def _write_messages(self, user_id: str, messages: list[Message]) -> None:
        self._kv.put(
            history_key(user_id),
            [message.to_record() for message in messages],
            ttl_seconds=self._ttl_seconds,
        )

    def _write_metadata(self, user_id: str, metadata: ConversationMetadata) -> None:
        self._kv.put(metadata_key(user_id), metadata.to_record(), ttl_seconds=self._ttl_seconds)

    def _stored_metadata(self, user_id: str) -> dict[str, Any] | None:
        raw = self._kv.get(metadata_key(user_id))
        return raw if isinstance(raw, dict) else None

    def get_history(self, user_id: str) -> list[Message]:
        try:
            return self._read_messages(user_id)
        except StorageError:
            logger.warning("history read failed for %s; returning empty history", user_id, exc_info=True)
            return []

    def get_metadata(self, user_id: str) -> ConversationMetadata:
        now = self._clock()
        try:
            stored = self._stored_metadata(user_id)
        except StorageError:
            logger.warning("metadata read failed for %s; using defaults", user_id, exc_info=True)
            stored = None
        if stored is None:
            return _metadata_from(AiHandled(), created_at=now, last_updated=now)
        return _metadata_from(
            parse_handoff(stored),
            created_at=int(stored.get("createdAt") or now),
            last_updated=int(stored.get("lastUpdated") or now),
            extra=stored,
        )

    def get_handoff(self, user_id: str) -> Handoff:
        return parse_handoff(self.get_metadata(user_id).to_record())

    def get_conversation(self, user_id: str) -> ConversationSnapshot:
        messages = self.get_history(user_id)
        if not messages:
            raise ConversationNotFoundError(f"Conversation not found: {user_id}")
        return ConversationSnapshot(user_id=user_id, messages=messages, metadata=self.get_metadata(user_id))

    def append_message(
        self,
        user_id: str,
        role: MessageRole,
        content: str,
        extra: dict[str, Any] | None = None,
    ) -> list[Message]:
        # Reads here are strict: a failed read must not truncate the stored history.
        history = self._read_messages(user_id)
        timestamp = self._clock()
        payload: dict[str, Any] = dict(extra or {})
        payload.update({"role": role, "content": content, "timestamp": timestamp})
        history.append(Message.model_validate(payload))
        history = history[-self._history_limit :]
        self._write_messages(user_id, history)

        stored = self._stored_metadata(user_id)
        if len(history) == 1 or stored is None:
            metadata = _metadata_from(AiHandled(), created_at=timestamp, last_updated=timestamp)
        else:
            metadata = _metadata_from(
                parse_handoff(stored),
                created_at=int(stored.get("createdAt") or timestamp),
                last_updated=timestamp,
                extra=stored,
            )
        self._write_metadata(user_id, metadata)
        return history

    def set_status(
        self,
        user_id: str,
        agent_id: str | None,
        status: ConversationStatus,
    ) -> ConversationMetadata:
        if not self._read_messages(user_id):
            raise ConversationNotFoundError(f"Conversation not found: {user_id}")
        current = self.get_metadata(user_id)
        handoff = transition(parse_handoff(current.to_record()), status=status, agent_id=agent_id)
        metadata = _metadata_from(
            handoff,
            created_at=current.created_at,
            last_updated=self._clock(),
            extra=current.to_record(),
        )
        self._write_metadata(user_id, metadata)
        logger.info("conversation %s is now %s (%s)", user_id, metadata.status, metadata.handled_by)
        return metadata

    def record_agent_message(self, user_id: str, agent_id: str, content: str) -> Message:
        # Rejects the AI sentinel before anything is written.
        owner = HumanHandled(agent_id=agent_id)
        if not self._read_messages(user_id):
            raise ConversationNotFoundError(f"Conversation not found: {user_id}")
        history = self.append_message(user_id, "assistant", content, {"sentBy": owner.agent_id})
        self.set_status(user_id, owner.agent_id, "human-handled")
        return history[-1]

    def clear_history(self, user_id: str) -> ConversationMetadata:
        current = self.get_metadata(user_id)
        self._kv.delete(history_key(user_id))
        metadata = _metadata_from(
            Closed(handled_by=current.handled_by),
            created_at=current.created_at,
            last_updated=self._clock(),
            extra=current.to_record(),
        )
        self._write_metadata(user_id, metadata)
        return metadata

    def list_conversations(self, *, limit: int | None = 100) -> list[ConversationSummary]:
        summaries: list[ConversationSummary] = []
        for key in self._kv.list_keys(HISTORY_PREFIX):
            user_id = key[len(HISTORY_PREFIX) :]
            messages = self.get_history(user_id)
            if not messages:
                continue
            last = messages[-1]
            try:
                stored = self._stored_metadata(user_id)
            except StorageError:
                logger.warning("metadata read failed for %s while listing", user_id, exc_info=True)
                stored = None
            if stored is None:
                metadata = _metadata_from(AiHandled(), created_at=messages[0].timestamp, last_updated=last.timestamp)
            else:
                metadata = _metadata_from(
                    parse_handoff(stored),
                    created_at=int(stored.get("createdAt") or messages[0].timestamp),
                    last_updated=int(stored.get("lastUpdated") or last.timestamp),
                    extra=stored,
                )
            summaries.append(
                ConversationSummary(
                    user_id=user_id,
                    last_message=last.content,
                    last_role=last.role,
                    message_count=len(messages),
                    last_timestamp=last.timestamp,
                    last_updated=metadata.last_updated,
                    status=metadata.status,
                    handled_by=metadata.handled_by,
                )
            )
        summaries.sort(key=lambda item: item.last_updated, reverse=True)
        if limit is None:
            return summaries
        return summaries[:limit]

    def seed_demo_conversation(self, user_id: str) -> list[Message]:
        """Write a short demo transcript, replacing any existing history."""
        now = self._clock()
        transcript: list[tuple[MessageRole, str, int]] = [
            ("user", "Hello", 120_000),
            ("assistant", "Hello! Welcome to Complexe LeSims. How can I assist you today?", 100_000),
            ("user", "What's on the menu?", 60_000),
            (
                "assistant",
                "We have a variety of dishes including salads, pastas, burgers, and African specialties. "
                "Would you like me to send you our full menu?",
                30_000,
            ),
        ]
        messages = [Message(role=role, content=content, timestamp=now - age) for role, content, age in transcript]
        self._write_messages(user_id, messages)
        self._write_metadata(
            user_id,
            _metadata_from(AiHandled(), created_at=messages[0].timestamp, last_updated=messages[-1].timestamp),
        )
        return messages
