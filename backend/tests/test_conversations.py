from __future__ import annotations

from typing import Any

import pytest

from support_desk.conversations import ConversationNotFoundError, ConversationStore, history_key, metadata_key
from support_desk.handoff import AiHandled, HumanHandled
from support_desk.kv_store import InMemoryKeyValueStore, StorageError


class _TickingClock:
    def __init__(self, start: int = 1_760_000_000_000) -> None:
        self.value = start

    def __call__(self) -> int:
        self.value += 1_000
        return self.value


class _BrokenReadStore(InMemoryKeyValueStore):
    def get(self, key: str) -> Any | None:
        raise StorageError(f"read failed for {key}")


def _store(kv: InMemoryKeyValueStore | None = None, **kwargs: Any) -> ConversationStore:
    return ConversationStore(kv or InMemoryKeyValueStore(), clock=_TickingClock(), **kwargs)


def test_first_message_creates_ai_handled_metadata() -> None:
    kv = InMemoryKeyValueStore()
    store = _store(kv)

    history = store.append_message("u1", "user", "Bonjour")

    assert [message.content for message in history] == ["Bonjour"]
    metadata = kv.get(metadata_key("u1"))
    assert metadata["status"] == "ai-handled"
    assert metadata["handledBy"] == "ai-agent"
    assert metadata["createdAt"] == metadata["lastUpdated"] == history[0].timestamp


def test_history_is_truncated_to_most_recent_messages() -> None:
    store = _store()
    for index in range(35):
        store.append_message("u1", "user", f"question {index}")
        store.append_message("u1", "assistant", f"answer {index}")

    history = store.get_history("u1")

    assert len(history) == 30
    assert history[0].content == "question 20"
    assert history[-1].content == "answer 34"


def test_append_keeps_human_owner_and_bumps_last_updated() -> None:
    store = _store()
    store.append_message("u1", "user", "Bonjour")
    store.set_status("u1", "agent-7", "human-handled")
    before = store.get_metadata("u1")

    store.append_message("u1", "user", "Vous êtes là?")
    after = store.get_metadata("u1")

    assert after.status == "human-handled"
    assert after.handled_by == "agent-7"
    assert after.created_at == before.created_at
    assert after.last_updated > before.last_updated


def test_reads_degrade_to_defaults_when_storage_fails() -> None:
    store = _store(_BrokenReadStore())

    assert store.get_history("u1") == []
    metadata = store.get_metadata("u1")
    assert metadata.status == "ai-handled"
    assert metadata.handled_by == "ai-agent"


def test_append_propagates_storage_failures() -> None:
    store = _store(_BrokenReadStore())

    with pytest.raises(StorageError):
        store.append_message("u1", "user", "Bonjour")


def test_set_status_requires_existing_conversation() -> None:
    store = _store()

    with pytest.raises(ConversationNotFoundError):
        store.set_status("ghost", "agent-7", "human-handled")


def test_set_status_to_ai_handled_resets_owner() -> None:
    store = _store()
    store.append_message("u1", "user", "Bonjour")
    store.set_status("u1", "agent-7", "human-handled")

    metadata = store.set_status("u1", "agent-7", "ai-handled")

    assert metadata.status == "ai-handled"
    assert metadata.handled_by == "ai-agent"
    assert store.get_handoff("u1") == AiHandled()


def test_set_status_human_without_agent_is_rejected() -> None:
    store = _store()
    store.append_message("u1", "user", "Bonjour")

    with pytest.raises(ValueError):
        store.set_status("u1", None, "human-handled")


def test_record_agent_message_takes_over_conversation() -> None:
    store = _store()
    store.append_message("u1", "user", "Bonjour")

    message = store.record_agent_message("u1", "agent-7", "Je m'en occupe.")

    assert message.role == "assistant"
    assert message.sent_by == "agent-7"
    assert store.get_handoff("u1") == HumanHandled("agent-7")
    stored = store.get_history("u1")[-1].to_record()
    assert stored["sentBy"] == "agent-7"


def test_get_conversation_not_found() -> None:
    store = _store()

    with pytest.raises(ConversationNotFoundError):
        store.get_conversation("ghost")


def test_clear_history_closes_conversation() -> None:
    kv = InMemoryKeyValueStore()
    store = _store(kv)
    store.append_message("u1", "user", "Bonjour")
    store.set_status("u1", "agent-7", "human-handled")

    metadata = store.clear_history("u1")

    assert kv.get(history_key("u1")) is None
    assert metadata.status == "closed"
    assert metadata.handled_by == "agent-7"
    with pytest.raises(ConversationNotFoundError):
        store.get_conversation("u1")


def test_list_conversations_orders_by_last_update() -> None:
    kv = InMemoryKeyValueStore()
    store = _store(kv)
    store.append_message("old", "user", "first")
    store.append_message("new", "user", "second")
    store.append_message("new", "assistant", "reply")
    kv.put(history_key("legacy"), [{"role": "user", "content": "no metadata", "timestamp": 5}])

    summaries = store.list_conversations()

    assert [summary.user_id for summary in summaries] == ["new", "old", "legacy"]
    assert summaries[0].message_count == 2
    assert summaries[0].last_role == "assistant"
    assert summaries[2].last_updated == 5
    assert summaries[2].status == "ai-handled"
    assert len(store.list_conversations(limit=1)) == 1


def test_seed_demo_conversation_writes_four_messages() -> None:
    store = _store()

    messages = store.seed_demo_conversation("demo")

    assert [message.role for message in messages] == ["user", "assistant", "user", "assistant"]
    assert messages == sorted(messages, key=lambda message: message.timestamp)
    snapshot = store.get_conversation("demo")
    assert snapshot.metadata.status == "ai-handled"
    assert len(snapshot.messages) == 4


def test_record_agent_message_rejects_ai_sentinel_before_writing() -> None:
    store = _store()
    store.append_message("u1", "user", "Bonjour")

    with pytest.raises(ValueError):
        store.record_agent_message("u1", "ai-agent", "hello")

    assert [message.content for message in store.get_history("u1")] == ["Bonjour"]
    assert store.get_handoff("u1") == AiHandled()


class _SharedClock:
    def __init__(self, seconds: float = 1_760_000_000.0) -> None:
        self.now = seconds

    def seconds(self) -> float:
        return self.now

    def millis(self) -> int:
        return int(self.now * 1000)


def test_conversation_expires_and_restarts_ai_handled() -> None:
    clock = _SharedClock()
    kv = InMemoryKeyValueStore(clock=clock.seconds)
    store = ConversationStore(kv, clock=clock.millis)
    store.append_message("u1", "user", "Bonjour")
    store.set_status("u1", "agent-7", "human-handled")

    clock.now += 24 * 60 * 60 + 1

    assert store.get_history("u1") == []
    assert kv.get(metadata_key("u1")) is None
    with pytest.raises(ConversationNotFoundError):
        store.get_conversation("u1")

    history = store.append_message("u1", "user", "Re-bonjour")

    assert [message.content for message in history] == ["Re-bonjour"]
    metadata = store.get_metadata("u1")
    assert metadata.status == "ai-handled"
    assert metadata.handled_by == "ai-agent"
    assert metadata.created_at == history[0].timestamp


def test_new_activity_extends_conversation_lifetime() -> None:
    clock = _SharedClock()
    store = ConversationStore(InMemoryKeyValueStore(clock=clock.seconds), clock=clock.millis)
    store.append_message("u1", "user", "Bonjour")
    store.set_status("u1", "agent-7", "human-handled")

    clock.now += 23 * 60 * 60
    store.append_message("u1", "user", "Toujours là?")
    clock.now += 2 * 60 * 60

    assert len(store.get_history("u1")) == 2
    assert store.get_handoff("u1") == HumanHandled("agent-7")
