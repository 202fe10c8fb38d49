from __future__ import annotations

from typing import Any

import pytest

from support_desk.kv_store import InMemoryKeyValueStore, StorageError
from support_desk.mailbox import DELIVERED_PREFIX, UNDELIVERED_PREFIX, NotificationMailbox, new_notification_id


class _Clock:
    def __init__(self, value: int = 1_760_000_000_000) -> None:
        self.value = value

    def __call__(self) -> int:
        self.value += 1
        return self.value


def _mailbox(kv: InMemoryKeyValueStore | None = None) -> tuple[NotificationMailbox, InMemoryKeyValueStore]:
    store = kv or InMemoryKeyValueStore()
    return NotificationMailbox(store, clock=_Clock()), store


def test_notification_ids_sort_by_creation_time() -> None:
    earlier = new_notification_id(1_760_000_000_000)
    later = new_notification_id(1_760_000_000_001)

    assert earlier < later
    assert earlier.startswith("1760000000000-")


def test_create_stores_notification_in_undelivered_partition() -> None:
    mailbox, kv = _mailbox()

    notification = mailbox.create("help_needed", "Customer Needs Help", "body", user_id="u1", extra={"urgent": True})

    assert kv.list_keys(UNDELIVERED_PREFIX) == [f"{UNDELIVERED_PREFIX}{notification.id}"]
    stored = kv.get(f"{UNDELIVERED_PREFIX}{notification.id}")
    assert stored["userId"] == "u1"
    assert stored["urgent"] is True
    assert [item.id for item in mailbox.list_pending()] == [notification.id]


def test_acknowledge_moves_notifications_and_is_idempotent() -> None:
    mailbox, kv = _mailbox()
    first = mailbox.create("help_needed", "a", "a")
    second = mailbox.create("order_confirmed", "b", "b")

    assert mailbox.acknowledge([first.id, first.id, "", "unknown"]) == 1
    assert mailbox.acknowledge([first.id]) == 0

    assert [item.id for item in mailbox.list_pending()] == [second.id]
    delivered = mailbox.list_delivered()
    assert [item.id for item in delivered] == [first.id]
    assert delivered[0].delivered_at is not None
    assert kv.get(f"{DELIVERED_PREFIX}{first.id}")["deliveredAt"] == delivered[0].delivered_at


def test_acknowledge_skips_ids_that_fail_to_move() -> None:
    class _FlakyStore(InMemoryKeyValueStore):
        def get(self, key: str) -> Any | None:
            if key.endswith("broken"):
                raise StorageError("boom")
            return super().get(key)

    mailbox, _ = _mailbox(_FlakyStore())
    ok = mailbox.create("system", "ok", "ok")

    assert mailbox.acknowledge(["broken", ok.id]) == 1
    assert mailbox.list_pending() == []


def test_create_test_notification_variants() -> None:
    mailbox, _ = _mailbox()

    help_needed = mailbox.create_test_notification("help_needed")
    order = mailbox.create_test_notification("order_confirmed")
    other = mailbox.create_test_notification("anything")

    assert help_needed.title == "Test: Customer Needs Help"
    assert help_needed.urgent is True
    assert help_needed.user_id is not None and help_needed.user_id.startswith("test_")
    assert order.title == "Test: New Order"
    assert other.type == "system"
    assert other.user_id is None
    assert "UTC" in other.body
    assert len(mailbox.list_pending()) == 3


class _SharedClock:
    def __init__(self, seconds: float = 1_760_000_000.0) -> None:
        self.now = seconds

    def seconds(self) -> float:
        return self.now

    def millis(self) -> int:
        return int(self.now * 1000)


def test_notifications_expire_after_seven_days_in_both_partitions() -> None:
    day = 24 * 60 * 60
    clock = _SharedClock()
    kv = InMemoryKeyValueStore(clock=clock.seconds)
    mailbox = NotificationMailbox(kv, clock=clock.millis)
    acknowledged = mailbox.create("help_needed", "a", "a")
    pending = mailbox.create("order_confirmed", "b", "b")

    clock.now += day
    assert mailbox.acknowledge([acknowledged.id]) == 1

    clock.now += 6 * day - 1
    assert [item.id for item in mailbox.list_pending()] == [pending.id]
    assert [item.id for item in mailbox.list_delivered()] == [acknowledged.id]

    clock.now += 2
    assert mailbox.list_pending() == []
    assert [item.id for item in mailbox.list_delivered()] == [acknowledged.id]

    clock.now += day
    assert mailbox.list_delivered() == []
    assert kv.list_keys(DELIVERED_PREFIX) == []
    assert kv.list_keys(UNDELIVERED_PREFIX) == []


def test_listing_skips_malformed_records(caplog: pytest.LogCaptureFixture) -> None:
    mailbox, kv = _mailbox()
    valid = mailbox.create("system", "ok", "ok")
    kv.put(f"{UNDELIVERED_PREFIX}0000000000001-legacy", {"id": "0000000000001-legacy", "title": "no body"})

    with caplog.at_level("WARNING", logger="support_desk.mailbox"):
        pending = mailbox.list_pending()

    assert [item.id for item in pending] == [valid.id]
    assert "0000000000001-legacy" in caplog.text
