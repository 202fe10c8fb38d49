from __future__ import annotations

import logging
import secrets
from datetime import datetime, timezone
from typing import Any, Callable, Iterable

from pydantic import ValidationError

from .kv_store import KeyValueStore, StorageError, now_ms
from .models import NOTIFICATION_HELP_NEEDED, NOTIFICATION_ORDER_CONFIRMED, NOTIFICATION_SYSTEM, Notification

logger = logging.getLogger(__name__)

UNDELIVERED_PREFIX = "notification:undelivered:"
DELIVERED_PREFIX = "notification:delivered:"


def new_notification_id(timestamp_ms: int) -> str:
    # Probabilistically unique; there is no collision check against existing keys.
    return f"{timestamp_ms:013d}-{secrets.token_hex(6)}"


class NotificationMailbox:
    """Undelivered/delivered notification partitions in the key-value store.

    ``acknowledge`` is the only operation that removes a notification from the
    pending set. Every delivery channel lists, presents and then acknowledges,
    so a notification may be shown more than once but is never lost.
    """

    def __init__(
        self,
        kv: KeyValueStore,
        *,
        ttl_seconds: int = 60 * 60 * 24 * 7,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._kv = kv
        self._ttl_seconds = ttl_seconds
        self._clock = clock

    def create(
        self,
        type: str,
        title: str,
        body: str,
        user_id: str | None = None,
        extra: dict[str, Any] | None = None,
    ) -> Notification:
        timestamp = self._clock()
        payload: dict[str, Any] = dict(extra or {})
        payload.update(
            {
                "id": new_notification_id(timestamp),
                "type": type,
                "title": title,
                "body": body,
                "userId": user_id,
                "timestamp": timestamp,
            }
        )
        notification = Notification.model_validate(payload)
        self._kv.put(
            f"{UNDELIVERED_PREFIX}{notification.id}",
            notification.to_record(),
            ttl_seconds=self._ttl_seconds,
        )
        logger.info("created %s notification %s for %s", notification.type, notification.id, user_id or "-")
        return notification

    def _list(self, prefix: str) -> list[Notification]:
        notifications: list[Notification] = []
        for key in self._kv.list_keys(prefix):
            raw = self._kv.get(key)
            if not isinstance(raw, dict):
                logger.debug("notification %s vanished before it could be read", key)
                continue
            try:
                notifications.append(Notification.model_validate(raw))
            except ValidationError:
                logger.warning("skipping malformed notification record %s", key)
        return notifications

    def list_pending(self) -> list[Notification]:
        return self._list(UNDELIVERED_PREFIX)

    def list_delivered(self) -> list[Notification]:
        return self._list(DELIVERED_PREFIX)

    def _move(self, notification_id: str) -> bool:
        undelivered_key = f"{UNDELIVERED_PREFIX}{notification_id}"
        raw = self._kv.get(undelivered_key)
        if not isinstance(raw, dict):
            return False
        raw["deliveredAt"] = self._clock()
        self._kv.put(f"{DELIVERED_PREFIX}{notification_id}", raw, ttl_seconds=self._ttl_seconds)
        self._kv.delete(undelivered_key)
        return True

    def acknowledge(self, ids: Iterable[str]) -> int:
        marked = 0
        for notification_id in dict.fromkeys(ids):
            if not notification_id:
                continue
            try:
                if self._move(notification_id):
                    marked += 1
            except StorageError:
                logger.exception("failed to acknowledge notification %s", notification_id)
        return marked

    def create_test_notification(self, type: str = NOTIFICATION_HELP_NEEDED) -> Notification:
        now = self._clock()
        suffix = str(now)[-6:]
        if type == NOTIFICATION_HELP_NEEDED:
            return self.create(
                NOTIFICATION_HELP_NEEDED,
                "Test: Customer Needs Help",
                "Test notification: Customer needs assistance with their order.",
                user_id=f"test_{suffix}",
                extra={"urgent": True},
            )
        if type == NOTIFICATION_ORDER_CONFIRMED:
            return self.create(
                NOTIFICATION_ORDER_CONFIRMED,
                "Test: New Order",
                "Test notification: A customer has placed a new order.",
                user_id=f"test_{suffix}",
            )
        return self.create(
            NOTIFICATION_SYSTEM,
            "Test Notification",
            f"This is a test notification created at {datetime.fromtimestamp(now / 1000, tz=timezone.utc):%H:%M:%S} UTC",
        )
