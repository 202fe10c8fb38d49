"""Client-side delivery of mailbox notifications.

Three consumers drain the same mailbox independently: a polling loop owned
by the dashboard, a background worker that outlives page visits, and a push
handler. None of them coordinate with each other. Each one lists pending
notifications, presents them and acknowledges what it fetched, so a
notification can be shown more than once but is acknowledged through the
mailbox's idempotent move. The presenter de-duplicates by id within one
client.

Nothing in the service imports this module. Dashboard and worker hosts
import it directly and wire a consumer to their own presenter sinks.
"""

from __future__ import annotations

import json
import logging
import socket
import threading
import urllib.error
import urllib.request
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterable, Protocol, Sequence

from pydantic import ValidationError

from .kv_store import StorageError, now_ms
from .mailbox import NotificationMailbox, new_notification_id
from .models import Notification

logger = logging.getLogger(__name__)

MOBILE_POLL_INTERVAL_SECONDS = 15.0
DESKTOP_POLL_INTERVAL_SECONDS = 20.0
WORKER_WAKE_INTERVAL_SECONDS = 120.0


@dataclass(frozen=True)
class ApiCredentials:
    api_url: str
    api_key: str
    timestamp: int

    def to_record(self) -> dict[str, Any]:
        return {"apiUrl": self.api_url, "apiKey": self.api_key, "timestamp": self.timestamp}

    @classmethod
    def from_record(cls, record: Any) -> ApiCredentials | None:
        if not isinstance(record, dict):
            return None
        api_url = str(record.get("apiUrl") or "").strip()
        api_key = str(record.get("apiKey") or "").strip()
        if not api_url or not api_key:
            return None
        return cls(api_url=api_url, api_key=api_key, timestamp=int(record.get("timestamp") or 0))


@dataclass
class DashboardContext:
    """Connection state shared by the dashboard components that need it."""

    connected: bool = False
    api_url: str = ""
    api_key: str = ""
    selected_user_id: str | None = None
    visible: bool = True
    mobile: bool = False

    def connect(self, api_url: str, api_key: str) -> None:
        self.api_url = api_url.strip().rstrip("/")
        self.api_key = api_key.strip()
        self.connected = bool(self.api_url and self.api_key)

    def disconnect(self) -> None:
        self.connected = False

    def credentials(self) -> ApiCredentials | None:
        if not self.connected or not self.api_url or not self.api_key:
            return None
        return ApiCredentials(api_url=self.api_url, api_key=self.api_key, timestamp=0)


class CredentialVault:
    """Credential lookup in order: memory, persistent file, dashboard context."""

    def __init__(
        self,
        path: Path,
        *,
        context: DashboardContext | None = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._path = path
        self._context = context
        self._clock = clock
        self._cached: ApiCredentials | None = None
        self._lock = threading.Lock()

    def store(self, api_url: str, api_key: str) -> ApiCredentials:
        credentials = ApiCredentials(
            api_url=api_url.strip().rstrip("/"),
            api_key=api_key.strip(),
            timestamp=self._clock(),
        )
        if not credentials.api_url or not credentials.api_key:
            raise ValueError("apiUrl and apiKey are required")
        with self._lock:
            self._cached = credentials
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._path.write_text(json.dumps(credentials.to_record()), encoding="utf-8")
        return credentials

    def _read_file(self) -> ApiCredentials | None:
        try:
            raw = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError:
            logger.warning("could not read credential file %s", self._path, exc_info=True)
            return None
        try:
            return ApiCredentials.from_record(json.loads(raw))
        except json.JSONDecodeError:
            logger.warning("credential file %s is not valid JSON", self._path)
            return None

    def load(self) -> ApiCredentials | None:
        with self._lock:
            if self._cached is not None:
                return self._cached
            persisted = self._read_file()
            if persisted is not None:
                self._cached = persisted
                return persisted
        if self._context is not None:
            return self._context.credentials()
        return None

    def drop_cached(self) -> None:
        with self._lock:
            self._cached = None

    def clear(self) -> None:
        with self._lock:
            self._cached = None
            self._path.unlink(missing_ok=True)


class GatewayUnavailableError(RuntimeError):
    """Raised when the mailbox cannot be reached from a client."""

    def __init__(self, error_code: str, message: str) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message


class MailboxGateway(Protocol):
    def fetch_pending(self) -> list[Notification]: ...

    def acknowledge(self, ids: Sequence[str]) -> int: ...


class HttpMailboxGateway:
    def __init__(self, credentials: ApiCredentials, *, timeout_seconds: int = 15) -> None:
        self._credentials = credentials
        self._timeout_seconds = timeout_seconds

    def fetch_pending(self) -> list[Notification]:
        data = self._request("GET", "/api/notifications/pending")
        notifications: list[Notification] = []
        for item in data.get("notifications") or []:
            try:
                notifications.append(Notification.model_validate(item))
            except ValidationError:
                logger.warning("skipping malformed notification from %s", self._credentials.api_url)
        return notifications

    def acknowledge(self, ids: Sequence[str]) -> int:
        if not ids:
            return 0
        data = self._request("POST", "/api/notifications/mark-received", {"ids": list(ids)})
        return int(data.get("marked") or 0)

    def _request(self, method: str, path: str, body: dict[str, Any] | None = None) -> dict[str, Any]:
        request = urllib.request.Request(
            f"{self._credentials.api_url}{path}",
            data=json.dumps(body).encode("utf-8") if body is not None else None,
            headers={
                "Authorization": f"Bearer {self._credentials.api_key}",
                "Content-Type": "application/json",
            },
            method=method,
        )
        try:
            with urllib.request.urlopen(request, timeout=self._timeout_seconds) as response:
                return json.loads(response.read().decode("utf-8"))  # type: ignore[no-any-return]
        except urllib.error.HTTPError as exc:
            raise GatewayUnavailableError(f"http_{exc.code}", f"HTTP {exc.code}: {exc.reason}") from exc
        except urllib.error.URLError as exc:
            raise GatewayUnavailableError("connection_error", f"Connection error: {exc.reason}") from exc
        except (socket.timeout, TimeoutError) as exc:
            raise GatewayUnavailableError("timeout", f"Request timed out: {exc}") from exc
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise GatewayUnavailableError("invalid_response", f"Invalid JSON response: {exc}") from exc


class LocalMailboxGateway:
    """In-process gateway over a mailbox, used by tests and local tooling."""

    def __init__(self, mailbox: NotificationMailbox) -> None:
        self._mailbox = mailbox
        self.online = True

    def _ensure_online(self) -> None:
        if not self.online:
            raise GatewayUnavailableError("offline", "Mailbox is unreachable")

    def fetch_pending(self) -> list[Notification]:
        self._ensure_online()
        try:
            return self._mailbox.list_pending()
        except StorageError as exc:
            raise GatewayUnavailableError("storage_error", str(exc)) from exc

    def acknowledge(self, ids: Sequence[str]) -> int:
        self._ensure_online()
        return self._mailbox.acknowledge(ids)


GatewayFactory = Callable[[ApiCredentials], MailboxGateway]


class NotificationSink(Protocol):
    name: str

    def show(self, notification: Notification) -> None: ...


@dataclass
class PanelSink:
    """In-dashboard list, most recent first."""

    name: str = "panel"
    entries: list[Notification] = field(default_factory=list)
    unread_count: int = 0

    def show(self, notification: Notification) -> None:
        self.entries.insert(0, notification)
        self.unread_count += 1

    def mark_all_read(self) -> None:
        self.unread_count = 0


@dataclass
class SystemNotificationSink:
    """Operating-system notification surface; silent without permission."""

    name: str = "system"
    permission_granted: bool = True
    shown: list[Notification] = field(default_factory=list)

    def show(self, notification: Notification) -> None:
        if not self.permission_granted:
            logger.debug("system notification permission missing; not showing %s", notification.id)
            return
        self.shown.append(notification)


@dataclass
class BannerSink:
    """Single in-page banner holding the latest notification."""

    name: str = "banner"
    current: Notification | None = None
    history: list[Notification] = field(default_factory=list)

    def show(self, notification: Notification) -> None:
        self.current = notification
        self.history.append(notification)

    def dismiss(self) -> None:
        self.current = None


class NotificationPresenter:
    """Single dispatch path from notifications to an explicit list of sinks."""

    def __init__(self, sinks: Iterable[NotificationSink], *, memory: int = 500) -> None:
        self._sinks = list(sinks)
        self._memory = max(1, memory)
        self._seen: OrderedDict[str, None] = OrderedDict()
        self._lock = threading.Lock()

    @property
    def sinks(self) -> list[NotificationSink]:
        return list(self._sinks)

    def present(self, notification: Notification) -> bool:
        with self._lock:
            if notification.id in self._seen:
                return False
            self._seen[notification.id] = None
            while len(self._seen) > self._memory:
                self._seen.popitem(last=False)
        for sink in self._sinks:
            try:
                sink.show(notification)
            except Exception:
                logger.exception("sink %s failed to show notification %s", sink.name, notification.id)
        return True

    def present_all(self, notifications: Iterable[Notification]) -> int:
        return sum(1 for notification in notifications if self.present(notification))


def _drain(gateway: MailboxGateway, presenter: NotificationPresenter, *, source: str) -> int:
    try:
        pending = gateway.fetch_pending()
    except GatewayUnavailableError as exc:
        logger.info("%s: mailbox unavailable (%s); skipping", source, exc.error_code)
        return 0
    if not pending:
        return 0
    shown = presenter.present_all(pending)
    ids = [notification.id for notification in pending]
    try:
        gateway.acknowledge(ids)
    except GatewayUnavailableError as exc:
        logger.warning("%s: could not acknowledge %d notifications (%s)", source, len(ids), exc.error_code)
    return shown


class _PeriodicRunner(ABC):
    def __init__(self) -> None:
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    @abstractmethod
    def interval_seconds(self) -> float: ...

    @abstractmethod
    def _run_once(self) -> None: ...

    def _loop(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            try:
                self._run_once()
            except Exception:
                logger.exception("%s iteration failed", type(self).__name__)

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name=type(self).__name__, daemon=True)
        self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()


class PollingConsumer(_PeriodicRunner):
    """Dashboard poller: timer ticks plus an immediate check when the page becomes visible."""

    def __init__(
        self,
        *,
        context: DashboardContext,
        presenter: NotificationPresenter,
        gateway_factory: GatewayFactory = HttpMailboxGateway,
    ) -> None:
        super().__init__()
        self._context = context
        self._presenter = presenter
        self._gateway_factory = gateway_factory
        self._in_flight = threading.Lock()

    @property
    def interval_seconds(self) -> float:
        return MOBILE_POLL_INTERVAL_SECONDS if self._context.mobile else DESKTOP_POLL_INTERVAL_SECONDS

    def tick(self) -> int:
        if not self._in_flight.acquire(blocking=False):
            logger.debug("previous poll still running; skipping tick")
            return 0
        try:
            credentials = self._context.credentials()
            if credentials is None:
                return 0
            return _drain(self._gateway_factory(credentials), self._presenter, source="poll")
        finally:
            self._in_flight.release()

    def on_visibility_change(self, visible: bool) -> int:
        self._context.visible = visible
        if not visible:
            return 0
        return self.tick()

    def _run_once(self) -> None:
        self.tick()


STORE_CREDENTIALS = "STORE_CREDENTIALS"
VERIFY_CREDENTIALS = "VERIFY_CREDENTIALS"
CHECK_NOTIFICATIONS = "CHECK_NOTIFICATIONS"
CREDENTIALS_STATUS = "CREDENTIALS_STATUS"
REQUEST_CREDENTIALS = "REQUEST_CREDENTIALS"
CHECK_COMPLETE = "CHECK_COMPLETE"


class BackgroundWorkerConsumer(_PeriodicRunner):
    """Worker that checks the mailbox on wake-ups and on explicit messages.

    The worker may be restarted at any time, so credentials are re-read from
    the vault on every check instead of being held for the session.
    """

    def __init__(
        self,
        *,
        vault: CredentialVault,
        presenter: NotificationPresenter,
        gateway_factory: GatewayFactory = HttpMailboxGateway,
        wake_interval_seconds: float = WORKER_WAKE_INTERVAL_SECONDS,
    ) -> None:
        super().__init__()
        self._vault = vault
        self._presenter = presenter
        self._gateway_factory = gateway_factory
        self._wake_interval_seconds = wake_interval_seconds

    @property
    def interval_seconds(self) -> float:
        return self._wake_interval_seconds

    def check_notifications(self) -> int:
        credentials = self._vault.load()
        if credentials is None:
            logger.info("worker has no credentials; skipping notification check")
            return 0
        return _drain(self._gateway_factory(credentials), self._presenter, source="worker")

    def handle_message(self, message: dict[str, Any]) -> dict[str, Any] | None:
        message_type = message.get("type")
        if message_type == STORE_CREDENTIALS:
            try:
                self._vault.store(str(message.get("apiUrl") or ""), str(message.get("apiKey") or ""))
            except ValueError:
                return {"type": CREDENTIALS_STATUS, "status": "invalid"}
            self.check_notifications()
            return {"type": CREDENTIALS_STATUS, "status": "success"}
        if message_type == VERIFY_CREDENTIALS:
            if self._vault.load() is None:
                return {"type": REQUEST_CREDENTIALS}
            return {"type": CREDENTIALS_STATUS, "status": "success"}
        if message_type == CHECK_NOTIFICATIONS:
            if self._vault.load() is None:
                return {"type": REQUEST_CREDENTIALS}
            return {"type": CHECK_COMPLETE, "presented": self.check_notifications()}
        logger.debug("worker ignoring message type %r", message_type)
        return None

    def _run_once(self) -> None:
        self.check_notifications()


class PushConsumer:
    """Presents a pushed payload immediately; the next poll or wake-up acknowledges it."""

    def __init__(self, presenter: NotificationPresenter, *, clock: Callable[[], int] = now_ms) -> None:
        self._presenter = presenter
        self._clock = clock

    def on_push(self, payload: dict[str, Any]) -> bool:
        record = dict(payload)
        now = self._clock()
        record.setdefault("id", new_notification_id(now))
        record.setdefault("timestamp", now)
        record.setdefault("type", "system")
        try:
            notification = Notification.model_validate(record)
        except ValidationError:
            logger.warning("ignoring malformed push payload")
            return False
        return self._presenter.present(notification)
