from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import Sequence

import pytest

from support_desk.completion import StubCompletionClient
from support_desk.conversations import ConversationStore
from support_desk.delivery import (
    DESKTOP_POLL_INTERVAL_SECONDS,
    MOBILE_POLL_INTERVAL_SECONDS,
    ApiCredentials,
    BackgroundWorkerConsumer,
    BannerSink,
    CredentialVault,
    DashboardContext,
    GatewayUnavailableError,
    LocalMailboxGateway,
    NotificationPresenter,
    PanelSink,
    PollingConsumer,
    PushConsumer,
    SystemNotificationSink,
    _PeriodicRunner,
)
from support_desk.escalation import EscalationRaiser
from support_desk.kv_store import InMemoryKeyValueStore
from support_desk.mailbox import NotificationMailbox
from support_desk.models import Notification
from support_desk.responder import AssistantResponder


def _notification(notification_id: str = "n1") -> Notification:
    return Notification(id=notification_id, type="help_needed", title="t", body="b", timestamp=1)


def _connected_context() -> DashboardContext:
    context = DashboardContext()
    context.connect("https://desk.example/", "secret-key")
    return context


def test_help_request_reaches_dashboard_once_and_is_acknowledged() -> None:
    kv = InMemoryKeyValueStore()
    mailbox = NotificationMailbox(kv)
    responder = AssistantResponder(
        store=ConversationStore(kv),
        completion=StubCompletionClient(),
        raiser=EscalationRaiser(mailbox),
        system_prompt="prompt",
        goodbye_text="bye",
        sleep=lambda _: None,
    )
    gateway = LocalMailboxGateway(mailbox)
    panel = PanelSink()
    system = SystemNotificationSink()
    presenter = NotificationPresenter([panel, system])
    poller = PollingConsumer(context=_connected_context(), presenter=presenter, gateway_factory=lambda _: gateway)

    responder.handle_message("u1", "text", "help me please")
    assert len(mailbox.list_pending()) == 1

    assert poller.tick() == 1
    assert poller.tick() == 0

    assert mailbox.list_pending() == []
    assert len(mailbox.list_delivered()) == 1
    assert [entry.user_id for entry in panel.entries] == ["u1"]
    assert panel.unread_count == 1
    assert len(system.shown) == 1


def test_poll_interval_depends_on_device() -> None:
    context = _connected_context()
    poller = PollingConsumer(context=context, presenter=NotificationPresenter([]))

    assert poller.interval_seconds == DESKTOP_POLL_INTERVAL_SECONDS
    context.mobile = True
    assert poller.interval_seconds == MOBILE_POLL_INTERVAL_SECONDS


def test_tick_is_skipped_while_previous_poll_is_in_flight() -> None:
    entered = threading.Event()
    release = threading.Event()

    class _SlowGateway:
        def fetch_pending(self) -> list[Notification]:
            entered.set()
            release.wait(5)
            return [_notification()]

        def acknowledge(self, ids: Sequence[str]) -> int:
            return len(ids)

    poller = PollingConsumer(
        context=_connected_context(),
        presenter=NotificationPresenter([PanelSink()]),
        gateway_factory=lambda _: _SlowGateway(),
    )
    results: list[int] = []
    worker = threading.Thread(target=lambda: results.append(poller.tick()))
    worker.start()
    assert entered.wait(5)

    assert poller.tick() == 0

    release.set()
    worker.join(5)
    assert results == [1]


def test_poll_without_credentials_does_nothing() -> None:
    calls: list[ApiCredentials] = []
    poller = PollingConsumer(
        context=DashboardContext(),
        presenter=NotificationPresenter([]),
        gateway_factory=lambda credentials: calls.append(credentials),  # type: ignore[arg-type,return-value]
    )

    assert poller.tick() == 0
    assert calls == []


def test_visibility_change_triggers_immediate_check() -> None:
    mailbox = NotificationMailbox(InMemoryKeyValueStore())
    mailbox.create("system", "hello", "world")
    gateway = LocalMailboxGateway(mailbox)
    poller = PollingConsumer(
        context=_connected_context(),
        presenter=NotificationPresenter([BannerSink()]),
        gateway_factory=lambda _: gateway,
    )

    assert poller.on_visibility_change(False) == 0
    assert poller.on_visibility_change(True) == 1


def test_unreachable_mailbox_leaves_notifications_pending() -> None:
    mailbox = NotificationMailbox(InMemoryKeyValueStore())
    mailbox.create("system", "hello", "world")
    gateway = LocalMailboxGateway(mailbox)
    gateway.online = False
    poller = PollingConsumer(
        context=_connected_context(),
        presenter=NotificationPresenter([PanelSink()]),
        gateway_factory=lambda _: gateway,
    )

    assert poller.tick() == 0
    assert len(mailbox.list_pending()) == 1


def test_presenter_deduplicates_and_survives_sink_errors() -> None:
    class _ExplodingSink:
        name = "exploding"

        def show(self, notification: Notification) -> None:
            raise RuntimeError("render failed")

    banner = BannerSink()
    presenter = NotificationPresenter([_ExplodingSink(), banner])

    assert presenter.present(_notification("n1")) is True
    assert presenter.present(_notification("n1")) is False
    assert presenter.present_all([_notification("n1"), _notification("n2")]) == 1
    assert [item.id for item in banner.history] == ["n1", "n2"]
    assert banner.current is not None and banner.current.id == "n2"


def test_system_sink_without_permission_stays_silent() -> None:
    sink = SystemNotificationSink(permission_granted=False)

    sink.show(_notification())

    assert sink.shown == []


def test_vault_prefers_memory_then_file_then_context(tmp_path: Path) -> None:
    path = tmp_path / "credentials.json"
    context = _connected_context()
    vault = CredentialVault(path, context=context, clock=lambda: 42)

    from_context = vault.load()
    assert from_context is not None and from_context.api_url == "https://desk.example"

    stored = vault.store("https://api.example/", "worker-key")
    assert stored.timestamp == 42
    assert json.loads(path.read_text(encoding="utf-8"))["apiKey"] == "worker-key"

    vault.drop_cached()
    reloaded = vault.load()
    assert reloaded is not None and reloaded.api_key == "worker-key"

    vault.clear()
    assert not path.exists()
    fallback = vault.load()
    assert fallback is not None and fallback.api_key == "secret-key"


def test_worker_messages(tmp_path: Path) -> None:
    mailbox = NotificationMailbox(InMemoryKeyValueStore())
    gateway = LocalMailboxGateway(mailbox)
    seen: list[ApiCredentials] = []

    def _factory(credentials: ApiCredentials) -> LocalMailboxGateway:
        seen.append(credentials)
        return gateway

    panel = PanelSink()
    worker = BackgroundWorkerConsumer(
        vault=CredentialVault(tmp_path / "credentials.json"),
        presenter=NotificationPresenter([panel]),
        gateway_factory=_factory,
    )

    assert worker.handle_message({"type": "VERIFY_CREDENTIALS"}) == {"type": "REQUEST_CREDENTIALS"}
    assert worker.handle_message({"type": "CHECK_NOTIFICATIONS"}) == {"type": "REQUEST_CREDENTIALS"}
    assert worker.handle_message({"type": "STORE_CREDENTIALS", "apiUrl": "", "apiKey": ""}) == {
        "type": "CREDENTIALS_STATUS",
        "status": "invalid",
    }
    assert worker.handle_message({"type": "STORE_CREDENTIALS", "apiUrl": "https://api.example", "apiKey": "k"}) == {
        "type": "CREDENTIALS_STATUS",
        "status": "success",
    }

    mailbox.create("order_confirmed", "New Order", "order")
    assert worker.handle_message({"type": "CHECK_NOTIFICATIONS"}) == {"type": "CHECK_COMPLETE", "presented": 1}
    assert worker.handle_message({"type": "VERIFY_CREDENTIALS"}) == {"type": "CREDENTIALS_STATUS", "status": "success"}
    assert worker.handle_message({"type": "SOMETHING_ELSE"}) is None
    assert mailbox.list_pending() == []
    assert len(panel.entries) == 1
    assert seen[-1].api_key == "k"


def test_restarted_worker_reads_credentials_from_file(tmp_path: Path) -> None:
    path = tmp_path / "credentials.json"
    CredentialVault(path).store("https://api.example", "persisted-key")
    mailbox = NotificationMailbox(InMemoryKeyValueStore())
    mailbox.create("system", "hello", "world")
    gateway = LocalMailboxGateway(mailbox)

    worker = BackgroundWorkerConsumer(
        vault=CredentialVault(path),
        presenter=NotificationPresenter([PanelSink()]),
        gateway_factory=lambda _: gateway,
    )

    assert worker.check_notifications() == 1
    assert mailbox.list_pending() == []


def test_push_presents_without_acknowledging() -> None:
    mailbox = NotificationMailbox(InMemoryKeyValueStore())
    pending = mailbox.create("help_needed", "Customer Needs Help", "body", user_id="u1")
    panel = PanelSink()
    presenter = NotificationPresenter([panel])
    push = PushConsumer(presenter, clock=lambda: 1_760_000_000_000)

    assert push.on_push(pending.to_record()) is True
    assert push.on_push({"title": "Ping", "body": "pong"}) is True
    assert push.on_push({"body": "missing title"}) is False

    assert len(mailbox.list_pending()) == 1
    assert panel.entries[0].type == "system"
    assert panel.entries[1].id == pending.id

    poller = PollingConsumer(
        context=_connected_context(),
        presenter=presenter,
        gateway_factory=lambda _: LocalMailboxGateway(mailbox),
    )
    assert poller.tick() == 0
    assert mailbox.list_pending() == []


def test_gateway_error_carries_code() -> None:
    error = GatewayUnavailableError("offline", "Mailbox is unreachable")

    assert error.error_code == "offline"
    assert str(error) == "Mailbox is unreachable"


def test_periodic_runner_requires_interval_and_iteration() -> None:
    class _IntervalOnly(_PeriodicRunner):
        @property
        def interval_seconds(self) -> float:
            return 1.0

    with pytest.raises(TypeError):
        _IntervalOnly()  # type: ignore[abstract]
