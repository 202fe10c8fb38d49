from __future__ import annotations

from support_desk.conversations import ConversationStore
from support_desk.email_alerts import RecipientDirectory, StaffAlerter, StubEmailSender
from support_desk.escalation import EscalationRaiser, detect_escalation, sweep_conversations
from support_desk.kv_store import InMemoryKeyValueStore
from support_desk.mailbox import NotificationMailbox
from support_desk.models import EmailRecipients, Message


def _transcript(*turns: tuple[str, str]) -> list[Message]:
    return [
        Message(role=role, content=content, timestamp=1_000 + index)  # type: ignore[arg-type]
        for index, (role, content) in enumerate(turns)
    ]


def test_direct_help_request_is_urgent() -> None:
    decision = detect_escalation("u1", _transcript(("user", "Can you help me with my order?")))

    assert decision is not None
    assert decision.rule == "direct_help_request"
    assert decision.type == "help_needed"
    assert decision.title == "Customer Needs Help"
    assert decision.urgent is True
    assert decision.last_message == "Can you help me with my order?"


def test_direct_help_wins_over_order_confirmation() -> None:
    decision = detect_escalation(
        "u1",
        _transcript(("user", "Help me, I want to order"), ("assistant", "Your order is confirmed.")),
    )

    assert decision is not None
    assert decision.rule == "direct_help_request"


def test_early_help_signal_needs_two_phrases() -> None:
    decision = detect_escalation(
        "u1",
        _transcript(("user", "Pourquoi c'est si cher? Merci"), ("assistant", "Nos prix sont justes.")),
    )

    assert decision is not None
    assert decision.rule == "early_help_signal"
    assert decision.urgent is True


def test_follow_up_after_answer_is_not_urgent() -> None:
    decision = detect_escalation(
        "u1",
        _transcript(
            ("user", "Bonjour"),
            ("assistant", "Bienvenue au Complexe LeSims!"),
            ("user", "Quand ouvrez-vous?"),
            ("assistant", "Nous ouvrons à midi."),
        ),
    )

    assert decision is not None
    assert decision.rule == "follow_up_after_answer"
    assert decision.title == "Customer Needs Clarification"
    assert decision.urgent is False
    assert decision.last_message == "quand ouvrez-vous?"


def test_ai_uncertainty_carries_the_answer() -> None:
    decision = detect_escalation(
        "u1",
        _transcript(("user", "Vous avez du tilapia braisé?"), ("assistant", "Désolé, je ne sais pas.")),
    )

    assert decision is not None
    assert decision.rule == "ai_uncertainty"
    assert decision.title == "AI Knowledge Gap"
    assert decision.ai_response == "désolé, je ne sais pas."
    assert decision.extra()["aiResponse"] == "désolé, je ne sais pas."


def test_order_confirmation() -> None:
    decision = detect_escalation(
        "u1",
        _transcript(("user", "Je voudrais deux poulets braisés"), ("assistant", "Votre commande est confirmée.")),
    )

    assert decision is not None
    assert decision.rule == "order_confirmation"
    assert decision.type == "order_confirmed"
    assert decision.title == "New Order"
    assert decision.urgent is None
    assert "urgent" not in decision.extra()


def test_plain_greeting_does_not_escalate() -> None:
    assert detect_escalation("u1", _transcript(("user", "Bonjour"), ("assistant", "Bienvenue!"))) is None
    assert detect_escalation("u1", []) is None
    assert detect_escalation("u1", _transcript(("assistant", "a"), ("assistant", "b"))) is None


def test_raiser_creates_notification_and_emails_staff() -> None:
    kv = InMemoryKeyValueStore()
    mailbox = NotificationMailbox(kv)
    directory = RecipientDirectory(kv)
    directory.save(EmailRecipients(help_needed=["chef@lesims.cm"], all=["gerant@lesims.cm"]))
    sender = StubEmailSender()
    alerter = StaffAlerter(sender=sender, directory=directory, dashboard_base_url="https://desk.example")
    raiser = EscalationRaiser(mailbox, alerter)

    decision = detect_escalation("u1", _transcript(("user", "I need help please")))
    assert decision is not None
    notification = raiser.raise_for(decision)

    pending = mailbox.list_pending()
    assert [item.id for item in pending] == [notification.id]
    assert pending[0].user_id == "u1"
    assert pending[0].urgent is True
    assert sorted(payload.to for payload in sender.sent) == ["chef@lesims.cm", "gerant@lesims.cm"]
    assert sender.sent[0].subject == "LeSims Dashboard: Customer Needs Help"
    assert "https://desk.example/?chat=u1" in sender.sent[0].html_body


class _Clock:
    def __init__(self, value: int) -> None:
        self.value = value

    def __call__(self) -> int:
        return self.value


def test_sweep_checks_only_recent_ai_handled_conversations_waiting_on_reply() -> None:
    kv = InMemoryKeyValueStore()
    clock = _Clock(1_000_000)
    store = ConversationStore(kv, clock=clock)
    mailbox = NotificationMailbox(kv, clock=clock)
    raiser = EscalationRaiser(mailbox)

    store.append_message("stale", "user", "help me")
    clock.value += 10 * 60 * 1000
    store.append_message("waiting", "user", "help me please")
    store.append_message("answered", "user", "help me")
    store.append_message("answered", "assistant", "Bien sûr!")
    store.append_message("human", "user", "help me")
    store.set_status("human", "agent-7", "human-handled")
    store.append_message("quiet", "user", "Bonjour")

    result = sweep_conversations(store, raiser, now_ms=clock.value + 1_000, window_seconds=300)

    assert result.checked == 2
    assert result.raised == 1
    assert [notification.user_id for notification in mailbox.list_pending()] == ["waiting"]
