from __future__ import annotations

import hmac
import json
import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Query, Request, Response
from fastapi.responses import PlainTextResponse
from starlette.concurrency import run_in_threadpool

from .completion import CompletionClient, create_completion_client
from .config import Settings, get_settings
from .conversations import ConversationNotFoundError, ConversationStore
from .email_alerts import EmailSender, RecipientDirectory, StaffAlerter, create_email_sender
from .escalation import EscalationRaiser, sweep_conversations
from .kv_store import KeyValueStore, StorageError, create_kv_store, now_ms
from .mailbox import NotificationMailbox
from .menu import goodbye_message, system_prompt
from .menu_document import MENU_DOCUMENT_FILENAME, render_menu_pdf
from .models import (
    AgentMessageRequest,
    AgentMessageResponse,
    ClearConversationResponse,
    ConversationDetailResponse,
    ConversationListResponse,
    DemoDataRequest,
    DemoDataResponse,
    EmailRecipientsDocument,
    EscalationSweepResponse,
    InboundWebhookResponse,
    MarkReceivedRequest,
    MarkReceivedResponse,
    PendingNotificationsResponse,
    StatusUpdateRequest,
    StatusUpdateResponse,
    TestNotificationRequest,
    TestNotificationResponse,
)
from .outbound import OutboundDocument, OutboundSender, OutboundText, create_outbound_sender, mask_recipient
from .responder import AssistantReply, AssistantResponder, RetryPolicy
from .webhook_security import verify_whatsapp_signature, webhook_rejected

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["support-desk"])
public_router = APIRouter(tags=["public"])

_settings: Settings = get_settings()


def _create_conversation_store(settings: Settings, kv: KeyValueStore) -> ConversationStore:
    return ConversationStore(
        kv,
        history_limit=settings.conversation_history_limit,
        ttl_seconds=settings.conversation_ttl_seconds,
    )


def _create_email_sender(settings: Settings) -> EmailSender:
    return create_email_sender(
        sender_type=settings.email_sender_type,
        enabled=settings.email_enabled,
        base_url=settings.email_api_base_url,
        api_key=settings.email_api_key,
        from_address=settings.email_from_address,
        timeout_seconds=settings.email_timeout_seconds,
    )


def _create_completion_client(settings: Settings) -> CompletionClient:
    return create_completion_client(
        backend=settings.completion_backend,
        base_url=settings.completion_api_base_url,
        api_key=settings.completion_api_key,
        model=settings.completion_model,
        timeout_seconds=settings.completion_timeout_seconds,
    )


def _create_outbound_sender(settings: Settings) -> OutboundSender:
    return create_outbound_sender(
        sender_type=settings.outbound_sender_type,
        enabled=settings.outbound_enabled,
        base_url=settings.whatsapp_api_base_url,
        access_token=settings.whatsapp_access_token,
        phone_number_id=settings.whatsapp_phone_number_id,
    )


def _create_responder(settings: Settings) -> AssistantResponder:
    return AssistantResponder(
        store=conversation_store,
        completion=completion_client,
        raiser=escalation_raiser,
        system_prompt=system_prompt(settings.restaurant_name),
        goodbye_text=goodbye_message(settings.restaurant_name),
        retry=RetryPolicy(
            attempts=settings.completion_max_attempts,
            base_delay=settings.completion_base_delay_seconds,
            max_delay=settings.completion_max_delay_seconds,
        ),
    )


kv_store: KeyValueStore = create_kv_store(backend=_settings.kv_store_backend, database_url=_settings.database_url)
conversation_store: ConversationStore = _create_conversation_store(_settings, kv_store)
mailbox = NotificationMailbox(kv_store, ttl_seconds=_settings.notification_ttl_seconds)
recipient_directory = RecipientDirectory(kv_store)
email_sender: EmailSender = _create_email_sender(_settings)
staff_alerter = StaffAlerter(
    sender=email_sender,
    directory=recipient_directory,
    dashboard_base_url=_settings.dashboard_base_url,
    fallback_recipient=_settings.email_fallback_recipient,
    enabled=_settings.email_enabled,
)
escalation_raiser = EscalationRaiser(mailbox, staff_alerter)
completion_client: CompletionClient = _create_completion_client(_settings)
outbound_sender: OutboundSender = _create_outbound_sender(_settings)
responder: AssistantResponder = _create_responder(_settings)


def configure_runtime(
    settings: Settings,
    *,
    completion: CompletionClient | None = None,
    outbound: OutboundSender | None = None,
    email: EmailSender | None = None,
) -> None:
    """Rebuild every module-level collaborator from ``settings``."""
    global _settings, kv_store, conversation_store, mailbox, recipient_directory, email_sender
    global staff_alerter, escalation_raiser, completion_client, outbound_sender, responder

    _settings = settings
    kv_store = create_kv_store(backend=settings.kv_store_backend, database_url=settings.database_url)
    conversation_store = _create_conversation_store(settings, kv_store)
    mailbox = NotificationMailbox(kv_store, ttl_seconds=settings.notification_ttl_seconds)
    recipient_directory = RecipientDirectory(kv_store)
    email_sender = email or _create_email_sender(settings)
    staff_alerter = StaffAlerter(
        sender=email_sender,
        directory=recipient_directory,
        dashboard_base_url=settings.dashboard_base_url,
        fallback_recipient=settings.email_fallback_recipient,
        enabled=settings.email_enabled,
    )
    escalation_raiser = EscalationRaiser(mailbox, staff_alerter)
    completion_client = completion or _create_completion_client(settings)
    outbound_sender = outbound or _create_outbound_sender(settings)
    responder = _create_responder(settings)


def reset_runtime_state_for_tests() -> None:
    kv_store.reset()


def _require_admin(request: Request) -> None:
    header = request.headers.get("Authorization", "")
    if not header.startswith("Bearer "):
        logger.info("rejected %s %s: missing bearer token", request.method, request.url.path)
        raise HTTPException(401, "unauthorized")
    token = header.removeprefix("Bearer ").strip()
    if not token or not hmac.compare_digest(token.encode("utf-8"), _settings.admin_api_key.encode("utf-8")):
        logger.info("rejected %s %s: token mismatch", request.method, request.url.path)
        raise HTTPException(401, "unauthorized")


def _require_user_id(user_id: str | None) -> str:
    normalized = (user_id or "").strip()
    if not normalized:
        raise HTTPException(400, "userId is required")
    return normalized


def _upstream_failure(exc: StorageError) -> HTTPException:
    logger.error("storage failure: %s", exc)
    return HTTPException(502, str(exc))


@router.get("/conversations", response_model=ConversationListResponse)
def list_conversations(request: Request) -> ConversationListResponse:
    _require_admin(request)
    try:
        conversations = conversation_store.list_conversations(limit=_settings.conversation_list_limit)
    except StorageError as exc:
        raise _upstream_failure(exc) from exc
    return ConversationListResponse(conversations=conversations, total_count=len(conversations))


@router.get("/conversation", response_model=ConversationDetailResponse)
def get_conversation(
    request: Request,
    user_id: str | None = Query(default=None, alias="userId"),
) -> ConversationDetailResponse:
    _require_admin(request)
    user_id = _require_user_id(user_id)
    try:
        snapshot = conversation_store.get_conversation(user_id)
    except ConversationNotFoundError as exc:
        raise HTTPException(404, f"conversation not found: {user_id}") from exc
    return ConversationDetailResponse(user_id=user_id, messages=snapshot.messages, metadata=snapshot.metadata)


@router.put("/conversation/status", response_model=StatusUpdateResponse)
def update_conversation_status(
    request: Request,
    payload: StatusUpdateRequest | None = None,
    user_id: str | None = Query(default=None, alias="userId"),
) -> StatusUpdateResponse:
    _require_admin(request)
    user_id = _require_user_id(user_id)
    if payload is None or payload.status is None:
        raise HTTPException(400, "status is required")
    try:
        metadata = conversation_store.set_status(user_id, payload.agent_id, payload.status)
    except ConversationNotFoundError as exc:
        raise HTTPException(404, f"conversation not found: {user_id}") from exc
    except ValueError as exc:
        raise HTTPException(400, str(exc)) from exc
    except StorageError as exc:
        raise _upstream_failure(exc) from exc
    return StatusUpdateResponse(user_id=user_id, status=metadata.status, handled_by=metadata.handled_by)


@router.post("/conversation/message", response_model=AgentMessageResponse)
def send_agent_message(
    request: Request,
    payload: AgentMessageRequest | None = None,
    user_id: str | None = Query(default=None, alias="userId"),
) -> AgentMessageResponse:
    _require_admin(request)
    user_id = _require_user_id(user_id)
    if payload is None or payload.agent_id is None:
        raise HTTPException(400, "agentId is required")
    if payload.message is None:
        raise HTTPException(400, "message is required")
    try:
        message = conversation_store.record_agent_message(user_id, payload.agent_id, payload.message)
    except ConversationNotFoundError as exc:
        raise HTTPException(404, f"conversation not found: {user_id}") from exc
    except ValueError as exc:
        raise HTTPException(400, str(exc)) from exc
    except StorageError as exc:
        raise _upstream_failure(exc) from exc

    result = outbound_sender.send(OutboundText(recipient=user_id, body=payload.message))
    if result.status != "sent":
        logger.warning(
            "agent reply to %s not delivered: %s %s",
            mask_recipient(user_id),
            result.error_code,
            result.error_message,
        )
    return AgentMessageResponse(user_id=user_id, message=message, delivery_state=result.status)


@router.delete("/conversation", response_model=ClearConversationResponse)
def clear_conversation(
    request: Request,
    user_id: str | None = Query(default=None, alias="userId"),
) -> ClearConversationResponse:
    _require_admin(request)
    user_id = _require_user_id(user_id)
    try:
        metadata = conversation_store.clear_history(user_id)
    except StorageError as exc:
        raise _upstream_failure(exc) from exc
    return ClearConversationResponse(user_id=user_id, status=metadata.status)


@router.get("/notifications/pending", response_model=PendingNotificationsResponse)
def pending_notifications(request: Request) -> PendingNotificationsResponse:
    _require_admin(request)
    try:
        notifications = mailbox.list_pending()
    except StorageError as exc:
        raise _upstream_failure(exc) from exc
    return PendingNotificationsResponse(notifications=notifications, count=len(notifications))


@router.get("/notifications/delivered", response_model=PendingNotificationsResponse)
def delivered_notifications(request: Request) -> PendingNotificationsResponse:
    _require_admin(request)
    try:
        notifications = mailbox.list_delivered()
    except StorageError as exc:
        raise _upstream_failure(exc) from exc
    return PendingNotificationsResponse(notifications=notifications, count=len(notifications))


@router.post("/notifications/mark-received", response_model=MarkReceivedResponse)
def mark_notifications_received(request: Request, payload: MarkReceivedRequest | None = None) -> MarkReceivedResponse:
    _require_admin(request)
    if payload is None or payload.ids is None:
        raise HTTPException(400, "ids must be a list")
    marked = mailbox.acknowledge(payload.ids)
    return MarkReceivedResponse(success=True, marked=marked)


@router.post("/notifications/test", response_model=TestNotificationResponse)
def create_test_notification(payload: TestNotificationRequest | None = None) -> TestNotificationResponse:
    notification_type = payload.type if payload is not None else TestNotificationRequest().type
    try:
        notification = mailbox.create_test_notification(notification_type)
    except StorageError as exc:
        raise _upstream_failure(exc) from exc
    return TestNotificationResponse(success=True, notification=notification)


@router.post("/notifications/check", response_model=EscalationSweepResponse)
def check_conversations_for_notifications(request: Request) -> EscalationSweepResponse:
    _require_admin(request)
    try:
        result = sweep_conversations(
            conversation_store,
            escalation_raiser,
            now_ms=now_ms(),
            window_seconds=_settings.escalation_activity_window_seconds,
        )
    except StorageError as exc:
        raise _upstream_failure(exc) from exc
    return EscalationSweepResponse(success=True, checked=result.checked, raised=result.raised)


@router.get("/email-recipients", response_model=EmailRecipientsDocument)
def get_email_recipients(request: Request) -> EmailRecipientsDocument:
    _require_admin(request)
    return EmailRecipientsDocument(notifications=recipient_directory.load())


@router.put("/email-recipients", response_model=EmailRecipientsDocument)
def update_email_recipients(request: Request, payload: EmailRecipientsDocument) -> EmailRecipientsDocument:
    _require_admin(request)
    try:
        saved = recipient_directory.save(payload.notifications)
    except StorageError as exc:
        raise _upstream_failure(exc) from exc
    return EmailRecipientsDocument(notifications=saved)


@router.post("/test/create-data", response_model=DemoDataResponse)
def create_demo_data(request: Request, payload: DemoDataRequest | None = None) -> DemoDataResponse:
    _require_admin(request)
    user_id = (payload.user_id if payload is not None else None) or f"test_{now_ms()}"
    try:
        messages = conversation_store.seed_demo_conversation(user_id)
    except StorageError as exc:
        raise _upstream_failure(exc) from exc
    return DemoDataResponse(success=True, user_id=user_id, message_count=len(messages))


@router.get("/menu/document")
def menu_document() -> Response:
    pdf_content = render_menu_pdf(_settings.restaurant_name)
    headers = {"Content-Disposition": f'inline; filename="{MENU_DOCUMENT_FILENAME}"'}
    return Response(content=pdf_content, media_type="application/pdf", headers=headers)


@public_router.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@public_router.get("/webhook")
def verify_webhook(
    mode: str | None = Query(default=None, alias="hub.mode"),
    token: str | None = Query(default=None, alias="hub.verify_token"),
    challenge: str = Query(default="", alias="hub.challenge"),
) -> PlainTextResponse:
    expected = _settings.whatsapp_verify_token.strip()
    if mode == "subscribe" and expected and token and hmac.compare_digest(token, expected):
        return PlainTextResponse(challenge)
    logger.warning("webhook verification refused (mode=%s)", mode)
    raise HTTPException(403, "verification failed")


def _inbound_messages(payload: Any) -> list[dict[str, Any]]:
    """Flatten ``entry[].changes[].value.messages[]`` from a WhatsApp webhook body."""
    found: list[dict[str, Any]] = []
    if not isinstance(payload, dict):
        return found
    for entry in payload.get("entry") or []:
        if not isinstance(entry, dict):
            continue
        for change in entry.get("changes") or []:
            value = change.get("value") if isinstance(change, dict) else None
            if not isinstance(value, dict):
                continue
            for message in value.get("messages") or []:
                if isinstance(message, dict) and message.get("from"):
                    found.append(message)
    return found


def _deliver_reply(recipient: str, reply: AssistantReply) -> None:
    if reply.needs_human:
        return
    outbound: list[OutboundText | OutboundDocument] = [OutboundText(recipient=recipient, body=reply.text)]
    if reply.kind == "document":
        outbound.append(
            OutboundDocument(
                recipient=recipient,
                link=f"{_settings.public_base_url.rstrip('/')}/api/menu/document",
                filename=MENU_DOCUMENT_FILENAME,
                caption=_settings.restaurant_name,
            )
        )
    for message in outbound:
        result = outbound_sender.send(message)
        if result.status != "sent":
            logger.warning(
                "reply to %s not delivered: %s %s",
                mask_recipient(recipient),
                result.error_code,
                result.error_message,
            )


def _process_inbound(messages: list[dict[str, Any]]) -> int:
    processed = 0
    for message in messages:
        sender = str(message["from"])
        message_type = str(message.get("type") or "")
        text = message.get("text")
        content = text.get("body") if isinstance(text, dict) else None
        reply = responder.handle_message(sender, message_type, content)
        _deliver_reply(sender, reply)
        processed += 1
    return processed


@public_router.post("/webhook", response_model=InboundWebhookResponse)
async def receive_webhook(request: Request) -> InboundWebhookResponse:
    body = await request.body()
    verification = verify_whatsapp_signature(settings=_settings, body=body, headers=request.headers)
    if webhook_rejected(_settings, verification):
        raise HTTPException(401, "invalid webhook signature")
    try:
        payload = json.loads(body.decode("utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise HTTPException(400, "invalid JSON payload") from exc
    processed = await run_in_threadpool(_process_inbound, _inbound_messages(payload))
    return InboundWebhookResponse(accepted=True, processed=processed)
