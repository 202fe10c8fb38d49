from __future__ import annotations

import html
import json
import logging
import socket
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Literal, Protocol

from pydantic import ValidationError

from .kv_store import KeyValueStore, StorageError
from .models import NOTIFICATION_HELP_NEEDED, NOTIFICATION_ORDER_CONFIRMED, EmailRecipients, Notification

logger = logging.getLogger(__name__)

RECIPIENTS_KEY = "staff_email_recipients"

EmailResultStatus = Literal["sent", "failed"]


@dataclass(frozen=True)
class EmailSendRequest:
    to: str
    subject: str
    html_body: str


@dataclass(frozen=True)
class EmailSendResult:
    status: EmailResultStatus
    attempted_at: datetime
    provider_message_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None


class EmailSender(Protocol):
    def send_email(self, payload: EmailSendRequest) -> EmailSendResult: ...


class StubEmailSender:
    def __init__(self, *, enabled: bool = True) -> None:
        self._enabled = enabled
        self.sent: list[EmailSendRequest] = []

    def send_email(self, payload: EmailSendRequest) -> EmailSendResult:
        attempted_at = datetime.now(timezone.utc)
        if not self._enabled:
            return EmailSendResult(
                status="failed",
                attempted_at=attempted_at,
                error_code="email_disabled",
                error_message="Staff e-mail delivery is disabled",
            )
        if "fail" in payload.to.lower():
            return EmailSendResult(
                status="failed",
                attempted_at=attempted_at,
                error_code="stub_delivery_failed",
                error_message="Stub sender forced failure for recipient",
            )
        self.sent.append(payload)
        return EmailSendResult(
            status="sent",
            attempted_at=attempted_at,
            provider_message_id=f"stub-email-{len(self.sent)}",
        )


class _EmailSendError(Exception):
    """Internal error raised when the e-mail API request fails."""

    def __init__(self, error_code: str, message: str) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message


class HttpEmailSender:
    """Resend-compatible sender posting to ``/emails``."""

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        from_address: str,
        from_name: str = "LeSims Restaurant",
        timeout_seconds: int = 20,
    ) -> None:
        stripped_url = base_url.strip().rstrip("/")
        stripped_key = api_key.strip()
        if not stripped_url:
            raise ValueError("base_url must not be empty")
        if not stripped_key:
            raise ValueError("api_key must not be empty")
        self._base_url = stripped_url
        self._api_key = stripped_key
        self._from = f"{from_name} <{from_address.strip()}>"
        self._timeout_seconds = timeout_seconds

    def send_email(self, payload: EmailSendRequest) -> EmailSendResult:
        attempted_at = datetime.now(timezone.utc)
        body = {
            "from": self._from,
            "to": payload.to,
            "subject": payload.subject,
            "html": payload.html_body,
        }
        try:
            response_data = self._post(body)
        except _EmailSendError as exc:
            return EmailSendResult(
                status="failed",
                attempted_at=attempted_at,
                error_code=exc.error_code,
                error_message=exc.message,
            )
        return EmailSendResult(
            status="sent",
            attempted_at=attempted_at,
            provider_message_id=response_data.get("id"),
        )

    def _post(self, body: dict[str, str]) -> dict[str, Any]:
        request = urllib.request.Request(
            f"{self._base_url}/emails",
            data=json.dumps(body).encode("utf-8"),
            headers={
                "Authorization": f"Bearer {self._api_key}",
                "Content-Type": "application/json",
            },
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self._timeout_seconds) as response:
                return json.loads(response.read().decode("utf-8"))  # type: ignore[no-any-return]
        except urllib.error.HTTPError as exc:
            raise _EmailSendError(
                error_code=f"http_{exc.code}",
                message=f"Resend API error: {exc.code} {exc.reason}",
            ) from exc
        except urllib.error.URLError as exc:
            raise _EmailSendError(
                error_code="connection_error",
                message=f"Connection error: {exc.reason}",
            ) from exc
        except (socket.timeout, TimeoutError) as exc:
            raise _EmailSendError(
                error_code="timeout",
                message=f"Request timed out after {self._timeout_seconds}s",
            ) from exc
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise _EmailSendError(
                error_code="invalid_response",
                message=f"Invalid JSON response: {exc}",
            ) from exc


class RecipientDirectory:
    """Staff e-mail lists stored under ``staff_email_recipients``.

    Both the wrapped ``{"notifications": {...}}`` document and the bare
    ``{"all": [...], ...}`` form are accepted on read; writes always use the
    wrapped form.
    """

    def __init__(self, kv: KeyValueStore) -> None:
        self._kv = kv

    def load(self) -> EmailRecipients:
        try:
            raw = self._kv.get(RECIPIENTS_KEY)
        except StorageError:
            logger.warning("could not read staff e-mail recipients", exc_info=True)
            return EmailRecipients()
        if not isinstance(raw, dict):
            return EmailRecipients()
        candidate = raw.get("notifications") if isinstance(raw.get("notifications"), dict) else raw
        try:
            return EmailRecipients.model_validate(candidate)
        except ValidationError:
            logger.warning("stored staff e-mail recipients are malformed; ignoring them")
            return EmailRecipients()

    def save(self, recipients: EmailRecipients) -> EmailRecipients:
        self._kv.put(RECIPIENTS_KEY, {"notifications": recipients.model_dump()})
        return recipients


def recipients_for(notification_type: str, recipients: EmailRecipients) -> list[str]:
    selected = list(recipients.all)
    if notification_type == NOTIFICATION_HELP_NEEDED:
        selected.extend(recipients.help_needed)
    elif notification_type == NOTIFICATION_ORDER_CONFIRMED:
        selected.extend(recipients.order_confirmed)
    return list(dict.fromkeys(selected))


_ACCENT_COLORS = {
    NOTIFICATION_HELP_NEEDED: "#ff4d4d",
    NOTIFICATION_ORDER_CONFIRMED: "#4da6ff",
}


def dashboard_link(dashboard_base_url: str, user_id: str | None) -> str:
    base = dashboard_base_url.rstrip("/")
    if not user_id:
        return base
    return f"{base}/?chat={urllib.parse.quote(user_id, safe='')}"


def render_notification_email(notification: Notification, *, dashboard_base_url: str) -> str:
    accent = _ACCENT_COLORS.get(notification.type, "#9370DB")
    link = html.escape(dashboard_link(dashboard_base_url, notification.user_id), quote=True)
    return f"""<!DOCTYPE html>
<html>
  <head><meta charset="utf-8"></head>
  <body style="font-family: Arial, sans-serif; line-height: 1.6; color: #333;">
    <div style="max-width: 600px; margin: 0 auto;">
      <div style="background: linear-gradient(135deg, #FF69B4, {accent}); padding: 20px; color: white; text-align: center;">
        <h1>LeSims Restaurant Dashboard</h1>
      </div>
      <div style="padding: 20px; border: 1px solid #ddd; border-top: none;">
        <h2>{html.escape(notification.title)}</h2>
        <p>{html.escape(notification.body)}</p>
        <p><a href="{link}" style="background: {accent}; color: white; padding: 12px 24px; text-decoration: none;">View in Dashboard</a></p>
        <p style="font-size: 12px; color: #888;">This is an automated notification from the LeSims Restaurant Dashboard.</p>
      </div>
    </div>
  </body>
</html>
"""


@dataclass
class StaffAlerter:
    """Sends out-of-band staff e-mails for a freshly created notification."""

    sender: EmailSender
    directory: RecipientDirectory
    dashboard_base_url: str
    fallback_recipient: str = ""
    enabled: bool = True
    subject_prefix: str = "LeSims Dashboard"

    def notify(self, notification: Notification) -> int:
        if not self.enabled:
            return 0
        recipients = recipients_for(notification.type, self.directory.load())
        fallback = self.fallback_recipient.strip().lower()
        if fallback and fallback not in recipients:
            recipients.append(fallback)
        if not recipients:
            logger.info("no staff e-mail recipients configured for %s", notification.type)
            return 0

        html_body = render_notification_email(notification, dashboard_base_url=self.dashboard_base_url)
        subject = f"{self.subject_prefix}: {notification.title}"
        sent = 0
        for recipient in recipients:
            result = self.sender.send_email(EmailSendRequest(to=recipient, subject=subject, html_body=html_body))
            if result.status == "sent":
                sent += 1
            else:
                logger.warning(
                    "staff e-mail to %s failed: %s %s",
                    recipient,
                    result.error_code,
                    result.error_message,
                )
        logger.info("sent %d/%d staff e-mails for notification %s", sent, len(recipients), notification.id)
        return sent


def create_email_sender(
    *,
    sender_type: str,
    enabled: bool,
    base_url: str,
    api_key: str,
    from_address: str,
    timeout_seconds: int,
) -> EmailSender:
    if sender_type == "http":
        return HttpEmailSender(
            base_url=base_url,
            api_key=api_key,
            from_address=from_address,
            timeout_seconds=timeout_seconds,
        )
    return StubEmailSender(enabled=enabled)
