from __future__ import annotations

import json
import socket
import urllib.error
import urllib.request
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Literal, Protocol, Union

OutboundResultStatus = Literal["sent", "failed", "skipped"]


@dataclass(frozen=True)
class OutboundText:
    recipient: str
    body: str


@dataclass(frozen=True)
class OutboundDocument:
    recipient: str
    link: str
    filename: str
    caption: str = ""


OutboundMessage = Union[OutboundText, OutboundDocument]


@dataclass(frozen=True)
class OutboundSendResult:
    status: OutboundResultStatus
    attempted_at: datetime
    provider_message_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None


class OutboundSender(Protocol):
    def send(self, message: OutboundMessage) -> OutboundSendResult: ...


def mask_recipient(recipient: str) -> str:
    digits = "".join(ch for ch in recipient if ch.isdigit())
    if len(digits) >= 4:
        return f"***{digits[-4:]}"
    if len(recipient) <= 4:
        return "*" * len(recipient)
    return f"{recipient[:2]}***{recipient[-2:]}"


class StubOutboundSender:
    def __init__(self, *, enabled: bool = True) -> None:
        self._enabled = enabled
        self.sent: list[OutboundMessage] = []

    def send(self, message: OutboundMessage) -> OutboundSendResult:
        attempted_at = datetime.now(timezone.utc)
        if not self._enabled:
            return OutboundSendResult(
                status="skipped",
                attempted_at=attempted_at,
                error_code="outbound_disabled",
                error_message="Outbound customer delivery is disabled",
            )
        if "fail" in message.recipient.lower():
            return OutboundSendResult(
                status="failed",
                attempted_at=attempted_at,
                error_code="stub_delivery_failed",
                error_message="Stub sender forced failure for recipient",
            )
        self.sent.append(message)
        return OutboundSendResult(
            status="sent",
            attempted_at=attempted_at,
            provider_message_id=f"stub-wa-{len(self.sent)}",
        )


class _WhatsAppSendError(Exception):
    """Internal error raised when a WhatsApp Cloud API request fails."""

    def __init__(self, error_code: str, message: str) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message


class WhatsAppCloudSender:
    """Sends customer replies through the WhatsApp Cloud API."""

    def __init__(
        self,
        *,
        base_url: str,
        access_token: str,
        phone_number_id: str,
        timeout_seconds: int = 30,
    ) -> None:
        stripped_url = base_url.strip().rstrip("/")
        stripped_token = access_token.strip()
        stripped_phone = phone_number_id.strip()
        if not stripped_url:
            raise ValueError("base_url must not be empty")
        if not stripped_token:
            raise ValueError("access_token must not be empty")
        if not stripped_phone:
            raise ValueError("phone_number_id must not be empty")
        self._base_url = stripped_url
        self._access_token = stripped_token
        self._phone_number_id = stripped_phone
        self._timeout_seconds = timeout_seconds

    def send(self, message: OutboundMessage) -> OutboundSendResult:
        attempted_at = datetime.now(timezone.utc)
        body: dict[str, Any] = {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": message.recipient,
        }
        if isinstance(message, OutboundText):
            body["type"] = "text"
            body["text"] = {"preview_url": False, "body": message.body}
        elif isinstance(message, OutboundDocument):
            body["type"] = "document"
            body["document"] = {"link": message.link, "filename": message.filename, "caption": message.caption}
        else:
            raise TypeError(f"unsupported outbound message: {message!r}")

        try:
            response_data = self._post(body)
        except _WhatsAppSendError as exc:
            return OutboundSendResult(
                status="failed",
                attempted_at=attempted_at,
                error_code=exc.error_code,
                error_message=f"{exc.message} (recipient: {mask_recipient(message.recipient)})",
            )
        message_id = None
        messages = response_data.get("messages")
        if isinstance(messages, list) and messages and isinstance(messages[0], dict):
            message_id = messages[0].get("id")
        return OutboundSendResult(status="sent", attempted_at=attempted_at, provider_message_id=message_id)

    def _post(self, body: dict[str, Any]) -> dict[str, Any]:
        request = urllib.request.Request(
            f"{self._base_url}/{self._phone_number_id}/messages",
            data=json.dumps(body).encode("utf-8"),
            headers={
                "Authorization": f"Bearer {self._access_token}",
                "Content-Type": "application/json",
            },
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self._timeout_seconds) as response:
                return json.loads(response.read().decode("utf-8"))  # type: ignore[no-any-return]
        except urllib.error.HTTPError as exc:
            raise _WhatsAppSendError(
                error_code=f"http_{exc.code}",
                message=f"HTTP {exc.code}: {exc.reason}",
            ) from exc
        except urllib.error.URLError as exc:
            raise _WhatsAppSendError(
                error_code="connection_error",
                message=f"Connection error: {exc.reason}",
            ) from exc
        except (socket.timeout, TimeoutError) as exc:
            raise _WhatsAppSendError(
                error_code="timeout",
                message=f"Request timed out: {exc}",
            ) from exc
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise _WhatsAppSendError(
                error_code="invalid_response",
                message=f"Invalid JSON response: {exc}",
            ) from exc


def create_outbound_sender(
    *,
    sender_type: str,
    enabled: bool,
    base_url: str,
    access_token: str,
    phone_number_id: str,
) -> OutboundSender:
    if sender_type == "http":
        return WhatsAppCloudSender(
            base_url=base_url,
            access_token=access_token,
            phone_number_id=phone_number_id,
        )
    return StubOutboundSender(enabled=enabled)
