from __future__ import annotations

import hashlib
import hmac
import logging
from dataclasses import dataclass
from typing import Mapping

from .config import Settings

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Hub-Signature-256"


@dataclass(frozen=True)
class WebhookSignatureVerification:
    verified: bool
    reason: str | None = None


def _normalize_signature(value: str | None) -> str | None:
    if value is None:
        return None
    normalized = value.strip()
    if not normalized:
        return None
    if normalized.startswith("sha256="):
        return normalized.removeprefix("sha256=").strip().lower()
    return normalized.lower()


def sign_payload(secret: str, body: bytes) -> str:
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def verify_whatsapp_signature(
    *,
    settings: Settings,
    body: bytes,
    headers: Mapping[str, str],
) -> WebhookSignatureVerification:
    if settings.webhook_signature_mode == "off":
        return WebhookSignatureVerification(verified=True)

    secret = settings.whatsapp_app_secret.strip()
    if not secret:
        return WebhookSignatureVerification(verified=False, reason="webhook_secret_missing")

    signature = _normalize_signature(headers.get(SIGNATURE_HEADER))
    if signature is None:
        return WebhookSignatureVerification(verified=False, reason="signature_missing")

    expected = sign_payload(secret, body).removeprefix("sha256=")
    if not hmac.compare_digest(signature, expected):
        return WebhookSignatureVerification(verified=False, reason="signature_mismatch")
    return WebhookSignatureVerification(verified=True)


def webhook_rejected(settings: Settings, verification: WebhookSignatureVerification) -> bool:
    """Whether an unverified webhook must be refused under the configured mode."""
    if verification.verified:
        return False
    if settings.webhook_signature_mode == "enforce":
        return True
    logger.warning("accepting unverified webhook (%s) in %s mode", verification.reason, settings.webhook_signature_mode)
    return False
