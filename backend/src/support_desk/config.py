from __future__ import annotations

import os
from dataclasses import dataclass


def _as_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _as_int(value: str | None, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value.strip())
    except ValueError:
        return default


def _as_float(value: str | None, default: float) -> float:
    if value is None:
        return default
    try:
        return float(value.strip())
    except ValueError:
        return default


def _normalize_mode(value: str | None, *, default: str, allowed: set[str]) -> str:
    if value is None:
        return default
    normalized = value.strip().lower()
    return normalized if normalized in allowed else default


def _is_placeholder(value: str, *, defaults: set[str]) -> bool:
    normalized = value.strip()
    if not normalized:
        return True
    if normalized in defaults:
        return True
    lower = normalized.lower()
    return lower in {"change-me", "replace-me", "placeholder", "changeme"}


@dataclass(frozen=True)
class Settings:
    app_name: str = "LeSims Support Desk"
    restaurant_name: str = "Complexe LeSims"
    admin_api_key: str = "dev-admin-key"
    log_level: str = "INFO"
    runtime_secret_guard_mode: str = "warn"
    kv_store_backend: str = "inmemory"
    database_url: str = ""
    conversation_history_limit: int = 30
    conversation_ttl_seconds: int = 60 * 60 * 24
    conversation_list_limit: int = 100
    notification_ttl_seconds: int = 60 * 60 * 24 * 7
    escalation_activity_window_seconds: int = 5 * 60
    completion_backend: str = "stub"
    completion_api_base_url: str = "https://api.deepseek.com/v1"
    completion_api_key: str = ""
    completion_model: str = "deepseek-chat"
    completion_timeout_seconds: int = 30
    completion_max_attempts: int = 3
    completion_base_delay_seconds: float = 1.0
    completion_max_delay_seconds: float = 10.0
    outbound_sender_type: str = "stub"
    outbound_enabled: bool = True
    whatsapp_api_base_url: str = "https://graph.facebook.com/v18.0"
    whatsapp_access_token: str = ""
    whatsapp_phone_number_id: str = ""
    whatsapp_verify_token: str = ""
    whatsapp_app_secret: str = ""
    webhook_signature_mode: str = "log_only"
    email_sender_type: str = "stub"
    email_enabled: bool = False
    email_api_base_url: str = "https://api.resend.com"
    email_api_key: str = ""
    email_from_address: str = "notifications@resend.dev"
    email_fallback_recipient: str = ""
    email_timeout_seconds: int = 20
    dashboard_base_url: str = "http://localhost:8788"
    public_base_url: str = "http://localhost:8000"


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("SUPPORT_DESK_APP_NAME", "LeSims Support Desk"),
        restaurant_name=os.getenv("RESTAURANT_NAME", "Complexe LeSims"),
        admin_api_key=os.getenv("ADMIN_API_KEY", "dev-admin-key"),
        log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO",
        runtime_secret_guard_mode=_normalize_mode(
            os.getenv("RUNTIME_SECRET_GUARD_MODE"),
            default="warn",
            allowed={"off", "warn", "enforce"},
        ),
        kv_store_backend=os.getenv("KV_STORE_BACKEND", "inmemory"),
        database_url=os.getenv("DATABASE_URL", ""),
        conversation_history_limit=_as_int(os.getenv("CONVERSATION_HISTORY_LIMIT"), 30),
        conversation_ttl_seconds=_as_int(os.getenv("CONVERSATION_TTL_SECONDS"), 60 * 60 * 24),
        conversation_list_limit=_as_int(os.getenv("CONVERSATION_LIST_LIMIT"), 100),
        notification_ttl_seconds=_as_int(os.getenv("NOTIFICATION_TTL_SECONDS"), 60 * 60 * 24 * 7),
        escalation_activity_window_seconds=_as_int(os.getenv("ESCALATION_ACTIVITY_WINDOW_SECONDS"), 5 * 60),
        completion_backend=_normalize_mode(
            os.getenv("COMPLETION_BACKEND"),
            default="stub",
            allowed={"stub", "http"},
        ),
        completion_api_base_url=os.getenv("COMPLETION_API_BASE_URL", "https://api.deepseek.com/v1"),
        completion_api_key=os.getenv("COMPLETION_API_KEY", os.getenv("DEEPSEEK_API_KEY", "")),
        completion_model=os.getenv("COMPLETION_MODEL", "deepseek-chat"),
        completion_timeout_seconds=_as_int(os.getenv("COMPLETION_TIMEOUT_SECONDS"), 30),
        completion_max_attempts=_as_int(os.getenv("COMPLETION_MAX_ATTEMPTS"), 3),
        completion_base_delay_seconds=_as_float(os.getenv("COMPLETION_BASE_DELAY_SECONDS"), 1.0),
        completion_max_delay_seconds=_as_float(os.getenv("COMPLETION_MAX_DELAY_SECONDS"), 10.0),
        outbound_sender_type=_normalize_mode(
            os.getenv("OUTBOUND_SENDER_TYPE"),
            default="stub",
            allowed={"stub", "http"},
        ),
        outbound_enabled=_as_bool(os.getenv("OUTBOUND_ENABLED"), True),
        whatsapp_api_base_url=os.getenv("WHATSAPP_API_BASE_URL", "https://graph.facebook.com/v18.0"),
        whatsapp_access_token=os.getenv("WHATSAPP_ACCESS_TOKEN", ""),
        whatsapp_phone_number_id=os.getenv("WHATSAPP_PHONE_NUMBER_ID", ""),
        whatsapp_verify_token=os.getenv("WHATSAPP_VERIFY_TOKEN", ""),
        whatsapp_app_secret=os.getenv("WHATSAPP_APP_SECRET", ""),
        webhook_signature_mode=_normalize_mode(
            os.getenv("WEBHOOK_SIGNATURE_MODE"),
            default="log_only",
            allowed={"off", "log_only", "enforce"},
        ),
        email_sender_type=_normalize_mode(
            os.getenv("EMAIL_SENDER_TYPE"),
            default="stub",
            allowed={"stub", "http"},
        ),
        email_enabled=_as_bool(os.getenv("EMAIL_ENABLED"), False),
        email_api_base_url=os.getenv("EMAIL_API_BASE_URL", "https://api.resend.com"),
        email_api_key=os.getenv("EMAIL_API_KEY", os.getenv("RESEND_API_KEY", "")),
        email_from_address=os.getenv("EMAIL_FROM_ADDRESS", "notifications@resend.dev"),
        email_fallback_recipient=os.getenv("EMAIL_FALLBACK_RECIPIENT", ""),
        email_timeout_seconds=_as_int(os.getenv("EMAIL_TIMEOUT_SECONDS"), 20),
        dashboard_base_url=os.getenv("DASHBOARD_BASE_URL", "http://localhost:8788"),
        public_base_url=os.getenv("PUBLIC_BASE_URL", "http://localhost:8000"),
    )


def runtime_secret_issues(settings: Settings) -> tuple[str, ...]:
    issues: list[str] = []
    if _is_placeholder(
        settings.admin_api_key,
        defaults={"dev-admin-key", "change-me-in-production"},
    ):
        issues.append("ADMIN_API_KEY is empty or uses a development placeholder")
    if settings.kv_store_backend.strip().lower() == "postgres" and not settings.database_url.strip():
        issues.append("DATABASE_URL is required when KV_STORE_BACKEND=postgres")
    if settings.completion_backend == "http" and not settings.completion_api_key.strip():
        issues.append("COMPLETION_API_KEY is required when COMPLETION_BACKEND=http")
    if settings.outbound_sender_type == "http" and (
        not settings.whatsapp_access_token.strip() or not settings.whatsapp_phone_number_id.strip()
    ):
        issues.append(
            "WHATSAPP_ACCESS_TOKEN and WHATSAPP_PHONE_NUMBER_ID are required when OUTBOUND_SENDER_TYPE=http"
        )
    if settings.webhook_signature_mode == "enforce" and not settings.whatsapp_app_secret.strip():
        issues.append("WHATSAPP_APP_SECRET is required when WEBHOOK_SIGNATURE_MODE=enforce")
    if settings.email_enabled and settings.email_sender_type == "http" and not settings.email_api_key.strip():
        issues.append("EMAIL_API_KEY is required when EMAIL_ENABLED=true and EMAIL_SENDER_TYPE=http")
    return tuple(issues)
