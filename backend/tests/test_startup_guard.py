from __future__ import annotations

import os

import pytest

from support_desk.main import create_app


def _set_env(overrides: dict[str, str | None]) -> dict[str, str | None]:
    previous: dict[str, str | None] = {}
    for key, value in overrides.items():
        previous[key] = os.environ.get(key)
        if value is None:
            os.environ.pop(key, None)
        else:
            os.environ[key] = value
    return previous


def _restore_env(previous: dict[str, str | None]) -> None:
    for key, value in previous.items():
        if value is None:
            os.environ.pop(key, None)
        else:
            os.environ[key] = value


def _base_runtime_secret_env() -> dict[str, str | None]:
    return {
        "ADMIN_API_KEY": "prod-admin-key-001",
        "RUNTIME_SECRET_GUARD_MODE": "enforce",
        "KV_STORE_BACKEND": "inmemory",
        "COMPLETION_BACKEND": "stub",
        "OUTBOUND_SENDER_TYPE": "stub",
        "EMAIL_ENABLED": "false",
        "WEBHOOK_SIGNATURE_MODE": "log_only",
    }


def test_create_app_starts_with_stub_backends() -> None:
    previous = _set_env(_base_runtime_secret_env())
    try:
        app = create_app()
        assert app.title == "LeSims Support Desk"
    finally:
        _restore_env(previous)


def test_create_app_blocks_placeholder_admin_key_in_enforce_mode() -> None:
    previous = _set_env({**_base_runtime_secret_env(), "ADMIN_API_KEY": "dev-admin-key"})
    try:
        with pytest.raises(RuntimeError) as exc_info:
            create_app()
        message = str(exc_info.value)
        assert "ADMIN_API_KEY is empty or uses a development placeholder" in message
        assert "Remediation" in message
    finally:
        _restore_env(previous)


def test_create_app_blocks_enforced_signatures_without_app_secret() -> None:
    previous = _set_env(
        {
            **_base_runtime_secret_env(),
            "WEBHOOK_SIGNATURE_MODE": "enforce",
            "WHATSAPP_APP_SECRET": None,
        }
    )
    try:
        with pytest.raises(RuntimeError, match="WHATSAPP_APP_SECRET is required"):
            create_app()
    finally:
        _restore_env(previous)


def test_create_app_only_warns_in_warn_mode(caplog: pytest.LogCaptureFixture) -> None:
    previous = _set_env({**_base_runtime_secret_env(), "RUNTIME_SECRET_GUARD_MODE": "warn", "ADMIN_API_KEY": ""})
    try:
        with caplog.at_level("WARNING", logger="support_desk.main"):
            create_app()
        assert any("ADMIN_API_KEY" in record.getMessage() for record in caplog.records)
    finally:
        _restore_env(previous)
