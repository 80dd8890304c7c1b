from __future__ import annotations

import os
from dataclasses import fields

from crm_messaging.config import Settings, get_settings, runtime_secret_issues


def _set_env(name: str, value: str | None) -> str | None:
    previous = os.environ.get(name)
    if value is None:
        os.environ.pop(name, None)
    else:
        os.environ[name] = value
    return previous


def _restore_env(name: str, previous: str | None) -> None:
    if previous is None:
        os.environ.pop(name, None)
    else:
        os.environ[name] = previous


def test_get_settings_defaults() -> None:
    names = ("MESSAGING_PROVIDER", "WEBHOOK_SIGNATURE_MODE", "CONVERSATION_STORE_BACKEND", "DUAL_WRITE_MAX_ATTEMPTS")
    previous = {name: _set_env(name, None) for name in names}
    try:
        settings = get_settings()
        assert settings.messaging_provider == "stub"
        assert settings.webhook_signature_mode == "log_only"
        assert settings.conversation_store_backend == "inmemory"
        assert settings.dual_write_max_attempts == 3
    finally:
        for name, value in previous.items():
            _restore_env(name, value)


def test_get_settings_ignores_unknown_modes_and_bad_numbers() -> None:
    previous = {
        "WEBHOOK_SIGNATURE_MODE": _set_env("WEBHOOK_SIGNATURE_MODE", "strict"),
        "PENDING_SEND_TIMEOUT_SECONDS": _set_env("PENDING_SEND_TIMEOUT_SECONDS", "soon"),
        "DUAL_WRITE_MAX_ATTEMPTS": _set_env("DUAL_WRITE_MAX_ATTEMPTS", "0"),
    }
    try:
        settings = get_settings()
        assert settings.webhook_signature_mode == "log_only"
        assert settings.pending_send_timeout_seconds == 300
        assert settings.dual_write_max_attempts == 1
    finally:
        for name, value in previous.items():
            _restore_env(name, value)


def test_status_callback_url_uses_public_base() -> None:
    assert Settings().status_callback_url("sms") is None
    assert (
        Settings(public_base_url="https://crm.example.com/").status_callback_url("whatsapp")
        == "https://crm.example.com/api/v1/whatsapp/webhooks/status"
    )


def test_placeholder_agent_secret_is_reported() -> None:
    issues = runtime_secret_issues(Settings())

    assert any("AGENT_TOKEN_SECRET" in issue for issue in issues)


def test_enforced_signatures_require_twilio_auth_token() -> None:
    issues = runtime_secret_issues(
        Settings(agent_token_secret="prod-agent-secret-001", webhook_signature_mode="enforce")
    )

    assert issues == ("TWILIO_AUTH_TOKEN is required when WEBHOOK_SIGNATURE_MODE=enforce",)


def test_twilio_provider_requires_credentials_and_a_line() -> None:
    issues = runtime_secret_issues(
        Settings(agent_token_secret="prod-agent-secret-001", messaging_provider="twilio")
    )

    assert any("TWILIO_ACCOUNT_SID" in issue for issue in issues)
    assert any("TWILIO_SMS_NUMBER" in issue for issue in issues)


def test_complete_production_settings_have_no_issues() -> None:
    settings = Settings(
        agent_token_secret="prod-agent-secret-001",
        messaging_provider="twilio",
        twilio_account_sid="AC123",
        twilio_auth_token="token-123",
        twilio_sms_number="+15550001111",
        webhook_signature_mode="enforce",
        conversation_store_backend="postgres",
        database_url="postgresql+psycopg://crm@db/crm",
    )

    assert runtime_secret_issues(settings) == ()


def test_settings_cover_the_runtime_surface() -> None:
    assert {field.name for field in fields(Settings)} == {
        "app_name",
        "api_prefix",
        "cors_allowed_origin",
        "conversation_store_backend",
        "database_url",
        "messaging_provider",
        "twilio_account_sid",
        "twilio_auth_token",
        "twilio_sms_number",
        "twilio_whatsapp_number",
        "public_base_url",
        "provider_timeout_seconds",
        "webhook_signature_mode",
        "agent_token_secret",
        "inbound_auto_reply_text",
        "dual_write_max_attempts",
        "pending_send_timeout_seconds",
        "typing_indicator_ttl_seconds",
        "page_limit_max",
        "runtime_secret_guard_mode",
    }
