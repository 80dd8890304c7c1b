from __future__ import annotations

import os
from dataclasses import dataclass


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
    return normalized.lower() in {"change-me", "replace-me", "placeholder", "changeme"}


@dataclass(frozen=True)
class Settings:
    app_name: str = "CRM Messaging Sync"
    api_prefix: str = "/api/v1"
    cors_allowed_origin: str = "http://localhost:3000"
    conversation_store_backend: str = "inmemory"
    database_url: str = ""
    messaging_provider: str = "stub"
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_sms_number: str = ""
    twilio_whatsapp_number: str = ""
    public_base_url: str = ""
    provider_timeout_seconds: float = 15.0
    webhook_signature_mode: str = "log_only"
    agent_token_secret: str = "dev-agent-secret"
    inbound_auto_reply_text: str = ""
    dual_write_max_attempts: int = 3
    pending_send_timeout_seconds: int = 300
    typing_indicator_ttl_seconds: float = 5.0
    page_limit_max: int = 100
    runtime_secret_guard_mode: str = "warn"

    def sender_address_for(self, channel: str) -> str:
        normalized = channel.strip().lower()
        if normalized == "sms":
            return self.twilio_sms_number.strip()
        if normalized == "whatsapp":
            return self.twilio_whatsapp_number.strip()
        return ""

    def status_callback_url(self, channel: str) -> str | None:
        base = self.public_base_url.strip().rstrip("/")
        if not base:
            return None
        return f"{base}{self.api_prefix}/{channel}/webhooks/status"


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("CRM_APP_NAME", "CRM Messaging Sync"),
        api_prefix=os.getenv("CRM_API_PREFIX", "/api/v1"),
        cors_allowed_origin=os.getenv("CORS_ALLOWED_ORIGIN", "http://localhost:3000"),
        conversation_store_backend=os.getenv("CONVERSATION_STORE_BACKEND", "inmemory"),
        database_url=os.getenv("DATABASE_URL", ""),
        messaging_provider=_normalize_mode(
            os.getenv("MESSAGING_PROVIDER"),
            default="stub",
            allowed={"stub", "twilio"},
        ),
        twilio_account_sid=os.getenv("TWILIO_ACCOUNT_SID", ""),
        twilio_auth_token=os.getenv("TWILIO_AUTH_TOKEN", ""),
        twilio_sms_number=os.getenv("TWILIO_SMS_NUMBER", ""),
        twilio_whatsapp_number=os.getenv("TWILIO_WHATSAPP_NUMBER", ""),
        public_base_url=os.getenv("PUBLIC_BASE_URL", ""),
        provider_timeout_seconds=_as_float(os.getenv("PROVIDER_TIMEOUT_SECONDS"), 15.0),
        webhook_signature_mode=_normalize_mode(
            os.getenv("WEBHOOK_SIGNATURE_MODE"),
            default="log_only",
            allowed={"off", "log_only", "enforce"},
        ),
        agent_token_secret=os.getenv("AGENT_TOKEN_SECRET", "dev-agent-secret"),
        inbound_auto_reply_text=os.getenv("INBOUND_AUTO_REPLY_TEXT", ""),
        dual_write_max_attempts=max(1, _as_int(os.getenv("DUAL_WRITE_MAX_ATTEMPTS"), 3)),
        pending_send_timeout_seconds=_as_int(os.getenv("PENDING_SEND_TIMEOUT_SECONDS"), 300),
        typing_indicator_ttl_seconds=_as_float(os.getenv("TYPING_INDICATOR_TTL_SECONDS"), 5.0),
        page_limit_max=_as_int(os.getenv("PAGE_LIMIT_MAX"), 100),
        runtime_secret_guard_mode=_normalize_mode(
            os.getenv("RUNTIME_SECRET_GUARD_MODE"),
            default="warn",
            allowed={"off", "warn", "enforce"},
        ),
    )


def runtime_secret_issues(settings: Settings) -> tuple[str, ...]:
    issues: list[str] = []
    if _is_placeholder(
        settings.agent_token_secret,
        defaults={"dev-agent-secret", "change-me-in-production"},
    ):
        issues.append("AGENT_TOKEN_SECRET is empty or uses a development placeholder")
    if settings.webhook_signature_mode == "enforce" and not settings.twilio_auth_token.strip():
        issues.append("TWILIO_AUTH_TOKEN is required when WEBHOOK_SIGNATURE_MODE=enforce")
    if settings.messaging_provider == "twilio":
        if not settings.twilio_account_sid.strip() or not settings.twilio_auth_token.strip():
            issues.append("TWILIO_ACCOUNT_SID and TWILIO_AUTH_TOKEN are required when MESSAGING_PROVIDER=twilio")
        if not settings.twilio_sms_number.strip() and not settings.twilio_whatsapp_number.strip():
            issues.append("MESSAGING_PROVIDER=twilio has neither TWILIO_SMS_NUMBER nor TWILIO_WHATSAPP_NUMBER")
    if settings.conversation_store_backend.strip().lower() == "postgres" and not settings.database_url.strip():
        issues.append("DATABASE_URL is required for CONVERSATION_STORE_BACKEND=postgres")
    return tuple(issues)
