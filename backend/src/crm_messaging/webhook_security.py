from __future__ import annotations

from typing import Mapping

from twilio.request_validator import RequestValidator

from .config import Settings


class WebhookVerification:
    def __init__(self, *, verified: bool, reason: str | None = None) -> None:
        self.verified = verified
        self.reason = reason


def _normalize_header_value(headers: Mapping[str, str], key: str) -> str | None:
    value = headers.get(key)
    if value is None:
        lowered_key = key.lower()
        for header_key, header_value in headers.items():
            if header_key.lower() == lowered_key:
                value = header_value
                break
    if value is None:
        return None
    normalized = value.strip()
    return normalized or None


def public_webhook_url(*, settings: Settings, request_url: str, path: str, query: str = "") -> str:
    """URL the provider signed; behind a proxy this is the configured public host."""
    base = settings.public_base_url.strip().rstrip("/")
    if not base:
        return request_url
    suffix = f"?{query}" if query else ""
    return f"{base}{path}{suffix}"


def verify_twilio_signature(
    *,
    settings: Settings,
    url: str,
    form_data: Mapping[str, str],
    headers: Mapping[str, str],
) -> WebhookVerification:
    if settings.webhook_signature_mode == "off":
        return WebhookVerification(verified=True)

    auth_token = settings.twilio_auth_token.strip()
    if not auth_token:
        return WebhookVerification(verified=False, reason="twilio_auth_token_missing")

    provided = _normalize_header_value(headers, "X-Twilio-Signature")
    if provided is None:
        return WebhookVerification(verified=False, reason="signature_missing")

    validator = RequestValidator(auth_token)
    if not validator.validate(url, dict(form_data), provided):
        return WebhookVerification(verified=False, reason="signature_mismatch")

    return WebhookVerification(verified=True)
