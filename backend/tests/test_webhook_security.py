from __future__ import annotations

from twilio.request_validator import RequestValidator

from crm_messaging.config import Settings
from crm_messaging.webhook_security import public_webhook_url, verify_twilio_signature

URL = "https://crm.example.com/api/v1/sms/webhooks/incoming"
FORM = {"MessageSid": "SM123", "From": "+15551234567", "To": "+15550001111", "Body": "Hi"}


def _settings(mode: str, token: str = "token-123") -> Settings:
    return Settings(webhook_signature_mode=mode, twilio_auth_token=token)


def test_valid_signature_is_verified() -> None:
    signature = RequestValidator("token-123").compute_signature(URL, FORM)

    result = verify_twilio_signature(
        settings=_settings("enforce"),
        url=URL,
        form_data=FORM,
        headers={"x-twilio-signature": signature},
    )

    assert result.verified is True


def test_mismatched_signature_is_rejected() -> None:
    result = verify_twilio_signature(
        settings=_settings("enforce"),
        url=URL,
        form_data=FORM,
        headers={"X-Twilio-Signature": "bogus"},
    )

    assert result.verified is False
    assert result.reason == "signature_mismatch"


def test_missing_signature_and_token() -> None:
    missing_header = verify_twilio_signature(settings=_settings("log_only"), url=URL, form_data=FORM, headers={})
    missing_token = verify_twilio_signature(
        settings=_settings("enforce", token=""),
        url=URL,
        form_data=FORM,
        headers={"X-Twilio-Signature": "abc"},
    )

    assert missing_header.reason == "signature_missing"
    assert missing_token.reason == "twilio_auth_token_missing"


def test_off_mode_skips_verification() -> None:
    result = verify_twilio_signature(settings=_settings("off", token=""), url=URL, form_data=FORM, headers={})

    assert result.verified is True


def test_public_webhook_url_prefers_configured_base() -> None:
    settings = Settings(public_base_url="https://crm.example.com/")

    assert (
        public_webhook_url(
            settings=settings,
            request_url="http://10.0.0.4:8000/api/v1/sms/webhooks/status",
            path="/api/v1/sms/webhooks/status",
            query="a=1",
        )
        == "https://crm.example.com/api/v1/sms/webhooks/status?a=1"
    )
    assert public_webhook_url(settings=Settings(), request_url="http://local/x", path="/x") == "http://local/x"
