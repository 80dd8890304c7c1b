from __future__ import annotations

import os

import pytest
from fastapi.testclient import TestClient
from twilio.request_validator import RequestValidator

from crm_messaging import api as api_module
from crm_messaging.agent_tokens import create_agent_token, encode_agent_token
from crm_messaging.config import get_settings
from crm_messaging.main import create_app
from crm_messaging.provider import StubMessagingProvider

PREFIX = "/api/v1"
SMS_LINE = "+15550001111"
CUSTOMER = "+15551234567"
AGENT_SECRET = "test-agent-secret-001"


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


def _client(*, auto_reply: str = "") -> TestClient:
    os.environ["RUNTIME_SECRET_GUARD_MODE"] = "off"
    os.environ["AGENT_TOKEN_SECRET"] = AGENT_SECRET
    os.environ["CONVERSATION_STORE_BACKEND"] = "inmemory"
    os.environ["MESSAGING_PROVIDER"] = "stub"
    os.environ["INBOUND_AUTO_REPLY_TEXT"] = auto_reply
    os.environ.setdefault("WEBHOOK_SIGNATURE_MODE", "off")

    api_module._settings = get_settings()
    api_module.conversation_repo = api_module.create_conversation_repository(
        backend=api_module._settings.conversation_store_backend,
        database_url=api_module._settings.database_url,
    )
    api_module.legacy_repo = api_module.create_legacy_message_repository(
        backend=api_module._settings.conversation_store_backend,
        database_url=api_module._settings.database_url,
    )
    api_module.messaging_provider = StubMessagingProvider(sender_addresses={"sms": SMS_LINE})
    api_module.messaging_service = api_module._create_messaging_service(
        api_module._settings,
        provider=api_module.messaging_provider,
    )
    api_module.reset_runtime_state_for_tests()
    return TestClient(create_app())


def _headers(user_id: str = "agent-1", role: str = "agent", name: str | None = None) -> dict[str, str]:
    identity = create_agent_token(user_id=user_id, role=role, ttl_minutes=60, display_name=name)
    return {"Authorization": f"Bearer {encode_agent_token(identity, secret=AGENT_SECRET)}"}


def _inbound(client: TestClient, sid: str = "SM100", body: str = "Hi", sender: str = CUSTOMER):
    return client.post(
        f"{PREFIX}/sms/webhooks/incoming",
        data={"MessageSid": sid, "From": sender, "To": SMS_LINE, "Body": body, "NumSegments": "1"},
    )


def _only_conversation(client: TestClient) -> dict:
    listing = client.get(f"{PREFIX}/sms/conversations", headers=_headers())
    assert listing.status_code == 200
    items = listing.json()["items"]
    assert len(items) == 1
    return items[0]


def test_inbound_webhook_acknowledges_with_twiml_and_dedupes() -> None:
    client = _client()

    first = _inbound(client)
    second = _inbound(client)

    assert first.status_code == 200
    assert first.headers["content-type"].startswith("application/xml")
    assert "<Response" in first.text
    assert second.status_code == 200
    conversation = _only_conversation(client)
    assert conversation["message_count"] == 1
    assert conversation["unread_count"] == 1
    assert conversation["last_message"] == "Hi"
    assert conversation["phone_address"] == CUSTOMER


def test_inbound_webhook_auto_reply_text() -> None:
    client = _client(auto_reply="Thanks, an agent will reply shortly.")

    response = _inbound(client)

    assert response.status_code == 200
    assert "<Message>Thanks, an agent will reply shortly.</Message>" in response.text


def test_inbound_webhook_rejects_missing_fields() -> None:
    client = _client()

    missing_sid = client.post(f"{PREFIX}/sms/webhooks/incoming", data={"From": CUSTOMER, "To": SMS_LINE, "Body": "x"})
    empty_body = client.post(
        f"{PREFIX}/sms/webhooks/incoming",
        data={"MessageSid": "SM1", "From": CUSTOMER, "To": SMS_LINE, "Body": ""},
    )

    assert missing_sid.status_code == 400
    assert empty_body.status_code == 400


def test_status_webhook_acknowledges_unknown_and_rejects_missing_sid() -> None:
    client = _client()

    unknown = client.post(f"{PREFIX}/sms/webhooks/status", data={"MessageSid": "SMnope", "MessageStatus": "sent"})
    missing = client.post(f"{PREFIX}/sms/webhooks/status", data={"MessageStatus": "sent"})

    assert unknown.status_code == 200
    assert unknown.json()["reason"] == "message_not_found"
    assert missing.status_code == 400


def test_enforced_signature_rejects_unsigned_webhooks() -> None:
    previous_mode = _set_env("WEBHOOK_SIGNATURE_MODE", "enforce")
    previous_token = _set_env("TWILIO_AUTH_TOKEN", "token-123")
    try:
        client = _client()
        form = {"MessageSid": "SM1", "From": CUSTOMER, "To": SMS_LINE, "Body": "Hi"}
        url = f"http://testserver{PREFIX}/sms/webhooks/incoming"
        signature = RequestValidator("token-123").compute_signature(url, form)

        unsigned = client.post(f"{PREFIX}/sms/webhooks/incoming", data=form)
        signed = client.post(f"{PREFIX}/sms/webhooks/incoming", data=form, headers={"X-Twilio-Signature": signature})

        assert unsigned.status_code == 401
        assert signed.status_code == 200
    finally:
        _restore_env("WEBHOOK_SIGNATURE_MODE", previous_mode)
        _restore_env("TWILIO_AUTH_TOKEN", previous_token)


def test_send_requires_agent_session() -> None:
    client = _client()

    missing = client.post(f"{PREFIX}/sms/send", json={"to": CUSTOMER, "body": "Hello"})
    invalid = client.post(
        f"{PREFIX}/sms/send",
        json={"to": CUSTOMER, "body": "Hello"},
        headers={"Authorization": "Bearer forged.token"},
    )

    assert missing.status_code == 401
    assert invalid.status_code == 401


def test_send_then_status_callbacks() -> None:
    client = _client()

    sent = client.post(f"{PREFIX}/sms/send", json={"to": "555-123-4567", "body": "Hello"}, headers=_headers())
    assert sent.status_code == 201
    body = sent.json()
    provider_id = body["provider_message_id"]
    assert provider_id.startswith("SM")
    assert body["legacy_message_id"].startswith("SMS_")
    assert body["message"]["status"] == "queued"
    assert body["message"]["sender_id"] == "agent-1"

    delivered = client.post(
        f"{PREFIX}/sms/webhooks/status", data={"MessageSid": provider_id, "MessageStatus": "delivered"}
    )
    late = client.post(f"{PREFIX}/sms/webhooks/status", data={"MessageSid": provider_id, "SmsStatus": "sent"})

    assert delivered.json()["applied"] is True
    assert late.status_code == 200
    assert late.json()["status"] == "delivered"
    assert late.json()["applied"] is False


def test_send_to_unconfigured_whatsapp_line_is_rejected_without_writes() -> None:
    client = _client()

    response = client.post(f"{PREFIX}/whatsapp/send", json={"to": CUSTOMER, "body": "Hello"}, headers=_headers())
    listing = client.get(f"{PREFIX}/whatsapp/conversations", params={"status": "all"}, headers=_headers())

    assert response.status_code == 400
    assert "not configured" in response.json()["detail"]
    assert listing.json()["pagination"]["total"] == 0


def test_send_provider_failure_embeds_provider_message() -> None:
    client = _client()

    response = client.post(f"{PREFIX}/sms/send", json={"to": "fail-555-0000", "body": "Hello"}, headers=_headers())
    inbox = client.get(f"{PREFIX}/sms/messages", headers=_headers())

    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "stub_delivery_failed"
    assert inbox.json()["items"][0]["status"] == "failed"
    assert inbox.json()["items"][0]["error_code"] == "stub_delivery_failed"


def test_send_requires_body_or_media() -> None:
    client = _client()

    response = client.post(f"{PREFIX}/sms/send", json={"to": CUSTOMER, "body": "  "}, headers=_headers())

    assert response.status_code == 422


def test_conversation_listing_filters_and_paginates() -> None:
    client = _client()
    for index in range(3):
        _inbound(client, sid=f"SM{index}", body=f"hello {index}", sender=f"+1555000000{index}")

    page = client.get(
        f"{PREFIX}/sms/conversations", params={"page": 2, "limit": 2, "sort_by": "oldest"}, headers=_headers()
    )
    search = client.get(f"{PREFIX}/sms/conversations", params={"q": "hello 1"}, headers=_headers())
    bad_status = client.get(f"{PREFIX}/sms/conversations", params={"status": "deleted"}, headers=_headers())

    assert page.status_code == 200
    assert page.json()["pagination"] == {"page": 2, "limit": 2, "total": 3, "pages": 2}
    assert page.json()["items"][0]["last_message"] == "hello 2"
    assert [item["last_message"] for item in search.json()["items"]] == ["hello 1"]
    assert bad_status.status_code == 400


def test_start_conversation_created_then_existing() -> None:
    client = _client()

    created = client.post(
        f"{PREFIX}/sms/conversations", json={"phone": "(555) 123-4567", "customer_name": "Pat"}, headers=_headers()
    )
    existing = client.post(f"{PREFIX}/sms/conversations", json={"phone": CUSTOMER}, headers=_headers())

    assert created.status_code == 201
    assert created.json()["created"] is True
    assert existing.status_code == 200
    assert existing.json()["conversation"]["conversation_id"] == created.json()["conversation"]["conversation_id"]
    assert existing.json()["conversation"]["customer_name"] == "Pat"


def test_open_conversation_marks_read_and_sends_inside() -> None:
    client = _client()
    _inbound(client, sid="SM1", body="Hi")
    _inbound(client, sid="SM2", body="Anyone?")
    conversation_id = _only_conversation(client)["conversation_id"]

    unread_before = client.get(f"{PREFIX}/sms/conversations/{conversation_id}/unread", headers=_headers())
    opened = client.get(f"{PREFIX}/sms/conversations/{conversation_id}/messages", headers=_headers())
    reply = client.post(
        f"{PREFIX}/sms/conversations/{conversation_id}/messages", json={"body": "Hello!"}, headers=_headers()
    )
    unread_after = client.get(f"{PREFIX}/sms/conversations/{conversation_id}/unread", headers=_headers("agent-2"))

    assert unread_before.json()["unread_count"] == 2
    assert opened.json()["marked_read"] == 2
    assert [item["content"] for item in opened.json()["messages"]] == ["Hi", "Anyone?"]
    assert opened.json()["conversation"]["unread_count"] == 0
    assert reply.status_code == 201
    assert unread_after.json()["unread_count"] == 2
    assert unread_after.json()["conversation_unread_count"] == 0


def test_mark_single_message_read_is_idempotent() -> None:
    client = _client()
    _inbound(client)
    conversation = _only_conversation(client)
    opened_by_admin = client.get(
        f"{PREFIX}/sms/messages", params={"type": "inbound"}, headers=_headers("boss", "admin")
    )
    message_id = opened_by_admin.json()["items"][0]["source_message_id"]
    path = f"{PREFIX}/sms/conversations/{conversation['conversation_id']}/messages/{message_id}/read"

    first = client.post(path, headers=_headers())
    second = client.post(path, headers=_headers())
    missing = client.post(
        f"{PREFIX}/sms/conversations/{conversation['conversation_id']}/messages/MSG_missing/read",
        headers=_headers(),
    )

    assert first.json() == {"message_id": message_id, "reader_id": "agent-1", "newly_marked": True, "unread_count": 0}
    assert second.json()["newly_marked"] is False
    assert second.json()["unread_count"] == 0
    assert missing.status_code == 404


def test_update_conversation_and_unknown_conversation() -> None:
    client = _client()
    _inbound(client)
    conversation_id = _only_conversation(client)["conversation_id"]

    updated = client.put(
        f"{PREFIX}/sms/conversations/{conversation_id}",
        json={"status": "closed", "tags": ["vip", "vip", " hot "], "notes": "Follow up Friday"},
        headers=_headers(),
    )
    detail = client.get(f"{PREFIX}/sms/conversations/{conversation_id}", headers=_headers())
    unknown = client.get(f"{PREFIX}/sms/conversations/CONV_missing", headers=_headers())
    wrong_channel = client.get(f"{PREFIX}/whatsapp/conversations/{conversation_id}", headers=_headers())

    assert updated.status_code == 200
    assert detail.json()["conversation"]["status"] == "closed"
    assert detail.json()["conversation"]["tags"] == ["vip", "hot"]
    assert unknown.status_code == 404
    assert wrong_channel.status_code == 404


def test_inbox_visibility_by_role() -> None:
    client = _client()
    _inbound(client)
    client.post(f"{PREFIX}/sms/send", json={"to": CUSTOMER, "body": "From one"}, headers=_headers("agent-1"))
    client.post(f"{PREFIX}/sms/send", json={"to": CUSTOMER, "body": "From two"}, headers=_headers("agent-2"))

    agent_view = client.get(f"{PREFIX}/sms/messages", headers=_headers("agent-1"))
    admin_view = client.get(f"{PREFIX}/sms/messages", headers=_headers("boss", "admin"))

    assert agent_view.json()["pagination"]["total"] == 2
    assert admin_view.json()["pagination"]["total"] == 3
    assert admin_view.json()["items"][0]["content"] == "From two"


def test_typing_indicators() -> None:
    client = _client()
    _inbound(client)
    conversation_id = _only_conversation(client)["conversation_id"]

    started = client.post(
        f"{PREFIX}/typing",
        json={"conversation_id": conversation_id, "is_typing": True},
        headers=_headers("agent-1", name="Dana"),
    )
    seen_by_other = client.get(
        f"{PREFIX}/typing", params={"conversation_id": conversation_id}, headers=_headers("agent-2")
    )
    seen_by_self = client.get(
        f"{PREFIX}/typing", params={"conversation_id": conversation_id}, headers=_headers("agent-1")
    )
    unknown = client.post(
        f"{PREFIX}/typing", json={"conversation_id": "CONV_missing", "is_typing": True}, headers=_headers()
    )

    assert started.status_code == 200
    assert [user["user_name"] for user in seen_by_other.json()["typing"]] == ["Dana"]
    assert seen_by_self.json()["typing"] == []
    assert unknown.status_code == 404


def test_expire_pending_requires_admin() -> None:
    client = _client()

    forbidden = client.post(f"{PREFIX}/maintenance/expire-pending", headers=_headers())
    allowed = client.post(f"{PREFIX}/maintenance/expire-pending", headers=_headers("boss", "admin"))

    assert forbidden.status_code == 403
    assert allowed.status_code == 200
    assert allowed.json() == {"expired": 0, "message_ids": []}


def test_webhooks_acknowledge_when_side_effects_fail(monkeypatch: pytest.MonkeyPatch) -> None:
    client = _client()
    sent = client.post(f"{PREFIX}/sms/send", json={"to": CUSTOMER, "body": "Hello"}, headers=_headers())
    provider_id = sent.json()["provider_message_id"]

    def _broken_event(**kwargs):
        raise RuntimeError("event store unavailable")

    monkeypatch.setattr(api_module.conversation_repo, "append_event", _broken_event)

    status_response = client.post(
        f"{PREFIX}/sms/webhooks/status", data={"MessageSid": provider_id, "MessageStatus": "delivered"}
    )
    inbound_response = _inbound(client, sid="SMbroken", body="Still there?")

    assert status_response.status_code == 200
    assert status_response.json()["reason"] == "processing_error"
    assert inbound_response.status_code == 200
    assert "<Response" in inbound_response.text
    assert "<Message>" not in inbound_response.text
