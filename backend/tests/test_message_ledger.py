from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from crm_messaging.conversations import (
    InMemoryConversationRepository,
    MediaAttachment,
    SqlAlchemyConversationRepository,
)
from crm_messaging.errors import DuplicateWebhookError, NotFoundError, PartialWriteError
from crm_messaging.ledger import LegacyContext, MessageLedger
from crm_messaging.legacy_store import (
    InMemoryLegacyMessageRepository,
    LegacyMessageRecord,
    SqlAlchemyLegacyMessageRepository,
)
from crm_messaging.registry import ConversationRegistry

NOW = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)


class _FlakyLegacyRepository(InMemoryLegacyMessageRepository):
    """Fails the first ``failures`` upserts."""

    def __init__(self, failures: int) -> None:
        super().__init__()
        self.failures = failures
        self.calls = 0

    def upsert(self, record: LegacyMessageRecord) -> LegacyMessageRecord:
        self.calls += 1
        if self.calls <= self.failures:
            raise ConnectionError("legacy database unavailable")
        return super().upsert(record)


def _setup(backend: str, tmp_path: Path, legacy=None, max_attempts: int = 3):
    if backend == "sqlite":
        url = f"sqlite+pysqlite:///{tmp_path / 'ledger.db'}"
        repository = SqlAlchemyConversationRepository(url)
        legacy = legacy or SqlAlchemyLegacyMessageRepository(url)
    else:
        repository = InMemoryConversationRepository()
        legacy = legacy or InMemoryLegacyMessageRepository()
    registry = ConversationRegistry(repository=repository)
    conversation, _ = registry.find_or_create("sms", "+15551234567")
    ledger = MessageLedger(repository=repository, legacy_repository=legacy, max_attempts=max_attempts)
    return ledger, legacy, conversation.conversation_id


def _append(ledger: MessageLedger, conversation_id: str, **overrides):
    values = {
        "conversation_id": conversation_id,
        "channel": "sms",
        "sender_type": "agent",
        "sender_id": "agent-1",
        "from_address": "+15550001111",
        "to_address": "+15551234567",
        "content": "Hello",
        "status": "queued",
        "now": NOW,
    }
    values.update(overrides)
    return ledger.append(**values)


@pytest.fixture(params=["inmemory", "sqlite"])
def backend(request: pytest.FixtureRequest) -> str:
    return request.param


def test_append_writes_ledger_and_legacy_twin(backend: str, tmp_path: Path) -> None:
    ledger, legacy, conversation_id = _setup(backend, tmp_path)

    message = _append(ledger, conversation_id, legacy_context=LegacyContext(lead_id="LEAD-1", customer_name="Pat"))

    twin = legacy.get_by_source(message.message_id)
    assert message.status == "queued"
    assert message.sent_at == NOW
    assert message.legacy_message_id is not None and message.legacy_message_id.startswith("SMS_")
    assert twin is not None
    assert twin.legacy_message_id == message.legacy_message_id
    assert twin.message_type == "outbound"
    assert twin.direction == "outbound-api"
    assert twin.lead_id == "LEAD-1"
    assert twin.user_id == "agent-1"


def test_append_requires_content_or_media(backend: str, tmp_path: Path) -> None:
    ledger, _, conversation_id = _setup(backend, tmp_path)

    with pytest.raises(ValueError, match="content or media"):
        _append(ledger, conversation_id, content="   ")

    media_only = _append(
        ledger,
        conversation_id,
        content="",
        media=[MediaAttachment(url="https://cdn.example.com/a.jpg", media_type="image")],
    )
    assert media_only.media[0].media_type == "image"


def test_append_accepts_future_sent_at_for_scheduled_sends(backend: str, tmp_path: Path) -> None:
    ledger, _, conversation_id = _setup(backend, tmp_path)

    scheduled = _append(ledger, conversation_id, sent_at=NOW + timedelta(hours=2))

    assert scheduled.sent_at == NOW + timedelta(hours=2)
    assert scheduled.status == "queued"
    assert scheduled.dispatched_at is None


def test_duplicate_provider_id_is_signalled(backend: str, tmp_path: Path) -> None:
    ledger, _, conversation_id = _setup(backend, tmp_path)
    inbound = {"sender_type": "customer", "sender_id": None, "status": "received", "provider_message_id": "SM1"}
    _append(ledger, conversation_id, **inbound)

    with pytest.raises(DuplicateWebhookError):
        _append(ledger, conversation_id, **inbound)


def test_list_by_conversation_uses_caller_order(backend: str, tmp_path: Path) -> None:
    ledger, _, conversation_id = _setup(backend, tmp_path)
    for offset in (2, 0, 1):
        _append(ledger, conversation_id, content=f"m{offset}", sent_at=NOW + timedelta(minutes=offset))

    ascending, total = ledger.list_by_conversation(conversation_id, page=1, page_size=10, order="asc")
    descending, _ = ledger.list_by_conversation(conversation_id, page=1, page_size=2, order="desc")
    second_page, _ = ledger.list_by_conversation(conversation_id, page=2, page_size=2, order="desc")

    assert total == 3
    assert [item.content for item in ascending] == ["m0", "m1", "m2"]
    assert [item.content for item in descending] == ["m2", "m1"]
    assert [item.content for item in second_page] == ["m0"]
    with pytest.raises(ValueError):
        ledger.list_by_conversation(conversation_id, page=1, page_size=10, order="newest")  # type: ignore[arg-type]


def test_status_updates_follow_terminal_precedence(backend: str, tmp_path: Path) -> None:
    ledger, legacy, conversation_id = _setup(backend, tmp_path)
    message = _append(ledger, conversation_id)

    ledger.attach_provider_result(message.message_id, provider_message_id="SM42", provider_status="queued")
    delivered = ledger.mark_delivered(message.message_id, at=NOW)
    late_sent = ledger.apply_status(message.message_id, "sent", provider_status="sent")

    assert delivered.message.status == "delivered"
    assert delivered.message.delivered_at == NOW
    assert late_sent.transition.applied is False
    assert late_sent.message.status == "delivered"
    assert late_sent.message.provider_status == "sent"

    twin = legacy.get_by_source(message.message_id)
    assert twin is not None
    assert twin.status == "delivered"
    assert twin.provider_message_id == "SM42"

    read = ledger.mark_read(message.message_id, at=NOW + timedelta(minutes=1))
    assert read.message.status == "read"
    assert legacy.get_by_source(message.message_id).is_read is True


def test_failure_reason_is_persisted_and_final(backend: str, tmp_path: Path) -> None:
    ledger, legacy, conversation_id = _setup(backend, tmp_path)
    message = _append(ledger, conversation_id)

    failed = ledger.mark_failed(message.message_id, code="30003", message="Unreachable destination handset")
    after = ledger.mark_delivered(message.message_id)

    assert failed.message.failure_code == "30003"
    assert failed.message.failure_message == "Unreachable destination handset"
    assert after.message.status == "failed"
    assert after.transition.reason == "failure_is_final"
    assert legacy.get_by_source(message.message_id).error_code == "30003"


def test_undelivered_without_error_code_records_status_as_reason(backend: str, tmp_path: Path) -> None:
    ledger, _, conversation_id = _setup(backend, tmp_path)
    message = _append(ledger, conversation_id)

    outcome = ledger.apply_status(message.message_id, "undelivered")

    assert outcome.message.failure_code == "undelivered"


def test_mutations_require_existing_message(backend: str, tmp_path: Path) -> None:
    ledger, _, _ = _setup(backend, tmp_path)

    with pytest.raises(NotFoundError):
        ledger.mark_delivered("MSG_missing")
    with pytest.raises(NotFoundError):
        ledger.mark_failed("MSG_missing", code="x", message=None)
    with pytest.raises(NotFoundError):
        ledger.mark_read("MSG_missing")


def test_legacy_write_is_retried_to_convergence(tmp_path: Path) -> None:
    legacy = _FlakyLegacyRepository(failures=2)
    ledger, _, conversation_id = _setup("inmemory", tmp_path, legacy=legacy, max_attempts=3)

    message = _append(ledger, conversation_id)

    assert legacy.calls == 3
    assert legacy.get_by_source(message.message_id) is not None


def test_exhausted_legacy_retries_raise_partial_write(tmp_path: Path) -> None:
    legacy = _FlakyLegacyRepository(failures=10)
    ledger, _, conversation_id = _setup("inmemory", tmp_path, legacy=legacy, max_attempts=2)

    with pytest.raises(PartialWriteError) as exc_info:
        _append(ledger, conversation_id)

    assert exc_info.value.retryable is True
    assert exc_info.value.record is not None
    assert ledger.get(exc_info.value.message_id).status == "queued"
    assert legacy.get_by_source(exc_info.value.message_id) is None

    legacy.failures = 0
    twin = ledger.reconcile_legacy(exc_info.value.message_id)
    assert twin.status == "queued"


def test_legacy_twin_keeps_sticky_fields(tmp_path: Path) -> None:
    ledger, legacy, conversation_id = _setup("inmemory", tmp_path)
    message = _append(ledger, conversation_id, legacy_context=LegacyContext(lead_id="LEAD-1", customer_name="Pat"))

    ledger.mark_delivered(message.message_id)

    twin = legacy.get_by_source(message.message_id)
    assert twin.lead_id == "LEAD-1"
    assert twin.customer_name == "Pat"
    assert twin.status == "delivered"
