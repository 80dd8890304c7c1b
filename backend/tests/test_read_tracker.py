from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from crm_messaging.conversations import InMemoryConversationRepository, SqlAlchemyConversationRepository
from crm_messaging.errors import NotFoundError
from crm_messaging.ledger import MessageLedger
from crm_messaging.legacy_store import InMemoryLegacyMessageRepository, SqlAlchemyLegacyMessageRepository
from crm_messaging.read_tracker import ReadTracker
from crm_messaging.registry import ConversationRegistry

NOW = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)


class _Harness:
    def __init__(self, backend: str, tmp_path: Path) -> None:
        if backend == "sqlite":
            url = f"sqlite+pysqlite:///{tmp_path / 'reads.db'}"
            self.repository = SqlAlchemyConversationRepository(url)
            legacy = SqlAlchemyLegacyMessageRepository(url)
        else:
            self.repository = InMemoryConversationRepository()
            legacy = InMemoryLegacyMessageRepository()
        self.registry = ConversationRegistry(repository=self.repository)
        self.ledger = MessageLedger(repository=self.repository, legacy_repository=legacy)
        self.tracker = ReadTracker(repository=self.repository, registry=self.registry, ledger=self.ledger)
        conversation, _ = self.registry.find_or_create("sms", "+15551234567")
        self.conversation_id = conversation.conversation_id
        self._sequence = 0

    def inbound(self, body: str = "Hi") -> str:
        self._sequence += 1
        sent_at = NOW + timedelta(minutes=self._sequence)
        message = self.ledger.append(
            conversation_id=self.conversation_id,
            channel="sms",
            sender_type="customer",
            sender_id=None,
            from_address="+15551234567",
            to_address="+15550001111",
            content=body,
            status="received",
            provider_message_id=f"SM{self._sequence}",
            sent_at=sent_at,
        )
        self.registry.apply_inbound_message(self.conversation_id, body, sent_at)
        return message.message_id

    def unread(self) -> int:
        return self.registry.get(self.conversation_id).unread_count


@pytest.fixture(params=["inmemory", "sqlite"])
def harness(request: pytest.FixtureRequest, tmp_path: Path) -> _Harness:
    return _Harness(request.param, tmp_path)


def test_mark_read_twice_decrements_once(harness: _Harness) -> None:
    message_id = harness.inbound()
    harness.inbound("Second")
    assert harness.unread() == 2

    first = harness.tracker.mark_read(message_id, "agent-1")
    second = harness.tracker.mark_read(message_id, "agent-1")

    assert first.receipt_created is True
    assert first.first_read is True
    assert second.receipt_created is False
    assert second.first_read is False
    assert harness.unread() == 1
    assert len(harness.repository.list_read_receipts(message_id)) == 1
    assert harness.ledger.get(message_id).status == "read"


def test_second_reader_gets_receipt_without_decrement(harness: _Harness) -> None:
    message_id = harness.inbound()
    harness.inbound("Second")

    harness.tracker.mark_read(message_id, "agent-1")
    other = harness.tracker.mark_read(message_id, "agent-2")

    assert other.receipt_created is True
    assert other.first_read is False
    assert harness.unread() == 1
    assert harness.tracker.unread_count_for(harness.conversation_id, "agent-1") == 1
    assert harness.tracker.unread_count_for(harness.conversation_id, "agent-2") == 1
    assert harness.tracker.unread_count_for(harness.conversation_id, "agent-3") == 2


def test_mark_conversation_read_clears_counter(harness: _Harness) -> None:
    harness.inbound()
    harness.inbound("Second")
    harness.inbound("Third")

    newly_read = harness.tracker.mark_conversation_read(harness.conversation_id, "agent-1")
    repeat = harness.tracker.mark_conversation_read(harness.conversation_id, "agent-1")

    assert newly_read == 3
    assert repeat == 0
    assert harness.unread() == 0
    assert harness.tracker.unread_count_for(harness.conversation_id, "agent-1") == 0


def test_agent_messages_never_touch_unread_counter(harness: _Harness) -> None:
    harness.inbound()
    outbound = harness.ledger.append(
        conversation_id=harness.conversation_id,
        channel="sms",
        sender_type="agent",
        sender_id="agent-1",
        from_address="+15550001111",
        to_address="+15551234567",
        content="Reply",
        status="queued",
    )

    mark = harness.tracker.mark_read(outbound.message_id, "agent-2")

    assert mark.first_read is False
    assert harness.unread() == 1
    assert harness.ledger.get(outbound.message_id).status == "queued"


def test_mark_read_unknown_message_raises(harness: _Harness) -> None:
    with pytest.raises(NotFoundError):
        harness.tracker.mark_read("MSG_missing", "agent-1")


def test_concurrent_readers_decrement_once() -> None:
    harness = _Harness("inmemory", Path("."))
    message_id = harness.inbound()
    barrier = threading.Barrier(6)

    def _worker(reader: str) -> None:
        barrier.wait()
        harness.tracker.mark_read(message_id, reader)

    threads = [threading.Thread(target=_worker, args=(f"agent-{index % 3}",)) for index in range(6)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert harness.unread() == 0
    assert len(harness.repository.list_read_receipts(message_id)) == 3
