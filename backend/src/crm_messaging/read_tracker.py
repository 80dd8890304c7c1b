from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone

from .conversations import ConversationRepository, MessageRecord
from .ledger import MessageLedger
from .registry import ConversationRegistry


@dataclass(frozen=True)
class ReadMark:
    message: MessageRecord
    receipt_created: bool
    first_read: bool


class ReadTracker:
    """Per-reader receipts; the conversation counter drops once per customer message."""

    def __init__(
        self,
        *,
        repository: ConversationRepository,
        registry: ConversationRegistry,
        ledger: MessageLedger,
    ) -> None:
        self._repository = repository
        self._registry = registry
        self._ledger = ledger

    def mark_read(self, message_id: str, reader_id: str, *, at: datetime | None = None) -> ReadMark:
        mark = self._mark(message_id, reader_id, at=at)
        if mark.first_read:
            self._registry.apply_message_read(mark.message.conversation_id)
        return mark

    def mark_conversation_read(self, conversation_id: str, reader_id: str, *, at: datetime | None = None) -> int:
        self._registry.get(conversation_id)
        newly_read = 0
        for message in self._repository.list_unread_for_reader(conversation_id, reader_id=reader_id):
            if self._mark(message.message_id, reader_id, at=at).first_read:
                newly_read += 1
        self._registry.mark_all_read(conversation_id, newly_read=newly_read)
        return newly_read

    def unread_count_for(self, conversation_id: str, reader_id: str) -> int:
        return self._repository.count_unread_for_reader(conversation_id, reader_id=reader_id)

    def _mark(self, message_id: str, reader_id: str, *, at: datetime | None) -> ReadMark:
        stamp = at or datetime.now(timezone.utc)
        message = self._ledger.get(message_id)
        created = self._repository.add_read_receipt(message_id=message_id, reader_id=reader_id, read_at=stamp)
        if message.sender_type != "customer":
            return ReadMark(message=message, receipt_created=created, first_read=False)
        # received -> read happens once under compare-and-set, whichever reader gets there first
        outcome = self._ledger.mark_read(message_id, at=stamp)
        first_read = outcome.transition.applied and outcome.transition.previous == "received"
        return ReadMark(message=outcome.message, receipt_created=created, first_read=first_read)
