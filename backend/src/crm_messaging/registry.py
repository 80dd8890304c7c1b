from __future__ import annotations

import logging
from datetime import datetime, timezone

from .conversations import (
    ConversationQuery,
    ConversationRecord,
    ConversationRepository,
    new_conversation_id,
    preview_text,
)
from .errors import ConversationExistsError, NotFoundError
from .models import Channel, ConversationSort, ConversationStatus

logger = logging.getLogger(__name__)

MEDIA_SNIPPET = "[media]"


def message_snippet(content: str, *, has_media: bool) -> str:
    snippet = preview_text(content)
    if snippet:
        return snippet
    return MEDIA_SNIPPET if has_media else ""


class ConversationRegistry:
    """Owns conversation aggregates; counters change only through this class."""

    def __init__(self, *, repository: ConversationRepository) -> None:
        self._repository = repository

    def find_or_create(
        self,
        channel: Channel,
        phone_address: str,
        *,
        customer_name: str | None = None,
        lead_id: str | None = None,
    ) -> tuple[ConversationRecord, bool]:
        existing = self._repository.find_conversation(channel=channel, phone_address=phone_address)
        if existing is not None:
            return self._backfill_hints(existing, customer_name=customer_name, lead_id=lead_id), False

        now = datetime.now(timezone.utc)
        candidate = ConversationRecord(
            conversation_id=new_conversation_id(),
            channel=channel,
            phone_address=phone_address,
            lead_id=lead_id,
            customer_name=customer_name,
            status="active",
            tags=(),
            notes=None,
            last_message=None,
            last_message_at=None,
            message_count=0,
            unread_count=0,
            created_at=now,
            updated_at=now,
        )
        try:
            return self._repository.insert_conversation(candidate), True
        except ConversationExistsError:
            winner = self._repository.find_conversation(channel=channel, phone_address=phone_address)
            if winner is None:
                raise
            logger.info("conversation create race lost for %s; using %s", channel, winner.conversation_id)
            return self._backfill_hints(winner, customer_name=customer_name, lead_id=lead_id), False

    def get(self, conversation_id: str) -> ConversationRecord:
        record = self._repository.get_conversation(conversation_id)
        if record is None:
            raise NotFoundError("conversation", conversation_id)
        return record

    def apply_outbound_message(self, conversation_id: str, snippet: str, timestamp: datetime) -> ConversationRecord:
        return self._repository.apply_message_to_conversation(
            conversation_id,
            snippet=snippet,
            timestamp=timestamp,
            unread_increment=0,
        )

    def apply_inbound_message(self, conversation_id: str, snippet: str, timestamp: datetime) -> ConversationRecord:
        return self._repository.apply_message_to_conversation(
            conversation_id,
            snippet=snippet,
            timestamp=timestamp,
            unread_increment=1,
        )

    def apply_message_read(self, conversation_id: str) -> ConversationRecord:
        return self._repository.decrement_unread(conversation_id, amount=1)

    def mark_all_read(self, conversation_id: str, *, newly_read: int) -> ConversationRecord:
        """Clear the messages a reader just opened.

        Decrements by the number of messages that transitioned to read, so an
        inbound message landing mid-open keeps its unread slot.
        """
        if newly_read <= 0:
            return self.get(conversation_id)
        return self._repository.decrement_unread(conversation_id, amount=newly_read)

    def update_details(
        self,
        conversation_id: str,
        *,
        status: ConversationStatus | None = None,
        notes: str | None = None,
        tags: list[str] | None = None,
        customer_name: str | None = None,
    ) -> ConversationRecord:
        return self._repository.update_conversation_details(
            conversation_id,
            status=status,
            notes=notes,
            tags=tuple(tags) if tags is not None else None,
            customer_name=customer_name,
        )

    def search(
        self,
        *,
        channel: Channel | None,
        text: str | None,
        status: ConversationStatus | None,
        has_unread: bool,
        sort_by: ConversationSort,
        page: int,
        limit: int,
    ) -> tuple[list[ConversationRecord], int]:
        return self._repository.search_conversations(
            ConversationQuery(
                channel=channel,
                text=text,
                status=status,
                has_unread=has_unread,
                sort_by=sort_by,
                offset=(page - 1) * limit,
                limit=limit,
            )
        )

    def _backfill_hints(
        self,
        record: ConversationRecord,
        *,
        customer_name: str | None,
        lead_id: str | None,
    ) -> ConversationRecord:
        needs_name = customer_name is not None and not record.customer_name
        needs_lead = lead_id is not None and not record.lead_id
        if not needs_name and not needs_lead:
            return record
        return self._repository.update_conversation_details(
            record.conversation_id,
            customer_name=customer_name if needs_name else None,
            lead_id=lead_id if needs_lead else None,
            fill_only=True,
        )
