from __future__ import annotations

from .conversations import ConversationRepository, MessageRecord
from .errors import NotFoundError


class MessageCorrelator:
    """Maps provider message ids back to ledger entries.

    ``is_duplicate`` is a fast path only. Concurrent deliveries of the same
    webhook are settled by the unique provider id on insert, which surfaces as
    ``DuplicateWebhookError``.
    """

    def __init__(self, *, repository: ConversationRepository) -> None:
        self._repository = repository

    def correlate_by_provider_id(self, provider_message_id: str) -> MessageRecord:
        normalized = provider_message_id.strip()
        message = self._repository.find_message_by_provider_id(normalized) if normalized else None
        if message is None:
            raise NotFoundError("provider message", provider_message_id)
        return message

    def is_duplicate(self, provider_message_sid: str) -> bool:
        normalized = provider_message_sid.strip()
        if not normalized:
            return False
        return self._repository.find_message_by_provider_id(normalized) is not None
