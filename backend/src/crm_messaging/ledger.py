from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable

from .conversations import ConversationRepository, MediaAttachment, MessageRecord, new_message_id
from .delivery_status import FAILURE_STATUSES, StatusTransition, normalize_provider_status, resolve_transition
from .errors import NotFoundError, PartialWriteError
from .legacy_store import LegacyMessageRecord, LegacyMessageRepository, new_legacy_message_id
from .models import Channel, ListOrder, MessageStatus, SenderType

logger = logging.getLogger(__name__)

_STATUS_CAS_ATTEMPTS = 5


@dataclass(frozen=True)
class LegacyContext:
    lead_id: str | None = None
    customer_name: str | None = None


@dataclass(frozen=True)
class StatusOutcome:
    message: MessageRecord
    transition: StatusTransition


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class MessageLedger:
    """Append-only message store writing the conversation stream and the legacy table together."""

    def __init__(
        self,
        *,
        repository: ConversationRepository,
        legacy_repository: LegacyMessageRepository,
        max_attempts: int = 3,
    ) -> None:
        self._repository = repository
        self._legacy = legacy_repository
        self._max_attempts = max(1, max_attempts)

    def append(
        self,
        *,
        conversation_id: str,
        channel: Channel,
        sender_type: SenderType,
        sender_id: str | None,
        from_address: str,
        to_address: str,
        content: str,
        status: MessageStatus,
        media: Iterable[MediaAttachment] = (),
        provider_message_id: str | None = None,
        provider_status: str | None = None,
        sent_at: datetime | None = None,
        num_segments: int = 1,
        legacy_context: LegacyContext | None = None,
        now: datetime | None = None,
    ) -> MessageRecord:
        media_items = tuple(media)
        text = content or ""
        if not text.strip() and not media_items:
            raise ValueError("message content or media is required")

        created_at = now or _now_utc()
        message = MessageRecord(
            message_id=new_message_id(),
            conversation_id=conversation_id,
            channel=channel,
            sender_type=sender_type,
            sender_id=sender_id,
            from_address=from_address,
            to_address=to_address,
            content=text,
            media=media_items,
            status=status,
            provider_message_id=provider_message_id,
            provider_status=provider_status,
            failure_code=None,
            failure_message=None,
            legacy_message_id=new_legacy_message_id(channel),
            num_segments=num_segments,
            sent_at=sent_at or created_at,
            dispatched_at=None,
            delivered_at=None,
            read_at=None,
            created_at=created_at,
            updated_at=created_at,
        )
        stored = self._repository.insert_message(message)
        self._converge(stored, legacy_context)
        return stored

    def get(self, message_id: str) -> MessageRecord:
        message = self._repository.get_message(message_id)
        if message is None:
            raise NotFoundError("message", message_id)
        return message

    def list_by_conversation(
        self,
        conversation_id: str,
        *,
        page: int,
        page_size: int,
        order: ListOrder,
    ) -> tuple[list[MessageRecord], int]:
        if order not in ("asc", "desc"):
            raise ValueError(f"unsupported order: {order}")
        offset = (max(1, page) - 1) * page_size
        messages = self._repository.list_messages(
            conversation_id,
            offset=offset,
            limit=page_size,
            ascending=order == "asc",
        )
        return messages, self._repository.count_messages(conversation_id)

    def claim_dispatch(self, message_id: str, *, at: datetime | None = None) -> bool:
        return self._repository.claim_dispatch(message_id, at=at or _now_utc())

    def attach_provider_result(
        self,
        message_id: str,
        *,
        provider_message_id: str,
        provider_status: str,
    ) -> StatusOutcome:
        self._repository.attach_provider_id(message_id, provider_message_id)
        return self.apply_status(
            message_id,
            normalize_provider_status(provider_status),
            provider_status=provider_status,
        )

    def mark_delivered(self, message_id: str, *, at: datetime | None = None) -> StatusOutcome:
        return self.apply_status(message_id, "delivered", at=at)

    def mark_failed(self, message_id: str, *, code: str, message: str | None) -> StatusOutcome:
        return self.apply_status(message_id, "failed", error_code=code, error_message=message)

    def mark_read(self, message_id: str, *, at: datetime | None = None) -> StatusOutcome:
        return self.apply_status(message_id, "read", at=at)

    def apply_status(
        self,
        message_id: str,
        requested: str | None,
        *,
        provider_status: str | None = None,
        error_code: str | None = None,
        error_message: str | None = None,
        at: datetime | None = None,
        from_provider: bool = False,
    ) -> StatusOutcome:
        stamp = at or _now_utc()
        for _ in range(_STATUS_CAS_ATTEMPTS):
            current = self.get(message_id)
            transition = resolve_transition(
                current.status,
                requested,
                sender_type=current.sender_type,
                from_provider=from_provider,
            )
            if transition.applied:
                failed = transition.resulting in FAILURE_STATUSES
                updated = self._repository.update_message_status(
                    message_id,
                    expected_status=current.status,
                    status=transition.resulting,
                    provider_status=provider_status,
                    failure_code=(error_code or transition.resulting) if failed else None,
                    failure_message=error_message if failed else None,
                    delivered_at=stamp if transition.resulting == "delivered" else None,
                    read_at=stamp if transition.resulting == "read" else None,
                )
            elif provider_status is not None and provider_status != current.provider_status:
                updated = self._repository.update_message_status(
                    message_id,
                    expected_status=current.status,
                    status=current.status,
                    provider_status=provider_status,
                )
            else:
                return StatusOutcome(message=current, transition=transition)
            if updated is not None:
                break
        else:
            raise PartialWriteError(message_id, "status update lost every compare-and-set attempt")

        if not transition.applied:
            logger.info(
                "status %s for %s not applied (%s); kept %s",
                requested,
                message_id,
                transition.reason,
                transition.resulting,
            )
        self._converge(updated, None)
        return StatusOutcome(message=updated, transition=transition)

    def list_stale_pending(self, *, before: datetime, limit: int = 100) -> list[MessageRecord]:
        return self._repository.list_stale_pending(before=before, limit=limit)

    def reconcile_legacy(self, message_id: str) -> LegacyMessageRecord:
        return self._converge(self.get(message_id), None)

    def _converge(self, message: MessageRecord, context: LegacyContext | None) -> LegacyMessageRecord:
        last_error = "legacy record diverged from ledger"
        current = message
        for attempt in range(1, self._max_attempts + 1):
            current = self._repository.get_message(message.message_id) or current
            try:
                legacy = self._legacy.upsert(_legacy_twin(current, context))
            except Exception as exc:  # noqa: BLE001
                last_error = f"{type(exc).__name__}: {exc}"
                logger.warning(
                    "legacy write for %s failed (attempt %d/%d): %s",
                    message.message_id,
                    attempt,
                    self._max_attempts,
                    last_error,
                )
                continue
            latest = self._repository.get_message(message.message_id) or current
            if legacy.status == latest.status and legacy.provider_message_id == latest.provider_message_id:
                return legacy
            last_error = "legacy record diverged from ledger"
        logger.error("dual write for %s did not converge: %s", message.message_id, last_error)
        raise PartialWriteError(message.message_id, last_error, record=current)


def _legacy_twin(message: MessageRecord, context: LegacyContext | None) -> LegacyMessageRecord:
    inbound = message.sender_type == "customer"
    return LegacyMessageRecord(
        legacy_message_id=message.legacy_message_id or new_legacy_message_id(message.channel),
        source_message_id=message.message_id,
        channel=message.channel,
        message_type="inbound" if inbound else "outbound",
        direction="inbound" if inbound else "outbound-api",
        from_number=message.from_address,
        to_number=message.to_address,
        content=message.content,
        media_urls=tuple(item.url for item in message.media),
        status=message.status,
        provider_message_id=message.provider_message_id,
        provider_status=message.provider_status,
        error_code=message.failure_code,
        error_message=message.failure_message,
        num_segments=message.num_segments,
        lead_id=context.lead_id if context else None,
        customer_name=context.customer_name if context else None,
        user_id=message.sender_id,
        is_read=message.status == "read",
        sent_at=message.sent_at,
        delivered_at=message.delivered_at,
        read_at=message.read_at,
        updated_at=message.updated_at,
    )
