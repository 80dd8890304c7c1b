from __future__ import annotations

import logging
import math
import mimetypes
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Iterable

from .config import Settings
from .conversations import ConversationRecord, ConversationRepository, MediaAttachment, MessageRecord
from .correlation import MessageCorrelator
from .delivery_status import normalize_provider_status
from .errors import DuplicateWebhookError, NotFoundError, PartialWriteError, ProviderError
from .leads import LeadDirectory
from .ledger import LegacyContext, MessageLedger
from .legacy_store import InboxQuery, LegacyMessageRecord, LegacyMessageRepository
from .models import (
    AgentRole,
    Channel,
    ConversationItem,
    ConversationSort,
    ConversationStatus,
    FailureReason,
    InboundMessageWebhook,
    InboxItem,
    LegacyMessageType,
    MediaReference,
    MessageItem,
    MessageStatus,
    Pagination,
    StatusCallbackResponse,
    StatusCallbackWebhook,
    media_type_for,
)
from .provider import MessagingProvider, ProviderSendRequest, format_address, mask_contact_target
from .read_tracker import ReadMark, ReadTracker
from .registry import ConversationRegistry, message_snippet

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SendOutcome:
    message: MessageRecord
    conversation: ConversationRecord
    scheduled: bool = False


@dataclass(frozen=True)
class InboundOutcome:
    conversation_id: str | None
    message_id: str | None
    deduped: bool
    conversation_created: bool = False
    legacy_synced: bool = True


@dataclass(frozen=True)
class ConversationView:
    conversation: ConversationRecord
    messages: list[MessageRecord]
    total: int
    marked_read: int


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _guess_media(url: str) -> MediaAttachment:
    content_type, _ = mimetypes.guess_type(url.split("?", 1)[0])
    file_name = url.split("?", 1)[0].rstrip("/").rsplit("/", 1)[-1] or None
    return MediaAttachment(url=url, media_type=media_type_for(content_type), file_name=file_name)


def build_pagination(*, page: int, limit: int, total: int) -> Pagination:
    return Pagination(page=page, limit=limit, total=total, pages=math.ceil(total / limit) if limit else 0)


def to_message_item(record: MessageRecord) -> MessageItem:
    failure = None
    if record.failure_code:
        failure = FailureReason(code=record.failure_code, message=record.failure_message)
    return MessageItem(
        message_id=record.message_id,
        conversation_id=record.conversation_id,
        channel=record.channel,
        sender_type=record.sender_type,
        sender_id=record.sender_id,
        from_address=record.from_address,
        to_address=record.to_address,
        content=record.content,
        media=[
            MediaReference(url=item.url, type=item.media_type, file_name=item.file_name)
            for item in record.media
        ],
        status=record.status,
        provider_message_id=record.provider_message_id,
        provider_status=record.provider_status,
        failure_reason=failure,
        legacy_message_id=record.legacy_message_id,
        sent_at=record.sent_at,
        delivered_at=record.delivered_at,
        read_at=record.read_at,
    )


def to_conversation_item(record: ConversationRecord) -> ConversationItem:
    return ConversationItem(
        conversation_id=record.conversation_id,
        channel=record.channel,
        phone_address=record.phone_address,
        lead_id=record.lead_id,
        customer_name=record.customer_name,
        status=record.status,
        tags=list(record.tags),
        notes=record.notes,
        last_message=record.last_message,
        last_message_at=record.last_message_at,
        message_count=record.message_count,
        unread_count=record.unread_count,
        created_at=record.created_at,
        updated_at=record.updated_at,
    )


def to_inbox_item(record: LegacyMessageRecord) -> InboxItem:
    return InboxItem(
        legacy_message_id=record.legacy_message_id,
        source_message_id=record.source_message_id,
        channel=record.channel,
        message_type=record.message_type,
        direction=record.direction,
        from_number=record.from_number,
        to_number=record.to_number,
        content=record.content,
        media_urls=list(record.media_urls),
        status=record.status,
        provider_message_id=record.provider_message_id,
        provider_status=record.provider_status,
        error_code=record.error_code,
        error_message=record.error_message,
        num_segments=record.num_segments,
        lead_id=record.lead_id,
        customer_name=record.customer_name,
        user_id=record.user_id,
        is_read=record.is_read,
        sent_at=record.sent_at,
        delivered_at=record.delivered_at,
        read_at=record.read_at,
    )


class MessagingService:
    """Send, inbound and status-callback flows over the registry, ledger and provider."""

    def __init__(
        self,
        *,
        settings: Settings,
        repository: ConversationRepository,
        legacy_repository: LegacyMessageRepository,
        provider: MessagingProvider,
        leads: LeadDirectory,
    ) -> None:
        self._settings = settings
        self._repository = repository
        self._legacy = legacy_repository
        self._provider = provider
        self._leads = leads
        self.registry = ConversationRegistry(repository=repository)
        self.ledger = MessageLedger(
            repository=repository,
            legacy_repository=legacy_repository,
            max_attempts=settings.dual_write_max_attempts,
        )
        self.correlator = MessageCorrelator(repository=repository)
        self.read_tracker = ReadTracker(repository=repository, registry=self.registry, ledger=self.ledger)

    def clamp_limit(self, limit: int) -> int:
        return max(1, min(limit, self._settings.page_limit_max))

    # Agent sends

    def send_message(
        self,
        channel: Channel,
        to: str,
        body: str,
        *,
        sender_id: str,
        media_urls: Iterable[str] = (),
        customer_name: str | None = None,
        lead_id: str | None = None,
        scheduled_for: datetime | None = None,
        now: datetime | None = None,
    ) -> SendOutcome:
        # An unprovisioned line must fail before anything is written.
        sender_address = self._provider.lookup_sender_address(channel)
        to_address = format_address(to)
        if not to_address:
            raise ValueError("recipient address is required")
        if customer_name is None or lead_id is None:
            match = self._leads.find_by_phone(to_address)
            if match is not None:
                lead_id = lead_id or match.lead_id
                customer_name = customer_name or match.customer_name
        conversation, _ = self.registry.find_or_create(
            channel,
            to_address,
            customer_name=customer_name,
            lead_id=lead_id,
        )
        return self._send(
            conversation,
            sender_address=sender_address,
            body=body,
            sender_id=sender_id,
            media_urls=media_urls,
            scheduled_for=scheduled_for,
            now=now,
        )

    def send_in_conversation(
        self,
        channel: Channel,
        conversation_id: str,
        body: str,
        *,
        sender_id: str,
        media_urls: Iterable[str] = (),
        scheduled_for: datetime | None = None,
        now: datetime | None = None,
    ) -> SendOutcome:
        sender_address = self._provider.lookup_sender_address(channel)
        conversation = self.get_conversation(channel, conversation_id)
        return self._send(
            conversation,
            sender_address=sender_address,
            body=body,
            sender_id=sender_id,
            media_urls=media_urls,
            scheduled_for=scheduled_for,
            now=now,
        )

    def dispatch_scheduled(self, message_id: str) -> SendOutcome:
        """Hand a scheduled entry to the provider; called by an external scheduler."""
        message = self.ledger.get(message_id)
        if message.sender_type != "agent" or message.status != "queued" or message.dispatched_at is not None:
            raise ValueError(f"message {message_id} is not awaiting dispatch")
        self._provider.lookup_sender_address(message.channel)
        dispatched = self._dispatch(message)
        return SendOutcome(message=dispatched, conversation=self.registry.get(message.conversation_id))

    def _send(
        self,
        conversation: ConversationRecord,
        *,
        sender_address: str,
        body: str,
        sender_id: str,
        media_urls: Iterable[str],
        scheduled_for: datetime | None,
        now: datetime | None,
    ) -> SendOutcome:
        stamp = now or _now_utc()
        media = tuple(_guess_media(url) for url in media_urls if url and url.strip())
        scheduled = scheduled_for is not None and _as_utc(scheduled_for) > stamp
        snippet = message_snippet(body, has_media=bool(media))
        conversation_id = conversation.conversation_id

        try:
            message = self.ledger.append(
                conversation_id=conversation_id,
                channel=conversation.channel,
                sender_type="agent",
                sender_id=sender_id,
                from_address=sender_address,
                to_address=conversation.phone_address,
                content=body,
                status="queued",
                media=media,
                sent_at=_as_utc(scheduled_for) if scheduled and scheduled_for is not None else stamp,
                legacy_context=LegacyContext(lead_id=conversation.lead_id, customer_name=conversation.customer_name),
                now=stamp,
            )
        except PartialWriteError:
            self.registry.apply_outbound_message(conversation_id, snippet, stamp)
            raise

        if scheduled:
            updated = self.registry.apply_outbound_message(conversation_id, snippet, message.sent_at)
            self._repository.append_event(
                conversation_id=conversation_id,
                event_type="outbound_queued",
                payload={"message_id": message.message_id, "scheduled_for": message.sent_at.isoformat()},
            )
            return SendOutcome(message=message, conversation=updated, scheduled=True)

        try:
            message = self._dispatch(message)
        finally:
            updated = self.registry.apply_outbound_message(conversation_id, snippet, message.sent_at)
        return SendOutcome(message=message, conversation=updated)

    def _dispatch(self, message: MessageRecord) -> MessageRecord:
        if not self.ledger.claim_dispatch(message.message_id):
            logger.info("message %s was already dispatched", message.message_id)
            return self.ledger.get(message.message_id)

        request = ProviderSendRequest(
            channel=message.channel,
            from_address=message.from_address,
            to_address=message.to_address,
            body=message.content,
            media_urls=tuple(item.url for item in message.media),
            status_callback_url=self._settings.status_callback_url(message.channel),
        )
        try:
            result = self._provider.send(request)
        except ProviderError as exc:
            logger.warning(
                "%s send %s to %s failed: %s",
                message.channel,
                message.message_id,
                mask_contact_target(message.to_address),
                exc.code,
            )
            try:
                self.ledger.mark_failed(message.message_id, code=exc.code, message=exc.message)
            except PartialWriteError as partial:
                logger.error("failed send %s left legacy record behind: %s", message.message_id, partial.reason)
            self._repository.append_event(
                conversation_id=message.conversation_id,
                event_type="send_failed",
                payload={"message_id": message.message_id, "code": exc.code},
            )
            raise

        outcome = self.ledger.attach_provider_result(
            message.message_id,
            provider_message_id=result.provider_message_id,
            provider_status=result.status,
        )
        self._repository.append_event(
            conversation_id=message.conversation_id,
            event_type="outbound_queued",
            payload={"message_id": message.message_id, "provider_message_id": result.provider_message_id},
        )
        return outcome.message

    # Webhooks

    def ingest_inbound(
        self,
        channel: Channel,
        payload: InboundMessageWebhook,
        *,
        now: datetime | None = None,
    ) -> InboundOutcome:
        sid = payload.message_sid
        if self.correlator.is_duplicate(sid):
            existing = self._repository.find_message_by_provider_id(sid)
            logger.info("duplicate %s webhook %s ignored", channel, sid)
            return InboundOutcome(
                conversation_id=existing.conversation_id if existing else None,
                message_id=existing.message_id if existing else None,
                deduped=True,
            )

        stamp = now or _now_utc()
        phone_address = format_address(payload.from_address)
        match = self._leads.find_by_phone(phone_address)
        customer_name = (match.customer_name if match else None) or payload.profile_name
        conversation, created = self.registry.find_or_create(
            channel,
            phone_address,
            customer_name=customer_name,
            lead_id=match.lead_id if match else None,
        )

        media = tuple(
            MediaAttachment(url=item.url, media_type=item.type, file_name=item.file_name) for item in payload.media
        )
        legacy_synced = True
        try:
            message = self.ledger.append(
                conversation_id=conversation.conversation_id,
                channel=channel,
                sender_type="customer",
                sender_id=None,
                from_address=phone_address,
                to_address=format_address(payload.to_address),
                content=payload.body or "",
                status="received",
                media=media,
                provider_message_id=sid,
                provider_status="received",
                num_segments=max(1, payload.num_segments),
                legacy_context=LegacyContext(lead_id=conversation.lead_id, customer_name=conversation.customer_name),
                now=stamp,
            )
        except DuplicateWebhookError:
            existing = self._repository.find_message_by_provider_id(sid)
            logger.info("concurrent duplicate %s webhook %s ignored", channel, sid)
            return InboundOutcome(
                conversation_id=conversation.conversation_id,
                message_id=existing.message_id if existing else None,
                deduped=True,
            )
        except PartialWriteError as exc:
            if exc.record is None:
                raise
            logger.warning("inbound %s stored without legacy twin: %s", sid, exc.reason)
            message = exc.record
            legacy_synced = False

        self.registry.apply_inbound_message(
            conversation.conversation_id,
            message_snippet(message.content, has_media=bool(message.media)),
            message.sent_at,
        )
        self._repository.append_event(
            conversation_id=conversation.conversation_id,
            event_type="inbound_received",
            payload={"message_id": message.message_id, "provider_message_id": sid},
        )
        return InboundOutcome(
            conversation_id=conversation.conversation_id,
            message_id=message.message_id,
            deduped=False,
            conversation_created=created,
            legacy_synced=legacy_synced,
        )

    def apply_status_callback(self, channel: Channel, payload: StatusCallbackWebhook) -> StatusCallbackResponse:
        try:
            message = self.correlator.correlate_by_provider_id(payload.message_sid)
        except NotFoundError:
            logger.warning("%s status callback for unknown message %s", channel, payload.message_sid)
            return StatusCallbackResponse(reason="message_not_found")
        if message.channel != channel:
            logger.warning("status callback for %s arrived on %s route", message.message_id, channel)

        raw_status = payload.raw_status
        try:
            outcome = self.ledger.apply_status(
                message.message_id,
                normalize_provider_status(raw_status),
                provider_status=raw_status,
                error_code=payload.error_code,
                error_message=payload.error_message,
                from_provider=True,
            )
        except PartialWriteError as exc:
            logger.warning("status %s for %s applied without legacy twin: %s", raw_status, message.message_id, exc.reason)
            current = exc.record or message
            return StatusCallbackResponse(
                message_id=message.message_id,
                status=current.status,
                applied=exc.record is not None,
                reason="legacy_sync_pending",
            )

        transition = outcome.transition
        if transition.reason == "unrecognized_status":
            logger.warning("unrecognized provider status %r for %s", raw_status, message.message_id)
        self._repository.append_event(
            conversation_id=message.conversation_id,
            event_type="status_applied" if transition.applied else "status_ignored",
            payload={
                "message_id": message.message_id,
                "requested": raw_status,
                "status": transition.resulting,
                "reason": transition.reason,
            },
        )
        return StatusCallbackResponse(
            message_id=message.message_id,
            status=outcome.message.status,
            applied=transition.applied,
            reason=transition.reason,
        )

    # Conversations

    def start_conversation(
        self,
        channel: Channel,
        phone: str,
        *,
        customer_name: str | None = None,
        lead_id: str | None = None,
    ) -> tuple[ConversationRecord, bool]:
        phone_address = format_address(phone)
        if not phone_address:
            raise ValueError("phone is required")
        match = self._leads.find_by_phone(phone_address)
        if match is not None:
            lead_id = lead_id or match.lead_id
            customer_name = customer_name or match.customer_name
        return self.registry.find_or_create(channel, phone_address, customer_name=customer_name, lead_id=lead_id)

    def get_conversation(self, channel: Channel, conversation_id: str) -> ConversationRecord:
        conversation = self.registry.get(conversation_id)
        if conversation.channel != channel:
            raise NotFoundError("conversation", conversation_id)
        return conversation

    def update_conversation(
        self,
        channel: Channel,
        conversation_id: str,
        *,
        status: ConversationStatus | None = None,
        notes: str | None = None,
        tags: list[str] | None = None,
        customer_name: str | None = None,
    ) -> ConversationRecord:
        self.get_conversation(channel, conversation_id)
        updated = self.registry.update_details(
            conversation_id,
            status=status,
            notes=notes,
            tags=tags,
            customer_name=customer_name,
        )
        changes = {
            key: value
            for key, value in {"status": status, "notes": notes, "tags": tags, "customer_name": customer_name}.items()
            if value is not None
        }
        self._repository.append_event(
            conversation_id=conversation_id,
            event_type="conversation_updated",
            payload=changes,
        )
        return updated

    def search_conversations(
        self,
        channel: Channel,
        *,
        text: str | None = None,
        status: ConversationStatus | None = "active",
        has_unread: bool = False,
        sort_by: ConversationSort = "recent",
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[ConversationRecord], int]:
        return self.registry.search(
            channel=channel,
            text=text,
            status=status,
            has_unread=has_unread,
            sort_by=sort_by,
            page=max(1, page),
            limit=self.clamp_limit(limit),
        )

    def open_conversation(
        self,
        channel: Channel,
        conversation_id: str,
        *,
        reader_id: str,
        page: int = 1,
        limit: int = 50,
    ) -> ConversationView:
        self.get_conversation(channel, conversation_id)
        marked = self.read_tracker.mark_conversation_read(conversation_id, reader_id)
        messages, total = self.ledger.list_by_conversation(
            conversation_id,
            page=page,
            page_size=self.clamp_limit(limit),
            order="asc",
        )
        return ConversationView(
            conversation=self.registry.get(conversation_id),
            messages=messages,
            total=total,
            marked_read=marked,
        )

    def mark_message_read(
        self,
        channel: Channel,
        conversation_id: str,
        message_id: str,
        *,
        reader_id: str,
    ) -> tuple[ReadMark, ConversationRecord]:
        self.get_conversation(channel, conversation_id)
        message = self.ledger.get(message_id)
        if message.conversation_id != conversation_id:
            raise NotFoundError("message", message_id)
        mark = self.read_tracker.mark_read(message_id, reader_id)
        return mark, self.registry.get(conversation_id)

    def unread_count(self, channel: Channel, conversation_id: str, *, reader_id: str) -> tuple[int, ConversationRecord]:
        conversation = self.get_conversation(channel, conversation_id)
        return self.read_tracker.unread_count_for(conversation_id, reader_id), conversation

    def list_inbox(
        self,
        channel: Channel,
        *,
        viewer_id: str,
        viewer_role: AgentRole,
        search: str | None = None,
        status: MessageStatus | None = None,
        message_type: LegacyMessageType | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[LegacyMessageRecord], int]:
        size = self.clamp_limit(limit)
        return self._legacy.list_inbox(
            InboxQuery(
                channel=channel,
                viewer_id=viewer_id,
                viewer_role=viewer_role,
                search=search,
                status=status,
                message_type=message_type,
                offset=(max(1, page) - 1) * size,
                limit=size,
            )
        )

    # Maintenance

    def expire_stale_pending(self, *, now: datetime | None = None, limit: int = 100) -> list[MessageRecord]:
        """Fail agent sends that never got a provider id inside the pending window."""
        stamp = now or _now_utc()
        cutoff = stamp - timedelta(seconds=self._settings.pending_send_timeout_seconds)
        expired: list[MessageRecord] = []
        for message in self.ledger.list_stale_pending(before=cutoff, limit=limit):
            code = "provider_timeout" if message.dispatched_at is not None else "dispatch_timeout"
            try:
                outcome = self.ledger.mark_failed(
                    message.message_id,
                    code=code,
                    message=f"no provider acknowledgement within {self._settings.pending_send_timeout_seconds}s",
                )
            except PartialWriteError as exc:
                logger.warning("expired %s without legacy twin: %s", message.message_id, exc.reason)
                if exc.record is not None and exc.record.status == "failed":
                    expired.append(exc.record)
                continue
            if not outcome.transition.applied:
                continue
            expired.append(outcome.message)
            self._repository.append_event(
                conversation_id=message.conversation_id,
                event_type="send_failed",
                payload={"message_id": message.message_id, "code": code},
            )
        if expired:
            logger.info("expired %d pending sends older than %s", len(expired), cutoff.isoformat())
        return expired
