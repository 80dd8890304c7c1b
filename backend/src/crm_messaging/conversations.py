from __future__ import annotations

import json
import threading
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timezone
from itertools import count
from typing import Any, Iterable, Protocol
from uuid import uuid4

from sqlalchemy import (
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    case,
    create_engine,
    delete,
    exists,
    func,
    literal,
    or_,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .errors import ConversationExistsError, DuplicateWebhookError, NotFoundError, ProviderIdConflictError
from .models import Channel, ConversationSort, ConversationStatus, MediaType, MessageStatus, SenderType

PENDING_STATUSES: tuple[str, ...] = ("queued", "sending")


@dataclass(frozen=True)
class MediaAttachment:
    url: str
    media_type: MediaType = "document"
    file_name: str | None = None


@dataclass(frozen=True)
class ConversationRecord:
    conversation_id: str
    channel: Channel
    phone_address: str
    lead_id: str | None
    customer_name: str | None
    status: ConversationStatus
    tags: tuple[str, ...]
    notes: str | None
    last_message: str | None
    last_message_at: datetime | None
    message_count: int
    unread_count: int
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class MessageRecord:
    message_id: str
    conversation_id: str
    channel: Channel
    sender_type: SenderType
    sender_id: str | None
    from_address: str
    to_address: str
    content: str
    media: tuple[MediaAttachment, ...]
    status: MessageStatus
    provider_message_id: str | None
    provider_status: str | None
    failure_code: str | None
    failure_message: str | None
    legacy_message_id: str | None
    num_segments: int
    sent_at: datetime
    dispatched_at: datetime | None
    delivered_at: datetime | None
    read_at: datetime | None
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class ReadReceiptRecord:
    message_id: str
    reader_id: str
    read_at: datetime


@dataclass(frozen=True)
class ConversationQuery:
    channel: Channel | None = None
    text: str | None = None
    status: ConversationStatus | None = None
    has_unread: bool = False
    sort_by: ConversationSort = "recent"
    offset: int = 0
    limit: int = 20


class ConversationRepository(Protocol):
    def reset(self) -> None: ...

    def find_conversation(self, *, channel: Channel, phone_address: str) -> ConversationRecord | None: ...

    def insert_conversation(self, record: ConversationRecord) -> ConversationRecord: ...

    def get_conversation(self, conversation_id: str) -> ConversationRecord | None: ...

    def search_conversations(self, query: ConversationQuery) -> tuple[list[ConversationRecord], int]: ...

    def update_conversation_details(
        self,
        conversation_id: str,
        *,
        status: ConversationStatus | None = None,
        notes: str | None = None,
        tags: tuple[str, ...] | None = None,
        customer_name: str | None = None,
        lead_id: str | None = None,
        fill_only: bool = False,
    ) -> ConversationRecord: ...

    def apply_message_to_conversation(
        self,
        conversation_id: str,
        *,
        snippet: str,
        timestamp: datetime,
        unread_increment: int,
    ) -> ConversationRecord: ...

    def decrement_unread(self, conversation_id: str, *, amount: int) -> ConversationRecord: ...

    def insert_message(self, record: MessageRecord) -> MessageRecord: ...

    def get_message(self, message_id: str) -> MessageRecord | None: ...

    def find_message_by_provider_id(self, provider_message_id: str) -> MessageRecord | None: ...

    def list_messages(
        self,
        conversation_id: str,
        *,
        offset: int,
        limit: int,
        ascending: bool,
    ) -> list[MessageRecord]: ...

    def count_messages(self, conversation_id: str) -> int: ...

    def attach_provider_id(self, message_id: str, provider_message_id: str) -> MessageRecord: ...

    def update_message_status(
        self,
        message_id: str,
        *,
        expected_status: str,
        status: str,
        provider_status: str | None = None,
        failure_code: str | None = None,
        failure_message: str | None = None,
        delivered_at: datetime | None = None,
        read_at: datetime | None = None,
    ) -> MessageRecord | None: ...

    def claim_dispatch(self, message_id: str, *, at: datetime) -> bool: ...

    def list_stale_pending(self, *, before: datetime, limit: int) -> list[MessageRecord]: ...

    def add_read_receipt(self, *, message_id: str, reader_id: str, read_at: datetime) -> bool: ...

    def list_read_receipts(self, message_id: str) -> list[ReadReceiptRecord]: ...

    def list_unread_for_reader(self, conversation_id: str, *, reader_id: str) -> list[MessageRecord]: ...

    def count_unread_for_reader(self, conversation_id: str, *, reader_id: str) -> int: ...

    def append_event(self, *, conversation_id: str, event_type: str, payload: dict[str, Any]) -> None: ...

    def list_events(self, conversation_id: str) -> list[dict[str, Any]]: ...


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def new_conversation_id() -> str:
    return f"CONV_{uuid4().hex}"


def new_message_id() -> str:
    return f"MSG_{uuid4().hex}"


def preview_text(body_text: str, *, limit: int = 120) -> str:
    clean = " ".join(body_text.split())
    if len(clean) <= limit:
        return clean
    return clean[: limit - 3] + "..."


def _activity_at(record: ConversationRecord) -> datetime:
    return record.last_message_at or record.created_at


def _matches_text(record: ConversationRecord, needle: str) -> bool:
    haystack = (
        record.phone_address,
        record.customer_name or "",
        record.conversation_id,
        record.last_message or "",
    )
    return any(needle in value.lower() for value in haystack)


class InMemoryConversationRepository:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._sequence = count(1)
        self._conversations: dict[str, ConversationRecord] = {}
        self._conversation_by_address: dict[tuple[str, str], str] = {}
        self._messages: dict[str, MessageRecord] = {}
        self._message_order: dict[str, int] = {}
        self._messages_by_conversation: dict[str, list[str]] = defaultdict(list)
        self._message_by_provider_id: dict[str, str] = {}
        self._receipts: dict[tuple[str, str], ReadReceiptRecord] = {}
        self._events: dict[str, list[dict[str, Any]]] = defaultdict(list)

    def reset(self) -> None:
        with self._lock:
            self._sequence = count(1)
            self._conversations.clear()
            self._conversation_by_address.clear()
            self._messages.clear()
            self._message_order.clear()
            self._messages_by_conversation.clear()
            self._message_by_provider_id.clear()
            self._receipts.clear()
            self._events.clear()

    def find_conversation(self, *, channel: Channel, phone_address: str) -> ConversationRecord | None:
        with self._lock:
            conversation_id = self._conversation_by_address.get((channel, phone_address))
            return self._conversations.get(conversation_id) if conversation_id else None

    def insert_conversation(self, record: ConversationRecord) -> ConversationRecord:
        key = (record.channel, record.phone_address)
        with self._lock:
            if key in self._conversation_by_address:
                raise ConversationExistsError(record.channel, record.phone_address)
            self._conversation_by_address[key] = record.conversation_id
            self._conversations[record.conversation_id] = record
            return record

    def get_conversation(self, conversation_id: str) -> ConversationRecord | None:
        with self._lock:
            return self._conversations.get(conversation_id)

    def search_conversations(self, query: ConversationQuery) -> tuple[list[ConversationRecord], int]:
        with self._lock:
            records = list(self._conversations.values())
        if query.channel is not None:
            records = [value for value in records if value.channel == query.channel]
        if query.status is not None:
            records = [value for value in records if value.status == query.status]
        if query.has_unread:
            records = [value for value in records if value.unread_count > 0]
        needle = (query.text or "").strip().lower()
        if needle:
            records = [value for value in records if _matches_text(value, needle)]

        if query.sort_by == "oldest":
            records.sort(key=_activity_at)
        elif query.sort_by == "unread":
            records.sort(key=lambda value: (value.unread_count, _activity_at(value)), reverse=True)
        else:
            records.sort(key=_activity_at, reverse=True)
        return records[query.offset : query.offset + query.limit], len(records)

    def update_conversation_details(
        self,
        conversation_id: str,
        *,
        status: ConversationStatus | None = None,
        notes: str | None = None,
        tags: tuple[str, ...] | None = None,
        customer_name: str | None = None,
        lead_id: str | None = None,
        fill_only: bool = False,
    ) -> ConversationRecord:
        with self._lock:
            current = self._require_conversation(conversation_id)
            changes: dict[str, Any] = {}
            if status is not None:
                changes["status"] = status
            if notes is not None:
                changes["notes"] = notes
            if tags is not None:
                changes["tags"] = tuple(tags)
            if customer_name is not None and not (fill_only and current.customer_name):
                changes["customer_name"] = customer_name
            if lead_id is not None and not (fill_only and current.lead_id):
                changes["lead_id"] = lead_id
            if not changes:
                return current
            updated = ConversationRecord(**{**current.__dict__, **changes, "updated_at": _now_utc()})
            self._conversations[conversation_id] = updated
            return updated

    def apply_message_to_conversation(
        self,
        conversation_id: str,
        *,
        snippet: str,
        timestamp: datetime,
        unread_increment: int,
    ) -> ConversationRecord:
        with self._lock:
            current = self._require_conversation(conversation_id)
            changes: dict[str, Any] = {
                "message_count": current.message_count + 1,
                "unread_count": current.unread_count + unread_increment,
                "updated_at": _now_utc(),
            }
            if current.last_message_at is None or current.last_message_at <= timestamp:
                changes["last_message"] = snippet
                changes["last_message_at"] = timestamp
            updated = ConversationRecord(**{**current.__dict__, **changes})
            self._conversations[conversation_id] = updated
            return updated

    def decrement_unread(self, conversation_id: str, *, amount: int) -> ConversationRecord:
        with self._lock:
            current = self._require_conversation(conversation_id)
            updated = ConversationRecord(
                **{
                    **current.__dict__,
                    "unread_count": max(0, current.unread_count - amount),
                    "updated_at": _now_utc(),
                }
            )
            self._conversations[conversation_id] = updated
            return updated

    def insert_message(self, record: MessageRecord) -> MessageRecord:
        with self._lock:
            if record.provider_message_id and record.provider_message_id in self._message_by_provider_id:
                raise DuplicateWebhookError(record.provider_message_id)
            self._messages[record.message_id] = record
            self._message_order[record.message_id] = next(self._sequence)
            self._messages_by_conversation[record.conversation_id].append(record.message_id)
            if record.provider_message_id:
                self._message_by_provider_id[record.provider_message_id] = record.message_id
            return record

    def get_message(self, message_id: str) -> MessageRecord | None:
        with self._lock:
            return self._messages.get(message_id)

    def find_message_by_provider_id(self, provider_message_id: str) -> MessageRecord | None:
        with self._lock:
            message_id = self._message_by_provider_id.get(provider_message_id)
            return self._messages.get(message_id) if message_id else None

    def list_messages(
        self,
        conversation_id: str,
        *,
        offset: int,
        limit: int,
        ascending: bool,
    ) -> list[MessageRecord]:
        with self._lock:
            records = [self._messages[value] for value in self._messages_by_conversation.get(conversation_id, [])]
            records.sort(
                key=lambda value: (value.sent_at, self._message_order[value.message_id]),
                reverse=not ascending,
            )
        return records[offset : offset + limit]

    def count_messages(self, conversation_id: str) -> int:
        with self._lock:
            return len(self._messages_by_conversation.get(conversation_id, []))

    def attach_provider_id(self, message_id: str, provider_message_id: str) -> MessageRecord:
        with self._lock:
            current = self._require_message(message_id)
            if current.provider_message_id == provider_message_id:
                return current
            if current.provider_message_id is not None:
                raise ProviderIdConflictError(f"message {message_id} already has a provider id")
            if provider_message_id in self._message_by_provider_id:
                raise ProviderIdConflictError(f"provider id {provider_message_id} belongs to another message")
            updated = MessageRecord(
                **{**current.__dict__, "provider_message_id": provider_message_id, "updated_at": _now_utc()}
            )
            self._messages[message_id] = updated
            self._message_by_provider_id[provider_message_id] = message_id
            return updated

    def update_message_status(
        self,
        message_id: str,
        *,
        expected_status: str,
        status: str,
        provider_status: str | None = None,
        failure_code: str | None = None,
        failure_message: str | None = None,
        delivered_at: datetime | None = None,
        read_at: datetime | None = None,
    ) -> MessageRecord | None:
        with self._lock:
            current = self._require_message(message_id)
            if current.status != expected_status:
                return None
            changes: dict[str, Any] = {"status": status, "updated_at": _now_utc()}
            if provider_status is not None:
                changes["provider_status"] = provider_status
            if failure_code is not None:
                changes["failure_code"] = failure_code
            if failure_message is not None:
                changes["failure_message"] = failure_message
            if delivered_at is not None and current.delivered_at is None:
                changes["delivered_at"] = delivered_at
            if read_at is not None and current.read_at is None:
                changes["read_at"] = read_at
            updated = MessageRecord(**{**current.__dict__, **changes})
            self._messages[message_id] = updated
            return updated

    def claim_dispatch(self, message_id: str, *, at: datetime) -> bool:
        with self._lock:
            current = self._require_message(message_id)
            if current.dispatched_at is not None or current.status != "queued":
                return False
            self._messages[message_id] = MessageRecord(
                **{**current.__dict__, "dispatched_at": at, "updated_at": _now_utc()}
            )
            return True

    def list_stale_pending(self, *, before: datetime, limit: int) -> list[MessageRecord]:
        with self._lock:
            stale = [
                value
                for value in self._messages.values()
                if value.sender_type == "agent"
                and value.status in PENDING_STATUSES
                and value.provider_message_id is None
                and (value.dispatched_at or value.sent_at) < before
            ]
        stale.sort(key=lambda value: value.dispatched_at or value.sent_at)
        return stale[:limit]

    def add_read_receipt(self, *, message_id: str, reader_id: str, read_at: datetime) -> bool:
        key = (message_id, reader_id)
        with self._lock:
            self._require_message(message_id)
            if key in self._receipts:
                return False
            self._receipts[key] = ReadReceiptRecord(message_id=message_id, reader_id=reader_id, read_at=read_at)
            return True

    def list_read_receipts(self, message_id: str) -> list[ReadReceiptRecord]:
        with self._lock:
            receipts = [value for key, value in self._receipts.items() if key[0] == message_id]
        return sorted(receipts, key=lambda value: value.read_at)

    def list_unread_for_reader(self, conversation_id: str, *, reader_id: str) -> list[MessageRecord]:
        with self._lock:
            records = [
                self._messages[value]
                for value in self._messages_by_conversation.get(conversation_id, [])
                if self._messages[value].sender_type == "customer" and (value, reader_id) not in self._receipts
            ]
            records.sort(key=lambda value: (value.sent_at, self._message_order[value.message_id]))
        return records

    def count_unread_for_reader(self, conversation_id: str, *, reader_id: str) -> int:
        return len(self.list_unread_for_reader(conversation_id, reader_id=reader_id))

    def append_event(self, *, conversation_id: str, event_type: str, payload: dict[str, Any]) -> None:
        with self._lock:
            self._events[conversation_id].append(
                {
                    "event_type": event_type,
                    "payload": payload,
                    "created_at": _now_utc().isoformat(),
                }
            )

    def list_events(self, conversation_id: str) -> list[dict[str, Any]]:
        with self._lock:
            return list(self._events.get(conversation_id, []))

    def _require_conversation(self, conversation_id: str) -> ConversationRecord:
        current = self._conversations.get(conversation_id)
        if current is None:
            raise NotFoundError("conversation", conversation_id)
        return current

    def _require_message(self, message_id: str) -> MessageRecord:
        current = self._messages.get(message_id)
        if current is None:
            raise NotFoundError("message", message_id)
        return current


class ConversationsBase(DeclarativeBase):
    pass


class _ConversationRow(ConversationsBase):
    __tablename__ = "conversations"
    __table_args__ = (UniqueConstraint("channel", "phone_address", name="uq_conversations_channel_phone"),)

    conversation_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    channel: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    phone_address: Mapped[str] = mapped_column(String(64), nullable=False)
    lead_id: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    customer_name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="active", index=True)
    tags_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_message_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    message_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    unread_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _MessageRow(ConversationsBase):
    __tablename__ = "conversation_messages"

    message_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    conversation_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("conversations.conversation_id"), nullable=False, index=True
    )
    channel: Mapped[str] = mapped_column(String(16), nullable=False)
    sender_type: Mapped[str] = mapped_column(String(16), nullable=False)
    sender_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    from_address: Mapped[str] = mapped_column(String(64), nullable=False)
    to_address: Mapped[str] = mapped_column(String(64), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False, default="")
    media_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    status: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    provider_message_id: Mapped[str | None] = mapped_column(String(64), nullable=True, unique=True)
    provider_status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    failure_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    failure_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    legacy_message_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    num_segments: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    sent_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    dispatched_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    read_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _ReadReceiptRow(ConversationsBase):
    __tablename__ = "message_read_receipts"
    __table_args__ = (UniqueConstraint("message_id", "reader_id", name="uq_message_read_receipts_reader"),)

    receipt_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    message_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("conversation_messages.message_id"), nullable=False, index=True
    )
    reader_id: Mapped[str] = mapped_column(String(128), nullable=False)
    read_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _ConversationEventRow(ConversationsBase):
    __tablename__ = "conversation_events"

    event_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    conversation_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("conversations.conversation_id"), nullable=False, index=True
    )
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    payload_json: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _dump_media(media: Iterable[MediaAttachment]) -> str:
    return json.dumps(
        [{"url": item.url, "type": item.media_type, "file_name": item.file_name} for item in media],
        separators=(",", ":"),
    )


def _load_media(raw: str | None) -> tuple[MediaAttachment, ...]:
    items = json.loads(raw or "[]")
    return tuple(
        MediaAttachment(url=item["url"], media_type=item.get("type", "document"), file_name=item.get("file_name"))
        for item in items
    )


class SqlAlchemyConversationRepository:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for CONVERSATION_STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            ConversationsBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.execute(delete(_ConversationEventRow))
                session.execute(delete(_ReadReceiptRow))
                session.execute(delete(_MessageRow))
                session.execute(delete(_ConversationRow))

    def find_conversation(self, *, channel: Channel, phone_address: str) -> ConversationRecord | None:
        with self._session() as session:
            row = session.scalar(
                select(_ConversationRow)
                .where(_ConversationRow.channel == channel)
                .where(_ConversationRow.phone_address == phone_address)
            )
            return self._conversation_record(row) if row is not None else None

    def insert_conversation(self, record: ConversationRecord) -> ConversationRecord:
        try:
            with self._session() as session:
                with session.begin():
                    row = _ConversationRow(
                        conversation_id=record.conversation_id,
                        channel=record.channel,
                        phone_address=record.phone_address,
                        lead_id=record.lead_id,
                        customer_name=record.customer_name,
                        status=record.status,
                        tags_json=json.dumps(list(record.tags)),
                        notes=record.notes,
                        last_message=record.last_message,
                        last_message_at=record.last_message_at,
                        message_count=record.message_count,
                        unread_count=record.unread_count,
                        created_at=record.created_at,
                        updated_at=record.updated_at,
                    )
                    session.add(row)
                    session.flush()
                    return self._conversation_record(row)
        except IntegrityError as exc:
            raise ConversationExistsError(record.channel, record.phone_address) from exc

    def get_conversation(self, conversation_id: str) -> ConversationRecord | None:
        with self._session() as session:
            row = session.get(_ConversationRow, conversation_id)
            return self._conversation_record(row) if row is not None else None

    def search_conversations(self, query: ConversationQuery) -> tuple[list[ConversationRecord], int]:
        conditions = []
        if query.channel is not None:
            conditions.append(_ConversationRow.channel == query.channel)
        if query.status is not None:
            conditions.append(_ConversationRow.status == query.status)
        if query.has_unread:
            conditions.append(_ConversationRow.unread_count > 0)
        needle = (query.text or "").strip()
        if needle:
            pattern = f"%{_escape_like(needle)}%"
            conditions.append(
                or_(
                    _ConversationRow.phone_address.ilike(pattern, escape="\\"),
                    _ConversationRow.customer_name.ilike(pattern, escape="\\"),
                    _ConversationRow.conversation_id.ilike(pattern, escape="\\"),
                    _ConversationRow.last_message.ilike(pattern, escape="\\"),
                )
            )

        activity = func.coalesce(_ConversationRow.last_message_at, _ConversationRow.created_at)
        if query.sort_by == "oldest":
            ordering = [activity.asc()]
        elif query.sort_by == "unread":
            ordering = [_ConversationRow.unread_count.desc(), activity.desc()]
        else:
            ordering = [activity.desc()]

        with self._session() as session:
            total = session.scalar(select(func.count()).select_from(_ConversationRow).where(*conditions)) or 0
            rows = session.scalars(
                select(_ConversationRow)
                .where(*conditions)
                .order_by(*ordering, _ConversationRow.conversation_id.asc())
                .offset(query.offset)
                .limit(query.limit)
            ).all()
            return [self._conversation_record(row) for row in rows], int(total)

    def update_conversation_details(
        self,
        conversation_id: str,
        *,
        status: ConversationStatus | None = None,
        notes: str | None = None,
        tags: tuple[str, ...] | None = None,
        customer_name: str | None = None,
        lead_id: str | None = None,
        fill_only: bool = False,
    ) -> ConversationRecord:
        values: dict[str, Any] = {}
        if status is not None:
            values["status"] = status
        if notes is not None:
            values["notes"] = notes
        if tags is not None:
            values["tags_json"] = json.dumps(list(tags))
        if customer_name is not None:
            values["customer_name"] = (
                func.coalesce(_ConversationRow.customer_name, customer_name) if fill_only else customer_name
            )
        if lead_id is not None:
            values["lead_id"] = func.coalesce(_ConversationRow.lead_id, lead_id) if fill_only else lead_id

        with self._session() as session:
            with session.begin():
                if values:
                    values["updated_at"] = _now_utc()
                    session.execute(
                        update(_ConversationRow)
                        .where(_ConversationRow.conversation_id == conversation_id)
                        .values(**values)
                        .execution_options(synchronize_session=False)
                    )
                row = session.get(_ConversationRow, conversation_id)
                if row is None:
                    raise NotFoundError("conversation", conversation_id)
                return self._conversation_record(row)

    def apply_message_to_conversation(
        self,
        conversation_id: str,
        *,
        snippet: str,
        timestamp: datetime,
        unread_increment: int,
    ) -> ConversationRecord:
        stamp = literal(timestamp, DateTime(timezone=True))
        is_newer = or_(_ConversationRow.last_message_at.is_(None), _ConversationRow.last_message_at <= stamp)
        with self._session() as session:
            with session.begin():
                result = session.execute(
                    update(_ConversationRow)
                    .where(_ConversationRow.conversation_id == conversation_id)
                    .values(
                        message_count=_ConversationRow.message_count + 1,
                        unread_count=_ConversationRow.unread_count + unread_increment,
                        last_message=case((is_newer, literal(snippet, Text())), else_=_ConversationRow.last_message),
                        last_message_at=case((is_newer, stamp), else_=_ConversationRow.last_message_at),
                        updated_at=_now_utc(),
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 0:
                    raise NotFoundError("conversation", conversation_id)
                row = session.get(_ConversationRow, conversation_id)
                return self._conversation_record(row)

    def decrement_unread(self, conversation_id: str, *, amount: int) -> ConversationRecord:
        with self._session() as session:
            with session.begin():
                result = session.execute(
                    update(_ConversationRow)
                    .where(_ConversationRow.conversation_id == conversation_id)
                    .values(
                        unread_count=case(
                            (_ConversationRow.unread_count > amount, _ConversationRow.unread_count - amount),
                            else_=0,
                        ),
                        updated_at=_now_utc(),
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 0:
                    raise NotFoundError("conversation", conversation_id)
                row = session.get(_ConversationRow, conversation_id)
                return self._conversation_record(row)

    def insert_message(self, record: MessageRecord) -> MessageRecord:
        try:
            with self._session() as session:
                with session.begin():
                    row = _MessageRow(
                        message_id=record.message_id,
                        conversation_id=record.conversation_id,
                        channel=record.channel,
                        sender_type=record.sender_type,
                        sender_id=record.sender_id,
                        from_address=record.from_address,
                        to_address=record.to_address,
                        content=record.content,
                        media_json=_dump_media(record.media),
                        status=record.status,
                        provider_message_id=record.provider_message_id,
                        provider_status=record.provider_status,
                        failure_code=record.failure_code,
                        failure_message=record.failure_message,
                        legacy_message_id=record.legacy_message_id,
                        num_segments=record.num_segments,
                        sent_at=record.sent_at,
                        dispatched_at=record.dispatched_at,
                        delivered_at=record.delivered_at,
                        read_at=record.read_at,
                        created_at=record.created_at,
                        updated_at=record.updated_at,
                    )
                    session.add(row)
                    session.flush()
                    return self._message_record(row)
        except IntegrityError as exc:
            if record.provider_message_id and self.find_message_by_provider_id(record.provider_message_id):
                raise DuplicateWebhookError(record.provider_message_id) from exc
            raise

    def get_message(self, message_id: str) -> MessageRecord | None:
        with self._session() as session:
            row = session.get(_MessageRow, message_id)
            return self._message_record(row) if row is not None else None

    def find_message_by_provider_id(self, provider_message_id: str) -> MessageRecord | None:
        with self._session() as session:
            row = session.scalar(select(_MessageRow).where(_MessageRow.provider_message_id == provider_message_id))
            return self._message_record(row) if row is not None else None

    def list_messages(
        self,
        conversation_id: str,
        *,
        offset: int,
        limit: int,
        ascending: bool,
    ) -> list[MessageRecord]:
        columns = (_MessageRow.sent_at, _MessageRow.created_at, _MessageRow.message_id)
        ordering = [column.asc() if ascending else column.desc() for column in columns]
        with self._session() as session:
            rows = session.scalars(
                select(_MessageRow)
                .where(_MessageRow.conversation_id == conversation_id)
                .order_by(*ordering)
                .offset(offset)
                .limit(limit)
            ).all()
            return [self._message_record(row) for row in rows]

    def count_messages(self, conversation_id: str) -> int:
        with self._session() as session:
            total = session.scalar(
                select(func.count()).select_from(_MessageRow).where(_MessageRow.conversation_id == conversation_id)
            )
            return int(total or 0)

    def attach_provider_id(self, message_id: str, provider_message_id: str) -> MessageRecord:
        try:
            with self._session() as session:
                with session.begin():
                    result = session.execute(
                        update(_MessageRow)
                        .where(_MessageRow.message_id == message_id)
                        .where(_MessageRow.provider_message_id.is_(None))
                        .values(provider_message_id=provider_message_id, updated_at=_now_utc())
                        .execution_options(synchronize_session=False)
                    )
                    row = session.get(_MessageRow, message_id)
                    if row is None:
                        raise NotFoundError("message", message_id)
                    if result.rowcount == 0 and row.provider_message_id != provider_message_id:
                        raise ProviderIdConflictError(f"message {message_id} already has a provider id")
                    return self._message_record(row)
        except IntegrityError as exc:
            raise ProviderIdConflictError(f"provider id {provider_message_id} belongs to another message") from exc

    def update_message_status(
        self,
        message_id: str,
        *,
        expected_status: str,
        status: str,
        provider_status: str | None = None,
        failure_code: str | None = None,
        failure_message: str | None = None,
        delivered_at: datetime | None = None,
        read_at: datetime | None = None,
    ) -> MessageRecord | None:
        values: dict[str, Any] = {"status": status, "updated_at": _now_utc()}
        if provider_status is not None:
            values["provider_status"] = provider_status
        if failure_code is not None:
            values["failure_code"] = failure_code
        if failure_message is not None:
            values["failure_message"] = failure_message
        if delivered_at is not None:
            values["delivered_at"] = func.coalesce(
                _MessageRow.delivered_at, literal(delivered_at, DateTime(timezone=True))
            )
        if read_at is not None:
            values["read_at"] = func.coalesce(_MessageRow.read_at, literal(read_at, DateTime(timezone=True)))

        with self._session() as session:
            with session.begin():
                result = session.execute(
                    update(_MessageRow)
                    .where(_MessageRow.message_id == message_id)
                    .where(_MessageRow.status == expected_status)
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                row = session.get(_MessageRow, message_id)
                if row is None:
                    raise NotFoundError("message", message_id)
                if result.rowcount == 0:
                    return None
                return self._message_record(row)

    def claim_dispatch(self, message_id: str, *, at: datetime) -> bool:
        with self._session() as session:
            with session.begin():
                result = session.execute(
                    update(_MessageRow)
                    .where(_MessageRow.message_id == message_id)
                    .where(_MessageRow.dispatched_at.is_(None))
                    .where(_MessageRow.status == "queued")
                    .values(dispatched_at=at, updated_at=_now_utc())
                    .execution_options(synchronize_session=False)
                )
                return result.rowcount == 1

    def list_stale_pending(self, *, before: datetime, limit: int) -> list[MessageRecord]:
        activity = func.coalesce(_MessageRow.dispatched_at, _MessageRow.sent_at)
        with self._session() as session:
            rows = session.scalars(
                select(_MessageRow)
                .where(_MessageRow.sender_type == "agent")
                .where(_MessageRow.status.in_(PENDING_STATUSES))
                .where(_MessageRow.provider_message_id.is_(None))
                .where(activity < literal(before, DateTime(timezone=True)))
                .order_by(activity.asc())
                .limit(limit)
            ).all()
            return [self._message_record(row) for row in rows]

    def add_read_receipt(self, *, message_id: str, reader_id: str, read_at: datetime) -> bool:
        if self.get_message(message_id) is None:
            raise NotFoundError("message", message_id)
        try:
            with self._session() as session:
                with session.begin():
                    session.add(_ReadReceiptRow(message_id=message_id, reader_id=reader_id, read_at=read_at))
        except IntegrityError:
            return False
        return True

    def list_read_receipts(self, message_id: str) -> list[ReadReceiptRecord]:
        with self._session() as session:
            rows = session.scalars(
                select(_ReadReceiptRow)
                .where(_ReadReceiptRow.message_id == message_id)
                .order_by(_ReadReceiptRow.read_at.asc())
            ).all()
            return [
                ReadReceiptRecord(message_id=row.message_id, reader_id=row.reader_id, read_at=_coerce_utc(row.read_at))
                for row in rows
            ]

    def _unread_conditions(self, conversation_id: str, reader_id: str) -> list[Any]:
        receipt = exists().where(
            _ReadReceiptRow.message_id == _MessageRow.message_id,
            _ReadReceiptRow.reader_id == reader_id,
        )
        return [
            _MessageRow.conversation_id == conversation_id,
            _MessageRow.sender_type == "customer",
            ~receipt,
        ]

    def list_unread_for_reader(self, conversation_id: str, *, reader_id: str) -> list[MessageRecord]:
        with self._session() as session:
            rows = session.scalars(
                select(_MessageRow)
                .where(*self._unread_conditions(conversation_id, reader_id))
                .order_by(_MessageRow.sent_at.asc(), _MessageRow.created_at.asc())
            ).all()
            return [self._message_record(row) for row in rows]

    def count_unread_for_reader(self, conversation_id: str, *, reader_id: str) -> int:
        with self._session() as session:
            total = session.scalar(
                select(func.count())
                .select_from(_MessageRow)
                .where(*self._unread_conditions(conversation_id, reader_id))
            )
            return int(total or 0)

    def append_event(self, *, conversation_id: str, event_type: str, payload: dict[str, Any]) -> None:
        with self._session() as session:
            with session.begin():
                session.add(
                    _ConversationEventRow(
                        conversation_id=conversation_id,
                        event_type=event_type,
                        payload_json=json.dumps(payload, sort_keys=True, separators=(",", ":")),
                        created_at=_now_utc(),
                    )
                )

    def list_events(self, conversation_id: str) -> list[dict[str, Any]]:
        with self._session() as session:
            rows = session.scalars(
                select(_ConversationEventRow)
                .where(_ConversationEventRow.conversation_id == conversation_id)
                .order_by(_ConversationEventRow.event_id.asc())
            ).all()
            return [
                {
                    "event_type": row.event_type,
                    "payload": json.loads(row.payload_json),
                    "created_at": _coerce_utc(row.created_at).isoformat(),
                }
                for row in rows
            ]

    @staticmethod
    def _conversation_record(row: _ConversationRow) -> ConversationRecord:
        return ConversationRecord(
            conversation_id=row.conversation_id,
            channel=row.channel,  # type: ignore[arg-type]
            phone_address=row.phone_address,
            lead_id=row.lead_id,
            customer_name=row.customer_name,
            status=row.status,  # type: ignore[arg-type]
            tags=tuple(json.loads(row.tags_json or "[]")),
            notes=row.notes,
            last_message=row.last_message,
            last_message_at=_coerce_utc(row.last_message_at),
            message_count=row.message_count,
            unread_count=row.unread_count,
            created_at=_coerce_utc(row.created_at),
            updated_at=_coerce_utc(row.updated_at),
        )

    @staticmethod
    def _message_record(row: _MessageRow) -> MessageRecord:
        return MessageRecord(
            message_id=row.message_id,
            conversation_id=row.conversation_id,
            channel=row.channel,  # type: ignore[arg-type]
            sender_type=row.sender_type,  # type: ignore[arg-type]
            sender_id=row.sender_id,
            from_address=row.from_address,
            to_address=row.to_address,
            content=row.content,
            media=_load_media(row.media_json),
            status=row.status,  # type: ignore[arg-type]
            provider_message_id=row.provider_message_id,
            provider_status=row.provider_status,
            failure_code=row.failure_code,
            failure_message=row.failure_message,
            legacy_message_id=row.legacy_message_id,
            num_segments=row.num_segments,
            sent_at=_coerce_utc(row.sent_at),
            dispatched_at=_coerce_utc(row.dispatched_at),
            delivered_at=_coerce_utc(row.delivered_at),
            read_at=_coerce_utc(row.read_at),
            created_at=_coerce_utc(row.created_at),
            updated_at=_coerce_utc(row.updated_at),
        )


def create_conversation_repository(*, backend: str, database_url: str) -> ConversationRepository:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyConversationRepository(database_url)
    if normalized == "inmemory":
        return InMemoryConversationRepository()
    raise RuntimeError(f"unsupported CONVERSATION_STORE_BACKEND: {backend}")
