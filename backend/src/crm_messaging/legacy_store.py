"""Flat per-channel message table kept for the legacy inbox views."""

from __future__ import annotations

import json
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Protocol
from uuid import uuid4

from sqlalchemy import Boolean, DateTime, Integer, String, Text, create_engine, delete, func, or_, select
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .models import AgentRole, Channel, LegacyMessageType, MessageStatus

_LEGACY_PREFIX = {"sms": "SMS", "whatsapp": "WA"}

# Fields that later writes may not blank out once known.
_STICKY_FIELDS = ("lead_id", "customer_name", "user_id", "delivered_at", "read_at", "error_code", "error_message")


def new_legacy_message_id(channel: Channel) -> str:
    return f"{_LEGACY_PREFIX.get(channel, 'MSG')}_{uuid4().hex}"


@dataclass(frozen=True)
class LegacyMessageRecord:
    legacy_message_id: str
    source_message_id: str
    channel: Channel
    message_type: LegacyMessageType
    direction: str
    from_number: str
    to_number: str
    content: str
    media_urls: tuple[str, ...]
    status: MessageStatus
    provider_message_id: str | None
    provider_status: str | None
    error_code: str | None
    error_message: str | None
    num_segments: int
    lead_id: str | None
    customer_name: str | None
    user_id: str | None
    is_read: bool
    sent_at: datetime
    delivered_at: datetime | None
    read_at: datetime | None
    updated_at: datetime


@dataclass(frozen=True)
class InboxQuery:
    channel: Channel
    viewer_id: str
    viewer_role: AgentRole
    search: str | None = None
    status: MessageStatus | None = None
    message_type: LegacyMessageType | None = None
    offset: int = 0
    limit: int = 20


class LegacyMessageRepository(Protocol):
    def reset(self) -> None: ...

    def upsert(self, record: LegacyMessageRecord) -> LegacyMessageRecord: ...

    def get_by_source(self, source_message_id: str) -> LegacyMessageRecord | None: ...

    def list_inbox(self, query: InboxQuery) -> tuple[list[LegacyMessageRecord], int]: ...


def _coerce_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _merge(existing: LegacyMessageRecord | None, incoming: LegacyMessageRecord) -> LegacyMessageRecord:
    if existing is None:
        return incoming
    merged: dict[str, Any] = dict(incoming.__dict__)
    merged["legacy_message_id"] = existing.legacy_message_id
    for name in _STICKY_FIELDS:
        if merged[name] is None:
            merged[name] = getattr(existing, name)
    return LegacyMessageRecord(**merged)


def _visible_to(record: LegacyMessageRecord, query: InboxQuery) -> bool:
    if query.viewer_role == "admin":
        return True
    return record.message_type == "inbound" or record.user_id == query.viewer_id


def _matches_search(record: LegacyMessageRecord, needle: str) -> bool:
    haystack = (record.content, record.from_number, record.to_number, record.customer_name or "")
    return any(needle in value.lower() for value in haystack)


class InMemoryLegacyMessageRepository:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: dict[str, LegacyMessageRecord] = {}

    def reset(self) -> None:
        with self._lock:
            self._records.clear()

    def upsert(self, record: LegacyMessageRecord) -> LegacyMessageRecord:
        with self._lock:
            merged = _merge(self._records.get(record.source_message_id), record)
            self._records[record.source_message_id] = merged
            return merged

    def get_by_source(self, source_message_id: str) -> LegacyMessageRecord | None:
        with self._lock:
            return self._records.get(source_message_id)

    def list_inbox(self, query: InboxQuery) -> tuple[list[LegacyMessageRecord], int]:
        with self._lock:
            records = [value for value in self._records.values() if value.channel == query.channel]
        records = [value for value in records if _visible_to(value, query)]
        if query.status is not None:
            records = [value for value in records if value.status == query.status]
        if query.message_type is not None:
            records = [value for value in records if value.message_type == query.message_type]
        needle = (query.search or "").strip().lower()
        if needle:
            records = [value for value in records if _matches_search(value, needle)]
        records.sort(key=lambda value: value.sent_at, reverse=True)
        return records[query.offset : query.offset + query.limit], len(records)


class LegacyMessagesBase(DeclarativeBase):
    pass


class _LegacyMessageRow(LegacyMessagesBase):
    __tablename__ = "legacy_messages"

    legacy_message_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    source_message_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    channel: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    message_type: Mapped[str] = mapped_column(String(16), nullable=False)
    direction: Mapped[str] = mapped_column(String(16), nullable=False)
    from_number: Mapped[str] = mapped_column(String(64), nullable=False)
    to_number: Mapped[str] = mapped_column(String(64), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False, default="")
    media_urls_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    status: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    provider_message_id: Mapped[str | None] = mapped_column(String(64), nullable=True, unique=True)
    provider_status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    error_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    num_segments: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    lead_id: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    customer_name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    user_id: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    is_read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    sent_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    read_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class SqlAlchemyLegacyMessageRepository:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for CONVERSATION_STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            LegacyMessagesBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.execute(delete(_LegacyMessageRow))

    def upsert(self, record: LegacyMessageRecord) -> LegacyMessageRecord:
        with self._session() as session:
            with session.begin():
                row = session.scalar(
                    select(_LegacyMessageRow)
                    .where(_LegacyMessageRow.source_message_id == record.source_message_id)
                    .with_for_update()
                )
                existing = self._record(row) if row is not None else None
                merged = _merge(existing, record)
                if row is None:
                    row = _LegacyMessageRow(legacy_message_id=merged.legacy_message_id)
                    session.add(row)
                row.source_message_id = merged.source_message_id
                row.channel = merged.channel
                row.message_type = merged.message_type
                row.direction = merged.direction
                row.from_number = merged.from_number
                row.to_number = merged.to_number
                row.content = merged.content
                row.media_urls_json = json.dumps(list(merged.media_urls))
                row.status = merged.status
                row.provider_message_id = merged.provider_message_id
                row.provider_status = merged.provider_status
                row.error_code = merged.error_code
                row.error_message = merged.error_message
                row.num_segments = merged.num_segments
                row.lead_id = merged.lead_id
                row.customer_name = merged.customer_name
                row.user_id = merged.user_id
                row.is_read = merged.is_read
                row.sent_at = merged.sent_at
                row.delivered_at = merged.delivered_at
                row.read_at = merged.read_at
                row.updated_at = merged.updated_at
                session.flush()
                return self._record(row)

    def get_by_source(self, source_message_id: str) -> LegacyMessageRecord | None:
        with self._session() as session:
            row = session.scalar(
                select(_LegacyMessageRow).where(_LegacyMessageRow.source_message_id == source_message_id)
            )
            return self._record(row) if row is not None else None

    def list_inbox(self, query: InboxQuery) -> tuple[list[LegacyMessageRecord], int]:
        conditions: list[Any] = [_LegacyMessageRow.channel == query.channel]
        if query.viewer_role != "admin":
            conditions.append(
                or_(
                    _LegacyMessageRow.message_type == "inbound",
                    _LegacyMessageRow.user_id == query.viewer_id,
                )
            )
        if query.status is not None:
            conditions.append(_LegacyMessageRow.status == query.status)
        if query.message_type is not None:
            conditions.append(_LegacyMessageRow.message_type == query.message_type)
        needle = (query.search or "").strip()
        if needle:
            escaped = needle.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
            pattern = f"%{escaped}%"
            conditions.append(
                or_(
                    _LegacyMessageRow.content.ilike(pattern, escape="\\"),
                    _LegacyMessageRow.from_number.ilike(pattern, escape="\\"),
                    _LegacyMessageRow.to_number.ilike(pattern, escape="\\"),
                    _LegacyMessageRow.customer_name.ilike(pattern, escape="\\"),
                )
            )

        with self._session() as session:
            total = session.scalar(select(func.count()).select_from(_LegacyMessageRow).where(*conditions)) or 0
            rows = session.scalars(
                select(_LegacyMessageRow)
                .where(*conditions)
                .order_by(_LegacyMessageRow.sent_at.desc(), _LegacyMessageRow.legacy_message_id.asc())
                .offset(query.offset)
                .limit(query.limit)
            ).all()
            return [self._record(row) for row in rows], int(total)

    @staticmethod
    def _record(row: _LegacyMessageRow) -> LegacyMessageRecord:
        return LegacyMessageRecord(
            legacy_message_id=row.legacy_message_id,
            source_message_id=row.source_message_id,
            channel=row.channel,  # type: ignore[arg-type]
            message_type=row.message_type,  # type: ignore[arg-type]
            direction=row.direction,
            from_number=row.from_number,
            to_number=row.to_number,
            content=row.content,
            media_urls=tuple(json.loads(row.media_urls_json or "[]")),
            status=row.status,  # type: ignore[arg-type]
            provider_message_id=row.provider_message_id,
            provider_status=row.provider_status,
            error_code=row.error_code,
            error_message=row.error_message,
            num_segments=row.num_segments,
            lead_id=row.lead_id,
            customer_name=row.customer_name,
            user_id=row.user_id,
            is_read=row.is_read,
            sent_at=_coerce_utc(row.sent_at),
            delivered_at=_coerce_utc(row.delivered_at),
            read_at=_coerce_utc(row.read_at),
            updated_at=_coerce_utc(row.updated_at),
        )


def create_legacy_message_repository(*, backend: str, database_url: str) -> LegacyMessageRepository:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyLegacyMessageRepository(database_url)
    if normalized == "inmemory":
        return InMemoryLegacyMessageRepository()
    raise RuntimeError(f"unsupported CONVERSATION_STORE_BACKEND: {backend}")
