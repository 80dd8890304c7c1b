from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

Channel = Literal["sms", "whatsapp"]
SenderType = Literal["agent", "customer"]
MessageStatus = Literal[
    "queued",
    "sending",
    "sent",
    "delivered",
    "read",
    "failed",
    "undelivered",
    "received",
]
ConversationStatus = Literal["active", "archived", "closed"]
ConversationSort = Literal["recent", "oldest", "unread"]
ListOrder = Literal["asc", "desc"]
AgentRole = Literal["admin", "manager", "agent"]
LegacyMessageType = Literal["inbound", "outbound"]
MediaType = Literal["image", "video", "audio", "document"]


def media_type_for(content_type: str | None) -> MediaType:
    normalized = (content_type or "").strip().lower()
    if normalized.startswith("image/"):
        return "image"
    if normalized.startswith("video/"):
        return "video"
    if normalized.startswith("audio/"):
        return "audio"
    return "document"


def _strip_required(value: str, field_name: str) -> str:
    normalized = str(value).strip()
    if not normalized:
        raise ValueError(f"{field_name} cannot be blank")
    return normalized


class MediaReference(BaseModel):
    url: str = Field(min_length=1, max_length=2048)
    type: MediaType = "document"
    file_name: str | None = Field(default=None, max_length=256)


class InboundMessageWebhook(BaseModel):
    """Form payload the provider posts when a customer message arrives."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    message_sid: str = Field(alias="MessageSid", min_length=1, max_length=64)
    from_address: str = Field(alias="From", min_length=1, max_length=64)
    to_address: str = Field(alias="To", min_length=1, max_length=64)
    body: str | None = Field(default=None, alias="Body", max_length=4096)
    num_media: int = Field(default=0, alias="NumMedia", ge=0, le=10)
    num_segments: int = Field(default=1, alias="NumSegments", ge=0)
    profile_name: str | None = Field(default=None, alias="ProfileName", max_length=256)
    media: list[MediaReference] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _collect_media(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        collected = dict(data)
        try:
            media_count = int(str(collected.get("NumMedia") or 0).strip() or 0)
        except ValueError:
            return collected
        media: list[dict[str, str]] = []
        for index in range(max(0, min(media_count, 10))):
            url = str(collected.get(f"MediaUrl{index}") or "").strip()
            if not url:
                continue
            media.append(
                {
                    "url": url,
                    "type": media_type_for(collected.get(f"MediaContentType{index}")),
                }
            )
        collected["media"] = media
        return collected

    @field_validator("message_sid", "from_address", "to_address")
    @classmethod
    def _normalize_required(cls, value: str) -> str:
        return _strip_required(value, "field")

    @model_validator(mode="after")
    def _require_body_or_media(self) -> "InboundMessageWebhook":
        if not (self.body or "").strip() and not self.media:
            raise ValueError("Body is required when no media is attached")
        return self


class StatusCallbackWebhook(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    message_sid: str = Field(alias="MessageSid", min_length=1, max_length=64)
    message_status: str | None = Field(default=None, alias="MessageStatus", max_length=64)
    sms_status: str | None = Field(default=None, alias="SmsStatus", max_length=64)
    error_code: str | None = Field(default=None, alias="ErrorCode", max_length=32)
    error_message: str | None = Field(default=None, alias="ErrorMessage", max_length=1024)

    @field_validator("message_sid")
    @classmethod
    def _normalize_sid(cls, value: str) -> str:
        return _strip_required(value, "MessageSid")

    @property
    def raw_status(self) -> str | None:
        value = (self.message_status or self.sms_status or "").strip().lower()
        return value or None


class SendMessageRequest(BaseModel):
    to: str = Field(min_length=3, max_length=64)
    body: str = Field(default="", max_length=1600)
    media_urls: list[str] = Field(default_factory=list, max_length=10)
    lead_id: str | None = Field(default=None, max_length=128)
    customer_name: str | None = Field(default=None, max_length=256)
    scheduled_for: datetime | None = None

    @field_validator("media_urls")
    @classmethod
    def _normalize_media_urls(cls, value: list[str]) -> list[str]:
        return [url.strip() for url in value if url and url.strip()]

    @model_validator(mode="after")
    def _require_content(self) -> "SendMessageRequest":
        if not self.body.strip() and not self.media_urls:
            raise ValueError("body or media_urls is required")
        return self


class ConversationMessageSendRequest(BaseModel):
    body: str = Field(default="", max_length=1600)
    media_urls: list[str] = Field(default_factory=list, max_length=10)
    scheduled_for: datetime | None = None

    @field_validator("media_urls")
    @classmethod
    def _normalize_media_urls(cls, value: list[str]) -> list[str]:
        return [url.strip() for url in value if url and url.strip()]

    @model_validator(mode="after")
    def _require_content(self) -> "ConversationMessageSendRequest":
        if not self.body.strip() and not self.media_urls:
            raise ValueError("body or media_urls is required")
        return self


class StartConversationRequest(BaseModel):
    phone: str = Field(min_length=3, max_length=64)
    customer_name: str | None = Field(default=None, max_length=256)
    lead_id: str | None = Field(default=None, max_length=128)


class ConversationUpdateRequest(BaseModel):
    status: ConversationStatus | None = None
    notes: str | None = Field(default=None, max_length=4000)
    tags: list[str] | None = Field(default=None, max_length=50)
    customer_name: str | None = Field(default=None, max_length=256)

    @field_validator("tags")
    @classmethod
    def _normalize_tags(cls, value: list[str] | None) -> list[str] | None:
        if value is None:
            return None
        normalized: list[str] = []
        for raw in value:
            tag = str(raw).strip()
            if tag and tag not in normalized:
                normalized.append(tag)
        return normalized


class TypingRequest(BaseModel):
    conversation_id: str = Field(min_length=1, max_length=64)
    is_typing: bool = True


class FailureReason(BaseModel):
    code: str
    message: str | None = None


class MessageItem(BaseModel):
    message_id: str
    conversation_id: str
    channel: Channel
    sender_type: SenderType
    sender_id: str | None
    from_address: str
    to_address: str
    content: str
    media: list[MediaReference]
    status: MessageStatus
    provider_message_id: str | None
    provider_status: str | None
    failure_reason: FailureReason | None
    legacy_message_id: str | None
    sent_at: datetime
    delivered_at: datetime | None
    read_at: datetime | None


class ConversationItem(BaseModel):
    conversation_id: str
    channel: Channel
    phone_address: str
    lead_id: str | None
    customer_name: str | None
    status: ConversationStatus
    tags: list[str]
    notes: str | None
    last_message: str | None
    last_message_at: datetime | None
    message_count: int
    unread_count: int
    created_at: datetime
    updated_at: datetime


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


class ConversationListResponse(BaseModel):
    items: list[ConversationItem]
    pagination: Pagination


class ConversationResponse(BaseModel):
    conversation: ConversationItem
    created: bool = False


class ConversationMessagesResponse(BaseModel):
    conversation: ConversationItem
    messages: list[MessageItem]
    pagination: Pagination
    marked_read: int = 0


class SendMessageResponse(BaseModel):
    message: MessageItem
    conversation_id: str
    provider_message_id: str | None
    legacy_message_id: str | None
    scheduled: bool = False


class ReadReceiptResponse(BaseModel):
    message_id: str
    reader_id: str
    newly_marked: bool
    unread_count: int


class UnreadCountResponse(BaseModel):
    conversation_id: str
    reader_id: str
    unread_count: int
    conversation_unread_count: int


class StatusCallbackResponse(BaseModel):
    accepted: bool = True
    message_id: str | None = None
    status: MessageStatus | None = None
    applied: bool = False
    reason: str


class InboxItem(BaseModel):
    legacy_message_id: str
    source_message_id: str
    channel: Channel
    message_type: LegacyMessageType
    direction: str
    from_number: str
    to_number: str
    content: str
    media_urls: list[str]
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


class InboxResponse(BaseModel):
    items: list[InboxItem]
    pagination: Pagination


class TypingUser(BaseModel):
    user_id: str
    user_name: str | None
    expires_in_seconds: float


class TypingResponse(BaseModel):
    conversation_id: str
    typing: list[TypingUser]


class ExpirePendingResponse(BaseModel):
    expired: int
    message_ids: list[str]
