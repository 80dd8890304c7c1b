from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, Query, Request, Response, status
from pydantic import ValidationError
from twilio.twiml.messaging_response import MessagingResponse

from .agent_tokens import AgentIdentity, AgentTokenError, decode_agent_token
from .config import Settings, get_settings
from .conversations import ConversationRepository, create_conversation_repository
from .errors import ConfigurationError, NotFoundError, PartialWriteError, ProviderError
from .leads import InMemoryLeadDirectory, LeadDirectory
from .legacy_store import LegacyMessageRepository, create_legacy_message_repository
from .messaging import (
    MessagingService,
    SendOutcome,
    build_pagination,
    to_conversation_item,
    to_inbox_item,
    to_message_item,
)
from .models import (
    Channel,
    ConversationListResponse,
    ConversationMessageSendRequest,
    ConversationMessagesResponse,
    ConversationResponse,
    ConversationSort,
    ConversationUpdateRequest,
    ExpirePendingResponse,
    InboundMessageWebhook,
    InboxResponse,
    LegacyMessageType,
    MessageStatus,
    ReadReceiptResponse,
    SendMessageRequest,
    SendMessageResponse,
    StartConversationRequest,
    StatusCallbackResponse,
    StatusCallbackWebhook,
    TypingRequest,
    TypingResponse,
    TypingUser,
    UnreadCountResponse,
)
from .presence import TypingPresence
from .provider import MessagingProvider, create_messaging_provider
from .webhook_security import public_webhook_url, verify_twilio_signature

logger = logging.getLogger(__name__)

_CONVERSATION_STATUSES = {"active", "archived", "closed"}

_settings = get_settings()
router = APIRouter(prefix=_settings.api_prefix, tags=["messaging"])
conversation_repo: ConversationRepository = create_conversation_repository(
    backend=_settings.conversation_store_backend,
    database_url=_settings.database_url,
)
legacy_repo: LegacyMessageRepository = create_legacy_message_repository(
    backend=_settings.conversation_store_backend,
    database_url=_settings.database_url,
)
messaging_provider: MessagingProvider = create_messaging_provider(_settings)
lead_directory: LeadDirectory = InMemoryLeadDirectory()
typing_presence = TypingPresence(ttl_seconds=_settings.typing_indicator_ttl_seconds)


def _create_messaging_service(settings: Settings, *, provider: MessagingProvider) -> MessagingService:
    return MessagingService(
        settings=settings,
        repository=conversation_repo,
        legacy_repository=legacy_repo,
        provider=provider,
        leads=lead_directory,
    )


messaging_service = _create_messaging_service(_settings, provider=messaging_provider)


def reset_runtime_state_for_tests() -> None:
    conversation_repo.reset()
    legacy_repo.reset()
    typing_presence.reset()
    if isinstance(lead_directory, InMemoryLeadDirectory):
        lead_directory.reset()


def _require_agent(request: Request) -> AgentIdentity:
    token = request.headers.get("Authorization", "").removeprefix("Bearer ")
    if not token:
        raise HTTPException(401, "agent session required")
    try:
        return decode_agent_token(token, secret=_settings.agent_token_secret)
    except AgentTokenError as exc:
        raise HTTPException(401, str(exc)) from exc


def _require_admin(request: Request) -> AgentIdentity:
    identity = _require_agent(request)
    if not identity.is_admin:
        raise HTTPException(403, "admin role required")
    return identity


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, PartialWriteError):
        return HTTPException(status_code=503, detail=str(exc))
    if isinstance(exc, ProviderError):
        return HTTPException(status_code=400, detail={"code": exc.code, "message": exc.message})
    return HTTPException(status_code=400, detail=str(exc))


async def _verified_form(request: Request) -> dict[str, str]:
    form = await request.form()
    form_data = {key: str(value) for key, value in form.items()}
    url = public_webhook_url(
        settings=_settings,
        request_url=str(request.url),
        path=request.url.path,
        query=request.url.query,
    )
    verification = verify_twilio_signature(
        settings=_settings,
        url=url,
        form_data=form_data,
        headers=request.headers,
    )
    if not verification.verified:
        if _settings.webhook_signature_mode == "enforce":
            raise HTTPException(401, f"webhook signature rejected: {verification.reason}")
        logger.warning("webhook signature not verified for %s: %s", request.url.path, verification.reason)
    return form_data


def _twiml_ack(*, auto_reply: bool) -> Response:
    twiml = MessagingResponse()
    reply_text = _settings.inbound_auto_reply_text.strip()
    if auto_reply and reply_text:
        twiml.message(reply_text)
    return Response(content=str(twiml), media_type="application/xml")


def _validation_detail(exc: ValidationError) -> str:
    first = exc.errors()[0] if exc.errors() else {}
    location = ".".join(str(part) for part in first.get("loc", ()))
    message = first.get("msg", "invalid payload")
    return f"{location}: {message}" if location else message


def _send_response(outcome: SendOutcome) -> SendMessageResponse:
    return SendMessageResponse(
        message=to_message_item(outcome.message),
        conversation_id=outcome.message.conversation_id,
        provider_message_id=outcome.message.provider_message_id,
        legacy_message_id=outcome.message.legacy_message_id,
        scheduled=outcome.scheduled,
    )


@router.post("/{channel}/webhooks/incoming")
async def receive_inbound_message(channel: Channel, request: Request) -> Response:
    form_data = await _verified_form(request)
    try:
        payload = InboundMessageWebhook.model_validate(form_data)
    except ValidationError as exc:
        raise HTTPException(400, _validation_detail(exc)) from exc

    try:
        outcome = messaging_service.ingest_inbound(channel, payload)
    except PartialWriteError:
        logger.exception("inbound %s webhook %s acknowledged without ledger write", channel, payload.message_sid)
        return _twiml_ack(auto_reply=False)
    except Exception:  # noqa: BLE001
        logger.exception("inbound %s webhook %s failed after validation; acknowledging", channel, payload.message_sid)
        return _twiml_ack(auto_reply=False)
    return _twiml_ack(auto_reply=not outcome.deduped)


@router.post("/{channel}/webhooks/status", response_model=StatusCallbackResponse)
async def receive_status_callback(channel: Channel, request: Request) -> StatusCallbackResponse:
    form_data = await _verified_form(request)
    try:
        payload = StatusCallbackWebhook.model_validate(form_data)
    except ValidationError as exc:
        raise HTTPException(400, _validation_detail(exc)) from exc
    try:
        return messaging_service.apply_status_callback(channel, payload)
    except Exception:  # noqa: BLE001
        logger.exception("%s status callback %s failed after validation; acknowledging", channel, payload.message_sid)
        return StatusCallbackResponse(reason="processing_error")


@router.post("/{channel}/send", response_model=SendMessageResponse, status_code=status.HTTP_201_CREATED)
def send_message(channel: Channel, payload: SendMessageRequest, request: Request) -> SendMessageResponse:
    identity = _require_agent(request)
    try:
        outcome = messaging_service.send_message(
            channel,
            payload.to,
            payload.body,
            sender_id=identity.user_id,
            media_urls=payload.media_urls,
            customer_name=payload.customer_name,
            lead_id=payload.lead_id,
            scheduled_for=payload.scheduled_for,
        )
    except (ConfigurationError, ProviderError, PartialWriteError, NotFoundError, ValueError) as exc:
        raise _http_error(exc) from exc
    return _send_response(outcome)


@router.get("/{channel}/messages", response_model=InboxResponse)
def list_inbox(
    channel: Channel,
    request: Request,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1),
    search: str | None = Query(None, max_length=256),
    message_status: MessageStatus | None = Query(None, alias="status"),
    message_type: LegacyMessageType | None = Query(None, alias="type"),
) -> InboxResponse:
    identity = _require_agent(request)
    records, total = messaging_service.list_inbox(
        channel,
        viewer_id=identity.user_id,
        viewer_role=identity.role,
        search=search,
        status=message_status,
        message_type=message_type,
        page=page,
        limit=limit,
    )
    return InboxResponse(
        items=[to_inbox_item(record) for record in records],
        pagination=build_pagination(page=page, limit=messaging_service.clamp_limit(limit), total=total),
    )


@router.get("/{channel}/conversations", response_model=ConversationListResponse)
def list_conversations(
    channel: Channel,
    request: Request,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1),
    q: str | None = Query(None, max_length=256),
    conversation_status: str = Query("active", alias="status"),
    sort_by: ConversationSort = Query("recent"),
    has_unread: bool = Query(False),
) -> ConversationListResponse:
    _require_agent(request)
    normalized_status = conversation_status.strip().lower()
    if normalized_status != "all" and normalized_status not in _CONVERSATION_STATUSES:
        raise HTTPException(400, f"unsupported conversation status: {conversation_status}")
    records, total = messaging_service.search_conversations(
        channel,
        text=q,
        status=None if normalized_status == "all" else normalized_status,  # type: ignore[arg-type]
        has_unread=has_unread,
        sort_by=sort_by,
        page=page,
        limit=limit,
    )
    return ConversationListResponse(
        items=[to_conversation_item(record) for record in records],
        pagination=build_pagination(page=page, limit=messaging_service.clamp_limit(limit), total=total),
    )


@router.post("/{channel}/conversations", response_model=ConversationResponse)
def start_conversation(
    channel: Channel,
    payload: StartConversationRequest,
    request: Request,
    response: Response,
) -> ConversationResponse:
    _require_agent(request)
    try:
        record, created = messaging_service.start_conversation(
            channel,
            payload.phone,
            customer_name=payload.customer_name,
            lead_id=payload.lead_id,
        )
    except ValueError as exc:
        raise _http_error(exc) from exc
    response.status_code = status.HTTP_201_CREATED if created else status.HTTP_200_OK
    return ConversationResponse(conversation=to_conversation_item(record), created=created)


@router.get("/{channel}/conversations/{conversation_id}", response_model=ConversationResponse)
def get_conversation(channel: Channel, conversation_id: str, request: Request) -> ConversationResponse:
    _require_agent(request)
    try:
        record = messaging_service.get_conversation(channel, conversation_id)
    except NotFoundError as exc:
        raise _http_error(exc) from exc
    return ConversationResponse(conversation=to_conversation_item(record))


@router.put("/{channel}/conversations/{conversation_id}", response_model=ConversationResponse)
def update_conversation(
    channel: Channel,
    conversation_id: str,
    payload: ConversationUpdateRequest,
    request: Request,
) -> ConversationResponse:
    _require_agent(request)
    try:
        record = messaging_service.update_conversation(
            channel,
            conversation_id,
            status=payload.status,
            notes=payload.notes,
            tags=payload.tags,
            customer_name=payload.customer_name,
        )
    except NotFoundError as exc:
        raise _http_error(exc) from exc
    return ConversationResponse(conversation=to_conversation_item(record))


@router.get("/{channel}/conversations/{conversation_id}/messages", response_model=ConversationMessagesResponse)
def open_conversation(
    channel: Channel,
    conversation_id: str,
    request: Request,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1),
) -> ConversationMessagesResponse:
    identity = _require_agent(request)
    try:
        view = messaging_service.open_conversation(
            channel,
            conversation_id,
            reader_id=identity.user_id,
            page=page,
            limit=limit,
        )
    except (NotFoundError, PartialWriteError) as exc:
        raise _http_error(exc) from exc
    return ConversationMessagesResponse(
        conversation=to_conversation_item(view.conversation),
        messages=[to_message_item(message) for message in view.messages],
        pagination=build_pagination(page=page, limit=messaging_service.clamp_limit(limit), total=view.total),
        marked_read=view.marked_read,
    )


@router.post(
    "/{channel}/conversations/{conversation_id}/messages",
    response_model=SendMessageResponse,
    status_code=status.HTTP_201_CREATED,
)
def send_in_conversation(
    channel: Channel,
    conversation_id: str,
    payload: ConversationMessageSendRequest,
    request: Request,
) -> SendMessageResponse:
    identity = _require_agent(request)
    try:
        outcome = messaging_service.send_in_conversation(
            channel,
            conversation_id,
            payload.body,
            sender_id=identity.user_id,
            media_urls=payload.media_urls,
            scheduled_for=payload.scheduled_for,
        )
    except (ConfigurationError, ProviderError, PartialWriteError, NotFoundError, ValueError) as exc:
        raise _http_error(exc) from exc
    return _send_response(outcome)


@router.post(
    "/{channel}/conversations/{conversation_id}/messages/{message_id}/read",
    response_model=ReadReceiptResponse,
)
def mark_message_read(
    channel: Channel,
    conversation_id: str,
    message_id: str,
    request: Request,
) -> ReadReceiptResponse:
    identity = _require_agent(request)
    try:
        mark, conversation = messaging_service.mark_message_read(
            channel,
            conversation_id,
            message_id,
            reader_id=identity.user_id,
        )
    except (NotFoundError, PartialWriteError) as exc:
        raise _http_error(exc) from exc
    return ReadReceiptResponse(
        message_id=message_id,
        reader_id=identity.user_id,
        newly_marked=mark.receipt_created,
        unread_count=conversation.unread_count,
    )


@router.get("/{channel}/conversations/{conversation_id}/unread", response_model=UnreadCountResponse)
def unread_count(channel: Channel, conversation_id: str, request: Request) -> UnreadCountResponse:
    identity = _require_agent(request)
    try:
        count, conversation = messaging_service.unread_count(channel, conversation_id, reader_id=identity.user_id)
    except NotFoundError as exc:
        raise _http_error(exc) from exc
    return UnreadCountResponse(
        conversation_id=conversation_id,
        reader_id=identity.user_id,
        unread_count=count,
        conversation_unread_count=conversation.unread_count,
    )


def _typing_response(conversation_id: str, *, exclude_user_id: str) -> TypingResponse:
    entries = typing_presence.typing_users(conversation_id, exclude_user_id=exclude_user_id)
    return TypingResponse(
        conversation_id=conversation_id,
        typing=[
            TypingUser(
                user_id=entry.user_id,
                user_name=entry.user_name,
                expires_in_seconds=round(typing_presence.remaining_seconds(entry), 3),
            )
            for entry in entries
        ],
    )


@router.post("/typing", response_model=TypingResponse)
def set_typing(payload: TypingRequest, request: Request) -> TypingResponse:
    identity = _require_agent(request)
    try:
        messaging_service.registry.get(payload.conversation_id)
    except NotFoundError as exc:
        raise _http_error(exc) from exc
    typing_presence.set_typing(
        payload.conversation_id,
        identity.user_id,
        user_name=identity.display_name,
        is_typing=payload.is_typing,
    )
    return _typing_response(payload.conversation_id, exclude_user_id=identity.user_id)


@router.get("/typing", response_model=TypingResponse)
def get_typing(request: Request, conversation_id: str = Query(..., min_length=1, max_length=64)) -> TypingResponse:
    identity = _require_agent(request)
    return _typing_response(conversation_id, exclude_user_id=identity.user_id)


@router.post("/maintenance/expire-pending", response_model=ExpirePendingResponse)
def expire_pending_sends(request: Request) -> ExpirePendingResponse:
    _require_admin(request)
    expired = messaging_service.expire_stale_pending()
    return ExpirePendingResponse(expired=len(expired), message_ids=[message.message_id for message in expired])
