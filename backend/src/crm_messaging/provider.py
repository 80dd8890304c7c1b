from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Mapping, Protocol
from uuid import uuid4

from requests.exceptions import ConnectionError as RequestsConnectionError
from requests.exceptions import Timeout as RequestsTimeout
from twilio.base.exceptions import TwilioException, TwilioRestException
from twilio.http.http_client import TwilioHttpClient
from twilio.rest import Client

from .config import Settings
from .delivery_status import normalize_provider_status
from .errors import ConfigurationError, ProviderError
from .models import Channel

logger = logging.getLogger(__name__)

_WHATSAPP_PREFIX = "whatsapp:"


def format_address(raw: str) -> str:
    """Canonical E.164-style form for North American numbers.

    Formatting an already formatted address returns it unchanged. Inputs that
    do not look like a phone number are returned stripped.
    """
    cleaned = raw.strip()
    if cleaned.lower().startswith(_WHATSAPP_PREFIX):
        cleaned = cleaned[len(_WHATSAPP_PREFIX):].strip()
    digits = "".join(ch for ch in cleaned if ch.isdigit())
    if not digits:
        return cleaned
    if cleaned.startswith("+"):
        return f"+{digits}"
    if len(digits) == 10:
        return f"+1{digits}"
    if len(digits) == 11 and digits.startswith("1"):
        return f"+{digits}"
    return cleaned


def mask_contact_target(contact_target: str) -> str:
    normalized = contact_target.strip()
    if not normalized:
        return "***"
    digits = "".join(ch for ch in normalized if ch.isdigit())
    if len(digits) >= 4:
        return f"***{digits[-4:]}"
    if len(normalized) <= 4:
        return "*" * len(normalized)
    return f"{normalized[:2]}***{normalized[-2:]}"


@dataclass(frozen=True)
class ProviderSendRequest:
    channel: Channel
    from_address: str
    to_address: str
    body: str
    media_urls: tuple[str, ...] = ()
    status_callback_url: str | None = None


@dataclass(frozen=True)
class ProviderSendResult:
    provider_message_id: str
    status: str
    attempted_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class MessagingProvider(Protocol):
    def lookup_sender_address(self, channel: Channel) -> str: ...

    def send(self, request: ProviderSendRequest) -> ProviderSendResult: ...


class _ConfiguredSenders:
    def __init__(self, sender_addresses: Mapping[str, str]) -> None:
        self._senders = {
            channel: format_address(address)
            for channel, address in sender_addresses.items()
            if address and address.strip()
        }

    def lookup_sender_address(self, channel: Channel) -> str:
        address = self._senders.get(channel)
        if not address:
            raise ConfigurationError(f"{channel} sender line is not configured")
        return address


class StubMessagingProvider(_ConfiguredSenders):
    """Local provider: targets containing 'fail' or 'timeout' force errors."""

    def __init__(self, *, sender_addresses: Mapping[str, str]) -> None:
        super().__init__(sender_addresses)
        self.sent: list[ProviderSendRequest] = []

    def send(self, request: ProviderSendRequest) -> ProviderSendResult:
        target = request.to_address.lower()
        if "timeout" in target:
            raise ProviderError("timeout", "Stub provider timed out waiting for a response")
        if "fail" in target:
            raise ProviderError("stub_delivery_failed", "Stub provider forced failure for contact target")
        self.sent.append(request)
        return ProviderSendResult(provider_message_id=f"SM{uuid4().hex}", status="queued")


class TwilioMessagingProvider(_ConfiguredSenders):
    def __init__(
        self,
        *,
        account_sid: str,
        auth_token: str,
        sender_addresses: Mapping[str, str],
        timeout_seconds: float = 15.0,
        client: Client | None = None,
    ) -> None:
        super().__init__(sender_addresses)
        if client is None:
            if not account_sid.strip():
                raise ValueError("account_sid must not be empty")
            if not auth_token.strip():
                raise ValueError("auth_token must not be empty")
            client = Client(
                account_sid.strip(),
                auth_token.strip(),
                http_client=TwilioHttpClient(timeout=timeout_seconds),
            )
        self._client = client

    def send(self, request: ProviderSendRequest) -> ProviderSendResult:
        from_address = request.from_address
        to_address = request.to_address
        if request.channel == "whatsapp":
            from_address = f"{_WHATSAPP_PREFIX}{from_address}"
            to_address = f"{_WHATSAPP_PREFIX}{to_address}"

        params: dict[str, object] = {"from_": from_address, "to": to_address}
        if request.body:
            params["body"] = request.body
        if request.media_urls:
            params["media_url"] = list(request.media_urls)
        if request.status_callback_url:
            params["status_callback"] = request.status_callback_url

        masked = mask_contact_target(request.to_address)
        try:
            message = self._client.messages.create(**params)
        except TwilioRestException as exc:
            logger.warning("twilio rejected %s message to %s: %s", request.channel, masked, exc.msg)
            raise ProviderError(f"twilio_{exc.code or exc.status}", str(exc.msg)) from exc
        except RequestsTimeout as exc:
            raise ProviderError("timeout", f"Request timed out: {exc}") from exc
        except (RequestsConnectionError, OSError) as exc:
            raise ProviderError("connection_error", f"Connection error: {exc}") from exc
        except TwilioException as exc:
            raise ProviderError("provider_error", str(exc)) from exc

        status = normalize_provider_status(message.status) or "queued"
        logger.info("twilio accepted %s message %s to %s", request.channel, message.sid, masked)
        return ProviderSendResult(provider_message_id=message.sid, status=status)


def create_messaging_provider(settings: Settings) -> MessagingProvider:
    sender_addresses = {
        "sms": settings.sender_address_for("sms"),
        "whatsapp": settings.sender_address_for("whatsapp"),
    }
    if settings.messaging_provider == "twilio":
        return TwilioMessagingProvider(
            account_sid=settings.twilio_account_sid,
            auth_token=settings.twilio_auth_token,
            sender_addresses=sender_addresses,
            timeout_seconds=settings.provider_timeout_seconds,
        )
    return StubMessagingProvider(sender_addresses=sender_addresses)
