from __future__ import annotations


class ConfigurationError(RuntimeError):
    """Raised when a channel has no provisioned sender line."""


class ProviderError(Exception):
    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message


class DuplicateWebhookError(Exception):
    """Internal signal: the provider message id is already in the ledger."""

    def __init__(self, provider_message_id: str) -> None:
        super().__init__(f"provider message already recorded: {provider_message_id}")
        self.provider_message_id = provider_message_id


class ConversationExistsError(Exception):
    """Internal signal: another writer created the conversation first."""

    def __init__(self, channel: str, phone_address: str) -> None:
        super().__init__(f"conversation already exists for {channel}")
        self.channel = channel
        self.phone_address = phone_address


class PartialWriteError(RuntimeError):
    """Ledger and legacy records did not converge; safe to retry."""

    retryable = True

    def __init__(self, message_id: str, reason: str, *, record=None) -> None:
        super().__init__(f"dual write for {message_id} did not converge: {reason}")
        self.message_id = message_id
        self.reason = reason
        self.record = record


class NotFoundError(KeyError):
    def __init__(self, kind: str, identifier: str) -> None:
        super().__init__(identifier)
        self.kind = kind
        self.identifier = identifier

    def __str__(self) -> str:
        return f"{self.kind} not found: {self.identifier}"


class ProviderIdConflictError(ValueError):
    """Raised when a provider message id would be reassigned or shared."""
