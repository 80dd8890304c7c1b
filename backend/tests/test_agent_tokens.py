from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from crm_messaging.agent_tokens import (
    AgentTokenError,
    create_agent_token,
    decode_agent_token,
    encode_agent_token,
)


def test_agent_token_round_trip() -> None:
    now = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)
    identity = create_agent_token(user_id="agent-001", role="Agent", ttl_minutes=60, display_name="Dana", now=now)
    token = encode_agent_token(identity, secret="secret-123")

    decoded = decode_agent_token(token, secret="secret-123", now=now + timedelta(minutes=30))

    assert decoded.user_id == "agent-001"
    assert decoded.role == "agent"
    assert decoded.display_name == "Dana"
    assert decoded.expires_at == now + timedelta(minutes=60)
    assert decoded.is_admin is False


def test_agent_token_expired() -> None:
    now = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)
    token = encode_agent_token(
        create_agent_token(user_id="agent-001", role="admin", ttl_minutes=5, now=now),
        secret="secret-123",
    )

    with pytest.raises(AgentTokenError, match="expired"):
        decode_agent_token(token, secret="secret-123", now=now + timedelta(minutes=6))


def test_agent_token_rejects_wrong_secret() -> None:
    token = encode_agent_token(
        create_agent_token(user_id="agent-001", role="manager", ttl_minutes=5),
        secret="secret-123",
    )

    with pytest.raises(AgentTokenError, match="signature"):
        decode_agent_token(token, secret="other-secret")


def test_agent_token_rejects_unknown_role() -> None:
    with pytest.raises(AgentTokenError):
        create_agent_token(user_id="agent-001", role="owner", ttl_minutes=5)


def test_agent_token_rejects_malformed_token() -> None:
    with pytest.raises(AgentTokenError, match="format"):
        decode_agent_token("not-a-token", secret="secret-123")
