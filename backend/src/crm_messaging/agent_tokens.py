from __future__ import annotations

import base64
import hashlib
import hmac
import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from .models import AgentRole

_ROLES: frozenset[str] = frozenset({"admin", "manager", "agent"})


class AgentTokenError(ValueError):
    """Raised when agent bearer tokens are invalid or expired."""


@dataclass(frozen=True)
class AgentIdentity:
    user_id: str
    role: AgentRole
    expires_at: datetime
    display_name: str | None = None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def _b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def _b64url_decode(data: str) -> bytes:
    padding = "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(f"{data}{padding}".encode("ascii"))


def _sign(payload_b64: str, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), payload_b64.encode("ascii"), hashlib.sha256).hexdigest()


def create_agent_token(
    *,
    user_id: str,
    role: str,
    ttl_minutes: int,
    display_name: str | None = None,
    now: datetime | None = None,
) -> AgentIdentity:
    normalized_user = user_id.strip()
    if not normalized_user:
        raise AgentTokenError("user_id must not be empty")
    normalized_role = role.strip().lower()
    if normalized_role not in _ROLES:
        raise AgentTokenError(f"unsupported role: {role}")
    issued_at = now or datetime.now(timezone.utc)
    return AgentIdentity(
        user_id=normalized_user,
        role=normalized_role,  # type: ignore[arg-type]
        expires_at=issued_at + timedelta(minutes=ttl_minutes),
        display_name=display_name,
    )


def encode_agent_token(identity: AgentIdentity, *, secret: str) -> str:
    if not secret:
        raise AgentTokenError("agent token secret is empty")

    body: dict[str, object] = {
        "sub": identity.user_id,
        "role": identity.role,
        "exp": int(identity.expires_at.timestamp()),
    }
    if identity.display_name:
        body["name"] = identity.display_name
    payload_json = json.dumps(body, separators=(",", ":"), sort_keys=True).encode("utf-8")
    payload_b64 = _b64url_encode(payload_json)
    return f"{payload_b64}.{_sign(payload_b64, secret)}"


def decode_agent_token(token: str, *, secret: str, now: datetime | None = None) -> AgentIdentity:
    if not token or "." not in token:
        raise AgentTokenError("invalid token format")
    if not secret:
        raise AgentTokenError("agent token secret is empty")

    payload_b64, signature = token.rsplit(".", 1)
    if not hmac.compare_digest(signature, _sign(payload_b64, secret)):
        raise AgentTokenError("token signature mismatch")

    try:
        payload_obj = json.loads(_b64url_decode(payload_b64).decode("utf-8"))
    except Exception as exc:  # noqa: BLE001
        raise AgentTokenError("token payload decoding failed") from exc
    if not isinstance(payload_obj, dict):
        raise AgentTokenError("token payload decoding failed")

    user_id = str(payload_obj.get("sub", "")).strip()
    if not user_id:
        raise AgentTokenError("token subject missing")

    role = str(payload_obj.get("role", "")).strip().lower()
    if role not in _ROLES:
        raise AgentTokenError("token role invalid")

    try:
        exp = int(payload_obj["exp"])
    except Exception as exc:  # noqa: BLE001
        raise AgentTokenError("token expiration missing") from exc

    expires_at = datetime.fromtimestamp(exp, tz=timezone.utc)
    if expires_at <= (now or datetime.now(timezone.utc)):
        raise AgentTokenError("token expired")

    display_name = payload_obj.get("name")
    return AgentIdentity(
        user_id=user_id,
        role=role,  # type: ignore[arg-type]
        expires_at=expires_at,
        display_name=str(display_name) if display_name else None,
    )
