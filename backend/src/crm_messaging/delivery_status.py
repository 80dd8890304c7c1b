"""Delivery status reconciliation.

Provider callbacks arrive out of order and are sometimes replayed. Within the
in-flight states (queued, sending, sent) the latest callback wins. Once a
message reaches a terminal state, in-flight callbacks are recorded but do not
change the stored status. ``read`` supersedes ``delivered``; ``failed`` and
``undelivered`` freeze the record apart from an explicit ``read``.
"""

from __future__ import annotations

from dataclasses import dataclass

IN_FLIGHT_STATUSES = frozenset({"queued", "sending", "sent"})
FAILURE_STATUSES = frozenset({"failed", "undelivered"})
TERMINAL_STATUSES = frozenset({"delivered", "read"}) | FAILURE_STATUSES
RECOGNIZED_STATUSES = IN_FLIGHT_STATUSES | TERMINAL_STATUSES | {"received"}

_PROVIDER_ALIASES = {
    "accepted": "queued",
    "scheduled": "queued",
    "receiving": "received",
    "canceled": "failed",
    "partially_delivered": "delivered",
}


def normalize_provider_status(raw: str | None) -> str | None:
    if raw is None:
        return None
    normalized = raw.strip().lower().replace("-", "_")
    if normalized in RECOGNIZED_STATUSES:
        return normalized
    return _PROVIDER_ALIASES.get(normalized)


@dataclass(frozen=True)
class StatusTransition:
    previous: str
    requested: str | None
    resulting: str
    applied: bool
    reason: str


def _keep(current: str, requested: str | None, reason: str) -> StatusTransition:
    return StatusTransition(previous=current, requested=requested, resulting=current, applied=False, reason=reason)


def _advance(current: str, requested: str) -> StatusTransition:
    return StatusTransition(previous=current, requested=requested, resulting=requested, applied=True, reason="applied")


def resolve_transition(
    current: str,
    requested: str | None,
    *,
    sender_type: str = "agent",
    from_provider: bool = False,
) -> StatusTransition:
    if requested is None or requested not in RECOGNIZED_STATUSES:
        return _keep(current, requested, "unrecognized_status")
    if requested == current:
        return _keep(current, requested, "unchanged")

    # customer messages reach read through a reader only
    if from_provider and sender_type == "customer":
        return _keep(current, requested, "inbound_status_fixed")

    if current == "read":
        return _keep(current, requested, "read_is_final")

    if current in FAILURE_STATUSES:
        if requested == "read":
            return _advance(current, requested)
        return _keep(current, requested, "failure_is_final")

    if current == "delivered":
        if requested == "read" or requested in FAILURE_STATUSES:
            return _advance(current, requested)
        return _keep(current, requested, "terminal_precedence")

    if current == "received":
        if requested == "read":
            return _advance(current, requested)
        return _keep(current, requested, "inbound_status_fixed")

    # current is in flight
    if requested == "received":
        return _keep(current, requested, "inbound_only_status")
    return _advance(current, requested)
