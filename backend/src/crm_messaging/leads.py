from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Protocol

from .provider import format_address


@dataclass(frozen=True)
class LeadMatch:
    lead_id: str
    customer_name: str | None


class LeadDirectory(Protocol):
    def find_by_phone(self, phone_address: str) -> LeadMatch | None: ...


class InMemoryLeadDirectory:
    """Lead lookup by phone; lead CRUD lives in the CRM and feeds this directory."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._by_phone: dict[str, LeadMatch] = {}

    def reset(self) -> None:
        with self._lock:
            self._by_phone.clear()

    def register(self, phone: str, *, lead_id: str, customer_name: str | None = None) -> LeadMatch:
        match = LeadMatch(lead_id=lead_id, customer_name=customer_name)
        with self._lock:
            self._by_phone[format_address(phone)] = match
        return match

    def find_by_phone(self, phone_address: str) -> LeadMatch | None:
        with self._lock:
            return self._by_phone.get(format_address(phone_address))
