"""Per-process typing indicators. Entries expire on their own and are never persisted."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable


@dataclass(frozen=True)
class TypingEntry:
    conversation_id: str
    user_id: str
    user_name: str | None
    expires_at: float


class TypingPresence:
    def __init__(self, *, ttl_seconds: float = 5.0, clock: Callable[[], float] = time.monotonic) -> None:
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[tuple[str, str], TypingEntry] = {}

    def reset(self) -> None:
        with self._lock:
            self._entries.clear()

    def set_typing(self, conversation_id: str, user_id: str, *, user_name: str | None, is_typing: bool) -> None:
        key = (conversation_id, user_id)
        with self._lock:
            if not is_typing:
                self._entries.pop(key, None)
                return
            self._entries[key] = TypingEntry(
                conversation_id=conversation_id,
                user_id=user_id,
                user_name=user_name,
                expires_at=self._clock() + self._ttl_seconds,
            )

    def typing_users(self, conversation_id: str, *, exclude_user_id: str | None = None) -> list[TypingEntry]:
        now = self._clock()
        with self._lock:
            expired = [key for key, entry in self._entries.items() if entry.expires_at <= now]
            for key in expired:
                del self._entries[key]
            active = [
                entry
                for entry in self._entries.values()
                if entry.conversation_id == conversation_id and entry.user_id != exclude_user_id
            ]
        return sorted(active, key=lambda entry: entry.user_id)

    def remaining_seconds(self, entry: TypingEntry) -> float:
        return max(0.0, entry.expires_at - self._clock())
