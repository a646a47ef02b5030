from __future__ import annotations

import threading
import time
from typing import Callable, Dict, List, Optional

from app.core.settings import S
from app.services.hub import hub, typing_topic


class TypingRegistry:
    """Ephemeral "who is typing" state, kept in memory only.

    Entries expire ``ttl`` seconds after their last refresh, so a client that
    stops sending updates drops out without an explicit stop.
    """

    def __init__(self, ttl: Optional[float] = None, clock: Callable[[], float] = time.monotonic):
        self.ttl = S.typing_ttl_seconds if ttl is None else ttl
        self._clock = clock
        self._entries: Dict[str, Dict[str, float]] = {}
        self._lock = threading.Lock()

    def set(self, conversation_id: str, user_id: str, is_typing: bool, now: Optional[float] = None) -> Optional[float]:
        ts = self._clock() if now is None else now
        with self._lock:
            users = self._entries.setdefault(conversation_id, {})
            if is_typing:
                users[user_id] = ts + self.ttl
                return users[user_id]
            users.pop(user_id, None)
            if not users:
                self._entries.pop(conversation_id, None)
            return None

    def active(self, conversation_id: str, exclude: Optional[str] = None, now: Optional[float] = None) -> List[str]:
        ts = self._clock() if now is None else now
        with self._lock:
            users = self._entries.get(conversation_id)
            if not users:
                return []
            for uid in [u for u, exp in users.items() if exp <= ts]:
                del users[uid]
            if not users:
                self._entries.pop(conversation_id, None)
                return []
            return sorted(u for u in users if u != exclude)


registry = TypingRegistry()


def set_typing(conversation_id: str, user_id: str, is_typing: bool) -> dict:
    expires_at = registry.set(conversation_id, user_id, is_typing)
    hub.publish(
        typing_topic(conversation_id),
        {"type": "typing", "user_id": user_id, "is_typing": bool(is_typing)},
    )
    return {"conversation_id": conversation_id, "is_typing": bool(is_typing), "expires_in": registry.ttl if expires_at else 0}


def typing_users(conversation_id: str, exclude: Optional[str] = None, now: Optional[float] = None) -> List[str]:
    return registry.active(conversation_id, exclude=exclude, now=now)
