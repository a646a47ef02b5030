"""In-process pub/sub for live views.

Events are change signals, not state: a subscriber that wakes up re-reads the
store through its ``snapshot`` callable. That makes it safe to drop the oldest
pending signal when a subscriber falls behind. For multi-process deployments,
swap the hub for Redis/SNS fanout; the Subscription contract stays the same.
"""

from __future__ import annotations

import asyncio
import threading
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set, Tuple

from app.core.settings import S
from app.metrics import subscription_closed, subscription_opened

_Entry = Tuple[asyncio.AbstractEventLoop, asyncio.Queue]

_MISSING = object()
_CLOSED = object()


def conversation_topic(conversation_id: str) -> str:
    return f"conversation:{conversation_id}"


def presence_topic(user_id: str) -> str:
    return f"presence:{user_id}"


def unread_topic(user_id: str) -> str:
    return f"unread:{user_id}"


def typing_topic(conversation_id: str) -> str:
    return f"typing:{conversation_id}"


def _put_dropping_oldest(q: asyncio.Queue, event: Dict[str, Any]) -> None:
    if q.full():
        try:
            q.get_nowait()
        except asyncio.QueueEmpty:
            pass
    q.put_nowait(event)


class Hub:
    def __init__(self, maxsize: Optional[int] = None):
        self._maxsize = maxsize or S.subscription_queue_size
        self._topics: Dict[str, Set[_Entry]] = {}
        self._lock = threading.Lock()

    def new_queue(self) -> _Entry:
        return asyncio.get_running_loop(), asyncio.Queue(maxsize=self._maxsize)

    def attach(self, topic: str, entry: _Entry) -> None:
        with self._lock:
            self._topics.setdefault(topic, set()).add(entry)

    def detach(self, topic: str, entry: _Entry) -> None:
        with self._lock:
            s = self._topics.get(topic)
            if not s:
                return
            s.discard(entry)
            if not s:
                self._topics.pop(topic, None)

    def subscriber_count(self, topic: str) -> int:
        with self._lock:
            return len(self._topics.get(topic, ()))

    def publish(self, topic: str, event: Dict[str, Any]) -> int:
        """Deliver ``event`` to every queue on ``topic``; callable from any thread."""
        with self._lock:
            entries = list(self._topics.get(topic, ()))
        try:
            current = asyncio.get_running_loop()
        except RuntimeError:
            current = None

        delivered = 0
        for loop, q in entries:
            if loop.is_closed():
                self.detach(topic, (loop, q))
                continue
            if loop is current:
                _put_dropping_oldest(q, event)
            else:
                loop.call_soon_threadsafe(_put_dropping_oldest, q, event)
            delivered += 1
        return delivered

    def publish_many(self, topics: Iterable[str], event: Dict[str, Any]) -> None:
        for t in topics:
            self.publish(t, event)


hub = Hub()


class Subscription:
    """A live stream of snapshots with mandatory disposal.

    Use as ``async with subscription: async for value in subscription``. The
    first value is the current snapshot; later values follow change signals on
    the subscribed topics, or a periodic re-evaluation when ``poll_seconds`` is
    set. ``close()`` is idempotent and releases the hub queues.
    """

    def __init__(
        self,
        kind: str,
        topics: List[str],
        snapshot: Callable[[], Awaitable[Any]],
        *,
        poll_seconds: Optional[float] = None,
        dedupe: bool = False,
        on_close: Optional[Callable[["Subscription"], None]] = None,
        source: Optional[Hub] = None,
    ):
        self.kind = kind
        self.topics = list(topics)
        self._snapshot = snapshot
        self._poll = poll_seconds
        self._dedupe = dedupe
        self._on_close = on_close
        self._hub = source or hub
        self._entry: Optional[_Entry] = None
        self._last: Any = _MISSING
        self._primed = False
        self.closed = False

    def open(self) -> "Subscription":
        if self._entry is not None or self.closed:
            return self
        self._entry = self._hub.new_queue()
        for t in self.topics:
            self._hub.attach(t, self._entry)
        subscription_opened(self.kind)
        return self

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self._entry is not None:
            loop, q = self._entry
            for t in self.topics:
                self._hub.detach(t, self._entry)
            self._entry = None
            # wake a consumer parked in _wait_for_change
            if not loop.is_closed():
                loop.call_soon_threadsafe(_put_dropping_oldest, q, _CLOSED)
            subscription_closed(self.kind)
        if self._on_close is not None:
            self._on_close(self)

    async def __aenter__(self) -> "Subscription":
        return self.open()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.close()

    def __aiter__(self) -> "Subscription":
        return self

    async def _wait_for_change(self) -> None:
        if self._entry is None:
            raise StopAsyncIteration
        q = self._entry[1]
        if self._poll:
            try:
                event = await asyncio.wait_for(q.get(), timeout=self._poll)
            except asyncio.TimeoutError:
                event = None
        else:
            event = await q.get()
        # coalesce a burst of signals into one re-read
        while event is not _CLOSED and not q.empty():
            event = q.get_nowait()
        if event is _CLOSED or self.closed:
            raise StopAsyncIteration

    async def __anext__(self) -> Any:
        if self.closed:
            raise StopAsyncIteration
        self.open()
        while True:
            if self._primed:
                await self._wait_for_change()
            self._primed = True
            value = await self._snapshot()
            if self.closed:
                raise StopAsyncIteration
            if self._dedupe and value == self._last:
                continue
            self._last = value
            return value
