from __future__ import annotations

import asyncio
import functools
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

import anyio

from app.core.dynamo import awith_backoff
from app.core.errors import InvalidRequest, MessagingError, NotFound, Transient
from app.core.settings import S
from app.core.time import new_id, now_ts
from app.services import conversations, delivery, interactions, live, messages, presence, typing
from app.services.hub import Subscription
from app.services.identity import Identity


async def _run(fn, *args, **kwargs):
    return await anyio.to_thread.run_sync(functools.partial(fn, *args, **kwargs))


@dataclass
class OutboxEntry:
    client_id: str
    conversation_id: str
    receiver_id: str
    content: str
    message_type: str = "text"
    attachment: Optional[Dict[str, Any]] = None
    link_preview: Optional[Dict[str, Any]] = None
    reply_to: Optional[str] = None
    status: str = messages.SENDING
    message_id: Optional[str] = None
    error: Optional[str] = None
    created_at: int = field(default_factory=now_ts)
    item: Optional[Dict[str, Any]] = None


class ChatSession:
    """Client core for one logged-in user.

    ``start()`` on login, ``close()`` on logout (or ``async with``). Sends go
    through an optimistic outbox: an entry starts as ``sending`` and ends as
    ``sent`` or ``failed``; nothing is retried behind the caller's back.
    """

    def __init__(self, identity: Identity, *, heartbeat_interval: Optional[float] = None):
        self.identity = identity
        self.heartbeat_interval = heartbeat_interval or S.heartbeat_interval_seconds
        self.outbox: Dict[str, OutboxEntry] = {}
        self._subscriptions: Set[Subscription] = set()
        self._heartbeat_task: Optional[asyncio.Task] = None
        self.started = False

    @property
    def user_id(self) -> str:
        return self.identity.user_id

    async def start(self) -> "ChatSession":
        if self.started:
            return self
        await self._beat()
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
        self.started = True
        return self

    async def close(self) -> None:
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            try:
                await self._heartbeat_task
            except asyncio.CancelledError:
                pass
            self._heartbeat_task = None
        for sub in list(self._subscriptions):
            sub.close()
        if self.started:
            self.started = False
            await awith_backoff(lambda: _run(presence.disconnect, self.user_id))

    async def __aenter__(self) -> "ChatSession":
        return await self.start()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def _beat(self) -> None:
        await awith_backoff(lambda: _run(presence.heartbeat, self.user_id, presence.ONLINE))

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                await self._beat()
            except Transient:
                # presence times out to offline on its own; keep beating
                continue

    # -- conversations -------------------------------------------------------

    async def open_conversation(self, peer_id: str) -> str:
        cid, _ = await _run(conversations.find_or_create, self.user_id, peer_id)
        return cid

    async def set_overlay(self, conversation_id: str, kind: str, value: bool = True) -> Dict[str, Any]:
        return await _run(conversations.set_overlay, conversation_id, self.user_id, kind, value)

    # -- sending -------------------------------------------------------------

    def pending(self) -> List[OutboxEntry]:
        return [e for e in self.outbox.values() if e.status in (messages.SENDING, messages.FAILED)]

    def _fail(self, entry: OutboxEntry, reason: str) -> None:
        if entry.status == messages.SENDING:
            entry.status = messages.FAILED
            entry.error = reason

    async def _deliver(self, entry: OutboxEntry) -> OutboxEntry:
        try:
            item = await anyio.to_thread.run_sync(
                functools.partial(
                    messages.send,
                    entry.conversation_id,
                    self.user_id,
                    entry.receiver_id,
                    entry.content,
                    entry.message_type,
                    attachment=entry.attachment,
                    link_preview=entry.link_preview,
                    reply_to=entry.reply_to,
                    sender_identity=self.identity,
                    client_id=entry.client_id,
                ),
                abandon_on_cancel=True,
            )
        except asyncio.CancelledError:
            self._fail(entry, "cancelled")
            raise
        except MessagingError as exc:
            self._fail(entry, exc.message)
            return entry
        except Exception as exc:
            self._fail(entry, str(exc) or exc.__class__.__name__)
            return entry
        entry.status = messages.SENT
        entry.message_id = item["message_id"]
        entry.item = item
        return entry

    async def send_message(
        self,
        conversation_id: str,
        receiver_id: str,
        content: Optional[str],
        message_type: str = "text",
        *,
        attachment: Optional[Dict[str, Any]] = None,
        link_preview: Optional[Dict[str, Any]] = None,
        reply_to: Optional[str] = None,
    ) -> OutboxEntry:
        entry = OutboxEntry(
            client_id=new_id(),
            conversation_id=conversation_id,
            receiver_id=receiver_id,
            content=content or "",
            message_type=message_type,
            attachment=attachment,
            link_preview=link_preview,
            reply_to=reply_to,
        )
        self.outbox[entry.client_id] = entry
        return await self._deliver(entry)

    async def reply(self, conversation_id: str, receiver_id: str, content: str, reply_to: str, **kw: Any) -> OutboxEntry:
        if not reply_to:
            raise InvalidRequest("reply_to is required")
        return await self.send_message(conversation_id, receiver_id, content, reply_to=reply_to, **kw)

    async def retry(self, client_id: str) -> OutboxEntry:
        """Resend a failed entry as a new attempt with a fresh client id."""
        old = self.outbox.get(client_id)
        if old is None:
            raise NotFound("Unknown outbox entry")
        if old.status != messages.FAILED:
            raise InvalidRequest("Only failed messages can be retried")
        del self.outbox[client_id]
        return await self.send_message(
            old.conversation_id,
            old.receiver_id,
            old.content,
            old.message_type,
            attachment=old.attachment,
            link_preview=old.link_preview,
            reply_to=old.reply_to,
        )

    def discard(self, client_id: str) -> None:
        entry = self.outbox.get(client_id)
        if entry is not None and entry.status == messages.FAILED:
            del self.outbox[client_id]

    # -- message actions -----------------------------------------------------

    async def edit_message(self, conversation_id: str, message_id: str, content: str) -> Dict[str, Any]:
        return await _run(messages.edit, conversation_id, message_id, self.user_id, content)

    async def delete_message(self, conversation_id: str, message_id: str) -> Dict[str, Any]:
        return await _run(messages.soft_delete, conversation_id, message_id, self.user_id)

    async def react(self, conversation_id: str, message_id: str, emoji: str) -> Dict[str, Any]:
        reactions, _ = await _run(
            interactions.react, conversation_id, message_id, self.user_id, self.identity.display_name, emoji
        )
        return reactions

    async def star(self, conversation_id: str, message_id: str, on: bool = True) -> Dict[str, Any]:
        fn = interactions.star if on else interactions.unstar
        return await _run(fn, conversation_id, message_id, self.user_id)

    async def forward(self, src_conversation_id: str, message_id: str, to_conversation_id: str) -> Dict[str, Any]:
        return await _run(
            interactions.forward,
            src_conversation_id,
            message_id,
            to_conversation_id,
            self.user_id,
            sender_identity=self.identity,
        )

    async def mark_read(self, conversation_id: str, message_id: Optional[str] = None) -> int:
        if message_id is None:
            return await awith_backoff(lambda: _run(delivery.mark_conversation_read, conversation_id, self.user_id))
        await _run(delivery.mark_read, conversation_id, message_id, self.user_id)
        return 1

    async def set_typing(self, conversation_id: str, is_typing: bool = True) -> Dict[str, Any]:
        await _run(conversations.require_participant, conversation_id, self.user_id)
        return typing.set_typing(conversation_id, self.user_id, is_typing)

    # -- subscriptions -------------------------------------------------------

    def _own(self, sub: Subscription) -> Subscription:
        self._subscriptions.add(sub)
        return sub

    def _release(self, sub: Subscription) -> None:
        self._subscriptions.discard(sub)

    @property
    def subscriptions(self) -> List[Subscription]:
        return list(self._subscriptions)

    def subscribe_to_conversation(self, conversation_id: str, focused: bool = False) -> Subscription:
        return self._own(live.subscribe_to_conversation(conversation_id, self.user_id, focused, on_close=self._release))

    def subscribe_to_presence(self, user_id: str) -> Subscription:
        return self._own(live.subscribe_to_presence(user_id, on_close=self._release))

    def subscribe_to_unread_count(self) -> Subscription:
        return self._own(live.subscribe_to_unread_count(self.user_id, on_close=self._release))

    def subscribe_to_typing(self, conversation_id: str) -> Subscription:
        return self._own(live.subscribe_to_typing(conversation_id, self.user_id, on_close=self._release))
