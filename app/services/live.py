"""Read-side projection: rendered views and the live subscriptions built on them."""

from __future__ import annotations

import functools
from typing import Any, Dict, List, Optional

import anyio

from app.core.settings import S
from app.services import conversations, delivery, interactions, messages, presence, typing
from app.services.hub import Subscription, conversation_topic, presence_topic, typing_topic, unread_topic

MESSAGE_FIELDS = (
    "conversation_id",
    "message_id",
    "seq",
    "sender_id",
    "receiver_id",
    "sender_name",
    "sender_photo_url",
    "message_type",
    "timestamp",
    "status",
    "read",
    "delivered_at",
    "read_at",
    "edited",
    "edited_at",
    "deleted",
    "deleted_at",
    "forwarded",
    "forwarded_from",
    "original_message_id",
    "original_conversation_id",
    "client_id",
)


def render_message(
    item: Dict[str, Any],
    viewer: str,
    quote: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    out = {k: item[k] for k in MESSAGE_FIELDS if k in item}
    for k in ("seq", "timestamp", "delivered_at", "read_at", "edited_at", "deleted_at"):
        if k in out and out[k] is not None:
            out[k] = int(out[k])
    out["content"] = messages.render_content(item)
    deleted = bool(item.get("deleted"))
    if not deleted:
        out["media"] = {k: item[k] for k in messages.MEDIA_FIELDS if k in item} or None
        out["link_preview"] = item.get("link_preview")
        out["reactions"] = interactions.summarize_reactions(item)
    else:
        out["media"] = None
        out["link_preview"] = None
        out["reactions"] = {}
    if "duration" in (out["media"] or {}):
        out["media"]["duration"] = float(out["media"]["duration"])
    if "media_size" in (out["media"] or {}):
        out["media"]["media_size"] = int(out["media"]["media_size"])
    out["starred"] = viewer in (item.get("starred") or set())
    out["reply_to"] = quote
    return out


def render_messages(conversation_id: str, items: List[Dict[str, Any]], viewer: str) -> List[Dict[str, Any]]:
    quotes = interactions.resolve_quotes(conversation_id, items)
    return [render_message(it, viewer, quotes.get(it.get("reply_to"))) for it in items]


def conversation_snapshot(conversation_id: str, viewer: str, focused: bool = False) -> List[Dict[str, Any]]:
    """Acknowledge incoming messages, then render the current page."""
    page = messages.list_messages(conversation_id, viewer)
    items = page["items"]
    target = messages.READ if focused else messages.DELIVERED
    pending = [
        it
        for it in items
        if it.get("receiver_id") == viewer and delivery.can_transition(it.get("status") or messages.SENT, target)
    ]
    if pending:
        delivery.advance_many(pending, viewer, target)
        items = messages.list_messages(conversation_id, viewer)["items"]
    return render_messages(conversation_id, items, viewer)


async def _in_thread(fn, *args, **kwargs):
    return await anyio.to_thread.run_sync(functools.partial(fn, *args, **kwargs))


def subscribe_to_conversation(conversation_id: str, viewer: str, focused: bool = False, **kw: Any) -> Subscription:
    return Subscription(
        "conversation",
        [conversation_topic(conversation_id)],
        lambda: _in_thread(conversation_snapshot, conversation_id, viewer, focused),
        dedupe=True,
        **kw,
    )


def subscribe_to_presence(user_id: str, **kw: Any) -> Subscription:
    async def snapshot() -> Dict[str, Any]:
        p = await _in_thread(presence.get_presence, user_id)
        return {"status": p["status"], "last_seen_at": int(p["last_seen_at"])}

    return Subscription(
        "presence",
        [presence_topic(user_id)],
        snapshot,
        poll_seconds=S.presence_poll_seconds,
        dedupe=True,
        **kw,
    )


def subscribe_to_unread_count(user_id: str, **kw: Any) -> Subscription:
    return Subscription(
        "unread",
        [unread_topic(user_id)],
        lambda: _in_thread(delivery.global_unread_count, user_id),
        dedupe=True,
        **kw,
    )


def subscribe_to_typing(conversation_id: str, viewer: str, **kw: Any) -> Subscription:
    async def snapshot() -> List[str]:
        return typing.typing_users(conversation_id, exclude=viewer)

    return Subscription(
        "typing",
        [typing_topic(conversation_id)],
        snapshot,
        poll_seconds=max(1.0, S.typing_ttl_seconds / 2),
        dedupe=True,
        **kw,
    )


def conversation_list(user_id: str, include_archived: bool = False) -> List[Dict[str, Any]]:
    """Conversation views with per-conversation unread counts attached."""
    raw = {c["conversation_id"]: c for c in conversations.user_conversations(user_id)}
    views = conversations.list_conversations(user_id, include_archived=include_archived, convos=list(raw.values()))
    for v in views:
        v["unread_count"] = delivery.unread_count(v["conversation_id"], user_id, convo=raw[v["conversation_id"]])
    return views
