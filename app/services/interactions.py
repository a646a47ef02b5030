from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional, Tuple

from boto3.dynamodb.conditions import Attr, Key
from botocore.exceptions import BotoCoreError, ClientError

from app.core.dynamo import batch_get, classify_client_error, is_conditional_failure, query_all, transact_write
from app.core.errors import Conflict, InvalidRequest, MessagingError, NotFound, PermissionDenied
from app.core.settings import S
from app.core.tables import T
from app.core.time import now_ts
from app.metrics import record_reaction
from app.services import conversations, messages, moderation
from app.services.hub import conversation_topic, hub
from app.services.identity import Identity, get_identity

FORWARDABLE_TYPES = ("text", "image", "document", "voice")
MAX_EMOJI_LENGTH = 32


def apply_reaction(entry: Optional[Dict[str, Any]], emoji: str, user_name: str = "", ts: int = 0) -> Optional[Dict[str, Any]]:
    """Next stored entry for a user picking ``emoji``; ``None`` removes it."""
    if entry and entry.get("emoji") == emoji:
        return None
    return {"emoji": emoji, "user_name": user_name, "timestamp": ts}


def summarize_reactions(item: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
    grouped: Dict[str, List[Dict[str, Any]]] = {}
    for uid, entry in (item.get("reactions_by_user") or {}).items():
        if not entry or not entry.get("emoji"):
            continue
        grouped.setdefault(entry["emoji"], []).append(
            {
                "user_id": uid,
                "user_name": entry.get("user_name") or uid,
                "timestamp": int(entry.get("timestamp", 0) or 0),
            }
        )
    out: Dict[str, Dict[str, Any]] = {}
    for emoji, users in grouped.items():
        users.sort(key=lambda u: (u["timestamp"], u["user_id"]))
        out[emoji] = {"count": len(users), "users": users}
    return out


def react(
    conversation_id: str,
    message_id: str,
    user_id: str,
    user_name: Optional[str],
    emoji: str,
) -> Tuple[Dict[str, Dict[str, Any]], str]:
    """Toggle the caller's reaction; returns ``(reactions, action)``.

    Only the caller's own map entry is written, conditioned on what it held
    when read, so concurrent reacts by the same user serialize.
    """
    emoji = (emoji or "").strip()
    if not emoji or len(emoji) > MAX_EMOJI_LENGTH:
        raise InvalidRequest("Invalid emoji")
    conversations.require_participant(conversation_id, user_id)
    name = user_name or get_identity(user_id).display_name

    for _ in range(max(1, S.reaction_retry_attempts)):
        item = messages.get_message(conversation_id, message_id, consistent=True)
        if item.get("deleted"):
            raise NotFound("Message was deleted")
        current = (item.get("reactions_by_user") or {}).get(user_id)
        nxt = apply_reaction(current, emoji, name, now_ts())

        names = {"#r": "reactions_by_user", "#u": user_id}
        values: Dict[str, Any] = {}
        if current:
            cond = "#r.#u.#e = :prev"
            names["#e"] = "emoji"
            values[":prev"] = current.get("emoji")
        else:
            cond = "attribute_exists(#r) AND attribute_not_exists(#r.#u)"
        if nxt is None:
            expr, action = "REMOVE #r.#u", "remove"
        else:
            expr, action = "SET #r.#u = :entry", ("replace" if current else "add")
            values[":entry"] = nxt

        kwargs: Dict[str, Any] = dict(
            Key={"conversation_id": conversation_id, "message_id": message_id},
            UpdateExpression=expr,
            ConditionExpression=cond,
            ExpressionAttributeNames=names,
            ReturnValues="ALL_NEW",
        )
        if values:
            kwargs["ExpressionAttributeValues"] = values
        try:
            resp = T.messages.update_item(**kwargs)
        except (ClientError, BotoCoreError) as exc:
            if is_conditional_failure(exc):
                continue
            raise classify_client_error(exc) from exc

        record_reaction(action)
        hub.publish(conversation_topic(conversation_id), {"type": "reaction", "message_id": message_id})
        return summarize_reactions(resp["Attributes"]), action

    raise Conflict("Reaction changed concurrently")


def reply(
    conversation_id: str,
    sender_id: str,
    receiver_id: str,
    content: Optional[str],
    reply_to: str,
    **kwargs: Any,
) -> Dict[str, Any]:
    if not reply_to:
        raise InvalidRequest("reply_to is required")
    return messages.send(conversation_id, sender_id, receiver_id, content, reply_to=reply_to, **kwargs)


def quote_of(item: Optional[Dict[str, Any]], reply_to: str) -> Dict[str, Any]:
    if not item:
        return {"message_id": reply_to, "missing": True}
    return {
        "message_id": item["message_id"],
        "sender_id": item.get("sender_id"),
        "sender_name": item.get("sender_name"),
        "content": messages.render_content(item),
        "deleted": bool(item.get("deleted")),
        "message_type": item.get("message_type", "text"),
    }


def resolve_quote(
    conversation_id: str,
    reply_to: str,
    page_items: Iterable[Dict[str, Any]] = (),
) -> Dict[str, Any]:
    """Render the quoted message at read time, from the page first, then the store."""
    for it in page_items:
        if it.get("message_id") == reply_to:
            return quote_of(it, reply_to)
    try:
        return quote_of(messages.get_message(conversation_id, reply_to), reply_to)
    except NotFound:
        return quote_of(None, reply_to)


def resolve_quotes(conversation_id: str, page_items: List[Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
    """Quotes for every reply on a page, with one batch read for targets off the page."""
    known = {it["message_id"]: it for it in page_items}
    wanted = {it["reply_to"] for it in page_items if it.get("reply_to")}
    missing = sorted(wanted - set(known))
    if missing:
        try:
            fetched = batch_get(
                S.ddb_messages,
                [{"conversation_id": conversation_id, "message_id": mid} for mid in missing],
            )
        except (ClientError, BotoCoreError) as exc:
            raise classify_client_error(exc) from exc
        known.update({it["message_id"]: it for it in fetched})
    return {mid: quote_of(known.get(mid), mid) for mid in wanted}


def forward(
    src_conversation_id: str,
    message_id: str,
    to_conversation_id: str,
    by_user: str,
    sender_identity: Optional[Identity] = None,
) -> Dict[str, Any]:
    """Copy a message into another conversation; the source is never written."""
    conversations.require_participant(src_conversation_id, by_user)
    target = conversations.require_participant(to_conversation_id, by_user)
    src = messages.get_message(src_conversation_id, message_id)
    if src.get("deleted"):
        raise PermissionDenied("Cannot forward a deleted message")
    mtype = src.get("message_type", "text")
    if mtype not in FORWARDABLE_TYPES:
        raise InvalidRequest(f"Cannot forward {mtype} messages")
    receiver_id = conversations.peer_of(target, by_user)
    moderation.ensure_can_message(by_user, receiver_id)

    sender = sender_identity or get_identity(by_user)
    try:
        seq, ts = conversations.allocate_seq(to_conversation_id)
    except (ClientError, BotoCoreError) as exc:
        raise classify_client_error(exc) from exc

    item = messages.build_message_item(
        to_conversation_id,
        sender,
        receiver_id,
        src.get("content") or "",
        mtype,
        seq=seq,
        ts=ts,
        media={k: src[k] for k in messages.MEDIA_FIELDS if k in src},
        link_preview=src.get("link_preview"),
        extra={
            "forwarded": True,
            "forwarded_from": by_user,
            "original_message_id": message_id,
            "original_conversation_id": src_conversation_id,
            "original_sender_id": src.get("sender_id"),
        },
    )
    return messages.commit_message(target, item)


def forward_to_user(
    src_conversation_id: str,
    message_id: str,
    by_user: str,
    target_user: str,
    sender_identity: Optional[Identity] = None,
) -> Dict[str, Any]:
    to_cid, _ = conversations.find_or_create(by_user, target_user)
    return forward(src_conversation_id, message_id, to_cid, by_user, sender_identity=sender_identity)


def forward_many(
    src_conversation_id: str,
    message_ids: List[str],
    by_user: str,
    to_conversation_id: Optional[str] = None,
    to_user_id: Optional[str] = None,
    sender_identity: Optional[Identity] = None,
) -> Dict[str, Any]:
    """Forward each message in order; one failure does not stop the rest.

    Returns counts, the new messages and a per-message error list.
    """
    if bool(to_conversation_id) == bool(to_user_id):
        raise InvalidRequest("Give exactly one of to_conversation_id or to_user_id")
    ids = [m for m in (message_ids or []) if m]
    if not ids:
        raise InvalidRequest("No messages to forward")
    if len(ids) > S.max_forward_batch:
        raise InvalidRequest(f"At most {S.max_forward_batch} messages per forward")
    if to_user_id:
        to_conversation_id, _ = conversations.find_or_create(by_user, to_user_id)
    sender = sender_identity or get_identity(by_user)

    out: Dict[str, Any] = {"success_count": 0, "failed_count": 0, "forwarded": [], "errors": []}
    for mid in ids:
        try:
            item = forward(src_conversation_id, mid, to_conversation_id, by_user, sender_identity=sender)
        except MessagingError as exc:
            out["failed_count"] += 1
            out["errors"].append(dict(exc.to_dict(), message_id=mid))
            continue
        out["success_count"] += 1
        out["forwarded"].append(item)
    return out


def replies_to(conversation_id: str, message_id: str, viewer: str) -> List[Dict[str, Any]]:
    """Messages replying to ``message_id`` that the viewer can still see, oldest first."""
    convo = conversations.require_participant(conversation_id, viewer)
    messages.get_message(conversation_id, message_id)
    cutoff = conversations.cleared_at(convo, viewer)
    try:
        rows = query_all(
            T.messages,
            KeyConditionExpression=Key("conversation_id").eq(conversation_id),
            FilterExpression=Attr("reply_to").eq(message_id),
        )
    except (ClientError, BotoCoreError) as exc:
        raise classify_client_error(exc) from exc
    rows = [r for r in rows if int(r.get("timestamp", 0) or 0) > cutoff]
    rows.sort(key=messages.sort_key)
    return rows


def star_key(conversation_id: str, message_id: str) -> str:
    return f"{conversation_id}#{message_id}"


def _set_star(conversation_id: str, message_id: str, user_id: str, on: bool) -> Dict[str, Any]:
    item = messages.get_message(conversation_id, message_id)
    if user_id not in (item.get("sender_id"), item.get("receiver_id")):
        raise PermissionDenied("Not a participant in this conversation")

    ts = now_ts()
    key = {"conversation_id": conversation_id, "message_id": message_id}
    ops: List[Dict[str, Any]] = [
        {
            "Update": {
                "TableName": S.ddb_messages,
                "Key": key,
                "UpdateExpression": ("ADD starred :u" if on else "DELETE starred :u"),
                "ConditionExpression": "attribute_exists(message_id)",
                "ExpressionAttributeValues": {":u": {user_id}},
            }
        }
    ]
    if on:
        ops.append(
            {
                "Put": {
                    "TableName": S.ddb_stars,
                    "Item": {
                        "user_id": user_id,
                        "star_key": star_key(conversation_id, message_id),
                        "conversation_id": conversation_id,
                        "message_id": message_id,
                        "starred_at": ts,
                    },
                }
            }
        )
    else:
        ops.append(
            {
                "Delete": {
                    "TableName": S.ddb_stars,
                    "Key": {"user_id": user_id, "star_key": star_key(conversation_id, message_id)},
                }
            }
        )
    try:
        transact_write(ops)
    except (ClientError, BotoCoreError) as exc:
        raise classify_client_error(exc) from exc

    hub.publish(conversation_topic(conversation_id), {"type": "star", "message_id": message_id})
    return {"conversation_id": conversation_id, "message_id": message_id, "starred": on}


def star(conversation_id: str, message_id: str, user_id: str) -> Dict[str, Any]:
    return _set_star(conversation_id, message_id, user_id, True)


def unstar(conversation_id: str, message_id: str, user_id: str) -> Dict[str, Any]:
    return _set_star(conversation_id, message_id, user_id, False)


def list_starred(user_id: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
    """Starred messages, most recently starred first, each with ``starred_at``."""
    try:
        rows = query_all(T.stars, KeyConditionExpression=Key("user_id").eq(user_id))
        rows.sort(key=lambda r: int(r.get("starred_at", 0) or 0), reverse=True)
        if limit:
            rows = rows[: int(limit)]
        found = batch_get(
            S.ddb_messages,
            [{"conversation_id": r["conversation_id"], "message_id": r["message_id"]} for r in rows],
        ) if rows else []
    except (ClientError, BotoCoreError) as exc:
        raise classify_client_error(exc) from exc

    by_key = {star_key(it["conversation_id"], it["message_id"]): it for it in found}
    out = []
    for r in rows:
        it = by_key.get(r["star_key"])
        if it:
            out.append(dict(it, starred_at=int(r.get("starred_at", 0) or 0)))
    return out
