from __future__ import annotations

import hashlib
from typing import Any, Dict, List, Optional, Tuple

from boto3.dynamodb.conditions import Key
from botocore.exceptions import BotoCoreError, ClientError

from app.core.dynamo import (
    batch_get,
    classify_client_error,
    is_conditional_failure,
    is_transaction_condition_failure,
    query_all,
    transact_write,
    with_backoff,
)
from app.core.errors import InvalidRequest, NotFound, PermissionDenied, Transient
from app.core.settings import S
from app.core.tables import T
from app.core.time import now_ts
from app.services.hub import hub, unread_topic

# overlay kind -> string-set attribute on the conversation item
SET_OVERLAYS = {"pin": "pinned_by", "archive": "archived_by", "mute": "muted_by"}
OVERLAY_KINDS = tuple(SET_OVERLAYS) + ("clear",)


def pair_key(a: str, b: str) -> str:
    a = (a or "").strip()
    b = (b or "").strip()
    if not a or not b:
        raise InvalidRequest("Both participants are required")
    if a == b:
        raise InvalidRequest("Cannot start a conversation with yourself")
    lo, hi = sorted((a, b))
    return f"{lo}#{hi}"


def conversation_id_for(a: str, b: str) -> str:
    return "c_" + hashlib.sha256(pair_key(a, b).encode("utf-8")).hexdigest()[:32]


def _read(conversation_id: str, consistent: bool = False) -> Optional[Dict[str, Any]]:
    try:
        return T.conversations.get_item(
            Key={"conversation_id": conversation_id},
            ConsistentRead=consistent,
        ).get("Item")
    except (ClientError, BotoCoreError) as exc:
        raise classify_client_error(exc) from exc


def _creation_items(conversation_id: str, a: str, b: str, ts: int) -> List[Dict[str, Any]]:
    lo, hi = sorted((a, b))
    convo = {
        "conversation_id": conversation_id,
        "pair_key": f"{lo}#{hi}",
        "participants": [lo, hi],
        "created_at": ts,
        "updated_at": ts,
        "message_seq": 0,
        "cleared_by": {},
    }
    items: List[Dict[str, Any]] = [
        {
            "Put": {
                "TableName": S.ddb_conversations,
                "Item": convo,
                "ConditionExpression": "attribute_not_exists(conversation_id)",
            }
        }
    ]
    for uid, peer in ((lo, hi), (hi, lo)):
        items.append(
            {
                "Put": {
                    "TableName": S.ddb_participants,
                    "Item": {
                        "user_id": uid,
                        "conversation_id": conversation_id,
                        "peer_id": peer,
                        "joined_at": ts,
                    },
                }
            }
        )
    return items


def find_or_create(a: str, b: str) -> Tuple[str, bool]:
    """Return ``(conversation_id, created)`` for the unordered pair.

    Concurrent callers for the same pair converge on one conversation: the
    create is conditional and the loser re-reads the winner's item.
    """
    conversation_id = conversation_id_for(a, b)

    def attempt() -> Tuple[str, bool]:
        if _read(conversation_id, consistent=True):
            return conversation_id, False
        try:
            transact_write(_creation_items(conversation_id, a.strip(), b.strip(), now_ts()))
        except (ClientError, BotoCoreError) as exc:
            if not is_transaction_condition_failure(exc):
                raise classify_client_error(exc) from exc
            if _read(conversation_id, consistent=True) is None:
                raise Transient("conversation create raced; retrying") from exc
            return conversation_id, False
        return conversation_id, True

    return with_backoff(attempt)


def get_conversation(conversation_id: str, consistent: bool = False) -> Dict[str, Any]:
    convo = _read(conversation_id, consistent=consistent)
    if not convo:
        raise NotFound("Conversation not found")
    return convo


def require_participant(conversation_id: str, user_id: str) -> Dict[str, Any]:
    convo = get_conversation(conversation_id)
    if user_id not in (convo.get("participants") or []):
        raise PermissionDenied("Not a participant in this conversation")
    return convo


def peer_of(convo: Dict[str, Any], user_id: str) -> str:
    others = [p for p in convo.get("participants") or [] if p != user_id]
    if len(others) != 1:
        raise PermissionDenied("Not a participant in this conversation")
    return others[0]


def cleared_at(convo: Dict[str, Any], user_id: str) -> int:
    return int((convo.get("cleared_by") or {}).get(user_id, 0) or 0)


def overlay_for(convo: Dict[str, Any], user_id: str) -> Dict[str, Any]:
    out: Dict[str, Any] = {
        kind: user_id in (convo.get(attr) or set())
        for kind, attr in (("pinned", "pinned_by"), ("archived", "archived_by"), ("muted", "muted_by"))
    }
    out["cleared_at"] = cleared_at(convo, user_id) or None
    return out


def is_muted_for(convo: Dict[str, Any], user_id: str) -> bool:
    return user_id in (convo.get("muted_by") or set())


def set_overlay(conversation_id: str, user_id: str, kind: str, value: bool = True) -> Dict[str, Any]:
    """Set or clear a per-user overlay; the peer's view is never touched."""
    if kind not in OVERLAY_KINDS:
        raise InvalidRequest(f"Unknown overlay: {kind}")
    require_participant(conversation_id, user_id)

    names: Dict[str, str] = {}
    values: Dict[str, Any] = {}
    if kind == "clear":
        names["#u"] = user_id
        if value:
            expr = "SET cleared_by.#u = :ts"
            values[":ts"] = now_ts()
        else:
            expr = "REMOVE cleared_by.#u"
    else:
        names["#f"] = SET_OVERLAYS[kind]
        expr = ("ADD #f :u" if value else "DELETE #f :u")
        values[":u"] = {user_id}

    kwargs: Dict[str, Any] = dict(
        Key={"conversation_id": conversation_id},
        UpdateExpression=expr,
        ConditionExpression="attribute_exists(conversation_id)",
        ExpressionAttributeNames=names,
        ReturnValues="ALL_NEW",
    )
    if values:
        kwargs["ExpressionAttributeValues"] = values

    def apply() -> Dict[str, Any]:
        try:
            return T.conversations.update_item(**kwargs)["Attributes"]
        except (ClientError, BotoCoreError) as exc:
            raise classify_client_error(exc) from exc

    convo = with_backoff(apply)
    hub.publish(unread_topic(user_id), {"type": "overlay", "conversation_id": conversation_id, "kind": kind})
    return overlay_for(convo, user_id)


def allocate_seq(conversation_id: str, now: Optional[int] = None) -> Tuple[int, int]:
    """Next `(seq, timestamp)` for a message in the conversation.

    Both come from one conditional update, so timestamps never decrease in
    `seq` order: a send whose clock is behind the last allocation takes the
    stored timestamp instead. Ordering by `seq` is then ordering by
    timestamp with store-order tie breaks.
    """
    ts = now_ts() if now is None else now
    for _ in range(S.retry_attempts):
        try:
            resp = T.conversations.update_item(
                Key={"conversation_id": conversation_id},
                UpdateExpression="ADD message_seq :one SET seq_ts = :ts",
                ConditionExpression="attribute_exists(conversation_id) AND (attribute_not_exists(seq_ts) OR seq_ts <= :ts)",
                ExpressionAttributeValues={":one": 1, ":ts": ts},
                ReturnValues="UPDATED_NEW",
            )
            return int(resp["Attributes"]["message_seq"]), ts
        except ClientError as exc:
            if not is_conditional_failure(exc):
                raise
            it = T.conversations.get_item(Key={"conversation_id": conversation_id}, ConsistentRead=True).get("Item")
            if not it:
                raise NotFound("Conversation not found") from exc
            ts = max(ts, int(it.get("seq_ts", 0) or 0))
    raise Transient("Sequence allocation contended")


def update_last_message_item(conversation_id: str, snapshot: Dict[str, Any]) -> Dict[str, Any]:
    """Transaction entry that moves the conversation preview to ``snapshot``."""
    return {
        "Update": {
            "TableName": S.ddb_conversations,
            "Key": {"conversation_id": conversation_id},
            "UpdateExpression": "SET last_message = :lm, updated_at = :ts",
            "ConditionExpression": "attribute_exists(conversation_id)",
            "ExpressionAttributeValues": {":lm": snapshot, ":ts": snapshot["timestamp"]},
        }
    }


def replace_preview_item(conversation_id: str, message_id: str, content: str) -> Dict[str, Any]:
    """Transaction entry rewriting the preview text while it still points at ``message_id``."""
    return {
        "Update": {
            "TableName": S.ddb_conversations,
            "Key": {"conversation_id": conversation_id},
            "UpdateExpression": "SET last_message.#c = :c",
            "ConditionExpression": "last_message.message_id = :mid",
            "ExpressionAttributeNames": {"#c": "content"},
            "ExpressionAttributeValues": {":c": content, ":mid": message_id},
        }
    }


def user_conversations(user_id: str) -> List[Dict[str, Any]]:
    try:
        rows = query_all(T.participants, KeyConditionExpression=Key("user_id").eq(user_id))
        ids = [r["conversation_id"] for r in rows]
        return batch_get(S.ddb_conversations, [{"conversation_id": cid} for cid in ids]) if ids else []
    except (ClientError, BotoCoreError) as exc:
        raise classify_client_error(exc) from exc


def conversation_view(convo: Dict[str, Any], user_id: str) -> Dict[str, Any]:
    overlay = overlay_for(convo, user_id)
    last = convo.get("last_message")
    # a cleared history hides the preview too
    if last and overlay["cleared_at"] and int(last.get("timestamp", 0)) <= overlay["cleared_at"]:
        last = None
    return {
        "conversation_id": convo["conversation_id"],
        "participants": list(convo.get("participants") or []),
        "peer_id": peer_of(convo, user_id),
        "created_at": int(convo.get("created_at", 0) or 0),
        "updated_at": int(convo.get("updated_at", 0) or 0),
        "last_message": dict(last, timestamp=int(last.get("timestamp", 0)), seq=int(last.get("seq", 0))) if last else None,
        **overlay,
    }


def list_conversations(
    user_id: str,
    include_archived: bool = False,
    convos: Optional[List[Dict[str, Any]]] = None,
) -> List[Dict[str, Any]]:
    if convos is None:
        convos = user_conversations(user_id)
    views = [conversation_view(c, user_id) for c in convos]
    if not include_archived:
        views = [v for v in views if not v["archived"]]
    views.sort(key=lambda v: v["updated_at"], reverse=True)
    views.sort(key=lambda v: not v["pinned"])
    return views
