from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional, Tuple

from boto3.dynamodb.conditions import Attr, Key
from botocore.exceptions import BotoCoreError, ClientError

from app.core.dynamo import classify_client_error, count_all, is_conditional_failure, query_all, with_backoff
from app.core.errors import Conflict, InvalidRequest, PermissionDenied
from app.core.tables import T
from app.core.time import now_ts
from app.metrics import record_status_transition
from app.services import conversations, messages
from app.services.hub import conversation_topic, hub, unread_topic
from app.services.messages import DELIVERED, FAILED, READ, SENDING, SENT

STATUS_ORDER = (SENDING, SENT, DELIVERED, READ)
_RANK = {s: i for i, s in enumerate(STATUS_ORDER)}


def can_transition(current: str, target: str) -> bool:
    """Whether ``current -> target`` moves a message forward.

    ``failed`` is terminal and only reachable from ``sending``.
    """
    if current == FAILED:
        return False
    if target == FAILED:
        return current == SENDING
    if current not in _RANK or target not in _RANK:
        return False
    return _RANK[target] > _RANK[current]


def is_noop(current: str, target: str) -> bool:
    """Re-applying an equal or lower status."""
    if FAILED in (current, target):
        return current == target
    return _RANK.get(current, -1) >= _RANK.get(target, len(_RANK))


def predecessors(target: str) -> List[str]:
    return [s for s in STATUS_ORDER if can_transition(s, target)]


def advance_status(
    conversation_id: str,
    message_id: str,
    user_id: str,
    target: str,
    item: Optional[Dict[str, Any]] = None,
) -> Tuple[Dict[str, Any], bool]:
    """Move a message to ``target``; returns ``(item, changed)``."""
    if target not in (DELIVERED, READ):
        raise InvalidRequest(f"Cannot advance to {target}")
    it = item or messages.get_message(conversation_id, message_id)
    if it.get("receiver_id") != user_id:
        raise PermissionDenied("Only the receiver can acknowledge a message")

    current = it.get("status") or SENT
    if is_noop(current, target):
        return it, False
    if current == FAILED:
        raise Conflict("Message failed to send")

    ts = now_ts()
    prior = predecessors(target)
    names = {"#s": "status"}
    values: Dict[str, Any] = {":target": target, ":ts": ts}
    values.update({f":p{i}": s for i, s in enumerate(prior)})
    if target == READ:
        expr = "SET #s = :target, #r = :t, read_at = :ts, delivered_at = if_not_exists(delivered_at, :ts)"
        names["#r"] = "read"
        values[":t"] = True
    else:
        expr = "SET #s = :target, delivered_at = :ts"

    try:
        resp = T.messages.update_item(
            Key={"conversation_id": conversation_id, "message_id": message_id},
            UpdateExpression=expr,
            ConditionExpression="#s IN (" + ", ".join(f":p{i}" for i in range(len(prior))) + ")",
            ExpressionAttributeNames=names,
            ExpressionAttributeValues=values,
            ReturnValues="ALL_NEW",
        )
    except (ClientError, BotoCoreError) as exc:
        if not is_conditional_failure(exc):
            raise classify_client_error(exc) from exc
        fresh = messages.get_message(conversation_id, message_id, consistent=True)
        if is_noop(fresh.get("status") or SENT, target):
            return fresh, False
        raise Conflict("Message status changed concurrently") from exc

    record_status_transition(target)
    hub.publish(conversation_topic(conversation_id), {"type": "status", "message_id": message_id, "status": target})
    if target == READ:
        hub.publish(unread_topic(user_id), {"type": "read", "conversation_id": conversation_id})
    return resp["Attributes"], True


def mark_delivered(conversation_id: str, message_id: str, user_id: str) -> Dict[str, Any]:
    return with_backoff(lambda: advance_status(conversation_id, message_id, user_id, DELIVERED))[0]


def mark_read(conversation_id: str, message_id: str, user_id: str) -> Dict[str, Any]:
    return with_backoff(lambda: advance_status(conversation_id, message_id, user_id, READ))[0]


def pending_incoming(conversation_id: str, user_id: str, target: str) -> List[Dict[str, Any]]:
    """Incoming messages that have not reached ``target`` yet."""
    try:
        return query_all(
            T.messages,
            KeyConditionExpression=Key("conversation_id").eq(conversation_id),
            FilterExpression=(
                Attr("receiver_id").eq(user_id)
                & Attr("status").is_in(predecessors(target))
            ),
        )
    except (ClientError, BotoCoreError) as exc:
        raise classify_client_error(exc) from exc


def advance_many(items: Iterable[Dict[str, Any]], user_id: str, target: str) -> int:
    changed = 0
    for it in items:
        _, did = with_backoff(
            lambda it=it: advance_status(it["conversation_id"], it["message_id"], user_id, target, item=it)
        )
        changed += int(did)
    return changed


def mark_conversation_delivered(conversation_id: str, user_id: str) -> int:
    conversations.require_participant(conversation_id, user_id)
    pending = with_backoff(lambda: pending_incoming(conversation_id, user_id, DELIVERED))
    return advance_many(pending, user_id, DELIVERED)


def mark_conversation_read(conversation_id: str, user_id: str) -> int:
    conversations.require_participant(conversation_id, user_id)
    pending = with_backoff(lambda: pending_incoming(conversation_id, user_id, READ))
    return advance_many(pending, user_id, READ)


def is_unread(item: Dict[str, Any], user_id: str, cutoff: int = 0) -> bool:
    return (
        item.get("receiver_id") == user_id
        and item.get("status") != READ
        and int(item.get("timestamp", 0)) > cutoff
    )


def unread_count(conversation_id: str, user_id: str, convo: Optional[Dict[str, Any]] = None) -> int:
    if convo is None:
        convo = conversations.require_participant(conversation_id, user_id)
    cutoff = conversations.cleared_at(convo, user_id)
    cond = Attr("receiver_id").eq(user_id) & Attr("status").ne(READ)
    if cutoff:
        cond = cond & Attr("timestamp").gt(cutoff)
    try:
        return count_all(
            T.messages,
            KeyConditionExpression=Key("conversation_id").eq(conversation_id),
            FilterExpression=cond,
        )
    except (ClientError, BotoCoreError) as exc:
        raise classify_client_error(exc) from exc


def unread_summary(user_id: str) -> Dict[str, Any]:
    """Per-conversation counts plus the badge total.

    Archived and muted conversations keep their own count but stay out of the total.
    """
    per: Dict[str, int] = {}
    total = 0
    for convo in conversations.user_conversations(user_id):
        n = unread_count(convo["conversation_id"], user_id, convo=convo)
        per[convo["conversation_id"]] = n
        overlay = conversations.overlay_for(convo, user_id)
        if not (overlay["archived"] or overlay["muted"]):
            total += n
    return {"total": total, "conversations": per}


def global_unread_count(user_id: str) -> int:
    return unread_summary(user_id)["total"]
