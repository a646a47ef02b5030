from __future__ import annotations

from typing import Any, Dict, Optional

from botocore.exceptions import BotoCoreError, ClientError

from app.core.dynamo import classify_client_error
from app.core.errors import InvalidRequest, PermissionDenied
from app.core.settings import S
from app.core.tables import T
from app.core.time import new_id, now_ts
from app.services import conversations

REPORT_PENDING = "pending"


def _pair(blocker_id: str, blocked_id: str) -> Dict[str, str]:
    blocker_id = (blocker_id or "").strip()
    blocked_id = (blocked_id or "").strip()
    if not blocker_id or not blocked_id:
        raise InvalidRequest("Both users are required")
    if blocker_id == blocked_id:
        raise InvalidRequest("Cannot block yourself")
    return {"blocker_id": blocker_id, "blocked_id": blocked_id}


def block_user(blocker_id: str, blocked_id: str) -> Dict[str, Any]:
    """Record that ``blocker_id`` no longer accepts messages from ``blocked_id``.

    Blocking twice keeps the first ``blocked_at``.
    """
    key = _pair(blocker_id, blocked_id)
    try:
        resp = T.blocks.update_item(
            Key=key,
            UpdateExpression="SET blocked_at = if_not_exists(blocked_at, :ts)",
            ExpressionAttributeValues={":ts": now_ts()},
            ReturnValues="ALL_NEW",
        )
    except (ClientError, BotoCoreError) as exc:
        raise classify_client_error(exc) from exc
    return dict(resp["Attributes"], blocked=True)


def unblock_user(blocker_id: str, blocked_id: str) -> Dict[str, Any]:
    key = _pair(blocker_id, blocked_id)
    try:
        T.blocks.delete_item(Key=key)
    except (ClientError, BotoCoreError) as exc:
        raise classify_client_error(exc) from exc
    return dict(key, blocked=False)


def is_user_blocked(blocker_id: str, blocked_id: str) -> bool:
    if not blocker_id or not blocked_id or blocker_id == blocked_id:
        return False
    try:
        it = T.blocks.get_item(Key={"blocker_id": blocker_id, "blocked_id": blocked_id}).get("Item")
    except (ClientError, BotoCoreError) as exc:
        raise classify_client_error(exc) from exc
    return bool(it)


def ensure_can_message(sender_id: str, receiver_id: str) -> None:
    if is_user_blocked(receiver_id, sender_id):
        raise PermissionDenied("You cannot message this user")


def report_conversation(
    conversation_id: str,
    reporter_id: str,
    reason: str,
    details: Optional[str] = None,
) -> Dict[str, Any]:
    """File a pending report against the other participant.

    Reports are append-only rows for a moderation queue; nothing in the
    conversation changes.
    """
    reason = (reason or "").strip()
    if not reason:
        raise InvalidRequest("A reason is required")
    if len(reason) > S.max_report_reason_length:
        raise InvalidRequest("Reason is too long")
    details = (details or "").strip()
    if len(details) > S.max_report_details_length:
        raise InvalidRequest("Details are too long")

    convo = conversations.require_participant(conversation_id, reporter_id)
    item = {
        "report_id": new_id(),
        "conversation_id": conversation_id,
        "reporter_id": reporter_id,
        "reported_user_id": conversations.peer_of(convo, reporter_id),
        "reason": reason,
        "details": details,
        "status": REPORT_PENDING,
        "created_at": now_ts(),
    }
    try:
        T.reports.put_item(Item=item, ConditionExpression="attribute_not_exists(report_id)")
    except (ClientError, BotoCoreError) as exc:
        raise classify_client_error(exc) from exc
    return item
