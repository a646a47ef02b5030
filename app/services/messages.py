from __future__ import annotations

from typing import Any, Dict, List, Optional

from boto3.dynamodb.conditions import Key
from botocore.exceptions import BotoCoreError, ClientError

from app.core.cursor import decode_cursor, encode_cursor
from app.core.dynamo import (
    cancellation_codes,
    classify_client_error,
    is_conditional_failure,
    transact_write,
)
from app.core.errors import (
    Conflict,
    EditWindowExpired,
    InvalidRequest,
    NoChange,
    NotFound,
    PermissionDenied,
    Transient,
)
from app.core.settings import S
from app.core.tables import T
from app.core.time import new_id, now_ts
from app.metrics import record_edit, record_edit_history_failure, record_message_sent, record_send_failure
from app.services import conversations, moderation
from app.services.hub import conversation_topic, hub, unread_topic
from app.services.identity import Identity, get_identity
from app.services.notifications import emit_new_message

DELETED_PLACEHOLDER = "This message was deleted"

SENDING = "sending"
SENT = "sent"
DELIVERED = "delivered"
READ = "read"
FAILED = "failed"

MESSAGE_TYPES = ("text", "image", "document", "voice", "system")
MEDIA_TYPES = ("image", "document", "voice")
MEDIA_FIELDS = ("media_url", "media_type", "media_size", "thumbnail_url", "duration", "filename")
LINK_PREVIEW_FIELDS = ("url", "title", "description", "image", "site_name", "favicon")


def _prune(d: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in d.items() if v is not None}


def message_id_for(seq: int) -> str:
    return f"m_{seq:012d}_{new_id()[:8]}"


def render_content(item: Dict[str, Any]) -> str:
    if item.get("deleted"):
        return DELETED_PLACEHOLDER
    return item.get("content") or ""


def preview_text(item: Dict[str, Any]) -> str:
    text = render_content(item)
    if not text and item.get("message_type") in MEDIA_TYPES:
        return f"[{item['message_type']}]"
    return text


def preview_snapshot(item: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "message_id": item["message_id"],
        "sender_id": item["sender_id"],
        "content": preview_text(item),
        "message_type": item.get("message_type", "text"),
        "timestamp": item["timestamp"],
        "seq": item["seq"],
    }


def media_from_attachment(attachment: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Map a client upload descriptor onto the stored media fields."""
    if not attachment:
        return {}
    url = (attachment.get("url") or "").strip()
    if not url:
        raise InvalidRequest("Attachment url is required")
    return _prune(
        {
            "media_url": url,
            "media_type": attachment.get("type"),
            "media_size": attachment.get("size"),
            "thumbnail_url": attachment.get("thumbnail_url"),
            "duration": attachment.get("duration"),
            "filename": attachment.get("filename"),
        }
    )


def clean_link_preview(preview: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not preview:
        return None
    out = _prune({k: preview.get(k) for k in LINK_PREVIEW_FIELDS})
    if not (out.get("url") or "").strip():
        raise InvalidRequest("Link preview url is required")
    return out


def validate_content(content: Optional[str], message_type: str, media: Dict[str, Any]) -> str:
    if message_type not in MESSAGE_TYPES or message_type == "system":
        raise InvalidRequest(f"Unsupported message type: {message_type}")
    text = (content or "").strip()
    if message_type == "text" and not text:
        raise InvalidRequest("Message content is required")
    if message_type in MEDIA_TYPES and not media:
        raise InvalidRequest(f"{message_type} messages need an attachment")
    if len(text) > S.max_message_length:
        raise InvalidRequest(f"Message too long (max {S.max_message_length} characters)")
    return text


def build_message_item(
    conversation_id: str,
    sender: Identity,
    receiver_id: str,
    content: str,
    message_type: str,
    *,
    seq: int,
    ts: int,
    media: Optional[Dict[str, Any]] = None,
    link_preview: Optional[Dict[str, Any]] = None,
    reply_to: Optional[str] = None,
    client_id: Optional[str] = None,
    extra: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    item = {
        "conversation_id": conversation_id,
        "message_id": message_id_for(seq),
        "seq": seq,
        "sender_id": sender.user_id,
        "receiver_id": receiver_id,
        "sender_name": sender.display_name,
        "sender_photo_url": sender.photo_url,
        "content": content,
        "message_type": message_type,
        "timestamp": ts,
        "status": SENDING,
        "read": False,
        "edited": False,
        "deleted": False,
        "forwarded": False,
        "reactions_by_user": {},
        "link_preview": link_preview,
        "reply_to": reply_to,
        "client_id": client_id,
    }
    item.update(media or {})
    item.update(extra or {})
    return _prune(item)


def commit_message(convo: Dict[str, Any], item: Dict[str, Any]) -> Dict[str, Any]:
    """Write the message and move the conversation preview in one transaction.

    The commit is the acknowledgment: the stored and returned status is ``sent``.
    """
    cid = convo["conversation_id"]
    stored = dict(item, status=SENT)
    try:
        transact_write(
            [
                {
                    "Put": {
                        "TableName": S.ddb_messages,
                        "Item": stored,
                        "ConditionExpression": "attribute_not_exists(message_id)",
                    }
                },
                conversations.update_last_message_item(cid, preview_snapshot(stored)),
            ]
        )
    except (ClientError, BotoCoreError) as exc:
        record_send_failure()
        raise Transient("Message could not be sent") from exc

    record_message_sent(stored["message_type"])
    receiver = stored["receiver_id"]
    hub.publish(conversation_topic(cid), {"type": "message", "message_id": stored["message_id"]})
    hub.publish(unread_topic(receiver), {"type": "message", "conversation_id": cid})
    emit_new_message(
        receiver,
        stored.get("sender_name") or stored["sender_id"],
        cid,
        stored["message_id"],
        muted=conversations.is_muted_for(convo, receiver),
    )
    return stored


def send(
    conversation_id: str,
    sender_id: str,
    receiver_id: str,
    content: Optional[str],
    message_type: str = "text",
    attachment: Optional[Dict[str, Any]] = None,
    link_preview: Optional[Dict[str, Any]] = None,
    reply_to: Optional[str] = None,
    sender_identity: Optional[Identity] = None,
    client_id: Optional[str] = None,
) -> Dict[str, Any]:
    convo = conversations.require_participant(conversation_id, sender_id)
    if conversations.peer_of(convo, sender_id) != receiver_id:
        raise InvalidRequest("Receiver is not the other participant")
    moderation.ensure_can_message(sender_id, receiver_id)
    media = media_from_attachment(attachment)
    text = validate_content(content, message_type, media)
    preview = clean_link_preview(link_preview)
    if reply_to:
        get_message(conversation_id, reply_to)

    sender = sender_identity or get_identity(sender_id)
    try:
        seq, ts = conversations.allocate_seq(conversation_id)
    except (ClientError, BotoCoreError) as exc:
        record_send_failure()
        raise classify_client_error(exc) from exc

    item = build_message_item(
        conversation_id,
        sender,
        receiver_id,
        text,
        message_type,
        seq=seq,
        ts=ts,
        media=media,
        link_preview=preview,
        reply_to=reply_to,
        client_id=client_id,
    )
    return commit_message(convo, item)


def get_message(conversation_id: str, message_id: str, consistent: bool = False) -> Dict[str, Any]:
    try:
        it = T.messages.get_item(
            Key={"conversation_id": conversation_id, "message_id": message_id},
            ConsistentRead=consistent,
        ).get("Item")
    except (ClientError, BotoCoreError) as exc:
        raise classify_client_error(exc) from exc
    if not it:
        raise NotFound("Message not found")
    return it


def sort_key(item: Dict[str, Any]) -> int:
    return int(item.get("seq", 0))


def list_messages(
    conversation_id: str,
    viewer: str,
    limit: Optional[int] = None,
    before: Optional[str] = None,
) -> Dict[str, Any]:
    """A page of messages, oldest first, walking backwards from ``before``."""
    convo = conversations.require_participant(conversation_id, viewer)
    cutoff = conversations.cleared_at(convo, viewer)
    kwargs: Dict[str, Any] = dict(
        KeyConditionExpression=Key("conversation_id").eq(conversation_id),
        ScanIndexForward=False,
        Limit=max(1, min(int(limit or S.message_page_size), 200)),
    )
    start = decode_cursor(before, conversation_id=conversation_id)
    if start:
        kwargs["ExclusiveStartKey"] = start
    try:
        resp = T.messages.query(**kwargs)
    except (ClientError, BotoCoreError) as exc:
        raise classify_client_error(exc) from exc

    items = [it for it in resp.get("Items", []) if int(it.get("timestamp", 0)) > cutoff]
    items.sort(key=sort_key)
    next_before = encode_cursor(resp.get("LastEvaluatedKey"))
    # nothing older than the cutoff is visible, so stop paging there
    if cutoff and len(items) < len(resp.get("Items", [])):
        next_before = None
    return {"items": items, "next_before": next_before}


def _message_update(conversation_id: str, message_id: str, **expr: Any) -> Dict[str, Any]:
    return dict(TableName=S.ddb_messages, Key={"conversation_id": conversation_id, "message_id": message_id}, **expr)


def _message_condition_failed(exc: Exception) -> bool:
    return cancellation_codes(exc)[:1] == ["ConditionalCheckFailed"]


def _write_with_preview(convo: Dict[str, Any], message_id: str, update: Dict[str, Any], preview: str) -> None:
    """Apply a message update, rewriting the preview too while it shows this message."""
    ops: List[Dict[str, Any]] = [{"Update": update}]
    if (convo.get("last_message") or {}).get("message_id") == message_id:
        ops.append(conversations.replace_preview_item(convo["conversation_id"], message_id, preview))
    try:
        transact_write(ops)
    except ClientError as exc:
        # the preview moved to a newer message meanwhile
        if len(ops) == 2 and cancellation_codes(exc) == ["None", "ConditionalCheckFailed"]:
            transact_write(ops[:1])
            return
        raise


def check_edit_window(item: Dict[str, Any], now: int) -> None:
    if now - int(item.get("timestamp", 0)) > S.edit_window_seconds:
        raise EditWindowExpired()


def edit(
    conversation_id: str,
    message_id: str,
    editor: str,
    new_content: Optional[str],
    now: Optional[int] = None,
) -> Dict[str, Any]:
    item = get_message(conversation_id, message_id)
    if item.get("deleted"):
        raise NotFound("Message was deleted")
    if item.get("sender_id") != editor:
        raise PermissionDenied("Only the sender can edit this message")
    if item.get("message_type", "text") != "text":
        raise InvalidRequest("Only text messages can be edited")

    ts = now_ts() if now is None else now
    try:
        check_edit_window(item, ts)
    except EditWindowExpired:
        record_edit("expired")
        raise
    text = (new_content or "").strip()
    if not text:
        raise InvalidRequest("Message content is required")
    if len(text) > S.max_message_length:
        raise InvalidRequest(f"Message too long (max {S.max_message_length} characters)")
    old = item.get("content") or ""
    if text == old.strip():
        record_edit("no_change")
        raise NoChange()

    convo = conversations.get_conversation(conversation_id)
    update = _message_update(
        conversation_id,
        message_id,
        UpdateExpression="SET #c = :new, edited = :t, edited_at = :ts",
        ConditionExpression="sender_id = :uid AND #c = :old AND (attribute_not_exists(deleted) OR deleted = :f)",
        ExpressionAttributeNames={"#c": "content"},
        ExpressionAttributeValues={":new": text, ":old": old, ":t": True, ":f": False, ":ts": ts, ":uid": editor},
    )
    try:
        _write_with_preview(convo, message_id, update, text)
    except (ClientError, BotoCoreError) as exc:
        if not _message_condition_failed(exc):
            raise classify_client_error(exc) from exc
        fresh = get_message(conversation_id, message_id, consistent=True)
        if fresh.get("deleted"):
            raise NotFound("Message was deleted") from exc
        record_edit("conflict")
        raise Conflict("Message was edited concurrently") from exc

    try:
        T.message_edits.put_item(
            Item={
                "message_key": f"{conversation_id}#{message_id}",
                "edited_at": ts,
                "editor_id": editor,
                "old_content": old,
                "new_content": text,
                "ttl": ts + S.edits_ttl_seconds,
            }
        )
    except (ClientError, BotoCoreError):
        # the edit itself is committed; history is best effort
        record_edit_history_failure()

    record_edit("success")
    hub.publish(conversation_topic(conversation_id), {"type": "edit", "message_id": message_id})
    return dict(item, content=text, edited=True, edited_at=ts)


def edit_history(conversation_id: str, message_id: str, viewer: str) -> List[Dict[str, Any]]:
    conversations.require_participant(conversation_id, viewer)
    try:
        resp = T.message_edits.query(
            KeyConditionExpression=Key("message_key").eq(f"{conversation_id}#{message_id}"),
            ScanIndexForward=False,
        )
    except (ClientError, BotoCoreError) as exc:
        raise classify_client_error(exc) from exc
    return resp.get("Items", [])


def soft_delete(conversation_id: str, message_id: str, user_id: str) -> Dict[str, Any]:
    item = get_message(conversation_id, message_id)
    if item.get("sender_id") != user_id:
        raise PermissionDenied("Only the sender can delete this message")
    if item.get("deleted"):
        return item

    convo = conversations.get_conversation(conversation_id)
    ts = now_ts()
    update = _message_update(
        conversation_id,
        message_id,
        UpdateExpression="SET deleted = :t, deleted_at = :ts",
        ConditionExpression="sender_id = :uid",
        ExpressionAttributeValues={":t": True, ":ts": ts, ":uid": user_id},
    )
    try:
        _write_with_preview(convo, message_id, update, DELETED_PLACEHOLDER)
    except (ClientError, BotoCoreError) as exc:
        raise classify_client_error(exc) from exc

    hub.publish(conversation_topic(conversation_id), {"type": "delete", "message_id": message_id})
    hub.publish(unread_topic(item["receiver_id"]), {"type": "delete", "conversation_id": conversation_id})
    return dict(item, deleted=True, deleted_at=ts)


def attach_link_preview(
    conversation_id: str,
    message_id: str,
    user_id: str,
    preview: Dict[str, Any],
) -> Dict[str, Any]:
    item = get_message(conversation_id, message_id)
    if item.get("sender_id") != user_id:
        raise PermissionDenied("Only the sender can attach a link preview")
    if item.get("deleted"):
        raise NotFound("Message was deleted")
    lp = clean_link_preview(preview)
    try:
        resp = T.messages.update_item(
            Key={"conversation_id": conversation_id, "message_id": message_id},
            UpdateExpression="SET link_preview = :lp",
            ConditionExpression="sender_id = :uid AND (attribute_not_exists(deleted) OR deleted = :f)",
            ExpressionAttributeValues={":lp": lp, ":uid": user_id, ":f": False},
            ReturnValues="ALL_NEW",
        )
    except (ClientError, BotoCoreError) as exc:
        if is_conditional_failure(exc):
            raise NotFound("Message was deleted") from exc
        raise classify_client_error(exc) from exc

    hub.publish(conversation_topic(conversation_id), {"type": "link_preview", "message_id": message_id})
    return resp["Attributes"]
