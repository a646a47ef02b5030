from __future__ import annotations

import json
from typing import Any, Dict

from app.core.aws import sns_client
from app.core.settings import S
from app.services.audit import audit_event


def new_message_event(recipient_id: str, sender_name: str, conversation_id: str, message_id: str) -> Dict[str, Any]:
    return {
        "type": "new_message",
        "recipient_id": recipient_id,
        "sender_name": sender_name,
        "conversation_id": conversation_id,
        "message_id": message_id,
    }


def emit_new_message(
    recipient_id: str,
    sender_name: str,
    conversation_id: str,
    message_id: str,
    *,
    muted: bool = False,
) -> bool:
    """Hand a new-message event to the out-of-band notification collaborator.

    Advisory and at-least-once: the collaborator dedupes on ``message_id`` if it
    cares. Returns whether the event was handed off; failures are swallowed.
    """
    if muted:
        return False
    event = new_message_event(recipient_id, sender_name, conversation_id, message_id)
    if not S.notifications_topic_arn:
        audit_event("messaging_notification_queued", recipient_id, **{k: v for k, v in event.items() if k != "recipient_id"})
        return True
    try:
        sns_client().publish(
            TopicArn=S.notifications_topic_arn,
            Message=json.dumps(event, separators=(",", ":")),
            MessageAttributes={"type": {"DataType": "String", "StringValue": "new_message"}},
        )
        return True
    except Exception:
        return False
