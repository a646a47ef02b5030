from __future__ import annotations

import base64
import json
from typing import Any, Dict, Optional

from app.core.errors import InvalidRequest


def encode_cursor(last_evaluated_key: Optional[Dict[str, Any]]) -> Optional[str]:
    if not last_evaluated_key:
        return None
    raw = json.dumps(last_evaluated_key, separators=(",", ":"), sort_keys=True).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("utf-8").rstrip("=")


def decode_cursor(cursor: Optional[str], *, conversation_id: str) -> Optional[Dict[str, Any]]:
    """Decode a message page cursor; it must belong to ``conversation_id``."""
    if not cursor:
        return None
    s = cursor.strip()
    pad = "=" * ((4 - (len(s) % 4)) % 4)
    try:
        obj = json.loads(base64.urlsafe_b64decode((s + pad).encode("utf-8")).decode("utf-8"))
    except (ValueError, UnicodeDecodeError) as exc:
        raise InvalidRequest("Malformed cursor") from exc
    if not isinstance(obj, dict) or obj.get("conversation_id") != conversation_id or not obj.get("message_id"):
        raise InvalidRequest("Cursor does not belong to this conversation")
    return {"conversation_id": obj["conversation_id"], "message_id": str(obj["message_id"])}
