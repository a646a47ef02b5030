from __future__ import annotations

from typing import Any, Dict, List, Optional

from botocore.exceptions import BotoCoreError, ClientError

from app.core.dynamo import batch_get, classify_client_error, with_backoff
from app.core.errors import InvalidRequest
from app.core.settings import S
from app.core.tables import T
from app.core.time import now_ts
from app.metrics import record_heartbeat
from app.services.hub import hub, presence_topic

ONLINE = "online"
AWAY = "away"
OFFLINE = "offline"
PRESENCE_STATES = (ONLINE, AWAY, OFFLINE)

MAX_PRESENCE_IDS = 200


def resolve_status(record: Optional[Dict[str, Any]], now: Optional[int] = None) -> Dict[str, Any]:
    """Effective presence for a stored record.

    Stale records resolve to offline whatever they claim, so a client that
    vanished without a disconnect still goes offline within the timeout.
    """
    if not record:
        return {"status": OFFLINE, "last_seen_at": 0}
    ts = now_ts() if now is None else now
    last_seen = int(record.get("last_seen_at", 0) or 0)
    status = record.get("status") or OFFLINE
    if status not in PRESENCE_STATES:
        status = OFFLINE
    if not last_seen or ts - last_seen > S.presence_timeout_seconds:
        status = OFFLINE
    return {"status": status, "last_seen_at": last_seen}


def _write(user_id: str, status: str, device: Optional[str]) -> Dict[str, Any]:
    ts = now_ts()
    try:
        resp = T.presence.update_item(
            Key={"user_id": user_id},
            UpdateExpression="SET #s = :s, last_seen_at = :ts, device = :d, #ttl = :ttl",
            ExpressionAttributeNames={"#s": "status", "#ttl": "ttl"},
            ExpressionAttributeValues={
                ":s": status,
                ":ts": ts,
                ":d": device or "",
                ":ttl": ts + S.presence_ttl_seconds,
            },
            ReturnValues="ALL_OLD",
        )
    except (ClientError, BotoCoreError) as exc:
        raise classify_client_error(exc) from exc

    before = resolve_status(resp.get("Attributes"), now=ts)
    after = {"status": status, "last_seen_at": ts}
    if before["status"] != status:
        hub.publish(presence_topic(user_id), {"type": "presence", "user_id": user_id, **after})
    return {"user_id": user_id, **after}


def heartbeat(user_id: str, status: str = ONLINE, device: Optional[str] = None) -> Dict[str, Any]:
    if status not in (ONLINE, AWAY):
        raise InvalidRequest("Heartbeat status must be online or away")
    out = with_backoff(lambda: _write(user_id, status, device))
    record_heartbeat()
    return out


def disconnect(user_id: str, device: Optional[str] = None) -> Dict[str, Any]:
    return with_backoff(lambda: _write(user_id, OFFLINE, device))


def get_presence(user_id: str) -> Dict[str, Any]:
    try:
        it = T.presence.get_item(Key={"user_id": user_id}).get("Item")
    except (ClientError, BotoCoreError) as exc:
        raise classify_client_error(exc) from exc
    return {"user_id": user_id, **resolve_status(it)}


def get_presence_many(user_ids: List[str]) -> List[Dict[str, Any]]:
    ids = list(dict.fromkeys(u for u in user_ids if u))
    if len(ids) > MAX_PRESENCE_IDS:
        raise InvalidRequest(f"Too many user ids (max {MAX_PRESENCE_IDS})")
    try:
        items = batch_get(S.ddb_presence, [{"user_id": uid} for uid in ids]) if ids else []
    except (ClientError, BotoCoreError) as exc:
        raise classify_client_error(exc) from exc
    found = {it["user_id"]: it for it in items}

    now = now_ts()
    return [{"user_id": uid, **resolve_status(found.get(uid), now=now)} for uid in ids]
