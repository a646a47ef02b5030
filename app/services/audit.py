from __future__ import annotations

import json
from typing import Any, Dict

from app.core.settings import S
from app.core.time import now_ts


def client_ip_from_request(req) -> str:
    xff = req.headers.get("x-forwarded-for")
    if xff:
        return xff.split(",")[0].strip()
    client = getattr(req, "client", None)
    return client.host if client else "0.0.0.0"


def _safe(v: Any) -> Any:
    if v is None or isinstance(v, (int, float, bool)):
        return v
    return str(v)[:512]


def audit_event(event: str, user_id: str, request=None, **fields: Any) -> None:
    """Emit one JSON audit line on stdout. Never raises."""
    if not S.audit_log_enabled:
        return
    payload: Dict[str, Any] = {"event": event, "user_id": user_id, "ts": now_ts()}
    payload.update({k: _safe(v) for k, v in fields.items() if v is not None})
    if request is not None:
        try:
            payload["ip"] = client_ip_from_request(request)
            payload["user_agent"] = request.headers.get("user-agent", "")[:256]
        except Exception:
            pass
    try:
        print(json.dumps(payload, separators=(",", ":"), sort_keys=True), flush=True)
    except Exception:
        pass
