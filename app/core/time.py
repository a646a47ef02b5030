from __future__ import annotations

import time
import uuid


def now_ts() -> int:
    return int(time.time())


def new_id() -> str:
    return uuid.uuid4().hex
