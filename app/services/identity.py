from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from botocore.exceptions import ClientError

from app.core.tables import T


@dataclass(frozen=True)
class Identity:
    user_id: str
    display_name: str
    photo_url: Optional[str] = None


def get_identity(user_id: str) -> Identity:
    """Read-only profile projection used to stamp sender metadata.

    Profiles are owned elsewhere; a missing or unreadable profile falls back to
    the bare user id so messaging keeps working.
    """
    try:
        it = T.users.get_item(Key={"user_id": user_id}).get("Item") or {}
    except ClientError:
        it = {}
    return Identity(
        user_id=user_id,
        display_name=(it.get("display_name") or "").strip() or user_id,
        photo_url=it.get("photo_url") or None,
    )
