from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from .aws import ddb
from .settings import S

@dataclass(frozen=True)
class Tables:
    conversations: Any
    participants: Any
    messages: Any
    message_edits: Any
    stars: Any
    presence: Any
    users: Any
    blocks: Any
    reports: Any

T = Tables(
    conversations=ddb.Table(S.ddb_conversations),
    participants=ddb.Table(S.ddb_participants),
    messages=ddb.Table(S.ddb_messages),
    message_edits=ddb.Table(S.ddb_message_edits),
    stars=ddb.Table(S.ddb_stars),
    presence=ddb.Table(S.ddb_presence),
    users=ddb.Table(S.ddb_users),
    blocks=ddb.Table(S.ddb_blocks),
    reports=ddb.Table(S.ddb_reports),
)
