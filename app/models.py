from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


class StartConversationIn(BaseModel):
    peer_id: str = Field(min_length=1)


class StartConversationOut(BaseModel):
    conversation_id: str
    created: bool


class OverlayIn(BaseModel):
    kind: Literal["pin", "archive", "mute", "clear"]
    value: bool = True


class OverlayOut(BaseModel):
    pinned: bool = False
    archived: bool = False
    muted: bool = False
    cleared_at: Optional[int] = None


class LastMessageOut(BaseModel):
    message_id: str
    sender_id: str
    content: str
    message_type: str = "text"
    timestamp: int


class ConversationOut(OverlayOut):
    conversation_id: str
    participants: List[str]
    peer_id: str
    created_at: int
    updated_at: int
    last_message: Optional[LastMessageOut] = None
    unread_count: int = 0


class AttachmentIn(BaseModel):
    url: str = Field(min_length=1)
    type: Optional[str] = None
    filename: Optional[str] = None
    size: Optional[int] = Field(default=None, ge=0)
    thumbnail_url: Optional[str] = None
    duration: Optional[int] = Field(default=None, ge=0)


class LinkPreviewIn(BaseModel):
    url: str = Field(min_length=1)
    title: Optional[str] = None
    description: Optional[str] = None
    image: Optional[str] = None
    site_name: Optional[str] = None
    favicon: Optional[str] = None


class SendMessageIn(BaseModel):
    content: Optional[str] = None
    message_type: Literal["text", "image", "document", "voice"] = "text"
    attachment: Optional[AttachmentIn] = None
    link_preview: Optional[LinkPreviewIn] = None
    reply_to: Optional[str] = None
    client_id: Optional[str] = None


class EditMessageIn(BaseModel):
    content: str = Field(min_length=1)


class ReactIn(BaseModel):
    emoji: str = Field(min_length=1, max_length=32)


class ReactOut(BaseModel):
    action: Literal["add", "replace", "remove"]
    reactions: Dict[str, Any]


class ForwardIn(BaseModel):
    to_conversation_id: Optional[str] = None
    to_user_id: Optional[str] = None


class QuoteOut(BaseModel):
    message_id: str
    missing: bool = False
    sender_id: Optional[str] = None
    sender_name: Optional[str] = None
    content: Optional[str] = None
    deleted: bool = False
    message_type: Optional[str] = None


class MessageOut(BaseModel):
    conversation_id: str
    message_id: str
    seq: int
    sender_id: str
    receiver_id: str
    sender_name: Optional[str] = None
    sender_photo_url: Optional[str] = None
    content: str
    message_type: str = "text"
    timestamp: int
    status: str
    read: bool = False
    delivered_at: Optional[int] = None
    read_at: Optional[int] = None
    edited: bool = False
    edited_at: Optional[int] = None
    deleted: bool = False
    deleted_at: Optional[int] = None
    forwarded: bool = False
    forwarded_from: Optional[str] = None
    original_message_id: Optional[str] = None
    original_conversation_id: Optional[str] = None
    client_id: Optional[str] = None
    media: Optional[Dict[str, Any]] = None
    link_preview: Optional[Dict[str, Any]] = None
    reactions: Dict[str, Any] = Field(default_factory=dict)
    starred: bool = False
    starred_at: Optional[int] = None
    reply_to: Optional[QuoteOut] = None


class MessagePageOut(BaseModel):
    items: List[MessageOut]
    next_before: Optional[str] = None


class ForwardManyIn(ForwardIn):
    message_ids: List[str] = Field(min_length=1)


class ForwardErrorOut(BaseModel):
    message_id: str
    code: str
    message: str


class ForwardManyOut(BaseModel):
    success_count: int
    failed_count: int
    forwarded: List[MessageOut] = []
    errors: List[ForwardErrorOut] = []


class EditHistoryOut(BaseModel):
    edited_at: int
    editor_id: str
    old_content: str
    new_content: str


class StarOut(BaseModel):
    conversation_id: str
    message_id: str
    starred: bool


class UnreadOut(BaseModel):
    total: int
    conversations: Dict[str, int] = Field(default_factory=dict)


class TypingIn(BaseModel):
    is_typing: bool = True


class HeartbeatIn(BaseModel):
    status: Literal["online", "away"] = "online"
    device: Optional[str] = None


class PresenceOut(BaseModel):
    user_id: str
    status: Literal["online", "away", "offline"]
    last_seen_at: int


class BlockOut(BaseModel):
    user_id: str
    blocked: bool
    blocked_at: Optional[int] = None


class ReportIn(BaseModel):
    reason: str = Field(min_length=1)
    details: Optional[str] = None


class ReportOut(BaseModel):
    report_id: str
    conversation_id: str
    reported_user_id: str
    status: str
    created_at: int
