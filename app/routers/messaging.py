from __future__ import annotations

import asyncio
import json
from contextlib import contextmanager
from decimal import Decimal
from typing import Any, Dict, List, Optional

import anyio
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import StreamingResponse

from app.auth.deps import get_current_identity, get_current_user_id
from app.core.errors import InvalidRequest, MessagingError
from app.core.settings import S
from app.core.time import now_ts
from app.models import (
    BlockOut,
    ConversationOut,
    EditHistoryOut,
    EditMessageIn,
    ForwardIn,
    ForwardManyIn,
    ForwardManyOut,
    HeartbeatIn,
    LinkPreviewIn,
    MessageOut,
    MessagePageOut,
    OverlayIn,
    OverlayOut,
    PresenceOut,
    ReactIn,
    ReactOut,
    ReportIn,
    ReportOut,
    SendMessageIn,
    StarOut,
    StartConversationIn,
    StartConversationOut,
    TypingIn,
    UnreadOut,
)
from app.services import conversations, delivery, interactions, live, messages, moderation, presence, typing
from app.services.audit import audit_event
from app.services.hub import Subscription
from app.services.identity import Identity

router = APIRouter(prefix="/messaging", tags=["messaging"])


@contextmanager
def _as_http():
    try:
        yield
    except MessagingError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.to_dict()) from exc


def _json_default(o: Any) -> Any:
    if isinstance(o, Decimal):
        return int(o) if o == o.to_integral_value() else float(o)
    if isinstance(o, (set, frozenset)):
        return sorted(o)
    raise TypeError(f"not JSON serializable: {type(o).__name__}")


def _sse_pack(data: Any, event: str = "message") -> str:
    return f"event: {event}\ndata: {json.dumps(data, separators=(',', ':'), default=_json_default)}\n\n"


def _sse(sub: Subscription, event: str) -> StreamingResponse:
    """Serve a subscription as server-sent events; the subscription closes with the stream."""

    async def gen():
        out: asyncio.Queue = asyncio.Queue()

        async def pump():
            try:
                async for value in sub:
                    await out.put(("data", value))
            except MessagingError as exc:
                await out.put(("error", exc.to_dict()))
                return
            await out.put(("end", None))

        yield ": stream-open\n\n"
        async with sub:
            task = asyncio.create_task(pump())
            try:
                while True:
                    try:
                        kind, value = await asyncio.wait_for(out.get(), timeout=S.sse_ping_seconds)
                    except asyncio.TimeoutError:
                        yield ": ping\n\n"
                        continue
                    if kind == "end":
                        break
                    if kind == "error":
                        yield _sse_pack(value, event="error")
                        break
                    yield _sse_pack(value, event=event)
            finally:
                task.cancel()

    return StreamingResponse(gen(), media_type="text/event-stream")


def _message_out(item: Dict[str, Any], user_id: str, quote: Optional[Dict[str, Any]] = None) -> MessageOut:
    return MessageOut(**live.render_message(item, user_id, quote))


def _quote_for(item: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    if not item.get("reply_to"):
        return None
    return interactions.resolve_quote(item["conversation_id"], item["reply_to"])


# -------------------------
# Conversations
# -------------------------
@router.post("/conversations", response_model=StartConversationOut)
def start_conversation(
    inp: StartConversationIn,
    req: Request = None,
    user_id: str = Depends(get_current_user_id),
):
    with _as_http():
        cid, created = conversations.find_or_create(user_id, inp.peer_id)
    audit_event(
        "messaging_conversation_started",
        user_id,
        req,
        outcome="success",
        conversation_id=cid,
        created=created,
    )
    return StartConversationOut(conversation_id=cid, created=created)


@router.get("/conversations", response_model=List[ConversationOut])
def list_conversations(
    include_archived: bool = False,
    user_id: str = Depends(get_current_user_id),
):
    with _as_http():
        views = live.conversation_list(user_id, include_archived=include_archived)
    return [ConversationOut(**v) for v in views]


@router.post("/conversations/{conversation_id}/overlay", response_model=OverlayOut)
def set_overlay(
    conversation_id: str,
    inp: OverlayIn,
    req: Request = None,
    user_id: str = Depends(get_current_user_id),
):
    with _as_http():
        overlay = conversations.set_overlay(conversation_id, user_id, inp.kind, inp.value)
    audit_event(
        f"messaging_conversation_{inp.kind}",
        user_id,
        req,
        outcome="success",
        conversation_id=conversation_id,
        value=inp.value,
    )
    return OverlayOut(**overlay)


# -------------------------
# Messages
# -------------------------
@router.get("/conversations/{conversation_id}/messages", response_model=MessagePageOut)
def list_messages(
    conversation_id: str,
    before: Optional[str] = None,
    limit: int = Query(50, ge=1, le=200),
    user_id: str = Depends(get_current_user_id),
):
    with _as_http():
        page = messages.list_messages(conversation_id, user_id, limit=limit, before=before)
        items = live.render_messages(conversation_id, page["items"], user_id)
    return MessagePageOut(items=[MessageOut(**it) for it in items], next_before=page["next_before"])


@router.post("/conversations/{conversation_id}/messages", response_model=MessageOut)
def send_message(
    conversation_id: str,
    inp: SendMessageIn,
    req: Request = None,
    identity: Identity = Depends(get_current_identity),
):
    user_id = identity.user_id
    with _as_http():
        convo = conversations.require_participant(conversation_id, user_id)
        item = messages.send(
            conversation_id,
            user_id,
            conversations.peer_of(convo, user_id),
            inp.content,
            inp.message_type,
            attachment=inp.attachment.model_dump() if inp.attachment else None,
            link_preview=inp.link_preview.model_dump() if inp.link_preview else None,
            reply_to=inp.reply_to,
            sender_identity=identity,
            client_id=inp.client_id,
        )
        quote = _quote_for(item)
    audit_event(
        "messaging_message_sent",
        user_id,
        req,
        outcome="success",
        conversation_id=conversation_id,
        message_id=item["message_id"],
        message_type=item["message_type"],
        reply_to=inp.reply_to,
    )
    return _message_out(item, user_id, quote)


@router.patch("/conversations/{conversation_id}/messages/{message_id}", response_model=MessageOut)
def edit_message(
    conversation_id: str,
    message_id: str,
    inp: EditMessageIn,
    req: Request = None,
    user_id: str = Depends(get_current_user_id),
):
    with _as_http():
        item = messages.edit(conversation_id, message_id, user_id, inp.content)
        quote = _quote_for(item)
    audit_event(
        "messaging_message_edited",
        user_id,
        req,
        outcome="success",
        conversation_id=conversation_id,
        message_id=message_id,
    )
    return _message_out(item, user_id, quote)


@router.delete("/conversations/{conversation_id}/messages/{message_id}", response_model=MessageOut)
def delete_message(
    conversation_id: str,
    message_id: str,
    req: Request = None,
    user_id: str = Depends(get_current_user_id),
):
    with _as_http():
        item = messages.soft_delete(conversation_id, message_id, user_id)
    audit_event(
        "messaging_message_deleted",
        user_id,
        req,
        outcome="success",
        conversation_id=conversation_id,
        message_id=message_id,
    )
    return _message_out(item, user_id)


@router.get(
    "/conversations/{conversation_id}/messages/{message_id}/edits",
    response_model=List[EditHistoryOut],
)
def get_edit_history(
    conversation_id: str,
    message_id: str,
    user_id: str = Depends(get_current_user_id),
):
    with _as_http():
        rows = messages.edit_history(conversation_id, message_id, user_id)
    return [
        EditHistoryOut(
            edited_at=int(r.get("edited_at", 0) or 0),
            editor_id=r.get("editor_id", ""),
            old_content=r.get("old_content", ""),
            new_content=r.get("new_content", ""),
        )
        for r in rows
    ]


@router.post(
    "/conversations/{conversation_id}/messages/{message_id}/link-preview",
    response_model=MessageOut,
)
def attach_link_preview(
    conversation_id: str,
    message_id: str,
    inp: LinkPreviewIn,
    req: Request = None,
    user_id: str = Depends(get_current_user_id),
):
    with _as_http():
        item = messages.attach_link_preview(conversation_id, message_id, user_id, inp.model_dump())
    audit_event(
        "messaging_link_preview_attached",
        user_id,
        req,
        outcome="success",
        conversation_id=conversation_id,
        message_id=message_id,
    )
    return _message_out(item, user_id)


# -------------------------
# Interactions
# -------------------------
@router.post(
    "/conversations/{conversation_id}/messages/{message_id}/reactions",
    response_model=ReactOut,
)
def react_to_message(
    conversation_id: str,
    message_id: str,
    inp: ReactIn,
    req: Request = None,
    identity: Identity = Depends(get_current_identity),
):
    with _as_http():
        reactions, action = interactions.react(
            conversation_id, message_id, identity.user_id, identity.display_name, inp.emoji
        )
    audit_event(
        "messaging_message_reaction",
        identity.user_id,
        req,
        outcome="success",
        conversation_id=conversation_id,
        message_id=message_id,
        emoji=inp.emoji,
        action=action,
    )
    return ReactOut(action=action, reactions=reactions)


@router.post("/conversations/{conversation_id}/messages/{message_id}/star", response_model=StarOut)
def star_message(
    conversation_id: str,
    message_id: str,
    req: Request = None,
    user_id: str = Depends(get_current_user_id),
):
    with _as_http():
        out = interactions.star(conversation_id, message_id, user_id)
    audit_event("messaging_message_starred", user_id, req, outcome="success", conversation_id=conversation_id, message_id=message_id)
    return StarOut(**out)


@router.delete("/conversations/{conversation_id}/messages/{message_id}/star", response_model=StarOut)
def unstar_message(
    conversation_id: str,
    message_id: str,
    req: Request = None,
    user_id: str = Depends(get_current_user_id),
):
    with _as_http():
        out = interactions.unstar(conversation_id, message_id, user_id)
    audit_event("messaging_message_unstarred", user_id, req, outcome="success", conversation_id=conversation_id, message_id=message_id)
    return StarOut(**out)


@router.get("/starred", response_model=List[MessageOut])
def list_starred(
    limit: int = Query(100, ge=1, le=500),
    user_id: str = Depends(get_current_user_id),
):
    with _as_http():
        items = interactions.list_starred(user_id, limit=limit)
    out = []
    for it in items:
        view = live.render_message(it, user_id)
        view["starred_at"] = it["starred_at"]
        out.append(MessageOut(**view))
    return out


@router.post(
    "/conversations/{conversation_id}/messages/{message_id}/forward",
    response_model=MessageOut,
)
def forward_message(
    conversation_id: str,
    message_id: str,
    inp: ForwardIn,
    req: Request = None,
    identity: Identity = Depends(get_current_identity),
):
    user_id = identity.user_id
    with _as_http():
        if bool(inp.to_conversation_id) == bool(inp.to_user_id):
            raise InvalidRequest("Give exactly one of to_conversation_id or to_user_id")
        if inp.to_conversation_id:
            item = interactions.forward(
                conversation_id, message_id, inp.to_conversation_id, user_id, sender_identity=identity
            )
        else:
            item = interactions.forward_to_user(
                conversation_id, message_id, user_id, inp.to_user_id, sender_identity=identity
            )
    audit_event(
        "messaging_message_forwarded",
        user_id,
        req,
        outcome="success",
        source_conversation_id=conversation_id,
        source_message_id=message_id,
        conversation_id=item["conversation_id"],
        message_id=item["message_id"],
    )
    return _message_out(item, user_id)


@router.post("/conversations/{conversation_id}/messages/forward", response_model=ForwardManyOut)
def forward_messages(
    conversation_id: str,
    inp: ForwardManyIn,
    req: Request = None,
    identity: Identity = Depends(get_current_identity),
):
    user_id = identity.user_id
    with _as_http():
        result = interactions.forward_many(
            conversation_id,
            inp.message_ids,
            user_id,
            to_conversation_id=inp.to_conversation_id,
            to_user_id=inp.to_user_id,
            sender_identity=identity,
        )
    audit_event(
        "messaging_messages_forwarded",
        user_id,
        req,
        outcome="success" if not result["failed_count"] else "partial",
        source_conversation_id=conversation_id,
        success_count=result["success_count"],
        failed_count=result["failed_count"],
    )
    return ForwardManyOut(
        success_count=result["success_count"],
        failed_count=result["failed_count"],
        forwarded=[_message_out(it, user_id) for it in result["forwarded"]],
        errors=result["errors"],
    )


@router.get(
    "/conversations/{conversation_id}/messages/{message_id}/replies",
    response_model=List[MessageOut],
)
def list_replies(
    conversation_id: str,
    message_id: str,
    user_id: str = Depends(get_current_user_id),
):
    with _as_http():
        rows = interactions.replies_to(conversation_id, message_id, user_id)
        items = live.render_messages(conversation_id, rows, user_id)
    return [MessageOut(**it) for it in items]


# -------------------------
# Delivery & read
# -------------------------
@router.post(
    "/conversations/{conversation_id}/messages/{message_id}/delivered",
    response_model=MessageOut,
)
def mark_delivered(
    conversation_id: str,
    message_id: str,
    user_id: str = Depends(get_current_user_id),
):
    with _as_http():
        item = delivery.mark_delivered(conversation_id, message_id, user_id)
    return _message_out(item, user_id)


@router.post(
    "/conversations/{conversation_id}/messages/{message_id}/read",
    response_model=MessageOut,
)
def mark_read(
    conversation_id: str,
    message_id: str,
    req: Request = None,
    user_id: str = Depends(get_current_user_id),
):
    with _as_http():
        item = delivery.mark_read(conversation_id, message_id, user_id)
    audit_event("messaging_message_read", user_id, req, outcome="success", conversation_id=conversation_id, message_id=message_id)
    return _message_out(item, user_id)


@router.post("/conversations/{conversation_id}/read")
def mark_conversation_read(
    conversation_id: str,
    req: Request = None,
    user_id: str = Depends(get_current_user_id),
):
    with _as_http():
        changed = delivery.mark_conversation_read(conversation_id, user_id)
    audit_event(
        "messaging_conversation_read",
        user_id,
        req,
        outcome="success",
        conversation_id=conversation_id,
        changed=changed,
    )
    return {"ok": True, "conversation_id": conversation_id, "changed": changed}


@router.get("/conversations/{conversation_id}/unread")
def conversation_unread(conversation_id: str, user_id: str = Depends(get_current_user_id)):
    with _as_http():
        n = delivery.unread_count(conversation_id, user_id)
    return {"conversation_id": conversation_id, "unread_count": n}


@router.get("/unread", response_model=UnreadOut)
def unread(user_id: str = Depends(get_current_user_id)):
    with _as_http():
        return UnreadOut(**delivery.unread_summary(user_id))


# -------------------------
# Typing
# -------------------------
@router.post("/conversations/{conversation_id}/typing")
def set_typing(conversation_id: str, inp: TypingIn, user_id: str = Depends(get_current_user_id)):
    with _as_http():
        conversations.require_participant(conversation_id, user_id)
    return {"ok": True, **typing.set_typing(conversation_id, user_id, inp.is_typing)}


@router.get("/conversations/{conversation_id}/typing", response_model=List[str])
def get_typing(conversation_id: str, user_id: str = Depends(get_current_user_id)):
    with _as_http():
        conversations.require_participant(conversation_id, user_id)
    return typing.typing_users(conversation_id, exclude=user_id)


# -------------------------
# Presence
# -------------------------
@router.post("/presence/heartbeat", response_model=PresenceOut)
def presence_heartbeat(inp: HeartbeatIn, user_id: str = Depends(get_current_user_id)):
    with _as_http():
        return PresenceOut(**presence.heartbeat(user_id, inp.status, inp.device))


@router.post("/presence/disconnect", response_model=PresenceOut)
def presence_disconnect(req: Request = None, user_id: str = Depends(get_current_user_id)):
    with _as_http():
        out = presence.disconnect(user_id)
    audit_event("messaging_presence_disconnected", user_id, req, outcome="success")
    return PresenceOut(**out)


@router.get("/presence", response_model=List[PresenceOut])
def presence_get(
    user_ids: str = Query(..., description="Comma-separated user_ids"),
    user_id: str = Depends(get_current_user_id),
):
    ids = [x.strip() for x in user_ids.split(",") if x.strip()]
    with _as_http():
        return [PresenceOut(**p) for p in presence.get_presence_many(ids)]


# -------------------------
# Blocking & reports
# -------------------------
@router.post("/users/{blocked_id}/block", response_model=BlockOut)
def block_user(blocked_id: str, req: Request = None, user_id: str = Depends(get_current_user_id)):
    with _as_http():
        row = moderation.block_user(user_id, blocked_id)
    audit_event("messaging_user_blocked", user_id, req, outcome="success", blocked_id=blocked_id)
    return BlockOut(user_id=blocked_id, blocked=True, blocked_at=int(row.get("blocked_at", 0) or 0))


@router.delete("/users/{blocked_id}/block", response_model=BlockOut)
def unblock_user(blocked_id: str, req: Request = None, user_id: str = Depends(get_current_user_id)):
    with _as_http():
        moderation.unblock_user(user_id, blocked_id)
    audit_event("messaging_user_unblocked", user_id, req, outcome="success", blocked_id=blocked_id)
    return BlockOut(user_id=blocked_id, blocked=False)


@router.get("/users/{blocked_id}/block", response_model=BlockOut)
def block_status(blocked_id: str, user_id: str = Depends(get_current_user_id)):
    with _as_http():
        blocked = moderation.is_user_blocked(user_id, blocked_id)
    return BlockOut(user_id=blocked_id, blocked=blocked)


@router.post("/conversations/{conversation_id}/report", response_model=ReportOut)
def report_conversation(
    conversation_id: str,
    inp: ReportIn,
    req: Request = None,
    user_id: str = Depends(get_current_user_id),
):
    with _as_http():
        report = moderation.report_conversation(conversation_id, user_id, inp.reason, inp.details)
    audit_event(
        "messaging_conversation_reported",
        user_id,
        req,
        outcome="success",
        conversation_id=conversation_id,
        report_id=report["report_id"],
        reported_user_id=report["reported_user_id"],
    )
    return ReportOut(**{k: report[k] for k in ReportOut.model_fields})


# -------------------------
# Live streams (SSE)
# -------------------------
@router.get("/conversations/{conversation_id}/stream")
async def conversation_stream(
    conversation_id: str,
    focused: bool = False,
    user_id: str = Depends(get_current_user_id),
):
    with _as_http():
        await anyio.to_thread.run_sync(conversations.require_participant, conversation_id, user_id)
    return _sse(live.subscribe_to_conversation(conversation_id, user_id, focused), "messages")


@router.get("/presence/{peer_id}/stream")
async def presence_stream(peer_id: str, user_id: str = Depends(get_current_user_id)):
    return _sse(live.subscribe_to_presence(peer_id), "presence")


@router.get("/unread/stream")
async def unread_stream(user_id: str = Depends(get_current_user_id)):
    return _sse(live.subscribe_to_unread_count(user_id), "unread")


@router.get("/conversations/{conversation_id}/typing/stream")
async def typing_stream(conversation_id: str, user_id: str = Depends(get_current_user_id)):
    with _as_http():
        await anyio.to_thread.run_sync(conversations.require_participant, conversation_id, user_id)
    return _sse(live.subscribe_to_typing(conversation_id, user_id), "typing")


@router.get("/healthz")
def healthz():
    return {"ok": True, "ts": now_ts()}
