import asyncio
import json
import unittest
from decimal import Decimal
from unittest.mock import patch

from fastapi import HTTPException
from pydantic import ValidationError
from fastapi.responses import StreamingResponse

from app.core.errors import NotFound, PermissionDenied
from app.routers import messaging
from app.services.hub import Hub, Subscription
from app.services.identity import Identity


def _item(**extra):
    item = {
        "conversation_id": "c_1",
        "message_id": "m_000000000001_aa",
        "seq": Decimal(1),
        "sender_id": "user-1",
        "sender_name": "User One",
        "receiver_id": "user-2",
        "content": "hello",
        "message_type": "text",
        "timestamp": Decimal(10),
        "status": "sent",
        "deleted": False,
        "reactions_by_user": {},
    }
    item.update(extra)
    return item


class RouteCase(unittest.TestCase):
    def setUp(self):
        self.audit = patch.object(messaging, "audit_event").start()
        self.addCleanup(patch.stopall)


class TestConversationRoutes(RouteCase):
    def test_start_conversation(self):
        with patch.object(messaging.conversations, "find_or_create", return_value=("c_x", True)) as foc:
            resp = messaging.start_conversation(messaging.StartConversationIn(peer_id="user-2"), user_id="user-1")
        foc.assert_called_once_with("user-1", "user-2")
        self.assertEqual(resp.conversation_id, "c_x")
        self.assertTrue(resp.created)
        self.assertEqual(self.audit.call_args[0][0], "messaging_conversation_started")

    def test_start_with_self_maps_to_400(self):
        from app.core.errors import InvalidRequest

        with patch.object(messaging.conversations, "find_or_create", side_effect=InvalidRequest("self")):
            with self.assertRaises(HTTPException) as ctx:
                messaging.start_conversation(messaging.StartConversationIn(peer_id="user-1"), user_id="user-1")
        self.assertEqual(ctx.exception.status_code, 400)
        self.audit.assert_not_called()


class TestMessageRoutes(RouteCase):
    def test_send_message_uses_peer_and_identity(self):
        ident = Identity("user-1", "User One")
        with patch.object(
            messaging.conversations, "require_participant", return_value={"participants": ["user-1", "user-2"]}
        ), patch.object(messaging.messages, "send", return_value=_item()) as send:
            out = messaging.send_message("c_1", messaging.SendMessageIn(content="hello"), identity=ident)

        args, kwargs = send.call_args
        self.assertEqual(args[:4], ("c_1", "user-1", "user-2", "hello"))
        self.assertIs(kwargs["sender_identity"], ident)
        self.assertEqual(out.message_id, "m_000000000001_aa")
        self.assertEqual(out.timestamp, 10)
        self.assertEqual(self.audit.call_args[0][0], "messaging_message_sent")

    def test_not_found_maps_to_404_with_code(self):
        with patch.object(messaging.messages, "soft_delete", side_effect=NotFound("Message not found")):
            with self.assertRaises(HTTPException) as ctx:
                messaging.delete_message("c_1", "m_missing", user_id="user-1")
        self.assertEqual(ctx.exception.status_code, 404)
        self.assertEqual(ctx.exception.detail["code"], "E_NOT_FOUND")

    def test_non_participant_maps_to_403(self):
        with patch.object(messaging.messages, "list_messages", side_effect=PermissionDenied()):
            with self.assertRaises(HTTPException) as ctx:
                messaging.list_messages("c_1", before=None, limit=50, user_id="mallory")
        self.assertEqual(ctx.exception.status_code, 403)

    def test_deleted_message_renders_placeholder(self):
        with patch.object(messaging.messages, "soft_delete", return_value=_item(deleted=True)):
            out = messaging.delete_message("c_1", "m_000000000001_aa", user_id="user-1")
        self.assertTrue(out.deleted)
        self.assertEqual(out.content, "This message was deleted")

    def test_forward_needs_exactly_one_target(self):
        ident = Identity("user-1", "User One")
        with self.assertRaises(HTTPException) as ctx:
            messaging.forward_message("c_1", "m1", messaging.ForwardIn(), identity=ident)
        self.assertEqual(ctx.exception.status_code, 400)
        with self.assertRaises(HTTPException):
            messaging.forward_message(
                "c_1", "m1", messaging.ForwardIn(to_conversation_id="c_2", to_user_id="user-3"), identity=ident
            )

    def test_forward_to_user(self):
        ident = Identity("user-1", "User One")
        fwd = _item(conversation_id="c_3", receiver_id="user-3", forwarded=True, forwarded_from="user-1")
        with patch.object(messaging.interactions, "forward_to_user", return_value=fwd) as f:
            out = messaging.forward_message("c_1", "m1", messaging.ForwardIn(to_user_id="user-3"), identity=ident)
        f.assert_called_once_with("c_1", "m1", "user-1", "user-3", sender_identity=ident)
        self.assertTrue(out.forwarded)
        self.assertEqual(self.audit.call_args.kwargs["conversation_id"], "c_3")


class TestForwardManyRoute(RouteCase):
    def test_partial_failure_is_reported(self):
        ident = Identity("user-1", "User One")
        result = {
            "success_count": 1,
            "failed_count": 1,
            "forwarded": [_item(conversation_id="c_2", message_id="m_000000000005_bb", forwarded=True)],
            "errors": [{"message_id": "m2", "code": "E_NOT_FOUND", "message": "Message not found"}],
        }
        inp = messaging.ForwardManyIn(message_ids=["m1", "m2"], to_conversation_id="c_2")
        with patch.object(messaging.interactions, "forward_many", return_value=result) as fm:
            out = messaging.forward_messages("c_1", inp, identity=ident)
        fm.assert_called_once_with(
            "c_1", ["m1", "m2"], "user-1", to_conversation_id="c_2", to_user_id=None, sender_identity=ident
        )
        self.assertEqual((out.success_count, out.failed_count), (1, 1))
        self.assertEqual(out.forwarded[0].message_id, "m_000000000005_bb")
        self.assertEqual(out.errors[0].code, "E_NOT_FOUND")
        self.assertEqual(self.audit.call_args.kwargs["outcome"], "partial")

    def test_replies_route_renders_messages(self):
        rows = [_item(message_id="m_000000000002_aa", reply_to="m_000000000001_aa")]
        quote = {"m_000000000001_aa": {"message_id": "m_000000000001_aa", "content": "hello"}}
        with patch.object(messaging.interactions, "replies_to", return_value=rows) as rt, patch.object(
            messaging.interactions, "resolve_quotes", return_value=quote
        ):
            out = messaging.list_replies("c_1", "m_000000000001_aa", user_id="user-2")
        rt.assert_called_once_with("c_1", "m_000000000001_aa", "user-2")
        self.assertEqual([m.message_id for m in out], ["m_000000000002_aa"])
        self.assertEqual(out[0].reply_to.content, "hello")


class TestModerationRoutes(RouteCase):
    def test_block_and_unblock(self):
        with patch.object(
            messaging.moderation, "block_user", return_value={"blocker_id": "user-1", "blocked_id": "user-2", "blocked_at": 9}
        ) as block:
            out = messaging.block_user("user-2", user_id="user-1")
        block.assert_called_once_with("user-1", "user-2")
        self.assertTrue(out.blocked)
        self.assertEqual(out.blocked_at, 9)
        self.assertEqual(self.audit.call_args[0][0], "messaging_user_blocked")

        with patch.object(messaging.moderation, "unblock_user") as unblock:
            out = messaging.unblock_user("user-2", user_id="user-1")
        unblock.assert_called_once_with("user-1", "user-2")
        self.assertFalse(out.blocked)

    def test_block_status(self):
        with patch.object(messaging.moderation, "is_user_blocked", return_value=True) as check:
            out = messaging.block_status("user-2", user_id="user-1")
        check.assert_called_once_with("user-1", "user-2")
        self.assertTrue(out.blocked)

    def test_report(self):
        report = {
            "report_id": "r1",
            "conversation_id": "c_1",
            "reporter_id": "user-1",
            "reported_user_id": "user-2",
            "reason": "spam",
            "details": "",
            "status": "pending",
            "created_at": 5,
        }
        with patch.object(messaging.moderation, "report_conversation", return_value=report) as rep:
            out = messaging.report_conversation("c_1", messaging.ReportIn(reason="spam"), user_id="user-1")
        rep.assert_called_once_with("c_1", "user-1", "spam", None)
        self.assertEqual(out.reported_user_id, "user-2")
        self.assertEqual(out.status, "pending")
        self.assertEqual(self.audit.call_args.kwargs["report_id"], "r1")

    def test_outsider_report_maps_to_403(self):
        with patch.object(messaging.moderation, "report_conversation", side_effect=PermissionDenied()):
            with self.assertRaises(HTTPException) as ctx:
                messaging.report_conversation("c_1", messaging.ReportIn(reason="spam"), user_id="mallory")
        self.assertEqual(ctx.exception.status_code, 403)
        self.audit.assert_not_called()


class TestModels(unittest.TestCase):
    def test_only_domain_field_names_bind(self):
        self.assertIsNone(messaging.SendMessageIn(text="hi").content)
        self.assertIsNone(messaging.SendMessageIn(reply_to_message_id="m1").reply_to)
        with self.assertRaises(ValidationError):
            messaging.StartConversationIn(user_id="user-2")
        with self.assertRaises(ValidationError):
            messaging.EditMessageIn(text="v2")


class TestSse(unittest.TestCase):
    def test_pack_serializes_store_values(self):
        chunk = messaging._sse_pack({"n": Decimal(3), "f": Decimal("1.5"), "s": {"b", "a"}}, event="unread")
        self.assertTrue(chunk.startswith("event: unread\ndata: "))
        self.assertTrue(chunk.endswith("\n\n"))
        data = json.loads(chunk.split("data: ", 1)[1])
        self.assertEqual(data, {"n": 3, "f": 1.5, "s": ["a", "b"]})

    def test_stream_emits_snapshot_and_closes_subscription(self):
        hub = Hub()

        async def snapshot():
            return {"total": 2}

        sub = Subscription("unread", ["unread:user-1"], snapshot, source=hub)

        async def run():
            resp = messaging._sse(sub, "unread")
            self.assertIsInstance(resp, StreamingResponse)
            body = resp.body_iterator
            chunks = [await body.__anext__(), await body.__anext__()]
            self.assertEqual(hub.subscriber_count("unread:user-1"), 1)
            await body.aclose()
            return chunks

        chunks = asyncio.run(run())
        self.assertEqual(chunks[0], ": stream-open\n\n")
        self.assertIn('"total":2', chunks[1])
        self.assertTrue(sub.closed)
        self.assertEqual(hub.subscriber_count("unread:user-1"), 0)


class TestHealth(unittest.TestCase):
    def test_healthz(self):
        self.assertTrue(messaging.healthz()["ok"])
