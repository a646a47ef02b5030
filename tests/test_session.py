import asyncio
import threading
import unittest
from unittest.mock import Mock, patch

from app.core.errors import InvalidRequest, PermissionDenied, Transient
from app.services import messages, presence, session
from app.services.identity import Identity
from app.services.session import ChatSession


class SessionCase(unittest.TestCase):
    def setUp(self):
        self.heartbeat = patch.object(presence, "heartbeat").start()
        self.disconnect = patch.object(presence, "disconnect").start()
        self.addCleanup(patch.stopall)
        self.identity = Identity("alice", "Alice")


class TestOutbox(SessionCase):
    def test_transient_failure_then_manual_retry(self):
        send = patch.object(
            messages, "send", side_effect=[Transient("down"), {"message_id": "m_000000000002_aa", "status": "sent"}]
        ).start()

        async def run():
            s = ChatSession(self.identity)
            entry = await s.send_message("c_1", "bob", "hi")
            self.assertEqual(entry.status, messages.FAILED)
            self.assertEqual([e.client_id for e in s.pending()], [entry.client_id])
            again = await s.retry(entry.client_id)
            return s, entry, again

        s, entry, again = asyncio.run(run())
        self.assertEqual(again.status, messages.SENT)
        self.assertEqual(again.message_id, "m_000000000002_aa")
        self.assertNotEqual(again.client_id, entry.client_id)
        self.assertEqual(s.pending(), [])
        self.assertEqual(send.call_count, 2)
        self.assertEqual(send.call_args.kwargs["client_id"], again.client_id)

    def test_retry_only_failed_entries(self):
        patch.object(messages, "send", return_value={"message_id": "m1", "status": "sent"}).start()

        async def run():
            s = ChatSession(self.identity)
            entry = await s.send_message("c_1", "bob", "hi")
            with self.assertRaises(InvalidRequest):
                await s.retry(entry.client_id)

        asyncio.run(run())

    def test_cancelled_send_is_marked_failed(self):
        started = threading.Event()
        release = threading.Event()

        def slow_send(*args, **kwargs):
            started.set()
            release.wait(5)
            return {"message_id": "late", "status": "sent"}

        patch.object(messages, "send", side_effect=slow_send).start()

        async def run():
            s = ChatSession(self.identity)
            task = asyncio.create_task(s.send_message("c_1", "bob", "hi"))
            while not started.is_set():
                await asyncio.sleep(0.01)
            task.cancel()
            try:
                with self.assertRaises(asyncio.CancelledError):
                    await task
            finally:
                release.set()
            return list(s.outbox.values())

        (entry,) = asyncio.run(run())
        self.assertEqual(entry.status, messages.FAILED)
        self.assertEqual(entry.error, "cancelled")
        self.assertIsNone(entry.message_id)


class TestLifecycle(SessionCase):
    def test_start_and_close_manage_presence_and_subscriptions(self):
        async def run():
            s = ChatSession(self.identity, heartbeat_interval=60)
            async with s:
                self.heartbeat.assert_called_once_with("alice", presence.ONLINE)
                sub = s.subscribe_to_typing("c_1")
                self.assertEqual(s.subscriptions, [sub])
                task = s._heartbeat_task
            return s, sub, task

        s, sub, task = asyncio.run(run())
        self.assertTrue(sub.closed)
        self.assertEqual(s.subscriptions, [])
        self.assertTrue(task.cancelled())
        self.disconnect.assert_called_once_with("alice")
        self.assertFalse(s.started)

    def test_react_passes_display_name(self):
        react = patch.object(session.interactions, "react", return_value=({"👍": {"count": 1}}, "add")).start()
        out = asyncio.run(ChatSession(self.identity).react("c_1", "m1", "👍"))
        react.assert_called_once_with("c_1", "m1", "alice", "Alice", "👍")
        self.assertEqual(out, {"👍": {"count": 1}})

    def test_mark_read_whole_conversation(self):
        mark = patch.object(session.delivery, "mark_conversation_read", Mock(return_value=3)).start()
        self.assertEqual(asyncio.run(ChatSession(self.identity).mark_read("c_1")), 3)
        mark.assert_called_once_with("c_1", "alice")

    def test_close_ends_running_subscription_consumers(self):
        patch.object(session.delivery, "global_unread_count", return_value=2).start()

        async def run():
            s = ChatSession(self.identity, heartbeat_interval=60)
            await s.start()
            sub = s.subscribe_to_unread_count()
            seen = []

            async def consume():
                async for value in sub:
                    seen.append(value)

            task = asyncio.create_task(consume())
            while not seen:
                await asyncio.sleep(0.01)
            await s.close()
            await asyncio.wait_for(task, timeout=1)
            return seen, s.subscriptions

        seen, remaining = asyncio.run(run())
        self.assertEqual(seen, [2])
        self.assertEqual(remaining, [])


class TestTyping(SessionCase):
    def test_outsider_cannot_signal_typing(self):
        patch.object(session.conversations, "require_participant", side_effect=PermissionDenied()).start()
        publish = patch.object(session.typing, "set_typing").start()
        with self.assertRaises(PermissionDenied):
            asyncio.run(ChatSession(self.identity).set_typing("c_other"))
        publish.assert_not_called()

    def test_participant_signals_typing(self):
        check = patch.object(session.conversations, "require_participant").start()
        publish = patch.object(session.typing, "set_typing", return_value={"is_typing": True}).start()
        out = asyncio.run(ChatSession(self.identity).set_typing("c_1"))
        check.assert_called_once_with("c_1", "alice")
        publish.assert_called_once_with("c_1", "alice", True)
        self.assertTrue(out["is_typing"])
