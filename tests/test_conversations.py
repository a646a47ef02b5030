import unittest
from types import SimpleNamespace
from unittest.mock import Mock, patch

from botocore.exceptions import ClientError

from app.core.errors import InvalidRequest, NotFound, PermissionDenied, Transient
from app.services import conversations


def _cancelled(*codes):
    return ClientError(
        {
            "Error": {"Code": "TransactionCanceledException", "Message": "cancelled"},
            "CancellationReasons": [{"Code": c} for c in codes],
        },
        "TransactWriteItems",
    )


def _convo(**extra):
    item = {
        "conversation_id": "c_1",
        "participants": ["alice", "bob"],
        "created_at": 10,
        "updated_at": 10,
        "cleared_by": {},
    }
    item.update(extra)
    return item


class TestPairKey(unittest.TestCase):
    def test_pair_key_is_order_independent(self):
        self.assertEqual(conversations.pair_key("bob", "alice"), "alice#bob")
        self.assertEqual(
            conversations.conversation_id_for("alice", "bob"),
            conversations.conversation_id_for("bob", "alice"),
        )

    def test_conversation_id_shape(self):
        cid = conversations.conversation_id_for("alice", "bob")
        self.assertTrue(cid.startswith("c_"))
        self.assertEqual(len(cid), 34)

    def test_rejects_self_and_blank(self):
        with self.assertRaises(InvalidRequest):
            conversations.pair_key("alice", "alice")
        with self.assertRaises(InvalidRequest):
            conversations.pair_key("alice", " ")


class TestFindOrCreate(unittest.TestCase):
    def setUp(self):
        self.tables = SimpleNamespace(conversations=Mock(), participants=Mock())
        patcher = patch.object(conversations, "T", self.tables)
        patcher.start()
        self.addCleanup(patcher.stop)

    def test_returns_existing_without_writing(self):
        self.tables.conversations.get_item.return_value = {"Item": _convo()}
        with patch.object(conversations, "transact_write") as tw:
            cid, created = conversations.find_or_create("alice", "bob")
        tw.assert_not_called()
        self.assertFalse(created)
        self.assertEqual(cid, conversations.conversation_id_for("alice", "bob"))

    def test_creates_conversation_and_both_participant_rows(self):
        self.tables.conversations.get_item.return_value = {}
        with patch.object(conversations, "transact_write") as tw, patch.object(conversations, "now_ts", return_value=50):
            cid, created = conversations.find_or_create("bob", "alice")

        self.assertTrue(created)
        ops = tw.call_args[0][0]
        self.assertEqual(len(ops), 3)
        put = ops[0]["Put"]
        self.assertEqual(put["ConditionExpression"], "attribute_not_exists(conversation_id)")
        self.assertEqual(put["Item"]["participants"], ["alice", "bob"])
        self.assertEqual(put["Item"]["conversation_id"], cid)
        rows = {op["Put"]["Item"]["user_id"]: op["Put"]["Item"]["peer_id"] for op in ops[1:]}
        self.assertEqual(rows, {"alice": "bob", "bob": "alice"})

    def test_lost_race_returns_winner_id(self):
        self.tables.conversations.get_item.side_effect = [{}, {"Item": _convo()}]
        with patch.object(
            conversations,
            "transact_write",
            side_effect=_cancelled("ConditionalCheckFailed", "None", "None"),
        ):
            cid, created = conversations.find_or_create("alice", "bob")
        self.assertFalse(created)
        self.assertEqual(cid, conversations.conversation_id_for("alice", "bob"))

    def test_both_call_orders_converge(self):
        created_ids = []
        state = {}

        def get_item(Key, ConsistentRead=False):
            return {"Item": state[Key["conversation_id"]]} if Key["conversation_id"] in state else {}

        def transact(ops):
            item = ops[0]["Put"]["Item"]
            if item["conversation_id"] in state:
                raise _cancelled("ConditionalCheckFailed", "None", "None")
            state[item["conversation_id"]] = item
            created_ids.append(item["conversation_id"])

        self.tables.conversations.get_item.side_effect = get_item
        with patch.object(conversations, "transact_write", side_effect=transact):
            a, _ = conversations.find_or_create("alice", "bob")
            b, _ = conversations.find_or_create("bob", "alice")
        self.assertEqual(a, b)
        self.assertEqual(len(created_ids), 1)


class TestParticipants(unittest.TestCase):
    def test_require_participant(self):
        tables = SimpleNamespace(conversations=Mock())
        tables.conversations.get_item.return_value = {"Item": _convo()}
        with patch.object(conversations, "T", tables):
            self.assertEqual(conversations.require_participant("c_1", "alice")["conversation_id"], "c_1")
            with self.assertRaises(PermissionDenied):
                conversations.require_participant("c_1", "mallory")

    def test_missing_conversation(self):
        tables = SimpleNamespace(conversations=Mock())
        tables.conversations.get_item.return_value = {}
        with patch.object(conversations, "T", tables):
            with self.assertRaises(NotFound):
                conversations.get_conversation("c_404")

    def test_peer_of(self):
        self.assertEqual(conversations.peer_of(_convo(), "alice"), "bob")
        with self.assertRaises(PermissionDenied):
            conversations.peer_of(_convo(), "mallory")


class TestOverlays(unittest.TestCase):
    def setUp(self):
        self.tables = SimpleNamespace(conversations=Mock())
        self.tables.conversations.get_item.return_value = {"Item": _convo()}
        patcher = patch.object(conversations, "T", self.tables)
        patcher.start()
        self.addCleanup(patcher.stop)

    def test_pin_adds_caller_to_set_only(self):
        self.tables.conversations.update_item.return_value = {"Attributes": _convo(pinned_by={"alice"})}
        out = conversations.set_overlay("c_1", "alice", "pin", True)

        kwargs = self.tables.conversations.update_item.call_args.kwargs
        self.assertEqual(kwargs["UpdateExpression"], "ADD #f :u")
        self.assertEqual(kwargs["ExpressionAttributeNames"], {"#f": "pinned_by"})
        self.assertEqual(kwargs["ExpressionAttributeValues"], {":u": {"alice"}})
        self.assertTrue(out["pinned"])
        self.assertFalse(out["archived"])

    def test_unmute_deletes_from_set(self):
        self.tables.conversations.update_item.return_value = {"Attributes": _convo()}
        conversations.set_overlay("c_1", "bob", "mute", False)
        kwargs = self.tables.conversations.update_item.call_args.kwargs
        self.assertEqual(kwargs["UpdateExpression"], "DELETE #f :u")

    def test_clear_sets_cutoff_for_caller(self):
        self.tables.conversations.update_item.return_value = {"Attributes": _convo(cleared_by={"alice": 99})}
        with patch.object(conversations, "now_ts", return_value=99):
            out = conversations.set_overlay("c_1", "alice", "clear", True)
        kwargs = self.tables.conversations.update_item.call_args.kwargs
        self.assertEqual(kwargs["UpdateExpression"], "SET cleared_by.#u = :ts")
        self.assertEqual(kwargs["ExpressionAttributeNames"], {"#u": "alice"})
        self.assertEqual(out["cleared_at"], 99)

    def test_unknown_kind(self):
        with self.assertRaises(InvalidRequest):
            conversations.set_overlay("c_1", "alice", "star", True)


class TestListConversations(unittest.TestCase):
    def test_pinned_first_then_recent_and_archived_hidden(self):
        convos = [
            _convo(conversation_id="c_old", updated_at=1),
            _convo(conversation_id="c_new", updated_at=9),
            _convo(conversation_id="c_pin", updated_at=2, pinned_by={"alice"}),
            _convo(conversation_id="c_arch", updated_at=20, archived_by={"alice"}),
        ]
        views = conversations.list_conversations("alice", convos=convos)
        self.assertEqual([v["conversation_id"] for v in views], ["c_pin", "c_new", "c_old"])

        views = conversations.list_conversations("alice", include_archived=True, convos=convos)
        self.assertIn("c_arch", [v["conversation_id"] for v in views])

    def test_overlays_are_per_user(self):
        convo = _convo(muted_by={"bob"})
        self.assertFalse(conversations.conversation_view(convo, "alice")["muted"])
        self.assertTrue(conversations.conversation_view(convo, "bob")["muted"])

    def test_cleared_history_hides_preview(self):
        convo = _convo(
            cleared_by={"alice": 100},
            last_message={"message_id": "m1", "sender_id": "bob", "content": "hi", "timestamp": 90, "seq": 1},
        )
        self.assertIsNone(conversations.conversation_view(convo, "alice")["last_message"])
        self.assertEqual(conversations.conversation_view(convo, "bob")["last_message"]["content"], "hi")


class TestAllocateSeq(unittest.TestCase):
    def setUp(self):
        self.tables = SimpleNamespace(conversations=Mock())
        p = patch.object(conversations, "T", self.tables)
        p.start()
        self.addCleanup(p.stop)

    def test_seq_and_timestamp_come_from_one_update(self):
        self.tables.conversations.update_item.return_value = {"Attributes": {"message_seq": 4, "seq_ts": 100}}
        self.assertEqual(conversations.allocate_seq("c_1", now=100), (4, 100))
        kwargs = self.tables.conversations.update_item.call_args.kwargs
        self.assertIn("seq_ts <= :ts", kwargs["ConditionExpression"])

    def test_lagging_clock_takes_last_allocated_timestamp(self):
        conditional = ClientError(
            {"Error": {"Code": "ConditionalCheckFailedException", "Message": "x"}}, "UpdateItem"
        )
        self.tables.conversations.update_item.side_effect = [
            conditional,
            {"Attributes": {"message_seq": 9, "seq_ts": 105}},
        ]
        self.tables.conversations.get_item.return_value = {"Item": _convo(seq_ts=105, message_seq=8)}
        seq, ts = conversations.allocate_seq("c_1", now=101)
        self.assertEqual((seq, ts), (9, 105))
        self.assertEqual(self.tables.conversations.update_item.call_args.kwargs["ExpressionAttributeValues"][":ts"], 105)

    def test_missing_conversation(self):
        self.tables.conversations.update_item.side_effect = ClientError(
            {"Error": {"Code": "ConditionalCheckFailedException", "Message": "x"}}, "UpdateItem"
        )
        self.tables.conversations.get_item.return_value = {}
        with self.assertRaises(NotFound):
            conversations.allocate_seq("c_missing", now=1)

    def test_contention_exhausts_into_transient(self):
        self.tables.conversations.update_item.side_effect = ClientError(
            {"Error": {"Code": "ConditionalCheckFailedException", "Message": "x"}}, "UpdateItem"
        )
        self.tables.conversations.get_item.return_value = {"Item": _convo(seq_ts=5)}
        with self.assertRaises(Transient):
            conversations.allocate_seq("c_1", now=5)
        self.assertEqual(self.tables.conversations.update_item.call_count, conversations.S.retry_attempts)
