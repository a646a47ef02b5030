import unittest
from unittest.mock import Mock, patch

from botocore.exceptions import ClientError

from app.core import dynamo
from app.core.cursor import decode_cursor, encode_cursor
from app.core.errors import InvalidRequest, MessagingError, NotFound, Transient


def _client_error(code, status=400, reasons=None):
    resp = {"Error": {"Code": code, "Message": "x"}, "ResponseMetadata": {"HTTPStatusCode": status}}
    if reasons is not None:
        resp["CancellationReasons"] = [{"Code": c} for c in reasons]
    return ClientError(resp, "Op")


class TestClassify(unittest.TestCase):
    def test_throttling_is_transient(self):
        self.assertIsInstance(dynamo.classify_client_error(_client_error("ThrottlingException")), Transient)

    def test_server_error_is_transient(self):
        self.assertIsInstance(dynamo.classify_client_error(_client_error("Whatever", status=500)), Transient)

    def test_validation_is_not_retryable(self):
        err = dynamo.classify_client_error(_client_error("ValidationException"))
        self.assertNotIsInstance(err, Transient)
        self.assertIsInstance(err, MessagingError)

    def test_cancellation_reasons(self):
        exc = _client_error("TransactionCanceledException", reasons=["None", "ConditionalCheckFailed"])
        self.assertEqual(dynamo.cancellation_codes(exc), ["None", "ConditionalCheckFailed"])
        self.assertTrue(dynamo.is_transaction_condition_failure(exc))
        conflict = _client_error("TransactionCanceledException", reasons=["TransactionConflict"])
        self.assertIsInstance(dynamo.classify_client_error(conflict), Transient)


class TestBackoff(unittest.TestCase):
    def test_retries_transient_then_succeeds(self):
        fn = Mock(side_effect=[Transient(), Transient(), "ok"])
        sleep = Mock()
        self.assertEqual(dynamo.with_backoff(fn, attempts=4, base_delay=0.1, sleep=sleep), "ok")
        self.assertEqual(sleep.call_count, 2)
        first, second = (c[0][0] for c in sleep.call_args_list)
        self.assertLessEqual(first, 0.1)
        self.assertGreater(second, first / 2)

    def test_gives_up_after_budget(self):
        fn = Mock(side_effect=Transient("busy"))
        with self.assertRaises(Transient):
            dynamo.with_backoff(fn, attempts=3, base_delay=0, sleep=Mock())
        self.assertEqual(fn.call_count, 3)

    def test_does_not_retry_other_errors(self):
        fn = Mock(side_effect=NotFound())
        with self.assertRaises(NotFound):
            dynamo.with_backoff(fn, attempts=3, sleep=Mock())
        fn.assert_called_once()


class TestPaging(unittest.TestCase):
    def test_count_all_follows_pages(self):
        table = Mock()
        table.query.side_effect = [{"Count": 3, "LastEvaluatedKey": {"k": 1}}, {"Count": 2}]
        self.assertEqual(dynamo.count_all(table, KeyConditionExpression="x"), 5)
        self.assertEqual(table.query.call_args.kwargs["Select"], "COUNT")
        self.assertEqual(table.query.call_args.kwargs["ExclusiveStartKey"], {"k": 1})

    def test_batch_get_retries_unprocessed_keys(self):
        client = Mock()
        client.batch_get_item.side_effect = [
            {"Responses": {"T": [{"id": "a"}]}, "UnprocessedKeys": {"T": {"Keys": [{"id": "b"}]}}},
            {"Responses": {"T": [{"id": "b"}]}},
        ]
        with patch.object(dynamo, "ddb_client", return_value=client):
            out = dynamo.batch_get("T", [{"id": "a"}, {"id": "b"}])
        self.assertEqual(out, [{"id": "a"}, {"id": "b"}])
        self.assertEqual(client.batch_get_item.call_count, 2)


class TestCursor(unittest.TestCase):
    def test_cursor_is_opaque_and_scoped(self):
        c = encode_cursor({"conversation_id": "c_1", "message_id": "m_000000000004_aa"})
        self.assertEqual(decode_cursor(c, conversation_id="c_1")["message_id"], "m_000000000004_aa")
        with self.assertRaises(InvalidRequest):
            decode_cursor(c, conversation_id="c_2")

    def test_malformed_cursor(self):
        with self.assertRaises(InvalidRequest):
            decode_cursor("%%%", conversation_id="c_1")
        self.assertIsNone(decode_cursor(None, conversation_id="c_1"))

    def test_error_payload(self):
        self.assertEqual(NotFound("gone").to_dict(), {"code": "E_NOT_FOUND", "message": "gone"})
