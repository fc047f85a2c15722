# tests/test_batch.py
import json
import threading
import unittest
from unittest.mock import MagicMock

from parsekit.errors import ParseError
from parsekit.http.batch import BatchExecutor, BatchOutcome, BatchRequest
from parsekit.http.client import ParseClient
from parsekit.http.response import Response
from parsekit.models.record import Record


class Track(Record, parse_class="BatchTrack"):
    pass


def puts(n):
    return [BatchRequest("PUT", f"classes/Song/id{i}", {"n": i}) for i in range(n)]


def echo_client(fail_paths=()):
    """Fake client whose batch_request answers every sub-request with its body."""
    client = MagicMock(spec=["batch_request"])
    chunks = []

    def batch_request(chunk, deadline=None):
        chunks.append(list(chunk))
        if any(r.path in fail_paths for r in chunk):
            raise ParseError("batch transport failed", code=1)
        return [Response(dict(r.body or {}, updatedAt="2024-01-01T00:00:00.000Z"), 200) for r in chunk]

    client.batch_request.side_effect = batch_request
    return client, chunks


class TestBatchExecutor(unittest.TestCase):
    def test_chunks_by_batch_size(self):
        client, chunks = echo_client()
        outcomes = BatchExecutor(client).execute(puts(120))
        self.assertEqual(len(chunks), 3)
        self.assertEqual(sorted(len(c) for c in chunks), [20, 50, 50])
        self.assertEqual(len(outcomes), 120)
        self.assertTrue(all(o.success for o in outcomes))

    def test_order_preserved_when_middle_chunk_fails(self):
        client, _ = echo_client(fail_paths={"classes/Song/id60"})
        reqs = puts(120)
        outcomes = BatchExecutor(client, batch_size=50).execute(reqs)

        self.assertEqual([o.request for o in outcomes], reqs)
        self.assertTrue(all(o.success for o in outcomes[:50]))
        self.assertTrue(all(not o.success for o in outcomes[50:100]))
        self.assertTrue(all(o.success for o in outcomes[100:]))
        self.assertEqual(outcomes[75].code, 1)
        self.assertIn("batch transport failed", outcomes[75].error)
        self.assertEqual(outcomes[110].result["n"], 110)

    def test_duplicate_updates_are_sent_once(self):
        client, chunks = echo_client()
        a = BatchRequest("PUT", "classes/Song/x", {"n": 1})
        b = BatchRequest("PUT", "classes/Song/x", {"n": 1})
        outcomes = BatchExecutor(client).execute([a, b])
        self.assertEqual(len(chunks[0]), 1)
        self.assertIs(outcomes[0].request, a)
        self.assertIs(outcomes[1].request, b)
        self.assertTrue(outcomes[1].success)

    def test_duplicate_creates_are_not_merged(self):
        client, chunks = echo_client()
        reqs = [BatchRequest("POST", "classes/Song", {"n": 1}) for _ in range(2)]
        BatchExecutor(client).execute(reqs)
        self.assertEqual(len(chunks[0]), 2)

    def test_timeout_fails_unfinished_chunks(self):
        release = threading.Event()
        client = MagicMock(spec=["batch_request"])

        def slow(chunk, deadline=None):
            release.wait(5)
            return [Response({}, 200) for _ in chunk]

        client.batch_request.side_effect = slow
        try:
            outcomes = BatchExecutor(client).execute(puts(3), timeout=0.05)
        finally:
            release.set()
        self.assertEqual(len(outcomes), 3)
        self.assertTrue(all(not o.success for o in outcomes))
        self.assertIn("timed out", outcomes[0].error)

    def test_missing_sub_response_is_a_failure(self):
        client = MagicMock(spec=["batch_request"])
        client.batch_request.return_value = [Response({}, 200)]
        outcomes = BatchExecutor(client).execute(puts(2))
        self.assertTrue(outcomes[0].success)
        self.assertFalse(outcomes[1].success)

    def test_invalid_method_rejected(self):
        with self.assertRaises(ValueError):
            BatchRequest("PATCH", "classes/Song/x")
        with self.assertRaises(TypeError):
            BatchExecutor(echo_client()[0]).execute([{"method": "PUT"}])

    def test_save_applies_results_to_records(self):
        client = MagicMock(spec=["batch_request"])
        client.batch_request.return_value = [
            Response({"objectId": "t1", "createdAt": "2024-01-01T00:00:00.000Z"}, 200),
            Response({"code": 142, "error": "validation failed"}, 200),
        ]
        ok_track = Track(title="One")
        bad_track = Track(title="Two")
        self.assertFalse(BatchExecutor(client).save([ok_track, bad_track]))
        self.assertEqual(ok_track.id, "t1")
        self.assertFalse(ok_track.is_dirty())
        self.assertTrue(bad_track.is_new)
        self.assertTrue(bad_track.is_dirty())


class TestBatchOverHttp(unittest.TestCase):
    def test_sub_request_paths_carry_mount_point(self):
        session = MagicMock()
        http = MagicMock()
        http.status_code = 200
        http.content = b'[{"success":{"updatedAt":"2024-01-01T00:00:00.000Z"}},{"error":{"code":101,"error":"missing"}}]'
        http.headers = {"Content-Type": "application/json"}
        session.request.return_value = http

        client = ParseClient(
            "https://api.example.com/1/", app_id="app", api_key="key", session=session
        )
        outcomes = client.batch(
            [
                BatchRequest("PUT", "classes/Song/a", {"title": "x"}),
                BatchRequest("DELETE", "classes/Song/b"),
            ]
        )

        method, url = session.request.call_args[0][:2]
        self.assertEqual(method, "POST")
        self.assertEqual(url, "https://api.example.com/1/batch")
        sent = json.loads(session.request.call_args[1]["data"].decode("utf-8"))
        self.assertEqual(
            [r["path"] for r in sent["requests"]], ["/1/classes/Song/a", "/1/classes/Song/b"]
        )
        self.assertTrue(outcomes[0].success)
        self.assertFalse(outcomes[1].success)
        self.assertEqual(outcomes[1].code, 101)

    def test_outcome_from_error_response(self):
        req = BatchRequest("DELETE", "classes/Song/z")
        o = BatchOutcome.from_response(req, Response({"code": 101, "error": "gone"}, 200))
        self.assertFalse(o.success)
        self.assertEqual(o.error, "gone")


if __name__ == "__main__":
    unittest.main()
