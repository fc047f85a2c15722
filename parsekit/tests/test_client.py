# tests/test_client.py
import unittest
import urllib.parse
from unittest.mock import MagicMock, patch

import requests

from parsekit.errors import AuthenticationError, ConfigurationError, RetriesExhaustedError
from parsekit.http.caching import MemoryStore
from parsekit.http.client import ParseClient
from parsekit.query.query import Query

SERVER = "https://api.example.com/1/"


def http_response(status=200, body=b'{"results":[{"objectId":"abc","title":"Help!"}]}', headers=None):
    r = MagicMock()
    r.status_code = status
    r.content = body
    r.headers = headers or {"Content-Type": "application/json"}
    return r


def make_client(*responses, **kwargs):
    session = MagicMock()
    if len(responses) == 1:
        session.request.return_value = responses[0]
    else:
        session.request.side_effect = list(responses)
    kwargs.setdefault("api_key", "rest-key")
    client = ParseClient(SERVER, app_id="app-id", session=session, **kwargs)
    return client, session


class TestParseClient(unittest.TestCase):
    def test_requires_credentials(self):
        with patch("parsekit.http.client.get_settings") as gs:
            gs.return_value.model_dump.return_value = {}
            with self.assertRaises(ConfigurationError):
                ParseClient(SERVER, api_key="k")
            with self.assertRaises(ConfigurationError):
                ParseClient(SERVER, app_id="a")

    def test_auth_headers(self):
        client, session = make_client(http_response(), master_key="master")
        client.find_objects("Song", session_token="r:tok")
        headers = session.request.call_args[1]["headers"]
        self.assertEqual(headers["X-Parse-Application-Id"], "app-id")
        self.assertEqual(headers["X-Parse-REST-API-Key"], "rest-key")
        self.assertEqual(headers["X-Parse-Master-Key"], "master")
        self.assertEqual(headers["X-Parse-Session-Token"], "r:tok")

        client.find_objects("Song", use_master_key=False)
        headers = session.request.call_args[1]["headers"]
        self.assertNotIn("X-Parse-Master-Key", headers)

    def test_find_objects_sends_compiled_query(self):
        client, session = make_client(http_response())
        q = client.query("Song", plays__gt=3).limit(5)
        response = client.find_objects("Song", q)
        method, url = session.request.call_args[0][:2]
        self.assertEqual(method, "GET")
        parts = urllib.parse.urlsplit(url)
        self.assertEqual(parts.path, "/1/classes/Song")
        params = dict(urllib.parse.parse_qsl(parts.query))
        self.assertEqual(params["where"], '{"plays":{"$gt":3}}')
        self.assertEqual(params["limit"], "5")
        self.assertEqual(response.parse_class, "Song")
        self.assertEqual(response.first()["title"], "Help!")

    def test_long_get_becomes_post_with_override(self):
        client, session = make_client(http_response())
        ids = [f"object-{i:06d}" for i in range(400)]
        client.find_objects("Song", Query("Song", object_id__in=ids))

        method, url = session.request.call_args[0][:2]
        kwargs = session.request.call_args[1]
        self.assertEqual(method, "POST")
        self.assertEqual(url, SERVER + "classes/Song")
        self.assertEqual(kwargs["headers"]["X-Http-Method-Override"], "GET")
        self.assertEqual(kwargs["headers"]["Content-Type"], "application/x-www-form-urlencoded")
        form = dict(urllib.parse.parse_qsl(kwargs["data"].decode("utf-8")))
        self.assertIn("object-000399", form["where"])

    def test_unauthorized_raises(self):
        client, _ = make_client(http_response(401, b'{"error":"unauthorized"}'))
        with self.assertRaises(AuthenticationError) as ctx:
            client.fetch_object("Song", "abc")
        self.assertEqual(ctx.exception.http_status, 401)

    def test_invalid_session_token_raises(self):
        client, _ = make_client(http_response(400, b'{"code":209,"error":"invalid session token"}'))
        with self.assertRaises(AuthenticationError):
            client.current_user("r:stale")

    def test_object_not_found_is_a_response(self):
        client, _ = make_client(http_response(404, b'{"code":101,"error":"Object not found."}'))
        response = client.fetch_object("Song", "missing")
        self.assertTrue(response.object_not_found)

    def test_connection_errors_exhaust_retries(self):
        session = MagicMock()
        session.request.side_effect = requests.ConnectionError("refused")
        client = ParseClient(SERVER, app_id="a", api_key="k", session=session, retry_limit=2)
        with patch("parsekit.http.retry.time.sleep"):
            with self.assertRaises(RetriesExhaustedError) as ctx:
                client.fetch_object("Song", "abc")
        self.assertEqual(ctx.exception.reason, "connection")
        self.assertEqual(session.request.call_count, 2)

    def test_rate_limit_is_retried(self):
        client, session = make_client(
            http_response(429, b'{"code":155,"error":"slow down"}', {"Retry-After": "0"}),
            http_response(),
        )
        with patch("parsekit.http.retry.time.sleep"):
            response = client.fetch_object("Song", "abc")
        self.assertTrue(response.success)
        self.assertEqual(session.request.call_count, 2)

    def test_cache_serves_repeat_gets_and_writes_invalidate(self):
        client, session = make_client(
            http_response(),
            http_response(body=b'{"objectId":"abc","updatedAt":"2024-01-01T00:00:00.000Z"}'),
            http_response(),
            cache_store=MemoryStore(),
            cache_ttl=30,
        )
        first = client.find_objects("Song")
        second = client.find_objects("Song")
        self.assertFalse(first.from_cache)
        self.assertTrue(second.from_cache)
        self.assertEqual(session.request.call_count, 1)

        client.update_object("Song", "abc", {"title": "Yesterday"})
        third = client.find_objects("Song")
        self.assertFalse(third.from_cache)
        self.assertEqual(session.request.call_count, 3)

    def test_login_uses_revocable_session_and_skips_master_key(self):
        client, session = make_client(
            http_response(body=b'{"objectId":"u1","sessionToken":"r:new","username":"ann"}'),
            master_key="master",
        )
        response = client.login("ann", "secret")
        headers = session.request.call_args[1]["headers"]
        self.assertEqual(headers["X-Parse-Revocable-Session"], "1")
        self.assertNotIn("X-Parse-Master-Key", headers)
        self.assertEqual(response.result["sessionToken"], "r:new")

    def test_call_function_posts_params(self):
        client, session = make_client(http_response(body=b'{"result":"pong and more text"}'))
        response = client.call_function("ping", {"n": 1})
        method, url = session.request.call_args[0][:2]
        self.assertEqual((method, url), ("POST", SERVER + "functions/ping"))
        self.assertEqual(response.result["result"], "pong and more text")

    def test_rejects_unknown_method(self):
        client, _ = make_client(http_response())
        with self.assertRaises(ValueError):
            client.request("PATCH", "classes/Song")


if __name__ == "__main__":
    unittest.main()
