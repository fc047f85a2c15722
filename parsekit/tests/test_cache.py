# tests/test_cache.py
import unittest
from fnmatch import fnmatch
from unittest.mock import MagicMock, patch

from parsekit.http.caching import CacheMiddleware, CacheRequest, MemoryStore, RedisStore, fingerprint

SONGS = "https://api.example.com/1/classes/Song?where=%7B%7D"
BODY = b'{"results":[{"objectId":"abc","title":"Help"}]}'


def get(url=SONGS, ttl=None, headers=None):
    return CacheRequest("GET", url, None, headers or {}, ttl=ttl)


class TestCacheMiddleware(unittest.TestCase):
    def setUp(self):
        self.store = MemoryStore()
        self.cache = CacheMiddleware(self.store, default_ttl=60, mount="/1/")

    def test_stores_and_serves_get(self):
        self.assertIsNone(self.cache.before(get()))
        self.assertTrue(self.cache.after(get(), 200, BODY, {"Content-Type": "application/json"}))
        entry = self.cache.before(get())
        self.assertIsNotNone(entry)
        self.assertEqual(entry.body, BODY)
        self.assertEqual(entry.status, 200)

    def test_short_bodies_are_not_cached(self):
        self.assertFalse(self.cache.after(get(), 200, b'{"results":[]}'))
        self.assertIsNone(self.cache.before(get()))

    def test_not_found_and_gone_are_never_cached(self):
        self.assertFalse(self.cache.after(get(), 404, BODY))
        self.assertFalse(self.cache.after(get(), 410, BODY))
        self.assertFalse(self.cache.after(get(), 500, BODY))
        self.assertTrue(self.cache.after(get(), 203, BODY))

    def test_mutation_invalidates_collection(self):
        other = "https://api.example.com/1/classes/Album"
        self.cache.after(get(), 200, BODY)
        self.cache.after(get(other), 200, BODY)

        put = CacheRequest("PUT", "https://api.example.com/1/classes/Song/abc", b"{}", {})
        self.assertIsNone(self.cache.before(put))

        self.assertIsNone(self.cache.before(get()))
        self.assertIsNotNone(self.cache.before(get(other)))

    def test_short_ttl_entry_does_not_shorten_collection_index(self):
        clock = [1000.0]
        cache = CacheMiddleware(self.store, default_ttl=0, mount="/1/")
        with patch("parsekit.http.caching.time.time", side_effect=lambda: clock[0]):
            long_lived = get(ttl=300)
            short_lived = get(SONGS + "&limit=1", ttl=1)
            self.assertTrue(cache.after(long_lived, 200, BODY))
            self.assertTrue(cache.after(short_lived, 200, BODY))

            clock[0] += 5
            self.assertIsNotNone(cache.before(long_lived))
            put = CacheRequest("PUT", "https://api.example.com/1/classes/Song/abc", b"{}", {})
            cache.before(put)
            self.assertIsNone(cache.before(long_lived))

    def test_ttl_resolution_order(self):
        self.assertEqual(self.cache.resolve_ttl(None), 60)
        self.assertEqual(self.cache.resolve_ttl(True), 60)
        self.assertEqual(self.cache.resolve_ttl(5), 5)
        self.assertEqual(self.cache.resolve_ttl(False), 0)

        disabled = CacheMiddleware(self.store, default_ttl=60, enabled=False)
        self.assertEqual(disabled.resolve_ttl(30), 0)

        no_default = CacheMiddleware(self.store, default_ttl=0)
        self.assertFalse(no_default.after(get(), 200, BODY))
        self.assertTrue(no_default.after(get(ttl=10), 200, BODY))

    def test_per_request_false_skips_lookup_and_store(self):
        self.cache.after(get(), 200, BODY)
        self.assertIsNone(self.cache.before(get(ttl=False)))
        self.assertFalse(self.cache.after(get(ttl=False), 200, BODY))

    def test_credentials_partition_the_key(self):
        anon = get()
        user = get(headers={"X-Parse-Session-Token": "r:1"})
        master = get(headers={"X-Parse-Master-Key": "m"})
        keys = {fingerprint(anon), fingerprint(user), fingerprint(master)}
        self.assertEqual(len(keys), 3)

    def test_query_parameter_order_does_not_matter(self):
        a = get("https://API.example.com/1/classes/Song?limit=1&skip=2")
        b = get("https://api.example.com/1/classes/Song?skip=2&limit=1")
        self.assertEqual(fingerprint(a), fingerprint(b))

    def test_store_failures_are_logged_not_raised(self):
        broken = MagicMock()
        broken.get.side_effect = ConnectionError("redis down")
        broken.set.side_effect = ConnectionError("redis down")
        broken.delete.side_effect = ConnectionError("redis down")
        cache = CacheMiddleware(broken, default_ttl=60, mount="/1/")

        with self.assertLogs("parse.cache", level="WARNING"):
            self.assertIsNone(cache.before(get()))
        with self.assertLogs("parse.cache", level="WARNING"):
            self.assertFalse(cache.after(get(), 200, BODY))
        with self.assertLogs("parse.cache", level="WARNING"):
            self.assertEqual(cache.invalidate(SONGS), 0)

    def test_corrupt_entry_is_dropped(self):
        self.store.set(fingerprint(get()), b"not json", 60)
        with self.assertLogs("parse.cache", level="WARNING"):
            self.assertIsNone(self.cache.before(get()))
        self.assertIsNone(self.store.get(fingerprint(get())))


def fake_redis():
    data = {}
    client = MagicMock()
    client.get.side_effect = data.get
    client.set.side_effect = lambda key, value, ex=None: data.__setitem__(key, value)
    client.delete.side_effect = lambda *keys: [data.pop(k, None) for k in keys]
    client.scan_iter.side_effect = lambda match="*": [k for k in list(data) if fnmatch(k, match)]
    return client, data


class TestRedisStore(unittest.TestCase):
    def test_set_uses_expiry_and_namespace(self):
        client, data = fake_redis()
        store = RedisStore(client, namespace="app1:")
        store.set("k", b"v", 30)
        client.set.assert_called_with("app1:k", b"v", ex=30)
        self.assertEqual(store.get("k"), b"v")
        self.assertIsNone(store.get("missing"))
        store.delete("k")
        self.assertEqual(data, {})

    def test_no_ttl_sets_without_expiry(self):
        client, _data = fake_redis()
        RedisStore(client).set("k", b"v")
        client.set.assert_called_with("k", b"v")

    def test_middleware_over_redis(self):
        client, data = fake_redis()
        data["other:key"] = b"untouched"
        store = RedisStore(client)
        cache = CacheMiddleware(store, default_ttl=60, mount="/1/")

        self.assertTrue(cache.after(get(), 200, BODY))
        self.assertEqual(cache.before(get()).body, BODY)

        cache.before(CacheRequest("DELETE", "https://api.example.com/1/classes/Song/abc", None, {}))
        self.assertIsNone(cache.before(get()))

        cache.after(get(), 200, BODY)
        store.clear()
        self.assertEqual(data, {"other:key": b"untouched"})

    def test_from_url(self):
        with patch("redis.Redis.from_url") as from_url:
            store = RedisStore.from_url("redis://cache:6379/2")
        from_url.assert_called_once_with("redis://cache:6379/2", socket_timeout=5.0, socket_connect_timeout=2.0)
        self.assertIs(store._client, from_url.return_value)


if __name__ == "__main__":
    unittest.main()
