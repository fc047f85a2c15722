# tests/test_query.py
import json
from unittest.mock import MagicMock

import pytest

from parsekit.http.response import Response
from parsekit.query.query import Query


def fake_client(*responses):
    client = MagicMock(spec=["find_objects"])
    client.find_objects.side_effect = list(responses)
    return client


def sent_where(client, call_index):
    args, _kwargs = client.find_objects.call_args_list[call_index]
    return json.loads(args[1]["where"])


def test_constraints_on_one_field_merge():
    q = Query("Song", plays__gt=1, plays__lt=10)
    assert q.compile()["where"] == {"plays": {"$gt": 1, "$lt": 10}}


def test_same_operator_last_write_wins():
    q = Query("Song", plays__gt=1).where(plays__gt=5)
    assert q.compile()["where"] == {"plays": {"$gt": 5}}


def test_count_mode_pins_limit():
    q = Query("Song").as_count().limit(10)
    assert q.compile() == {"limit": 0, "count": 1}
    assert q.is_count


def test_limit_max_uses_configured_value_and_never_clamps():
    assert Query("Song").limit("max").compile()["limit"] == 11000
    assert Query("Song", max_limit=500).limit("max").compile()["limit"] == 500
    assert Query("Song").limit(20000).compile()["limit"] == 20000
    with pytest.raises(ValueError):
        Query("Song").limit(-1)


def test_keys_and_includes_are_deduplicated():
    q = Query("Song").keys("title", "title", "play_count").includes(["artist", "artist.label"])
    c = q.compile()
    assert c["keys"] == "title,playCount"
    assert c["include"] == "artist,artist.label"


def test_order_direction_and_replacement():
    q = Query("Song").order("-plays", "name", "plays")
    assert q.compile()["order"] == "name,plays"
    assert Query("Song").order(("created_at", "desc")).compile()["order"] == "-createdAt"


def test_skip_validation():
    assert Query("Song").skip(20).compile()["skip"] == 20
    with pytest.raises(ValueError):
        Query("Song").skip(-5)


def test_or_groups():
    q = Query("Song", genre="rock").or_where(genre="jazz", plays__gt=3)
    assert q.compile()["where"] == {"$or": [{"genre": "rock"}, {"genre": "jazz", "plays": {"$gt": 3}}]}
    combined = Query("Song", a=1) | Query("Song", b=2)
    assert combined.compile_where() == {"$or": [{"a": 1}, {"b": 2}]}
    with pytest.raises(ValueError):
        Query("Song") | Query("Album")


def test_prepared_encodes_where_as_json():
    p = Query("Song", plays__gte=2).prepared()
    assert json.loads(p["where"]) == {"plays": {"$gte": 2}}


def test_session_token_validation():
    q = Query("Song")
    q.session_token = "r:abc"
    assert q.session_token == "r:abc"

    user = MagicMock()
    user.session_token = "r:user"
    assert Query("Song").with_session(user).session_token == "r:user"

    with pytest.raises(TypeError):
        Query("Song").with_session(42)
    with pytest.raises(TypeError):
        Query("Song").with_session("   ")


def test_where_rejects_non_constraint_arguments():
    with pytest.raises(TypeError):
        Query("Song").where(["plays", 3])


def test_count_executes_count_mode():
    client = fake_client(Response({"results": [], "count": 42}, 200))
    assert Query("Song", client=client, genre="rock").count() == 42
    args, _ = client.find_objects.call_args
    assert args[1]["count"] == 1
    assert args[1]["limit"] == 0


def test_results_build_records():
    client = fake_client(Response({"results": [{"objectId": "s1", "title": "Help"}]}, 200))
    songs = Query("Song", client=client).results()
    assert len(songs) == 1
    assert songs[0].id == "s1"
    assert songs[0].title == "Help"
    assert songs[0].parse_class == "Song"


def test_error_response_yields_empty_results():
    client = fake_client(Response({"code": 101, "error": "not found"}, 404))
    assert Query("Song", client=client).results() == []


def test_cursor_fields_are_reserved_while_iterating():
    q = Query("Song", updated_at__gt="2020-01-01", client=fake_client())
    with pytest.raises(ValueError):
        q.each(lambda r: None)


def test_pages_follow_updated_at_cursor():
    t1 = "2024-01-01T00:00:00.000Z"
    t2 = "2024-01-02T00:00:00.000Z"
    client = fake_client(
        Response({"results": [
            {"objectId": "a", "updatedAt": t1, "createdAt": t1},
            {"objectId": "b", "updatedAt": t1, "createdAt": t1},
        ]}, 200),
        Response({"results": [{"objectId": "c", "updatedAt": t2, "createdAt": t1}]}, 200),
        Response({"results": []}, 200),
    )
    seen = []
    n = Query("Song", client=client).each(lambda r: seen.append(r.id), batch_size=2)

    assert n == 3
    assert seen == ["a", "b", "c"]
    assert client.find_objects.call_count == 3

    second = sent_where(client, 1)
    assert second["updatedAt"] == {"$gte": {"__type": "Date", "iso": t1}}
    assert second["objectId"] == {"$nin": ["a", "b"]}

    third = sent_where(client, 2)
    assert third["updatedAt"] == {"$gte": {"__type": "Date", "iso": t2}}
    assert third["objectId"] == {"$nin": ["c"]}


def test_cursor_bounds_every_or_branch():
    t1 = "2024-01-01T00:00:00.000Z"
    client = fake_client(
        Response({"results": [{"objectId": "a", "updatedAt": t1, "createdAt": t1}]}, 200),
        Response({"results": []}, 200),
    )
    q = Query("Song", genre="rock", client=client).or_where(genre="jazz")
    assert q.each(lambda r: None, batch_size=5) == 1
    assert client.find_objects.call_count == 2

    cursor = {"updatedAt": {"$gte": {"__type": "Date", "iso": t1}}, "objectId": {"$nin": ["a"]}}
    assert sent_where(client, 1) == {
        "$or": [dict(genre="rock", **cursor), dict(genre="jazz", **cursor)]
    }
    # the original query is left untouched
    assert q.compile()["where"] == {"$or": [{"genre": "rock"}, {"genre": "jazz"}]}


def test_from_params_rebuilds_wire_query():
    q = Query.from_params(
        "Song",
        {"where": {"plays": {"$gt": 3}, "title": "x"}, "limit": 5, "order": "-plays", "keys": "title"},
    )
    assert q.compile() == {
        "where": {"plays": {"$gt": 3}, "title": "x"},
        "order": "-plays",
        "limit": 5,
        "keys": "title",
    }
    with pytest.raises(ValueError):
        Query.from_params("Song", {"where": {"loc": {"$nearSphere": {}}}})
