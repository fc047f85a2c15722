# tests/test_records.py
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from parsekit.errors import RecordNotSaved
from parsekit.http.response import Response
from parsekit.models.record import Record, Role, User
from parsekit.models.types import GeoPoint, Pointer, decode_value, encode_value, format_date


class Album(Record, parse_class="RecAlbum"):
    field_map = {"release_year": "releaseYear"}


STORED = {
    "objectId": "al1",
    "createdAt": "2024-01-01T00:00:00.000Z",
    "updatedAt": "2024-02-01T00:00:00.000Z",
    "title": "Abbey Road",
    "releaseYear": 1969,
    "ACL": {"*": {"read": True}},
}


def test_imported_record_is_clean():
    album = Album(STORED)
    assert album.id == "al1"
    assert album.title == "Abbey Road"
    assert album.release_year == 1969
    assert not album.is_dirty()
    assert album.existed


def test_set_tracks_old_and_new_values():
    album = Album(STORED)
    album.set("title", "Let It Be")
    assert album.changed == ["title"]
    assert album.changes() == {"title": ("Abbey Road", "Let It Be")}
    assert album.updates() == {"title": "Let It Be"}


def test_reverting_a_value_clears_the_change():
    album = Album(STORED)
    album["title"] = "Help!"
    album["title"] = "Abbey Road"
    assert not album.is_dirty()


def test_rollback_restores_persisted_values():
    album = Album(STORED)
    album.set("title", "Revolver")
    album.set("label", "Apple")
    album.rollback()
    assert album.title == "Abbey Road"
    assert album.get("label") is None
    assert not album.is_dirty()


def test_field_operations_are_sent_as_ops():
    album = Album(STORED)
    album.increment("plays", 2)
    album.add_unique("tags", "rock", "rock")
    album.unset("label")
    body = album.updates()
    assert body["plays"] == {"__op": "Increment", "amount": 2}
    assert body["tags"] == {"__op": "AddUnique", "objects": ["rock", "rock"]}
    assert body["label"] == {"__op": "Delete"}
    assert album.get("tags") == ["rock"]


def test_new_record_requests_create_with_default_acl():
    album = Album(title="Rubber Soul", release_year=1965)
    (req,) = album.change_requests()
    assert req.method == "POST"
    assert req.path == "classes/RecAlbum"
    assert req.body == {"title": "Rubber Soul", "releaseYear": 1965, "ACL": {"*": {"read": True}}}


def test_existing_record_requests_update_only_when_dirty():
    album = Album(STORED)
    assert album.change_requests() == []
    album.set("title", "Help!")
    (req,) = album.change_requests()
    assert (req.method, req.path) == ("PUT", "classes/RecAlbum/al1")


def test_build_generates_classes_for_unknown_names():
    rec = Record.build({"className": "RecUnknownThing", "objectId": "x1", "n": 1})
    assert rec.parse_class == "RecUnknownThing"
    assert Record.find_class("RecUnknownThing") is type(rec)
    assert Record.build({"objectId": "x1"}) is None
    assert Record.build("nope") is None


def test_decode_nested_types():
    value = decode_value(
        {
            "when": {"__type": "Date", "iso": "2024-03-04T05:06:07.089Z"},
            "artist": {"__type": "Pointer", "className": "Artist", "objectId": "a1"},
            "where": {"__type": "GeoPoint", "latitude": 1.5, "longitude": 2.5},
            "album": {"__type": "Object", "className": "RecAlbum", "objectId": "al2", "title": "Help!"},
        }
    )
    assert value["when"] == datetime(2024, 3, 4, 5, 6, 7, 89000, tzinfo=timezone.utc)
    assert value["artist"] == Pointer("Artist", "a1")
    assert value["where"] == GeoPoint(1.5, 2.5)
    assert isinstance(value["album"], Album)


def test_encode_records_as_pointers():
    album = Album(STORED)
    assert encode_value([album]) == [{"__type": "Pointer", "className": "RecAlbum", "objectId": "al1"}]
    assert format_date(datetime(2024, 1, 1, tzinfo=timezone.utc)) == "2024-01-01T00:00:00.000Z"


def test_geopoint_range_is_checked():
    with pytest.raises(ValueError):
        GeoPoint(91, 0)


def test_save_applies_server_fields():
    client = MagicMock()
    client.create_object.return_value = Response(
        {"objectId": "new1", "createdAt": "2024-05-05T00:00:00.000Z"}, 201
    )
    album = Album(title="Revolver")
    assert album.save(client)
    assert album.id == "new1"
    assert album.updated_at == album.created_at
    assert not album.is_dirty()
    client.create_object.assert_called_once()


def test_save_failure_can_raise():
    client = MagicMock()
    client.update_object.return_value = Response({"code": 142, "error": "nope"}, 400)
    album = Album(STORED)
    album.set("title", "x")
    assert album.save(client) is False
    with pytest.raises(RecordNotSaved):
        album.save(client, raise_on_error=True)
    assert album.is_dirty()


def test_role_before_save_forces_public_read_only():
    role = Role({"name": "Admins", "ACL": {"*": {"read": True, "write": True}}})
    (req,) = role.change_requests()
    assert req.path == "roles"
    assert req.body["ACL"] == {"*": {"read": True}}


def test_user_updates_never_send_session_token():
    user = User({"objectId": "u1", "username": "ann", "sessionToken": "r:1"})
    assert user.session_token == "r:1"
    user.set("sessionToken", "r:2")
    user.auth_data = {"anonymous": {"id": "x"}}
    body = user.updates()
    assert "sessionToken" not in body
    assert body["authData"] == {"anonymous": {"id": "x"}}
    assert user.is_anonymous


def test_pointer_requires_id():
    with pytest.raises(ValueError):
        Album().pointer()
    assert Album("al9").is_pointer
