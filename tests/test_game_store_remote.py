import json

import pytest
import requests

from app_config import GameConfig
from game_errors import StoreFailure
from game_store import (
    TABLE_CATEGORIES,
    TABLE_GAME_STATE,
    TABLE_SUBMISSIONS,
    RestGameStore,
    SQLiteGameStore,
    eq,
    eq_or_null,
    get_game_store,
    in_,
    is_null,
)


class FakeResponse:
    def __init__(self, payload, status_code=200):
        self._payload = payload
        self.status_code = status_code
        self.text = json.dumps(payload) if payload is not None else ""
        self.content = self.text.encode("utf-8")

    def json(self):
        return self._payload


@pytest.fixture
def calls(monkeypatch):
    recorded = []
    responses = []

    def fake_request(method, url, params=None, json=None, headers=None, timeout=10):
        recorded.append(
            {"method": method, "url": url, "params": params, "json": json, "headers": headers}
        )
        return responses.pop(0) if responses else FakeResponse([])

    monkeypatch.setattr("game_store.requests.request", fake_request)
    return recorded, responses


def _store():
    return RestGameStore("https://demo.supabase.co/", "anon-key")


def test_select_builds_postgrest_query(calls):
    recorded, responses = calls
    responses.append(FakeResponse([{"round_type": "easy", "image_descr": "Cat"}]))

    rows = _store().select(
        TABLE_CATEGORIES, [eq_or_null("round_type", "easy")], order_by="-uploaded_at"
    )

    assert rows == [{"round_type": "easy", "image_descr": "Cat"}]
    call = recorded[0]
    assert call["method"] == "GET"
    assert call["url"] == "https://demo.supabase.co/rest/v1/categories"
    assert call["params"] == [
        ("select", "*"),
        ("or", "(round_type.eq.easy,round_type.is.null)"),
        ("order", "uploaded_at.desc"),
    ]
    assert call["headers"]["apikey"] == "anon-key"
    assert call["headers"]["Authorization"] == "Bearer anon-key"


def test_update_sends_patch_with_filters(calls):
    recorded, responses = calls
    responses.append(FakeResponse([{"session_id": "ABC234", "admin_id": "alice"}]))

    updated = _store().update(
        TABLE_GAME_STATE,
        {"admin_id": "alice"},
        [eq("session_id", "ABC234"), is_null("admin_id")],
    )

    assert updated[0]["admin_id"] == "alice"
    call = recorded[0]
    assert call["method"] == "PATCH"
    assert call["params"] == [("session_id", "eq.ABC234"), ("admin_id", "is.null")]
    assert call["json"] == {"admin_id": "alice"}
    assert call["headers"]["Prefer"] == "return=representation"


def test_upsert_ignore_duplicates_uses_resolution_header(calls):
    recorded, _ = calls

    written = _store().upsert(
        TABLE_GAME_STATE,
        [{"session_id": "ABC234"}],
        on_conflict="session_id",
        ignore_duplicates=True,
    )

    assert written == []
    call = recorded[0]
    assert call["method"] == "POST"
    assert call["params"] == [("on_conflict", "session_id")]
    assert call["headers"]["Prefer"] == "resolution=ignore-duplicates,return=representation"


def test_in_filter_quotes_reserved_characters(calls):
    recorded, _ = calls
    _store().delete(TABLE_CATEGORIES, [in_("image_descr", ["plain", "a, b"])])
    assert recorded[0]["params"] == [("image_descr", 'in.(plain,"a, b")')]


def test_http_error_becomes_store_failure(calls):
    _, responses = calls
    responses.append(FakeResponse({"message": "permission denied"}, status_code=401))

    with pytest.raises(StoreFailure) as excinfo:
        _store().select(TABLE_GAME_STATE)
    assert excinfo.value.details["status"] == 401


def test_network_error_becomes_store_failure(monkeypatch):
    def fake_request(*args, **kwargs):
        raise requests.ConnectionError("offline")

    monkeypatch.setattr("game_store.requests.request", fake_request)
    with pytest.raises(StoreFailure):
        _store().select(TABLE_GAME_STATE)


def test_remote_writes_notify_local_subscribers(calls):
    _, responses = calls
    responses.append(FakeResponse([{"session_id": "ABC234", "phase": "voting"}]))
    store = _store()
    events = []
    store.subscribe_changes(
        TABLE_GAME_STATE,
        lambda table, event, rows: events.append(event),
        [eq("session_id", "ABC234")],
    )

    store.update(TABLE_GAME_STATE, {"phase": "voting"}, [eq("session_id", "ABC234")])
    assert events == ["UPDATE"]


def test_store_factory_prefers_hosted_backend(tmp_path):
    hosted = get_game_store(
        GameConfig(supabase_url="https://demo.supabase.co", supabase_key="k")
    )
    local = get_game_store(GameConfig(db_path=str(tmp_path / "local.db")))
    half = get_game_store(
        GameConfig(db_path=str(tmp_path / "half.db"), supabase_url="https://demo.supabase.co")
    )

    assert isinstance(hosted, RestGameStore)
    assert isinstance(local, SQLiteGameStore)
    assert isinstance(half, SQLiteGameStore)


def test_list_values_filter_as_json(calls):
    recorded, _ = calls
    _store().update(
        TABLE_SUBMISSIONS,
        {"votes": ["alice", "bob"]},
        [eq("id", "ABC234:cara:1"), eq("votes", ["alice"])],
    )
    assert recorded[0]["params"] == [
        ("id", "eq.ABC234:cara:1"),
        ("votes", 'eq.["alice"]'),
    ]
