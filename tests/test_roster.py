import threading

import pytest

from game_errors import CannotDeleteAdmin, NotAuthorized, PlayerNotFound, SessionNotFound
from game_models import ICONS, Player
from game_store import TABLE_GAME_STATE, TABLE_PLAYERS, TABLE_SUBMISSIONS, eq


def test_host_session_seats_captain(service):
    hosted = service.host_session("  Alice   Smith ", icon="🦄")

    state = service.get_game_state(hosted["session_code"])
    assert hosted["is_admin"] is True
    assert state.admin_id == hosted["player_id"]
    player = state.players[hosted["player_id"]]
    assert player.name == "Alice Smith"
    assert player.icon == "🦄"
    assert player.score == 0


def test_join_session_adds_player_with_defaults(service, make_session):
    code = make_session("Alice")
    joined = service.join_session(code, "", icon="not-an-icon")

    state = service.get_game_state(code)
    assert joined["is_admin"] is False
    assert joined["player_id"].startswith("player_")
    assert state.players[joined["player_id"]].name == "Player"
    assert state.players[joined["player_id"]].icon == ICONS[0]
    assert state.player_ids == ["alice", joined["player_id"]]


def test_rejoin_keeps_score_and_updates_name(service, store, make_session):
    code = make_session("Alice", "Bob")
    store.update(TABLE_PLAYERS, {"score": 2}, [eq("session_id", code), eq("id", "bob")])

    service.join_session(code, "Bobby", player_id="bob")

    state = service.get_game_state(code)
    assert len(state.players) == 2
    assert state.players["bob"].name == "Bobby"
    assert state.players["bob"].score == 2


def test_join_unknown_session(service):
    with pytest.raises(SessionNotFound):
        service.join_session("NOPE22", "Alice")


def test_first_joiner_claims_admin_when_unset(service):
    state = service.get_or_init_session("OPEN22")
    assert state.admin_id is None

    first = service.join_session("OPEN22", "Alice", player_id="alice")
    second = service.join_session("OPEN22", "Bob", player_id="bob")

    assert first["is_admin"] is True
    assert second["is_admin"] is False
    assert service.get_game_state("OPEN22").admin_id == "alice"


def test_claim_admin_fails_when_already_set(service, make_session):
    code = make_session("Alice", "Bob")
    assert service.claim_admin("bob", code) is False
    assert service.get_game_state(code).admin_id == "alice"


def test_claim_admin_requires_known_player(service):
    service.get_or_init_session("OPEN22")
    with pytest.raises(PlayerNotFound):
        service.claim_admin("ghost", "OPEN22")


def test_concurrent_claims_elect_exactly_one_admin(service):
    service.get_or_init_session("RACE22")
    for pid in ("alice", "bob"):
        service.add_player(Player(id=pid, name=pid.title()), "RACE22")

    barrier = threading.Barrier(2)
    outcomes = {}

    def _claim(pid):
        barrier.wait()
        outcomes[pid] = service.claim_admin(pid, "RACE22")

    threads = [threading.Thread(target=_claim, args=(pid,)) for pid in ("alice", "bob")]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sorted(outcomes.values()) == [False, True]
    winner = [pid for pid, won in outcomes.items() if won][0]
    assert service.get_game_state("RACE22").admin_id == winner


def test_delete_admin_is_refused_and_changes_nothing(service, store, make_session):
    code = make_session("Alice", "Bob", "Cara")
    before = (
        store.select(TABLE_GAME_STATE),
        store.select(TABLE_PLAYERS, order_by="joined_at"),
        store.select(TABLE_SUBMISSIONS),
    )

    with pytest.raises(CannotDeleteAdmin):
        service.delete_player(code, "alice", "alice")

    after = (
        store.select(TABLE_GAME_STATE),
        store.select(TABLE_PLAYERS, order_by="joined_at"),
        store.select(TABLE_SUBMISSIONS),
    )
    assert after == before


def test_delete_player_requires_captain(service, make_session):
    code = make_session("Alice", "Bob", "Cara")
    with pytest.raises(NotAuthorized):
        service.delete_player(code, "bob", "cara")


def test_delete_unknown_player(service, make_session):
    code = make_session("Alice", "Bob")
    with pytest.raises(PlayerNotFound):
        service.delete_player(code, "alice", "ghost")


def test_delete_player_cleans_round_lists(service, store, make_session):
    code = make_session("Alice", "Bob", "Cara")
    store.update(
        TABLE_GAME_STATE,
        {"selected_players": ["bob", "cara"], "round_winners": ["bob", "alice"]},
        [eq("session_id", code)],
    )
    store.upsert(
        TABLE_SUBMISSIONS,
        [{"id": "s-bob", "session_id": code, "player_id": "bob", "image_url": "u"}],
        on_conflict="id",
    )

    service.delete_player(code, "alice", "bob")

    state = service.get_game_state(code)
    assert "bob" not in state.players
    assert state.selected_players == ["cara"]
    assert state.round_winners == ["alice"]
    assert store.select(TABLE_SUBMISSIONS, [eq("player_id", "bob")]) == []


def test_transfer_captain(service, make_session):
    code = make_session("Alice", "Bob")

    with pytest.raises(PlayerNotFound):
        service.transfer_captain(code, "alice", "ghost")
    with pytest.raises(NotAuthorized):
        service.transfer_captain(code, "bob", "bob")

    service.transfer_captain(code, "alice", "bob")
    assert service.get_game_state(code).admin_id == "bob"
