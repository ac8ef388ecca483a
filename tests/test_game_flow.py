import threading

import pytest

from game_errors import InsufficientPlayers, NanoBananaError, NotAuthorized, PhaseConflict
from game_models import (
    CREATING_TIMER_SECONDS,
    PHASE_CREATING,
    PHASE_GAME_OVER,
    PHASE_LOBBY,
    PHASE_RESULTS,
    PHASE_SELECTING_PLAYERS,
    PHASE_VOTING,
    VOTING_TIMER_SECONDS,
)
from game_store import TABLE_GAME_STATE, TABLE_PLAYERS, TABLE_SUBMISSIONS, eq

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32


def _finish_round(service, code, admin_id="alice"):
    """Drive the current selecting_players round through voting to results."""
    state = service.start_timer(code, admin_id)
    for pid in state.selected_players:
        service.upload_submission(code, pid, PNG_BYTES, "image/png", "art.png")
    state = service.get_game_state(code)
    target = state.submissions[state.selected_players[0]].id
    for voter in state.eligible_voters():
        service.submit_vote(code, voter, target)
    state = service.get_game_state(code)
    assert state.phase == PHASE_RESULTS
    return state


def test_start_round_requires_captain_and_known_tier(service, make_session):
    code = make_session("Alice", "Bob")
    with pytest.raises(NotAuthorized):
        service.start_round(code, "bob", "easy")
    with pytest.raises(NanoBananaError) as excinfo:
        service.start_round(code, "alice", "legendary")
    assert excinfo.value.status_code == 400
    assert service.get_game_state(code).phase == PHASE_LOBBY


def test_start_round_needs_two_players(service, make_session):
    code = make_session("Alice")
    with pytest.raises(InsufficientPlayers):
        service.start_round(code, "alice", "easy")


def test_medium_round_needs_two_non_admin_players(service, store, make_session):
    code = make_session("Alice", "Bob")
    before = store.select(TABLE_GAME_STATE)

    with pytest.raises(InsufficientPlayers):
        service.start_round(code, "alice", "medium")
    assert store.select(TABLE_GAME_STATE) == before


def test_medium_round_uses_score_pool(service, store, make_session):
    code = make_session("Alice", "Bob", "Cara", "Dan", "Eve", "Finn")
    for pid, score in {"bob": 5, "cara": 4, "dan": 3, "eve": 2, "finn": 0}.items():
        store.update(TABLE_PLAYERS, {"score": score}, [eq("session_id", code), eq("id", pid)])

    state = service.start_round(code, "alice", "medium")

    assert state.round_winners == ["bob", "cara", "dan", "eve"]
    assert set(state.selected_players) <= {"bob", "cara", "dan", "eve"}
    assert state.current_round == "medium"


def test_round_gets_matching_prompt(service, category_bank, make_session):
    category_bank.import_csv("category,image_descr\nhard,A dragon\neasy,A banana\n")
    code = make_session("Alice", "Bob")

    state = service.start_round(code, "alice", "easy")
    assert state.current_category_image_descr == "A banana"


def test_round_without_prompts_still_starts(service, make_session):
    code = make_session("Alice", "Bob")
    state = service.start_round(code, "alice", "easy")
    assert state.current_category_image_descr is None
    assert state.phase == PHASE_SELECTING_PLAYERS


def test_start_timer_only_after_selection(service, make_session):
    code = make_session("Alice", "Bob")
    with pytest.raises(PhaseConflict):
        service.start_timer(code, "alice")

    service.start_round(code, "alice", "easy")
    state = service.start_timer(code, "alice")
    assert state.phase == PHASE_CREATING
    assert state.timer_duration == CREATING_TIMER_SECONDS


def test_start_round_blocked_mid_round(service, make_session):
    code = make_session("Alice", "Bob", "Cara")
    service.start_round(code, "alice", "easy")
    service.start_timer(code, "alice")
    with pytest.raises(PhaseConflict):
        service.start_round(code, "alice", "easy")


def test_new_round_clears_previous_submissions(service, store, make_session):
    code = make_session("Alice", "Bob", "Cara")
    service.start_round(code, "alice", "easy")
    _finish_round(service, code)
    assert len(store.select(TABLE_SUBMISSIONS, [eq("session_id", code)])) == 2

    state = service.next_round(code, "alice")

    assert state.round_number == 2
    assert state.submissions == {}
    assert store.select(TABLE_SUBMISSIONS, [eq("session_id", code)]) == []


def test_easy_rotation_covers_everyone_before_repeats(service, make_session):
    names = ["Alice", "Bob", "Cara", "Dan", "Eve"]
    code = make_session(*names)
    rounds = []

    for _ in range(3):
        state = service.start_round(code, "alice", "easy")
        newcomers = set(state.selected_players) - set(state.easy_round_players)
        assert newcomers, "every easy round brings in someone new"
        rounds.append(state.selected_players)
        state = _finish_round(service, code)

    assert sorted(state.easy_round_players) == [name.lower() for name in names]
    assert len(state.easy_round_players) == len(set(state.easy_round_players))
    assert "alice" in rounds[0]


def test_next_round_walks_tiers_then_ends(service, make_session):
    code = make_session("Alice", "Bob", "Cara")
    service.start_round(code, "alice", "easy")
    _finish_round(service, code)

    with pytest.raises(PhaseConflict):
        service.start_timer(code, "alice")

    state = service.next_round(code, "alice")
    assert state.current_round == "medium"
    assert sorted(state.selected_players) == ["bob", "cara"]
    _finish_round(service, code)

    state = service.next_round(code, "alice")
    assert state.current_round == "hard"
    assert sorted(state.selected_players) == ["bob", "cara"]
    _finish_round(service, code)

    state = service.next_round(code, "alice")
    assert state.phase == PHASE_GAME_OVER
    assert state.admin_id == "alice"


def test_next_round_only_from_results(service, make_session):
    code = make_session("Alice", "Bob")
    with pytest.raises(PhaseConflict):
        service.next_round(code, "alice")


def test_creating_timer_expiry_opens_voting(service, clock, make_session):
    code = make_session("Alice", "Bob", "Cara")
    service.start_round(code, "alice", "easy")
    service.start_timer(code, "alice")

    assert service.handle_timer_expired(code) is False
    clock.advance(CREATING_TIMER_SECONDS + 1)
    assert service.handle_timer_expired(code) is True

    state = service.get_game_state(code)
    assert state.phase == PHASE_VOTING
    assert state.timer_duration == VOTING_TIMER_SECONDS
    assert service.handle_timer_expired(code) is False


def test_voting_timer_expiry_consolidates(service, clock, make_session):
    code = make_session("Alice", "Bob", "Cara", "Dan")
    state = service.start_round(code, "alice", "easy")
    service.start_timer(code, "alice")
    for pid in state.selected_players:
        service.upload_submission(code, pid, PNG_BYTES, "image/png", "art.png")
    state = service.get_game_state(code)
    winner = state.selected_players[1]
    service.submit_vote(code, state.eligible_voters()[0], state.submissions[winner].id)

    clock.advance(VOTING_TIMER_SECONDS + 1)
    assert service.handle_timer_expired(code) is True

    state = service.get_game_state(code)
    assert state.phase == PHASE_RESULTS
    assert state.round_winners == [winner]
    assert state.players[winner].score == 1


def test_timer_expiry_ignored_in_other_phases(service, clock, make_session):
    code = make_session("Alice", "Bob")
    clock.advance(3600)
    assert service.handle_timer_expired(code) is False


def test_soft_reset_keeps_captain_only(service, store, make_session):
    code = make_session("Alice", "Bob", "Cara")
    service.start_round(code, "alice", "easy")
    _finish_round(service, code)

    with pytest.raises(NotAuthorized):
        service.reset_game(code, "bob")
    state = service.reset_game(code, "alice")

    assert state.phase == PHASE_LOBBY
    assert state.admin_id == "alice"
    assert state.player_ids == ["alice"]
    assert state.round_number == 0
    assert state.current_round is None
    assert state.selected_players == []
    assert state.round_winners == []
    assert state.easy_round_players == []
    assert state.current_category_image_descr is None
    assert store.select(TABLE_SUBMISSIONS, [eq("session_id", code)]) == []


def test_end_game_clears_captain(service, make_session):
    code = make_session("Alice", "Bob")
    state = service.end_game(code, "alice")
    assert state.phase == PHASE_GAME_OVER
    assert state.admin_id is None
    assert state.player_ids == ["alice", "bob"]


def test_complete_reset_requires_captain(service, store, make_session):
    code = make_session("Alice", "Bob")
    with pytest.raises(NotAuthorized):
        service.complete_reset(code, "bob")
    assert len(store.select(TABLE_PLAYERS, [eq("session_id", code)])) == 2

    state = service.complete_reset(code, "alice")
    assert state.admin_id is None
    assert state.phase == PHASE_LOBBY
    assert state.players == {}


def test_wait_for_change_returns_immediately_on_stale_revision(service, make_session):
    code = make_session("Alice", "Bob")
    state = service.wait_for_change(code, "not-a-revision", timeout=5)
    assert state.player_ids == ["alice", "bob"]


def test_wait_for_change_wakes_on_write(service, make_session):
    code = make_session("Alice", "Bob")
    revision = service.get_game_state(code).revision()

    timer = threading.Timer(0.2, lambda: service.join_session(code, "Cara", player_id="cara"))
    timer.start()
    try:
        state = service.wait_for_change(code, revision, timeout=5)
    finally:
        timer.join()

    assert "cara" in state.players
    assert state.revision() != revision


def test_wait_for_change_times_out_unchanged(service, make_session):
    code = make_session("Alice", "Bob")
    revision = service.get_game_state(code).revision()
    state = service.wait_for_change(code, revision, timeout=0.2)
    assert state.revision() == revision
