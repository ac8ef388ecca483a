from __future__ import annotations

import logging
import random
import threading
from typing import Callable, Optional

from banana_service_core import BananaServiceCore
from categories import CategoryBank
from game_errors import (
    CannotDeleteAdmin,
    InsufficientPlayers,
    NanoBananaError,
    NotAuthorized,
    PhaseConflict,
    PlayerNotFound,
    StoreFailure,
)
from game_models import (
    CREATING_TIMER_SECONDS,
    ICONS,
    PHASE_CREATING,
    PHASE_GAME_OVER,
    PHASE_LOBBY,
    PHASE_RESULTS,
    PHASE_SELECTING_PLAYERS,
    PHASE_VOTING,
    ROUND_EASY,
    ROUND_MEDIUM,
    ROUND_TYPES,
    VOTING_TIMER_SECONDS,
    GameState,
    Player,
    Submission,
)
from game_store import (
    TABLE_GAME_STATE,
    TABLE_PLAYERS,
    TABLE_SUBMISSIONS,
    GameStore,
    eq,
    is_null,
    neq,
)
from image_storage import ImageStorage
from round_selection import (
    COMPETITORS_PER_ROUND,
    medium_pool,
    next_round_type,
    select_competitors,
)
from round_timer import is_expired, now_ms

logger = logging.getLogger(__name__)


class NanoBananaService(BananaServiceCore):
    LONG_POLL_SECONDS = 25
    LONG_POLL_RECHECK_SECONDS = 1.0
    VOTE_WRITE_ATTEMPTS = 5
    ROUND_STARTABLE_PHASES = (PHASE_LOBBY, PHASE_SELECTING_PLAYERS, PHASE_RESULTS)

    def __init__(
        self,
        *,
        store: GameStore,
        categories: CategoryBank,
        image_storage: ImageStorage,
        rng: Optional[random.Random] = None,
        clock: Callable[[], int] = now_ms,
    ):
        super().__init__(store=store, rng=rng, clock=clock)
        self.categories = categories
        self.image_storage = image_storage

    # ------------------------
    # Public API helpers
    # ------------------------

    def bootstrap(self) -> dict:
        return {
            "game_name": self.GAME_NAME,
            "icons": list(ICONS),
            "round_types": list(ROUND_TYPES),
            "creating_timer_seconds": CREATING_TIMER_SECONDS,
            "voting_timer_seconds": VOTING_TIMER_SECONDS,
            "long_poll_seconds": self.LONG_POLL_SECONDS,
        }

    def host_session(
        self, player_name: str, icon: Optional[str] = None, player_id: Optional[str] = None
    ) -> dict:
        """Create a session and seat its creator as captain."""
        player = Player(
            id=self._normalize_player_id(player_id) or self.new_player_id(),
            name=self._sanitize_player_name(player_name),
            icon=self._normalize_icon(icon),
            joined_at=self.clock(),
        )
        code = self.create_session(player.id)
        self.add_player(player, code)
        return {
            "session_code": code,
            "player_id": player.id,
            "display_name": player.name,
            "icon": player.icon,
            "is_admin": True,
        }

    def join_session(
        self,
        session_code: str,
        player_name: str,
        icon: Optional[str] = None,
        player_id: Optional[str] = None,
    ) -> dict:
        state = self._require_session(session_code)
        code = state.session_code
        requested_id = self._normalize_player_id(player_id)
        display_name = self._sanitize_player_name(player_name)
        glyph = self._normalize_icon(icon)

        existing = state.players.get(requested_id) if requested_id else None
        if existing:
            self.store.update(
                TABLE_PLAYERS,
                {"name": display_name, "icon": glyph},
                [eq("id", existing.id), eq("session_id", code)],
            )
            player_id = existing.id
        else:
            player = Player(
                id=requested_id or self.new_player_id(),
                name=display_name,
                icon=glyph,
                joined_at=self.clock(),
            )
            self.add_player(player, code)
            player_id = player.id
            logger.info("Player %s joined session %s", player_id, code)

        is_admin = state.admin_id == player_id
        if not state.admin_id:
            is_admin = self.claim_admin(player_id, code)

        return {
            "session_code": code,
            "player_id": player_id,
            "display_name": display_name,
            "icon": glyph,
            "is_admin": is_admin,
        }

    # ------------------------
    # Player roster
    # ------------------------

    def add_player(self, player: Player, session_code: str) -> Player:
        code = self._require_code(session_code)
        if not player.joined_at:
            player.joined_at = self.clock()
        self.store.upsert(TABLE_PLAYERS, [player.to_row(code)], on_conflict="id,session_id")
        return player

    def claim_admin(self, player_id: str, session_code: str) -> bool:
        """Become captain if nobody is; only one concurrent claimer wins."""
        state = self._require_session(session_code)
        player_id = self._normalize_player_id(player_id)
        if player_id not in state.players:
            raise PlayerNotFound("Player not found in this session.")
        if state.admin_id:
            return False
        claimed = self._patch_session(
            state.session_code, {"admin_id": player_id}, is_null("admin_id")
        )
        if claimed:
            logger.info("Player %s claimed admin of %s", player_id, state.session_code)
        return bool(claimed)

    def delete_player(self, session_code: str, actor_id: str, player_id: str) -> None:
        state = self._require_session(session_code)
        self._require_admin(state, actor_id)
        code = state.session_code
        player_id = self._normalize_player_id(player_id)
        if player_id == state.admin_id:
            raise CannotDeleteAdmin("The captain cannot be removed.")
        if player_id not in state.players:
            raise PlayerNotFound("Player not found in this session.")

        self.store.delete(
            TABLE_SUBMISSIONS, [eq("session_id", code), eq("player_id", player_id)]
        )
        self.store.delete(TABLE_PLAYERS, [eq("session_id", code), eq("id", player_id)])
        logger.info("Removed player %s from session %s", player_id, code)

        if player_id in state.selected_players:
            self._best_effort(
                "remove deleted player from selected players",
                code,
                {"selected_players": [p for p in state.selected_players if p != player_id]},
            )
        if player_id in state.round_winners:
            self._best_effort(
                "remove deleted player from round winners",
                code,
                {"round_winners": [p for p in state.round_winners if p != player_id]},
            )

    def transfer_captain(self, session_code: str, actor_id: str, new_admin_id: str) -> None:
        state = self._require_session(session_code)
        self._require_admin(state, actor_id)
        new_admin_id = self._normalize_player_id(new_admin_id)
        if new_admin_id not in state.players:
            raise PlayerNotFound("Player not found in this session.")
        self._patch_session(state.session_code, {"admin_id": new_admin_id})
        logger.info(
            "Captain of %s transferred from %s to %s",
            state.session_code,
            state.admin_id,
            new_admin_id,
        )

    # ------------------------
    # Rounds
    # ------------------------

    def start_round(self, session_code: str, actor_id: str, round_type: str) -> GameState:
        state = self._require_session(session_code)
        self._require_admin(state, actor_id)
        round_type = str(round_type or "").strip().lower()
        if round_type not in ROUND_TYPES:
            raise NanoBananaError(
                f"Unknown round type: {round_type or '(empty)'}.",
                400,
                details={"round_types": list(ROUND_TYPES)},
            )
        if state.phase not in self.ROUND_STARTABLE_PHASES:
            raise PhaseConflict(f"Cannot start a round during the {state.phase} phase.")
        return self._start_round(state, round_type)

    def _start_round(self, state: GameState, round_type: str) -> GameState:
        code = state.session_code
        patch: dict = {}
        if round_type == ROUND_MEDIUM:
            pool = medium_pool(state)
            if len(pool) < COMPETITORS_PER_ROUND:
                raise InsufficientPlayers(
                    "Not enough players for the medium round. "
                    "Need at least 2 players besides the captain.",
                    details={"eligible": len(pool)},
                )
            state.round_winners = pool
            patch["round_winners"] = pool

        selected = self.select_random_players(state, round_type)
        if len(selected) < COMPETITORS_PER_ROUND:
            raise InsufficientPlayers(
                "At least 2 players are needed to start a round.",
                details={"players": len(state.players)},
            )
        prompt = self.categories.pick_prompt(round_type)

        patch.update(
            {
                "phase": PHASE_SELECTING_PLAYERS,
                "current_round": round_type,
                "round_number": state.round_number + 1,
                "selected_players": selected,
                "current_category_image_descr": prompt,
                "timer_started_at": None,
                "timer_duration": CREATING_TIMER_SECONDS,
            }
        )
        changed = self._patch_session(
            code, patch, eq("round_number", state.round_number)
        )
        if not changed:
            raise PhaseConflict("Another round was started at the same time.")
        logger.info(
            "Session %s started %s round %s with %s",
            code,
            round_type,
            state.round_number + 1,
            ", ".join(selected),
        )

        try:
            self.store.delete(
                TABLE_SUBMISSIONS,
                [eq("session_id", code), neq("round_number", state.round_number + 1)],
            )
        except StoreFailure as exc:
            logger.warning("Could not clear old submissions for %s: %s", code, exc)
        return self._require_session(code)

    def select_random_players(self, state: GameState, round_type: str) -> list[str]:
        return select_competitors(state, round_type, self.rng)

    def start_timer(self, session_code: str, actor_id: str) -> GameState:
        state = self._require_session(session_code)
        self._require_admin(state, actor_id)
        if state.phase != PHASE_SELECTING_PLAYERS:
            raise PhaseConflict("The creation timer starts once players are selected.")
        changed = self._patch_session(
            state.session_code,
            {
                "phase": PHASE_CREATING,
                "timer_started_at": self.clock(),
                "timer_duration": CREATING_TIMER_SECONDS,
            },
            eq("phase", PHASE_SELECTING_PLAYERS),
        )
        if not changed:
            raise PhaseConflict("The round already moved on.")
        return self._require_session(state.session_code)

    def next_round(self, session_code: str, actor_id: str) -> GameState:
        state = self._require_session(session_code)
        self._require_admin(state, actor_id)
        if state.phase != PHASE_RESULTS:
            raise PhaseConflict("The next round starts from the results screen.")

        upcoming = next_round_type(state.current_round)
        if upcoming is None:
            self._patch_session(
                state.session_code,
                {"phase": PHASE_GAME_OVER, "timer_started_at": None},
                eq("phase", PHASE_RESULTS),
            )
            logger.info("Session %s finished its final round", state.session_code)
            return self._require_session(state.session_code)
        return self._start_round(state, upcoming)

    # ------------------------
    # Submissions and voting
    # ------------------------

    def upload_submission(
        self,
        session_code: str,
        player_id: str,
        data: bytes,
        content_type: str,
        filename: str = "image",
    ) -> dict:
        state = self._require_session(session_code)
        code = state.session_code
        player_id = self._normalize_player_id(player_id)
        if player_id not in state.players:
            raise PlayerNotFound("Player not found in this session.")
        if state.phase != PHASE_CREATING:
            raise PhaseConflict("Images are only accepted while the round is creating.")
        if player_id not in state.selected_players:
            raise NotAuthorized("Only this round's competitors can upload.")

        uploaded_at = self.clock()
        image_url = self.image_storage.save(
            f"{code}/{player_id}_{uploaded_at}_{filename or 'image'}", data, content_type
        )
        submission = Submission(
            id=f"{code}:{player_id}:{state.round_number}",
            player_id=player_id,
            image_url=image_url,
            uploaded_at=uploaded_at,
            votes=[],
            round_number=state.round_number,
        )
        self.store.upsert(
            TABLE_SUBMISSIONS,
            [
                {
                    "id": submission.id,
                    "session_id": code,
                    "player_id": player_id,
                    "image_url": image_url,
                    "uploaded_at": uploaded_at,
                    "votes": [],
                    "round_number": state.round_number,
                }
            ],
            on_conflict="id",
        )
        logger.info("Player %s uploaded a submission in %s", player_id, code)
        transitioned = self.check_submissions_and_transition(code)
        return {"submission": submission, "transitioned": transitioned}

    def check_submissions_and_transition(self, session_code: str) -> bool:
        """Move creating -> voting once both competitors have submitted."""
        state = self._require_session(session_code)
        if state.phase != PHASE_CREATING or len(state.selected_players) != 2:
            return False
        if not all(pid in state.submissions for pid in state.selected_players):
            return False
        return self._open_voting(state.session_code)

    def _open_voting(self, code: str) -> bool:
        changed = self._patch_session(
            code,
            {
                "phase": PHASE_VOTING,
                "timer_started_at": self.clock(),
                "timer_duration": VOTING_TIMER_SECONDS,
            },
            eq("phase", PHASE_CREATING),
        )
        if changed:
            logger.info("Session %s moved to voting", code)
        return bool(changed)

    def submit_vote(self, session_code: str, voter_id: str, submission_id: str) -> dict:
        state = self._require_session(session_code)
        result = {"recorded": False, "consolidated": False, "winner_id": None}
        if state.phase != PHASE_VOTING:
            return result

        voter_id = self._normalize_player_id(voter_id)
        if voter_id not in state.players:
            raise PlayerNotFound("Player not found in this session.")
        if voter_id in state.selected_players:
            raise NotAuthorized("Competitors cannot vote in their own round.")
        submission_id = str(submission_id or "")

        for _ in range(self.VOTE_WRITE_ATTEMPTS):
            submission = state.submission_by_id(submission_id)
            if submission is None:
                raise NanoBananaError("Submission not found.", 404)
            # One vote per voter per round, whichever entry it went to.
            if any(voter_id in entry.votes for entry in state.submissions.values()):
                return result

            votes = submission.votes + [voter_id]
            changed = self.store.update(
                TABLE_SUBMISSIONS,
                {"votes": votes},
                [
                    eq("id", submission.id),
                    eq("session_id", state.session_code),
                    eq("votes", submission.votes),
                ],
            )
            if changed:
                submission.votes = votes
                break

            state = self._require_session(state.session_code)
            if state.phase != PHASE_VOTING:
                return result
        else:
            raise PhaseConflict("Too many votes at once; try again.")
        result["recorded"] = True

        # Decide on the in-memory view so a lagging read cannot hide this vote.
        if self.check_all_players_voted(state):
            winner_id, claimed = self._consolidate(state)
            result["consolidated"] = claimed
            result["winner_id"] = winner_id
        return result

    @staticmethod
    def check_all_players_voted(state: GameState) -> bool:
        if state.phase != PHASE_VOTING:
            return False
        eligible = state.eligible_voters()
        if not eligible:
            return False
        voted = set()
        for submission in state.submissions.values():
            voted.update(submission.votes)
        return set(eligible).issubset(voted)

    def calculate_round_winner(self, session_code: str) -> Optional[str]:
        return self._round_winner(self._require_session(session_code))

    @staticmethod
    def _round_winner(state: GameState) -> Optional[str]:
        """Most votes wins; ties go to the earliest upload, then the smaller id."""
        voted = [s for s in state.submissions.values() if s.vote_count > 0]
        if not voted:
            return None
        best = min(voted, key=lambda s: (-s.vote_count, s.uploaded_at, s.id))
        return best.player_id

    def consolidate_voting_scores(self, session_code: str) -> Optional[str]:
        winner_id, _ = self._consolidate(self._require_session(session_code))
        return winner_id

    def _consolidate(self, state: GameState) -> tuple[Optional[str], bool]:
        if state.phase != PHASE_VOTING:
            return None, False
        winner_id = self._round_winner(state)
        if winner_id is None:
            changed = self._patch_session(
                state.session_code,
                {"phase": PHASE_RESULTS, "timer_started_at": None},
                eq("phase", PHASE_VOTING),
            )
            logger.info("Session %s closed voting with no votes", state.session_code)
            return None, bool(changed)

        claimed = self.advance_winner(state, winner_id)
        if claimed:
            self._award_point(state, winner_id)
        return winner_id, claimed

    def advance_winner(self, state: GameState, winner_id: str) -> bool:
        """Record the winner and close voting; False when another caller already did."""
        round_winners = state.round_winners + [winner_id]
        patch = {
            "phase": PHASE_RESULTS,
            "timer_started_at": None,
            "round_winners": round_winners,
        }
        if state.current_round == ROUND_EASY:
            easy_players = list(state.easy_round_players)
            for pid in state.selected_players:
                if pid not in easy_players:
                    easy_players.append(pid)
            patch["easy_round_players"] = easy_players

        changed = self._patch_session(state.session_code, patch, eq("phase", PHASE_VOTING))
        if not changed:
            logger.info("Voting in %s was already consolidated", state.session_code)
            return False
        state.phase = PHASE_RESULTS
        state.timer_started_at = None
        state.round_winners = round_winners
        state.easy_round_players = patch.get("easy_round_players", state.easy_round_players)
        return True

    def _award_point(self, state: GameState, winner_id: str) -> None:
        rows = self.store.select(
            TABLE_PLAYERS, [eq("session_id", state.session_code), eq("id", winner_id)]
        )
        if not rows:
            logger.warning(
                "Round winner %s left %s before scoring", winner_id, state.session_code
            )
            return
        score = max(int(rows[0].get("score") or 0), 0) + 1
        self.store.update(
            TABLE_PLAYERS,
            {"score": score},
            [eq("session_id", state.session_code), eq("id", winner_id)],
        )
        logger.info(
            "Player %s won the round in %s (score %s)", winner_id, state.session_code, score
        )

    def end_voting_early(self, session_code: str, actor_id: str) -> Optional[str]:
        state = self._require_session(session_code)
        self._require_admin(state, actor_id)
        if state.phase != PHASE_VOTING:
            raise PhaseConflict("Voting is not in progress.")
        winner_id, _ = self._consolidate(state)
        return winner_id

    def handle_timer_expired(self, session_code: str) -> bool:
        """One-shot timer completion; re-checked against the stored start time."""
        state = self._require_session(session_code)
        if not is_expired(state.timer_started_at, state.timer_duration, self.clock()):
            return False
        if state.phase == PHASE_CREATING:
            return self._open_voting(state.session_code)
        if state.phase == PHASE_VOTING:
            _, claimed = self._consolidate(state)
            return claimed
        return False

    # ------------------------
    # Resets
    # ------------------------

    def reset_game(self, session_code: str, actor_id: str) -> GameState:
        """Back to the lobby with the same captain; everyone else is removed."""
        state = self._require_session(session_code)
        self._require_admin(state, actor_id)
        code = state.session_code
        self._patch_session(code, self._cleared_round_fields())
        self.store.delete(TABLE_SUBMISSIONS, [eq("session_id", code)])
        self.store.delete(
            TABLE_PLAYERS, [eq("session_id", code), neq("id", state.admin_id)]
        )
        logger.info("Session %s was reset by %s", code, state.admin_id)
        return self._require_session(code)

    def end_game(self, session_code: str, actor_id: str) -> GameState:
        state = self._require_session(session_code)
        self._require_admin(state, actor_id)
        self._patch_session(
            state.session_code,
            {"phase": PHASE_GAME_OVER, "admin_id": None, "timer_started_at": None},
        )
        logger.info("Session %s was ended by %s", state.session_code, state.admin_id)
        return self._require_session(state.session_code)

    def complete_reset(self, session_code: str, actor_id: str) -> GameState:
        state = self._require_session(session_code)
        self._require_admin(state, actor_id)
        code = state.session_code
        patch = self._cleared_round_fields()
        patch["admin_id"] = None
        self._patch_session(code, patch)
        self.store.delete(TABLE_SUBMISSIONS, [eq("session_id", code)])
        self.store.delete(TABLE_PLAYERS, [eq("session_id", code)])
        logger.warning("Session %s was completely reset by %s", code, actor_id)
        return self._require_session(code)

    @staticmethod
    def _cleared_round_fields() -> dict:
        return {
            "phase": PHASE_LOBBY,
            "current_round": None,
            "round_number": 0,
            "selected_players": [],
            "timer_started_at": None,
            "timer_duration": CREATING_TIMER_SECONDS,
            "round_winners": [],
            "easy_round_players": [],
            "current_category_image_descr": None,
        }

    # ------------------------
    # Categories
    # ------------------------

    def import_categories(self, session_code: str, actor_id: str, csv_text: str) -> dict:
        state = self._require_session(session_code)
        self._require_admin(state, actor_id)
        return self.categories.import_csv(csv_text)

    # ------------------------
    # Change notification
    # ------------------------

    def wait_for_change(
        self,
        session_code: str,
        revision: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> GameState:
        """Return the session view once its revision differs from ``revision``."""
        state = self._require_session(session_code)
        if not revision or state.revision() != revision:
            return state

        code = state.session_code
        timeout = self.LONG_POLL_SECONDS if timeout is None else max(float(timeout), 0.0)
        changed = threading.Event()

        def _on_change(table: str, event: str, rows: list) -> None:
            changed.set()

        unsubscribers = [
            self.store.subscribe_changes(table, _on_change, [eq("session_id", code)])
            for table in (TABLE_GAME_STATE, TABLE_PLAYERS, TABLE_SUBMISSIONS)
        ]
        try:
            remaining = timeout
            while remaining > 0:
                # Periodic re-reads also catch writes made outside this process.
                wait_for = min(self.LONG_POLL_RECHECK_SECONDS, remaining)
                changed.wait(wait_for)
                remaining -= wait_for
                changed.clear()
                state = self._require_session(code)
                if state.revision() != revision:
                    break
        finally:
            for unsubscribe in unsubscribers:
                unsubscribe()
        return state

    # ------------------------
    # Internal helpers
    # ------------------------

    def _best_effort(self, action: str, code: str, patch: dict) -> None:
        try:
            self._patch_session(code, patch)
        except StoreFailure as exc:
            logger.warning("Could not %s in %s: %s", action, code, exc)
