from __future__ import annotations

import logging
import random
import re
from typing import Callable, Optional

from game_errors import (
    NanoBananaError,
    NotAuthorized,
    SessionCreationExhausted,
    SessionNotFound,
    StoreFailure,
)
from game_models import CREATING_TIMER_SECONDS, ICONS, PHASE_LOBBY, GameState
from game_store import (
    TABLE_GAME_STATE,
    TABLE_PLAYERS,
    TABLE_SUBMISSIONS,
    Filter,
    GameStore,
    eq,
)
from round_timer import now_ms

logger = logging.getLogger(__name__)


class BananaServiceCore:
    """Session registry and the plumbing every game operation shares."""

    GAME_NAME = "Nano Banana Challenge"
    CREATE_SESSION_CODE_ATTEMPTS = 10
    SESSION_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
    SESSION_CODE_LENGTH = 6
    PLAYER_ID_ALPHABET = "0123456789abcdefghijklmnopqrstuvwxyz"
    MAX_NAME_LENGTH = 28

    def __init__(
        self,
        *,
        store: GameStore,
        rng: Optional[random.Random] = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.store = store
        self.rng = rng or random.Random()
        self.clock = clock

    # ------------------------
    # Session registry
    # ------------------------

    def create_session(self, player_id: str) -> str:
        """Claim a fresh code with ``player_id`` as admin; returns the code."""
        admin_id = self._normalize_player_id(player_id) or None
        for _ in range(self.CREATE_SESSION_CODE_ATTEMPTS):
            code = self._new_session_code()
            if self.verify_session(code):
                continue
            created = self.store.upsert(
                TABLE_GAME_STATE,
                [self._default_session_row(code, admin_id)],
                on_conflict="session_id",
                ignore_duplicates=True,
            )
            if created:
                logger.info("Created session %s for admin %s", code, admin_id)
                return code
        raise SessionCreationExhausted("Unable to create a session code right now.")

    def verify_session(self, session_code: str) -> bool:
        code = self._normalize_code(session_code)
        if not code:
            return False
        return bool(self.store.select(TABLE_GAME_STATE, [eq("session_id", code)]))

    def get_or_init_session(self, session_code: str) -> GameState:
        code = self._require_code(session_code)
        state = self._load_state(code)
        if state is not None:
            return state

        # The primary key decides concurrent initialisers; losers just re-read.
        self.store.upsert(
            TABLE_GAME_STATE,
            [self._default_session_row(code, None)],
            on_conflict="session_id",
            ignore_duplicates=True,
        )
        state = self._load_state(code)
        if state is None:
            raise StoreFailure(f"Session {code} could not be initialised.")
        return state

    def get_game_state(self, session_code: str) -> GameState:
        return self._require_session(session_code)

    # ------------------------
    # Shared helpers
    # ------------------------

    def _load_state(self, code: str) -> Optional[GameState]:
        rows = self.store.select(TABLE_GAME_STATE, [eq("session_id", code)])
        if not rows:
            return None
        state_row = rows[0]
        player_rows = self.store.select(
            TABLE_PLAYERS, [eq("session_id", code)], order_by="joined_at"
        )
        submission_rows = self.store.select(
            TABLE_SUBMISSIONS,
            [
                eq("session_id", code),
                eq("round_number", int(state_row.get("round_number") or 0)),
            ],
            order_by="uploaded_at",
        )
        return GameState.from_rows(code, state_row, player_rows, submission_rows)

    def _require_session(self, session_code: str) -> GameState:
        code = self._require_code(session_code)
        state = self._load_state(code)
        if state is None:
            raise SessionNotFound("Session not found.")
        return state

    def _require_admin(self, state: GameState, player_id: str) -> None:
        actor = self._normalize_player_id(player_id)
        if not actor or actor != state.admin_id:
            raise NotAuthorized("Only the captain can do that.")

    def _require_code(self, session_code: str) -> str:
        code = self._normalize_code(session_code)
        if not code:
            raise NanoBananaError("Session code is required.", 400)
        return code

    def _patch_session(
        self, code: str, patch: dict, *conditions: Filter
    ) -> list[dict]:
        """Partial update of the session row; extra conditions make it a compare-and-set."""
        patch = dict(patch)
        patch["updated_at"] = self.clock()
        return self.store.update(
            TABLE_GAME_STATE, patch, [eq("session_id", code), *conditions]
        )

    def _default_session_row(self, code: str, admin_id: Optional[str]) -> dict:
        now = self.clock()
        return {
            "session_id": code,
            "admin_id": admin_id,
            "phase": PHASE_LOBBY,
            "current_round": None,
            "round_number": 0,
            "selected_players": [],
            "timer_started_at": None,
            "timer_duration": CREATING_TIMER_SECONDS,
            "round_winners": [],
            "easy_round_players": [],
            "current_category_image_descr": None,
            "created_at": now,
            "updated_at": now,
        }

    def new_player_id(self) -> str:
        suffix = "".join(self.rng.choice(self.PLAYER_ID_ALPHABET) for _ in range(9))
        return f"player_{self.clock()}_{suffix}"

    def _new_session_code(self) -> str:
        return "".join(
            self.rng.choice(self.SESSION_CODE_ALPHABET)
            for _ in range(self.SESSION_CODE_LENGTH)
        )

    @classmethod
    def _sanitize_player_name(cls, player_name: str) -> str:
        collapsed = re.sub(r"\s+", " ", str(player_name or "")).strip()
        if not collapsed:
            return "Player"
        return collapsed[: cls.MAX_NAME_LENGTH]

    @staticmethod
    def _normalize_icon(icon: Optional[str]) -> str:
        if icon in ICONS:
            return icon
        return ICONS[0]

    @classmethod
    def _normalize_code(cls, code: str) -> str:
        if not code:
            return ""
        return re.sub(r"[^A-Z0-9]", "", str(code).upper())[: cls.SESSION_CODE_LENGTH]

    @staticmethod
    def _normalize_player_id(player_id: Optional[str]) -> str:
        if not player_id:
            return ""
        return re.sub(r"[^A-Za-z0-9_-]", "", str(player_id))[:48]
