from __future__ import annotations

import hashlib
import json
from dataclasses import asdict, dataclass, field
from typing import Dict, List, Optional

PHASE_LOBBY = "lobby"
PHASE_SELECTING_PLAYERS = "selecting_players"
PHASE_CREATING = "creating"
PHASE_VOTING = "voting"
PHASE_RESULTS = "results"
PHASE_GAME_OVER = "game_over"
PHASES = (
    PHASE_LOBBY,
    PHASE_SELECTING_PLAYERS,
    PHASE_CREATING,
    PHASE_VOTING,
    PHASE_RESULTS,
    PHASE_GAME_OVER,
)

ROUND_EASY = "easy"
ROUND_MEDIUM = "medium"
ROUND_HARD = "hard"
ROUND_TYPES = (ROUND_EASY, ROUND_MEDIUM, ROUND_HARD)

CREATING_TIMER_SECONDS = 180
VOTING_TIMER_SECONDS = 60

ICONS = [
    "🍌", "🎨", "🎭", "🎪", "🎯", "🎲", "🎸", "🎹",
    "🎺", "🎻", "🎮", "🎰", "🚀", "🌟", "⭐", "✨",
    "🔥", "💎", "👑", "🏆", "🎖️", "🏅", "🎃", "🦄",
]


@dataclass
class Player:
    id: str
    name: str
    icon: str = ICONS[0]
    score: int = 0
    joined_at: int = 0

    @classmethod
    def from_row(cls, row: dict) -> "Player":
        return cls(
            id=str(row["id"]),
            name=str(row.get("name") or ""),
            icon=str(row.get("icon") or ICONS[0]),
            score=max(int(row.get("score") or 0), 0),
            joined_at=int(row.get("joined_at") or 0),
        )

    def to_row(self, session_code: str) -> dict:
        return {
            "id": self.id,
            "session_id": session_code,
            "name": self.name,
            "icon": self.icon,
            "score": self.score,
            "joined_at": self.joined_at,
        }


@dataclass
class Submission:
    id: str
    player_id: str
    image_url: str
    uploaded_at: int = 0
    votes: List[str] = field(default_factory=list)
    round_number: int = 0

    @classmethod
    def from_row(cls, row: dict) -> "Submission":
        votes: List[str] = []
        for voter_id in row.get("votes") or []:
            voter_id = str(voter_id)
            if voter_id not in votes:
                votes.append(voter_id)
        return cls(
            id=str(row["id"]),
            player_id=str(row["player_id"]),
            image_url=str(row.get("image_url") or ""),
            uploaded_at=int(row.get("uploaded_at") or 0),
            votes=votes,
            round_number=int(row.get("round_number") or 0),
        )

    @property
    def vote_count(self) -> int:
        return len(self.votes)


@dataclass
class CategoryEntry:
    image_descr: str
    round_type: Optional[str] = None
    id: Optional[int] = None
    uploaded_at: int = 0

    @classmethod
    def from_row(cls, row: dict) -> "CategoryEntry":
        return cls(
            id=row.get("id"),
            round_type=row.get("round_type") or None,
            image_descr=str(row.get("image_descr") or ""),
            uploaded_at=int(row.get("uploaded_at") or 0),
        )


@dataclass
class GameState:
    """Composed view of one session: its row plus its player and submission rows."""

    session_code: str
    admin_id: Optional[str] = None
    phase: str = PHASE_LOBBY
    current_round: Optional[str] = None
    round_number: int = 0
    selected_players: List[str] = field(default_factory=list)
    timer_started_at: Optional[int] = None
    timer_duration: int = CREATING_TIMER_SECONDS
    submissions: Dict[str, Submission] = field(default_factory=dict)
    players: Dict[str, Player] = field(default_factory=dict)
    round_winners: List[str] = field(default_factory=list)
    easy_round_players: List[str] = field(default_factory=list)
    current_category_image_descr: Optional[str] = None

    @classmethod
    def default(cls, session_code: str, admin_id: Optional[str] = None) -> "GameState":
        return cls(session_code=session_code, admin_id=admin_id)

    @classmethod
    def from_rows(
        cls,
        session_code: str,
        state_row: dict,
        player_rows: List[dict],
        submission_rows: List[dict],
    ) -> "GameState":
        players = [Player.from_row(row) for row in player_rows]
        players.sort(key=lambda player: (player.joined_at, player.id))
        submissions = {}
        for row in submission_rows:
            submission = Submission.from_row(row)
            submissions[submission.player_id] = submission

        phase = state_row.get("phase") or PHASE_LOBBY
        if phase not in PHASES:
            phase = PHASE_LOBBY
        current_round = state_row.get("current_round") or None
        if current_round not in ROUND_TYPES:
            current_round = None

        return cls(
            session_code=session_code,
            admin_id=state_row.get("admin_id") or None,
            phase=phase,
            current_round=current_round,
            round_number=int(state_row.get("round_number") or 0),
            selected_players=[str(pid) for pid in state_row.get("selected_players") or []],
            timer_started_at=state_row.get("timer_started_at") or None,
            timer_duration=int(state_row.get("timer_duration") or CREATING_TIMER_SECONDS),
            submissions=submissions,
            players={player.id: player for player in players},
            round_winners=[str(pid) for pid in state_row.get("round_winners") or []],
            easy_round_players=[
                str(pid) for pid in state_row.get("easy_round_players") or []
            ],
            current_category_image_descr=(
                state_row.get("current_category_image_descr") or None
            ),
        )

    @property
    def player_ids(self) -> List[str]:
        return list(self.players)

    def non_admin_player_ids(self) -> List[str]:
        return [pid for pid in self.players if pid != self.admin_id]

    def eligible_voters(self) -> List[str]:
        return [pid for pid in self.players if pid not in self.selected_players]

    def submission_by_id(self, submission_id: str) -> Optional[Submission]:
        for submission in self.submissions.values():
            if submission.id == submission_id:
                return submission
        return None

    def to_dict(self) -> dict:
        return {
            "session_code": self.session_code,
            "admin_id": self.admin_id,
            "phase": self.phase,
            "current_round": self.current_round,
            "round_number": self.round_number,
            "selected_players": list(self.selected_players),
            "timer_started_at": self.timer_started_at,
            "timer_duration": self.timer_duration,
            "players": [asdict(player) for player in self.players.values()],
            "submissions": [
                asdict(submission) for submission in self.submissions.values()
            ],
            "round_winners": list(self.round_winners),
            "easy_round_players": list(self.easy_round_players),
            "current_category_image_descr": self.current_category_image_descr,
        }

    def revision(self) -> str:
        encoded = json.dumps(self.to_dict(), sort_keys=True, ensure_ascii=False)
        return hashlib.sha1(encoded.encode("utf-8")).hexdigest()[:16]
