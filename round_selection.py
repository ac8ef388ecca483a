"""Who competes in a round, per tier.

Selection is shuffle-and-slice over a uniform Fisher-Yates shuffle. Outcomes
are only reproducible when a seeded ``random.Random`` is passed in.
"""

from __future__ import annotations

import random
from typing import List, Optional, Sequence

from game_models import ROUND_EASY, ROUND_HARD, ROUND_MEDIUM, GameState

MEDIUM_POOL_SIZE = 4
COMPETITORS_PER_ROUND = 2

_NEXT_ROUND = {ROUND_EASY: ROUND_MEDIUM, ROUND_MEDIUM: ROUND_HARD, ROUND_HARD: None}


def shuffled(items: Sequence[str], rng: random.Random) -> List[str]:
    out = list(items)
    for i in range(len(out) - 1, 0, -1):
        j = rng.randint(0, i)
        out[i], out[j] = out[j], out[i]
    return out


def pick(items: Sequence[str], count: int, rng: random.Random) -> List[str]:
    return shuffled(items, rng)[:count]


def medium_pool(state: GameState) -> List[str]:
    """Top non-admin players by score; ties keep join order."""
    candidates = [
        player for player in state.players.values() if player.id != state.admin_id
    ]
    ranked = sorted(candidates, key=lambda player: -player.score)
    return [player.id for player in ranked[:MEDIUM_POOL_SIZE]]


def select_competitors(
    state: GameState, round_type: Optional[str], rng: random.Random
) -> List[str]:
    player_ids = state.player_ids
    if not player_ids:
        return []

    if round_type == ROUND_EASY:
        unplayed = [pid for pid in player_ids if pid not in state.easy_round_players]
        if not unplayed:
            # Everyone has had an easy round; start the cycle again.
            return pick(state.non_admin_player_ids(), COMPETITORS_PER_ROUND, rng)

        admin_id = state.admin_id
        if (
            len(unplayed) % 2 == 1
            and admin_id
            and admin_id not in state.easy_round_players
        ):
            others = [pid for pid in unplayed if pid != admin_id]
            if others:
                return [admin_id, pick(others, 1, rng)[0]]
        chosen = pick(unplayed, COMPETITORS_PER_ROUND, rng)
        if len(chosen) < COMPETITORS_PER_ROUND:
            # Last unplayed player gets a partner who has already had a turn.
            fillers = [
                pid for pid in state.non_admin_player_ids() if pid not in chosen
            ] or [pid for pid in player_ids if pid not in chosen]
            chosen += pick(fillers, COMPETITORS_PER_ROUND - len(chosen), rng)
        return chosen

    eligible = [pid for pid in state.round_winners if pid in state.players]
    eligible = list(dict.fromkeys(eligible))
    if len(eligible) < COMPETITORS_PER_ROUND:
        return pick(state.non_admin_player_ids(), COMPETITORS_PER_ROUND, rng)
    return pick(eligible, COMPETITORS_PER_ROUND, rng)


def next_round_type(current_round: Optional[str]) -> Optional[str]:
    """easy -> medium -> hard -> None (game over); no round yet starts at easy."""
    if current_round is None:
        return ROUND_EASY
    return _NEXT_ROUND.get(current_round)
