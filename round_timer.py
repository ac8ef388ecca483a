"""Countdown against a stored start timestamp, as each client runs it locally."""

from __future__ import annotations

import time
from typing import Callable, Optional

TICK_INTERVAL_SECONDS = 0.1


def now_ms() -> int:
    return int(time.time() * 1000)


def elapsed_seconds(started_at: Optional[int], now: Optional[int] = None) -> int:
    if not started_at:
        return 0
    current = now_ms() if now is None else now
    return max(0, (current - int(started_at)) // 1000)


def remaining_seconds(
    started_at: Optional[int], duration: int, now: Optional[int] = None
) -> int:
    """Whole seconds left; the full duration while the timer is not running."""
    if not started_at:
        return int(duration)
    return max(0, int(duration) - elapsed_seconds(started_at, now))


def is_expired(started_at: Optional[int], duration: int, now: Optional[int] = None) -> bool:
    if not started_at:
        return False
    return elapsed_seconds(started_at, now) >= int(duration)


class RoundTimer:
    """Polls wall-clock time and fires ``on_complete`` exactly once."""

    def __init__(
        self,
        started_at: Optional[int],
        duration: int,
        on_complete: Optional[Callable[[], None]] = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.started_at = started_at
        self.duration = int(duration)
        self.on_complete = on_complete
        self.clock = clock
        self.completed = False

    @property
    def remaining(self) -> int:
        return remaining_seconds(self.started_at, self.duration, self.clock())

    def tick(self) -> int:
        remaining = self.remaining
        if self.started_at and remaining == 0 and not self.completed:
            self.completed = True
            if self.on_complete:
                self.on_complete()
        return remaining

    def run(
        self,
        interval: float = TICK_INTERVAL_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if not self.started_at:
            return
        while not self.completed:
            self.tick()
            if not self.completed:
                sleep(interval)
