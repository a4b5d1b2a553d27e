"""Gameplay statistics hooks.

The game calls :meth:`LevelTracker.on_level_completed` when a level ends,
or drives a timed session with start/move/help/complete. Attempts are
recorded against the current effective subject; the local store then
publishes a change event that the sync orchestrator mirrors.
"""

import logging
import time
from typing import Callable, Optional

from kidsync.local.database import LevelStatistics, LocalStore
from kidsync.profiles import ProfileResolver

logger = logging.getLogger(__name__)


class LevelTracker:
    """Times one level at a time and records its outcome."""

    def __init__(
        self,
        store: LocalStore,
        profiles: ProfileResolver,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.profiles = profiles
        self._clock = clock
        self.level: Optional[int] = None
        self.moves = 0
        self.help_used = False
        self._started_at: Optional[float] = None

    @property
    def in_progress(self) -> bool:
        return self.level is not None

    def start_level(self, level: int) -> None:
        if self.in_progress:
            logger.debug(f"Level {self.level} restarted as level {level} without an outcome")
        self.level = level
        self.moves = 0
        self.help_used = False
        self._started_at = self._clock()

    def register_move(self) -> None:
        if self.in_progress:
            self.moves += 1

    def register_help_used(self) -> None:
        if self.in_progress:
            self.help_used = True

    def elapsed(self) -> float:
        if self._started_at is None:
            return 0.0
        return max(0.0, self._clock() - self._started_at)

    def complete_level(self) -> Optional[LevelStatistics]:
        """Record a completed attempt for the level in progress."""
        return self._finish(completed=True)

    def abandon_level(self) -> Optional[LevelStatistics]:
        """Record a failed attempt when the player leaves an unfinished level."""
        return self._finish(completed=False)

    def _finish(self, completed: bool) -> Optional[LevelStatistics]:
        if not self.in_progress:
            return None
        level, moves, help_used, spent = self.level, self.moves, self.help_used, self.elapsed()
        self.level = None
        self._started_at = None
        return self.on_level_completed(
            level, spent, help_used=help_used, completed=completed, moves=moves
        )

    def on_level_completed(
        self,
        level: int,
        time_spent: float,
        help_used: bool = False,
        completed: bool = True,
        moves: int = 0,
    ) -> LevelStatistics:
        """Direct gameplay hook: record one attempt for the effective subject."""
        subject = self.profiles.effective_subject()
        stats = self.store.record_level_attempt(
            subject,
            level,
            completed=completed,
            help_used=help_used,
            time_spent=time_spent,
            moves=moves,
        )
        logger.info(
            f"Level {level} {'completed' if completed else 'failed'} by "
            f"{subject.identity_id}/{subject.profile_id} in {time_spent:.1f}s"
        )
        return stats
