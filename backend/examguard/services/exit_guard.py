"""
Fullscreen-exit enforcement for one attempt.

Normal -> ExitPending -> (Normal | AutoSubmit). The countdown itself lives
only as ``pending_since`` on the attempt; every event re-evaluates it against
the server clock, so a stale client timer cannot keep an attempt alive.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional
import enum

from .attempt_state import AutoSubmitReason
from .session_clock import elapsed_seconds


class ExitPhase(str, enum.Enum):
    NORMAL = "normal"
    EXIT_PENDING = "exit_pending"
    AUTO_SUBMIT = "auto_submit"


@dataclass(frozen=True)
class ExitTransition:
    phase: ExitPhase
    exit_count: int
    # True when this event changed persisted guard state
    changed: bool
    deadline: Optional[datetime] = None
    reason: Optional[AutoSubmitReason] = None


@dataclass
class ExitGuard:
    max_exits: int
    warning_seconds: int
    exit_count: int = 0
    pending_since: Optional[datetime] = None
    window_switch_count: int = 0

    @classmethod
    def for_attempt(cls, attempt, config) -> "ExitGuard":
        return cls(
            max_exits=config.max_exits,
            warning_seconds=config.exit_warning_seconds,
            exit_count=attempt.exit_count or 0,
            pending_since=attempt.exit_pending_since,
            window_switch_count=attempt.window_switch_count or 0,
        )

    @property
    def phase(self) -> ExitPhase:
        return ExitPhase.EXIT_PENDING if self.pending_since is not None else ExitPhase.NORMAL

    @property
    def deadline(self) -> Optional[datetime]:
        if self.pending_since is None:
            return None
        return self.pending_since + timedelta(seconds=self.warning_seconds)

    def _lapsed(self, now: datetime) -> bool:
        return self.pending_since is not None and elapsed_seconds(self.pending_since, now) >= self.warning_seconds

    def seconds_to_return(self, now: datetime) -> Optional[int]:
        if self.pending_since is None:
            return None
        return max(0, self.warning_seconds - elapsed_seconds(self.pending_since, now))

    def _state(self, changed: bool) -> ExitTransition:
        return ExitTransition(self.phase, self.exit_count, changed, self.deadline)

    def _auto_submit(self, reason: AutoSubmitReason, changed: bool) -> ExitTransition:
        return ExitTransition(ExitPhase.AUTO_SUBMIT, self.exit_count, changed, None, reason)

    def check(self, now: datetime) -> ExitTransition:
        """Fire the countdown if it ran out while nobody was looking."""
        if self._lapsed(now):
            return self._auto_submit(AutoSubmitReason.EXIT_TIMEOUT, False)
        return self._state(False)

    def fullscreen_lost(self, now: datetime) -> ExitTransition:
        if self._lapsed(now):
            return self._auto_submit(AutoSubmitReason.EXIT_TIMEOUT, False)
        # one underlying exit: repeated loss events while pending are ignored
        if self.pending_since is not None:
            return self._state(False)
        self.exit_count += 1
        if self.exit_count >= self.max_exits:
            return self._auto_submit(AutoSubmitReason.MAX_EXITS, True)
        self.pending_since = now
        return self._state(True)

    def fullscreen_restored(self, now: datetime) -> ExitTransition:
        if self.pending_since is None:
            return self._state(False)
        if self._lapsed(now):
            return self._auto_submit(AutoSubmitReason.EXIT_TIMEOUT, False)
        self.pending_since = None
        return self._state(True)

    def window_blurred(self) -> int:
        # audit only, never opens a countdown
        self.window_switch_count += 1
        return self.window_switch_count
