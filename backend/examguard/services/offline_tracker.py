from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from .session_clock import elapsed_seconds


@dataclass(frozen=True)
class OnlineResult:
    added: int
    total: int
    grace_remaining: int


@dataclass
class OfflineGraceTracker:
    """
    Cumulative offline time of one attempt against its grace budget.

    Only server timestamps go in here. Offline time beyond the budget is never
    credited, it simply runs off the exam timer.
    """

    total_offline_seconds: int = 0
    went_offline_at: Optional[datetime] = None

    @classmethod
    def from_attempt(cls, attempt) -> "OfflineGraceTracker":
        return cls(total_offline_seconds=attempt.total_offline_seconds or 0,
                   went_offline_at=attempt.went_offline_at)

    @property
    def is_offline(self) -> bool:
        return self.went_offline_at is not None

    def grace_remaining(self, grace_limit_seconds: int) -> int:
        return max(0, grace_limit_seconds - self.total_offline_seconds)

    def mark_offline(self, now: datetime) -> bool:
        """Start an offline period. Returns False when already offline (duplicate drop event)."""
        if self.is_offline:
            return False
        self.went_offline_at = now
        return True

    def pending_credit(self, now: datetime, grace_limit_seconds: int) -> int:
        """Seconds of the current offline period the grace budget would cover, without committing them."""
        if not self.is_offline:
            return 0
        duration = elapsed_seconds(self.went_offline_at, now)
        return min(duration, self.grace_remaining(grace_limit_seconds))

    def mark_online(self, now: datetime, grace_limit_seconds: int) -> OnlineResult:
        if not self.is_offline:
            return OnlineResult(0, self.total_offline_seconds, self.grace_remaining(grace_limit_seconds))
        added = self.pending_credit(now, grace_limit_seconds)
        self.total_offline_seconds += added
        self.went_offline_at = None
        return OnlineResult(added, self.total_offline_seconds, self.grace_remaining(grace_limit_seconds))
