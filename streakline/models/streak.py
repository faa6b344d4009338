from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Literal, Optional

# Synthetic ledger categories; every TaskType value is also a category.
OVERALL = "overall"
COMPLIANCE = "compliance"

StreakBranch = Literal["created", "noop", "continued", "reset"]


@dataclass(frozen=True)
class StreakRecord:
    """
    One ledger row per (user, category). Calendar-day granularity.

    Invariants: longest >= current, lifetime_total never decreases.
    """

    user_id: str
    category: str
    current: int = 0
    longest: int = 0
    lifetime_total: int = 0
    last_completed_day: Optional[date] = None
    streak_start_day: Optional[date] = None

    @classmethod
    def empty(cls, user_id: str, category: str) -> "StreakRecord":
        return cls(user_id=user_id, category=category)

    def state(self, today: date) -> str:
        """Fresh, active or stale relative to ``today``."""
        if self.last_completed_day is None:
            return "fresh"
        if (today - self.last_completed_day).days <= 1:
            return "active"
        return "stale"

    def to_response(self) -> dict:
        return {
            "current": self.current,
            "longest": self.longest,
            "totalDays": self.lifetime_total,
            "lastCompletedDate": self.last_completed_day.isoformat() if self.last_completed_day else None,
            "streakStartDate": self.streak_start_day.isoformat() if self.streak_start_day else None,
        }


@dataclass(frozen=True)
class StreakUpdate:
    record: StreakRecord
    branch: StreakBranch

    @property
    def advanced(self) -> bool:
        return self.branch != "noop"
