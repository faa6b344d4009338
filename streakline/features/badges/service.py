from __future__ import annotations

import calendar
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from streakline.core.database import insert_unless_exists, user_badges
from streakline.core.metrics import badges_awarded_total
from streakline.features.streaks.compliance import ComplianceCalculator
from streakline.features.streaks.service import StreakLedger
from streakline.models.badge import BadgeAward, BadgeType
from streakline.models.streak import COMPLIANCE, OVERALL, StreakRecord
from streakline.models.task import TaskType

logger = logging.getLogger("streakline.badges")


def month_to_judge(on_day: date) -> tuple[date, date]:
    """The calendar month a perfect-month check looks at.

    The month containing ``on_day`` once its last day is reached, otherwise
    the previous full month.
    """
    last_dom = calendar.monthrange(on_day.year, on_day.month)[1]
    if on_day.day == last_dom:
        return on_day.replace(day=1), on_day
    end = on_day.replace(day=1) - timedelta(days=1)
    return end.replace(day=1), end


@dataclass
class BadgeContext:
    """State a predicate may look at. Perfect-month data is loaded lazily."""

    session: Session
    user_id: str
    on_day: date
    streaks: Dict[str, StreakRecord]
    calculator: ComplianceCalculator
    _perfect_month: Optional[bool] = field(default=None, repr=False)

    def current(self, category: str) -> int:
        record = self.streaks.get(category)
        return record.current if record else 0

    def lifetime(self, category: str) -> int:
        record = self.streaks.get(category)
        return record.lifetime_total if record else 0

    def perfect_month(self) -> bool:
        if self._perfect_month is None:
            start, end = month_to_judge(self.on_day)
            days = self.calculator.daily_breakdown(self.session, self.user_id, start, end)
            expected = (end - start).days + 1
            self._perfect_month = len(days) == expected and all(d.is_compliant for d in days.values())
        return self._perfect_month


@dataclass(frozen=True)
class BadgeDefinition:
    badge_type: BadgeType
    name: str
    description: str
    predicate: Callable[[BadgeContext], bool]

    def metadata(self) -> dict:
        return {"type": self.badge_type.value, "name": self.name, "description": self.description}


def _streak_at_least(category: str, days: int) -> Callable[[BadgeContext], bool]:
    return lambda ctx: ctx.current(category) >= days


BADGE_CATALOG: Dict[BadgeType, BadgeDefinition] = {
    d.badge_type: d
    for d in (
        BadgeDefinition(BadgeType.DAY_ONE_DONE, "Day One Done", "Hit your daily target for the first time", _streak_at_least(COMPLIANCE, 1)),
        BadgeDefinition(BadgeType.WEEK_WARRIOR, "Week Warrior", "Hit your daily target 7 days in a row", _streak_at_least(COMPLIANCE, 7)),
        BadgeDefinition(BadgeType.PERFECT_MONTH, "Perfect Month", "Hit your daily target every day of a calendar month", lambda ctx: ctx.perfect_month()),
        BadgeDefinition(BadgeType.HUNDRED_CLUB, "Hundred Club", "Hit your daily target 100 days in a row", _streak_at_least(COMPLIANCE, 100)),
        BadgeDefinition(BadgeType.CONSISTENCY_KING, "Consistency King", "Complete tasks on 100 different days", lambda ctx: ctx.lifetime(OVERALL) >= 100),
        BadgeDefinition(BadgeType.HYDRATION_NATION, "Hydration Nation", "Log hydration 7 days in a row", _streak_at_least(TaskType.HYDRATION.value, 7)),
        BadgeDefinition(BadgeType.CARDIO_KING, "Cardio King", "Finish cardio 14 days in a row", _streak_at_least(TaskType.CARDIO.value, 14)),
        BadgeDefinition(BadgeType.WORKOUT_WARRIOR, "Workout Warrior", "Finish a workout 21 days in a row", _streak_at_least(TaskType.WORKOUT.value, 21)),
        BadgeDefinition(BadgeType.SUPPLEMENT_CHAMPION, "Supplement Champion", "Take supplements 30 days in a row", _streak_at_least(TaskType.SUPPLEMENT.value, 30)),
    )
}


class BadgeAwarder:
    """Evaluates the catalog and persists awards at most once per (user, badge).

    The unique constraint on user_badges is the idempotency mechanism: a
    duplicate insert from a concurrent evaluation is a no-op, not an error.
    """

    def __init__(self, ledger: StreakLedger, calculator: ComplianceCalculator, catalog: Optional[Dict[BadgeType, BadgeDefinition]] = None):
        self.ledger = ledger
        self.calculator = calculator
        self.catalog = catalog if catalog is not None else BADGE_CATALOG

    def earned_types(self, session: Session, user_id: str) -> set:
        rows = session.execute(select(user_badges.c.badge_type).where(user_badges.c.user_id == user_id)).scalars()
        return set(rows)

    def evaluate(self, session: Session, user_id: str, on_day: Optional[date] = None) -> List[BadgeAward]:
        """Award every badge whose predicate holds. Returns only this call's new awards."""
        on_day = on_day or datetime.now(timezone.utc).date()
        already = self.earned_types(session, user_id)
        ctx = BadgeContext(
            session=session,
            user_id=user_id,
            on_day=on_day,
            streaks=self.ledger.get_all(session, user_id),
            calculator=self.calculator,
        )

        awarded: List[BadgeAward] = []
        for badge_type, definition in self.catalog.items():
            if badge_type.value in already or not definition.predicate(ctx):
                continue
            now = datetime.now(timezone.utc)
            inserted = insert_unless_exists(
                session,
                user_badges,
                {"user_id": user_id, "badge_type": badge_type.value, "awarded_at": now},
                ["user_id", "badge_type"],
            )
            if not inserted:
                continue
            awarded.append(BadgeAward(user_id=user_id, badge_type=badge_type, awarded_at=now))
            badges_awarded_total.inc(labels={"badge_type": badge_type.value})
            logger.info("Badge awarded", extra={"user_id": user_id, "badge_type": badge_type.value})
        return awarded

    def list_badges(self, session: Session, user_id: str) -> dict:
        rows = session.execute(
            select(user_badges.c.badge_type, user_badges.c.awarded_at)
            .where(user_badges.c.user_id == user_id)
            .order_by(user_badges.c.awarded_at.asc(), user_badges.c.id.asc())
        ).fetchall()

        badges = []
        for row in rows:
            try:
                definition = self.catalog[BadgeType(row.badge_type)]
            except (ValueError, KeyError):
                # Retired badge types stay in history but drop out of the listing
                continue
            badges.append({**definition.metadata(), "awardedAt": row.awarded_at.isoformat() if row.awarded_at else None})

        total_available = len(self.catalog)
        return {
            "badges": badges,
            "totalBadges": len(badges),
            "totalAvailable": total_available,
            "completionPercentage": round(len(badges) / total_available * 100) if total_available else 0,
        }

    def describe(self, award: BadgeAward) -> dict:
        definition = self.catalog[award.badge_type]
        return {**definition.metadata(), "awardedAt": award.awarded_at.isoformat()}
