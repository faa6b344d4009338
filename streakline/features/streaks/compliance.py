"""
Daily compliance: did a user complete enough of the tasks due on a day?

Policy: a day with zero scheduled tasks is NOT compliant. There is nothing to
comply with, so it can neither extend a streak nor count toward a perfect
month.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Dict, Optional

from sqlalchemy import and_, case, func, select
from sqlalchemy.orm import Session

from streakline.core.database import daily_tasks, user_settings
from streakline.core.metrics import compliance_checks_total
from streakline.models.task import TaskStatus

logger = logging.getLogger("streakline.compliance")


@dataclass(frozen=True)
class DayCompliance:
    day: date
    total: int
    completed: int
    threshold: float

    @property
    def ratio(self) -> float:
        if self.total == 0:
            return 0.0
        return self.completed / self.total

    @property
    def is_compliant(self) -> bool:
        if self.total == 0:
            return False
        # Decimal keeps 4/5 against 0.80 exact
        return Decimal(self.completed) >= Decimal(str(self.threshold)) * self.total

    def to_response(self) -> dict:
        return {
            "date": self.day.isoformat(),
            "totalTasks": self.total,
            "completedTasks": self.completed,
            "completionRate": round(self.ratio * 100),
            "threshold": self.threshold,
            "isCompliant": self.is_compliant,
        }


def _completed_count():
    return func.coalesce(
        func.sum(
            case(
                (
                    and_(
                        daily_tasks.c.status == TaskStatus.COMPLETED.value,
                        daily_tasks.c.completed_at.isnot(None),
                    ),
                    1,
                ),
                else_=0,
            )
        ),
        0,
    )


class ComplianceCalculator:
    def __init__(self, default_threshold: float = 0.80):
        self.default_threshold = default_threshold

    def threshold_for(self, session: Session, user_id: str) -> float:
        value = session.execute(
            select(user_settings.c.compliance_threshold).where(user_settings.c.user_id == user_id)
        ).scalar()
        return float(value) if value is not None else self.default_threshold

    def evaluate(self, session: Session, user_id: str, day: date, threshold: Optional[float] = None) -> DayCompliance:
        row = session.execute(
            select(func.count(daily_tasks.c.id).label("total"), _completed_count().label("completed")).where(
                and_(daily_tasks.c.user_id == user_id, daily_tasks.c.due_date == day)
            )
        ).one()
        result = DayCompliance(
            day=day,
            total=int(row.total or 0),
            completed=int(row.completed or 0),
            threshold=threshold if threshold is not None else self.threshold_for(session, user_id),
        )
        compliance_checks_total.inc(labels={"is_compliant": str(result.is_compliant).lower()})
        logger.debug(
            "Compliance evaluated",
            extra={"user_id": user_id, "day": day.isoformat(), "total": result.total, "completed": result.completed},
        )
        return result

    def is_compliant(self, session: Session, user_id: str, day: date) -> bool:
        return self.evaluate(session, user_id, day).is_compliant

    def daily_breakdown(self, session: Session, user_id: str, start: date, end: date) -> Dict[date, DayCompliance]:
        """Per-day compliance for every day in [start, end] that has tasks."""
        threshold = self.threshold_for(session, user_id)
        rows = session.execute(
            select(
                daily_tasks.c.due_date,
                func.count(daily_tasks.c.id).label("total"),
                _completed_count().label("completed"),
            )
            .where(
                and_(
                    daily_tasks.c.user_id == user_id,
                    daily_tasks.c.due_date >= start,
                    daily_tasks.c.due_date <= end,
                )
            )
            .group_by(daily_tasks.c.due_date)
        ).fetchall()
        return {
            row.due_date: DayCompliance(day=row.due_date, total=int(row.total), completed=int(row.completed), threshold=threshold)
            for row in rows
        }
