from __future__ import annotations

import logging
from datetime import date, timedelta
from typing import Dict, Optional

from sqlalchemy import and_, case, select, update
from sqlalchemy.orm import Session
from sqlalchemy.sql import func

from streakline.core.database import insert_unless_exists, streaks
from streakline.core.errors import StreakUpdateError
from streakline.core.metrics import streak_updates_total
from streakline.models.streak import StreakRecord, StreakUpdate

logger = logging.getLogger("streakline.streaks")


def _to_record(row) -> StreakRecord:
    return StreakRecord(
        user_id=row.user_id,
        category=row.streak_type,
        current=row.current_streak,
        longest=row.longest_streak,
        lifetime_total=row.total_completions,
        last_completed_day=row.last_completed_date,
        streak_start_day=row.streak_start_date,
    )


class StreakLedger:
    """Per-(user, category) day-continuation counters backed by the streaks table.

    Every advance is a single UPDATE guarded on the last_completed_date that was
    read (compare-and-swap). A lost race shows up as rowcount 0 and the loop
    re-reads; the second reader then sees the winner's day and takes the no-op
    branch, so concurrent completions never both apply +1.

    The ledger never commits. Callers pass the session of the transaction the
    update belongs to.
    """

    def __init__(self, max_attempts: int = 5):
        self.max_attempts = max(1, int(max_attempts))

    def get(self, session: Session, user_id: str, category: str) -> StreakRecord:
        row = self._select(session, user_id, category)
        return _to_record(row) if row is not None else StreakRecord.empty(user_id, category)

    def get_all(self, session: Session, user_id: str) -> Dict[str, StreakRecord]:
        rows = session.execute(select(streaks).where(streaks.c.user_id == user_id)).fetchall()
        return {row.streak_type: _to_record(row) for row in rows}

    def record_day(self, session: Session, user_id: str, category: str, day: date) -> StreakUpdate:
        """Count ``day`` as a completed day for (user, category).

        Branches:
            created   - no row yet: current=longest=lifetime=1
            noop      - day already counted (or older than the last counted day)
            continued - day follows the last counted day: current + 1
            reset     - gap of two or more days: current back to 1

        Raises:
            StreakUpdateError: the row kept changing underneath us for
                ``max_attempts`` reads
        """
        for attempt in range(1, self.max_attempts + 1):
            row = self._select(session, user_id, category)

            if row is None:
                inserted = insert_unless_exists(
                    session,
                    streaks,
                    {
                        "user_id": user_id,
                        "streak_type": category,
                        "current_streak": 1,
                        "longest_streak": 1,
                        "total_completions": 1,
                        "last_completed_date": day,
                        "streak_start_date": day,
                    },
                    ["user_id", "streak_type"],
                )
                if inserted:
                    return self._finish(session, user_id, category, "created")
                logger.debug("Streak row created concurrently; re-reading", extra={"user_id": user_id, "category": category})
                continue

            last = row.last_completed_date
            if last is not None and last >= day:
                return self._finish(session, user_id, category, "noop", record=_to_record(row))

            if last is not None and last == day - timedelta(days=1):
                branch = "continued"
                new_current = streaks.c.current_streak + 1
                new_start = func.coalesce(streaks.c.streak_start_date, last)
            else:
                branch = "reset"
                new_current = 1
                new_start = day

            guard = streaks.c.last_completed_date.is_(None) if last is None else streaks.c.last_completed_date == last
            stmt = (
                update(streaks)
                .where(and_(streaks.c.user_id == user_id, streaks.c.streak_type == category, guard))
                .values(
                    current_streak=new_current,
                    longest_streak=case(
                        (streaks.c.longest_streak < new_current, new_current),
                        else_=streaks.c.longest_streak,
                    ),
                    total_completions=streaks.c.total_completions + 1,
                    last_completed_date=day,
                    streak_start_date=new_start,
                    updated_at=func.now(),
                )
            )
            result = session.execute(stmt)
            if result.rowcount == 1:
                return self._finish(session, user_id, category, branch)

            logger.info(
                "Streak compare-and-swap lost; retrying",
                extra={"user_id": user_id, "category": category, "attempt": attempt},
            )

        streak_updates_total.inc(labels={"category": category, "branch": "failed"})
        raise StreakUpdateError(
            f"Could not update {category} streak after {self.max_attempts} attempts",
            details=[{"field": "category", "message": category}],
        )

    # Internal helpers -------------------------------------------------
    def _select(self, session: Session, user_id: str, category: str):
        return session.execute(
            select(streaks).where(and_(streaks.c.user_id == user_id, streaks.c.streak_type == category))
        ).first()

    def _finish(
        self,
        session: Session,
        user_id: str,
        category: str,
        branch: str,
        record: Optional[StreakRecord] = None,
    ) -> StreakUpdate:
        if record is None:
            record = self.get(session, user_id, category)
        streak_updates_total.inc(labels={"category": category, "branch": branch})
        if branch != "noop":
            logger.debug(
                "Streak advanced",
                extra={"user_id": user_id, "category": category, "branch": branch, "current": record.current},
            )
        return StreakUpdate(record=record, branch=branch)
