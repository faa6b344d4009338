"""
Task queries and the evidence transaction.

get_today_tasks is read-through cached per (user, day, window, type filter).
submit_evidence is the only writer of task completion: it records evidence,
flips the task to completed at most once, advances the activity streaks in
the same transaction, then invalidates the user's cache and runs the badge
evaluator after commit.
"""
from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from typing import Dict, List, Optional

from sqlalchemy import and_, case, func, insert, select, update
from sqlalchemy.orm import Session, sessionmaker

from streakline.core.cache import ReadThroughCache
from streakline.core.database import daily_tasks, task_evidence, transaction
from streakline.core.errors import NotFoundError
from streakline.features.badges.service import BadgeAwarder
from streakline.features.streaks.service import StreakLedger
from streakline.features.tasks.validators import EvidenceSubmission, TodayTasksQuery
from streakline.features.users.service import local_today
from streakline.models.streak import OVERALL, StreakUpdate
from streakline.models.task import Evidence, EvidenceType, Task, TaskStatus, TaskType

logger = logging.getLogger("streakline.tasks")


def _to_evidence(row) -> Evidence:
    return Evidence(
        id=row.id,
        task_id=row.task_id,
        user_id=row.user_id,
        type=EvidenceType(row.evidence_type),
        notes=row.notes,
        metrics=row.metrics,
        photo_url=row.photo_url,
        photo_storage_key=row.photo_storage_key,
        recorded_at=row.recorded_at,
    )


def _to_task(row, evidence: Optional[List[Evidence]] = None) -> Task:
    return Task(
        id=row.id,
        user_id=row.user_id,
        type=TaskType(row.task_type),
        title=row.title,
        description=row.description,
        due_date=row.due_date,
        due_time=row.due_time,
        status=TaskStatus(row.status),
        priority=row.priority,
        completed_at=row.completed_at,
        evidence=evidence or [],
    )


class TaskService:
    def __init__(
        self,
        session_factory: sessionmaker,
        cache: ReadThroughCache,
        ledger: StreakLedger,
        awarder: BadgeAwarder,
        cache_ttl_seconds: int = 60,
    ):
        self.session_factory = session_factory
        self.cache = cache
        self.ledger = ledger
        self.awarder = awarder
        self.cache_ttl_seconds = cache_ttl_seconds

    # Queries ------------------------------------------------------------
    def get_today_tasks(self, user_id: str, query: TodayTasksQuery) -> dict:
        day = query.day
        if day is None:
            with transaction(self.session_factory) as session:
                day = local_today(session, user_id)
        type_filter = query.task_type.value if query.task_type else None
        key = self.cache.task_list_key(user_id, day.isoformat(), query.limit, query.offset, type_filter)

        # Cache calls stay outside the transaction so a slow primary never pins a pooled connection
        cached = self.cache.get(key)
        if cached is not None:
            return {**cached, "cached": True}

        generation = self.cache.generation(user_id)
        with transaction(self.session_factory) as session:
            result = self._load_day(session, user_id, day, query.limit, query.offset, type_filter)

        self.cache.set_if_current(user_id, generation, key, result, self.cache_ttl_seconds)
        return {**result, "cached": False}

    def get_task(self, session: Session, user_id: str, task_id: int) -> Task:
        row = session.execute(
            select(daily_tasks).where(and_(daily_tasks.c.id == task_id, daily_tasks.c.user_id == user_id))
        ).first()
        if row is None:
            raise NotFoundError("Task not found or does not belong to user")
        return _to_task(row, self._evidence_for(session, [row.id]).get(row.id))

    def _load_day(
        self,
        session: Session,
        user_id: str,
        day: date,
        limit: int,
        offset: int,
        type_filter: Optional[str],
    ) -> dict:
        conditions = [daily_tasks.c.user_id == user_id, daily_tasks.c.due_date == day]
        if type_filter:
            conditions.append(daily_tasks.c.task_type == type_filter)

        counts = session.execute(
            select(
                func.count(daily_tasks.c.id).label("total"),
                func.coalesce(
                    func.sum(case((daily_tasks.c.status == TaskStatus.COMPLETED.value, 1), else_=0)), 0
                ).label("completed"),
            ).where(and_(*conditions))
        ).one()
        total = int(counts.total or 0)
        completed = int(counts.completed or 0)

        rows = session.execute(
            select(daily_tasks)
            .where(and_(*conditions))
            .order_by(daily_tasks.c.priority.desc(), daily_tasks.c.created_at.asc(), daily_tasks.c.id.asc())
            .limit(limit)
            .offset(offset)
        ).fetchall()
        evidence = self._evidence_for(session, [row.id for row in rows])

        tasks_by_type: Dict[str, list] = {}
        for row in rows:
            task = _to_task(row, evidence.get(row.id))
            tasks_by_type.setdefault(task.type.value, []).append(task.to_response())

        streak = self.ledger.get(session, user_id, OVERALL)
        return {
            "date": day.isoformat(),
            "totalTasks": total,
            "completedTasks": completed,
            "completionPercentage": round(completed / total * 100) if total else 0,
            "tasksByType": tasks_by_type,
            "streak": {"current": streak.current, "longest": streak.longest, "totalDays": streak.lifetime_total},
            "pagination": {
                "limit": limit,
                "offset": offset,
                "total": total,
                "hasMore": offset + len(rows) < total,
            },
        }

    def _evidence_for(self, session: Session, task_ids: List[int]) -> Dict[int, List[Evidence]]:
        if not task_ids:
            return {}
        rows = session.execute(
            select(task_evidence)
            .where(task_evidence.c.task_id.in_(task_ids))
            .order_by(task_evidence.c.recorded_at.asc(), task_evidence.c.id.asc())
        ).fetchall()
        grouped: Dict[int, List[Evidence]] = {}
        for row in rows:
            grouped.setdefault(row.task_id, []).append(_to_evidence(row))
        return grouped

    # Evidence transaction -----------------------------------------------
    def submit_evidence(self, user_id: str, submission: EvidenceSubmission, now: Optional[datetime] = None) -> dict:
        """Attach evidence and complete the task.

        Raises:
            NotFoundError: task missing or owned by someone else
            StreakUpdateError: streak row could not be advanced (nothing is written)
        """
        now = now or datetime.now(timezone.utc)

        with transaction(self.session_factory) as session:
            task_row = session.execute(
                select(daily_tasks).where(
                    and_(daily_tasks.c.id == submission.task_id, daily_tasks.c.user_id == user_id)
                )
            ).first()
            if task_row is None:
                raise NotFoundError("Task not found or does not belong to user")

            evidence_id = session.execute(
                insert(task_evidence).values(**self._evidence_values(user_id, submission, now))
            ).inserted_primary_key[0]

            # Only the request that actually flips the status advances streaks
            transitioned = session.execute(
                update(daily_tasks)
                .where(
                    and_(
                        daily_tasks.c.id == submission.task_id,
                        daily_tasks.c.status != TaskStatus.COMPLETED.value,
                    )
                )
                .values(status=TaskStatus.COMPLETED.value, completed_at=now, updated_at=now)
            ).rowcount == 1

            day = local_today(session, user_id, now)
            overall: Optional[StreakUpdate] = None
            if transitioned:
                overall = self.ledger.record_day(session, user_id, OVERALL, day)
                self.ledger.record_day(session, user_id, task_row.task_type, day)
            else:
                logger.info(
                    "Evidence added to already completed task",
                    extra={"user_id": user_id, "task_id": submission.task_id},
                )

            task = self.get_task(session, user_id, submission.task_id)
            evidence = next(e for e in task.evidence if e.id == evidence_id)
            current = overall.record.current if overall else self.ledger.get(session, user_id, OVERALL).current

        # Committed. Invalidation is synchronous; it never raises on a cache outage.
        self.cache.invalidate_user(user_id)
        awarded = self._award_after_commit(user_id, day)

        return {
            "task": task.to_response(),
            "evidence": evidence.to_response(),
            "streakUpdated": bool(overall and overall.advanced),
            "newStreak": current,
            "newlyAwardedBadges": awarded,
        }

    def _evidence_values(self, user_id: str, submission: EvidenceSubmission, now: datetime) -> dict:
        notes = submission.notes
        if submission.type == EvidenceType.TEXT_LOG:
            notes = submission.text if not notes else f"{submission.text}\n\n{notes}"
        return {
            "task_id": submission.task_id,
            "user_id": user_id,
            "evidence_type": submission.type.value,
            "notes": notes,
            "metrics": submission.metrics,
            "photo_url": submission.photo_url,
            "photo_storage_key": submission.photo_storage_key,
            "recorded_at": now,
        }

    def _award_after_commit(self, user_id: str, day: date) -> List[dict]:
        try:
            with transaction(self.session_factory) as session:
                awards = self.awarder.evaluate(session, user_id, day)
        except Exception:
            # Evidence is already committed; badges are picked up again by the nightly run
            logger.exception("Badge evaluation failed after evidence commit", extra={"user_id": user_id})
            return []
        return [self.awarder.describe(award) for award in awards]
