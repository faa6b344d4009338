"""
Nightly compliance batch.

For every active user, sequentially: evaluate the just-finished day, advance
the compliance streak when the day met the threshold, then award badges.
Each user runs in its own transaction; one user's failure is logged (user id
only) and counted, and the loop moves on. The job can be stopped between
users, never mid-transaction.

Usage:
    python -m streakline.workers.daily_compliance --once [--date YYYY-MM-DD]
    python -m streakline.workers.daily_compliance --loop
"""
from __future__ import annotations

import argparse
import logging
from dataclasses import asdict, dataclass
from datetime import date, datetime, timezone
from typing import Callable, Optional

from sqlalchemy import insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from streakline.core.database import job_runs, transaction
from streakline.core.logging import bind_log_context
from streakline.core.metrics import batch_duration_seconds, batch_users_total
from streakline.features.streaks.daily_check import DailyComplianceCheck
from streakline.features.users.service import active_user_ids

logger = logging.getLogger("streakline.batch")

JOB_NAME = "daily_compliance"


@dataclass
class BatchSummary:
    target_day: str
    considered: int = 0
    succeeded: int = 0
    errored: int = 0
    compliant: int = 0
    non_compliant: int = 0
    cancelled: bool = False

    @property
    def status(self) -> str:
        if self.cancelled:
            return "cancelled"
        return "completed_with_errors" if self.errored else "completed"

    def to_dict(self) -> dict:
        return {**asdict(self), "status": self.status}


class DailyComplianceJob:
    def __init__(self, session_factory: sessionmaker, check: DailyComplianceCheck):
        self.session_factory = session_factory
        self.check = check

    def run(self, day: date, should_stop: Optional[Callable[[], bool]] = None) -> dict:
        with bind_log_context(job_name=JOB_NAME, target_day=day.isoformat()):
            return self._run(day, should_stop or (lambda: False))

    def _run(self, day: date, should_stop: Callable[[], bool]) -> dict:
        started_at = datetime.now(timezone.utc)
        summary = BatchSummary(target_day=day.isoformat())

        with transaction(self.session_factory) as session:
            user_ids = active_user_ids(session)
        logger.info("Daily compliance batch started", extra={"users": len(user_ids)})

        for user_id in user_ids:
            if should_stop():
                summary.cancelled = True
                logger.info("Daily compliance batch stopped", extra={"processed": summary.considered})
                break

            summary.considered += 1
            try:
                with transaction(self.session_factory) as session:
                    outcome = self.check.run(session, user_id, day)
            except Exception as e:
                summary.errored += 1
                batch_users_total.inc(labels={"outcome": "errored"})
                # User id and error class only; messages may carry row data
                logger.error(
                    "Daily compliance failed for user",
                    extra={"user_id": user_id, "error_type": type(e).__name__},
                )
                continue

            summary.succeeded += 1
            if outcome.is_compliant:
                summary.compliant += 1
                batch_users_total.inc(labels={"outcome": "compliant"})
            else:
                summary.non_compliant += 1
                batch_users_total.inc(labels={"outcome": "non_compliant"})

        batch_duration_seconds.observe((datetime.now(timezone.utc) - started_at).total_seconds())
        self._record_run(summary, started_at, day)
        logger.info("Daily compliance batch finished", extra=summary.to_dict())
        return summary.to_dict()

    def _record_run(self, summary: BatchSummary, started_at: datetime, day: date) -> None:
        try:
            with transaction(self.session_factory) as session:
                session.execute(
                    insert(job_runs).values(
                        job_name=JOB_NAME,
                        target_day=day,
                        started_at=started_at,
                        finished_at=datetime.now(timezone.utc),
                        status=summary.status,
                        considered=summary.considered,
                        succeeded=summary.succeeded,
                        errored=summary.errored,
                    )
                )
        except SQLAlchemyError:
            logger.exception("Failed to record job run", extra={"job_name": JOB_NAME})


def main(argv=None) -> None:
    from streakline.core.config import settings
    from streakline.core.logging import configure_logging
    from streakline.workers.scheduler import DailyCadence
    from streakline.container import build_container

    parser = argparse.ArgumentParser(description="Daily compliance batch")
    parser.add_argument("--once", action="store_true", help="Run the batch once and exit")
    parser.add_argument("--loop", action="store_true", help="Run on the configured daily cadence until CTRL+C")
    parser.add_argument("--date", type=date.fromisoformat, default=None, help="Target day (YYYY-MM-DD); defaults to the just-finished day")
    args = parser.parse_args(argv)

    configure_logging(settings.ENV, settings.LOG_LEVEL, settings.LOG_FORMAT)
    container = build_container(settings)
    container.create_tables()
    cadence = DailyCadence(settings.BATCH_HOUR, settings.BATCH_MINUTE, settings.BATCH_TIMEZONE)

    if args.once or not args.loop:
        day = args.date or cadence.target_day(datetime.now(timezone.utc))
        summary = container.job.run(day)
        print(
            f"[daily-compliance] {summary['target_day']}: considered={summary['considered']} "
            f"succeeded={summary['succeeded']} errored={summary['errored']}"
        )
        return

    print(f"[daily-compliance] Scheduling daily at {cadence.describe()}. CTRL+C to stop.")
    container.scheduler.schedule(cadence)
    try:
        container.scheduler.wait()
    except KeyboardInterrupt:
        print("[daily-compliance] Stopping")
    finally:
        container.scheduler.stop()


if __name__ == "__main__":
    main()
