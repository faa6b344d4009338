"""
Daily cadence and the in-process scheduler that drives the compliance batch.

The scheduler owns one background thread that sleeps on a stop event until
the next fire time. Stopping sets the event: a sleeping thread exits at once,
a running batch finishes its current user and then stops.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Callable, Optional
from zoneinfo import ZoneInfo

from streakline.core.errors import ConflictError
from streakline.workers.daily_compliance import DailyComplianceJob

logger = logging.getLogger("streakline.scheduler")

MAX_SLEEP_SECONDS = 60.0


@dataclass(frozen=True)
class DailyCadence:
    hour: int = 23
    minute: int = 59
    timezone: str = "UTC"

    def __post_init__(self):
        if not 0 <= self.hour <= 23:
            raise ValueError(f"hour must be 0-23, got {self.hour}")
        if not 0 <= self.minute <= 59:
            raise ValueError(f"minute must be 0-59, got {self.minute}")
        ZoneInfo(self.timezone)

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    def describe(self) -> str:
        return f"{self.hour:02d}:{self.minute:02d} {self.timezone}"

    def next_fire_after(self, now: datetime) -> datetime:
        """First fire time strictly after ``now`` (returned in UTC)."""
        local_now = now.astimezone(self.tz)
        candidate = datetime.combine(local_now.date(), time(self.hour, self.minute), tzinfo=self.tz)
        if candidate <= local_now:
            candidate = datetime.combine(local_now.date() + timedelta(days=1), time(self.hour, self.minute), tzinfo=self.tz)
        return candidate.astimezone(timezone.utc)

    def target_day(self, fire_time: datetime) -> date:
        """The day a run at ``fire_time`` judges.

        Late-evening fires judge the day that is ending; fires after midnight
        (before local noon) judge the day that just ended.
        """
        local = fire_time.astimezone(self.tz)
        if local.hour >= 12:
            return local.date()
        return local.date() - timedelta(days=1)


class DailyBatchScheduler:
    def __init__(self, job: DailyComplianceJob, clock: Optional[Callable[[], datetime]] = None):
        self.job = job
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._cadence: Optional[DailyCadence] = None
        self._next_fire: Optional[datetime] = None
        self._thread: Optional[threading.Thread] = None
        self._stop = threading.Event()
        self._state_lock = threading.Lock()
        self._run_lock = threading.Lock()
        self._last_run_at: Optional[datetime] = None
        self._last_summary: Optional[dict] = None
        self._last_error: Optional[str] = None

    # Lifecycle ---------------------------------------------------------
    def schedule(self, cadence: DailyCadence, *, start_thread: bool = True) -> datetime:
        """Arm the daily cadence. Returns the first fire time."""
        with self._state_lock:
            if self._thread is not None and self._thread.is_alive():
                raise RuntimeError("Scheduler already running; stop() it first")
            self._cadence = cadence
            self._next_fire = cadence.next_fire_after(self._clock())
            self._stop.clear()
            if start_thread:
                self._thread = threading.Thread(target=self._loop, name="daily-compliance-scheduler", daemon=True)
                self._thread.start()
            next_fire = self._next_fire
        logger.info("Daily batch scheduled", extra={"cadence": cadence.describe(), "next_run_at": next_fire.isoformat()})
        return next_fire

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        with self._state_lock:
            self._thread = None
            self._next_fire = None
        logger.info("Daily batch scheduler stopped")

    def wait(self) -> None:
        """Block until stop() is called (CLI loop mode)."""
        while not self._stop.wait(MAX_SLEEP_SECONDS):
            pass

    def status(self) -> dict:
        with self._state_lock:
            return {
                "scheduled": self._cadence is not None and self._next_fire is not None,
                "running": self._run_lock.locked(),
                "cadence": self._cadence.describe() if self._cadence else None,
                "nextRunAt": self._next_fire.isoformat() if self._next_fire else None,
                "lastRunAt": self._last_run_at.isoformat() if self._last_run_at else None,
                "lastSummary": self._last_summary,
                "lastError": self._last_error,
            }

    # Running -----------------------------------------------------------
    def run_now(self, day: Optional[date] = None) -> dict:
        """Run the batch synchronously for ``day`` (default: the just-finished day)."""
        if day is None:
            cadence = self._cadence or DailyCadence()
            day = cadence.target_day(self._clock())
        if not self._run_lock.acquire(blocking=False):
            raise ConflictError("Daily compliance batch is already running")
        try:
            return self._execute(day)
        finally:
            self._run_lock.release()

    def run_pending(self, now: Optional[datetime] = None) -> Optional[dict]:
        """Run the batch if the next fire time has passed. Returns its summary, else None."""
        now = now or self._clock()
        with self._state_lock:
            if self._cadence is None or self._next_fire is None or now < self._next_fire:
                return None
            day = self._cadence.target_day(self._next_fire)
            self._next_fire = self._cadence.next_fire_after(now)
        if not self._run_lock.acquire(blocking=False):
            logger.warning("Skipping scheduled batch; previous run still in progress", extra={"target_day": day.isoformat()})
            return None
        try:
            return self._execute(day)
        except Exception as e:
            # Never let one failed night kill the scheduler thread
            with self._state_lock:
                self._last_error = type(e).__name__
            logger.exception("Scheduled daily batch failed", extra={"target_day": day.isoformat()})
            return None
        finally:
            self._run_lock.release()

    def _execute(self, day: date) -> dict:
        summary = self.job.run(day, should_stop=self._stop.is_set)
        with self._state_lock:
            self._last_run_at = self._clock()
            self._last_summary = summary
            self._last_error = None
        return summary

    def _loop(self) -> None:
        while not self._stop.is_set():
            with self._state_lock:
                next_fire = self._next_fire
            if next_fire is None:
                return
            remaining = (next_fire - self._clock()).total_seconds()
            if remaining > 0:
                self._stop.wait(min(remaining, MAX_SLEEP_SECONDS))
                continue
            self.run_pending()
