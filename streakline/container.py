"""
Composition root.

Builds every long-lived collaborator once from Settings and hands them out
explicitly; nothing here runs at import time. The FastAPI app and the batch
CLI both go through build_container().
"""
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from streakline.core.cache import ReadThroughCache
from streakline.core.config import Settings, settings as default_settings
from streakline.core.database import create_all_tables, create_db_engine, create_session_factory
from streakline.features.badges.service import BadgeAwarder
from streakline.features.streaks.compliance import ComplianceCalculator
from streakline.features.streaks.daily_check import DailyComplianceCheck
from streakline.features.streaks.service import StreakLedger
from streakline.features.tasks.service import TaskService
from streakline.workers.daily_compliance import DailyComplianceJob
from streakline.workers.scheduler import DailyBatchScheduler, DailyCadence


@dataclass
class Container:
    settings: Settings
    engine: Engine
    session_factory: sessionmaker
    cache: ReadThroughCache
    ledger: StreakLedger
    calculator: ComplianceCalculator
    awarder: BadgeAwarder
    daily_check: DailyComplianceCheck
    tasks: TaskService
    job: DailyComplianceJob
    scheduler: DailyBatchScheduler

    @property
    def cadence(self) -> DailyCadence:
        return DailyCadence(self.settings.BATCH_HOUR, self.settings.BATCH_MINUTE, self.settings.BATCH_TIMEZONE)

    def create_tables(self) -> None:
        create_all_tables(self.engine)

    def dispose(self) -> None:
        self.scheduler.stop(timeout=5)
        self.cache.disconnect()
        self.engine.dispose()


def build_container(
    cfg: Optional[Settings] = None,
    *,
    engine: Optional[Engine] = None,
    cache: Optional[ReadThroughCache] = None,
) -> Container:
    cfg = cfg or default_settings
    engine = engine or create_db_engine(cfg.TEST_DATABASE_URL or cfg.DATABASE_URL, cfg)
    session_factory = create_session_factory(engine)
    cache = cache or ReadThroughCache.from_settings(cfg)

    ledger = StreakLedger(max_attempts=cfg.STREAK_UPDATE_MAX_ATTEMPTS)
    calculator = ComplianceCalculator(default_threshold=cfg.COMPLIANCE_THRESHOLD_DEFAULT)
    awarder = BadgeAwarder(ledger, calculator)
    daily_check = DailyComplianceCheck(calculator, ledger, awarder)
    tasks = TaskService(session_factory, cache, ledger, awarder, cache_ttl_seconds=cfg.CACHE_TTL_SECONDS)
    job = DailyComplianceJob(session_factory, daily_check)
    scheduler = DailyBatchScheduler(job)

    return Container(
        settings=cfg,
        engine=engine,
        session_factory=session_factory,
        cache=cache,
        ledger=ledger,
        calculator=calculator,
        awarder=awarder,
        daily_check=daily_check,
        tasks=tasks,
        job=job,
        scheduler=scheduler,
    )
