# streakline/tests/conftest.py
import fnmatch
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional

import pytest
import redis
from fastapi.testclient import TestClient
from sqlalchemy import insert

from streakline.container import build_container
from streakline.core.cache import ReadThroughCache
from streakline.core.config import Settings
from streakline.core.database import (
    create_all_tables,
    create_db_engine,
    daily_tasks,
    streaks,
    transaction,
    user_settings,
    users,
)
from streakline.core.metrics import METRICS
from streakline.features.users.service import get_or_create_user


class FakeRedis:
    """In-memory stand-in for the redis client; flip ``down`` to simulate an outage."""

    def __init__(self):
        self.store = {}
        self.down = False

    def _check(self):
        if self.down:
            raise redis.exceptions.ConnectionError("simulated outage")

    def ping(self):
        self._check()
        return True

    def get(self, key):
        self._check()
        return self.store.get(key)

    def setex(self, key, ttl, value):
        self._check()
        self.store[key] = value
        return True

    def delete(self, *keys):
        self._check()
        return sum(1 for key in keys if self.store.pop(key, None) is not None)

    def scan_iter(self, match=None, count=None):
        self._check()
        for key in list(self.store):
            if match is None or fnmatch.fnmatchcase(key, match):
                yield key

    def incr(self, key):
        self._check()
        self.store[key] = str(int(self.store.get(key) or 0) + 1)
        return int(self.store[key])

    def expire(self, key, seconds):
        self._check()
        return key in self.store

    def close(self):
        pass


class Seeder:
    """Writes fixture rows straight through SQLAlchemy Core."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    def user(self, user_id: str, *, tz_name: str = "UTC", threshold: Optional[float] = None, status: str = "active") -> str:
        with transaction(self.session_factory) as session:
            get_or_create_user(session, user_id, tz_name=tz_name)
            if status != "active":
                session.execute(users.update().where(users.c.user_id == user_id).values(status=status))
            if threshold is not None:
                session.execute(insert(user_settings).values(user_id=user_id, compliance_threshold=threshold))
        return user_id

    def task(
        self,
        user_id: str,
        day: date,
        *,
        task_type: str = "workout",
        completed: bool = False,
        priority: int = 0,
        title: Optional[str] = None,
    ) -> int:
        values = {
            "user_id": user_id,
            "task_type": task_type,
            "title": title or f"{task_type} task",
            "due_date": day,
            "due_time": time(9, 0),
            "status": "completed" if completed else "pending",
            "priority": priority,
            "completed_at": datetime.combine(day, time(12, 0), tzinfo=timezone.utc) if completed else None,
        }
        with transaction(self.session_factory) as session:
            return session.execute(insert(daily_tasks).values(**values)).inserted_primary_key[0]

    def day_of_tasks(self, user_id: str, day: date, total: int, completed: int, task_type: str = "workout") -> list:
        return [self.task(user_id, day, task_type=task_type, completed=i < completed) for i in range(total)]

    def streak(self, user_id: str, category: str, *, current: int, longest: Optional[int] = None, lifetime: Optional[int] = None, last: date):
        with transaction(self.session_factory) as session:
            session.execute(
                insert(streaks).values(
                    user_id=user_id,
                    streak_type=category,
                    current_streak=current,
                    longest_streak=longest if longest is not None else current,
                    total_completions=lifetime if lifetime is not None else current,
                    last_completed_date=last,
                    streak_start_date=last - timedelta(days=max(current - 1, 0)),
                )
            )


@pytest.fixture(autouse=True)
def reset_metrics():
    METRICS.reset()
    yield
    METRICS.reset()


@pytest.fixture
def today():
    return datetime.now(timezone.utc).date()


@pytest.fixture
def settings_obj(tmp_path):
    return Settings(
        ENV="test",
        DATABASE_URL=f"sqlite:///{tmp_path / 'streakline.db'}",
        TEST_DATABASE_URL=None,
        REDIS_URL="redis://localhost:6379/15",
        CACHE_ENABLED=True,
        CACHE_RECONNECT_INTERVAL_SECONDS=3600,
        BATCH_ENABLED=False,
        JWT_SECRET="test-secret",
        ALLOW_HEADER_AUTH=True,
    )


@pytest.fixture
def engine(settings_obj):
    eng = create_db_engine(settings_obj.DATABASE_URL, settings_obj)
    create_all_tables(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def cache(fake_redis, settings_obj):
    c = ReadThroughCache(
        lambda: fake_redis,
        prefix=settings_obj.CACHE_PREFIX,
        default_ttl=settings_obj.CACHE_TTL_SECONDS,
        reconnect_interval=settings_obj.CACHE_RECONNECT_INTERVAL_SECONDS,
    )
    c.connect()
    yield c
    c.disconnect()


@pytest.fixture
def container(settings_obj, engine, cache):
    return build_container(settings_obj, engine=engine, cache=cache)


@pytest.fixture
def session_factory(container):
    return container.session_factory


@pytest.fixture
def seed(session_factory):
    return Seeder(session_factory)


@pytest.fixture
def client(settings_obj, container):
    from streakline.main import create_app

    app = create_app(settings_obj, container=container)
    with TestClient(app) as c:
        yield c
