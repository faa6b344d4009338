import logging
from datetime import date

from sqlalchemy import select

from streakline.core.database import job_runs, transaction
from streakline.core.metrics import batch_users_total
from streakline.models.streak import COMPLIANCE
from streakline.workers.daily_compliance import JOB_NAME

D = date(2026, 3, 10)


def compliance_streak(container, user):
    with transaction(container.session_factory) as session:
        return container.ledger.get(session, user, COMPLIANCE)


def test_batch_processes_every_active_user(container, seed):
    good = seed.user("a-good")
    lazy = seed.user("b-lazy")
    seed.user("c-paused", status="paused")
    seed.day_of_tasks(good, D, total=5, completed=4)
    seed.day_of_tasks(lazy, D, total=5, completed=1)
    seed.day_of_tasks("c-paused", D, total=1, completed=1)

    summary = container.job.run(D)

    assert summary["considered"] == 2
    assert summary["succeeded"] == 2
    assert summary["errored"] == 0
    assert summary["compliant"] == 1
    assert summary["non_compliant"] == 1
    assert summary["status"] == "completed"
    assert compliance_streak(container, good).current == 1
    assert compliance_streak(container, lazy).current == 0
    assert compliance_streak(container, "c-paused").current == 0


def test_one_failing_user_does_not_abort_batch(container, seed, monkeypatch, caplog):
    for user_id in ("a-first", "b-broken", "c-last"):
        seed.user(user_id)
        seed.day_of_tasks(user_id, D, total=1, completed=1)

    real_run = container.daily_check.run

    def flaky(session, user_id, day):
        if user_id == "b-broken":
            raise RuntimeError("secret personal detail")
        return real_run(session, user_id, day)

    monkeypatch.setattr(container.daily_check, "run", flaky)

    with caplog.at_level(logging.ERROR, logger="streakline.batch"):
        summary = container.job.run(D)

    assert summary["considered"] == 3
    assert summary["succeeded"] == 2
    assert summary["errored"] == 1
    assert summary["status"] == "completed_with_errors"
    assert compliance_streak(container, "a-first").current == 1
    assert compliance_streak(container, "c-last").current == 1
    assert batch_users_total.value({"outcome": "errored"}) == 1

    failures = [r for r in caplog.records if r.getMessage() == "Daily compliance failed for user"]
    assert len(failures) == 1
    assert failures[0].user_id == "b-broken"
    assert failures[0].error_type == "RuntimeError"
    assert "secret personal detail" not in caplog.text


def test_failed_user_writes_nothing(container, seed, monkeypatch):
    user = seed.user("u1")
    seed.day_of_tasks(user, D, total=1, completed=1)

    def fail_after_streak(session, user_id, day):
        container.ledger.record_day(session, user_id, COMPLIANCE, day)
        raise RuntimeError("badge store down")

    monkeypatch.setattr(container.daily_check, "run", fail_after_streak)

    summary = container.job.run(D)

    assert summary["errored"] == 1
    assert compliance_streak(container, user).current == 0


def test_stop_between_users(container, seed):
    for user_id in ("u1", "u2", "u3"):
        seed.user(user_id)
    calls = {"n": 0}

    def should_stop():
        calls["n"] += 1
        return calls["n"] > 1

    summary = container.job.run(D, should_stop=should_stop)

    assert summary["cancelled"] is True
    assert summary["considered"] == 1
    assert summary["status"] == "cancelled"


def test_job_run_is_recorded(container, seed):
    seed.user("u1")

    container.job.run(D)

    with transaction(container.session_factory) as session:
        row = session.execute(select(job_runs).where(job_runs.c.job_name == JOB_NAME)).first()
    assert row is not None
    assert row.target_day == D
    assert row.status == "completed"
    assert row.considered == 1
    assert row.finished_at is not None


def test_rerun_same_day_is_idempotent(container, seed):
    user = seed.user("u1")
    seed.day_of_tasks(user, D, total=2, completed=2)

    container.job.run(D)
    container.job.run(D)

    record = compliance_streak(container, user)
    assert record.current == 1
    assert record.lifetime_total == 1
