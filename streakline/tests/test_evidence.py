"""
Evidence transaction: completion is idempotent per task, streaks advance once
per day, failures leave no partial writes, and the user's cached task list is
invalidated after commit.
"""

import threading

import pytest
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import func, select

from streakline.core.database import daily_tasks, task_evidence, transaction
from streakline.core.errors import NotFoundError, StreakUpdateError
from streakline.features.tasks.validators import EvidenceSubmission, TodayTasksQuery, strip_markup
from streakline.models.streak import OVERALL


def submission(task_id, **overrides):
    body = {"taskId": task_id, "type": "text_log", "data": {"text": "done"}}
    body.update(overrides)
    return EvidenceSubmission.model_validate(body)


def evidence_count(session_factory, task_id):
    with transaction(session_factory) as session:
        return session.execute(
            select(func.count()).select_from(task_evidence).where(task_evidence.c.task_id == task_id)
        ).scalar()


def task_status(session_factory, task_id):
    with transaction(session_factory) as session:
        return session.execute(select(daily_tasks.c.status).where(daily_tasks.c.id == task_id)).scalar()


def streak(container, user_id, category=OVERALL):
    with transaction(container.session_factory) as session:
        return container.ledger.get(session, user_id, category)


def test_first_evidence_completes_task_and_starts_streaks(container, seed, today):
    user = seed.user("u1")
    task_id = seed.task(user, today, task_type="hydration")

    result = container.tasks.submit_evidence(user, submission(task_id))

    assert result["streakUpdated"] is True
    assert result["newStreak"] == 1
    assert result["task"]["status"] == "completed"
    assert result["task"]["completedAt"] is not None
    assert result["evidence"]["type"] == "text_log"
    assert result["evidence"]["notes"] == "done"
    assert result["newlyAwardedBadges"] == []
    assert streak(container, user).lifetime_total == 1
    assert streak(container, user, "hydration").current == 1


def test_second_evidence_on_completed_task_does_not_touch_streak(container, seed, today):
    user = seed.user("u1")
    task_id = seed.task(user, today)
    container.tasks.submit_evidence(user, submission(task_id))

    result = container.tasks.submit_evidence(user, submission(task_id, data={"text": "again"}))

    assert result["streakUpdated"] is False
    assert result["newStreak"] == 1
    assert len(result["task"]["evidence"]) == 2
    assert evidence_count(container.session_factory, task_id) == 2
    record = streak(container, user)
    assert record.current == 1
    assert record.lifetime_total == 1


def test_second_task_same_day_counts_day_once(container, seed, today):
    user = seed.user("u1")
    first = seed.task(user, today)
    second = seed.task(user, today, task_type="meal")

    container.tasks.submit_evidence(user, submission(first))
    result = container.tasks.submit_evidence(user, submission(second))

    assert result["task"]["status"] == "completed"
    assert result["streakUpdated"] is False
    assert result["newStreak"] == 1
    assert streak(container, user, "meal").current == 1


def test_task_owned_by_someone_else_is_not_found(container, seed, today):
    owner = seed.user("owner")
    intruder = seed.user("intruder")
    task_id = seed.task(owner, today)

    with pytest.raises(NotFoundError):
        container.tasks.submit_evidence(intruder, submission(task_id))

    assert evidence_count(container.session_factory, task_id) == 0
    assert task_status(container.session_factory, task_id) == "pending"


def test_missing_task_is_not_found(container, seed):
    user = seed.user("u1")
    with pytest.raises(NotFoundError):
        container.tasks.submit_evidence(user, submission(9999))


def test_streak_failure_rolls_back_everything(container, seed, today, monkeypatch):
    user = seed.user("u1")
    task_id = seed.task(user, today)

    def explode(*args, **kwargs):
        raise StreakUpdateError("contention")

    monkeypatch.setattr(container.ledger, "record_day", explode)

    with pytest.raises(StreakUpdateError):
        container.tasks.submit_evidence(user, submission(task_id))

    assert evidence_count(container.session_factory, task_id) == 0
    assert task_status(container.session_factory, task_id) == "pending"


def test_badge_failure_does_not_undo_evidence(container, seed, today, monkeypatch):
    user = seed.user("u1")
    task_id = seed.task(user, today)

    def explode(*args, **kwargs):
        raise RuntimeError("awarder down")

    monkeypatch.setattr(container.awarder, "evaluate", explode)

    result = container.tasks.submit_evidence(user, submission(task_id))

    assert result["newlyAwardedBadges"] == []
    assert task_status(container.session_factory, task_id) == "completed"


def test_completion_invalidates_cached_task_list(container, seed, today):
    user = seed.user("u1")
    task_id = seed.task(user, today)
    query = TodayTasksQuery(day=today)

    first = container.tasks.get_today_tasks(user, query)
    again = container.tasks.get_today_tasks(user, query)
    assert first["cached"] is False
    assert again["cached"] is True
    assert again["completedTasks"] == 0

    container.tasks.submit_evidence(user, submission(task_id))

    fresh = container.tasks.get_today_tasks(user, query)
    assert fresh["cached"] is False
    assert fresh["completedTasks"] == 1
    assert fresh["streak"]["current"] == 1


def test_completion_invalidates_even_when_primary_is_down(container, seed, today, fake_redis):
    user = seed.user("u1")
    task_id = seed.task(user, today)
    query = TodayTasksQuery(day=today)
    container.tasks.get_today_tasks(user, query)

    fake_redis.down = True
    container.tasks.get_today_tasks(user, query)  # trips the primary, repopulates the local tier
    container.tasks.submit_evidence(user, submission(task_id))

    fresh = container.tasks.get_today_tasks(user, query)
    assert fresh["cached"] is False
    assert fresh["completedTasks"] == 1


def test_completion_during_task_list_load_is_not_cached(container, seed, today, monkeypatch):
    user = seed.user("u1")
    task_id = seed.task(user, today)
    query = TodayTasksQuery(day=today)
    service = container.tasks
    real_load = service._load_day

    def load_then_complete(*args, **kwargs):
        result = real_load(*args, **kwargs)
        # Completion commits after the read, before the list is written back
        service.submit_evidence(user, submission(task_id))
        return result

    monkeypatch.setattr(service, "_load_day", load_then_complete)
    during = service.get_today_tasks(user, query)
    monkeypatch.undo()

    after = service.get_today_tasks(user, query)

    assert during["completedTasks"] == 0
    assert after["cached"] is False
    assert after["completedTasks"] == 1
    assert task_status(container.session_factory, task_id) == "completed"


def test_cache_lookups_hold_no_database_connection(container, seed, today, engine, monkeypatch):
    user = seed.user("u1")
    seed.task(user, today)
    checked_out = []
    real_get = container.cache.get

    def recording_get(key):
        checked_out.append(engine.pool.checkedout())
        return real_get(key)

    monkeypatch.setattr(container.cache, "get", recording_get)

    container.tasks.get_today_tasks(user, TodayTasksQuery())
    container.tasks.get_today_tasks(user, TodayTasksQuery(day=today))

    assert checked_out == [0, 0]


def test_metrics_and_photo_payloads_are_stored(container, seed, today):
    user = seed.user("u1")
    weigh_in = seed.task(user, today, task_type="weight_log")
    photo = seed.task(user, today, task_type="progress_photo")

    metrics_result = container.tasks.submit_evidence(
        user, submission(weigh_in, type="metrics", data={"metrics": {"weight_kg": 81.4}})
    )
    photo_result = container.tasks.submit_evidence(
        user,
        submission(photo, type="photo_reference", data={"photoUrl": "https://cdn.example.com/p/1.jpg", "photoStorageKey": "p/1.jpg"}),
    )

    assert metrics_result["evidence"]["metrics"] == {"weight_kg": 81.4}
    assert photo_result["evidence"]["photoUrl"] == "https://cdn.example.com/p/1.jpg"
    assert photo_result["evidence"]["photoStorageKey"] == "p/1.jpg"


def test_concurrent_first_completions_start_streak_once(container, seed, today):
    user = seed.user("u1")
    task_ids = [seed.task(user, today) for _ in range(6)]
    barrier = threading.Barrier(len(task_ids))
    results, errors = [], []
    lock = threading.Lock()

    def worker(task_id):
        barrier.wait()
        try:
            result = container.tasks.submit_evidence(user, submission(task_id))
        except Exception as e:
            with lock:
                errors.append(e)
            return
        with lock:
            results.append(result)

    threads = [threading.Thread(target=worker, args=(tid,)) for tid in task_ids]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)

    assert errors == []
    assert sum(1 for r in results if r["streakUpdated"]) == 1
    record = streak(container, user)
    assert record.current == 1
    assert record.lifetime_total == 1


def test_concurrent_duplicate_submissions_complete_once(container, seed, today):
    user = seed.user("u1")
    task_id = seed.task(user, today)
    barrier = threading.Barrier(4)
    results = []
    lock = threading.Lock()

    def worker():
        barrier.wait()
        result = container.tasks.submit_evidence(user, submission(task_id))
        with lock:
            results.append(result)

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)

    assert len(results) == 4
    assert sum(1 for r in results if r["streakUpdated"]) == 1
    assert evidence_count(container.session_factory, task_id) == 4
    assert streak(container, user).lifetime_total == 1


class TestEvidenceValidation:
    def test_data_must_match_type(self):
        with pytest.raises(PydanticValidationError) as exc:
            EvidenceSubmission.model_validate({"taskId": 1, "type": "metrics", "data": {"text": "hi"}})
        assert exc.value.errors()[0]["loc"] == ("data",)

    def test_photo_url_must_be_http(self):
        with pytest.raises(PydanticValidationError):
            EvidenceSubmission.model_validate(
                {"taskId": 1, "type": "photo_reference", "data": {"photoUrl": "javascript:alert(1)"}}
            )

    def test_text_too_long_rejected(self):
        with pytest.raises(PydanticValidationError):
            EvidenceSubmission.model_validate({"taskId": 1, "type": "text_log", "data": {"text": "x" * 2001}})

    def test_notes_too_long_rejected(self):
        with pytest.raises(PydanticValidationError):
            EvidenceSubmission.model_validate(
                {"taskId": 1, "type": "text_log", "data": {"text": "ok"}, "notes": "n" * 1001}
            )

    def test_task_id_must_be_positive(self):
        with pytest.raises(PydanticValidationError):
            EvidenceSubmission.model_validate({"taskId": 0, "type": "text_log", "data": {"text": "ok"}})

    def test_markup_is_stripped_from_notes_and_text(self):
        body = EvidenceSubmission.model_validate(
            {
                "taskId": 1,
                "type": "text_log",
                "data": {"text": "<b>ran</b> 5k"},
                "notes": "<script>alert('x')</script>felt <i>great</i>",
            }
        )
        assert body.text == "ran 5k"
        assert body.notes == "felt great"

    def test_markup_only_text_is_rejected(self):
        with pytest.raises(PydanticValidationError):
            EvidenceSubmission.model_validate({"taskId": 1, "type": "text_log", "data": {"text": "<p></p>"}})

    def test_strip_markup_handles_none(self):
        assert strip_markup(None) is None
        assert strip_markup("  plain  ") == "plain"
