import json
import logging

import pytest

from streakline.core.config import Settings, validate_config
from streakline.core.logging import (
    ConsoleFormatter,
    ContextFilter,
    JsonFormatter,
    bind_log_context,
    latency_bucket_ms,
    request_id_ctx_var,
)
from streakline.core.metrics import MetricsRegistry, normalize_path
from streakline.core.validation import EnvValidationError, validate_env


@pytest.fixture(autouse=True)
def no_skip(monkeypatch):
    monkeypatch.delenv("SKIP_ENV_VALIDATION", raising=False)


def make(**overrides):
    base = {
        "ENV": "development",
        "DATABASE_URL": "sqlite:///./dev.db",
        "TEST_DATABASE_URL": None,
        "REDIS_URL": "redis://localhost:6379/0",
        "JWT_SECRET": None,
        "ALLOW_HEADER_AUTH": True,
    }
    base.update(overrides)
    return Settings(**base)


class TestValidateEnv:
    def test_development_defaults_pass(self):
        assert validate_env(settings_obj=make()) is True

    def test_postgres_url_accepted(self):
        assert validate_env(settings_obj=make(DATABASE_URL="postgresql://u:p@db:5432/streakline")) is True

    def test_malformed_database_url(self):
        with pytest.raises(EnvValidationError):
            validate_env(settings_obj=make(DATABASE_URL="not a url"))

    def test_redis_scheme_checked(self):
        with pytest.raises(EnvValidationError):
            validate_env(settings_obj=make(REDIS_URL="http://cache:6379"))

    def test_production_requires_jwt_secret(self):
        with pytest.raises(EnvValidationError):
            validate_env(settings_obj=make(ENV="production", ALLOW_HEADER_AUTH=False))

    def test_production_forbids_header_auth(self):
        with pytest.raises(EnvValidationError):
            validate_env(settings_obj=make(ENV="production", JWT_SECRET="s", ALLOW_HEADER_AUTH=True))

    def test_test_database_only_in_test_mode(self):
        with pytest.raises(EnvValidationError):
            validate_env(settings_obj=make(TEST_DATABASE_URL="sqlite:///./t.db"))
        assert validate_env(settings_obj=make(ENV="test", TEST_DATABASE_URL="sqlite:///./t.db")) is True

    def test_all_problems_reported_together(self):
        with pytest.raises(EnvValidationError) as exc_info:
            validate_env(settings_obj=make(ENV="production", ALLOW_HEADER_AUTH=True, REDIS_URL="http://cache"))
        problems = exc_info.value.problems
        assert "JWT_SECRET is required in production" in problems
        assert "ALLOW_HEADER_AUTH must be disabled in production" in problems
        assert any("REDIS_URL" in p for p in problems)

    def test_batch_timezone_checked_when_enabled(self):
        assert validate_env(settings_obj=make(BATCH_TIMEZONE="Mars/Olympus")) is True
        with pytest.raises(EnvValidationError):
            validate_env(settings_obj=make(BATCH_ENABLED=True, BATCH_TIMEZONE="Mars/Olympus"))

    def test_skip_flag(self, monkeypatch):
        monkeypatch.setenv("SKIP_ENV_VALIDATION", "1")
        assert validate_env(settings_obj=make(DATABASE_URL="not a url")) is True


class TestValidateConfig:
    def test_missing_jwt_secret_warns(self, caplog):
        cfg = make(ALLOW_HEADER_AUTH=False)
        with caplog.at_level(logging.WARNING, logger="streakline"):
            assert validate_config(strict=False, settings_obj=cfg) is True
        assert "JWT_SECRET" in caplog.text

    def test_strict_mode_raises(self):
        with pytest.raises(RuntimeError):
            validate_config(strict=True, settings_obj=make(ALLOW_HEADER_AUTH=False))

    def test_threshold_out_of_range(self):
        with pytest.raises(RuntimeError):
            validate_config(strict=True, settings_obj=make(COMPLIANCE_THRESHOLD_DEFAULT=1.5))


class TestLogging:
    def test_json_formatter_carries_request_id_and_extras(self):
        token = request_id_ctx_var.set("rid-42")
        try:
            record = logging.LogRecord("streakline.test", logging.INFO, __file__, 1, "hello", (), None)
            record.user_id = "u1"
            ContextFilter().filter(record)
            payload = json.loads(JsonFormatter().format(record))
        finally:
            request_id_ctx_var.reset(token)

        assert payload["request_id"] == "rid-42"
        assert payload["user_id"] == "u1"
        assert payload["message"] == "hello"

    @pytest.mark.parametrize(
        "ms,bucket",
        [(None, "unknown"), (5, "<10ms"), (50, "10-100ms"), (250, "100-500ms"), (750, "500-1000ms"), (5000, ">=1000ms")],
    )
    def test_latency_buckets(self, ms, bucket):
        assert latency_bucket_ms(ms) == bucket

    def test_bound_context_reaches_records(self):
        record = logging.LogRecord("streakline.batch", logging.INFO, __file__, 1, "started", (), None)
        with bind_log_context(job_name="daily_compliance", target_day="2026-03-10"):
            with bind_log_context(target_day="2026-03-11"):
                ContextFilter().filter(record)

        assert record.job_name == "daily_compliance"
        assert record.target_day == "2026-03-11"

    def test_explicit_extra_wins_over_context(self):
        record = logging.LogRecord("streakline.batch", logging.INFO, __file__, 1, "x", (), None)
        record.target_day = "explicit"
        with bind_log_context(target_day="bound"):
            ContextFilter().filter(record)
        assert record.target_day == "explicit"

    def test_console_formatter_single_line(self):
        record = logging.LogRecord("streakline.tasks", logging.WARNING, __file__, 1, "slow %s", ("query",), None)
        record.request_id = "rid-9"
        record.user_id = "u1"

        line = ConsoleFormatter().format(record)

        assert "WARNING" in line
        assert "rid=rid-9" in line
        assert line.endswith("slow query user_id=u1")


class TestMetricsRegistry:
    def test_histogram_exposition(self):
        registry = MetricsRegistry()
        hist = registry.histogram("job_seconds", "Job time", buckets=(1.0, 10.0))
        hist.observe(0.5)
        hist.observe(1.0)
        hist.observe(30)

        text = registry.export_prometheus()

        assert "# HELP job_seconds Job time" in text
        assert 'job_seconds_bucket{le="1.0"} 2' in text
        assert 'job_seconds_bucket{le="10.0"} 2' in text
        assert 'job_seconds_bucket{le="+Inf"} 3' in text
        assert "job_seconds_count 3" in text
        assert hist.count() == 3

    def test_counter_labels_and_escaping(self):
        registry = MetricsRegistry()
        counter = registry.counter("hits_total", label_names=["path"])
        counter.inc(labels={"path": 'a"b'})

        assert 'hits_total{path="a\\"b"} 1.0' in registry.export_prometheus()
        with pytest.raises(ValueError):
            counter.inc(amount=-1)

    def test_same_name_returns_same_metric(self):
        registry = MetricsRegistry()
        assert registry.counter("x_total") is registry.counter("x_total")
        with pytest.raises(ValueError):
            registry.gauge("x_total")

    def test_normalize_path(self):
        assert normalize_path("/v1/tasks/42/evidence") == "/v1/tasks/:id/evidence"
        assert normalize_path("/v1/users/3f2a9c1e-aaaa") == "/v1/users/:id"
        assert normalize_path("/v1/tasks/today") == "/v1/tasks/today"
