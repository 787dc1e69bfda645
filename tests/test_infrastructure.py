# tests/test_infrastructure.py
"""Tests for infrastructure components"""
import json
import logging
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from asyncpg.exceptions import DeadlockDetectedError, PostgresError, UniqueViolationError

from conftest import make_envelope
from symphony.infra.db_resilience_async import is_transient_error, retry_on_transient_error, safe_db_conn
from symphony.infra.logging_config import ConsoleFormatter, JSONFormatter, LogContext
from symphony.infra.metrics import DispatcherMetrics, MetricsCollector, Timer, get_metrics_collector
from symphony.infra.migrations_async import list_migrations


class TestDatabaseResilience:
    def test_is_transient_error_connection_error(self):
        assert is_transient_error(ConnectionResetError("connection reset by peer")) is True

    def test_is_transient_error_deadlock(self):
        assert is_transient_error(DeadlockDetectedError("deadlock detected")) is True

    def test_server_reported_errors_are_permanent(self):
        assert is_transient_error(UniqueViolationError("duplicate key")) is False
        assert is_transient_error(PostgresError("connection timeout")) is False

    def test_is_transient_error_by_message(self):
        assert is_transient_error(RuntimeError("server closed the connection unexpectedly")) is True

    def test_is_transient_error_non_transient(self):
        assert is_transient_error(ValueError("some other error")) is False

    @pytest.mark.asyncio
    async def test_retry_decorator_succeeds_on_first_try(self):
        call_count = 0

        @retry_on_transient_error(max_retries=3)
        async def successful_operation():
            nonlocal call_count
            call_count += 1
            return "success"

        result = await successful_operation()
        assert result == "success"
        assert call_count == 1

    @pytest.mark.asyncio
    async def test_retry_decorator_succeeds_after_transient_error(self):
        call_count = 0

        @retry_on_transient_error(max_retries=3, initial_delay=0.001)
        async def operation_with_transient_error():
            nonlocal call_count
            call_count += 1
            if call_count < 2:
                raise ConnectionError("connection reset")
            return "success"

        result = await operation_with_transient_error()
        assert result == "success"
        assert call_count == 2

    @pytest.mark.asyncio
    async def test_retry_decorator_gives_up(self):
        call_count = 0

        @retry_on_transient_error(max_retries=2, initial_delay=0.001)
        async def always_down():
            nonlocal call_count
            call_count += 1
            raise ConnectionError("connection reset")

        with pytest.raises(ConnectionError):
            await always_down()
        assert call_count == 3

    @pytest.mark.asyncio
    async def test_retry_decorator_raises_non_transient_immediately(self):
        call_count = 0

        @retry_on_transient_error(max_retries=3)
        async def operation_with_non_transient_error():
            nonlocal call_count
            call_count += 1
            raise ValueError("not a transient error")

        with pytest.raises(ValueError):
            await operation_with_non_transient_error()

        assert call_count == 1  # Should not retry

    @pytest.mark.asyncio
    async def test_safe_db_conn_releases_connection(self):
        conn = MagicMock()
        pool = MagicMock()
        pool.acquire = AsyncMock(return_value=conn)
        pool.release = AsyncMock()

        with patch("symphony.infra.db_async.get_pool", return_value=pool):
            with pytest.raises(RuntimeError):
                async with safe_db_conn() as acquired:
                    assert acquired is conn
                    raise RuntimeError("statement failed")

        pool.release.assert_awaited_once_with(conn)


class TestMetrics:
    def test_metrics_counter_increment(self):
        collector = MetricsCollector()
        collector.inc_counter("test_counter", 1)
        collector.inc_counter("test_counter", 2)

        metrics = collector.get_metrics()
        assert metrics["counters"]["test_counter"] == 3

    def test_metrics_histogram_observe(self):
        collector = MetricsCollector()
        collector.observe_histogram("test_histogram", 0.1)
        collector.observe_histogram("test_histogram", 0.2)
        collector.observe_histogram("test_histogram", 0.5)

        stats = collector.get_metrics()["histograms"]["test_histogram"]
        assert stats["count"] == 3
        assert stats["min"] == 0.1
        assert stats["max"] == 0.5

    def test_metrics_with_labels(self):
        collector = MetricsCollector()
        collector.inc_counter("dispatched", 1, {"transport": "supabase"})
        collector.inc_counter("dispatched", 2, {"transport": "sync"})

        counters = collector.get_metrics()["counters"]
        assert counters["dispatched{transport=supabase}"] == 1
        assert counters["dispatched{transport=sync}"] == 2
        assert collector.get_counter("dispatched", {"transport": "sync"}) == 2
        assert collector.get_counter("dispatched", {"transport": "bulk"}) == 0

    def test_timer_records_duration(self):
        with Timer("op_duration_ms", transport="supabase") as timer:
            pass
        assert timer.duration_ms >= 0
        stats = get_metrics_collector().get_metrics()["histograms"]["op_duration_ms{transport=supabase}"]
        assert stats["count"] == 1

    def test_dispatcher_metrics(self):
        DispatcherMetrics.handler_failed("send_email", retryable=True)
        DispatcherMetrics.lost_claim("supabase")
        collector = get_metrics_collector()
        assert collector.get_counter("lost_claims_total", {"transport": "supabase"}) == 1
        assert sum(
            v for k, v in collector.get_metrics()["counters"].items() if k.startswith("handler_failure_total")
        ) == 1


class TestLogging:
    def _record(self, **extra) -> logging.LogRecord:
        record = logging.LogRecord("symphony.test", logging.INFO, __file__, 10, "hello %s", ("world",), None)
        for key, value in extra.items():
            setattr(record, key, value)
        return record

    def test_json_formatter_includes_context_fields(self):
        record = self._record(message_id="abc", transport="supabase", unrelated="x")
        data = json.loads(JSONFormatter().format(record))
        assert data["message"] == "hello world"
        assert data["level"] == "INFO"
        assert data["message_id"] == "abc"
        assert data["transport"] == "supabase"
        assert "unrelated" not in data

    def test_console_formatter_short_id(self):
        record = self._record(message_id="0123456789abcdef", message_type="send_email")
        line = ConsoleFormatter().format(record)
        assert "msg=01234567" in line
        assert "type=send_email" in line
        assert "hello world" in line

    def test_log_context_adds_envelope_fields(self):
        logger = MagicMock()
        envelope = make_envelope()
        LogContext.for_envelope(logger, envelope, worker_id="w1").warning("retrying", extra={"retry_count": 2})

        level, msg = logger.log.call_args[0]
        extra = logger.log.call_args[1]["extra"]
        assert level == logging.WARNING
        assert msg == "retrying"
        assert extra == {
            "retry_count": 2,
            "message_id": envelope.id,
            "message_type": "send_email",
            "transport": "supabase",
            "worker_id": "w1",
        }


class TestMigrations:
    def test_migrations_are_ordered(self):
        migrations = list_migrations()
        assert migrations == sorted(migrations)
        assert migrations[0].startswith("001_")
        assert all(name.endswith(".sql") for name in migrations)
        assert "003_messenger_schedules.sql" in migrations


class TestModuleLayout:
    def test_modules_carry_path_header(self):
        root = Path(__file__).resolve().parent.parent
        for path in sorted((root / "symphony").rglob("*.py")):
            lines = path.read_text(encoding="utf-8").splitlines()
            if lines and lines[0].startswith("#!"):
                lines = lines[1:]
            relative = path.relative_to(root).as_posix()
            assert lines and lines[0] == f"# {relative}", relative
