"""
Tests for the structured logger.

Covers level gating, rate limiting, buffering, sanitization of persisted
entries, console/file sinks and the semantic helper methods.
"""

import json
import logging
import re

import pytest
from unittest.mock import AsyncMock, patch

from core.structured_logger import (
    LogContext,
    LogEntry,
    LogLevel,
    LoggerConfig,
    StructuredLogger,
)


def make_logger(**overrides) -> StructuredLogger:
    config = {"environment": "test", "service": "pizzaria-test"}
    config.update(overrides)
    return StructuredLogger(LoggerConfig(**config))


def written_entries(mock: AsyncMock):
    return [call.args[0] for call in mock.call_args_list]


class TestLevelGate:
    """Entries below the configured minimum never reach a sink."""

    @pytest.mark.asyncio
    async def test_lower_levels_are_dropped(self):
        slog = make_logger(level=LogLevel.WARN)
        with patch.object(slog, "_write_log", new_callable=AsyncMock) as write:
            await slog.debug("api", "debug message")
            await slog.info("api", "info message")
            await slog.warn("api", "warn message")
            await slog.error("api", "error message")

        levels = [entry.level for entry in written_entries(write)]
        assert levels == [LogLevel.WARN, LogLevel.ERROR]

    @pytest.mark.asyncio
    async def test_disabled_logger_writes_nothing(self):
        slog = make_logger(enabled=False)
        with patch.object(slog, "_write_log", new_callable=AsyncMock) as write:
            await slog.critical("system", "ignored")
        write.assert_not_called()

    def test_should_log_follows_level_order(self):
        slog = make_logger(level=LogLevel.INFO)
        assert not slog.should_log(LogLevel.DEBUG)
        assert slog.should_log(LogLevel.INFO)
        assert slog.should_log("critical")

    @pytest.mark.asyncio
    async def test_update_config_changes_minimum_level(self):
        slog = make_logger(level=LogLevel.ERROR)
        slog.update_config(level="debug")
        with patch.object(slog, "_write_log", new_callable=AsyncMock) as write:
            await slog.debug("system", "now visible")
        assert write.call_count == 1
        assert slog.config.level == LogLevel.DEBUG


class TestRateLimiting:
    """Per-level, per-minute caps."""

    @pytest.mark.asyncio
    async def test_info_is_capped_per_minute(self):
        slog = make_logger(enable_rate_limiting=True, max_logs_per_minute=3)
        with patch("core.structured_logger.time.time", return_value=1_700_000_000.0), \
                patch.object(slog, "_write_log", new_callable=AsyncMock) as write:
            for i in range(5):
                await slog.info("api", f"info {i}")
        assert write.call_count == 3

    @pytest.mark.asyncio
    async def test_error_and_critical_are_never_rate_limited(self):
        slog = make_logger(enable_rate_limiting=True, max_logs_per_minute=2)
        with patch("core.structured_logger.time.time", return_value=1_700_000_000.0), \
                patch.object(slog, "_write_log", new_callable=AsyncMock) as write:
            for i in range(5):
                await slog.error("database", f"error {i}")
            for i in range(5):
                await slog.critical("database", f"critical {i}")

        levels = [entry.level for entry in written_entries(write)]
        assert levels.count(LogLevel.ERROR) == 5
        assert levels.count(LogLevel.CRITICAL) == 5

    @pytest.mark.asyncio
    async def test_levels_have_separate_budgets(self):
        slog = make_logger(enable_rate_limiting=True, max_logs_per_minute=1)
        with patch("core.structured_logger.time.time", return_value=1_700_000_000.0), \
                patch.object(slog, "_write_log", new_callable=AsyncMock) as write:
            await slog.info("api", "first info")
            await slog.info("api", "second info")
            await slog.warn("api", "first warn")
        assert [e.message for e in written_entries(write)] == ["first info", "first warn"]

    def test_only_current_window_is_kept(self):
        slog = make_logger(enable_rate_limiting=True, max_logs_per_minute=10)
        with patch("core.structured_logger.time.time", return_value=60.0 * 100):
            slog._check_rate_limit(LogLevel.INFO)
            slog._check_rate_limit(LogLevel.WARN)
        with patch("core.structured_logger.time.time", return_value=60.0 * 101):
            slog._check_rate_limit(LogLevel.INFO)
        assert list(slog._rate_limit_counts) == [(LogLevel.INFO, 101)]


class TestBuffering:
    """Production buffers entries; other environments write immediately."""

    @pytest.mark.asyncio
    async def test_non_production_writes_immediately(self):
        slog = make_logger(environment="development")
        with patch.object(slog, "_write_log", new_callable=AsyncMock) as write:
            await slog.info("api", "immediate")
        assert write.call_count == 1

    @pytest.mark.asyncio
    async def test_production_flushes_when_buffer_is_full(self):
        slog = make_logger(environment="production", buffer_size=3)
        with patch.object(slog, "_write_log", new_callable=AsyncMock) as write:
            await slog.info("api", "one")
            await slog.info("api", "two")
            assert write.call_count == 0
            await slog.info("api", "three")
        assert [e.message for e in written_entries(write)] == ["one", "two", "three"]

    @pytest.mark.asyncio
    async def test_critical_forces_flush(self):
        slog = make_logger(environment="production", buffer_size=10)
        with patch.object(slog, "_write_log", new_callable=AsyncMock) as write:
            await slog.info("payment", "queued")
            await slog.critical("payment", "gateway down")
        assert [e.message for e in written_entries(write)] == ["queued", "gateway down"]

    @pytest.mark.asyncio
    async def test_critical_flush_can_be_disabled(self):
        slog = make_logger(environment="production", buffer_size=10, flush_on_critical=False)
        with patch.object(slog, "_write_log", new_callable=AsyncMock) as write:
            await slog.critical("payment", "gateway down")
        write.assert_not_called()

    @pytest.mark.asyncio
    async def test_shutdown_flushes_once(self):
        slog = make_logger(environment="production", buffer_size=10)
        with patch.object(slog, "_write_log", new_callable=AsyncMock) as write:
            await slog.info("system", "pending")
            await slog.shutdown()
            await slog.shutdown()
        assert write.call_count == 1


class TestSanitization:
    """Sensitive metadata never reaches a sink."""

    @pytest.mark.asyncio
    async def test_persisted_entry_is_sanitized_at_any_depth(self, tmp_path):
        slog = make_logger(
            environment="production",
            enable_file_logging=True,
            enable_console_logging=False,
            log_directory=str(tmp_path),
            buffer_size=1,
        )
        await slog.info(
            "auth",
            "Customer signed in",
            metadata={
                "username": "maria",
                "password": "hunter2",
                "customer": {
                    "profile": {"api_token": "abc123", "email": "maria.silva@example.com"},
                    "cards": [{"credit_card": "4111111111111111", "cvv": "123"}],
                },
            },
        )

        files = list(tmp_path.glob("pizzaria-test-info-*.log"))
        assert len(files) == 1
        persisted = json.loads(files[0].read_text().strip())

        metadata = persisted["metadata"]
        assert metadata["username"] == "maria"
        assert metadata["password"] == "[REDACTED]"
        assert metadata["customer"]["profile"]["api_token"] == "[REDACTED]"
        assert metadata["customer"]["profile"]["email"] == "ma***@example.com"
        assert metadata["customer"]["cards"][0] == {"credit_card": "[REDACTED]", "cvv": "[REDACTED]"}

    def test_extra_keywords_are_merged_into_metadata(self):
        slog = make_logger()
        entry = slog.create_log_entry(
            LogLevel.INFO, "api", "Order created", {"order_id": 42, "authorization": "Bearer x"}
        )
        assert entry.metadata == {"order_id": 42, "authorization": "[REDACTED]"}


class TestEntryShape:
    """Log entries serialize predictably."""

    def test_json_round_trip_reproduces_top_level_fields(self):
        slog = make_logger(environment="production")
        entry = slog.create_log_entry(
            LogLevel.ERROR,
            LogContext.API,
            "Order failed",
            {
                "request_id": "req-1",
                "user_id": "user-9",
                "endpoint": "/api/orders",
                "method": "POST",
                "status_code": 500,
                "duration": 123.4,
                "metadata": {"order_id": 7},
                "error": ValueError("invalid cart"),
            },
        )

        parsed = json.loads(entry.to_json())
        for field in ("timestamp", "level", "context", "service", "environment", "message",
                      "correlation_id", "request_id", "user_id", "endpoint", "method",
                      "status_code", "duration", "metadata"):
            assert parsed[field] == json.loads(entry.model_dump_json())[field]
        assert LogEntry.model_validate_json(entry.to_json()) == entry

    def test_entries_are_immutable(self):
        slog = make_logger()
        entry = slog.create_log_entry(LogLevel.INFO, "system", "frozen", {})
        with pytest.raises(Exception):
            entry.message = "changed"

    def test_error_stack_only_in_development(self):
        try:
            raise KeyError("missing")
        except KeyError as exc:
            error = exc

        dev_entry = make_logger(environment="development").create_log_entry(
            LogLevel.ERROR, "system", "boom", {"error": error}
        )
        prod_entry = make_logger(environment="production").create_log_entry(
            LogLevel.ERROR, "system", "boom", {"error": error}
        )
        assert dev_entry.error.name == "KeyError"
        assert "Traceback" in dev_entry.error.stack
        assert prod_entry.error.stack is None

    def test_error_code_is_captured(self):
        class GatewayError(Exception):
            code = "PAYMENT_DECLINED"

        entry = make_logger().create_log_entry(
            LogLevel.ERROR, "payment", "declined", {"error": GatewayError("declined")}
        )
        assert entry.error.code == "PAYMENT_DECLINED"

    def test_performance_snapshot_toggle(self):
        with_perf = make_logger().create_log_entry(LogLevel.INFO, "api", "x", {"duration": 12.5})
        without_perf = make_logger(enable_performance_logging=False).create_log_entry(
            LogLevel.INFO, "api", "x", {}
        )
        assert with_perf.performance.response_time == 12.5
        assert "rss_mb" in with_perf.performance.memory_usage
        assert without_perf.performance is None

    @pytest.mark.asyncio
    async def test_invalid_context_does_not_raise(self, caplog):
        slog = make_logger()
        with patch.object(slog, "_write_log", new_callable=AsyncMock) as write:
            with caplog.at_level(logging.ERROR, logger="core.structured_logger"):
                await slog.info("kitchen", "unknown context")
        write.assert_not_called()
        assert "Failed to build log entry" in caplog.text


class TestSinks:
    """Console and file output."""

    @pytest.mark.asyncio
    async def test_development_console_routes_by_level(self, capsys):
        slog = make_logger(environment="development")
        await slog.info("api", "Menu loaded", metadata={"items": 12})
        await slog.error("api", "Menu failed")

        captured = capsys.readouterr()
        assert "INFO     [API]" in captured.out
        assert "Menu loaded" in captured.out
        assert '"items": 12' in captured.out
        assert "Menu failed" in captured.err
        assert "Menu failed" not in captured.out

    @pytest.mark.asyncio
    async def test_production_console_is_json(self, capsys):
        slog = make_logger(environment="production", buffer_size=1)
        await slog.info("api", "Menu loaded")

        line = capsys.readouterr().out.strip()
        assert json.loads(line)["message"] == "Menu loaded"

    @pytest.mark.asyncio
    async def test_file_names_follow_service_level_and_day(self, tmp_path):
        slog = make_logger(
            enable_file_logging=True,
            enable_console_logging=False,
            log_directory=str(tmp_path / "nested" / "logs"),
        )
        await slog.warn("database", "slow pool")

        files = list((tmp_path / "nested" / "logs").iterdir())
        assert len(files) == 1
        assert re.match(r"^pizzaria-test-warn-\d{4}-\d{2}-\d{2}\.log$", files[0].name)

    @pytest.mark.asyncio
    async def test_file_failure_is_reported_not_raised(self, tmp_path, caplog):
        blocker = tmp_path / "not-a-directory"
        blocker.write_text("occupied")
        slog = make_logger(
            enable_file_logging=True,
            enable_console_logging=False,
            log_directory=str(blocker),
        )
        with caplog.at_level(logging.ERROR, logger="core.structured_logger"):
            await slog.error("system", "still returns")
        assert "Failed to write log file" in caplog.text


class TestSemanticHelpers:
    """Domain-specific logging helpers."""

    @pytest.fixture
    def slog(self):
        return make_logger()

    @pytest.mark.asyncio
    async def test_api_request(self, slog):
        with patch.object(slog, "_write_log", new_callable=AsyncMock) as write:
            await slog.log_api_request("GET", "/api/products", status_code=200, duration=15.0)
        entry = written_entries(write)[0]
        assert entry.context == LogContext.API
        assert entry.message == "GET /api/products"
        assert entry.status_code == 200

    @pytest.mark.asyncio
    async def test_failed_auth_event_is_a_warning(self, slog):
        with patch.object(slog, "_write_log", new_callable=AsyncMock) as write:
            await slog.log_auth_event("login", success=True, user_id="u1")
            await slog.log_auth_event("login", success=False, metadata={"attempts": 3})
        ok, failed = written_entries(write)
        assert ok.level == LogLevel.INFO
        assert failed.level == LogLevel.WARN
        assert failed.metadata == {"attempts": 3, "event": "login", "success": False}

    @pytest.mark.asyncio
    async def test_database_query_truncates_and_escalates(self, slog):
        query = "SELECT * FROM products WHERE " + "x" * 500
        with patch.object(slog, "_write_log", new_callable=AsyncMock) as write:
            await slog.log_database_query(query, 12.0)
            await slog.log_database_query(query, 30.0, error=RuntimeError("deadlock"))
        ok, failed = written_entries(write)
        assert ok.level == LogLevel.DEBUG
        assert len(ok.metadata["query"]) == 200
        assert failed.level == LogLevel.ERROR
        assert failed.error.message == "deadlock"

    @pytest.mark.asyncio
    async def test_security_event_levels_follow_risk(self, slog):
        with patch.object(slog, "_write_log", new_callable=AsyncMock) as write:
            await slog.log_security_event("password reset", risk_level="low", ip="10.0.0.1")
            await slog.log_security_event("many failed logins", risk_level="medium")
            await slog.log_security_event("token replay", risk_level="high")
        low, medium, high = written_entries(write)
        assert (low.level, medium.level, high.level) == (LogLevel.INFO, LogLevel.WARN, LogLevel.CRITICAL)
        assert low.security.suspicious is False
        assert medium.security.suspicious is True
        assert high.security.risk_level == "high"
        assert low.security.ip == "10.0.0.1"

    @pytest.mark.asyncio
    async def test_dynamic_level_dispatch(self, slog):
        with patch.object(slog, "_write_log", new_callable=AsyncMock) as write:
            await slog.log("warn", "system", "disk filling up")
            await slog.log(LogLevel.CRITICAL, "system", "disk full")
        assert [e.level for e in written_entries(write)] == [LogLevel.WARN, LogLevel.CRITICAL]

    @pytest.mark.asyncio
    async def test_dynamic_dispatch_rejects_unknown_level(self, slog):
        with pytest.raises(ValueError):
            await slog.log("verbose", "system", "nope")


class TestPerformanceTimers:
    """start/end timer pairs."""

    @pytest.mark.asyncio
    async def test_timer_returns_duration_and_is_removed(self):
        slog = make_logger()
        with patch.object(slog, "_write_log", new_callable=AsyncMock) as write:
            slog.start_performance_timer("x")
            duration = await slog.end_performance_timer("x", "menu rebuild")
            second = await slog.end_performance_timer("x", "menu rebuild")

        assert duration >= 0
        assert second == 0
        assert "x" not in slog.active_timers
        entry = written_entries(write)[0]
        assert entry.context == LogContext.PERFORMANCE
        assert entry.message.startswith("menu rebuild completed in ")
        assert "cpu_user_ms" in entry.metadata

    @pytest.mark.asyncio
    async def test_unknown_timer_is_a_no_op(self):
        slog = make_logger()
        with patch.object(slog, "_write_log", new_callable=AsyncMock) as write:
            assert await slog.end_performance_timer("never-started", "noop") == 0
        write.assert_not_called()

    def test_expired_timers_are_swept(self):
        slog = make_logger(performance_timer_ttl_seconds=3600.0)
        with patch("core.structured_logger.time.monotonic", side_effect=[100.0, 5000.0]):
            slog.start_performance_timer("abandoned")
            slog.start_performance_timer("fresh")
        assert slog.active_timers == ["fresh"]


class TestCorrelationId:
    """Process-scoped correlation id."""

    def test_default_format(self):
        slog = make_logger()
        assert re.match(r"^\d+-[0-9a-f]{8}$", slog.get_correlation_id())

    def test_set_correlation_id_applies_to_new_entries(self):
        slog = make_logger()
        slog.set_correlation_id("order-123")
        entry = slog.create_log_entry(LogLevel.INFO, "api", "traced", {})
        assert entry.correlation_id == "order-123"
