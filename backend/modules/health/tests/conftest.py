"""
Test configuration for health monitoring tests.
"""

from typing import List, Optional

import pytest

from core.process_metrics import CpuTimes, MemorySnapshot
from core.structured_logger import LogEntry, LogLevel, LoggerConfig, StructuredLogger
from modules.health.schemas.health_schemas import HealthCheckConfig
from modules.health.schemas.performance_schemas import PerformanceConfig


class RecordingLogger(StructuredLogger):
    """Structured logger that keeps entries in memory instead of writing them"""

    def __init__(self, **overrides):
        config = {"environment": "test", "service": "health-tests", "enable_console_logging": False}
        config.update(overrides)
        super().__init__(LoggerConfig(**config))
        self.entries: List[LogEntry] = []

    async def _write_log(self, entry: LogEntry) -> None:
        self.entries.append(entry)

    def at_level(self, level: LogLevel) -> List[LogEntry]:
        return [entry for entry in self.entries if entry.level == level]

    def alerts(self, alert_type: Optional[str] = None) -> List[LogEntry]:
        return [
            entry for entry in self.entries
            if entry.metadata and "alert_type" in entry.metadata
            and (alert_type is None or entry.metadata["alert_type"] == alert_type)
        ]


@pytest.fixture
def recording_logger():
    return RecordingLogger()


@pytest.fixture
def fast_health_config():
    """Short timeouts so retry paths finish quickly"""
    return HealthCheckConfig(
        interval_seconds=60,
        timeout_seconds=0.2,
        retries=3,
        backoff_seconds=0.01,
    )


@pytest.fixture
def performance_config():
    return PerformanceConfig(
        sample_rate=1.0,
        slow_request_threshold=2000.0,
        memory_threshold=1_000_000.0,
        cpu_threshold=10_000.0,
        enable_detailed_logging=False,
    )


@pytest.fixture
def snapshot():
    """Constant resource snapshots for synthetic request metrics"""
    return MemorySnapshot(rss=50 * 1024 * 1024, vms=100 * 1024 * 1024, percent=1.0), CpuTimes(0.0, 0.0)
