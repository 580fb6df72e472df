"""
Health check system.

Runs independent diagnostic probes concurrently, each bounded by a timeout
and retried with linear backoff, and folds their results into one
``SystemHealthReport``. A probe failure never escapes: after the last
attempt it becomes a critical ``HealthCheckResult``.
"""

import asyncio
import logging
import os
import re
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Any
from uuid import uuid4

import aiofiles
import aiofiles.os
import httpx
from sqlalchemy import text
from sqlalchemy.engine import Engine

from core import process_metrics
from core.config import get_settings
from core.database import create_health_engine
from core.scheduling import RepeatingTask
from core.structured_logger import LogContext, StructuredLogger, get_structured_logger

from ..schemas.health_schemas import (
    HealthCheckConfig,
    HealthCheckResult,
    HealthMetrics,
    HealthStatus,
    HealthSummary,
    SystemHealthReport,
    SystemInfo,
)

logger = logging.getLogger(__name__)

# Hard limits that turn a warning into a critical status
MEMORY_CRITICAL_PERCENT = 95.0
PROCESS_MEMORY_CRITICAL_PERCENT = 90.0
LOAD_CRITICAL_PERCENT = 95.0
CONNECTIONS_WARNING_PERCENT = 80.0
CONNECTIONS_CRITICAL_PERCENT = 95.0

_TABLE_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


@dataclass
class ProbeResult:
    """What a probe reports; timing and naming are added by the runner"""

    status: HealthStatus
    message: str
    metadata: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


CheckFunc = Callable[[], Awaitable[ProbeResult]]


def aggregate_status(statuses: Iterable[HealthStatus]) -> HealthStatus:
    """Worst status wins: critical over warning over healthy."""
    statuses = list(statuses)
    if HealthStatus.CRITICAL in statuses:
        return HealthStatus.CRITICAL
    if HealthStatus.WARNING in statuses:
        return HealthStatus.WARNING
    return HealthStatus.HEALTHY


def summarize(results: List[HealthCheckResult]) -> HealthSummary:
    summary = HealthSummary(total=len(results))
    for result in results:
        if result.status == HealthStatus.HEALTHY:
            summary.healthy += 1
        elif result.status == HealthStatus.WARNING:
            summary.warning += 1
        elif result.status == HealthStatus.CRITICAL:
            summary.critical += 1
        else:
            summary.unknown += 1
    return summary


class HealthCheckSystem:
    """
    Orchestrates health probes and keeps the latest report.

    Built-in probes are ``database``, ``memory``, ``filesystem``,
    ``internal_api`` and ``system``; ``register_check`` adds or replaces
    probes, and passing ``checks`` replaces the whole battery.
    """

    def __init__(
        self,
        config: Optional[HealthCheckConfig] = None,
        logger: Optional[StructuredLogger] = None,
        engine: Optional[Engine] = None,
        checks: Optional[Dict[str, CheckFunc]] = None,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config or HealthCheckConfig.from_settings(get_settings())
        self.logger = logger or get_structured_logger()
        self._engine = engine
        self._http_transport = http_transport
        self._started_at = time.monotonic()
        self._last_report: Optional[SystemHealthReport] = None
        self._monitor: Optional[RepeatingTask] = None

        if checks is not None:
            self.checks: Dict[str, CheckFunc] = dict(checks)
        else:
            self.checks = {
                "database": self.check_database,
                "memory": self.check_memory,
                "filesystem": self.check_filesystem,
                "internal_api": self.check_internal_api,
                "system": self.check_system,
            }

    def register_check(self, name: str, check: CheckFunc) -> None:
        self.checks[name] = check

    def unregister_check(self, name: str) -> None:
        self.checks.pop(name, None)

    @property
    def uptime_ms(self) -> float:
        return (time.monotonic() - self._started_at) * 1000

    # ------------------------------------------------------------------
    # Probe runner
    # ------------------------------------------------------------------

    async def execute_check(self, name: str, check: CheckFunc) -> HealthCheckResult:
        """
        Run one probe with timeout and retries.

        Each attempt is cancelled when it exceeds the timeout. Attempts are
        separated by ``backoff_seconds * attempt``.
        """
        started = time.perf_counter()
        retries = self.config.retries
        last_error = "Unknown error"

        for attempt in range(1, retries + 1):
            try:
                outcome = await asyncio.wait_for(check(), timeout=self.config.timeout_seconds)
                return HealthCheckResult(
                    name=name,
                    status=outcome.status,
                    message=outcome.message,
                    duration=(time.perf_counter() - started) * 1000,
                    metadata=outcome.metadata,
                    error=outcome.error,
                )
            except asyncio.TimeoutError:
                last_error = "Health check timeout"
            except Exception as e:
                last_error = str(e) or type(e).__name__

            logger.warning(f"Health check '{name}' attempt {attempt}/{retries} failed: {last_error}")
            if attempt < retries:
                await asyncio.sleep(self.config.backoff_seconds * attempt)

        return HealthCheckResult(
            name=name,
            status=HealthStatus.CRITICAL,
            message=f"Failed after {retries} attempts",
            duration=(time.perf_counter() - started) * 1000,
            error=last_error,
        )

    # ------------------------------------------------------------------
    # Built-in probes
    # ------------------------------------------------------------------

    def _get_engine(self) -> Engine:
        if self._engine is None:
            self._engine = create_health_engine(timeout_seconds=self.config.timeout_seconds)
        return self._engine

    def _stats_query(self) -> str:
        for table in self.config.key_tables:
            if not _TABLE_NAME.match(table):
                raise ValueError(f"Invalid table name for health statistics: {table}")
        counts = "".join(
            f",\n                (SELECT COUNT(*) FROM {table}) AS {table}_count"
            for table in self.config.key_tables
        )
        return f"""
            SELECT
                (SELECT COUNT(*) FROM pg_stat_activity WHERE state = 'active') AS active_connections,
                (SELECT setting::int FROM pg_settings WHERE name = 'max_connections') AS max_connections{counts}
        """

    def _query_database(self) -> Dict[str, Any]:
        with self._get_engine().connect() as conn:
            current_time, version = conn.execute(text("SELECT NOW(), version()")).one()
            stats = dict(conn.execute(text(self._stats_query())).mappings().one())
        stats["current_time"] = str(current_time)
        stats["version"] = version
        return stats

    async def check_database(self) -> ProbeResult:
        """Connectivity, server version, connection usage and key table sizes"""
        stats = await asyncio.to_thread(self._query_database)

        active = int(stats.get("active_connections") or 0)
        maximum = int(stats.get("max_connections") or 0)
        usage = (active / maximum) * 100 if maximum else 0.0

        status = HealthStatus.HEALTHY
        message = "Database is responsive"
        if usage > CONNECTIONS_CRITICAL_PERCENT:
            status = HealthStatus.CRITICAL
            message = f"Database connections nearly exhausted ({usage:.1f}%)"
        elif usage > CONNECTIONS_WARNING_PERCENT:
            status = HealthStatus.WARNING
            message = f"High database connection usage ({usage:.1f}%)"

        stats["connection_usage_percent"] = round(usage, 2)
        return ProbeResult(status=status, message=message, metadata=stats)

    async def check_memory(self) -> ProbeResult:
        """System memory pressure and this process' share of it"""
        system = process_metrics.system_memory()
        process = process_metrics.memory_snapshot()
        system_percent = float(system.percent)
        process_percent = float(process.percent)

        status = HealthStatus.HEALTHY
        if system_percent > MEMORY_CRITICAL_PERCENT or process_percent > PROCESS_MEMORY_CRITICAL_PERCENT:
            status = HealthStatus.CRITICAL
        elif system_percent > self.config.alert_thresholds.memory:
            status = HealthStatus.WARNING

        return ProbeResult(
            status=status,
            message=f"Memory usage: {system_percent:.1f}% system, {process_percent:.1f}% process",
            metadata={
                "process_rss_mb": round(process.rss_mb, 2),
                "process_vms_mb": round(process_metrics.bytes_to_mb(process.vms), 2),
                "process_memory_percent": round(process_percent, 2),
                "system_total_gb": round(process_metrics.bytes_to_gb(system.total), 2),
                "system_used_gb": round(process_metrics.bytes_to_gb(system.total - system.available), 2),
                "system_free_gb": round(process_metrics.bytes_to_gb(system.available), 2),
                "system_memory_percent": round(system_percent, 2),
            },
        )

    async def check_filesystem(self) -> ProbeResult:
        """Write, read back and delete a scratch file, then check free space"""
        # Overlapping runs each get their own file
        base, extension = os.path.splitext(self.config.temp_file_path)
        path = f"{base}-{uuid4().hex}{extension}"
        content = f"health-check-{time.time()}"

        async with aiofiles.open(path, mode="w") as scratch:
            await scratch.write(content)
        try:
            async with aiofiles.open(path, mode="r") as scratch:
                read_back = await scratch.read()
        finally:
            await aiofiles.os.remove(path)

        if read_back != content:
            return ProbeResult(
                status=HealthStatus.CRITICAL,
                message="File system read/write mismatch",
                metadata={"path": path},
                error="Content read back does not match content written",
            )

        disk = process_metrics.disk_usage(os.path.dirname(os.path.abspath(path)))
        metadata = {"path": path, "bytes": len(content), "disk_usage_percent": float(disk.percent)}
        if disk.percent > self.config.alert_thresholds.disk:
            return ProbeResult(
                status=HealthStatus.WARNING,
                message=f"File system read/write OK, disk {disk.percent:.1f}% full",
                metadata=metadata,
            )
        return ProbeResult(
            status=HealthStatus.HEALTHY,
            message="File system read/write OK",
            metadata=metadata,
        )

    async def check_internal_api(self) -> ProbeResult:
        """GET the application's own liveness endpoint"""
        url = f"{self.config.api_url.rstrip('/')}{self.config.api_health_path}"
        started = time.perf_counter()
        async with httpx.AsyncClient(
            timeout=self.config.timeout_seconds, transport=self._http_transport
        ) as client:
            response = await client.get(url)
        elapsed_ms = (time.perf_counter() - started) * 1000

        metadata: Dict[str, Any] = {
            "url": url,
            "status_code": response.status_code,
            "response_time": response.headers.get("x-response-time"),
            "elapsed_ms": round(elapsed_ms, 2),
        }
        try:
            metadata["version"] = response.json().get("version")
        except ValueError:
            metadata["version"] = None

        if not response.is_success:
            return ProbeResult(
                status=HealthStatus.CRITICAL,
                message=f"Internal API returned {response.status_code}",
                metadata=metadata,
                error=f"HTTP {response.status_code}",
            )
        if elapsed_ms > self.config.alert_thresholds.response_time:
            return ProbeResult(
                status=HealthStatus.WARNING,
                message=f"Internal API is slow ({elapsed_ms:.0f}ms)",
                metadata=metadata,
            )
        return ProbeResult(status=HealthStatus.HEALTHY, message="Internal API is responsive", metadata=metadata)

    async def check_system(self) -> ProbeResult:
        """One-minute load average relative to the number of cores"""
        load = process_metrics.load_average()
        cores = process_metrics.cpu_count()
        load_percent = (load[0] / cores) * 100

        status = HealthStatus.HEALTHY
        if load_percent > LOAD_CRITICAL_PERCENT:
            status = HealthStatus.CRITICAL
        elif load_percent > self.config.alert_thresholds.cpu:
            status = HealthStatus.WARNING

        runtime = process_metrics.runtime_info()
        return ProbeResult(
            status=status,
            message=f"System load: {load_percent:.1f}% of {cores} cores",
            metadata={
                "platform": runtime["platform"],
                "arch": runtime["arch"],
                "uptime_seconds": round(process_metrics.system_uptime_seconds()),
                "cpu_count": cores,
                "load_average": load,
                "load_percentage": round(load_percent, 2),
            },
        )

    # ------------------------------------------------------------------
    # Reports
    # ------------------------------------------------------------------

    def _system_info(self) -> SystemInfo:
        runtime = process_metrics.runtime_info()
        load = process_metrics.load_average()
        return SystemInfo(
            version=self.config.version,
            python_version=runtime["python_version"],
            platform=runtime["platform"],
            arch=runtime["arch"],
            memory=process_metrics.memory_snapshot().to_dict(),
            cpu_usage=load[0],
            load_average=load,
        )

    async def run_health_checks(self) -> SystemHealthReport:
        """Run every probe concurrently and store the resulting report"""
        names = list(self.checks)
        results = await asyncio.gather(
            *(self.execute_check(name, self.checks[name]) for name in names)
        )
        results = list(results)

        summary = summarize(results)
        report = SystemHealthReport(
            overall_status=aggregate_status(result.status for result in results),
            uptime=self.uptime_ms,
            checks=results,
            summary=summary,
            system_info=self._system_info(),
        )
        self._last_report = report
        await self._log_report(report)
        return report

    async def _log_report(self, report: SystemHealthReport) -> None:
        summary = report.summary
        metadata = {
            "overall_status": report.overall_status.value,
            "summary": summary.model_dump(),
            "failed_checks": [
                result.name for result in report.checks if result.status != HealthStatus.HEALTHY
            ],
        }
        if report.overall_status == HealthStatus.CRITICAL:
            await self.logger.critical(
                LogContext.SYSTEM,
                f"Health check failed - {summary.critical} critical issues",
                metadata=metadata,
            )
        elif report.overall_status == HealthStatus.WARNING:
            await self.logger.warn(
                LogContext.SYSTEM,
                f"Health check warning - {summary.warning} warnings",
                metadata=metadata,
            )
        else:
            await self.logger.info(
                LogContext.SYSTEM, "Health check completed successfully", metadata=metadata
            )

    def get_last_report(self) -> Optional[SystemHealthReport]:
        return self._last_report

    def is_healthy(self) -> bool:
        return (
            self._last_report is not None
            and self._last_report.overall_status == HealthStatus.HEALTHY
        )

    def get_metrics(self) -> HealthMetrics:
        report = self._last_report
        if report is None:
            return HealthMetrics(
                status=HealthStatus.UNKNOWN,
                uptime=self.uptime_ms,
                checks_total=0,
                checks_healthy=0,
                checks_warning=0,
                checks_critical=0,
                memory_usage_mb=round(process_metrics.memory_snapshot().rss_mb, 2),
                cpu_load=process_metrics.load_average()[0],
            )
        return HealthMetrics(
            status=report.overall_status,
            uptime=self.uptime_ms,
            checks_total=report.summary.total,
            checks_healthy=report.summary.healthy,
            checks_warning=report.summary.warning,
            checks_critical=report.summary.critical,
            memory_usage_mb=report.system_info.memory.get("rss_mb", 0.0),
            cpu_load=report.system_info.cpu_usage,
            last_check=report.timestamp,
        )

    # ------------------------------------------------------------------
    # Monitoring lifecycle
    # ------------------------------------------------------------------

    @property
    def is_monitoring(self) -> bool:
        return self._monitor is not None and self._monitor.is_running

    def start_monitoring(self) -> None:
        """Run a check now and then every ``interval_seconds``; idempotent"""
        if self.is_monitoring:
            return
        self._monitor = RepeatingTask(
            "health-check-monitor",
            self.run_health_checks,
            self.config.interval_seconds,
            run_immediately=True,
        )
        self._monitor.start()
        logger.info(f"Health monitoring started (interval {self.config.interval_seconds}s)")

    def stop_monitoring(self) -> None:
        if self._monitor is None:
            return
        self._monitor.stop()
        self._monitor = None
        logger.info("Health monitoring stopped")

    async def shutdown(self) -> None:
        """Stop monitoring and release the probe connection pool"""
        self.stop_monitoring()
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None


# Process-wide default instance
health_check_system = HealthCheckSystem()


def get_health_check_system() -> HealthCheckSystem:
    return health_check_system
