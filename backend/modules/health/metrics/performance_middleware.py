"""
Request performance monitoring.

``PerformanceMonitor`` samples incoming requests, measures wall-clock time,
memory and CPU per request, keeps a bounded rolling history and derives
threshold alerts (slow request, high memory, high CPU, error rate). Alerts
are delivered by logging through the structured logger, at most once per
(type, severity) cooldown window.
"""

import random
import time
import uuid
import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import wraps
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Tuple

from fastapi import Request, Response
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from prometheus_client import Counter, Histogram
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import HTTPConnection
from starlette.types import ASGIApp

from core import process_metrics
from core.config import get_settings
from core.process_metrics import CpuTimes, MemorySnapshot
from core.scheduling import RepeatingTask
from core.security_config import get_client_ip, get_user_agent, get_user_id
from core.structured_logger import LogContext, StructuredLogger, get_structured_logger

from ..schemas.performance_schemas import (
    AlertSeverity,
    AlertType,
    EndpointStats,
    PerformanceAlert,
    PerformanceConfig,
    PerformanceSummary,
    RequestMetricsOverrides,
)

logger = logging.getLogger(__name__)


# Prometheus metrics
monitored_requests = Counter(
    'monitored_requests_total',
    'Total number of sampled requests',
    ['method', 'status_code']
)
monitored_request_duration = Histogram(
    'monitored_request_duration_seconds',
    'Duration of sampled requests',
    ['method'],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)
)
performance_alerts = Counter(
    'performance_alerts_total',
    'Performance alerts emitted after cooldown',
    ['type', 'severity']
)

# CPU share is meaningless for requests shorter than the CPU clock resolution
CPU_ALERT_MIN_DURATION_MS = 100.0


@dataclass
class PerformanceMetrics:
    """Measurements of one sampled request"""

    request_id: str
    method: str
    endpoint: str
    start_time: float
    started_at: datetime
    ip: str
    user_agent: str
    user_id: Optional[str]
    memory_before: MemorySnapshot
    cpu_before: CpuTimes
    end_time: Optional[float] = None
    duration: Optional[float] = None
    status_code: Optional[int] = None
    content_length: int = 0
    memory_after: Optional[MemorySnapshot] = None
    cpu_usage: Optional[CpuTimes] = None
    query_count: Optional[int] = None
    cache_hit: Optional[bool] = None
    error: Optional[str] = None

    @property
    def memory_used_mb(self) -> float:
        snapshot = self.memory_after or self.memory_before
        return snapshot.rss_mb

    @property
    def cpu_percent(self) -> Optional[float]:
        if self.cpu_usage is None or not self.duration:
            return None
        return (self.cpu_usage.total * 1000 / self.duration) * 100


class PerformanceMonitor:
    """
    Tracks in-flight and recently completed requests.

    Start and end calls are paired by the request id returned from
    ``start_request``; an empty id means the request was not sampled.
    """

    def __init__(
        self,
        config: Optional[PerformanceConfig] = None,
        logger: Optional[StructuredLogger] = None,
    ):
        self.config = config or PerformanceConfig.from_settings(get_settings())
        self.logger = logger or get_structured_logger()
        self.active_requests: Dict[str, PerformanceMetrics] = {}
        self.recent_metrics: Deque[PerformanceMetrics] = deque()
        self.alert_cooldowns: Dict[Tuple[AlertType, AlertSeverity], float] = {}
        self._cleanup_task: Optional[RepeatingTask] = None

    def should_sample(self) -> bool:
        return random.random() < self.config.sample_rate

    def update_config(self, **changes: Any) -> None:
        self.config = PerformanceConfig(**{**self.config.model_dump(), **changes})

    # ------------------------------------------------------------------
    # Request lifecycle
    # ------------------------------------------------------------------

    async def start_request(self, request: HTTPConnection) -> str:
        if not self.config.enabled or not self.should_sample():
            return ""

        request_id = str(uuid.uuid4())
        metrics = PerformanceMetrics(
            request_id=request_id,
            method=request.scope.get("method", "GET"),
            endpoint=request.url.path,
            start_time=time.monotonic(),
            started_at=datetime.now(timezone.utc),
            ip=get_client_ip(request),
            user_agent=get_user_agent(request),
            user_id=get_user_id(request),
            memory_before=process_metrics.memory_snapshot(),
            cpu_before=process_metrics.cpu_times_snapshot(),
        )
        self.active_requests[request_id] = metrics

        if self.config.enable_detailed_logging:
            await self.logger.debug(
                LogContext.PERFORMANCE,
                f"Request started: {metrics.method} {metrics.endpoint}",
                request_id=request_id,
                metadata={
                    "ip": metrics.ip,
                    "user_agent": metrics.user_agent[: self.config.user_agent_max_length],
                },
            )
        return request_id

    async def end_request(self, request_id: str, response: Response, **additional: Any) -> None:
        if not request_id:
            return
        metrics = self.active_requests.pop(request_id, None)
        if metrics is None or not self.config.enabled:
            return

        metrics.end_time = time.monotonic()
        metrics.duration = (metrics.end_time - metrics.start_time) * 1000
        metrics.status_code = response.status_code
        try:
            metrics.content_length = int(response.headers.get("content-length", 0))
        except ValueError:
            metrics.content_length = 0
        metrics.memory_after = process_metrics.memory_snapshot()
        metrics.cpu_usage = process_metrics.cpu_delta(metrics.cpu_before)

        overrides = RequestMetricsOverrides(**additional)
        for field, value in overrides.model_dump(exclude_none=True).items():
            setattr(metrics, field, value)

        self.recent_metrics.append(metrics)
        if len(self.recent_metrics) > self.config.max_history:
            while len(self.recent_metrics) > self.config.history_trim_to:
                self.recent_metrics.popleft()

        monitored_requests.labels(method=metrics.method, status_code=str(metrics.status_code)).inc()
        monitored_request_duration.labels(method=metrics.method).observe(metrics.duration / 1000)

        await self._log_completed(metrics)
        await self.analyze_metrics(metrics)

    async def _log_completed(self, metrics: PerformanceMetrics) -> None:
        message = (
            f"Request completed: {metrics.method} {metrics.endpoint} - "
            f"{metrics.status_code} ({metrics.duration:.1f}ms)"
        )
        options = {
            "request_id": metrics.request_id,
            "endpoint": metrics.endpoint,
            "method": metrics.method,
            "status_code": metrics.status_code,
            "duration": metrics.duration,
            "metadata": {
                "content_length": metrics.content_length,
                "memory_used_mb": round(metrics.memory_used_mb),
                "query_count": metrics.query_count,
                "cache_hit": metrics.cache_hit,
                "user_id": metrics.user_id,
            },
        }
        if metrics.error:
            options["error"] = metrics.error

        if metrics.status_code >= 500:
            await self.logger.error(LogContext.PERFORMANCE, message, **options)
        elif metrics.status_code >= 400:
            await self.logger.warn(LogContext.PERFORMANCE, message, **options)
        else:
            await self.logger.info(LogContext.PERFORMANCE, message, **options)

    # ------------------------------------------------------------------
    # Alerts
    # ------------------------------------------------------------------

    def _recent(self, now: Optional[float] = None) -> List[PerformanceMetrics]:
        now = time.monotonic() if now is None else now
        window = self.config.metrics_window_minutes * 60
        return [m for m in self.recent_metrics if m.start_time > now - window]

    def build_alerts(self, metrics: PerformanceMetrics) -> List[PerformanceAlert]:
        """Threshold checks for one completed request"""
        alerts = []
        config = self.config

        if metrics.duration is not None and metrics.duration > config.slow_request_threshold:
            severity = (
                AlertSeverity.HIGH
                if metrics.duration > config.slow_request_threshold * 2
                else AlertSeverity.MEDIUM
            )
            alerts.append(PerformanceAlert(
                type=AlertType.SLOW_REQUEST,
                severity=severity,
                message=f"Slow request detected: {metrics.endpoint} took {metrics.duration:.1f}ms",
                metrics={"endpoint": metrics.endpoint, "duration": metrics.duration, "method": metrics.method},
            ))

        if metrics.memory_after is not None:
            memory_mb = metrics.memory_after.rss_mb
            if memory_mb > config.memory_threshold:
                severity = (
                    AlertSeverity.CRITICAL
                    if memory_mb > config.memory_threshold * 2
                    else AlertSeverity.HIGH
                )
                alerts.append(PerformanceAlert(
                    type=AlertType.HIGH_MEMORY,
                    severity=severity,
                    message=f"High memory usage detected: {memory_mb:.1f}MB",
                    metrics={"memory_used_mb": memory_mb, "endpoint": metrics.endpoint},
                ))

        cpu_percent = metrics.cpu_percent
        if (
            cpu_percent is not None
            and metrics.duration >= CPU_ALERT_MIN_DURATION_MS
            and cpu_percent > config.cpu_threshold
        ):
            alerts.append(PerformanceAlert(
                type=AlertType.HIGH_CPU,
                severity=AlertSeverity.HIGH,
                message=f"High CPU usage detected: {metrics.endpoint} used {cpu_percent:.1f}% CPU",
                metrics={"cpu_percent": cpu_percent, "endpoint": metrics.endpoint},
            ))

        recent = self._recent()
        if len(recent) >= config.min_requests_for_error_rate:
            errors = sum(1 for m in recent if m.status_code is not None and m.status_code >= 500)
            error_rate = (errors / len(recent)) * 100
            if error_rate > config.error_rate_threshold:
                severity = (
                    AlertSeverity.CRITICAL
                    if error_rate > config.error_rate_threshold * 2
                    else AlertSeverity.HIGH
                )
                alerts.append(PerformanceAlert(
                    type=AlertType.ERROR_RATE,
                    severity=severity,
                    message=f"High error rate detected: {error_rate:.1f}%",
                    metrics={"error_rate": error_rate, "recent_errors": errors, "recent_requests": len(recent)},
                ))

        return alerts

    async def analyze_metrics(self, metrics: PerformanceMetrics) -> List[PerformanceAlert]:
        """Derive alerts for a completed request and emit those not cooling down"""
        sent = []
        for alert in self.build_alerts(metrics):
            if await self.send_alert(alert):
                sent.append(alert)
        return sent

    def _cooldown_for(self, severity: AlertSeverity) -> float:
        if severity == AlertSeverity.CRITICAL:
            return self.config.critical_alert_cooldown_seconds
        return self.config.alert_cooldown_seconds

    async def send_alert(self, alert: PerformanceAlert) -> bool:
        """Log the alert unless the same (type, severity) fired within its cooldown"""
        if not self.config.enable_alerts:
            return False

        key = (alert.type, alert.severity)
        now = time.monotonic()
        last_sent = self.alert_cooldowns.get(key)
        if last_sent is not None and now - last_sent < self._cooldown_for(alert.severity):
            return False
        self.alert_cooldowns[key] = now
        performance_alerts.labels(type=alert.type.value, severity=alert.severity.value).inc()

        message = f"Performance Alert: {alert.message}"
        metadata = {
            "alert_type": alert.type.value,
            "severity": alert.severity.value,
            "metrics": alert.metrics,
        }
        if alert.severity == AlertSeverity.CRITICAL:
            await self.logger.critical(LogContext.PERFORMANCE, message, metadata=metadata)
        elif alert.severity == AlertSeverity.HIGH:
            await self.logger.error(LogContext.PERFORMANCE, message, metadata=metadata)
        else:
            await self.logger.warn(LogContext.PERFORMANCE, message, metadata=metadata)
        return True

    # ------------------------------------------------------------------
    # Aggregates and housekeeping
    # ------------------------------------------------------------------

    def get_metrics(self) -> PerformanceSummary:
        recent = self._recent()
        durations = [m.duration for m in recent if m.duration is not None]
        avg_response_time = sum(durations) / len(recent) if recent else 0.0

        errors = sum(1 for m in recent if m.status_code is not None and m.status_code >= 500)
        error_rate = (errors / len(recent)) * 100 if recent else 0.0

        endpoint_totals: Dict[str, List[float]] = {}
        for m in recent:
            if m.duration:
                totals = endpoint_totals.setdefault(m.endpoint, [0.0, 0])
                totals[0] += m.duration
                totals[1] += 1

        slowest = sorted(
            (
                EndpointStats(endpoint=endpoint, avg_duration=total / count, count=int(count))
                for endpoint, (total, count) in endpoint_totals.items()
            ),
            key=lambda stats: stats.avg_duration,
            reverse=True,
        )[:5]

        return PerformanceSummary(
            active_requests=len(self.active_requests),
            recent_requests=len(recent),
            avg_response_time=avg_response_time,
            error_rate=error_rate,
            memory_usage_mb=round(process_metrics.memory_snapshot().rss_mb),
            top_slow_endpoints=slowest,
        )

    async def cleanup_old_metrics(self) -> None:
        """Drop history, stale in-flight requests and cooldowns past retention"""
        now = time.monotonic()
        cutoff = now - self.config.metrics_retention_minutes * 60

        self.recent_metrics = deque(m for m in self.recent_metrics if m.start_time > cutoff)

        stale = [rid for rid, m in self.active_requests.items() if m.start_time <= cutoff]
        for request_id in stale:
            del self.active_requests[request_id]

        longest_cooldown = max(
            self.config.alert_cooldown_seconds, self.config.critical_alert_cooldown_seconds
        )
        expired = [key for key, sent in self.alert_cooldowns.items() if now - sent >= longest_cooldown]
        for key in expired:
            del self.alert_cooldowns[key]

        if stale:
            logger.warning(f"Discarded {len(stale)} requests that never completed")

    def start(self) -> None:
        """Start the periodic cleanup sweep"""
        if self._cleanup_task is not None:
            return
        self._cleanup_task = RepeatingTask(
            "performance-metrics-cleanup",
            self.cleanup_old_metrics,
            self.config.cleanup_interval_seconds,
            run_immediately=False,
        )
        self._cleanup_task.start()

    def stop(self) -> None:
        if self._cleanup_task is None:
            return
        self._cleanup_task.stop()
        self._cleanup_task = None


# Process-wide default instance
performance_monitor = PerformanceMonitor()


def get_performance_monitor() -> PerformanceMonitor:
    return performance_monitor


async def monitor_call(
    monitor: PerformanceMonitor,
    request: Request,
    call: Callable[[], Awaitable[Response]],
) -> Response:
    """
    Run ``call`` between ``start_request`` and ``end_request``.

    If ``call`` raises, a 500 response carrying the error message is
    recorded and the original exception is re-raised.
    """
    started = time.perf_counter()
    request_id = await monitor.start_request(request)
    if request_id:
        request.state.request_id = request_id

    try:
        response = await call()
    except Exception as e:
        error_response = JSONResponse({"error": "Internal Server Error"}, status_code=500)
        await monitor.end_request(request_id, error_response, error=str(e) or type(e).__name__)
        raise

    await monitor.end_request(request_id, response)
    if request_id:
        response.headers["X-Request-ID"] = request_id
    response.headers["X-Response-Time"] = f"{(time.perf_counter() - started) * 1000:.2f}ms"
    return response


class PerformanceMiddleware(BaseHTTPMiddleware):
    """
    Middleware to track request performance and errors.
    """

    def __init__(self, app: ASGIApp, monitor: Optional[PerformanceMonitor] = None):
        super().__init__(app)
        self.monitor = monitor or get_performance_monitor()

    async def dispatch(self, request: Request, call_next):
        # Skip health check endpoints to avoid recursive metrics
        if any(request.url.path.startswith(path) for path in self.monitor.config.skip_paths):
            return await call_next(request)
        return await monitor_call(self.monitor, request, lambda: call_next(request))


def with_performance_monitoring(
    handler: Optional[Callable[..., Awaitable[Any]]] = None,
    *,
    monitor: Optional[PerformanceMonitor] = None,
):
    """
    Decorate an async route handler that receives the ``Request``.

    Non-``Response`` return values are serialized to JSON so the timing
    headers can be attached.
    """

    def decorator(func: Callable[..., Awaitable[Any]]):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            request = kwargs.get("request")
            if request is None:
                request = next((arg for arg in args if isinstance(arg, Request)), None)
            if request is None:
                raise TypeError(f"{func.__name__} must receive the Request to be monitored")

            async def call() -> Response:
                result = await func(*args, **kwargs)
                if isinstance(result, Response):
                    return result
                return JSONResponse(jsonable_encoder(result))

            return await monitor_call(monitor or get_performance_monitor(), request, call)

        return wrapper

    if handler is not None:
        return decorator(handler)
    return decorator
