"""
Health monitoring schemas.
"""

from .health_schemas import (
    HealthStatus,
    HealthCheckResult,
    HealthSummary,
    SystemInfo,
    SystemHealthReport,
    HealthMetrics,
    LivenessResponse,
    AlertThresholds,
    HealthCheckConfig,
)
from .performance_schemas import (
    AlertType,
    AlertSeverity,
    PerformanceAlert,
    EndpointStats,
    PerformanceSummary,
    PerformanceConfig,
    RequestMetricsOverrides,
)

__all__ = [
    "HealthStatus",
    "HealthCheckResult",
    "HealthSummary",
    "SystemInfo",
    "SystemHealthReport",
    "HealthMetrics",
    "LivenessResponse",
    "AlertThresholds",
    "HealthCheckConfig",
    "AlertType",
    "AlertSeverity",
    "PerformanceAlert",
    "EndpointStats",
    "PerformanceSummary",
    "PerformanceConfig",
    "RequestMetricsOverrides",
]
