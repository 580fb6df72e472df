"""
Pydantic schemas for health monitoring endpoints.
"""

from pydantic import BaseModel, Field
from typing import Dict, List, Optional, Any
from datetime import datetime, timezone
from enum import Enum


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class HealthStatus(str, Enum):
    """Health status values"""
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"
    UNKNOWN = "unknown"


class HealthCheckResult(BaseModel):
    """Outcome of a single probe"""
    name: str
    status: HealthStatus
    message: str
    duration: float = Field(0.0, description="Milliseconds spent including retries")
    timestamp: datetime = Field(default_factory=utc_now)
    metadata: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


class HealthSummary(BaseModel):
    """Number of checks per status"""
    total: int = 0
    healthy: int = 0
    warning: int = 0
    critical: int = 0
    unknown: int = 0


class SystemInfo(BaseModel):
    """Runtime and host information captured with a report"""
    version: str
    python_version: str
    platform: str
    arch: str
    memory: Dict[str, float]
    cpu_usage: float
    load_average: List[float]


class SystemHealthReport(BaseModel):
    """Aggregate result of one health check run"""
    overall_status: HealthStatus
    timestamp: datetime = Field(default_factory=utc_now)
    uptime: float = Field(..., description="Milliseconds since the health system started")
    checks: List[HealthCheckResult]
    summary: HealthSummary
    system_info: SystemInfo


class HealthMetrics(BaseModel):
    """Flattened view of the last report for dashboards"""
    status: HealthStatus
    uptime: float
    checks_total: int
    checks_healthy: int
    checks_warning: int
    checks_critical: int
    memory_usage_mb: float
    cpu_load: float
    last_check: Optional[datetime] = None


class LivenessResponse(BaseModel):
    """Response of the lightweight liveness endpoint"""
    status: str = "ok"
    version: str
    environment: str
    uptime: float


class AlertThresholds(BaseModel):
    """Percentages and milliseconds above which a probe degrades"""
    memory: float = 85.0
    cpu: float = 80.0
    response_time: float = 2000.0
    disk: float = 90.0


class HealthCheckConfig(BaseModel):
    """Health check system settings"""
    interval_seconds: float = 30.0
    timeout_seconds: float = 5.0
    retries: int = Field(3, ge=1)
    backoff_seconds: float = 1.0
    alert_thresholds: AlertThresholds = Field(default_factory=AlertThresholds)
    api_url: str = "http://localhost:8000"
    api_health_path: str = "/api/v1/health/live"
    temp_file_path: str = "./temp-health-check.txt"
    key_tables: List[str] = Field(default_factory=lambda: ["categories", "products", "profiles"])
    version: str = "1.0.0"

    @classmethod
    def from_settings(cls, settings) -> "HealthCheckConfig":
        return cls(
            interval_seconds=settings.health_check_interval_seconds,
            timeout_seconds=settings.health_check_timeout_seconds,
            retries=settings.health_check_retries,
            backoff_seconds=settings.health_check_backoff_seconds,
            alert_thresholds=AlertThresholds(
                memory=settings.health_memory_threshold,
                cpu=settings.health_cpu_threshold,
                response_time=settings.health_response_time_threshold,
                disk=settings.health_disk_threshold,
            ),
            api_url=settings.api_url,
            temp_file_path=settings.health_temp_file,
            key_tables=settings.health_key_tables,
            version=settings.app_version,
        )
