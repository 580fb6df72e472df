"""
Schemas for request performance monitoring.
"""

from pydantic import BaseModel, Field
from typing import Dict, List, Optional, Any
from datetime import datetime
from enum import Enum

from .health_schemas import utc_now


class AlertType(str, Enum):
    """Types of performance alerts"""
    SLOW_REQUEST = "slow_request"
    HIGH_MEMORY = "high_memory"
    HIGH_CPU = "high_cpu"
    ERROR_RATE = "error_rate"
    HIGH_LOAD = "high_load"


class AlertSeverity(str, Enum):
    """Alert severity levels"""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class PerformanceAlert(BaseModel):
    """Alert derived from a completed request"""
    type: AlertType
    severity: AlertSeverity
    message: str
    metrics: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utc_now)


class EndpointStats(BaseModel):
    """Average latency of one endpoint"""
    endpoint: str
    avg_duration: float
    count: int


class PerformanceSummary(BaseModel):
    """Rolling performance figures over the last 15 minutes"""
    active_requests: int
    recent_requests: int
    avg_response_time: float
    error_rate: float
    memory_usage_mb: float
    top_slow_endpoints: List[EndpointStats]


class PerformanceConfig(BaseModel):
    """Performance monitor settings"""
    enabled: bool = True
    slow_request_threshold: float = Field(2000.0, description="Milliseconds")
    memory_threshold: float = Field(100.0, description="Megabytes")
    cpu_threshold: float = Field(80.0, description="Percent of one core")
    error_rate_threshold: float = Field(5.0, description="Percent")
    sample_rate: float = Field(1.0, ge=0.0, le=1.0)
    enable_detailed_logging: bool = True
    enable_alerts: bool = True
    metrics_retention_minutes: int = 60
    cleanup_interval_seconds: float = 300.0
    max_history: int = 1000
    history_trim_to: int = 500
    metrics_window_minutes: int = 15
    min_requests_for_error_rate: int = 10
    critical_alert_cooldown_seconds: float = 300.0
    alert_cooldown_seconds: float = 900.0
    skip_paths: List[str] = Field(default_factory=lambda: ["/api/v1/health"])
    user_agent_max_length: int = 100

    @classmethod
    def from_settings(cls, settings) -> "PerformanceConfig":
        production = settings.is_production
        sample_rate = settings.performance_sample_rate
        if sample_rate is None:
            sample_rate = 0.1 if production else 1.0
        return cls(
            enabled=settings.performance_enabled,
            slow_request_threshold=settings.performance_slow_request_ms,
            memory_threshold=settings.performance_memory_threshold_mb,
            cpu_threshold=settings.performance_cpu_threshold,
            error_rate_threshold=settings.performance_error_rate_threshold,
            sample_rate=sample_rate,
            enable_detailed_logging=not production,
            metrics_retention_minutes=settings.performance_retention_minutes,
            cleanup_interval_seconds=settings.performance_cleanup_interval_seconds,
        )


class RequestMetricsOverrides(BaseModel):
    """Extra measurements a handler can report for its request"""
    query_count: Optional[int] = None
    cache_hit: Optional[bool] = None
    error: Optional[str] = None
