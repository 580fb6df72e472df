"""
Performance metrics collection.
"""

from .performance_middleware import (
    PerformanceMetrics,
    PerformanceMiddleware,
    PerformanceMonitor,
    get_performance_monitor,
    performance_monitor,
    with_performance_monitoring,
)

__all__ = [
    "PerformanceMetrics",
    "PerformanceMiddleware",
    "PerformanceMonitor",
    "get_performance_monitor",
    "performance_monitor",
    "with_performance_monitoring",
]
