"""
Health monitoring API endpoints.
"""

import time

from fastapi import APIRouter, Depends, Response
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from core.config import get_settings

from ..metrics.performance_middleware import PerformanceMonitor, get_performance_monitor
from ..schemas.health_schemas import (
    HealthMetrics,
    HealthStatus,
    LivenessResponse,
    SystemHealthReport,
)
from ..schemas.performance_schemas import PerformanceSummary
from ..services.health_service import HealthCheckSystem, get_health_check_system

router = APIRouter(prefix="/api/v1/health", tags=["Health Monitoring"])


def _report_response(report: SystemHealthReport) -> JSONResponse:
    status_code = 503 if report.overall_status == HealthStatus.CRITICAL else 200
    return JSONResponse(content=report.model_dump(mode="json"), status_code=status_code)


@router.get("/live", response_model=LivenessResponse)
async def liveness(
    response: Response,
    system: HealthCheckSystem = Depends(get_health_check_system),
):
    """
    Lightweight liveness probe.

    Does no I/O, so load balancers and the internal API probe can call it
    freely.
    """
    started = time.perf_counter()
    settings = get_settings()
    body = LivenessResponse(
        version=settings.app_version,
        environment=settings.environment,
        uptime=system.uptime_ms,
    )
    response.headers["X-Response-Time"] = f"{(time.perf_counter() - started) * 1000:.2f}ms"
    return body


@router.get("/", response_model=SystemHealthReport)
async def health_check(system: HealthCheckSystem = Depends(get_health_check_system)):
    """
    Latest system health report.

    Runs the checks when monitoring has not produced a report yet. Responds
    with 503 while the overall status is critical.
    """
    report = system.get_last_report()
    if report is None:
        report = await system.run_health_checks()
    return _report_response(report)


@router.get("/detailed", response_model=SystemHealthReport)
async def detailed_health_check(system: HealthCheckSystem = Depends(get_health_check_system)):
    """Run every probe now and return the fresh report"""
    report = await system.run_health_checks()
    return _report_response(report)


@router.get("/metrics", response_model=HealthMetrics)
async def health_metrics(system: HealthCheckSystem = Depends(get_health_check_system)):
    return system.get_metrics()


@router.get("/performance", response_model=PerformanceSummary)
async def performance_metrics(monitor: PerformanceMonitor = Depends(get_performance_monitor)):
    """Request latency and error rate over the last 15 minutes"""
    return monitor.get_metrics()


@router.get("/prometheus")
async def prometheus_metrics():
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
