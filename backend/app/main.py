from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from app.startup import run_startup_checks
from core.config import settings
from core.lifecycle import ShutdownCoordinator
from core.structured_logger import LogContext, get_structured_logger

# ========== Health Monitoring ==========
from modules.health.metrics.performance_middleware import (
    PerformanceMiddleware,
    get_performance_monitor,
)
from modules.health.routes.health_routes import router as health_router
from modules.health.services.health_service import get_health_check_system


shutdown_coordinator = ShutdownCoordinator()


async def _stop_performance_monitor() -> None:
    get_performance_monitor().stop()


shutdown_coordinator.register("health_check_system", get_health_check_system().shutdown)
shutdown_coordinator.register("performance_monitor", _stop_performance_monitor)
shutdown_coordinator.register("structured_logger", get_structured_logger().shutdown)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start background monitoring on startup, release everything on shutdown"""
    run_startup_checks()

    get_health_check_system().start_monitoring()
    get_performance_monitor().start()
    await get_structured_logger().info(
        LogContext.SYSTEM,
        f"{settings.service_name} started",
        metadata={"environment": settings.environment, "version": settings.app_version},
    )

    yield

    await get_structured_logger().info(LogContext.SYSTEM, f"{settings.service_name} shutting down")
    await shutdown_coordinator.shutdown()


app = FastAPI(
    title="ERP Pizzaria API",
    version=settings.app_version,
    lifespan=lifespan,
)

app.add_middleware(PerformanceMiddleware)

# Health Monitoring
app.include_router(health_router)


@app.get("/")
def read_root():
    return {"message": f"{settings.service_name} backend is running"}


if __name__ == "__main__":
    uvicorn.run(app, host=settings.host, port=settings.port)
