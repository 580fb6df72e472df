# backend/core/database.py

from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.pool import StaticPool

from core.config import get_settings

# The probe pool is kept tiny; it only has to prove the database answers
HEALTH_POOL_SIZE = 2


def create_health_engine(
    url: Optional[str] = None, timeout_seconds: Optional[float] = None
) -> Engine:
    """
    Build the connection pool used by the database health probe.

    For PostgreSQL the server enforces ``statement_timeout`` equal to the
    probe timeout, so a hung probe query is aborted server-side and its
    connection returns to the pool.
    """
    settings = get_settings()
    url = url or settings.database_url
    timeout_seconds = timeout_seconds or settings.health_check_timeout_seconds

    engine_kwargs = {"pool_pre_ping": True}

    if url.startswith("sqlite"):
        engine_kwargs["connect_args"] = {"check_same_thread": False}
        if url in {"sqlite://", "sqlite:///:memory:"}:
            engine_kwargs["poolclass"] = StaticPool
    else:
        engine_kwargs["pool_size"] = HEALTH_POOL_SIZE
        engine_kwargs["max_overflow"] = 0
        engine_kwargs["pool_timeout"] = timeout_seconds
        if make_url(url).get_backend_name() == "postgresql":
            timeout_ms = int(timeout_seconds * 1000)
            engine_kwargs["connect_args"] = {
                "connect_timeout": max(int(timeout_seconds), 1),
                "options": f"-c statement_timeout={timeout_ms}",
            }

    return create_engine(url, **engine_kwargs)
