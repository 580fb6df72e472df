"""
Structured logger for application diagnostics.

Produces one ``LogEntry`` per call with a consistent shape, sanitized
metadata and environment-aware rendering:

* development/test: one colored line plus pretty-printed metadata
* production: one JSON object per line, buffered and flushed in batches

Entries go to the console (stdout for debug/info, stderr for warn and above)
and, when enabled, to ``{service}-{level}-{YYYY-MM-DD}.log`` files.
A failing sink is reported through the module logger and never raises to
the caller.
"""

import json
import logging
import sys
import time
import traceback
import uuid
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import aiofiles
import aiofiles.os
from pydantic import BaseModel, ConfigDict, Field

from core.config import Settings, get_settings
from core.process_metrics import cpu_delta, cpu_times_snapshot, memory_snapshot, CpuTimes
from core.security_config import DEFAULT_SENSITIVE_FIELDS, sanitize_log_data

logger = logging.getLogger(__name__)


class LogLevel(str, Enum):
    """Log severity, ordered from least to most severe."""

    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"
    CRITICAL = "critical"


class LogContext(str, Enum):
    """Functional area that produced the entry."""

    API = "api"
    AUTH = "auth"
    DATABASE = "database"
    PAYMENT = "payment"
    SYSTEM = "system"
    PERFORMANCE = "performance"
    SECURITY = "security"


LEVEL_ORDER = [LogLevel.DEBUG, LogLevel.INFO, LogLevel.WARN, LogLevel.ERROR, LogLevel.CRITICAL]

# Levels that are never dropped by the rate limiter
UNLIMITED_LEVELS = {LogLevel.ERROR, LogLevel.CRITICAL}

STDLIB_LEVELS = {
    LogLevel.DEBUG: logging.DEBUG,
    LogLevel.INFO: logging.INFO,
    LogLevel.WARN: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
    LogLevel.CRITICAL: logging.CRITICAL,
}

ANSI_COLORS = {
    LogLevel.DEBUG: "\033[36m",
    LogLevel.INFO: "\033[32m",
    LogLevel.WARN: "\033[33m",
    LogLevel.ERROR: "\033[31m",
    LogLevel.CRITICAL: "\033[35m",
}
ANSI_RESET = "\033[0m"

ENTRY_OPTIONS = {
    "request_id",
    "user_id",
    "session_id",
    "endpoint",
    "method",
    "status_code",
    "duration",
    "trace_id",
    "metadata",
    "error",
    "security",
}


class LogError(BaseModel):
    """Error details attached to an entry"""

    model_config = ConfigDict(frozen=True)

    name: str
    message: str
    stack: Optional[str] = None
    code: Optional[str] = None


class PerformanceSnapshot(BaseModel):
    """Process resources at the time of logging"""

    model_config = ConfigDict(frozen=True)

    memory_usage: Dict[str, float]
    cpu_usage: Optional[Dict[str, float]] = None
    response_time: Optional[float] = None


class SecurityInfo(BaseModel):
    """Security attributes of the event"""

    model_config = ConfigDict(frozen=True)

    ip: Optional[str] = None
    user_agent: Optional[str] = None
    suspicious: bool = False
    risk_level: Optional[str] = None


class LogEntry(BaseModel):
    """One immutable structured log record"""

    model_config = ConfigDict(frozen=True)

    timestamp: str
    level: LogLevel
    context: LogContext
    service: str
    environment: str
    message: str
    correlation_id: str
    request_id: Optional[str] = None
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    endpoint: Optional[str] = None
    method: Optional[str] = None
    status_code: Optional[int] = None
    duration: Optional[float] = None
    trace_id: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    error: Optional[LogError] = None
    performance: Optional[PerformanceSnapshot] = None
    security: Optional[SecurityInfo] = None

    def to_json(self) -> str:
        return self.model_dump_json(exclude_none=True)


class LoggerConfig(BaseModel):
    """Runtime configuration of a StructuredLogger"""

    enabled: bool = True
    level: LogLevel = LogLevel.DEBUG
    environment: str = "development"
    service: str = "erp-pizzaria"
    enable_file_logging: bool = False
    enable_console_logging: bool = True
    enable_performance_logging: bool = True
    enable_security_logging: bool = True
    log_directory: str = "./logs"
    # Rotation limits are reserved; daily files are not rotated by size
    max_file_size: int = 10 * 1024 * 1024
    max_files: int = 5
    sensitive_fields: List[str] = Field(
        default_factory=lambda: list(DEFAULT_SENSITIVE_FIELDS)
    )
    enable_rate_limiting: bool = False
    max_logs_per_minute: int = 1000
    buffer_size: int = Field(10, ge=1)
    flush_on_critical: bool = True
    performance_timer_ttl_seconds: float = 3600.0

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "LoggerConfig":
        """Build the environment-aware defaults from application settings."""
        settings = settings or get_settings()
        production = settings.is_production
        default_level = LogLevel.INFO if production else LogLevel.DEBUG
        return cls(
            level=LogLevel(settings.log_level) if settings.log_level else default_level,
            environment=settings.environment,
            service=settings.service_name,
            enable_file_logging=production,
            log_directory=settings.log_directory,
            max_file_size=settings.log_max_file_size,
            max_files=settings.log_max_files,
            sensitive_fields=settings.log_sensitive_fields,
            enable_rate_limiting=production,
            max_logs_per_minute=settings.log_max_per_minute,
            buffer_size=settings.log_buffer_size,
            flush_on_critical=settings.log_flush_on_critical,
        )


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _generate_correlation_id() -> str:
    return f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}"


class _StdoutFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        return record.levelno < logging.WARNING


class StructuredLogger:
    """
    Leveled, contextual logger with sanitization, buffering and rate limiting.

    One instance is created per process (``structured_logger``); components
    that log accept an instance in their constructor so tests and embedders
    can supply their own.
    """

    def __init__(self, config: Optional[LoggerConfig] = None):
        self.config = config or LoggerConfig.from_settings()
        self._buffer: List[LogEntry] = []
        self._rate_limit_counts: Dict[Tuple[LogLevel, int], int] = {}
        self._performance_timers: Dict[str, Tuple[float, float, CpuTimes]] = {}
        self._correlation_id = _generate_correlation_id()
        self._shutdown_complete = False
        self._console = self._setup_console_logger()

    def _setup_console_logger(self) -> logging.Logger:
        """Console sink: stdout below warn, stderr from warn upward"""
        console = logging.getLogger(f"{__name__}.console.{self.config.service}")
        console.setLevel(logging.DEBUG)
        console.propagate = False
        for handler in list(console.handlers):
            console.removeHandler(handler)

        formatter = logging.Formatter("%(message)s")

        stdout_handler = logging.StreamHandler(sys.stdout)
        stdout_handler.setLevel(logging.DEBUG)
        stdout_handler.addFilter(_StdoutFilter())
        stdout_handler.setFormatter(formatter)

        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setLevel(logging.WARNING)
        stderr_handler.setFormatter(formatter)

        console.addHandler(stdout_handler)
        console.addHandler(stderr_handler)
        return console

    @property
    def buffering(self) -> bool:
        return self.config.is_production

    # ------------------------------------------------------------------
    # Gates
    # ------------------------------------------------------------------

    def should_log(self, level: LogLevel) -> bool:
        if not self.config.enabled:
            return False
        return LEVEL_ORDER.index(LogLevel(level)) >= LEVEL_ORDER.index(self.config.level)

    def _check_rate_limit(self, level: LogLevel) -> bool:
        """Fixed one-minute window per level; only the current window is kept."""
        if not self.config.enable_rate_limiting or level in UNLIMITED_LEVELS:
            return True

        window = int(time.time() // 60)
        for key in [key for key in self._rate_limit_counts if key[1] != window]:
            del self._rate_limit_counts[key]

        key = (level, window)
        count = self._rate_limit_counts.get(key, 0)
        if count >= self.config.max_logs_per_minute:
            return False
        self._rate_limit_counts[key] = count + 1
        return True

    # ------------------------------------------------------------------
    # Entry construction
    # ------------------------------------------------------------------

    def _build_error(self, error: Union[BaseException, str, dict]) -> LogError:
        if isinstance(error, BaseException):
            stack = None
            if self.config.environment == "development":
                stack = "".join(
                    traceback.format_exception(type(error), error, error.__traceback__)
                )
            code = getattr(error, "code", None)
            return LogError(
                name=type(error).__name__,
                message=str(error),
                stack=stack,
                code=str(code) if code is not None else None,
            )
        if isinstance(error, dict):
            return LogError(**error)
        return LogError(name="Error", message=str(error))

    def create_log_entry(
        self, level: LogLevel, context: Union[LogContext, str], message: str, options: Dict[str, Any]
    ) -> LogEntry:
        extra = {key: value for key, value in options.items() if key not in ENTRY_OPTIONS}
        metadata = dict(options.get("metadata") or {})
        metadata.update(extra)

        error = options.get("error")
        security = options.get("security")
        if isinstance(security, dict):
            security = SecurityInfo(**security)

        performance = None
        if self.config.enable_performance_logging:
            performance = PerformanceSnapshot(
                memory_usage=memory_snapshot().to_dict(),
                response_time=options.get("duration"),
            )

        return LogEntry(
            timestamp=_utc_timestamp(),
            level=level,
            context=LogContext(context),
            service=self.config.service,
            environment=self.config.environment,
            message=message,
            correlation_id=self._correlation_id,
            request_id=options.get("request_id"),
            user_id=options.get("user_id"),
            session_id=options.get("session_id"),
            endpoint=options.get("endpoint"),
            method=options.get("method"),
            status_code=options.get("status_code"),
            duration=options.get("duration"),
            trace_id=options.get("trace_id"),
            metadata=sanitize_log_data(metadata, self.config.sensitive_fields) if metadata else None,
            error=self._build_error(error) if error is not None else None,
            performance=performance,
            security=security if self.config.enable_security_logging else None,
        )

    # ------------------------------------------------------------------
    # Rendering and sinks
    # ------------------------------------------------------------------

    def format_console(self, entry: LogEntry) -> str:
        if self.config.is_production:
            return entry.to_json()

        clock = entry.timestamp[11:19]
        color = ANSI_COLORS[entry.level]
        output = (
            f"{color}[{clock}] {entry.level.value.upper():<8} "
            f"[{entry.context.value.upper()}]{ANSI_RESET} {entry.message}"
        )
        if entry.metadata:
            output += "\n  " + json.dumps(entry.metadata, indent=2, default=str).replace("\n", "\n  ")
        if entry.error:
            output += f"\n  Error: {entry.error.name}: {entry.error.message}"
            if entry.error.stack:
                output += "\n  " + entry.error.stack.rstrip().replace("\n", "\n  ")
        return output

    def log_file_path(self, entry: LogEntry) -> Path:
        day = entry.timestamp[:10]
        return Path(self.config.log_directory) / f"{entry.service}-{entry.level.value}-{day}.log"

    async def _write_to_file(self, entry: LogEntry) -> None:
        path = self.log_file_path(entry)
        await aiofiles.os.makedirs(path.parent, exist_ok=True)
        async with aiofiles.open(path, mode="a", encoding="utf-8") as log_file:
            await log_file.write(entry.to_json() + "\n")

    async def _write_log(self, entry: LogEntry) -> None:
        if self.config.enable_console_logging:
            try:
                self._console.log(STDLIB_LEVELS[entry.level], self.format_console(entry))
            except Exception as e:
                logger.error(f"Failed to write log entry to console: {e}")

        if self.config.enable_file_logging:
            try:
                await self._write_to_file(entry)
            except Exception as e:
                logger.error(f"Failed to write log file: {e}")

    async def _process_log(self, entry: LogEntry) -> None:
        if not self.buffering:
            await self._write_log(entry)
            return

        self._buffer.append(entry)
        if len(self._buffer) >= self.config.buffer_size:
            await self.flush_logs()

    async def flush_logs(self) -> None:
        """Write buffered entries in order"""
        if not self._buffer:
            return
        entries, self._buffer = self._buffer, []
        for entry in entries:
            await self._write_log(entry)

    async def _emit(
        self, level: LogLevel, context: Union[LogContext, str], message: str, options: Dict[str, Any]
    ) -> None:
        if not self.should_log(level) or not self._check_rate_limit(level):
            return
        try:
            entry = self.create_log_entry(level, context, message, options)
        except Exception as e:
            logger.error(f"Failed to build log entry for '{message}': {e}")
            return
        await self._process_log(entry)

    # ------------------------------------------------------------------
    # Level methods
    # ------------------------------------------------------------------

    async def debug(self, context: Union[LogContext, str], message: str, **options: Any) -> None:
        await self._emit(LogLevel.DEBUG, context, message, options)

    async def info(self, context: Union[LogContext, str], message: str, **options: Any) -> None:
        await self._emit(LogLevel.INFO, context, message, options)

    async def warn(self, context: Union[LogContext, str], message: str, **options: Any) -> None:
        await self._emit(LogLevel.WARN, context, message, options)

    async def error(self, context: Union[LogContext, str], message: str, **options: Any) -> None:
        await self._emit(LogLevel.ERROR, context, message, options)

    async def critical(self, context: Union[LogContext, str], message: str, **options: Any) -> None:
        await self._emit(LogLevel.CRITICAL, context, message, options)
        if self.config.flush_on_critical:
            await self.flush_logs()

    async def log(
        self, level: Union[LogLevel, str], context: Union[LogContext, str], message: str, **options: Any
    ) -> None:
        """Log at a level chosen at runtime"""
        level = LogLevel(level)
        if level is LogLevel.DEBUG:
            await self.debug(context, message, **options)
        elif level is LogLevel.INFO:
            await self.info(context, message, **options)
        elif level is LogLevel.WARN:
            await self.warn(context, message, **options)
        elif level is LogLevel.ERROR:
            await self.error(context, message, **options)
        elif level is LogLevel.CRITICAL:
            await self.critical(context, message, **options)

    # ------------------------------------------------------------------
    # Semantic helpers
    # ------------------------------------------------------------------

    async def log_api_request(
        self,
        method: str,
        endpoint: str,
        status_code: Optional[int] = None,
        duration: Optional[float] = None,
        **options: Any,
    ) -> None:
        await self.info(
            LogContext.API,
            f"{method} {endpoint}",
            method=method,
            endpoint=endpoint,
            status_code=status_code,
            duration=duration,
            **options,
        )

    async def log_auth_event(self, event: str, success: bool, **options: Any) -> None:
        metadata = dict(options.pop("metadata", None) or {})
        metadata.update({"event": event, "success": success})
        if success:
            await self.info(LogContext.AUTH, f"Auth event: {event}", metadata=metadata, **options)
        else:
            await self.warn(LogContext.AUTH, f"Auth event failed: {event}", metadata=metadata, **options)

    async def log_database_query(
        self, query: str, duration: float, error: Optional[BaseException] = None, **options: Any
    ) -> None:
        metadata = dict(options.pop("metadata", None) or {})
        metadata["query"] = query[:200]
        if error is not None:
            await self.error(
                LogContext.DATABASE,
                f"Query failed after {duration:.1f}ms",
                duration=duration,
                error=error,
                metadata=metadata,
                **options,
            )
        else:
            await self.debug(
                LogContext.DATABASE,
                f"Query executed in {duration:.1f}ms",
                duration=duration,
                metadata=metadata,
                **options,
            )

    async def log_performance_metric(self, operation: str, duration: float, **options: Any) -> None:
        metadata = dict(options.pop("metadata", None) or {})
        metadata["operation"] = operation
        await self.info(
            LogContext.PERFORMANCE,
            f"{operation} completed in {duration:.1f}ms",
            duration=duration,
            metadata=metadata,
            **options,
        )

    async def log_security_event(
        self,
        event: str,
        risk_level: str = "low",
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        **options: Any,
    ) -> None:
        security = SecurityInfo(
            ip=ip,
            user_agent=user_agent,
            suspicious=risk_level != "low",
            risk_level=risk_level,
        )
        message = f"Security event: {event}"
        if risk_level == "high":
            await self.critical(LogContext.SECURITY, message, security=security, **options)
        elif risk_level == "medium":
            await self.warn(LogContext.SECURITY, message, security=security, **options)
        elif risk_level == "low":
            await self.info(LogContext.SECURITY, message, security=security, **options)
        else:
            logger.error(f"Unknown risk level '{risk_level}' for security event: {event}")
            await self.warn(LogContext.SECURITY, message, security=security, **options)

    # ------------------------------------------------------------------
    # Performance timers
    # ------------------------------------------------------------------

    def start_performance_timer(self, timer_id: str) -> None:
        now = time.monotonic()
        ttl = self.config.performance_timer_ttl_seconds
        expired = [key for key, (_, started, _) in self._performance_timers.items() if now - started > ttl]
        for key in expired:
            del self._performance_timers[key]
        self._performance_timers[timer_id] = (time.perf_counter(), now, cpu_times_snapshot())

    async def end_performance_timer(self, timer_id: str, operation: str, **options: Any) -> float:
        """Stop a timer and log it; returns the elapsed milliseconds, or 0 for unknown ids."""
        timer = self._performance_timers.pop(timer_id, None)
        if timer is None:
            return 0
        started, _, cpu_before = timer
        duration = (time.perf_counter() - started) * 1000
        cpu = cpu_delta(cpu_before)
        metadata = dict(options.pop("metadata", None) or {})
        if cpu is not None:
            metadata["cpu_user_ms"] = round(cpu.user * 1000, 3)
            metadata["cpu_system_ms"] = round(cpu.system * 1000, 3)
        await self.log_performance_metric(operation, duration, metadata=metadata, **options)
        return duration

    @property
    def active_timers(self) -> List[str]:
        return list(self._performance_timers)

    # ------------------------------------------------------------------
    # Correlation and lifecycle
    # ------------------------------------------------------------------

    def set_correlation_id(self, correlation_id: str) -> None:
        self._correlation_id = correlation_id

    def get_correlation_id(self) -> str:
        return self._correlation_id

    def update_config(self, **changes: Any) -> None:
        service_changed = "service" in changes and changes["service"] != self.config.service
        self.config = LoggerConfig(**{**self.config.model_dump(), **changes})
        if service_changed:
            self._console = self._setup_console_logger()

    async def shutdown(self) -> None:
        """Flush remaining entries; safe to call more than once"""
        if self._shutdown_complete:
            return
        self._shutdown_complete = True
        await self.flush_logs()


# Process-wide default instance
structured_logger = StructuredLogger()


def get_structured_logger() -> StructuredLogger:
    return structured_logger
