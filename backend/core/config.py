"""
Configuration management for the observability stack.

Values come from environment variables (and an optional ``.env`` file), so the
same build behaves differently in development, test and production.
"""

from typing import List, Optional

try:
    from pydantic.v1 import BaseSettings, Field, validator
except ImportError:
    from pydantic import BaseSettings, Field, validator
from functools import lru_cache


VALID_ENVIRONMENTS = ("development", "production", "test")


class Settings(BaseSettings):
    """
    Application settings with environment variable support.
    """

    # Environment Settings
    environment: str = Field("development", env=["ENVIRONMENT", "NODE_ENV"])
    service_name: str = "erp-pizzaria"
    app_version: str = Field("1.0.0", env=["APP_VERSION"])
    debug: bool = False
    host: str = "0.0.0.0"
    port: int = Field(8000, env=["PORT"])

    # Structured Logging
    log_level: Optional[str] = None
    log_directory: str = "./logs"
    log_max_file_size: int = 10 * 1024 * 1024
    log_max_files: int = 5
    log_buffer_size: int = 10
    log_flush_on_critical: bool = True
    log_max_per_minute: int = 1000
    log_sensitive_fields: List[str] = [
        "password",
        "token",
        "secret",
        "key",
        "authorization",
        "credit_card",
        "cvv",
    ]

    # Database used by the health probe
    postgres_user: str = "postgres"
    postgres_password: Optional[str] = None
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_db: str = "erp_pizzaria"
    health_database_url: Optional[str] = None
    health_key_tables: List[str] = ["categories", "products", "profiles"]

    # Internal API probe target, defaults to this service
    api_url: Optional[str] = Field(None, env=["API_URL", "NEXT_PUBLIC_API_URL"])

    # Health Check System
    health_check_interval_seconds: float = 30.0
    health_check_timeout_seconds: float = 5.0
    health_check_retries: int = 3
    health_check_backoff_seconds: float = 1.0
    health_memory_threshold: float = 85.0
    health_cpu_threshold: float = 80.0
    health_response_time_threshold: float = 2000.0
    health_disk_threshold: float = 90.0
    health_temp_file: str = "./temp-health-check.txt"

    # Performance Monitoring
    performance_enabled: bool = True
    performance_slow_request_ms: float = 2000.0
    performance_memory_threshold_mb: float = 100.0
    performance_cpu_threshold: float = 80.0
    performance_error_rate_threshold: float = 5.0
    performance_sample_rate: Optional[float] = None
    performance_retention_minutes: int = 60
    performance_cleanup_interval_seconds: float = 300.0

    class Config:
        env_file = ".env"
        case_sensitive = False

        @classmethod
        def parse_env_var(cls, field_name, raw_val):
            # Lists are comma separated in the environment, not JSON
            if field_name in ("log_sensitive_fields", "health_key_tables"):
                return [item.strip() for item in raw_val.split(",") if item.strip()]
            return cls.json_loads(raw_val)

    @validator("environment", pre=True)
    def normalize_environment(cls, v):
        value = str(v or "development").strip().lower()
        if value not in VALID_ENVIRONMENTS:
            return "development"
        return value

    @validator("api_url", always=True)
    def default_api_url(cls, v, values):
        if v:
            return v
        return f"http://localhost:{values.get('port', 8000)}"

    @validator("log_level")
    def validate_log_level(cls, v):
        if v is None:
            return v
        value = v.strip().lower()
        if value == "warning":
            value = "warn"
        if value not in ("debug", "info", "warn", "error", "critical"):
            raise ValueError(f"Unknown log level: {v}")
        return value

    @validator("performance_sample_rate")
    def validate_sample_rate(cls, v):
        if v is not None and not 0.0 <= v <= 1.0:
            raise ValueError("performance_sample_rate must be between 0 and 1")
        return v

    @validator("log_sensitive_fields", "health_key_tables", pre=True)
    def parse_comma_list(cls, v):
        if isinstance(v, str):
            return [item.strip() for item in v.split(",") if item.strip()]
        return v

    @property
    def is_production(self) -> bool:
        """Check if running in production environment"""
        return self.environment == "production"

    @property
    def is_development(self) -> bool:
        """Check if running in development environment"""
        return self.environment == "development"

    @property
    def database_url(self) -> str:
        """Connection URL for the health probe pool"""
        if self.health_database_url:
            return self.health_database_url
        credentials = self.postgres_user
        if self.postgres_password:
            credentials = f"{credentials}:{self.postgres_password}"
        return (
            f"postgresql+psycopg2://{credentials}@{self.postgres_host}:"
            f"{self.postgres_port}/{self.postgres_db}"
        )


@lru_cache()
def get_settings() -> Settings:
    """Get cached application settings"""
    return Settings()


# Global settings instance
settings = get_settings()
