"""
Application startup validation.

Checks that the observability stack is usable before serving requests and
reports configuration that is legal but probably unintended.
"""

import logging
import os
from pathlib import Path
from typing import List, Tuple

from core.config import Settings, get_settings
from core.structured_logger import LoggerConfig

logger = logging.getLogger(__name__)


class StartupValidator:
    """Validates application startup requirements"""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.errors: List[str] = []
        self.warnings: List[str] = []

    def check_log_directory(self) -> bool:
        """File logging needs a writable log directory"""
        if not LoggerConfig.from_settings(self.settings).enable_file_logging:
            return True

        directory = Path(self.settings.log_directory)
        try:
            directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            self.errors.append(f"Cannot create log directory {directory}: {e}")
            return False

        if not os.access(directory, os.W_OK):
            self.errors.append(f"Log directory {directory} is not writable")
            return False
        return True

    def check_health_settings(self) -> bool:
        """Probe timeout and retries must fit inside one monitoring interval"""
        s = self.settings
        worst_case = s.health_check_timeout_seconds * s.health_check_retries + sum(
            s.health_check_backoff_seconds * attempt for attempt in range(1, s.health_check_retries)
        )
        if worst_case > s.health_check_interval_seconds:
            self.warnings.append(
                f"A failing probe can take {worst_case:.0f}s, longer than the "
                f"{s.health_check_interval_seconds:.0f}s monitoring interval; overlapping runs are skipped"
            )
        return True

    def check_production_settings(self) -> bool:
        if not self.settings.is_production:
            return True
        if self.settings.debug:
            self.warnings.append("DEBUG is enabled in production")
        if self.settings.log_level == "debug":
            self.warnings.append("Debug logging is enabled in production")
        return True

    def run_all_checks(self) -> Tuple[bool, List[str]]:
        self.check_log_directory()
        self.check_health_settings()
        self.check_production_settings()
        return not self.errors, self.warnings


def run_startup_checks(settings: Settings = None) -> Tuple[bool, List[str]]:
    """
    Run startup validation.

    Returns:
        Tuple of (passed, warnings)

    Raises:
        RuntimeError: If a check fails in production
    """
    settings = settings or get_settings()
    validator = StartupValidator(settings)
    passed, warnings = validator.run_all_checks()

    for warning in warnings:
        logger.warning(f"Startup warning: {warning}")

    if not passed:
        for error in validator.errors:
            logger.error(f"Startup error: {error}")
        if settings.is_production:
            raise RuntimeError("Startup validation failed: " + "; ".join(validator.errors))

    logger.info(f"Startup checks finished for environment '{settings.environment}'")
    return passed, warnings
