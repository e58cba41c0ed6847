"""Engine configuration loaded from ``DAGFLOW_*`` environment variables."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict

from .base import BaseConfig, ConfigurationSchema

logger = logging.getLogger(__name__)

FAILURE_POLICIES = {"fail-fast", "continue", "retry-failed", "manual"}
STATE_BACKENDS = {"memory", "sqlite"}
LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


class EngineConfig(BaseConfig):
    """Workflow engine configuration."""

    ENV_PREFIX = "DAGFLOW_"

    def __init__(self):
        """Initialize engine configuration."""
        super().__init__()

        # Scheduling
        self.default_max_concurrency = self.get_int("default_max_concurrency", 4)
        self.default_failure_policy = self.get_value("default_failure_policy", "fail-fast")
        self.scheduler_tick_seconds = self.get_float("scheduler_tick_seconds", 1.0)
        self.enable_metrics = self.parse_bool(self.get_value("enable_metrics", True))

        # Retry defaults (used by the retry-failed policy)
        self.default_retry_max_attempts = self.get_int("default_retry_max_attempts", 3)
        self.default_retry_initial_delay_ms = self.get_int("default_retry_initial_delay_ms", 1000)
        self.default_retry_max_delay_ms = self.get_int("default_retry_max_delay_ms", 60000)
        self.default_retry_jitter = self.get_float("default_retry_jitter", 0.1)

        # Persistence
        self.state_backend = str(self.get_value("state_backend", "memory")).lower()
        self.state_db_path = Path(
            self.get_value("state_db_path", str(Path.home() / ".dagflow" / "runs.db"))
        ).expanduser()

        # Logging
        self.log_level = str(self.get_value("log_level", "INFO")).upper()
        self.log_dir = Path(self.get_value("log_dir", "logs"))

    def get_schema(self) -> ConfigurationSchema:
        return ConfigurationSchema(
            name="EngineConfig",
            required_fields={"default_max_concurrency", "state_backend"},
            validators={
                "default_max_concurrency": lambda x: isinstance(x, int) and x >= 1,
                "default_failure_policy": lambda x: x in FAILURE_POLICIES,
                "default_retry_max_attempts": lambda x: isinstance(x, int) and x >= 1,
                "default_retry_initial_delay_ms": lambda x: x > 0,
                "default_retry_jitter": lambda x: 0.0 <= x <= 1.0,
                "state_backend": lambda x: x in STATE_BACKENDS,
                "scheduler_tick_seconds": lambda x: x > 0,
                "log_level": lambda x: x in LOG_LEVELS,
            },
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "default_max_concurrency": self.default_max_concurrency,
            "default_failure_policy": self.default_failure_policy,
            "default_retry_max_attempts": self.default_retry_max_attempts,
            "default_retry_initial_delay_ms": self.default_retry_initial_delay_ms,
            "default_retry_max_delay_ms": self.default_retry_max_delay_ms,
            "default_retry_jitter": self.default_retry_jitter,
            "state_backend": self.state_backend,
            "state_db_path": str(self.state_db_path),
            "scheduler_tick_seconds": self.scheduler_tick_seconds,
            "enable_metrics": self.enable_metrics,
            "log_level": self.log_level,
            "log_dir": str(self.log_dir),
        }


def get_engine_config() -> EngineConfig:
    """Get engine configuration instance.

    Returns:
        EngineConfig singleton instance
    """
    return EngineConfig.get_instance()
