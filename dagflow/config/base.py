"""Base configuration module for environment loading and core settings."""
from __future__ import annotations

import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from threading import Lock
from typing import Any, Callable, Dict, Optional, Set, Type, TypeVar

from dotenv import load_dotenv

logger = logging.getLogger(__name__)


# Configuration overlay priorities
class ConfigPriority(Enum):
    """Configuration priority levels for overlay system."""

    DEFAULTS = 0
    FILE = 1
    ENVIRONMENT = 2
    CLI = 3


T = TypeVar("T", bound="BaseConfig")


@dataclass
class ConfigurationSchema:
    """Schema definition for configuration validation."""

    name: str
    required_fields: Set[str] = field(default_factory=set)
    validators: Dict[str, Callable[[Any], bool]] = field(default_factory=dict)

    def validate(self, config: Dict[str, Any]) -> bool:
        """Validate configuration against schema.

        Args:
            config: Configuration dictionary to validate

        Returns:
            True if valid

        Raises:
            ValueError: If validation fails
        """
        for field_name in self.required_fields:
            if field_name not in config:
                raise ValueError(f"Required field '{field_name}' missing in {self.name}")

        for field_name, validator_fn in self.validators.items():
            if field_name in config:
                if not validator_fn(config[field_name]):
                    raise ValueError(f"Validation failed for field '{field_name}' in {self.name}")

        return True


class BaseConfig(ABC):
    """Abstract base class for configuration modules.

    Values are looked up in the overlays first (CLI, then environment, file
    and defaults overlays), then in the process environment under
    ``ENV_PREFIX`` + the upper-cased key.
    """

    ENV_PREFIX = ""

    _instances: Dict[Type, Any] = {}
    _lock = Lock()
    _config_overlays: Dict[ConfigPriority, Dict[str, Any]] = {}

    def __init__(self):
        """Initialize configuration with environment loading."""
        self._load_environment()
        self._schema: Optional[ConfigurationSchema] = None

    @classmethod
    def get_instance(cls: Type[T]) -> T:
        """Get singleton instance of configuration class (thread-safe).

        Returns:
            Singleton instance of the configuration class
        """
        if cls not in cls._instances:
            with cls._lock:
                if cls not in cls._instances:
                    cls._instances[cls] = cls()
        return cls._instances[cls]

    @classmethod
    def reset(cls) -> None:
        """Drop the cached singleton and every overlay."""
        with cls._lock:
            cls._instances.pop(cls, None)
            cls._config_overlays.clear()

    def _load_environment(self) -> None:
        """Load a .env file from the current or home directory, if any."""
        env_paths = [Path(".env"), Path.home() / ".env"]

        for env_path in env_paths:
            if env_path.exists():
                load_dotenv(env_path, override=False)
                logger.debug(f"Loaded environment from {env_path}")
                break

    @abstractmethod
    def get_schema(self) -> ConfigurationSchema:
        """Get configuration schema for validation.

        Returns:
            ConfigurationSchema instance
        """
        pass

    def validate(self) -> bool:
        """Validate configuration against schema.

        Returns:
            True if valid

        Raises:
            ValueError: If validation fails
        """
        if self._schema is None:
            self._schema = self.get_schema()
        return self._schema.validate(self.to_dict())

    @abstractmethod
    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary.

        Returns:
            Configuration as dictionary
        """
        pass

    @classmethod
    def set_overlay(cls, priority: ConfigPriority, config: Dict[str, Any]) -> None:
        """Set configuration overlay at specified priority.

        Args:
            priority: Priority level for overlay
            config: Configuration dictionary
        """
        cls._config_overlays[priority] = dict(config)

    @classmethod
    def get_value(cls, key: str, default: Any = None) -> Any:
        """Get configuration value with overlay priority.

        Args:
            key: Configuration key
            default: Default value if not found

        Returns:
            Configuration value
        """
        for priority in sorted(ConfigPriority, key=lambda p: p.value, reverse=True):
            overlay = cls._config_overlays.get(priority)
            if overlay and key in overlay:
                return overlay[key]

        env_value = os.getenv(f"{cls.ENV_PREFIX}{key.upper()}")
        if env_value is not None:
            return env_value

        return default

    @staticmethod
    def parse_bool(value: Any) -> bool:
        """Parse boolean value from various formats.

        Args:
            value: Value to parse

        Returns:
            Boolean value
        """
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            return value.lower() in ("true", "1", "yes", "on", "enabled")
        return bool(value)

    @classmethod
    def get_int(cls, key: str, default: int) -> int:
        value = cls.get_value(key, default)
        try:
            return int(value)
        except (TypeError, ValueError) as e:
            raise ValueError(f"Invalid integer value for {key}='{value}'") from e

    @classmethod
    def get_float(cls, key: str, default: float) -> float:
        value = cls.get_value(key, default)
        try:
            return float(value)
        except (TypeError, ValueError) as e:
            raise ValueError(f"Invalid float value for {key}='{value}'") from e
