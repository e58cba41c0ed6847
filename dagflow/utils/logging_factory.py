"""Centralized logging setup for dagflow.

The factory configures the root logger once, writing to both
``<log_dir>/dagflow.log`` and the console, and sets the levels of the
engine and scheduler component loggers.

Usage:
    LoggingFactory.initialize(log_dir=Path("logs"), level=logging.INFO)
    logger = LoggingFactory.get_logger(__name__)
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional

COMPONENT_LOGGERS = ("dagflow.engine", "dagflow.scheduling")
LOG_FILE_NAME = "dagflow.log"


class LoggingFactory:
    """Single-initialisation factory for application loggers.

    Class Attributes:
        _initialized: Whether the logging system has been configured
        _log_dir: Directory holding the log file
        _handlers: Handlers installed on the root logger by ``initialize``
    """

    _initialized = False
    _log_dir = Path("logs")
    _handlers: List[logging.Handler] = []

    @classmethod
    def initialize(
        cls,
        log_dir: Optional[Path] = None,
        level: int = logging.INFO,
        format_string: Optional[str] = None,
        console: bool = True,
    ) -> None:
        """Configure the root logger. Later calls are ignored.

        Args:
            log_dir: Directory for the log file (default: ``logs``)
            level: Root logger level
            format_string: Log record format; defaults to
                "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
            console: Also log to stderr
        """
        if cls._initialized:
            return

        if log_dir:
            cls._log_dir = Path(log_dir)
        cls._log_dir.mkdir(parents=True, exist_ok=True)

        if format_string is None:
            format_string = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        formatter = logging.Formatter(format_string)

        handlers: List[logging.Handler] = [logging.FileHandler(cls._log_dir / LOG_FILE_NAME)]
        if console:
            handlers.append(logging.StreamHandler())

        root = logging.getLogger()
        root.setLevel(level)
        for handler in handlers:
            handler.setFormatter(formatter)
            root.addHandler(handler)
        cls._handlers = handlers

        for name in COMPONENT_LOGGERS:
            logging.getLogger(name).setLevel(level)

        cls._initialized = True

    @classmethod
    def get_logger(cls, name: str) -> logging.Logger:
        """Get a logger, initializing the factory with defaults if needed."""
        if not cls._initialized:
            cls.initialize()
        return logging.getLogger(name)

    @classmethod
    def set_level(cls, name: str, level: int) -> None:
        logging.getLogger(name).setLevel(level)

    @classmethod
    def configure_verbose(cls, verbose: bool = False) -> None:
        """Switch the root and component loggers between DEBUG and INFO."""
        level = logging.DEBUG if verbose else logging.INFO
        logging.getLogger().setLevel(level)
        logging.getLogger("dagflow").setLevel(level)
        for name in COMPONENT_LOGGERS:
            logging.getLogger(name).setLevel(level)

    @classmethod
    def log_file(cls) -> Path:
        return cls._log_dir / LOG_FILE_NAME

    @classmethod
    def reset(cls) -> None:
        """Remove installed handlers so the factory can be initialized again."""
        root = logging.getLogger()
        for handler in cls._handlers:
            root.removeHandler(handler)
            handler.close()
        cls._handlers = []
        cls._log_dir = Path("logs")
        cls._initialized = False


def get_logger(name: str) -> logging.Logger:
    """Shortcut for ``LoggingFactory.get_logger``."""
    return LoggingFactory.get_logger(name)
