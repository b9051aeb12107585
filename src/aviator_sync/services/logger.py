"""
Logger Service Module
Centralized logging configuration: coloured console, optional rotating files,
optional JSON records and a timing context manager for resyncs
"""

import json
import logging
import sys
import time
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

import colorlog

CONSOLE_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# LogRecord attributes that are not user-supplied "extra" fields
_RESERVED_ATTRS = frozenset(
    {
        "name", "msg", "args", "created", "filename", "funcName", "levelname",
        "levelno", "lineno", "module", "msecs", "message", "pathname", "process",
        "processName", "relativeCreated", "thread", "threadName", "exc_info",
        "exc_text", "stack_info", "taskName",
    }
)


class LoggerService:
    """
    Centralized logging service with support for:
    - Console output, coloured through colorlog
    - Rotating app/error log files
    - JSON structured records
    """

    def __init__(self, config: dict[str, Any] | None = None):
        self.config = {**self._default_config(), **(config or {})}
        self.handlers: list[logging.Handler] = []
        self.log_dir: Path | None = None

        if self.config["file_output"]:
            self.log_dir = Path(self.config["log_dir"])
            self.log_dir.mkdir(parents=True, exist_ok=True)

        self._setup_root_logger()

    def _default_config(self) -> dict[str, Any]:
        """Default logging configuration"""
        return {
            "level": "INFO",
            "log_dir": "./logs",
            "console_output": True,
            "file_output": False,
            "colored": True,
            "json_format": False,
            "max_bytes": 5 * 1024 * 1024,
            "backup_count": 3,
        }

    @property
    def level(self) -> int:
        return getattr(logging, str(self.config["level"]).upper())

    def _setup_root_logger(self):
        """Configure the root logger"""
        root_logger = logging.getLogger()
        root_logger.setLevel(logging.DEBUG)  # Capture all, filter at handler level

        for handler in list(root_logger.handlers):
            root_logger.removeHandler(handler)

        if self.config["console_output"]:
            self._install(root_logger, self._create_console_handler())

        if self.log_dir is not None:
            self._install(root_logger, self._create_file_handler("app.log"))
            self._install(root_logger, self._create_file_handler("errors.log", level=logging.ERROR))

        # aiohttp is chatty at DEBUG
        logging.getLogger("aiohttp").setLevel(logging.WARNING)

    def _install(self, logger: logging.Logger, handler: logging.Handler):
        logger.addHandler(handler)
        self.handlers.append(handler)

    def _create_console_handler(self) -> logging.Handler:
        """Create console handler with optional colored output"""
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(self.level)

        if self.config["json_format"]:
            formatter: logging.Formatter = JsonFormatter()
        elif self.config["colored"]:
            formatter = colorlog.ColoredFormatter(
                "%(log_color)s" + CONSOLE_FORMAT,
                datefmt=DATE_FORMAT,
                log_colors={
                    "DEBUG": "cyan",
                    "INFO": "green",
                    "WARNING": "yellow",
                    "ERROR": "red",
                    "CRITICAL": "red,bg_white",
                },
            )
        else:
            formatter = logging.Formatter(CONSOLE_FORMAT, datefmt=DATE_FORMAT)

        console_handler.setFormatter(formatter)
        return console_handler

    def _create_file_handler(self, filename: str, level: int | None = None) -> logging.Handler:
        """Create rotating file handler"""
        handler = RotatingFileHandler(
            self.log_dir / filename,
            maxBytes=self.config["max_bytes"],
            backupCount=self.config["backup_count"],
        )
        handler.setLevel(level or logging.DEBUG)

        if self.config["json_format"]:
            handler.setFormatter(JsonFormatter())
        else:
            handler.setFormatter(logging.Formatter(CONSOLE_FORMAT, datefmt=DATE_FORMAT))
        return handler

    def set_level(self, level: str, logger_name: str | None = None):
        """Set logging level for a specific logger or the console"""
        level_value = getattr(logging, level.upper())
        if logger_name:
            logging.getLogger(logger_name).setLevel(level_value)
            return
        self.config["level"] = level.upper()
        for handler in self.handlers:
            if isinstance(handler, logging.StreamHandler) and not isinstance(
                handler, RotatingFileHandler
            ):
                handler.setLevel(level_value)

    def cleanup(self):
        """Detach and close the handlers this service installed"""
        root_logger = logging.getLogger()
        for handler in self.handlers:
            root_logger.removeHandler(handler)
            handler.close()
        self.handlers.clear()


class JsonFormatter(logging.Formatter):
    """JSON formatter for structured logging"""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON"""
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS:
                log_data[key] = value

        return json.dumps(log_data, default=str)


class PerformanceLogger:
    """Context manager for performance logging"""

    def __init__(self, logger: logging.Logger, operation: str, level: int = logging.DEBUG):
        self.logger = logger
        self.operation = operation
        self.level = level
        self.start_time: float | None = None
        self.duration: float | None = None

    def __enter__(self):
        """Start timing"""
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Log performance"""
        self.duration = time.perf_counter() - self.start_time

        if exc_type:
            self.logger.error(
                f"Operation '{self.operation}' failed after {self.duration:.3f}s: {exc_val}"
            )
        else:
            self.logger.log(
                self.level, f"Operation '{self.operation}' completed in {self.duration:.3f}s"
            )
        return False


# Global logger service instance
_logger_service: LoggerService | None = None


def setup_logging(config: dict | None = None) -> logging.Logger:
    """
    Setup logging configuration and return root logger

    Calling it again replaces the previous handlers.

    Args:
        config: The LOGGING section of the engine Config (or any subset of it)

    Returns:
        Configured root logger
    """
    global _logger_service

    if _logger_service is not None:
        _logger_service.cleanup()

    _logger_service = LoggerService(config)
    return logging.getLogger()


def get_logger_service() -> LoggerService | None:
    return _logger_service


def cleanup_logging():
    """Clean up logging resources"""
    global _logger_service

    if _logger_service:
        _logger_service.cleanup()
        _logger_service = None
