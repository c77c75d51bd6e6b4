"""
Structured Logging for Keyward

Provides a consistent logging framework with:
- Human-readable console output for operators
- Structured JSON output for log shipping
- Context propagation (operation, principal, document, trace IDs)
- Timing helpers for batch operations
- Environment-driven default configuration
"""

import json
import logging
import os
import sys
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, Union

LOGGER_NAME = "keyward"

LOG_LEVEL_ENV = "KEYWARD_LOG_LEVEL"
LOG_FORMAT_ENV = "KEYWARD_LOG_FORMAT"
LOG_FILE_ENV = "KEYWARD_LOG_FILE"


class LogFormat(Enum):
    """Output format for logs."""
    CONSOLE = "console"     # Human-readable colored output
    JSON = "json"           # One JSON object per line
    PRETTY_JSON = "pretty"  # Indented JSON (for debugging)


class LogLevel(Enum):
    """Log levels matching Python's logging module."""
    DEBUG = logging.DEBUG
    INFO = logging.INFO
    WARNING = logging.WARNING
    ERROR = logging.ERROR
    CRITICAL = logging.CRITICAL


@dataclass
class LogContext:
    """
    Context information attached to log entries.

    A lifecycle operation sets `operation` and `principal`; batch workers
    add `document` for the file they are processing.
    """
    operation: Optional[str] = None
    principal: Optional[str] = None
    document: Optional[str] = None
    trace_id: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert context to dictionary, excluding None values."""
        result = {}
        if self.operation:
            result["operation"] = self.operation
        if self.principal:
            result["principal"] = self.principal
        if self.document:
            result["document"] = self.document
        if self.trace_id:
            result["trace_id"] = self.trace_id
        if self.extra:
            result.update(self.extra)
        return result

    def merge(self, other: "LogContext") -> "LogContext":
        """Merge with another context, preferring non-None values from other."""
        return LogContext(
            operation=other.operation or self.operation,
            principal=other.principal or self.principal,
            document=other.document or self.document,
            trace_id=other.trace_id or self.trace_id,
            extra={**self.extra, **other.extra},
        )


# Thread-local: reconciliation workers each carry their own document context
_context_local = threading.local()


def get_current_log_context() -> LogContext:
    """Get the current logging context."""
    return getattr(_context_local, "context", LogContext())


def set_current_log_context(context: LogContext) -> None:
    """Set the current logging context."""
    _context_local.context = context


@contextmanager
def log_context(**kwargs):
    """
    Context manager for adding logging context.

    Usage:
        with log_context(operation="offboard", principal="alice"):
            logger.info("Removing principal")
    """
    known = {"operation", "principal", "document", "trace_id"}
    extra = {k: v for k, v in kwargs.items() if k not in known}
    fields = {k: v for k, v in kwargs.items() if k in known}

    old_context = get_current_log_context()
    new_context = old_context.merge(LogContext(extra=extra, **fields))
    set_current_log_context(new_context)
    try:
        yield new_context
    finally:
        set_current_log_context(old_context)


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Outputs one JSON object per line with timestamp, level, logger name,
    message, context fields, extra fields and exception info.
    """

    def __init__(self, pretty: bool = False):
        super().__init__()
        self.pretty = pretty

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        context_dict = get_current_log_context().to_dict()
        if context_dict:
            entry["context"] = context_dict

        if hasattr(record, "extra_fields"):
            entry.update(record.extra_fields)

        if record.levelno <= logging.DEBUG:
            entry["source"] = {
                "file": record.pathname,
                "line": record.lineno,
                "function": record.funcName,
            }

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        if self.pretty:
            return json.dumps(entry, indent=2, default=str)
        return json.dumps(entry, separators=(",", ":"), default=str)


class ConsoleFormatter(logging.Formatter):
    """
    Human-readable formatter for console output.

    Colors the level name when stderr is a terminal.
    """

    COLORS = {
        "DEBUG": "\033[36m",     # Cyan
        "INFO": "\033[32m",      # Green
        "WARNING": "\033[33m",   # Yellow
        "ERROR": "\033[31m",     # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def __init__(self, use_colors: bool = True):
        super().__init__()
        self.use_colors = use_colors and sys.stderr.isatty()

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.now().strftime("%H:%M:%S")

        level = record.levelname
        if self.use_colors and level in self.COLORS:
            level = f"{self.COLORS[level]}{level:8}{self.RESET}"
        else:
            level = f"{level:8}"

        message = record.getMessage()

        context = get_current_log_context()
        context_parts = []
        if context.operation:
            context_parts.append(f"op={context.operation}")
        if context.principal:
            context_parts.append(f"principal={context.principal}")
        if context.document:
            context_parts.append(f"doc={context.document}")

        context_str = ""
        if context_parts:
            context_str = f" [{', '.join(context_parts)}]"

        output = f"{timestamp} {level} {message}{context_str}"

        if record.exc_info:
            output += "\n" + self.formatException(record.exc_info)

        return output


class KeywardLogger:
    """
    Wrapper around Python's logging.Logger with structured logging support.

    Keyword arguments passed to the log methods become extra fields on the
    JSON output.
    """

    def __init__(self, name: str = LOGGER_NAME):
        self._logger = logging.getLogger(name)
        self._configured = False

    def configure(
        self,
        level: Union[str, LogLevel] = LogLevel.INFO,
        format: Union[str, LogFormat] = LogFormat.CONSOLE,
        log_file: Optional[Path] = None,
        propagate: bool = False,
    ) -> None:
        """
        Configure the logger.

        Args:
            level: Minimum log level
            format: Output format (console, json, pretty)
            log_file: Optional file to write JSON logs to
            propagate: Whether to propagate to parent loggers
        """
        if isinstance(level, str):
            level = LogLevel[level.upper()]
        self._logger.setLevel(level.value)
        self._logger.propagate = propagate

        self._logger.handlers.clear()

        if isinstance(format, str):
            format = LogFormat(format.lower())

        if format == LogFormat.JSON:
            formatter = StructuredFormatter(pretty=False)
        elif format == LogFormat.PRETTY_JSON:
            formatter = StructuredFormatter(pretty=True)
        else:
            formatter = ConsoleFormatter()

        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setFormatter(formatter)
        self._logger.addHandler(console_handler)

        if log_file:
            file_handler = logging.FileHandler(log_file)
            file_handler.setFormatter(StructuredFormatter(pretty=False))
            self._logger.addHandler(file_handler)

        self._configured = True

    @property
    def is_configured(self) -> bool:
        return self._configured

    def _ensure_configured(self) -> None:
        """Ensure logger is configured with defaults from the environment."""
        if not self._configured:
            level = os.environ.get(LOG_LEVEL_ENV, "INFO")
            format_str = os.environ.get(LOG_FORMAT_ENV, "console")
            log_file = os.environ.get(LOG_FILE_ENV)

            self.configure(
                level=level,
                format=format_str,
                log_file=Path(log_file) if log_file else None,
            )

    def _log(
        self,
        level: int,
        msg: str,
        *args,
        exc_info: bool = False,
        **kwargs,
    ) -> None:
        self._ensure_configured()
        extra = {"extra_fields": kwargs} if kwargs else {}
        self._logger.log(level, msg, *args, exc_info=exc_info, extra=extra)

    def debug(self, msg: str, *args, **kwargs) -> None:
        self._log(logging.DEBUG, msg, *args, **kwargs)

    def info(self, msg: str, *args, **kwargs) -> None:
        self._log(logging.INFO, msg, *args, **kwargs)

    def warning(self, msg: str, *args, **kwargs) -> None:
        self._log(logging.WARNING, msg, *args, **kwargs)

    def error(self, msg: str, *args, exc_info: bool = False, **kwargs) -> None:
        self._log(logging.ERROR, msg, *args, exc_info=exc_info, **kwargs)

    def critical(self, msg: str, *args, exc_info: bool = False, **kwargs) -> None:
        self._log(logging.CRITICAL, msg, *args, exc_info=exc_info, **kwargs)

    def exception(self, msg: str, *args, **kwargs) -> None:
        """Log at ERROR level with exception info."""
        self._log(logging.ERROR, msg, *args, exc_info=True, **kwargs)

    @contextmanager
    def timed(self, operation: str, level: int = logging.DEBUG):
        """
        Context manager for timing operations.

        Usage:
            with logger.timed("reconcile"):
                report = reconciler.reconcile(registry)
        """
        start = time.perf_counter()
        self._log(level, f"Starting: {operation}")
        try:
            yield
        finally:
            elapsed = time.perf_counter() - start
            self._log(level, f"Completed: {operation}", duration_ms=round(elapsed * 1000, 2))


_logger: Optional[KeywardLogger] = None


def get_logger(name: str = LOGGER_NAME) -> KeywardLogger:
    """
    Get the Keyward logger.

    Returns the global logger instance, creating it if necessary.
    """
    global _logger
    if _logger is None:
        _logger = KeywardLogger(name)
    return _logger


def configure_logging(
    level: Union[str, LogLevel] = LogLevel.INFO,
    format: Union[str, LogFormat] = LogFormat.CONSOLE,
    log_file: Optional[Path] = None,
) -> KeywardLogger:
    """
    Configure the global Keyward logger.

    Example:
        from keyward.logging import configure_logging, LogFormat

        configure_logging(level="DEBUG", format=LogFormat.JSON)
    """
    logger = get_logger()
    logger.configure(level=level, format=format, log_file=log_file)
    return logger


__all__ = [
    "LogFormat",
    "LogLevel",
    "LogContext",
    "KeywardLogger",
    "get_logger",
    "configure_logging",
    "log_context",
    "get_current_log_context",
    "set_current_log_context",
]
