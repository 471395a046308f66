"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMIMPORT, licensed under the MIT License.
See LICENSE file for details.
"""

"""Logging infrastructure with correlation ids and secret redaction.

Every import job runs inside a correlation id equal to its job id, so a log
file that interleaves several jobs can still be split per job. Messages are
redacted before they reach a handler because user rows (passwords supplied in
the mapping configuration, API tokens in issue target settings) pass through
debug logging.
"""

import json
import logging
import os
import sys
import threading
import time
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from re import Pattern
from typing import Any
import re

from rich.logging import RichHandler

# Thread-local storage for context data
_context_local = threading.local()


class CorrelationIdManager:
    """
    Manages correlation IDs using thread-local storage.
    """

    def get_correlation_id(self) -> str:
        """
        Get the current correlation ID or generate a new one.
        """
        if not getattr(_context_local, "correlation_id", None):
            _context_local.correlation_id = f"tmimport-{uuid.uuid4()}"
        return _context_local.correlation_id

    def has_correlation_id(self) -> bool:
        return bool(getattr(_context_local, "correlation_id", None))

    def set_correlation_id(self, correlation_id: str) -> None:
        _context_local.correlation_id = correlation_id

    def clear_correlation_id(self) -> None:
        if hasattr(_context_local, "correlation_id"):
            delattr(_context_local, "correlation_id")


# Global correlation ID manager instance
correlation_manager = CorrelationIdManager()


class LogRedactor:
    """
    Redacts credentials from log messages.
    """

    def __init__(self) -> None:
        self.key_value_patterns: list[Pattern] = [
            re.compile(r'(api[_-]?key|token)["\']?\s*[:=]\s*["\']?([^"\'&\s,}]{8,})', re.IGNORECASE),
            re.compile(r'(password|passwd|secret)["\']?\s*[:=]\s*["\']?([^"\'&\s,}]+)', re.IGNORECASE),
            re.compile(r'(Authorization|Bearer)["\']?\s*[:=]\s*["\']?([^"\'&\s,}]{8,})', re.IGNORECASE),
        ]

    def redact(self, message: str) -> str:
        """
        Redact sensitive values from the message, keeping the key names.
        """
        if not isinstance(message, str):
            return message

        for pattern in self.key_value_patterns:
            message = pattern.sub(r"\1: [REDACTED]", message)
        return message


# Global redactor instance
redactor = LogRedactor()


class StructuredLogger(logging.Logger):
    """
    Logger that accepts a ``context`` keyword and stamps the correlation id.
    """

    def _log(
        self,
        level: int,
        msg: Any,
        args: tuple,
        exc_info: bool | tuple | None = None,
        extra: dict[str, Any] | None = None,
        stack_info: bool = False,
        stacklevel: int = 1,
        **kwargs: Any,
    ) -> None:
        """
        Log a message with the specified level and optional context.

        Args:
        ----
            level: The log level (DEBUG, INFO, etc.)
            msg: The message to log
            args: Arguments for string formatting
            exc_info: Exception info for traceback
            extra: Extra attributes to add to the LogRecord
            stack_info: Whether to include stack info
            stacklevel: Stack frame depth used for caller attribution
            **kwargs: Additional keyword arguments, which may include 'context'

        """
        context = kwargs.pop("context", None)

        extra = dict(extra or {})
        if context:
            # context_data avoids colliding with LogRecord attributes
            extra["context_data"] = context

        extra["correlation_id"] = correlation_manager.get_correlation_id()

        if isinstance(msg, str):
            msg = redactor.redact(msg)

        super()._log(level, msg, args, exc_info, extra, stack_info, stacklevel + 1)


# Loggers created after this point accept context= and carry correlation ids
logging.setLoggerClass(StructuredLogger)


class JSONFormatter(logging.Formatter):
    """
    Formatter that outputs log records as JSON.
    """

    def format_record(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now().isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": redactor.redact(record.getMessage()),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if hasattr(record, "correlation_id"):
            log_data["correlation_id"] = record.correlation_id

        if getattr(record, "context_data", None):
            log_data["context"] = record.context_data

        if record.exc_info:
            log_data["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "traceback": self.formatException(record.exc_info),
            }

        return json.dumps(log_data, default=str)

    def format(self, record: logging.LogRecord) -> str:
        """Forward logging format calls to format_record."""
        return self.format_record(record)


class RichContextFormatter(logging.Formatter):
    """
    Formatter for Rich console output with context data.
    """

    def format_record(self, record: logging.LogRecord) -> str:
        message = super().format(record)

        if getattr(record, "context_data", None):
            context_str = " ".join(f"[{k}={v}]" for k, v in record.context_data.items())
            if context_str:
                message = f"{message} {context_str}"

        if hasattr(record, "correlation_id"):
            message = f"{message} [correlation_id={record.correlation_id}]"

        return message

    def format(self, record: logging.LogRecord) -> str:
        """Forward logging format calls to format_record."""
        return self.format_record(record)


@contextmanager
def log_operation(
    logger: logging.Logger,
    operation_name: str,
    level: int = logging.INFO,
    context: dict[str, Any] | None = None,
) -> Iterator[None]:
    """
    Context manager for logging operations with timing and context tracking.

    Args:
    ----
        logger: The logger instance to use
        operation_name: Name of the operation being performed
        level: Log level to use
        context: Additional context data to include in the logs

    Raises:
    ------
        Exception: Re-raises any exception that occurs within the context

    """
    start_time = time.time()
    context = dict(context or {})
    context["operation_id"] = str(uuid.uuid4())[:8]

    logger.log(level, f"Starting {operation_name}", extra={"context_data": context})

    try:
        yield
    except Exception as e:
        duration = time.time() - start_time
        error_context = {
            **context,
            "error_type": type(e).__name__,
            "error": str(e),
            "duration": f"{duration:.2f}s",
        }
        logger.log(
            logging.ERROR,
            f"Failed {operation_name} after {duration:.2f}s",
            extra={"context_data": error_context},
        )
        raise
    duration = time.time() - start_time
    logger.log(level, f"Completed {operation_name} in {duration:.2f}s", extra={"context_data": context})


@contextmanager
def correlation_id(correlation_id: str | None = None) -> Iterator[str]:
    """
    Context manager for setting a correlation ID for the current context.

    Args:
    ----
        correlation_id: ID to use, or None to generate a new one

    Yields:
    ------
        str: The current correlation ID (either provided or generated)

    """
    previous_id = (
        correlation_manager.get_correlation_id()
        if correlation_manager.has_correlation_id()
        else None
    )

    correlation_manager.set_correlation_id(correlation_id or f"tmimport-{uuid.uuid4()}")

    try:
        yield correlation_manager.get_correlation_id()
    finally:
        if previous_id:
            correlation_manager.set_correlation_id(previous_id)
        else:
            correlation_manager.clear_correlation_id()


def _plain_formatter(include_timestamp: bool) -> logging.Formatter:
    format_str = (
        "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
        if include_timestamp
        else "[%(levelname)s] %(name)s: %(message)s"
    )
    return logging.Formatter(format_str)


def configure_logging(
    level: int | str = logging.INFO,
    log_file: str | None = None,
    json_format: bool = False,
    include_timestamp: bool = True,
    use_rich: bool = True,
    debug: bool = False,
) -> None:
    """
    Configure application logging.

    Args:
    ----
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL or integer)
        log_file: Optional path to log file
        json_format: Whether to use JSON format for logs
        include_timestamp: Whether to include timestamps in logs
        use_rich: Whether to use Rich for console output
        debug: Whether to force debug mode

    """
    if isinstance(level, str):
        level = getattr(logging, level.upper())

    if debug:
        level = logging.DEBUG

    handlers: list[logging.Handler] = []

    if use_rich and not json_format:
        rich_handler = RichHandler(rich_tracebacks=True, markup=False, show_time=include_timestamp)
        rich_handler.setFormatter(RichContextFormatter("%(message)s"))
        handlers.append(rich_handler)
    else:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setFormatter(
            JSONFormatter() if json_format else _plain_formatter(include_timestamp)
        )
        handlers.append(console_handler)

    if log_file:
        os.makedirs(os.path.dirname(os.path.abspath(log_file)), exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(
            JSONFormatter() if json_format else _plain_formatter(include_timestamp)
        )
        handlers.append(file_handler)

    # Root logger should be at least WARNING
    root = logging.getLogger()
    root.setLevel(max(level, logging.WARNING))

    logger = logging.getLogger("tmimport")
    logger.setLevel(level)
    logger.propagate = False

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    for handler in handlers:
        logger.addHandler(handler)

    logger.debug(f"Logging configured with level {logging.getLevelName(level)}")


def get_logger(name: str) -> StructuredLogger:
    """
    Get a logger with the standard configuration.

    Args:
    ----
        name: Name of the logger, typically __name__

    Returns:
    -------
        A structured logger instance

    """
    return logging.getLogger(name)
