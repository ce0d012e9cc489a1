"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMBridge, licensed under the MIT License.
See LICENSE file for details.
"""

"""Logging infrastructure for migration runs.

Structured logging with per-task correlation IDs, credential redaction and
timed operation blocks. Correlation IDs live in a ``ContextVar`` so that every
asyncio task spawned inside a pipeline run inherits the run's ID.
"""

import json
import logging
import os
import re
import sys
import time
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime
from re import Pattern
from typing import Any

from rich.logging import RichHandler

_correlation_id: ContextVar[str | None] = ContextVar("tmbridge_correlation_id", default=None)

DEFAULT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DEFAULT_FORMAT_NO_TIME = "[%(levelname)s] %(name)s: %(message)s"


def new_correlation_id() -> str:
    """Generate a fresh correlation ID."""
    return f"tmb-{uuid.uuid4()}"


def get_correlation_id() -> str:
    """
    Get the correlation ID of the current context, creating one if unset.
    """
    current = _correlation_id.get()
    if not current:
        current = new_correlation_id()
        _correlation_id.set(current)
    return current


class LogRedactor:
    """
    Redacts credentials and other sensitive values from log messages.
    """

    def __init__(self) -> None:
        self.patterns: dict[str, Pattern] = {
            "api_key": re.compile(
                r'(api[_-]?key|token|base64Credentials)["\']?\s*[:=]\s*["\']?([^"\'&\s,}]{4,})',
                re.IGNORECASE,
            ),
            "password": re.compile(
                r'(password|passwd|secret)["\']?\s*[:=]\s*["\']?([^"\'&\s,}]+)', re.IGNORECASE
            ),
            "authorization": re.compile(
                r'(Authorization)["\']?\s*[:=]\s*["\']?((?:Bearer|Basic)\s+)?([^"\'&\s,}]{4,})',
                re.IGNORECASE,
            ),
            "bearer_token": re.compile(r"\b(Bearer|Basic)\s+([A-Za-z0-9._~+/=-]{8,})"),
        }

    def redact(self, message: str) -> str:
        """
        Redact sensitive values, keeping the key that introduced them.

        Args:
            message: The log message

        Returns:
            The message with secrets replaced by ``[REDACTED]``
        """
        if not isinstance(message, str):
            return message

        message = self.patterns["authorization"].sub(r"\1: [REDACTED]", message)
        message = self.patterns["bearer_token"].sub(r"\1 [REDACTED]", message)
        message = self.patterns["api_key"].sub(r"\1: [REDACTED]", message)
        message = self.patterns["password"].sub(r"\1: [REDACTED]", message)
        return message


redactor = LogRedactor()


class StructuredLogger(logging.Logger):
    """
    Logger that accepts a ``context`` keyword carrying structured data.

    Context is stored on the record as ``context_data`` and the current
    correlation ID as ``correlation_id``; both are picked up by the formatters
    below.
    """

    def _log(
        self,
        level: int,
        msg: Any,
        args: tuple,
        exc_info: Any = None,
        extra: dict[str, Any] | None = None,
        stack_info: bool = False,
        stacklevel: int = 1,
        context: dict[str, Any] | None = None,
    ) -> None:
        extra = dict(extra) if extra else {}
        if context:
            extra["context_data"] = context
        extra["correlation_id"] = get_correlation_id()

        if isinstance(msg, str):
            msg = redactor.redact(msg)

        super()._log(level, msg, args, exc_info, extra, stack_info, stacklevel + 1)


class JSONFormatter(logging.Formatter):
    """
    Formatter that renders each record as a single JSON line.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now().isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
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


class RichContextFormatter(logging.Formatter):
    """
    Formatter for Rich console output that appends context and correlation ID.
    """

    def __init__(self, fmt: str | None = None, include_correlation_id: bool = True) -> None:
        super().__init__(fmt)
        self.include_correlation_id = include_correlation_id

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)

        context = getattr(record, "context_data", None)
        if context:
            context_str = " ".join(f"[{k}={v}]" for k, v in context.items())
            message = f"{message} {context_str}"

        if self.include_correlation_id and hasattr(record, "correlation_id"):
            message = f"{message} [correlation_id={record.correlation_id}]"

        return message


@contextmanager
def log_operation(
    logger: logging.Logger,
    operation_name: str,
    level: int = logging.INFO,
    context: dict[str, Any] | None = None,
) -> Iterator[dict[str, Any]]:
    """
    Log the start, completion and failure of a block with its duration.

    Args:
        logger: The logger to use
        operation_name: Human readable name of the block
        level: Level used for the start and completion messages
        context: Extra context to attach to each message

    Yields:
        The context dict, which the block may extend

    Raises:
        Exception: Re-raises whatever the block raised
    """
    start_time = time.time()
    context = dict(context or {})
    context["operation_id"] = str(uuid.uuid4())[:8]

    logger.log(level, f"Starting {operation_name}", context=context)

    try:
        yield context
    except Exception as e:
        duration = time.time() - start_time
        logger.error(
            f"Failed {operation_name} after {duration:.2f}s",
            context={**context, "error_type": type(e).__name__, "error": str(e)},
            exc_info=True,
        )
        raise

    duration = time.time() - start_time
    logger.log(level, f"Completed {operation_name} in {duration:.2f}s", context=context)


@contextmanager
def correlation_id(value: str | None = None) -> Iterator[str]:
    """
    Bind a correlation ID to the current context for the duration of a block.

    Args:
        value: ID to use, or None to generate a new one

    Yields:
        The bound correlation ID
    """
    token = _correlation_id.set(value or new_correlation_id())
    try:
        yield _correlation_id.get()
    finally:
        _correlation_id.reset(token)


def _plain_formatter(json_format: bool, include_timestamp: bool) -> logging.Formatter:
    if json_format:
        return JSONFormatter()
    return logging.Formatter(DEFAULT_FORMAT if include_timestamp else DEFAULT_FORMAT_NO_TIME)


def configure_logging(
    level: int | str = logging.INFO,
    log_file: str | None = None,
    json_format: bool = False,
    include_timestamp: bool = True,
    use_rich: bool = True,
    debug: bool = False,
    include_correlation_id: bool = True,
) -> None:
    """
    Configure the ``tmbridge`` logger hierarchy.

    Args:
        level: Log level name or number
        log_file: Optional path of a log file
        json_format: Emit JSON lines instead of text (ignored for the Rich console)
        include_timestamp: Include timestamps in text output
        use_rich: Use Rich for console output
        debug: Force DEBUG level
        include_correlation_id: Append correlation IDs to console lines
    """
    if isinstance(level, str):
        level = getattr(logging, level.upper())
    if debug:
        level = logging.DEBUG

    logging.setLoggerClass(StructuredLogger)

    handlers: list[logging.Handler] = []

    if use_rich and not json_format:
        console_handler: logging.Handler = RichHandler(
            rich_tracebacks=True, markup=False, show_time=include_timestamp
        )
        console_handler.setFormatter(
            RichContextFormatter("%(message)s", include_correlation_id=include_correlation_id)
        )
    else:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setFormatter(_plain_formatter(json_format, include_timestamp))
    handlers.append(console_handler)

    if log_file:
        os.makedirs(os.path.dirname(os.path.abspath(log_file)), exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(_plain_formatter(json_format, include_timestamp))
        handlers.append(file_handler)

    logger = logging.getLogger("tmbridge")
    logger.setLevel(level)
    logger.propagate = False

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    for handler in handlers:
        logger.addHandler(handler)

    logger.debug(f"Logging configured with level {logging.getLevelName(level)}")


def get_logger(name: str) -> StructuredLogger:
    """
    Get a structured logger.

    Loggers created before ``configure_logging`` ran are plain ``logging.Logger``
    instances, so this installs the structured class first.

    Args:
        name: Dotted logger name, e.g. ``tmbridge.extractor``

    Returns:
        A structured logger instance
    """
    if not issubclass(logging.getLoggerClass(), StructuredLogger):
        logging.setLoggerClass(StructuredLogger)
    return logging.getLogger(name)
