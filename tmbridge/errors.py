"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMBridge, licensed under the MIT License.
See LICENSE file for details.
"""

"""
Typed errors and the run-scoped error log.

Every failure inside a migration run is converted to an ``ETLError`` carrying
its type, a context dict (endpoint, operation, entity, status code, ...) and
whether retrying could help. ``ErrorManager`` keeps a bounded, append-only log
of those errors; its ``has_critical_errors`` flag decides a run's success.
"""

import json
from collections import Counter, deque
from collections.abc import Callable
from datetime import datetime
from enum import Enum
from typing import Any

from tmbridge.core.logging import get_logger

logger = get_logger("tmbridge.errors")

DEFAULT_MAX_ERRORS = 100


class ETLErrorType(str, Enum):
    """Category of a migration failure."""

    CONFIGURATION = "configuration"
    AUTHENTICATION = "authentication"
    NETWORK = "network"
    VALIDATION = "validation"
    TRANSFORMATION = "transformation"
    DATA = "data"
    TIMEOUT = "timeout"
    RATE_LIMIT = "rate_limit"
    UNKNOWN = "unknown"


RETRYABLE_TYPES = frozenset({ETLErrorType.NETWORK, ETLErrorType.TIMEOUT, ETLErrorType.RATE_LIMIT})


class ETLError(Exception):
    """
    Base class for all migration errors.

    Attributes:
        message: Human readable description
        error_type: The error category
        context: Diagnostic details such as endpoint, operation or status code
        is_retryable: Whether retrying the failed operation could succeed
        timestamp: When the error was created
    """

    error_type: ETLErrorType = ETLErrorType.UNKNOWN

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        is_retryable: bool | None = None,
        error_type: ETLErrorType | None = None,
    ):
        super().__init__(message)
        self.message = message
        if error_type is not None:
            self.error_type = error_type
        self.context: dict[str, Any] = dict(context or {})
        self.is_retryable = (
            self.error_type in RETRYABLE_TYPES if is_retryable is None else is_retryable
        )
        self.timestamp = datetime.now()

    @property
    def status_code(self) -> int | None:
        return self.context.get("status_code")

    @property
    def formatted_message(self) -> str:
        """Message prefixed with the type and followed by its context."""
        text = f"[{self.error_type.value.upper()}] {self.message}"
        if self.context:
            details = ", ".join(f"{k}={v}" for k, v in self.context.items())
            text = f"{text} ({details})"
        return text

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.error_type.value,
            "name": type(self).__name__,
            "message": self.message,
            "context": self.context,
            "is_retryable": self.is_retryable,
            "timestamp": self.timestamp.isoformat(),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r}, type={self.error_type.value})"


class ConfigurationError(ETLError):
    """The migration config or its substitutions are unusable."""

    error_type = ETLErrorType.CONFIGURATION


class AuthenticationError(ETLError):
    """Credentials are missing or were rejected."""

    error_type = ETLErrorType.AUTHENTICATION


class NetworkError(ETLError):
    """Transport failure or an unexpected HTTP status."""

    error_type = ETLErrorType.NETWORK

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        is_retryable: bool | None = None,
        status_code: int | None = None,
    ):
        context = dict(context or {})
        if status_code is not None:
            context["status_code"] = status_code
        super().__init__(message, context, is_retryable)


class ValidationError(ETLError):
    """A record or request failed validation."""

    error_type = ETLErrorType.VALIDATION


class TransformationError(ETLError):
    """A record could not be transformed."""

    error_type = ETLErrorType.TRANSFORMATION


class DataError(ETLError):
    """Data is missing or malformed."""

    error_type = ETLErrorType.DATA


class RequestTimeoutError(ETLError):
    """A request exceeded its configured timeout."""

    error_type = ETLErrorType.TIMEOUT


class RateLimitError(ETLError):
    """The remote system refused a request because of rate limiting."""

    error_type = ETLErrorType.RATE_LIMIT

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        is_retryable: bool | None = None,
        retry_after: float | None = None,
    ):
        context = dict(context or {})
        if retry_after is not None:
            context["retry_after"] = retry_after
        super().__init__(message, context, is_retryable)

    @property
    def retry_after(self) -> float | None:
        return self.context.get("retry_after")


ERROR_CLASSES: dict[ETLErrorType, type[ETLError]] = {
    ETLErrorType.CONFIGURATION: ConfigurationError,
    ETLErrorType.AUTHENTICATION: AuthenticationError,
    ETLErrorType.NETWORK: NetworkError,
    ETLErrorType.VALIDATION: ValidationError,
    ETLErrorType.TRANSFORMATION: TransformationError,
    ETLErrorType.DATA: DataError,
    ETLErrorType.TIMEOUT: RequestTimeoutError,
    ETLErrorType.RATE_LIMIT: RateLimitError,
    ETLErrorType.UNKNOWN: ETLError,
}

FATAL_ERRORS = (ConfigurationError, AuthenticationError)


class ErrorManager:
    """
    Bounded, append-only log of the errors raised during one run.

    When more than ``max_errors`` errors are added the oldest are evicted.
    """

    def __init__(
        self,
        max_errors: int = DEFAULT_MAX_ERRORS,
        on_error: Callable[[ETLError], None] | None = None,
    ):
        if max_errors <= 0:
            raise ValueError("max_errors must be positive")
        self.max_errors = max_errors
        self.on_error = on_error
        self._errors: deque[ETLError] = deque(maxlen=max_errors)
        self.total_added = 0

    @staticmethod
    def classify(
        error: BaseException,
        default_type: ETLErrorType = ETLErrorType.UNKNOWN,
        context: dict[str, Any] | None = None,
    ) -> ETLError:
        """
        Convert any exception into an ``ETLError``.

        Existing ETLErrors are returned as-is with ``context`` merged in
        (keys already on the error win).

        Args:
            error: The exception to convert
            default_type: Type used when nothing more specific applies
            context: Context to attach

        Returns:
            The typed error
        """
        context = dict(context or {})
        if isinstance(error, ETLError):
            for key, value in context.items():
                error.context.setdefault(key, value)
            return error

        context.setdefault("original_error", type(error).__name__)
        if isinstance(error, TimeoutError):
            return RequestTimeoutError(str(error) or "Operation timed out", context)
        if isinstance(error, ConnectionError):
            return NetworkError(str(error) or "Connection failed", context)

        error_class = ERROR_CLASSES[default_type]
        return error_class(str(error) or type(error).__name__, context)

    def add_error(self, error: ETLError) -> ETLError:
        """
        Record an error, evicting the oldest one when the log is full.

        Args:
            error: The error to record

        Returns:
            The recorded error
        """
        self._errors.append(error)
        self.total_added += 1
        logger.debug(f"Recorded error {error.formatted_message}")

        if self.on_error is not None:
            self.on_error(error)
        return error

    def record(
        self,
        error: BaseException,
        default_type: ETLErrorType = ETLErrorType.UNKNOWN,
        context: dict[str, Any] | None = None,
    ) -> ETLError:
        """Classify an exception and record it."""
        return self.add_error(self.classify(error, default_type, context))

    def get_errors(self) -> list[ETLError]:
        return list(self._errors)

    def get_errors_by_type(self, error_type: ETLErrorType) -> list[ETLError]:
        return [e for e in self._errors if e.error_type == error_type]

    def get_retryable_errors(self) -> list[ETLError]:
        return [e for e in self._errors if e.is_retryable]

    def get_non_retryable_errors(self) -> list[ETLError]:
        return [e for e in self._errors if not e.is_retryable]

    def has_errors(self) -> bool:
        return len(self._errors) > 0

    def has_critical_errors(self) -> bool:
        """True iff any retained error is non-retryable."""
        return any(not e.is_retryable for e in self._errors)

    def get_error_summary(self) -> dict[str, Any]:
        """
        Summarize the retained errors.

        Returns:
            Totals, counts by type, retryable and critical counts, and the
            first and last retained error
        """
        errors = list(self._errors)
        by_type = Counter(e.error_type.value for e in errors)
        return {
            "total_errors": len(errors),
            "total_recorded": self.total_added,
            "evicted": self.total_added - len(errors),
            "errors_by_type": dict(by_type),
            "retryable_errors": sum(1 for e in errors if e.is_retryable),
            "critical_errors": sum(1 for e in errors if not e.is_retryable),
            "first_error": errors[0].to_dict() if errors else None,
            "last_error": errors[-1].to_dict() if errors else None,
        }

    def to_list(self) -> list[dict[str, Any]]:
        return [e.to_dict() for e in self._errors]

    def to_json(self) -> str:
        return json.dumps(self.to_list(), default=str)

    def clear(self) -> None:
        self._errors.clear()
        self.total_added = 0

    def __len__(self) -> int:
        return len(self._errors)
