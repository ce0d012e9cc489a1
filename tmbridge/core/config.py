"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMBridge, licensed under the MIT License.
See LICENSE file for details.
"""

"""
Runtime settings for TMBridge.

Settings that are not part of a migration config document: logging, the
network executor's limits, and credential lookup. Values come from ``TMB_``
prefixed environment variables with validated defaults.
"""

import json
import logging
import os
import re
from pathlib import Path
from typing import Any, ClassVar

from pydantic import BaseModel, Field, field_validator

from tmbridge.errors import ConfigurationError

logger = logging.getLogger(__name__)


def _env_bool(value: str | bool) -> bool:
    if isinstance(value, bool):
        return value
    return value.strip().lower() in ("1", "true", "yes", "on")


class BaseConfig(BaseModel):
    """Base configuration class with common functionality."""

    ENV_PREFIX: ClassVar[str] = "TMB_"

    @classmethod
    def from_env(cls, **overrides: Any) -> "BaseConfig":
        """
        Create a configuration instance from environment variables.

        Args:
            **overrides: Values that take precedence over the environment

        Returns:
            An instance of the configuration class
        """
        raise NotImplementedError("Subclasses must implement from_env method")

    @classmethod
    def get_env_var(cls, key: str, default: Any = None) -> Any:
        """
        Get an environment variable with the class prefix.

        Args:
            key: Key name without prefix
            default: Default value if the variable is not set

        Returns:
            The environment variable value or default
        """
        return os.environ.get(f"{cls.ENV_PREFIX}{key.upper()}", default)


class LoggingConfig(BaseConfig):
    """Configuration for logging settings."""

    level: str = Field(default="INFO", description="DEBUG, INFO, WARNING, ERROR or CRITICAL")
    use_rich: bool = Field(default=True, description="Render console logs with rich")
    log_file: str | None = Field(default=None, description="Optional log file path")
    json_format: bool = Field(default=False, description="Emit JSON lines")
    include_correlation_id: bool = Field(
        default=True, description="Append correlation IDs to console lines"
    )

    @field_validator("level")
    @classmethod
    def validate_level(cls, value: str) -> str:
        """Validate that the log level is valid."""
        value = value.upper()
        if value not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            logger.warning(f"Invalid log level '{value}', defaulting to INFO")
            return "INFO"
        return value

    @classmethod
    def from_env(cls, **overrides: Any) -> "LoggingConfig":
        """Create a logging configuration from environment variables."""
        config = {
            "level": cls.get_env_var("LOG_LEVEL", "INFO"),
            "use_rich": _env_bool(cls.get_env_var("LOG_USE_RICH", "true")),
            "log_file": cls.get_env_var("LOG_FILE", None),
            "json_format": _env_bool(cls.get_env_var("LOG_JSON", "false")),
            "include_correlation_id": _env_bool(cls.get_env_var("LOG_CORRELATION_ID", "true")),
        }
        config.update(overrides)
        return cls(**config)

    def get_log_level_int(self) -> int:
        """Get the numeric logging level."""
        return getattr(logging, self.level)

    def configure_logging(self, debug: bool = False) -> None:
        """
        Apply these settings to the ``tmbridge`` logger hierarchy.

        Args:
            debug: Force DEBUG level
        """
        from tmbridge.core.logging import configure_logging as configure_structured_logging

        configure_structured_logging(
            level=self.get_log_level_int(),
            log_file=self.log_file,
            json_format=self.json_format,
            include_timestamp=True,
            use_rich=self.use_rich,
            debug=debug,
            include_correlation_id=self.include_correlation_id,
        )


class ExecutorConfig(BaseConfig):
    """Limits for the throttled network executor, shared by both directions."""

    concurrency: int = Field(default=5, gt=0, description="Maximum in-flight requests")
    requests_per_second: int = Field(
        default=2, gt=0, description="Rate cap used when the config document sets none"
    )
    retry_attempts: int = Field(default=3, ge=0, description="Retries after the first attempt")
    retry_delay: float = Field(default=1.0, ge=0, description="Linear backoff step in seconds")
    timeout: float = Field(default=30.0, gt=0, description="Per-request timeout in seconds")
    batch_size: int = Field(default=100, gt=0, description="Items dispatched per batch")
    inter_batch_delay: float = Field(default=0.0, ge=0, description="Pause between batches")

    @classmethod
    def from_env(cls, **overrides: Any) -> "ExecutorConfig":
        """Create an executor configuration from environment variables."""
        config = {
            "concurrency": int(cls.get_env_var("CONCURRENCY", "5")),
            "requests_per_second": int(cls.get_env_var("REQUESTS_PER_SECOND", "2")),
            "retry_attempts": int(cls.get_env_var("RETRY_ATTEMPTS", "3")),
            "retry_delay": float(cls.get_env_var("RETRY_DELAY", "1.0")),
            "timeout": float(cls.get_env_var("TIMEOUT", "30.0")),
            "batch_size": int(cls.get_env_var("BATCH_SIZE", "100")),
            "inter_batch_delay": float(cls.get_env_var("INTER_BATCH_DELAY", "0.0")),
        }
        config.update(overrides)
        return cls(**config)


class AppConfig(BaseConfig):
    """Application configuration aggregating the other settings."""

    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    executor: ExecutorConfig = Field(default_factory=ExecutorConfig)
    debug: bool = Field(default=False, description="Debug mode flag")
    strict: bool = Field(default=False, description="Raise setup errors instead of degrading")

    @classmethod
    def from_env(cls, **overrides: Any) -> "AppConfig":
        """Create an application configuration from environment variables."""
        config: dict[str, Any] = {
            "logging": LoggingConfig.from_env(),
            "executor": ExecutorConfig.from_env(),
            "debug": _env_bool(cls.get_env_var("DEBUG", "false")),
            "strict": _env_bool(cls.get_env_var("STRICT", "false")),
        }

        nested = {"logging": LoggingConfig, "executor": ExecutorConfig}
        for key, value in overrides.items():
            if key in nested and isinstance(value, dict):
                config[key] = nested[key](**value)
            else:
                config[key] = value

        return cls(**config)

    def configure_logging(self) -> None:
        """Configure logging based on the settings."""
        self.logging.configure_logging(debug=self.debug)


_app_config: AppConfig | None = None


def get_app_config() -> AppConfig:
    """
    Get the global application configuration, building it from the environment
    on first use.
    """
    global _app_config
    if _app_config is None:
        _app_config = AppConfig.from_env()
    return _app_config


def init_app_config(config: AppConfig | None = None, **kwargs: Any) -> AppConfig:
    """
    Initialize the global application configuration.

    Args:
        config: An existing AppConfig instance
        **kwargs: Overrides for building a new AppConfig from the environment

    Returns:
        The application configuration instance
    """
    global _app_config
    _app_config = config if config is not None else AppConfig.from_env(**kwargs)
    return _app_config


def credentials_env_var(name: str, direction: str) -> str:
    """
    Name of the environment variable holding credentials for a config.

    ``testrail``/``target`` becomes ``TESTRAIL_TARGET_CREDENTIALS``.
    """
    slug = re.sub(r"[^A-Za-z0-9]+", "_", name).strip("_").upper()
    return f"{slug}_{direction.upper()}_CREDENTIALS"


def load_credentials(name: str, direction: str, path: str | Path | None = None) -> dict[str, Any]:
    """
    Load the flat credential map for one side of a migration.

    A file path wins over the environment. Both hold a JSON object.

    Args:
        name: The migration config name
        direction: ``source`` or ``target``
        path: Optional path of a JSON credentials file

    Returns:
        The credentials, or an empty dict when none are configured

    Raises:
        ConfigurationError: If the file or variable does not hold a JSON object
    """
    if direction not in ("source", "target"):
        raise ConfigurationError(f"Unknown credential direction: {direction}")

    if path is not None:
        origin = str(path)
        try:
            raw = Path(path).read_text(encoding="utf-8")
        except OSError as e:
            raise ConfigurationError(
                f"Could not read credentials file {origin}: {e}", {"path": origin}
            ) from e
    else:
        origin = credentials_env_var(name, direction)
        raw = os.environ.get(origin)
        if raw is None:
            logger.debug(f"No credentials found in {origin}")
            return {}

    try:
        credentials = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Credentials in {origin} are not valid JSON: {e}") from e

    if not isinstance(credentials, dict):
        raise ConfigurationError(f"Credentials in {origin} must be a JSON object")

    logger.debug(f"Loaded {len(credentials)} {direction} credential(s) from {origin}")
    return credentials
