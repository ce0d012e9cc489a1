"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMBridge, licensed under the MIT License.
See LICENSE file for details.
"""

"""
Holds a migration config together with its credentials and produces the
effective config, with credential placeholders filled in.
"""

from typing import Any

from tmbridge.core.logging import get_logger
from tmbridge.errors import ConfigurationError
from tmbridge.models import MigrationConfig, validate_config
from tmbridge.url_template import UrlTemplateEngine

logger = get_logger("tmbridge.config_manager")

PATH_FIELDS = ("path", "bulk_path", "single_path")


class ConfigurationManager:
    """
    Owns the raw config document and derives the effective one.

    Credential substitution is non-strict: placeholders that name entities
    (``{projects.id}``) survive for the extractor and loader to fill.

    Args:
        config: The raw document or a validated model
        credentials: Flat credential map
        base_url: Host prepended to ``base_path``, overriding the document's
    """

    def __init__(
        self,
        config: dict[str, Any] | MigrationConfig,
        credentials: dict[str, Any] | None = None,
        base_url: str | None = None,
    ):
        self._raw = validate_config(config)
        if base_url is not None:
            self._raw = self._raw.model_copy(update={"base_url": base_url})
        self._credentials: dict[str, Any] = dict(credentials or {})
        self._engine = UrlTemplateEngine(strict=False)
        self._config = self._raw
        self.validate_configuration()
        self.apply_substitutions()

    @property
    def config(self) -> MigrationConfig:
        """The effective config."""
        return self._config

    @property
    def raw_config(self) -> MigrationConfig:
        return self._raw

    @property
    def credentials(self) -> dict[str, Any]:
        return dict(self._credentials)

    @property
    def integration_name(self) -> str:
        return self._raw.name

    def validate_configuration(self) -> None:
        """
        Check the parts of the document the engine cannot run without.

        Raises:
            ConfigurationError: If neither source nor target is configured
        """
        if not self._raw.source and not self._raw.target:
            raise ConfigurationError(
                f"Config '{self._raw.name}' defines neither source nor target entities",
                {"integration": self._raw.name},
            )
        if self._raw.auth is not None and self._raw.auth.type is None:
            raise ConfigurationError(
                "Authentication config must name a type", {"integration": self._raw.name}
            )

    def _fill(self, value: str | None) -> str | None:
        if not value:
            return value
        return self._engine.substitute(value, self._credentials, strict=False, by_field=False)

    def apply_substitutions(self) -> MigrationConfig:
        """
        Rebuild the effective config from the raw one and the credentials.

        Returns:
            The effective config
        """
        config = self._raw.model_copy(deep=True)
        config.base_url = self._fill(config.base_url) or ""
        config.base_path = self._fill(config.base_path) or ""
        if config.multi_target is not None:
            config.multi_target.path = self._fill(config.multi_target.path)

        for direction in ("source", "target"):
            for entity in config.entities(direction).values():
                for operation in (
                    entity.endpoints.index,
                    entity.endpoints.get,
                    entity.endpoints.create,
                    entity.endpoints.update,
                ):
                    if operation is None:
                        continue
                    for name in PATH_FIELDS:
                        if hasattr(operation, name):
                            setattr(operation, name, self._fill(getattr(operation, name)))

        self._config = config
        logger.debug(f"Applied {len(self._credentials)} credential(s) to '{config.name}'")
        return config

    def update_credentials(self, credentials: dict[str, Any]) -> MigrationConfig:
        """Merge new credentials and rebuild the effective config."""
        self._credentials = {**self._credentials, **credentials}
        return self.apply_substitutions()
