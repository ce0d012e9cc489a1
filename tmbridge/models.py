"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMBridge, licensed under the MIT License.
See LICENSE file for details.
"""

"""
Data models for migration config documents.

A config document describes one system (its base path, auth scheme, rate cap
and per-entity endpoints). Each endpoint operation is its own model so that the
extractor and loader can rely on the fields of that operation being present
once the document has been validated.
"""

import json
from enum import Enum
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from tmbridge.errors import ConfigurationError

FALLBACK_DATA_KEYS = ("data", "results", "items", "entries")


class LimitType(str, Enum):
    """How an index limit is measured."""

    COUNT = "count"
    MATCH = "match"


class Cutoff(str, Enum):
    """What happens to records beyond a reached limit."""

    HARD = "hard"  # Trim them
    SOFT = "soft"  # Keep the current page, stop paging


class AuthType(str, Enum):
    """Supported authentication schemes."""

    BEARER = "bearer"
    BASIC = "basic"
    APIKEY = "apikey"
    CUSTOM = "custom"


class AuthLocation(str, Enum):
    """Where authentication material is placed on a request."""

    HEADER = "header"
    QUERY = "query"
    BODY = "body"


class ConfigType(str, Enum):
    """Kind of system a config document describes."""

    API = "api"
    JUNIT = "junit"
    JSON = "json"


class LimitPolicy(BaseModel):
    """Stop extracting an entity after a number of records or a marker record."""

    type: LimitType
    value: int | str
    cutoff: Cutoff = Field(default=Cutoff.HARD, description="Unset means hard")

    @model_validator(mode="after")
    def validate_value(self) -> "LimitPolicy":
        """Counts must be positive integers and matches ``field:value`` pairs."""
        if self.type == LimitType.COUNT:
            try:
                count = int(self.value)
            except (TypeError, ValueError):
                raise ValueError(f"count limit value must be an integer, got {self.value!r}")
            if count <= 0:
                raise ValueError("count limit value must be positive")
            self.value = count
        else:
            if not isinstance(self.value, str) or len(self.value.split(":", 1)) != 2:
                raise ValueError(f"match limit value must look like 'field:value', got {self.value!r}")
        return self

    @property
    def match_field(self) -> str:
        return str(self.value).split(":", 1)[0]

    @property
    def match_value(self) -> str:
        return str(self.value).split(":", 1)[1]


class PagingConfig(BaseModel):
    """Where the next-page link is found."""

    location: Literal["response", "none"] = "none"
    link_key: str = "next"
    max_pages: int = Field(default=1000, gt=0)


class OperationConfig(BaseModel):
    """Fields shared by every endpoint operation."""

    model_config = ConfigDict(extra="ignore")

    path: str | None = None
    data_key: str | None = None
    include_source: bool = False


class IndexOperation(OperationConfig):
    """List every record of an entity, possibly once per parent record."""

    operation: Literal["index"] = "index"
    path: str
    limit: LimitPolicy | None = None
    paging: PagingConfig | None = None
    id_field: str = "id"


class GetOperation(OperationConfig):
    """Fetch specific records by id."""

    operation: Literal["get"] = "get"
    path: str


class CreateOperation(OperationConfig):
    """Create records, either in one bulk request or one request per record."""

    operation: Literal["create"] = "create"
    bulk_path: str | None = None
    single_path: str | None = None
    payload_key: str | None = None

    @model_validator(mode="after")
    def require_a_path(self) -> "CreateOperation":
        if not (self.bulk_path or self.single_path or self.path):
            raise ValueError("create needs one of bulk_path, single_path or path")
        return self


class UpdateOperation(OperationConfig):
    """Update records that already exist on the target."""

    operation: Literal["update"] = "update"
    path: str
    update_key: str
    required_keys: list[str] = Field(default_factory=list)


class EndpointSet(BaseModel):
    """The operations an entity supports."""

    model_config = ConfigDict(extra="ignore")

    index: IndexOperation | None = None
    get: GetOperation | None = None
    create: CreateOperation | None = None
    update: UpdateOperation | None = None

    def path_for(self, operation: str) -> str | None:
        op = getattr(self, operation, None)
        return op.path if op is not None else None


class EntityConfig(BaseModel):
    """Endpoints and record rules for one entity type."""

    model_config = ConfigDict(extra="ignore")

    endpoints: EndpointSet = Field(default_factory=EndpointSet)
    target: str | None = Field(default=None, description="Target entity fed by this entity")
    mapping: dict[str, str] = Field(default_factory=dict)
    ignore: dict[str, list[str]] = Field(default_factory=dict)


class AuthConfig(BaseModel):
    """How credentials are turned into request material."""

    type: AuthType
    location: AuthLocation = AuthLocation.HEADER
    key: str | None = None
    payload: str | None = None


class MultiTargetConfig(BaseModel):
    """Send every entity's records to one endpoint in one request."""

    path: str
    data_key: str = "data"
    include_source: bool = False
    type_key: str = "entity_type"


class MigrationConfig(BaseModel):
    """A validated migration config document."""

    model_config = ConfigDict(extra="ignore")

    name: str
    type: ConfigType = ConfigType.API
    base_url: str = ""
    base_path: str = ""
    auth: AuthConfig | None = None
    requests_per_second: int | None = Field(default=None, gt=0)
    paging: PagingConfig = Field(default_factory=PagingConfig)
    source: dict[str, EntityConfig] = Field(default_factory=dict)
    target: dict[str, EntityConfig] = Field(default_factory=dict)
    multi_target: MultiTargetConfig | None = None
    denormalized_keys: dict[str, dict[str, dict[str, str]]] = Field(default_factory=dict)
    overrides: dict[str, dict[str, Any]] = Field(default_factory=dict)
    source_control: dict[str, Any] | None = None

    @field_validator("name")
    @classmethod
    def validate_name(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("name must not be empty")
        return value

    def entities(self, direction: str) -> dict[str, EntityConfig]:
        if direction not in ("source", "target"):
            raise ConfigurationError(f"Unknown direction: {direction}")
        return getattr(self, direction)


def validate_config(document: dict[str, Any] | MigrationConfig) -> MigrationConfig:
    """
    Validate a raw config document.

    Args:
        document: The parsed document or an existing model

    Returns:
        The validated configuration

    Raises:
        ConfigurationError: If the document is invalid
    """
    if isinstance(document, MigrationConfig):
        return document
    try:
        return MigrationConfig.model_validate(document)
    except PydanticValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ConfigurationError(
            f"Invalid migration config: {problems}", {"errors": e.error_count()}
        ) from e


def load_migration_config(path: str | Path) -> MigrationConfig:
    """
    Read and validate a JSON or YAML config document.

    Args:
        path: Path of a ``.json``, ``.yaml`` or ``.yml`` file

    Returns:
        The validated configuration

    Raises:
        ConfigurationError: If the file is unreadable, unparsable or invalid
    """
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigurationError(f"Could not read config file {path}: {e}") from e

    try:
        if path.suffix.lower() in (".yaml", ".yml"):
            document = yaml.safe_load(text)
        else:
            document = json.loads(text)
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"Could not parse config file {path}: {e}") from e

    if not isinstance(document, dict):
        raise ConfigurationError(f"Config file {path} must contain an object")
    return validate_config(document)
