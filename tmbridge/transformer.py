"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMBridge, licensed under the MIT License.
See LICENSE file for details.
"""

"""
Record transformation between extraction and loading.

Rules are applied per record in a fixed order: source control info, config
overrides, ignore rules, rename mappings, registered field mappings. Entities
are then renamed to their target type and the source identity is attached.
A record that fails a rule is dropped and the failure recorded.
"""

import copy
import re
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from tmbridge.core.logging import get_logger
from tmbridge.errors import ErrorManager, ETLError, ETLErrorType, TransformationError, ValidationError
from tmbridge.models import EntityConfig, MigrationConfig
from tmbridge.url_template import lookup

logger = get_logger("tmbridge.transformer")

_MISSING = object()


def _to_number(value: Any) -> int | float:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return value
    text = str(value).strip()
    try:
        return int(text)
    except ValueError:
        return float(text)


def _to_iso_date(value: Any) -> str:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value).isoformat()
    return datetime.fromisoformat(str(value).replace("Z", "+00:00")).isoformat()


BUILTIN_TRANSFORMS: dict[str, Callable[[Any], Any]] = {
    "uppercase": lambda v: v.upper() if isinstance(v, str) else v,
    "lowercase": lambda v: v.lower() if isinstance(v, str) else v,
    "trim": lambda v: v.strip() if isinstance(v, str) else v,
    "string": lambda v: "" if v is None else str(v),
    "number": _to_number,
    "boolean": lambda v: v.strip().lower() in ("true", "1", "yes") if isinstance(v, str) else bool(v),
    "iso_date": _to_iso_date,
}


def set_nested(record: dict[str, Any], path: str, value: Any) -> None:
    """Set a dotted path, creating intermediate objects."""
    keys = path.split(".")
    target = record
    for key in keys[:-1]:
        if not isinstance(target.get(key), dict):
            target[key] = {}
        target = target[key]
    target[keys[-1]] = value


def delete_nested(record: dict[str, Any], path: str) -> None:
    if path in record:
        del record[path]
        return
    keys = path.split(".")
    target: Any = record
    for key in keys[:-1]:
        if not isinstance(target, dict) or key not in target:
            return
        target = target[key]
    if isinstance(target, dict):
        target.pop(keys[-1], None)


@dataclass
class FieldMapping:
    """
    Copy a value from ``source`` to ``target``, optionally transforming it.

    Attributes:
        source: Dotted path read from the record
        target: Dotted path written to the record
        transform: Name of a builtin transform or a callable
        required: Fail the record when the source value is missing
        entity: Restrict the mapping to one entity type
    """

    source: str
    target: str
    transform: str | Callable[[Any], Any] | None = None
    required: bool = False
    entity: str | None = None

    def __post_init__(self) -> None:
        if isinstance(self.transform, str) and self.transform.lower() not in BUILTIN_TRANSFORMS:
            raise ValueError(
                f"Unknown transform '{self.transform}', expected one of {sorted(BUILTIN_TRANSFORMS)}"
            )

    def applies_to(self, entity: str) -> bool:
        return self.entity is None or self.entity == entity

    def apply(self, record: dict[str, Any], entity: str) -> None:
        """
        Apply the mapping in place.

        Raises:
            ValidationError: If a required value is missing
            TransformationError: If the transform fails
        """
        value = lookup(record, self.source)
        if value is None:
            if self.required:
                raise ValidationError(
                    f"Required field {self.source} is missing",
                    {"field": self.source, "entity": entity},
                )
            return

        if self.transform is not None:
            func = self.transform if callable(self.transform) else BUILTIN_TRANSFORMS[self.transform.lower()]
            try:
                value = func(value)
            except Exception as e:
                raise TransformationError(
                    f"Failed to apply field mapping {self.source} -> {self.target}: {e}",
                    {"mapping": f"{self.source} -> {self.target}", "entity": entity},
                ) from e

        if self.source != self.target:
            delete_nested(record, self.source)
        set_nested(record, self.target, value)


@dataclass
class TransformationResult:
    """Transformed records per entity plus run metadata."""

    data: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)


class DataTransformer:
    """
    Applies config-driven and registered rules to extracted records.

    Args:
        config: Effective migration config
        error_manager: Shared error log
    """

    def __init__(self, config: MigrationConfig, error_manager: ErrorManager | None = None):
        self.config = config
        self.error_manager = error_manager or ErrorManager()
        self.field_mappings: list[FieldMapping] = []

    def add_field_mapping(self, mapping: FieldMapping) -> None:
        self.field_mappings.append(mapping)

    def add_field_mappings(self, mappings: list[FieldMapping]) -> None:
        self.field_mappings.extend(mappings)

    def _entity_config(self, entity: str) -> EntityConfig | None:
        return self.config.source.get(entity) or self.config.target.get(entity)

    def transform(self, data: Mapping[str, Any]) -> TransformationResult:
        """
        Transform records of every entity.

        Args:
            data: Entity name to records; a ``source`` key is carried through

        Returns:
            The transformed records and metadata

        Raises:
            ValidationError: If ``data`` is not a mapping
        """
        if not isinstance(data, Mapping):
            raise ValidationError("Input data must be an object", {"type": type(data).__name__})

        start_time = time.time()
        applied_rules: list[str] = []
        warnings: list[str] = []
        result: dict[str, Any] = {}

        if self.config.source_control:
            applied_rules.append("source_control_info")
        if self.config.overrides:
            applied_rules.append("config_overrides")
        if any(e.ignore for e in self.config.source.values()):
            applied_rules.append("ignore_rules")
        if any(e.mapping for e in self.config.source.values()):
            applied_rules.append("mapping_renames")
        if self.field_mappings:
            applied_rules.append("field_mappings")

        for entity, records in data.items():
            if entity == "source":
                continue
            if isinstance(records, Mapping):
                records = [records]
            elif not isinstance(records, list):
                warnings.append(f"Skipped '{entity}': expected a list of records")
                continue

            kept = []
            for position, record in enumerate(records):
                if not isinstance(record, Mapping):
                    warnings.append(f"Skipped non-object record {position} of '{entity}'")
                    continue
                try:
                    transformed = self.transform_record(entity, record)
                except ETLError as e:
                    e.context.setdefault("entity", entity)
                    e.context.setdefault("index", position)
                    logger.warning(f"Dropped {entity} record {position}: {e.message}")
                    self.error_manager.add_error(e)
                    continue
                except Exception as e:
                    logger.warning(f"Dropped {entity} record {position}: {e}")
                    self.error_manager.record(
                        e, ETLErrorType.TRANSFORMATION, {"entity": entity, "index": position}
                    )
                    continue
                if transformed is not None:
                    kept.append(transformed)

            target = self._target_name(entity)
            if target != entity:
                logger.debug(f"Renaming entity '{entity}' to '{target}'")
            result.setdefault(target, []).extend(kept)

        if result and any(self._target_name(e) != e for e in data if e != "source"):
            applied_rules.append("entity_rename")

        result["source"] = data.get("source") or self.config.name
        applied_rules.append("source_identity")

        duration = time.time() - start_time
        counts = {k: len(v) for k, v in result.items() if k != "source"}
        logger.info(f"Transformed {sum(counts.values())} records in {duration:.2f}s")
        return TransformationResult(
            data=result,
            metadata={
                "transformed_at": datetime.now().isoformat(),
                "duration": duration,
                "record_counts": counts,
                "applied_rules": applied_rules,
                "warnings": warnings,
            },
        )

    def _target_name(self, entity: str) -> str:
        config = self.config.source.get(entity)
        return config.target if config is not None and config.target else entity

    def transform_record(self, entity: str, record: Mapping[str, Any]) -> dict[str, Any] | None:
        """
        Transform one record.

        Returns:
            The new record, or None when an ignore rule drops it

        Raises:
            ValidationError: When a required field mapping has no value
            TransformationError: When a transform fails
        """
        result = copy.deepcopy(dict(record))

        if self.config.source_control:
            result["source_control"] = copy.deepcopy(self.config.source_control)

        overrides = self.config.overrides.get(entity)
        if overrides:
            result.update(copy.deepcopy(overrides))

        entity_config = self._entity_config(entity)
        if entity_config is not None:
            if self._ignored(entity, result, entity_config):
                return None
            for source_field, target_field in entity_config.mapping.items():
                value = lookup(result, source_field)
                if value is None:
                    continue
                delete_nested(result, source_field)
                set_nested(result, target_field, value)

        for mapping in self.field_mappings:
            if mapping.applies_to(entity):
                mapping.apply(result, entity)

        return result

    def _ignored(self, entity: str, record: dict[str, Any], config: EntityConfig) -> bool:
        for field_name, patterns in config.ignore.items():
            value = lookup(record, field_name)
            if value is None:
                continue
            for pattern in patterns:
                try:
                    matched = re.search(pattern, str(value)) is not None
                except re.error as e:
                    raise TransformationError(
                        f"Invalid ignore pattern '{pattern}' for {entity}.{field_name}: {e}",
                        {"entity": entity, "field": field_name, "pattern": pattern},
                    ) from e
                if matched:
                    logger.debug(f"Ignoring {entity} record: {field_name} matches '{pattern}'")
                    return True
        return False

