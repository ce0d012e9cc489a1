"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMBridge, licensed under the MIT License.
See LICENSE file for details.
"""

"""
Path template tokenizing and expansion.

Endpoint paths reference other entities with ``{entity.field}`` placeholders,
e.g. ``/projects/{projects.id}/suites``. Expanding such a template against the
records already extracted yields one URL per referenced record.
"""

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from tmbridge.core.logging import get_logger
from tmbridge.errors import ConfigurationError

logger = get_logger("tmbridge.url_template")

LITERAL = "literal"
PLACEHOLDER = "placeholder"

_MISSING = object()


@dataclass(frozen=True)
class TemplateToken:
    """
    One segment of a path template.

    Attributes:
        kind: ``literal`` for plain text, ``placeholder`` for ``{...}``
        entity: Referenced entity (``projects`` in ``{projects.id}``)
        field: Referenced field, None when the placeholder has no dot
        raw_token: Text between the brackets, or the literal text
        start: Offset of the segment in the template
        end: Offset just past the segment
    """

    kind: str
    entity: str | None
    field: str | None
    raw_token: str
    start: int
    end: int

    @property
    def is_placeholder(self) -> bool:
        return self.kind == PLACEHOLDER


@dataclass
class Expansion:
    """URLs produced from one template, in submission order."""

    urls: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def tokenize(template: str) -> list[TemplateToken]:
    """
    Split a template into literal and placeholder tokens.

    Args:
        template: The path template

    Returns:
        Tokens covering the whole template

    Raises:
        ConfigurationError: If a ``{`` has no closing ``}``
    """
    tokens: list[TemplateToken] = []
    position = 0
    length = len(template)

    while position < length:
        open_at = template.find("{", position)
        if open_at == -1:
            tokens.append(TemplateToken(LITERAL, None, None, template[position:], position, length))
            break

        close_at = template.find("}", open_at + 1)
        if close_at == -1:
            raise ConfigurationError(
                f"Unmatched brackets in path template '{template}'",
                {"template": template, "position": open_at},
            )

        if open_at > position:
            tokens.append(
                TemplateToken(LITERAL, None, None, template[position:open_at], position, open_at)
            )

        raw = template[open_at + 1 : close_at].strip()
        entity, _, ref_field = raw.partition(".")
        tokens.append(
            TemplateToken(PLACEHOLDER, entity, ref_field or None, raw, open_at, close_at + 1)
        )
        position = close_at + 1

    return tokens


def placeholders(template: str) -> list[TemplateToken]:
    """Placeholder tokens of a template, in order of appearance."""
    return [t for t in tokenize(template) if t.is_placeholder]


def lookup(record: Mapping[str, Any], path: str) -> Any:
    """
    Read a possibly nested value from a record.

    A key containing dots is tried verbatim before walking nested objects, so
    both ``{"custom.id": 1}`` and ``{"custom": {"id": 1}}`` resolve
    ``custom.id``.

    Returns:
        The value, or None when absent
    """
    if not isinstance(record, Mapping):
        return None
    if path in record:
        return record[path]

    current: Any = record
    for part in path.split("."):
        if isinstance(current, Mapping) and part in current:
            current = current[part]
        elif isinstance(current, Sequence) and not isinstance(current, str) and part.isdigit():
            index = int(part)
            if index >= len(current):
                return None
            current = current[index]
        else:
            return None
    return current


def join_url(*parts: str | None) -> str:
    """
    Join a host, a base path and a path with single slashes.

    An absolute ``http(s)://`` part replaces everything before it.
    """
    url = ""
    for part in parts:
        if not part:
            continue
        if part.startswith(("http://", "https://")) or not url:
            url = part.rstrip("/") or part
            continue
        url = f"{url.rstrip('/')}/{part.lstrip('/')}"
    return url


def _same_value(left: Any, right: Any) -> bool:
    if left is None or right is None:
        return False
    return left == right or str(left) == str(right)


class UrlTemplateEngine:
    """
    Expands path templates using known records.

    Args:
        default_field: Field read when a placeholder names no field or ``id``
        denormalized_keys: ``{endpoint: {driver_entity: {placeholder: field_path}}}``
        strict: Raise when placeholders remain after substitution
    """

    def __init__(
        self,
        default_field: str = "source_id",
        denormalized_keys: Mapping[str, Mapping[str, Mapping[str, str]]] | None = None,
        strict: bool = True,
    ):
        self.default_field = default_field
        self.denormalized_keys = denormalized_keys or {}
        self.strict = strict

    def field_for(self, token: TemplateToken, default_field: str | None = None) -> str:
        if token.field and token.field != "id":
            return token.field
        return default_field or self.default_field

    @staticmethod
    def render(tokens: Sequence[TemplateToken], values: Mapping[str, Any]) -> str:
        """Join tokens, replacing placeholders found in ``values``."""
        parts = []
        for token in tokens:
            if token.is_placeholder and token.raw_token in values:
                parts.append(str(values[token.raw_token]))
            elif token.is_placeholder:
                parts.append("{" + token.raw_token + "}")
            else:
                parts.append(token.raw_token)
        return "".join(parts)

    def assert_resolved(self, url: str) -> str:
        """
        Ensure a substituted URL has no placeholders left.

        Raises:
            ConfigurationError: If any ``{...}`` remains
        """
        remaining = placeholders(url)
        if remaining:
            names = ", ".join(t.raw_token for t in remaining)
            raise ConfigurationError(
                f"Unresolved placeholders [{names}] in '{url}'",
                {"url": url, "placeholders": [t.raw_token for t in remaining]},
            )
        return url

    def _finish(self, url: str, strict: bool | None) -> str:
        if self.strict if strict is None else strict:
            return self.assert_resolved(url)
        return url

    def _value_from(
        self, values: Mapping[str, Any], token: TemplateToken, by_field: bool = True
    ) -> Any:
        if token.raw_token in values:
            return values[token.raw_token]
        if by_field and token.field is not None:
            return lookup(values, token.field)
        return None

    def unresolved(
        self, template: str, values: Mapping[str, Any], by_field: bool = True
    ) -> list[str]:
        """Placeholders of ``template`` that ``values`` cannot fill."""
        return [
            t.raw_token
            for t in placeholders(template)
            if self._value_from(values, t, by_field) is None
        ]

    def substitute(
        self,
        template: str,
        values: Mapping[str, Any],
        strict: bool | None = None,
        by_field: bool = True,
    ) -> str:
        """
        Fill placeholders from a flat value map.

        A placeholder matches a key equal to its full text (``section_id``,
        ``cases.id``). With ``by_field`` it also matches its field, which is
        how a single record fills ``{cases.target_id}``.

        Args:
            template: The path template
            values: Credentials or a single record
            strict: Override the engine's strict setting
            by_field: Also look placeholders up by their field

        Returns:
            The substituted string
        """
        tokens = tokenize(template)
        resolved = {}
        for token in tokens:
            if not token.is_placeholder:
                continue
            value = self._value_from(values, token, by_field)
            if value is not None:
                resolved[token.raw_token] = value
        return self._finish(self.render(tokens, resolved), strict)

    def _known_value(
        self, raw: str, value: Any, records: Mapping[str, Sequence[Mapping[str, Any]]]
    ) -> bool:
        entity, _, ref_field = raw.partition(".")
        known = records.get(entity)
        if not known:
            return True
        token = TemplateToken(PLACEHOLDER, entity, ref_field or None, raw, 0, 0)
        ref_path = self.field_for(token)
        return any(_same_value(lookup(r, ref_path), value) for r in known)

    def expand(
        self,
        template: str,
        records: Mapping[str, Sequence[Mapping[str, Any]]],
        endpoint: str | None = None,
        strict: bool | None = None,
    ) -> Expansion:
        """
        Produce one URL per combination of referenced records.

        Placeholders of the same entity are bound from the same record.
        Entities listed in ``denormalized_keys[endpoint]`` drive the expansion:
        each of their records also supplies the values of the listed
        placeholders, and is accepted only when every listed value resolves and
        matches a known record of the entity it refers to.

        Args:
            template: The path template
            records: Records extracted so far, keyed by entity
            endpoint: The entity being expanded, used to find denormalized keys
            strict: Override the engine's strict setting

        Returns:
            The expanded URLs and warnings about skipped records
        """
        tokens = tokenize(template)
        refs = [t for t in tokens if t.is_placeholder]
        expansion = Expansion()
        if not refs:
            expansion.urls.append(self._finish(template, strict))
            return expansion

        bindings: list[dict[str, Any]] = [{}]
        bound: set[str] = set()

        denormalized = self.denormalized_keys.get(endpoint or "", {})
        for driver, key_map in denormalized.items():
            driver_refs = [t for t in refs if t.entity == driver]
            if driver not in records or not (driver_refs or set(key_map) & {t.raw_token for t in refs}):
                continue

            next_bindings = []
            for binding in bindings:
                for record in records[driver]:
                    values = self._bind(driver_refs, record)
                    if values is None:
                        expansion.warnings.append(
                            f"Skipped {driver} record without {self._describe(driver_refs)} for {template}"
                        )
                        continue

                    accepted = True
                    for raw, path in key_map.items():
                        value = lookup(record, path)
                        if value is None or not self._known_value(raw, value, records):
                            accepted = False
                            break
                        values[raw] = value

                    if not accepted:
                        message = (
                            f"No match for denormalized keys {sorted(key_map)} on {driver} record "
                            f"{lookup(record, self.default_field) or lookup(record, 'id')} for {template}"
                        )
                        logger.warning(message)
                        expansion.warnings.append(message)
                        continue
                    next_bindings.append({**binding, **values})

            bindings = next_bindings
            bound.update(t.raw_token for t in driver_refs)
            bound.update(key_map)

        pending: dict[str, list[TemplateToken]] = {}
        for token in refs:
            if token.raw_token not in bound:
                pending.setdefault(token.entity, []).append(token)

        for entity, entity_refs in pending.items():
            if entity not in records:
                continue
            next_bindings = []
            for binding in bindings:
                for record in records[entity]:
                    values = self._bind(entity_refs, record)
                    if values is None:
                        expansion.warnings.append(
                            f"Skipped {entity} record without {self._describe(entity_refs)} for {template}"
                        )
                        continue
                    next_bindings.append({**binding, **values})
            bindings = next_bindings

        for binding in bindings:
            expansion.urls.append(self._finish(self.render(tokens, binding), strict))
        return expansion

    def expand_ids(
        self,
        template: str,
        id_records: Sequence[Mapping[str, Any]],
        strict: bool | None = None,
    ) -> Expansion:
        """
        Produce one URL per requested id record.

        Every placeholder is filled from the id record itself, reading the
        placeholder's full text first and then its field (``id`` by default).

        Args:
            template: The get path template
            id_records: Records such as ``{"id": 7}``
            strict: Override the engine's strict setting

        Returns:
            The expanded URLs and warnings about skipped id records
        """
        tokens = tokenize(template)
        refs = [t for t in tokens if t.is_placeholder]
        expansion = Expansion()

        for record in id_records:
            values = {}
            for token in refs:
                value = record.get(token.raw_token, _MISSING)
                if value is _MISSING or value is None:
                    value = lookup(record, self.field_for(token, "id"))
                if value is None:
                    break
                values[token.raw_token] = value
            else:
                expansion.urls.append(self._finish(self.render(tokens, values), strict))
                continue
            expansion.warnings.append(f"Skipped id record {dict(record)} for {template}")

        return expansion

    def _bind(self, refs: Sequence[TemplateToken], record: Mapping[str, Any]) -> dict[str, Any] | None:
        values = {}
        for token in refs:
            value = lookup(record, self.field_for(token))
            if value is None:
                return None
            values[token.raw_token] = value
        return values

    def _describe(self, refs: Sequence[TemplateToken]) -> str:
        return ", ".join(sorted({self.field_for(t) for t in refs}))
