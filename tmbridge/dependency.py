"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMBridge, licensed under the MIT License.
See LICENSE file for details.
"""

"""
Ordering of entity types by the references in their path templates.
"""

from collections.abc import Iterable, Mapping

from tmbridge.core.logging import get_logger
from tmbridge.errors import ConfigurationError
from tmbridge.models import EntityConfig
from tmbridge.url_template import placeholders

logger = get_logger("tmbridge.dependency")


class DependencyOrderResolver:
    """
    Computes the order in which entities must be fetched.

    An entity whose path contains ``{projects.id}`` depends on ``projects``;
    dependencies are visited depth-first before the entity itself and each
    entity appears once, at its first position.

    Args:
        paths: Entity name to path template for one operation
        operation: Operation name, used in error messages
    """

    def __init__(self, paths: Mapping[str, str | None], operation: str = "index"):
        self.paths = dict(paths)
        self.operation = operation

    @classmethod
    def from_entities(
        cls, entities: Mapping[str, EntityConfig], operation: str = "index"
    ) -> "DependencyOrderResolver":
        """Build a resolver from entity configs for the given operation."""
        return cls(
            {name: entity.endpoints.path_for(operation) for name, entity in entities.items()},
            operation,
        )

    def dependencies(self, entity: str) -> list[str]:
        """
        Entities directly referenced by an entity's path.

        Raises:
            ConfigurationError: If the entity or its path is missing, or a
                dotted placeholder names an unknown entity
        """
        if entity not in self.paths:
            raise ConfigurationError(
                f"No configuration found for entity '{entity}'",
                {"entity": entity, "operation": self.operation},
            )
        path = self.paths[entity]
        if not path:
            raise ConfigurationError(
                f"No {self.operation} path configured for entity '{entity}'",
                {"entity": entity, "operation": self.operation},
            )

        found: list[str] = []
        for token in placeholders(path):
            if token.entity not in self.paths:
                if token.field is None:
                    # Bare placeholder such as {section_id}: a credential, not an entity
                    continue
                raise ConfigurationError(
                    f"Entity '{entity}' references unknown entity '{token.entity}'",
                    {"entity": entity, "reference": token.raw_token, "operation": self.operation},
                )
            if token.entity not in found:
                found.append(token.entity)
        return found

    def resolve(self, entity: str) -> list[str]:
        """
        Dependency chain of one entity, ending with the entity itself.

        Raises:
            ConfigurationError: On missing definitions or cyclic references
        """
        order: list[str] = []
        self._visit(entity, [], order)
        return order

    def resolve_all(self, entities: Iterable[str] | None = None) -> list[str]:
        """
        Combined order for several entities (all configured ones by default).

        Raises:
            ConfigurationError: On missing definitions or cyclic references
        """
        order: list[str] = []
        for entity in entities if entities is not None else self.paths:
            self._visit(entity, [], order)
        logger.debug(f"Resolved {self.operation} order: {order}")
        return order

    def _visit(self, entity: str, stack: list[str], order: list[str]) -> None:
        if entity in order:
            return
        if entity in stack:
            cycle = " -> ".join(stack[stack.index(entity) :] + [entity])
            raise ConfigurationError(
                f"Circular dependency between entities: {cycle}",
                {"entity": entity, "cycle": cycle, "operation": self.operation},
            )

        stack.append(entity)
        for dependency in self.dependencies(entity):
            self._visit(dependency, stack, order)
        stack.pop()
        order.append(entity)
