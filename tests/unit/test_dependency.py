"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMBridge, licensed under the MIT License.
See LICENSE file for details.
"""

import itertools

import pytest

from tmbridge.dependency import DependencyOrderResolver
from tmbridge.errors import ConfigurationError
from tmbridge.models import EntityConfig

pytestmark = pytest.mark.unit


def test_referenced_entity_comes_first():
    resolver = DependencyOrderResolver({"a": "/a", "b": "/b/{a.id}"})
    assert resolver.resolve("b") == ["a", "b"]


def test_resolve_all_deduplicates():
    resolver = DependencyOrderResolver(
        {
            "cases": "/get_cases/{projects.id}&suite_id={suites.id}",
            "suites": "/get_suites/{projects.id}",
            "projects": "/get_projects",
        }
    )
    assert resolver.resolve_all() == ["projects", "suites", "cases"]


def test_credential_placeholders_are_not_dependencies():
    resolver = DependencyOrderResolver({"cases": "/add_case/{section_id}"})
    assert resolver.dependencies("cases") == []


def test_unknown_dotted_reference():
    resolver = DependencyOrderResolver({"b": "/b/{missing.id}"})
    with pytest.raises(ConfigurationError) as exc_info:
        resolver.resolve("b")
    assert exc_info.value.context["reference"] == "missing.id"


def test_missing_entity():
    resolver = DependencyOrderResolver({"a": "/a"})
    with pytest.raises(ConfigurationError, match="No configuration found"):
        resolver.resolve("zzz")


def test_missing_path():
    resolver = DependencyOrderResolver({"a": None}, operation="get")
    with pytest.raises(ConfigurationError, match="No get path configured"):
        resolver.resolve("a")


def test_cycle_is_reported():
    resolver = DependencyOrderResolver({"a": "/a/{b.id}", "b": "/b/{a.id}"})
    with pytest.raises(ConfigurationError) as exc_info:
        resolver.resolve("a")
    assert exc_info.value.context["cycle"] == "a -> b -> a"


def test_self_reference_is_a_cycle():
    resolver = DependencyOrderResolver({"a": "/a/{a.parent_id}"})
    with pytest.raises(ConfigurationError, match="Circular dependency"):
        resolver.resolve_all()


def test_order_holds_for_every_declaration_order():
    paths = {
        "projects": "/projects",
        "suites": "/projects/{projects.id}/suites",
        "sections": "/suites/{suites.id}/sections",
        "cases": "/sections/{sections.id}/cases?project={projects.id}",
        "milestones": "/projects/{projects.id}/milestones",
    }
    for names in itertools.permutations(paths):
        resolver = DependencyOrderResolver({name: paths[name] for name in names})
        order = resolver.resolve_all()
        assert sorted(order) == sorted(paths)
        for name, path in paths.items():
            for dependency in resolver.dependencies(name):
                assert order.index(dependency) < order.index(name), path


def test_from_entities():
    entities = {
        "projects": EntityConfig.model_validate({"endpoints": {"index": {"path": "/projects"}}}),
        "suites": EntityConfig.model_validate(
            {"endpoints": {"index": {"path": "/projects/{projects.id}/suites"}}}
        ),
    }
    resolver = DependencyOrderResolver.from_entities(entities)
    assert resolver.resolve_all(["suites"]) == ["projects", "suites"]
