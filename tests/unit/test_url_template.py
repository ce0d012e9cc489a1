"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMBridge, licensed under the MIT License.
See LICENSE file for details.
"""

"""
Unit tests for path template tokenizing and expansion.
"""

import pytest

from tmbridge.errors import ConfigurationError
from tmbridge.url_template import (
    LITERAL,
    PLACEHOLDER,
    UrlTemplateEngine,
    join_url,
    lookup,
    placeholders,
    tokenize,
)

pytestmark = pytest.mark.unit


class TestTokenize:
    def test_literal_and_placeholders(self):
        tokens = tokenize("/projects/{projects.id}/suites")
        assert [t.kind for t in tokens] == [LITERAL, PLACEHOLDER, LITERAL]
        ref = tokens[1]
        assert (ref.entity, ref.field, ref.raw_token) == ("projects", "id", "projects.id")
        assert (ref.start, ref.end) == (10, 23)

    def test_bare_placeholder_has_no_field(self):
        token = placeholders("/add_case/{section_id}")[0]
        assert token.entity == "section_id"
        assert token.field is None

    def test_no_placeholders(self):
        tokens = tokenize("/projects")
        assert len(tokens) == 1
        assert not tokens[0].is_placeholder

    def test_unmatched_bracket(self):
        with pytest.raises(ConfigurationError) as exc_info:
            tokenize("/projects/{projects.id/suites")
        assert "Unmatched brackets" in exc_info.value.message
        assert exc_info.value.context["position"] == 10


class TestLookup:
    def test_verbatim_dotted_key_first(self):
        assert lookup({"custom.id": 1, "custom": {"id": 2}}, "custom.id") == 1

    def test_nested_walk(self):
        assert lookup({"custom": {"id": 2}}, "custom.id") == 2

    def test_list_index(self):
        assert lookup({"steps": [{"id": "a"}, {"id": "b"}]}, "steps.1.id") == "b"
        assert lookup({"steps": []}, "steps.0.id") is None

    def test_missing(self):
        assert lookup({"a": 1}, "b.c") is None
        assert lookup(None, "a") is None


def test_join_url():
    assert join_url("https://h.example.com/", "/api/v2/", "/projects") == "https://h.example.com/api/v2/projects"
    assert join_url("", "/api", "/projects") == "/api/projects"
    assert join_url("https://h.example.com", "https://other.example.com/x") == "https://other.example.com/x"
    assert join_url("https://h.example.com", None, "") == "https://h.example.com"


class TestSubstitute:
    def test_credentials_by_full_name(self):
        engine = UrlTemplateEngine()
        assert engine.substitute("/add_case/{section_id}", {"section_id": 12}) == "/add_case/12"

    def test_strict_raises_on_leftovers(self):
        engine = UrlTemplateEngine()
        with pytest.raises(ConfigurationError) as exc_info:
            engine.substitute("/add_case/{section_id}", {})
        assert exc_info.value.context["placeholders"] == ["section_id"]

    def test_non_strict_keeps_leftovers(self):
        engine = UrlTemplateEngine(strict=False)
        url = engine.substitute("/p/{project_id}/s/{suites.id}", {"project_id": 3})
        assert url == "/p/3/s/{suites.id}"

    def test_record_fills_by_field(self):
        engine = UrlTemplateEngine()
        assert engine.substitute("/suites/{suites.target_id}", {"target_id": 99}) == "/suites/99"

    def test_by_field_disabled(self):
        engine = UrlTemplateEngine(strict=False)
        url = engine.substitute("/suites/{suites.target_id}", {"target_id": 99}, by_field=False)
        assert url == "/suites/{suites.target_id}"

    def test_unresolved(self):
        engine = UrlTemplateEngine()
        assert engine.unresolved("/a/{x}/{b.y}", {"x": 1}) == ["b.y"]


class TestExpand:
    def test_one_url_per_parent_record(self):
        engine = UrlTemplateEngine()
        records = {"projects": [{"source_id": "1"}, {"source_id": "2"}]}
        expansion = engine.expand("https://tr.example.com/projects/{projects.id}/suites", records)
        assert expansion.urls == [
            "https://tr.example.com/projects/1/suites",
            "https://tr.example.com/projects/2/suites",
        ]
        assert expansion.warnings == []

    def test_template_without_placeholders(self):
        expansion = UrlTemplateEngine().expand("/projects", {})
        assert expansion.urls == ["/projects"]

    def test_same_entity_binds_from_same_record(self):
        engine = UrlTemplateEngine()
        records = {"suites": [{"source_id": 1, "project_id": 10}, {"source_id": 2, "project_id": 20}]}
        expansion = engine.expand("/p/{suites.project_id}/s/{suites.id}/cases", records)
        assert expansion.urls == ["/p/10/s/1/cases", "/p/20/s/2/cases"]

    def test_two_entities_nest_in_order(self):
        engine = UrlTemplateEngine()
        records = {"a": [{"source_id": 1}, {"source_id": 2}], "b": [{"source_id": "x"}, {"source_id": "y"}]}
        expansion = engine.expand("/{a.id}/{b.id}", records)
        assert expansion.urls == ["/1/x", "/1/y", "/2/x", "/2/y"]

    def test_records_without_field_are_skipped(self):
        engine = UrlTemplateEngine()
        records = {"projects": [{"source_id": 1}, {"name": "no id"}]}
        expansion = engine.expand("/projects/{projects.id}/suites", records)
        assert expansion.urls == ["/projects/1/suites"]
        assert len(expansion.warnings) == 1

    def test_missing_entity_leaves_placeholder_and_raises(self):
        engine = UrlTemplateEngine()
        with pytest.raises(ConfigurationError):
            engine.expand("/projects/{projects.id}/suites", {})

    def test_expanded_urls_never_contain_placeholders(self):
        engine = UrlTemplateEngine()
        records = {"a": [{"source_id": i} for i in range(5)]}
        for url in engine.expand("/x/{a.id}/y", records).urls:
            assert "{" not in url and "}" not in url


class TestDenormalizedKeys:
    @pytest.fixture
    def engine(self):
        return UrlTemplateEngine(
            denormalized_keys={"cases": {"sections": {"suites.id": "suite_id"}}},
        )

    def test_driver_supplies_other_entity_values(self, engine):
        records = {
            "suites": [{"source_id": 5}, {"source_id": 6}],
            "sections": [{"source_id": 1, "suite_id": 5}, {"source_id": 2, "suite_id": 6}],
        }
        expansion = engine.expand("/get_cases/{suites.id}&section_id={sections.id}", records, endpoint="cases")
        assert expansion.urls == [
            "/get_cases/5&section_id=1",
            "/get_cases/6&section_id=2",
        ]

    def test_no_match_skips_with_warning(self, engine):
        records = {
            "suites": [{"source_id": 5}],
            "sections": [{"source_id": 1, "suite_id": 5}, {"source_id": 2, "suite_id": 404}],
        }
        expansion = engine.expand("/get_cases/{suites.id}&section_id={sections.id}", records, endpoint="cases")
        assert expansion.urls == ["/get_cases/5&section_id=1"]
        assert len(expansion.warnings) == 1
        assert "No match for denormalized keys" in expansion.warnings[0]

    def test_every_denormalized_key_must_match(self):
        engine = UrlTemplateEngine(
            denormalized_keys={
                "cases": {"sections": {"suites.id": "suite_id", "projects.id": "project_id"}}
            },
        )
        records = {
            "projects": [{"source_id": 1}],
            "suites": [{"source_id": 5}],
            "sections": [
                {"source_id": 10, "suite_id": 5, "project_id": 1},
                {"source_id": 11, "suite_id": 5, "project_id": 2},
                {"source_id": 12, "suite_id": 6, "project_id": 1},
            ],
        }
        expansion = engine.expand(
            "/p/{projects.id}/s/{suites.id}/sec/{sections.id}", records, endpoint="cases"
        )
        assert expansion.urls == ["/p/1/s/5/sec/10"]
        assert len(expansion.warnings) == 2
        assert all("No match for denormalized keys" in w for w in expansion.warnings)

    def test_other_endpoints_expand_normally(self, engine):
        records = {"suites": [{"source_id": 5}], "sections": [{"source_id": 1, "suite_id": 5}]}
        expansion = engine.expand("/{suites.id}/{sections.id}", records, endpoint="runs")
        assert expansion.urls == ["/5/1"]


class TestExpandIds:
    def test_ids_fill_default_id_field(self):
        engine = UrlTemplateEngine()
        expansion = engine.expand_ids("/get_case/{id}", [{"id": 1}, {"id": 2}])
        assert expansion.urls == ["/get_case/1", "/get_case/2"]

    def test_full_placeholder_name_wins(self):
        engine = UrlTemplateEngine()
        expansion = engine.expand_ids("/projects/{projects.id}", [{"projects.id": 3, "id": 9}])
        assert expansion.urls == ["/projects/3"]

    def test_records_without_value_are_skipped(self):
        engine = UrlTemplateEngine()
        expansion = engine.expand_ids("/get_case/{id}", [{"id": 1}, {"name": "x"}])
        assert expansion.urls == ["/get_case/1"]
        assert len(expansion.warnings) == 1
