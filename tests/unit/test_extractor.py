"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMBridge, licensed under the MIT License.
See LICENSE file for details.
"""

"""
Unit tests for source extraction.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from tmbridge.errors import AuthenticationError, DataError, NetworkError
from tmbridge.extractor import apply_limit, stamp_source_id, unwrap_records
from tmbridge.http_client import HttpResponse
from tmbridge.models import LimitPolicy

pytestmark = pytest.mark.unit

API = "https://testrail.example.com/api/v2"


def cases_document(index: dict, paging: dict | None = None) -> dict:
    document = {
        "name": "cases-only",
        "base_path": "/api/v2",
        "auth": {"type": "bearer", "payload": "Bearer {token}"},
        "requests_per_second": 10,
        "source": {"cases": {"endpoints": {"index": {"path": "/cases", "data_key": "cases", **index}}}},
    }
    if paging is not None:
        document["paging"] = paging
    return document


def case_pages(fake_http, *pages):
    """Route ``/cases`` pages chained through ``next`` links."""
    url = f"{API}/cases"
    for number, records in enumerate(pages, start=1):
        link = f"/api/v2/cases?offset={number * 10}" if number < len(pages) else None
        fake_http.add("GET", url, {"cases": records, "next": link})
        url = f"{API}/cases?offset={number * 10}"


class TestHelpers:
    def test_unwrap_data_key(self):
        assert unwrap_records({"projects": [{"id": 1}]}, "projects") == [{"id": 1}]

    def test_unwrap_fallback_keys(self):
        assert unwrap_records({"results": [{"id": 1}], "size": 1}) == [{"id": 1}]

    def test_unwrap_bare_list_and_object(self):
        assert unwrap_records([{"id": 1}]) == [{"id": 1}]
        assert unwrap_records({"id": 1}) == [{"id": 1}]
        assert unwrap_records(None) == []
        assert unwrap_records("oops") == []

    def test_stamp_source_id(self):
        stamped = stamp_source_id([{"id": 1}, {"id": 2, "source_id": 9}, {"name": "x"}])
        assert stamped == [{"id": 1, "source_id": 1}, {"id": 2, "source_id": 9}, {"name": "x"}]

    def test_stamp_custom_id_field(self):
        assert stamp_source_id([{"key": "C-1"}], "key") == [{"key": "C-1", "source_id": "C-1"}]

    @pytest.mark.parametrize(
        "cutoff, total, expected, reached",
        [
            ("hard", 0, [1, 2, 3], False),
            ("hard", 2, [1], True),
            ("soft", 2, [1, 2, 3], True),
        ],
    )
    def test_count_limit(self, cutoff, total, expected, reached):
        limit = LimitPolicy(type="count", value=3, cutoff=cutoff)
        assert apply_limit(limit, [1, 2, 3], total) == (expected, reached)

    def test_match_limit(self):
        records = [{"title": "a"}, {"title": "STOP"}, {"title": "c"}]
        hard = LimitPolicy(type="match", value="title:STOP")
        soft = LimitPolicy(type="match", value="title:STOP", cutoff="soft")
        assert apply_limit(hard, records, 0) == ([{"title": "a"}], True)
        assert apply_limit(soft, records, 0) == (records, True)
        assert apply_limit(hard, [{"title": "a"}], 0) == ([{"title": "a"}], False)


class TestIndexExtraction:
    @pytest.mark.asyncio
    async def test_dependency_order_and_expansion(self, pipeline_factory, fake_http):
        fake_http.add("GET", f"{API}/projects", {"projects": [{"id": 1}, {"id": 2}]})
        fake_http.add("GET", f"{API}/projects/1/suites", [{"id": 10, "name": "Smoke"}])
        fake_http.add("GET", f"{API}/projects/2/suites", [{"id": 20, "name": "Regression"}])

        result = await pipeline_factory().extractor.extract()

        assert [c.url for c in fake_http.calls][0] == f"{API}/projects"
        assert result.data["projects"] == [{"id": 1, "source_id": 1}, {"id": 2, "source_id": 2}]
        assert [s["source_id"] for s in result.data["suites"]] == [10, 20]
        assert result.metadata["mode"] == "index"
        assert result.metadata["record_counts"] == {"projects": 2, "suites": 2}
        assert result.metadata["endpoints"]["suites"] == [
            f"{API}/projects/1/suites",
            f"{API}/projects/2/suites",
        ]
        assert result.metadata["errors"] == []

    @pytest.mark.asyncio
    async def test_requests_carry_auth(self, pipeline_factory, fake_http):
        fake_http.add("GET", f"{API}/projects", {"projects": []})
        await pipeline_factory().extractor.extract()
        headers = fake_http.calls[0].headers
        assert headers["Accept"] == "application/json"
        assert headers["Authorization"].startswith("Basic ")

    @pytest.mark.asyncio
    async def test_empty_parent_skips_dependent(self, pipeline_factory, fake_http):
        fake_http.add("GET", f"{API}/projects", {"projects": []})

        pipeline = pipeline_factory()
        result = await pipeline.extractor.extract()

        assert result.data == {"projects": []}
        assert len(fake_http.calls) == 1
        [error] = result.metadata["errors"]
        assert error["name"] == "DataError"
        assert error["context"]["entity"] == "suites"
        assert pipeline.error_manager.has_errors()

    @pytest.mark.asyncio
    async def test_failed_request_is_recorded(self, pipeline_factory, fake_http, fake_clock):
        fake_http.add("GET", f"{API}/projects", NetworkError("unavailable", status_code=503))

        result = await pipeline_factory().extractor.extract()

        assert len(fake_http.calls_to("GET", f"{API}/projects")) == 3
        assert fake_clock.sleeps.count(0.1) == 1
        names = [e["name"] for e in result.metadata["errors"]]
        assert names == ["NetworkError", "DataError"]
        assert result.metadata["errors"][0]["context"]["entity"] == "projects"

    @pytest.mark.asyncio
    async def test_authentication_failure_is_raised(self, pipeline_factory, fake_http):
        fake_http.add("GET", f"{API}/projects", AuthenticationError("bad credentials"))

        pipeline = pipeline_factory()
        with pytest.raises(AuthenticationError) as exc_info:
            await pipeline.extractor.extract()

        assert exc_info.value.context["entity"] == "projects"
        assert not pipeline.error_manager.has_errors()

    @pytest.mark.asyncio
    async def test_authentication_failure_halts_remaining_requests(
        self, pipeline_factory, fake_http, executor_config
    ):
        fake_http.add("GET", f"{API}/projects/1", AuthenticationError("403 Forbidden"))
        config = executor_config.model_copy(update={"batch_size": 1})
        pipeline = pipeline_factory(executor_config=config)

        with pytest.raises(AuthenticationError) as exc_info:
            await pipeline.extractor.extract(ids={"projects": [1, 2, 3]})

        assert [c.url for c in fake_http.calls] == [f"{API}/projects/1"]
        assert exc_info.value.context["url"] == f"{API}/projects/1"


class TestPagination:
    @pytest.mark.asyncio
    async def test_follows_next_links(self, pipeline_factory, fake_http):
        case_pages(fake_http, [{"id": 1}, {"id": 2}], [{"id": 3}])
        document = cases_document({}, {"location": "response", "link_key": "next"})

        result = await pipeline_factory(document, {"token": "t"}).extractor.extract()

        assert [c["id"] for c in result.data["cases"]] == [1, 2, 3]
        assert fake_http.calls[1].url == f"{API}/cases?offset=10"

    @pytest.mark.asyncio
    async def test_paging_disabled_by_default(self, pipeline_factory, fake_http):
        case_pages(fake_http, [{"id": 1}], [{"id": 2}])

        result = await pipeline_factory(cases_document({}), {"token": "t"}).extractor.extract()

        assert [c["id"] for c in result.data["cases"]] == [1]
        assert len(fake_http.calls) == 1

    @pytest.mark.asyncio
    async def test_max_pages(self, pipeline_factory, fake_http):
        fake_http.add("GET", f"{API}/cases", {"cases": [{"id": 1}], "next": "/api/v2/cases"})
        document = cases_document({"paging": {"location": "response", "max_pages": 3}})

        result = await pipeline_factory(document, {"token": "t"}).extractor.extract()

        assert len(fake_http.calls) == 3
        assert len(result.data["cases"]) == 3
        assert any("3 pages" in w for w in result.metadata["warnings"])

    @pytest.mark.asyncio
    @pytest.mark.parametrize("cutoff, expected", [("hard", [1, 2, 3]), ("soft", [1, 2, 3, 4])])
    async def test_count_limit_stops_paging(self, pipeline_factory, fake_http, cutoff, expected):
        case_pages(fake_http, [{"id": 1}, {"id": 2}], [{"id": 3}, {"id": 4}], [{"id": 5}])
        document = cases_document(
            {"limit": {"type": "count", "value": 3, "cutoff": cutoff}},
            {"location": "response"},
        )

        result = await pipeline_factory(document, {"token": "t"}).extractor.extract()

        assert [c["id"] for c in result.data["cases"]] == expected
        assert len(fake_http.calls) == 2

    @pytest.mark.asyncio
    async def test_limit_applies_without_paging(self, pipeline_factory, fake_http):
        case_pages(fake_http, [{"id": 1}, {"id": 2}, {"id": 3}], [{"id": 4}])
        document = cases_document({"limit": {"type": "count", "value": 2}})

        result = await pipeline_factory(document, {"token": "t"}).extractor.extract()

        assert [c["id"] for c in result.data["cases"]] == [1, 2]
        assert len(fake_http.calls) == 1

    @pytest.mark.asyncio
    async def test_match_limit_stops_before_marker(self, pipeline_factory, fake_http):
        case_pages(fake_http, [{"id": 1, "title": "a"}, {"id": 2, "title": "STOP"}], [{"id": 3}])
        document = cases_document(
            {"limit": {"type": "match", "value": "title:STOP"}}, {"location": "response"}
        )

        result = await pipeline_factory(document, {"token": "t"}).extractor.extract()

        assert [c["id"] for c in result.data["cases"]] == [1]
        assert len(fake_http.calls) == 1


class TestGetExtraction:
    @pytest.mark.asyncio
    async def test_fetches_requested_ids(self, pipeline_factory, fake_http):
        fake_http.add("GET", f"{API}/projects/1", {"id": 1, "name": "Alpha"})
        fake_http.add("GET", f"{API}/projects/2", {"id": 2, "name": "Beta"})

        result = await pipeline_factory().extractor.extract(ids={"projects": [1, {"id": 2}]})

        assert result.metadata["mode"] == "get"
        assert [p["name"] for p in result.data["projects"]] == ["Alpha", "Beta"]
        assert result.data["projects"][0]["source_id"] == 1

    @pytest.mark.asyncio
    async def test_entity_without_get_operation(self, pipeline_factory, fake_http):
        pipeline = pipeline_factory()
        result = await pipeline.extractor.extract(ids={"suites": [10]})

        assert result.data == {}
        assert fake_http.calls == []
        assert isinstance(pipeline.error_manager.get_errors()[0], DataError)


@pytest.mark.asyncio
async def test_query_auth_is_sent_as_params(pipeline_factory):
    http = MagicMock()
    http.get = AsyncMock(return_value=HttpResponse(200, {"cases": [{"id": 1}]}))
    document = cases_document({})
    document["auth"] = {"type": "apikey", "location": "query", "key": "api_key"}

    pipeline = pipeline_factory(document, {"apiKey": "k-1"}, http_client=http)
    result = await pipeline.extractor.extract()

    http.get.assert_awaited_once_with(
        f"{API}/cases", headers={"Accept": "application/json"}, params={"api_key": "k-1"}
    )
    assert result.data["cases"] == [{"id": 1, "source_id": 1}]
