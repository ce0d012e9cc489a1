"""
Migration fixtures for the TMBridge test suite.

Provides a sample config document, an in-memory ``HttpClient`` with scripted
responses and a fake clock whose ``sleep`` advances time instantly.
"""

import asyncio
import copy
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import pytest

from tmbridge.core.config import ExecutorConfig
from tmbridge.errors import NetworkError
from tmbridge.http_client import HttpResponse
from tmbridge.pipeline import MigrationPipeline

BASE_URL = "https://testrail.example.com"

SAMPLE_DOCUMENT: Dict[str, Any] = {
    "name": "testrail",
    "type": "api",
    "base_path": "/api/v2",
    "auth": {"type": "basic", "location": "header"},
    "requests_per_second": 10,
    "source": {
        "projects": {
            "endpoints": {
                "index": {"path": "/projects", "data_key": "projects"},
                "get": {"path": "/projects/{id}"},
            },
        },
        "suites": {
            "endpoints": {"index": {"path": "/projects/{projects.id}/suites"}},
            "mapping": {"name": "title"},
        },
    },
    "target": {
        "projects": {
            "endpoints": {
                "create": {"bulk_path": "/projects", "data_key": "projects", "include_source": True},
            },
        },
        "suites": {
            "endpoints": {
                "create": {"single_path": "/suites"},
                "update": {
                    "path": "/suites/{suites.target_id}",
                    "update_key": "target_id",
                    "required_keys": ["target_id", "title"],
                },
            },
        },
        "sections": {"endpoints": {"create": {"single_path": "/add_section/{project_id}"}}},
        "cases": {"endpoints": {"create": {"single_path": "/add_case/{section_id}"}}},
        "runs": {"endpoints": {"create": {"single_path": "/add_run/{project_id}"}}},
    },
}

SAMPLE_CREDENTIALS = {"username": "qa@example.com", "password": "secret", "project_id": 7}


@dataclass
class FakeCall:
    """One request seen by ``FakeHttpClient``."""

    method: str
    url: str
    headers: Optional[Dict[str, str]] = None
    params: Optional[Dict[str, Any]] = None
    body: Any = None
    files: Optional[Dict[str, str]] = None


class FakeHttpClient:
    """
    ``HttpClient`` returning scripted responses.

    Each route holds a queue of responses; the last one repeats. A response is
    a body, an exception to raise, or a callable receiving the ``FakeCall``.
    Unknown routes raise a non-retryable 404 ``NetworkError``.
    """

    def __init__(self) -> None:
        self.routes: Dict[tuple, deque] = {}
        self.calls: List[FakeCall] = []

    def add(self, method: str, url: str, *responses: Any) -> "FakeHttpClient":
        self.routes.setdefault((method, url), deque()).extend(responses)
        return self

    def calls_to(self, method: str, url: Optional[str] = None) -> List[FakeCall]:
        return [c for c in self.calls if c.method == method and (url is None or c.url == url)]

    async def get(self, url, headers=None, params=None) -> HttpResponse:
        return await self._respond(FakeCall("GET", url, headers, params))

    async def post(self, url, headers=None, body=None, files=None, params=None) -> HttpResponse:
        return await self._respond(FakeCall("POST", url, headers, params, copy.deepcopy(body), files))

    async def _respond(self, call: FakeCall) -> HttpResponse:
        self.calls.append(call)
        await asyncio.sleep(0)
        queue = self.routes.get((call.method, call.url))
        if not queue:
            raise NetworkError(
                f"No route for {call.method} {call.url}", is_retryable=False, status_code=404
            )
        response = queue.popleft() if len(queue) > 1 else queue[0]
        if isinstance(response, BaseException):
            raise response
        if callable(response):
            response = response(call)
        return HttpResponse(200, copy.deepcopy(response))


class FakeClock:
    """
    Monotonic clock driven by the code under test.

    ``sleep`` yields once to the event loop and then moves time forward, so
    tasks waiting concurrently observe a shared timeline.
    """

    def __init__(self, start: float = 0.0) -> None:
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, delay: float) -> None:
        self.sleeps.append(delay)
        target = self.now + delay
        await asyncio.sleep(0)
        self.now = max(self.now, target)


@pytest.fixture
def migration_document() -> Dict[str, Any]:
    """A fresh copy of the sample config document."""
    return copy.deepcopy(SAMPLE_DOCUMENT)


@pytest.fixture
def fake_http() -> FakeHttpClient:
    return FakeHttpClient()


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def executor_config() -> ExecutorConfig:
    return ExecutorConfig(
        concurrency=5,
        requests_per_second=10,
        retry_attempts=2,
        retry_delay=0.1,
        timeout=5.0,
        batch_size=100,
    )


@pytest.fixture
def pipeline_factory(
    migration_document, fake_http, fake_clock, executor_config
) -> Callable[..., MigrationPipeline]:
    """Build pipelines wired to the fake transport and clock."""

    def factory(document=None, credentials=None, **kwargs) -> MigrationPipeline:
        options = {
            "base_url": BASE_URL,
            "http_client": fake_http,
            "executor_config": executor_config,
            "clock": fake_clock,
            "sleep": fake_clock.sleep,
            "strict": False,
        }
        options.update(kwargs)
        return MigrationPipeline(
            document if document is not None else migration_document,
            credentials if credentials is not None else dict(SAMPLE_CREDENTIALS),
            **options,
        )

    return factory
