"""
Fixtures package for the TMBridge test suite.

This package provides reusable fixtures and test doubles so that every test
module sets up configs, transports and clocks the same way.
"""

from tests.fixtures.base import base_test_env, mock_env_vars, temp_dir, temp_file
from tests.fixtures.migration import (
    FakeClock,
    FakeHttpClient,
    executor_config,
    fake_clock,
    fake_http,
    migration_document,
    pipeline_factory,
)
