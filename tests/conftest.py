"""
Test configuration and fixtures for the tmbridge project.

This file is the root pytest configuration file that sets up pytest
markers and imports fixtures from the fixtures modules to make them
available to all tests.
"""

import pytest

# Import fixtures from the fixtures modules to make them available to all tests
from tests.fixtures.base import base_test_env, mock_env_vars, temp_dir, temp_file

# Import migration fixtures and test doubles
from tests.fixtures.migration import (
    executor_config,
    fake_clock,
    fake_http,
    migration_document,
    pipeline_factory,
)


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: mark a test as a unit test")
    config.addinivalue_line("markers", "integration: mark a test as an integration test")
    config.addinivalue_line("markers", "slow: mark a test that takes longer than average to run")
