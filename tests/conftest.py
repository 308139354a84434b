"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for cluster_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from cluster_mock import MockCluster  # noqa: E402
from vdb_operator.config import Config  # noqa: E402


@pytest.fixture
def config() -> Config:
    return Config(operator_version="test", route_wait_timeout_seconds=0.05)


@pytest.fixture
def cluster(config: Config) -> MockCluster:
    return MockCluster(config)
