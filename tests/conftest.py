"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for k8s_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from contentcloud.config import Config  # noqa: E402
from k8s_mock import MockCluster  # noqa: E402


@pytest.fixture
def cluster() -> MockCluster:
    """An empty in-memory cluster."""
    return MockCluster()


@pytest.fixture
def config() -> Config:
    """Operator configuration with a fixed database password."""
    return Config(insecure_database_password="insecure-password")
