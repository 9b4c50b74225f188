"""Test configuration and fixtures."""

import pytest
import pytest_asyncio

from imgex.core.config import ExportConfig
from imgex.core.types import Platform
from tests.helpers import FakeRegistry


@pytest_asyncio.fixture
async def registry():
    """Running in-process fake registry."""
    fake = FakeRegistry()
    await fake.start()
    try:
        yield fake
    finally:
        await fake.close()


@pytest.fixture
def export_config(tmp_path):
    """Fast, isolated export configuration (no backoff, no Docker config)."""
    return ExportConfig(
        timeout=10,
        backoff_base=0,
        platform=Platform("linux", "amd64"),
        docker_config_path=tmp_path / "docker-config.json",
        chunk_size=4096,
    )


# Pytest configuration
def pytest_configure(config):
    """Configure pytest markers and settings."""
    config.addinivalue_line(
        "markers", "integration: mark test as integration test requiring registry"
    )
    config.addinivalue_line("markers", "unit: mark test as unit test (default)")
