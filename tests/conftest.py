"""Test configuration and fixtures."""

import pytest
import pytest_asyncio
from aiohttp.test_utils import TestServer

from tests.helpers import FakeRegistry, GraphBuilder


@pytest.fixture
def graph():
    """A root index of two images sharing a layer.

    index -> image-a -> {config-a, layer-a, shared}
          -> image-b -> {config-b, shared}
    """
    builder = GraphBuilder()
    shared = builder.blob(b"shared layer data" * 100)
    image_a = builder.manifest(builder.config("a"), [builder.blob(b"layer a"), shared])
    image_b = builder.manifest(builder.config("b"), [shared])
    builder.root = builder.index([image_a, image_b])
    builder.image_a = image_a
    builder.image_b = image_b
    builder.shared = shared
    return builder


@pytest_asyncio.fixture
async def source(graph):
    """Memory store holding the graph, with the root tagged ``v1``."""
    return await graph.store({"v1": graph.root})


@pytest_asyncio.fixture
async def fake_registry():
    """Fake Registry API v2 served on a local port."""
    registry = FakeRegistry()
    server = TestServer(registry.make_app())
    await server.start_server()
    registry.url = str(server.make_url("")).rstrip("/")
    yield registry
    await server.close()


# Pytest configuration
def pytest_configure(config):
    """Configure pytest markers and settings."""
    config.addinivalue_line(
        "markers", "integration: mark test as integration test requiring registry"
    )
    config.addinivalue_line("markers", "unit: mark test as unit test (default)")
