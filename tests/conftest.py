"""Pytest configuration and fixtures for aoi-bridge tests."""

import sys
import tempfile
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
import pytest_asyncio

from aoi_bridge.core.bridge import MCPBridge
from aoi_bridge.core.mcp_client import MCPClient
from aoi_bridge.core.transport import StdioTransport
from aoi_bridge.storage.context_store import ContextStore

MOCK_SERVER = Path(__file__).parent / "fixtures" / "mock_stdio_server.py"


class FakeClock:
    """Manually advanced clock for TTL tests."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2025, 1, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def context_store(clock: FakeClock) -> ContextStore:
    """Create a ContextStore driven by the fake clock."""
    return ContextStore(default_ttl=3600, cleanup_interval=60, clock=clock)


@pytest.fixture
def mock_server_transport() -> Callable[..., StdioTransport]:
    """Factory for stdio transports running the mock MCP server."""

    def factory(**env: str) -> StdioTransport:
        return StdioTransport(sys.executable, [str(MOCK_SERVER)], env=env, label="mock")

    return factory


@pytest.fixture
def make_mock_client(mock_server_transport) -> Callable[..., MCPClient]:
    """Factory for unconnected MCP clients talking to the mock server."""

    def factory(name: str = "mock", request_timeout: float = 10.0, **env: str) -> MCPClient:
        return MCPClient(
            lambda: mock_server_transport(**env),
            name=name,
            connect_timeout=10.0,
            request_timeout=request_timeout,
        )

    return factory


@pytest_asyncio.fixture
async def mock_client(make_mock_client):
    """A connected client for the mock server."""
    client = make_mock_client()
    await client.connect()
    yield client
    await client.disconnect()


@pytest_asyncio.fixture
async def bridge(context_store: ContextStore, clock: FakeClock):
    """A bridge over the fake-clock store; every client is disconnected afterwards."""
    bridge = MCPBridge(context_store, cache_timeout=300, clock=clock)
    yield bridge
    await bridge.close()
