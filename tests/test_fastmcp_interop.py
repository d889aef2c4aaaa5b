"""Interoperability tests against a server built with the official MCP SDK."""

import sys
from pathlib import Path

import pytest

from aoi_bridge.core.bridge import AOIQuery, MCPBridge, ToolMapping
from aoi_bridge.core.mcp_client import MCPClient
from aoi_bridge.core.transport import StdioTransport

FASTMCP_SERVER = Path(__file__).parent / "fixtures" / "fastmcp_server.py"


def make_client() -> MCPClient:
    return MCPClient(
        lambda: StdioTransport(sys.executable, [str(FASTMCP_SERVER)], label="interop"),
        name="interop",
        connect_timeout=30,
        request_timeout=30,
    )


@pytest.mark.asyncio
async def test_handshake_and_tools():
    """Test the handshake and a tool call against FastMCP."""
    async with make_client() as client:
        assert client.server_info.name == "interop-server"
        assert client.supports("tools")

        tools = await client.list_tools()
        result = await client.call_tool("add", {"a": 2, "b": 3})

        assert {"add", "shout"} <= {tool.name for tool in tools.tools}
        assert result.isError is False
        assert result.content[0].text == "5"


@pytest.mark.asyncio
async def test_resource_read():
    """Test listing and reading a FastMCP resource."""
    async with make_client() as client:
        listing = await client.list_resources()
        contents = await client.read_resource("note://greeting")

        assert "note://greeting" in [r.uri for r in listing.resources]
        assert contents.contents[0].text == "hello from fastmcp"


@pytest.mark.asyncio
async def test_bridge_query_and_context(context_store, clock):
    """Test a mapped query and a resource fetch through the bridge."""
    bridge = MCPBridge(context_store, clock=clock)
    bridge.add_client("interop", make_client())
    bridge.register_tool_mapping(
        "shout",
        ToolMapping(
            query_pattern="shout",
            server_name="interop",
            tool_name="shout",
            argument_map={"query": "text"},
        ),
    )
    try:
        response = await bridge.handle_query(AOIQuery(query="shout this"))
        entries = await bridge.fetch_resource_as_context("interop", "note://greeting")
    finally:
        await bridge.close()

    assert response.answer == "SHOUT THIS"
    assert response.sources == ["mcp:interop/shout"]
    assert entries[0].content == "hello from fastmcp"
    assert entries[0].source == "mcp:interop"
