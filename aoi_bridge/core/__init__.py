"""Core MCP client and bridge functionality."""

from .bridge import AOIQuery, AOIResponse, BridgeConfig, MCPBridge, ToolCallRequest, ToolMapping
from .config import MCPServerConfig, Settings, load_settings
from .mcp_client import MCPClient
from .transport import HTTPTransport, StdioTransport, Transport

__all__ = [
    "AOIQuery",
    "AOIResponse",
    "BridgeConfig",
    "HTTPTransport",
    "MCPBridge",
    "MCPClient",
    "MCPServerConfig",
    "Settings",
    "StdioTransport",
    "ToolCallRequest",
    "ToolMapping",
    "Transport",
    "load_settings",
]
