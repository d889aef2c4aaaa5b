"""AOI Bridge - MCP protocol bridge and context store for AOI agents."""

__version__ = "0.1.0"

from .core.bridge import AOIQuery, AOIResponse, MCPBridge, ToolCallRequest, ToolMapping
from .core.config import Settings, load_settings
from .core.mcp_client import MCPClient
from .server.rpc import RPCDispatcher
from .storage.context_store import ContextEntry, ContextEntryType, ContextQuery, ContextStore

__all__ = [
    "AOIQuery",
    "AOIResponse",
    "ContextEntry",
    "ContextEntryType",
    "ContextQuery",
    "ContextStore",
    "MCPBridge",
    "MCPClient",
    "RPCDispatcher",
    "Settings",
    "ToolCallRequest",
    "ToolMapping",
    "load_settings",
]
