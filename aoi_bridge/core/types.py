"""MCP protocol message types.

Pydantic models for the JSON-RPC envelope and the MCP request/result
shapes used by the client. Field names follow the wire format (camelCase),
as the MCP SDK's own type module does, so models can be dumped straight
onto the wire with ``model_dump(exclude_none=True)``.

Text and image blocks, prompts, client capabilities and log notification
params come from ``mcp.types``. The remaining models stay local because
they accept what servers send in practice: tools without ``inputSchema``,
server info without ``version``, resource URIs that are not URLs, and
content block types newer than this client.
"""

import logging
from typing import Annotated, Any, Literal

from mcp.types import (
    ClientCapabilities,
    ImageContent,
    LoggingMessageNotificationParams,
    Prompt,
    RootsCapability,
    TextContent,
)
from pydantic import BaseModel, ConfigDict, Discriminator, Field, Tag

PROTOCOL_VERSION = "2024-11-05"
JSONRPC_VERSION = "2.0"

RequestId = int | str


class MCPModel(BaseModel):
    """Base model: tolerate fields added by newer protocol revisions."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)


# ============================================================================
# JSON-RPC envelope
# ============================================================================


class JSONRPCErrorObject(MCPModel):
    code: int
    message: str
    data: Any = None


class JSONRPCResponse(MCPModel):
    jsonrpc: str = JSONRPC_VERSION
    id: RequestId | None = None
    result: Any = None
    error: JSONRPCErrorObject | None = None


def make_message(
    method: str, params: dict[str, Any] | None = None, request_id: RequestId | None = None
) -> dict[str, Any]:
    """Build a JSON-RPC request (with ``request_id``) or notification (without)."""
    message: dict[str, Any] = {"jsonrpc": JSONRPC_VERSION}
    if request_id is not None:
        message["id"] = request_id
    message["method"] = method
    if params is not None:
        message["params"] = params
    return message


# ============================================================================
# Initialization
# ============================================================================


class Implementation(MCPModel):
    """Describes a client or server implementation."""

    name: str
    version: str = ""


class ToolsCapability(MCPModel):
    listChanged: bool = False


class ResourcesCapability(MCPModel):
    subscribe: bool = False
    listChanged: bool = False


class PromptsCapability(MCPModel):
    listChanged: bool = False


class LoggingCapability(MCPModel):
    pass


class ServerCapabilities(MCPModel):
    """Capabilities advertised by a server; an absent field means unsupported."""

    experimental: dict[str, Any] | None = None
    logging: LoggingCapability | None = None
    prompts: PromptsCapability | None = None
    resources: ResourcesCapability | None = None
    tools: ToolsCapability | None = None

    def supported(self) -> dict[str, bool]:
        """Flag view of the capabilities, as reported in status output."""
        return {
            "tools": self.tools is not None,
            "resources": self.resources is not None,
            "prompts": self.prompts is not None,
            "logging": self.logging is not None,
        }


class InitializeParams(MCPModel):
    protocolVersion: str
    capabilities: ClientCapabilities
    clientInfo: Implementation


class InitializeResult(MCPModel):
    protocolVersion: str
    capabilities: ServerCapabilities = Field(default_factory=ServerCapabilities)
    serverInfo: Implementation
    instructions: str | None = None


# ============================================================================
# Content
# ============================================================================


class ResourceContents(MCPModel):
    """Contents of a resource: either ``text`` or base64 ``blob``."""

    uri: str
    mimeType: str | None = None
    text: str | None = None
    blob: str | None = None

    @property
    def is_blob(self) -> bool:
        return self.text is None and self.blob is not None


class EmbeddedResource(MCPModel):
    type: Literal["resource"] = "resource"
    resource: ResourceContents


class UnknownContent(MCPModel):
    """A block type this client does not interpret, e.g. audio or resource_link."""

    type: str


KNOWN_CONTENT_TYPES = frozenset({"text", "image", "resource"})


def _content_kind(value: Any) -> str:
    kind = value.get("type") if isinstance(value, dict) else getattr(value, "type", None)
    return kind if kind in KNOWN_CONTENT_TYPES else "unknown"


ContentBlock = Annotated[
    Annotated[TextContent, Tag("text")]
    | Annotated[ImageContent, Tag("image")]
    | Annotated[EmbeddedResource, Tag("resource")]
    | Annotated[UnknownContent, Tag("unknown")],
    Discriminator(_content_kind),
]


# ============================================================================
# Tools
# ============================================================================


class Tool(MCPModel):
    name: str
    description: str | None = None
    inputSchema: dict[str, Any] = Field(default_factory=lambda: {"type": "object"})


class ListToolsResult(MCPModel):
    tools: list[Tool] = Field(default_factory=list)
    nextCursor: str | None = None


class CallToolParams(MCPModel):
    name: str
    arguments: dict[str, Any] | None = None


class CallToolResult(MCPModel):
    content: list[ContentBlock] = Field(default_factory=list)
    isError: bool = False


# ============================================================================
# Resources
# ============================================================================


class Resource(MCPModel):
    uri: str
    name: str = ""
    description: str | None = None
    mimeType: str | None = None


class ListResourcesResult(MCPModel):
    resources: list[Resource] = Field(default_factory=list)
    nextCursor: str | None = None


class ReadResourceParams(MCPModel):
    uri: str


class ReadResourceResult(MCPModel):
    contents: list[ResourceContents] = Field(default_factory=list)


class ResourceTemplate(MCPModel):
    uriTemplate: str
    name: str = ""
    description: str | None = None
    mimeType: str | None = None


class ListResourceTemplatesResult(MCPModel):
    resourceTemplates: list[ResourceTemplate] = Field(default_factory=list)
    nextCursor: str | None = None


# ============================================================================
# Prompts
# ============================================================================


class ListPromptsResult(MCPModel):
    prompts: list[Prompt] = Field(default_factory=list)
    nextCursor: str | None = None


class GetPromptParams(MCPModel):
    name: str
    arguments: dict[str, str] | None = None


class PromptMessage(MCPModel):
    role: Literal["user", "assistant"]
    content: ContentBlock


class GetPromptResult(MCPModel):
    description: str | None = None
    messages: list[PromptMessage] = Field(default_factory=list)


# ============================================================================
# Logging notifications
# ============================================================================

# MCP (syslog-style) log levels mapped onto Python logging levels
LOG_LEVELS: dict[str, int] = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "notice": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
    "alert": logging.CRITICAL,
    "emergency": logging.CRITICAL,
}
