"""Bridge between free-form agent queries and MCP servers.

The bridge owns a registry of named MCP clients and an ordered list of
query-pattern -> tool mappings. It translates agent queries into tool
calls, normalizes tool results into AOI responses, and copies fetched
MCP resources into the context store.
"""

import logging
import threading
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any, Literal, Self, assert_never

from pydantic import BaseModel, Field

from aoi_bridge.storage.context_store import ContextEntry, ContextEntryType, ContextStore, utcnow
from aoi_bridge.utils.errors import (
    AOIError,
    ClientNotFoundError,
    ServerOperationError,
    SyncError,
    TranslationError,
)

from .config import Settings
from .mcp_client import MCPClient
from .types import (
    CallToolResult,
    EmbeddedResource,
    ImageContent,
    Implementation,
    Prompt,
    Resource,
    ResourceContents,
    ServerCapabilities,
    TextContent,
    Tool,
    UnknownContent,
)

logger = logging.getLogger(__name__)

DEFAULT_CACHE_TIMEOUT = 300.0
SUCCESS_CONFIDENCE = 0.85
ERROR_ANSWER = "Error executing tool"
RESOURCE_TOPICS = ("mcp", "resource")


class ToolMapping(BaseModel):
    """How queries containing ``query_pattern`` map onto an MCP tool."""

    query_pattern: str
    server_name: str
    tool_name: str
    description: str = ""
    argument_map: dict[str, str] = Field(
        default_factory=dict, description="Query field -> tool argument name"
    )
    result_handler: str = ""


class AOIQuery(BaseModel):
    """A semantic query from an agent."""

    query: str
    context_scope: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class ToolCallRequest(BaseModel):
    """A concrete tool invocation, usually produced by query translation."""

    server_name: str
    tool_name: str
    arguments: dict[str, Any] = Field(default_factory=dict)
    mapping: ToolMapping | None = None


class AOIResponse(BaseModel):
    """Normalized answer returned to agents."""

    answer: str
    confidence: float
    sources: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)


class CachedResource(BaseModel):
    uri: str
    contents: list[ResourceContents] = Field(default_factory=list)
    cached_at: datetime
    expires_at: datetime


class DiscoveryResult(BaseModel):
    """Server identity plus capability-gated listings.

    A listing is None when the server did not advertise the capability.
    """

    server_name: str
    server_info: Implementation | None = None
    capabilities: ServerCapabilities = Field(default_factory=ServerCapabilities)
    tools: list[Tool] | None = None
    resources: list[Resource] | None = None
    prompts: list[Prompt] | None = None


class BridgeEvent(BaseModel):
    """Details of a tool call or resource fetch, for audit collaborators."""

    event_type: Literal["tool_call", "resource_fetch"]
    server: str
    tool: str | None = None
    uri: str | None = None
    success: bool
    summary: str
    timestamp: datetime = Field(default_factory=utcnow)


class BridgeConfig(BaseModel):
    """Runtime configuration applied by MCPBridge.configure()."""

    cache_timeout: float | None = None
    tool_mappings: list[ToolMapping] = Field(default_factory=list)

    @classmethod
    def from_settings(cls, settings: Settings) -> "BridgeConfig":
        return cls(
            cache_timeout=settings.mcp_cache_timeout,
            tool_mappings=[
                ToolMapping.model_validate(mapping.model_dump())
                for mapping in settings.tool_mappings
            ],
        )


EventListener = Callable[[BridgeEvent], None]


class MCPBridge:
    """
    Registry of MCP clients plus query translation and resource syncing.

    The registry, tool mappings and resource cache share one lock. Network
    calls are never made while holding it.
    """

    def __init__(
        self,
        context_store: ContextStore,
        cache_timeout: float = DEFAULT_CACHE_TIMEOUT,
        event_listener: EventListener | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize the bridge.

        Args:
            context_store: Store receiving fetched resources
            cache_timeout: Seconds a fetched resource stays in the cache
            event_listener: Optional callable receiving a BridgeEvent for every
                tool call and resource fetch
            clock: Returns the current time (timezone-aware)
        """
        self.context_store = context_store
        self.cache_timeout = timedelta(seconds=cache_timeout)
        self.event_listener = event_listener
        self._clock = clock

        self._lock = threading.RLock()
        self._clients: dict[str, MCPClient] = {}
        self._tool_mappings: list[ToolMapping] = []
        self._resource_cache: dict[str, CachedResource] = {}
        self._auto_connect: list[str] = []

    @classmethod
    def from_config(
        cls,
        settings: Settings,
        context_store: ContextStore,
        event_listener: EventListener | None = None,
    ) -> Self:
        """Build a bridge with one (unconnected) client per configured server."""
        bridge = cls(
            context_store,
            cache_timeout=settings.mcp_cache_timeout,
            event_listener=event_listener,
        )
        bridge.configure(BridgeConfig.from_settings(settings))

        if not settings.mcp_enabled:
            logger.info("MCP integration disabled; no servers registered")
            return bridge

        for server in settings.mcp_servers:
            bridge.add_client(server.name, MCPClient.from_config(server, settings))
            if server.auto_connect:
                bridge._auto_connect.append(server.name)
        return bridge

    def configure(self, config: BridgeConfig) -> None:
        """Apply cache timeout and append tool mappings in configuration order."""
        with self._lock:
            if config.cache_timeout and config.cache_timeout > 0:
                self.cache_timeout = timedelta(seconds=config.cache_timeout)
        for mapping in config.tool_mappings:
            self.register_tool_mapping(mapping.query_pattern, mapping)

    async def connect_auto_servers(self) -> list[str]:
        """Connect every server flagged auto_connect. Failures are logged and skipped.

        Returns:
            Names of the servers that connected
        """
        connected = []
        for name in list(self._auto_connect):
            client = self.get_client(name)
            if client is None:
                continue
            try:
                await client.connect()
                connected.append(name)
            except AOIError as e:
                logger.warning(f"Auto-connect to MCP server '{name}' failed: {e}")
        return connected

    # Registry

    def add_client(self, name: str, client: MCPClient) -> None:
        with self._lock:
            if name in self._clients:
                logger.warning(f"Replacing registered MCP client: {name}")
            self._clients[name] = client
        logger.info(f"Registered MCP client: {name}")

    async def remove_client(self, name: str) -> None:
        """
        Disconnect a client and remove it from the registry.

        Raises:
            ClientNotFoundError: If no client is registered under ``name``
        """
        client = self.get_client(name)
        if client is None:
            raise ClientNotFoundError(name)

        try:
            await client.disconnect()
        except AOIError as e:
            logger.error(f"Error disconnecting MCP client {name}: {e}")

        with self._lock:
            if self._clients.get(name) is client:
                del self._clients[name]
        logger.info(f"Removed MCP client: {name}")

    def get_client(self, name: str) -> MCPClient | None:
        with self._lock:
            return self._clients.get(name)

    def list_clients(self) -> list[str]:
        """Registered client names in registration order."""
        with self._lock:
            return list(self._clients)

    def _require_client(self, name: str) -> MCPClient:
        client = self.get_client(name)
        if client is None:
            raise ClientNotFoundError(name)
        return client

    async def _ensure_connected(self, name: str, client: MCPClient) -> None:
        if client.is_connected:
            return
        try:
            await client.connect()
        except AOIError as e:
            raise ServerOperationError("connect", name, e) from e

    async def close(self) -> None:
        """Disconnect every registered client."""
        for name in self.list_clients():
            client = self.get_client(name)
            if client is None:
                continue
            try:
                await client.disconnect()
            except AOIError as e:
                logger.error(f"Error disconnecting MCP client {name}: {e}")

    # Query translation

    def register_tool_mapping(self, pattern: str, mapping: ToolMapping) -> None:
        """
        Register a mapping for queries containing ``pattern``.

        Mappings are matched in registration order. Registering a pattern
        again replaces its mapping without changing its position.
        """
        if mapping.query_pattern != pattern:
            mapping = mapping.model_copy(update={"query_pattern": pattern})
        with self._lock:
            for i, existing in enumerate(self._tool_mappings):
                if existing.query_pattern == pattern:
                    self._tool_mappings[i] = mapping
                    return
            self._tool_mappings.append(mapping)

    def list_tool_mappings(self) -> list[ToolMapping]:
        with self._lock:
            return list(self._tool_mappings)

    def translate_query_to_tool_call(self, query: AOIQuery) -> ToolCallRequest:
        """
        Translate a query using the first mapping whose pattern it contains.

        Matching is a case-insensitive substring test.

        Raises:
            TranslationError: If no mapping matches
        """
        text = query.query.lower()
        with self._lock:
            mapping = next(
                (m for m in self._tool_mappings if m.query_pattern.lower() in text), None
            )
        if mapping is None:
            raise TranslationError(query.query)

        return ToolCallRequest(
            server_name=mapping.server_name,
            tool_name=mapping.tool_name,
            arguments=_extract_arguments(query, mapping),
            mapping=mapping,
        )

    async def execute_tool_call(self, request: ToolCallRequest) -> AOIResponse:
        """
        Run a tool call, connecting the client first if needed.

        A tool that reports an error yields a zero-confidence response rather
        than an exception.

        Raises:
            ClientNotFoundError: If the server is not registered
            ServerOperationError: If connecting or calling the tool failed
        """
        client = self._require_client(request.server_name)
        try:
            await self._ensure_connected(request.server_name, client)
            result = await client.call_tool(request.tool_name, request.arguments)
        except ServerOperationError as e:
            self._emit_tool_event(request, success=False, summary=str(e))
            raise
        except AOIError as e:
            self._emit_tool_event(request, success=False, summary=str(e))
            raise ServerOperationError(
                "tool call", request.server_name, e, tool=request.tool_name
            ) from e

        response = translate_tool_result(result, request)
        self._emit_tool_event(
            request,
            success=not result.isError,
            summary=ERROR_ANSWER if result.isError else f"Returned {len(response.answer)} chars",
        )
        return response

    async def handle_query(self, query: AOIQuery) -> AOIResponse:
        """Translate a query and execute the resulting tool call."""
        return await self.execute_tool_call(self.translate_query_to_tool_call(query))

    # Resources

    async def fetch_resource_as_context(self, server_name: str, uri: str) -> list[ContextEntry]:
        """
        Read a resource, cache it, and store one context entry per content block.

        Returns:
            The stored context entries

        Raises:
            ClientNotFoundError: If the server is not registered
            ServerOperationError: If connecting or reading failed
        """
        client = self._require_client(server_name)
        try:
            await self._ensure_connected(server_name, client)
            result = await client.read_resource(uri)
        except ServerOperationError as e:
            self._emit_resource_event(server_name, uri, success=False, summary=str(e))
            raise
        except AOIError as e:
            self._emit_resource_event(server_name, uri, success=False, summary=str(e))
            raise ServerOperationError("resource read", server_name, e, uri=uri) from e

        now = self._clock()
        with self._lock:
            self._resource_cache[uri] = CachedResource(
                uri=uri,
                contents=result.contents,
                cached_at=now,
                expires_at=now + self.cache_timeout,
            )

        entries = [
            self.context_store.store(_resource_entry(server_name, uri, contents))
            for contents in result.contents
        ]
        logger.info(f"Stored {len(entries)} context entries for {uri} from {server_name}")
        self._emit_resource_event(
            server_name, uri, success=True, summary=f"Stored {len(entries)} context entries"
        )
        return entries

    def get_cached_resource(self, uri: str) -> CachedResource | None:
        """Return a cached resource, evicting it if it has expired."""
        now = self._clock()
        with self._lock:
            cached = self._resource_cache.get(uri)
            if cached is None:
                return None
            if now > cached.expires_at:
                del self._resource_cache[uri]
                return None
            return cached

    async def sync_all_resources(self) -> int:
        """
        Fetch every resource of every connected client into the context store.

        A failing server or resource is logged and skipped; the remaining
        resources are still fetched.

        Returns:
            Number of resources fetched

        Raises:
            SyncError: After the sync, if at least one step failed
        """
        with self._lock:
            clients = list(self._clients.items())

        failures: list[str] = []
        fetched = 0
        for name, client in clients:
            if not client.is_connected:
                continue

            try:
                listing = await client.list_resources()
            except AOIError as e:
                logger.error(f"Failed to list resources on {name}: {e}")
                failures.append(f"{name}: {e}")
                continue

            for resource in listing.resources:
                try:
                    await self.fetch_resource_as_context(name, resource.uri)
                    fetched += 1
                except AOIError as e:
                    logger.error(f"Failed to fetch resource {resource.uri}: {e}")
                    failures.append(f"{name} ({resource.uri}): {e}")

        if failures:
            raise SyncError(failures)
        logger.info(f"Synced {fetched} resources from {len(clients)} servers")
        return fetched

    # Discovery and status

    async def list_tools(self, server_name: str) -> list[Tool]:
        """List a server's tools, connecting first if needed."""
        client = self._require_client(server_name)
        await self._ensure_connected(server_name, client)
        try:
            return (await client.list_tools()).tools
        except AOIError as e:
            raise ServerOperationError("tool listing", server_name, e) from e

    async def list_resources(self, server_name: str) -> list[Resource]:
        """List a server's resources, connecting first if needed."""
        client = self._require_client(server_name)
        await self._ensure_connected(server_name, client)
        try:
            return (await client.list_resources()).resources
        except AOIError as e:
            raise ServerOperationError("resource listing", server_name, e) from e

    async def discover_server(self, server_name: str) -> DiscoveryResult:
        """
        Connect if needed and list whatever the server supports.

        Raises:
            ClientNotFoundError: If the server is not registered
            ServerOperationError: If connecting or listing failed
        """
        client = self._require_client(server_name)
        await self._ensure_connected(server_name, client)

        result = DiscoveryResult(
            server_name=server_name,
            server_info=client.server_info,
            capabilities=client.capabilities,
        )
        try:
            if client.supports("tools"):
                result.tools = (await client.list_tools()).tools
            if client.supports("resources"):
                result.resources = (await client.list_resources()).resources
            if client.supports("prompts"):
                result.prompts = (await client.list_prompts()).prompts
        except AOIError as e:
            raise ServerOperationError("discovery", server_name, e) from e
        return result

    def get_status(self) -> dict[str, Any]:
        """
        Get bridge status.

        Returns:
            Dictionary with per-server state, server and connected counts,
            live cached resource count and tool mapping count
        """
        now = self._clock()
        with self._lock:
            servers = []
            for name, client in self._clients.items():
                status: dict[str, Any] = {"name": name, "connected": client.is_connected}
                if client.server_info is not None:
                    status["server_info"] = client.server_info.model_dump(exclude_none=True)
                    status["capabilities"] = client.capabilities.supported()
                servers.append(status)

            return {
                "servers": servers,
                "server_count": len(servers),
                "connected_count": sum(1 for s in servers if s["connected"]),
                "cached_resources": sum(
                    1 for c in self._resource_cache.values() if now <= c.expires_at
                ),
                "tool_mappings": len(self._tool_mappings),
            }

    # Events

    def _emit(self, event: BridgeEvent) -> None:
        if self.event_listener is None:
            return
        try:
            self.event_listener(event)
        except Exception as e:
            logger.error(f"Bridge event listener failed for {event.event_type}: {e}")

    def _emit_tool_event(self, request: ToolCallRequest, success: bool, summary: str) -> None:
        self._emit(
            BridgeEvent(
                event_type="tool_call",
                server=request.server_name,
                tool=request.tool_name,
                success=success,
                summary=summary,
            )
        )

    def _emit_resource_event(self, server: str, uri: str, success: bool, summary: str) -> None:
        self._emit(
            BridgeEvent(
                event_type="resource_fetch",
                server=server,
                uri=uri,
                success=success,
                summary=summary,
            )
        )


def _extract_arguments(query: AOIQuery, mapping: ToolMapping) -> dict[str, Any]:
    """Build tool arguments from a query according to a mapping."""
    args: dict[str, Any] = {"query": query.query, "input": query.query}
    if query.context_scope:
        args["context"] = query.context_scope

    for field, argument in mapping.argument_map.items():
        if field == "query":
            args[argument] = query.query
        elif field == "context_scope":
            args[argument] = query.context_scope
        elif field in query.metadata:
            args[argument] = query.metadata[field]
    return args


def translate_tool_result(result: CallToolResult, request: ToolCallRequest) -> AOIResponse:
    """Normalize a tool result into an AOI response."""
    metadata: dict[str, Any] = {"tool": request.tool_name, "server": request.server_name}

    if result.isError:
        return AOIResponse(
            answer=ERROR_ANSWER,
            confidence=0.0,
            metadata={"error": True, **metadata},
        )

    texts = []
    for block in result.content:
        match block:
            case TextContent(text=text):
                if text:
                    texts.append(text)
            case ImageContent() | EmbeddedResource() | UnknownContent():
                continue
            case _:
                assert_never(block)

    if request.mapping is not None and request.mapping.result_handler:
        metadata["result_handler"] = request.mapping.result_handler

    return AOIResponse(
        answer="\n".join(texts),
        confidence=SUCCESS_CONFIDENCE,
        sources=[f"mcp:{request.server_name}/{request.tool_name}"],
        metadata=metadata,
    )


def _resource_entry(server_name: str, uri: str, contents: ResourceContents) -> ContextEntry:
    metadata: dict[str, Any] = {"uri": uri, "mime_type": contents.mimeType, "server": server_name}
    if contents.is_blob:
        metadata["blob"] = True
    return ContextEntry(
        type=ContextEntryType.PROJECT,
        source=f"mcp:{server_name}",
        content=contents.text or "",
        summary=f"MCP Resource: {uri}",
        topics=RESOURCE_TOPICS,
        metadata=metadata,
    )
