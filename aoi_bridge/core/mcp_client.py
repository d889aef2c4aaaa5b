"""MCP client connection handler.

This module manages one connection to an MCP server: it runs the
capability-negotiating handshake, exposes ``call``/``notify`` primitives
and wraps the protocol's tool, resource and prompt methods.
"""

import asyncio
import logging
from collections.abc import Callable
from typing import Any, Self, TypeVar

from pydantic import BaseModel, ValidationError

from aoi_bridge.utils.errors import NotConnectedError, ProtocolError, UnsupportedFeatureError

from .config import MCPServerConfig, Settings, TransportType
from .transport import Transport, transport_from_config
from .types import (
    PROTOCOL_VERSION,
    CallToolParams,
    CallToolResult,
    ClientCapabilities,
    GetPromptParams,
    GetPromptResult,
    Implementation,
    InitializeParams,
    InitializeResult,
    ListPromptsResult,
    ListResourcesResult,
    ListResourceTemplatesResult,
    ListToolsResult,
    ReadResourceParams,
    ReadResourceResult,
    RootsCapability,
    ServerCapabilities,
)

logger = logging.getLogger(__name__)

ResultT = TypeVar("ResultT", bound=BaseModel)

DEFAULT_CLIENT_NAME = "aoi-mcp-client"
DEFAULT_CLIENT_VERSION = "1.0.0"


class MCPClient:
    """
    MCP client for one named server.

    This class handles:
    - Opening the transport and running the initialize handshake
    - Request/notification primitives with per-call timeouts
    - Capability-gated tool, resource and prompt operations
    - Tearing the connection down on failure and on disconnect
    """

    def __init__(
        self,
        transport_factory: Callable[[], Transport],
        name: str = "mcp",
        client_name: str = DEFAULT_CLIENT_NAME,
        client_version: str = DEFAULT_CLIENT_VERSION,
        connect_timeout: float = 30.0,
        request_timeout: float = 60.0,
    ):
        """
        Initialize MCP client.

        Args:
            transport_factory: Builds a fresh, unstarted transport for each connect()
            name: Server name used in log messages and by the bridge registry
            client_name: Name sent as clientInfo during the handshake
            client_version: Version sent as clientInfo during the handshake
            connect_timeout: Deadline in seconds for the initialize request
            request_timeout: Default deadline in seconds for other requests
        """
        self.name = name
        self.client_name = client_name
        self.client_version = client_version
        self.connect_timeout = connect_timeout
        self.request_timeout = request_timeout

        self._transport_factory = transport_factory
        self._transport: Transport | None = None
        self._connect_lock = asyncio.Lock()
        self._connected = False

        self.server_info: Implementation | None = None
        self.capabilities: ServerCapabilities = ServerCapabilities()
        self.protocol_version: str | None = None
        self.instructions: str | None = None

    @classmethod
    def from_config(cls, config: MCPServerConfig, settings: Settings | None = None) -> Self:
        """Create a client for a configured server.

        When settings are given and a stdio server has no explicit
        stderr_log_file, its stderr goes to settings.get_log_file(name).
        """
        if (
            settings is not None
            and config.transport is TransportType.STDIO
            and config.stderr_log_file is None
        ):
            config = config.model_copy(
                update={"stderr_log_file": settings.get_log_file(config.name)}
            )
        settings = settings or Settings()
        return cls(
            lambda: transport_from_config(config, request_timeout=settings.request_timeout),
            name=config.name,
            client_name=settings.client_name,
            client_version=settings.client_version,
            connect_timeout=settings.connect_timeout,
            request_timeout=settings.request_timeout,
        )

    @property
    def is_connected(self) -> bool:
        return self._connected and self._transport is not None and self._transport.is_open

    async def connect(self) -> None:
        """
        Connect to the server and complete the handshake.

        Does nothing if already connected. On any failure the transport is
        closed (killing a spawned server) before the error propagates.
        """
        async with self._connect_lock:
            if self.is_connected:
                return
            # A previous connection may have dropped; release it first
            await self._teardown()

            transport = self._transport_factory()
            logger.info(f"Connecting to MCP server: {self.name}")
            try:
                await transport.start()
                result = await self._handshake(transport)
            except BaseException as e:
                logger.error(f"Failed to connect to MCP server '{self.name}': {e}")
                await transport.close()
                raise

            self._transport = transport
            self._connected = True
            self.server_info = result.serverInfo
            self.capabilities = result.capabilities
            self.protocol_version = result.protocolVersion
            self.instructions = result.instructions
            logger.info(
                f"Connected to MCP server '{self.name}' "
                f"({result.serverInfo.name} {result.serverInfo.version})".rstrip()
            )

    async def _handshake(self, transport: Transport) -> InitializeResult:
        params = InitializeParams(
            protocolVersion=PROTOCOL_VERSION,
            capabilities=ClientCapabilities(roots=RootsCapability(listChanged=True)),
            clientInfo=Implementation(name=self.client_name, version=self.client_version),
        )
        raw = await transport.request(
            "initialize", params.model_dump(exclude_none=True), timeout=self.connect_timeout
        )
        result = self._parse(InitializeResult, raw, "initialize")
        if result.protocolVersion != PROTOCOL_VERSION:
            logger.warning(
                f"[{self.name}] Server negotiated protocol {result.protocolVersion} "
                f"(requested {PROTOCOL_VERSION})"
            )
        await transport.notify("notifications/initialized")
        return result

    async def disconnect(self) -> None:
        """Close the connection. Safe to call repeatedly or after a failed connect."""
        async with self._connect_lock:
            if self._transport is not None:
                logger.info(f"Disconnecting from MCP server: {self.name}")
            await self._teardown()

    async def _teardown(self) -> None:
        transport = self._transport
        self._transport = None
        self._connected = False
        self.server_info = None
        self.capabilities = ServerCapabilities()
        self.protocol_version = None
        self.instructions = None
        if transport is not None:
            await transport.close()

    async def __aenter__(self) -> Self:
        await self.connect()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.disconnect()

    def _require_transport(self) -> Transport:
        if not self._connected or self._transport is None:
            raise NotConnectedError(f"Call connect() before using MCP server '{self.name}'")
        return self._transport

    async def call(
        self, method: str, params: dict[str, Any] | None = None, timeout: float | None = None
    ) -> Any:
        """
        Send a request and wait for its result.

        Args:
            method: JSON-RPC method name
            params: Request parameters
            timeout: Deadline in seconds (defaults to request_timeout)

        Returns:
            The raw ``result`` member of the response

        Raises:
            NotConnectedError: If connect() has not completed
            RPCError: If the server answered with an error
            RequestTimeoutError: If the deadline elapsed
        """
        transport = self._require_transport()
        return await transport.request(
            method, params, timeout=self.request_timeout if timeout is None else timeout
        )

    async def notify(self, method: str, params: dict[str, Any] | None = None) -> None:
        """Send a notification; no response is expected."""
        await self._require_transport().notify(method, params)

    def supports(self, feature: str) -> bool:
        """Whether the server advertised ``feature`` (tools, resources, prompts, logging)."""
        return self.capabilities.supported().get(feature, False)

    def _require_capability(self, feature: str) -> None:
        self._require_transport()
        if not self.supports(feature):
            raise UnsupportedFeatureError(feature)

    def _parse(self, model: type[ResultT], raw: Any, method: str) -> ResultT:
        try:
            return model.model_validate(raw if raw is not None else {})
        except ValidationError as e:
            raise ProtocolError(f"Invalid result for '{method}' from '{self.name}': {e}") from e

    # Tools

    async def list_tools(self, timeout: float | None = None) -> ListToolsResult:
        self._require_capability("tools")
        raw = await self.call("tools/list", {}, timeout)
        return self._parse(ListToolsResult, raw, "tools/list")

    async def call_tool(
        self, name: str, arguments: dict[str, Any] | None = None, timeout: float | None = None
    ) -> CallToolResult:
        """
        Call a tool on the server.

        A tool that fails while running reports ``isError=True`` in the
        returned result; only protocol and transport failures raise.
        """
        self._require_capability("tools")
        logger.info(f"[{self.name}] Calling tool: {name} with arguments: {arguments}")
        params = CallToolParams(name=name, arguments=arguments or {})
        raw = await self.call("tools/call", params.model_dump(), timeout)
        return self._parse(CallToolResult, raw, "tools/call")

    # Resources

    async def list_resources(self, timeout: float | None = None) -> ListResourcesResult:
        self._require_capability("resources")
        raw = await self.call("resources/list", {}, timeout)
        return self._parse(ListResourcesResult, raw, "resources/list")

    async def read_resource(self, uri: str, timeout: float | None = None) -> ReadResourceResult:
        self._require_capability("resources")
        raw = await self.call("resources/read", ReadResourceParams(uri=uri).model_dump(), timeout)
        return self._parse(ReadResourceResult, raw, "resources/read")

    async def list_resource_templates(
        self, timeout: float | None = None
    ) -> ListResourceTemplatesResult:
        self._require_capability("resources")
        raw = await self.call("resources/templates/list", {}, timeout)
        return self._parse(ListResourceTemplatesResult, raw, "resources/templates/list")

    # Prompts

    async def list_prompts(self, timeout: float | None = None) -> ListPromptsResult:
        self._require_capability("prompts")
        raw = await self.call("prompts/list", {}, timeout)
        return self._parse(ListPromptsResult, raw, "prompts/list")

    async def get_prompt(
        self, name: str, arguments: dict[str, str] | None = None, timeout: float | None = None
    ) -> GetPromptResult:
        self._require_capability("prompts")
        params = GetPromptParams(name=name, arguments=arguments)
        raw = await self.call("prompts/get", params.model_dump(exclude_none=True), timeout)
        return self._parse(GetPromptResult, raw, "prompts/get")
