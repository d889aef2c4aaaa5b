"""JSON-RPC method dispatch onto the bridge and context store.

The surrounding agent server hands decoded requests to ``RPCDispatcher``.
Every failure comes back as a structured ``{code, message, data}`` error
object; internal tracebacks never reach the caller.
"""

import inspect
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from aoi_bridge.core.bridge import AOIQuery, MCPBridge, ToolCallRequest
from aoi_bridge.storage.context_store import ContextQuery, ContextStore
from aoi_bridge.utils.errors import (
    EXPIRED,
    INTERNAL_ERROR,
    INVALID_PARAMS,
    INVALID_REQUEST,
    METHOD_NOT_FOUND,
    NOT_FOUND,
    PERMISSION_DENIED,
    REQUEST_TIMEOUT,
    AOIError,
    ExpiredError,
    NotFoundError,
    PermissionDeniedError,
    ProtocolError,
    RequestTimeoutError,
    ServerOperationError,
    TranslationError,
    UnsupportedFeatureError,
)

logger = logging.getLogger(__name__)

# check(agent_id, resource, action) -> allowed
PermissionChecker = Callable[[str, str, str], bool | Awaitable[bool]]

ANONYMOUS_AGENT = "anonymous"


class ServerParams(BaseModel):
    server_name: str = Field(..., min_length=1)


class ToolCallParams(ServerParams):
    tool_name: str = Field(..., min_length=1)
    arguments: dict[str, Any] = Field(default_factory=dict)


class ReadParams(ServerParams):
    uri: str = Field(..., min_length=1)


class EntryParams(BaseModel):
    id: str = Field(..., min_length=1)


class RPCDispatcher:
    """
    Route ``aoi.mcp.*`` and ``aoi.context.*`` methods.

    An optional permission checker is consulted before each method runs;
    the bridge and store themselves perform no authorization.
    """

    def __init__(
        self,
        bridge: MCPBridge,
        context_store: ContextStore,
        permission_checker: PermissionChecker | None = None,
    ):
        self.bridge = bridge
        self.context_store = context_store
        self.permission_checker = permission_checker

        self._methods: dict[str, Callable[[dict[str, Any], str], Awaitable[Any]]] = {
            "aoi.mcp.status": self._mcp_status,
            "aoi.mcp.discover": self._mcp_discover,
            "aoi.mcp.tools": self._mcp_tools,
            "aoi.mcp.call": self._mcp_call,
            "aoi.mcp.query": self._mcp_query,
            "aoi.mcp.resources": self._mcp_resources,
            "aoi.mcp.read": self._mcp_read,
            "aoi.context.history": self._context_history,
            "aoi.context.stats": self._context_stats,
            "aoi.context.get": self._context_get,
        }

    @property
    def methods(self) -> list[str]:
        return list(self._methods)

    async def dispatch(
        self, method: str, params: dict[str, Any] | None = None, agent_id: str = ANONYMOUS_AGENT
    ) -> Any:
        """
        Run a method and return its JSON-ready result.

        Raises:
            ProtocolError: For every failure, carrying a JSON-RPC error code
        """
        handler = self._methods.get(method)
        if handler is None:
            raise ProtocolError(f"Method not found: {method}", code=METHOD_NOT_FOUND)
        if params is not None and not isinstance(params, dict):
            raise ProtocolError("Params must be an object", code=INVALID_PARAMS)

        try:
            return await handler(params or {}, agent_id)
        except ProtocolError:
            raise
        except ValidationError as e:
            raise ProtocolError(
                f"Invalid params for {method}",
                code=INVALID_PARAMS,
                data=[
                    {"loc": list(err["loc"]), "msg": err["msg"]}
                    for err in e.errors(include_url=False)
                ],
            ) from e
        except AOIError as e:
            raise to_protocol_error(e) from e
        except Exception as e:
            logger.error(f"Unhandled error in {method}: {e}", exc_info=True)
            raise ProtocolError("Internal error", code=INTERNAL_ERROR) from e

    async def handle_request(
        self, request: Any, agent_id: str = ANONYMOUS_AGENT
    ) -> dict[str, Any] | None:
        """
        Handle a decoded JSON-RPC request object.

        Returns:
            A JSON-RPC response object, or None for notifications
        """
        if not isinstance(request, dict) or not isinstance(request.get("method"), str):
            return _error_response(
                request.get("id") if isinstance(request, dict) else None,
                ProtocolError("Invalid request", code=INVALID_REQUEST),
            )

        request_id = request.get("id")
        try:
            result = await self.dispatch(request["method"], request.get("params"), agent_id)
        except ProtocolError as e:
            if request_id is None:
                logger.warning(f"Notification {request['method']} failed: {e}")
                return None
            return _error_response(request_id, e)

        if request_id is None:
            return None
        return {"jsonrpc": "2.0", "id": request_id, "result": result}

    async def _authorize(self, agent_id: str, resource: str, action: str) -> None:
        if self.permission_checker is None:
            return
        allowed = self.permission_checker(agent_id, resource, action)
        if inspect.isawaitable(allowed):
            allowed = await allowed
        if not allowed:
            logger.warning(f"Permission denied: {agent_id} {action} {resource}")
            raise PermissionDeniedError(agent_id, resource, action)

    # aoi.mcp.*

    async def _mcp_status(self, params: dict[str, Any], agent_id: str) -> Any:
        await self._authorize(agent_id, "mcp", "read")
        return self.bridge.get_status()

    async def _mcp_discover(self, params: dict[str, Any], agent_id: str) -> Any:
        p = ServerParams.model_validate(params)
        await self._authorize(agent_id, f"mcp:{p.server_name}", "read")
        result = await self.bridge.discover_server(p.server_name)
        return result.model_dump(mode="json", exclude_none=True)

    async def _mcp_tools(self, params: dict[str, Any], agent_id: str) -> Any:
        p = ServerParams.model_validate(params)
        await self._authorize(agent_id, f"mcp:{p.server_name}", "read")
        tools = await self.bridge.list_tools(p.server_name)
        return {"tools": [tool.model_dump(mode="json", exclude_none=True) for tool in tools]}

    async def _mcp_call(self, params: dict[str, Any], agent_id: str) -> Any:
        p = ToolCallParams.model_validate(params)
        await self._authorize(agent_id, f"mcp:{p.server_name}/{p.tool_name}", "execute")
        response = await self.bridge.execute_tool_call(
            ToolCallRequest(server_name=p.server_name, tool_name=p.tool_name, arguments=p.arguments)
        )
        return response.model_dump(mode="json")

    async def _mcp_query(self, params: dict[str, Any], agent_id: str) -> Any:
        query = AOIQuery.model_validate(params)
        request = self.bridge.translate_query_to_tool_call(query)
        await self._authorize(
            agent_id, f"mcp:{request.server_name}/{request.tool_name}", "execute"
        )
        response = await self.bridge.execute_tool_call(request)
        return response.model_dump(mode="json")

    async def _mcp_resources(self, params: dict[str, Any], agent_id: str) -> Any:
        p = ServerParams.model_validate(params)
        await self._authorize(agent_id, f"mcp:{p.server_name}", "read")
        resources = await self.bridge.list_resources(p.server_name)
        return {
            "resources": [
                resource.model_dump(mode="json", exclude_none=True) for resource in resources
            ]
        }

    async def _mcp_read(self, params: dict[str, Any], agent_id: str) -> Any:
        p = ReadParams.model_validate(params)
        await self._authorize(agent_id, f"mcp:{p.server_name}", "read")
        entries = await self.bridge.fetch_resource_as_context(p.server_name, p.uri)
        cached = self.bridge.get_cached_resource(p.uri)
        return {
            "uri": p.uri,
            "contents": [
                c.model_dump(mode="json", exclude_none=True)
                for c in (cached.contents if cached else [])
            ],
            "entry_ids": [entry.id for entry in entries],
        }

    # aoi.context.*

    async def _context_history(self, params: dict[str, Any], agent_id: str) -> Any:
        query = ContextQuery.model_validate(params)
        await self._authorize(agent_id, "context", "read")
        return self.context_store.query(query).model_dump(mode="json")

    async def _context_stats(self, params: dict[str, Any], agent_id: str) -> Any:
        await self._authorize(agent_id, "context", "read")
        return self.context_store.get_stats()

    async def _context_get(self, params: dict[str, Any], agent_id: str) -> Any:
        p = EntryParams.model_validate(params)
        await self._authorize(agent_id, "context", "read")
        return self.context_store.get(p.id).model_dump(mode="json")


def to_protocol_error(error: AOIError) -> ProtocolError:
    """Map a bridge or store error onto a structured JSON-RPC error."""
    match error:
        case ProtocolError():
            return error
        case PermissionDeniedError():
            return ProtocolError(
                str(error),
                code=PERMISSION_DENIED,
                data={"resource": error.resource, "action": error.action},
            )
        case TranslationError():
            return ProtocolError(str(error), code=NOT_FOUND, data={"query": error.query})
        case NotFoundError():
            return ProtocolError(str(error), code=NOT_FOUND)
        case ExpiredError():
            return ProtocolError(str(error), code=EXPIRED)
        case UnsupportedFeatureError():
            return ProtocolError(str(error), code=METHOD_NOT_FOUND, data={"feature": error.feature})
        case RequestTimeoutError():
            return ProtocolError(str(error), code=REQUEST_TIMEOUT)
        case ServerOperationError():
            data = {
                key: value
                for key, value in (
                    ("operation", error.operation),
                    ("server", error.server),
                    ("tool", error.tool),
                    ("uri", error.uri),
                )
                if value is not None
            }
            cause = error.__cause__
            if isinstance(cause, AOIError):
                code = to_protocol_error(cause).code
            else:
                code = INTERNAL_ERROR
            return ProtocolError(str(error), code=code, data=data)
        case _:
            return ProtocolError(str(error), code=INTERNAL_ERROR)


def _error_response(request_id: Any, error: ProtocolError) -> dict[str, Any]:
    return {"jsonrpc": "2.0", "id": request_id, "error": error.to_dict()}
