"""Error types for the AOI bridge."""

from typing import Any

# Standard JSON-RPC error codes
PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603

# MCP-specific error codes
RESOURCE_NOT_FOUND = -32002
TOOL_NOT_FOUND = -32003
PROMPT_NOT_FOUND = -32004

# Bridge-level codes returned by the RPC dispatcher
PERMISSION_DENIED = -32010
NOT_FOUND = -32011
EXPIRED = -32012
REQUEST_TIMEOUT = -32013


class AOIError(Exception):
    """Base exception for AOI bridge errors."""

    pass


# Transport and protocol errors
class TransportError(AOIError):
    """Raised when a transport cannot be started or a message cannot be delivered."""

    pass


class ProtocolError(AOIError):
    """Raised when a message is malformed or violates the JSON-RPC contract."""

    def __init__(self, message: str, code: int = INTERNAL_ERROR, data: Any = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.data = data

    def to_dict(self) -> dict[str, Any]:
        """Structured form suitable for a JSON-RPC error object."""
        error: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.data is not None:
            error["data"] = self.data
        return error


class RPCError(ProtocolError):
    """Raised when the server answers a request with a JSON-RPC error."""

    @classmethod
    def from_error_object(cls, error: dict[str, Any]) -> "RPCError":
        return cls(
            str(error.get("message", "Unknown error")),
            code=int(error.get("code", INTERNAL_ERROR)),
            data=error.get("data"),
        )


class RequestTimeoutError(AOIError, TimeoutError):
    """Raised when a request's deadline elapses before its response arrives."""

    def __init__(self, method: str, timeout: float):
        super().__init__(f"Request '{method}' timed out after {timeout:g}s")
        self.method = method
        self.timeout = timeout


class NotConnectedError(AOIError):
    """Raised when operation requires an active connection."""

    def __init__(self, hint: str = "Call connect() first"):
        super().__init__(f"Not connected. {hint}")


class UnsupportedFeatureError(AOIError):
    """Raised when server doesn't support required feature."""

    def __init__(self, feature: str):
        super().__init__(f"Server does not support {feature}")
        self.feature = feature


# Lookup errors
class NotFoundError(AOIError):
    """Raised when a client, server, mapping or stored item does not exist."""

    pass


class ClientNotFoundError(NotFoundError):
    """Raised when no MCP client is registered under a name."""

    def __init__(self, name: str):
        super().__init__(f"MCP client not found: {name}")
        self.name = name


class EntryNotFoundError(NotFoundError):
    """Raised when a context entry was never stored or has been deleted."""

    def __init__(self, entry_id: str):
        super().__init__(f"Context entry not found: {entry_id}")
        self.entry_id = entry_id


class ExpiredError(AOIError):
    """Raised when an item exists but is past its time-to-live."""

    pass


class EntryExpiredError(ExpiredError):
    """Raised when a context entry is present but expired."""

    def __init__(self, entry_id: str):
        super().__init__(f"Context entry expired: {entry_id}")
        self.entry_id = entry_id


# Bridge errors
class TranslationError(AOIError):
    """Raised when no tool mapping matches a query."""

    def __init__(self, query: str):
        super().__init__(f"No tool mapping found for query: {query}")
        self.query = query


class ServerOperationError(AOIError):
    """Raised by the bridge when an operation against an MCP server fails.

    The underlying client error is available as ``__cause__``.
    """

    def __init__(
        self,
        operation: str,
        server: str,
        error: BaseException,
        tool: str | None = None,
        uri: str | None = None,
    ):
        target = server
        if tool:
            target = f"{server}/{tool}"
        elif uri:
            target = f"{server} ({uri})"
        super().__init__(f"{operation} failed for {target}: {error}")
        self.operation = operation
        self.server = server
        self.tool = tool
        self.uri = uri


class SyncError(AOIError):
    """Raised after a resource sync in which at least one step failed."""

    def __init__(self, failures: list[str]):
        super().__init__(f"Errors syncing resources: {'; '.join(failures)}")
        self.failures = failures


class PermissionDeniedError(AOIError):
    """Raised when the permission checker rejects an operation."""

    def __init__(self, agent_id: str, resource: str, action: str):
        super().__init__(f"Agent '{agent_id}' may not {action} {resource}")
        self.agent_id = agent_id
        self.resource = resource
        self.action = action


# Configuration errors
class ConfigurationError(AOIError):
    """Raised when configuration is missing or invalid."""

    pass
