"""JSON-RPC surface of the AOI bridge."""

from .rpc import PermissionChecker, RPCDispatcher, to_protocol_error

__all__ = ["PermissionChecker", "RPCDispatcher", "to_protocol_error"]
