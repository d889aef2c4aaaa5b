"""Utility modules for the AOI bridge."""

from .errors import (
    AOIError,
    ClientNotFoundError,
    ConfigurationError,
    EntryExpiredError,
    EntryNotFoundError,
    ExpiredError,
    NotConnectedError,
    NotFoundError,
    PermissionDeniedError,
    ProtocolError,
    RequestTimeoutError,
    RPCError,
    ServerOperationError,
    SyncError,
    TransportError,
    TranslationError,
    UnsupportedFeatureError,
)
from .logging_config import setup_logging

__all__ = [
    "AOIError",
    "ClientNotFoundError",
    "ConfigurationError",
    "EntryExpiredError",
    "EntryNotFoundError",
    "ExpiredError",
    "NotConnectedError",
    "NotFoundError",
    "PermissionDeniedError",
    "ProtocolError",
    "RPCError",
    "RequestTimeoutError",
    "ServerOperationError",
    "SyncError",
    "TransportError",
    "TranslationError",
    "UnsupportedFeatureError",
    "setup_logging",
]
