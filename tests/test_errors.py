"""Tests for the error types module."""

import pytest

from aoi_bridge.utils.errors import (
    INTERNAL_ERROR,
    TOOL_NOT_FOUND,
    AOIError,
    ClientNotFoundError,
    EntryExpiredError,
    EntryNotFoundError,
    ExpiredError,
    NotConnectedError,
    NotFoundError,
    ProtocolError,
    RequestTimeoutError,
    RPCError,
    ServerOperationError,
    SyncError,
    TranslationError,
    UnsupportedFeatureError,
)


class TestAOIError:
    """Tests for AOIError base exception."""

    def test_aoi_error_creation(self):
        """Test creating an AOIError."""
        error = AOIError("Test error message")
        assert str(error) == "Test error message"

    def test_aoi_error_can_be_raised(self):
        """Test that AOIError can be raised and caught."""
        with pytest.raises(AOIError) as exc_info:
            raise AOIError("Raised error")
        assert str(exc_info.value) == "Raised error"


class TestProtocolError:
    """Tests for ProtocolError and RPCError."""

    def test_defaults_to_internal_error(self):
        """Test that the default code is the JSON-RPC internal error."""
        error = ProtocolError("boom")
        assert error.code == INTERNAL_ERROR
        assert error.to_dict() == {"code": INTERNAL_ERROR, "message": "boom"}

    def test_to_dict_includes_data(self):
        """Test that data is included when present."""
        error = ProtocolError("bad", code=-32602, data={"field": "uri"})
        assert error.to_dict() == {"code": -32602, "message": "bad", "data": {"field": "uri"}}

    def test_rpc_error_from_error_object(self):
        """Test building an RPCError from a JSON-RPC error object."""
        error = RPCError.from_error_object(
            {"code": TOOL_NOT_FOUND, "message": "Tool not found: x", "data": [1]}
        )
        assert isinstance(error, ProtocolError)
        assert error.code == TOOL_NOT_FOUND
        assert error.message == "Tool not found: x"
        assert error.data == [1]

    def test_rpc_error_from_incomplete_object(self):
        """Test that missing members fall back to defaults."""
        error = RPCError.from_error_object({})
        assert error.code == INTERNAL_ERROR
        assert error.message == "Unknown error"


class TestLookupErrors:
    """Tests for not-found and expired errors."""

    def test_not_found_and_expired_are_distinct(self):
        """Test that callers can tell missing entries from stale ones."""
        assert not issubclass(EntryExpiredError, NotFoundError)
        assert not issubclass(EntryNotFoundError, ExpiredError)

    def test_entry_errors_keep_id(self):
        """Test that entry errors carry the entry id."""
        assert EntryNotFoundError("abc").entry_id == "abc"
        assert EntryExpiredError("abc").entry_id == "abc"

    def test_client_not_found_message(self):
        """Test ClientNotFoundError message."""
        error = ClientNotFoundError("filesystem")
        assert isinstance(error, NotFoundError)
        assert str(error) == "MCP client not found: filesystem"


class TestClientErrors:
    """Tests for client-side errors."""

    def test_timeout_is_builtin_timeout(self):
        """Test that RequestTimeoutError can be caught as TimeoutError."""
        error = RequestTimeoutError("tools/call", 1.5)
        assert isinstance(error, TimeoutError)
        assert error.method == "tools/call"
        assert "1.5s" in str(error)

    def test_unsupported_feature_message(self):
        """Test UnsupportedFeatureError message."""
        error = UnsupportedFeatureError("prompts")
        assert str(error) == "Server does not support prompts"
        assert error.feature == "prompts"

    def test_not_connected_hint(self):
        """Test that NotConnectedError includes its hint."""
        assert str(NotConnectedError()) == "Not connected. Call connect() first"


class TestBridgeErrors:
    """Tests for bridge errors."""

    def test_translation_error(self):
        """Test TranslationError keeps the query."""
        error = TranslationError("what is up")
        assert error.query == "what is up"
        assert "what is up" in str(error)

    def test_server_operation_error_with_tool(self):
        """Test that tool context appears in the message."""
        cause = RPCError("Tool not found: x", code=TOOL_NOT_FOUND)
        error = ServerOperationError("tool call", "fs", cause, tool="x")
        assert str(error) == "tool call failed for fs/x: Tool not found: x"
        assert error.server == "fs"
        assert error.tool == "x"

    def test_server_operation_error_with_uri(self):
        """Test that resource context appears in the message."""
        error = ServerOperationError("resource read", "fs", AOIError("gone"), uri="file:///a")
        assert str(error) == "resource read failed for fs (file:///a): gone"

    def test_sync_error_joins_failures(self):
        """Test SyncError aggregates failure messages."""
        error = SyncError(["a: down", "b: slow"])
        assert error.failures == ["a: down", "b: slow"]
        assert str(error) == "Errors syncing resources: a: down; b: slow"
