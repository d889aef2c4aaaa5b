"""Transports carrying JSON-RPC messages to an MCP server.

Two transports are provided:

- ``StdioTransport`` spawns the server as a subprocess and exchanges
  newline-delimited JSON on its stdin/stdout. Responses arrive
  asynchronously and are correlated to requests by id: every request
  registers a future under a fresh id and a single reader task resolves it.
- ``HTTPTransport`` POSTs each message to ``<base_url>/rpc``; the HTTP
  exchange itself pairs request and response.

A transport instance represents one connection. It is started once and
closed once; reconnecting means creating a new transport.
"""

import asyncio
import contextlib
import itertools
import json
import logging
import os
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, TextIO

import httpx
from pydantic import ValidationError

from aoi_bridge.utils.errors import (
    METHOD_NOT_FOUND,
    PARSE_ERROR,
    NotConnectedError,
    ProtocolError,
    RequestTimeoutError,
    RPCError,
    TransportError,
)

from .config import MCPServerConfig, TransportType
from .types import LOG_LEVELS, JSONRPCResponse, LoggingMessageNotificationParams, make_message

logger = logging.getLogger(__name__)

# Upper bound for a single newline-delimited message from a stdio server
MAX_MESSAGE_BYTES = 16 * 1024 * 1024
# Grace period for a server process to exit after stdin is closed / SIGTERM
PROCESS_EXIT_TIMEOUT = 5.0
HEALTH_CHECK_TIMEOUT = 5.0


class Transport(ABC):
    """A single connection to an MCP server."""

    #: Human-readable label used in log messages
    label: str = "mcp"

    @abstractmethod
    async def start(self) -> None:
        """Open the connection."""

    @abstractmethod
    async def request(
        self, method: str, params: dict[str, Any] | None = None, timeout: float | None = None
    ) -> Any:
        """Send a request and return the ``result`` member of its response.

        Raises:
            RPCError: If the server answered with a JSON-RPC error
            RequestTimeoutError: If ``timeout`` seconds elapse first
            TransportError: If the message could not be delivered
        """

    @abstractmethod
    async def notify(self, method: str, params: dict[str, Any] | None = None) -> None:
        """Send a notification; no response is expected."""

    @abstractmethod
    async def close(self) -> None:
        """Close the connection. Safe to call more than once."""

    @property
    @abstractmethod
    def is_open(self) -> bool:
        """Whether the connection can currently carry messages."""


def _server_log_notification(label: str, params: dict[str, Any] | None) -> None:
    """Re-emit a ``notifications/message`` log record through Python logging."""
    try:
        record = LoggingMessageNotificationParams.model_validate(params or {})
    except ValidationError:
        logger.debug(f"[{label}] Ignoring malformed log notification: {params}")
        return
    server_logger = logging.getLogger(f"{__name__}.server.{record.logger or label}")
    level = LOG_LEVELS.get(record.level.lower(), logging.INFO)
    server_logger.log(level, f"[{label}] {record.data}")


def _parse_response(message: dict[str, Any]) -> JSONRPCResponse:
    try:
        return JSONRPCResponse.model_validate(message)
    except ValidationError as e:
        raise ProtocolError(f"Invalid JSON-RPC response: {e}") from e


def _response_outcome(response: JSONRPCResponse) -> Any:
    if response.error is not None:
        raise RPCError(response.error.message, code=response.error.code, data=response.error.data)
    return response.result


class StdioTransport(Transport):
    """Talk to an MCP server subprocess over its standard streams."""

    def __init__(
        self,
        command: str,
        args: list[str] | None = None,
        env: dict[str, str] | None = None,
        stderr_log_file: Path | None = None,
        cwd: Path | str | None = None,
        label: str | None = None,
    ):
        """
        Initialize stdio transport.

        Args:
            command: Executable that starts the server
            args: Command line arguments
            env: Extra environment variables, layered over the current environment
            stderr_log_file: Optional file receiving the server's stderr.
                Without it the server inherits this process's stderr.
            cwd: Working directory for the server process
            label: Name used in log messages (defaults to the command)
        """
        self.command = command
        self.args = list(args or [])
        self.env = dict(env or {})
        self.cwd = cwd
        self.label = label or command
        self._stderr_log_path = stderr_log_file
        self._stderr_file: TextIO | None = None

        self._process: asyncio.subprocess.Process | None = None
        self._reader_task: asyncio.Task | None = None
        self._write_lock = asyncio.Lock()
        self._closed = False

        # Request id -> future awaiting the correlated response
        self._pending: dict[str, asyncio.Future[Any]] = {}
        self._pending_lock = threading.Lock()
        self._ids = itertools.count(1)

    @property
    def is_open(self) -> bool:
        return (
            not self._closed
            and self._process is not None
            and self._process.returncode is None
            and self._reader_task is not None
            and not self._reader_task.done()
        )

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process else None

    def pending_count(self) -> int:
        """Number of requests still awaiting a response."""
        with self._pending_lock:
            return len(self._pending)

    async def start(self) -> None:
        if self._closed or self._process is not None:
            raise TransportError(f"[{self.label}] Transport cannot be restarted")

        # Pass current environment variables so the server inherits PATH,
        # credentials and similar settings, then apply configured overrides.
        env = {**os.environ, **self.env}

        stderr: TextIO | None = None
        if self._stderr_log_path:
            try:
                self._stderr_log_path.parent.mkdir(parents=True, exist_ok=True)
                self._stderr_file = open(  # noqa: SIM115
                    self._stderr_log_path, "a", encoding="utf-8"
                )
                stderr = self._stderr_file
                logger.debug(f"[{self.label}] Server stderr redirected to: {self._stderr_log_path}")
            except OSError as e:
                logger.warning(f"Failed to open stderr log file {self._stderr_log_path}: {e}")

        logger.info(f"Starting MCP server: {self.command} {' '.join(self.args)}".rstrip())
        try:
            self._process = await asyncio.create_subprocess_exec(
                self.command,
                *self.args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=stderr,
                env=env,
                cwd=self.cwd,
                limit=MAX_MESSAGE_BYTES,
            )
        except OSError as e:
            self._close_stderr_file()
            self._closed = True
            raise TransportError(f"Failed to start MCP server '{self.command}': {e}") from e

        self._reader_task = asyncio.create_task(
            self._read_loop(), name=f"mcp-reader-{self.label}"
        )
        logger.debug(f"[{self.label}] Server started with pid {self._process.pid}")

    async def request(
        self, method: str, params: dict[str, Any] | None = None, timeout: float | None = None
    ) -> Any:
        if not self.is_open:
            raise NotConnectedError(f"Transport to '{self.label}' is not open")

        request_id = next(self._ids)
        key = str(request_id)
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        with self._pending_lock:
            self._pending[key] = future

        try:
            await self._write(make_message(method, params, request_id))
            if timeout is None:
                return await future
            try:
                return await asyncio.wait_for(future, timeout)
            except TimeoutError:
                # The server keeps working on the request; only our wait ends.
                raise RequestTimeoutError(method, timeout) from None
        finally:
            with self._pending_lock:
                self._pending.pop(key, None)

    async def notify(self, method: str, params: dict[str, Any] | None = None) -> None:
        if not self.is_open:
            raise NotConnectedError(f"Transport to '{self.label}' is not open")
        await self._write(make_message(method, params))

    async def _write(self, message: dict[str, Any]) -> None:
        process = self._process
        if process is None or process.stdin is None:
            raise NotConnectedError(f"Transport to '{self.label}' is not open")

        data = (json.dumps(message, separators=(",", ":")) + "\n").encode("utf-8")
        async with self._write_lock:
            try:
                process.stdin.write(data)
                await process.stdin.drain()
            except (ConnectionError, RuntimeError) as e:
                raise TransportError(f"[{self.label}] Failed to write message: {e}") from e

    async def _read_loop(self) -> None:
        """Drain the server's stdout for the lifetime of the connection."""
        process = self._process
        if process is None or process.stdout is None:
            return
        stdout = process.stdout

        try:
            while True:
                try:
                    line = await stdout.readline()
                except ValueError as e:
                    # Message exceeded MAX_MESSAGE_BYTES; the reader skips past it
                    logger.error(f"[{self.label}] Discarding oversized message: {e}")
                    continue

                if not line:
                    logger.info(f"[{self.label}] MCP server closed its output stream")
                    break

                line = line.strip()
                if not line:
                    continue

                try:
                    payload = json.loads(line)
                except json.JSONDecodeError as e:
                    logger.warning(f"[{self.label}] Discarding malformed message: {e}")
                    continue

                # JSON-RPC batches arrive as arrays
                for message in payload if isinstance(payload, list) else [payload]:
                    await self._dispatch(message)

        except Exception as e:
            logger.error(f"[{self.label}] Reader stopped: {e}")

        finally:
            self._fail_pending(TransportError(f"Connection to '{self.label}' closed"))

    async def _dispatch(self, message: Any) -> None:
        if not isinstance(message, dict):
            logger.warning(f"[{self.label}] Ignoring non-object message: {message!r}")
            return

        if "method" in message:
            if message.get("id") is not None:
                await self._answer_server_request(message)
            elif message["method"] == "notifications/message":
                _server_log_notification(self.label, message.get("params"))
            else:
                logger.debug(f"[{self.label}] Notification: {message['method']}")
            return

        if "id" in message:
            self._resolve(message)
            return

        logger.warning(f"[{self.label}] Ignoring unrecognized message: {message}")

    def _resolve(self, message: dict[str, Any]) -> None:
        try:
            response = _parse_response(message)
        except ProtocolError as e:
            logger.warning(f"[{self.label}] {e}")
            return

        if response.id is None:
            error = response.error.message if response.error else "no error detail"
            logger.warning(f"[{self.label}] Uncorrelated error response: {error}")
            return

        key = str(response.id)
        with self._pending_lock:
            future = self._pending.get(key)

        if future is None or future.done():
            logger.debug(f"[{self.label}] Dropping response for unknown or abandoned request {key}")
            return

        try:
            future.set_result(_response_outcome(response))
        except RPCError as e:
            future.set_exception(e)

    async def _answer_server_request(self, message: dict[str, Any]) -> None:
        """Reply to a request initiated by the server."""
        method = message["method"]
        reply: dict[str, Any] = {"jsonrpc": "2.0", "id": message["id"]}
        if method == "ping":
            reply["result"] = {}
        elif method == "roots/list":
            reply["result"] = {"roots": []}
        else:
            reply["error"] = {"code": METHOD_NOT_FOUND, "message": f"Method not found: {method}"}

        try:
            await self._write(reply)
        except (TransportError, NotConnectedError) as e:
            logger.warning(f"[{self.label}] Could not answer server request {method}: {e}")

    def _fail_pending(self, error: Exception) -> None:
        with self._pending_lock:
            futures = list(self._pending.values())
        for future in futures:
            if not future.done():
                future.set_exception(error)

    async def close(self) -> None:
        # Nothing was started, or an earlier close already finished
        if self._process is None and self._reader_task is None:
            return
        self._closed = True

        process = self._process
        if process is not None:
            if process.stdin is not None and not process.stdin.is_closing():
                process.stdin.close()
                with contextlib.suppress(ConnectionError):
                    await process.stdin.wait_closed()

            if process.returncode is None:
                with contextlib.suppress(ProcessLookupError):
                    process.terminate()
                try:
                    await asyncio.wait_for(process.wait(), PROCESS_EXIT_TIMEOUT)
                except TimeoutError:
                    logger.warning(f"[{self.label}] Server did not exit, killing pid {process.pid}")
                    with contextlib.suppress(ProcessLookupError):
                        process.kill()
                    await process.wait()
            logger.info(f"[{self.label}] MCP server exited with code {process.returncode}")

        if self._reader_task is not None:
            self._reader_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._reader_task
            self._reader_task = None

        self._fail_pending(TransportError(f"Connection to '{self.label}' closed"))
        self._close_stderr_file()
        self._process = None

    def _close_stderr_file(self) -> None:
        if self._stderr_file:
            with contextlib.suppress(OSError):
                self._stderr_file.close()
            self._stderr_file = None


class HTTPTransport(Transport):
    """Talk to an MCP server by POSTing JSON-RPC messages to ``/rpc``."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 60.0,
        headers: dict[str, str] | None = None,
        http_transport: httpx.AsyncBaseTransport | None = None,
        label: str | None = None,
    ):
        """
        Initialize HTTP transport.

        Args:
            base_url: Server base URL; requests go to ``<base_url>/rpc``
            timeout: Default request timeout in seconds
            headers: Extra headers sent with every request
            http_transport: Optional httpx transport (e.g. ``httpx.MockTransport``)
            label: Name used in log messages (defaults to the base URL)
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.headers = dict(headers or {})
        self.label = label or self.base_url
        self._http_transport = http_transport
        self._client: httpx.AsyncClient | None = None
        self._ids = itertools.count(1)

    @property
    def is_open(self) -> bool:
        return self._client is not None and not self._client.is_closed

    async def start(self) -> None:
        if self._client is not None:
            raise TransportError(f"[{self.label}] Transport cannot be restarted")
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            headers={"Content-Type": "application/json", **self.headers},
            transport=self._http_transport,
        )
        await self.health_check()

    async def health_check(self) -> bool:
        """Check ``/health``. Failures are logged, never raised.

        Returns:
            True if the server answered with HTTP 200
        """
        if self._client is None:
            return False
        try:
            response = await self._client.get("/health", timeout=HEALTH_CHECK_TIMEOUT)
        except httpx.HTTPError as e:
            # Server might not implement a health endpoint
            logger.debug(f"[{self.label}] Health check failed (ignored): {e}")
            return False
        logger.debug(f"[{self.label}] Health check returned HTTP {response.status_code}")
        return response.status_code == 200

    def _require_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            raise NotConnectedError(f"Transport to '{self.label}' is not open")
        return self._client

    async def _post(
        self, method: str, message: dict[str, Any], timeout: float | None
    ) -> httpx.Response:
        client = self._require_client()
        deadline = timeout if timeout is not None else self.timeout
        try:
            return await client.post("/rpc", json=message, timeout=deadline)
        except httpx.TimeoutException as e:
            raise RequestTimeoutError(method, deadline) from e
        except httpx.HTTPError as e:
            raise TransportError(f"[{self.label}] HTTP request failed: {e}") from e

    async def request(
        self, method: str, params: dict[str, Any] | None = None, timeout: float | None = None
    ) -> Any:
        request_id = next(self._ids)
        response = await self._post(method, make_message(method, params, request_id), timeout)

        try:
            body = response.json()
        except ValueError as e:
            if response.is_error:
                raise TransportError(
                    f"[{self.label}] HTTP {response.status_code} for '{method}'"
                ) from e
            raise ProtocolError(f"Failed to decode response: {e}", code=PARSE_ERROR) from e

        if not isinstance(body, dict):
            raise ProtocolError(f"Expected a JSON-RPC response object, got {type(body).__name__}")

        rpc_response = _parse_response(body)
        if rpc_response.error is None and response.is_error:
            raise TransportError(f"[{self.label}] HTTP {response.status_code} for '{method}'")
        if rpc_response.id is not None and str(rpc_response.id) != str(request_id):
            logger.warning(
                f"[{self.label}] Response id {rpc_response.id} does not match request {request_id}"
            )
        return _response_outcome(rpc_response)

    async def notify(self, method: str, params: dict[str, Any] | None = None) -> None:
        response = await self._post(method, make_message(method, params), None)
        if response.is_error:
            logger.warning(
                f"[{self.label}] Notification '{method}' answered with HTTP {response.status_code}"
            )

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()


def transport_from_config(config: MCPServerConfig, request_timeout: float = 60.0) -> Transport:
    """Build an unstarted transport for a configured server."""
    if config.transport is TransportType.STDIO:
        if not config.command:
            raise TransportError(f"Server '{config.name}': command is required for stdio transport")
        return StdioTransport(
            config.command,
            args=config.args,
            env=config.env,
            stderr_log_file=config.stderr_log_file,
            label=config.name,
        )
    if config.transport is TransportType.HTTP:
        if not config.base_url:
            raise TransportError(f"Server '{config.name}': base_url is required for HTTP transport")
        return HTTPTransport(config.base_url, timeout=request_timeout, label=config.name)
    raise TransportError(f"Unsupported transport type: {config.transport}")
