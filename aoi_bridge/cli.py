"""Command line interface for inspecting and calling configured MCP servers.

Usage:
    # Show configured servers (connecting the auto_connect ones)
    aoi-bridge --config aoi.json status

    # Discover a server's tools, resources and prompts
    aoi-bridge --config aoi.json discover filesystem

    # Call a tool with arguments
    aoi-bridge --config aoi.json call filesystem search --args '{"query": "todo"}'

    # Read a resource into the context store
    aoi-bridge --config aoi.json read filesystem file:///README.md

    # Route a free-form query through the tool mappings
    aoi-bridge --config aoi.json ask "search for open issues"
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import Any

from dotenv import load_dotenv

from aoi_bridge.core.bridge import MCPBridge
from aoi_bridge.core.config import Settings, load_settings
from aoi_bridge.server.rpc import RPCDispatcher
from aoi_bridge.storage.context_store import ContextStore
from aoi_bridge.utils.errors import ConfigurationError, ProtocolError
from aoi_bridge.utils.logging_config import setup_logging

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="aoi-bridge",
        description="Inspect and call MCP servers through the AOI bridge",
    )
    parser.add_argument(
        "--config",
        "-c",
        type=str,
        default=None,
        help="JSON configuration file (defaults to AOI_* environment variables only)",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose logging",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("status", help="Show server connection status")

    discover = subparsers.add_parser("discover", help="Discover a server's capabilities")
    discover.add_argument("server", help="Configured server name")

    call = subparsers.add_parser("call", help="Call a tool")
    call.add_argument("server", help="Configured server name")
    call.add_argument("tool", help="Tool name")
    call.add_argument(
        "--args",
        "-a",
        type=str,
        default="{}",
        help="JSON string of arguments to pass to the tool",
    )

    read = subparsers.add_parser("read", help="Read a resource into the context store")
    read.add_argument("server", help="Configured server name")
    read.add_argument("uri", help="Resource URI")

    ask = subparsers.add_parser("ask", help="Translate a query into a tool call and run it")
    ask.add_argument("query", help="Free-form query text")
    ask.add_argument("--scope", type=str, default=None, help="Context scope for the query")

    return parser


def _request_for(args: argparse.Namespace) -> tuple[str, dict[str, Any]]:
    """Map parsed arguments onto a dispatcher method and params."""
    match args.command:
        case "status":
            return "aoi.mcp.status", {}
        case "discover":
            return "aoi.mcp.discover", {"server_name": args.server}
        case "call":
            try:
                arguments = json.loads(args.args)
            except json.JSONDecodeError as e:
                raise ConfigurationError(f"--args is not valid JSON: {e}") from e
            return "aoi.mcp.call", {
                "server_name": args.server,
                "tool_name": args.tool,
                "arguments": arguments,
            }
        case "read":
            return "aoi.mcp.read", {"server_name": args.server, "uri": args.uri}
        case "ask":
            params: dict[str, Any] = {"query": args.query}
            if args.scope:
                params["context_scope"] = args.scope
            return "aoi.mcp.query", params
        case _:
            raise ConfigurationError(f"Unknown command: {args.command}")


async def run(args: argparse.Namespace, settings: Settings) -> int:
    method, params = _request_for(args)

    store = ContextStore(
        default_ttl=settings.context_default_ttl,
        cleanup_interval=settings.context_cleanup_interval,
    )
    bridge = MCPBridge.from_config(settings, store)
    dispatcher = RPCDispatcher(bridge, store)

    try:
        if method == "aoi.mcp.status":
            await bridge.connect_auto_servers()
        result = await dispatcher.dispatch(method, params, agent_id="cli")
    except ProtocolError as e:
        print(json.dumps({"error": e.to_dict()}, indent=2, default=str), file=sys.stderr)
        return 1
    finally:
        await bridge.close()
        await store.stop()

    print(json.dumps(result, indent=2, default=str))
    return 0


def main(argv: list[str] | None = None) -> int:
    load_dotenv()
    args = build_parser().parse_args(argv)

    try:
        settings = load_settings(args.config)
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    setup_logging(level="DEBUG" if args.verbose else settings.log_level)

    try:
        return asyncio.run(run(args, settings))
    except ConfigurationError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
