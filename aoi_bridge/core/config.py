"""Configuration management for the bridge and its MCP servers."""

import json
import re
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from aoi_bridge.utils.errors import ConfigurationError

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_DURATION_UNITS = {"h": 3600.0, "m": 60.0, "s": 1.0, "ms": 0.001}


def parse_duration(value: Any) -> float:
    """Parse a duration into seconds.

    Accepts plain numbers (seconds) or compound strings such as "24h",
    "5m", "1h30m" and "250ms".
    """
    if isinstance(value, int | float):
        return float(value)
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"Invalid duration: {value!r}")

    text = value.strip()
    try:
        return float(text)
    except ValueError:
        pass

    parts = _DURATION_PART.findall(text)
    if not parts or "".join(n + u for n, u in parts) != text:
        raise ValueError(f"Invalid duration: {value!r}")
    return sum(float(number) * _DURATION_UNITS[unit] for number, unit in parts)


class TransportType(str, Enum):
    """Transport used to reach an MCP server."""

    STDIO = "stdio"
    HTTP = "http"


class MCPServerConfig(BaseModel):
    """Connection settings for one MCP server."""

    name: str = Field(..., description="Unique server name used by the bridge registry")
    transport: TransportType = Field(default=TransportType.STDIO)
    command: str | None = Field(default=None, description="Executable for stdio servers")
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] = Field(
        default_factory=dict, description="Extra environment for the spawned server"
    )
    base_url: str | None = Field(default=None, description="Base URL for HTTP servers")
    auto_connect: bool = Field(default=False)
    stderr_log_file: Path | None = Field(
        default=None, description="Where to write the spawned server's stderr"
    )

    @field_validator("env", mode="before")
    @classmethod
    def parse_env_list(cls, v: Any) -> Any:
        """Accept KEY=VALUE lists as well as mappings."""
        if isinstance(v, list):
            env: dict[str, str] = {}
            for item in v:
                key, sep, val = str(item).partition("=")
                if not sep:
                    raise ValueError(f"Environment entry must be KEY=VALUE: {item!r}")
                env[key] = val
            return env
        return v

    @model_validator(mode="after")
    def check_transport_target(self) -> "MCPServerConfig":
        if self.transport is TransportType.STDIO and not self.command:
            raise ValueError(f"Server '{self.name}': command is required for stdio transport")
        if self.transport is TransportType.HTTP and not self.base_url:
            raise ValueError(f"Server '{self.name}': base_url is required for HTTP transport")
        return self


class ToolMappingConfig(BaseModel):
    """Maps a query pattern onto an MCP tool."""

    query_pattern: str
    server_name: str
    tool_name: str
    description: str = ""
    argument_map: dict[str, str] = Field(default_factory=dict)
    result_handler: str = ""


class Settings(BaseSettings):
    """Bridge settings loaded from environment variables and config files."""

    model_config = SettingsConfigDict(
        env_prefix="AOI_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")
    log_dir: Path = Field(
        default=Path.home() / ".aoi" / "logs",
        description="Directory for log files",
    )

    # MCP client identification and timeouts (seconds)
    client_name: str = Field(default="aoi-mcp-client")
    client_version: str = Field(default="1.0.0")
    connect_timeout: float = Field(default=30.0, description="Handshake deadline")
    request_timeout: float = Field(default=60.0, description="Default per-request deadline")

    # Context store
    context_default_ttl: float = Field(default=24 * 3600.0, description="Entry TTL")
    context_cleanup_interval: float = Field(
        default=300.0, description="Interval between expiry sweeps"
    )

    # MCP bridge
    mcp_enabled: bool = Field(default=True)
    mcp_cache_timeout: float = Field(default=300.0, description="Resource cache TTL")
    mcp_servers: list[MCPServerConfig] = Field(default_factory=list)
    tool_mappings: list[ToolMappingConfig] = Field(default_factory=list)

    @field_validator(
        "connect_timeout",
        "request_timeout",
        "context_default_ttl",
        "context_cleanup_interval",
        "mcp_cache_timeout",
        mode="before",
    )
    @classmethod
    def validate_duration(cls, v: Any) -> float:
        return parse_duration(v)

    @field_validator("mcp_servers")
    @classmethod
    def validate_unique_names(cls, v: list[MCPServerConfig]) -> list[MCPServerConfig]:
        names = [server.name for server in v]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ValueError(f"Duplicate MCP server names: {', '.join(duplicates)}")
        return v

    def get_server(self, name: str) -> MCPServerConfig | None:
        """Look up a configured server by name."""
        return next((server for server in self.mcp_servers if server.name == name), None)

    def get_log_file(self, component_name: str = "aoi") -> Path:
        """Get a log file path for a specific component.

        Creates log files with the format: {component_name}_{date}.log
        e.g., filesystem_2024-01-15.log

        Args:
            component_name: Name of the component (server name, cli, etc.)

        Returns:
            Path to the log file
        """
        self.log_dir.mkdir(parents=True, exist_ok=True)
        date_str = datetime.now().strftime("%Y-%m-%d")
        # Sanitize component name for filesystem
        safe_name = "".join(c if c.isalnum() or c in "_-" else "_" for c in component_name)
        return self.log_dir / f"{safe_name}_{date_str}.log"


def _flatten_sections(data: dict[str, Any]) -> dict[str, Any]:
    """Map the sectioned file layout ({"mcp": {...}, "context": {...}}) onto Settings fields."""
    flat = {key: value for key, value in data.items() if key not in ("mcp", "context")}

    mcp_section = data.get("mcp") or {}
    for key, field in (
        ("enabled", "mcp_enabled"),
        ("cache_timeout", "mcp_cache_timeout"),
        ("servers", "mcp_servers"),
        ("tool_mappings", "tool_mappings"),
    ):
        if key in mcp_section:
            flat[field] = mcp_section[key]

    context_section = data.get("context") or {}
    for key, field in (
        ("default_ttl", "context_default_ttl"),
        ("cleanup_interval", "context_cleanup_interval"),
    ):
        if key in context_section:
            flat[field] = context_section[key]

    return flat


def load_settings(path: Path | str | None = None) -> Settings:
    """Load settings from a JSON file layered over environment variables.

    Args:
        path: Optional JSON configuration file. Without it only the
            environment (and .env) is consulted.

    Raises:
        ConfigurationError: If the file cannot be read, parsed or validated
    """
    overrides: dict[str, Any] = {}
    if path is not None:
        config_path = Path(path)
        try:
            raw = json.loads(config_path.read_text(encoding="utf-8"))
        except OSError as e:
            raise ConfigurationError(f"Failed to read config file {config_path}: {e}") from e
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Failed to parse config file {config_path}: {e}") from e
        if not isinstance(raw, dict):
            raise ConfigurationError(f"Config file {config_path} must contain a JSON object")
        overrides = _flatten_sections(raw)

    try:
        return Settings(**overrides)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration: {e}") from e
