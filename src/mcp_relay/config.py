"""
Configuration management for MCP Relay.

The configuration file is JSON (YAML is accepted for files ending in
.yaml/.yml), validated via Pydantic, with environment variable expansion
in commands and env values.
"""

from __future__ import annotations

import json
import os
import re
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

CONFIG_PATH_ENV_VAR = "RELAY_CONFIG_PATH"
DEFAULT_CONFIG_FILENAME = "relay.json"


def expand_env_vars(value: str, braced_only: bool = False) -> str:
    """Expand environment variables in a string.

    Supports both ${VAR} and $VAR syntax, or only ${VAR} when braced_only is
    set. Unknown variables are left as-is.
    """

    def replacer(match: re.Match[str]) -> str:
        var_name = match.group(1) or match.group(2)
        return os.environ.get(var_name, match.group(0))

    pattern = r"\$\{([^}]+)\}" if braced_only else r"\$\{([^}]+)\}|\$([A-Za-z_][A-Za-z0-9_]*)"
    return re.sub(pattern, replacer, value)


def default_config_path() -> Path:
    """Resolve the config path from RELAY_CONFIG_PATH, else ./relay.json."""
    env_path = os.environ.get(CONFIG_PATH_ENV_VAR)
    if env_path:
        return Path(env_path)
    return Path.cwd() / DEFAULT_CONFIG_FILENAME


class ServerEntry(BaseModel):
    """Configuration for a single downstream MCP server."""

    id: str = Field(..., description="Unique identifier for this server")
    name: str = Field(..., description="Display name, used as the tool namespace")
    command: str = Field(..., description="Executable to spawn")
    args: list[str] = Field(..., description="Command arguments")
    env: dict[str, str] = Field(
        default_factory=dict, description="Environment overlaid on the gateway's own"
    )
    disabled: bool = Field(default=False, description="Skip this server at startup")

    @field_validator("command", mode="before")
    @classmethod
    def expand_env(cls, v: str) -> str:
        """Expand environment variables in the command."""
        if isinstance(v, str):
            return expand_env_vars(v)
        return v

    @field_validator("env", mode="before")
    @classmethod
    def expand_dict_values(cls, v: dict[str, Any] | None) -> dict[str, str]:
        """Expand ${VAR} references in env values; a bare $ is kept literally."""
        if v is None:
            return {}
        return {k: expand_env_vars(str(val), braced_only=True) for k, val in v.items()}

    @property
    def command_list(self) -> list[str]:
        return [self.command, *self.args]


class RelayConfig(BaseModel):
    """Configuration for the MCP Relay gateway."""

    servers: list[ServerEntry] = Field(..., description="Downstream servers, in routing order")

    # Operational settings
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO", description="Logging verbosity"
    )
    request_timeout: float | None = Field(
        default=None,
        gt=0,
        description="Optional per-request timeout in seconds (no timeout when unset)",
    )

    @model_validator(mode="after")
    def validate_unique_ids(self) -> RelayConfig:
        """Ensure server ids are unique."""
        seen: set[str] = set()
        for server in self.servers:
            if server.id in seen:
                raise ValueError(f"Duplicate server id '{server.id}'")
            seen.add(server.id)
        return self

    @classmethod
    def from_file(cls, path: str | Path) -> RelayConfig:
        """Load configuration from a JSON or YAML file.

        Args:
            path: Path to the configuration file

        Returns:
            Validated RelayConfig instance

        Raises:
            FileNotFoundError: If config file doesn't exist
            json.JSONDecodeError: If a JSON file is malformed
            ValueError: If configuration is invalid
        """
        path = Path(path)
        if path.suffix.lower() in (".yaml", ".yml"):
            return cls.from_yaml(path)
        return cls.from_json(path)

    @classmethod
    def from_json(cls, path: str | Path) -> RelayConfig:
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        with path.open(encoding="utf-8") as f:
            raw_config = json.load(f)

        return cls.from_dict(raw_config)

    @classmethod
    def from_yaml(cls, path: str | Path) -> RelayConfig:
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        with path.open(encoding="utf-8") as f:
            raw_config = yaml.safe_load(f)

        return cls.from_dict(raw_config or {})

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RelayConfig:
        """Create configuration from a dictionary.

        Unknown top-level keys are ignored so files carrying extra settings
        written by other tools still load.
        """
        return cls.model_validate(data)

    def get_enabled_servers(self) -> list[ServerEntry]:
        """Return only servers that are not disabled, in configuration order."""
        return [server for server in self.servers if not server.disabled]
