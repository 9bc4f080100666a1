"""Pytest configuration and fixtures."""

from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any

import pytest

from mcp_relay.backend import TrafficStats
from mcp_relay.config import RelayConfig, ServerEntry
from mcp_relay.errors import ConnectError, DownstreamError, ListError

FAKE_SERVER = Path(__file__).parent / "fake_mcp_server.py"


class FakeConnection:
    """In-memory stand-in for DownstreamConnection."""

    def __init__(
        self,
        entry: ServerEntry,
        tools: list[dict[str, Any]] | None = None,
        resources: dict[str, str] | None = None,
        fail_connect: bool = False,
        fail_list: bool = False,
    ) -> None:
        self.entry = entry
        self.tools = tools or []
        self.resources = resources or {}
        self.fail_connect = fail_connect
        self.fail_list = fail_list
        self.connected = False
        self.stopped = False
        self.calls: list[tuple[str, dict[str, Any] | None]] = []
        self.reads: list[str] = []
        self.stats = TrafficStats()

    @property
    def id(self) -> str:
        return self.entry.id

    @property
    def name(self) -> str:
        return self.entry.name

    async def connect(self) -> None:
        if self.fail_connect:
            raise ConnectError(self.name, OSError("spawn failed"))
        self.connected = True

    async def stop(self) -> None:
        self.stopped = True

    async def list_tools(self) -> list[dict[str, Any]]:
        if self.fail_list:
            raise ListError(self.name, "tools", RuntimeError("boom"))
        return [dict(tool) for tool in self.tools]

    async def call_tool(self, name: str, arguments: dict[str, Any] | None = None) -> dict[str, Any]:
        self.calls.append((name, arguments))
        if name not in {tool["name"] for tool in self.tools}:
            raise DownstreamError(self.name, {"code": -32602, "message": f"Unknown tool: {name}"})
        return {"content": [{"type": "text", "text": f"{self.name}:{name}"}]}

    async def list_resources(self) -> list[dict[str, Any]]:
        if self.fail_list:
            raise ListError(self.name, "resources", RuntimeError("boom"))
        return [{"uri": uri, "name": uri} for uri in self.resources]

    async def read_resource(self, uri: str) -> dict[str, Any]:
        self.reads.append(uri)
        if uri not in self.resources:
            raise DownstreamError(self.name, {"code": -32002, "message": "Resource not found"})
        return {"contents": [{"uri": uri, "text": self.resources[uri]}]}


def make_entry(
    server_id: str, name: str | None = None, args: list[str] | None = None, **kwargs: Any
) -> ServerEntry:
    """Build a ServerEntry with sensible defaults."""
    return ServerEntry(
        id=server_id,
        name=name or server_id,
        command=kwargs.pop("command", "npx"),
        args=args if args is not None else ["-y", f"@test/{server_id}"],
        **kwargs,
    )


def fake_server_entry(server_id: str = "fake", name: str = "Fake", **env: str) -> ServerEntry:
    """Entry that launches tests/fake_mcp_server.py with the given env."""
    return ServerEntry(
        id=server_id,
        name=name,
        command=sys.executable,
        args=[str(FAKE_SERVER)],
        env=env,
    )


@pytest.fixture
def alpha_beta_config() -> RelayConfig:
    """Two servers that both expose a 'ping' tool."""
    return RelayConfig(
        servers=[
            make_entry("alpha", "Alpha"),
            make_entry("beta", "Beta"),
        ]
    )


@pytest.fixture
def sample_config_json(tmp_path):
    """Create a relay.json with one enabled and one disabled server."""
    config_file = tmp_path / "relay.json"
    config_file.write_text(
        json.dumps(
            {
                "servers": [
                    {
                        "id": "fs",
                        "name": "File System",
                        "command": "npx",
                        "args": ["-y", "@modelcontextprotocol/server-filesystem"],
                    },
                    {
                        "id": "git",
                        "name": "Git",
                        "command": "uvx",
                        "args": ["mcp-server-git"],
                        "env": {"GIT_AUTHOR": "relay"},
                        "disabled": True,
                    },
                ]
            }
        )
    )
    return config_file


@pytest.fixture
def sample_config_yaml(tmp_path):
    """Create a YAML config with the same schema."""
    config_file = tmp_path / "relay.yaml"
    config_file.write_text(
        """
log_level: DEBUG
request_timeout: 15

servers:
  - id: search
    name: Web Search
    command: npx
    args: ["-y", "@test/search"]
    env:
      API_KEY: "test-key"
"""
    )
    return config_file
