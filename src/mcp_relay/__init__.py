"""
MCP Relay - Model Context Protocol Aggregation Gateway
======================================================

Presents many MCP servers to a client as one. The gateway speaks MCP on its
own stdin/stdout and fans requests out to downstream servers it launches as
child processes.

Features:
    - Tool aggregation: every tool is exposed as "<server name>_<tool name>"
    - Prefix routing: tool calls go to the first server whose prefix matches
    - Resource aggregation with first-success reads
    - Partial failure: servers that fail to start or list are skipped
    - Sequential, deterministic startup in configuration order

Example:
    >>> from mcp_relay import Gateway, RelayConfig
    >>> config = RelayConfig.from_file("relay.json")
    >>> gateway = Gateway(config)
    >>> await gateway.run()

Or via CLI:
    $ mcp-relay --config relay.json
"""

from mcp_relay.config import RelayConfig, ServerEntry
from mcp_relay.gateway import Gateway
from mcp_relay.naming import sanitize
from mcp_relay.version import __version__

__all__ = [
    "Gateway",
    "RelayConfig",
    "ServerEntry",
    "__version__",
    "sanitize",
]
