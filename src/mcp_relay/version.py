"""Version information for MCP Relay."""

__version__ = "1.0.0"
