"""
Command-line interface for MCP Relay.

Usage:
    mcp-relay --config relay.json
    mcp-relay --check
    mcp-relay --help
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
from pathlib import Path

from mcp_relay.config import CONFIG_PATH_ENV_VAR, RelayConfig, default_config_path
from mcp_relay.gateway import Gateway
from mcp_relay.naming import find_conflicts
from mcp_relay.version import __version__

logger = logging.getLogger("mcp_relay")


def setup_logging(level: str) -> None:
    """Configure logging for the application.

    Logs go to stderr; stdout carries nothing but MCP messages.
    """
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format="%(asctime)s [%(levelname)s] %(message)s",
        handlers=[logging.StreamHandler(sys.stderr)],
    )


def positive_float(value: str) -> float:
    """argparse type for strictly positive numbers."""
    try:
        number = float(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid number: {value!r}") from None
    if not number > 0:
        raise argparse.ArgumentTypeError(f"must be greater than 0, got {value}")
    return number


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        prog="mcp-relay",
        description="MCP Relay - many MCP servers behind a single stdio MCP server",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=f"""
Examples:
  # Start with ./relay.json (or ${CONFIG_PATH_ENV_VAR})
  mcp-relay

  # Explicit config file
  mcp-relay --config ~/relay.json

  # Report tool prefix conflicts without starting any server
  mcp-relay --check

Configuration file format (JSON):
  {{
    "servers": [
      {{
        "id": "fs",
        "name": "File System",
        "command": "npx",
        "args": ["-y", "@modelcontextprotocol/server-filesystem", "/home/me"],
        "env": {{"NODE_OPTIONS": "--max-old-space-size=512"}},
        "disabled": false
      }}
    ]
  }}

  $VAR and ${{VAR}} are expanded in "command"; only ${{VAR}} is expanded in
  "env" values, so a literal $ in a secret is passed through unchanged.
""",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        help=f"Path to configuration file (default: ${CONFIG_PATH_ENV_VAR} or ./relay.json)",
    )

    parser.add_argument(
        "--log-level",
        type=str,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=None,
        help="Logging level (default: from config, else INFO)",
    )

    parser.add_argument(
        "--request-timeout",
        type=positive_float,
        default=None,
        help="Per-request timeout in seconds for downstream calls (default: none)",
    )

    parser.add_argument(
        "--check",
        action="store_true",
        help="Print tool prefix conflicts as JSON and exit",
    )

    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    args = parse_args(argv)

    setup_logging(args.log_level or "INFO")

    # Load configuration
    config_path = args.config or default_config_path()
    logger.info(f"Reading config from {config_path}")
    if not config_path.exists():
        logger.error(f"Config file not found: {config_path}")
        return 1
    config = RelayConfig.from_file(config_path)

    # Apply command-line overrides, re-validating the result
    overrides = {
        key: value
        for key, value in (("log_level", args.log_level), ("request_timeout", args.request_timeout))
        if value is not None
    }
    if overrides:
        config = RelayConfig.model_validate({**config.model_dump(), **overrides})

    logging.getLogger().setLevel(config.log_level)

    if args.check:
        conflicts = find_conflicts(config.get_enabled_servers())
        report = [
            {"kind": c.kind, "key": c.key, "servers": list(c.servers), "message": c.describe()}
            for c in conflicts
        ]
        print(json.dumps({"conflicts": report}, indent=2))
        return 0

    if not config.servers:
        logger.warning("No servers configured")

    # Create gateway
    gateway = Gateway(config)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    main_task = loop.create_task(gateway.run())

    def signal_handler(_sig: int, _frame: object) -> None:
        logger.info("Shutting down...")
        loop.call_soon_threadsafe(main_task.cancel)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    # Run
    try:
        loop.run_until_complete(main_task)
    except (KeyboardInterrupt, asyncio.CancelledError):
        pass
    finally:
        loop.run_until_complete(gateway.stop())
        loop.close()

    return 0


if __name__ == "__main__":
    sys.exit(main())
