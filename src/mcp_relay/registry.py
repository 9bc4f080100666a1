"""
Connection registry - the set of live downstream connections.

Built once at startup, strictly in configuration order, then frozen. Request
handling only ever reads it, so no locking is needed while serving.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Iterator, Mapping
from types import MappingProxyType

from mcp_relay.autoconfig import apply_auto_configuration
from mcp_relay.backend import DownstreamConnection
from mcp_relay.config import ServerEntry
from mcp_relay.errors import ConnectError

logger = logging.getLogger(__name__)

ConnectionFactory = Callable[[ServerEntry], DownstreamConnection]


class ConnectionRegistry(Mapping[str, DownstreamConnection]):
    """Read-only, insertion-ordered mapping of server id to connection."""

    def __init__(self, connections: Mapping[str, DownstreamConnection] | None = None) -> None:
        self._connections = MappingProxyType(dict(connections or {}))

    def __getitem__(self, server_id: str) -> DownstreamConnection:
        return self._connections[server_id]

    def __iter__(self) -> Iterator[str]:
        return iter(self._connections)

    def __len__(self) -> int:
        return len(self._connections)

    def __repr__(self) -> str:
        return f"ConnectionRegistry({list(self._connections)!r})"

    def connections(self) -> list[DownstreamConnection]:
        """Connections in registration order."""
        return list(self._connections.values())


async def build_registry(
    entries: Iterable[ServerEntry],
    factory: ConnectionFactory = DownstreamConnection,
    platform: str | None = None,
) -> ConnectionRegistry:
    """Connect every enabled server, one at a time, in order.

    Each entry is auto-configured just before its own connection attempt.
    A failed connection is logged and left out; this never fails as a whole.
    If interrupted (for example cancelled during shutdown), every server
    started so far is stopped before the exception propagates.

    Args:
        entries: Server entries in configuration order
        factory: Builds an unconnected connection for an entry
        platform: Override for sys.platform, passed to auto-configuration

    Returns:
        Frozen registry of connected servers
    """
    connected: dict[str, DownstreamConnection] = {}
    connection: DownstreamConnection | None = None

    try:
        for entry in entries:
            if entry.disabled:
                logger.info(f"[{entry.name}] Disabled, skipping")
                continue

            apply_auto_configuration(entry, platform)

            logger.info(f"[{entry.name}] Connecting...")
            connection = factory(entry)
            try:
                await connection.connect()
            except ConnectError as e:
                logger.error(f"[{entry.name}] {e}")
                continue

            connected[entry.id] = connection
            logger.info(f"[{entry.name}] Connected")
    except BaseException:
        # The registry is never published, so stop whatever was started here
        logger.warning("Startup interrupted, stopping servers")
        pending = list(connected.values())
        if connection is not None and connection.id not in connected:
            pending.append(connection)
        for leftover in pending:
            await leftover.stop()
        raise

    return ConnectionRegistry(connected)
