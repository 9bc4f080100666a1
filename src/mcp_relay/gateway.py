"""
Main Gateway server - one MCP server upstream, many downstream.

Features:
    - Tool aggregation with per-server name prefixes
    - First-match prefix routing for tool calls
    - Resource aggregation and first-success resource reads
    - Partial failure: a broken server never takes the others down
"""

from __future__ import annotations

import asyncio
import functools
import logging
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any

from mcp_relay import jsonrpc
from mcp_relay.backend import DownstreamConnection
from mcp_relay.errors import (
    InvalidParamsError,
    ListError,
    RelayError,
    ResourceNotFoundError,
    ToolNotFoundError,
)
from mcp_relay.naming import find_conflicts, namespaced_tool_name, tool_prefix
from mcp_relay.registry import ConnectionFactory, ConnectionRegistry, build_registry
from mcp_relay.version import __version__

if TYPE_CHECKING:
    from mcp_relay.config import RelayConfig

logger = logging.getLogger(__name__)

SERVER_NAME = "Relay Gateway"

Handler = Callable[[dict[str, Any]], Awaitable[dict[str, Any]]]


class Gateway:
    """MCP Relay gateway server.

    Provides:
        - A single stdio MCP endpoint for all configured servers
        - Sequential startup with per-server failure isolation
        - Aggregated tools/list and resources/list
        - Routed tools/call and broadcast resources/read

    Example:
        >>> config = RelayConfig.from_file("relay.json")
        >>> gateway = Gateway(config)
        >>> await gateway.run()
    """

    def __init__(
        self,
        config: RelayConfig,
        connection_factory: ConnectionFactory | None = None,
        platform: str | None = None,
    ) -> None:
        """Initialize the gateway.

        Args:
            config: Gateway configuration
            connection_factory: Builds connections; defaults to DownstreamConnection
                with the configured request timeout
            platform: Override for sys.platform during auto-configuration
        """
        self.config = config
        self.registry = ConnectionRegistry()
        self.platform = platform
        self._connection_factory = connection_factory or functools.partial(
            DownstreamConnection, request_timeout=config.request_timeout
        )
        self._handlers: dict[str, Handler] = {
            "initialize": self._handle_initialize,
            "ping": self._handle_ping,
            "tools/list": self._handle_tools_list,
            "tools/call": self._handle_tools_call,
            "resources/list": self._handle_resources_list,
            "resources/read": self._handle_resources_read,
        }

    async def start(self) -> None:
        """Connect to every enabled server and freeze the registry."""
        logger.info("=" * 60)
        logger.info(f"MCP RELAY v{__version__}")
        logger.info("=" * 60)

        self.registry = await build_registry(
            self.config.servers, self._connection_factory, self.platform
        )

        enabled = self.config.get_enabled_servers()
        logger.info(f"Servers: {len(self.registry)}/{len(enabled)} connected")
        for connection in self.registry.connections():
            logger.info(f"  {tool_prefix(connection.name)}* -> {connection.name}")

        for conflict in find_conflicts(enabled):
            logger.warning(f"Routing conflict: {conflict.describe()}")

        logger.info("=" * 60)

    async def stop(self) -> None:
        """Stop all downstream servers."""
        for connection in self.registry.connections():
            await connection.stop()
            stats = connection.stats
            logger.info(
                f"[{connection.name}] Traffic: {stats.messages_out} sent / "
                f"{stats.messages_in} received, {stats.total_bytes} bytes, "
                f"~{stats.estimated_tokens} tokens"
            )
        logger.info("Gateway stopped")

    async def run(self) -> None:
        """Start up, then serve MCP on stdin/stdout until stdin closes."""
        await self.start()
        reader = await jsonrpc.open_stdin_reader()
        logger.info("Gateway running on stdio")
        await self.serve(reader, jsonrpc.StdoutWriter())

    # =========================================================================
    # Aggregation and routing
    # =========================================================================

    async def list_tools(self) -> list[dict[str, Any]]:
        """List every server's tools under its namespace prefix."""
        all_tools: list[dict[str, Any]] = []

        for connection in self.registry.connections():
            try:
                tools = await connection.list_tools()
            except ListError as e:
                logger.warning(f"[{connection.name}] {e}")
                continue

            for tool in tools:
                all_tools.append(
                    {
                        **tool,
                        "name": namespaced_tool_name(connection.name, tool.get("name", "")),
                        "description": f"[{connection.name}] {tool.get('description') or ''}",
                    }
                )

        return all_tools

    def route_tool(self, tool_name: str) -> tuple[DownstreamConnection, str]:
        """Resolve a namespaced tool name to a connection and real tool name.

        The first server, in registration order, whose prefix starts the
        name wins, even when a later server's prefix would match more of it.

        Raises:
            ToolNotFoundError: If no server's prefix matches
        """
        for connection in self.registry.connections():
            prefix = tool_prefix(connection.name)
            if tool_name.startswith(prefix):
                return connection, tool_name[len(prefix) :]

        raise ToolNotFoundError(tool_name)

    async def call_tool(
        self, tool_name: str, arguments: dict[str, Any] | None = None
    ) -> dict[str, Any]:
        """Forward a tool call to the server owning its prefix.

        The downstream result, or error, is passed through unmodified.
        """
        connection, real_name = self.route_tool(tool_name)
        logger.debug(f"[{connection.name}] tools/call {real_name}")
        return await connection.call_tool(real_name, arguments)

    async def list_resources(self) -> list[dict[str, Any]]:
        """List every server's resources, unmodified."""
        all_resources: list[dict[str, Any]] = []

        for connection in self.registry.connections():
            try:
                all_resources.extend(await connection.list_resources())
            except ListError as e:
                logger.warning(f"[{connection.name}] {e}")

        return all_resources

    async def read_resource(self, uri: str) -> dict[str, Any]:
        """Read a resource from the first server able to serve it.

        Raises:
            ResourceNotFoundError: If every server fails or none are connected
        """
        for connection in self.registry.connections():
            try:
                return await connection.read_resource(uri)
            except RelayError as e:
                logger.debug(f"[{connection.name}] Cannot read {uri}: {e}")

        raise ResourceNotFoundError(uri)

    # =========================================================================
    # Upstream MCP server
    # =========================================================================

    async def serve(self, reader: asyncio.StreamReader, writer: jsonrpc.MessageWriter) -> None:
        """Serve upstream requests until the reader reaches end of stream.

        Every request runs in its own task, so a slow downstream server
        only delays the requests routed to it.
        """
        tasks: set[asyncio.Task[None]] = set()

        while True:
            try:
                message = await jsonrpc.read_message(reader)
            except jsonrpc.MessageParseError as e:
                logger.warning(f"Unreadable upstream message: {e}")
                await jsonrpc.write_message(
                    writer,
                    jsonrpc.make_error(
                        None, {"code": jsonrpc.PARSE_ERROR, "message": "Parse error"}
                    ),
                )
                continue

            if message is None:
                break

            task = asyncio.create_task(self._reply(message, writer))
            tasks.add(task)
            task.add_done_callback(tasks.discard)

        if tasks:
            await asyncio.gather(*tasks)
        logger.info("Upstream closed")

    async def _reply(self, message: Any, writer: jsonrpc.MessageWriter) -> None:
        response = await self.handle_message(message)
        if response is not None:
            await jsonrpc.write_message(writer, response)

    async def handle_message(self, message: Any) -> dict[str, Any] | None:
        """Handle one upstream message.

        Returns:
            The JSON-RPC response, or None for notifications
        """
        if not isinstance(message, dict):
            return jsonrpc.make_error(
                None, {"code": jsonrpc.INVALID_REQUEST, "message": "Invalid Request"}
            )

        method = message.get("method")
        request_id = message.get("id")

        if not isinstance(method, str):
            if "result" in message or "error" in message:
                # Responses to requests we never send
                return None
            return jsonrpc.make_error(
                request_id, {"code": jsonrpc.INVALID_REQUEST, "message": "Invalid Request"}
            )

        if "id" not in message:
            logger.debug(f"Upstream notification: {method}")
            return None

        handler = self._handlers.get(method)
        if handler is None:
            return jsonrpc.make_error(
                request_id,
                {"code": jsonrpc.METHOD_NOT_FOUND, "message": f"Unknown method: {method}"},
            )

        params = message.get("params")
        if params is None:
            params = {}
        if not isinstance(params, dict):
            return jsonrpc.make_error(
                request_id, {"code": jsonrpc.INVALID_PARAMS, "message": "Invalid params"}
            )

        try:
            result = await handler(params)
        except RelayError as e:
            return jsonrpc.make_error(request_id, e.to_error())
        except Exception as e:
            logger.exception(f"Error handling {method}")
            return jsonrpc.make_error(
                request_id, {"code": jsonrpc.INTERNAL_ERROR, "message": str(e)}
            )

        return jsonrpc.make_result(request_id, result)

    async def _handle_initialize(self, params: dict[str, Any]) -> dict[str, Any]:
        version = params.get("protocolVersion")
        if not isinstance(version, str):
            version = jsonrpc.PROTOCOL_VERSION

        client = params.get("clientInfo")
        client_name = client.get("name", "unknown") if isinstance(client, dict) else "unknown"
        logger.info(f"Upstream client: {client_name} (protocol {version})")
        return {
            "protocolVersion": version,
            "capabilities": {"tools": {}, "resources": {}},
            "serverInfo": {"name": SERVER_NAME, "version": __version__},
        }

    async def _handle_ping(self, _params: dict[str, Any]) -> dict[str, Any]:
        return {}

    async def _handle_tools_list(self, _params: dict[str, Any]) -> dict[str, Any]:
        return {"tools": await self.list_tools()}

    async def _handle_tools_call(self, params: dict[str, Any]) -> dict[str, Any]:
        tool_name = params.get("name")
        if not isinstance(tool_name, str) or not tool_name:
            raise InvalidParamsError("Missing 'name' parameter")
        arguments = params.get("arguments")
        if arguments is not None and not isinstance(arguments, dict):
            raise InvalidParamsError("'arguments' must be an object")
        return await self.call_tool(tool_name, arguments)

    async def _handle_resources_list(self, _params: dict[str, Any]) -> dict[str, Any]:
        return {"resources": await self.list_resources()}

    async def _handle_resources_read(self, params: dict[str, Any]) -> dict[str, Any]:
        uri = params.get("uri")
        if not isinstance(uri, str) or not uri:
            raise InvalidParamsError("Missing 'uri' parameter")
        return await self.read_resource(uri)
