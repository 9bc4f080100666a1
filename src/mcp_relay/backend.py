"""
Downstream connection management - one MCP client per child process.

Each connection spawns its configured command and speaks JSON-RPC over the
child's stdin/stdout. Responses are correlated by request id, so several
requests may be in flight on the same connection at once.
"""

from __future__ import annotations

import asyncio
import logging
import math
import os
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from mcp_relay import jsonrpc
from mcp_relay.errors import (
    ConnectError,
    ConnectionClosedError,
    DownstreamError,
    ListError,
    RelayError,
    RequestTimeoutError,
)
from mcp_relay.version import __version__

if TYPE_CHECKING:
    from mcp_relay.config import ServerEntry

logger = logging.getLogger(__name__)

STOP_TIMEOUT = 5.0


def estimate_tokens(num_bytes: int) -> int:
    """Conservative token estimate for mixed MCP JSON payloads."""
    if num_bytes <= 0:
        return 0
    return math.ceil(num_bytes / 4)


@dataclass
class TrafficStats:
    """Message and byte counters for one downstream connection."""

    bytes_in: int = 0
    bytes_out: int = 0
    messages_in: int = 0
    messages_out: int = 0
    updated_at: float = field(default_factory=time.time)

    def record_in(self, num_bytes: int) -> None:
        self.bytes_in += num_bytes
        self.messages_in += 1
        self.updated_at = time.time()

    def record_out(self, num_bytes: int) -> None:
        self.bytes_out += num_bytes
        self.messages_out += 1
        self.updated_at = time.time()

    @property
    def total_bytes(self) -> int:
        return self.bytes_in + self.bytes_out

    @property
    def estimated_tokens(self) -> int:
        return estimate_tokens(self.bytes_in) + estimate_tokens(self.bytes_out)


@dataclass
class DownstreamConnection:
    """Manages the connection to a single downstream MCP server.

    Handles:
        - Process lifecycle for the configured command
        - MCP initialize handshake
        - Request/response correlation by id
        - Forwarding child stderr into the log
    """

    entry: ServerEntry
    request_timeout: float | None = None

    # Runtime state
    process: asyncio.subprocess.Process | None = None
    stats: TrafficStats = field(default_factory=TrafficStats)
    server_info: dict[str, Any] = field(default_factory=dict)
    capabilities: dict[str, Any] = field(default_factory=dict)

    # Session state
    _write_lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    _pending: dict[int, asyncio.Future[dict[str, Any]]] = field(default_factory=dict)
    _next_id: int = 0
    _closed: bool = False
    _reader_task: asyncio.Task[None] | None = None
    _stderr_task: asyncio.Task[None] | None = None

    @property
    def id(self) -> str:
        """Server id from config."""
        return self.entry.id

    @property
    def name(self) -> str:
        """Server display name from config."""
        return self.entry.name

    @property
    def is_running(self) -> bool:
        """Check if the child process is alive and its stdout still open."""
        return self.process is not None and self.process.returncode is None and not self._closed

    async def connect(self) -> None:
        """Spawn the server and perform the MCP handshake.

        The child inherits the gateway's environment with the entry's env
        mapping laid over it.

        Raises:
            ConnectError: If the process cannot be spawned or initialized
        """
        command = self.entry.command_list
        logger.info(f"[{self.name}] Starting: {' '.join(command)}")

        proc_env = os.environ.copy()
        proc_env.update(self.entry.env)

        try:
            self.process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=proc_env,
                limit=jsonrpc.STREAM_LIMIT,
            )
        except OSError as e:
            raise ConnectError(self.name, e) from e

        logger.info(f"[{self.name}] Started (PID: {self.process.pid})")

        assert self.process.stdout and self.process.stderr
        self._closed = False
        self._reader_task = asyncio.create_task(self._read_loop(self.process.stdout))
        self._stderr_task = asyncio.create_task(self._drain_stderr(self.process.stderr))

        try:
            result = await self.request(
                "initialize",
                {
                    "protocolVersion": jsonrpc.PROTOCOL_VERSION,
                    "capabilities": {},
                    "clientInfo": {"name": f"relay-{self.id}", "version": __version__},
                },
            )
            await self.notify("notifications/initialized")
        except RelayError as e:
            await self.stop()
            raise ConnectError(self.name, e) from e
        except BaseException:
            # Cancelled mid-handshake; never leave the child behind
            await self.stop()
            raise

        self.server_info = dict(result.get("serverInfo") or {})
        self.capabilities = dict(result.get("capabilities") or {})
        logger.info(f"[{self.name}] MCP initialized")

    async def stop(self) -> None:
        """Stop the server process. Safe to call more than once."""
        process = self.process
        self._closed = True
        if process is not None and process.returncode is None:
            logger.info(f"[{self.name}] Stopping (PID: {process.pid})")
            if process.stdin and not process.stdin.is_closing():
                process.stdin.close()
            try:
                process.terminate()
            except ProcessLookupError:
                pass
            try:
                await asyncio.wait_for(process.wait(), timeout=STOP_TIMEOUT)
            except asyncio.TimeoutError:
                logger.warning(f"[{self.name}] Did not exit, killing")
                try:
                    process.kill()
                except ProcessLookupError:
                    pass
                await process.wait()

        # The pipes reach EOF once the process is gone; let the readers drain
        tasks = [t for t in (self._reader_task, self._stderr_task) if t is not None]
        if tasks:
            _, still_running = await asyncio.wait(tasks, timeout=STOP_TIMEOUT)
            for task in still_running:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
        self._reader_task = None
        self._stderr_task = None
        self._fail_pending()

    # =========================================================================
    # MCP operations
    # =========================================================================

    async def list_tools(self) -> list[dict[str, Any]]:
        """Fetch every tool the server exposes.

        Raises:
            ListError: On any failure; callers treat it as zero tools
        """
        return await self._list_all("tools/list", "tools")

    async def call_tool(self, name: str, arguments: dict[str, Any] | None = None) -> dict[str, Any]:
        """Invoke a tool by its un-prefixed name and return the raw result."""
        params: dict[str, Any] = {"name": name}
        if arguments is not None:
            params["arguments"] = arguments
        return await self.request("tools/call", params)

    async def list_resources(self) -> list[dict[str, Any]]:
        """Fetch every resource the server exposes.

        Raises:
            ListError: On any failure; callers treat it as zero resources
        """
        return await self._list_all("resources/list", "resources")

    async def read_resource(self, uri: str) -> dict[str, Any]:
        return await self.request("resources/read", {"uri": uri})

    async def _list_all(self, method: str, key: str) -> list[dict[str, Any]]:
        """Collect a paginated listing, following nextCursor."""
        items: list[dict[str, Any]] = []
        cursor: str | None = None
        try:
            while True:
                params = {"cursor": cursor} if cursor else None
                result = await self.request(method, params)
                page = result.get(key, [])
                if not isinstance(page, list):
                    raise ValueError(f"'{key}' is not a list")
                if not all(isinstance(item, dict) for item in page):
                    raise ValueError(f"'{key}' contains a non-object entry")
                items.extend(page)
                cursor = result.get("nextCursor")
                if not cursor:
                    break
        except (RelayError, ValueError) as e:
            raise ListError(self.name, key, e) from e

        logger.debug(f"[{self.name}] Listed {len(items)} {key}")
        return items

    # =========================================================================
    # JSON-RPC plumbing
    # =========================================================================

    async def request(self, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        """Send a request and wait for its response.

        Returns:
            The response's result object

        Raises:
            DownstreamError: If the server answered with an error
            ConnectionClosedError: If the server is gone
            RequestTimeoutError: If request_timeout is set and exceeded
        """
        if not self.is_running:
            raise ConnectionClosedError(self.name, self._returncode())

        self._next_id += 1
        request_id = self._next_id
        future: asyncio.Future[dict[str, Any]] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future

        try:
            await self._send(jsonrpc.make_request(request_id, method, params))
            if self.request_timeout is None:
                response = await future
            else:
                response = await asyncio.wait_for(future, timeout=self.request_timeout)
        except asyncio.TimeoutError as e:
            assert self.request_timeout is not None
            raise RequestTimeoutError(self.name, method, self.request_timeout) from e
        finally:
            self._pending.pop(request_id, None)

        if "error" in response:
            error = response["error"]
            if not isinstance(error, dict):
                error = {"code": jsonrpc.SERVER_ERROR, "message": str(error)}
            raise DownstreamError(self.name, error)

        result = response.get("result")
        return result if isinstance(result, dict) else {}

    async def notify(self, method: str, params: dict[str, Any] | None = None) -> None:
        await self._send(jsonrpc.make_notification(method, params))

    async def _send(self, message: dict[str, Any]) -> None:
        process = self.process
        if process is None or process.stdin is None or process.stdin.is_closing():
            raise ConnectionClosedError(self.name, self._returncode())

        async with self._write_lock:
            try:
                written = await jsonrpc.write_message(process.stdin, message)
            except (ConnectionError, OSError) as e:
                raise ConnectionClosedError(self.name, self._returncode()) from e
        self.stats.record_out(written)

    async def _read_loop(self, reader: asyncio.StreamReader) -> None:
        """Dispatch messages from the server's stdout until it closes."""
        try:
            while True:
                line = await jsonrpc.read_line(reader)
                if line is None:
                    break
                self.stats.record_in(len(line))
                try:
                    message = jsonrpc.decode_message(line)
                except jsonrpc.MessageParseError:
                    logger.warning(f"[{self.name}] Skipping non-JSON line: {line[:100]!r}")
                    continue
                await self._dispatch(message)
        except ValueError as e:
            # An over-long line; whatever response it carried is lost
            logger.error(f"[{self.name}] Stream error: {e}")
        finally:
            if not self._closed:
                self._closed = True
                logger.warning(f"[{self.name}] Connection closed")
            self._fail_pending()

    async def _dispatch(self, message: Any) -> None:
        if not isinstance(message, dict):
            logger.warning(f"[{self.name}] Ignoring non-object message")
            return

        method = message.get("method")
        if method is None:
            future = self._pending.get(message.get("id"))  # type: ignore[arg-type]
            if future is not None and not future.done():
                future.set_result(message)
            else:
                logger.debug(f"[{self.name}] Unmatched response id: {message.get('id')}")
            return

        if "id" not in message:
            logger.debug(f"[{self.name}] Notification: {method}")
            return

        # Requests initiated by the server
        if method == "ping":
            reply = jsonrpc.make_result(message["id"], {})
        else:
            reply = jsonrpc.make_error(
                message["id"],
                {"code": jsonrpc.METHOD_NOT_FOUND, "message": f"Unknown method: {method}"},
            )
        try:
            await self._send(reply)
        except ConnectionClosedError:
            logger.debug(f"[{self.name}] Could not answer {method}: connection closed")

    async def _drain_stderr(self, stream: asyncio.StreamReader) -> None:
        """Forward the server's stderr into the log, line by line."""
        while True:
            try:
                line = await stream.readline()
            except ValueError:
                continue
            if not line:
                break
            text = line.decode(errors="replace").rstrip()
            if text:
                logger.info(f"[{self.name}] {text}")

    def _fail_pending(self) -> None:
        if not self._pending:
            return
        error = ConnectionClosedError(self.name, self._returncode())
        for future in self._pending.values():
            if not future.done():
                future.set_exception(error)

    def _returncode(self) -> int | None:
        return self.process.returncode if self.process is not None else None
