"""
JSON-RPC 2.0 framing for MCP stdio transports.

Messages are single-line JSON objects terminated by a newline, in both
directions, on the gateway's own stdio and on every child process.
"""

from __future__ import annotations

import asyncio
import json
import sys
from typing import Any, Protocol

JSONRPC_VERSION = "2.0"
PROTOCOL_VERSION = "2024-11-05"

# Standard JSON-RPC error codes
PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603

# Implementation-defined codes
SERVER_ERROR = -32000
RESOURCE_NOT_FOUND = -32002

# Tool and resource listings easily exceed asyncio's 64 KiB line default
STREAM_LIMIT = 16 * 1024 * 1024


class MessageWriter(Protocol):
    def write(self, data: bytes) -> None: ...

    async def drain(self) -> None: ...


class MessageParseError(ValueError):
    """A line on the wire was not valid JSON."""

    def __init__(self, line: bytes, cause: Exception, reason: str = "Invalid JSON") -> None:
        super().__init__(f"{reason}: {cause}")
        self.line = line


async def read_line(reader: asyncio.StreamReader) -> bytes | None:
    """Read the next non-blank line, or None at end of stream.

    Raises:
        MessageParseError: If a line exceeds the reader's limit; the line is
            discarded and the stream stays usable
    """
    while True:
        try:
            line = await reader.readline()
        except ValueError as e:
            raise MessageParseError(b"", e, "Line too long") from e
        if not line:
            return None
        line = line.strip()
        if line:
            return line


def decode_message(line: bytes) -> Any:
    try:
        return json.loads(line)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise MessageParseError(line, e) from e


async def read_message(reader: asyncio.StreamReader) -> Any:
    """Read and decode one message.

    Returns:
        The decoded JSON value, or None at end of stream

    Raises:
        MessageParseError: If the line is not valid JSON
    """
    line = await read_line(reader)
    if line is None:
        return None
    return decode_message(line)


def encode_message(message: dict[str, Any]) -> bytes:
    return (json.dumps(message, separators=(",", ":"), ensure_ascii=False) + "\n").encode("utf-8")


async def write_message(writer: MessageWriter, message: dict[str, Any]) -> int:
    """Write one message and wait for the transport to drain.

    Returns:
        Number of bytes written
    """
    data = encode_message(message)
    writer.write(data)
    await writer.drain()
    return len(data)


def make_request(
    request_id: int | str, method: str, params: dict[str, Any] | None = None
) -> dict[str, Any]:
    message: dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "id": request_id, "method": method}
    if params is not None:
        message["params"] = params
    return message


def make_notification(method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
    message: dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "method": method}
    if params is not None:
        message["params"] = params
    return message


def make_result(request_id: Any, result: Any) -> dict[str, Any]:
    return {"jsonrpc": JSONRPC_VERSION, "result": result, "id": request_id}


def make_error(request_id: Any, error: dict[str, Any]) -> dict[str, Any]:
    return {"jsonrpc": JSONRPC_VERSION, "error": error, "id": request_id}


class StdoutWriter:
    """Blocking writer for the gateway's own stdout.

    Writes are small and flushed immediately, so a plain buffered write is
    enough and works whether stdout is a pipe, a file or a terminal.
    """

    def write(self, data: bytes) -> None:
        sys.stdout.buffer.write(data)

    async def drain(self) -> None:
        sys.stdout.buffer.flush()


async def open_stdin_reader() -> asyncio.StreamReader:
    """Return a non-blocking StreamReader connected to the gateway's stdin."""
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader(limit=STREAM_LIMIT)
    protocol = asyncio.StreamReaderProtocol(reader)
    await loop.connect_read_pipe(lambda: protocol, sys.stdin.buffer)
    return reader
