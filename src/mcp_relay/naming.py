"""
Tool namespacing for aggregated servers.

Every tool exposed upstream is prefixed with its server's sanitized display
name. The same helpers are used when listing and when routing so that a
listed name always maps back to the server that produced it.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Literal

if TYPE_CHECKING:
    from mcp_relay.config import ServerEntry

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_-]")

SEPARATOR = "_"


def sanitize(name: str) -> str:
    """Replace every character outside [A-Za-z0-9_-] with an underscore."""
    return _UNSAFE_CHARS.sub("_", name)


def tool_prefix(server_name: str) -> str:
    return sanitize(server_name) + SEPARATOR


def namespaced_tool_name(server_name: str, tool_name: str) -> str:
    """Build the upstream-visible name for a downstream tool.

    Example:
        >>> namespaced_tool_name("File System", "read_file")
        'File_System_read_file'
    """
    return tool_prefix(server_name) + tool_name


ConflictKind = Literal["duplicate_prefix", "prefix_overlap", "duplicate_command"]


@dataclass(frozen=True)
class NameConflict:
    """A potential routing ambiguity between configured servers."""

    kind: ConflictKind
    key: str
    servers: tuple[str, ...]

    def describe(self) -> str:
        servers = ", ".join(self.servers)
        if self.kind == "duplicate_prefix":
            return f"Servers {servers} share the tool prefix '{self.key}'"
        if self.kind == "prefix_overlap":
            return f"Tool prefix '{self.key}' of {self.servers[0]} overlaps {self.servers[1]}"
        return f"Servers {servers} run the same command: {self.key}"


def find_conflicts(entries: Iterable[ServerEntry]) -> list[NameConflict]:
    """Scan server entries for namespace collisions.

    Reports servers whose sanitized names are identical, servers whose
    prefix is a string prefix of another server's prefix (the earlier one
    can capture the later one's tool calls), and servers configured with
    the same command line twice.

    This is a diagnostic only. Routing always takes the first match in
    configuration order regardless of what is reported here.

    Args:
        entries: Server entries in configuration order

    Returns:
        Conflicts found, in a stable order
    """
    entries = list(entries)
    conflicts: list[NameConflict] = []

    by_prefix: dict[str, list[str]] = {}
    by_command: dict[str, list[str]] = {}
    for entry in entries:
        by_prefix.setdefault(tool_prefix(entry.name), []).append(entry.id)
        command_line = " ".join([entry.command, *entry.args])
        by_command.setdefault(command_line, []).append(entry.id)

    for prefix, ids in by_prefix.items():
        if len(ids) > 1:
            conflicts.append(NameConflict("duplicate_prefix", prefix, tuple(ids)))

    prefixes = list(by_prefix)
    for short in prefixes:
        for long in prefixes:
            if short != long and long.startswith(short):
                for short_id in by_prefix[short]:
                    for long_id in by_prefix[long]:
                        conflicts.append(NameConflict("prefix_overlap", short, (short_id, long_id)))

    for command_line, ids in by_command.items():
        if len(ids) > 1:
            conflicts.append(NameConflict("duplicate_command", command_line, tuple(ids)))

    return conflicts
