"""
Startup-time fixups applied to server entries before they are connected.
"""

from __future__ import annotations

import logging
import sys
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from mcp_relay.config import ServerEntry

logger = logging.getLogger(__name__)

FILESYSTEM_SERVER_NAME = "File System"


def is_path_argument(arg: str) -> bool:
    """An argument that is neither a flag nor a scoped package name."""
    return not arg.startswith("-") and not arg.startswith("@")


def filesystem_root(platform: str | None = None) -> str:
    platform = sys.platform if platform is None else platform
    return "C:\\" if platform == "win32" else "/"


def apply_auto_configuration(entry: ServerEntry, platform: str | None = None) -> bool:
    """Grant the filesystem server a root path when none was configured.

    A server named exactly "File System" whose arguments contain no path
    gets the filesystem root appended, so it starts instead of failing on a
    missing path. This grants access to the whole disk.

    Args:
        entry: Server entry, mutated in place
        platform: Override for sys.platform

    Returns:
        True if the entry was changed
    """
    if entry.name != FILESYSTEM_SERVER_NAME:
        return False

    if any(is_path_argument(arg) for arg in entry.args):
        return False

    root = filesystem_root(platform)
    logger.warning(f"[{entry.name}] Auto-configuring File System access to {root}")
    entry.args.append(root)
    return True
