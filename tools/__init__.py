#!/usr/bin/env python3
"""
Tools Package

Built-in tools available to every Forge Agent session, plus the MCP client
used to proxy tools exposed by external protocol servers:

- file_tools: read_file, write_file, list_dir, edit_file
- search_tool: search_files (text / regex search across the project)
- terminal_tool: run_terminal (shell commands with timeout and deny-list)
- mcp_client / mcp_manager: JSON-RPC stdio client and the connection set

Importing this package registers the built-in tools with ``tools.registry``.
"""

from .registry import ToolContext, ToolError, registry
from . import file_tools  # noqa: F401
from . import search_tool  # noqa: F401
from . import terminal_tool  # noqa: F401

__all__ = ["ToolContext", "ToolError", "registry"]
