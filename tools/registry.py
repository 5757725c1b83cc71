"""Central tool registry.

Tool modules register themselves at import time::

    registry.register(
        name="read_file",
        toolset="file",
        schema=READ_FILE_SCHEMA,
        handler=read_file_handler,
        check_fn=None,
        description="Read a text file",
    )

Handlers are synchronous: ``handler(args: dict, ctx: ToolContext) -> str``.
They return the text shown to the model, or raise ``ToolError`` for a
failure the model should see as a failed result.
"""

import logging
import os
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from agent.cancellation import CancelToken
from agent.messages import ToolDefinition

logger = logging.getLogger(__name__)

DEFAULT_TOOL_TIMEOUT = 120.0


class ToolError(Exception):
    """A tool failure whose message is meant for the model."""


@dataclass
class ToolContext:
    """Per-call execution context handed to every handler."""

    project_root: Path
    cancel_token: Optional[CancelToken] = None
    timeout: float = DEFAULT_TOOL_TIMEOUT

    def resolve(self, path: str) -> Path:
        """Resolve *path* against the project root, rejecting escapes."""
        if path is None or not str(path).strip():
            path = "."
        root = Path(self.project_root).resolve()
        candidate = Path(os.path.expanduser(str(path)))
        if not candidate.is_absolute():
            candidate = root / candidate
        resolved = candidate.resolve()
        if resolved != root and root not in resolved.parents:
            raise ToolError(f"Path '{path}' is outside the project root")
        return resolved

    def relative(self, path: Path) -> str:
        root = Path(self.project_root).resolve()
        try:
            rel = path.resolve().relative_to(root)
        except ValueError:
            return str(path)
        return rel.as_posix() or "."


@dataclass
class ToolEntry:
    name: str
    toolset: str
    schema: Dict[str, Any]
    handler: Callable[..., str]
    check_fn: Optional[Callable[[], bool]] = None
    description: str = ""

    def available(self) -> bool:
        if self.check_fn is None:
            return True
        try:
            return bool(self.check_fn())
        except Exception as e:
            logger.debug("check_fn for tool '%s' failed: %s", self.name, e)
            return False

    def definition(self) -> ToolDefinition:
        return ToolDefinition(
            name=self.name,
            description=self.schema.get("description") or self.description,
            parameters=self.schema.get("parameters") or {"type": "object", "properties": {}},
        )


class ToolRegistry:

    def __init__(self):
        self._tools: Dict[str, ToolEntry] = {}
        self._lock = threading.Lock()

    def register(
        self,
        name: str,
        toolset: str,
        schema: Dict[str, Any],
        handler: Callable[..., str],
        check_fn: Optional[Callable[[], bool]] = None,
        description: str = "",
    ) -> None:
        if name.startswith("mcp_"):
            raise ValueError(f"'{name}': the mcp_ prefix is reserved for protocol tools")
        with self._lock:
            if name in self._tools:
                logger.debug("Re-registering tool '%s'", name)
            self._tools[name] = ToolEntry(
                name=name,
                toolset=toolset,
                schema=schema,
                handler=handler,
                check_fn=check_fn,
                description=description,
            )

    def unregister(self, name: str) -> None:
        with self._lock:
            self._tools.pop(name, None)

    def get_entry(self, name: str) -> Optional[ToolEntry]:
        with self._lock:
            return self._tools.get(name)

    def tool_names(self) -> List[str]:
        with self._lock:
            return sorted(self._tools)

    def get_definitions(self, names: Optional[List[str]] = None) -> List[ToolDefinition]:
        """Definitions of available tools, optionally restricted to *names*."""
        with self._lock:
            entries = list(self._tools.values())
        if names is not None:
            wanted = set(names)
            entries = [e for e in entries if e.name in wanted]
        return [e.definition() for e in sorted(entries, key=lambda e: e.name) if e.available()]


registry = ToolRegistry()
