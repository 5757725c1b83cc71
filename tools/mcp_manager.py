"""
MCP Manager -- lifecycle manager for a set of MCP server connections.

Responsibilities:
  - Parse ``mcp_servers`` settings into MCPServerConfig objects
  - Connect servers (in parallel), discover their tools, reconnect, shut down
  - Namespace discovered tools as ``mcp_<server>_<tool>`` and route calls
    back to the owning server under the original tool name
  - Turn every protocol failure into text for the model; nothing raises
    out of ``call_tool``

One instance is created per process (by the CLI or embedding application)
and passed explicitly to every orchestrator session that should see the
protocol tools.

Usage:
    from tools.mcp_manager import MCPManager, MCPServerConfig

    manager = MCPManager()
    manager.connect_all([MCPServerConfig.from_dict("github", {...})])
    text = manager.call_tool("mcp_github_create_issue", {"title": "..."})
    manager.shutdown()
"""

import copy
import logging
import re
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from agent.messages import ToolDefinition
from tools.mcp_client import (
    CALL_TOOL_TIMEOUT,
    INITIALIZE_TIMEOUT,
    LIST_TOOLS_TIMEOUT,
    MCPClient,
    MCPDisconnectedError,
    MCPProtocolError,
    MCPTimeoutError,
    MCPTransportError,
    StdioTransport,
    format_tool_content,
    sanitize_error,
)

logger = logging.getLogger(__name__)

STATUS_CONNECTING = "connecting"
STATUS_READY = "ready"
STATUS_ERROR = "error"
STATUS_CLOSED = "closed"

MAX_PARALLEL_CONNECTS = 8


# ---------------------------------------------------------------------------
# Config structures
# ---------------------------------------------------------------------------

@dataclass
class MCPServerConfig:
    """Parsed configuration for a single stdio MCP server."""

    name: str
    command: Optional[str] = None
    args: List[str] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)
    cwd: Optional[str] = None
    enabled: bool = True

    @classmethod
    def from_dict(cls, name: str, cfg: dict) -> "MCPServerConfig":
        """Parse one ``mcp_servers`` entry. Invalid entries come back disabled."""
        if not isinstance(cfg, dict):
            logger.warning("MCP server '%s' config is not a mapping -- disabled", name)
            return cls(name=name, enabled=False)

        enabled = bool(cfg.get("enabled", True))

        env = cfg.get("env") or {}
        if not isinstance(env, dict):
            logger.warning("MCP server '%s': env must be a mapping, ignoring it", name)
            env = {}
        env = {str(k): str(v) for k, v in env.items()}

        if not cfg.get("command"):
            if "url" in cfg:
                logger.warning("MCP server '%s': only stdio servers are supported -- disabled", name)
            else:
                logger.warning("MCP server '%s' has no 'command' -- disabled", name)
            return cls(name=name, env=env, enabled=False)

        args = cfg.get("args") or []
        if not isinstance(args, list):
            args = [str(args)]
        else:
            args = [str(a) for a in args]
        cwd = cfg.get("cwd")

        return cls(
            name=name,
            command=str(cfg["command"]),
            args=args,
            env=env,
            cwd=str(cwd) if cwd is not None else None,
            enabled=enabled,
        )


class MCPServerConnection:
    """A server entry: its config, live client, status and discovered tools."""

    def __init__(self, config: MCPServerConfig):
        self.config = config
        self.client: Optional[MCPClient] = None
        self.status = STATUS_CLOSED
        self.tools: List[dict] = []
        self.error: Optional[str] = None
        self.connected_at: Optional[float] = None

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def ready(self) -> bool:
        return self.status == STATUS_READY


@dataclass(frozen=True)
class MCPToolOutcome:
    text: str
    is_error: bool = False


# ---------------------------------------------------------------------------
# Tool name helpers
# ---------------------------------------------------------------------------

def _sanitize_name(name: str) -> str:
    """Convert a string to a valid tool name component (lowercase, underscores)."""
    name = re.sub(r"[^a-zA-Z0-9_]", "_", name.lower())
    name = re.sub(r"_+", "_", name).strip("_")
    return name


def make_tool_name(server_name: str, tool_name: str) -> str:
    """Create a namespaced tool name: ``mcp_{server}_{tool}``."""
    return f"mcp_{_sanitize_name(server_name)}_{_sanitize_name(tool_name)}"


# ---------------------------------------------------------------------------
# Schema conversion
# ---------------------------------------------------------------------------

def _dereference_schema(schema: dict) -> dict:
    """Recursively inline JSON Schema ``$ref`` definitions.

    Some MCP tools use ``$ref`` for shared type definitions. Many LLMs
    handle inlined schemas better than ``$ref`` pointers.
    """
    defs = schema.get("$defs", schema.get("definitions", {}))
    if not defs:
        return schema

    def _resolve(obj, depth=0):
        if depth > 20:
            return obj
        if isinstance(obj, dict):
            ref_path = obj.get("$ref")
            if isinstance(ref_path, str):
                for prefix in ("#/$defs/", "#/definitions/"):
                    if ref_path.startswith(prefix) and ref_path[len(prefix):] in defs:
                        return _resolve(copy.deepcopy(defs[ref_path[len(prefix):]]), depth + 1)
                return obj
            return {k: _resolve(v, depth) for k, v in obj.items()}
        if isinstance(obj, list):
            return [_resolve(item, depth) for item in obj]
        return obj

    result = _resolve(copy.deepcopy(schema))
    result.pop("$defs", None)
    result.pop("definitions", None)
    return result


def _convert_mcp_schema(mcp_tool: dict, server_name: str, namespaced: Optional[str] = None) -> ToolDefinition:
    """Convert an MCP tool definition to a namespaced ToolDefinition.

    ``namespaced`` overrides the default ``mcp_<server>_<tool>`` name.
    """
    input_schema = mcp_tool.get("inputSchema") or {}
    if "$defs" in input_schema or "definitions" in input_schema:
        input_schema = _dereference_schema(input_schema)
    else:
        input_schema = copy.deepcopy(input_schema)

    if not input_schema.get("type"):
        input_schema["type"] = "object"
    if "properties" not in input_schema:
        input_schema["properties"] = {}

    return ToolDefinition(
        name=namespaced or make_tool_name(server_name, mcp_tool["name"]),
        description=f"[MCP:{server_name}] {mcp_tool.get('description') or mcp_tool['name']}",
        parameters=input_schema,
    )


# ---------------------------------------------------------------------------
# MCPManager
# ---------------------------------------------------------------------------

class MCPManager:
    """Owns every protocol server connection of the process."""

    def __init__(
        self,
        init_timeout: float = INITIALIZE_TIMEOUT,
        list_timeout: float = LIST_TOOLS_TIMEOUT,
        call_timeout: float = CALL_TOOL_TIMEOUT,
    ):
        self._servers: Dict[str, MCPServerConnection] = {}
        self._lock = threading.RLock()
        # namespaced tool name -> (server name, original tool name)
        self._routes: Dict[str, Tuple[str, str]] = {}
        self.init_timeout = init_timeout
        self.list_timeout = list_timeout
        self.call_timeout = call_timeout

    @property
    def servers(self) -> Dict[str, MCPServerConnection]:
        with self._lock:
            return dict(self._servers)

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    def connect(self, config: MCPServerConfig) -> MCPServerConnection:
        """Connect one server. Failures are recorded on the entry, never raised."""
        with self._lock:
            conn = self._servers.get(config.name)
            if conn is None:
                conn = MCPServerConnection(config)
                self._servers[config.name] = conn
            else:
                self._close_connection(conn)
                conn.config = config
            conn.status = STATUS_CONNECTING
            conn.error = None
            conn.tools = []
            self._rebuild_routes()

        if not config.enabled or not config.command:
            conn.status = STATUS_ERROR
            conn.error = "server is disabled or has no command"
            return conn

        transport = StdioTransport(
            command=config.command,
            args=config.args,
            env=config.env or None,
            cwd=config.cwd,
            name=config.name,
        )
        client = MCPClient(transport, on_close=lambda reason, c=conn: self._on_server_closed(c, reason))
        start = time.monotonic()
        try:
            client.connect(timeout=self.init_timeout)
            tools = client.list_tools(timeout=self.list_timeout)
        except (MCPTransportError, MCPProtocolError) as e:
            conn.status = STATUS_ERROR
            conn.error = sanitize_error(str(e))
            logger.warning("MCP server '%s' failed to connect: %s", config.name, conn.error)
            client.disconnect()
            return conn
        except Exception as e:
            conn.status = STATUS_ERROR
            conn.error = sanitize_error(f"unexpected {type(e).__name__} during handshake: {e}")
            logger.warning(
                "MCP server '%s' failed to connect: %s", config.name, conn.error, exc_info=True,
            )
            client.disconnect()
            return conn

        with self._lock:
            conn.client = client
            conn.tools = tools
            conn.status = STATUS_READY
            conn.connected_at = time.time()
            self._rebuild_routes()

        if not tools:
            logger.warning(
                "MCP server '%s' reported no tools; it stays tool-less until reconnected",
                config.name,
            )
        logger.info(
            "MCP server '%s' ready with %d tool(s) in %.2fs",
            config.name, len(tools), time.monotonic() - start,
        )
        return conn

    def connect_all(self, configs: Sequence[MCPServerConfig]) -> Dict[str, Any]:
        """Connect every enabled server in parallel; returns ``get_status()``."""
        enabled = [c for c in configs if c.enabled]
        for cfg in configs:
            if not cfg.enabled:
                with self._lock:
                    conn = MCPServerConnection(cfg)
                    conn.error = "disabled"
                    self._servers.setdefault(cfg.name, conn)

        if enabled:
            workers = min(MAX_PARALLEL_CONNECTS, len(enabled))
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="mcp-connect") as pool:
                list(pool.map(self.connect, enabled))
        return self.get_status()

    def reconnect(self, server_name: str) -> Dict[str, Any]:
        """Drop and re-establish one server connection."""
        with self._lock:
            conn = self._servers.get(server_name)
        if conn is None:
            return {"status": "failed", "server": server_name, "error": f"Unknown MCP server: {server_name}"}

        self._close_connection(conn)
        conn = self.connect(conn.config)
        if conn.ready:
            return {"status": "connected", "server": server_name, "tools": len(conn.tools)}
        return {"status": "failed", "server": server_name, "error": conn.error}

    def shutdown(self) -> None:
        """Terminate every server. Afterwards no connection is ready."""
        with self._lock:
            conns = list(self._servers.values())
        for conn in conns:
            self._close_connection(conn)
        with self._lock:
            self._rebuild_routes()
        if conns:
            logger.info("MCP manager shut down %d server(s)", len(conns))

    def _close_connection(self, conn: MCPServerConnection) -> None:
        client, conn.client = conn.client, None
        conn.status = STATUS_CLOSED
        if client is not None:
            try:
                client.disconnect()
            except MCPTransportError as e:
                logger.debug("MCP shutdown error for '%s': %s", conn.name, e)

    def _on_server_closed(self, conn: MCPServerConnection, reason: str) -> None:
        with self._lock:
            if conn.status == STATUS_READY:
                conn.status = STATUS_CLOSED
                conn.error = sanitize_error(reason)
                logger.warning("MCP server '%s' went away: %s", conn.name, conn.error)

    # ------------------------------------------------------------------
    # Tools
    # ------------------------------------------------------------------

    def _rebuild_routes(self) -> None:
        """Assign every discovered tool a unique namespaced name.

        Servers are visited in name order and tools in discovery order, so the
        assignment is stable. A name already taken (for example ``Get-Item``
        next to ``get_item``, or server ``a_b`` tool ``c`` next to server ``a``
        tool ``b_c``) gets the first free ``_2``, ``_3``, ... suffix.
        """
        routes: Dict[str, Tuple[str, str]] = {}
        seen = set()
        for name in sorted(self._servers):
            for tool in self._servers[name].tools:
                if (name, tool["name"]) in seen:
                    continue
                seen.add((name, tool["name"]))
                base = make_tool_name(name, tool["name"])
                namespaced, n = base, 1
                while namespaced in routes:
                    n += 1
                    namespaced = f"{base}_{n}"
                if namespaced != base:
                    other = routes[base]
                    logger.warning(
                        "MCP tool '%s' on '%s' collides with '%s' on '%s' as %s; exposing it as %s",
                        tool["name"], name, other[1], other[0], base, namespaced,
                    )
                routes[namespaced] = (name, tool["name"])
        self._routes = routes

    def resolve(self, namespaced: str) -> Optional[Tuple[str, str]]:
        """Map ``mcp_<server>_<tool>`` back to (server, original tool name).

        Uses the table built at discovery; when the name is unknown there,
        falls back to the longest sanitized server-name prefix.
        """
        with self._lock:
            route = self._routes.get(namespaced)
            if route is not None:
                return route
            if not namespaced.startswith("mcp_"):
                return None
            rest = namespaced[len("mcp_"):]
            candidates = sorted(self._servers, key=lambda n: len(_sanitize_name(n)), reverse=True)
        for server in candidates:
            prefix = _sanitize_name(server) + "_"
            if rest.startswith(prefix) and len(rest) > len(prefix):
                return server, rest[len(prefix):]
        return None

    def get_tool_definitions(self) -> List[ToolDefinition]:
        """Namespaced definitions of every tool on a ready server."""
        with self._lock:
            ready = {name: conn for name, conn in self._servers.items() if conn.ready}
            routes = list(self._routes.items())
        tools_by_name = {
            (name, tool["name"]): tool for name, conn in ready.items() for tool in conn.tools
        }
        definitions = []
        for namespaced, (server, tool_name) in routes:
            tool = tools_by_name.get((server, tool_name))
            if tool is not None:
                definitions.append(_convert_mcp_schema(tool, server, namespaced))
        return definitions

    def get_all_tool_names(self) -> List[str]:
        return [d.name for d in self.get_tool_definitions()]

    def call_tool_detailed(self, namespaced: str, args: Optional[dict] = None, timeout: Optional[float] = None) -> MCPToolOutcome:
        """Route a namespaced call to its server. Never raises."""
        route = self.resolve(namespaced)
        if route is None:
            return MCPToolOutcome(f"Error: unknown MCP tool '{namespaced}'", is_error=True)
        server_name, tool_name = route

        with self._lock:
            conn = self._servers.get(server_name)
            client = conn.client if conn else None
            status = conn.status if conn else STATUS_CLOSED
        if conn is None or client is None or status != STATUS_READY:
            detail = f": {conn.error}" if conn is not None and conn.error else ""
            return MCPToolOutcome(
                f"Error: MCP server '{server_name}' is not connected (status: {status}){detail}",
                is_error=True,
            )

        try:
            result = client.call_tool(tool_name, args or {}, timeout=timeout or self.call_timeout)
        except MCPProtocolError as e:
            return MCPToolOutcome(
                f"Error: MCP tool '{tool_name}' on '{server_name}' failed "
                f"({e.code}): {sanitize_error(e.error_message)}",
                is_error=True,
            )
        except MCPTimeoutError as e:
            return MCPToolOutcome(f"Error: {sanitize_error(str(e))}", is_error=True)
        except MCPDisconnectedError as e:
            return MCPToolOutcome(f"Error: {sanitize_error(str(e))}", is_error=True)
        except MCPTransportError as e:
            return MCPToolOutcome(f"Error: MCP transport error: {sanitize_error(str(e))}", is_error=True)

        text = format_tool_content(result)
        if result.get("isError"):
            return MCPToolOutcome(text or f"Error: MCP tool '{tool_name}' reported an error", is_error=True)
        return MCPToolOutcome(text)

    def call_tool(self, namespaced: str, args: Optional[dict] = None) -> str:
        return self.call_tool_detailed(namespaced, args).text

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def get_status(self) -> Dict[str, Any]:
        with self._lock:
            conns = list(self._servers.values())
        servers = {}
        for conn in conns:
            info: Dict[str, Any] = {
                "status": conn.status,
                "enabled": conn.config.enabled,
                "tools": len(conn.tools),
                "tool_names": [t["name"] for t in conn.tools],
                "error": conn.error,
            }
            if conn.client is not None and conn.client.server_info:
                info["server_info"] = conn.client.server_info
            servers[conn.name] = info
        return {
            "total_servers": len(conns),
            "connected": sum(1 for c in conns if c.ready),
            "total_tools": sum(len(c.tools) for c in conns if c.ready),
            "servers": servers,
        }
