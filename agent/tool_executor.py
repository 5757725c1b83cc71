"""Tool call execution.

Runs the tool calls of one assistant turn. Built-in tools are looked up in
the tool registry; ``mcp_*`` names are proxied through the MCP manager.
Handlers are synchronous and run on the loop's thread pool, so every call of
a turn proceeds concurrently and the turn is joined once all of them finish.

Every call produces exactly one ToolInvocationResult: malformed arguments,
unknown tools, handler errors, timeouts and cancellation all come back as
failed results the model can read, never as exceptions.
"""

import asyncio
import functools
import logging
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from agent.cancellation import CancelledByUser, CancelToken, race_cancel
from agent.messages import ToolCall, ToolDefinition, ToolInvocationResult
from tools.registry import DEFAULT_TOOL_TIMEOUT, ToolContext, ToolError, ToolRegistry

logger = logging.getLogger(__name__)

MAX_TOOL_RESULT_CHARS = 100_000

# A tool may ask for a longer budget through its own ``timeout`` argument
# (run_terminal does); never beyond this.
MAX_TOOL_TIMEOUT = 600.0
TIMEOUT_GRACE = 5.0

CANCELLED_MESSAGE = "[Tool execution cancelled - user interrupted]"

_JSON_TYPES = {
    "string": (str,),
    "integer": (int,),
    "number": (int, float),
    "boolean": (bool,),
    "array": (list, tuple),
    "object": (dict,),
    "null": (type(None),),
}


def validate_arguments(args: Dict[str, Any], schema: Optional[Dict[str, Any]]) -> Optional[str]:
    """Check *args* against the top level of a JSON schema.

    Only required keys and primitive property types are checked. Returns an
    error description, or None when the arguments are acceptable.
    """
    if not schema:
        return None
    problems = []
    for key in schema.get("required") or []:
        if key not in args:
            problems.append(f"missing required argument '{key}'")

    properties = schema.get("properties") or {}
    for key, value in args.items():
        spec = properties.get(key)
        if not isinstance(spec, dict) or "type" not in spec:
            continue
        expected = spec["type"] if isinstance(spec["type"], list) else [spec["type"]]
        accepted = tuple(t for name in expected for t in _JSON_TYPES.get(name, ()))
        if not accepted:
            continue
        # bool is an int subclass; only accept it where boolean is allowed
        if isinstance(value, bool) and "boolean" not in expected:
            problems.append(f"argument '{key}' must be {' or '.join(expected)}, got boolean")
        elif not isinstance(value, accepted):
            problems.append(
                f"argument '{key}' must be {' or '.join(expected)}, got {type(value).__name__}"
            )
    if problems:
        return "; ".join(problems)
    return None


def truncate_output(output: str) -> str:
    # Guard against tools returning content large enough to blow up the
    # context window (e.g. an accidental base64 dump).
    if len(output) <= MAX_TOOL_RESULT_CHARS:
        return output
    original_len = len(output)
    return (
        output[:MAX_TOOL_RESULT_CHARS]
        + f"\n\n[Truncated: tool response was {original_len:,} chars, "
        f"exceeding the {MAX_TOOL_RESULT_CHARS:,} char limit]"
    )


def cancelled_result(call: ToolCall) -> ToolInvocationResult:
    return ToolInvocationResult(
        tool_call_id=call.id,
        tool_name=call.name,
        output=CANCELLED_MESSAGE,
        failed=True,
        error_detail="cancelled",
    )


class ToolExecutor:
    """Dispatches tool calls to the registry or the MCP manager.

    Args:
        tool_registry: Registry holding the built-in tools.
        mcp_manager: Optional MCPManager owning protocol servers.
        project_root: Root every built-in tool is confined to.
        timeout: Per-call timeout in seconds.
    """

    def __init__(
        self,
        tool_registry: ToolRegistry,
        mcp_manager=None,
        project_root=".",
        timeout: float = DEFAULT_TOOL_TIMEOUT,
    ):
        self.registry = tool_registry
        self.mcp_manager = mcp_manager
        self.project_root = Path(project_root).resolve()
        self.timeout = timeout

    def definitions(self) -> List[ToolDefinition]:
        """Built-in definitions followed by every discovered protocol tool."""
        definitions = list(self.registry.get_definitions())
        if self.mcp_manager is not None:
            definitions.extend(self.mcp_manager.get_tool_definitions())
        return definitions

    def _call_timeout(self, args: Dict[str, Any]) -> float:
        requested = args.get("timeout")
        if isinstance(requested, (int, float)) and not isinstance(requested, bool):
            if requested + TIMEOUT_GRACE > self.timeout:
                return min(float(requested), MAX_TOOL_TIMEOUT) + TIMEOUT_GRACE
        return self.timeout

    def _schema_for(self, name: str) -> Optional[Dict[str, Any]]:
        if self.mcp_manager is None:
            return None
        for definition in self.mcp_manager.get_tool_definitions():
            if definition.name == name:
                return definition.parameters
        return None

    async def execute(self, call: ToolCall, cancel_token: Optional[CancelToken] = None) -> ToolInvocationResult:
        """Run one tool call. Always returns a result."""
        if cancel_token is not None and cancel_token.cancelled:
            return cancelled_result(call)

        start = time.monotonic()

        def _failed(output: str, detail: str) -> ToolInvocationResult:
            logger.info("Tool %s failed: %s", call.name, detail)
            return ToolInvocationResult(
                tool_call_id=call.id,
                tool_name=call.name,
                output=truncate_output(output),
                failed=True,
                error_detail=detail,
                duration=time.monotonic() - start,
            )

        try:
            args = call.arguments()
        except ValueError as e:
            return _failed(f"Error: invalid arguments for tool '{call.name}': {e}", "invalid_arguments")

        is_mcp = call.name.startswith("mcp_")
        if is_mcp:
            if self.mcp_manager is None:
                return _failed(f"Error: unknown tool '{call.name}'", "unknown_tool")
            schema = self._schema_for(call.name)
        else:
            entry = self.registry.get_entry(call.name)
            if entry is None:
                return _failed(f"Error: unknown tool '{call.name}'", "unknown_tool")
            if not entry.available():
                return _failed(f"Error: tool '{call.name}' is not available", "unavailable")
            schema = entry.schema.get("parameters")

        problem = validate_arguments(args, schema)
        if problem:
            return _failed(f"Error: invalid arguments for tool '{call.name}': {problem}", "invalid_arguments")

        timeout = self._call_timeout(args)
        loop = asyncio.get_running_loop()
        if is_mcp:
            work = functools.partial(self.mcp_manager.call_tool_detailed, call.name, args)
        else:
            ctx = ToolContext(project_root=self.project_root, cancel_token=cancel_token, timeout=timeout)
            work = functools.partial(entry.handler, args, ctx)

        logger.debug("Tool %s dispatched (timeout %.0fs)", call.name, timeout)
        try:
            outcome = await asyncio.wait_for(loop.run_in_executor(None, work), timeout=timeout)
        except asyncio.TimeoutError:
            return _failed(f"Error: tool '{call.name}' timed out after {timeout:g}s", "timeout")
        except ToolError as e:
            return _failed(f"Error: {e}", "tool_error")
        except CancelledByUser:
            return _failed(CANCELLED_MESSAGE, "cancelled")
        except Exception as e:
            logger.exception("Tool %s raised", call.name)
            return _failed(f"Error executing {call.name}: {type(e).__name__}: {e}", "exception")

        if is_mcp:
            output, failed = outcome.text, outcome.is_error
        else:
            output, failed = outcome, False
        if not isinstance(output, str):
            output = str(output)

        duration = time.monotonic() - start
        logger.info("Tool %s completed in %.2fs (%d chars)", call.name, duration, len(output))
        return ToolInvocationResult(
            tool_call_id=call.id,
            tool_name=call.name,
            output=truncate_output(output),
            failed=failed,
            error_detail="tool_error" if failed else None,
            duration=duration,
        )

    async def execute_all(
        self, calls: Sequence[ToolCall], cancel_token: Optional[CancelToken] = None,
    ) -> List[ToolInvocationResult]:
        """Run *calls* concurrently; results come back in call order.

        On cancellation the join is abandoned: calls that already finished
        keep their results and every other call reports "cancelled".
        """
        if not calls:
            return []
        tasks = [asyncio.ensure_future(self.execute(call, cancel_token)) for call in calls]
        gathered = asyncio.gather(*tasks, return_exceptions=True)
        try:
            outcomes = await race_cancel(gathered, cancel_token)
        except CancelledByUser:
            logger.info("Tool execution cancelled with %d call(s) in flight",
                        sum(1 for t in tasks if not t.done()))
            outcomes = [
                t.result() if t.done() and not t.cancelled() and t.exception() is None else None
                for t in tasks
            ]

        results = []
        for call, outcome in zip(calls, outcomes):
            if isinstance(outcome, ToolInvocationResult):
                results.append(outcome)
            elif outcome is None:
                results.append(cancelled_result(call))
            else:
                logger.error("Tool %s crashed outside its handler: %s", call.name, outcome)
                results.append(ToolInvocationResult(
                    tool_call_id=call.id,
                    tool_name=call.name,
                    output=f"Error executing {call.name}: {outcome}",
                    failed=True,
                    error_detail="exception",
                ))
        return results
