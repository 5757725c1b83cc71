"""Shell command execution (``run_terminal``).

Commands run in the project root inside their own process group, with
stdout and stderr merged. The whole group is killed on timeout or when the
session's cancel token fires. A cooperative deny-list refuses obviously
destructive commands before anything is spawned; it is a guard rail, not a
sandbox.
"""

import logging
import os
import platform
import re
import shutil
import signal
import subprocess
import threading
import time
from typing import Optional, Tuple

from tools.registry import ToolContext, ToolError, registry

logger = logging.getLogger(__name__)

_IS_WINDOWS = platform.system() == "Windows"

DEFAULT_COMMAND_TIMEOUT = 30
MAX_COMMAND_TIMEOUT = 600
MAX_OUTPUT_CHARS = 30_000
POLL_INTERVAL = 0.1

# (regex, description); matched case-insensitively against the whole command
DANGEROUS_PATTERNS = [
    (r"\brm\s+(-[^\s]*\s+)*(/|~/?|\$HOME/?)(\s|$|\*)", "delete from filesystem or home root"),
    (
        r"\brm\s+(?:[^;&|\n]*\s)?-(?:[a-z]*r[a-z]*|-recursive)\b[^;&|\n]*\s(?:/|~|\$\{?home\b)",
        "recursive delete of an absolute or home path",
    ),
    (r"\brm\s+(-[^\s]*\s+)*--no-preserve-root\b", "delete filesystem root"),
    (r"\bmkfs(\.\w+)?\b", "format filesystem"),
    (r"\bdd\s+.*\bif=", "raw disk copy"),
    (r">\s*/dev/(sd|nvme|hd|disk)", "write to block device"),
    (r"\bformat\s+[a-z]:", "format drive"),
    (r"\b(shutdown|reboot|halt|poweroff)\b", "shut down or restart the machine"),
    (r"\bdel\s+/f\s+/s\s+/q\s+[a-z]:", "recursive delete of a drive"),
    (r"\brmdir\s+/s\s+/q\s+[a-z]:", "recursive delete of a drive"),
    (r":\(\)\s*\{\s*:\s*\|\s*:\s*&\s*\}\s*;\s*:", "fork bomb"),
    (r"\bchmod\s+(-[^\s]*\s+)*777\s+/(\s|$)", "world-writable filesystem root"),
    (r"\bkill\s+-9\s+-1\b", "kill all processes"),
]


def detect_dangerous_command(command: str) -> Tuple[bool, Optional[str]]:
    """Return ``(True, description)`` when *command* hits the deny-list."""
    for pattern, description in DANGEROUS_PATTERNS:
        if re.search(pattern, command, re.IGNORECASE):
            return True, description
    return False, None


def _kill_process_tree(proc: subprocess.Popen, *, force: bool = False) -> None:
    """Signal the command's whole process group (or the process on Windows)."""
    if _IS_WINDOWS:
        try:
            proc.kill()
        except OSError:
            pass
        return

    sig = signal.SIGKILL if force else signal.SIGTERM
    try:
        os.killpg(os.getpgid(proc.pid), sig)
    except OSError:
        try:
            proc.kill() if force else proc.terminate()
        except OSError:
            pass


def _stop(proc: subprocess.Popen) -> None:
    _kill_process_tree(proc)
    try:
        proc.wait(timeout=1.0)
    except subprocess.TimeoutExpired:
        _kill_process_tree(proc, force=True)
        proc.wait(timeout=2.0)


def _shell_command(command: str):
    if _IS_WINDOWS:
        return ["cmd.exe", "/C", command], {}
    shell = os.environ.get("SHELL") or shutil.which("bash") or "/bin/sh"
    # New session => new process group, so killpg reaches every child
    return [shell, "-c", command], {"start_new_session": True}


def _cap_output(output: str) -> str:
    if len(output) <= MAX_OUTPUT_CHARS:
        return output
    half = MAX_OUTPUT_CHARS // 2
    omitted = len(output) - MAX_OUTPUT_CHARS
    return (
        output[:half]
        + f"\n\n[... {omitted:,} characters of output omitted ...]\n\n"
        + output[-half:]
    )


def run_command(command: str, cwd: str, timeout: float, cancel_token=None) -> dict:
    """Run *command* and wait for it, honoring timeout and cancellation.

    Returns ``{"output", "returncode", "timed_out", "cancelled"}``.
    """
    argv, popen_kwargs = _shell_command(command)
    proc = subprocess.Popen(
        argv,
        cwd=cwd,
        text=True,
        encoding="utf-8",
        errors="replace",
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        stdin=subprocess.DEVNULL,
        **popen_kwargs,
    )

    chunks = []

    def _drain_stdout():
        try:
            for line in proc.stdout:
                chunks.append(line)
        except ValueError:
            pass
        finally:
            try:
                proc.stdout.close()
            except OSError:
                pass

    reader = threading.Thread(target=_drain_stdout, daemon=True, name="run-terminal-drain")
    reader.start()
    deadline = time.monotonic() + timeout
    timed_out = cancelled = False

    while proc.poll() is None:
        if cancel_token is not None and cancel_token.cancelled:
            cancelled = True
            _stop(proc)
            break
        if time.monotonic() > deadline:
            timed_out = True
            _stop(proc)
            break
        time.sleep(POLL_INTERVAL)

    reader.join(timeout=5)
    return {
        "output": "".join(chunks),
        "returncode": proc.returncode,
        "timed_out": timed_out,
        "cancelled": cancelled,
    }


def run_terminal_handler(args: dict, ctx: ToolContext) -> str:
    command = (args.get("command") or "").strip()
    if not command:
        raise ToolError("command must not be empty")

    dangerous, description = detect_dangerous_command(command)
    if dangerous:
        logger.warning("Refused dangerous command (%s): %s", description, command)
        raise ToolError(f"Command refused: looks like {description}. It was not executed.")

    try:
        timeout = float(args.get("timeout") or DEFAULT_COMMAND_TIMEOUT)
    except (TypeError, ValueError):
        raise ToolError(f"timeout must be a number, got {args.get('timeout')!r}")
    timeout = max(1.0, min(timeout, MAX_COMMAND_TIMEOUT))

    cwd = str(ctx.resolve("."))
    logger.info("run_terminal: %s (timeout %ss)", command, timeout)
    try:
        result = run_command(command, cwd, timeout, ctx.cancel_token)
    except OSError as e:
        raise ToolError(f"Failed to start command: {e}")

    output = _cap_output(result["output"].rstrip()) or "(no output)"
    if result["cancelled"]:
        return f"{output}\n\n[Command cancelled]"
    if result["timed_out"]:
        raise ToolError(f"{output}\n\n[Command timed out after {timeout:g}s and was killed]")
    return f"{output}\n\n[Exit code: {result['returncode']}]"


RUN_TERMINAL_SCHEMA = {
    "name": "run_terminal",
    "description": (
        "Run a shell command in the project root and return its combined "
        "stdout/stderr and exit code. Default timeout 30s, maximum 600s. "
        "Destructive commands are refused."
    ),
    "parameters": {
        "type": "object",
        "properties": {
            "command": {"type": "string", "description": "Shell command to execute"},
            "timeout": {"type": "integer", "description": "Timeout in seconds (default 30, max 600)"},
        },
        "required": ["command"],
    },
}


registry.register(
    name="run_terminal",
    toolset="terminal",
    schema=RUN_TERMINAL_SCHEMA,
    handler=run_terminal_handler,
    description="Run a shell command",
)
