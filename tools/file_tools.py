"""File system tools: read_file, write_file, list_dir, edit_file.

Every path is resolved against the project root through
``ToolContext.resolve``; anything escaping the root is refused.
"""

import logging
from pathlib import Path

from tools.registry import ToolContext, ToolError, registry

logger = logging.getLogger(__name__)

MAX_READ_CHARS = 10_000
LINE_NUMBER_WIDTH = 6


def _read_text(path: Path, display: str) -> str:
    if not path.exists():
        raise ToolError(f"File not found: {display}")
    if not path.is_file():
        raise ToolError(f"Not a file: {display}")
    try:
        # newline="" keeps CRLF and lone CR endings as they are on disk
        with path.open(encoding="utf-8", newline="") as f:
            return f.read()
    except UnicodeDecodeError:
        raise ToolError(f"File is not a text file (binary content detected): {display}")


def _write_text(path: Path, text: str) -> None:
    with path.open("w", encoding="utf-8", newline="") as f:
        f.write(text)


def _parse_line(value, name: str):
    if value is None:
        return None
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ToolError(f"{name} must be an integer, got {value!r}")
    if number < 1:
        raise ToolError(f"{name} must be >= 1, got {number}")
    return number


def read_file_handler(args: dict, ctx: ToolContext) -> str:
    display = args.get("path", "")
    path = ctx.resolve(display)
    text = _read_text(path, display)

    lines = text.splitlines()
    if not lines:
        return "(empty file)"
    start = _parse_line(args.get("start_line"), "start_line") or 1
    end = _parse_line(args.get("end_line"), "end_line") or len(lines)
    if end < start:
        raise ToolError(f"end_line ({end}) is before start_line ({start})")
    if start > len(lines):
        raise ToolError(f"start_line {start} is past the end of the file ({len(lines)} lines)")

    numbered = []
    used = 0
    last_shown = start - 1
    for number in range(start, min(end, len(lines)) + 1):
        row = f"{number:>{LINE_NUMBER_WIDTH}}| {lines[number - 1]}"
        if used + len(row) + 1 > MAX_READ_CHARS and numbered:
            break
        numbered.append(row)
        used += len(row) + 1
        last_shown = number

    output = "\n".join(numbered)
    if last_shown < min(end, len(lines)):
        output += (
            f"\n\n[Output truncated at line {last_shown} of {len(lines)}. "
            f"Call read_file with start_line={last_shown + 1} to continue.]"
        )
    return output


def write_file_handler(args: dict, ctx: ToolContext) -> str:
    display = args.get("path", "")
    content = args.get("content", "")
    path = ctx.resolve(display)
    if path.is_dir():
        raise ToolError(f"Path is a directory: {display}")
    path.parent.mkdir(parents=True, exist_ok=True)
    existed = path.exists()
    _write_text(path, content)
    size = len(content.encode("utf-8"))
    line_count = content.count("\n") + (1 if content and not content.endswith("\n") else 0)
    logger.info("Wrote %s (%d bytes)", ctx.relative(path), size)
    verb = "Updated" if existed else "Created"
    return f"{verb} {ctx.relative(path)} ({size} bytes, {line_count} lines)"


def list_dir_handler(args: dict, ctx: ToolContext) -> str:
    display = args.get("path") or "."
    path = ctx.resolve(display)
    if not path.exists():
        raise ToolError(f"Directory not found: {display}")
    if not path.is_dir():
        raise ToolError(f"Not a directory: {display}")

    entries = sorted(path.iterdir(), key=lambda p: (not p.is_dir(), p.name.lower()))
    if not entries:
        return f"{ctx.relative(path)}/ is empty"
    return "\n".join(f"{e.name}/" if e.is_dir() else e.name for e in entries)


def edit_file_handler(args: dict, ctx: ToolContext) -> str:
    display = args.get("path", "")
    old_string = args.get("old_string", "")
    new_string = args.get("new_string", "")
    if not old_string:
        raise ToolError("old_string must not be empty")
    if old_string == new_string:
        raise ToolError("old_string and new_string are identical; nothing to change")

    path = ctx.resolve(display)
    text = _read_text(path, display)

    occurrences = text.count(old_string)
    if occurrences == 0:
        raise ToolError(
            f"old_string not found in {display}. It must match the file exactly, "
            f"including whitespace and indentation."
        )
    if occurrences > 1:
        raise ToolError(
            f"old_string is ambiguous: found {occurrences} occurrences in {display}. "
            f"Include more surrounding context so it matches exactly once."
        )

    _write_text(path, text.replace(old_string, new_string, 1))
    line = text[: text.index(old_string)].count("\n") + 1
    logger.info("Edited %s at line %d", ctx.relative(path), line)
    return f"Edited {ctx.relative(path)}: replaced 1 occurrence at line {line}"


READ_FILE_SCHEMA = {
    "name": "read_file",
    "description": (
        "Read a text file from the project. Output is line-numbered "
        "('    12| text'); use start_line/end_line to read a range of a large file."
    ),
    "parameters": {
        "type": "object",
        "properties": {
            "path": {"type": "string", "description": "File path relative to the project root"},
            "start_line": {"type": "integer", "description": "First line to read (1-based, inclusive)"},
            "end_line": {"type": "integer", "description": "Last line to read (inclusive)"},
        },
        "required": ["path"],
    },
}

WRITE_FILE_SCHEMA = {
    "name": "write_file",
    "description": "Create or overwrite a file with the given content. Parent directories are created.",
    "parameters": {
        "type": "object",
        "properties": {
            "path": {"type": "string", "description": "File path relative to the project root"},
            "content": {"type": "string", "description": "Complete file content"},
        },
        "required": ["path", "content"],
    },
}

LIST_DIR_SCHEMA = {
    "name": "list_dir",
    "description": "List a directory. Directories come first and end with '/'.",
    "parameters": {
        "type": "object",
        "properties": {
            "path": {"type": "string", "description": "Directory relative to the project root (default '.')"},
        },
        "required": [],
    },
}

EDIT_FILE_SCHEMA = {
    "name": "edit_file",
    "description": (
        "Replace one exact occurrence of old_string with new_string. Fails without "
        "changing the file if old_string is missing or matches more than once."
    ),
    "parameters": {
        "type": "object",
        "properties": {
            "path": {"type": "string", "description": "File path relative to the project root"},
            "old_string": {"type": "string", "description": "Exact text to replace (must be unique in the file)"},
            "new_string": {"type": "string", "description": "Replacement text"},
        },
        "required": ["path", "old_string", "new_string"],
    },
}


registry.register(
    name="read_file",
    toolset="file",
    schema=READ_FILE_SCHEMA,
    handler=read_file_handler,
    description="Read a text file",
)
registry.register(
    name="write_file",
    toolset="file",
    schema=WRITE_FILE_SCHEMA,
    handler=write_file_handler,
    description="Write a file",
)
registry.register(
    name="list_dir",
    toolset="file",
    schema=LIST_DIR_SCHEMA,
    handler=list_dir_handler,
    description="List a directory",
)
registry.register(
    name="edit_file",
    toolset="file",
    schema=EDIT_FILE_SCHEMA,
    handler=edit_file_handler,
    description="Exact-once string replacement",
)
