"""Project-wide text search (``search_files``).

Walks the project tree, skipping hidden directories, dependency and build
directories, and binary files, and reports ``path:line`` blocks with a few
lines of context around each match. The matching line is marked with ``>``.
"""

import fnmatch
import logging
import os
import re
from pathlib import Path

from tools.registry import ToolContext, ToolError, registry

logger = logging.getLogger(__name__)

DEFAULT_MAX_MATCHES = 50
MAX_MATCHES_LIMIT = 500
DEFAULT_CONTEXT_LINES = 2
MAX_CONTEXT_LINES = 10
MAX_FILE_BYTES = 2 * 1024 * 1024
MAX_LINE_CHARS = 400

SKIP_DIRS = {
    "node_modules", "__pycache__", "dist", "build", "out", "target",
    "venv", ".venv", "env", "coverage",
}

BINARY_EXTENSIONS = {
    ".png", ".jpg", ".jpeg", ".gif", ".bmp", ".ico", ".webp", ".pdf",
    ".zip", ".gz", ".tar", ".tgz", ".7z", ".rar", ".jar", ".exe", ".dll",
    ".so", ".dylib", ".o", ".a", ".class", ".pyc", ".woff", ".woff2",
    ".ttf", ".otf", ".mp3", ".mp4", ".mov", ".wav", ".db", ".sqlite",
}


def _iter_files(root: Path, file_pattern=None):
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(
            d for d in dirnames if not d.startswith(".") and d not in SKIP_DIRS
        )
        for filename in sorted(filenames):
            if filename.startswith("."):
                continue
            if Path(filename).suffix.lower() in BINARY_EXTENSIONS:
                continue
            if file_pattern and not fnmatch.fnmatch(filename, file_pattern):
                continue
            yield Path(dirpath) / filename


def _read_lines(path: Path):
    try:
        if path.stat().st_size > MAX_FILE_BYTES:
            return None
        data = path.read_bytes()
    except OSError as e:
        logger.debug("search_files: cannot read %s: %s", path, e)
        return None
    if b"\x00" in data[:8192]:
        return None
    return data.decode("utf-8", errors="replace").splitlines()


def _clip(line: str) -> str:
    if len(line) > MAX_LINE_CHARS:
        return line[:MAX_LINE_CHARS] + "..."
    return line


def build_matcher(query: str, regex: bool, case_sensitive: bool):
    flags = 0 if case_sensitive else re.IGNORECASE
    pattern = query if regex else re.escape(query)
    try:
        return re.compile(pattern, flags)
    except re.error as e:
        raise ToolError(f"Invalid regular expression {query!r}: {e}")


def search_files_handler(args: dict, ctx: ToolContext) -> str:
    query = args.get("query") or ""
    if not query:
        raise ToolError("query must not be empty")
    root = ctx.resolve(args.get("path") or ".")
    if not root.exists():
        raise ToolError(f"Path not found: {args.get('path')}")

    matcher = build_matcher(query, bool(args.get("regex", False)), bool(args.get("case_sensitive", False)))
    context_lines = max(0, min(int(args.get("context_lines", DEFAULT_CONTEXT_LINES)), MAX_CONTEXT_LINES))
    max_matches = max(1, min(int(args.get("max_matches", DEFAULT_MAX_MATCHES)), MAX_MATCHES_LIMIT))
    file_pattern = args.get("file_pattern") or None

    files = [root] if root.is_file() else _iter_files(root, file_pattern)

    blocks = []
    match_count = 0
    files_with_matches = 0
    truncated = False
    for path in files:
        if ctx.cancel_token is not None:
            ctx.cancel_token.raise_if_cancelled()
        lines = _read_lines(path)
        if not lines:
            continue
        hit_in_file = False
        for idx, line in enumerate(lines):
            if not matcher.search(line):
                continue
            if match_count >= max_matches:
                truncated = True
                break
            match_count += 1
            hit_in_file = True
            lo = max(0, idx - context_lines)
            hi = min(len(lines), idx + context_lines + 1)
            block = [f"{ctx.relative(path)}:{idx + 1}"]
            for j in range(lo, hi):
                marker = ">" if j == idx else " "
                block.append(f"{marker}{j + 1:>6}| {_clip(lines[j])}")
            blocks.append("\n".join(block))
        if hit_in_file:
            files_with_matches += 1
        if truncated:
            break

    if not blocks:
        return f"No matches for {query!r}"

    header = f"Found {match_count} match(es) in {files_with_matches} file(s) for {query!r}"
    output = header + "\n\n" + "\n\n".join(blocks)
    if truncated:
        output += (
            f"\n\n[Stopped after {max_matches} matches. Narrow the search with "
            f"path or file_pattern to see more.]"
        )
    return output


SEARCH_FILES_SCHEMA = {
    "name": "search_files",
    "description": (
        "Search file contents across the project. Returns 'path:line' blocks with "
        "surrounding context; the matching line is marked with '>'."
    ),
    "parameters": {
        "type": "object",
        "properties": {
            "query": {"type": "string", "description": "Text (or regex when regex=true) to search for"},
            "path": {"type": "string", "description": "Directory or file to search (default: project root)"},
            "regex": {"type": "boolean", "description": "Treat query as a regular expression"},
            "file_pattern": {"type": "string", "description": "Glob on file names, e.g. '*.py'"},
            "context_lines": {"type": "integer", "description": "Lines of context around each match (default 2)"},
            "case_sensitive": {"type": "boolean", "description": "Case-sensitive match (default false)"},
            "max_matches": {"type": "integer", "description": "Stop after this many matches (default 50, at most 500)"},
        },
        "required": ["query"],
    },
}


registry.register(
    name="search_files",
    toolset="search",
    schema=SEARCH_FILES_SCHEMA,
    handler=search_files_handler,
    description="Search file contents",
)
