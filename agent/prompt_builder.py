"""System prompt building blocks.

Stateless: every function takes what it needs and returns a string (empty
when there is nothing to add). ``PromptAssembler`` decides the order.
"""

import logging
from pathlib import Path
from typing import Iterable, Optional, Sequence

from agent.skill_cache import SkillContent

logger = logging.getLogger(__name__)

DEFAULT_AGENT_IDENTITY = (
    "You are Forge, an AI coding assistant working inside the user's project. "
    "You help write, modify and understand code. Understand the request first, "
    "read the relevant files before changing them, work step by step with a "
    "clear purpose for each step, and finish with a concise summary of what "
    "you did. When you change code, write it out completely; never elide parts "
    "of a file with placeholders."
)

FILE_TOOLS_GUIDANCE = (
    "Use read_file before editing a file. Prefer edit_file for small targeted "
    "changes: old_string must match the file exactly once, so include enough "
    "surrounding lines to make it unique. Use write_file only to create files "
    "or replace them entirely."
)

SEARCH_GUIDANCE = (
    "Use search_files to locate symbols or text across the project instead of "
    "reading files one by one."
)

TERMINAL_GUIDANCE = (
    "run_terminal executes a shell command in the project root with a timeout. "
    "Destructive commands are refused. Do not start long-running servers or "
    "interactive programs."
)

MCP_GUIDANCE = (
    "Tools named mcp_<server>_<tool> are provided by external tool servers; "
    "their results come back as plain text."
)

# Project instruction files, first match wins
CONTEXT_FILE_NAMES = ("FORGE.md", "AGENTS.md", ".forgerules")
CONTEXT_FILE_MAX_CHARS = 20_000


def build_project_prompt(project_root: Optional[str]) -> str:
    if not project_root:
        return ""
    return f"Current project root: {project_root}"


def build_rules_prompt(rules: Sequence[str]) -> str:
    """Numbered list of the user's rules."""
    cleaned = [r.strip() for r in rules or () if r and r.strip()]
    if not cleaned:
        return ""
    lines = ["## User rules", "Always follow these rules:"]
    lines.extend(f"{i}. {rule}" for i, rule in enumerate(cleaned, 1))
    return "\n".join(lines)


def build_skills_prompt(skills: Iterable[SkillContent]) -> str:
    """Concatenate loaded skill contents, verbatim, each under its name."""
    blocks = [f"### Skill: {s.name}\n\n{s.content}" for s in skills if s.content]
    if not blocks:
        return ""
    return "## Skills\n\n" + "\n\n".join(blocks)


def build_tool_guidance(tool_names: Iterable[str]) -> str:
    names = set(tool_names)
    parts = []
    if names & {"read_file", "write_file", "edit_file"}:
        parts.append(FILE_TOOLS_GUIDANCE)
    if "search_files" in names:
        parts.append(SEARCH_GUIDANCE)
    if "run_terminal" in names:
        parts.append(TERMINAL_GUIDANCE)
    if any(n.startswith("mcp_") for n in names):
        parts.append(MCP_GUIDANCE)
    return " ".join(parts)


def build_context_files_prompt(project_root: Optional[str]) -> str:
    """Inline the project's instruction file, if it has one."""
    if not project_root:
        return ""
    root = Path(project_root)
    for name in CONTEXT_FILE_NAMES:
        path = root / name
        if not path.is_file():
            continue
        try:
            text = path.read_text(encoding="utf-8").strip()
        except OSError as e:
            logger.debug("Could not read context file %s: %s", path, e)
            continue
        if not text:
            continue
        if len(text) > CONTEXT_FILE_MAX_CHARS:
            text = text[:CONTEXT_FILE_MAX_CHARS] + "\n[...truncated]"
        return f"## Project instructions ({name})\n\n{text}"
    return ""
