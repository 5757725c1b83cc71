"""Builds the session system prompt once and hands out the same string after.

Section order: identity, project, extra system text, rules, skills, project
instruction files, timestamp, tool guidance. The prompt is rebuilt only
after invalidate(), for example when the MCP tool set changes.
"""

from datetime import datetime

from agent.prompt_builder import (
    DEFAULT_AGENT_IDENTITY,
    build_context_files_prompt,
    build_project_prompt,
    build_rules_prompt,
    build_skills_prompt,
    build_tool_guidance,
)


class PromptAssembler:
    """Layered system prompt with a single cached result.

    Args:
        project_root: Project directory shown to the model and searched for
            instruction files.
        skip_context_files: Whether to skip loading FORGE.md / AGENTS.md.
    """

    def __init__(self, *, project_root=None, skip_context_files=False):
        self._project_root = project_root
        self._skip_context_files = skip_context_files
        self._cached_prompt = None

    def build(self, *, tool_names, rules=(), skills=(), system_message=None) -> str:
        """Return the system prompt, building it on first use.

        Args:
            tool_names: Names of every tool offered this session.
            rules: User rules, rendered as a numbered list.
            skills: Loaded SkillContent objects, included verbatim.
            system_message: Extra text placed after the project block.
        """
        if self._cached_prompt is not None:
            return self._cached_prompt

        prompt_parts = [DEFAULT_AGENT_IDENTITY]

        project = build_project_prompt(self._project_root)
        if project:
            prompt_parts.append(project)

        if system_message is not None:
            prompt_parts.append(system_message)

        rules_prompt = build_rules_prompt(rules)
        if rules_prompt:
            prompt_parts.append(rules_prompt)

        skills_prompt = build_skills_prompt(skills)
        if skills_prompt:
            prompt_parts.append(skills_prompt)

        if not self._skip_context_files:
            context_files_prompt = build_context_files_prompt(self._project_root)
            if context_files_prompt:
                prompt_parts.append(context_files_prompt)

        now = datetime.now()
        prompt_parts.append(
            f"Conversation started: {now.strftime('%A, %B %d, %Y %I:%M %p')}"
        )

        # Tool guidance is always last
        tool_guidance = build_tool_guidance(tool_names)
        if tool_guidance:
            prompt_parts.append(tool_guidance)

        result = "\n\n".join(prompt_parts)
        self._cached_prompt = result
        return result

    @property
    def cached(self):
        """Last built prompt; None before the first build or after invalidate()."""
        return self._cached_prompt

    def invalidate(self):
        """Drop the cached prompt."""
        self._cached_prompt = None
