#!/usr/bin/env python3
"""
Forge Agent runner.

Wires settings, the model adapter, built-in tools, MCP servers, skills and
the session store into an Orchestrator, and exposes a command line entry
point through fire.

Usage:
    from run_agent import ForgeAgent

    agent = ForgeAgent(project_root=".")
    try:
        result = agent.run_conversation("Explain what src/app.py does")
    finally:
        agent.close()

    # or from the shell
    python run_agent.py --query="Add type hints to utils.py" --project_root=.
"""

import logging
import sys
from pathlib import Path
from typing import Any, Callable, Optional

import fire

import tools  # noqa: F401  (registers the built-in tools)
from agent.config import ConfigValidationError, ForgeSettings, load_settings
from agent.model_router import create_adapter
from agent.orchestrator import AgentResult, Orchestrator
from agent.session_store import JsonSessionStore, SessionStore, new_session_id, validate_session_id
from agent.skill_cache import SkillCache
from agent.tool_executor import ToolExecutor
from tools.mcp_manager import MCPManager
from tools.registry import registry

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False) -> None:
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            datefmt='%H:%M:%S'
        )
        # Keep third-party libraries at WARNING level to reduce noise
        logging.getLogger('openai').setLevel(logging.WARNING)
        logging.getLogger('openai._base_client').setLevel(logging.WARNING)
        logging.getLogger('httpx').setLevel(logging.WARNING)
        logging.getLogger('httpcore').setLevel(logging.WARNING)
        logging.getLogger('asyncio').setLevel(logging.WARNING)
        logger.info("Verbose logging enabled (third-party library logs suppressed)")
    else:
        logging.basicConfig(
            level=logging.INFO,
            format='%(asctime)s - %(levelname)s - %(message)s',
            datefmt='%H:%M:%S'
        )
        logging.getLogger('openai').setLevel(logging.ERROR)
        logging.getLogger('openai._base_client').setLevel(logging.ERROR)
        logging.getLogger('httpx').setLevel(logging.ERROR)
        logging.getLogger('httpcore').setLevel(logging.ERROR)


class ForgeAgent:
    """One configured agent: settings, tools, MCP servers, skills and a session.

    Args:
        project_root: Directory every built-in tool is confined to.
        settings: Pre-built settings; loaded from config.yaml when omitted.
        session_id: Resume (or name) a session; a new id is generated otherwise.
        session_store: Persistence collaborator; JSONL files by default.
        mcp_manager: Shared MCP manager; one is created and connected when omitted.
        skill_cache: Shared skill cache; one is created when omitted.
        event_callback: Progress callback forwarded to the orchestrator.
    """

    def __init__(
        self,
        project_root: str = ".",
        settings: Optional[ForgeSettings] = None,
        session_id: Optional[str] = None,
        session_store: Optional[SessionStore] = None,
        mcp_manager: Optional[MCPManager] = None,
        skill_cache: Optional[SkillCache] = None,
        event_callback: Optional[Callable[[str, Any], None]] = None,
    ):
        self.project_root = Path(project_root).resolve()
        if not self.project_root.is_dir():
            raise ValueError(f"project root is not a directory: {self.project_root}")
        self.settings = settings or load_settings(project_root=str(self.project_root))
        if session_id is None or session_id == "":
            self.session_id = new_session_id()
        else:
            # fire turns numeric ids into ints
            self.session_id = validate_session_id(str(session_id))
        self.session_store = session_store if session_store is not None else JsonSessionStore()

        self._owns_mcp = mcp_manager is None
        self.mcp_manager = mcp_manager or MCPManager()
        if self._owns_mcp and self.settings.mcp_servers:
            status = self.mcp_manager.connect_all(self.settings.mcp_servers)
            logger.info(
                "MCP: %d/%d server(s) ready, %d tool(s)",
                status["connected"], status["total_servers"], status["total_tools"],
            )

        self.skill_cache = skill_cache or SkillCache(cache_dir=self.settings.skills_cache_dir)
        enabled = [ref for ref in self.settings.skills if ref.enabled]
        self.skills = self.skill_cache.load_all(enabled)
        if len(self.skills) < len(enabled):
            logger.warning("Loaded %d of %d skill(s)", len(self.skills), len(enabled))

        self.executor = ToolExecutor(
            registry,
            mcp_manager=self.mcp_manager,
            project_root=self.project_root,
            timeout=self.settings.tool_timeout,
        )
        self.orchestrator = Orchestrator(
            create_adapter(self.settings.model.provider),
            self.settings.model,
            executor=self.executor,
            skills=self.skills,
            rules=self.settings.rules,
            max_iterations=self.settings.max_iterations,
            session_store=self.session_store,
            session_id=self.session_id,
            event_callback=event_callback,
            system_message=self.settings.system_message,
        )

    def run_conversation(self, user_message: str) -> AgentResult:
        return self.orchestrator.run_sync(user_message)

    def interrupt(self, reason: str = "interrupted by user") -> None:
        self.orchestrator.cancel(reason)

    def close(self) -> None:
        if self._owns_mcp:
            self.mcp_manager.shutdown()


def _print_event(kind: str, payload) -> None:
    if kind == "text":
        sys.stdout.write(payload)
        sys.stdout.flush()
    elif kind == "tool_call":
        print(f"\n  -> {payload.name}({payload.arguments_json[:80]})")
    elif kind == "tool_result":
        status = "failed" if payload.failed else "ok"
        print(f"  <- {payload.tool_name} [{status}] in {payload.duration:.2f}s")


def main(
    query: str = None,
    project_root: str = ".",
    config: str = None,
    model: str = None,
    provider: str = None,
    base_url: str = None,
    api_key: str = None,
    max_iterations: int = None,
    session_id: str = None,
    verbose: bool = False,
    list_tools: bool = False,
):
    """
    Run one conversation with the agent.

    Args:
        query (str): Task for the agent.
        project_root (str): Directory the file and terminal tools are confined to.
        config (str): Path to a config.yaml (default ~/.forge/config.yaml).
        model (str): Model name override.
        provider (str): Provider type override (openai, anthropic, gemini, deepseek, ...).
        base_url (str): API base URL override.
        api_key (str): API key override.
        max_iterations (int): Maximum model invocations for this run.
        session_id (str): Resume an existing session.
        verbose (bool): Enable debug logging.
        list_tools (bool): Print the available tools and exit.
    """
    setup_logging(verbose)

    try:
        settings = load_settings(
            config_path=config,
            project_root=project_root,
            overrides={
                "model": model,
                "provider": provider,
                "base_url": base_url,
                "api_key": api_key,
                "max_iterations": max_iterations,
            },
        )
    except ConfigValidationError as e:
        print(str(e), file=sys.stderr)
        sys.exit(2)

    try:
        agent = ForgeAgent(
            project_root=project_root,
            settings=settings,
            session_id=session_id,
            event_callback=_print_event,
        )
    except ValueError as e:
        print(f"Failed to initialize agent: {e}", file=sys.stderr)
        sys.exit(2)

    try:
        if list_tools:
            for definition in agent.executor.definitions():
                print(f"  {definition.name:32} {definition.description[:70]}")
            return

        if not query:
            print("Nothing to do: pass --query", file=sys.stderr)
            sys.exit(2)

        result = agent.run_conversation(query)
        print("\n" + "=" * 50)
        print(f"Stop reason: {result.stop_reason}")
        print(f"Iterations:  {result.iterations}")
        print(f"Session:     {agent.session_id}")
        if result.error:
            print(f"Error:       {result.error}")
        if result.final_response:
            print("-" * 50)
            print(result.final_response)
        if not result.completed:
            sys.exit(1)
    finally:
        agent.close()


def _cli():
    fire.Fire(main)


if __name__ == "__main__":
    _cli()
