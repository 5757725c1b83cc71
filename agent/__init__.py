"""Agent internals -- the orchestration core of Forge Agent.

Module Overview
---------------

**messages.py / transcript.py**
    Canonical conversation data model and the append-only transcript
    that enforces tool-call correlation.

**orchestrator.py**
    The ReAct loop: plan, stream from the model, execute tools, repeat.

**model_adapter.py, openai_adapter.py, anthropic_adapter.py, gemini_adapter.py**
    One streaming contract over every supported provider.

**model_router.py**
    Provider type -> adapter, and model context-length lookup.

**tool_executor.py**
    Concurrent tool dispatch to the registry or the MCP manager.

**context_memory.py**
    Token estimation and history trimming.

**skill_cache.py, prompt_builder.py, prompt_assembler.py**
    Skill loading/caching and system prompt composition.

**config.py / session_store.py / cancellation.py**
    Settings, conversation persistence, and the per-session cancel token.

Modules in this package do not import from run_agent.py.
"""
