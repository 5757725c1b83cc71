"""Provider type -> adapter resolution and context-length lookup.

Pure utility functions with no orchestrator dependency. The orchestrator
only ever sees the ``ModelAdapter`` returned here.
"""

import logging
import os
from typing import Dict, Optional

from agent.anthropic_adapter import AnthropicAdapter
from agent.gemini_adapter import GeminiAdapter
from agent.model_adapter import ModelAdapter, ProviderConfig
from agent.openai_adapter import OpenAICompatibleAdapter
from forge_constants import ANTHROPIC_BASE_URL, GEMINI_BASE_URL, OPENAI_BASE_URL

logger = logging.getLogger(__name__)

_ADAPTERS = {
    "openai": OpenAICompatibleAdapter,
    "openai-compatible": OpenAICompatibleAdapter,
    "deepseek": OpenAICompatibleAdapter,
    "glm": OpenAICompatibleAdapter,
    "minimax": OpenAICompatibleAdapter,
    "qwen": OpenAICompatibleAdapter,
    "kimi": OpenAICompatibleAdapter,
    "claude": AnthropicAdapter,
    "anthropic": AnthropicAdapter,
    "gemini": GeminiAdapter,
}

DEFAULT_BASE_URLS = {
    "openai": OPENAI_BASE_URL,
    "deepseek": "https://api.deepseek.com/v1",
    "glm": "https://open.bigmodel.cn/api/paas/v4",
    "minimax": "https://api.minimax.chat/v1",
    "qwen": "https://dashscope.aliyuncs.com/compatible-mode/v1",
    "kimi": "https://api.moonshot.cn/v1",
    "claude": ANTHROPIC_BASE_URL,
    "anthropic": ANTHROPIC_BASE_URL,
    "gemini": GEMINI_BASE_URL,
}

# Conservative floor for unknown models. Override with FORGE_CONTEXT_LENGTH.
SAFE_DEFAULT_CONTEXT_LENGTH = 8192

DEFAULT_CONTEXT_LENGTHS = {
    "claude-opus-4": 200000,
    "claude-sonnet-4": 200000,
    "claude-3-5-sonnet": 200000,
    "claude-haiku-4": 200000,
    "gpt-4.1": 1047576,
    "gpt-4o": 128000,
    "gpt-4-turbo": 128000,
    "o3": 200000,
    "o4-mini": 200000,
    "gemini-2.5-pro": 1048576,
    "gemini-2.5-flash": 1048576,
    "gemini-2.0-flash": 1048576,
    "deepseek-chat": 65536,
    "deepseek-reasoner": 65536,
    "glm-4": 128000,
    "qwen-max": 32768,
    "qwen-plus": 131072,
    "moonshot-v1-128k": 131072,
    "kimi-k2": 131072,
    "abab6.5": 245760,
}


def supported_providers():
    return sorted(_ADAPTERS)


def create_adapter(provider: str) -> ModelAdapter:
    """Instantiate the adapter for a provider type. Raises ValueError if unknown."""
    key = (provider or "").strip().lower()
    adapter_cls = _ADAPTERS.get(key)
    if adapter_cls is None:
        raise ValueError(
            f"Unsupported provider type: {provider!r} "
            f"(expected one of: {', '.join(supported_providers())})"
        )
    return adapter_cls()


def default_base_url(provider: str) -> Optional[str]:
    return DEFAULT_BASE_URLS.get((provider or "").strip().lower())


def _get_fallback_context_length() -> int:
    env_override = os.getenv("FORGE_CONTEXT_LENGTH")
    if env_override:
        try:
            return int(env_override)
        except ValueError:
            logger.warning("Invalid FORGE_CONTEXT_LENGTH value: %s, using default", env_override)
    return SAFE_DEFAULT_CONTEXT_LENGTH


# Unknown model names already warned about; the lookup runs every turn.
_warned_unknown_models = set()


def get_context_length(model: str) -> int:
    """Context window for a model name.

    Resolution order:
    1. Built-in DEFAULT_CONTEXT_LENGTHS table (longest matching key wins)
    2. FORGE_CONTEXT_LENGTH env var
    3. SAFE_DEFAULT_CONTEXT_LENGTH
    """
    name = (model or "").lower()
    matches: Dict[str, int] = {k: v for k, v in DEFAULT_CONTEXT_LENGTHS.items() if k in name}
    if matches:
        return matches[max(matches, key=len)]

    fallback = _get_fallback_context_length()
    if name not in _warned_unknown_models:
        _warned_unknown_models.add(name)
        logger.warning(
            "Unknown model '%s' - using context length of %s tokens. "
            "Set FORGE_CONTEXT_LENGTH to override.",
            model, f"{fallback:,}",
        )
    return fallback


def context_length_for(config: ProviderConfig) -> int:
    """Explicit ``context_length`` from settings wins over the lookup."""
    if config.context_length:
        return config.context_length
    return get_context_length(config.model)
