"""Settings loading and validation.

Environment first: ``~/.forge/.env`` is loaded, then the project's ``.env``
(neither overrides variables already set). Settings then come from
``~/.forge/config.yaml`` (``FORGE_HOME`` moves it; an explicit path wins).

Example config.yaml::

    model:
      provider: anthropic
      model: claude-sonnet-4-20250514
      api_key_env: ANTHROPIC_API_KEY
      max_tokens: 8192
    max_iterations: 50
    tool_timeout: 120
    rules:
      - Prefer small, reviewable diffs
    skills:
      - name: python-style
        source: github:acme/skills/python@v1
    mcp_servers:
      github:
        command: npx
        args: ["-y", "@modelcontextprotocol/server-github"]
        env:
          GITHUB_PERSONAL_ACCESS_TOKEN: "ghp_..."

Validation collects every problem before raising ConfigValidationError.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv

from agent.model_adapter import DEFAULT_MAX_TOKENS, DEFAULT_TEMPERATURE, ProviderConfig
from agent.model_router import default_base_url, supported_providers
from agent.skill_cache import SkillRef
from forge_constants import FORGE_CONFIG_PATH, FORGE_HOME, FORGE_SKILLS_CACHE_DIR
from tools.mcp_manager import MCPServerConfig
from tools.registry import DEFAULT_TOOL_TIMEOUT

logger = logging.getLogger(__name__)

DEFAULT_PROVIDER = "openai"
DEFAULT_MODEL = "gpt-4o"
DEFAULT_MAX_ITERATIONS = 50

# Provider type -> environment variable consulted when no key is configured
PROVIDER_KEY_ENV = {
    "openai": "OPENAI_API_KEY",
    "openai-compatible": "OPENAI_API_KEY",
    "deepseek": "DEEPSEEK_API_KEY",
    "glm": "GLM_API_KEY",
    "minimax": "MINIMAX_API_KEY",
    "qwen": "DASHSCOPE_API_KEY",
    "kimi": "MOONSHOT_API_KEY",
    "claude": "ANTHROPIC_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "gemini": "GEMINI_API_KEY",
}


class ConfigValidationError(Exception):
    """Raised when configuration is invalid."""

    def __init__(self, problems: List[str]):
        self.problems = list(problems)
        super().__init__(
            "Invalid configuration:\n" + "\n".join(f"  - {p}" for p in self.problems)
        )


@dataclass
class ForgeSettings:
    model: ProviderConfig
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    tool_timeout: float = DEFAULT_TOOL_TIMEOUT
    skills: List[SkillRef] = field(default_factory=list)
    mcp_servers: List[MCPServerConfig] = field(default_factory=list)
    rules: List[str] = field(default_factory=list)
    skills_cache_dir: Path = FORGE_SKILLS_CACHE_DIR
    system_message: Optional[str] = None


def load_env(project_root: Optional[str] = None, forge_home: Optional[Path] = None) -> None:
    """Load ``.env`` files into ``os.environ`` without overriding it."""
    env_path = Path(forge_home or FORGE_HOME) / ".env"
    if env_path.exists():
        try:
            load_dotenv(env_path, encoding="utf-8")
        except UnicodeDecodeError:
            load_dotenv(env_path, encoding="latin-1")
    if project_root:
        project_env = Path(project_root) / ".env"
        if project_env.exists():
            load_dotenv(project_env, encoding="utf-8")


def load_config_file(path: Optional[Path] = None) -> Dict[str, Any]:
    """Read the YAML settings file. A missing file means empty settings."""
    config_path = Path(path) if path else FORGE_CONFIG_PATH
    if not config_path.exists():
        if path:
            raise ConfigValidationError([f"config file not found: {config_path}"])
        logger.debug("No config file at %s, using defaults", config_path)
        return {}
    try:
        with open(config_path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigValidationError([f"{config_path} is not valid YAML: {e}"])
    if not isinstance(data, dict):
        raise ConfigValidationError([f"{config_path} must contain a mapping at the top level"])
    return data


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _positive_int(value, name: str, problems: List[str]) -> Optional[int]:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        problems.append(f"{name} must be a positive integer, got {value!r}")
        return None
    return value


def resolve_api_key(model_cfg: Dict[str, Any], provider: str) -> str:
    """Configured key, then the named env var, then the provider's default env var."""
    if model_cfg.get("api_key"):
        return str(model_cfg["api_key"])
    env_name = model_cfg.get("api_key_env") or PROVIDER_KEY_ENV.get(provider)
    if env_name:
        return os.getenv(env_name, "")
    return ""


def _parse_model(raw, problems: List[str]) -> Optional[ProviderConfig]:
    if raw is None:
        raw = {}
    elif isinstance(raw, str):
        raw = {"model": raw}
    if not isinstance(raw, dict):
        problems.append("model must be a mapping")
        return None

    provider = str(raw.get("provider") or DEFAULT_PROVIDER).strip().lower()
    if provider not in supported_providers():
        problems.append(
            f"model.provider {provider!r} is not supported "
            f"(expected one of: {', '.join(supported_providers())})"
        )
    model = raw.get("model") or DEFAULT_MODEL
    if not isinstance(model, str):
        problems.append(f"model.model must be a string, got {model!r}")

    base_url = raw.get("base_url") or default_base_url(provider)
    if base_url is not None and not isinstance(base_url, str):
        problems.append(f"model.base_url must be a string, got {base_url!r}")
    if provider == "openai-compatible" and not base_url:
        problems.append("model.base_url is required for provider 'openai-compatible'")

    max_tokens = raw.get("max_tokens", DEFAULT_MAX_TOKENS)
    max_tokens = _positive_int(max_tokens, "model.max_tokens", problems)

    temperature = raw.get("temperature", DEFAULT_TEMPERATURE)
    if not _is_number(temperature) or not 0 <= temperature <= 2:
        problems.append(f"model.temperature must be a number between 0 and 2, got {temperature!r}")

    context_length = raw.get("context_length")
    if context_length is not None:
        context_length = _positive_int(context_length, "model.context_length", problems)

    return ProviderConfig(
        provider=provider,
        model=str(model),
        api_key=resolve_api_key(raw, provider),
        base_url=base_url,
        max_tokens=max_tokens or DEFAULT_MAX_TOKENS,
        temperature=float(temperature) if _is_number(temperature) else DEFAULT_TEMPERATURE,
        context_length=context_length,
    )


def _parse_skills(raw, problems: List[str]) -> List[SkillRef]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        problems.append("skills must be a list")
        return []
    refs = []
    for i, item in enumerate(raw):
        if not isinstance(item, dict):
            problems.append(f"skills[{i}] must be a mapping")
            continue
        try:
            refs.append(SkillRef.from_dict(item))
        except (KeyError, ValueError) as e:
            problems.append(f"skills[{i}]: {e}")
    return refs


def _parse_mcp_servers(raw, problems: List[str]) -> List[MCPServerConfig]:
    if raw is None:
        return []
    if not isinstance(raw, dict):
        problems.append("mcp_servers must be a mapping of server name to settings")
        return []
    servers = []
    for name, cfg in raw.items():
        if not isinstance(cfg, dict):
            problems.append(f"mcp_servers.{name} must be a mapping")
            continue
        servers.append(MCPServerConfig.from_dict(str(name), cfg))
    return servers


def parse_settings(raw: Dict[str, Any]) -> ForgeSettings:
    """Build ForgeSettings from a raw mapping, raising on any problem."""
    problems: List[str] = []

    model = _parse_model(raw.get("model"), problems)

    max_iterations = raw.get("max_iterations", DEFAULT_MAX_ITERATIONS)
    max_iterations = _positive_int(max_iterations, "max_iterations", problems)

    tool_timeout = raw.get("tool_timeout", DEFAULT_TOOL_TIMEOUT)
    if not _is_number(tool_timeout) or tool_timeout <= 0:
        problems.append(f"tool_timeout must be a positive number, got {tool_timeout!r}")

    rules = raw.get("rules") or []
    if not isinstance(rules, list) or not all(isinstance(r, str) for r in rules):
        problems.append("rules must be a list of strings")
        rules = []

    skills = _parse_skills(raw.get("skills"), problems)
    mcp_servers = _parse_mcp_servers(raw.get("mcp_servers"), problems)

    cache_dir = raw.get("skills_cache_dir") or FORGE_SKILLS_CACHE_DIR
    if not isinstance(cache_dir, (str, Path)):
        problems.append(f"skills_cache_dir must be a path, got {cache_dir!r}")
        cache_dir = FORGE_SKILLS_CACHE_DIR

    system_message = raw.get("system_message")
    if system_message is not None and not isinstance(system_message, str):
        problems.append("system_message must be a string")

    if problems:
        raise ConfigValidationError(problems)

    if not model.api_key and model.provider != "openai-compatible":
        logger.warning(
            "No API key configured for provider '%s' (set model.api_key or %s)",
            model.provider, PROVIDER_KEY_ENV.get(model.provider, "model.api_key_env"),
        )

    return ForgeSettings(
        model=model,
        max_iterations=max_iterations,
        tool_timeout=float(tool_timeout),
        skills=skills,
        mcp_servers=mcp_servers,
        rules=list(rules),
        skills_cache_dir=Path(os.path.expanduser(str(cache_dir))),
        system_message=system_message,
    )


def load_settings(
    config_path: Optional[str] = None,
    project_root: Optional[str] = None,
    overrides: Optional[Dict[str, Any]] = None,
) -> ForgeSettings:
    """Load env files and config.yaml, apply overrides, and validate.

    *overrides* may carry ``provider``, ``model``, ``base_url``, ``api_key``
    (applied to the ``model`` section) and ``max_iterations``.
    """
    load_env(project_root)
    raw = load_config_file(Path(config_path).expanduser() if config_path else None)

    overrides = {k: v for k, v in (overrides or {}).items() if v is not None}
    if overrides:
        model_section = raw.get("model")
        if model_section is None or isinstance(model_section, str):
            model_section = {"model": model_section} if model_section else {}
        if isinstance(model_section, dict):
            model_section = dict(model_section)
            if "provider" in overrides and "base_url" not in overrides:
                # A different provider must not inherit the old endpoint
                if str(overrides["provider"]).lower() != str(model_section.get("provider", "")).lower():
                    model_section.pop("base_url", None)
            for key in ("provider", "model", "base_url", "api_key"):
                if key in overrides:
                    model_section[key] = overrides[key]
            raw = {**raw, "model": model_section}
        if "max_iterations" in overrides:
            raw = {**raw, "max_iterations": overrides["max_iterations"]}

    return parse_settings(raw)
