"""Shared constants for Forge Agent.

Import-safe module with no dependencies -- can be imported from anywhere
without risk of circular imports.
"""

import os
from pathlib import Path

FORGE_HOME = Path(os.getenv("FORGE_HOME", Path.home() / ".forge"))
FORGE_CONFIG_PATH = FORGE_HOME / "config.yaml"
FORGE_SESSIONS_DIR = FORGE_HOME / "sessions"
FORGE_SKILLS_CACHE_DIR = FORGE_HOME / "skills-cache"

OPENAI_BASE_URL = "https://api.openai.com/v1"
ANTHROPIC_BASE_URL = "https://api.anthropic.com"
GEMINI_BASE_URL = "https://generativelanguage.googleapis.com"
GITHUB_API_URL = "https://api.github.com"

CLIENT_NAME = "forge-agent"
CLIENT_VERSION = "0.4.0"
