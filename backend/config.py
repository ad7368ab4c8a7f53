"""
Runtime configuration for the Product Agent API.

All settings are read from environment variables at import time. Anything
not set falls back to a default suitable for local development.
"""

import os


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


# Upstream agent backend. Empty means the in-process backend is used.
UPSTREAM_AGENT_URL = os.environ.get("UPSTREAM_AGENT_URL", "").rstrip("/")

# Idle window for a relayed stream, in seconds
STREAM_TIMEOUT_SECONDS = float(os.environ.get("STREAM_TIMEOUT_SECONDS", "300"))

# Run store capacity
MAX_RUN_RECORDS = int(os.environ.get("MAX_RUN_RECORDS", "50"))

# Generation defaults, overridable per run through request settings
DEFAULT_MODEL = os.environ.get("DEFAULT_MODEL", "claude-3-5-sonnet-20241022")
DEFAULT_TEMPERATURE = float(os.environ.get("DEFAULT_TEMPERATURE", "0.2"))
DEFAULT_MAX_TOKENS = int(os.environ.get("DEFAULT_MAX_TOKENS", "4096"))

ANTHROPIC_API_KEY = os.environ.get("ANTHROPIC_API_KEY")
OPENAI_API_KEY = os.environ.get("OPENAI_API_KEY")
OPENAI_BASE_URL = os.environ.get("OPENAI_BASE_URL") or None

# Skip the model call in the persona builder and use the heuristic profiles
PERSONA_AGENT_FORCE_HEURISTIC = _env_bool("PERSONA_AGENT_FORCE_HEURISTIC")

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()

CORS_ALLOW_ORIGINS = [
    origin.strip()
    for origin in os.environ.get("CORS_ALLOW_ORIGINS", "*").split(",")
    if origin.strip()
]
