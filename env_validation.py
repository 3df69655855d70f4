"""Environment variable validation and management."""

import os
import logging
from typing import Dict

logger = logging.getLogger(__name__)

_COMPLETION_POLICIES = {"sticky", "latest"}


class EnvironmentError(Exception):
    """Raised when required environment variables are missing or invalid."""
    pass


def validate_environment() -> None:
    """Validate critical environment variables.

    Raises EnvironmentError if validation fails.
    """
    defaults = {
        "DB_PATH": os.getenv("DB_PATH") or "data.db",
        "MODEL_ID": os.getenv("MODEL_ID") or "gpt-4o",
        "LLM_URL": os.getenv("LLM_URL") or "https://api.openai.com/v1/chat/completions",
    }

    # Apply defaults before validation so dependent modules see consistent values.
    for var, value in defaults.items():
        if not os.getenv(var):
            os.environ[var] = value
            logger.info("Environment variable %s not set; using default '%s'", var, value)

    optional_vars = {
        "OPENAI_API_KEY": "Bearer token for the generative backend",
        "PROMPT_VARIANT": "Active pedagogy prompt variant name",
        "IDENTITY_HEADER": "Header carrying the authenticated user id",
    }

    url_vars = {"LLM_URL"}
    for var in url_vars:
        value = os.getenv(var)
        if value and not (value.startswith("http://") or value.startswith("https://")):
            raise EnvironmentError(f"Invalid URL format for {var}: {value}")

    policy = os.getenv("COMPLETION_POLICY")
    if policy and policy.strip().lower() not in _COMPLETION_POLICIES:
        raise EnvironmentError(
            f"Invalid COMPLETION_POLICY '{policy}'. Expected one of: {', '.join(sorted(_COMPLETION_POLICIES))}"
        )

    for var in ("LLM_TIMEOUT", "DB_BUSY_TIMEOUT"):
        value = os.getenv(var)
        if value:
            try:
                parsed = float(value)
            except ValueError:
                raise EnvironmentError(f"{var} must be numeric, got '{value}'")
            if parsed <= 0:
                raise EnvironmentError(f"{var} must be positive, got '{value}'")

    max_connections = os.getenv("DB_MAX_CONNECTIONS")
    if max_connections and safe_int("DB_MAX_CONNECTIONS", 0) <= 0:
        raise EnvironmentError(f"DB_MAX_CONNECTIONS must be a positive integer, got '{max_connections}'")

    for var, description in optional_vars.items():
        if not os.getenv(var):
            logger.warning(f"Optional environment variable not set: {var} ({description})")


def get_env_bool(name: str, default: bool = False) -> bool:
    """Get boolean value from environment variable."""
    value = os.getenv(name)
    if value is None:
        return default
    return value.lower() in {"1", "true", "yes", "on", "enabled"}


def safe_float(env_name: str, default: float) -> float:
    raw = os.getenv(env_name, "")
    try:
        return float(raw) if raw else default
    except ValueError:
        return default


def safe_int(env_name: str, default: int) -> int:
    raw = os.getenv(env_name, "")
    try:
        return int(raw) if raw else default
    except ValueError:
        return default


def completion_policy(default: str = "sticky") -> str:
    raw = (os.getenv("COMPLETION_POLICY") or "").strip().lower()
    return raw if raw in _COMPLETION_POLICIES else default


def env_summary() -> Dict[str, str]:
    """Return the non-secret configuration values for startup logging."""
    return {
        "DB_PATH": os.getenv("DB_PATH", "data.db"),
        "MODEL_ID": os.getenv("MODEL_ID", "gpt-4o"),
        "LLM_URL": os.getenv("LLM_URL", ""),
        "PROMPT_VARIANT": os.getenv("PROMPT_VARIANT", "socratic"),
        "COMPLETION_POLICY": completion_policy(),
    }
