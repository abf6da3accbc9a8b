"""Environment defaults and validation, run once from the app lifespan."""

import logging
import os

from auth import DEFAULT_JWT_SECRET

logger = logging.getLogger(__name__)

DEFAULTS = {
    "DB_PATH": "data.db",
    "LLM_API_URL": "https://api.openai.com/v1/chat/completions",
    "MODEL_ID": "gpt-4o",
    "UPLOAD_DIR": "uploads",
}

POSITIVE_INT_VARS = ("JWT_EXPIRES_DAYS", "LLM_TIMEOUT")

OPTIONAL_VARS = {
    "JWT_EXPIRES_DAYS": "Session token lifetime in days",
    "LLM_TIMEOUT": "Seconds to wait for one LLM call",
}


class EnvironmentConfigError(Exception):
    """Raised when an environment variable is missing or invalid."""


def validate_environment() -> None:
    """Apply defaults, then reject malformed settings.

    Raises EnvironmentConfigError for a bad LLM URL, a non-positive integer
    setting, or a missing JWT secret in production.
    """
    # Defaults go in first so dependent modules read the same values.
    for var, value in DEFAULTS.items():
        if not os.getenv(var):
            os.environ[var] = value
            logger.info("Environment variable %s not set; using default '%s'", var, value)

    url = os.getenv("LLM_API_URL", "")
    if not url.startswith(("http://", "https://")):
        raise EnvironmentConfigError(f"Invalid URL format for LLM_API_URL: {url}")

    for var in POSITIVE_INT_VARS:
        value = os.getenv(var)
        if value and (not value.isdigit() or int(value) <= 0):
            raise EnvironmentConfigError(f"{var} must be a positive integer, got {value!r}")

    secret = os.getenv("JWT_SECRET")
    if not secret or secret == DEFAULT_JWT_SECRET:
        if is_production():
            raise EnvironmentConfigError("JWT_SECRET must be set in production")
        logger.warning("JWT_SECRET not set; signing session tokens with the development secret")

    if not (os.getenv("LLM_API_KEY") or os.getenv("OPENAI_API_KEY")):
        logger.warning("No LLM_API_KEY or OPENAI_API_KEY set; AI features will use fallbacks")

    for var, description in OPTIONAL_VARS.items():
        if not os.getenv(var):
            logger.info("Optional environment variable not set: %s (%s)", var, description)


def is_production() -> bool:
    return os.getenv("ENV", "").strip().lower() == "production"


def get_env_bool(name: str, default: bool = False) -> bool:
    """Get boolean value from environment variable."""
    value = os.getenv(name)
    if value is None:
        return default
    return value.lower() in {"1", "true", "yes", "on", "enabled"}
