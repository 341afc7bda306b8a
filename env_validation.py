"""Environment variable validation and management."""

import os
import logging
from typing import Dict, Optional

logger = logging.getLogger(__name__)

class EnvironmentError(Exception):
    """Raised when environment variables are missing or invalid."""
    pass

def validate_environment() -> None:
    """Validate configuration taken from the environment.

    Raises EnvironmentError if validation fails.
    """
    defaults = {
        "DB_PATH": os.getenv("DB_PATH") or "data.db",
        "ERROR_SAMPLE_LIMIT": os.getenv("ERROR_SAMPLE_LIMIT") or "20",
    }

    # Apply defaults before validation so dependent modules see consistent values.
    for var, value in defaults.items():
        if not os.getenv(var):
            os.environ[var] = value
            logger.info("Environment variable %s not set; using default '%s'", var, value)

    optional_vars = {
        "LMS_API_URL": "LMS REST API base URL",
        "LMS_API_TOKEN": "LMS REST API token",
        "ADMIN_TOKEN": "Token guarding admin endpoints",
        "INTERNAL_EMAIL_DOMAIN": "Email domain accepted by CSV imports",
    }

    value = os.getenv("LMS_API_URL")
    if value and not (value.startswith("http://") or value.startswith("https://")):
        raise EnvironmentError(f"Invalid URL format for LMS_API_URL: {value}")

    try:
        limit = int(os.environ["ERROR_SAMPLE_LIMIT"])
    except ValueError as exc:
        raise EnvironmentError(
            f"ERROR_SAMPLE_LIMIT must be an integer, got {os.environ['ERROR_SAMPLE_LIMIT']!r}"
        ) from exc
    if limit < 0:
        raise EnvironmentError("ERROR_SAMPLE_LIMIT must not be negative")

    domain = os.getenv("INTERNAL_EMAIL_DOMAIN")
    if domain and ("@" in domain or "." not in domain):
        raise EnvironmentError(f"INTERNAL_EMAIL_DOMAIN must be a bare domain, got {domain!r}")

    for var, description in optional_vars.items():
        if not os.getenv(var):
            logger.warning(f"Optional environment variable not set: {var} ({description})")

def get_env_int(name: str, default: int) -> int:
    """Get integer value from environment variable, falling back on bad input."""
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning("Ignoring non-integer value for %s: %r", name, value)
        return default

def error_sample_limit() -> int:
    return max(0, get_env_int("ERROR_SAMPLE_LIMIT", 20))

def internal_email_domain() -> Optional[str]:
    value = (os.getenv("INTERNAL_EMAIL_DOMAIN") or "").strip().lower()
    return value or None

def lms_settings() -> Dict[str, Optional[str]]:
    return {
        "base_url": os.getenv("LMS_API_URL") or None,
        "token": os.getenv("LMS_API_TOKEN") or None,
    }
