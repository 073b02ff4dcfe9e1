"""
Configuration settings for the FairLens suitability engine.
"""

import logging.config
import os
from typing import Optional

from dotenv import load_dotenv

load_dotenv()

# ======================
# Azure OpenAI Configuration
# ======================

AZURE_OPENAI_KEY = os.getenv("AZURE_OPENAI_KEY")
AZURE_OPENAI_ENDPOINT = os.getenv("AZURE_OPENAI_ENDPOINT")
AZURE_OPENAI_API_VERSION = os.getenv("AZURE_OPENAI_API_VERSION", "2025-03-01-preview")
AZURE_OPENAI_GPT_DEPLOYMENT_NAME = os.getenv("AZURE_OPENAI_GPT_DEPLOYMENT_NAME", "gpt-4.1")

# ======================
# Pipeline Configuration
# ======================

# Upper bound for a single collaborator call (validate, extract, explain).
# Empty or 0 disables the timeout.
DEFAULT_CALL_TIMEOUT_SECONDS = 120.0

# ======================
# MongoDB Configuration
# ======================

MONGO_URI = os.getenv("MONGO_URI", "mongodb://localhost:27017/")
MONGO_DB_NAME = os.getenv("MONGO_DB_NAME", "fairlens_db")

# ======================
# Session Configuration
# ======================

SESSION_STORAGE_KEY = os.getenv("SESSION_STORAGE_KEY", "fairlens_session")
SESSION_MAX_BYTES = int(os.getenv("SESSION_MAX_BYTES", str(5 * 1024 * 1024)))

# ======================
# Logging Configuration
# ======================

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

LOGGING_CONFIG = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "default": {
            "format": "%(asctime)s %(levelname)s [%(name)s] %(message)s",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "default",
        },
    },
    "loggers": {
        "fairlens": {"handlers": ["console"], "level": LOG_LEVEL, "propagate": False},
    },
}


def configure_logging() -> None:
    """Install the FairLens logging configuration."""
    logging.config.dictConfig(LOGGING_CONFIG)


def get_call_timeout() -> Optional[float]:
    """Read the per-call timeout from the environment.

    Returns:
        Timeout in seconds, or None when the timeout is disabled
    """
    raw = os.getenv("FAIRLENS_CALL_TIMEOUT_SECONDS")
    if raw is None:
        return DEFAULT_CALL_TIMEOUT_SECONDS
    raw = raw.strip()
    if not raw:
        return None
    timeout = float(raw)
    return timeout if timeout > 0 else None
