"""
Quill Configuration

All settings are read from environment variables at import time. Tests that need
different values either pass explicit arguments to the components or reload this
module after patching the environment.
"""

from __future__ import annotations

import logging
import os

logger = logging.getLogger(__name__)

_TRUE_VALUES = {"1", "true", "yes", "on"}


class ConfigurationError(Exception):
    """Raised when required configuration is missing or invalid."""
    pass


def _get_bool(env_var: str, default: bool = False) -> bool:
    value = os.getenv(env_var)
    if value is None:
        return default
    return value.strip().lower() in _TRUE_VALUES


def _get_seconds(env_var: str, default: float) -> float:
    raw = os.getenv(env_var, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{env_var} must be a number of seconds, got {raw!r}") from exc
    if value < 0:
        raise ConfigurationError(f"{env_var} must not be negative, got {raw!r}")
    return value


def _get_count(env_var: str, default: int) -> int:
    raw = os.getenv(env_var, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{env_var} must be an integer, got {raw!r}") from exc
    if value < 1:
        raise ConfigurationError(f"{env_var} must be at least 1, got {raw!r}")
    return value


ENVIRONMENT = os.getenv("QUILL_ENV", "production").strip().lower()
DEVELOPMENT = ENVIRONMENT == "development"

# The software signer keeps keys in process memory; development only unless forced.
ALLOW_HOT_SIGNER = _get_bool("QUILL_ALLOW_HOT_SIGNER", default=DEVELOPMENT)
HOT_SIGNER_SEED = os.getenv("QUILL_HOT_SIGNER_SEED", "quill-development-seed")
HOT_SIGNER_ACCOUNTS = _get_count("QUILL_HOT_SIGNER_ACCOUNTS", 5)

# Grace periods before a finished request is dropped from its signer's queue
DECLINE_GRACE_SECONDS = _get_seconds("QUILL_DECLINE_GRACE_SECONDS", 1.8)
SUCCESS_GRACE_SECONDS = _get_seconds("QUILL_SUCCESS_GRACE_SECONDS", 1.8)
ERROR_GRACE_SECONDS = _get_seconds("QUILL_ERROR_GRACE_SECONDS", 3.3)

LEDGER_DERIVATION_PATH = os.getenv("QUILL_LEDGER_DERIVATION_PATH", "m/44'/60'/0'/0")
LEDGER_ACCOUNTS = _get_count("QUILL_LEDGER_ACCOUNTS", 5)

LOG_LEVEL = os.getenv("QUILL_LOG_LEVEL", "INFO").strip().upper()
LOG_FILE = os.getenv("QUILL_LOG_FILE", "").strip() or None

if ALLOW_HOT_SIGNER and not DEVELOPMENT:
    logger.warning(
        "Hot signer enabled outside development; keys are held in process memory",
        extra={"event": "config.hot_signer_forced", "environment": ENVIRONMENT},
    )
