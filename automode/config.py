"""
Auto Mode Configuration
=======================

Environment variable configuration for the scheduler, the executor and the
server. Values are read once into a frozen AutoModeSettings; invalid values
log a warning and fall back to the default.

Variables:
- AUTOMODE_MAX_CONCURRENCY (default 3)
- AUTOMODE_CHECK_INTERVAL_SECONDS (default 5.0)
- AUTOMODE_MAX_RETRY_ATTEMPTS (default 3)
- AUTOMODE_PROJECTS_ROOT (default: current directory)
- AUTOMODE_EXECUTOR (default "claude_sdk")
- AUTOMODE_MODEL (default: ANTHROPIC_DEFAULT_SONNET_MODEL or claude-sonnet-4-20250514)
- AUTOMODE_SESSION_TIMEOUT_SECONDS (default 1800)
- AUTOMODE_ALLOW_REMOTE (default false)

Usage:
    from dotenv import load_dotenv
    from automode.config import AutoModeSettings

    load_dotenv()
    settings = AutoModeSettings.from_env()
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional

_logger = logging.getLogger(__name__)

# =============================================================================
# Constants
# =============================================================================

DEFAULT_MAX_CONCURRENCY = 3
DEFAULT_CHECK_INTERVAL_SECONDS = 5.0
DEFAULT_MAX_RETRY_ATTEMPTS = 3
DEFAULT_SESSION_TIMEOUT_SECONDS = 1800
DEFAULT_MODEL = "claude-sonnet-4-20250514"

EXECUTOR_CLAUDE_SDK = "claude_sdk"
VALID_EXECUTORS = (EXECUTOR_CLAUDE_SDK,)
DEFAULT_EXECUTOR = EXECUTOR_CLAUDE_SDK

TRUTHY_VALUES = ("1", "true", "yes", "on")


# =============================================================================
# Environment Variable Parsing
# =============================================================================

def _read_int(env: Mapping[str, str], name: str, default: int, minimum: int) -> int:
    raw = env.get(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        _logger.warning("Invalid integer for %s: '%s'. Defaulting to %d", name, raw, default)
        return default
    if value < minimum:
        _logger.warning("%s must be >= %d, got %d. Defaulting to %d", name, minimum, value, default)
        return default
    return value


def _read_float(env: Mapping[str, str], name: str, default: float, minimum: float) -> float:
    raw = env.get(name, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        _logger.warning("Invalid number for %s: '%s'. Defaulting to %s", name, raw, default)
        return default
    if value < minimum:
        _logger.warning("%s must be >= %s, got %s. Defaulting to %s", name, minimum, value, default)
        return default
    return value


def _read_bool(env: Mapping[str, str], name: str) -> bool:
    return env.get(name, "").strip().lower() in TRUTHY_VALUES


def _read_executor(env: Mapping[str, str]) -> str:
    raw = env.get("AUTOMODE_EXECUTOR", "").strip().lower()
    if not raw:
        return DEFAULT_EXECUTOR
    if raw in VALID_EXECUTORS:
        return raw
    _logger.warning(
        "Unknown value for AUTOMODE_EXECUTOR: '%s'. Defaulting to '%s'. Valid values: %s",
        raw, DEFAULT_EXECUTOR, VALID_EXECUTORS,
    )
    return DEFAULT_EXECUTOR


# =============================================================================
# Settings
# =============================================================================

@dataclass(frozen=True)
class AutoModeSettings:
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY
    check_interval_seconds: float = DEFAULT_CHECK_INTERVAL_SECONDS
    max_retry_attempts: int = DEFAULT_MAX_RETRY_ATTEMPTS
    projects_root: Path = field(default_factory=Path.cwd)
    executor: str = DEFAULT_EXECUTOR
    model: str = DEFAULT_MODEL
    session_timeout_seconds: int = DEFAULT_SESSION_TIMEOUT_SECONDS
    allow_remote: bool = False

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "AutoModeSettings":
        """Build settings from ``env`` (defaults to ``os.environ``)."""
        if env is None:
            env = os.environ

        projects_root = env.get("AUTOMODE_PROJECTS_ROOT", "").strip()
        model = (
            env.get("AUTOMODE_MODEL", "").strip()
            or env.get("ANTHROPIC_DEFAULT_SONNET_MODEL", "").strip()
            or DEFAULT_MODEL
        )

        return cls(
            max_concurrency=_read_int(
                env, "AUTOMODE_MAX_CONCURRENCY", DEFAULT_MAX_CONCURRENCY, minimum=1
            ),
            check_interval_seconds=_read_float(
                env, "AUTOMODE_CHECK_INTERVAL_SECONDS", DEFAULT_CHECK_INTERVAL_SECONDS, minimum=0.1
            ),
            max_retry_attempts=_read_int(
                env, "AUTOMODE_MAX_RETRY_ATTEMPTS", DEFAULT_MAX_RETRY_ATTEMPTS, minimum=0
            ),
            projects_root=Path(projects_root).expanduser() if projects_root else Path.cwd(),
            executor=_read_executor(env),
            model=model,
            session_timeout_seconds=_read_int(
                env, "AUTOMODE_SESSION_TIMEOUT_SECONDS", DEFAULT_SESSION_TIMEOUT_SECONDS, minimum=1
            ),
            allow_remote=_read_bool(env, "AUTOMODE_ALLOW_REMOTE"),
        )
