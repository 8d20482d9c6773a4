"""
Configuration for the diagnostics engine

Settings come from ``LSP_DIAG_*`` environment variables, optionally loaded
from a ``.env`` file, with defaults matching the engine's constants.
"""

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

from lsp_constants import (
    DEFAULT_MAX_CHARS,
    DEFAULT_REQUEST_TIMEOUT,
    DEFAULT_SEVERITY,
    DEFAULT_SHUTDOWN_TIMEOUT,
    DIAGNOSTICS_CEILING,
    DIAGNOSTICS_DEBOUNCE,
    SEVERITY_FILTERS,
)

logger = logging.getLogger(__name__)

DATA_DIR = Path.home() / ".local" / "share" / "lsp-diagnostics"
DOTENV_PATH = DATA_DIR / ".env"
ENV_PREFIX = "LSP_DIAG_"
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass
class DiagnosticsConfig:
    """Timing, output and retry settings for one orchestrator."""

    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    shutdown_timeout: float = DEFAULT_SHUTDOWN_TIMEOUT
    debounce: float = DIAGNOSTICS_DEBOUNCE
    ceiling: float = DIAGNOSTICS_CEILING
    max_chars: int = DEFAULT_MAX_CHARS
    default_severity: str = DEFAULT_SEVERITY
    max_crash_restarts: int = 3
    log_level: str = "WARNING"

    def __post_init__(self):
        """Validate configuration after initialization"""
        for name in ("request_timeout", "shutdown_timeout", "debounce", "ceiling"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive, got: {getattr(self, name)}")

        if self.debounce > self.ceiling:
            raise ValueError(
                f"debounce ({self.debounce}s) cannot exceed ceiling ({self.ceiling}s)"
            )
        if self.max_chars < 1:
            raise ValueError(f"max_chars must be at least 1, got: {self.max_chars}")
        if self.max_crash_restarts < 0:
            raise ValueError(
                f"max_crash_restarts cannot be negative, got: {self.max_crash_restarts}"
            )
        if self.default_severity not in SEVERITY_FILTERS:
            raise ValueError(
                f"default_severity must be one of {', '.join(SEVERITY_FILTERS)}, "
                f"got: {self.default_severity}"
            )

        self.log_level = self.log_level.upper()
        if self.log_level not in LOG_LEVELS:
            raise ValueError(f"Invalid log level: {self.log_level}")

    @classmethod
    def from_env(
        cls,
        environ: Mapping[str, str] | None = None,
        load_env_file: bool = True,
    ) -> "DiagnosticsConfig":
        """Build a configuration from environment variables.

        Args:
            environ: Mapping to read instead of ``os.environ``
            load_env_file: Load a ``.env`` file into the process environment first

        Raises:
            ValueError: If a variable holds an invalid value
        """
        if load_env_file:
            if DOTENV_PATH.exists():
                logger.info(f"Loading .env from {DOTENV_PATH}")
                load_dotenv(DOTENV_PATH)
            else:
                logger.debug(f"No .env file found at {DOTENV_PATH}, trying current directory")
                load_dotenv()

        env = os.environ if environ is None else environ
        defaults = cls()

        return cls(
            request_timeout=_env_float(env, "REQUEST_TIMEOUT", defaults.request_timeout),
            shutdown_timeout=_env_float(env, "SHUTDOWN_TIMEOUT", defaults.shutdown_timeout),
            debounce=_env_float(env, "DEBOUNCE", defaults.debounce),
            ceiling=_env_float(env, "CEILING", defaults.ceiling),
            max_chars=_env_int(env, "MAX_CHARS", defaults.max_chars),
            default_severity=env.get(f"{ENV_PREFIX}SEVERITY", defaults.default_severity),
            max_crash_restarts=_env_int(
                env, "MAX_CRASH_RESTARTS", defaults.max_crash_restarts
            ),
            log_level=env.get(f"{ENV_PREFIX}LOG_LEVEL", defaults.log_level),
        )


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(f"{ENV_PREFIX}{name}")
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ValueError(f"{ENV_PREFIX}{name} must be a number, got: {raw}") from e


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(f"{ENV_PREFIX}{name}")
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ValueError(f"{ENV_PREFIX}{name} must be an integer, got: {raw}") from e
