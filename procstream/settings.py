"""Centralized environment configuration for procstream.

All environment variables are read through this module using the PROCSTREAM_
prefix for consistency.

Usage:
    from procstream.settings import settings

    executable = settings.executable()
    limit = settings.stream_limit_bytes()
"""

from __future__ import annotations

import os


def _get(name: str, default: str = "") -> str:
    """Get an environment variable value."""
    return os.environ.get(name, "").strip() or default


def _get_int(name: str, default: int = 0) -> int:
    """Get an integer environment variable."""
    value = os.environ.get(name, "").strip()
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        return default


class Settings:
    """Centralized settings for procstream.

    Environment variables use the PROCSTREAM_ prefix.
    """

    # -------------------------------------------------------------------------
    # Launch Settings
    # -------------------------------------------------------------------------

    @staticmethod
    def executable() -> str:
        """Path or name of the agent CLI to launch.

        Env: PROCSTREAM_EXECUTABLE (default: claude)
        """
        return _get("PROCSTREAM_EXECUTABLE", default="claude")

    @staticmethod
    def permission_mode() -> str:
        """Permission mode passed verbatim to the CLI.

        Env: PROCSTREAM_PERMISSION_MODE (default: default)
        """
        return _get("PROCSTREAM_PERMISSION_MODE", default="default")

    @staticmethod
    def working_dir() -> str:
        """Working directory for launched processes. Empty means inherit.

        Env: PROCSTREAM_WORKING_DIR
        """
        return _get("PROCSTREAM_WORKING_DIR")

    @staticmethod
    def helper_path() -> str:
        """Helper binary handed to the child through its environment.

        On Windows the Claude CLI needs a bash-capable git install; this is
        where it is found.

        Env: PROCSTREAM_HELPER_PATH
        """
        return _get("PROCSTREAM_HELPER_PATH")

    @staticmethod
    def helper_env_var() -> str:
        """Name of the environment variable that carries ``helper_path``.

        Env: PROCSTREAM_HELPER_ENV_VAR (default: CLAUDE_CODE_GIT_BIN_PATH)
        """
        return _get("PROCSTREAM_HELPER_ENV_VAR", default="CLAUDE_CODE_GIT_BIN_PATH")

    @staticmethod
    def stream_limit_bytes() -> int:
        """Maximum length of a single stdout line.

        Tool results can be large, so this is well above asyncio's 64KB default.

        Env: PROCSTREAM_STREAM_LIMIT_BYTES (default: 10MB)
        """
        return _get_int("PROCSTREAM_STREAM_LIMIT_BYTES", default=10 * 1024 * 1024)

    # -------------------------------------------------------------------------
    # Logging Settings
    # -------------------------------------------------------------------------

    @staticmethod
    def log_level() -> str:
        """Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL).

        Env: PROCSTREAM_LOG_LEVEL (default: INFO)
        """
        return _get("PROCSTREAM_LOG_LEVEL", default="INFO").upper()

    @staticmethod
    def log_format() -> str:
        """Log format: "console" for dev-friendly, "json" for structured.

        Env: PROCSTREAM_LOG_FORMAT (default: console)
        """
        return _get("PROCSTREAM_LOG_FORMAT", default="console").lower()


# Singleton instance for convenient imports
settings = Settings()
