"""Pydantic models for launch configuration and session metadata."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

from procstream.settings import settings


def now() -> str:
    """Return an ISO8601 UTC timestamp."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class SessionState(str, Enum):
    """Lifecycle states for a supervised session."""
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    ENDED = "ENDED"
    INTERRUPTED = "INTERRUPTED"
    FAILED = "FAILED"


TERMINAL_STATES = frozenset(
    {SessionState.ENDED, SessionState.INTERRUPTED, SessionState.FAILED}
)


class Session(BaseModel):
    """In-memory record of one logical conversation."""
    id: str
    native_session_id: str | None = None  # Reported by the CLI, used for --resume
    is_active: bool = True
    state: SessionState = SessionState.PENDING
    exit_code: int | None = None
    created_at: str = Field(default_factory=now)
    updated_at: str = Field(default_factory=now)


class LaunchConfig(BaseModel):
    """Read-only launch parameters supplied by the configuration provider."""

    model_config = ConfigDict(frozen=True)

    executable: str
    working_dir: Path | None = None
    permission_mode: str = "default"
    helper_path: str | None = None
    helper_env_var: str = "CLAUDE_CODE_GIT_BIN_PATH"
    extra_env: dict[str, str] = Field(default_factory=dict)

    @classmethod
    def from_settings(cls) -> "LaunchConfig":
        """Build a snapshot from PROCSTREAM_* environment settings."""
        working_dir = settings.working_dir()
        return cls(
            executable=settings.executable(),
            working_dir=Path(working_dir) if working_dir else None,
            permission_mode=settings.permission_mode(),
            helper_path=settings.helper_path() or None,
            helper_env_var=settings.helper_env_var(),
        )


class HealthStatus(BaseModel):
    """Availability report for the configured executable."""
    executable_available: bool
    executable_version: str | None = None
    working_dir: str | None = None
    config_valid: bool = True
