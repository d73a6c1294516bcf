"""Launcher interface and the spawn logic shared by both platform launchers."""

from __future__ import annotations

import asyncio
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Protocol

import structlog

from procstream.errors import ProcessError
from procstream.models import LaunchConfig
from procstream.settings import settings

logger = structlog.get_logger(__name__)

# Seconds between the graceful and the forceful signal on POSIX.
KILL_GRACE_SECONDS = 0.5


@dataclass(frozen=True)
class LaunchMode:
    """Whether to open a new conversation or resume a native session."""

    resume_id: str | None = None

    @classmethod
    def start(cls) -> "LaunchMode":
        return cls()

    @classmethod
    def resume(cls, native_session_id: str) -> "LaunchMode":
        if not native_session_id:
            raise ValueError("resume requires a native session id")
        return cls(resume_id=native_session_id)

    @property
    def is_resume(self) -> bool:
        return self.resume_id is not None


class ProcessHandle:
    """A spawned CLI process: its pid and its two output streams."""

    def __init__(self, proc: asyncio.subprocess.Process) -> None:
        self._proc = proc

    @property
    def pid(self) -> int:
        return self._proc.pid

    @property
    def stdout(self) -> asyncio.StreamReader:
        return self._proc.stdout or asyncio.StreamReader()

    @property
    def stderr(self) -> asyncio.StreamReader:
        return self._proc.stderr or asyncio.StreamReader()

    @property
    def returncode(self) -> int | None:
        return self._proc.returncode

    async def wait(self) -> int:
        return await self._proc.wait()


class Launcher(Protocol):
    """Starts CLI processes and kills process trees for one OS family."""

    async def create_process(
        self, executable: str, args: list[str], **kwargs: Any
    ) -> asyncio.subprocess.Process: ...

    async def spawn(
        self,
        config: LaunchConfig,
        mode: LaunchMode,
        message: str,
        *,
        session_id: str | None = None,
    ) -> ProcessHandle: ...

    async def terminate(self, pid: int) -> None: ...


def build_args(config: LaunchConfig, mode: LaunchMode, message: str) -> list[str]:
    """Build the CLI arguments; the message is always last."""
    args = [
        "--print",
        "--verbose",
        "--output-format",
        "stream-json",
        "--permission-mode",
        config.permission_mode,
    ]
    if mode.is_resume:
        args.extend(["--resume", mode.resume_id])
    args.append(message)
    return args


def build_env(config: LaunchConfig) -> dict[str, str] | None:
    """Return the child environment, or None to inherit ours unchanged."""
    if not config.extra_env and not config.helper_path:
        return None
    env = dict(os.environ)
    env.update(config.extra_env)
    if config.helper_path:
        env[config.helper_env_var] = config.helper_path
    return env


def resolve_working_dir(config: LaunchConfig, session_id: str | None = None) -> str | None:
    """Return the configured working directory if it exists."""
    if config.working_dir is None:
        return None
    if not config.working_dir.is_dir():
        logger.warning(
            "Working directory does not exist; inheriting current directory",
            session_id=session_id,
            working_dir=str(config.working_dir),
        )
        return None
    return str(config.working_dir)


class SubprocessLauncher(ABC):
    """Spawn flow common to both OS families.

    Subclasses decide how the process is created and how its tree is killed.
    """

    platform: str = "generic"

    def popen_kwargs(self) -> dict[str, Any]:
        return {}

    async def create_process(
        self, executable: str, args: list[str], **kwargs: Any
    ) -> asyncio.subprocess.Process:
        """Start ``executable`` with ``args``; ``kwargs`` go to asyncio."""
        return await asyncio.create_subprocess_exec(
            executable, *args, **self.popen_kwargs(), **kwargs
        )

    async def spawn(
        self,
        config: LaunchConfig,
        mode: LaunchMode,
        message: str,
        *,
        session_id: str | None = None,
    ) -> ProcessHandle:
        """Start the CLI for a session.

        Args:
            config: Launch parameters snapshot.
            mode: Start a new conversation or resume a native session.
            message: Free-text prompt passed as the final argument.
            session_id: Session the process is for (logging only).

        Raises:
            ProcessError: The OS refused to start the process.
        """
        args = build_args(config, mode, message)
        cwd = resolve_working_dir(config, session_id)
        logger.info(
            "Spawning process",
            session_id=session_id,
            platform=self.platform,
            executable=config.executable,
            permission_mode=config.permission_mode,
            resume=mode.resume_id,
            cwd=cwd,
            message_length=len(message),
        )
        try:
            proc = await self.create_process(
                config.executable,
                args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
                env=build_env(config),
                limit=settings.stream_limit_bytes(),
            )
        except (OSError, ValueError) as exc:
            logger.error(
                "Failed to spawn process",
                session_id=session_id,
                executable=config.executable,
                error=str(exc),
            )
            raise ProcessError(f"Failed to start {config.executable}: {exc}") from exc

        logger.info("Process started", session_id=session_id, pid=proc.pid)
        return ProcessHandle(proc)

    @abstractmethod
    async def terminate(self, pid: int) -> None:
        """Kill the process tree rooted at ``pid``."""
