"""Launcher for Windows: escaped shim command lines and taskkill."""

from __future__ import annotations

import asyncio
import re
import shutil
import subprocess
import sys
from pathlib import Path
from typing import Any

import structlog

from procstream.errors import ProcessError
from procstream.launcher.base import SubprocessLauncher

logger = structlog.get_logger(__name__)

# Suffixes the Windows loader can start without a shell.
_NATIVE_SUFFIXES = {".exe", ".com"}

# Characters cmd.exe gives meaning to outside of quotes.
_CMD_META = re.compile(r'([()\][%!^"`<>&|;, *?])')


def _no_window_flags() -> int:
    return subprocess.CREATE_NO_WINDOW if sys.platform == "win32" else 0


def escape_command(path: str) -> str:
    """Caret-escape the shim path for one pass of cmd.exe parsing."""
    return _CMD_META.sub(r"^\1", path)


def escape_argument(arg: str) -> str:
    """Escape one argument for a ``.cmd`` shim run through ``cmd.exe /c``.

    The argument is first quoted the way the C runtime splits command lines,
    then caret-escaped twice: once for the ``cmd.exe /c`` line and once more
    because the shim re-parses it when it expands ``%*``. No quote survives
    the first pass unescaped, so cmd.exe never sees ``&``, ``|`` or ``%``
    as operators.
    """
    # Backslashes before a quote are doubled and the quote escaped.
    arg = re.sub(r'(\\*)"', r'\1\1\\"', arg)
    # Trailing backslashes are doubled so they do not eat the closing quote.
    arg = re.sub(r"(\\*)\Z", r"\1\1", arg)
    arg = f'"{arg}"'
    arg = _CMD_META.sub(r"^\1", arg)
    return _CMD_META.sub(r"^\1", arg)


def build_command_line(executable: str, args: list[str]) -> str:
    """Build the line handed to ``cmd.exe /c`` for a non-native executable.

    Every argument is escaped on its own; the message is never spliced
    into a template.
    """
    return " ".join([escape_command(executable), *(escape_argument(a) for a in args)])


def is_native(path: str) -> bool:
    return Path(path).suffix.lower() in _NATIVE_SUFFIXES


class WindowsLauncher(SubprocessLauncher):
    """Runs npm-style ``.cmd`` shims through the command interpreter."""

    platform = "windows"

    def popen_kwargs(self) -> dict[str, Any]:
        return {"creationflags": _no_window_flags()}

    async def create_process(
        self, executable: str, args: list[str], **kwargs: Any
    ) -> asyncio.subprocess.Process:
        resolved = shutil.which(executable) or executable
        if is_native(resolved):
            return await asyncio.create_subprocess_exec(
                resolved, *args, **self.popen_kwargs(), **kwargs
            )
        # subprocess runs this as `%COMSPEC% /c "<line>"`, passing the line verbatim.
        return await asyncio.create_subprocess_shell(
            build_command_line(resolved, args), **self.popen_kwargs(), **kwargs
        )

    async def terminate(self, pid: int) -> None:
        """Kill the tree rooted at ``pid`` with ``taskkill /T /F``.

        taskkill exits non-zero when the pid is already gone; that is logged
        and otherwise ignored.

        Raises:
            ProcessError: taskkill itself could not be run.
        """
        logger.info("Terminating process tree", pid=pid)
        try:
            proc = await asyncio.create_subprocess_exec(
                "taskkill",
                "/PID",
                str(pid),
                "/T",
                "/F",
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                creationflags=_no_window_flags(),
            )
        except OSError as exc:
            raise ProcessError(f"Failed to run taskkill for pid {pid}: {exc}") from exc

        _, stderr = await proc.communicate()
        if proc.returncode != 0:
            logger.info(
                "taskkill did not kill anything; process likely exited",
                pid=pid,
                returncode=proc.returncode,
                stderr=stderr.decode("utf-8", errors="replace").strip(),
            )
