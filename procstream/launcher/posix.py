"""Launcher for Linux and macOS: process groups and signals."""

from __future__ import annotations

import asyncio
import os
import signal
from typing import Any

import structlog

from procstream.errors import ProcessError
from procstream.launcher.base import KILL_GRACE_SECONDS, SubprocessLauncher

logger = structlog.get_logger(__name__)


class PosixLauncher(SubprocessLauncher):
    """Runs the executable directly in its own process group.

    The CLI is often a node shim that forks the real worker, so termination
    signals the whole group rather than the pid alone.
    """

    platform = "posix"

    def popen_kwargs(self) -> dict[str, Any]:
        # Own process group so we can kill all children
        return {"start_new_session": True}

    async def terminate(self, pid: int) -> None:
        """SIGTERM the tree, wait out the grace period, then SIGKILL it.

        Every child we spawn leads its own process group. A pid that is gone,
        or that does not lead its own group, is treated as already exited.

        Raises:
            ProcessError: The process exists but may not be signalled.
        """
        try:
            pgid = os.getpgid(pid)
        except ProcessLookupError:
            logger.debug("Process already exited", pid=pid)
            return
        if pgid != pid:
            logger.info("Pid is not a group we started; treating as exited", pid=pid, pgid=pgid)
            return

        logger.info("Terminating process tree", pid=pid, pgid=pgid)
        if not self._send(pgid, signal.SIGTERM):
            return
        await asyncio.sleep(KILL_GRACE_SECONDS)
        try:
            self._send(pgid, signal.SIGKILL)
        except ProcessError as exc:
            # macOS answers EPERM for a group that only holds zombies.
            logger.warning("Forceful kill failed", pid=pid, error=exc.message)

    def _send(self, pgid: int, sig: signal.Signals) -> bool:
        """Deliver ``sig`` to the group; return False if it is already gone."""
        try:
            os.killpg(pgid, sig)
        except ProcessLookupError:
            logger.debug("Process already exited", pgid=pgid, signal=sig.name)
            return False
        except PermissionError as exc:
            raise ProcessError(f"Failed to send {sig.name} to group {pgid}: {exc}") from exc
        return True
