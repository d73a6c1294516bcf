"""Launcher selection: one implementation per OS family, chosen once."""

from __future__ import annotations

import sys

from procstream.launcher.base import Launcher, LaunchMode, ProcessHandle, build_args

_launcher: Launcher | None = None


def get_launcher() -> Launcher:
    """Return the launcher for the host OS.

    The choice is made on first call and cached, so the rest of the package
    never branches on the platform.
    """
    global _launcher
    if _launcher is not None:
        return _launcher

    if sys.platform == "win32":
        from procstream.launcher.windows import WindowsLauncher

        _launcher = WindowsLauncher()
    else:
        from procstream.launcher.posix import PosixLauncher

        _launcher = PosixLauncher()
    return _launcher


__all__ = ["get_launcher", "Launcher", "LaunchMode", "ProcessHandle", "build_args"]
