"""Availability checks for the configured CLI executable."""

from __future__ import annotations

import asyncio

import structlog

from procstream.launcher import Launcher, get_launcher
from procstream.models import HealthStatus, LaunchConfig

logger = structlog.get_logger(__name__)

VERSION_TIMEOUT = 10.0


async def detect_executable(
    config: LaunchConfig, launcher: Launcher | None = None
) -> str | None:
    """Run ``<executable> --version`` and return the first line it prints.

    Returns None when the executable is missing, exits non-zero, or hangs.
    """
    launcher = launcher or get_launcher()
    try:
        proc = await launcher.create_process(
            config.executable,
            ["--version"],
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
        )
    except OSError as exc:
        logger.info("Executable not available", executable=config.executable, error=str(exc))
        return None

    try:
        stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=VERSION_TIMEOUT)
    except asyncio.TimeoutError:
        logger.warning("Version check timed out", executable=config.executable)
        proc.kill()
        await proc.wait()
        return None

    if proc.returncode != 0:
        logger.info(
            "Version check failed",
            executable=config.executable,
            returncode=proc.returncode,
        )
        return None
    lines = stdout.decode("utf-8", errors="replace").splitlines()
    return lines[0].strip() if lines else None


async def health_check(
    config: LaunchConfig, launcher: Launcher | None = None
) -> HealthStatus:
    """Report whether the executable runs and the configuration is usable."""
    version = await detect_executable(config, launcher)
    working_dir = str(config.working_dir) if config.working_dir else None
    config_valid = bool(config.executable) and (
        config.working_dir is None or config.working_dir.is_dir()
    )
    return HealthStatus(
        executable_available=version is not None,
        executable_version=version,
        working_dir=working_dir,
        config_valid=config_valid,
    )
