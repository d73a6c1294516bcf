"""Shared pytest fixtures for procstream tests."""

from __future__ import annotations

import asyncio
import os
import stat
import sys
from collections import deque
from pathlib import Path

import pytest

from procstream.errors import ProcessError
from procstream.launcher import LaunchMode
from procstream.models import LaunchConfig

# Ensure host machine settings do not affect test results.
for k in list(os.environ):
    if k.startswith("PROCSTREAM_"):
        os.environ.pop(k, None)


@pytest.fixture(scope="session")
def anyio_backend() -> str:
    """Force the AnyIO pytest plugin to run tests under asyncio.

    The orchestrator uses asyncio subprocesses and tasks directly, which are
    incompatible with the trio backend.
    """
    return "asyncio"


@pytest.fixture
def clean_env(monkeypatch):
    """Remove all PROCSTREAM_ env vars for clean tests."""
    for key in list(os.environ.keys()):
        if key.startswith("PROCSTREAM_"):
            monkeypatch.delenv(key, raising=False)
    return monkeypatch


@pytest.fixture
def config() -> LaunchConfig:
    return LaunchConfig(executable="claude", permission_mode="acceptEdits")


@pytest.fixture
def make_script(tmp_path: Path):
    """Write an executable Python script and return its path."""

    def _make(body: str, name: str = "fake-cli") -> str:
        path = tmp_path / name
        path.write_text(f"#!{sys.executable}\n{body}")
        path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return str(path)

    return _make


class FakeHandle:
    """Stands in for a ProcessHandle backed by in-memory stream readers.

    Must be created inside a running event loop.
    """

    def __init__(
        self,
        pid: int,
        lines: list[str] | None = None,
        *,
        close: bool = True,
        exit_code: int = 0,
        limit: int = 2**16,
        stderr_lines: list[str] | None = None,
    ) -> None:
        self.pid = pid
        self.stdout = asyncio.StreamReader(limit=limit)
        self.stderr = asyncio.StreamReader()
        self.returncode: int | None = None
        self._exited = asyncio.Event()
        for line in lines or []:
            self.feed(line)
        for line in stderr_lines or []:
            self.stderr.feed_data((line + "\n").encode())
        self.stderr.feed_eof()
        if close:
            self.finish(exit_code)

    def feed(self, line: str) -> None:
        self.stdout.feed_data((line + "\n").encode())

    def finish(self, code: int = 0) -> None:
        if self.returncode is not None:
            return
        self.returncode = code
        self.stdout.feed_eof()
        self._exited.set()

    async def wait(self) -> int:
        await self._exited.wait()
        return self.returncode


class FakeLauncher:
    """Records spawn/terminate calls and hands out queued FakeHandles."""

    def __init__(self) -> None:
        self.handles: deque[FakeHandle] = deque()
        self.spawned: list[tuple[LaunchMode, str, str | None, FakeHandle]] = []
        self.terminated: list[int] = []
        self.fail: ProcessError | None = None
        self.fail_terminate: ProcessError | None = None
        self._live: dict[int, FakeHandle] = {}
        self._next_pid = 1000

    async def spawn(self, config, mode, message, *, session_id=None):
        if self.fail is not None:
            raise self.fail
        if self.handles:
            handle = self.handles.popleft()
        else:
            self._next_pid += 1
            handle = FakeHandle(self._next_pid, close=False)
        self._live[handle.pid] = handle
        self.spawned.append((mode, message, session_id, handle))
        return handle

    async def terminate(self, pid: int) -> None:
        self.terminated.append(pid)
        if self.fail_terminate is not None:
            raise self.fail_terminate
        handle = self._live.pop(pid, None)
        if handle is not None:
            handle.finish(-15)


@pytest.fixture
def fake_launcher() -> FakeLauncher:
    return FakeLauncher()


@pytest.fixture
def make_handle():
    """Factory for FakeHandle; call it from inside an async test."""
    return FakeHandle
