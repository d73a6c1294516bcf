"""Tests for argument building, spawning and process-tree termination."""

import asyncio
import json
import os
import re
import signal
import sys
from pathlib import Path

import pytest

from procstream.errors import ProcessError
from procstream.launcher import LaunchMode, build_args, get_launcher
from procstream.launcher import base as launcher_base
from procstream.launcher import posix, windows
from procstream.launcher.base import build_env, resolve_working_dir
from procstream.models import LaunchConfig

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="POSIX process groups")


class TestBuildArgs:
    """The argument vector encodes output mode, permissions and resume."""

    def test_start_mode(self, config):
        args = build_args(config, LaunchMode.start(), "hello world")
        assert args == [
            "--print",
            "--verbose",
            "--output-format",
            "stream-json",
            "--permission-mode",
            "acceptEdits",
            "hello world",
        ]

    def test_resume_mode_message_last(self, config):
        args = build_args(config, LaunchMode.resume("S123"), "more")
        assert args[-3:] == ["--resume", "S123", "more"]

    def test_permission_mode_passed_verbatim(self):
        config = LaunchConfig(executable="claude", permission_mode="weird Mode!")
        args = build_args(config, LaunchMode.start(), "x")
        idx = args.index("--permission-mode")
        assert args[idx + 1] == "weird Mode!"

    def test_message_with_shell_metacharacters_stays_one_argument(self, config):
        message = 'rm -rf / && echo "pwned" | tee $HOME'
        args = build_args(config, LaunchMode.start(), message)
        assert args[-1] == message

    def test_resume_requires_id(self):
        with pytest.raises(ValueError):
            LaunchMode.resume("")


class TestEnvironmentAndCwd:
    def test_no_overrides_inherits_env(self, config):
        assert build_env(config) is None

    def test_helper_path_goes_into_env(self):
        config = LaunchConfig(executable="claude", helper_path=r"C:\Git\bin\bash.exe")
        env = build_env(config)
        assert env["CLAUDE_CODE_GIT_BIN_PATH"] == r"C:\Git\bin\bash.exe"
        assert env["PATH"] == os.environ["PATH"]

    def test_custom_helper_env_var_and_extra_env(self):
        config = LaunchConfig(
            executable="claude",
            helper_path="/opt/git",
            helper_env_var="GIT_HELPER",
            extra_env={"FOO": "bar"},
        )
        env = build_env(config)
        assert env["GIT_HELPER"] == "/opt/git"
        assert env["FOO"] == "bar"

    def test_missing_working_dir_is_ignored(self, tmp_path):
        config = LaunchConfig(executable="claude", working_dir=tmp_path / "missing")
        assert resolve_working_dir(config) is None

    def test_existing_working_dir(self, tmp_path):
        config = LaunchConfig(executable="claude", working_dir=tmp_path)
        assert resolve_working_dir(config) == str(tmp_path)


class TestWindowsCommand:
    """Shims go through cmd.exe with every argument escaped on its own."""

    @staticmethod
    def cmd_pass(line: str) -> str:
        """One round of cmd.exe caret processing outside quotes."""
        return re.sub(r"\^(.)", r"\1", line)

    @staticmethod
    def bare(line: str) -> str:
        """The characters cmd.exe would act on, with escaped pairs dropped."""
        return re.sub(r"\^.", "", line)

    @pytest.mark.parametrize("message", ["hi&calc.exe", "a|b", "%PATH%", "x>y", "(a) <b>"])
    def test_metacharacters_are_neutralised(self, config, message):
        args = build_args(config, LaunchMode.start(), message)
        line = windows.build_command_line(r"C:\npm\claude.cmd", args)

        first = self.bare(line)
        assert not set("&|%<>()") & set(first)
        # The shim re-parses its arguments when it expands %*.
        second = self.bare(self.cmd_pass(line))
        assert not set("&|%<>()") & set(second.replace('"', ""))

    def test_message_survives_both_passes(self, config):
        args = build_args(config, LaunchMode.start(), "hi&calc.exe | 100%")
        line = windows.build_command_line(r"C:\npm\claude.cmd", args)
        shim_line = self.cmd_pass(self.cmd_pass(line))
        assert shim_line.endswith('"hi&calc.exe | 100%"')
        assert shim_line.startswith(r'C:\npm\claude.cmd "--print"')

    def test_path_with_spaces_is_escaped(self):
        line = windows.build_command_line(r"C:\Program Files\nodejs\claude.cmd", ["x"])
        assert line.startswith(r"C:\Program^ Files\nodejs\claude.cmd ")

    def test_embedded_quotes_and_backslashes(self):
        assert windows.escape_argument('say "hi"') == '^^^"say^^^ \\^^^"hi\\^^^"^^^"'
        assert windows.escape_argument("dir\\") == '^^^"dir\\\\^^^"'

    def test_native_suffixes(self):
        assert windows.is_native(r"C:\tools\claude.exe")
        assert windows.is_native(r"C:\tools\CLAUDE.COM")
        assert not windows.is_native(r"C:\npm\claude.CMD")
        assert not windows.is_native("claude")

    @pytest.mark.anyio
    async def test_native_exe_runs_directly(self, monkeypatch):
        calls = []

        async def fake_exec(*args, **kwargs):
            calls.append(("exec", args, kwargs))

        async def fake_shell(line, **kwargs):
            calls.append(("shell", line, kwargs))

        monkeypatch.setattr(windows.shutil, "which", lambda name: r"C:\tools\claude.exe")
        monkeypatch.setattr(windows.asyncio, "create_subprocess_exec", fake_exec)
        monkeypatch.setattr(windows.asyncio, "create_subprocess_shell", fake_shell)
        await windows.WindowsLauncher().create_process("claude", ["--print", "a&b"], cwd="C:\\")

        [(kind, args, kwargs)] = calls
        assert kind == "exec"
        assert args == (r"C:\tools\claude.exe", "--print", "a&b")
        assert kwargs["cwd"] == "C:\\"
        assert "creationflags" in kwargs

    @pytest.mark.anyio
    async def test_cmd_shim_goes_through_shell_line(self, monkeypatch):
        calls = []

        async def fake_shell(line, **kwargs):
            calls.append((line, kwargs))

        monkeypatch.setattr(windows.shutil, "which", lambda name: r"C:\npm\claude.CMD")
        monkeypatch.setattr(windows.asyncio, "create_subprocess_shell", fake_shell)
        await windows.WindowsLauncher().create_process("claude", ["hi&calc.exe"])

        [(line, kwargs)] = calls
        assert line == windows.build_command_line(r"C:\npm\claude.CMD", ["hi&calc.exe"])
        assert "creationflags" in kwargs

    @pytest.mark.anyio
    async def test_taskkill_failure_is_logged_not_raised(self, monkeypatch):
        calls = []

        class FakeProc:
            returncode = 128

            async def communicate(self):
                return b"", b"ERROR: The process \"1234\" not found."

        async def fake_exec(*args, **kwargs):
            calls.append(args)
            return FakeProc()

        monkeypatch.setattr(windows.asyncio, "create_subprocess_exec", fake_exec)
        await windows.WindowsLauncher().terminate(1234)
        assert calls == [("taskkill", "/PID", "1234", "/T", "/F")]

    @pytest.mark.anyio
    async def test_missing_taskkill_raises_process_error(self, monkeypatch):
        async def fake_exec(*args, **kwargs):
            raise FileNotFoundError("taskkill")

        monkeypatch.setattr(windows.asyncio, "create_subprocess_exec", fake_exec)
        with pytest.raises(ProcessError):
            await windows.WindowsLauncher().terminate(1234)


@posix_only
class TestPosixSignals:
    """Signal sequencing with the OS calls stubbed out."""

    @pytest.fixture
    def signals(self, monkeypatch):
        sent = []
        monkeypatch.setattr(posix, "KILL_GRACE_SECONDS", 0)
        monkeypatch.setattr(posix.os, "getpgid", lambda pid: pid)
        monkeypatch.setattr(posix.os, "killpg", lambda pgid, sig: sent.append(("killpg", pgid, sig)))
        return sent

    def test_grace_period(self):
        assert launcher_base.KILL_GRACE_SECONDS == 0.5

    @pytest.mark.anyio
    async def test_term_then_kill_to_group(self, signals):
        await posix.PosixLauncher().terminate(777)
        assert signals == [
            ("killpg", 777, signal.SIGTERM),
            ("killpg", 777, signal.SIGKILL),
        ]

    @pytest.mark.anyio
    async def test_pid_not_leading_a_group_is_left_alone(self, signals, monkeypatch):
        monkeypatch.setattr(posix.os, "getpgid", lambda pid: 1)
        await posix.PosixLauncher().terminate(555)
        assert signals == []

    @pytest.mark.anyio
    async def test_vanished_pid_is_noop(self, signals, monkeypatch):
        def getpgid(pid):
            raise ProcessLookupError()

        monkeypatch.setattr(posix.os, "getpgid", getpgid)
        await posix.PosixLauncher().terminate(555)
        assert signals == []

    @pytest.mark.anyio
    async def test_gone_after_term_skips_kill(self, signals, monkeypatch):
        def killpg(pgid, sig):
            raise ProcessLookupError()

        monkeypatch.setattr(posix.os, "killpg", killpg)
        await posix.PosixLauncher().terminate(777)
        assert signals == []

    @pytest.mark.anyio
    async def test_permission_denied_raises(self, signals, monkeypatch):
        def killpg(pgid, sig):
            raise PermissionError("Operation not permitted")

        monkeypatch.setattr(posix.os, "killpg", killpg)
        with pytest.raises(ProcessError, match="Operation not permitted"):
            await posix.PosixLauncher().terminate(777)


@posix_only
class TestPosixLauncher:
    """Real subprocesses spawned from small Python scripts."""

    @pytest.mark.anyio
    async def test_spawn_passes_args_env_and_cwd(self, make_script, tmp_path):
        script = make_script(
            "import json, os, sys\n"
            "print(json.dumps({'argv': sys.argv[1:], 'cwd': os.getcwd(),"
            " 'helper': os.environ.get('CLAUDE_CODE_GIT_BIN_PATH')}))\n"
            "print('diagnostic', file=sys.stderr)\n"
        )
        workdir = tmp_path / "work"
        workdir.mkdir()
        config = LaunchConfig(
            executable=script,
            working_dir=workdir,
            permission_mode="plan",
            helper_path="/usr/bin/git",
        )
        handle = await posix.PosixLauncher().spawn(config, LaunchMode.resume("S1"), "hi")
        stdout = await handle.stdout.read()
        stderr = await handle.stderr.read()
        assert await handle.wait() == 0

        payload = json.loads(stdout)
        assert payload["argv"][-3:] == ["--resume", "S1", "hi"]
        assert "--permission-mode" in payload["argv"]
        assert Path(payload["cwd"]).resolve() == workdir.resolve()
        assert payload["helper"] == "/usr/bin/git"
        assert stderr.strip() == b"diagnostic"
        assert handle.pid > 0

    @pytest.mark.anyio
    async def test_spawn_missing_executable_raises(self, tmp_path):
        config = LaunchConfig(executable=str(tmp_path / "does-not-exist"))
        with pytest.raises(ProcessError, match="does-not-exist"):
            await posix.PosixLauncher().spawn(config, LaunchMode.start(), "hi")

    @pytest.mark.anyio
    async def test_terminate_exited_process_is_noop(self, make_script):
        config = LaunchConfig(executable=make_script("pass\n"))
        launcher = posix.PosixLauncher()
        handle = await launcher.spawn(config, LaunchMode.start(), "hi")
        await handle.wait()
        await launcher.terminate(handle.pid)
        await launcher.terminate(handle.pid)

    @pytest.mark.anyio
    @pytest.mark.skipif(not sys.platform.startswith("linux"), reason="reads /proc")
    async def test_terminate_kills_grandchildren(self, make_script):
        script = make_script(
            "import subprocess, sys, time\n"
            "child = subprocess.Popen([sys.executable, '-c', 'import time; time.sleep(60)'])\n"
            "print(child.pid, flush=True)\n"
            "time.sleep(60)\n"
        )
        launcher = posix.PosixLauncher()
        handle = await launcher.spawn(LaunchConfig(executable=script), LaunchMode.start(), "hi")
        grandchild = int((await handle.stdout.readline()).strip())

        await launcher.terminate(handle.pid)
        code = await asyncio.wait_for(handle.wait(), timeout=5)
        assert code != 0

        for _ in range(50):
            if not _is_alive(grandchild):
                break
            await asyncio.sleep(0.1)
        assert not _is_alive(grandchild)

    @pytest.mark.anyio
    async def test_terminate_leaves_process_outside_our_groups_alone(self):
        # Same process group as the test runner, like a recycled pid would be.
        proc = await asyncio.create_subprocess_exec(
            sys.executable, "-c", "import time; time.sleep(30)"
        )
        try:
            await posix.PosixLauncher().terminate(proc.pid)
            with pytest.raises(asyncio.TimeoutError):
                await asyncio.wait_for(proc.wait(), timeout=0.5)
        finally:
            proc.kill()
            await proc.wait()


def _is_alive(pid: int) -> bool:
    """True if ``pid`` exists and is not a zombie."""
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    try:
        stat = Path(f"/proc/{pid}/stat").read_text()
    except OSError:
        return False
    return stat.rsplit(")", 1)[1].split()[0] != "Z"


def test_get_launcher_matches_platform():
    launcher = get_launcher()
    expected = windows.WindowsLauncher if sys.platform == "win32" else posix.PosixLauncher
    assert isinstance(launcher, expected)
    assert get_launcher() is launcher


def test_subprocess_launcher_is_abstract():
    with pytest.raises(TypeError):
        launcher_base.SubprocessLauncher()
