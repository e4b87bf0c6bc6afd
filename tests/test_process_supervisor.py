"""
Tests for the Process Supervisor.

Runs real child processes (sh); no shell strings are ever passed.
"""
import asyncio
import os
import sys
import time
from pathlib import Path

import pytest

from buildfarm.core import process_supervisor
from buildfarm.core.errors import NonZeroExitError, ToolError, ToolTimeoutError
from buildfarm.core.process_supervisor import KILL_GRACE_S, _OutputBuffer, build_env

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="POSIX process groups")


def _is_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    # Unreaped zombies count as dead
    try:
        stat = Path(f"/proc/{pid}/stat").read_text()
    except OSError:
        return True
    return stat.rsplit(")", 1)[1].split()[0] != "Z"


async def _wait_dead(pid: int, timeout: float = 3.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if not _is_alive(pid):
            return True
        await asyncio.sleep(0.05)
    return not _is_alive(pid)


class TestBuildEnv:

    def test_build_tool_overrides(self):
        env = build_env(1024)
        assert env["CI"] == "false"
        assert env["NODE_ENV"] == "development"
        assert env["NODE_OPTIONS"] == "--max-old-space-size=1024"

    def test_inherits_path(self, monkeypatch):
        monkeypatch.setenv("PATH", "/usr/bin:/bin")
        assert build_env()["PATH"] == "/usr/bin:/bin"

    def test_extra_overrides(self):
        assert build_env(overrides={"NODE_ENV": "production"})["NODE_ENV"] == "production"


class TestOutputBuffer:

    def test_keeps_tail(self):
        buf = _OutputBuffer("stdout", None, max_chars=10)
        buf.feed("0123456789abcdef")
        assert buf.text.endswith("6789abcdef")
        assert "6 chars truncated" in buf.text

    def test_carriage_return_progress_stays_bounded(self):
        buf = _OutputBuffer("stdout", None, max_chars=1000)
        for _ in range(400):
            buf.feed("#" * 8190 + "\r")
        assert len(buf._partial) <= 1000
        assert buf.text.endswith("#\r")

    def test_unterminated_line_stays_bounded(self):
        buf = _OutputBuffer("stdout", None, max_chars=1000)
        for _ in range(400):
            buf.feed("x" * 8192)
        assert len(buf._partial) <= 1000
        assert buf.truncated == 400 * 8192 - 1000


class TestRun:

    @pytest.mark.asyncio
    async def test_success_captures_stdout(self, tmp_path):
        result = await process_supervisor.run(["sh", "-c", "echo hello"], tmp_path, timeout=10)
        assert result.exit_code == 0
        assert "hello" in result.stdout

    @pytest.mark.asyncio
    async def test_runs_in_cwd(self, tmp_path):
        result = await process_supervisor.run(["pwd"], tmp_path, timeout=10)
        assert Path(result.stdout.strip()).resolve() == tmp_path.resolve()

    @pytest.mark.asyncio
    async def test_nonzero_exit(self, tmp_path):
        with pytest.raises(NonZeroExitError) as exc_info:
            await process_supervisor.run(["sh", "-c", "echo boom >&2; exit 3"], tmp_path, timeout=10)
        assert exc_info.value.exit_code == 3
        assert "boom" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_missing_executable(self, tmp_path):
        with pytest.raises(ToolError):
            await process_supervisor.run(["definitely-not-a-real-binary-xyz"], tmp_path, timeout=10)

    @pytest.mark.asyncio
    async def test_string_command_rejected(self, tmp_path):
        with pytest.raises(ToolError):
            await process_supervisor.run("echo hi", tmp_path, timeout=10)

    @pytest.mark.asyncio
    async def test_empty_command_rejected(self, tmp_path):
        with pytest.raises(ToolError):
            await process_supervisor.run([], tmp_path, timeout=10)

    @pytest.mark.asyncio
    async def test_timeout_kills_process_tree(self, tmp_path):
        script = "sleep 30 & echo $! > child.pid; sleep 30"
        start = time.monotonic()
        with pytest.raises(ToolTimeoutError):
            await process_supervisor.run(["sh", "-c", script], tmp_path, timeout=1)
        elapsed = time.monotonic() - start

        assert elapsed < 1 + KILL_GRACE_S + 2
        child_pid = int((tmp_path / "child.pid").read_text().strip())
        assert await _wait_dead(child_pid)

    @pytest.mark.asyncio
    async def test_timeout_kills_process_ignoring_sigterm(self, tmp_path):
        start = time.monotonic()
        with pytest.raises(ToolTimeoutError):
            await process_supervisor.run(["sh", "-c", "trap \"\" TERM; sleep 30"], tmp_path, timeout=1)
        # SIGKILL follows the grace period
        assert KILL_GRACE_S <= 1.0
        assert time.monotonic() - start < 1 + KILL_GRACE_S + 1.5

    @pytest.mark.asyncio
    async def test_clean_exit_reaps_background_children(self, tmp_path):
        script = "sleep 30 > /dev/null 2>&1 & echo $! > child.pid"
        await process_supervisor.run(["sh", "-c", script], tmp_path, timeout=10)
        child_pid = int((tmp_path / "child.pid").read_text().strip())
        assert await _wait_dead(child_pid)

    @pytest.mark.asyncio
    async def test_cancellation_kills_process(self, tmp_path):
        task = asyncio.create_task(
            process_supervisor.run(["sh", "-c", "echo $$ > sh.pid; exec sleep 30"], tmp_path, timeout=60)
        )
        pid_file = tmp_path / "sh.pid"
        for _ in range(100):
            if pid_file.exists() and pid_file.read_text().strip():
                break
            await asyncio.sleep(0.05)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert await _wait_dead(int(pid_file.read_text().strip()))
