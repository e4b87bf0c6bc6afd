"""
Process Supervisor - deadline-bound execution of external build tools.

Security / resource rules:
- No shell anywhere, commands are argument lists
- Each child leads its own process group so the whole tree can be killed
- Output is captured incrementally and bounded
- Timeouts and task cancellation both kill the process group
"""
import asyncio
import logging
import os
import re
import shlex
import signal
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

from buildfarm.core.errors import NonZeroExitError, ToolError, ToolTimeoutError

logger = logging.getLogger(__name__)

# Seconds between SIGTERM and SIGKILL
KILL_GRACE_S = 1.0

# Per stream; the tail is kept when exceeded
MAX_OUTPUT_CHARS = 256 * 1024

# Output tail included in NonZeroExitError messages
ERROR_OUTPUT_CHARS = 4000

READ_CHUNK_BYTES = 8192

# Progress bars redraw with a bare \r
LINE_BREAK = re.compile(r"\r\n|\r|\n")


@dataclass
class ProcessResult:
    """Result of a completed command."""
    command: list[str]
    exit_code: int
    stdout: str
    stderr: str
    duration_ms: int


def build_env(
    node_max_old_space_mb: int = 2048,
    overrides: Optional[dict[str, str]] = None,
) -> dict[str, str]:
    """Copy of the worker environment plus build-tool overrides."""
    env = dict(os.environ)
    # Warnings must not fail CRA-style builds; devDependencies must install
    env["CI"] = "false"
    env["NODE_ENV"] = "development"
    env["NODE_OPTIONS"] = f"--max-old-space-size={node_max_old_space_mb}"
    if overrides:
        env.update(overrides)
    return env


class _OutputBuffer:
    """Keeps the last max_chars characters of a stream and logs complete lines."""

    def __init__(self, name: str, job_id: Optional[str], max_chars: int):
        self.name = name
        self.job_id = job_id
        self.max_chars = max_chars
        self.truncated = 0
        self._text = ""
        self._partial = ""

    def feed(self, data: str) -> None:
        self._text += data
        if len(self._text) > self.max_chars:
            overflow = len(self._text) - self.max_chars
            self.truncated += overflow
            self._text = self._text[overflow:]

        lines = LINE_BREAK.split(self._partial + data)
        self._partial = lines.pop()
        if len(self._partial) > self.max_chars:
            lines.append(self._partial[:self.max_chars])
            self._partial = ""
        for line in lines:
            if line.strip():
                logger.debug(line, extra={"job_id": self.job_id, "stream": self.name})

    def flush(self) -> None:
        if self._partial.strip():
            logger.debug(self._partial, extra={"job_id": self.job_id, "stream": self.name})
        self._partial = ""

    @property
    def text(self) -> str:
        if self.truncated:
            return f"... ({self.truncated} chars truncated)\n{self._text}"
        return self._text


class ProcessHandle:
    """A running command. Cancellation or kill() terminates its whole tree."""

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        command: list[str],
        job_id: Optional[str] = None,
        max_output_chars: int = MAX_OUTPUT_CHARS,
    ):
        self.process = process
        self.command = command
        self.job_id = job_id
        self.started = time.monotonic()
        self.stdout = _OutputBuffer("stdout", job_id, max_output_chars)
        self.stderr = _OutputBuffer("stderr", job_id, max_output_chars)

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def command_line(self) -> str:
        return shlex.join(self.command)

    async def _pump(self, stream: Optional[asyncio.StreamReader], sink: _OutputBuffer) -> None:
        if stream is None:
            return
        while True:
            chunk = await stream.read(READ_CHUNK_BYTES)
            if not chunk:
                break
            sink.feed(chunk.decode("utf-8", errors="replace"))
        sink.flush()

    async def _communicate(self) -> int:
        # Pipes stay open while any descendant holds them, so a lingering
        # grandchild keeps this pending until the deadline kills the group.
        await asyncio.gather(
            self._pump(self.process.stdout, self.stdout),
            self._pump(self.process.stderr, self.stderr),
        )
        return await self.process.wait()

    def _signal_group(self, sig: int) -> None:
        try:
            os.killpg(self.process.pid, sig)
        except (ProcessLookupError, PermissionError):
            pass

    async def kill(self, grace: float = KILL_GRACE_S) -> None:
        """Terminate the process group: SIGTERM, grace period, then SIGKILL."""
        self._signal_group(signal.SIGTERM)
        if self.process.returncode is None:
            try:
                await asyncio.wait_for(self.process.wait(), timeout=grace)
            except asyncio.TimeoutError:
                pass
        self._signal_group(signal.SIGKILL)
        if self.process.returncode is None:
            await self.process.wait()
        logger.warning(f"process_killed job_id={self.job_id} pid={self.process.pid}")

    async def wait(self, timeout: float) -> ProcessResult:
        """
        Wait for exit within timeout seconds.

        Raises:
            ToolTimeoutError: Deadline reached (tree already killed)
            NonZeroExitError: Command exited with a nonzero code
        """
        try:
            exit_code = await asyncio.wait_for(self._communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"command_timeout job_id={self.job_id} cmd={self.command[0]} timeout={timeout}")
            await self.kill()
            raise ToolTimeoutError(self.command_line, timeout)
        except asyncio.CancelledError:
            await self.kill()
            raise

        duration_ms = int((time.monotonic() - self.started) * 1000)
        result = ProcessResult(
            command=self.command,
            exit_code=exit_code,
            stdout=self.stdout.text,
            stderr=self.stderr.text,
            duration_ms=duration_ms,
        )

        # A clean exit may still leave daemonized descendants behind
        self._signal_group(signal.SIGKILL)

        logger.info(
            f"command_done job_id={self.job_id} cmd={self.command[0]} "
            f"exit_code={exit_code} duration_ms={duration_ms}"
        )
        if exit_code != 0:
            combined = "\n".join(part for part in (result.stderr, result.stdout) if part)
            raise NonZeroExitError(self.command_line, exit_code, combined[-ERROR_OUTPUT_CHARS:])
        return result


async def start(
    command: Sequence[str],
    cwd: Path,
    env: Optional[dict[str, str]] = None,
    job_id: Optional[str] = None,
) -> ProcessHandle:
    """Spawn a command in its own process group and return its handle."""
    if isinstance(command, str):
        raise ToolError("Command must be a list, not a string")
    command = list(command)
    if not command:
        raise ToolError("Command cannot be empty")

    logger.info(f"command_start job_id={job_id} cmd={shlex.join(command)} cwd={cwd}")
    try:
        process = await asyncio.create_subprocess_exec(
            *command,
            cwd=str(cwd),
            env=env if env is not None else build_env(),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
        )
    except FileNotFoundError:
        raise ToolError(f"Command not found: {command[0]}")
    except PermissionError:
        raise ToolError(f"Command not executable: {command[0]}")

    return ProcessHandle(process, command, job_id=job_id)


async def run(
    command: Sequence[str],
    cwd: Path,
    timeout: float,
    env: Optional[dict[str, str]] = None,
    job_id: Optional[str] = None,
) -> ProcessResult:
    """
    Run a command to completion under a deadline.

    Returns:
        ProcessResult on exit code 0

    Raises:
        ToolTimeoutError, NonZeroExitError, ToolError
    """
    handle = await start(command, cwd, env=env, job_id=job_id)
    return await handle.wait(timeout)
