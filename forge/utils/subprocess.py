"""Async subprocess execution with timeouts and process-group cleanup."""

import asyncio
import logging
import os
import shlex
import signal
from collections.abc import Callable
from pathlib import Path

logger = logging.getLogger(__name__)


class SubprocessError(Exception):
    """Subprocess could not be started or crashed unexpectedly."""

    def __init__(self, message: str, exit_code: int | None = None, timed_out: bool = False):
        super().__init__(message)
        self.exit_code = exit_code
        self.timed_out = timed_out


async def terminate_process_group(
    process: asyncio.subprocess.Process,
    grace_sec: float = 2.0,
) -> None:
    """Terminate a subprocess and its children (best-effort).

    Children started by the agent share its session, so on POSIX the whole
    process group is signalled: SIGTERM first, SIGKILL after ``grace_sec``.
    """
    if process.returncode is not None:
        return

    for sig in (signal.SIGTERM, signal.SIGKILL):
        try:
            if os.name != "nt":
                os.killpg(process.pid, sig)
            elif sig == signal.SIGTERM:
                process.terminate()
            else:
                process.kill()
        except ProcessLookupError:
            return
        except OSError as e:
            logger.debug(f"Signal {sig} to process group {process.pid} failed: {e}")
            try:
                process.kill()
            except ProcessLookupError:
                return

        try:
            await asyncio.wait_for(process.wait(), timeout=grace_sec)
            return
        except asyncio.TimeoutError:
            continue


def kill_process_group(pid: int, sig: int = signal.SIGTERM) -> bool:
    """Signal a process group by pid, for processes started elsewhere.

    Returns:
        True if the signal was delivered
    """
    try:
        if os.name != "nt":
            os.killpg(pid, sig)
        else:
            os.kill(pid, sig)
        return True
    except ProcessLookupError:
        return False


def process_exists(pid: int) -> bool:
    """Check whether a process with this pid is alive."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but owned by another user
        return True
    return True


class SubprocessManager:
    """Run a command to completion under a hard timeout."""

    def __init__(self, timeout_sec: float, log_path: Path | None = None):
        """Initialize subprocess manager.

        Args:
            timeout_sec: Hard timeout for the process
            log_path: Optional file receiving the combined output
        """
        self.timeout_sec = timeout_sec
        self.log_path = log_path

    async def run(
        self,
        command: list[str],
        cwd: Path | None = None,
        env: dict[str, str] | None = None,
        stdin: str | None = None,
        on_start: Callable[[int], None] | None = None,
        on_output_line: Callable[[str], None] | None = None,
    ) -> dict:
        """Run command and collect its output.

        Args:
            command: Command and arguments
            cwd: Working directory
            env: Environment variables
            stdin: Optional text written to stdin before it is closed
            on_start: Called with the child pid once it is running
            on_output_line: Called for each output line

        Returns:
            Result dict with keys:
                - success: bool
                - output: str
                - exit_code: int | None
                - timed_out: bool

        Raises:
            SubprocessError: If the command or working directory is missing
        """
        logger.info("Running command: %s", format_command(command))

        process: asyncio.subprocess.Process | None = None
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=cwd,
                env=env,
                start_new_session=(os.name != "nt"),
                stdin=asyncio.subprocess.PIPE if stdin is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except FileNotFoundError:
            if cwd is not None and not Path(cwd).exists():
                raise SubprocessError(f"Working directory not found: {cwd}")
            raise SubprocessError(f"Command not found: {command[0]}")

        if on_start:
            on_start(process.pid)

        output_lines: list[str] = []
        try:
            if stdin is not None and process.stdin:
                try:
                    process.stdin.write(stdin.encode("utf-8"))
                    await process.stdin.drain()
                except (BrokenPipeError, ConnectionResetError):
                    logger.debug(f"Process {process.pid} exited before reading stdin")
                process.stdin.close()

            reader = asyncio.create_task(self._read_output(process, output_lines, on_output_line))
            try:
                await asyncio.wait_for(process.wait(), timeout=self.timeout_sec)
                timed_out = False
            except asyncio.TimeoutError:
                logger.warning(f"Process {process.pid} timed out after {self.timeout_sec}s")
                await terminate_process_group(process)
                timed_out = True

            try:
                await asyncio.wait_for(reader, timeout=2.0)
            except asyncio.TimeoutError:
                reader.cancel()
        except asyncio.CancelledError:
            await terminate_process_group(process)
            raise

        exit_code = None if timed_out else process.returncode
        logger.debug(f"Command finished: exit_code={exit_code}, timed_out={timed_out}")
        return {
            "success": exit_code == 0,
            "output": "".join(output_lines),
            "exit_code": exit_code,
            "timed_out": timed_out,
        }

    async def _read_output(
        self,
        process: asyncio.subprocess.Process,
        output_lines: list[str],
        on_output_line: Callable[[str], None] | None,
    ) -> None:
        log_file = None
        if self.log_path:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
            log_file = open(self.log_path, "a")
        try:
            while process.stdout:
                line = await process.stdout.readline()
                if not line:
                    break
                text = line.decode("utf-8", errors="replace")
                output_lines.append(text)
                if on_output_line:
                    on_output_line(text)
                if log_file:
                    log_file.write(text)
                    log_file.flush()
        finally:
            if log_file:
                log_file.close()


def format_command(command: list[str], max_args: int = 12, max_arg_len: int = 200) -> str:
    """Format a command for logs without dumping huge arguments."""
    parts: list[str] = []
    for i, arg in enumerate(command):
        if i >= max_args:
            parts.append("...")
            break
        if len(arg) > max_arg_len:
            arg = arg[:max_arg_len] + "..."
        parts.append(shlex.quote(arg))
    return " ".join(parts)
