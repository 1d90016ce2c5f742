"""Claude Code CLI agent wrapper."""

import asyncio
import json
import logging
import shutil
import time
from pathlib import Path

from ..utils.subprocess import SubprocessError, SubprocessManager, kill_process_group
from .base import AgentError, AgentOutcome, CodingAgent, TaskRequest

logger = logging.getLogger(__name__)


class ClaudeAgent(CodingAgent):
    """Runs tasks through the Claude Code CLI in print mode.

    The prompt is written to stdin. While a task runs, the child pid is kept
    in ``<run_dir>/<execution_id>.pid`` so that an abort issued from another
    process can still stop it.
    """

    def __init__(self, config: dict):
        """Initialize Claude agent.

        Args:
            config: Agent config with cli_path, permission_mode, run_dir, ...
        """
        super().__init__(config)
        self.cli_path = config.get("cli_path", "claude")
        self.permission_mode = config.get("permission_mode", "bypassPermissions")
        self.allowed_tools = config.get("allowed_tools", [])
        self.extra_args = config.get("extra_args", [])
        self.system_prompt = config.get("system_prompt")
        self.stream_output = config.get("stream_output", True)
        self.stream_log_interval_sec = config.get("stream_log_interval_sec", 1.5)
        self.run_dir = Path(config.get("run_dir", ".forge/run"))
        self._running: dict[str, asyncio.Task] = {}
        self._aborted: set[str] = set()

    async def is_available(self) -> bool:
        if shutil.which(self.cli_path) is None:
            return False
        try:
            result = await SubprocessManager(timeout_sec=15).run([self.cli_path, "--version"])
        except SubprocessError:
            return False
        return result["success"]

    def build_command(self) -> list[str]:
        command = [
            self.cli_path,
            "--permission-mode",
            self.permission_mode,
            "--print",
        ]
        if self.stream_output:
            command += ["--verbose", "--output-format", "stream-json"]
        else:
            command += ["--output-format", "json"]
        if self.allowed_tools:
            command += ["--allowedTools", ",".join(self.allowed_tools)]
        if self.system_prompt:
            command += ["--append-system-prompt", self.system_prompt]
        return command + list(self.extra_args)

    def pid_file(self, execution_id: str) -> Path:
        return self.run_dir / f"{execution_id}.pid"

    async def dispatch(self, request: TaskRequest) -> AgentOutcome:
        """Run one task and interpret the CLI's result payload."""
        execution_id = request.execution_id
        self._aborted.discard(execution_id)
        task = asyncio.create_task(self._run(request))
        self._running[execution_id] = task
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if execution_id in self._aborted or task.cancelled():
                if not task.done():
                    task.cancel()
                return AgentOutcome(success=False, aborted=True, error="Aborted")
            task.cancel()
            raise
        finally:
            self._running.pop(execution_id, None)
            self.pid_file(execution_id).unlink(missing_ok=True)

    async def _run(self, request: TaskRequest) -> AgentOutcome:
        state = {"result": None, "is_error": False, "buffer": "", "last_flush": time.time()}

        def handle_line(line: str) -> None:
            try:
                payload = json.loads(line)
            except ValueError:
                return
            if not isinstance(payload, dict):
                return

            if payload.get("type") == "result":
                state["result"] = payload.get("result")
                state["is_error"] = bool(payload.get("is_error"))
            elif payload.get("type") == "assistant":
                for block in payload.get("message", {}).get("content", []) or []:
                    if isinstance(block, dict) and block.get("type") == "text":
                        state["buffer"] += block.get("text", "")

            now = time.time()
            if state["buffer"] and (
                "\n" in state["buffer"]
                or now - state["last_flush"] >= self.stream_log_interval_sec
            ):
                logger.info("claude> %s", state["buffer"].rstrip())
                state["buffer"] = ""
                state["last_flush"] = now

        def record_pid(pid: int) -> None:
            self.run_dir.mkdir(parents=True, exist_ok=True)
            self.pid_file(request.execution_id).write_text(str(pid))

        manager = SubprocessManager(timeout_sec=request.timeout_sec)
        try:
            result = await manager.run(
                self.build_command(),
                cwd=request.work_dir,
                stdin=request.prompt,
                on_start=record_pid,
                on_output_line=handle_line,
            )
        except SubprocessError as e:
            raise AgentError(str(e))

        if state["buffer"]:
            logger.info("claude> %s", state["buffer"].rstrip())

        output = state["result"] if isinstance(state["result"], str) else result["output"]
        if result["timed_out"]:
            return AgentOutcome(
                success=False,
                output=result["output"],
                timed_out=True,
                error=f"Claude timed out after {request.timeout_sec}s",
            )
        if not result["success"]:
            return AgentOutcome(
                success=False,
                output=output,
                exit_code=result["exit_code"],
                error=f"Claude exited with code {result['exit_code']}",
            )
        if state["is_error"]:
            return AgentOutcome(
                success=False,
                output=output,
                exit_code=result["exit_code"],
                error=(output or "Claude reported an error").strip()[:500],
            )
        return AgentOutcome(success=True, output=output, exit_code=result["exit_code"])

    async def abort(self, execution_id: str) -> bool:
        """Stop a running task for the execution.

        Cancels the in-process dispatch when there is one, otherwise signals
        the process group recorded in the pid file.
        """
        task = self._running.get(execution_id)
        if task is not None and not task.done():
            self._aborted.add(execution_id)
            task.cancel()
            logger.info(f"Cancelled Claude task for execution {execution_id}")
            return True

        pid_file = self.pid_file(execution_id)
        if not pid_file.exists():
            return False
        try:
            pid = int(pid_file.read_text().strip())
        except ValueError:
            pid_file.unlink(missing_ok=True)
            return False

        delivered = kill_process_group(pid)
        pid_file.unlink(missing_ok=True)
        if delivered:
            logger.info(f"Terminated Claude process group {pid} for execution {execution_id}")
        return delivered
