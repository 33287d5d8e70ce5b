"""
Command Session Executor

Runs an agent CLI (for example ``claude --print``) as a subprocess for each
session. The request is written to the command's stdin as JSON; the last
line of stdout that parses as a JSON object is taken as the SessionResult.

Exit code handling:
- 0: parse the result
- 75 (EX_TEMPFAIL) or a rate-limit marker on stderr: transient ExecutorError
- anything else: structural ExecutorError

``request_stop`` sends SIGINT to every running command.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import shutil
import signal
import sys
from pathlib import Path

from ..core.errors import ExecutorError
from .base import SessionExecutor, SessionRequest, SessionResult

logger = logging.getLogger(__name__)

EX_TEMPFAIL = 75
RATE_LIMIT_MARKERS = ("rate limit", "rate_limit", "429", "overloaded", "too many requests")


class CommandSessionExecutor(SessionExecutor):
    """
    Session executor backed by an external command.

    Example:
        executor = CommandSessionExecutor(["claude", "--print", "--output-format", "json"])
        result = await executor.execute(request)
    """

    def __init__(
        self,
        command: list[str],
        env: dict[str, str] | None = None,
        output_limit: int = 10 * 1024 * 1024,
    ):
        """
        Initialize the command executor.

        Args:
            command: Command and arguments to run per session
            env: Extra environment variables for the subprocess
            output_limit: Stream buffer limit for large JSON lines
        """
        if not command:
            raise ValueError("CommandSessionExecutor needs a command")
        self.command = list(command)
        self.env = env
        self.output_limit = output_limit
        self._processes: set[asyncio.subprocess.Process] = set()

    def is_available(self) -> bool:
        return shutil.which(self.command[0]) is not None

    def get_name(self) -> str:
        return Path(self.command[0]).name

    async def execute(self, request: SessionRequest) -> SessionResult:
        cmd = list(self.command)
        if request.options.model:
            cmd.extend(["--model", request.options.model])

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=str(request.working_context),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self._build_env(),
                limit=self.output_limit,
            )
        except OSError as e:
            raise ExecutorError(f"Could not start {cmd[0]}: {e}", item_id=request.item_id) from e

        self._processes.add(process)
        try:
            stdin_data = json.dumps(request.to_dict()).encode("utf-8")
            stdout, stderr = await process.communicate(stdin_data)
        except asyncio.CancelledError:
            # timeout or cancellation from the batch executor
            await self._terminate(process)
            raise
        finally:
            self._processes.discard(process)

        stderr_text = stderr.decode("utf-8", errors="replace").strip()
        if process.returncode != 0:
            transient = process.returncode == EX_TEMPFAIL or any(
                marker in stderr_text.lower() for marker in RATE_LIMIT_MARKERS
            )
            message = f"{cmd[0]} exited with code {process.returncode}"
            if stderr_text:
                message += f"\nStderr: {stderr_text[-2000:]}"
            raise ExecutorError(
                message,
                transient=transient,
                item_id=request.item_id,
                details={"exit_code": process.returncode},
            )

        return self._parse_result(stdout.decode("utf-8", errors="replace"), request.item_id)

    def _parse_result(self, output: str, item_id: str) -> SessionResult:
        for line in reversed(output.strip().splitlines()):
            line = line.strip()
            if not line.startswith("{"):
                continue
            try:
                data = json.loads(line)
            except json.JSONDecodeError:
                continue
            # Claude Code's json output wraps the answer in a "result" string
            if "status" not in data and isinstance(data.get("result"), str):
                try:
                    data = json.loads(data["result"])
                except json.JSONDecodeError:
                    continue
            return SessionResult.from_dict(data, item_id=item_id)
        raise ExecutorError.malformed("no JSON result on stdout", item_id)

    def _build_env(self) -> dict[str, str] | None:
        if not self.env:
            return None
        merged = dict(os.environ)
        merged.update(self.env)
        return merged

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        process.terminate()
        try:
            await asyncio.wait_for(process.wait(), timeout=5.0)
        except asyncio.TimeoutError:
            process.kill()

    def request_stop(self) -> None:
        """
        Interrupt running session commands.

        Agents receive SIGINT and may finish their current step and report;
        a session that outlives its timeout is still terminated by ``execute``.
        Windows has no SIGINT for child processes, so they are terminated.
        """
        running = [p for p in self._processes if p.returncode is None]
        for process in running:
            try:
                if sys.platform == "win32":
                    process.terminate()
                else:
                    process.send_signal(signal.SIGINT)
            except ProcessLookupError:
                continue
        logger.info("Stop requested; interrupted %d session command(s)", len(running))
