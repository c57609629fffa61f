from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from specloop import processes
from specloop.agents.base import AgentCommand, AgentProcessError
from specloop.markers import MarkerScan, scan_line

logger = logging.getLogger(__name__)

STREAM_LIMIT_BYTES = 8 * 1024 * 1024

LineHook = Callable[[str], None]
SpawnHook = Callable[[int], None]


@dataclass(slots=True)
class AgentRunResult:
    exit_code: int | None
    markers: MarkerScan = field(default_factory=MarkerScan)
    timed_out: bool = False
    pid: int | None = None
    line_count: int = 0

    @property
    def done(self) -> bool:
        return self.markers.done

    @property
    def blocked_reason(self) -> str | None:
        return self.markers.blocked_reason


class AgentRunner:
    """Launches one agent process, feeds it the prompt and watches its output."""

    def __init__(
        self,
        working_directory: Path,
        *,
        timeout_seconds: float | None = None,
        grace_period_seconds: float = 5.0,
        stream_limit: int = STREAM_LIMIT_BYTES,
    ) -> None:
        self.working_directory = working_directory
        self.timeout_seconds = timeout_seconds
        self.grace_period_seconds = grace_period_seconds
        self.stream_limit = stream_limit

    async def _spawn(self, command: AgentCommand) -> asyncio.subprocess.Process:
        try:
            return await asyncio.create_subprocess_exec(
                *command.argv,
                cwd=str(self.working_directory),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                start_new_session=True,
                limit=self.stream_limit,
            )
        except FileNotFoundError as exc:
            raise AgentProcessError(
                f"Agent binary not found: {command.program}", retriable=False
            ) from exc
        except PermissionError as exc:
            raise AgentProcessError(
                f"Agent binary is not executable: {command.program}", retriable=False
            ) from exc

    @staticmethod
    async def _feed_prompt(process: asyncio.subprocess.Process, prompt: str) -> None:
        if process.stdin is None:
            return
        try:
            process.stdin.write(prompt.encode("utf-8"))
            await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            logger.debug("Agent closed stdin before the prompt was fully written")
        finally:
            process.stdin.close()

    @staticmethod
    async def _consume_output(
        process: asyncio.subprocess.Process,
        result: AgentRunResult,
        on_line: LineHook | None,
    ) -> None:
        if process.stdout is None:
            raise AgentProcessError("Agent process did not expose stdout.", retriable=False)
        while True:
            try:
                raw_line = await process.stdout.readline()
            except ValueError:
                logger.warning("Discarded an agent output line above the stream limit")
                continue
            if not raw_line:
                break
            line = raw_line.decode("utf-8", errors="replace").rstrip("\r\n")
            result.line_count += 1
            result.markers.merge(scan_line(line))
            if on_line:
                on_line(line)

    async def shutdown(self, process: asyncio.subprocess.Process) -> None:
        """SIGTERM the process group, then SIGKILL once the grace period lapses."""
        if process.returncode is not None:
            return
        if not processes.terminate(process.pid):
            await process.wait()
            return
        try:
            await asyncio.wait_for(process.wait(), timeout=self.grace_period_seconds)
        except TimeoutError:
            logger.warning(
                "Agent process %s ignored SIGTERM for %.1fs; sending SIGKILL",
                process.pid,
                self.grace_period_seconds,
            )
            processes.kill(process.pid)
            await process.wait()

    async def run(
        self,
        command: AgentCommand,
        prompt: str | None = None,
        *,
        on_spawn: SpawnHook | None = None,
        on_line: LineHook | None = None,
    ) -> AgentRunResult:
        if prompt is None:
            if command.prompt_file is None:
                raise AgentProcessError("No prompt supplied for agent run.", retriable=False)
            prompt = command.prompt_file.read_text(encoding="utf-8")

        process = await self._spawn(command)
        result = AgentRunResult(exit_code=None, pid=process.pid)
        logger.debug("Spawned agent %s (pid %s)", command.argv, process.pid)
        if on_spawn:
            on_spawn(process.pid)

        async def _drive() -> None:
            await asyncio.gather(
                self._feed_prompt(process, prompt),
                self._consume_output(process, result, on_line),
            )
            await process.wait()

        timeout = self.timeout_seconds if self.timeout_seconds and self.timeout_seconds > 0 else None
        try:
            await asyncio.wait_for(_drive(), timeout=timeout)
        except TimeoutError:
            logger.warning("Agent process %s exceeded %.0fs; terminating", process.pid, timeout)
            result.timed_out = True
            await self.shutdown(process)
        except asyncio.CancelledError:
            await self.shutdown(process)
            raise

        result.exit_code = process.returncode
        return result
