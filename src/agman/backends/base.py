from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from pathlib import Path

logger = logging.getLogger(__name__)

STREAM_LIMIT = 1024 * 1024


class ProcessError(RuntimeError):
    """Raised when an agent process cannot be driven to completion."""

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        exit_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.backend = backend
        self.exit_code = exit_code


class ProcessSpawnError(ProcessError):
    """Raised when the agent binary cannot be started."""


class TranscriptWriteError(ProcessError):
    """Raised when agent output cannot be appended to the task transcript."""


class AgentBackend(ABC):
    """Spawns one agent process per call and streams its stdout line by line."""

    name: str = "agent"

    def __init__(self) -> None:
        self.last_exit_code: int | None = None

    @abstractmethod
    def execute(self, prompt: str, working_directory: Path) -> AsyncIterator[str]:
        """Run the agent with ``prompt`` on stdin and yield each stdout line."""


async def read_lines(stream: asyncio.StreamReader) -> AsyncIterator[bytes]:
    """Yield newline-terminated chunks of ``stream`` regardless of the reader's limit.

    ``StreamReader.readline`` gives up on lines longer than its buffer limit; here an
    overlong line is accumulated piecewise and yielded whole.
    """
    pending = bytearray()
    while True:
        try:
            chunk = await stream.readuntil(b"\n")
        except asyncio.LimitOverrunError as exc:
            pending += await stream.readexactly(exc.consumed)
            continue
        except asyncio.IncompleteReadError as exc:
            pending += exc.partial
            if pending:
                yield bytes(pending)
            return
        pending += chunk
        yield bytes(pending)
        pending.clear()


class SubprocessBackend(AgentBackend):
    def __init__(
        self,
        binary: str,
        *,
        model: str | None = None,
        timeout_seconds: float | None = None,
    ) -> None:
        super().__init__()
        self.binary = binary
        self.model = model or None
        self.timeout_seconds = timeout_seconds or None

    @abstractmethod
    def build_command(self) -> list[str]:
        """Return the argv used to launch the agent."""

    async def _kill_after_timeout(self, process: asyncio.subprocess.Process) -> None:
        assert self.timeout_seconds is not None
        await asyncio.sleep(self.timeout_seconds)
        if process.returncode is None:
            logger.warning(
                "%s agent exceeded %.0fs timeout, killing pid %s",
                self.name,
                self.timeout_seconds,
                process.pid,
            )
            process.kill()

    async def execute(self, prompt: str, working_directory: Path) -> AsyncIterator[str]:
        self.last_exit_code = None
        command = self.build_command()
        logger.info("spawning %s agent: %s (cwd=%s)", self.name, command[0], working_directory)
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(working_directory),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_LIMIT,
            )
        except (FileNotFoundError, PermissionError, NotADirectoryError) as exc:
            raise ProcessSpawnError(
                f"Failed to start {self.name} agent '{self.binary}': {exc}",
                backend=self.name,
            ) from exc

        if process.stdout is None or process.stdin is None or process.stderr is None:
            raise ProcessSpawnError(
                f"{self.name} agent did not expose stdio pipes.", backend=self.name
            )
        # stderr must be drained concurrently with stdout.
        stderr_reader = asyncio.create_task(process.stderr.read())
        watchdog: asyncio.Task[None] | None = None
        if self.timeout_seconds:
            watchdog = asyncio.create_task(self._kill_after_timeout(process))
        try:
            try:
                process.stdin.write(prompt.encode("utf-8"))
                await process.stdin.drain()
            except (BrokenPipeError, ConnectionResetError):
                logger.warning("%s agent closed stdin before the prompt was written", self.name)
            finally:
                process.stdin.close()

            async for raw_line in read_lines(process.stdout):
                yield raw_line.decode("utf-8", errors="replace").rstrip("\r\n")
            return_code = await process.wait()
        except BaseException:
            stderr_reader.cancel()
            raise
        finally:
            if watchdog is not None:
                watchdog.cancel()
            if process.returncode is None:
                process.kill()
                await process.wait()

        stderr_output = (await stderr_reader).decode("utf-8", errors="replace").strip()
        self.last_exit_code = return_code
        if return_code != 0:
            logger.warning(
                "%s agent exited with code %s: %s", self.name, return_code, stderr_output[:400]
            )
        elif stderr_output:
            logger.debug("%s agent stderr: %s", self.name, stderr_output[:400])
