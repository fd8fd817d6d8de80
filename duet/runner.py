"""CLI runner — turns one external process into an ordered stream of Chunks.

Each run spawns ``<command> <prompt>`` through the shell, reads stdout and
stderr concurrently, and hands every fragment to a single consumer through
one FIFO queue. A per-run timer enforces the deadline with two-step
escalation: SIGTERM first, SIGKILL after a fixed grace period.

How a run ended is reported twice: as a final ``error`` chunk for people
watching the stream, and as a ``RunFailure`` raised once the stream is
drained, for code that needs to tell the cases apart.
"""

from __future__ import annotations

import asyncio
import codecs
import enum
import logging
import os
import shlex
import signal
from collections.abc import AsyncGenerator
from dataclasses import dataclass
from typing import TYPE_CHECKING

from duet.errors import ExitFailure, RunFailure, SpawnFailure, TimeoutFailure
from duet.schemas import AgentType, Chunk, ChunkType, now_ms

if TYPE_CHECKING:
    from duet.config import CliConfig

logger = logging.getLogger(__name__)

GRACE_PERIOD_SECONDS = 5.0
READ_SIZE = 64 * 1024

_EOF = object()


class RunState(enum.Enum):
    RUNNING = "running"
    TIMING_OUT = "timing_out"      # SIGTERM sent, grace period running
    TERMINATING = "terminating"    # SIGKILL sent
    DONE = "done"


@dataclass(frozen=True)
class RunRequest:
    """Everything needed to start one CLI process."""

    agent: AgentType
    command: str
    prompt: str
    cwd: str
    timeout: float

    def shell_command(self) -> str:
        # The prompt is a single positional argument; the command itself may
        # contain shell operators.
        return f"{self.command} {shlex.quote(self.prompt)}"


class ProcessRun:
    """One run of one CLI. ``stream()`` may be consumed exactly once."""

    def __init__(self, request: RunRequest) -> None:
        self.request = request
        self.state = RunState.RUNNING
        self.timed_out = False
        self.returncode: int | None = None
        self._queue: asyncio.Queue = asyncio.Queue()
        self._process: asyncio.subprocess.Process | None = None
        self._readers: list[asyncio.Task] = []
        self._watcher: asyncio.Task | None = None
        self._timer: asyncio.Task | None = None
        self._last_timestamp = 0
        self._started = False

    # ------------------------------------------------------------------
    # Consumer side
    # ------------------------------------------------------------------

    async def stream(self) -> AsyncGenerator[Chunk, None]:
        if self._started:
            raise RuntimeError("ProcessRun.stream() can only be consumed once")
        self._started = True
        agent = self.request.agent

        logger.debug(f"Executing {agent} CLI: {self.request.command}")
        logger.debug(f"Working directory: {self.request.cwd}")
        logger.debug(f"Timeout: {self.request.timeout:g}s")

        try:
            self._process = await asyncio.create_subprocess_shell(
                self.request.shell_command(),
                cwd=self.request.cwd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except (OSError, ValueError) as exc:
            # ValueError: NUL byte in the prompt or working directory
            self.state = RunState.DONE
            logger.error(f"{agent} spawn error: {exc}")
            yield self._chunk("error", f"Spawn error: {exc}")
            raise SpawnFailure(agent, str(exc)) from exc

        self._readers = [
            asyncio.create_task(self._pump(self._process.stdout, "text")),
            asyncio.create_task(self._pump(self._process.stderr, "error")),
        ]
        self._timer = asyncio.create_task(self._expire())
        self._watcher = asyncio.create_task(self._watch())

        try:
            while True:
                item = await self._queue.get()
                if item is _EOF:
                    break
                yield item
        finally:
            self._abandon()

        failure = self.failure()
        if failure is not None:
            raise failure

    def failure(self) -> RunFailure | None:
        """Structured outcome of a finished run; None for a clean exit."""
        if self.timed_out:
            return TimeoutFailure(self.request.agent, self.request.timeout)
        if self.returncode:
            return ExitFailure(self.request.agent, self.returncode)
        return None

    # ------------------------------------------------------------------
    # Producers
    # ------------------------------------------------------------------

    def _chunk(self, kind: ChunkType, content: str) -> Chunk:
        self._last_timestamp = max(now_ms(), self._last_timestamp)
        return Chunk(
            source=self.request.agent,
            content=content,
            timestamp=self._last_timestamp,
            type=kind,
        )

    def _push(self, kind: ChunkType, content: str) -> None:
        self._queue.put_nowait(self._chunk(kind, content))

    async def _pump(self, stream: asyncio.StreamReader, kind: ChunkType) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            data = await stream.read(READ_SIZE)
            text = decoder.decode(data, final=not data)
            if text:
                if kind == "error":
                    logger.warning(f"{self.request.agent} stderr: {text.rstrip()}")
                self._push(kind, text)
            if not data:
                return

    async def _watch(self) -> None:
        returncode = await self._process.wait()
        results = await asyncio.gather(*self._readers, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                logger.error(f"{self.request.agent} output reader failed: {result}")
        self._timer.cancel()
        self.returncode = returncode
        self.state = RunState.DONE
        logger.debug(f"{self.request.agent} process exited with code {returncode}")

        if returncode != 0 and not self.timed_out:
            logger.error(
                f"{self.request.agent} process failed with exit code {returncode}"
            )
            self._push("error", f"Process exited with code {returncode}")
        self._queue.put_nowait(_EOF)

    async def _expire(self) -> None:
        await asyncio.sleep(self.request.timeout)
        if self.state is not RunState.RUNNING:
            return

        self.state = RunState.TIMING_OUT
        self.timed_out = True
        logger.error(
            f"{self.request.agent} process timed out after {self.request.timeout:g}s"
        )
        self._push("error", f"Process timed out after {self.request.timeout:g}s")
        self._signal(signal.SIGTERM)

        await asyncio.sleep(GRACE_PERIOD_SECONDS)
        if self.state is RunState.TIMING_OUT:
            self.state = RunState.TERMINATING
            logger.warning(f"Force killing {self.request.agent} process")
            self._signal(signal.SIGKILL)

    # ------------------------------------------------------------------
    # Process control
    # ------------------------------------------------------------------

    def _signal(self, sig: signal.Signals) -> None:
        """Signal the whole process group. Safe to call repeatedly.

        The child leads its own session, so its pid is the group id and stays
        valid while any member of the group (e.g. a grandchild holding the
        pipes) is alive.
        """
        process = self._process
        if process is None:
            return
        try:
            os.killpg(process.pid, sig)
        except ProcessLookupError:
            return  # already gone
        except PermissionError:
            if process.returncode is None:
                process.send_signal(sig)

    def _abandon(self) -> None:
        """Tear down after the consumer stops pulling, early or not."""
        if self.state is not RunState.DONE:
            logger.debug(f"{self.request.agent} stream closed early, killing process")
            self._signal(signal.SIGKILL)
        for task in (*self._readers, self._timer, self._watcher):
            if task is not None and not task.done():
                task.cancel()


def execute_cli(
    cli: CliConfig,
    agent: AgentType,
    prompt: str,
    *,
    cwd: str | None = None,
    timeout: float | None = None,
) -> AsyncGenerator[Chunk, None]:
    """Start streaming one CLI run for ``agent`` using the configured command."""
    request = RunRequest(
        agent=agent,
        command=cli.command_for(agent),
        prompt=prompt,
        cwd=cwd or cli.workspace_dir,
        timeout=timeout if timeout is not None else cli.timeout_seconds,
    )
    return ProcessRun(request).stream()
