"""One cargo subprocess: spawn, line-split both pipes, cancel the whole tree."""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import subprocess
import sys
from collections.abc import AsyncIterator, Callable, Mapping, Sequence
from contextlib import suppress
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

logger = logging.getLogger(__name__)

# cargo emits a whole rendered diagnostic per JSON line.
STREAM_LINE_LIMIT = 16 * 1024 * 1024


class CargoTaskError(RuntimeError):
    """Base error for cargo task execution."""


class SpawnFailedError(CargoTaskError):
    """The cargo executable could not be launched."""

    def __init__(self, message: str, *, executable: str) -> None:
        super().__init__(message)
        self.executable = executable


class TaskCancelledError(CargoTaskError):
    """The task was killed on request; it has no result."""


class StreamName(str, Enum):
    """Pipe a line was read from."""

    STDOUT = "stdout"
    STDERR = "stderr"


@dataclass(slots=True, frozen=True)
class OutputLine:
    """One delimiter-stripped line of process output."""

    stream: StreamName
    text: str


LineCallback = Callable[[str], None]


class CargoProcess:
    """Owns exactly one cargo invocation; create a new instance per task."""

    def __init__(
        self,
        *,
        cargo_path: str = "cargo",
        env_overrides: Mapping[str, str] | None = None,
    ) -> None:
        self.cargo_path = cargo_path
        self.env_overrides = dict(env_overrides or {})
        self.returncode: int | None = None
        self._process: asyncio.subprocess.Process | None = None
        self._interrupted = False
        self._started = False

    @property
    def interrupted(self) -> bool:
        return self._interrupted

    def build_env(self) -> dict[str, str]:
        """Ambient environment with configured overrides applied on top."""

        env = os.environ.copy()
        env.update(self.env_overrides)
        return env

    async def execute(  # noqa: PLR0913
        self,
        command: str,
        args: Sequence[str],
        cwd: Path | str,
        on_start: Callable[[], None] | None = None,
        on_stdout_line: LineCallback | None = None,
        on_stderr_line: LineCallback | None = None,
    ) -> int:
        """Run ``cargo <command> <args>`` and return its exit code.

        Raises ``SpawnFailedError`` if cargo cannot be launched and
        ``TaskCancelledError`` if ``kill()`` was called during the run.
        """

        if on_start is not None:
            on_start()

        async for line in self.lines(command, args, cwd):
            callback = on_stdout_line if line.stream is StreamName.STDOUT else on_stderr_line
            if callback is not None:
                callback(line.text)

        if self.returncode is None:
            raise CargoTaskError(f"cargo {command} ended without an exit code")
        return self.returncode

    async def lines(
        self,
        command: str,
        args: Sequence[str],
        cwd: Path | str,
    ) -> AsyncIterator[OutputLine]:
        """Yield output lines until both pipes close and the exit is observed.

        Lines of one stream keep their emission order; the two streams are
        interleaved in arrival order.  ``returncode`` is set once the
        iterator is exhausted.
        """

        if self._started:
            raise CargoTaskError("CargoProcess instances run exactly one invocation")
        self._started = True

        process = await self._spawn(command, args, cwd)
        if self._interrupted:
            # kill() arrived while the spawn was in flight.
            await _terminate_tree(process)
        if process.stdout is None or process.stderr is None:
            raise CargoTaskError(f"cargo {command} was started without output pipes")

        # None marks the end of one stream.
        queue: asyncio.Queue[OutputLine | None] = asyncio.Queue()
        readers = [
            asyncio.create_task(_pump(process.stdout, StreamName.STDOUT, queue)),
            asyncio.create_task(_pump(process.stderr, StreamName.STDERR, queue)),
        ]
        try:
            open_streams = len(readers)
            while open_streams:
                item = await queue.get()
                if item is None:
                    open_streams -= 1
                    continue
                yield item

            returncode = await process.wait()
        finally:
            for reader in readers:
                reader.cancel()

        self.returncode = returncode
        logger.debug("cargo %s exited with code %s", command, returncode)
        if self._interrupted:
            raise TaskCancelledError(f"cargo {command} was cancelled")

    async def kill(self) -> None:
        """Terminate the whole process tree; later calls have no effect.

        The invocation stays killable until ``lines()`` has finished: cargo
        itself may have exited while a process it started still holds the
        pipes open.  Returns once the signal was dispatched, not once the
        processes exited.
        """

        if self._interrupted or self.returncode is not None:
            return
        self._interrupted = True
        if self._process is None:
            logger.debug("Kill requested before cargo was spawned")
            return
        logger.debug("Terminating cargo process tree pid=%s", self._process.pid)
        await _terminate_tree(self._process)

    async def _spawn(
        self,
        command: str,
        args: Sequence[str],
        cwd: Path | str,
    ) -> asyncio.subprocess.Process:
        argv = [command, *args]
        logger.debug("Spawning %s %s in %s", self.cargo_path, " ".join(argv), cwd)
        try:
            self._process = await asyncio.create_subprocess_exec(
                self.cargo_path,
                *argv,
                cwd=str(cwd),
                env=self.build_env(),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_LINE_LIMIT,
                **_process_group_kwargs(),
            )
        except OSError as error:
            logger.warning("Failed to start %s: %s", self.cargo_path, error)
            raise SpawnFailedError(
                f"Failed to start {self.cargo_path}: {error}",
                executable=self.cargo_path,
            ) from error
        return self._process


async def _pump(
    stream: asyncio.StreamReader,
    name: StreamName,
    queue: asyncio.Queue[OutputLine | None],
) -> None:
    try:
        while True:
            try:
                raw = await stream.readline()
            except ValueError:
                # Line exceeded the reader limit; the buffer was discarded.
                logger.warning("Skipping oversized %s line", name.value)
                continue
            if not raw:
                break
            await queue.put(OutputLine(stream=name, text=_strip_line_ending(raw)))
    finally:
        queue.put_nowait(None)


def _strip_line_ending(raw: bytes) -> str:
    text = raw.decode("utf-8", errors="replace")
    if text.endswith("\n"):
        text = text[:-1]
    if text.endswith("\r"):
        text = text[:-1]
    return text


def _process_group_kwargs() -> dict[str, object]:
    if sys.platform == "win32":
        return {"creationflags": subprocess.CREATE_NEW_PROCESS_GROUP}
    return {"start_new_session": True}


async def _terminate_tree(process: asyncio.subprocess.Process) -> None:
    if sys.platform == "win32":
        killer = await asyncio.create_subprocess_exec(
            "taskkill",
            "/F",
            "/T",
            "/PID",
            str(process.pid),
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
        await killer.wait()
        return

    # The child leads its own session, so its pid is the process group id.
    # The group outlives the leader while any member is still running.
    try:
        os.killpg(process.pid, signal.SIGTERM)
    except ProcessLookupError:
        if process.returncode is None:
            with suppress(ProcessLookupError):
                process.terminate()
