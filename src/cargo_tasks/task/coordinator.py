"""Single-flight cargo task coordination with forced preemption."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from cargo_tasks.task.diagnostic_parser import DiagnosticParser
from cargo_tasks.task.models import MalformedEventError
from cargo_tasks.task.process import CargoProcess, SpawnFailedError, TaskCancelledError
from cargo_tasks.task.sinks import DiagnosticSink, Notifier, TextSink
from cargo_tasks.task.state import IDLE, Admission, Running, TaskState, decide

logger = logging.getLogger(__name__)

DIAGNOSTIC_COMMANDS = frozenset({"build", "check", "clippy", "run", "test"})
MESSAGE_FORMAT_ARGS = ("--message-format", "json")
CHECK_FALLBACK_COMMAND = "rustc"
CHECK_FALLBACK_ARGS = ("--", "-Zno-trans")
CARGO_NOT_AVAILABLE_MESSAGE = 'The "cargo" command is not available. Make sure it is installed.'


class TaskStatus(str, Enum):
    """How one ``invoke`` request ended."""

    COMPLETED = "completed"
    CANCELLED = "cancelled"
    SPAWN_FAILED = "spawn_failed"
    DROPPED = "dropped"


class ProjectKind(str, Enum):
    """Crate type for ``cargo new`` / ``cargo init``."""

    BIN = "bin"
    LIB = "lib"


@dataclass(slots=True)
class TaskOutcome:
    """Result of one ``invoke`` request."""

    status: TaskStatus
    command: str
    args: tuple[str, ...]
    exit_code: int | None = None
    elapsed_seconds: float | None = None
    diagnostics_published: int = 0


@dataclass(slots=True)
class _RunCounters:
    diagnostics_published: int = 0
    started_at: float = 0.0


ProcessFactory = Callable[[], CargoProcess]


def augment_args(command: str, args: Sequence[str]) -> tuple[str, ...]:
    """Request JSON diagnostics for subcommands that compile code."""

    if command in DIAGNOSTIC_COMMANDS:
        return (*MESSAGE_FORMAT_ARGS, *args)
    return tuple(args)


def is_json_line(line: str) -> bool:
    return line.lstrip().startswith("{")


class TaskCoordinator:
    """Runs at most one cargo task at a time.

    The only state that outlives a task is ``state``: ``Idle`` or
    ``Running``.  A request that arrives while a task is running is dropped
    unless it is forced, in which case the running task is killed and the
    request is re-issued once the old task has unwound.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        diagnostic_sink: DiagnosticSink,
        text_sink: TextSink,
        notifier: Notifier,
        cargo_path: str = "cargo",
        cargo_env: Mapping[str, str] | None = None,
        publish_diagnostics: bool = True,
        default_args: Mapping[str, Sequence[str]] | None = None,
        process_factory: ProcessFactory | None = None,
    ) -> None:
        self.diagnostic_sink = diagnostic_sink
        self.text_sink = text_sink
        self.notifier = notifier
        self.cargo_path = cargo_path
        self.cargo_env = dict(cargo_env or {})
        self.publish_diagnostics = publish_diagnostics
        self.default_args = {key: tuple(value) for key, value in (default_args or {}).items()}
        self._process_factory = process_factory or self._default_process
        self.state: TaskState = IDLE
        self._check_available: bool | None = None

    @property
    def is_running(self) -> bool:
        return isinstance(self.state, Running)

    async def invoke(
        self,
        command: str,
        args: Sequence[str],
        cwd: Path,
        *,
        force: bool = True,
    ) -> TaskOutcome:
        """Run ``cargo <command>`` subject to the single-flight policy."""

        running = self.state
        admission = decide(running, force=force)
        if admission is Admission.DROP:
            logger.info("Dropping cargo %s: another task is running", command)
            return TaskOutcome(status=TaskStatus.DROPPED, command=command, args=tuple(args))

        if admission is Admission.PREEMPT and isinstance(running, Running):
            logger.info("Preempting cargo %s to start cargo %s", running.command, command)
            await running.process.kill()
            await running.finished.wait()
            return await self.invoke(command, args, cwd, force=force)

        return await self._run(command, augment_args(command, args), cwd)

    async def stop(self) -> bool:
        """Kill the running task, if any; returns whether one was running."""

        if not isinstance(self.state, Running):
            return False
        await self.state.process.kill()
        return True

    async def invoke_with_configured_args(
        self,
        command: str,
        cwd: Path,
        *,
        force: bool = True,
    ) -> TaskOutcome:
        args = self.default_args.get(command, ())
        if command == "check":
            return await self.invoke_check(args, cwd, force=force)
        return await self.invoke(command, args, cwd, force=force)

    async def invoke_check(
        self,
        args: Sequence[str],
        cwd: Path,
        *,
        force: bool = True,
    ) -> TaskOutcome:
        """Run ``cargo check``, or ``cargo rustc -- -Zno-trans`` when unsupported."""

        if await self.is_check_available(cwd):
            return await self.invoke("check", args, cwd, force=force)
        return await self.invoke(
            CHECK_FALLBACK_COMMAND,
            (*args, *CHECK_FALLBACK_ARGS),
            cwd,
            force=force,
        )

    async def is_check_available(self, cwd: Path) -> bool:
        """Probe ``cargo check --help`` once and remember the answer."""

        if self._check_available is None:
            probe = self._process_factory()
            try:
                exit_code = await probe.execute("check", ["--help"], cwd)
            except SpawnFailedError:
                self._check_available = False
            else:
                self._check_available = exit_code == 0
            logger.debug("cargo check available: %s", self._check_available)
        return self._check_available

    async def create_project(self, name: str, kind: ProjectKind, cwd: Path) -> TaskOutcome:
        """``cargo new <name> --bin|--lib``."""

        return await self.invoke("new", [name, f"--{kind.value}"], cwd, force=False)

    async def init_project(self, name: str, kind: ProjectKind, cwd: Path) -> TaskOutcome:
        """``cargo init --name <name> --bin|--lib`` inside ``cwd``."""

        return await self.invoke("init", ["--name", name, f"--{kind.value}"], cwd, force=False)

    async def _run(self, command: str, args: tuple[str, ...], cwd: Path) -> TaskOutcome:
        process = self._process_factory()
        running = Running(process=process, command=command)
        # No await between the admission check and this assignment.
        self.state = running
        try:
            return await self._execute(process, command, args, cwd)
        except asyncio.CancelledError:
            await process.kill()
            raise
        finally:
            self.state = IDLE
            running.finished.set()

    async def _execute(
        self,
        process: CargoProcess,
        command: str,
        args: tuple[str, ...],
        cwd: Path,
    ) -> TaskOutcome:
        self.diagnostic_sink.clear()
        parser = DiagnosticParser()
        counters = _RunCounters()

        def on_start() -> None:
            counters.started_at = time.monotonic()
            self.text_sink.clear()
            self.text_sink.append_line(f"Started cargo {command} {' '.join(args)}".rstrip())

        def on_stdout_line(line: str) -> None:
            if not is_json_line(line):
                self.text_sink.append_line(line)
                return
            try:
                diagnostics = parser.parse_line(line)
            except MalformedEventError as error:
                logger.warning("Skipping malformed cargo event: %s", error)
                self.text_sink.append_line(line)
                return
            if not self.publish_diagnostics:
                return
            for diagnostic in diagnostics:
                self.diagnostic_sink.publish(diagnostic, cwd)
                counters.diagnostics_published += 1

        try:
            exit_code = await process.execute(
                command,
                args,
                cwd,
                on_start=on_start,
                on_stdout_line=on_stdout_line,
                on_stderr_line=self.text_sink.append_line,
            )
        except TaskCancelledError:
            logger.info("cargo %s was cancelled", command)
            return TaskOutcome(
                status=TaskStatus.CANCELLED,
                command=command,
                args=args,
                diagnostics_published=counters.diagnostics_published,
            )
        except SpawnFailedError:
            self.notifier.info(CARGO_NOT_AVAILABLE_MESSAGE)
            return TaskOutcome(status=TaskStatus.SPAWN_FAILED, command=command, args=args)

        elapsed = time.monotonic() - counters.started_at
        self.text_sink.append_line(f"Completed with code {exit_code}")
        self.text_sink.append_line(f"It took approximately {elapsed:.3f} seconds")
        logger.info("cargo %s finished: exit_code=%s elapsed=%.3fs", command, exit_code, elapsed)
        return TaskOutcome(
            status=TaskStatus.COMPLETED,
            command=command,
            args=args,
            exit_code=exit_code,
            elapsed_seconds=elapsed,
            diagnostics_published=counters.diagnostics_published,
        )

    def _default_process(self) -> CargoProcess:
        return CargoProcess(cargo_path=self.cargo_path, env_overrides=self.cargo_env)
