"""Controllers for cargo task CLI commands."""

from __future__ import annotations

import asyncio
import logging
import tempfile
from collections.abc import Callable, Coroutine
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from cargo_tasks.config import Settings
from cargo_tasks.task.coordinator import ProjectKind, TaskCoordinator, TaskOutcome, TaskStatus
from cargo_tasks.task.sinks import ClickNotifier, DiagnosticCollection, EchoTextSink
from cargo_tasks.workdir import WorkingDirectoryError, WorkingDirectoryResolver

logger = logging.getLogger(__name__)

EXIT_SPAWN_FAILED = 127
EXIT_INTERRUPTED = 130

PLAYGROUND_NAMES = {
    ProjectKind.BIN: "playground_application",
    ProjectKind.LIB: "playground_library",
}


@dataclass(slots=True)
class CargoRunCommand:
    """CLI input for one cargo subcommand run."""

    command: str
    args: tuple[str, ...]
    workspace_root: Path
    active_file: Path | None = None
    use_configured_args: bool = False
    configuration: str | None = None


@dataclass(slots=True)
class CargoProjectCommand:
    """CLI input for ``cargo new`` / ``cargo init``."""

    name: str
    kind: ProjectKind
    cwd: Path
    init: bool = False


@dataclass(slots=True)
class CargoPlaygroundCommand:
    """CLI input for a throwaway crate in a fresh temporary directory."""

    kind: ProjectKind


@dataclass(slots=True)
class CargoRunResult:
    """Lines to print after the run and the process exit code to report."""

    lines: list[str]
    exit_code: int


class CargoCliController:
    """Wires settings, sinks and the task coordinator for CLI commands."""

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings
        self._resolvers: dict[Path, WorkingDirectoryResolver] = {}

    def run(self, command: CargoRunCommand) -> CargoRunResult:
        settings = self._settings or Settings.from_env()
        notifier = ClickNotifier()
        try:
            cwd = self._resolver(command.workspace_root).resolve(command.active_file)
        except WorkingDirectoryError as error:
            notifier.error(str(error))
            return CargoRunResult(lines=[], exit_code=1)

        args = command.args
        if command.configuration is not None:
            try:
                args = (
                    *settings.configuration_args(command.command, command.configuration),
                    *command.args,
                )
            except ValueError as error:
                notifier.error(str(error))
                return CargoRunResult(lines=[], exit_code=1)

        diagnostics = DiagnosticCollection()
        coordinator = _coordinator(settings, diagnostics=diagnostics, notifier=notifier)
        use_configured_args = command.use_configured_args and command.configuration is None

        async def _invoke() -> TaskOutcome:
            if use_configured_args:
                return await coordinator.invoke_with_configured_args(command.command, cwd)
            if command.command == "check":
                return await coordinator.invoke_check(args, cwd)
            return await coordinator.invoke(command.command, args, cwd)

        outcome = _run_until_interrupted(_invoke)
        if outcome is None:
            return CargoRunResult(lines=["Cancelled."], exit_code=EXIT_INTERRUPTED)
        return _summarize(outcome, diagnostics=diagnostics)

    def create_project(self, command: CargoProjectCommand) -> CargoRunResult:
        settings = self._settings or Settings.from_env()
        diagnostics = DiagnosticCollection()
        coordinator = _coordinator(settings, diagnostics=diagnostics, notifier=ClickNotifier())

        async def _invoke() -> TaskOutcome:
            if command.init:
                return await coordinator.init_project(command.name, command.kind, command.cwd)
            return await coordinator.create_project(command.name, command.kind, command.cwd)

        outcome = _run_until_interrupted(_invoke)
        if outcome is None:
            return CargoRunResult(lines=["Cancelled."], exit_code=EXIT_INTERRUPTED)
        return _summarize(outcome, diagnostics=diagnostics)

    def create_playground(self, command: CargoPlaygroundCommand) -> CargoRunResult:
        """``cargo init`` a ``playground_*`` crate in a new temporary directory."""

        name = PLAYGROUND_NAMES[command.kind]
        try:
            directory = Path(tempfile.mkdtemp(prefix=f"{name}_"))
        except OSError as error:
            ClickNotifier().error(f"Temporary directory creation failed: {error}")
            return CargoRunResult(lines=[], exit_code=1)

        result = self.create_project(
            CargoProjectCommand(name=name, kind=command.kind, cwd=directory, init=True),
        )
        if result.exit_code == 0:
            result.lines.append(f"Playground: {directory}")
        return result

    def _resolver(self, workspace_root: Path) -> WorkingDirectoryResolver:
        key = workspace_root.resolve()
        if key not in self._resolvers:
            self._resolvers[key] = WorkingDirectoryResolver(key)
        return self._resolvers[key]


def _coordinator(
    settings: Settings,
    *,
    diagnostics: DiagnosticCollection,
    notifier: ClickNotifier,
) -> TaskCoordinator:
    return TaskCoordinator(
        diagnostic_sink=diagnostics,
        text_sink=EchoTextSink(enabled=settings.show_output),
        notifier=notifier,
        cargo_path=settings.cargo_path,
        cargo_env=settings.cargo_env,
        publish_diagnostics=settings.publish_diagnostics,
        default_args=settings.default_args,
    )


def _run_until_interrupted(
    invoke: Callable[[], Coroutine[Any, Any, TaskOutcome]],
) -> TaskOutcome | None:
    try:
        return asyncio.run(invoke())
    except KeyboardInterrupt:
        logger.info("Interrupted; cargo task was stopped")
        return None


def _summarize(outcome: TaskOutcome, *, diagnostics: DiagnosticCollection) -> CargoRunResult:
    lines = diagnostics.render_lines()
    if outcome.status is TaskStatus.SPAWN_FAILED:
        return CargoRunResult(lines=lines, exit_code=EXIT_SPAWN_FAILED)
    if outcome.status is not TaskStatus.COMPLETED or outcome.exit_code is None:
        return CargoRunResult(lines=lines, exit_code=1)

    if lines:
        lines.append(f"Diagnostics: {outcome.diagnostics_published}")
    return CargoRunResult(lines=lines, exit_code=outcome.exit_code)
