from __future__ import annotations

import asyncio
import json
import os
from collections.abc import Callable, Sequence
from pathlib import Path

import allure
import pytest

from cargo_tasks.task.coordinator import (
    CARGO_NOT_AVAILABLE_MESSAGE,
    ProjectKind,
    TaskCoordinator,
    TaskStatus,
    augment_args,
    is_json_line,
)
from cargo_tasks.task.models import DiagnosticSeverity
from cargo_tasks.task.process import SpawnFailedError, TaskCancelledError
from cargo_tasks.task.sinks import BufferedTextSink, DiagnosticCollection
from cargo_tasks.task.state import Running

pytestmark = [
    allure.epic("Task Execution"),
    allure.feature("Task Coordinator"),
]

_COMPILER_MESSAGE = json.dumps(
    {
        "reason": "compiler-message",
        "package_id": "b 0.1.0 (path+file:///tmp/b)",
        "message": {
            "children": [],
            "code": None,
            "level": "warning",
            "message": "unused variable: `x`",
            "spans": [
                {
                    "file_name": "src/main.rs",
                    "byte_start": 16,
                    "byte_end": 17,
                    "line_start": 2,
                    "line_end": 2,
                    "column_start": 9,
                    "column_end": 10,
                    "is_primary": True,
                    "label": None,
                    "expansion": None,
                },
            ],
        },
    },
)


class _RecordingNotifier:
    def __init__(self) -> None:
        self.infos: list[str] = []
        self.errors: list[str] = []

    def info(self, message: str) -> None:
        self.infos.append(message)

    def error(self, message: str) -> None:
        self.errors.append(message)


class _ScriptedProcess:
    """In-memory stand-in for CargoProcess with controllable completion."""

    def __init__(
        self,
        *,
        stdout: Sequence[str] = (),
        stderr: Sequence[str] = (),
        exit_code: int = 0,
        block: bool = False,
        spawn_error: bool = False,
    ) -> None:
        self.stdout = list(stdout)
        self.stderr = list(stderr)
        self.exit_code = exit_code
        self.block = block
        self.spawn_error = spawn_error
        self.calls: list[tuple[str, tuple[str, ...]]] = []
        self.kill_calls = 0
        self.interrupted = False
        self._release = asyncio.Event()

    def finish(self) -> None:
        self._release.set()

    async def execute(  # noqa: PLR0913
        self,
        command: str,
        args: Sequence[str],
        cwd: Path,
        on_start: Callable[[], None] | None = None,
        on_stdout_line: Callable[[str], None] | None = None,
        on_stderr_line: Callable[[str], None] | None = None,
    ) -> int:
        self.calls.append((command, tuple(args)))
        if on_start is not None:
            on_start()
        if self.spawn_error:
            raise SpawnFailedError("Failed to start cargo", executable="cargo")
        for line in self.stdout:
            if on_stdout_line is not None:
                on_stdout_line(line)
        for line in self.stderr:
            if on_stderr_line is not None:
                on_stderr_line(line)
        if self.block:
            await self._release.wait()
        if self.interrupted:
            raise TaskCancelledError(f"cargo {command} was cancelled")
        return self.exit_code

    async def kill(self) -> None:
        if self.interrupted:
            return
        self.interrupted = True
        self.kill_calls += 1
        self._release.set()


def _coordinator(
    processes: list[_ScriptedProcess],
    **kwargs,
) -> tuple[TaskCoordinator, DiagnosticCollection, BufferedTextSink, _RecordingNotifier]:
    diagnostics = DiagnosticCollection()
    text = BufferedTextSink()
    notifier = _RecordingNotifier()
    queue = iter(processes)
    coordinator = TaskCoordinator(
        diagnostic_sink=diagnostics,
        text_sink=text,
        notifier=notifier,
        process_factory=lambda: next(queue),
        **kwargs,
    )
    return coordinator, diagnostics, text, notifier


def test_augment_args_only_for_diagnostic_commands() -> None:
    for command in ("build", "check", "clippy", "run", "test"):
        assert augment_args(command, ["--release"]) == (
            "--message-format",
            "json",
            "--release",
        )
    assert augment_args("doc", ["--open"]) == ("--open",)
    assert augment_args("clean", []) == ()


def test_is_json_line_ignores_leading_whitespace() -> None:
    assert is_json_line('{"reason":"x"}')
    assert is_json_line('   {"reason":"x"}')
    assert not is_json_line("Running `target/debug/b`")
    assert not is_json_line("")


def test_invoke_routes_json_to_diagnostics_and_text_to_text_sink(tmp_path: Path) -> None:
    process = _ScriptedProcess(
        stdout=[_COMPILER_MESSAGE, '{"reason":"compiler-artifact"}', "hello from b"],
        stderr=["   Compiling b v0.1.0 (/tmp/b)"],
        exit_code=0,
    )
    coordinator, diagnostics, text, notifier = _coordinator([process])

    outcome = asyncio.run(coordinator.invoke("run", ["--quiet"], tmp_path))

    assert outcome.status is TaskStatus.COMPLETED
    assert outcome.exit_code == 0
    assert outcome.diagnostics_published == 1
    assert outcome.elapsed_seconds is not None
    assert process.calls == [("run", ("--message-format", "json", "--quiet"))]
    assert text.lines[0] == "Started cargo run --message-format json --quiet"
    assert "hello from b" in text.lines
    assert "   Compiling b v0.1.0 (/tmp/b)" in text.lines
    assert text.lines[-2] == "Completed with code 0"
    assert text.lines[-1].startswith("It took approximately ")
    assert not any(line.startswith("{") for line in text.lines)
    [(path, diagnostic)] = diagnostics.all()
    assert path == tmp_path / "src/main.rs"
    assert diagnostic.severity is DiagnosticSeverity.WARNING
    assert notifier.infos == []
    assert not coordinator.is_running


def test_invoke_clears_previous_diagnostics(tmp_path: Path) -> None:
    first = _ScriptedProcess(stdout=[_COMPILER_MESSAGE])
    second = _ScriptedProcess(stdout=[])
    coordinator, diagnostics, _, _ = _coordinator([first, second])

    asyncio.run(coordinator.invoke("build", [], tmp_path))
    assert len(diagnostics) == 1
    asyncio.run(coordinator.invoke("build", [], tmp_path))

    assert len(diagnostics) == 0


def test_malformed_json_line_is_forwarded_as_text(tmp_path: Path) -> None:
    process = _ScriptedProcess(stdout=["{oops", _COMPILER_MESSAGE])
    coordinator, diagnostics, text, _ = _coordinator([process])

    outcome = asyncio.run(coordinator.invoke("check", [], tmp_path))

    assert outcome.status is TaskStatus.COMPLETED
    assert "{oops" in text.lines
    assert len(diagnostics) == 1


def test_diagnostic_publishing_can_be_disabled(tmp_path: Path) -> None:
    process = _ScriptedProcess(stdout=[_COMPILER_MESSAGE])
    coordinator, diagnostics, text, _ = _coordinator([process], publish_diagnostics=False)

    outcome = asyncio.run(coordinator.invoke("build", [], tmp_path))

    assert outcome.diagnostics_published == 0
    assert len(diagnostics) == 0
    assert _COMPILER_MESSAGE not in text.lines


def test_spawn_failure_notifies_instead_of_reporting_completion(tmp_path: Path) -> None:
    process = _ScriptedProcess(spawn_error=True)
    coordinator, _, text, notifier = _coordinator([process])

    outcome = asyncio.run(coordinator.invoke("build", [], tmp_path))

    assert outcome.status is TaskStatus.SPAWN_FAILED
    assert notifier.infos == [CARGO_NOT_AVAILABLE_MESSAGE]
    assert not any(line.startswith("Completed with code") for line in text.lines)
    assert not coordinator.is_running


def test_non_forced_invoke_while_running_is_dropped(tmp_path: Path) -> None:
    first = _ScriptedProcess(block=True)
    spare = _ScriptedProcess()
    coordinator, _, _, _ = _coordinator([first, spare])

    async def scenario():
        running = asyncio.create_task(coordinator.invoke("build", [], tmp_path))
        await asyncio.sleep(0)
        assert isinstance(coordinator.state, Running)
        dropped = await coordinator.invoke("test", [], tmp_path, force=False)
        first.finish()
        return dropped, await running

    dropped, completed = asyncio.run(scenario())

    assert dropped.status is TaskStatus.DROPPED
    assert completed.status is TaskStatus.COMPLETED
    assert first.kill_calls == 0
    assert spare.calls == []


def test_forced_invoke_kills_running_task_before_starting(tmp_path: Path) -> None:
    first = _ScriptedProcess(block=True)
    second = _ScriptedProcess(exit_code=101)
    coordinator, _, text, notifier = _coordinator([first, second])

    async def scenario():
        running = asyncio.create_task(coordinator.invoke("build", [], tmp_path))
        await asyncio.sleep(0)
        restarted = await coordinator.invoke("build", ["--release"], tmp_path, force=True)
        return await running, restarted

    cancelled, restarted = asyncio.run(scenario())

    assert cancelled.status is TaskStatus.CANCELLED
    assert restarted.status is TaskStatus.COMPLETED
    assert restarted.exit_code == 101
    assert first.kill_calls == 1
    assert second.calls == [("build", ("--message-format", "json", "--release"))]
    assert text.lines[0] == "Started cargo build --message-format json --release"
    assert notifier.infos == []
    assert not coordinator.is_running


def test_stop_kills_running_task(tmp_path: Path) -> None:
    first = _ScriptedProcess(block=True)
    coordinator, _, text, _ = _coordinator([first])

    async def scenario():
        assert await coordinator.stop() is False
        running = asyncio.create_task(coordinator.invoke("test", [], tmp_path))
        await asyncio.sleep(0)
        assert await coordinator.stop() is True
        return await running

    outcome = asyncio.run(scenario())

    assert outcome.status is TaskStatus.CANCELLED
    assert not any(line.startswith("Completed with code") for line in text.lines)


def test_check_falls_back_to_rustc_when_probe_fails(tmp_path: Path) -> None:
    probe = _ScriptedProcess(exit_code=101)
    first = _ScriptedProcess()
    second = _ScriptedProcess()
    coordinator, _, _, _ = _coordinator([probe, first, second])

    asyncio.run(coordinator.invoke_check(["--all-targets"], tmp_path))
    asyncio.run(coordinator.invoke_check([], tmp_path))

    assert probe.calls == [("check", ("--help",))]
    assert first.calls == [("rustc", ("--all-targets", "--", "-Zno-trans"))]
    assert second.calls == [("rustc", ("--", "-Zno-trans"))]


def test_check_uses_cargo_check_when_available(tmp_path: Path) -> None:
    probe = _ScriptedProcess(exit_code=0)
    run = _ScriptedProcess()
    coordinator, _, _, _ = _coordinator([probe, run])

    asyncio.run(coordinator.invoke_check([], tmp_path))

    assert run.calls == [("check", ("--message-format", "json"))]


def test_configured_args_are_used_per_command(tmp_path: Path) -> None:
    process = _ScriptedProcess()
    coordinator, _, _, _ = _coordinator(
        [process],
        default_args={"clippy": ("--", "-D", "warnings")},
    )

    asyncio.run(coordinator.invoke_with_configured_args("clippy", tmp_path))

    assert process.calls == [
        ("clippy", ("--message-format", "json", "--", "-D", "warnings")),
    ]


def test_project_creation_commands_are_not_augmented(tmp_path: Path) -> None:
    created = _ScriptedProcess()
    initialized = _ScriptedProcess()
    coordinator, _, _, _ = _coordinator([created, initialized])

    asyncio.run(coordinator.create_project("hello", ProjectKind.BIN, tmp_path))
    asyncio.run(coordinator.init_project("playground_library", ProjectKind.LIB, tmp_path))

    assert created.calls == [("new", ("hello", "--bin"))]
    assert initialized.calls == [("init", ("--name", "playground_library", "--lib"))]


@pytest.mark.skipif(os.name == "nt", reason="fake cargo launcher is a POSIX shell script")
def test_coordinator_runs_real_subprocess_end_to_end(fake_cargo, crate_dir: Path) -> None:
    diagnostics = DiagnosticCollection()
    text = BufferedTextSink()
    notifier = _RecordingNotifier()
    coordinator = TaskCoordinator(
        diagnostic_sink=diagnostics,
        text_sink=text,
        notifier=notifier,
        cargo_path=str(fake_cargo.path),
        cargo_env=fake_cargo.script(
            stdout=[_COMPILER_MESSAGE, "plain output"],
            stderr=["warning: unused variable"],
            exit_code=0,
        ),
    )

    outcome = asyncio.run(coordinator.invoke("build", [], crate_dir))

    assert outcome.status is TaskStatus.COMPLETED
    assert fake_cargo.invocations() == [["build", "--message-format", "json"]]
    assert "plain output" in text.lines
    assert "warning: unused variable" in text.lines
    assert list(diagnostics.by_file()) == [crate_dir / "src/main.rs"]


@pytest.mark.skipif(os.name == "nt", reason="fake cargo launcher is a POSIX shell script")
def test_coordinator_preempts_real_subprocess(fake_cargo, crate_dir: Path) -> None:
    diagnostics = DiagnosticCollection()
    text = BufferedTextSink()
    coordinator = TaskCoordinator(
        diagnostic_sink=diagnostics,
        text_sink=text,
        notifier=_RecordingNotifier(),
        cargo_path=str(fake_cargo.path),
        cargo_env=fake_cargo.script(stdout=["ready"], sleep=30),
    )

    async def scenario():
        running = asyncio.create_task(coordinator.invoke("build", [], crate_dir))
        while "ready" not in text.lines:
            await asyncio.sleep(0.01)
        coordinator.cargo_env = fake_cargo.script(stdout=["second run"], exit_code=0)
        restarted = await asyncio.wait_for(
            coordinator.invoke("build", [], crate_dir, force=True),
            timeout=10,
        )
        return await running, restarted

    cancelled, restarted = asyncio.run(scenario())

    assert cancelled.status is TaskStatus.CANCELLED
    assert restarted.status is TaskStatus.COMPLETED
    assert "second run" in text.lines
    assert len(fake_cargo.invocations()) == 2


def test_overlapping_forced_requests_each_follow_the_preemption_policy(tmp_path: Path) -> None:
    first = _ScriptedProcess(block=True)
    second = _ScriptedProcess(block=True)
    third = _ScriptedProcess(exit_code=0)
    coordinator, _, _, _ = _coordinator([first, second, third])

    async def scenario():
        running = asyncio.create_task(coordinator.invoke("build", [], tmp_path))
        await asyncio.sleep(0)
        # Both forced requests arrive while the first preemption is still unwinding.
        restart = asyncio.create_task(coordinator.invoke("test", [], tmp_path, force=True))
        latest = asyncio.create_task(coordinator.invoke("run", [], tmp_path, force=True))
        return await asyncio.gather(running, restart, latest)

    outcomes = asyncio.run(scenario())

    assert [outcome.status for outcome in outcomes] == [
        TaskStatus.CANCELLED,
        TaskStatus.CANCELLED,
        TaskStatus.COMPLETED,
    ]
    assert (first.kill_calls, second.kill_calls, third.kill_calls) == (1, 1, 0)
    assert [process.calls[0][0] for process in (first, second, third)] == [
        "build",
        "test",
        "run",
    ]
    assert not coordinator.is_running


@pytest.mark.skipif(os.name == "nt", reason="fake cargo launcher is a POSIX shell script")
def test_stop_after_cargo_exited_ends_task_held_open_by_background_process(
    fake_cargo,
    crate_dir: Path,
) -> None:
    text = BufferedTextSink()
    coordinator = TaskCoordinator(
        diagnostic_sink=DiagnosticCollection(),
        text_sink=text,
        notifier=_RecordingNotifier(),
        cargo_path=str(fake_cargo.path),
        cargo_env=fake_cargo.script(stdout=["ready"], background_sleep=30, exit_code=0),
    )

    async def scenario():
        running = asyncio.create_task(coordinator.invoke("run", [], crate_dir))
        while not {"ready", "background started"} <= set(text.lines):
            await asyncio.sleep(0.01)
        state = coordinator.state
        assert isinstance(state, Running)
        while state.process._process is None or state.process._process.returncode is None:
            await asyncio.sleep(0.01)

        stopped = await coordinator.stop()
        return stopped, await asyncio.wait_for(running, timeout=10)

    stopped, outcome = asyncio.run(scenario())

    assert stopped is True
    assert outcome.status is TaskStatus.CANCELLED
    assert not coordinator.is_running
