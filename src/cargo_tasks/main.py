"""CLI entrypoint for cargo-tasks."""

import logging
from collections.abc import Callable
from pathlib import Path
from typing import Any, TypeVar

import rich_click as click

from cargo_tasks import __version__
from cargo_tasks.config import CONFIGURABLE_COMMANDS
from cargo_tasks.task.controllers import (
    CargoCliController,
    CargoPlaygroundCommand,
    CargoProjectCommand,
    CargoRunCommand,
    CargoRunResult,
)
from cargo_tasks.task.coordinator import ProjectKind

click.rich_click.USE_MARKDOWN = True
CARGO_CONTROLLER = CargoCliController()

_F = TypeVar("_F", bound=Callable[..., Any])


@click.group()
@click.version_option(version=__version__, prog_name="cargo-tasks")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging verbosity.",
)
def cargo_tasks(log_level: str) -> None:
    """Run cargo tasks and collect compiler diagnostics."""

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _workspace_option(func: _F) -> _F:
    return click.option(
        "--workspace",
        "workspace_root",
        type=click.Path(path_type=Path, file_okay=False, exists=True),
        default=Path("."),
        show_default=True,
        help="Workspace root; Cargo.toml lookups never leave it.",
    )(func)


def _file_option(func: _F) -> _F:
    return click.option(
        "--file",
        "active_file",
        type=click.Path(path_type=Path, dir_okay=False),
        default=None,
        help="File being worked on; the nearest Cargo.toml above it selects the crate.",
    )(func)


def _register_diagnostic_command(name: str) -> None:
    @cargo_tasks.command(
        name,
        context_settings={"ignore_unknown_options": True},
        help=(
            f"Run `cargo {name}` with JSON diagnostics. Extra ARGS are passed through; "
            f"without ARGS, CARGO_TASKS_{name.upper()}_ARGS is used. `--config TITLE` "
            f"prepends a named set from CARGO_TASKS_{name.upper()}_CONFIGURATIONS."
        ),
    )
    @_workspace_option
    @_file_option
    @click.option(
        "--config",
        "configuration",
        default=None,
        help="Title of a custom argument set to run with.",
    )
    @click.argument("args", nargs=-1, type=click.UNPROCESSED)
    def _command(
        workspace_root: Path,
        active_file: Path | None,
        configuration: str | None,
        args: tuple[str, ...],
    ) -> None:
        _finish(
            CARGO_CONTROLLER.run(
                CargoRunCommand(
                    command=name,
                    args=args,
                    workspace_root=workspace_root,
                    active_file=active_file,
                    use_configured_args=not args,
                    configuration=configuration,
                ),
            ),
        )


for _name in CONFIGURABLE_COMMANDS:
    _register_diagnostic_command(_name)


@cargo_tasks.command("cargo", context_settings={"ignore_unknown_options": True})
@_workspace_option
@_file_option
@click.argument("command")
@click.argument("args", nargs=-1, type=click.UNPROCESSED)
def cargo_command(
    workspace_root: Path,
    active_file: Path | None,
    command: str,
    args: tuple[str, ...],
) -> None:
    """Run any cargo subcommand, for example `bench`, `doc`, `update` or `clean`."""

    _finish(
        CARGO_CONTROLLER.run(
            CargoRunCommand(
                command=command,
                args=args,
                workspace_root=workspace_root,
                active_file=active_file,
            ),
        ),
    )


@cargo_tasks.command("new")
@click.argument("name")
@click.option("--lib", "is_lib", is_flag=True, default=False, help="Create a library crate.")
@click.option(
    "--path",
    "cwd",
    type=click.Path(path_type=Path, file_okay=False, exists=True),
    default=Path("."),
    show_default=True,
    help="Directory to create the project in.",
)
def new_project(name: str, is_lib: bool, cwd: Path) -> None:
    """Create a new cargo project (`cargo new`)."""

    _finish(
        CARGO_CONTROLLER.create_project(
            CargoProjectCommand(
                name=name,
                kind=ProjectKind.LIB if is_lib else ProjectKind.BIN,
                cwd=cwd,
            ),
        ),
    )


@cargo_tasks.command("init")
@click.argument("name")
@click.option("--lib", "is_lib", is_flag=True, default=False, help="Create a library crate.")
@click.option(
    "--path",
    "cwd",
    type=click.Path(path_type=Path, file_okay=False, exists=True),
    default=Path("."),
    show_default=True,
    help="Existing directory to initialize.",
)
def init_project(name: str, is_lib: bool, cwd: Path) -> None:
    """Initialize a cargo project in an existing directory (`cargo init`)."""

    _finish(
        CARGO_CONTROLLER.create_project(
            CargoProjectCommand(
                name=name,
                kind=ProjectKind.LIB if is_lib else ProjectKind.BIN,
                cwd=cwd,
                init=True,
            ),
        ),
    )


@cargo_tasks.command("playground")
@click.option("--lib", "is_lib", is_flag=True, default=False, help="Create a library crate.")
def playground(is_lib: bool) -> None:
    """Create a throwaway crate in a new temporary directory."""

    _finish(
        CARGO_CONTROLLER.create_playground(
            CargoPlaygroundCommand(kind=ProjectKind.LIB if is_lib else ProjectKind.BIN),
        ),
    )


def _finish(result: CargoRunResult) -> None:
    for line in result.lines:
        click.echo(line)
    if result.exit_code != 0:
        raise SystemExit(result.exit_code)


if __name__ == "__main__":  # pragma: no cover
    cargo_tasks()
