"""Collaborators receiving task output: diagnostics, plain text, notifications."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Protocol

import rich_click as click

from cargo_tasks.task.models import FileDiagnostic

logger = logging.getLogger(__name__)


class DiagnosticSink(Protocol):
    """Receives parsed diagnostics for presentation."""

    def publish(self, diagnostic: FileDiagnostic, cwd: Path) -> None:
        """Publish one diagnostic whose path may be relative to ``cwd``."""

    def clear(self) -> None:
        """Drop diagnostics of the previous task."""


class TextSink(Protocol):
    """Receives raw output lines for human display."""

    def append_line(self, line: str) -> None:
        """Append one line of output."""

    def clear(self) -> None:
        """Drop output of the previous task."""


class Notifier(Protocol):
    """User-facing messages distinct from task output."""

    def info(self, message: str) -> None:
        """Show an informational message."""

    def error(self, message: str) -> None:
        """Show an error message."""


class DiagnosticCollection:
    """In-memory diagnostic sink aggregating diagnostics per resolved file."""

    def __init__(self) -> None:
        self._by_file: dict[Path, list[FileDiagnostic]] = {}

    def publish(self, diagnostic: FileDiagnostic, cwd: Path) -> None:
        path = resolve_diagnostic_path(diagnostic.file_path, cwd)
        self._by_file.setdefault(path, []).append(diagnostic)

    def clear(self) -> None:
        self._by_file.clear()

    def by_file(self) -> dict[Path, list[FileDiagnostic]]:
        return {path: list(items) for path, items in self._by_file.items()}

    def all(self) -> list[tuple[Path, FileDiagnostic]]:
        return [(path, item) for path, items in self._by_file.items() for item in items]

    def __len__(self) -> int:
        return sum(len(items) for items in self._by_file.values())

    def render_lines(self) -> list[str]:
        """Render as ``path:line:col: severity: message`` with 1-based positions."""

        lines: list[str] = []
        for path, diagnostic in self.all():
            start = diagnostic.range
            first, *rest = diagnostic.message.split("\n")
            lines.append(
                f"{path}:{start.start_line + 1}:{start.start_column + 1}: "
                f"{diagnostic.severity.value}: {first}",
            )
            lines.extend(f"    {extra}" for extra in rest)
        return lines


class BufferedTextSink:
    """Keeps output lines in memory."""

    def __init__(self) -> None:
        self.lines: list[str] = []

    def append_line(self, line: str) -> None:
        self.lines.append(line)

    def clear(self) -> None:
        self.lines.clear()


class EchoTextSink:
    """Streams output lines to the terminal as they arrive."""

    def __init__(self, *, enabled: bool = True) -> None:
        self.enabled = enabled

    def append_line(self, line: str) -> None:
        if self.enabled:
            click.echo(line)

    def clear(self) -> None:
        # A terminal cannot be cleared retroactively.
        return


class ClickNotifier:
    """Prints notifications to stderr and records them in the log."""

    def __init__(self) -> None:
        self.messages: list[str] = []

    def info(self, message: str) -> None:
        logger.info(message)
        self.messages.append(message)
        click.secho(message, fg="yellow", err=True)

    def error(self, message: str) -> None:
        logger.error(message)
        self.messages.append(message)
        click.secho(message, fg="red", err=True)


def resolve_diagnostic_path(file_path: str, cwd: Path) -> Path:
    path = Path(file_path)
    if path.is_absolute():
        return path
    return cwd / path
