"""Cargo task execution: process runner, diagnostic parser, coordinator."""

from cargo_tasks.task.coordinator import TaskCoordinator, TaskOutcome, TaskStatus
from cargo_tasks.task.diagnostic_parser import DiagnosticParser
from cargo_tasks.task.models import DiagnosticSeverity, FileDiagnostic, MalformedEventError
from cargo_tasks.task.process import (
    CargoProcess,
    CargoTaskError,
    SpawnFailedError,
    TaskCancelledError,
)

__all__ = [
    "CargoProcess",
    "CargoTaskError",
    "DiagnosticParser",
    "DiagnosticSeverity",
    "FileDiagnostic",
    "MalformedEventError",
    "SpawnFailedError",
    "TaskCancelledError",
    "TaskCoordinator",
    "TaskOutcome",
    "TaskStatus",
]
