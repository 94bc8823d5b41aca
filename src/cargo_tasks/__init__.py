"""Run cargo tasks and turn their JSON output into file diagnostics."""

from cargo_tasks.task import (
    CargoProcess,
    DiagnosticParser,
    FileDiagnostic,
    SpawnFailedError,
    TaskCancelledError,
    TaskCoordinator,
)

__version__ = "0.1.0"

__all__ = [
    "CargoProcess",
    "DiagnosticParser",
    "FileDiagnostic",
    "SpawnFailedError",
    "TaskCancelledError",
    "TaskCoordinator",
    "__version__",
]
