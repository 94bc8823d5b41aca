"""Locate the cargo project directory to run tasks in."""

from __future__ import annotations

import logging
from pathlib import Path

logger = logging.getLogger(__name__)

MANIFEST_NAME = "Cargo.toml"


class WorkingDirectoryError(RuntimeError):
    """No directory containing ``Cargo.toml`` could be resolved."""


class WorkingDirectoryResolver:
    """Resolve the crate root from the file being worked on.

    Resolution order:

    * the nearest ``Cargo.toml`` above the active file, within the workspace;
    * the directory resolved last time, if it still has a ``Cargo.toml``;
    * the workspace root, if it has a ``Cargo.toml``.
    """

    def __init__(self, workspace_root: Path) -> None:
        self.workspace_root = workspace_root.resolve()
        self._remembered: Path | None = None

    @property
    def remembered(self) -> Path | None:
        return self._remembered

    def resolve(self, active_file: Path | None = None) -> Path:
        try:
            found = self._from_active_file(active_file)
        except WorkingDirectoryError as error:
            previous = self._previous()
            if previous is not None:
                return previous
            if (self.workspace_root / MANIFEST_NAME).is_file():
                return self.workspace_root
            raise error from None

        self._remembered = found
        return found

    def _from_active_file(self, active_file: Path | None) -> Path:
        if active_file is None:
            raise WorkingDirectoryError("No active document")

        resolved = active_file.resolve()
        if not resolved.is_relative_to(self.workspace_root):
            raise WorkingDirectoryError("Current document not in the workspace")

        start = resolved if resolved.is_dir() else resolved.parent
        for candidate in (start, *start.parents):
            if (candidate / MANIFEST_NAME).is_file():
                logger.debug("Found %s in %s", MANIFEST_NAME, candidate)
                return candidate
            if candidate == self.workspace_root:
                break
        raise WorkingDirectoryError("Cargo.toml hasn't been found within the workspace")

    def _previous(self) -> Path | None:
        if self._remembered is None:
            return None
        if not (self._remembered / MANIFEST_NAME).is_file():
            return None
        return self._remembered
