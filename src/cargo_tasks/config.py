"""Runtime configuration for cargo task execution."""

from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field

CONFIGURABLE_COMMANDS: tuple[str, ...] = ("build", "check", "clippy", "run", "test")


@dataclass(slots=True)
class Settings:
    """Cargo task settings loaded from ``CARGO_TASKS_*`` variables."""

    cargo_path: str = "cargo"
    cargo_env: dict[str, str] = field(default_factory=dict)
    show_output: bool = True
    publish_diagnostics: bool = True
    default_args: dict[str, tuple[str, ...]] = field(default_factory=dict)
    configurations: dict[str, dict[str, tuple[str, ...]]] = field(default_factory=dict)

    @classmethod
    def from_env(cls) -> Settings:
        """Load settings from environment with defaults matching a plain ``cargo``."""

        return cls(
            cargo_path=os.getenv("CARGO_TASKS_CARGO_PATH", "").strip() or "cargo",
            cargo_env=_collect_cargo_env(),
            show_output=_env_bool("CARGO_TASKS_SHOW_OUTPUT", default=True),
            publish_diagnostics=_env_bool("CARGO_TASKS_PUBLISH_DIAGNOSTICS", default=True),
            default_args=_collect_default_args(),
            configurations=_collect_configurations(),
        )

    def configuration_args(self, command: str, title: str) -> tuple[str, ...]:
        """Arguments of the named custom configuration for ``command``."""

        available = self.configurations.get(command, {})
        if not available:
            raise ValueError(
                f"There are no custom configurations for cargo {command}. "
                f"Set CARGO_TASKS_{command.upper()}_CONFIGURATIONS.",
            )
        if title not in available:
            raise ValueError(
                f"Unknown cargo {command} configuration {title!r}. "
                f"Available: {', '.join(available)}",
            )
        return available[title]


def _collect_cargo_env() -> dict[str, str]:
    raw = os.getenv("CARGO_TASKS_CARGO_ENV", "").strip()
    if not raw:
        return {}

    overrides: dict[str, str] = {}
    for part in raw.split(","):
        token = part.strip()
        if not token:
            continue
        if "=" not in token:
            raise ValueError(
                "Invalid CARGO_TASKS_CARGO_ENV entry: "
                f"{token!r}. Expected format '<NAME>=<value>'.",
            )
        name, value = token.split("=", 1)
        name = name.strip()
        if not name:
            raise ValueError(f"Invalid CARGO_TASKS_CARGO_ENV entry: {token!r} (empty name)")
        overrides[name] = value.strip()
    return overrides


def _collect_default_args() -> dict[str, tuple[str, ...]]:
    default_args: dict[str, tuple[str, ...]] = {}
    for command in CONFIGURABLE_COMMANDS:
        name = f"CARGO_TASKS_{command.upper()}_ARGS"
        raw = os.getenv(name, "").strip()
        if not raw:
            continue
        try:
            default_args[command] = tuple(shlex.split(raw))
        except ValueError as error:
            raise ValueError(f"Invalid {name} value: {raw!r} ({error})") from error
    return default_args


def _collect_configurations() -> dict[str, dict[str, tuple[str, ...]]]:
    configurations: dict[str, dict[str, tuple[str, ...]]] = {}
    for command in CONFIGURABLE_COMMANDS:
        name = f"CARGO_TASKS_{command.upper()}_CONFIGURATIONS"
        raw = os.getenv(name, "").strip()
        if not raw:
            continue

        # Entries are ';'-separated because cargo arguments may contain commas.
        entries: dict[str, tuple[str, ...]] = {}
        for part in raw.split(";"):
            token = part.strip()
            if not token:
                continue
            if "|" not in token:
                raise ValueError(
                    f"Invalid {name} entry: {token!r}. Expected format '<title>|<args>'.",
                )
            title, args_raw = token.split("|", 1)
            title = title.strip()
            if not title:
                raise ValueError(f"Invalid {name} entry: {token!r} (empty title)")
            try:
                entries[title] = tuple(shlex.split(args_raw))
            except ValueError as error:
                raise ValueError(f"Invalid {name} entry: {token!r} ({error})") from error
        if entries:
            configurations[command] = entries
    return configurations


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
