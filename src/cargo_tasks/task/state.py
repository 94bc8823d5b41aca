"""Explicit task-coordinator state and the single-flight admission policy."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum

from cargo_tasks.task.process import CargoProcess


class Admission(str, Enum):
    """What to do with a new request given the current state."""

    START = "start"
    DROP = "drop"
    PREEMPT = "preempt"


@dataclass(slots=True, frozen=True)
class Idle:
    """No cargo task is running."""


@dataclass(slots=True, frozen=True)
class Running:
    """A cargo task is in flight; ``finished`` is set once it fully unwound."""

    process: CargoProcess
    command: str
    finished: asyncio.Event = field(default_factory=asyncio.Event, compare=False)


TaskState = Idle | Running

IDLE = Idle()


def decide(state: TaskState, *, force: bool) -> Admission:
    """Single-flight policy: start when idle, otherwise preempt or drop."""

    if isinstance(state, Idle):
        return Admission.START
    return Admission.PREEMPT if force else Admission.DROP
