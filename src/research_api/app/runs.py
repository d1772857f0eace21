"""Run state owned by the controller and the outcomes a run can end in."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any
from uuid import uuid4

from .engine import RunBudget
from .models import Mode


@dataclass
class TaskRun:
    """One execution attempt. Mutated only by the controller and interceptor."""

    description: str
    mode: Mode
    budget: RunBudget
    session_id: str
    previous_progress: int = 0
    run_id: str = field(default_factory=lambda: f"run_{uuid4().hex[:12]}")
    started_at: float = field(default_factory=time.monotonic)
    output: str = ""
    tool_calls: int = 0
    interrupted: bool = False
    checkpoint_id: str | None = None

    def elapsed_s(self, now: float) -> float:
        return max(0.0, now - self.started_at)


@dataclass(frozen=True)
class Completed:
    report: str
    session_id: str
    progress: int = 100
    interrupted: bool = field(default=False, init=False)
    checkpoint_id: str | None = field(default=None, init=False)


@dataclass(frozen=True)
class Interrupted:
    report: str
    session_id: str
    progress: int
    checkpoint_id: str | None = None
    interrupted: bool = field(default=True, init=False)


@dataclass(frozen=True)
class SuspendedForApproval:
    report: str
    session_id: str
    progress: int
    approval_id: str
    tool_name: str
    tool_args: Any = None
    checkpoint_id: str | None = None
    interrupted: bool = field(default=True, init=False)


@dataclass(frozen=True)
class Failed:
    error: str
    session_id: str
    # Another run held the engine; the client should retry later.
    busy: bool = False
    report: str = ""
    progress: int = 0
    checkpoint_id: str | None = None
    interrupted: bool = field(default=True, init=False)


RunOutcome = Completed | Interrupted | SuspendedForApproval | Failed
