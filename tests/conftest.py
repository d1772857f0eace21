from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

import pytest

from research_api.app.approvals import ApprovalStore
from research_api.app.checkpoints import CheckpointCoordinator, InMemoryCheckpointManager
from research_api.app.controller import RunController
from research_api.app.scripted_engine import ScriptedEngine
from research_api.app.settings import Settings

LEGACY_BUDGET_ENV = ("MAX_TOOL_CALLS", "MAX_ITERATIONS", "ANALYSIS_TIMEOUT_MS")


class FakeClock:
    """Monotonic clock advanced by hand."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@dataclass
class Harness:
    engine: ScriptedEngine
    controller: RunController
    approvals: ApprovalStore
    checkpoints: CheckpointCoordinator
    clock: FakeClock
    settings: Settings


@pytest.fixture(autouse=True)
def _clear_budget_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in LEGACY_BUDGET_ENV:
        monkeypatch.delenv(name, raising=False)


def make_settings(**overrides) -> Settings:
    return Settings(_env_file=None, **overrides)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def settings_factory() -> Callable[..., Settings]:
    return make_settings


@pytest.fixture
def harness_factory() -> Callable[..., Harness]:
    def _build(
        engine: ScriptedEngine | None = None,
        *,
        settings: Settings | None = None,
        **overrides,
    ) -> Harness:
        engine = engine or ScriptedEngine()
        settings = settings or make_settings(**overrides)
        clock = FakeClock()
        approvals = ApprovalStore()
        checkpoints = CheckpointCoordinator(InMemoryCheckpointManager(engine))
        controller = RunController(
            engine=engine,
            settings=settings,
            checkpoints=checkpoints,
            approvals=approvals,
            clock=clock,
        )
        return Harness(
            engine=engine,
            controller=controller,
            approvals=approvals,
            checkpoints=checkpoints,
            clock=clock,
            settings=settings,
        )

    return _build
