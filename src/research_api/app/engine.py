"""Task-execution engine contract consumed by the run controller.

The engine is the black box that talks to the language model and dispatches
tools. The controller only relies on:

- `start_run(...)`: returns a lazy async iterator of progress events; raises
  `TaskConcurrencyError` synchronously when a run is already active.
- `list_tools()`: best-effort introspection.
- `export_state()` / `import_state(...)`: opaque conversation state, used for
  checkpoints and per-session history.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass, replace
from typing import Any, Protocol


class TaskConcurrencyError(RuntimeError):
    """Raised by an engine that is already executing another run."""


@dataclass(frozen=True)
class RunBudget:
    max_tool_calls: int
    max_iterations: int
    timeout_s: float

    def without_tools(self) -> RunBudget:
        return replace(self, max_tool_calls=0)


@dataclass(frozen=True)
class RunConfig:
    model: str
    budget: RunBudget
    auto_continue: bool = True


class TaskEngine(Protocol):
    def start_run(self, description: str, config: RunConfig) -> AsyncIterator[Any]: ...

    async def list_tools(self) -> list[str]: ...

    def export_state(self) -> Any: ...

    def import_state(self, state: Any) -> None: ...

    def reset_state(self) -> None: ...


MODEL_ALIASES = {
    "deepseek-accurate": "deepseek-reasoner",
    "deepseek-fast": "deepseek-chat",
}
DEFAULT_MODEL = "deepseek-chat"


def resolve_model_name(model: str | None) -> str:
    """Map the client-facing model choice to the provider model name."""
    if not model:
        return DEFAULT_MODEL
    return MODEL_ALIASES.get(model, DEFAULT_MODEL)


class ExclusiveRun:
    """Async iterator wrapper that frees the engine slot however the run ends.

    A bare async generator that is closed before its first `__anext__` never
    runs its `finally` block, so the slot is released here instead.
    """

    def __init__(self, release: Any, events: AsyncIterator[Any]) -> None:
        self._release = release
        self._events = events
        self._released = False

    def __aiter__(self) -> ExclusiveRun:
        return self

    async def __anext__(self) -> Any:
        try:
            return await self._events.__anext__()
        except BaseException:
            self._free()
            raise

    async def aclose(self) -> None:
        try:
            aclose = getattr(self._events, "aclose", None)
            if aclose is not None:
                await aclose()
        finally:
            self._free()

    def _free(self) -> None:
        if not self._released:
            self._released = True
            self._release()


class ExclusiveEngine:
    """Base for engines that can run one task at a time."""

    def __init__(self) -> None:
        self._busy = False
        self.messages: list[dict[str, Any]] = []

    @property
    def busy(self) -> bool:
        return self._busy

    def _claim(self, events: AsyncIterator[Any]) -> ExclusiveRun:
        if self._busy:
            raise TaskConcurrencyError("Another task is already running on this engine")
        self._busy = True
        return ExclusiveRun(self._release, events)

    def _release(self) -> None:
        self._busy = False

    def export_state(self) -> list[dict[str, Any]]:
        return [dict(message) for message in self.messages]

    def import_state(self, state: Any) -> None:
        if not isinstance(state, list):
            raise TypeError(f"Unsupported engine state: {type(state)!r}")
        self.messages = [dict(message) for message in state]

    def reset_state(self) -> None:
        self.messages = []
