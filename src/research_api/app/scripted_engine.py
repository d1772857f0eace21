"""Engine that replays scripted events instead of calling a model.

A test double for the model engine; the service always builds the real one. A
script entry may be:

- a mapping or typed event: yielded as-is;
- an exception instance: raised mid-stream;
- a zero-argument callable: invoked as a side effect (awaited when it returns
  an awaitable), nothing is yielded.

Tool-use entries are treated as executed unless the consumer skipped them
before asking for the next event.
"""

from __future__ import annotations

import inspect
from collections.abc import AsyncIterator, Iterable, Mapping, MutableMapping
from copy import deepcopy
from typing import Any

from .engine import ExclusiveEngine, RunConfig
from .events import MessageEvent, ToolUseEvent, extract_tool_args, extract_tool_name


class ScriptedEngine(ExclusiveEngine):
    def __init__(
        self,
        scripts: Iterable[Iterable[Any]] = (),
        *,
        tools: Iterable[str] = (),
        fail_on_start: BaseException | None = None,
    ) -> None:
        super().__init__()
        self._scripts = [list(script) for script in scripts]
        self._tools = list(tools)
        self.fail_on_start = fail_on_start
        self.executed: list[tuple[str, Any]] = []
        self.skipped: list[str] = []
        self.started: list[tuple[str, RunConfig]] = []

    def add_script(self, script: Iterable[Any]) -> None:
        self._scripts.append(list(script))

    def start_run(self, description: str, config: RunConfig) -> AsyncIterator[Any]:
        if self.fail_on_start is not None:
            raise self.fail_on_start
        script = self._scripts[0] if self._scripts else []
        run = self._claim(self._replay(description, script))
        if self._scripts:
            self._scripts.pop(0)
        self.started.append((description, config))
        return run

    async def list_tools(self) -> list[str]:
        return list(self._tools)

    async def _replay(self, description: str, script: list[Any]) -> AsyncIterator[Any]:
        self.messages.append({"role": "user", "content": description})
        for entry in script:
            if isinstance(entry, BaseException):
                raise entry
            if callable(entry) and not isinstance(entry, Mapping):
                result = entry()
                if inspect.isawaitable(result):
                    await result
                continue

            # Copy so a script can be replayed without carrying verdicts over.
            item = deepcopy(entry)
            yield item

            if isinstance(item, MessageEvent):
                self.messages.append({"role": item.role, "content": item.text})
            elif isinstance(item, ToolUseEvent):
                self._record_tool(item.tool_name, item.args, item.skipped)
            elif isinstance(item, MutableMapping) and item.get("type") == "tool_use":
                args = item["args"] if "args" in item else extract_tool_args(item)
                self._record_tool(extract_tool_name(item), args, bool(item.get("skipped")))

    def _record_tool(self, name: str, args: Any, skipped: bool) -> None:
        if skipped:
            self.skipped.append(name)
        else:
            self.executed.append((name, args))


def tool_use(name: str, args: Any = None, *, field: str = "args") -> dict[str, Any]:
    """Build a raw tool_use mapping with arguments under a chosen legacy field."""
    return {"type": "tool_use", "toolName": name, field: args}


def assistant_text(text: str) -> dict[str, Any]:
    return {
        "type": "message",
        "message": {"role": "assistant", "content": [{"type": "text", "text": text}]},
    }
