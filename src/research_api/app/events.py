"""Typed progress events and the adapter over an engine's event stream.

Engines may yield typed events directly or loosely shaped mappings. Mappings
are normalized here so the controller only ever inspects four event types.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Mapping, MutableMapping
from dataclasses import dataclass, field
from typing import Any

from .engine import RunConfig, TaskConcurrencyError, TaskEngine

logger = logging.getLogger(__name__)

# Prioritized fallback chain for tool arguments; first non-absent value wins.
TOOL_ARGUMENT_FIELDS = ("toolArgs", "arguments", "args", "input")
TOOL_NAME_FIELDS = ("toolName", "name", "tool")


class ConcurrencyConflict(RuntimeError):
    """Another task execution already occupies the engine."""


@dataclass
class MessageEvent:
    text: str
    role: str = "assistant"
    type: str = field(default="message", init=False)


@dataclass
class ToolUseEvent:
    """A tool invocation the controller may rewrite or veto before it runs.

    The producing engine resumes only after the controller asks for the next
    event, so `skipped` and `args` are final by the time the engine reads them.
    When the event was normalized from a mutable mapping, both are written
    back to that mapping under `skipped` / `args`.
    """

    tool_name: str
    args: Any = None
    call_id: str | None = None
    raw: MutableMapping[str, Any] | None = field(default=None, repr=False)
    skipped: bool = False
    type: str = field(default="tool_use", init=False)

    def skip(self) -> None:
        self.skipped = True
        if self.raw is not None:
            self.raw["skipped"] = True

    def replace_args(self, args: Any) -> None:
        self.args = args
        if self.raw is not None:
            self.raw["args"] = args


@dataclass
class ErrorEvent:
    message: str
    error: Any = None
    type: str = field(default="error", init=False)


@dataclass
class OtherEvent:
    type: str
    payload: Any = None


TaskEvent = MessageEvent | ToolUseEvent | ErrorEvent | OtherEvent


def extract_tool_args(raw: Mapping[str, Any]) -> Any:
    """Return the tool arguments from the first field that is present and not None."""
    for name in TOOL_ARGUMENT_FIELDS:
        value = raw.get(name)
        if value is not None:
            return value
    return None


def extract_tool_name(raw: Mapping[str, Any]) -> str:
    for name in TOOL_NAME_FIELDS:
        value = raw.get(name)
        if isinstance(value, str) and value:
            return value
    return "unknown"


def _message_text(raw: Mapping[str, Any]) -> tuple[str, str]:
    message = raw.get("message")
    if isinstance(message, Mapping):
        role = str(message.get("role", "assistant"))
        content = message.get("content", "")
    else:
        role = str(raw.get("role", "assistant"))
        content = raw.get("text", raw.get("content", ""))

    if isinstance(content, str):
        return role, content
    segments: list[str] = []
    if isinstance(content, list):
        for item in content:
            if isinstance(item, Mapping) and item.get("type") == "text":
                text = item.get("text")
                if isinstance(text, str):
                    segments.append(text)
    return role, "".join(segments)


def _error_message(raw: Mapping[str, Any]) -> tuple[str, Any]:
    error = raw.get("error")
    if isinstance(error, Mapping):
        return str(error.get("message", error)), error
    if isinstance(error, BaseException):
        return str(error), error
    if error is not None:
        return str(error), error
    return str(raw.get("message", "")), None


def normalize_event(raw: Any) -> TaskEvent:
    """Convert one engine event to its typed form."""
    if isinstance(raw, (MessageEvent, ToolUseEvent, ErrorEvent, OtherEvent)):
        return raw
    if not isinstance(raw, Mapping):
        return OtherEvent(type=type(raw).__name__, payload=raw)

    event_type = str(raw.get("type", ""))
    if event_type == "message":
        role, text = _message_text(raw)
        return MessageEvent(text=text, role=role)
    if event_type == "tool_use":
        return ToolUseEvent(
            tool_name=extract_tool_name(raw),
            args=extract_tool_args(raw),
            call_id=raw.get("id") or raw.get("toolUseId"),
            raw=raw if isinstance(raw, MutableMapping) else None,
        )
    if event_type == "error":
        message, error = _error_message(raw)
        return ErrorEvent(message=message, error=error)
    return OtherEvent(type=event_type or "unknown", payload=raw)


class EventStreamAdapter:
    """Opens engine runs and exposes them as a typed event stream."""

    def __init__(self, engine: TaskEngine) -> None:
        self.engine = engine

    def open(self, description: str, config: RunConfig) -> AsyncIterator[TaskEvent]:
        """Start a run.

        Raises `ConcurrencyConflict` before any event is produced when the
        engine reports that it is busy.
        """
        try:
            source = self.engine.start_run(description, config)
        except TaskConcurrencyError as exc:
            raise ConcurrencyConflict(str(exc)) from exc
        return _TypedStream(source)


class _TypedStream:
    """One-event-at-a-time typed view over an engine stream."""

    def __init__(self, source: AsyncIterator[Any]) -> None:
        self._source = source

    def __aiter__(self) -> _TypedStream:
        return self

    async def __anext__(self) -> TaskEvent:
        try:
            raw = await self._source.__anext__()
        except TaskConcurrencyError as exc:
            raise ConcurrencyConflict(str(exc)) from exc
        return normalize_event(raw)

    async def aclose(self) -> None:
        aclose = getattr(self._source, "aclose", None)
        if aclose is not None:
            await aclose()
