"""Task engine backed by an OpenAI-compatible chat-completions API with tool calling."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from contextlib import aclosing
from typing import Any

from .engine import ExclusiveEngine, RunConfig
from .events import ErrorEvent, MessageEvent, OtherEvent, ToolUseEvent
from .http import JsonTransport, post_json, post_json_with_retry
from .tools import ToolGateway

logger = logging.getLogger(__name__)

CONTINUE_PROMPT = "Continue exactly where you stopped. Do not repeat content you already wrote."
UNANSWERED_RESULT = {"status": "suspended", "error": "Tool call was not executed before the run stopped"}


class OpenAIToolLoopEngine(ExclusiveEngine):
    """Runs the model/tool loop and yields one event per step.

    Each tool call is yielded as a `ToolUseEvent` before it runs. The tool is
    executed only when the consumer pulls the next event and has not skipped
    the call; arguments are read back from the event at that point.
    """

    def __init__(
        self,
        *,
        api_key: str,
        gateway: ToolGateway,
        base_url: str = "https://api.deepseek.com",
        timeout_s: float = 60.0,
        max_retries: int = 1,
        backoff_s: float = 0.5,
        max_auto_continuations: int = 3,
        transport: JsonTransport = post_json,
    ) -> None:
        super().__init__()
        self.api_key = api_key
        self.gateway = gateway
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s
        self.max_retries = max(0, max_retries)
        self.backoff_s = max(0.0, backoff_s)
        self.max_auto_continuations = max(0, max_auto_continuations)
        self._transport = transport

    def start_run(self, description: str, config: RunConfig) -> AsyncIterator[Any]:
        if not self.api_key:
            raise RuntimeError("LLM API key is not configured")
        return self._claim(self._loop(description, config))

    async def list_tools(self) -> list[str]:
        return self.gateway.names()

    async def _loop(self, description: str, config: RunConfig) -> AsyncIterator[Any]:
        # Restored checkpoints may end on a tool call that never got its reply.
        self.messages = answer_unreplied_tool_calls(self.messages)
        self.messages.append({"role": "user", "content": description})
        # With a zero budget the model is not offered tools at all.
        tools = self.gateway.tool_definitions() if config.budget.max_tool_calls > 0 else []
        continuations = 0

        for iteration in range(1, config.budget.max_iterations + 1):
            response = await asyncio.to_thread(self._complete, config.model, tools)
            choice = _first_choice(response)
            message = choice.get("message") or {}
            finish_reason = choice.get("finish_reason")
            content = _content_text(message.get("content"))
            tool_calls = [call for call in message.get("tool_calls") or [] if isinstance(call, dict)]
            logger.info(
                "llm_engine event=completion iteration=%d finish_reason=%s tool_calls=%d chars=%d",
                iteration,
                finish_reason,
                len(tool_calls),
                len(content),
            )

            entry: dict[str, Any] = {"role": "assistant", "content": content}
            if tool_calls:
                entry["tool_calls"] = tool_calls
            self.messages.append(entry)
            if content:
                yield MessageEvent(text=content)

            if tool_calls:
                try:
                    for call in tool_calls:
                        async with aclosing(self._run_tool_call(call)) as events:
                            async for event in events:
                                yield event
                finally:
                    self.messages = answer_unreplied_tool_calls(self.messages)
                continue

            if (
                finish_reason == "length"
                and config.auto_continue
                and continuations < self.max_auto_continuations
            ):
                continuations += 1
                logger.info("llm_engine event=auto_continue count=%d", continuations)
                self.messages.append({"role": "user", "content": CONTINUE_PROMPT})
                yield OtherEvent(type="auto_continue", payload={"count": continuations})
                continue
            return

        logger.warning("llm_engine event=max_iterations limit=%d", config.budget.max_iterations)

    async def _run_tool_call(self, call: dict[str, Any]) -> AsyncIterator[Any]:
        function = call.get("function") or {}
        name = str(function.get("name") or "unknown")
        event = ToolUseEvent(
            tool_name=name,
            args=_parse_arguments(function.get("arguments")),
            call_id=call.get("id"),
        )
        yield event

        if event.skipped:
            result: dict[str, Any] = {"tool": name, "status": "skipped", "error": "Tool call was not executed"}
        else:
            result = await asyncio.to_thread(self.gateway.execute, name, event.args)
        self.messages.append(
            {
                "role": "tool",
                "tool_call_id": call.get("id", ""),
                "content": json.dumps(result, ensure_ascii=False, default=str),
            }
        )
        if result.get("status") == "failed":
            yield ErrorEvent(message=f"Tool {name} failed: {result.get('error')}", error=result)

    def _complete(self, model: str, tools: list[dict[str, Any]]) -> dict[str, Any]:
        payload: dict[str, Any] = {"model": model, "messages": list(self.messages)}
        if tools:
            payload["tools"] = tools
        return post_json_with_retry(
            self._transport,
            f"{self.base_url}/chat/completions",
            payload,
            {"Authorization": f"Bearer {self.api_key}"},
            timeout_s=self.timeout_s,
            max_retries=self.max_retries,
            backoff_s=self.backoff_s,
            label="chat_completions",
        )


def _first_choice(response: dict[str, Any]) -> dict[str, Any]:
    choices = response.get("choices") or []
    if not choices or not isinstance(choices[0], dict):
        raise ValueError("Chat completion response did not contain choices")
    return choices[0]


def _content_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(
            item["text"]
            for item in content
            if isinstance(item, dict) and isinstance(item.get("text"), str)
        )
    return ""


def _parse_arguments(raw: Any) -> Any:
    """Decode a tool call's JSON arguments; undecodable input is passed through."""
    if not isinstance(raw, str):
        return raw
    if not raw.strip():
        return {}
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


def answer_unreplied_tool_calls(messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Insert a placeholder tool reply for every assistant tool call left unanswered.

    Chat-completions APIs reject a history where an assistant `tool_calls`
    message is not followed by one `tool` message per call id.
    """
    repaired: list[dict[str, Any]] = []
    index = 0
    while index < len(messages):
        message = messages[index]
        repaired.append(message)
        index += 1
        calls = message.get("tool_calls") if message.get("role") == "assistant" else None
        if not calls:
            continue

        answered: set[Any] = set()
        while index < len(messages) and messages[index].get("role") == "tool":
            answered.add(messages[index].get("tool_call_id"))
            repaired.append(messages[index])
            index += 1
        for call in calls:
            call_id = call.get("id", "") if isinstance(call, dict) else ""
            if call_id in answered:
                continue
            name = (call.get("function") or {}).get("name", "unknown") if isinstance(call, dict) else "unknown"
            repaired.append(
                {
                    "role": "tool",
                    "tool_call_id": call_id,
                    "content": json.dumps({"tool": name, **UNANSWERED_RESULT}, ensure_ascii=False),
                }
            )
    return repaired
