from __future__ import annotations

import time
from typing import Any

import pytest
from pydantic import BaseModel

from research_api.app.http import post_json_with_retry
from research_api.app.tools import (
    FirecrawlClient,
    FirecrawlScrapeInput,
    FirecrawlSearchInput,
    ToolExecutionError,
    ToolGateway,
    ToolSpec,
    build_tool_gateway,
)


class EchoInput(BaseModel):
    text: str


class EchoOutput(BaseModel):
    text: str


class FakeTransport:
    def __init__(self, *responses: Any) -> None:
        self.responses = list(responses)
        self.calls: list[tuple[str, dict[str, Any], dict[str, str]]] = []

    def __call__(self, url, payload, headers, timeout_s) -> dict[str, Any]:
        self.calls.append((url, payload, dict(headers)))
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def _echo_gateway(fn, **kwargs) -> ToolGateway:
    return ToolGateway(
        registry={"echo": ToolSpec(input_model=EchoInput, output_model=EchoOutput, fn=fn, implementation="local")},
        **kwargs,
    )


def test_gateway_returns_validated_output_with_metadata() -> None:
    gateway = _echo_gateway(lambda payload: {"text": payload.text.upper()})

    result = gateway.execute("echo", {"text": "hi"})

    assert result["status"] == "ok"
    assert result["output"] == {"text": "HI"}
    assert result["implementation"] == "local"
    assert result["attempts"] == 1
    assert result["duration_ms"] >= 0


def test_gateway_reports_unknown_tool_and_bad_input() -> None:
    gateway = _echo_gateway(lambda payload: {"text": payload.text})

    unknown = gateway.execute("missing", {})
    invalid = gateway.execute("echo", {"wrong": 1})

    assert unknown["status"] == "failed"
    assert "Unknown tool: missing" in unknown["error"]
    assert invalid["status"] == "failed"
    assert "text" in invalid["error"]


def test_gateway_times_out_slow_tool() -> None:
    def slow(payload: EchoInput) -> dict[str, str]:
        time.sleep(0.2)
        return {"text": payload.text}

    gateway = _echo_gateway(slow, tool_timeout_s=0.05)

    result = gateway.execute("echo", {"text": "x"})

    assert result["status"] == "failed"
    assert "timed out" in result["error"]


def test_gateway_retries_transient_failure() -> None:
    calls = {"count": 0}

    def flaky(payload: EchoInput) -> dict[str, str]:
        calls["count"] += 1
        if calls["count"] == 1:
            raise ConnectionError("reset")
        return {"text": payload.text}

    gateway = _echo_gateway(flaky, max_retries=1)

    result = gateway.execute("echo", {"text": "x"})

    assert result["status"] == "ok"
    assert result["attempts"] == 2


def test_web_tools_registered_only_with_key() -> None:
    without_key = build_tool_gateway(
        firecrawl_api_key="",
        firecrawl_base_url="https://firecrawl.test/v1",
        tool_timeout_s=1.0,
        max_retries=0,
        backoff_s=0.0,
    )
    with_key = build_tool_gateway(
        firecrawl_api_key="fc-key",
        firecrawl_base_url="https://firecrawl.test/v1",
        tool_timeout_s=1.0,
        max_retries=0,
        backoff_s=0.0,
    )

    assert without_key.names() == []
    assert with_key.names() == ["firecrawl_scrape", "firecrawl_search"]
    definitions = {item["function"]["name"]: item for item in with_key.tool_definitions()}
    assert "query" in definitions["firecrawl_search"]["function"]["parameters"]["properties"]


def test_search_through_gateway_posts_cleaned_payload() -> None:
    transport = FakeTransport(
        {"success": True, "data": [{"url": "https://a.test", "title": "A", "description": "first"}]}
    )
    gateway = build_tool_gateway(
        firecrawl_api_key="fc-key",
        firecrawl_base_url="https://firecrawl.test/v1/",
        tool_timeout_s=1.0,
        max_retries=0,
        backoff_s=0.0,
        transport=transport,
    )

    result = gateway.execute("firecrawl_search", {"query": "meal kits", "sources": [{"type": "web"}]})

    assert result["status"] == "ok"
    assert result["output"]["results"][0]["url"] == "https://a.test"
    url, payload, headers = transport.calls[0]
    assert url == "https://firecrawl.test/v1/search"
    assert payload == {"query": "meal kits", "limit": 5, "sources": [{"type": "web"}]}
    assert headers == {"Authorization": "Bearer fc-key"}


def test_search_rejects_string_sources() -> None:
    transport = FakeTransport()
    gateway = build_tool_gateway(
        firecrawl_api_key="fc-key",
        firecrawl_base_url="https://firecrawl.test/v1",
        tool_timeout_s=1.0,
        max_retries=0,
        backoff_s=0.0,
        transport=transport,
    )

    result = gateway.execute("firecrawl_search", {"query": "q", "sources": ["web"]})

    assert result["status"] == "failed"
    assert transport.calls == []


def test_search_accepts_results_grouped_by_source() -> None:
    client = FirecrawlClient(
        api_key="fc-key",
        transport=FakeTransport({"success": True, "data": {"web": [{"url": "https://b.test", "rank": 1}]}}),
    )

    output = client.search(FirecrawlSearchInput(query="q"))

    assert [item.url for item in output.results] == ["https://b.test"]
    assert output.results[0].model_extra == {"rank": 1}


def test_scrape_returns_markdown_and_title() -> None:
    transport = FakeTransport(
        {"success": True, "data": {"markdown": "# Title", "metadata": {"title": "Example"}}}
    )
    client = FirecrawlClient(api_key="fc-key", transport=transport)

    output = client.scrape(FirecrawlScrapeInput(url="https://c.test"))

    assert output.markdown == "# Title"
    assert output.title == "Example"
    assert transport.calls[0][1] == {"url": "https://c.test", "formats": ["markdown"], "onlyMainContent": True}


def test_unsuccessful_firecrawl_body_raises() -> None:
    client = FirecrawlClient(
        api_key="fc-key",
        transport=FakeTransport({"success": False, "error": "Invalid sources"}),
    )

    with pytest.raises(ToolExecutionError, match="Invalid sources"):
        client.search(FirecrawlSearchInput(query="q"))


def test_firecrawl_client_requires_key() -> None:
    with pytest.raises(ValueError):
        FirecrawlClient(api_key="")


def test_post_json_with_retry_retries_then_raises_last_error() -> None:
    recovering = FakeTransport(TimeoutError("slow"), {"ok": True})
    failing = FakeTransport(ValueError("bad json"), ValueError("still bad"))

    assert post_json_with_retry(
        recovering, "https://x.test", {}, {}, timeout_s=1.0, max_retries=1, backoff_s=0.0, label="t"
    ) == {"ok": True}
    with pytest.raises(ValueError, match="still bad"):
        post_json_with_retry(
            failing, "https://x.test", {}, {}, timeout_s=1.0, max_retries=1, backoff_s=0.0, label="t"
        )
    assert len(recovering.calls) == 2
