"""Tool registry, schema-enforcing gateway and the Firecrawl web tools."""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError
from dataclasses import dataclass
from typing import Any, Callable

from pydantic import BaseModel, ConfigDict, Field

from .http import JsonTransport, post_json, post_json_with_retry

logger = logging.getLogger(__name__)


class StrictModel(BaseModel):
    model_config = ConfigDict(extra="forbid")


class SearchSource(StrictModel):
    type: str = "web"


class FirecrawlSearchInput(StrictModel):
    query: str = Field(min_length=1)
    limit: int = Field(default=5, ge=1, le=20)
    sources: list[SearchSource] | None = None
    tbs: str | None = None
    location: str | None = None


class FirecrawlSearchResult(BaseModel):
    model_config = ConfigDict(extra="allow")

    url: str = ""
    title: str = ""
    description: str = ""


class FirecrawlSearchOutput(StrictModel):
    results: list[FirecrawlSearchResult]


class FirecrawlScrapeInput(StrictModel):
    url: str = Field(min_length=1)
    only_main_content: bool = True


class FirecrawlScrapeOutput(StrictModel):
    url: str
    markdown: str
    title: str = ""


@dataclass(frozen=True)
class ToolSpec:
    input_model: type[BaseModel]
    output_model: type[BaseModel]
    fn: Callable[[BaseModel], Any]
    description: str = ""
    implementation: str = "http"


class ToolExecutionError(RuntimeError):
    """Raised by a tool implementation when the upstream call is unusable."""


class ToolGateway:
    """Execute registered tools with strict validation and retry/timeout controls."""

    def __init__(
        self,
        *,
        registry: dict[str, ToolSpec] | None = None,
        tool_timeout_s: float = 30.0,
        max_retries: int = 0,
        backoff_s: float = 0.0,
    ) -> None:
        self.registry = dict(registry or {})
        self.tool_timeout_s = tool_timeout_s
        self.max_retries = max_retries
        self.backoff_s = backoff_s

    def names(self) -> list[str]:
        return sorted(self.registry)

    def tool_definitions(self) -> list[dict[str, Any]]:
        """Function-calling schemas in the chat-completions `tools` format."""
        return [
            {
                "type": "function",
                "function": {
                    "name": name,
                    "description": spec.description,
                    "parameters": spec.input_model.model_json_schema(),
                },
            }
            for name, spec in sorted(self.registry.items())
        ]

    def execute(self, tool_name: str, args: Any) -> dict[str, Any]:
        started_at = time.perf_counter()
        attempts = 0
        final_error = "unknown error"
        spec = self.registry.get(tool_name)
        implementation = spec.implementation if spec is not None else "unknown"

        for attempt in range(self.max_retries + 1):
            attempts = attempt + 1
            try:
                output = self._execute_once(tool_name, args)
                return {
                    "tool": tool_name,
                    "status": "ok",
                    "output": output,
                    "implementation": implementation,
                    "attempts": attempts,
                    "duration_ms": _duration_ms(started_at),
                }
            except Exception as exc:  # noqa: BLE001
                final_error = str(exc)
                if attempt < self.max_retries and self.backoff_s > 0:
                    time.sleep(self.backoff_s)

        logger.warning(
            "tool_gateway event=failed tool=%s attempts=%d error=%s", tool_name, attempts, final_error
        )
        return {
            "tool": tool_name,
            "status": "failed",
            "error": final_error,
            "implementation": implementation,
            "attempts": attempts,
            "duration_ms": _duration_ms(started_at),
        }

    def _execute_once(self, tool_name: str, args: Any) -> dict[str, Any]:
        spec = self.registry.get(tool_name)
        if spec is None:
            raise ValueError(f"Unknown tool: {tool_name}")

        payload = spec.input_model.model_validate(args if args is not None else {})
        with ThreadPoolExecutor(max_workers=1) as pool:
            future = pool.submit(spec.fn, payload)
            try:
                raw_output = future.result(timeout=self.tool_timeout_s)
            except TimeoutError as exc:
                raise TimeoutError(
                    f"Tool '{tool_name}' timed out after {self.tool_timeout_s:.2f}s"
                ) from exc

        validated_output = spec.output_model.model_validate(raw_output)
        return validated_output.model_dump(mode="json")


def _duration_ms(started_at: float) -> float:
    return round((time.perf_counter() - started_at) * 1000.0, 2)


class FirecrawlClient:
    """Firecrawl v1 search and scrape endpoints."""

    def __init__(
        self,
        *,
        api_key: str,
        base_url: str = "https://api.firecrawl.dev/v1",
        timeout_s: float = 30.0,
        max_retries: int = 0,
        backoff_s: float = 0.0,
        transport: JsonTransport = post_json,
    ) -> None:
        if not api_key:
            raise ValueError("Firecrawl API key is missing")
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s
        self.max_retries = max_retries
        self.backoff_s = backoff_s
        self._transport = transport

    def search(self, payload: FirecrawlSearchInput) -> FirecrawlSearchOutput:
        body = self._post("search", payload.model_dump(mode="json", exclude_none=True))
        data = body.get("data")
        if isinstance(data, dict):
            # Multi-source responses group results by source type.
            data = data.get("web", [])
        if not isinstance(data, list):
            raise ToolExecutionError("firecrawl_search returned no result list")
        return FirecrawlSearchOutput(
            results=[FirecrawlSearchResult.model_validate(item) for item in data if isinstance(item, dict)]
        )

    def scrape(self, payload: FirecrawlScrapeInput) -> FirecrawlScrapeOutput:
        body = self._post(
            "scrape",
            {
                "url": payload.url,
                "formats": ["markdown"],
                "onlyMainContent": payload.only_main_content,
            },
        )
        data = body.get("data")
        if not isinstance(data, dict):
            raise ToolExecutionError("firecrawl_scrape returned no document")
        metadata = data.get("metadata") if isinstance(data.get("metadata"), dict) else {}
        return FirecrawlScrapeOutput(
            url=payload.url,
            markdown=str(data.get("markdown", "")),
            title=str(metadata.get("title", "")),
        )

    def _post(self, endpoint: str, payload: dict[str, Any]) -> dict[str, Any]:
        body = post_json_with_retry(
            self._transport,
            f"{self.base_url}/{endpoint}",
            payload,
            {"Authorization": f"Bearer {self.api_key}"},
            timeout_s=self.timeout_s,
            max_retries=self.max_retries,
            backoff_s=self.backoff_s,
            label=f"firecrawl_{endpoint}",
        )
        if body.get("success") is False:
            raise ToolExecutionError(f"firecrawl_{endpoint} failed: {body.get('error', 'unknown error')}")
        return body


def build_firecrawl_registry(client: FirecrawlClient) -> dict[str, ToolSpec]:
    return {
        "firecrawl_search": ToolSpec(
            input_model=FirecrawlSearchInput,
            output_model=FirecrawlSearchOutput,
            fn=client.search,
            description="Search the web. `sources` must be a list of objects such as [{\"type\": \"web\"}].",
        ),
        "firecrawl_scrape": ToolSpec(
            input_model=FirecrawlScrapeInput,
            output_model=FirecrawlScrapeOutput,
            fn=client.scrape,
            description="Fetch one web page and return its main content as markdown.",
        ),
    }


def build_tool_gateway(
    *,
    firecrawl_api_key: str,
    firecrawl_base_url: str,
    tool_timeout_s: float,
    max_retries: int,
    backoff_s: float,
    transport: JsonTransport = post_json,
) -> ToolGateway:
    """Gateway with the web tools registered when a Firecrawl key is configured."""
    registry: dict[str, ToolSpec] = {}
    if firecrawl_api_key:
        client = FirecrawlClient(
            api_key=firecrawl_api_key,
            base_url=firecrawl_base_url,
            timeout_s=tool_timeout_s,
            transport=transport,
        )
        registry.update(build_firecrawl_registry(client))
    else:
        logger.info("tool_gateway event=web_tools_disabled reason=missing_firecrawl_key")
    return ToolGateway(
        registry=registry,
        tool_timeout_s=tool_timeout_s,
        max_retries=max_retries,
        backoff_s=backoff_s,
    )
