"""Application settings."""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .engine import RunBudget

PROJECT_ROOT = Path(__file__).resolve().parents[3]


class Settings(BaseSettings):
    """Runtime settings loaded from environment variables."""

    app_name: str = "research-agent-api"
    app_env: str = "dev"

    quick_max_tool_calls: int = Field(default=5, ge=0)
    quick_max_iterations: int = Field(default=20, ge=1)
    quick_timeout_s: float = Field(default=120.0, gt=0.0)
    deep_max_tool_calls: int = Field(default=999, ge=0)
    deep_max_iterations: int = Field(default=50, ge=1)
    deep_timeout_s: float = Field(default=300.0, gt=0.0)

    llm_base_url: str = "https://api.deepseek.com"
    llm_api_key: str = ""
    llm_timeout_s: float = Field(default=60.0, ge=0.5)
    llm_max_retries: int = Field(default=1, ge=0)
    llm_backoff_s: float = Field(default=0.5, ge=0.0)
    max_auto_continuations: int = Field(default=3, ge=0)

    firecrawl_api_key: str = ""
    firecrawl_base_url: str = "https://api.firecrawl.dev/v1"
    tool_timeout_s: float = Field(default=30.0, ge=0.01)
    tool_max_retries: int = Field(default=1, ge=0)
    tool_retry_backoff_s: float = Field(default=0.0, ge=0.0)

    gated_tool_prefixes: list[str] = Field(default_factory=lambda: ["firecrawl_"])
    approval_retention_s: float = Field(default=3600.0, gt=0.0)
    approval_sweep_interval_s: float = Field(default=600.0, gt=0.0)
    # Rejected gated calls still consume the tool-call budget when true.
    count_gated_skips: bool = True

    # In-memory retention; the oldest entries are dropped first.
    max_checkpoints: int = Field(default=50, ge=1)
    max_sessions: int = Field(default=100, ge=1)

    upload_dir: str = ""
    file_snippet_chars: int = Field(default=4000, ge=0)

    model_config = SettingsConfigDict(
        env_prefix="RESEARCH_AGENT_",
        extra="ignore",
        env_file=(PROJECT_ROOT / ".env", PROJECT_ROOT / ".env.local"),
        env_file_encoding="utf-8",
    )

    def resolved_llm_api_key(self) -> str:
        return self.llm_api_key or os.getenv("DEEPSEEK_API_KEY", "")

    def resolved_firecrawl_api_key(self) -> str:
        return self.firecrawl_api_key or os.getenv("FIRECRAWL_API_KEY", "")

    def quick_budget(self) -> RunBudget:
        """Quick-mode budget; the legacy unprefixed env names win when set."""
        timeout_ms = _env_int("ANALYSIS_TIMEOUT_MS")
        return RunBudget(
            max_tool_calls=_env_int("MAX_TOOL_CALLS", default=self.quick_max_tool_calls),
            max_iterations=_env_int("MAX_ITERATIONS", default=self.quick_max_iterations),
            timeout_s=timeout_ms / 1000.0 if timeout_ms else self.quick_timeout_s,
        )

    def deep_budget(self) -> RunBudget:
        return RunBudget(
            max_tool_calls=self.deep_max_tool_calls,
            max_iterations=self.deep_max_iterations,
            timeout_s=self.deep_timeout_s,
        )

    def budget_for(self, mode: str, *, allow_web_tools: bool = True) -> RunBudget:
        budget = self.deep_budget() if mode == "deep" else self.quick_budget()
        if not allow_web_tools:
            return budget.without_tools()
        return budget


def _env_int(name: str, *, default: int = 0) -> int:
    """Read integer env var; return default when unset/invalid."""
    raw_value = os.getenv(name)
    if raw_value is None:
        return default
    try:
        return int(raw_value)
    except ValueError:
        return default


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
