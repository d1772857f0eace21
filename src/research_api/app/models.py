"""Pydantic models shared across API, approval gate, checkpoints, and storage.

Wire models use camelCase aliases because the browser client sends and
expects camelCase keys (`sessionId`, `needsApproval`, ...). Python code uses
the snake_case field names; `populate_by_name` accepts both on input.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

Mode = Literal["quick", "deep"]
Persona = Literal["pm", "vc", "growth", "tech"]


class WireModel(BaseModel):
    """Base model for camelCase JSON payloads."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Checkpoint(WireModel):
    """Named, opaque snapshot of task-execution state."""

    id: str
    name: str
    created_at: datetime


class PendingApproval(WireModel):
    """A suspended decision point waiting for a human."""

    approval_id: str
    session_id: str
    tool_name: str
    tool_args: Any = None
    created_at: datetime
    # Absent when checkpoint creation failed or the request came from a tool error.
    checkpoint_id: str | None = None


class ApprovalDecision(WireModel):
    """Recorded outcome for one (session, tool) pair."""

    session_id: str
    tool_name: str
    approved: bool
    decided_at: datetime
    reason: str | None = None


class StoredReport(WireModel):
    id: str
    idea: str
    mode: Mode
    language: str = "en"
    persona: Persona | None = None
    model: str | None = None
    full_report: str = ""
    interrupted: bool = False
    checkpoint_id: str | None = None
    session_id: str | None = None
    progress: int = 0
    file_id: str | None = None
    file_name: str | None = None
    file_size: int | None = None
    file_type: str | None = None
    created_at: datetime
    updated_at: datetime


class ReportListItem(WireModel):
    id: str
    file_name: str | None = None
    idea: str
    mode: Mode
    persona: Persona | None = None
    interrupted: bool
    progress: int
    created_at: datetime


class AnalyzeRequest(WireModel):
    """Request body for POST /api/analyze."""

    idea: str = ""
    follow_up: str = ""
    mode: Mode = "quick"
    language: str = "en"
    persona: Persona | None = None
    model: str | None = None
    allow_web_tools: bool = True
    enable_auto_continue: bool = True
    require_tool_approval: bool = False
    checkpoint_id: str | None = None
    session_id: str | None = None
    previous_progress: int = Field(default=0, ge=0, le=100)

    def idea_text(self) -> str:
        idea = self.idea.strip()
        follow_up = self.follow_up.strip()
        if follow_up:
            return f"{idea}\n\n[User follow-up]\n{follow_up}".strip()
        return idea


class AnalysisResponse(WireModel):
    """Terminal or partial output of one run, as returned to the client."""

    report: str = ""
    interrupted: bool = False
    progress: int = 0
    checkpoint_id: str | None = None
    session_id: str | None = None
    report_id: str | None = None
    needs_approval: bool = False
    approval_id: str | None = None
    tool_name: str | None = None
    tool_args: Any = None
    file_id: str | None = None
    file_name: str | None = None
    error: str | None = None


class ToolApprovalRequest(WireModel):
    """Request body for POST /api/tool-approval."""

    approval_id: str = ""
    approved: bool = False
    reason: str | None = None


class CreateCheckpointRequest(WireModel):
    name: str = ""


class SaveCheckpointRequest(WireModel):
    session_id: str | None = None


class ReanalyzeRequest(WireModel):
    mode: Mode | None = None
    model: str | None = None
