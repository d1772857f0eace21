"""FastAPI app entrypoint for the research analysis service."""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager, suppress
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from fastapi import FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.responses import JSONResponse

from research_api.app.approvals import ApprovalStore
from research_api.app.checkpoints import CheckpointCoordinator, CheckpointNotFound, InMemoryCheckpointManager
from research_api.app.controller import RunController, RunRequest
from research_api.app.engine import TaskEngine
from research_api.app.models import (
    AnalyzeRequest,
    CreateCheckpointRequest,
    ReanalyzeRequest,
    SaveCheckpointRequest,
    ToolApprovalRequest,
)
from research_api.app.openai_engine import OpenAIToolLoopEngine
from research_api.app.service import AnalysisService, FileInfo, ServiceResult
from research_api.app.settings import Settings, get_settings
from research_api.app.storage import InMemoryReportStore, ReportStore
from research_api.app.tools import build_tool_gateway
from research_api.app.uploads import Attachment, LocalFileStorage, compose_idea_text

logger = logging.getLogger(__name__)

PERSONAS = ("pm", "vc", "growth", "tech")


@dataclass
class Runtime:
    settings: Settings
    engine: TaskEngine
    approvals: ApprovalStore
    checkpoints: CheckpointCoordinator
    reports: ReportStore
    controller: RunController
    service: AnalysisService
    files: LocalFileStorage | None = None


def build_engine(settings: Settings) -> OpenAIToolLoopEngine:
    gateway = build_tool_gateway(
        firecrawl_api_key=settings.resolved_firecrawl_api_key(),
        firecrawl_base_url=settings.firecrawl_base_url,
        tool_timeout_s=settings.tool_timeout_s,
        max_retries=settings.tool_max_retries,
        backoff_s=settings.tool_retry_backoff_s,
    )
    return OpenAIToolLoopEngine(
        api_key=settings.resolved_llm_api_key(),
        gateway=gateway,
        base_url=settings.llm_base_url,
        timeout_s=settings.llm_timeout_s,
        max_retries=settings.llm_max_retries,
        backoff_s=settings.llm_backoff_s,
        max_auto_continuations=settings.max_auto_continuations,
    )


def build_runtime(
    settings: Settings,
    *,
    engine: TaskEngine | None = None,
    reports: ReportStore | None = None,
) -> Runtime:
    engine = engine or build_engine(settings)
    approvals = ApprovalStore(retention=timedelta(seconds=settings.approval_retention_s))
    checkpoints = CheckpointCoordinator(
        InMemoryCheckpointManager(engine, max_checkpoints=settings.max_checkpoints)
    )
    reports = reports or InMemoryReportStore()
    controller = RunController(
        engine=engine,
        settings=settings,
        checkpoints=checkpoints,
        approvals=approvals,
    )
    return Runtime(
        settings=settings,
        engine=engine,
        approvals=approvals,
        checkpoints=checkpoints,
        reports=reports,
        controller=controller,
        service=AnalysisService(controller=controller, reports=reports),
        files=LocalFileStorage(settings.upload_dir) if settings.upload_dir else None,
    )


def _ensure_runtime_state(
    app: FastAPI,
    *,
    settings: Settings,
    engine_override: TaskEngine | None,
    reports_override: ReportStore | None,
) -> Runtime:
    if not hasattr(app.state, "runtime"):
        app.state.runtime = build_runtime(
            settings,
            engine=engine_override,
            reports=reports_override,
        )
    return app.state.runtime


async def _sweep_approvals(approvals: ApprovalStore, interval_s: float) -> None:
    while True:
        await asyncio.sleep(interval_s)
        approvals.purge_expired()


def _analysis_json(result: ServiceResult) -> JSONResponse:
    return JSONResponse(
        status_code=result.status_code,
        content=result.response.model_dump(mode="json", by_alias=True),
    )


def _form_flag(value: str | None, *, default: bool) -> bool:
    if not value:
        return default
    normalized = value.strip().lower()
    return normalized != "false" if default else normalized == "true"


def create_app(
    *,
    engine: TaskEngine | None = None,
    reports: ReportStore | None = None,
    settings_override: Settings | None = None,
) -> FastAPI:
    settings = settings_override or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        runtime = _ensure_runtime_state(
            app,
            settings=settings,
            engine_override=engine,
            reports_override=reports,
        )
        sweeper = asyncio.create_task(
            _sweep_approvals(runtime.approvals, settings.approval_sweep_interval_s)
        )
        try:
            yield
        finally:
            sweeper.cancel()
            with suppress(asyncio.CancelledError):
                await sweeper
            await runtime.controller.scheduler.aclose()

    app = FastAPI(title=settings.app_name, lifespan=lifespan)

    def _runtime(request: Request) -> Runtime:
        return _ensure_runtime_state(
            request.app,
            settings=settings,
            engine_override=engine,
            reports_override=reports,
        )

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok", "service": settings.app_name}

    @app.get("/api/tools")
    async def tools(request: Request) -> dict[str, list[str]]:
        return {"tools": await _runtime(request).controller.list_tools()}

    @app.post("/api/analyze")
    async def analyze(payload: AnalyzeRequest, request: Request) -> JSONResponse:
        if not payload.idea.strip():
            raise HTTPException(status_code=400, detail="Missing idea")
        idea = payload.idea_text()

        logger.info(
            "api event=analyze mode=%s language=%s persona=%s session_id=%s checkpoint_id=%s",
            payload.mode,
            payload.language,
            payload.persona or "default",
            payload.session_id,
            payload.checkpoint_id,
        )
        run_request = RunRequest(
            description=idea,
            mode=payload.mode,
            language=payload.language,
            persona=payload.persona,
            model=payload.model,
            allow_web_tools=payload.allow_web_tools,
            auto_continue=payload.enable_auto_continue,
            require_tool_approval=payload.require_tool_approval,
            checkpoint_id=payload.checkpoint_id,
            session_id=payload.session_id,
            previous_progress=payload.previous_progress,
        )
        return _analysis_json(await _runtime(request).service.analyze(run_request))

    @app.post("/api/analyze-file")
    async def analyze_file(
        request: Request,
        file: UploadFile | None = File(default=None),
        note: str = Form(default=""),
        mode: str = Form(default="quick"),
        language: str = Form(default="en"),
        persona: str | None = Form(default=None),
        model: str | None = Form(default=None),
        allowWebTools: str | None = Form(default=None),  # noqa: N803
        enableAutoContinue: str | None = Form(default=None),  # noqa: N803
        requireToolApproval: str | None = Form(default=None),  # noqa: N803
        checkpointId: str | None = Form(default=None),  # noqa: N803
        sessionId: str | None = Form(default=None),  # noqa: N803
    ) -> JSONResponse:
        runtime = _runtime(request)
        attachment: Attachment | None = None
        if file is not None and file.filename:
            attachment = Attachment(
                file_name=file.filename,
                data=await file.read(),
                content_type=file.content_type or "application/octet-stream",
            )
        if attachment is None and not note.strip():
            raise HTTPException(status_code=400, detail="Missing file and note")

        file_info: FileInfo | None = None
        if attachment is not None:
            file_info = FileInfo(
                file_name=attachment.file_name,
                file_size=attachment.size,
                file_type=attachment.content_type,
                file_id=_store_upload(runtime, attachment),
            )

        run_request = RunRequest(
            description=compose_idea_text(
                note, attachment, snippet_chars=settings.file_snippet_chars
            ),
            mode="deep" if mode == "deep" else "quick",
            language=language or "en",
            persona=persona if persona in PERSONAS else None,
            model=model or None,
            allow_web_tools=_form_flag(allowWebTools, default=True),
            auto_continue=_form_flag(enableAutoContinue, default=True),
            require_tool_approval=_form_flag(requireToolApproval, default=False),
            checkpoint_id=checkpointId or None,
            session_id=sessionId or None,
        )
        return _analysis_json(await runtime.service.analyze(run_request, file=file_info))

    @app.post("/api/tool-approval")
    def tool_approval(payload: ToolApprovalRequest, request: Request) -> dict[str, Any]:
        if not payload.approval_id:
            raise HTTPException(status_code=400, detail="Missing approvalId")
        approvals = _runtime(request).approvals
        approvals.purge_expired()
        decision = approvals.record_decision(
            payload.approval_id,
            approved=payload.approved,
            reason=payload.reason,
        )
        if decision is None:
            raise HTTPException(status_code=404, detail="Approval not found or expired")
        return {"success": True, "approved": decision.approved, "toolName": decision.tool_name}

    @app.get("/api/checkpoints")
    async def list_checkpoints(request: Request) -> dict[str, Any]:
        checkpoints = await _runtime(request).checkpoints.list()
        return {"checkpoints": [item.model_dump(mode="json", by_alias=True) for item in checkpoints]}

    @app.post("/api/checkpoints")
    async def create_checkpoint(payload: CreateCheckpointRequest, request: Request) -> dict[str, Any]:
        name = payload.name.strip()
        if not name:
            raise HTTPException(status_code=400, detail="Missing checkpoint name")
        checkpoint = await _runtime(request).checkpoints.create(name)
        return {"success": True, "checkpoint": checkpoint.model_dump(mode="json", by_alias=True)}

    @app.post("/api/checkpoints/{checkpoint_id}/apply")
    async def apply_checkpoint(checkpoint_id: str, request: Request) -> dict[str, bool]:
        try:
            await _runtime(request).checkpoints.apply(checkpoint_id)
        except CheckpointNotFound as exc:
            raise HTTPException(status_code=404, detail="Checkpoint not found") from exc
        return {"success": True}

    @app.delete("/api/checkpoints/{checkpoint_id}")
    async def delete_checkpoint(checkpoint_id: str, request: Request) -> dict[str, bool]:
        try:
            await _runtime(request).checkpoints.delete(checkpoint_id)
        except CheckpointNotFound as exc:
            raise HTTPException(status_code=404, detail="Checkpoint not found") from exc
        return {"success": True}

    @app.post("/api/save-checkpoint")
    async def save_checkpoint(payload: SaveCheckpointRequest, request: Request) -> dict[str, str]:
        now_ms = int(time.time() * 1000)
        session_id = payload.session_id or str(now_ms)
        checkpoint = await _runtime(request).checkpoints.create(
            f"manual_interrupt_{session_id}_{now_ms}"
        )
        return {"checkpointId": checkpoint.id}

    @app.get("/api/reports")
    def list_reports(request: Request) -> dict[str, Any]:
        items = _runtime(request).reports.list_reports()
        return {"reports": [item.model_dump(mode="json", by_alias=True) for item in items]}

    @app.get("/api/reports/{report_id}")
    def get_report(report_id: str, request: Request) -> dict[str, Any]:
        runtime = _runtime(request)
        report = runtime.reports.get_report(report_id)
        if report is None:
            raise HTTPException(status_code=404, detail="Report not found")
        file_url = None
        if report.file_id and runtime.files is not None:
            file_url = runtime.files.url_for(report.file_id)
        return {"report": report.model_dump(mode="json", by_alias=True), "fileUrl": file_url}

    @app.delete("/api/reports/{report_id}")
    def delete_report(report_id: str, request: Request) -> dict[str, bool]:
        runtime = _runtime(request)
        report = runtime.reports.delete_report(report_id)
        if report is None:
            raise HTTPException(status_code=404, detail="Report not found")
        if report.file_id and runtime.files is not None:
            try:
                runtime.files.delete(report.file_id)
            except OSError as exc:
                logger.warning("report event=file_delete_failed file_id=%s reason=%s", report.file_id, exc)
        return {"success": True}

    @app.post("/api/reports/{report_id}/reanalyze")
    async def reanalyze_report(
        report_id: str,
        request: Request,
        payload: ReanalyzeRequest | None = None,
    ) -> JSONResponse:
        payload = payload or ReanalyzeRequest()
        result = await _runtime(request).service.reanalyze(
            report_id,
            mode=payload.mode,
            model=payload.model,
        )
        if result is None:
            raise HTTPException(status_code=404, detail="Report not found")
        return _analysis_json(result)

    return app


def _store_upload(runtime: Runtime, attachment: Attachment) -> str | None:
    if runtime.files is None:
        return None
    try:
        return runtime.files.upload(LocalFileStorage.make_key(attachment.file_name), attachment.data)
    except OSError as exc:
        logger.warning("upload event=store_failed file=%s reason=%s", attachment.file_name, exc)
        return None


# Module-level app for `uvicorn research_api.main:app`.
app = create_app()
