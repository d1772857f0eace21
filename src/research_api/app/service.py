"""Wires the run controller to report storage and shapes HTTP responses."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from .controller import RunController, RunRequest, new_session_id
from .models import AnalysisResponse, StoredReport
from .runs import Failed, RunOutcome, SuspendedForApproval
from .storage import ReportStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FileInfo:
    file_name: str
    file_size: int
    file_type: str
    file_id: str | None = None


@dataclass(frozen=True)
class ServiceResult:
    status_code: int
    response: AnalysisResponse


def status_code_for(outcome: RunOutcome) -> int:
    if isinstance(outcome, Failed):
        return 503 if outcome.busy else 500
    return 200


def to_response(outcome: RunOutcome) -> AnalysisResponse:
    response = AnalysisResponse(
        report=outcome.report,
        interrupted=outcome.interrupted,
        progress=outcome.progress,
        checkpoint_id=outcome.checkpoint_id,
        session_id=outcome.session_id,
    )
    if isinstance(outcome, SuspendedForApproval):
        response.needs_approval = True
        response.approval_id = outcome.approval_id
        response.tool_name = outcome.tool_name
        response.tool_args = outcome.tool_args
    elif isinstance(outcome, Failed):
        response.error = outcome.error
    return response


def check_approval_contract(response: AnalysisResponse) -> bool:
    """A response asking for approval must name the approval and the tool.

    Violations are logged and the response is still returned.
    """
    if not response.needs_approval:
        return True
    missing = [
        name
        for name, value in (("approvalId", response.approval_id), ("toolName", response.tool_name))
        if not value
    ]
    if missing:
        logger.error(
            "analysis_response event=approval_contract_violation session_id=%s missing=%s",
            response.session_id,
            ",".join(missing),
        )
        return False
    return True


class AnalysisService:
    def __init__(
        self,
        *,
        controller: RunController,
        reports: ReportStore,
    ) -> None:
        self.controller = controller
        self.reports = reports

    async def analyze(self, request: RunRequest, *, file: FileInfo | None = None) -> ServiceResult:
        outcome = await self.controller.submit(request)
        response = to_response(outcome)
        check_approval_contract(response)
        if file is not None:
            response.file_id = file.file_id
            response.file_name = file.file_name

        report = self._save_report(request, outcome, file=file)
        if report is not None:
            response.report_id = report.id
        return ServiceResult(status_code=status_code_for(outcome), response=response)

    async def reanalyze(
        self,
        report_id: str,
        *,
        mode: str | None = None,
        model: str | None = None,
    ) -> ServiceResult | None:
        existing = self.reports.get_report(report_id)
        if existing is None:
            return None

        logger.info("report event=reanalyze report_id=%s mode=%s", report_id, mode or existing.mode)
        request = RunRequest(
            description=existing.idea,
            mode=mode or existing.mode,
            language=existing.language,
            persona=existing.persona,
            model=model or existing.model,
            allow_web_tools=True,
            session_id=new_session_id(),
        )
        file = None
        if existing.file_name is not None:
            file = FileInfo(
                file_name=existing.file_name,
                file_size=existing.file_size or 0,
                file_type=existing.file_type or "",
                file_id=existing.file_id,
            )
        return await self.analyze(request, file=file)

    def _save_report(
        self,
        request: RunRequest,
        outcome: RunOutcome,
        *,
        file: FileInfo | None,
    ) -> StoredReport | None:
        if isinstance(outcome, SuspendedForApproval):
            return None
        if isinstance(outcome, Failed) and outcome.checkpoint_id is None:
            return None
        report = self.reports.create_report(
            idea=request.description,
            mode=request.mode,
            language=request.language,
            persona=request.persona,
            model=request.model,
            full_report=outcome.report,
            interrupted=outcome.interrupted,
            checkpoint_id=outcome.checkpoint_id,
            session_id=outcome.session_id,
            progress=outcome.progress,
            file_id=file.file_id if file else None,
            file_name=file.file_name if file else None,
            file_size=file.file_size if file else None,
            file_type=file.file_type if file else None,
        )
        logger.info(
            "report event=saved report_id=%s interrupted=%s progress=%d",
            report.id,
            report.interrupted,
            report.progress,
        )
        return report
