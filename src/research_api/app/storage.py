"""Report storage interface and the in-process backend."""

from __future__ import annotations

import threading
import time
from typing import Any, Protocol
from uuid import uuid4

from .checkpoints import utc_now
from .models import ReportListItem, StoredReport

IDEA_EXCERPT_CHARS = 100


def new_report_id() -> str:
    return f"report_{int(time.time() * 1000)}_{uuid4().hex[:9]}"


def idea_excerpt(idea: str, limit: int = IDEA_EXCERPT_CHARS) -> str:
    if len(idea) > limit:
        return idea[:limit] + "..."
    return idea


class ReportStore(Protocol):
    def create_report(self, **fields: Any) -> StoredReport: ...

    def get_report(self, report_id: str) -> StoredReport | None: ...

    def list_reports(self) -> list[ReportListItem]: ...

    def delete_report(self, report_id: str) -> StoredReport | None: ...


class InMemoryReportStore:
    """Reports live for the lifetime of the process."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._reports: dict[str, StoredReport] = {}

    def create_report(self, **fields: Any) -> StoredReport:
        now = utc_now()
        record = StoredReport(
            id=fields.pop("id", None) or new_report_id(),
            created_at=now,
            updated_at=now,
            **fields,
        )
        with self._lock:
            self._reports[record.id] = record
        return record

    def get_report(self, report_id: str) -> StoredReport | None:
        with self._lock:
            return self._reports.get(report_id)

    def list_reports(self) -> list[ReportListItem]:
        with self._lock:
            reports = list(self._reports.values())
        reports.sort(key=lambda item: item.created_at, reverse=True)
        return [
            ReportListItem(
                id=report.id,
                file_name=report.file_name,
                idea=idea_excerpt(report.idea),
                mode=report.mode,
                persona=report.persona,
                interrupted=report.interrupted,
                progress=report.progress,
                created_at=report.created_at,
            )
            for report in reports
        ]

    def delete_report(self, report_id: str) -> StoredReport | None:
        with self._lock:
            return self._reports.pop(report_id, None)
