"""Run controller: drives one analysis run from request to outcome.

Termination paths, in priority order:

1. approval suspension: the outcome is returned as soon as the gate asks;
2. concurrency conflict: reported as busy, never raised;
3. any other stream error: interrupted, fallback checkpoint, partial output;
4. timeout at an event boundary: interrupted, stop consuming;
5. stream exhausted: completed.
"""

from __future__ import annotations

import logging
import time
from collections import OrderedDict
from collections.abc import Callable
from contextlib import aclosing
from copy import deepcopy
from dataclasses import dataclass
from typing import Any

from .approvals import ApprovalGate, ApprovalStore
from .checkpoints import CheckpointCoordinator
from .engine import RunConfig, TaskEngine, resolve_model_name
from .events import ConcurrencyConflict, ErrorEvent, EventStreamAdapter, MessageEvent, ToolUseEvent
from .interceptor import ToolCallInterceptor
from .models import Mode, PendingApproval, Persona
from .progress import estimate_progress
from .prompts import build_research_task
from .runs import Completed, Failed, Interrupted, RunOutcome, SuspendedForApproval, TaskRun
from .scheduler import SingleFlightScheduler
from .settings import Settings

logger = logging.getLogger(__name__)

BUSY_MESSAGE = "Server busy, please retry later. (Another analysis is already in progress)"


@dataclass(frozen=True)
class RunRequest:
    description: str
    mode: Mode = "quick"
    language: str = "en"
    persona: Persona | None = None
    model: str | None = None
    allow_web_tools: bool = True
    auto_continue: bool = True
    require_tool_approval: bool = False
    checkpoint_id: str | None = None
    session_id: str | None = None
    previous_progress: int = 0


def new_session_id() -> str:
    return str(int(time.time() * 1000))


class RunController:
    def __init__(
        self,
        *,
        engine: TaskEngine,
        settings: Settings,
        checkpoints: CheckpointCoordinator,
        approvals: ApprovalStore,
        scheduler: SingleFlightScheduler | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.engine = engine
        self.settings = settings
        self.checkpoints = checkpoints
        self.approvals = approvals
        self.scheduler = scheduler or SingleFlightScheduler()
        self.adapter = EventStreamAdapter(engine)
        self.gate = ApprovalGate(
            approvals,
            checkpoints,
            gated_prefixes=settings.gated_tool_prefixes,
        )
        self._clock = clock
        self._session_history: OrderedDict[str, Any] = OrderedDict()

    async def submit(self, request: RunRequest) -> RunOutcome:
        """Run through the single execution slot, waiting behind earlier submissions."""
        label = f"analysis:{request.session_id or 'new'}"
        return await self.scheduler.submit(lambda: self.execute(request), label=label)

    async def execute(self, request: RunRequest) -> RunOutcome:
        """Run immediately. Callers other than `submit` must hold the slot themselves."""
        session_id = request.session_id or new_session_id()
        restored = bool(request.session_id) and self._restore_session(request.session_id)
        if request.checkpoint_id and await self.checkpoints.try_apply(request.checkpoint_id):
            restored = True
        if not restored:
            self._reset_state(session_id)

        try:
            return await self._run(request, session_id)
        finally:
            if request.session_id:
                self._save_session(request.session_id)

    async def list_tools(self) -> list[str]:
        try:
            return await self.engine.list_tools()
        except Exception as exc:  # noqa: BLE001
            logger.warning("analysis_run event=list_tools_failed reason=%s", exc)
            return []

    async def _run(self, request: RunRequest, session_id: str) -> RunOutcome:
        budget = self.settings.budget_for(request.mode, allow_web_tools=request.allow_web_tools)
        config = RunConfig(
            model=resolve_model_name(request.model),
            budget=budget,
            auto_continue=request.auto_continue,
        )
        run = TaskRun(
            description=request.description,
            mode=request.mode,
            budget=budget,
            session_id=session_id,
            previous_progress=request.previous_progress,
            started_at=self._clock(),
        )
        logger.info(
            "analysis_run event=start run_id=%s session_id=%s mode=%s max_tools=%d "
            "max_iter=%d timeout_s=%.1f model=%s persona=%s approval=%s",
            run.run_id,
            session_id,
            request.mode,
            budget.max_tool_calls,
            budget.max_iterations,
            budget.timeout_s,
            config.model,
            request.persona or "default",
            request.require_tool_approval,
        )
        logger.info("analysis_run event=tools run_id=%s tools=%s", run.run_id, await self.list_tools())

        task = build_research_task(
            request.description,
            language=request.language,
            mode=request.mode,
            persona=request.persona,
        )
        try:
            stream = self.adapter.open(task, config)
        except ConcurrencyConflict as exc:
            logger.error("analysis_run event=busy run_id=%s reason=%s", run.run_id, exc)
            return Failed(error=BUSY_MESSAGE, session_id=session_id, busy=True)
        except Exception as exc:  # noqa: BLE001
            logger.exception("analysis_run event=start_failed run_id=%s", run.run_id)
            return Failed(error=str(exc) or type(exc).__name__, session_id=session_id)

        interceptor = ToolCallInterceptor(
            run,
            gate=self.gate if request.require_tool_approval else None,
            count_gated_skips=self.settings.count_gated_skips,
        )
        try:
            async with aclosing(stream):
                async for event in stream:
                    if run.elapsed_s(self._clock()) > budget.timeout_s:
                        logger.warning(
                            "analysis_run event=timeout run_id=%s timeout_s=%.1f",
                            run.run_id,
                            budget.timeout_s,
                        )
                        run.interrupted = True
                        break

                    if isinstance(event, ToolUseEvent):
                        verdict = await interceptor.on_tool_use(event)
                    elif isinstance(event, ErrorEvent):
                        verdict = await interceptor.on_error(event)
                    else:
                        if isinstance(event, MessageEvent) and event.role == "assistant":
                            run.output += event.text
                        continue

                    if verdict.action == "suspend" and verdict.approval is not None:
                        return self._suspended(run, verdict.approval)
        except ConcurrencyConflict as exc:
            logger.error("analysis_run event=busy run_id=%s reason=%s", run.run_id, exc)
            return Failed(
                error=BUSY_MESSAGE,
                session_id=session_id,
                busy=True,
                report=run.output,
                progress=self._progress(run, interrupted=True),
            )
        except Exception:  # noqa: BLE001
            logger.exception("analysis_run event=stream_error run_id=%s", run.run_id)
            run.interrupted = True

        return await self._finalize(run)

    def _suspended(self, run: TaskRun, approval: PendingApproval) -> SuspendedForApproval:
        logger.info(
            "analysis_run event=suspended run_id=%s approval_id=%s tool=%s checkpoint_id=%s",
            run.run_id,
            approval.approval_id,
            approval.tool_name,
            approval.checkpoint_id,
        )
        return SuspendedForApproval(
            report=run.output,
            session_id=run.session_id,
            progress=self._progress(run, interrupted=True),
            approval_id=approval.approval_id,
            tool_name=approval.tool_name,
            tool_args=approval.tool_args,
            checkpoint_id=approval.checkpoint_id,
        )

    async def _finalize(self, run: TaskRun) -> Completed | Interrupted:
        if run.interrupted:
            checkpoint = await self.checkpoints.try_create(
                f"auto_{run.session_id}_{run.description[:30]}"
            )
            run.checkpoint_id = checkpoint.id if checkpoint else None

        progress = self._progress(run, interrupted=run.interrupted)
        logger.info(
            "analysis_run event=completed run_id=%s elapsed_s=%.2f tool_calls=%d/%d "
            "interrupted=%s progress=%d->%d checkpoint_id=%s",
            run.run_id,
            run.elapsed_s(self._clock()),
            min(run.tool_calls, run.budget.max_tool_calls),
            run.budget.max_tool_calls,
            run.interrupted,
            run.previous_progress,
            progress,
            run.checkpoint_id,
        )
        if run.interrupted:
            return Interrupted(
                report=run.output,
                session_id=run.session_id,
                progress=progress,
                checkpoint_id=run.checkpoint_id,
            )
        return Completed(report=run.output, session_id=run.session_id)

    def _progress(self, run: TaskRun, *, interrupted: bool) -> int:
        return estimate_progress(
            interrupted=interrupted,
            tool_calls=run.tool_calls,
            max_tool_calls=run.budget.max_tool_calls,
            elapsed_s=run.elapsed_s(self._clock()),
            timeout_s=run.budget.timeout_s,
            previous_progress=run.previous_progress,
        )

    def _restore_session(self, session_id: str) -> bool:
        history = self._session_history.get(session_id)
        if history is None:
            return False
        try:
            self.engine.import_state(deepcopy(history))
        except Exception as exc:  # noqa: BLE001
            logger.warning("analysis_run event=session_restore_failed session_id=%s reason=%s", session_id, exc)
            return False
        self._session_history.move_to_end(session_id)
        logger.info("analysis_run event=session_restored session_id=%s", session_id)
        return True

    def _reset_state(self, session_id: str) -> None:
        logger.info("analysis_run event=fresh_start session_id=%s", session_id)
        try:
            self.engine.reset_state()
        except Exception as exc:  # noqa: BLE001
            logger.warning("analysis_run event=reset_failed session_id=%s reason=%s", session_id, exc)

    def _save_session(self, session_id: str) -> None:
        try:
            self._session_history[session_id] = deepcopy(self.engine.export_state())
        except Exception as exc:  # noqa: BLE001
            logger.warning("analysis_run event=session_save_failed session_id=%s reason=%s", session_id, exc)
            return
        self._session_history.move_to_end(session_id)
        while len(self._session_history) > self.settings.max_sessions:
            evicted, _ = self._session_history.popitem(last=False)
            logger.info("analysis_run event=session_evicted session_id=%s", evicted)
