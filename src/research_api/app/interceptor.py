"""Per-event handling of tool invocations and tool errors within one run."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Literal

from .approvals import ApprovalGate
from .events import ErrorEvent, ToolUseEvent
from .models import PendingApproval
from .runs import TaskRun

logger = logging.getLogger(__name__)

SEARCH_TOOL = "firecrawl_search"


def fix_search_sources(tool_name: str, args: Any) -> Any:
    """Rewrite deprecated `sources: ["web"]` to `sources: [{"type": "web"}]`.

    Already-correct input is returned unchanged (same object).
    """
    if tool_name != SEARCH_TOOL or not isinstance(args, dict):
        return args
    sources = args.get("sources")
    if not isinstance(sources, list) or not any(isinstance(item, str) for item in sources):
        return args
    fixed = [{"type": item} if isinstance(item, str) else item for item in sources]
    return {**args, "sources": fixed}


PARAMETER_FIXES: tuple[Callable[[str, Any], Any], ...] = (fix_search_sources,)


def apply_parameter_fixes(tool_name: str, args: Any) -> Any:
    for fix in PARAMETER_FIXES:
        args = fix(tool_name, args)
    return args


@dataclass(frozen=True)
class InterceptVerdict:
    action: Literal["execute", "skip", "suspend"]
    approval: PendingApproval | None = None


EXECUTE = InterceptVerdict("execute")
SKIP = InterceptVerdict("skip")


class ToolCallInterceptor:
    """Applies parameter fixes, the tool-call budget and the approval gate.

    `gate` is None when the caller did not ask for approvals.
    """

    def __init__(
        self,
        run: TaskRun,
        *,
        gate: ApprovalGate | None = None,
        count_gated_skips: bool = True,
    ) -> None:
        self.run = run
        self.gate = gate
        self.count_gated_skips = count_gated_skips
        self._warned = False

    async def on_tool_use(self, event: ToolUseEvent) -> InterceptVerdict:
        fixed_args = apply_parameter_fixes(event.tool_name, event.args)
        if fixed_args is not event.args:
            logger.info(
                "tool_call event=args_fixed run_id=%s tool=%s before=%s after=%s",
                self.run.run_id,
                event.tool_name,
                event.args,
                fixed_args,
            )
            event.replace_args(fixed_args)

        run = self.run
        run.tool_calls += 1
        budget = run.budget.max_tool_calls
        logger.info(
            "tool_call event=seen run_id=%s call=%d budget=%d tool=%s",
            run.run_id,
            run.tool_calls,
            budget,
            event.tool_name,
        )

        # Zero budget means tools are disabled, not that the run ran out.
        if budget == 0:
            event.skip()
            return SKIP

        if run.tool_calls > budget:
            if not self._warned:
                logger.warning(
                    "tool_call event=budget_exhausted run_id=%s budget=%d", run.run_id, budget
                )
                self._warned = True
            run.interrupted = True
            event.skip()
            return SKIP

        if self.gate is None:
            return EXECUTE

        verdict = await self.gate.check(
            session_id=run.session_id,
            tool_name=event.tool_name,
            tool_args=event.args,
        )
        if verdict.action == "suspend":
            return InterceptVerdict("suspend", approval=verdict.approval)
        if verdict.action == "skip":
            logger.info(
                "tool_call event=rejected_skip run_id=%s tool=%s", run.run_id, event.tool_name
            )
            if not self.count_gated_skips:
                run.tool_calls -= 1
            event.skip()
            return SKIP
        return EXECUTE

    async def on_error(self, event: ErrorEvent) -> InterceptVerdict:
        logger.warning("tool_call event=error run_id=%s error=%s", self.run.run_id, event.message)
        if self.gate is None:
            return SKIP
        verdict = await self.gate.check_error(session_id=self.run.session_id, message=event.message)
        if verdict.action == "suspend":
            return InterceptVerdict("suspend", approval=verdict.approval)
        return SKIP
