import asyncio

from research_api.app.approvals import ApprovalGate, ApprovalStore
from research_api.app.checkpoints import CheckpointCoordinator, InMemoryCheckpointManager
from research_api.app.engine import RunBudget
from research_api.app.events import ErrorEvent, ToolUseEvent
from research_api.app.interceptor import ToolCallInterceptor, apply_parameter_fixes, fix_search_sources
from research_api.app.runs import TaskRun
from research_api.app.scripted_engine import ScriptedEngine


def _run(max_tool_calls: int = 5, session_id: str = "s1") -> TaskRun:
    return TaskRun(
        description="idea",
        mode="quick",
        budget=RunBudget(max_tool_calls=max_tool_calls, max_iterations=20, timeout_s=120.0),
        session_id=session_id,
    )


def _gate() -> tuple[ApprovalGate, ApprovalStore]:
    store = ApprovalStore()
    checkpoints = CheckpointCoordinator(InMemoryCheckpointManager(ScriptedEngine()))
    return ApprovalGate(store, checkpoints), store


def test_fix_search_sources_rewrites_string_items() -> None:
    fixed = fix_search_sources("firecrawl_search", {"query": "q", "sources": ["web"]})

    assert fixed == {"query": "q", "sources": [{"type": "web"}]}


def test_fix_search_sources_is_idempotent_and_scoped() -> None:
    args = {"query": "q", "sources": ["web", {"type": "news"}]}
    once = apply_parameter_fixes("firecrawl_search", args)
    twice = apply_parameter_fixes("firecrawl_search", once)

    assert once == twice
    assert twice is once
    assert fix_search_sources("firecrawl_scrape", {"sources": ["web"]}) == {"sources": ["web"]}
    assert fix_search_sources("firecrawl_search", None) is None


def test_fixed_arguments_are_written_back_to_event() -> None:
    raw = {"type": "tool_use", "toolName": "firecrawl_search", "args": {"sources": ["web"]}}
    event = ToolUseEvent(tool_name="firecrawl_search", args=raw["args"], raw=raw)

    verdict = asyncio.run(ToolCallInterceptor(_run()).on_tool_use(event))

    assert verdict.action == "execute"
    assert raw["args"] == {"sources": [{"type": "web"}]}


def test_calls_over_budget_are_skipped_and_interrupt() -> None:
    run = _run(max_tool_calls=2)
    interceptor = ToolCallInterceptor(run)

    async def scenario() -> list[str]:
        actions = []
        for _ in range(4):
            event = ToolUseEvent(tool_name="lookup", args={})
            verdict = await interceptor.on_tool_use(event)
            actions.append(verdict.action)
            assert event.skipped is (verdict.action == "skip")
        return actions

    assert asyncio.run(scenario()) == ["execute", "execute", "skip", "skip"]
    assert run.interrupted is True
    assert run.tool_calls == 4


def test_zero_budget_skips_without_interrupting() -> None:
    run = _run(max_tool_calls=0)
    event = ToolUseEvent(tool_name="lookup", args={})

    verdict = asyncio.run(ToolCallInterceptor(run).on_tool_use(event))

    assert verdict.action == "skip"
    assert event.skipped is True
    assert run.interrupted is False


def test_first_gated_call_suspends_and_reuses_pending_approval() -> None:
    gate, store = _gate()
    run = _run()
    interceptor = ToolCallInterceptor(run, gate=gate)

    async def scenario():
        first = await interceptor.on_tool_use(ToolUseEvent(tool_name="firecrawl_search", args={"query": "a"}))
        second = await interceptor.on_tool_use(ToolUseEvent(tool_name="firecrawl_search", args={"query": "b"}))
        return first, second

    first, second = asyncio.run(scenario())

    assert first.action == "suspend"
    assert second.action == "suspend"
    assert first.approval.approval_id == second.approval.approval_id
    assert len(store.list_pending()) == 1


def test_rejected_gated_call_counts_against_budget_by_default() -> None:
    gate, store = _gate()
    _reject(store)
    run = _run()
    event = ToolUseEvent(tool_name="firecrawl_search", args={})

    verdict = asyncio.run(ToolCallInterceptor(run, gate=gate).on_tool_use(event))

    assert verdict.action == "skip"
    assert event.skipped is True
    assert run.tool_calls == 1


def test_rejected_gated_call_is_refunded_when_configured() -> None:
    gate, store = _gate()
    _reject(store)
    run = _run()

    verdict = asyncio.run(
        ToolCallInterceptor(run, gate=gate, count_gated_skips=False).on_tool_use(
            ToolUseEvent(tool_name="firecrawl_search", args={})
        )
    )

    assert verdict.action == "skip"
    assert run.tool_calls == 0


def test_tool_error_for_gated_tool_suspends_without_checkpoint() -> None:
    gate, store = _gate()
    interceptor = ToolCallInterceptor(_run(), gate=gate)

    verdict = asyncio.run(interceptor.on_error(ErrorEvent(message="Tool firecrawl_scrape failed: 400")))

    assert verdict.action == "suspend"
    assert verdict.approval.tool_name == "firecrawl_scrape"
    assert verdict.approval.checkpoint_id is None
    assert verdict.approval.tool_args == {"note": "Tool will be called with corrected parameters"}


def test_tool_error_without_gate_is_skipped() -> None:
    verdict = asyncio.run(
        ToolCallInterceptor(_run()).on_error(ErrorEvent(message="firecrawl_search failed"))
    )

    assert verdict.action == "skip"


def _reject(store: ApprovalStore, tool_name: str = "firecrawl_search") -> None:
    pending = store.open_pending(session_id="s1", tool_name=tool_name, tool_args={}, checkpoint_id=None)
    store.record_decision(pending.approval_id, approved=False)
