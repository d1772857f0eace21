import asyncio
from datetime import UTC, datetime, timedelta

from research_api.app.approvals import ApprovalGate, ApprovalStore, new_approval_id
from research_api.app.checkpoints import CheckpointCoordinator, InMemoryCheckpointManager
from research_api.app.models import Checkpoint, PendingApproval
from research_api.app.scripted_engine import ScriptedEngine


class _Clock:
    def __init__(self) -> None:
        self.now = datetime(2025, 1, 1, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now


class _FailingCheckpoints:
    async def create(self, name: str) -> Checkpoint:
        raise RuntimeError("snapshot failed")

    async def list(self) -> list[Checkpoint]:
        return []

    async def apply(self, checkpoint_id: str) -> None:
        return None

    async def delete(self, checkpoint_id: str) -> None:
        return None


def _gate(store: ApprovalStore, manager=None) -> ApprovalGate:
    manager = manager or InMemoryCheckpointManager(ScriptedEngine())
    return ApprovalGate(store, CheckpointCoordinator(manager))


def test_approval_ids_are_unique_and_prefixed() -> None:
    first, second = new_approval_id(), new_approval_id()

    assert first.startswith("approval_")
    assert first != second


def test_open_pending_returns_existing_state_for_same_key() -> None:
    store = ApprovalStore()
    first = store.open_pending(session_id="s1", tool_name="firecrawl_search", tool_args={}, checkpoint_id=None)
    again = store.open_pending(session_id="s1", tool_name="firecrawl_search", tool_args={"q": 1}, checkpoint_id="c")
    other = store.open_pending(session_id="s2", tool_name="firecrawl_search", tool_args={}, checkpoint_id=None)

    assert again is first
    assert other.approval_id != first.approval_id
    assert len(store.list_pending()) == 2


def test_record_decision_moves_pending_to_decided() -> None:
    store = ApprovalStore()
    pending = store.open_pending(session_id="s1", tool_name="firecrawl_scrape", tool_args={}, checkpoint_id=None)

    decision = store.record_decision(pending.approval_id, approved=True, reason="ok")

    assert decision is not None
    assert decision.approved is True
    assert store.get_pending(pending.approval_id) is None
    assert store.get_decision("s1", "firecrawl_scrape") == decision
    assert store.record_decision(pending.approval_id, approved=False) is None


def test_purge_expired_drops_old_pending_approvals() -> None:
    clock = _Clock()
    store = ApprovalStore(clock=clock, retention=timedelta(hours=1))
    old = store.open_pending(session_id="s1", tool_name="firecrawl_search", tool_args={}, checkpoint_id=None)
    clock.now += timedelta(minutes=50)
    fresh = store.open_pending(session_id="s2", tool_name="firecrawl_search", tool_args={}, checkpoint_id=None)
    clock.now += timedelta(minutes=20)

    expired = store.purge_expired()

    assert expired == [old.approval_id]
    assert store.get_pending(fresh.approval_id) is not None
    assert store.record_decision(old.approval_id, approved=True) is None


def test_gate_bypasses_non_gated_tools() -> None:
    store = ApprovalStore()
    verdict = asyncio.run(_gate(store).check(session_id="s1", tool_name="calculator", tool_args={}))

    assert verdict.action == "bypass"
    assert store.list_pending() == []


def test_gate_first_call_creates_checkpoint_and_suspends() -> None:
    store = ApprovalStore()
    gate = _gate(store)

    verdict = asyncio.run(gate.check(session_id="s1", tool_name="firecrawl_search", tool_args={"query": "q"}))

    assert verdict.action == "suspend"
    assert isinstance(verdict.approval, PendingApproval)
    assert verdict.approval.checkpoint_id is not None
    assert verdict.approval.tool_args == {"query": "q"}
    checkpoints = asyncio.run(gate.checkpoints.list())
    assert [item.id for item in checkpoints] == [verdict.approval.checkpoint_id]
    assert checkpoints[0].name.startswith("approval_s1_")


def test_gate_suspends_without_checkpoint_when_snapshot_fails() -> None:
    store = ApprovalStore()
    gate = _gate(store, manager=_FailingCheckpoints())

    verdict = asyncio.run(gate.check(session_id="s1", tool_name="firecrawl_search", tool_args={}))

    assert verdict.action == "suspend"
    assert verdict.approval.checkpoint_id is None


def test_gate_follows_recorded_decisions() -> None:
    store = ApprovalStore()
    gate = _gate(store)
    for tool_name, approved in (("firecrawl_search", True), ("firecrawl_scrape", False)):
        pending = store.open_pending(session_id="s1", tool_name=tool_name, tool_args={}, checkpoint_id=None)
        store.record_decision(pending.approval_id, approved=approved)

    approved = asyncio.run(gate.check(session_id="s1", tool_name="firecrawl_search", tool_args={}))
    rejected = asyncio.run(gate.check(session_id="s1", tool_name="firecrawl_scrape", tool_args={}))

    assert approved.action == "proceed"
    assert rejected.action == "skip"
    assert store.list_pending() == []


def test_check_error_bypasses_decided_tools_and_unrelated_errors() -> None:
    store = ApprovalStore()
    gate = _gate(store)
    pending = store.open_pending(session_id="s1", tool_name="firecrawl_search", tool_args={}, checkpoint_id=None)
    store.record_decision(pending.approval_id, approved=True)

    decided = asyncio.run(gate.check_error(session_id="s1", message="firecrawl_search returned 400"))
    unrelated = asyncio.run(gate.check_error(session_id="s1", message="model overloaded"))

    assert decided.action == "bypass"
    assert unrelated.action == "bypass"
    assert store.list_pending() == []
