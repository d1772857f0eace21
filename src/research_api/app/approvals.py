"""Human-in-the-loop approval for the gated web tool family.

State per (session, tool):

- unseen: the first gated call saves a checkpoint, opens a pending approval
  and suspends the run;
- pending: later calls reuse the open approval and suspend again;
- decided: rejected calls are skipped, approved calls run.

Decisions are recorded out of band through `ApprovalStore.record_decision`.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Literal
from uuid import uuid4

from .checkpoints import CheckpointCoordinator, utc_now
from .models import ApprovalDecision, PendingApproval

logger = logging.getLogger(__name__)

DEFAULT_GATED_PREFIXES = ("firecrawl_",)
# Tool errors mentioning these names are routed through the gate, in this order.
DEFAULT_ERROR_SIGNATURES = ("firecrawl_search", "firecrawl_scrape")
ERROR_APPROVAL_ARGS = {"note": "Tool will be called with corrected parameters"}
DEFAULT_RETENTION = timedelta(hours=1)

ApprovalKey = tuple[str, str]


def new_approval_id() -> str:
    return f"approval_{int(time.time() * 1000)}_{uuid4().hex[:9]}"


class ApprovalStore:
    """Pending approvals by id and decisions by (session, tool).

    Every read-then-write runs under one lock, so a decision submitted over
    HTTP cannot interleave with the gate's first-seen check.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], datetime] = utc_now,
        retention: timedelta = DEFAULT_RETENTION,
    ) -> None:
        self._clock = clock
        self.retention = retention
        self._lock = threading.Lock()
        self._pending: dict[str, PendingApproval] = {}
        self._decisions: dict[ApprovalKey, ApprovalDecision] = {}

    def lookup(self, session_id: str, tool_name: str) -> ApprovalDecision | PendingApproval | None:
        with self._lock:
            return self._lookup_locked((session_id, tool_name))

    def open_pending(
        self,
        *,
        session_id: str,
        tool_name: str,
        tool_args: Any,
        checkpoint_id: str | None,
    ) -> ApprovalDecision | PendingApproval:
        """Create a pending approval unless the key is already pending or decided."""
        key = (session_id, tool_name)
        with self._lock:
            existing = self._lookup_locked(key)
            if existing is not None:
                return existing
            approval = PendingApproval(
                approval_id=new_approval_id(),
                session_id=session_id,
                tool_name=tool_name,
                tool_args=tool_args,
                created_at=self._clock(),
                checkpoint_id=checkpoint_id,
            )
            self._pending[approval.approval_id] = approval
        logger.info(
            "approval event=requested approval_id=%s session_id=%s tool=%s checkpoint_id=%s",
            approval.approval_id,
            session_id,
            tool_name,
            checkpoint_id,
        )
        return approval

    def get_pending(self, approval_id: str) -> PendingApproval | None:
        with self._lock:
            return self._pending.get(approval_id)

    def list_pending(self) -> list[PendingApproval]:
        with self._lock:
            return list(self._pending.values())

    def get_decision(self, session_id: str, tool_name: str) -> ApprovalDecision | None:
        with self._lock:
            return self._decisions.get((session_id, tool_name))

    def record_decision(
        self,
        approval_id: str,
        *,
        approved: bool,
        reason: str | None = None,
    ) -> ApprovalDecision | None:
        """Resolve a pending approval; `None` means not found or expired."""
        with self._lock:
            pending = self._pending.pop(approval_id, None)
            if pending is None:
                return None
            decision = ApprovalDecision(
                session_id=pending.session_id,
                tool_name=pending.tool_name,
                approved=approved,
                decided_at=self._clock(),
                reason=reason,
            )
            self._decisions[(pending.session_id, pending.tool_name)] = decision
        logger.info(
            "approval event=decided approval_id=%s tool=%s approved=%s",
            approval_id,
            decision.tool_name,
            approved,
        )
        return decision

    def purge_expired(self) -> list[str]:
        """Drop pending approvals older than the retention window."""
        cutoff = self._clock() - self.retention
        with self._lock:
            expired = [
                approval_id
                for approval_id, approval in self._pending.items()
                if approval.created_at < cutoff
            ]
            for approval_id in expired:
                del self._pending[approval_id]
        for approval_id in expired:
            logger.info("approval event=expired approval_id=%s", approval_id)
        return expired

    def _lookup_locked(self, key: ApprovalKey) -> ApprovalDecision | PendingApproval | None:
        decision = self._decisions.get(key)
        if decision is not None:
            return decision
        for approval in self._pending.values():
            if (approval.session_id, approval.tool_name) == key:
                return approval
        return None


@dataclass(frozen=True)
class GateVerdict:
    action: Literal["bypass", "proceed", "skip", "suspend"]
    approval: PendingApproval | None = None


BYPASS = GateVerdict("bypass")


class ApprovalGate:
    def __init__(
        self,
        store: ApprovalStore,
        checkpoints: CheckpointCoordinator,
        *,
        gated_prefixes: Sequence[str] = DEFAULT_GATED_PREFIXES,
        error_signatures: Sequence[str] = DEFAULT_ERROR_SIGNATURES,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.checkpoints = checkpoints
        self.gated_prefixes = tuple(gated_prefixes)
        self.error_signatures = tuple(error_signatures)
        self._clock = clock

    def is_gated(self, tool_name: str) -> bool:
        return bool(tool_name) and tool_name.startswith(self.gated_prefixes)

    def match_error(self, message: str) -> str | None:
        for signature in self.error_signatures:
            if signature in message:
                return signature
        return None

    async def check(self, *, session_id: str, tool_name: str, tool_args: Any) -> GateVerdict:
        if not self.is_gated(tool_name):
            return BYPASS

        state = self.store.lookup(session_id, tool_name)
        if state is None:
            checkpoint = await self.checkpoints.try_create(
                f"approval_{session_id}_{int(self._clock() * 1000)}"
            )
            state = self.store.open_pending(
                session_id=session_id,
                tool_name=tool_name,
                tool_args=tool_args,
                checkpoint_id=checkpoint.id if checkpoint else None,
            )
        return self._verdict(state)

    async def check_error(self, *, session_id: str, message: str) -> GateVerdict:
        """Route a gated-tool error through approval when the tool is undecided.

        Error-time requests carry no checkpoint.
        """
        tool_name = self.match_error(message)
        if tool_name is None:
            return BYPASS

        state = self.store.open_pending(
            session_id=session_id,
            tool_name=tool_name,
            tool_args=dict(ERROR_APPROVAL_ARGS),
            checkpoint_id=None,
        )
        if isinstance(state, ApprovalDecision):
            return BYPASS
        return self._verdict(state)

    @staticmethod
    def _verdict(state: ApprovalDecision | PendingApproval) -> GateVerdict:
        if isinstance(state, PendingApproval):
            return GateVerdict("suspend", approval=state)
        if state.approved:
            return GateVerdict("proceed")
        return GateVerdict("skip")
