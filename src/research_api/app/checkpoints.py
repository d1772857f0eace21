"""Checkpoint management for suspend/resume.

The core treats a checkpoint as a capability token: it creates one before
suspending or after an interruption, hands the id to the client, and applies
it before a resumed run. Contents are owned by the engine.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from copy import deepcopy
from datetime import UTC, datetime
from typing import Any, Protocol
from uuid import uuid4

from .engine import TaskEngine
from .models import Checkpoint

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


class CheckpointNotFound(KeyError):
    pass


class CheckpointManager(Protocol):
    async def create(self, name: str) -> Checkpoint: ...

    async def list(self) -> list[Checkpoint]: ...

    async def apply(self, checkpoint_id: str) -> None: ...

    async def delete(self, checkpoint_id: str) -> None: ...


class InMemoryCheckpointManager:
    """Keeps engine state snapshots in process memory.

    When `max_checkpoints` is reached the oldest snapshot is evicted.
    """

    def __init__(
        self,
        engine: TaskEngine,
        *,
        max_checkpoints: int | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.engine = engine
        self.max_checkpoints = max_checkpoints
        self._clock = clock
        self._lock = threading.Lock()
        self._snapshots: dict[str, tuple[Checkpoint, Any]] = {}

    async def create(self, name: str) -> Checkpoint:
        state = deepcopy(self.engine.export_state())
        checkpoint = Checkpoint(id=f"ckpt_{uuid4().hex[:12]}", name=name, created_at=self._clock())
        with self._lock:
            self._snapshots[checkpoint.id] = (checkpoint, state)
            if self.max_checkpoints is not None:
                while len(self._snapshots) > self.max_checkpoints:
                    oldest = next(iter(self._snapshots))
                    del self._snapshots[oldest]
                    logger.info("checkpoint event=evicted checkpoint_id=%s", oldest)
        return checkpoint

    async def list(self) -> list[Checkpoint]:
        with self._lock:
            items = [checkpoint for checkpoint, _ in self._snapshots.values()]
        return sorted(items, key=lambda item: item.created_at)

    async def apply(self, checkpoint_id: str) -> None:
        with self._lock:
            entry = self._snapshots.get(checkpoint_id)
        if entry is None:
            raise CheckpointNotFound(checkpoint_id)
        self.engine.import_state(deepcopy(entry[1]))

    async def delete(self, checkpoint_id: str) -> None:
        with self._lock:
            if self._snapshots.pop(checkpoint_id, None) is None:
                raise CheckpointNotFound(checkpoint_id)


class CheckpointCoordinator:
    """Delegates to a manager; the `try_*` variants never raise."""

    def __init__(self, manager: CheckpointManager) -> None:
        self.manager = manager

    async def create(self, name: str) -> Checkpoint:
        checkpoint = await self.manager.create(name)
        logger.info("checkpoint event=created checkpoint_id=%s name=%s", checkpoint.id, name)
        return checkpoint

    async def try_create(self, name: str) -> Checkpoint | None:
        try:
            return await self.create(name)
        except Exception as exc:  # noqa: BLE001
            logger.error("checkpoint event=create_failed name=%s reason=%s", name, exc)
            return None

    async def list(self) -> list[Checkpoint]:
        return await self.manager.list()

    async def apply(self, checkpoint_id: str) -> None:
        await self.manager.apply(checkpoint_id)
        logger.info("checkpoint event=applied checkpoint_id=%s", checkpoint_id)

    async def try_apply(self, checkpoint_id: str) -> bool:
        """Apply a checkpoint; on failure log and let the caller start fresh."""
        try:
            await self.apply(checkpoint_id)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "checkpoint event=apply_failed checkpoint_id=%s reason=%r", checkpoint_id, exc
            )
            return False
        return True

    async def delete(self, checkpoint_id: str) -> None:
        await self.manager.delete(checkpoint_id)
        logger.info("checkpoint event=deleted checkpoint_id=%s", checkpoint_id)
