"""Single execution slot shared by every analysis run in the process."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class _WorkItem:
    factory: Callable[[], Awaitable[Any]]
    future: asyncio.Future[Any]
    label: str


class SingleFlightScheduler:
    """FIFO queue of deferred work drained by one worker task.

    `submit()` resolves once its item has run to completion, so at most one
    item executes at any moment and items start in arrival order. The worker
    is bound to the event loop that first submits; a submit from a different
    loop (a new server process loop, or a test client) starts a fresh worker.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[_WorkItem] | None = None
        self._worker: asyncio.Task[None] | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._active: str | None = None

    @property
    def active(self) -> str | None:
        """Label of the item currently running, if any."""
        return self._active

    @property
    def pending(self) -> int:
        return self._queue.qsize() if self._queue is not None else 0

    async def submit(self, factory: Callable[[], Awaitable[T]], *, label: str = "task") -> T:
        loop = asyncio.get_running_loop()
        queue = self._ensure_worker(loop)
        future: asyncio.Future[T] = loop.create_future()
        if self._active is not None or not queue.empty():
            logger.info(
                "scheduler event=queued label=%s active=%s pending=%d",
                label,
                self._active,
                queue.qsize() + 1,
            )
        queue.put_nowait(_WorkItem(factory=factory, future=future, label=label))
        return await future

    async def aclose(self) -> None:
        worker = self._worker
        self._worker = None
        self._queue = None
        self._loop = None
        if worker is None or worker.done():
            return
        worker.cancel()
        try:
            await worker
        except asyncio.CancelledError:
            pass

    def _ensure_worker(self, loop: asyncio.AbstractEventLoop) -> asyncio.Queue[_WorkItem]:
        if (
            self._queue is not None
            and self._loop is loop
            and self._worker is not None
            and not self._worker.done()
        ):
            return self._queue
        self._loop = loop
        self._queue = asyncio.Queue()
        self._active = None
        self._worker = loop.create_task(self._drain(self._queue))
        return self._queue

    async def _drain(self, queue: asyncio.Queue[_WorkItem]) -> None:
        while True:
            item = await queue.get()
            try:
                if item.future.cancelled():
                    logger.info("scheduler event=dropped label=%s reason=caller_gone", item.label)
                    continue
                self._active = item.label
                logger.info("scheduler event=start label=%s pending=%d", item.label, queue.qsize())
                try:
                    result = await item.factory()
                except Exception as exc:  # noqa: BLE001
                    if not item.future.done():
                        item.future.set_exception(exc)
                else:
                    if not item.future.done():
                        item.future.set_result(result)
            finally:
                self._active = None
                queue.task_done()
