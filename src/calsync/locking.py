"""Per-owner single-flight guard for sync cycles.

Two cycles for the same owner must never run at once: both would read the
same cursor and race to advance it. A caller that arrives while a cycle for
that owner is in flight awaits the running cycle and receives its outcome
instead of starting a second one.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class OwnerSingleFlight(Generic[T]):
    """Collapse concurrent calls keyed by owner id into one in-flight task."""

    def __init__(self) -> None:
        self._inflight: dict[str, asyncio.Task[T]] = {}

    def is_running(self, owner_id: str) -> bool:
        task = self._inflight.get(owner_id)
        return task is not None and not task.done()

    async def run(self, owner_id: str, factory: Callable[[], Awaitable[T]]) -> T:
        task = self._inflight.get(owner_id)
        if task is not None and not task.done():
            logger.info("Sync already in flight for owner %s; joining it", owner_id)
            return await asyncio.shield(task)

        task = asyncio.ensure_future(factory())
        self._inflight[owner_id] = task
        task.add_done_callback(lambda finished: self._forget(owner_id, finished))
        return await task

    def _forget(self, owner_id: str, finished: asyncio.Task[T]) -> None:
        if self._inflight.get(owner_id) is finished:
            del self._inflight[owner_id]
