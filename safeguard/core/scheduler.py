from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

logger = logging.getLogger(__name__)

TaskKey = Tuple[str, str]


class TaskScheduler:
    """
    Cancellable delayed tasks keyed by ``(entity_id, purpose)``.

    Scheduling a key that already has a pending task replaces it. When a
    task fires it unregisters itself before running its callback, so a later
    ``cancel`` never interrupts a callback mid-flight; callbacks must claim
    their state transition themselves (see the alert service).
    """

    def __init__(self) -> None:
        self._tasks: Dict[TaskKey, asyncio.Task] = {}
        self._background: Set[asyncio.Task] = set()

    def schedule(
        self,
        entity_id: str,
        purpose: str,
        delay: float,
        callback: Callable[..., Awaitable[Any]],
        *args: Any,
    ) -> asyncio.Task:
        key = (entity_id, purpose)
        self.cancel(entity_id, purpose)
        task = asyncio.create_task(
            self._run(key, max(0.0, delay), callback, args),
            name=f"{purpose}:{entity_id}",
        )
        self._tasks[key] = task
        return task

    async def _run(
        self,
        key: TaskKey,
        delay: float,
        callback: Callable[..., Awaitable[Any]],
        args: Tuple[Any, ...],
    ) -> None:
        await asyncio.sleep(delay)
        if self._tasks.get(key) is asyncio.current_task():
            del self._tasks[key]
        try:
            await callback(*args)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("[scheduler] task %s/%s failed", key[1], key[0])

    def cancel(self, entity_id: str, purpose: str) -> bool:
        task = self._tasks.pop((entity_id, purpose), None)
        if task is None or task.done() or task is asyncio.current_task():
            return False
        task.cancel()
        return True

    def cancel_entity(self, entity_id: str) -> int:
        keys = [key for key in self._tasks if key[0] == entity_id]
        return sum(1 for key in keys if self.cancel(*key))

    def is_scheduled(self, entity_id: str, purpose: str) -> bool:
        task = self._tasks.get((entity_id, purpose))
        return task is not None and not task.done()

    def pending(self, entity_id: Optional[str] = None) -> List[TaskKey]:
        return [
            key for key, task in self._tasks.items()
            if not task.done() and (entity_id is None or key[0] == entity_id)
        ]

    def spawn(self, coro: Awaitable[Any], *, name: Optional[str] = None) -> asyncio.Task:
        """Run fire-and-forget work, keeping a reference until it finishes."""
        task = asyncio.ensure_future(coro)
        if name:
            task.set_name(name)
        self._background.add(task)
        task.add_done_callback(self._background_done)
        return task

    def _background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("[scheduler] background task %s failed: %s", task.get_name(), exc)

    async def drain(self) -> None:
        """Wait for background work spawned so far (timers are not awaited)."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def cancel_all(self) -> None:
        for key in list(self._tasks):
            self.cancel(*key)
        for task in list(self._background):
            task.cancel()
        self._background.clear()
