"""Keyed serial work queues.

Work submitted under the same key runs one item at a time in submission
order; different keys run concurrently on the loop. A worker task exists only
while its queue has items.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Dict, Tuple


logger = logging.getLogger(__name__)


WorkItem = Tuple[Callable[..., Awaitable[None]], Tuple[Any, ...]]


class SerialDispatcher:
    def __init__(self, name: str):
        self.name = name
        self._queues: Dict[str, Deque[WorkItem]] = {}
        self._workers: Dict[str, asyncio.Task[None]] = {}
        self._closed = False

    def submit(self, key: str, fn: Callable[..., Awaitable[None]], *args: Any) -> None:
        if self._closed:
            logger.debug("dispatch %s closed, dropping work key=%s", self.name, key)
            return
        self._queues.setdefault(key, deque()).append((fn, args))
        if key not in self._workers:
            self._workers[key] = asyncio.get_running_loop().create_task(
                self._run(key), name=f"{self.name}-{key}"
            )

    async def _run(self, key: str) -> None:
        queue = self._queues[key]
        try:
            while queue:
                fn, args = queue.popleft()
                try:
                    await fn(*args)
                except asyncio.CancelledError:
                    raise
                except Exception:
                    logger.exception("dispatch %s work failed key=%s", self.name, key)
        finally:
            self._workers.pop(key, None)
            if not queue:
                self._queues.pop(key, None)

    @property
    def idle(self) -> bool:
        return not self._workers

    async def join(self) -> None:
        """Wait until every queue is empty, including work queued meanwhile."""
        while self._workers:
            await asyncio.gather(*list(self._workers.values()), return_exceptions=True)

    async def close(self) -> None:
        self._closed = True
        workers = list(self._workers.values())
        for task in workers:
            task.cancel()
        if workers:
            await asyncio.gather(*workers, return_exceptions=True)
        self._workers.clear()
        self._queues.clear()

    def reopen(self) -> None:
        self._closed = False
