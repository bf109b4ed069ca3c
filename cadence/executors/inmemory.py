"""In-memory delayed executor for testing and single-process use."""

from __future__ import annotations

import asyncio
import heapq
import itertools
from datetime import datetime
from typing import List, Optional, Tuple

from ..contracts import ArmedTrigger
from .base import BaseDelayedExecutor


class InMemoryDelayedExecutor(BaseDelayedExecutor):
    """Heap of armed triggers kept in process memory.

    Not durable: triggers are lost on restart, which is why the orchestrator
    reconciles overdue ``scheduled`` jobs on worker start.
    """

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._heap: List[Tuple[datetime, int, ArmedTrigger]] = []
        self._counter = itertools.count()
        self._lock = asyncio.Lock()

    async def _push(self, trigger: ArmedTrigger) -> None:
        async with self._lock:
            heapq.heappush(self._heap, (trigger.due_at, next(self._counter), trigger))

    async def _pop_due(self, now: datetime) -> Optional[ArmedTrigger]:
        async with self._lock:
            if self._heap and self._heap[0][0] <= now:
                return heapq.heappop(self._heap)[2]
        return None

    async def pending(self) -> List[ArmedTrigger]:
        return [entry[2] for entry in sorted(self._heap)]
