from __future__ import annotations
import asyncio
from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

import structlog

log = structlog.get_logger("notify")

T = TypeVar("T")


@dataclass(slots=True)
class QueueStats:
    enq_ok: int = 0
    enq_drop: int = 0
    deq_ok: int = 0


class NotifyQueue(Generic[T]):
    """
    Bounded, non-blocking hand-off between the engine and slow sinks
    (Telegram, Redis mirror).
    - try_put(item) never waits: drops on full and counts the drop
    - get(timeout) awaits; returns None on timeout so workers can re-check stop flags
    """
    def __init__(self, maxsize: int = 2000, name: str = "notify"):
        self._q: asyncio.Queue[T] = asyncio.Queue(maxsize=maxsize)
        self.name = name
        self.stats = QueueStats()

    def try_put(self, item: T) -> bool:
        try:
            self._q.put_nowait(item)
            self.stats.enq_ok += 1
            return True
        except asyncio.QueueFull:
            self.stats.enq_drop += 1
            if self.stats.enq_drop == 1 or self.stats.enq_drop % 100 == 0:
                log.warning("notify_queue_full", queue=self.name, dropped=self.stats.enq_drop)
            return False

    async def get(self, timeout: Optional[float] = None) -> Optional[T]:
        try:
            if timeout is None:
                item = await self._q.get()
            else:
                item = await asyncio.wait_for(self._q.get(), timeout)
        except asyncio.TimeoutError:
            return None
        self.stats.deq_ok += 1
        return item

    def qsize(self) -> int:
        return self._q.qsize()
