"""
Chain Mirror - Mirror Updated Channel

Downstream readers (API websocket clients, caches, a UI layer) subscribe
here instead of watching the ledger themselves. Each subscriber gets its
own bounded queue; a slow subscriber loses its oldest reports, never
blocks the coordinator.
"""

import asyncio
import logging

from chainmirror.models.records import PassReport

logger = logging.getLogger(__name__)


class MirrorUpdateBroadcaster:
    """Fan-out of pass reports to in-process subscribers."""

    def __init__(self, max_queue: int = 16) -> None:
        self.max_queue = max_queue
        self._subscribers: set[asyncio.Queue[PassReport]] = set()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> "asyncio.Queue[PassReport]":
        queue: asyncio.Queue[PassReport] = asyncio.Queue(maxsize=self.max_queue)
        self._subscribers.add(queue)
        return queue

    def unsubscribe(self, queue: "asyncio.Queue[PassReport]") -> None:
        self._subscribers.discard(queue)

    def publish(self, report: PassReport) -> None:
        for queue in list(self._subscribers):
            if queue.full():
                queue.get_nowait()
                logger.debug("[SYNC] Subscriber lagging, dropped oldest report")
            queue.put_nowait(report)
