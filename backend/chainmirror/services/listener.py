"""
Chain Mirror - Notification Listener

Turns ledger change notifications into sync triggers. While the
subscription is down, a poll timer triggers instead; a fresh subscribe is
attempted periodically and polling stops as soon as one succeeds.
"""

import asyncio
import contextlib
import logging
from enum import Enum
from typing import Any, AsyncContextManager, AsyncIterator, Optional, Protocol

from chainmirror.core.errors import NetworkError
from chainmirror.services.coordinator import SyncCoordinator

logger = logging.getLogger(__name__)


class NotificationChannel(Protocol):
    def subscribe(self) -> AsyncContextManager[AsyncIterator[Any]]: ...


class ListenerState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    SUBSCRIBED = "subscribed"
    POLLING = "polling"


class NotificationListener:
    """Drives the coordinator from notifications, or a poll timer as fallback."""

    def __init__(
        self,
        channel: NotificationChannel,
        coordinator: SyncCoordinator,
        poll_interval: float = 10.0,
        resubscribe_interval: float = 30.0,
    ) -> None:
        self.channel = channel
        self.coordinator = coordinator
        self.poll_interval = poll_interval
        self.resubscribe_interval = resubscribe_interval
        self.state = ListenerState.DISCONNECTED
        self.notifications_received = 0
        self.subscribe_failures = 0
        self._task: Optional[asyncio.Task] = None
        self._poll_task: Optional[asyncio.Task] = None

    @property
    def is_polling(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self.run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None

    async def run(self) -> None:
        """Startup pass, then subscribe forever, polling whenever unsubscribed."""
        logger.info("[NOTIFY] Listener starting, requesting initial sync")
        self.coordinator.trigger("startup")
        try:
            while True:
                await self._listen()
                await asyncio.sleep(self.resubscribe_interval)
        finally:
            await self._stop_polling()
            self.state = ListenerState.DISCONNECTED

    async def _listen(self) -> None:
        self.state = ListenerState.CONNECTING
        try:
            async with self.channel.subscribe() as notifications:
                if self.is_polling:
                    logger.info("[NOTIFY] Subscription restored, stopping polling")
                    await self._stop_polling()
                    # Changes since the last poll produced no notification
                    self.coordinator.trigger("resubscribed")
                self.state = ListenerState.SUBSCRIBED
                async for _ in notifications:
                    self.notifications_received += 1
                    logger.info("[NOTIFY] Change notification received")
                    self.coordinator.trigger("notification")
            logger.warning("[NOTIFY] Notification stream ended")
        except NetworkError as e:
            self.subscribe_failures += 1
            logger.warning(f"[NOTIFY] Subscription unavailable: {e}")
        except Exception:
            # Keep the poll timer alive whatever the channel raised
            self.subscribe_failures += 1
            logger.exception("[NOTIFY] Notification channel failed")

        self.state = ListenerState.POLLING
        self._start_polling()

    def _start_polling(self) -> None:
        if self.is_polling:
            return
        logger.info(f"[NOTIFY] Falling back to polling every {self.poll_interval}s")
        self._poll_task = asyncio.get_running_loop().create_task(self._poll())

    async def _stop_polling(self) -> None:
        if self._poll_task is None:
            return
        self._poll_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._poll_task
        self._poll_task = None

    async def _poll(self) -> None:
        while True:
            await asyncio.sleep(self.poll_interval)
            logger.info("[NOTIFY] Polling for changes...")
            self.coordinator.trigger("poll")
