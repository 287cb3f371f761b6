"""
Chain Mirror - Sync Coordinator

Serialises reconciliation:
- at most one full pass (profiles, donations, products) runs at a time
- a trigger during a pass sets one pending flag; any number of triggers
  collapse into it
- when the pass ends with the flag set, the flag is cleared and exactly
  one more pass runs

All state lives on the instance, so independent coordinators (one per
ledger application) can share a process and an event loop.
"""

import asyncio
import logging
from typing import Optional, Sequence

from chainmirror.core.types import utc_now
from chainmirror.models.records import SYNC_ORDER, EntitySyncReport, PassReport, SyncCursor
from chainmirror.services.broadcast import MirrorUpdateBroadcaster
from chainmirror.services.reconcile import Reconciler

logger = logging.getLogger(__name__)


class SyncCoordinator:
    """Owns pass execution for one ledger application."""

    def __init__(
        self,
        reconcilers: Sequence[Reconciler],
        broadcaster: Optional[MirrorUpdateBroadcaster] = None,
        rerun_delay: float = 0.5,
    ) -> None:
        self.reconcilers = sorted(reconcilers, key=lambda r: SYNC_ORDER.index(r.entity_type))
        self.broadcaster = broadcaster or MirrorUpdateBroadcaster()
        self.rerun_delay = rerun_delay
        self._running = False
        self._pending = False
        self._closed = False
        self._task: Optional[asyncio.Task] = None
        self.passes_completed = 0
        self.last_report: Optional[PassReport] = None

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def has_pending(self) -> bool:
        return self._pending

    def cursors(self) -> list[SyncCursor]:
        return [r.cursor for r in self.reconcilers]

    def trigger(self, source: str = "manual") -> bool:
        """
        Request a pass.

        Returns True if a pass started now, False if it was queued behind
        the running one (or the coordinator is closed).
        """
        if self._closed:
            logger.debug(f"[SYNC] Ignoring {source} trigger after close")
            return False
        if self._running:
            if not self._pending:
                logger.info(f"[SYNC] Sync in progress, {source} trigger queued")
            self._pending = True
            return False

        self._running = True
        self._task = asyncio.get_running_loop().create_task(self._drain(source))
        return True

    async def _drain(self, source: str) -> None:
        try:
            while True:
                await self._run_pass(source)
                if not self._pending or self._closed:
                    return
                self._pending = False
                source = "queued"
                if self.rerun_delay > 0:
                    await asyncio.sleep(self.rerun_delay)
        finally:
            self._running = False

    async def _run_pass(self, source: str) -> PassReport:
        report = PassReport(pass_number=self.passes_completed + 1, trigger=source)
        logger.info(f"[SYNC] Pass {report.pass_number} starting ({source})")

        for reconciler in self.reconcilers:
            try:
                report.entities.append(await reconciler.reconcile())
            except Exception as e:
                # One entity type failing must never stop the coordinator
                logger.exception(f"[SYNC] {reconciler.label} reconciliation crashed")
                report.entities.append(
                    EntitySyncReport(
                        entity_type=reconciler.entity_type,
                        aborted=True,
                        error=repr(e),
                        finished_at=utc_now(),
                    )
                )

        report.finished_at = utc_now()
        self.passes_completed += 1
        self.last_report = report
        self.broadcaster.publish(report)
        status = "complete" if report.ok else "complete with errors"
        logger.info(f"[SYNC] Pass {report.pass_number} {status}")
        return report

    async def wait_idle(self) -> None:
        """Wait until no pass is running or queued. Never cancels a pass."""
        while self._task is not None and not self._task.done():
            await asyncio.shield(self._task)

    async def run_once(self, source: str = "manual") -> Optional[PassReport]:
        """Trigger a pass and wait for the coordinator to go idle."""
        self.trigger(source)
        await self.wait_idle()
        return self.last_report

    async def close(self) -> None:
        """Refuse new triggers and let the running pass finish."""
        self._closed = True
        await self.wait_idle()
