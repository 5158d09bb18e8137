"""Periodic retention tick."""

from __future__ import annotations

import asyncio
import logging

from vmfleet.fleet import Fleet
from vmfleet.lifecycle.controller import Decision, LifecycleController

logger = logging.getLogger(__name__)


class FleetScheduler:
    """Runs the controller every ``interval`` seconds.

    Every ``reconcile_every`` ticks the fleet's capacity accounting is
    reconciled against the hypervisors (0 disables reconciliation).
    """

    def __init__(
        self,
        controller: LifecycleController,
        fleet: Fleet,
        interval: float = 60.0,
        reconcile_every: int = 5,
    ) -> None:
        self._controller = controller
        self._fleet = fleet
        self._interval = interval
        self._reconcile_every = reconcile_every
        self._ticks = 0
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name="fleet-scheduler")
        logger.info("Fleet scheduler started (interval %.0fs)", self._interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Fleet scheduler stopped")

    async def run_once(self) -> dict[str, Decision]:
        """One tick: retention decisions, then reconciliation when due."""
        self._ticks += 1
        decisions = await self._controller.tick()
        launched = [n for n, d in decisions.items() if d is Decision.LAUNCH]
        reclaimed = [n for n, d in decisions.items() if d is Decision.RECLAIM]
        if launched or reclaimed:
            logger.info("Tick %d: launch %s, reclaim %s", self._ticks, launched, reclaimed)
        if self._reconcile_every and self._ticks % self._reconcile_every == 0:
            await self._fleet.reconcile()
        return decisions

    async def _loop(self) -> None:
        while True:
            try:
                await self.run_once()
            except Exception:
                logger.exception("Fleet tick failed")
            await asyncio.sleep(self._interval)
