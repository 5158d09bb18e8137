"""Retention controller: the per-tick launch/reclaim decision for each agent.

Rules, evaluated once per agent per tick:

- Online, idle, hypervisor full, idle for longer than the agent's max idle
  time: reclaim (shut it down).
- Offline, launchable, hypervisor not full, and uniquely needed by some
  pending item: launch.
- Anything else: leave it alone.

When the hypervisor is full and an offline agent is uniquely needed, the
controller waits. It does not disconnect some other idle agent to make
room; idle agents free capacity through the max-idle rule on their own.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from enum import Enum
from typing import TYPE_CHECKING

from vmfleet.demand import available_slots, is_uniquely_needed
from vmfleet.nodes import ComputerSnapshot, VMBacked, VirtualMachineAgent
from vmfleet.queue import WorkItem, WorkQueue

if TYPE_CHECKING:
    from vmfleet.fleet import Fleet

logger = logging.getLogger(__name__)


class Decision(str, Enum):
    LAUNCH = "launch"
    RECLAIM = "reclaim"
    NOOP = "noop"


class LifecycleController:
    def __init__(
        self,
        fleet: Fleet,
        queue: WorkQueue,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._fleet = fleet
        self._queue = queue
        self._clock = clock

    def is_manual_launch_allowed(self, agent: VMBacked) -> bool:
        return not agent.hypervisor.is_full()

    async def tick(self) -> dict[str, Decision]:
        """Evaluate every VM agent under the queue's ordering lock."""
        decisions: dict[str, Decision] = {}
        async with self._queue.lock:
            items = self._queue.pending_buildable_items()
            computers = self._fleet.all_computers()
            for agent in self._fleet.vm_agents():
                decision = self.check(agent, computers, items)
                decisions[agent.name] = decision
                if decision is Decision.LAUNCH:
                    # The launched agent is now connecting and its idle
                    # executors cover items for the agents after it.
                    computers = self._fleet.all_computers()
        return decisions

    def check(
        self,
        agent: VirtualMachineAgent,
        computers: Sequence[ComputerSnapshot],
        items: Sequence[WorkItem],
    ) -> Decision:
        """Decide and dispatch for one agent. Never raises."""
        try:
            decision = self._decide(agent, computers, items)
            if decision is Decision.LAUNCH:
                if self._fleet.connect(agent) is None:
                    return Decision.NOOP
            elif decision is Decision.RECLAIM:
                idle_minutes = (self._clock() - agent.idle_since) / 60
                self._fleet.disconnect(
                    agent, cause=f"idle for {idle_minutes:.0f} min on a full hypervisor"
                )
            return decision
        except Exception:
            logger.exception("Retention check failed for %s", agent.name)
            return Decision.NOOP

    def _decide(
        self,
        agent: VirtualMachineAgent,
        computers: Sequence[ComputerSnapshot],
        items: Sequence[WorkItem],
    ) -> Decision:
        hypervisor = agent.hypervisor

        if agent.is_online:
            if agent.is_idle and agent.idle_since is not None and hypervisor.is_full():
                idle_for = self._clock() - agent.idle_since
                if idle_for > agent.spec.max_idle_minutes * 60:
                    logger.info(
                        "%s idle for %.0fs on full hypervisor %s, reclaiming",
                        agent.name, idle_for, hypervisor.name,
                    )
                    return Decision.RECLAIM
            return Decision.NOOP

        if agent.is_offline and agent.launch_supported:
            slots = available_slots(computers, exclude=agent)
            if not is_uniquely_needed(agent, slots, items):
                return Decision.NOOP
            if hypervisor.is_full():
                logger.info(
                    "%s is needed but hypervisor %s is full (%d/%d), waiting",
                    agent.name, hypervisor.name,
                    hypervisor.capacity.current, hypervisor.capacity.maximum,
                )
                return Decision.NOOP
            logger.info("Launching %s on %s for pending work", agent.name, hypervisor.name)
            return Decision.LAUNCH

        return Decision.NOOP
