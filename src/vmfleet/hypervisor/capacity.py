"""Online-agent accounting for a single hypervisor."""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable

logger = logging.getLogger(__name__)


class CapacityTracker:
    """Counts agents holding a slot on one hypervisor.

    The count is derived from the set of agent names that claimed a slot,
    so ``mark_online``/``mark_offline`` are idempotent and the count can
    never drop below zero. Overshoot past ``maximum`` is tolerated and
    logged; it can happen when an operator starts a VM by hand.
    """

    def __init__(self, maximum: int) -> None:
        if maximum < 0:
            raise ValueError("maximum must be >= 0")
        self._maximum = maximum
        self._online: set[str] = set()
        self._lock = threading.Lock()

    @property
    def maximum(self) -> int:
        return self._maximum

    @property
    def current(self) -> int:
        with self._lock:
            return len(self._online)

    @property
    def online_agents(self) -> frozenset[str]:
        with self._lock:
            return frozenset(self._online)

    def is_full(self) -> bool:
        with self._lock:
            return len(self._online) >= self._maximum

    def holds(self, agent_name: str) -> bool:
        with self._lock:
            return agent_name in self._online

    def mark_online(self, agent_name: str) -> bool:
        """Record that *agent_name* holds a slot. Returns False if it already did."""
        with self._lock:
            if agent_name in self._online:
                return False
            self._online.add(agent_name)
            count = len(self._online)
        if count > self._maximum:
            logger.warning(
                "Capacity overshoot: %d online agents, limit %d (last: %s)",
                count, self._maximum, agent_name,
            )
        return True

    def mark_offline(self, agent_name: str) -> bool:
        """Release the slot held by *agent_name*. Returns False if it held none."""
        with self._lock:
            if agent_name not in self._online:
                return False
            self._online.discard(agent_name)
            return True

    def try_claim(self, agent_name: str) -> bool:
        """Claim a slot only if capacity is available.

        The check and the claim happen under one lock acquisition, so two
        concurrent launches cannot both take the last slot. An agent that
        already holds a slot keeps it and the call succeeds.
        """
        with self._lock:
            if agent_name in self._online:
                return True
            if len(self._online) >= self._maximum:
                return False
            self._online.add(agent_name)
            return True

    def reconcile(self, agent_names: Iterable[str]) -> None:
        """Replace the accounting with an authoritative set of online agents."""
        names = set(agent_names)
        with self._lock:
            added = names - self._online
            dropped = self._online - names
            self._online = names
        if added or dropped:
            logger.info(
                "Capacity reconciled: +%s -%s (now %d/%d)",
                sorted(added), sorted(dropped), len(names), self._maximum,
            )
