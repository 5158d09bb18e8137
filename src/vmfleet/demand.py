"""Demand analysis: is a particular agent the only way to run pending work?

The analysis is a single greedy pass in queue order. Each pending item first
claims one idle executor on some other node that can run it; only an item
that nothing else can cover, and that the candidate can run, makes the
candidate uniquely needed. Earlier items claim executors first, and there is
no look-ahead to leave an executor free for a later item.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass

from vmfleet.nodes import ComputerSnapshot, Node
from vmfleet.queue import WorkItem

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExecutionSlot:
    """Idle executors on one online (or connecting), accepting node."""

    node: Node
    count: int


def available_slots(
    computers: Iterable[ComputerSnapshot], exclude: Node | None = None
) -> list[ExecutionSlot]:
    """Idle executor capacity across the fleet, in fleet order."""
    slots: list[ExecutionSlot] = []
    for c in computers:
        if c.node is exclude:
            continue
        if (c.online or c.connecting) and c.partially_idle and c.accepting_tasks:
            if c.idle_executors > 0:
                slots.append(ExecutionSlot(node=c.node, count=c.idle_executors))
    return slots


def is_uniquely_needed(
    candidate: Node,
    slots: Iterable[ExecutionSlot],
    items: Sequence[WorkItem],
) -> bool:
    """True if some pending item can run on *candidate* and on no available slot."""
    # Insertion-ordered, so slots are scanned in the order they were given.
    available: dict[Node, int] = {}
    for slot in slots:
        if slot.node is candidate or slot.count <= 0:
            continue
        available[slot.node] = available.get(slot.node, 0) + slot.count

    for item in items:
        covered = False
        for node in list(available):
            if node.can_take(item):
                covered = True
                if available[node] > 1:
                    available[node] -= 1
                else:
                    del available[node]
                break
        if covered:
            continue
        if candidate.can_take(item):
            logger.debug("%s is uniquely needed for %s", candidate.name, item.name)
            return True
    return False
