"""Pending work and the ordering lock shared with the fleet tick."""

from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from vmfleet.nodes import Node


@dataclass(frozen=True)
class CanTake:
    """Verdict of ``WorkItem.can_run_on``: yes, or no with a reason."""

    ok: bool
    reason: str = ""

    def __bool__(self) -> bool:
        return self.ok

    @classmethod
    def yes(cls) -> CanTake:
        return cls(True)

    @classmethod
    def no(cls, reason: str) -> CanTake:
        return cls(False, reason)


class WorkItem(Protocol):
    id: str
    name: str

    def can_run_on(self, node: Node) -> CanTake: ...


@dataclass
class LabelWorkItem:
    """A buildable item that requires every one of ``labels`` on the node."""

    name: str
    labels: frozenset[str] = frozenset()
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    queued_at: float = field(default_factory=time.time)

    def can_run_on(self, node: Node) -> CanTake:
        if not node.accepting_tasks:
            return CanTake.no(f"{node.name} is not accepting tasks")
        if node.exclusive and not self.labels:
            return CanTake.no(f"{node.name} only takes items that request its labels")
        missing = self.labels - node.labels
        if missing:
            return CanTake.no(f"{node.name} lacks label(s): {', '.join(sorted(missing))}")
        return CanTake.yes()

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "labels": sorted(self.labels),
            "queued_at": self.queued_at,
        }


class WorkQueue:
    """Ordered pending items.

    ``lock`` is the fleet-wide ordering lock: the retention tick holds it for
    its whole pass so that every agent is evaluated against the same view
    of pending work.
    """

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self._items: list[WorkItem] = []

    def __len__(self) -> int:
        return len(self._items)

    async def submit(self, item: WorkItem) -> WorkItem:
        async with self.lock:
            self._items.append(item)
        return item

    async def remove(self, item_id: str) -> bool:
        async with self.lock:
            for i, item in enumerate(self._items):
                if item.id == item_id:
                    del self._items[i]
                    return True
        return False

    def get(self, item_id: str) -> WorkItem | None:
        for item in self._items:
            if item.id == item_id:
                return item
        return None

    def pending_buildable_items(self) -> list[WorkItem]:
        """Snapshot of pending items in queue order. Hold ``lock`` for a consistent view."""
        return list(self._items)
