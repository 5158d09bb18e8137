"""Agent operational log.

Each agent has its own log, separate from the process log, that records
what the lifecycle sequencers did to it (boot progress, retries, shutdown).
AgentLogBuffer keeps those entries in memory per agent and supports replay
plus live tail, which the server exposes as Server-Sent Events.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import asdict, dataclass, field
from typing import AsyncIterator, Literal, Union

logger = logging.getLogger(__name__)

DEFAULT_MAX_ENTRIES = 1000


@dataclass
class BaseEvent:
    timestamp: float = field(default_factory=time.time)
    agent: str | None = None


@dataclass
class MessageEvent(BaseEvent):
    type: Literal["agent.message"] = "agent.message"
    text: str = ""


@dataclass
class LaunchingEvent(BaseEvent):
    type: Literal["agent.launching"] = "agent.launching"
    vm_name: str = ""
    hypervisor: str = ""


@dataclass
class OnlineEvent(BaseEvent):
    type: Literal["agent.online"] = "agent.online"
    attempts: int = 0


@dataclass
class LaunchFailedEvent(BaseEvent):
    type: Literal["agent.launch_failed"] = "agent.launch_failed"
    error: str = ""


@dataclass
class ShutdownEvent(BaseEvent):
    type: Literal["agent.shutdown"] = "agent.shutdown"
    cause: str = ""


@dataclass
class OfflineEvent(BaseEvent):
    type: Literal["agent.offline"] = "agent.offline"
    cause: str = ""


AgentEvent = Union[
    MessageEvent,
    LaunchingEvent,
    OnlineEvent,
    LaunchFailedEvent,
    ShutdownEvent,
    OfflineEvent,
]


class AgentLogBuffer:
    """Bounded in-memory log per agent with async streaming.

    Cursors are absolute positions, so a consumer keeps its place even after
    old entries have been dropped to stay under ``max_entries``.
    """

    def __init__(self, max_entries: int = DEFAULT_MAX_ENTRIES) -> None:
        self._entries: dict[str, list[tuple[str, dict]]] = {}
        self._dropped: dict[str, int] = {}
        # Bumped on every close; outlives reap so late followers still stop.
        self._closes: dict[str, int] = {}
        self._max_entries = max_entries
        self._cond: asyncio.Condition = asyncio.Condition()

    async def append(self, agent: str, event_type: str, payload: dict) -> None:
        """Append an entry to an agent's log and notify waiters."""
        entries = self._entries.setdefault(agent, [])
        entries.append((event_type, payload))
        overflow = len(entries) - self._max_entries
        if overflow > 0:
            del entries[:overflow]
            self._dropped[agent] = self._dropped.get(agent, 0) + overflow
        async with self._cond:
            self._cond.notify_all()

    def entries(self, agent: str) -> list[tuple[str, dict]]:
        return list(self._entries.get(agent, []))

    async def stream(
        self, agent: str, cursor: int = 0, follow: bool = True
    ) -> AsyncIterator[tuple[str, dict]]:
        """Yield entries for an agent from cursor on.

        With ``follow`` the stream live-tails until the agent's log is
        closed; without it the stream ends once it has caught up.
        """
        closes = self._closes.get(agent, 0)
        while True:
            dropped = self._dropped.get(agent, 0)
            entries = self._entries.get(agent, [])
            cursor = max(cursor, dropped)
            while cursor - dropped < len(entries):
                yield entries[cursor - dropped]
                cursor += 1
            if not follow or self._closes.get(agent, 0) != closes:
                return
            async with self._cond:
                await self._cond.wait()

    async def close(self, agent: str) -> None:
        """Mark an agent's log finished (agent removed) so followers stop."""
        self._closes[agent] = self._closes.get(agent, 0) + 1
        async with self._cond:
            self._cond.notify_all()

    def reap(self, agent: str) -> None:
        """Free memory for a removed agent."""
        self._entries.pop(agent, None)
        self._dropped.pop(agent, None)

    async def publish(self, agent: str, event: AgentEvent) -> None:
        event.agent = agent
        payload = asdict(event)
        event_type = payload.pop("type")
        await self.append(agent, event_type, payload)

    async def say(self, agent: str, text: str) -> None:
        """Shorthand for a plain operator-facing line."""
        await self.publish(agent, MessageEvent(text=text))

    async def stream_sse(self, agent: str, follow: bool = True) -> AsyncIterator[dict]:
        """Stream entries formatted for SSE (event + data keys)."""
        async for event_type, payload in self.stream(agent, follow=follow):
            yield {
                "event": event_type,
                "data": json.dumps({"type": event_type, **payload}),
            }
