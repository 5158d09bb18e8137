"""Agent transport: establishing the control channel to a booted guest."""

from __future__ import annotations

import logging
from typing import Protocol

import httpx

from vmfleet.events import AgentLogBuffer
from vmfleet.nodes import VirtualMachineAgent

logger = logging.getLogger(__name__)


class AgentTransport(Protocol):
    async def connect(self, agent: VirtualMachineAgent, log: AgentLogBuffer) -> None:
        """Try once to bring up the agent's channel. Errors are logged, not raised."""
        ...

    def is_online(self, agent: VirtualMachineAgent) -> bool: ...

    def disconnect(self, agent: VirtualMachineAgent) -> None: ...


class HealthCheckTransport:
    """Treats a guest as reachable once its agent answers ``/health`` with 200.

    The guest address is ``spec.address`` when set, otherwise the VM name
    (resolved through DNS on the host network).
    """

    def __init__(
        self,
        port: int = 8080,
        timeout: float = 2.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._port = port
        self._timeout = timeout
        self._transport = transport
        self._online: set[str] = set()

    def guest_url(self, agent: VirtualMachineAgent) -> str:
        host = agent.spec.address or agent.vm_name
        return f"http://{host}:{self._port}"

    async def connect(self, agent: VirtualMachineAgent, log: AgentLogBuffer) -> None:
        url = f"{self.guest_url(agent)}/health"
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                r = await client.get(url)
        except httpx.HTTPError as e:
            # Connection refused, timeout, etc. The guest isn't ready yet.
            logger.debug("Health probe for %s failed: %s", agent.name, e)
            await log.say(agent.name, f"Agent channel not reachable at {url}: {e}")
            return
        if r.status_code == 200:
            self._online.add(agent.name)
        else:
            await log.say(agent.name, f"Agent health check returned {r.status_code}")

    def is_online(self, agent: VirtualMachineAgent) -> bool:
        return agent.name in self._online

    def disconnect(self, agent: VirtualMachineAgent) -> None:
        self._online.discard(agent.name)
