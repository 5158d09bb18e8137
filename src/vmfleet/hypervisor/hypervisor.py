"""A hypervisor: its control connection plus its online-agent limit."""

from __future__ import annotations

import logging

from vmfleet.hypervisor.capacity import CapacityTracker
from vmfleet.hypervisor.control import (
    DomainControl,
    DomainLookup,
    Found,
    NotFound,
    TransportFailure,
)

logger = logging.getLogger(__name__)


class Hypervisor:
    """Capacity-limited virtualization host shared by a group of agents."""

    def __init__(self, name: str, control: DomainControl, max_online: int) -> None:
        self.name = name
        self.control = control
        self.capacity = CapacityTracker(max_online)

    def __repr__(self) -> str:
        return f"Hypervisor({self.name!r}, {self.uri!r}, {self.capacity.current}/{self.capacity.maximum})"

    @property
    def uri(self) -> str:
        return self.control.uri

    def is_full(self) -> bool:
        return self.capacity.is_full()

    async def resolve_domain(self, vm_name: str) -> DomainLookup:
        return await self.control.lookup(vm_name)

    def try_claim(self, agent_name: str) -> bool:
        return self.capacity.try_claim(agent_name)

    async def mark_vm_online(self, agent_name: str, vm_name: str) -> None:
        if self.capacity.mark_online(agent_name):
            logger.info(
                "%s (%s) online on %s, %d/%d",
                agent_name, vm_name, self.name,
                self.capacity.current, self.capacity.maximum,
            )
        await self._confirm(agent_name, vm_name)

    async def mark_vm_offline(self, agent_name: str, vm_name: str) -> None:
        if self.capacity.mark_offline(agent_name):
            logger.info(
                "%s (%s) offline on %s, %d/%d",
                agent_name, vm_name, self.name,
                self.capacity.current, self.capacity.maximum,
            )
        await self._confirm(agent_name, vm_name)

    async def running_domains(self) -> set[str]:
        """Names of domains currently running or blocked. Raises TransportError."""
        domains = await self.control.list_domains()
        return {d.name for d in domains if d.is_running_or_blocked}

    async def _confirm(self, agent_name: str, vm_name: str) -> None:
        # Accounting already moved; the hypervisor is only asked so that a
        # mismatch shows up in the logs. The next reconcile fixes it.
        try:
            result = await self.control.lookup(vm_name)
        except Exception:
            logger.warning(
                "Could not confirm state of %s (%s) on %s",
                vm_name, agent_name, self.uri, exc_info=True,
            )
            return
        if isinstance(result, Found):
            logger.debug("%s on %s is %s", vm_name, self.uri, result.domain.state.value)
        elif isinstance(result, NotFound):
            logger.warning("VM %s (%s) not defined on %s", vm_name, agent_name, self.uri)
        elif isinstance(result, TransportFailure):
            logger.warning(
                "Could not confirm state of %s (%s) on %s: %s",
                vm_name, agent_name, self.uri, result.detail,
            )
