"""Shutdown sequence: running agent to powered off or suspended.

The power step depends on configuration: a configured snapshot is reverted
(which stops and resets the domain in one call), otherwise the agent's
shutdown method applies. Whatever happens to that step, the agent ends
Offline and its capacity slot is released.
"""

from __future__ import annotations

import logging

from vmfleet.errors import TransportError
from vmfleet.events import AgentLogBuffer, OfflineEvent, ShutdownEvent
from vmfleet.hypervisor.control import Domain, Found, NotFound, TransportFailure
from vmfleet.nodes import NodeStatus, ShutdownMethod, VirtualMachineAgent
from vmfleet.transport import AgentTransport

logger = logging.getLogger(__name__)


class ShutdownSequencer:
    def __init__(self, transport: AgentTransport, log: AgentLogBuffer) -> None:
        self._transport = transport
        self._log = log

    async def shutdown(self, agent: VirtualMachineAgent, cause: str = "") -> None:
        async with agent.lock:
            await self._shutdown(agent, cause)

    async def _shutdown(self, agent: VirtualMachineAgent, cause: str) -> None:
        hypervisor = agent.hypervisor
        vm_name = agent.vm_name
        reason = f" reason: {cause}" if cause else ""

        logger.info('Virtual machine "%s" (agent "%s") is to be shut down.%s', vm_name, agent.name, reason)
        await self._log.publish(agent.name, ShutdownEvent(cause=cause))
        await self._say(agent, f'Virtual machine "{vm_name}" (agent "{agent.name}") is to be shut down.')

        try:
            result = await hypervisor.resolve_domain(vm_name)
            if isinstance(result, Found):
                await self._power_down(agent, result.domain)
            elif isinstance(result, NotFound):
                await self._say(agent, f'"{vm_name}" not found on Hypervisor, can not shut down!')
                logger.warning(
                    "Can not shut down %s on Hypervisor %s, domain not found!",
                    vm_name, hypervisor.uri,
                )
            elif isinstance(result, TransportFailure):
                raise TransportError(result.detail)
        except Exception as e:
            await self._say(agent, f"Error while shutting down: {e}")
            logger.error(
                "Error while shutting down %s on Hypervisor %s (cause: %s).",
                vm_name, hypervisor.uri, cause or "none", exc_info=True,
            )
        finally:
            self._transport.disconnect(agent)
            agent.set_status(NodeStatus.OFFLINE, cause=cause)
            await hypervisor.mark_vm_offline(agent.name, vm_name)
            await self._log.publish(agent.name, OfflineEvent(cause=cause))

    async def _power_down(self, agent: VirtualMachineAgent, domain: Domain) -> None:
        control = agent.hypervisor.control
        spec = agent.spec

        if not domain.is_running_or_blocked:
            await self._say(agent, "Already suspended, no shutdown required.")
            return

        if spec.snapshot_name:
            await self._say(agent, f"Reverting to {spec.snapshot_name} and shutting down.")
            await control.revert_to_snapshot(domain, spec.snapshot_name)
            return

        await self._say(agent, "Shutting down.")
        if spec.shutdown_method is ShutdownMethod.SUSPEND:
            await control.suspend(domain)
        elif spec.shutdown_method is ShutdownMethod.DESTROY:
            await control.destroy(domain)
        else:
            await control.shutdown(domain)

    async def _say(self, agent: VirtualMachineAgent, text: str) -> None:
        await self._log.say(agent.name, text)
