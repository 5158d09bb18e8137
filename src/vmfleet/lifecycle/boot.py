"""Boot sequence: powered-off VM to reachable agent.

Flow for one launch:
    1. Resolve the domain on the hypervisor and claim a capacity slot.
       A full hypervisor at this point means the decision went stale;
       the launch is abandoned quietly and the next tick re-evaluates.
    2. Power the domain on unless it is already running or blocked
       (a running domain is simply re-attached), then wait boot_wait.
    3. Handshake with the agent transport, up to ``retries`` attempts.
       Between attempts the domain is resolved again: if it vanished the
       launch fails, if it stopped it is powered on again.

The pause between attempts is an asyncio sleep, so cancelling the launch
task (agent removed, operator disconnect) takes effect at once.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

from vmfleet.errors import CapacityRaceError, NotFoundError, TransportError
from vmfleet.events import AgentLogBuffer, LaunchFailedEvent, LaunchingEvent, OnlineEvent
from vmfleet.hypervisor.control import Domain, Found, NotFound, TransportFailure
from vmfleet.nodes import NodeStatus, VirtualMachineAgent
from vmfleet.transport import AgentTransport

logger = logging.getLogger(__name__)


class BootSequencer:
    def __init__(
        self,
        transport: AgentTransport,
        log: AgentLogBuffer,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._transport = transport
        self._log = log
        self._sleep = sleep

    async def launch(self, agent: VirtualMachineAgent) -> bool:
        """Bring *agent* online. Returns True on success, False on any failure.

        Never raises, except CancelledError after cleaning up.
        """
        async with agent.lock:
            return await self._launch(agent)

    async def _launch(self, agent: VirtualMachineAgent) -> bool:
        hypervisor = agent.hypervisor
        vm_name = agent.vm_name
        spec = agent.spec

        if agent.is_online:
            logger.debug("%s is already online, nothing to launch", agent.name)
            return True

        agent.set_status(NodeStatus.CONNECTING)
        await self._log.publish(agent.name, LaunchingEvent(vm_name=vm_name, hypervisor=hypervisor.name))
        await self._say(agent, f'Virtual machine "{vm_name}" (agent "{agent.name}") is to be started.')

        try:
            await self._say(agent, "Connecting to the hypervisor...")
            domain = await self._resolve(agent)

            if not hypervisor.try_claim(agent.name):
                raise CapacityRaceError(f"Hypervisor {hypervisor.name} is full, can't launch new vms")

            if domain.is_not_blocked_and_not_running:
                await self._say(
                    agent,
                    f"Starting, waiting for {spec.boot_wait_seconds}s to let it fully boot up...",
                )
                await hypervisor.control.create(domain)
                await self._sleep(spec.boot_wait_seconds)
            else:
                await self._say(agent, "Already running, no startup required.")

            attempts = await self._handshake(agent)
        except CapacityRaceError as e:
            await self._say(agent, str(e))
            logger.info("Launch of %s abandoned: %s", agent.name, e)
            self._abandon(agent, str(e))
            return False
        except asyncio.CancelledError:
            self._abandon(agent, "launch cancelled")
            logger.info("Launch of %s on %s cancelled", agent.name, hypervisor.uri)
            await self._say(agent, "Launch cancelled.")
            raise
        except Exception as e:
            await self._log.publish(agent.name, LaunchFailedEvent(error=str(e)))
            logger.error(
                "Error while launching %s on Hypervisor %s.",
                vm_name, hypervisor.uri, exc_info=True,
            )
            self._abandon(agent, f"launch failed: {e}")
            return False

        if attempts is None:
            await self._log.publish(
                agent.name, LaunchFailedEvent(error="Maximum retries reached")
            )
            logger.warning(
                "Giving up on %s (%s) on %s after %d attempts",
                agent.name, vm_name, hypervisor.uri, spec.retries,
            )
            self._abandon(agent, "maximum retries reached")
            return False

        agent.set_status(NodeStatus.ONLINE)
        await hypervisor.mark_vm_online(agent.name, vm_name)
        await self._log.publish(agent.name, OnlineEvent(attempts=attempts))
        logger.info("%s is online after %d attempt(s)", agent.name, attempts)
        return True

    async def _handshake(self, agent: VirtualMachineAgent) -> int | None:
        """Run the bounded connect loop. Returns the attempt count, or None if exhausted."""
        spec = agent.spec
        attempts = 0
        while True:
            attempts += 1
            await self._say(agent, "Connecting agent channel.")
            await self._transport.connect(agent, self._log)

            if self._transport.is_online(agent):
                return attempts
            if attempts >= spec.retries:
                await self._say(agent, "Maximum retries reached. Failed to start agent channel.")
                return None

            await self._say(
                agent,
                f"Not up yet, waiting for {spec.boot_wait_seconds}s more "
                f"({attempts}/{spec.retries} retries)...",
            )
            # Make sure nobody destroyed or undefined the VM between attempts.
            result = await agent.hypervisor.resolve_domain(agent.vm_name)
            if isinstance(result, NotFound):
                raise NotFoundError(agent.vm_name, agent.hypervisor.uri)
            if isinstance(result, TransportFailure):
                await self._say(agent, f"Could not check VM state: {result.detail}")
            elif result.domain.is_not_blocked_and_not_running:
                await self._say(agent, f'Could not create VM "{agent.vm_name}" trying again')
                await agent.hypervisor.control.create(result.domain)
            await self._sleep(spec.boot_wait_seconds)

    async def _resolve(self, agent: VirtualMachineAgent) -> Domain:
        result = await agent.hypervisor.resolve_domain(agent.vm_name)
        if isinstance(result, Found):
            return result.domain
        if isinstance(result, NotFound):
            raise NotFoundError(agent.vm_name, agent.hypervisor.uri)
        raise TransportError(result.detail)

    def _abandon(self, agent: VirtualMachineAgent, cause: str) -> None:
        # No awaits here: also runs while a cancellation unwinds.
        self._transport.disconnect(agent)
        agent.set_status(NodeStatus.OFFLINE, cause=cause)
        agent.hypervisor.capacity.mark_offline(agent.name)

    async def _say(self, agent: VirtualMachineAgent, text: str) -> None:
        await self._log.say(agent.name, text)
