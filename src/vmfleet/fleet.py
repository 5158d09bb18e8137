"""The fleet: every known node, plus dispatch of launch and shutdown tasks.

Launches and shutdowns run as asyncio tasks outside the ordering lock.
At most one launch task and one shutdown task exist per agent; asking again
while one is in flight returns the same task. Both sequencers also take the
agent's own lock, so a launch and a shutdown of one agent never overlap.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Protocol

from vmfleet.errors import ConfigurationError, TransportError
from vmfleet.events import AgentLogBuffer, OfflineEvent
from vmfleet.hypervisor.control import Found, NotFound
from vmfleet.hypervisor.hypervisor import Hypervisor
from vmfleet.lifecycle.boot import BootSequencer
from vmfleet.lifecycle.shutdown import ShutdownSequencer
from vmfleet.nodes import (
    ComputerSnapshot,
    Node,
    NodeStatus,
    VirtualMachineAgent,
    VirtualMachineSpec,
    VMBacked,
)

logger = logging.getLogger(__name__)


class TransitionHistory(Protocol):
    """Where status changes of fleet nodes are persisted (FleetRegistry in the server)."""

    async def record_transition(
        self, agent: str, from_status: str, to_status: str, cause: str = ""
    ) -> None: ...


class Fleet:
    def __init__(
        self,
        boot: BootSequencer,
        shutdown: ShutdownSequencer,
        log: AgentLogBuffer,
        history: TransitionHistory | None = None,
    ) -> None:
        self.log = log
        self._history = history
        self._history_writes: set[asyncio.Task] = set()
        self._boot = boot
        self._shutdown = shutdown
        self._hypervisors: dict[str, Hypervisor] = {}
        self._nodes: dict[str, Node] = {}
        self._launches: dict[str, asyncio.Task] = {}
        self._shutdowns: dict[str, asyncio.Task] = {}

    # ── Hypervisors ───────────────────────────────────────────────

    def add_hypervisor(self, hypervisor: Hypervisor) -> Hypervisor:
        if hypervisor.name in self._hypervisors:
            raise ConfigurationError(f"Hypervisor already defined: {hypervisor.name}")
        self._hypervisors[hypervisor.name] = hypervisor
        return hypervisor

    def hypervisor(self, name: str) -> Hypervisor:
        try:
            return self._hypervisors[name]
        except KeyError:
            raise ConfigurationError(f"Could not find hypervisor {name!r}")

    def hypervisors(self) -> list[Hypervisor]:
        return list(self._hypervisors.values())

    def remove_hypervisor(self, name: str) -> None:
        hypervisor = self.hypervisor(name)
        users = [a.name for a in self.vm_agents() if a.hypervisor is hypervisor]
        if users:
            raise ConfigurationError(
                f"Hypervisor {name} is still used by: {', '.join(sorted(users))}"
            )
        del self._hypervisors[name]

    # ── Nodes ─────────────────────────────────────────────────────

    def add_node(self, node: Node) -> Node:
        if node.name in self._nodes:
            raise ConfigurationError(f"Node already defined: {node.name}")
        if isinstance(node, VMBacked) and node.hypervisor is not self._hypervisors.get(
            node.spec.hypervisor
        ):
            raise ConfigurationError(f"{node.name}: hypervisor {node.spec.hypervisor!r} is not part of this fleet")
        node.on_transition = self._record_transition
        self._nodes[node.name] = node
        return node

    def add_vm_agent(
        self,
        name: str,
        spec: VirtualMachineSpec,
        labels: frozenset[str] | set[str] | tuple[str, ...] = (),
        executors: int = 1,
        exclusive: bool = False,
    ) -> VirtualMachineAgent:
        agent = VirtualMachineAgent(
            name,
            spec,
            self.hypervisor(spec.hypervisor),
            labels=labels,
            executors=executors,
            exclusive=exclusive,
        )
        self.add_node(agent)
        return agent

    def get(self, name: str) -> Node | None:
        return self._nodes.get(name)

    def nodes(self) -> list[Node]:
        return list(self._nodes.values())

    def vm_agents(self) -> list[VirtualMachineAgent]:
        return [n for n in self._nodes.values() if isinstance(n, VMBacked) and n.launch_supported]

    def all_computers(self) -> list[ComputerSnapshot]:
        return [n.snapshot() for n in self._nodes.values()]

    def set_busy(self, name: str, busy: int) -> Node:
        node = self._require(name)
        node.set_busy(busy)
        return node

    # ── Lifecycle dispatch ────────────────────────────────────────

    def is_launching(self, name: str) -> bool:
        task = self._launches.get(name)
        return task is not None and not task.done()

    def is_shutting_down(self, name: str) -> bool:
        task = self._shutdowns.get(name)
        return task is not None and not task.done()

    def connect(self, agent: VirtualMachineAgent) -> asyncio.Task | None:
        """Start launching *agent*. Returns None if it cannot be launched now."""
        existing = self._launches.get(agent.name)
        if existing is not None and not existing.done():
            return existing
        if agent.is_online:
            return None
        # Claim before the task starts so the rest of this tick sees the
        # hypervisor's real remaining capacity.
        if not agent.hypervisor.try_claim(agent.name):
            logger.info("Not launching %s: hypervisor %s is full", agent.name, agent.hypervisor.name)
            return None
        agent.set_status(NodeStatus.CONNECTING)
        task = asyncio.create_task(self._boot.launch(agent), name=f"launch-{agent.name}")
        self._launches[agent.name] = task
        task.add_done_callback(lambda t, agent=agent: self._launch_done(agent, t))
        return task

    def disconnect(self, agent: VirtualMachineAgent, cause: str = "") -> asyncio.Task:
        """Shut *agent* down, cancelling any launch still in progress."""
        existing = self._shutdowns.get(agent.name)
        if existing is not None and not existing.done():
            return existing
        launch = self._launches.get(agent.name)
        if launch is not None and not launch.done():
            logger.info("Cancelling launch of %s before shutdown", agent.name)
            launch.cancel()
        task = asyncio.create_task(
            self._shutdown.shutdown(agent, cause), name=f"shutdown-{agent.name}"
        )
        self._shutdowns[agent.name] = task
        task.add_done_callback(lambda t, name=agent.name: self._forget(self._shutdowns, name, t))
        return task

    async def kill(self, agent: VirtualMachineAgent, cause: str = "killed") -> None:
        """Mark the agent offline and release its slot without touching the VM."""
        launch = self._launches.get(agent.name)
        if launch is not None and not launch.done():
            launch.cancel()
        logger.warning("Killing %s, %s is left as it is on %s", agent.name, agent.vm_name, agent.hypervisor.uri)
        agent.set_status(NodeStatus.OFFLINE, cause=cause)
        agent.hypervisor.capacity.mark_offline(agent.name)
        await self.log.publish(agent.name, OfflineEvent(cause=cause))

    async def remove(self, name: str) -> Node:
        """Forget a node, shutting its VM down first if it has one."""
        node = self._require(name)
        if isinstance(node, VMBacked):
            task = self.disconnect(node, cause="agent removed")
            await asyncio.gather(task, return_exceptions=True)
            node.hypervisor.capacity.mark_offline(node.name)
        del self._nodes[name]
        node.on_transition = None
        await self.log.close(name)
        return node

    async def task_failed(self, name: str, problem: str) -> bool:
        """Recover from a task that ended with problems on *name*.

        Returns True if the VM was found gone or stopped and the agent is
        being taken offline.
        """
        node = self._require(name)
        logger.warning("Task on %s ended with problems: %s", name, problem)
        if not isinstance(node, VMBacked) or not node.is_online:
            return False
        result = await node.hypervisor.resolve_domain(node.vm_name)
        if isinstance(result, NotFound) or (
            isinstance(result, Found) and not result.domain.is_running_or_blocked
        ):
            await self.log.say(name, f"VM no longer running after task problem: {problem}")
            self.disconnect(node, cause=f"VM stopped during task: {problem}")
            return True
        return False

    async def reconcile(self) -> None:
        """Re-derive capacity accounting from what each hypervisor reports."""
        for hypervisor in self.hypervisors():
            try:
                running = await hypervisor.running_domains()
            except TransportError as e:
                logger.warning("Could not poll %s for running domains: %s", hypervisor.uri, e)
                continue
            except Exception:
                logger.exception("Unexpected error polling %s for running domains", hypervisor.uri)
                continue
            holders: set[str] = set()
            for agent in self.vm_agents():
                if agent.hypervisor is not hypervisor:
                    continue
                if agent.is_connecting or self.is_launching(agent.name):
                    holders.add(agent.name)
                elif agent.is_online:
                    if agent.vm_name in running:
                        holders.add(agent.name)
                    elif not self.is_shutting_down(agent.name):
                        logger.warning("%s is online but %s is not running", agent.name, agent.vm_name)
                        self.disconnect(agent, cause="VM no longer running")
                elif agent.vm_name in running:
                    logger.warning("%s is offline but %s is still running", agent.name, agent.vm_name)
            hypervisor.capacity.reconcile(holders)

    async def close(self) -> None:
        """Cancel in-flight launches, then wait for shutdowns and history writes."""
        for task in list(self._launches.values()):
            task.cancel()
        pending = list(self._launches.values()) + list(self._shutdowns.values())
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        if self._history_writes:
            await asyncio.gather(*self._history_writes, return_exceptions=True)

    # ── Internal helpers ──────────────────────────────────────────

    def _launch_done(self, agent: VirtualMachineAgent, task: asyncio.Task) -> None:
        current = self._launches.get(agent.name) is task
        self._forget(self._launches, agent.name, task)
        if current and task.cancelled() and agent.is_connecting:
            # Cancelled before the boot sequencer ran: undo what connect() set up.
            agent.set_status(NodeStatus.OFFLINE, cause="launch cancelled")
            agent.hypervisor.capacity.mark_offline(agent.name)

    def _record_transition(self, node: Node, previous: NodeStatus, status: NodeStatus, cause: str) -> None:
        logger.debug("%s: %s -> %s %s", node.name, previous.value, status.value, cause)
        if self._history is None:
            return
        task = asyncio.create_task(
            self._history.record_transition(node.name, previous.value, status.value, cause)
        )
        self._history_writes.add(task)
        task.add_done_callback(self._history_written)

    def _history_written(self, task: asyncio.Task) -> None:
        self._history_writes.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Could not record status change", exc_info=task.exception())

    def _require(self, name: str) -> Node:
        node = self._nodes.get(name)
        if node is None:
            raise KeyError(name)
        return node

    @staticmethod
    def _forget(tasks: dict[str, asyncio.Task], name: str, task: asyncio.Task) -> None:
        if tasks.get(name) is task:
            del tasks[name]
        if not task.cancelled() and task.exception() is not None:
            logger.error("Lifecycle task for %s failed", name, exc_info=task.exception())
