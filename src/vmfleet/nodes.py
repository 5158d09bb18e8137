"""Execution nodes: static nodes and VM-backed agents."""

from __future__ import annotations

import asyncio
import time
from dataclasses import asdict, dataclass
from enum import Enum
from typing import TYPE_CHECKING, Callable, Protocol, runtime_checkable

from vmfleet.errors import ConfigurationError
from vmfleet.queue import CanTake, WorkItem

if TYPE_CHECKING:
    from vmfleet.hypervisor.hypervisor import Hypervisor


class NodeStatus(str, Enum):
    OFFLINE = "offline"
    CONNECTING = "connecting"
    ONLINE = "online"


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


class ShutdownMethod(str, Enum):
    SHUTDOWN = "shutdown"  # ACPI request to the guest
    SUSPEND = "suspend"  # pause, memory kept
    DESTROY = "destroy"  # hard power-off


@dataclass
class VirtualMachineSpec:
    """Per-agent VM mapping and lifecycle settings."""

    hypervisor: str
    vm_name: str
    snapshot_name: str = ""
    shutdown_method: ShutdownMethod = ShutdownMethod.SHUTDOWN
    boot_wait_seconds: float = 30
    retries: int = 3
    max_idle_minutes: float = 60
    # Guest address for the transport handshake; defaults to the VM name.
    address: str = ""

    def __post_init__(self) -> None:
        for key in ("hypervisor", "vm_name", "snapshot_name", "address"):
            if not isinstance(getattr(self, key), str):
                raise ConfigurationError(f"{key} must be a string")
        if not self.hypervisor:
            raise ConfigurationError("VM agent has no hypervisor configured")
        if not self.vm_name:
            raise ConfigurationError("VM agent has no virtual machine name configured")
        if not _is_int(self.retries) or self.retries < 1:
            raise ConfigurationError(f"retries must be an integer >= 1, got {self.retries!r}")
        if not _is_number(self.boot_wait_seconds) or self.boot_wait_seconds < 0:
            raise ConfigurationError(f"boot_wait_seconds must be a number >= 0, got {self.boot_wait_seconds!r}")
        if not _is_number(self.max_idle_minutes) or self.max_idle_minutes < 0:
            raise ConfigurationError(f"max_idle_minutes must be a number >= 0, got {self.max_idle_minutes!r}")
        try:
            self.shutdown_method = ShutdownMethod(self.shutdown_method)
        except ValueError:
            raise ConfigurationError(f"Unknown shutdown method: {self.shutdown_method}")

    def to_dict(self) -> dict:
        data = asdict(self)
        data["shutdown_method"] = self.shutdown_method.value
        return data


@dataclass(frozen=True)
class ComputerSnapshot:
    """Read-only view of one node, taken once per tick."""

    node: Node
    name: str
    online: bool
    connecting: bool
    idle: bool
    partially_idle: bool
    accepting_tasks: bool
    idle_executors: int
    idle_since: float | None


class Node:
    """A node that can execute work items. Static nodes are never launched."""

    launch_supported = False

    def __init__(
        self,
        name: str,
        labels: frozenset[str] | set[str] | tuple[str, ...] = (),
        executors: int = 1,
        exclusive: bool = False,
    ) -> None:
        if not _is_int(executors) or executors < 1:
            raise ConfigurationError(f"{name}: executors must be an integer >= 1, got {executors!r}")
        if not isinstance(labels, (list, tuple, set, frozenset)) or not all(
            isinstance(label, str) for label in labels
        ):
            raise ConfigurationError(f"{name}: labels must be a list of strings")
        if not isinstance(exclusive, bool):
            raise ConfigurationError(f"{name}: exclusive must be true or false")
        self.name = name
        self.labels = frozenset(labels)
        self.executors = executors
        self.exclusive = exclusive
        self.accepting_tasks = True
        self.status = NodeStatus.OFFLINE
        self.busy = 0
        self.idle_since: float | None = None
        # Called with (node, previous, new, cause) whenever the status changes.
        self.on_transition: Callable[[Node, NodeStatus, NodeStatus, str], None] | None = None

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name!r}, {self.status.value})"

    @property
    def is_online(self) -> bool:
        return self.status is NodeStatus.ONLINE

    @property
    def is_offline(self) -> bool:
        return self.status is NodeStatus.OFFLINE

    @property
    def is_connecting(self) -> bool:
        return self.status is NodeStatus.CONNECTING

    @property
    def is_idle(self) -> bool:
        return self.busy == 0

    @property
    def is_partially_idle(self) -> bool:
        return self.busy < self.executors

    @property
    def idle_executors(self) -> int:
        return max(self.executors - self.busy, 0)

    def set_status(self, status: NodeStatus, now: float | None = None, cause: str = "") -> None:
        now = time.time() if now is None else now
        previous = self.status
        self.status = NodeStatus(status)
        if self.status is NodeStatus.ONLINE and previous is not NodeStatus.ONLINE:
            self.idle_since = now if self.busy == 0 else None
        elif self.status is NodeStatus.OFFLINE:
            self.busy = 0
            self.idle_since = None
        if self.status is not previous and self.on_transition is not None:
            self.on_transition(self, previous, self.status, cause)

    def set_busy(self, busy: int, now: float | None = None) -> None:
        """Record how many executors are running work (reported by the scheduler)."""
        now = time.time() if now is None else now
        busy = min(max(busy, 0), self.executors)
        was_idle = self.busy == 0
        self.busy = busy
        if busy > 0:
            self.idle_since = None
        elif not was_idle or self.idle_since is None:
            self.idle_since = now

    def can_take(self, item: WorkItem) -> CanTake:
        return item.can_run_on(self)

    def snapshot(self) -> ComputerSnapshot:
        return ComputerSnapshot(
            node=self,
            name=self.name,
            online=self.is_online,
            connecting=self.is_connecting,
            idle=self.is_idle,
            partially_idle=self.is_partially_idle,
            accepting_tasks=self.accepting_tasks,
            idle_executors=self.idle_executors,
            idle_since=self.idle_since,
        )

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "kind": "static",
            "status": self.status.value,
            "labels": sorted(self.labels),
            "executors": self.executors,
            "busy": self.busy,
            "exclusive": self.exclusive,
            "idle_since": self.idle_since,
        }


@runtime_checkable
class VMBacked(Protocol):
    """Capability of nodes whose lifetime is tied to a hypervisor domain."""

    @property
    def spec(self) -> VirtualMachineSpec: ...

    @property
    def hypervisor(self) -> Hypervisor: ...

    @property
    def vm_name(self) -> str: ...


class VirtualMachineAgent(Node):
    """A node backed by one VM on one hypervisor."""

    launch_supported = True

    def __init__(
        self,
        name: str,
        spec: VirtualMachineSpec,
        hypervisor: Hypervisor,
        labels: frozenset[str] | set[str] | tuple[str, ...] = (),
        executors: int = 1,
        exclusive: bool = False,
    ) -> None:
        super().__init__(name, labels=labels, executors=executors, exclusive=exclusive)
        if spec.hypervisor != hypervisor.name:
            raise ConfigurationError(
                f"{name}: spec names hypervisor {spec.hypervisor!r}, got {hypervisor.name!r}"
            )
        self.spec = spec
        self._hypervisor = hypervisor
        # Serializes launch and shutdown of this agent.
        self.lock = asyncio.Lock()

    @property
    def hypervisor(self) -> Hypervisor:
        return self._hypervisor

    @property
    def vm_name(self) -> str:
        return self.spec.vm_name

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["kind"] = "vm"
        data["vm"] = self.spec.to_dict()
        return data
