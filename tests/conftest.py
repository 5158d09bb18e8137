"""Shared fakes for the lifecycle tests: a scripted hypervisor and agent transport."""

from __future__ import annotations

import asyncio

import pytest

from vmfleet.errors import TransportError
from vmfleet.events import AgentLogBuffer
from vmfleet.fleet import Fleet
from vmfleet.hypervisor.control import Domain, DomainState, Found, NotFound, TransportFailure
from vmfleet.hypervisor.hypervisor import Hypervisor
from vmfleet.lifecycle.boot import BootSequencer
from vmfleet.lifecycle.shutdown import ShutdownSequencer
from vmfleet.nodes import VirtualMachineSpec


class FakeDomainControl:
    """In-memory DomainControl. Records every power call in ``calls``."""

    def __init__(self, uri: str = "http://hv.test:8000", domains: dict[str, DomainState] | None = None):
        self._uri = uri
        self.domains: dict[str, DomainState] = dict(domains or {})
        self.calls: list[tuple[str, str]] = []
        self.unreachable = False
        self.fail_on: set[str] = set()

    @property
    def uri(self) -> str:
        return self._uri

    async def lookup(self, name: str):
        if self.unreachable:
            return TransportFailure("connection refused")
        if name not in self.domains:
            return NotFound(name)
        return Found(Domain(name, self.domains[name]))

    async def list_domains(self) -> list[Domain]:
        if self.unreachable:
            raise TransportError("connection refused")
        return [Domain(n, s) for n, s in self.domains.items()]

    async def _power(self, action: str, domain: Domain, state: DomainState) -> None:
        self.calls.append((action, domain.name))
        if action in self.fail_on:
            raise TransportError(f"{action} failed")
        self.domains[domain.name] = state

    async def create(self, domain: Domain) -> None:
        await self._power("create", domain, DomainState.RUNNING)

    async def shutdown(self, domain: Domain) -> None:
        await self._power("shutdown", domain, DomainState.SHUTOFF)

    async def suspend(self, domain: Domain) -> None:
        await self._power("suspend", domain, DomainState.PAUSED)

    async def destroy(self, domain: Domain) -> None:
        await self._power("destroy", domain, DomainState.SHUTOFF)

    async def revert_to_snapshot(self, domain: Domain, snapshot: str) -> None:
        await self._power(f"revert:{snapshot}", domain, DomainState.SHUTOFF)


class FakeTransport:
    """AgentTransport whose handshake succeeds on attempt ``succeed_on`` (None: never)."""

    def __init__(self, succeed_on: int | None = 1):
        self.succeed_on = succeed_on
        self.attempts: dict[str, int] = {}
        self._online: set[str] = set()
        self.disconnected: list[str] = []

    async def connect(self, agent, log) -> None:
        n = self.attempts.get(agent.name, 0) + 1
        self.attempts[agent.name] = n
        if self.succeed_on is not None and n >= self.succeed_on:
            self._online.add(agent.name)

    def is_online(self, agent) -> bool:
        return agent.name in self._online

    def disconnect(self, agent) -> None:
        self._online.discard(agent.name)
        self.disconnected.append(agent.name)



class RecordingHistory:
    """TransitionHistory that keeps (agent, from, to, cause) tuples in memory."""

    def __init__(self):
        self.records: list[tuple[str, str, str, str]] = []

    async def record_transition(self, agent, from_status, to_status, cause=""):
        self.records.append((agent, from_status, to_status, cause))

@pytest.fixture
def log():
    return AgentLogBuffer()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def fake_sleep(sleeps):
    async def _sleep(seconds: float) -> None:
        sleeps.append(seconds)
        await asyncio.sleep(0)

    return _sleep


@pytest.fixture
def fleet(log, transport, fake_sleep):
    return Fleet(
        boot=BootSequencer(transport, log, sleep=fake_sleep),
        shutdown=ShutdownSequencer(transport, log),
        log=log,
    )


@pytest.fixture
def make_hypervisor(fleet):
    def _make(name: str = "hv1", max_online: int = 2, domains: dict[str, DomainState] | None = None):
        control = FakeDomainControl(uri=f"http://{name}.test:8000", domains=domains)
        return fleet.add_hypervisor(Hypervisor(name, control, max_online))

    return _make


@pytest.fixture
def make_vm(fleet):
    def _make(name: str, hypervisor: str = "hv1", labels=(), executors: int = 1, **spec_kw):
        spec_kw.setdefault("vm_name", f"{name}-vm")
        spec = VirtualMachineSpec(hypervisor=hypervisor, **spec_kw)
        return fleet.add_vm_agent(name, spec, labels=labels, executors=executors)

    return _make


def messages(log: AgentLogBuffer, agent: str) -> list[str]:
    return [p["text"] for t, p in log.entries(agent) if t == "agent.message"]


@pytest.fixture
def agent_messages(log):
    return lambda agent: messages(log, agent)
