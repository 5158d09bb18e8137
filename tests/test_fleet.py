"""Tests for fleet bookkeeping and lifecycle dispatch."""

import asyncio

import httpx
import pytest

from vmfleet.errors import ConfigurationError
from vmfleet.fleet import Fleet
from vmfleet.hypervisor.control import DomainState, HttpDomainControl
from vmfleet.hypervisor.hypervisor import Hypervisor
from vmfleet.lifecycle.boot import BootSequencer
from vmfleet.lifecycle.shutdown import ShutdownSequencer
from vmfleet.nodes import Node, NodeStatus, VirtualMachineAgent, VirtualMachineSpec, VMBacked

from conftest import FakeDomainControl, FakeTransport, RecordingHistory


# ── Definitions ───────────────────────────────────────────────


def test_vm_agent_requires_known_hypervisor(fleet):
    with pytest.raises(ConfigurationError):
        fleet.add_vm_agent("a", VirtualMachineSpec(hypervisor="nope", vm_name="a-vm"))


def test_duplicate_names_rejected(fleet, make_hypervisor, make_vm):
    make_hypervisor("hv1")
    make_vm("a")
    with pytest.raises(ConfigurationError):
        make_vm("a")
    with pytest.raises(ConfigurationError):
        make_hypervisor("hv1")


def test_remove_hypervisor_in_use(fleet, make_hypervisor, make_vm):
    make_hypervisor("hv1")
    make_hypervisor("hv2")
    make_vm("a", hypervisor="hv1")

    with pytest.raises(ConfigurationError, match="still used by: a"):
        fleet.remove_hypervisor("hv1")
    fleet.remove_hypervisor("hv2")
    assert [h.name for h in fleet.hypervisors()] == ["hv1"]


def test_foreign_hypervisor_rejected(fleet, make_hypervisor):
    make_hypervisor("hv1")
    stray = Hypervisor("hv1", FakeDomainControl(), 1)
    agent = VirtualMachineAgent("a", VirtualMachineSpec(hypervisor="hv1", vm_name="a-vm"), stray)
    with pytest.raises(ConfigurationError):
        fleet.add_node(agent)


def test_static_nodes_are_not_vm_backed(fleet, make_hypervisor, make_vm):
    make_hypervisor("hv1")
    vm = make_vm("a")
    static = fleet.add_node(Node("static-1", labels={"linux"}))

    assert isinstance(vm, VMBacked)
    assert not isinstance(static, VMBacked)
    assert fleet.vm_agents() == [vm]
    assert {c.name for c in fleet.all_computers()} == {"a", "static-1"}


def test_invalid_spec_rejected():
    with pytest.raises(ConfigurationError):
        VirtualMachineSpec(hypervisor="hv1", vm_name="")
    with pytest.raises(ConfigurationError):
        VirtualMachineSpec(hypervisor="hv1", vm_name="x", retries=0)
    with pytest.raises(ConfigurationError):
        VirtualMachineSpec(hypervisor="hv1", vm_name="x", shutdown_method="hibernate")
    with pytest.raises(ConfigurationError, match="max_idle_minutes"):
        VirtualMachineSpec(hypervisor="hv1", vm_name="x", max_idle_minutes="60")
    with pytest.raises(ConfigurationError, match="retries"):
        VirtualMachineSpec(hypervisor="hv1", vm_name="x", retries=True)


def test_invalid_node_settings_rejected():
    with pytest.raises(ConfigurationError, match="executors"):
        Node("n", executors="2")
    with pytest.raises(ConfigurationError, match="labels"):
        Node("n", labels="linux")
    with pytest.raises(ConfigurationError, match="labels"):
        Node("n", labels=["linux", 3])


# ── Dispatch ──────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_connect_is_deduplicated(fleet, transport, make_hypervisor, make_vm):
    make_hypervisor("hv1", domains={"a-vm": DomainState.RUNNING})
    a = make_vm("a")

    first = fleet.connect(a)
    second = fleet.connect(a)

    assert first is second
    assert await first is True
    assert transport.attempts["a"] == 1
    assert fleet.connect(a) is None  # already online


@pytest.mark.asyncio
async def test_connect_refused_when_full(fleet, make_hypervisor, make_vm):
    hv = make_hypervisor("hv1", max_online=1)
    hv.capacity.mark_online("other")
    a = make_vm("a")

    assert fleet.connect(a) is None
    assert a.is_offline


@pytest.mark.asyncio
async def test_disconnect_is_deduplicated(fleet, make_hypervisor, make_vm):
    hv = make_hypervisor("hv1", domains={"a-vm": DomainState.RUNNING})
    a = make_vm("a")
    await fleet.connect(a)

    first = fleet.disconnect(a, cause="one")
    second = fleet.disconnect(a, cause="two")
    assert first is second
    await first

    assert hv.control.calls == [("shutdown", "a-vm")]
    assert hv.capacity.current == 0


@pytest.mark.asyncio
async def test_disconnect_cancels_launch_before_it_starts(fleet, make_hypervisor, make_vm):
    hv = make_hypervisor("hv1", domains={"a-vm": DomainState.SHUTOFF})
    a = make_vm("a")

    launch = fleet.connect(a)
    shutdown = fleet.disconnect(a, cause="operator")
    await asyncio.gather(launch, shutdown, return_exceptions=True)

    assert launch.cancelled()
    assert a.is_offline
    assert hv.capacity.current == 0
    assert ("create", "a-vm") not in hv.control.calls


@pytest.mark.asyncio
async def test_launch_and_shutdown_never_overlap(fleet, log, make_hypervisor, make_vm):
    hv = make_hypervisor("hv1", domains={"a-vm": DomainState.SHUTOFF})
    a = make_vm("a", retries=3)

    launch = fleet.connect(a)
    # Let the boot sequence take the agent lock and reach its first sleep.
    for _ in range(5):
        await asyncio.sleep(0)
    shutdown = fleet.disconnect(a)
    await asyncio.gather(launch, shutdown, return_exceptions=True)

    kinds = [t for t, _ in log.entries("a")]
    assert kinds.index("agent.shutdown") > kinds.index("agent.launching")
    assert a.is_offline
    assert hv.capacity.current == 0


@pytest.mark.asyncio
async def test_kill_releases_slot_without_touching_vm(fleet, log, make_hypervisor, make_vm):
    hv = make_hypervisor("hv1", domains={"a-vm": DomainState.RUNNING})
    a = make_vm("a")
    await fleet.connect(a)

    await fleet.kill(a, cause="agent channel lost")

    assert a.is_offline
    assert hv.capacity.current == 0
    assert hv.control.domains["a-vm"] is DomainState.RUNNING
    assert hv.control.calls == []
    kind, payload = log.entries("a")[-1]
    assert kind == "agent.offline"
    assert payload["cause"] == "agent channel lost"


@pytest.mark.asyncio
async def test_kill_cancels_launch_in_progress(fleet, make_hypervisor, make_vm):
    hv = make_hypervisor("hv1", domains={"a-vm": DomainState.SHUTOFF})
    a = make_vm("a", retries=3)
    launch = fleet.connect(a)

    await fleet.kill(a)
    await asyncio.gather(launch, return_exceptions=True)

    assert launch.cancelled()
    assert a.is_offline
    assert hv.capacity.current == 0


@pytest.mark.asyncio
async def test_remove_shuts_down_vm_and_forgets_it(fleet, make_hypervisor, make_vm):
    hv = make_hypervisor("hv1", domains={"a-vm": DomainState.RUNNING})
    a = make_vm("a")
    await fleet.connect(a)

    await fleet.remove("a")

    assert fleet.get("a") is None
    assert hv.capacity.current == 0
    assert hv.control.domains["a-vm"] is DomainState.SHUTOFF


@pytest.mark.asyncio
async def test_remove_unknown_raises(fleet):
    with pytest.raises(KeyError):
        await fleet.remove("ghost")


@pytest.mark.asyncio
async def test_task_failed_with_stopped_vm_takes_agent_offline(fleet, make_hypervisor, make_vm):
    hv = make_hypervisor("hv1", domains={"a-vm": DomainState.RUNNING})
    a = make_vm("a")
    await fleet.connect(a)
    hv.control.domains["a-vm"] = DomainState.CRASHED

    assert await fleet.task_failed("a", "segfault") is True
    await fleet.disconnect(a)

    assert a.is_offline
    assert hv.capacity.current == 0


@pytest.mark.asyncio
async def test_task_failed_with_running_vm_keeps_agent(fleet, make_hypervisor, make_vm):
    make_hypervisor("hv1", domains={"a-vm": DomainState.RUNNING})
    a = make_vm("a")
    await fleet.connect(a)

    assert await fleet.task_failed("a", "test failure") is False
    assert a.is_online


# ── Reconciliation ────────────────────────────────────────────


@pytest.mark.asyncio
async def test_reconcile_drops_leaked_slots(fleet, make_hypervisor, make_vm):
    hv = make_hypervisor("hv1", max_online=2, domains={"a-vm": DomainState.RUNNING})
    a = make_vm("a")
    await fleet.connect(a)
    hv.capacity.mark_online("ghost")

    await fleet.reconcile()

    assert hv.capacity.online_agents == frozenset({"a"})


@pytest.mark.asyncio
async def test_reconcile_disconnects_online_agent_without_vm(fleet, make_hypervisor, make_vm):
    hv = make_hypervisor("hv1", domains={"a-vm": DomainState.RUNNING})
    a = make_vm("a")
    await fleet.connect(a)
    hv.control.domains["a-vm"] = DomainState.SHUTOFF

    await fleet.reconcile()
    await fleet.disconnect(a)

    assert a.is_offline
    assert hv.capacity.current == 0


@pytest.mark.asyncio
async def test_reconcile_skips_unreachable_hypervisor(fleet, make_hypervisor, make_vm):
    hv = make_hypervisor("hv1", domains={"a-vm": DomainState.RUNNING})
    a = make_vm("a")
    await fleet.connect(a)
    hv.capacity.mark_online("ghost")
    hv.control.unreachable = True

    await fleet.reconcile()

    assert hv.capacity.online_agents == frozenset({"a", "ghost"})


@pytest.mark.asyncio
async def test_reconcile_continues_past_misbehaving_hypervisor(fleet, make_hypervisor):
    bad = HttpDomainControl(
        "http://bad.test:8000",
        transport=httpx.MockTransport(lambda r: httpx.Response(200, text="<html>proxy</html>")),
    )
    fleet.add_hypervisor(Hypervisor("bad", bad, 1))
    good = make_hypervisor("good")
    good.capacity.mark_online("leaked")

    await fleet.reconcile()

    assert good.capacity.online_agents == frozenset()


@pytest.mark.asyncio
async def test_set_busy_tracks_idle_since(fleet, make_hypervisor, make_vm):
    make_hypervisor("hv1", domains={"a-vm": DomainState.RUNNING})
    a = make_vm("a", executors=2)
    await fleet.connect(a)
    assert a.idle_since is not None

    fleet.set_busy("a", 2)
    assert a.idle_since is None
    assert not a.is_partially_idle

    fleet.set_busy("a", 0)
    assert a.is_idle
    assert a.idle_since is not None
    assert a.status is NodeStatus.ONLINE


# ── Transition history ────────────────────────────────────────


@pytest.mark.asyncio
async def test_status_changes_are_recorded(log, transport, fake_sleep):
    history = RecordingHistory()
    fleet = Fleet(
        boot=BootSequencer(transport, log, sleep=fake_sleep),
        shutdown=ShutdownSequencer(transport, log),
        log=log,
        history=history,
    )
    fleet.add_hypervisor(Hypervisor("hv1", FakeDomainControl(domains={"a-vm": DomainState.RUNNING}), 1))
    a = fleet.add_vm_agent("a", VirtualMachineSpec(hypervisor="hv1", vm_name="a-vm"))

    await fleet.connect(a)
    await fleet.disconnect(a, cause="idle for 60 minutes")
    await fleet.close()

    assert history.records == [
        ("a", "offline", "connecting", ""),
        ("a", "connecting", "online", ""),
        ("a", "online", "offline", "idle for 60 minutes"),
    ]


@pytest.mark.asyncio
async def test_failed_launch_records_its_cause(log, fake_sleep):
    history = RecordingHistory()
    fleet = Fleet(
        boot=BootSequencer(FakeTransport(succeed_on=None), log, sleep=fake_sleep),
        shutdown=ShutdownSequencer(FakeTransport(), log),
        log=log,
        history=history,
    )
    fleet.add_hypervisor(Hypervisor("hv1", FakeDomainControl(domains={"a-vm": DomainState.RUNNING}), 1))
    a = fleet.add_vm_agent("a", VirtualMachineSpec(hypervisor="hv1", vm_name="a-vm", retries=2))

    assert await fleet.connect(a) is False
    await fleet.close()

    assert history.records[-1] == ("a", "connecting", "offline", "maximum retries reached")
