"""Tests for the retention controller's per-tick decisions."""

import pytest

from vmfleet.hypervisor.control import DomainState
from vmfleet.lifecycle.controller import Decision, LifecycleController
from vmfleet.nodes import NodeStatus
from vmfleet.queue import LabelWorkItem, WorkQueue

NOW = 1_000_000.0


@pytest.fixture
def queue():
    return WorkQueue()


@pytest.fixture
def controller(fleet, queue):
    return LifecycleController(fleet, queue, clock=lambda: NOW)


def _bring_online(agent, since: float = NOW) -> None:
    agent.set_status(NodeStatus.ONLINE, now=since)
    agent.hypervisor.capacity.mark_online(agent.name)


@pytest.mark.asyncio
async def test_scenario_a_full_hypervisor_waits(fleet, queue, controller, make_hypervisor, make_vm):
    hv = make_hypervisor("hv1", max_online=2, domains={"x-vm": DomainState.SHUTOFF})
    hv.capacity.mark_online("other-1")
    hv.capacity.mark_online("other-2")
    x = make_vm("x", labels={"special"})
    await queue.submit(LabelWorkItem("job", {"special"}))

    decisions = await controller.tick()

    assert decisions == {"x": Decision.NOOP}
    assert x.is_offline
    assert not fleet.is_launching("x")
    assert hv.capacity.current == 2


@pytest.mark.asyncio
async def test_scenario_b_launch_until_online(fleet, queue, controller, make_hypervisor, make_vm, sleeps):
    hv = make_hypervisor("hv1", max_online=2, domains={"y-vm": DomainState.SHUTOFF})
    hv.capacity.mark_online("other")
    y = make_vm("y", labels={"special"}, boot_wait_seconds=30)
    await queue.submit(LabelWorkItem("job", {"special"}))

    decisions = await controller.tick()
    assert decisions == {"y": Decision.LAUNCH}
    assert y.is_connecting

    assert await fleet.connect(y) is True

    assert y.is_online
    assert hv.control.calls == [("create", "y-vm")]
    assert sleeps == [30]
    assert hv.capacity.current == 2
    assert hv.capacity.holds("y")


@pytest.mark.asyncio
async def test_scenario_d_idle_reclaim_even_if_shutdown_fails(
    fleet, queue, controller, make_hypervisor, make_vm, agent_messages
):
    hv = make_hypervisor("hv1", max_online=1, domains={"d-vm": DomainState.RUNNING})
    hv.control.fail_on.add("shutdown")
    d = make_vm("d", max_idle_minutes=60)
    _bring_online(d, since=NOW - 61 * 60)

    decisions = await controller.tick()
    assert decisions == {"d": Decision.RECLAIM}

    await fleet.disconnect(d)

    assert hv.control.calls == [("shutdown", "d-vm")]
    assert d.is_offline
    assert hv.capacity.current == 0
    assert any("Error while shutting down" in m for m in agent_messages("d"))


@pytest.mark.asyncio
async def test_idle_agent_kept_when_hypervisor_not_full(queue, controller, make_hypervisor, make_vm):
    make_hypervisor("hv1", max_online=2, domains={"d-vm": DomainState.RUNNING})
    d = make_vm("d", max_idle_minutes=60)
    _bring_online(d, since=NOW - 120 * 60)

    assert await controller.tick() == {"d": Decision.NOOP}
    assert d.is_online


@pytest.mark.asyncio
async def test_idle_agent_kept_below_max_idle(queue, controller, make_hypervisor, make_vm):
    make_hypervisor("hv1", max_online=1, domains={"d-vm": DomainState.RUNNING})
    d = make_vm("d", max_idle_minutes=60)
    _bring_online(d, since=NOW - 59 * 60)

    assert await controller.tick() == {"d": Decision.NOOP}


@pytest.mark.asyncio
async def test_busy_agent_never_reclaimed(queue, controller, make_hypervisor, make_vm):
    make_hypervisor("hv1", max_online=1, domains={"d-vm": DomainState.RUNNING})
    d = make_vm("d", max_idle_minutes=60)
    _bring_online(d, since=NOW - 600 * 60)
    d.set_busy(1)

    assert await controller.tick() == {"d": Decision.NOOP}


@pytest.mark.asyncio
async def test_offline_agent_not_needed(queue, controller, make_hypervisor, make_vm):
    make_hypervisor("hv1", max_online=2)
    make_vm("x", labels={"linux"})
    await queue.submit(LabelWorkItem("mac-job", {"macos"}))

    assert await controller.tick() == {"x": Decision.NOOP}


@pytest.mark.asyncio
async def test_one_tick_does_not_overfill_hypervisor(fleet, queue, controller, make_hypervisor, make_vm):
    hv = make_hypervisor("hv1", max_online=1)
    make_vm("a", labels={"linux"})
    make_vm("b", labels={"linux"})
    await queue.submit(LabelWorkItem("one", {"linux"}))
    await queue.submit(LabelWorkItem("two", {"linux"}))

    decisions = await controller.tick()

    assert decisions == {"a": Decision.LAUNCH, "b": Decision.NOOP}
    assert hv.capacity.current == 1
    await fleet.close()


@pytest.mark.asyncio
async def test_connecting_agent_covers_later_demand(fleet, queue, controller, make_hypervisor, make_vm):
    make_hypervisor("hv1", max_online=2)
    make_vm("a", labels={"linux"})
    make_vm("b", labels={"linux"})
    await queue.submit(LabelWorkItem("one", {"linux"}))

    decisions = await controller.tick()

    assert decisions == {"a": Decision.LAUNCH, "b": Decision.NOOP}
    await fleet.close()


@pytest.mark.asyncio
async def test_failing_agent_does_not_stop_tick(fleet, queue, controller, make_hypervisor, make_vm, monkeypatch):
    bad = make_hypervisor("bad", max_online=1)
    make_hypervisor("good", max_online=1)
    make_vm("a", hypervisor="bad", labels={"linux"})
    make_vm("b", hypervisor="good", labels={"gpu"})
    await queue.submit(LabelWorkItem("build", {"linux"}))
    await queue.submit(LabelWorkItem("train", {"gpu"}))

    def boom():
        raise RuntimeError("hypervisor exploded")

    monkeypatch.setattr(bad, "is_full", boom)

    decisions = await controller.tick()

    assert decisions == {"a": Decision.NOOP, "b": Decision.LAUNCH}
    await fleet.close()


def test_manual_launch_allowed_only_with_room(controller, make_hypervisor, make_vm):
    hv = make_hypervisor("hv1", max_online=1)
    x = make_vm("x")
    assert controller.is_manual_launch_allowed(x)
    hv.capacity.mark_online("other")
    assert not controller.is_manual_launch_allowed(x)
