"""vmfleet agents: define nodes and drive VM agents by hand."""

from __future__ import annotations

import click

from vmfleet.cli.config import api_request


@click.group(invoke_without_command=True)
@click.pass_context
def agents(ctx) -> None:
    """List nodes. Use 'agents add' to define one."""
    if ctx.invoked_subcommand is not None:
        return

    agent_list = api_request("GET", "/api/agents").json()
    if not agent_list:
        click.echo("No agents defined.")
        return

    click.echo(f"{'NAME':<20} {'KIND':<8} {'STATUS':<12} {'BUSY':<6} {'VM':<20} {'HYPERVISOR'}")
    click.echo("-" * 84)
    for a in agent_list:
        vm = a.get("vm") or {}
        busy = f"{a['busy']}/{a['executors']}"
        click.echo(
            f"{a['name']:<20} {a['kind']:<8} {a['status']:<12} {busy:<6} "
            f"{vm.get('vm_name', '-'):<20} {vm.get('hypervisor', '-')}"
        )


@agents.command()
@click.argument("name")
@click.option("--hypervisor", default=None, help="Hypervisor hosting the VM (omit for a static node)")
@click.option("--vm", "vm_name", default=None, help="Domain name on the hypervisor")
@click.option("--label", "labels", multiple=True, help="Node label (repeatable)")
@click.option("--executors", default=1, type=click.IntRange(min=1))
@click.option("--exclusive", is_flag=True, help="Only take work that requests this node's labels")
@click.option("--snapshot", default="", help="Snapshot to revert to on shutdown")
@click.option(
    "--shutdown-method",
    type=click.Choice(["shutdown", "suspend", "destroy"]),
    default="shutdown",
)
@click.option("--boot-wait", default=30.0, type=float, help="Seconds to wait after power-on and between retries")
@click.option("--retries", default=3, type=click.IntRange(min=1))
@click.option("--max-idle", default=60.0, type=float, help="Idle minutes before reclaim on a full hypervisor")
@click.option("--address", default="", help="Guest address for the health handshake")
def add(
    name: str,
    hypervisor: str | None,
    vm_name: str | None,
    labels: tuple[str, ...],
    executors: int,
    exclusive: bool,
    snapshot: str,
    shutdown_method: str,
    boot_wait: float,
    retries: int,
    max_idle: float,
    address: str,
) -> None:
    """Define a VM agent, or a static node when --hypervisor is omitted."""
    body: dict = {
        "name": name,
        "labels": list(labels),
        "executors": executors,
        "exclusive": exclusive,
    }
    if hypervisor is None:
        body["kind"] = "static"
    else:
        if not vm_name:
            raise click.UsageError("--vm is required with --hypervisor")
        body["kind"] = "vm"
        body["vm"] = {
            "hypervisor": hypervisor,
            "vm_name": vm_name,
            "snapshot_name": snapshot,
            "shutdown_method": shutdown_method,
            "boot_wait_seconds": boot_wait,
            "retries": retries,
            "max_idle_minutes": max_idle,
            "address": address,
        }

    api_request("POST", "/api/agents", json=body)
    click.echo(f"Added {body['kind']} agent: {name}")


@agents.command()
@click.argument("name")
def rm(name: str) -> None:
    """Delete an agent, shutting its VM down first."""
    api_request("DELETE", f"/api/agents/{name}")
    click.echo(f"Deleted agent: {name}")


@agents.command()
@click.argument("name")
def connect(name: str) -> None:
    """Launch an agent's VM now, if its hypervisor has room."""
    data = api_request("POST", f"/api/agents/{name}/connect").json()
    click.echo(f"{name}: {data['status']}")


@agents.command()
@click.argument("name")
@click.option("--cause", default="", help="Reason recorded in the agent log")
def disconnect(name: str, cause: str) -> None:
    """Shut an agent's VM down."""
    data = api_request("POST", f"/api/agents/{name}/disconnect", json={"cause": cause}).json()
    click.echo(f"{name}: {data['status']}")


@agents.command()
@click.argument("name")
@click.option("--cause", default="", help="Reason recorded in the agent log")
def kill(name: str, cause: str) -> None:
    """Mark an agent offline and free its slot without touching its VM."""
    data = api_request("POST", f"/api/agents/{name}/kill", json={"cause": cause}).json()
    click.echo(f"{name}: {data['status']}")


@agents.command()
@click.argument("name")
@click.option("--limit", type=click.IntRange(min=1), default=20, show_default=True)
def history(name: str, limit: int) -> None:
    """Show an agent's recent status changes."""
    records = api_request("GET", f"/api/agents/{name}/history", params={"limit": limit}).json()
    if not records:
        click.echo("No status changes recorded.")
        return
    for r in records:
        cause = f"  ({r['cause']})" if r["cause"] else ""
        click.echo(f"{r['at']}  {r['from']} -> {r['to']}{cause}")


@agents.command()
@click.argument("name")
@click.option("--busy", type=click.IntRange(min=0), default=None, help="Executors currently running work")
@click.option("--online/--offline", default=None, help="Static nodes only")
def state(name: str, busy: int | None, online: bool | None) -> None:
    """Report an agent's executor occupancy or a static node's status."""
    body: dict = {}
    if busy is not None:
        body["busy"] = busy
    if online is not None:
        body["online"] = online
    if not body:
        raise click.UsageError("Nothing to update: pass --busy and/or --online/--offline")

    data = api_request("PUT", f"/api/agents/{name}/state", json=body).json()
    click.echo(f"{name}: {data['status']}, {data['busy']}/{data['executors']} busy")
