"""vmfleet hypervisors: register hypervisors and inspect their capacity."""

from __future__ import annotations

import click

from vmfleet.cli.config import api_request


@click.group(invoke_without_command=True)
@click.pass_context
def hypervisors(ctx) -> None:
    """List hypervisors with their online-agent counts."""
    if ctx.invoked_subcommand is not None:
        return

    items = api_request("GET", "/api/hypervisors").json()
    if not items:
        click.echo("No hypervisors registered.")
        return

    click.echo(f"{'NAME':<16} {'ONLINE':<10} {'URI'}")
    click.echo("-" * 60)
    for h in items:
        usage = f"{h['online']}/{h['max_online']}"
        click.echo(f"{h['name']:<16} {usage:<10} {h['uri']}")


@hypervisors.command()
@click.argument("name")
@click.option("--uri", required=True, help="Control API address (http://host:port or unix:///path.sock)")
@click.option("--max-online", required=True, type=click.IntRange(min=0), help="Maximum agents online at once")
def add(name: str, uri: str, max_online: int) -> None:
    """Register a hypervisor."""
    api_request("POST", "/api/hypervisors", json={"name": name, "uri": uri, "max_online": max_online})
    click.echo(f"Added hypervisor: {name}")


@hypervisors.command()
@click.argument("name")
def rm(name: str) -> None:
    """Remove a hypervisor no agent refers to."""
    api_request("DELETE", f"/api/hypervisors/{name}")
    click.echo(f"Deleted hypervisor: {name}")
