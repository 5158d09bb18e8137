"""vmfleet CLI: manage hypervisors, VM agents and pending work."""

from __future__ import annotations

import click

from vmfleet.cli.commands.agents import agents
from vmfleet.cli.commands.api_key import api_key
from vmfleet.cli.commands.hypervisors import hypervisors
from vmfleet.cli.commands.login import login
from vmfleet.cli.commands.logs import logs
from vmfleet.cli.commands.queue import queue


@click.group()
def cli() -> None:
    """vmfleet: launch build agents in VMs on demand, within hypervisor limits."""
    pass


cli.add_command(login)
cli.add_command(hypervisors)
cli.add_command(agents)
cli.add_command(queue)
cli.add_command(logs)
cli.add_command(api_key)


@cli.command()
@click.option("--host", default="0.0.0.0", help="Bind host")
@click.option("--port", default=None, type=int, help="Bind port (default: VMFLEET_PORT or 3000)")
def serve(host: str, port: int | None) -> None:
    """Start the fleet server."""
    import asyncio

    from vmfleet.config import FleetConfig
    from vmfleet.server import start_server

    if port is None:
        port = FleetConfig.from_env().port
    asyncio.run(start_server(host=host, port=port))
