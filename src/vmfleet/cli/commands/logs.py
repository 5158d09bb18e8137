"""vmfleet logs: stream an agent's operational log."""

from __future__ import annotations

import json

import click
import httpx
from httpx_sse import connect_sse

from vmfleet.cli.config import get_auth_headers, get_url


@click.command()
@click.argument("name")
@click.option("--follow/--no-follow", default=True, help="Keep streaming new entries")
def logs(name: str, follow: bool) -> None:
    """Stream the launch and shutdown log of agent NAME."""
    url = get_url()
    headers = get_auth_headers()
    params = {"follow": "true" if follow else "false"}

    try:
        with httpx.Client(timeout=None, headers=headers) as client:
            with connect_sse(client, "GET", f"{url}/api/agents/{name}/log", params=params) as sse:
                if sse.response.status_code != 200:
                    sse.response.read()
                    raise click.ClickException(f"{sse.response.status_code}: {sse.response.text}")
                for event in sse.iter_sse():
                    if not event.data:
                        continue
                    try:
                        data = json.loads(event.data)
                    except json.JSONDecodeError:
                        continue
                    _print_event(data.get("type", event.event), data)
    except httpx.HTTPError as e:
        raise click.ClickException(f"Log stream error: {e}")


def _print_event(event_type: str, data: dict) -> None:
    if event_type == "agent.message":
        click.echo(data.get("text", ""))
    elif event_type == "agent.launching":
        click.echo(f"[launching] vm={data.get('vm_name', '')} hypervisor={data.get('hypervisor', '')}")
    elif event_type == "agent.online":
        click.echo(f"[online] attempts={data.get('attempts', 0)}")
    elif event_type == "agent.launch_failed":
        click.echo(f"[launch failed] {data.get('error', '')}", err=True)
    elif event_type == "agent.shutdown":
        click.echo(f"[shutdown] {data.get('cause', '')}")
    elif event_type == "agent.offline":
        click.echo(f"[offline] {data.get('cause', '')}")
    else:
        click.echo(json.dumps(data, indent=2))
