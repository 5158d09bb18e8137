"""vmfleet queue: submit and inspect pending work items."""

from __future__ import annotations

import click

from vmfleet.cli.config import api_request


@click.group(invoke_without_command=True)
@click.pass_context
def queue(ctx) -> None:
    """List pending work items in queue order."""
    if ctx.invoked_subcommand is not None:
        return

    items = api_request("GET", "/api/queue").json()
    if not items:
        click.echo("Queue is empty.")
        return

    click.echo(f"{'ID':<38} {'NAME':<24} {'LABELS'}")
    click.echo("-" * 76)
    for item in items:
        click.echo(f"{item['id']:<38} {item['name']:<24} {','.join(item['labels'])}")


@queue.command()
@click.argument("name")
@click.option("--label", "labels", multiple=True, help="Label the executing node must carry (repeatable)")
def add(name: str, labels: tuple[str, ...]) -> None:
    """Submit a work item."""
    item = api_request("POST", "/api/queue", json={"name": name, "labels": list(labels)}).json()
    click.echo(item["id"])


@queue.command()
@click.argument("item_id")
def rm(item_id: str) -> None:
    """Remove a pending work item."""
    api_request("DELETE", f"/api/queue/{item_id}")
    click.echo(f"Removed: {item_id}")
