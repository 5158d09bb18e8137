"""vmfleet api-key: generate and manage API keys via the server."""

from __future__ import annotations

import click

from vmfleet.cli.config import api_request


@click.group("api-key")
def api_key() -> None:
    """Generate and manage API keys."""
    pass


@api_key.command()
@click.option("--label", default="", help="Human-readable label for the key")
def generate(label: str) -> None:
    """Generate a new API key and print it.

    The raw key is only shown once: store it somewhere safe.
    """
    data = api_request("POST", "/api/api-keys", json={"label": label}).json()
    click.echo(data["key"])


@api_key.command("list")
def list_keys() -> None:
    keys = api_request("GET", "/api/api-keys").json()
    if not keys:
        click.echo("No API keys found.")
        return

    click.echo(f"{'HASH PREFIX':<16} {'LABEL':<20} {'CREATED'}")
    click.echo("-" * 60)
    for k in keys:
        click.echo(f"{k['hash_prefix']}...  {k['label']:<20} {k['created_at']}")


@api_key.command()
@click.argument("hash_prefix")
def revoke(hash_prefix: str) -> None:
    """Revoke an API key by its hash prefix (from 'api-key list')."""
    data = api_request("DELETE", f"/api/api-keys/{hash_prefix}").json()
    click.echo(f"Revoked key {data['hash_prefix']}...")
