"""CLI config: reads/writes ~/.vmfleet/config.toml."""

from __future__ import annotations

import os
import stat
import tomllib

import click
import httpx
import tomli_w


CONFIG_DIR = os.path.expanduser("~/.vmfleet")
CONFIG_PATH = os.path.join(CONFIG_DIR, "config.toml")


def load_config() -> dict:
    """Load the CLI config file, returning {} if it doesn't exist."""
    if not os.path.exists(CONFIG_PATH):
        return {}
    with open(CONFIG_PATH, "rb") as f:
        return tomllib.load(f)


def save_config(data: dict) -> None:
    """Write the CLI config file with restricted permissions (0600)."""
    os.makedirs(CONFIG_DIR, exist_ok=True)
    with open(CONFIG_PATH, "wb") as f:
        tomli_w.dump(data, f)
    os.chmod(CONFIG_PATH, stat.S_IRUSR | stat.S_IWUSR)


def get_url() -> str:
    """Get the server URL from config."""
    url = load_config().get("url", "")
    if not url:
        raise SystemExit("Not logged in. Run: vmfleet login --url <URL> --api-key <KEY>")
    return url


def get_api_key() -> str:
    key = load_config().get("api_key", "")
    if not key:
        raise SystemExit("Not logged in. Run: vmfleet login --url <URL> --api-key <KEY>")
    return key


def get_auth_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {get_api_key()}"}


def api_request(method: str, path: str, **kwargs) -> httpx.Response:
    """Call the fleet server, turning HTTP failures into ClickExceptions."""
    url = get_url()
    headers = get_auth_headers()
    try:
        r = httpx.request(method, f"{url}{path}", headers=headers, timeout=30, **kwargs)
        r.raise_for_status()
    except httpx.HTTPStatusError as e:
        raise click.ClickException(f"{e.response.status_code}: {e.response.text}")
    except httpx.HTTPError as e:
        raise click.ClickException(str(e))
    return r
