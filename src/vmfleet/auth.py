"""API key authentication for the fleet server."""

from __future__ import annotations

import hashlib
import os
import secrets

from vmfleet.registry import FleetRegistry


def hash_api_key(key: str) -> str:
    """SHA-256 hash of an API key."""
    return hashlib.sha256(key.encode()).hexdigest()


def generate_api_key() -> str:
    """Generate a new API key in vf_<32 hex chars> format."""
    return f"vf_{secrets.token_hex(16)}"


async def bootstrap_api_key(registry: FleetRegistry) -> None:
    """Seed the first API key from VMFLEET_API_KEY env var if set.

    Idempotent: won't duplicate if the key already exists.
    """
    raw_key = os.environ.get("VMFLEET_API_KEY")
    if not raw_key:
        return
    await registry.store_api_key(hash_api_key(raw_key), label="bootstrap")
