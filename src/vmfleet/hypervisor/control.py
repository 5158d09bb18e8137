"""VM control plane client.

A hypervisor host runs a small control daemon that exposes its domains over
HTTP (either TCP or a Unix socket). The fleet only needs a narrow slice of
that API:

    GET  /domains                              list domains and their state
    GET  /domains/{name}                       one domain (404 if undefined)
    POST /domains/{name}/start                 power on
    POST /domains/{name}/shutdown              ACPI shutdown request
    POST /domains/{name}/suspend               pause, keep memory
    POST /domains/{name}/destroy               hard power-off
    POST /domains/{name}/snapshots/{snap}/revert

Lookups return a result variant instead of raising, so callers branch on
``Found`` / ``NotFound`` / ``TransportFailure`` explicitly. Power operations
raise ``TransportError``.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Protocol, Union
from urllib.parse import quote

import httpx

from vmfleet.errors import TransportError


class DomainState(str, Enum):
    NOSTATE = "nostate"
    RUNNING = "running"
    BLOCKED = "blocked"
    PAUSED = "paused"
    SHUTDOWN = "shutdown"
    SHUTOFF = "shutoff"
    CRASHED = "crashed"
    PMSUSPENDED = "pmsuspended"

    @classmethod
    def parse(cls, value: str | None) -> DomainState:
        try:
            return cls((value or "").lower())
        except ValueError:
            return cls.NOSTATE


@dataclass(frozen=True)
class Domain:
    """A hypervisor-managed VM instance as last observed."""

    name: str
    state: DomainState

    @property
    def is_running_or_blocked(self) -> bool:
        return self.state in (DomainState.RUNNING, DomainState.BLOCKED)

    @property
    def is_not_blocked_and_not_running(self) -> bool:
        return not self.is_running_or_blocked


@dataclass(frozen=True)
class Found:
    domain: Domain


@dataclass(frozen=True)
class NotFound:
    name: str


@dataclass(frozen=True)
class TransportFailure:
    detail: str


DomainLookup = Union[Found, NotFound, TransportFailure]


class DomainControl(Protocol):
    """What the lifecycle sequencers need from a hypervisor connection."""

    @property
    def uri(self) -> str: ...

    async def lookup(self, name: str) -> DomainLookup: ...

    async def list_domains(self) -> list[Domain]: ...

    async def create(self, domain: Domain) -> None: ...

    async def shutdown(self, domain: Domain) -> None: ...

    async def suspend(self, domain: Domain) -> None: ...

    async def destroy(self, domain: Domain) -> None: ...

    async def revert_to_snapshot(self, domain: Domain, snapshot: str) -> None: ...


class HttpDomainControl:
    """DomainControl backed by a host control daemon's HTTP API.

    ``uri`` is either ``http(s)://host:port`` or ``unix:///path/to/socket``.
    A custom httpx transport can be injected (tests use MockTransport).
    """

    def __init__(
        self,
        uri: str,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._uri = uri.rstrip("/")
        self._timeout = timeout
        self._transport = transport

    @property
    def uri(self) -> str:
        return self._uri

    def _client(self) -> httpx.AsyncClient:
        if self._transport is not None:
            return httpx.AsyncClient(
                transport=self._transport, base_url=self._base_url(), timeout=self._timeout
            )
        if self._uri.startswith("unix://"):
            # Control daemons listening on a local socket, same as the
            # Firecracker-style API: plain HTTP over UDS.
            uds = httpx.AsyncHTTPTransport(uds=self._uri[len("unix://"):])
            return httpx.AsyncClient(transport=uds, base_url="http://localhost", timeout=self._timeout)
        return httpx.AsyncClient(base_url=self._uri, timeout=self._timeout)

    def _base_url(self) -> str:
        if self._uri.startswith("unix://"):
            return "http://localhost"
        return self._uri

    async def _request(self, method: str, path: str) -> httpx.Response:
        try:
            async with self._client() as client:
                return await client.request(method, path)
        except httpx.HTTPError as e:
            raise TransportError(f"{method} {self._uri}{path} failed: {e}") from e

    async def lookup(self, name: str) -> DomainLookup:
        try:
            r = await self._request("GET", f"/domains/{quote(name, safe='')}")
        except TransportError as e:
            return TransportFailure(str(e))
        if r.status_code == 404:
            return NotFound(name)
        if r.status_code >= 400:
            return TransportFailure(f"Hypervisor API error on lookup of {name}: {r.status_code} {r.text}")
        try:
            data = r.json()
            return Found(Domain(name=data.get("name", name), state=DomainState.parse(data.get("state"))))
        except (ValueError, AttributeError, TypeError) as e:
            return TransportFailure(f"Malformed lookup response for {name} from {self._uri}: {e}")

    async def list_domains(self) -> list[Domain]:
        r = await self._request("GET", "/domains")
        if r.status_code >= 400:
            raise TransportError(f"Hypervisor API error on /domains: {r.status_code} {r.text}")
        try:
            return [
                Domain(name=d["name"], state=DomainState.parse(d.get("state")))
                for d in r.json()
            ]
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise TransportError(f"Malformed /domains response from {self._uri}: {e}") from e

    async def create(self, domain: Domain) -> None:
        await self._action(domain.name, "start")

    async def shutdown(self, domain: Domain) -> None:
        await self._action(domain.name, "shutdown")

    async def suspend(self, domain: Domain) -> None:
        await self._action(domain.name, "suspend")

    async def destroy(self, domain: Domain) -> None:
        await self._action(domain.name, "destroy")

    async def revert_to_snapshot(self, domain: Domain, snapshot: str) -> None:
        await self._action(domain.name, f"snapshots/{quote(snapshot, safe='')}/revert")

    async def _action(self, name: str, action: str) -> None:
        path = f"/domains/{quote(name, safe='')}/{action}"
        r = await self._request("POST", path)
        if r.status_code >= 400:
            raise TransportError(f"Hypervisor API error on {path}: {r.status_code} {r.text}")
