"""Fleet server: /api/* endpoints for hypervisors, agents, queue and logs.

Wires together the registry, auth, the fleet, the retention controller and
its periodic scheduler.
"""

from __future__ import annotations

import json
import logging
import os
from contextlib import asynccontextmanager
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from sse_starlette.sse import EventSourceResponse

from vmfleet.auth import bootstrap_api_key, generate_api_key, hash_api_key
from vmfleet.config import FleetConfig
from vmfleet.errors import ConfigurationError
from vmfleet.events import AgentLogBuffer
from vmfleet.fleet import Fleet, TransitionHistory
from vmfleet.hypervisor.control import HttpDomainControl
from vmfleet.hypervisor.hypervisor import Hypervisor
from vmfleet.lifecycle.boot import BootSequencer
from vmfleet.lifecycle.controller import LifecycleController
from vmfleet.lifecycle.shutdown import ShutdownSequencer
from vmfleet.nodes import Node, NodeStatus, VirtualMachineSpec, VMBacked
from vmfleet.queue import LabelWorkItem, WorkQueue
from vmfleet.registry import FleetRegistry
from vmfleet.scheduler import FleetScheduler
from vmfleet.transport import AgentTransport, HealthCheckTransport

logger = logging.getLogger(__name__)

_registry: FleetRegistry | None = None
_config: FleetConfig = FleetConfig()
_agent_log: AgentLogBuffer = AgentLogBuffer()
_queue: WorkQueue = WorkQueue()
_fleet: Fleet | None = None
_controller: LifecycleController | None = None
_scheduler: FleetScheduler | None = None


def _get_registry() -> FleetRegistry:
    if _registry is None:
        raise RuntimeError("Server not initialized")
    return _registry


def _get_fleet() -> Fleet:
    if _fleet is None:
        raise RuntimeError("Server not initialized")
    return _fleet


def _get_controller() -> LifecycleController:
    if _controller is None:
        raise RuntimeError("Server not initialized")
    return _controller


async def _auth_dependency(request: Request) -> None:
    """Require a known API key in the Authorization header."""
    registry = _get_registry()
    auth_header = request.headers.get("authorization", "")
    if not auth_header.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Invalid authorization header")

    token = auth_header[7:]
    if not await registry.has_api_key(hash_api_key(token)):
        raise HTTPException(status_code=401, detail="Invalid API key")


def build_fleet(
    config: FleetConfig,
    log: AgentLogBuffer,
    queue: WorkQueue,
    transport: AgentTransport | None = None,
    history: TransitionHistory | None = None,
) -> tuple[Fleet, LifecycleController, FleetScheduler]:
    """Assemble the fleet, its sequencers, the controller and the scheduler.

    Status changes are written to *history* when one is given.
    """
    if transport is None:
        transport = HealthCheckTransport(
            port=config.health_port, timeout=config.health_timeout_seconds
        )
    fleet = Fleet(
        boot=BootSequencer(transport, log),
        shutdown=ShutdownSequencer(transport, log),
        log=log,
        history=history,
    )
    controller = LifecycleController(fleet, queue)
    scheduler = FleetScheduler(
        controller,
        fleet,
        interval=config.tick_interval_seconds,
        reconcile_every=config.reconcile_every,
    )
    return fleet, controller, scheduler


def _make_hypervisor(name: str, uri: str, max_online: int) -> Hypervisor:
    control = HttpDomainControl(uri, timeout=_config.hypervisor_timeout_seconds)
    return Hypervisor(name, control, max_online)


def _add_node(fleet: Fleet, name: str, kind: str, config: dict[str, Any]) -> Node:
    """Create a node from its stored definition and add it to the fleet."""
    labels = config.get("labels", [])
    executors = config.get("executors", 1)
    exclusive = config.get("exclusive", False)
    if kind == "vm":
        vm = config.get("vm")
        if not isinstance(vm, dict):
            raise ConfigurationError(f"{name}: VM agent needs a 'vm' section")
        try:
            spec = VirtualMachineSpec(**vm)
        except TypeError as e:
            raise ConfigurationError(f"{name}: invalid VM settings: {e}")
        return fleet.add_vm_agent(name, spec, labels=labels, executors=executors, exclusive=exclusive)
    if kind == "static":
        return fleet.add_node(Node(name, labels=labels, executors=executors, exclusive=exclusive))
    raise ConfigurationError(f"Unknown node kind: {kind}")


async def _restore(fleet: Fleet, registry: FleetRegistry) -> None:
    """Rebuild the in-memory fleet from stored definitions."""
    for h in await registry.list_hypervisors():
        fleet.add_hypervisor(_make_hypervisor(h.name, h.uri, h.max_online))
    for n in await registry.list_nodes():
        try:
            _add_node(fleet, n.name, n.kind, json.loads(n.config_json))
        except ConfigurationError:
            logger.exception("Skipping stored node %s", n.name)


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _registry, _config, _fleet, _controller, _scheduler, _agent_log

    logging.basicConfig(level=logging.INFO, format="%(name)s %(levelname)s %(message)s")

    _config = FleetConfig.from_env()
    db_dir = os.path.dirname(_config.db_path)
    if db_dir:
        os.makedirs(db_dir, exist_ok=True)

    _registry = FleetRegistry(_config.db_path)
    await _registry.init_db()
    await bootstrap_api_key(_registry)

    _agent_log = AgentLogBuffer(max_entries=_config.log_max_entries)
    _fleet, _controller, _scheduler = build_fleet(_config, _agent_log, _queue, history=_registry)
    await _restore(_fleet, _registry)
    _scheduler.start()

    yield

    await _scheduler.stop()
    await _fleet.close()
    await _registry.close()


app = FastAPI(title="vmfleet", lifespan=lifespan)


@app.get("/health")
async def health():
    return {"status": "ok"}


# ── API Keys ──────────────────────────────────────────────────

@app.post("/api/api-keys", dependencies=[Depends(_auth_dependency)])
async def create_api_key(body: dict):
    """Generate a new API key. The raw key is returned once."""
    registry = _get_registry()
    label = body.get("label", "")
    raw_key = generate_api_key()
    await registry.store_api_key(hash_api_key(raw_key), label=label)
    return {"key": raw_key, "label": label}


@app.get("/api/api-keys", dependencies=[Depends(_auth_dependency)])
async def list_api_keys():
    registry = _get_registry()
    return [
        {"hash_prefix": k.key_hash[:12], "label": k.label, "created_at": k.created_at}
        for k in await registry.list_api_keys()
    ]


@app.delete("/api/api-keys/{hash_prefix}", dependencies=[Depends(_auth_dependency)])
async def revoke_api_key(hash_prefix: str):
    """Revoke an API key by its hash prefix."""
    registry = _get_registry()
    matches = await registry.find_api_keys(hash_prefix)
    if not matches:
        raise HTTPException(status_code=404, detail=f"No key found matching prefix: {hash_prefix}")
    if len(matches) > 1:
        raise HTTPException(status_code=400, detail=f"Prefix '{hash_prefix}' matches {len(matches)} keys: be more specific")
    await registry.delete_api_key(matches[0])
    return {"status": "revoked", "hash_prefix": matches[0][:12]}


# ── Hypervisors ───────────────────────────────────────────────

def _hypervisor_view(h: Hypervisor) -> dict:
    return {
        "name": h.name,
        "uri": h.uri,
        "max_online": h.capacity.maximum,
        "online": h.capacity.current,
        "full": h.is_full(),
        "online_agents": sorted(h.capacity.online_agents),
    }


@app.post("/api/hypervisors", dependencies=[Depends(_auth_dependency)])
async def create_hypervisor(body: dict):
    fleet = _get_fleet()
    registry = _get_registry()

    name = body.get("name", "")
    uri = body.get("uri", "")
    max_online = body.get("max_online")
    if not name or not uri or not isinstance(max_online, int) or max_online < 0:
        raise HTTPException(status_code=400, detail="name, uri and max_online (>= 0) are required")

    try:
        hypervisor = fleet.add_hypervisor(_make_hypervisor(name, uri, max_online))
    except ConfigurationError as e:
        raise HTTPException(status_code=409, detail=str(e))
    await registry.upsert_hypervisor(name, uri, max_online)
    return JSONResponse(_hypervisor_view(hypervisor), status_code=201)


@app.get("/api/hypervisors", dependencies=[Depends(_auth_dependency)])
async def list_hypervisors():
    return [_hypervisor_view(h) for h in _get_fleet().hypervisors()]


@app.delete("/api/hypervisors/{name}", dependencies=[Depends(_auth_dependency)])
async def delete_hypervisor(name: str):
    fleet = _get_fleet()
    if name not in {h.name for h in fleet.hypervisors()}:
        raise HTTPException(status_code=404, detail=f"Hypervisor not found: {name}")
    try:
        fleet.remove_hypervisor(name)
    except ConfigurationError as e:
        raise HTTPException(status_code=409, detail=str(e))
    await _get_registry().delete_hypervisor(name)
    return {"status": "deleted", "name": name}


# ── Agents ────────────────────────────────────────────────────

def _get_node(name: str) -> Node:
    node = _get_fleet().get(name)
    if node is None:
        raise HTTPException(status_code=404, detail=f"Agent not found: {name}")
    return node


def _get_vm_agent(name: str):
    node = _get_node(name)
    if not isinstance(node, VMBacked):
        raise HTTPException(status_code=400, detail=f"{name} is not backed by a virtual machine")
    return node


def _node_view(node: Node) -> dict:
    fleet = _get_fleet()
    data = node.to_dict()
    data["launching"] = fleet.is_launching(node.name)
    data["shutting_down"] = fleet.is_shutting_down(node.name)
    return data


@app.post("/api/agents", dependencies=[Depends(_auth_dependency)])
async def create_agent(body: dict):
    """Define a node. ``kind`` is "vm" (default) or "static"."""
    fleet = _get_fleet()
    registry = _get_registry()

    name = body.get("name", "")
    if not name or not isinstance(name, str):
        raise HTTPException(status_code=400, detail="name is required")
    if fleet.get(name) is not None:
        raise HTTPException(status_code=409, detail=f"Agent already defined: {name}")
    kind = body.get("kind", "vm")
    config = {k: v for k, v in body.items() if k not in ("name", "kind")}

    try:
        node = _add_node(fleet, name, kind, config)
    except ConfigurationError as e:
        raise HTTPException(status_code=400, detail=str(e))

    await registry.upsert_node(name, kind, json.dumps(config))
    return JSONResponse(_node_view(node), status_code=201)


@app.get("/api/agents", dependencies=[Depends(_auth_dependency)])
async def list_agents():
    return [_node_view(n) for n in _get_fleet().nodes()]


@app.get("/api/agents/{name}", dependencies=[Depends(_auth_dependency)])
async def get_agent(name: str):
    return _node_view(_get_node(name))


@app.delete("/api/agents/{name}", dependencies=[Depends(_auth_dependency)])
async def delete_agent(name: str):
    """Remove a node; a VM agent's boot is cancelled and its VM shut down first."""
    _get_node(name)
    await _get_fleet().remove(name)
    await _get_registry().delete_node(name)
    _agent_log.reap(name)
    return {"status": "deleted", "name": name}


@app.post("/api/agents/{name}/connect", dependencies=[Depends(_auth_dependency)])
async def connect_agent(name: str):
    agent = _get_vm_agent(name)
    if agent.is_online:
        return {"status": "online", "name": name}
    if not _get_controller().is_manual_launch_allowed(agent) and not _get_fleet().is_launching(name):
        raise HTTPException(status_code=409, detail=f"Hypervisor {agent.hypervisor.name} is full")
    if _get_fleet().connect(agent) is None:
        raise HTTPException(status_code=409, detail=f"Could not launch {name}")
    return JSONResponse({"status": "connecting", "name": name}, status_code=202)


@app.post("/api/agents/{name}/disconnect", dependencies=[Depends(_auth_dependency)])
async def disconnect_agent(name: str, request: Request):
    agent = _get_vm_agent(name)
    body = await _optional_json(request)
    cause = body.get("cause") or "disconnected by operator"
    _get_fleet().disconnect(agent, cause=cause)
    return JSONResponse({"status": "disconnecting", "name": name}, status_code=202)


@app.post("/api/agents/{name}/kill", dependencies=[Depends(_auth_dependency)])
async def kill_agent(name: str, request: Request):
    """Take a VM agent offline and free its slot, leaving the VM itself alone."""
    agent = _get_vm_agent(name)
    body = await _optional_json(request)
    await _get_fleet().kill(agent, cause=body.get("cause") or "killed by operator")
    return _node_view(agent)


@app.get("/api/agents/{name}/history", dependencies=[Depends(_auth_dependency)])
async def agent_history(name: str, limit: int = 100):
    """Recorded status changes of an agent, oldest first."""
    _get_node(name)
    if limit < 1:
        raise HTTPException(status_code=400, detail="limit must be >= 1")
    records = await _get_registry().list_transitions(name, limit=limit)
    return [
        {
            "from": r.from_status,
            "to": r.to_status,
            "cause": r.cause,
            "at": r.created_at,
        }
        for r in records
    ]


@app.put("/api/agents/{name}/state", dependencies=[Depends(_auth_dependency)])
async def update_agent_state(name: str, body: dict):
    """Report executor occupancy, and for static nodes whether they are online."""
    node = _get_node(name)
    if "online" in body:
        if isinstance(node, VMBacked):
            raise HTTPException(status_code=400, detail="VM agents go online through connect/disconnect")
        node.set_status(
            NodeStatus.ONLINE if body["online"] else NodeStatus.OFFLINE, cause="reported by operator"
        )
    if "busy" in body:
        busy = body["busy"]
        if not isinstance(busy, int) or busy < 0:
            raise HTTPException(status_code=400, detail="busy must be a non-negative integer")
        _get_fleet().set_busy(name, busy)
    return _node_view(node)


@app.post("/api/agents/{name}/task-failed", dependencies=[Depends(_auth_dependency)])
async def report_task_failure(name: str, body: dict):
    _get_node(name)
    problem = body.get("problem", "unknown problem")
    offline = await _get_fleet().task_failed(name, problem)
    return {"name": name, "taken_offline": offline}


@app.get("/api/agents/{name}/log", dependencies=[Depends(_auth_dependency)])
async def stream_agent_log(name: str, follow: bool = True):
    """SSE stream of an agent's operational log."""
    _get_node(name)
    return EventSourceResponse(_agent_log.stream_sse(name, follow=follow))


# ── Queue ─────────────────────────────────────────────────────

@app.post("/api/queue", dependencies=[Depends(_auth_dependency)])
async def enqueue_item(body: dict):
    name = body.get("name", "")
    if not name:
        raise HTTPException(status_code=400, detail="name is required")
    labels = body.get("labels", [])
    if not isinstance(labels, list):
        raise HTTPException(status_code=400, detail="labels must be a list")
    item = await _queue.submit(LabelWorkItem(name=name, labels=frozenset(labels)))
    return JSONResponse(item.to_dict(), status_code=201)


@app.get("/api/queue", dependencies=[Depends(_auth_dependency)])
async def list_queue():
    return [item.to_dict() for item in _queue.pending_buildable_items()]


@app.delete("/api/queue/{item_id}", dependencies=[Depends(_auth_dependency)])
async def dequeue_item(item_id: str):
    if not await _queue.remove(item_id):
        raise HTTPException(status_code=404, detail=f"Queue item not found: {item_id}")
    return {"status": "removed", "id": item_id}


async def _optional_json(request: Request) -> dict:
    raw = await request.body()
    if not raw:
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        raise HTTPException(status_code=400, detail="Invalid JSON body")
    return data if isinstance(data, dict) else {}


# ── Server entry point ────────────────────────────────────────

async def start_server(host: str = "0.0.0.0", port: int = 3000) -> None:
    """Start the uvicorn server."""
    import uvicorn

    config = uvicorn.Config(app, host=host, port=port, log_level="info")
    server = uvicorn.Server(config)
    await server.serve()
