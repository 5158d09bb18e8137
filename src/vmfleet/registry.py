"""SQLite-backed registry of hypervisor and node definitions."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone

import aiosqlite


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class HypervisorRecord:
    name: str
    uri: str
    max_online: int
    created_at: str
    updated_at: str


@dataclass
class NodeRecord:
    name: str
    kind: str  # "vm" or "static"
    config_json: str
    created_at: str
    updated_at: str


@dataclass
class TransitionRecord:
    id: int
    agent: str
    from_status: str
    to_status: str
    cause: str
    created_at: str


@dataclass
class ApiKeyRecord:
    key_hash: str
    label: str
    created_at: str


class FleetRegistry:
    """Async SQLite registry for hypervisors, nodes, agent status history and API keys."""

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path
        self._db: aiosqlite.Connection | None = None

    async def init_db(self) -> None:
        """Open the database and create tables if needed."""
        self._db = await aiosqlite.connect(self.db_path)
        self._db.row_factory = aiosqlite.Row
        await self._db.executescript(
            """
            CREATE TABLE IF NOT EXISTS hypervisors (
                name TEXT PRIMARY KEY,
                uri TEXT NOT NULL,
                max_online INTEGER NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS nodes (
                name TEXT PRIMARY KEY,
                kind TEXT NOT NULL,
                config_json TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS transitions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                agent TEXT NOT NULL,
                from_status TEXT NOT NULL,
                to_status TEXT NOT NULL,
                cause TEXT DEFAULT '',
                created_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_transitions_agent ON transitions (agent, id);

            CREATE TABLE IF NOT EXISTS api_keys (
                key_hash TEXT PRIMARY KEY,
                label TEXT DEFAULT '',
                created_at TEXT NOT NULL
            );
            """
        )
        await self._db.commit()

    async def close(self) -> None:
        if self._db:
            await self._db.close()

    @property
    def db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("Database not initialized, call init_db() first")
        return self._db

    # ── Hypervisors ───────────────────────────────────────────────

    async def upsert_hypervisor(self, name: str, uri: str, max_online: int) -> HypervisorRecord:
        now = _now()
        rows = await self.db.execute_fetchall(
            "SELECT created_at FROM hypervisors WHERE name = ?", (name,),
        )
        if rows:
            created = rows[0][0]
            await self.db.execute(
                "UPDATE hypervisors SET uri = ?, max_online = ?, updated_at = ? WHERE name = ?",
                (uri, max_online, now, name),
            )
        else:
            created = now
            await self.db.execute(
                """INSERT INTO hypervisors (name, uri, max_online, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?)""",
                (name, uri, max_online, now, now),
            )
        await self.db.commit()
        return HypervisorRecord(name, uri, max_online, created, now)

    async def get_hypervisor(self, name: str) -> HypervisorRecord | None:
        rows = await self.db.execute_fetchall(
            "SELECT * FROM hypervisors WHERE name = ?", (name,),
        )
        if not rows:
            return None
        r = rows[0]
        return HypervisorRecord(name=r[0], uri=r[1], max_online=r[2], created_at=r[3], updated_at=r[4])

    async def list_hypervisors(self) -> list[HypervisorRecord]:
        rows = await self.db.execute_fetchall("SELECT * FROM hypervisors ORDER BY name")
        return [
            HypervisorRecord(name=r[0], uri=r[1], max_online=r[2], created_at=r[3], updated_at=r[4])
            for r in rows
        ]

    async def delete_hypervisor(self, name: str) -> bool:
        cursor = await self.db.execute("DELETE FROM hypervisors WHERE name = ?", (name,))
        await self.db.commit()
        return cursor.rowcount > 0

    # ── Nodes ─────────────────────────────────────────────────────

    async def upsert_node(self, name: str, kind: str, config_json: str) -> NodeRecord:
        """Insert or update a node definition by name."""
        now = _now()
        rows = await self.db.execute_fetchall(
            "SELECT created_at FROM nodes WHERE name = ?", (name,),
        )
        if rows:
            created = rows[0][0]
            await self.db.execute(
                "UPDATE nodes SET kind = ?, config_json = ?, updated_at = ? WHERE name = ?",
                (kind, config_json, now, name),
            )
        else:
            created = now
            await self.db.execute(
                """INSERT INTO nodes (name, kind, config_json, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?)""",
                (name, kind, config_json, now, now),
            )
        await self.db.commit()
        return NodeRecord(name, kind, config_json, created, now)

    async def get_node(self, name: str) -> NodeRecord | None:
        rows = await self.db.execute_fetchall("SELECT * FROM nodes WHERE name = ?", (name,))
        if not rows:
            return None
        r = rows[0]
        return NodeRecord(name=r[0], kind=r[1], config_json=r[2], created_at=r[3], updated_at=r[4])

    async def list_nodes(self) -> list[NodeRecord]:
        rows = await self.db.execute_fetchall("SELECT * FROM nodes ORDER BY name")
        return [
            NodeRecord(name=r[0], kind=r[1], config_json=r[2], created_at=r[3], updated_at=r[4])
            for r in rows
        ]

    async def delete_node(self, name: str) -> bool:
        cursor = await self.db.execute("DELETE FROM nodes WHERE name = ?", (name,))
        await self.db.commit()
        return cursor.rowcount > 0

    # ── Transitions ───────────────────────────────────────────────

    async def record_transition(
        self, agent: str, from_status: str, to_status: str, cause: str = ""
    ) -> None:
        await self.db.execute(
            """INSERT INTO transitions (agent, from_status, to_status, cause, created_at)
               VALUES (?, ?, ?, ?, ?)""",
            (agent, from_status, to_status, cause, _now()),
        )
        await self.db.commit()

    async def list_transitions(self, agent: str, limit: int = 100) -> list[TransitionRecord]:
        """Most recent status changes of *agent*, oldest first."""
        rows = await self.db.execute_fetchall(
            """SELECT id, agent, from_status, to_status, cause, created_at FROM transitions
               WHERE agent = ? ORDER BY id DESC LIMIT ?""",
            (agent, limit),
        )
        return [
            TransitionRecord(id=r[0], agent=r[1], from_status=r[2], to_status=r[3], cause=r[4], created_at=r[5])
            for r in reversed(list(rows))
        ]

    # ── API Keys ──────────────────────────────────────────────────

    async def store_api_key(self, key_hash: str, label: str = "") -> None:
        await self.db.execute(
            """INSERT OR IGNORE INTO api_keys (key_hash, label, created_at)
               VALUES (?, ?, ?)""",
            (key_hash, label, _now()),
        )
        await self.db.commit()

    async def has_api_key(self, key_hash: str) -> bool:
        rows = await self.db.execute_fetchall(
            "SELECT 1 FROM api_keys WHERE key_hash = ?", (key_hash,),
        )
        return bool(rows)

    async def list_api_keys(self) -> list[ApiKeyRecord]:
        rows = await self.db.execute_fetchall(
            "SELECT key_hash, label, created_at FROM api_keys ORDER BY created_at",
        )
        return [ApiKeyRecord(key_hash=r[0], label=r[1], created_at=r[2]) for r in rows]

    async def find_api_keys(self, hash_prefix: str) -> list[str]:
        rows = await self.db.execute_fetchall(
            "SELECT key_hash FROM api_keys WHERE key_hash LIKE ?", (f"{hash_prefix}%",),
        )
        return [r[0] for r in rows]

    async def delete_api_key(self, key_hash: str) -> bool:
        cursor = await self.db.execute("DELETE FROM api_keys WHERE key_hash = ?", (key_hash,))
        await self.db.commit()
        return cursor.rowcount > 0
