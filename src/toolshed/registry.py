"""Toolshed Registry — SQLite-backed store for every control-plane entity.

This is the single source of truth. Host agents only ever *report* what
they see; the rows here decide what is authoritative.

Cross-request coordination happens in SQL, not in process memory:
status transitions are compare-and-set updates (``WHERE status IN (...)``)
that bump a ``version`` column, and uniqueness (instance name per host,
one grant per agent/host, one belt item per agent/instance, one
permission per item/capability) is enforced by UNIQUE constraints.
Ownership runs one way through foreign keys with ``ON DELETE CASCADE``:
host → instance → toolbelt item → credential / permission.
"""

from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Iterable
from datetime import datetime, timezone
from typing import Any

import aiosqlite

from toolshed.errors import NotFoundError, ResourceConflictError
from toolshed.models import (
    AccessGrant,
    AgentRecord,
    CapabilityPermission,
    Capability,
    CatalogEntry,
    CredentialRecord,
    CredentialStatus,
    HostRecord,
    HostStatus,
    InstanceRecord,
    InstanceStatus,
    SecretSlot,
    ToolbeltItem,
)

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS agents (
    agent_id TEXT PRIMARY KEY,
    owner_id TEXT NOT NULL,
    name TEXT NOT NULL DEFAULT '',
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS hosts (
    host_id TEXT PRIMARY KEY,
    owner_id TEXT NOT NULL,
    name TEXT NOT NULL,
    region TEXT NOT NULL,
    size TEXT NOT NULL,
    image TEXT NOT NULL,
    provider_instance_id TEXT,
    address TEXT,
    bearer_secret TEXT UNIQUE,
    status TEXT NOT NULL DEFAULT 'pending_provision',
    status_message TEXT,
    last_heartbeat TEXT,
    agent_version TEXT,
    health TEXT NOT NULL DEFAULT '{}',
    version INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    deleted_at TEXT
);

CREATE TABLE IF NOT EXISTS tool_catalog (
    catalog_id TEXT PRIMARY KEY,
    name TEXT NOT NULL UNIQUE,
    display_name TEXT NOT NULL DEFAULT '',
    description TEXT NOT NULL DEFAULT '',
    image TEXT NOT NULL,
    entrypoint TEXT NOT NULL DEFAULT '[]',
    schema_version INTEGER NOT NULL DEFAULT 1,
    secret_slots TEXT NOT NULL DEFAULT '[]',
    capabilities TEXT NOT NULL DEFAULT '[]',
    enabled INTEGER NOT NULL DEFAULT 1,
    version INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS tool_instances (
    instance_id TEXT PRIMARY KEY,
    host_id TEXT NOT NULL REFERENCES hosts(host_id) ON DELETE CASCADE,
    catalog_id TEXT NOT NULL REFERENCES tool_catalog(catalog_id),
    instance_name TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending_deploy',
    status_message TEXT,
    details TEXT NOT NULL DEFAULT '{}',
    last_heartbeat TEXT,
    version INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE(host_id, instance_name)
);

CREATE TABLE IF NOT EXISTS toolbox_access (
    agent_id TEXT NOT NULL REFERENCES agents(agent_id) ON DELETE CASCADE,
    host_id TEXT NOT NULL REFERENCES hosts(host_id) ON DELETE CASCADE,
    granted_by TEXT NOT NULL,
    granted_at TEXT NOT NULL,
    PRIMARY KEY (agent_id, host_id)
);

CREATE TABLE IF NOT EXISTS toolbelt_items (
    item_id TEXT PRIMARY KEY,
    agent_id TEXT NOT NULL REFERENCES agents(agent_id) ON DELETE CASCADE,
    instance_id TEXT NOT NULL REFERENCES tool_instances(instance_id) ON DELETE CASCADE,
    active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE(agent_id, instance_id)
);

CREATE TABLE IF NOT EXISTS agent_tool_credentials (
    credential_id TEXT PRIMARY KEY,
    item_id TEXT NOT NULL UNIQUE REFERENCES toolbelt_items(item_id) ON DELETE CASCADE,
    kind TEXT NOT NULL,
    secret_ref TEXT,
    display_id TEXT NOT NULL DEFAULT '',
    status TEXT NOT NULL DEFAULT 'active',
    version INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS capability_permissions (
    item_id TEXT NOT NULL REFERENCES toolbelt_items(item_id) ON DELETE CASCADE,
    capability TEXT NOT NULL,
    allowed INTEGER NOT NULL DEFAULT 0,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (item_id, capability)
);

CREATE INDEX IF NOT EXISTS idx_hosts_owner ON hosts(owner_id);
CREATE INDEX IF NOT EXISTS idx_hosts_status ON hosts(status);
CREATE INDEX IF NOT EXISTS idx_instances_host ON tool_instances(host_id);
CREATE INDEX IF NOT EXISTS idx_instances_catalog ON tool_instances(catalog_id);
CREATE INDEX IF NOT EXISTS idx_toolbelt_agent ON toolbelt_items(agent_id);
CREATE INDEX IF NOT EXISTS idx_toolbelt_instance ON toolbelt_items(instance_id);
"""


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def new_id() -> str:
    return str(uuid.uuid4())


def _placeholders(values: Iterable[Any]) -> tuple[str, list[str]]:
    vals = [v.value if hasattr(v, "value") else v for v in values]
    return ", ".join("?" for _ in vals), vals


class ToolshedRegistry:
    """SQLite-backed registry with async access."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._db: aiosqlite.Connection | None = None

    async def initialize(self) -> None:
        """Open database and create tables."""
        self._db = await aiosqlite.connect(self.db_path)
        self._db.row_factory = aiosqlite.Row
        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.execute("PRAGMA foreign_keys=ON")
        await self._db.executescript(SCHEMA)
        await self._db.commit()
        logger.info("Toolshed registry initialized: %s", self.db_path)

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    @property
    def db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("Registry not initialized — call initialize() first")
        return self._db

    async def _insert(self, sql: str, params: tuple, conflict: str) -> None:
        try:
            await self.db.execute(sql, params)
        except aiosqlite.IntegrityError as exc:
            # Only the failed statement is undone; commit whatever else is
            # pending on this shared connection.
            await self.db.commit()
            raise ResourceConflictError(conflict) from exc
        await self.db.commit()

    # ── Agents ───────────────────────────────────────────────────────────

    async def create_agent(self, record: AgentRecord) -> AgentRecord:
        await self._insert(
            "INSERT INTO agents (agent_id, owner_id, name, created_at) VALUES (?, ?, ?, ?)",
            (record.agent_id, record.owner_id, record.name, record.created_at.isoformat()),
            f"agent {record.agent_id} already exists",
        )
        logger.info("Registered agent %s (owner=%s)", record.agent_id, record.owner_id)
        return record

    async def get_agent(self, agent_id: str) -> AgentRecord | None:
        cursor = await self.db.execute("SELECT * FROM agents WHERE agent_id = ?", (agent_id,))
        row = await cursor.fetchone()
        if not row:
            return None
        return AgentRecord(
            agent_id=row["agent_id"],
            owner_id=row["owner_id"],
            name=row["name"],
            created_at=_dt(row["created_at"]),
        )

    # ── Hosts ────────────────────────────────────────────────────────────

    async def create_host(self, record: HostRecord) -> HostRecord:
        now = _now()
        record.created_at = record.updated_at = datetime.fromisoformat(now)
        await self._insert(
            """INSERT INTO hosts
               (host_id, owner_id, name, region, size, image, bearer_secret,
                status, health, version, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, '{}', 1, ?, ?)""",
            (
                record.host_id,
                record.owner_id,
                record.name,
                record.region,
                record.size,
                record.image,
                record.bearer_secret,
                record.status.value,
                now,
                now,
            ),
            "host already exists",
        )
        logger.info("Created host %s (owner=%s, name=%s)", record.host_id, record.owner_id, record.name)
        return record

    async def get_host(self, host_id: str, *, include_deleted: bool = False) -> HostRecord | None:
        sql = "SELECT * FROM hosts WHERE host_id = ?"
        if not include_deleted:
            sql += " AND deleted_at IS NULL"
        cursor = await self.db.execute(sql, (host_id,))
        row = await cursor.fetchone()
        return self._row_to_host(row) if row else None

    async def get_host_by_bearer(self, bearer_secret: str) -> HostRecord | None:
        """Exact-match lookup on the unique bearer column."""
        cursor = await self.db.execute(
            "SELECT * FROM hosts WHERE bearer_secret = ? AND deleted_at IS NULL",
            (bearer_secret,),
        )
        row = await cursor.fetchone()
        return self._row_to_host(row) if row else None

    async def list_hosts(self, owner_id: str | None = None) -> list[HostRecord]:
        if owner_id is None:
            cursor = await self.db.execute(
                "SELECT * FROM hosts WHERE deleted_at IS NULL ORDER BY created_at"
            )
        else:
            cursor = await self.db.execute(
                "SELECT * FROM hosts WHERE owner_id = ? AND deleted_at IS NULL ORDER BY created_at",
                (owner_id,),
            )
        return [self._row_to_host(row) for row in await cursor.fetchall()]

    async def get_hosts_by_status(self, *statuses: HostStatus) -> list[HostRecord]:
        marks, vals = _placeholders(statuses)
        cursor = await self.db.execute(
            f"SELECT * FROM hosts WHERE status IN ({marks}) AND deleted_at IS NULL", vals
        )
        return [self._row_to_host(row) for row in await cursor.fetchall()]

    async def transition_host(
        self,
        host_id: str,
        allowed: Iterable[HostStatus],
        new_status: HostStatus,
        *,
        message: str | None = None,
        **fields: Any,
    ) -> bool:
        """Compare-and-set the host status. Returns False if the row moved on.

        Extra keyword fields (``address``, ``provider_instance_id``,
        ``bearer_secret``, ``deleted_at``) are written in the same statement.
        """
        marks, vals = _placeholders(allowed)
        sets = ["status = ?", "status_message = ?", "version = version + 1", "updated_at = ?"]
        params: list[Any] = [new_status.value, message, _now()]
        for column, value in fields.items():
            sets.append(f"{column} = ?")
            params.append(value.isoformat() if isinstance(value, datetime) else value)
        cursor = await self.db.execute(
            f"UPDATE hosts SET {', '.join(sets)} WHERE host_id = ? AND status IN ({marks})",
            (*params, host_id, *vals),
        )
        await self.db.commit()
        moved = cursor.rowcount == 1
        if moved:
            logger.info("Host %s → %s", host_id, new_status.value)
        else:
            logger.debug("Host %s transition to %s skipped (state moved on)", host_id, new_status.value)
        return moved

    async def set_host_provider_id(self, host_id: str, provider_instance_id: str) -> None:
        await self.db.execute(
            "UPDATE hosts SET provider_instance_id = ?, version = version + 1, updated_at = ? "
            "WHERE host_id = ?",
            (provider_instance_id, _now(), host_id),
        )
        await self.db.commit()

    async def record_heartbeat(
        self,
        host_id: str,
        promotable: Iterable[HostStatus],
        health: dict,
        agent_version: str | None,
    ) -> HostRecord | None:
        """Stamp a heartbeat and promote to ``active`` if in a promotable state.

        The promotion is a single CASE expression so a concurrent deprovision
        can never be overwritten.
        """
        marks, vals = _placeholders(promotable)
        now = _now()
        await self.db.execute(
            f"""UPDATE hosts SET
                status = CASE WHEN status IN ({marks}) THEN 'active' ELSE status END,
                status_message = CASE WHEN status IN ({marks}) THEN NULL ELSE status_message END,
                last_heartbeat = ?, health = ?, agent_version = COALESCE(?, agent_version),
                version = version + 1, updated_at = ?
                WHERE host_id = ? AND deleted_at IS NULL""",
            (*vals, *vals, now, json.dumps(health), agent_version, now, host_id),
        )
        await self.db.commit()
        return await self.get_host(host_id)

    def _row_to_host(self, row: aiosqlite.Row) -> HostRecord:
        return HostRecord(
            host_id=row["host_id"],
            owner_id=row["owner_id"],
            name=row["name"],
            region=row["region"],
            size=row["size"],
            image=row["image"],
            provider_instance_id=row["provider_instance_id"],
            address=row["address"],
            bearer_secret=row["bearer_secret"],
            status=HostStatus(row["status"]),
            status_message=row["status_message"],
            last_heartbeat=_dt(row["last_heartbeat"]),
            agent_version=row["agent_version"],
            health=json.loads(row["health"] or "{}"),
            version=row["version"],
            created_at=_dt(row["created_at"]),
            updated_at=_dt(row["updated_at"]),
            deleted_at=_dt(row["deleted_at"]),
        )

    # ── Tool catalog ─────────────────────────────────────────────────────

    async def create_catalog_entry(self, entry: CatalogEntry) -> CatalogEntry:
        now = _now()
        entry.created_at = entry.updated_at = datetime.fromisoformat(now)
        await self._insert(
            """INSERT INTO tool_catalog
               (catalog_id, name, display_name, description, image, entrypoint,
                schema_version, secret_slots, capabilities, enabled, version,
                created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 1, ?, ?)""",
            (
                entry.catalog_id,
                entry.name,
                entry.display_name,
                entry.description,
                entry.image,
                json.dumps(entry.entrypoint),
                entry.schema_version,
                json.dumps([s.model_dump() for s in entry.secret_slots]),
                json.dumps([c.model_dump() for c in entry.capabilities]),
                int(entry.enabled),
                now,
                now,
            ),
            f"catalog entry {entry.name!r} already exists",
        )
        logger.info("Created catalog entry %s (%s)", entry.name, entry.image)
        return entry

    async def update_catalog_entry(self, entry: CatalogEntry) -> bool:
        """Write back an edited entry if nobody else changed it meanwhile."""
        cursor = await self.db.execute(
            """UPDATE tool_catalog SET
               display_name=?, description=?, image=?, entrypoint=?, schema_version=?,
               secret_slots=?, capabilities=?, enabled=?, version=version+1, updated_at=?
               WHERE catalog_id=? AND version=?""",
            (
                entry.display_name,
                entry.description,
                entry.image,
                json.dumps(entry.entrypoint),
                entry.schema_version,
                json.dumps([s.model_dump() for s in entry.secret_slots]),
                json.dumps([c.model_dump() for c in entry.capabilities]),
                int(entry.enabled),
                _now(),
                entry.catalog_id,
                entry.version,
            ),
        )
        await self.db.commit()
        return cursor.rowcount == 1

    async def get_catalog_entry(self, catalog_id: str) -> CatalogEntry | None:
        cursor = await self.db.execute(
            "SELECT * FROM tool_catalog WHERE catalog_id = ?", (catalog_id,)
        )
        row = await cursor.fetchone()
        return self._row_to_catalog(row) if row else None

    async def get_catalog_entry_by_name(self, name: str) -> CatalogEntry | None:
        cursor = await self.db.execute("SELECT * FROM tool_catalog WHERE name = ?", (name,))
        row = await cursor.fetchone()
        return self._row_to_catalog(row) if row else None

    async def list_catalog(self, *, enabled_only: bool = False) -> list[CatalogEntry]:
        sql = "SELECT * FROM tool_catalog"
        if enabled_only:
            sql += " WHERE enabled = 1"
        cursor = await self.db.execute(sql + " ORDER BY name")
        return [self._row_to_catalog(row) for row in await cursor.fetchall()]

    async def count_live_instances(self, catalog_id: str) -> int:
        cursor = await self.db.execute(
            "SELECT COUNT(*) FROM tool_instances WHERE catalog_id = ? "
            "AND status NOT IN ('pending_delete', 'deleting')",
            (catalog_id,),
        )
        row = await cursor.fetchone()
        return row[0]

    def _row_to_catalog(self, row: aiosqlite.Row) -> CatalogEntry:
        return CatalogEntry(
            catalog_id=row["catalog_id"],
            name=row["name"],
            display_name=row["display_name"],
            description=row["description"],
            image=row["image"],
            entrypoint=json.loads(row["entrypoint"]),
            schema_version=row["schema_version"],
            secret_slots=[SecretSlot(**s) for s in json.loads(row["secret_slots"])],
            capabilities=[Capability(**c) for c in json.loads(row["capabilities"])],
            enabled=bool(row["enabled"]),
            version=row["version"],
            created_at=_dt(row["created_at"]),
            updated_at=_dt(row["updated_at"]),
        )

    # ── Tool instances ───────────────────────────────────────────────────

    async def create_instance(self, record: InstanceRecord) -> InstanceRecord:
        now = _now()
        record.created_at = record.updated_at = datetime.fromisoformat(now)
        await self._insert(
            """INSERT INTO tool_instances
               (instance_id, host_id, catalog_id, instance_name, status, details,
                version, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, '{}', 1, ?, ?)""",
            (
                record.instance_id,
                record.host_id,
                record.catalog_id,
                record.instance_name,
                record.status.value,
                now,
                now,
            ),
            f"instance name {record.instance_name!r} already used on this host",
        )
        logger.info(
            "Created instance %s (%s on host %s)",
            record.instance_id,
            record.instance_name,
            record.host_id,
        )
        return record

    async def get_instance(self, instance_id: str) -> InstanceRecord | None:
        cursor = await self.db.execute(
            "SELECT * FROM tool_instances WHERE instance_id = ?", (instance_id,)
        )
        row = await cursor.fetchone()
        return self._row_to_instance(row) if row else None

    async def list_instances(self, host_id: str) -> list[InstanceRecord]:
        cursor = await self.db.execute(
            "SELECT * FROM tool_instances WHERE host_id = ? ORDER BY created_at", (host_id,)
        )
        return [self._row_to_instance(row) for row in await cursor.fetchall()]

    async def transition_instance(
        self,
        instance_id: str,
        allowed: Iterable[InstanceStatus],
        new_status: InstanceStatus,
        *,
        message: str | None = None,
    ) -> bool:
        marks, vals = _placeholders(allowed)
        cursor = await self.db.execute(
            f"""UPDATE tool_instances SET status = ?, status_message = ?,
                version = version + 1, updated_at = ?
                WHERE instance_id = ? AND status IN ({marks})""",
            (new_status.value, message, _now(), instance_id, *vals),
        )
        await self.db.commit()
        moved = cursor.rowcount == 1
        if moved:
            logger.info("Instance %s → %s", instance_id, new_status.value)
        return moved

    async def apply_instance_report(
        self,
        instance_id: str,
        host_id: str,
        allowed: Iterable[InstanceStatus],
        new_status: InstanceStatus,
        details: dict,
        message: str | None = None,
    ) -> bool:
        """Overwrite status and details from a host report if ``allowed`` permits.

        Always stamps ``last_heartbeat`` for instances on ``host_id`` even when
        the status itself is not changed.
        """
        marks, vals = _placeholders(allowed)
        now = _now()
        cursor = await self.db.execute(
            f"""UPDATE tool_instances SET
                status = CASE WHEN status IN ({marks}) THEN ? ELSE status END,
                status_message = CASE WHEN status IN ({marks}) THEN ? ELSE status_message END,
                details = CASE WHEN status IN ({marks}) THEN ? ELSE details END,
                last_heartbeat = ?, version = version + 1, updated_at = ?
                WHERE instance_id = ? AND host_id = ?""",
            (
                *vals,
                new_status.value,
                *vals,
                message,
                *vals,
                json.dumps(details),
                now,
                now,
                instance_id,
                host_id,
            ),
        )
        await self.db.commit()
        return cursor.rowcount == 1

    async def delete_instance(self, instance_id: str) -> None:
        await self.db.execute("DELETE FROM tool_instances WHERE instance_id = ?", (instance_id,))
        await self.db.commit()
        logger.info("Deleted instance record %s", instance_id)

    def _row_to_instance(self, row: aiosqlite.Row) -> InstanceRecord:
        return InstanceRecord(
            instance_id=row["instance_id"],
            host_id=row["host_id"],
            catalog_id=row["catalog_id"],
            instance_name=row["instance_name"],
            status=InstanceStatus(row["status"]),
            status_message=row["status_message"],
            details=json.loads(row["details"] or "{}"),
            last_heartbeat=_dt(row["last_heartbeat"]),
            version=row["version"],
            created_at=_dt(row["created_at"]),
            updated_at=_dt(row["updated_at"]),
        )

    # ── Toolbox access grants ────────────────────────────────────────────

    async def create_grant(self, grant: AccessGrant) -> AccessGrant:
        await self._insert(
            "INSERT INTO toolbox_access (agent_id, host_id, granted_by, granted_at) "
            "VALUES (?, ?, ?, ?)",
            (grant.agent_id, grant.host_id, grant.granted_by, grant.granted_at.isoformat()),
            "agent already has access to this toolbox",
        )
        return grant

    async def get_grant(self, agent_id: str, host_id: str) -> AccessGrant | None:
        cursor = await self.db.execute(
            "SELECT * FROM toolbox_access WHERE agent_id = ? AND host_id = ?",
            (agent_id, host_id),
        )
        row = await cursor.fetchone()
        return self._row_to_grant(row) if row else None

    async def list_grants(self, agent_id: str) -> list[AccessGrant]:
        cursor = await self.db.execute(
            "SELECT * FROM toolbox_access WHERE agent_id = ? ORDER BY granted_at", (agent_id,)
        )
        return [self._row_to_grant(row) for row in await cursor.fetchall()]

    async def delete_grant(self, agent_id: str, host_id: str) -> bool:
        cursor = await self.db.execute(
            "DELETE FROM toolbox_access WHERE agent_id = ? AND host_id = ?",
            (agent_id, host_id),
        )
        await self.db.commit()
        return cursor.rowcount == 1

    def _row_to_grant(self, row: aiosqlite.Row) -> AccessGrant:
        return AccessGrant(
            agent_id=row["agent_id"],
            host_id=row["host_id"],
            granted_by=row["granted_by"],
            granted_at=_dt(row["granted_at"]),
        )

    # ── Toolbelt items ───────────────────────────────────────────────────

    async def create_item(self, item: ToolbeltItem) -> ToolbeltItem:
        now = _now()
        item.created_at = item.updated_at = datetime.fromisoformat(now)
        await self._insert(
            "INSERT INTO toolbelt_items (item_id, agent_id, instance_id, active, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (item.item_id, item.agent_id, item.instance_id, int(item.active), now, now),
            "tool instance is already in this agent's toolbelt",
        )
        logger.info("Toolbelt item %s: agent=%s instance=%s", item.item_id, item.agent_id, item.instance_id)
        return item

    async def get_item(self, item_id: str) -> ToolbeltItem | None:
        cursor = await self.db.execute("SELECT * FROM toolbelt_items WHERE item_id = ?", (item_id,))
        row = await cursor.fetchone()
        return self._row_to_item(row) if row else None

    async def get_item_for(self, agent_id: str, instance_id: str) -> ToolbeltItem | None:
        cursor = await self.db.execute(
            "SELECT * FROM toolbelt_items WHERE agent_id = ? AND instance_id = ?",
            (agent_id, instance_id),
        )
        row = await cursor.fetchone()
        return self._row_to_item(row) if row else None

    async def list_items(self, agent_id: str) -> list[ToolbeltItem]:
        cursor = await self.db.execute(
            "SELECT * FROM toolbelt_items WHERE agent_id = ? ORDER BY created_at", (agent_id,)
        )
        return [self._row_to_item(row) for row in await cursor.fetchall()]

    async def list_items_for_instance(self, instance_id: str) -> list[ToolbeltItem]:
        cursor = await self.db.execute(
            "SELECT * FROM toolbelt_items WHERE instance_id = ?", (instance_id,)
        )
        return [self._row_to_item(row) for row in await cursor.fetchall()]

    async def list_items_on_host(self, agent_id: str, host_id: str) -> list[ToolbeltItem]:
        cursor = await self.db.execute(
            """SELECT b.* FROM toolbelt_items b
               JOIN tool_instances i ON i.instance_id = b.instance_id
               WHERE b.agent_id = ? AND i.host_id = ?""",
            (agent_id, host_id),
        )
        return [self._row_to_item(row) for row in await cursor.fetchall()]

    async def set_item_active(self, item_id: str, active: bool) -> bool:
        """Flip the active flag; False if the item was already in that state."""
        cursor = await self.db.execute(
            "UPDATE toolbelt_items SET active = ?, updated_at = ? WHERE item_id = ? AND active = ?",
            (int(active), _now(), item_id, int(not active)),
        )
        await self.db.commit()
        return cursor.rowcount == 1

    async def delete_item(self, item_id: str) -> None:
        await self.db.execute("DELETE FROM toolbelt_items WHERE item_id = ?", (item_id,))
        await self.db.commit()

    def _row_to_item(self, row: aiosqlite.Row) -> ToolbeltItem:
        return ToolbeltItem(
            item_id=row["item_id"],
            agent_id=row["agent_id"],
            instance_id=row["instance_id"],
            active=bool(row["active"]),
            created_at=_dt(row["created_at"]),
            updated_at=_dt(row["updated_at"]),
        )

    # ── Credentials ──────────────────────────────────────────────────────

    async def get_credential(self, item_id: str) -> CredentialRecord | None:
        cursor = await self.db.execute(
            "SELECT * FROM agent_tool_credentials WHERE item_id = ?", (item_id,)
        )
        row = await cursor.fetchone()
        return self._row_to_credential(row) if row else None

    async def upsert_credential(
        self, item_id: str, kind: str, secret_ref: str, display_id: str
    ) -> tuple[CredentialRecord, str | None]:
        """Bind a new secret reference to an item.

        Returns the stored credential and the *previous* reference (if any),
        which the caller releases only after this commit has happened.
        """
        existing = await self.get_credential(item_id)
        now = _now()
        if existing is None:
            await self._insert(
                """INSERT INTO agent_tool_credentials
                   (credential_id, item_id, kind, secret_ref, display_id, status,
                    version, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, 'active', 1, ?, ?)""",
                (new_id(), item_id, kind, secret_ref, display_id, now, now),
                "credential was set concurrently",
            )
            old_ref = None
        else:
            cursor = await self.db.execute(
                """UPDATE agent_tool_credentials SET
                   kind = ?, secret_ref = ?, display_id = ?, status = 'active',
                   version = version + 1, updated_at = ?
                   WHERE item_id = ? AND version = ?""",
                (kind, secret_ref, display_id, now, item_id, existing.version),
            )
            await self.db.commit()
            if cursor.rowcount != 1:
                raise ResourceConflictError("credential was changed concurrently")
            old_ref = existing.secret_ref
        record = await self.get_credential(item_id)
        if record is None:
            raise NotFoundError("toolbelt item was removed")
        return record, old_ref

    async def set_credential_status(
        self, item_id: str, status: CredentialStatus, *, clear_ref: bool = False
    ) -> str | None:
        """Change credential status; returns the reference that was cleared."""
        existing = await self.get_credential(item_id)
        if existing is None:
            return None
        if clear_ref:
            await self.db.execute(
                "UPDATE agent_tool_credentials SET status = ?, secret_ref = NULL, "
                "version = version + 1, updated_at = ? WHERE item_id = ?",
                (status.value, _now(), item_id),
            )
        else:
            await self.db.execute(
                "UPDATE agent_tool_credentials SET status = ?, version = version + 1, "
                "updated_at = ? WHERE item_id = ?",
                (status.value, _now(), item_id),
            )
        await self.db.commit()
        return existing.secret_ref if clear_ref else None

    async def secret_refs_for_instance(self, instance_id: str) -> list[str]:
        cursor = await self.db.execute(
            """SELECT c.secret_ref FROM agent_tool_credentials c
               JOIN toolbelt_items b ON b.item_id = c.item_id
               WHERE b.instance_id = ? AND c.secret_ref IS NOT NULL""",
            (instance_id,),
        )
        return [row[0] for row in await cursor.fetchall()]

    async def secret_refs_for_host(self, host_id: str) -> list[str]:
        cursor = await self.db.execute(
            """SELECT c.secret_ref FROM agent_tool_credentials c
               JOIN toolbelt_items b ON b.item_id = c.item_id
               JOIN tool_instances i ON i.instance_id = b.instance_id
               WHERE i.host_id = ? AND c.secret_ref IS NOT NULL""",
            (host_id,),
        )
        return [row[0] for row in await cursor.fetchall()]

    def _row_to_credential(self, row: aiosqlite.Row) -> CredentialRecord:
        return CredentialRecord(
            credential_id=row["credential_id"],
            item_id=row["item_id"],
            kind=row["kind"],
            secret_ref=row["secret_ref"],
            display_id=row["display_id"],
            status=CredentialStatus(row["status"]),
            version=row["version"],
            created_at=_dt(row["created_at"]),
            updated_at=_dt(row["updated_at"]),
        )

    # ── Capability permissions ───────────────────────────────────────────

    async def upsert_permission(self, item_id: str, capability: str, allowed: bool) -> CapabilityPermission:
        now = _now()
        await self.db.execute(
            """INSERT INTO capability_permissions (item_id, capability, allowed, updated_at)
               VALUES (?, ?, ?, ?)
               ON CONFLICT(item_id, capability) DO UPDATE SET
               allowed = excluded.allowed, updated_at = excluded.updated_at""",
            (item_id, capability, int(allowed), now),
        )
        await self.db.commit()
        return CapabilityPermission(
            item_id=item_id, capability=capability, allowed=allowed, updated_at=_dt(now)
        )

    async def list_permissions(self, item_id: str) -> list[CapabilityPermission]:
        cursor = await self.db.execute(
            "SELECT * FROM capability_permissions WHERE item_id = ? ORDER BY capability",
            (item_id,),
        )
        return [
            CapabilityPermission(
                item_id=row["item_id"],
                capability=row["capability"],
                allowed=bool(row["allowed"]),
                updated_at=_dt(row["updated_at"]),
            )
            for row in await cursor.fetchall()
        ]

    async def delete_permissions(self, item_id: str) -> int:
        cursor = await self.db.execute(
            "DELETE FROM capability_permissions WHERE item_id = ?", (item_id,)
        )
        await self.db.commit()
        return cursor.rowcount

    # ── Authorization ────────────────────────────────────────────────────

    async def check_authorization(self, agent_id: str, instance_id: str, capability: str) -> bool:
        """True only if grant, active item, active credential and allowed permission all exist."""
        cursor = await self.db.execute(
            """SELECT 1
               FROM toolbelt_items b
               JOIN tool_instances i ON i.instance_id = b.instance_id
               JOIN toolbox_access g ON g.agent_id = b.agent_id AND g.host_id = i.host_id
               JOIN agent_tool_credentials c ON c.item_id = b.item_id
               JOIN capability_permissions p ON p.item_id = b.item_id
               WHERE b.agent_id = ? AND b.instance_id = ? AND b.active = 1
                 AND c.status = 'active' AND c.secret_ref IS NOT NULL
                 AND p.capability = ? AND p.allowed = 1
               LIMIT 1""",
            (agent_id, instance_id, capability),
        )
        return await cursor.fetchone() is not None

    # ── Host teardown ────────────────────────────────────────────────────

    async def purge_host_children(self, host_id: str) -> int:
        """Delete every instance and grant on a host (belt rows cascade).

        Returns the number of instances removed.
        """
        cursor = await self.db.execute("DELETE FROM tool_instances WHERE host_id = ?", (host_id,))
        removed = cursor.rowcount
        await self.db.execute("DELETE FROM toolbox_access WHERE host_id = ?", (host_id,))
        await self.db.commit()
        return removed
