"""Shared fixtures: a fresh registry, secret store and audit log per test,
plus helpers that put hosts/instances/belt items into a known state.
"""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from toolshed.audit import AuditLog
from toolshed.catalog import ToolCatalog
from toolshed.config import ProvisioningConfig, ToolshedConfig
from toolshed.models import (
    AccessGrant,
    AgentRecord,
    ExecuteResult,
    HostRecord,
    HostStatus,
    InstanceRecord,
    InstanceStatus,
    ToolbeltItem,
)
from toolshed.registry import ToolshedRegistry, new_id
from toolshed.secret_store import FernetSecretStore, generate_key
from toolshed.security import Principal

ECHO_TOOL = {
    "name": "echo-tool",
    "display_name": "Echo",
    "image": "ghcr.io/toolshed/echo-tool:1",
    "entrypoint": ["/tool/run"],
    "secret_slots": [{"name": "API key", "kind": "api_key", "env_var": "ECHO_API_KEY"}],
    "capabilities": [{"name": "echo.send"}, {"name": "echo.read"}],
}

OWNER = Principal(user_id="u1")
ADMIN = Principal(user_id="root", admin=True)
STRANGER = Principal(user_id="u2")


# ── Stores ───────────────────────────────────────────────────────────────────


@pytest_asyncio.fixture
async def registry(tmp_path):
    reg = ToolshedRegistry(str(tmp_path / "registry.db"))
    await reg.initialize()
    yield reg
    await reg.close()


@pytest_asyncio.fixture
async def secret_store(tmp_path):
    store = FernetSecretStore(str(tmp_path / "secrets.db"), generate_key())
    await store.initialize()
    yield store
    await store.close()


@pytest_asyncio.fixture
async def audit(tmp_path):
    log = AuditLog(tmp_path / "audit")
    await log.start()
    return log


@pytest.fixture
def config(tmp_path, monkeypatch) -> ToolshedConfig:
    monkeypatch.setenv("TOOLSHED_SYSTEM_KEY", "system-key")
    cfg = ToolshedConfig(provisioning=ProvisioningConfig(poll_interval=0, poll_attempts=3))
    cfg.server.data_dir = str(tmp_path / "data")
    return cfg


@pytest_asyncio.fixture
async def catalog(registry):
    return ToolCatalog(registry)


@pytest_asyncio.fixture
async def echo_entry(catalog):
    return await catalog.create(ECHO_TOOL)


@pytest.fixture
def host_agent():
    """HostAgentClient double: every relay succeeds."""
    client = AsyncMock()
    client.deploy = AsyncMock(return_value={})
    client.remove = AsyncMock(return_value={})
    client.start_instance = AsyncMock(return_value={})
    client.stop_instance = AsyncMock(return_value={})
    client.execute = AsyncMock(return_value=ExecuteResult(exit_code=0, output={"echo": "hi"}))
    return client


# ── State helpers ────────────────────────────────────────────────────────────


async def make_host(
    registry: ToolshedRegistry,
    host_id: str = "h1",
    owner_id: str = "u1",
    status: HostStatus = HostStatus.ACTIVE,
    address: str | None = "203.0.113.10",
    bearer: str | None = None,
) -> HostRecord:
    await registry.create_host(
        HostRecord(
            host_id=host_id,
            owner_id=owner_id,
            name=f"box-{host_id}",
            region="nyc3",
            size="s-1vcpu-1gb",
            image="ubuntu-22-04-x64",
            bearer_secret=bearer or f"bearer-{host_id}",
            status=status,
        )
    )
    await registry.transition_host(host_id, [status], status, address=address)
    return await registry.get_host(host_id)


async def make_instance(
    registry: ToolshedRegistry,
    catalog_id: str,
    host_id: str = "h1",
    name: str = "echo-1",
    status: InstanceStatus = InstanceStatus.RUNNING,
    instance_id: str | None = None,
) -> InstanceRecord:
    record = await registry.create_instance(
        InstanceRecord(
            instance_id=instance_id or new_id(),
            host_id=host_id,
            catalog_id=catalog_id,
            instance_name=name,
            status=status,
        )
    )
    return record


async def make_agent(registry: ToolshedRegistry, agent_id: str = "a1", owner_id: str = "u1") -> AgentRecord:
    return await registry.create_agent(AgentRecord(agent_id=agent_id, owner_id=owner_id))


async def wire_agent(
    registry: ToolshedRegistry,
    secret_store,
    instance: InstanceRecord,
    agent_id: str = "a1",
    secret: str = "k-123",
    capability: str = "echo.send",
) -> ToolbeltItem:
    """Create all four authorization links for (agent, instance, capability)."""
    if await registry.get_agent(agent_id) is None:
        await make_agent(registry, agent_id)
    if await registry.get_grant(agent_id, instance.host_id) is None:
        await registry.create_grant(
            AccessGrant(agent_id=agent_id, host_id=instance.host_id, granted_by="u1")
        )
    item = await registry.create_item(
        ToolbeltItem(item_id=new_id(), agent_id=agent_id, instance_id=instance.instance_id)
    )
    ref = await secret_store.put(secret)
    await registry.upsert_credential(item.item_id, "api_key", ref, "k-…23")
    await registry.upsert_permission(item.item_id, capability, True)
    return item
