"""Tests for the Toolshed registry — CAS transitions, uniqueness, cascades, authorization join."""

from __future__ import annotations

import asyncio

import pytest
import pytest_asyncio

from conftest import ECHO_TOOL, make_agent, make_host, make_instance, wire_agent
from toolshed.errors import ResourceConflictError
from toolshed.models import (
    HEARTBEAT_PROMOTABLE,
    AccessGrant,
    CatalogEntry,
    CredentialStatus,
    HostStatus,
    InstanceStatus,
    ToolbeltItem,
)
from toolshed.registry import ToolshedRegistry, new_id


async def _entry(registry: ToolshedRegistry, name: str = "echo-tool") -> CatalogEntry:
    return await registry.create_catalog_entry(
        CatalogEntry.model_validate({**ECHO_TOOL, "name": name, "catalog_id": new_id()})
    )


class TestHosts:
    async def test_create_and_get(self, registry):
        host = await make_host(registry)
        assert host.status == HostStatus.ACTIVE
        assert host.address == "203.0.113.10"
        assert host.bearer_secret == "bearer-h1"

    async def test_get_nonexistent(self, registry):
        assert await registry.get_host("nope") is None

    async def test_lookup_by_bearer(self, registry):
        await make_host(registry, bearer="s3cret")
        found = await registry.get_host_by_bearer("s3cret")
        assert found is not None and found.host_id == "h1"
        assert await registry.get_host_by_bearer("wrong") is None

    async def test_list_by_owner(self, registry):
        await make_host(registry, "h1", owner_id="u1")
        await make_host(registry, "h2", owner_id="u2")
        await make_host(registry, "h3", owner_id="u1")

        assert {h.host_id for h in await registry.list_hosts("u1")} == {"h1", "h3"}
        assert len(await registry.list_hosts()) == 3

    async def test_transition_is_compare_and_set(self, registry):
        await make_host(registry, status=HostStatus.PROVISIONING)
        before = await registry.get_host("h1")

        assert await registry.transition_host(
            "h1", [HostStatus.PROVISIONING], HostStatus.AWAITING_HEARTBEAT, address="198.51.100.7"
        )
        # Second attempt from the same expected state loses.
        assert not await registry.transition_host(
            "h1", [HostStatus.PROVISIONING], HostStatus.ERROR_PROVISIONING
        )

        host = await registry.get_host("h1")
        assert host.status == HostStatus.AWAITING_HEARTBEAT
        assert host.address == "198.51.100.7"
        assert host.version > before.version

    async def test_concurrent_transitions_one_winner(self, registry):
        await make_host(registry, status=HostStatus.ACTIVE)
        results = await asyncio.gather(
            *(
                registry.transition_host("h1", [HostStatus.ACTIVE], HostStatus.PENDING_DEPROVISION)
                for _ in range(5)
            )
        )
        assert results.count(True) == 1

    async def test_heartbeat_promotes(self, registry):
        await make_host(registry, status=HostStatus.AWAITING_HEARTBEAT)
        host = await registry.record_heartbeat("h1", HEARTBEAT_PROMOTABLE, {"load_1m": 0.2}, "0.1.0")
        assert host.status == HostStatus.ACTIVE
        assert host.last_heartbeat is not None
        assert host.health == {"load_1m": 0.2}
        assert host.agent_version == "0.1.0"

    async def test_heartbeat_never_downgrades_deprovisioning(self, registry):
        await make_host(registry, status=HostStatus.DEPROVISIONING)
        host = await registry.record_heartbeat("h1", HEARTBEAT_PROMOTABLE, {}, None)
        assert host.status == HostStatus.DEPROVISIONING
        assert host.last_heartbeat is not None

    async def test_soft_deleted_hidden(self, registry):
        from datetime import datetime, timezone

        await make_host(registry, status=HostStatus.DEPROVISIONING)
        await registry.transition_host(
            "h1",
            [HostStatus.DEPROVISIONING],
            HostStatus.DEPROVISIONED,
            bearer_secret=None,
            deleted_at=datetime.now(timezone.utc),
        )
        assert await registry.get_host("h1") is None
        kept = await registry.get_host("h1", include_deleted=True)
        assert kept.status == HostStatus.DEPROVISIONED
        assert kept.bearer_secret is None


class TestCatalog:
    async def test_roundtrip(self, registry):
        entry = await _entry(registry)
        fetched = await registry.get_catalog_entry(entry.catalog_id)
        assert fetched.name == "echo-tool"
        assert fetched.slot_for("api_key").env_var == "ECHO_API_KEY"
        assert fetched.has_capability("echo.send")

    async def test_duplicate_name_conflicts(self, registry):
        await _entry(registry)
        with pytest.raises(ResourceConflictError):
            await _entry(registry)

    async def test_update_uses_version(self, registry):
        entry = await _entry(registry)
        entry.description = "first"
        assert await registry.update_catalog_entry(entry)
        entry.description = "stale write"
        assert not await registry.update_catalog_entry(entry)  # version already bumped

    async def test_live_instance_count_ignores_deleting(self, registry):
        entry = await _entry(registry)
        await make_host(registry)
        await make_instance(registry, entry.catalog_id, name="a")
        await make_instance(registry, entry.catalog_id, name="b", status=InstanceStatus.DELETING)
        assert await registry.count_live_instances(entry.catalog_id) == 1


class TestInstances:
    async def test_name_unique_per_host(self, registry):
        entry = await _entry(registry)
        await make_host(registry, "h1")
        await make_host(registry, "h2")
        await make_instance(registry, entry.catalog_id, host_id="h1", name="echo-1")
        await make_instance(registry, entry.catalog_id, host_id="h2", name="echo-1")
        with pytest.raises(ResourceConflictError):
            await make_instance(registry, entry.catalog_id, host_id="h1", name="echo-1")

    async def test_report_respects_allowed_states(self, registry):
        entry = await _entry(registry)
        await make_host(registry)
        inst = await make_instance(registry, entry.catalog_id, status=InstanceStatus.DELETING)

        assert await registry.apply_instance_report(
            inst.instance_id, "h1", [InstanceStatus.RUNNING], InstanceStatus.STOPPED, {"x": 1}
        )
        after = await registry.get_instance(inst.instance_id)
        assert after.status == InstanceStatus.DELETING
        assert after.details == {}
        assert after.last_heartbeat is not None

    async def test_report_for_other_host_ignored(self, registry):
        entry = await _entry(registry)
        await make_host(registry, "h1")
        await make_host(registry, "h2")
        inst = await make_instance(registry, entry.catalog_id, host_id="h1")
        assert not await registry.apply_instance_report(
            inst.instance_id, "h2", list(InstanceStatus), InstanceStatus.ERROR, {}
        )


class TestToolbelt:
    async def test_one_item_per_agent_instance(self, registry):
        entry = await _entry(registry)
        await make_host(registry)
        await make_agent(registry)
        inst = await make_instance(registry, entry.catalog_id)
        await registry.create_item(ToolbeltItem(item_id=new_id(), agent_id="a1", instance_id=inst.instance_id))
        with pytest.raises(ResourceConflictError):
            await registry.create_item(
                ToolbeltItem(item_id=new_id(), agent_id="a1", instance_id=inst.instance_id)
            )

    async def test_concurrent_inserts_keep_winner(self, registry):
        entry = await _entry(registry)
        await make_host(registry)
        await make_agent(registry)
        inst = await make_instance(registry, entry.catalog_id)

        results = await asyncio.gather(
            *(
                registry.create_item(
                    ToolbeltItem(item_id=new_id(), agent_id="a1", instance_id=inst.instance_id)
                )
                for _ in range(3)
            ),
            return_exceptions=True,
        )
        conflicts = [r for r in results if isinstance(r, ResourceConflictError)]
        assert len(conflicts) == 2
        assert len(await registry.list_items("a1")) == 1

    async def test_upsert_credential_returns_old_ref(self, registry, secret_store):
        entry = await _entry(registry)
        await make_host(registry)
        inst = await make_instance(registry, entry.catalog_id)
        item = await wire_agent(registry, secret_store, inst)

        first = await registry.get_credential(item.item_id)
        record, old = await registry.upsert_credential(item.item_id, "api_key", "sec_new", "ne…ew")
        assert old == first.secret_ref
        assert record.secret_ref == "sec_new"
        assert record.version == first.version + 1

    async def test_revoke_clears_ref(self, registry, secret_store):
        entry = await _entry(registry)
        await make_host(registry)
        inst = await make_instance(registry, entry.catalog_id)
        item = await wire_agent(registry, secret_store, inst)

        ref = await registry.set_credential_status(item.item_id, CredentialStatus.REVOKED, clear_ref=True)
        assert ref is not None
        cred = await registry.get_credential(item.item_id)
        assert cred.status == CredentialStatus.REVOKED
        assert cred.secret_ref is None

    async def test_deleting_instance_cascades(self, registry, secret_store):
        entry = await _entry(registry)
        await make_host(registry)
        inst = await make_instance(registry, entry.catalog_id)
        item = await wire_agent(registry, secret_store, inst)

        await registry.delete_instance(inst.instance_id)
        assert await registry.get_item(item.item_id) is None
        assert await registry.get_credential(item.item_id) is None
        assert await registry.list_permissions(item.item_id) == []

    async def test_purge_host_children(self, registry, secret_store):
        entry = await _entry(registry)
        await make_host(registry)
        inst = await make_instance(registry, entry.catalog_id)
        await wire_agent(registry, secret_store, inst)

        assert await registry.purge_host_children("h1") == 1
        assert await registry.list_instances("h1") == []
        assert await registry.get_grant("a1", "h1") is None
        assert await registry.list_items("a1") == []


class TestAuthorization:
    @pytest_asyncio.fixture
    async def wired(self, registry, secret_store):
        entry = await _entry(registry)
        await make_host(registry)
        inst = await make_instance(registry, entry.catalog_id)
        item = await wire_agent(registry, secret_store, inst)
        return inst, item

    async def test_all_links_present(self, registry, wired):
        inst, _ = wired
        assert await registry.check_authorization("a1", inst.instance_id, "echo.send")

    async def test_missing_grant(self, registry, wired):
        inst, _ = wired
        await registry.delete_grant("a1", "h1")
        assert not await registry.check_authorization("a1", inst.instance_id, "echo.send")

    async def test_inactive_item(self, registry, wired):
        inst, item = wired
        await registry.set_item_active(item.item_id, False)
        assert not await registry.check_authorization("a1", inst.instance_id, "echo.send")

    async def test_credential_not_active(self, registry, wired):
        inst, item = wired
        await registry.set_credential_status(item.item_id, CredentialStatus.REQUIRES_REAUTH)
        assert not await registry.check_authorization("a1", inst.instance_id, "echo.send")

    async def test_permission_denied_or_missing(self, registry, wired):
        inst, item = wired
        assert not await registry.check_authorization("a1", inst.instance_id, "echo.read")
        await registry.upsert_permission(item.item_id, "echo.send", False)
        assert not await registry.check_authorization("a1", inst.instance_id, "echo.send")

    async def test_other_agent(self, registry, wired):
        inst, _ = wired
        await make_agent(registry, "a2")
        await registry.create_grant(AccessGrant(agent_id="a2", host_id="h1", granted_by="u1"))
        assert not await registry.check_authorization("a2", inst.instance_id, "echo.send")
