"""Toolbelt Registry — per-agent reachability, credentials and permissions.

An agent may execute capability C on tool instance I only when four links
exist together:

1. a ToolboxAccessGrant for I's host,
2. an active ToolbeltItem for (agent, I),
3. an ``active`` AgentToolCredential on that item,
4. a CapabilityPermission for C with ``allowed=true``.

Everything is default-deny. ``execute()`` is the choke-point that checks
all four before relaying to the host agent.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from toolshed.errors import (
    AuthorizationError,
    InvalidStateError,
    NotFoundError,
    ResourceConflictError,
    SchemaValidationError,
    ToolshedError,
)
from toolshed.models import (
    DELETION_STATES,
    AccessGrant,
    AgentRecord,
    BeltEntry,
    CapabilityPermission,
    CredentialRecord,
    CredentialStatus,
    ExecuteCommand,
    ExecuteRequest,
    ExecuteResult,
    HostStatus,
    InstanceStatus,
    ToolbeltItem,
)
from toolshed.registry import new_id
from toolshed.secret_store import mask_secret

if TYPE_CHECKING:
    from toolshed.audit import AuditLog
    from toolshed.catalog import ToolCatalog
    from toolshed.host_agent_client import HostAgentClient
    from toolshed.registry import ToolshedRegistry
    from toolshed.secret_store import SecretStore
    from toolshed.security import Principal

logger = logging.getLogger(__name__)


class ToolbeltService:
    def __init__(
        self,
        registry: ToolshedRegistry,
        catalog: ToolCatalog,
        secret_store: SecretStore,
        host_agent: HostAgentClient,
        audit: AuditLog,
    ):
        self.registry = registry
        self.catalog = catalog
        self.secret_store = secret_store
        self.host_agent = host_agent
        self.audit = audit

    # ── Acting-for checks ────────────────────────────────────────────────

    async def register_agent(self, principal: Principal, agent_id: str, name: str = "") -> AgentRecord:
        return await self.registry.create_agent(
            AgentRecord(agent_id=agent_id, owner_id=principal.user_id, name=name)
        )

    async def require_agent(self, principal: Principal, agent_id: str) -> AgentRecord:
        """The principal must own the agent (or be admin)."""
        agent = await self.registry.get_agent(agent_id)
        if agent is None:
            if principal.admin:
                raise NotFoundError(f"agent {agent_id} not found")
            raise AuthorizationError()
        if agent.owner_id != principal.user_id and not principal.admin:
            raise AuthorizationError()
        return agent

    async def _require_item(self, principal: Principal, agent_id: str, item_id: str) -> ToolbeltItem:
        await self.require_agent(principal, agent_id)
        item = await self.registry.get_item(item_id)
        if item is None or item.agent_id != agent_id:
            raise NotFoundError(f"toolbelt item {item_id} not found")
        return item

    # ── Toolbox access ───────────────────────────────────────────────────

    async def grant_host_access(self, principal: Principal, agent_id: str, host_id: str) -> AccessGrant:
        await self.require_agent(principal, agent_id)
        host = await self.registry.get_host(host_id)
        if host is None or (host.owner_id != principal.user_id and not principal.admin):
            raise AuthorizationError()
        if host.status == HostStatus.DEPROVISIONED:
            raise InvalidStateError("toolbox is deprovisioned")
        grant = await self.registry.create_grant(
            AccessGrant(agent_id=agent_id, host_id=host_id, granted_by=principal.user_id)
        )
        await self.audit.record("grant", agent_id=agent_id, host_id=host_id, detail=principal.user_id)
        logger.info("Granted agent %s access to host %s", agent_id, host_id)
        return grant

    async def revoke_host_access(self, principal: Principal, agent_id: str, host_id: str) -> int:
        """Remove the grant and deactivate every belt item of the agent on that host.

        Returns the number of toolbelt items deactivated.
        """
        await self.require_agent(principal, agent_id)
        if not await self.registry.delete_grant(agent_id, host_id):
            raise NotFoundError("no toolbox access grant to revoke")

        items = await self.registry.list_items_on_host(agent_id, host_id)
        released = 0
        for item in items:
            await self.registry.set_item_active(item.item_id, False)
            ref = await self.registry.set_credential_status(
                item.item_id, CredentialStatus.REVOKED, clear_ref=True
            )
            await self.registry.delete_permissions(item.item_id)
            if ref:
                await self.secret_store.release(ref)
                released += 1
        await self.audit.record(
            "revoke", agent_id=agent_id, host_id=host_id, detail=f"{len(items)} items deactivated"
        )
        logger.info(
            "Revoked agent %s access to host %s (%d items deactivated, %d secrets released)",
            agent_id,
            host_id,
            len(items),
            released,
        )
        return len(items)

    async def list_grants(self, principal: Principal, agent_id: str) -> list[AccessGrant]:
        await self.require_agent(principal, agent_id)
        return await self.registry.list_grants(agent_id)

    # ── Belt items ───────────────────────────────────────────────────────

    async def add_to_belt(self, principal: Principal, agent_id: str, instance_id: str) -> ToolbeltItem:
        await self.require_agent(principal, agent_id)
        instance = await self.registry.get_instance(instance_id)
        if instance is None or instance.status in DELETION_STATES:
            raise NotFoundError(f"tool instance {instance_id} not found")
        if await self.registry.get_grant(agent_id, instance.host_id) is None:
            raise AuthorizationError()

        existing = await self.registry.get_item_for(agent_id, instance_id)
        if existing is not None and not existing.active:
            # Left behind by an earlier revocation; access has been re-granted.
            if not await self.registry.set_item_active(existing.item_id, True):
                raise ResourceConflictError(f"tool instance {instance_id} is already on this toolbelt")
            return await self.registry.get_item(existing.item_id)

        return await self.registry.create_item(
            ToolbeltItem(item_id=new_id(), agent_id=agent_id, instance_id=instance_id)
        )

    async def remove_from_belt(self, principal: Principal, agent_id: str, item_id: str) -> None:
        item = await self._require_item(principal, agent_id, item_id)
        credential = await self.registry.get_credential(item.item_id)
        await self.registry.delete_item(item.item_id)
        if credential and credential.secret_ref:
            await self.secret_store.release(credential.secret_ref)
        logger.info("Removed toolbelt item %s (agent=%s)", item_id, agent_id)

    async def list_belt(self, principal: Principal, agent_id: str) -> list[BeltEntry]:
        await self.require_agent(principal, agent_id)
        entries = []
        for item in await self.registry.list_items(agent_id):
            instance = await self.registry.get_instance(item.instance_id)
            entries.append(
                BeltEntry(
                    item=item,
                    instance_name=instance.instance_name if instance else "",
                    host_id=instance.host_id if instance else "",
                    credential=await self.registry.get_credential(item.item_id),
                    permissions=await self.registry.list_permissions(item.item_id),
                )
            )
        return entries

    # ── Credentials ──────────────────────────────────────────────────────

    async def set_credential(
        self,
        principal: Principal,
        agent_id: str,
        item_id: str,
        credential_kind: str,
        raw_secret: str,
    ) -> CredentialRecord:
        item = await self._require_item(principal, agent_id, item_id)
        instance = await self.registry.get_instance(item.instance_id)
        if instance is None:
            raise NotFoundError("tool instance no longer exists")
        entry = await self.catalog.get(instance.catalog_id)
        if entry.slot_for(credential_kind) is None:
            raise SchemaValidationError(f"tool does not accept credential kind {credential_kind!r}")
        if not raw_secret:
            raise SchemaValidationError("secret must not be empty")

        new_ref = await self.secret_store.put(raw_secret)
        try:
            record, old_ref = await self.registry.upsert_credential(
                item.item_id, credential_kind, new_ref, mask_secret(raw_secret)
            )
        except ToolshedError:
            await self.secret_store.release(new_ref)
            raise
        if old_ref and old_ref != new_ref:
            await self.secret_store.release(old_ref)

        await self.audit.record(
            "credential_set",
            agent_id=agent_id,
            instance_id=item.instance_id,
            detail=credential_kind,
        )
        logger.info("Credential %s set for toolbelt item %s", credential_kind, item_id)
        return record

    async def revoke_credential(self, principal: Principal, agent_id: str, item_id: str) -> None:
        item = await self._require_item(principal, agent_id, item_id)
        ref = await self.registry.set_credential_status(
            item.item_id, CredentialStatus.REVOKED, clear_ref=True
        )
        if ref:
            await self.secret_store.release(ref)
        await self.audit.record("credential_revoke", agent_id=agent_id, instance_id=item.instance_id)

    # ── Permissions ──────────────────────────────────────────────────────

    async def set_capability_permission(
        self,
        principal: Principal,
        agent_id: str,
        item_id: str,
        capability_name: str,
        allowed: bool,
    ) -> CapabilityPermission:
        item = await self._require_item(principal, agent_id, item_id)
        instance = await self.registry.get_instance(item.instance_id)
        if instance is None:
            raise NotFoundError("tool instance no longer exists")
        entry = await self.catalog.get(instance.catalog_id)
        if not entry.has_capability(capability_name):
            raise SchemaValidationError(f"tool does not declare capability {capability_name!r}")
        return await self.registry.upsert_permission(item.item_id, capability_name, allowed)

    # ── Authorization & execute ──────────────────────────────────────────

    async def check_authorization(self, agent_id: str, instance_id: str, capability_name: str) -> bool:
        return await self.registry.check_authorization(agent_id, instance_id, capability_name)

    async def execute(
        self,
        principal: Principal,
        agent_id: str,
        item_id: str,
        request: ExecuteRequest,
    ) -> ExecuteResult:
        await self.require_agent(principal, agent_id)
        item = await self.registry.get_item(item_id)
        if item is None or item.agent_id != agent_id:
            raise AuthorizationError()

        if not await self.check_authorization(agent_id, item.instance_id, request.capability_name):
            await self.audit.record(
                "execute",
                agent_id=agent_id,
                instance_id=item.instance_id,
                outcome="denied",
                detail=request.capability_name,
            )
            raise AuthorizationError()

        instance = await self.registry.get_instance(item.instance_id)
        if instance is None:
            raise AuthorizationError()
        if instance.status != InstanceStatus.RUNNING:
            raise InvalidStateError(f"tool instance is {instance.status.value}, not running")
        host = await self.registry.get_host(instance.host_id)
        if host is None:
            raise AuthorizationError()

        command = ExecuteCommand(
            agent_id=agent_id,
            tool_instance_id=instance.instance_id,
            capability_name=request.capability_name,
            payload=request.payload,
        )
        try:
            result = await self.host_agent.execute(host, instance.instance_name, command)
        except ToolshedError as exc:
            await self.audit.record(
                "execute",
                agent_id=agent_id,
                host_id=host.host_id,
                instance_id=instance.instance_id,
                outcome="error",
                detail=f"{request.capability_name}: {exc.code}",
            )
            raise
        await self.audit.record(
            "execute",
            agent_id=agent_id,
            host_id=host.host_id,
            instance_id=instance.instance_id,
            detail=f"{request.capability_name}: exit {result.exit_code}",
        )
        return result
