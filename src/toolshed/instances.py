"""Tool Instance Registry — deployments of catalog entries onto Toolboxes.

State machine:

    pending_deploy → deploying → running ⇄ stopped → pending_delete → deleting
                                 (pending_stop / pending_start in between)

Any state may fall into ``error``. ``running`` is only ever set by a host
status report, never by the deploy call itself.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from toolshed.errors import (
    CommunicationError,
    InvalidStateError,
    NotFoundError,
    ResourceConflictError,
    ToolshedError,
)
from toolshed.models import (
    DELETION_STATES,
    DeployCommand,
    DeployRequest,
    HostRecord,
    HostStatus,
    InstanceRecord,
    InstanceReport,
    InstanceStatus,
)
from toolshed.registry import new_id

if TYPE_CHECKING:
    from toolshed.catalog import ToolCatalog
    from toolshed.host_agent_client import HostAgentClient
    from toolshed.registry import ToolshedRegistry
    from toolshed.secret_store import SecretStore

logger = logging.getLogger(__name__)

# Host agent container states → registry status.
REPORTED_STATUS_MAP: dict[str, InstanceStatus] = {
    "pending": InstanceStatus.DEPLOYING,
    "pulling": InstanceStatus.DEPLOYING,
    "creating": InstanceStatus.DEPLOYING,
    "starting": InstanceStatus.DEPLOYING,
    "running": InstanceStatus.RUNNING,
    "created": InstanceStatus.STOPPED,
    "exited": InstanceStatus.STOPPED,
    "stopped": InstanceStatus.STOPPED,
    "error": InstanceStatus.ERROR,
    "dead": InstanceStatus.ERROR,
}

_NOT_DELETING = tuple(s for s in InstanceStatus if s not in DELETION_STATES)


def map_reported_status(reported: str) -> InstanceStatus:
    return REPORTED_STATUS_MAP.get(reported.lower(), InstanceStatus.ERROR)


def report_may_overwrite(new_status: InstanceStatus) -> tuple[InstanceStatus, ...]:
    """Registry states a report of ``new_status`` is allowed to replace.

    Deletions always win. A ``deploying`` report only moves rows that have
    not been confirmed yet, so a lagging report never regresses ``running``.
    """
    if new_status == InstanceStatus.DEPLOYING:
        return (InstanceStatus.PENDING_DEPLOY, InstanceStatus.DEPLOYING, InstanceStatus.ERROR)
    return _NOT_DELETING


class ToolInstanceService:
    def __init__(
        self,
        registry: ToolshedRegistry,
        catalog: ToolCatalog,
        host_agent: HostAgentClient,
        secret_store: SecretStore,
    ):
        self.registry = registry
        self.catalog = catalog
        self.host_agent = host_agent
        self.secret_store = secret_store

    async def get(self, instance_id: str) -> InstanceRecord:
        instance = await self.registry.get_instance(instance_id)
        if instance is None:
            raise NotFoundError(f"tool instance {instance_id} not found")
        return instance

    async def list(self, host_id: str) -> list[InstanceRecord]:
        return await self.registry.list_instances(host_id)

    async def _host_for(self, instance: InstanceRecord) -> HostRecord:
        host = await self.registry.get_host(instance.host_id)
        if host is None:
            raise NotFoundError(f"toolbox {instance.host_id} not found")
        return host

    # ── Deploy ───────────────────────────────────────────────────────────

    async def deploy(self, host: HostRecord, request: DeployRequest) -> InstanceRecord:
        if host.status != HostStatus.ACTIVE:
            raise InvalidStateError(f"toolbox is {host.status.value}, not active")
        entry = await self.catalog.get(request.catalog_id)
        if not entry.enabled:
            raise InvalidStateError(f"catalog entry {entry.name!r} is disabled")

        instance = await self.registry.create_instance(
            InstanceRecord(
                instance_id=new_id(),
                host_id=host.host_id,
                catalog_id=entry.catalog_id,
                instance_name=request.instance_name,
            )
        )
        command = DeployCommand(
            image=entry.image,
            instance_name=instance.instance_name,
            instance_id=instance.instance_id,
            entrypoint=entry.entrypoint,
        )
        try:
            await self.host_agent.deploy(host, command)
        except ToolshedError as exc:
            await self.registry.transition_instance(
                instance.instance_id,
                [InstanceStatus.PENDING_DEPLOY],
                InstanceStatus.ERROR,
                message=f"deploy relay failed: {exc.message}"[:200],
            )
            raise

        # A fast heartbeat may already have moved it further; that is fine.
        await self.registry.transition_instance(
            instance.instance_id, [InstanceStatus.PENDING_DEPLOY], InstanceStatus.DEPLOYING
        )
        return await self.get(instance.instance_id)

    # ── Start / Stop ─────────────────────────────────────────────────────

    async def start(self, instance_id: str) -> InstanceRecord:
        return await self._relay(
            instance_id,
            allowed=(InstanceStatus.STOPPED, InstanceStatus.ERROR),
            pending=InstanceStatus.PENDING_START,
            verb="start",
        )

    async def stop(self, instance_id: str) -> InstanceRecord:
        return await self._relay(
            instance_id,
            allowed=(InstanceStatus.RUNNING,),
            pending=InstanceStatus.PENDING_STOP,
            verb="stop",
        )

    async def _relay(
        self,
        instance_id: str,
        *,
        allowed: tuple[InstanceStatus, ...],
        pending: InstanceStatus,
        verb: str,
    ) -> InstanceRecord:
        instance = await self.get(instance_id)
        host = await self._host_for(instance)
        if instance.status not in allowed:
            raise InvalidStateError(f"cannot {verb} an instance that is {instance.status.value}")
        if not await self.registry.transition_instance(instance_id, allowed, pending):
            raise ResourceConflictError("instance state changed concurrently")

        call = self.host_agent.start_instance if verb == "start" else self.host_agent.stop_instance
        try:
            await call(host, instance.instance_name)
        except ToolshedError as exc:
            await self.registry.transition_instance(
                instance_id, [pending], InstanceStatus.ERROR, message=f"{verb} relay failed: {exc.message}"[:200]
            )
            raise
        return await self.get(instance_id)

    # ── Remove ───────────────────────────────────────────────────────────

    async def remove(self, instance_id: str) -> InstanceRecord:
        """Cascade-invalidate belt items, then tell the host to drop the container."""
        instance = await self.get(instance_id)
        if instance.status in DELETION_STATES:
            return instance
        host = await self._host_for(instance)

        refs = await self.registry.secret_refs_for_instance(instance_id)
        items = await self.registry.list_items_for_instance(instance_id)
        for item in items:
            await self.registry.delete_item(item.item_id)
        for ref in refs:
            await self.secret_store.release(ref)
        if items:
            logger.info(
                "Removed %d toolbelt item(s) for instance %s; released %d secret(s)",
                len(items),
                instance_id,
                len(refs),
            )

        if not await self.registry.transition_instance(
            instance_id, _NOT_DELETING, InstanceStatus.PENDING_DELETE
        ):
            return await self.get(instance_id)

        try:
            await self.host_agent.remove(host, instance.instance_name)
        except CommunicationError as exc:
            # The host will simply stop reporting it; the sweep finalizes.
            logger.warning("Remove relay for instance %s failed: %s", instance_id, exc.message)
        except ToolshedError as exc:
            if exc.status_code != 404:
                raise
        await self.registry.transition_instance(
            instance_id, [InstanceStatus.PENDING_DELETE], InstanceStatus.DELETING
        )
        return await self.get(instance_id)

    # ── Status reports ───────────────────────────────────────────────────

    async def apply_status_report(self, host: HostRecord, report: InstanceReport) -> bool:
        """Apply one heartbeat entry. Returns False if the instance is unknown."""
        new_status = map_reported_status(report.status)
        message = report.details.get("error") if new_status == InstanceStatus.ERROR else None
        applied = await self.registry.apply_instance_report(
            report.instance_id,
            host.host_id,
            report_may_overwrite(new_status),
            new_status,
            report.details,
            message=str(message)[:200] if message else None,
        )
        if not applied:
            logger.debug(
                "Ignoring report for unknown instance %s from host %s",
                report.instance_id,
                host.host_id,
            )
        return applied
