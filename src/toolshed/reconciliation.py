"""Reconciliation Loop — folds host reports into the registry and sweeps for staleness.

Two entry points:

* ``apply_reports()`` runs inline for every heartbeat: per-instance status
  updates, plus finalizing instances in ``deleting`` that the host no
  longer reports.
* ``reconcile()`` runs every N seconds: hosts silent for longer than the
  heartbeat timeout become ``unresponsive``; hosts that never called home
  within the boot timeout become ``error_provisioning``.

Heartbeat absence is never itself an event; only the sweep notices it.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

from toolshed.models import HostRecord, HostStatus, InstanceReport, InstanceStatus

if TYPE_CHECKING:
    from toolshed.config import ToolshedConfig
    from toolshed.instances import ToolInstanceService
    from toolshed.registry import ToolshedRegistry

logger = logging.getLogger(__name__)


class ReconciliationLoop:
    """Periodic background reconciliation task."""

    def __init__(
        self,
        config: ToolshedConfig,
        registry: ToolshedRegistry,
        instances: ToolInstanceService,
    ):
        self.config = config
        self.registry = registry
        self.instances = instances

        self.interval = config.reconciliation.interval
        self._running = False
        self._task: asyncio.Task | None = None

    async def start(self) -> None:
        self._running = True
        self._task = asyncio.create_task(self._loop(), name="reconciliation")
        logger.info("Reconciliation loop started (interval=%ds)", self.interval)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("Reconciliation loop stopped")

    async def _loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.interval)
                await self.reconcile()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Reconciliation error")

    # ── Heartbeat fan-out ────────────────────────────────────────────────

    async def apply_reports(self, host: HostRecord, reports: list[InstanceReport]) -> None:
        reported = set()
        for report in reports:
            reported.add(report.instance_id)
            await self.instances.apply_status_report(host, report)

        for instance in await self.registry.list_instances(host.host_id):
            if instance.status == InstanceStatus.DELETING and instance.instance_id not in reported:
                await self.registry.delete_instance(instance.instance_id)
                logger.info(
                    "Instance %s (%s) no longer reported by host %s; removed",
                    instance.instance_id,
                    instance.instance_name,
                    host.host_id,
                )

    # ── Periodic sweep ───────────────────────────────────────────────────

    async def reconcile(self) -> None:
        """Run one sweep pass."""
        logger.debug("Reconciliation pass starting")
        await self._mark_unresponsive_hosts()
        await self._fail_silent_boots()
        logger.debug("Reconciliation pass complete")

    async def _mark_unresponsive_hosts(self) -> None:
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=self.config.heartbeat.timeout)
        for host in await self.registry.get_hosts_by_status(HostStatus.ACTIVE):
            seen = host.last_heartbeat or host.updated_at
            if seen >= cutoff:
                continue
            if await self.registry.transition_host(
                host.host_id,
                [HostStatus.ACTIVE],
                HostStatus.UNRESPONSIVE,
                message=f"no heartbeat since {seen.isoformat()}",
            ):
                logger.warning(
                    "Host %s unresponsive (last heartbeat %s)", host.host_id, seen.isoformat()
                )

    async def _fail_silent_boots(self) -> None:
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=self.config.heartbeat.boot_timeout)
        for host in await self.registry.get_hosts_by_status(HostStatus.AWAITING_HEARTBEAT):
            if host.updated_at >= cutoff:
                continue
            if await self.registry.transition_host(
                host.host_id,
                [HostStatus.AWAITING_HEARTBEAT],
                HostStatus.ERROR_PROVISIONING,
                message="host agent never called home",
            ):
                logger.error("Host %s never sent a heartbeat; marking error_provisioning", host.host_id)
