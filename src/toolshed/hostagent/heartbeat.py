"""Heartbeat loop — reports host health and every managed instance on a fixed interval."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from toolshed.hostagent import AGENT_VERSION
from toolshed.hostagent.health import snapshot
from toolshed.models import HeartbeatPayload

if TYPE_CHECKING:
    from toolshed.hostagent.containers import ContainerManager
    from toolshed.hostagent.control_plane import ControlPlaneClient

logger = logging.getLogger(__name__)


class HeartbeatLoop:
    def __init__(
        self,
        containers: ContainerManager,
        control_plane: ControlPlaneClient,
        interval: float = 30.0,
    ):
        self.containers = containers
        self.control_plane = control_plane
        self.interval = interval
        self._running = False
        self._task: asyncio.Task | None = None
        self.last_status: str | None = None

    async def start(self) -> None:
        self._running = True
        self._task = asyncio.create_task(self._loop(), name="heartbeat")
        logger.info("Heartbeat loop started (interval=%.0fs)", self.interval)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("Heartbeat loop stopped")

    async def _loop(self) -> None:
        while self._running:
            try:
                await self.beat()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Heartbeat failed; will retry next interval")
            try:
                await asyncio.sleep(self.interval)
            except asyncio.CancelledError:
                break

    async def build_payload(self) -> HeartbeatPayload:
        reports = await self.containers.reports()
        return HeartbeatPayload(
            host_health=snapshot(managed_instances=len(reports)).to_dict(),
            agent_version=AGENT_VERSION,
            tool_instances=reports,
        )

    async def beat(self) -> None:
        payload = await self.build_payload()
        answer = await self.control_plane.heartbeat(payload)
        status = answer.get("status")
        if status != self.last_status:
            logger.info("Control plane reports this host as %s", status)
            self.last_status = status
