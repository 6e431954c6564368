"""Host Environment Registry — Toolbox lifecycle and provisioning orchestration.

State machine:

    pending_provision → provisioning → awaiting_heartbeat → active ⇄ unresponsive
        → pending_deprovision → deprovisioning → deprovisioned

Anything before ``active`` may fall into ``error_provisioning``;
``deprovisioning`` may fall into ``error_deprovisioning``. Both error
states are terminal until an operator acts (provision again, or call
deprovision again).

Provisioning runs as a background task per host so the API returns
immediately; callers poll ``GET /toolboxes/{id}``.
"""

from __future__ import annotations

import asyncio
import logging
import re
import secrets
import shlex
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from toolshed.errors import (
    AuthenticationError,
    NotFoundError,
    ProvisioningError,
    ResourceConflictError,
    ResourceGoneError,
)
from toolshed.models import (
    DEPROVISIONABLE,
    HEARTBEAT_PROMOTABLE,
    HeartbeatPayload,
    HostRecord,
    HostStatus,
    ProvisionRequest,
)
from toolshed.registry import new_id

if TYPE_CHECKING:
    from toolshed.config import ToolshedConfig
    from toolshed.provider import CloudProvider
    from toolshed.registry import ToolshedRegistry
    from toolshed.secret_store import SecretStore

logger = logging.getLogger(__name__)

_PRE_ACTIVE = (
    HostStatus.PENDING_PROVISION,
    HostStatus.PROVISIONING,
    HostStatus.AWAITING_HEARTBEAT,
)
_PROVIDER_FAILED = {"errored", "archive"}
_MESSAGE_MAX = 200


def droplet_name(owner_id: str, host_id: str) -> str:
    raw = f"toolbox-{owner_id[:8]}-{host_id[:8]}".lower()
    return re.sub(r"[^a-z0-9.-]", "-", raw)


def build_startup_script(
    *,
    host_agent_image: str,
    bearer_secret: str,
    control_plane_url: str,
    system_key: str,
    host_id: str,
    port: int,
    heartbeat_interval: int,
) -> str:
    """Cloud-init shell script that installs Docker and runs the host agent."""
    env = {
        "TOOLSHED_HOST_ID": host_id,
        "TOOLSHED_HOST_BEARER": bearer_secret,
        "TOOLSHED_CONTROL_PLANE_URL": control_plane_url,
        "TOOLSHED_SYSTEM_KEY": system_key,
        "TOOLSHED_HOSTAGENT_PORT": str(port),
        "TOOLSHED_HEARTBEAT_INTERVAL": str(heartbeat_interval),
    }
    env_flags = " \\\n  ".join(f"-e {k}={shlex.quote(v)}" for k, v in env.items())
    image = shlex.quote(host_agent_image)
    return f"""#!/bin/bash
set -euo pipefail
exec > /var/log/toolshed-bootstrap.log 2>&1

if ! command -v docker >/dev/null 2>&1; then
  apt-get update -y
  apt-get install -y docker.io
fi
systemctl enable --now docker

docker pull {image}
docker rm -f toolshed-hostagent >/dev/null 2>&1 || true
docker run -d --restart unless-stopped --name toolshed-hostagent \\
  -p {port}:{port} \\
  -v /var/run/docker.sock:/var/run/docker.sock \\
  {env_flags} \\
  {image}
"""


class HostEnvironmentService:
    """Owns HostEnvironment rows and the provisioning/deprovisioning flows."""

    def __init__(
        self,
        config: ToolshedConfig,
        registry: ToolshedRegistry,
        provider: CloudProvider,
        secret_store: SecretStore,
        on_instance_reports: Any = None,  # Callable[[HostRecord, list[InstanceReport]], Awaitable[None]]
    ):
        self.config = config
        self.registry = registry
        self.provider = provider
        self.secret_store = secret_store
        self._on_instance_reports = on_instance_reports
        self._tasks: dict[str, asyncio.Task] = {}

    # ── Queries ──────────────────────────────────────────────────────────

    async def get(self, host_id: str) -> HostRecord:
        host = await self.registry.get_host(host_id, include_deleted=True)
        if host is None:
            raise NotFoundError(f"toolbox {host_id} not found")
        return host

    async def list(self, owner_id: str | None = None) -> list[HostRecord]:
        return await self.registry.list_hosts(owner_id)

    # ── Provision ────────────────────────────────────────────────────────

    async def provision(self, owner_id: str, request: ProvisionRequest) -> HostRecord:
        """Create the row and kick off provisioning in the background."""
        prov = self.config.provisioning
        host = HostRecord(
            host_id=new_id(),
            owner_id=owner_id,
            name=request.name,
            region=request.region or prov.region,
            size=request.size or prov.size,
            image=request.image or prov.image,
            bearer_secret=secrets.token_hex(32),
            status=HostStatus.PENDING_PROVISION,
        )
        await self.registry.create_host(host)
        self._tasks[host.host_id] = asyncio.create_task(
            self._run_provisioning(host), name=f"provision-{host.host_id}"
        )
        return host

    async def _run_provisioning(self, host: HostRecord) -> None:
        try:
            await self._provision_steps(host)
        except asyncio.CancelledError:
            logger.info("Provisioning of host %s cancelled", host.host_id)
            raise
        except ProvisioningError as exc:
            await self._fail_provisioning(host.host_id, exc.message)
        except Exception as exc:
            logger.exception("Unexpected error provisioning host %s", host.host_id)
            await self._fail_provisioning(host.host_id, f"unexpected error: {exc}")
        finally:
            self._tasks.pop(host.host_id, None)

    async def _provision_steps(self, host: HostRecord) -> None:
        prov = self.config.provisioning
        system_key = self.config.host_agent.system_key()
        if not system_key:
            raise ProvisioningError(
                f"host agent system key not set (env {self.config.host_agent.system_key_env})"
            )
        user_data = build_startup_script(
            host_agent_image=prov.host_agent_image,
            bearer_secret=host.bearer_secret or "",
            control_plane_url=self.config.server.base_url,
            system_key=system_key,
            host_id=host.host_id,
            port=self.config.host_agent.port,
            heartbeat_interval=self.config.heartbeat.interval,
        )

        if not await self.registry.transition_host(
            host.host_id, [HostStatus.PENDING_PROVISION], HostStatus.PROVISIONING
        ):
            return

        created = await self.provider.create_host(
            name=droplet_name(host.owner_id, host.host_id),
            region=host.region,
            size=host.size,
            image=host.image,
            user_data=user_data,
            tags=[*prov.tags, f"toolshed-host-{host.host_id[:8]}"],
        )
        await self.registry.set_host_provider_id(host.host_id, created.provider_instance_id)

        for attempt in range(prov.poll_attempts):
            await asyncio.sleep(prov.poll_interval)
            remote = await self.provider.get_host(created.provider_instance_id)
            logger.debug(
                "Host %s poll %d/%d: status=%s address=%s",
                host.host_id,
                attempt + 1,
                prov.poll_attempts,
                remote.status,
                remote.address,
            )
            if remote.status in _PROVIDER_FAILED:
                raise ProvisioningError(f"provider reports host {remote.status}")
            if remote.status == "active" and remote.address:
                await self.registry.transition_host(
                    host.host_id,
                    [HostStatus.PROVISIONING],
                    HostStatus.AWAITING_HEARTBEAT,
                    address=remote.address,
                )
                logger.info("Host %s reachable at %s; awaiting heartbeat", host.host_id, remote.address)
                return

        raise ProvisioningError(
            f"host did not become active after {prov.poll_attempts} polls"
        )

    async def _fail_provisioning(self, host_id: str, message: str) -> None:
        logger.error("Provisioning host %s failed: %s", host_id, message)
        await self.registry.transition_host(
            host_id, _PRE_ACTIVE, HostStatus.ERROR_PROVISIONING, message=message[:_MESSAGE_MAX]
        )

    # ── Deprovision ──────────────────────────────────────────────────────

    async def deprovision(self, host_id: str) -> HostRecord:
        host = await self.get(host_id)
        if host.status == HostStatus.DEPROVISIONED:
            return host
        if host.status not in DEPROVISIONABLE:
            raise ResourceConflictError(f"toolbox is already {host.status.value}")

        task = self._tasks.pop(host_id, None)
        if task and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        if not await self.registry.transition_host(
            host_id, DEPROVISIONABLE, HostStatus.PENDING_DEPROVISION
        ):
            raise ResourceConflictError("toolbox state changed concurrently")
        await self.registry.transition_host(
            host_id, [HostStatus.PENDING_DEPROVISION], HostStatus.DEPROVISIONING
        )

        # Re-read: a cancelled provisioning task may have stored a provider id.
        host = await self.get(host_id)
        if host.provider_instance_id:
            try:
                await self.provider.delete_host(host.provider_instance_id)
            except ResourceGoneError:
                logger.info("Host %s already gone at provider", host_id)
            except ProvisioningError as exc:
                await self.registry.transition_host(
                    host_id,
                    [HostStatus.DEPROVISIONING],
                    HostStatus.ERROR_DEPROVISIONING,
                    message=exc.message[:_MESSAGE_MAX],
                )
                raise

        refs = await self.registry.secret_refs_for_host(host_id)
        removed = await self.registry.purge_host_children(host_id)
        for ref in refs:
            await self.secret_store.release(ref)

        await self.registry.transition_host(
            host_id,
            [HostStatus.DEPROVISIONING],
            HostStatus.DEPROVISIONED,
            address=None,
            bearer_secret=None,
            deleted_at=datetime.now(timezone.utc),
        )
        logger.info(
            "Host %s deprovisioned (%d instances removed, %d secrets released)",
            host_id,
            removed,
            len(refs),
        )
        return await self.get(host_id)

    # ── Heartbeats ───────────────────────────────────────────────────────

    async def authenticate(self, bearer_secret: str | None) -> HostRecord:
        """Resolve a host agent's bearer secret to its host row."""
        if not bearer_secret:
            raise AuthenticationError("missing host bearer")
        host = await self.registry.get_host_by_bearer(bearer_secret)
        if host is None or not secrets.compare_digest(
            (host.bearer_secret or "").encode(), bearer_secret.encode()
        ):
            raise AuthenticationError("invalid host bearer")
        return host

    async def receive_heartbeat(self, bearer_secret: str | None, payload: HeartbeatPayload) -> HostRecord:
        host = await self.authenticate(bearer_secret)
        updated = await self.registry.record_heartbeat(
            host.host_id, HEARTBEAT_PROMOTABLE, payload.host_health, payload.agent_version
        )
        if updated is None:
            raise AuthenticationError("invalid host bearer")
        if host.status != updated.status:
            logger.info("Heartbeat moved host %s %s → %s", host.host_id, host.status.value, updated.status.value)
        if self._on_instance_reports:
            await self._on_instance_reports(updated, payload.tool_instances)
        return updated

    async def shutdown(self) -> None:
        """Cancel in-flight provisioning tasks; rows stay where they are."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
