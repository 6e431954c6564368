"""Container lifecycle for tool instances on this host.

One container per tool instance, named ``<prefix><instance name>`` and
labelled with the instance id so the map can be rebuilt after a restart.
Operations on the same instance name are serialised by a per-name
``asyncio.Lock``; different names never contend. A name keeps its lock
after removal so anything still queued on it stays serialised. Blocking
docker-SDK calls run in a worker thread via ``asyncio.to_thread``.

Deploy is acknowledged immediately; the image pull, create and start run
as a background task holding the name's lock, and progress shows up in
the next heartbeat.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

import docker
import docker.errors

from toolshed.errors import InvalidStateError, NotFoundError, ResourceConflictError
from toolshed.models import InstanceReport

logger = logging.getLogger(__name__)

LABEL_MANAGED = "toolshed.managed"
LABEL_INSTANCE_ID = "toolshed.instance_id"
LABEL_INSTANCE_NAME = "toolshed.instance_name"
LABEL_ENTRYPOINT = "toolshed.entrypoint"


@dataclass
class ManagedInstance:
    """What this host knows about one tool instance."""

    instance_id: str
    name: str
    image: str
    entrypoint: list[str] = field(default_factory=list)
    status: str = "pending"  # pending, pulling, creating, starting, running, stopped, error
    container_id: str | None = None
    error: str | None = None

    def report(self) -> InstanceReport:
        details: dict[str, Any] = {"image": self.image, "containerId": self.container_id}
        if self.error:
            details["error"] = self.error
        return InstanceReport(instance_id=self.instance_id, status=self.status, details=details)


def _container_status(docker_status: str) -> str:
    if docker_status == "running":
        return "running"
    if docker_status in ("created", "exited", "paused"):
        return "stopped"
    if docker_status == "restarting":
        return "starting"
    return "error"


class ContainerManager:
    def __init__(self, client: docker.DockerClient, prefix: str = "toolshed-"):
        self.client = client
        self.prefix = prefix
        self._instances: dict[str, ManagedInstance] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._deploys: dict[str, asyncio.Task] = {}

    def _lock(self, name: str) -> asyncio.Lock:
        lock = self._locks.get(name)
        if lock is None:
            lock = self._locks[name] = asyncio.Lock()
        return lock

    def container_name(self, name: str) -> str:
        return f"{self.prefix}{name}"

    def get(self, name: str) -> ManagedInstance:
        inst = self._instances.get(name)
        if inst is None:
            raise NotFoundError(f"no tool instance named {name!r} on this host")
        return inst

    def __len__(self) -> int:
        return len(self._instances)

    # ── Recovery ─────────────────────────────────────────────────────────

    async def recover(self) -> int:
        """Rebuild the in-memory map from labelled containers."""
        containers = await asyncio.to_thread(
            self.client.containers.list, all=True, filters={"label": f"{LABEL_MANAGED}=true"}
        )
        for container in containers:
            labels = container.labels or {}
            name = labels.get(LABEL_INSTANCE_NAME)
            if not name:
                continue
            entrypoint = labels.get(LABEL_ENTRYPOINT, "")
            tags = getattr(container.image, "tags", None) or []
            self._instances[name] = ManagedInstance(
                instance_id=labels.get(LABEL_INSTANCE_ID, ""),
                name=name,
                image=tags[0] if tags else "",
                entrypoint=entrypoint.split("\x1f") if entrypoint else [],
                status=_container_status(container.status),
                container_id=container.id,
            )
        if self._instances:
            logger.info("Recovered %d managed tool container(s)", len(self._instances))
        return len(self._instances)

    # ── Deploy ───────────────────────────────────────────────────────────

    async def deploy(
        self, instance_id: str, name: str, image: str, entrypoint: list[str]
    ) -> ManagedInstance:
        async with self._lock(name):
            existing = self._instances.get(name)
            if existing is not None:
                if existing.instance_id != instance_id:
                    raise ResourceConflictError(f"instance name {name!r} is already in use on this host")
                if existing.status != "error":
                    return existing
            inst = ManagedInstance(
                instance_id=instance_id, name=name, image=image, entrypoint=list(entrypoint)
            )
            self._instances[name] = inst
        self._deploys[name] = asyncio.create_task(self._deploy_steps(inst), name=f"deploy-{name}")
        logger.info("Accepted deploy of %s (%s)", name, image)
        return inst

    async def _deploy_steps(self, inst: ManagedInstance) -> None:
        async with self._lock(inst.name):
            try:
                inst.status = "pulling"
                await asyncio.to_thread(self.client.images.pull, inst.image)

                inst.status = "creating"
                await self._remove_container(self.container_name(inst.name))
                container = await asyncio.to_thread(
                    self.client.containers.create,
                    inst.image,
                    name=self.container_name(inst.name),
                    detach=True,
                    labels={
                        LABEL_MANAGED: "true",
                        LABEL_INSTANCE_ID: inst.instance_id,
                        LABEL_INSTANCE_NAME: inst.name,
                        LABEL_ENTRYPOINT: "\x1f".join(inst.entrypoint),
                    },
                    restart_policy={"Name": "unless-stopped"},
                )
                inst.container_id = container.id

                inst.status = "starting"
                await asyncio.to_thread(container.start)
                inst.status = "running"
                inst.error = None
                logger.info("Tool instance %s running (container %s)", inst.name, container.short_id)
            except asyncio.CancelledError:
                raise
            except docker.errors.DockerException as exc:
                inst.status = "error"
                inst.error = str(exc)[:200]
                logger.error("Deploy of %s failed: %s", inst.name, exc)
            except Exception as exc:
                inst.status = "error"
                inst.error = str(exc)[:200] or type(exc).__name__
                logger.exception("Deploy of %s failed", inst.name)
            finally:
                self._deploys.pop(inst.name, None)

    # ── Start / stop / remove ────────────────────────────────────────────

    async def start(self, name: str) -> ManagedInstance:
        async with self._lock(name):
            inst = self.get(name)
            container = await self._container(inst)
            await asyncio.to_thread(container.start)
            inst.status = "running"
            inst.error = None
            return inst

    async def stop(self, name: str, timeout: int = 10) -> ManagedInstance:
        async with self._lock(name):
            inst = self.get(name)
            container = await self._container(inst)
            await asyncio.to_thread(container.stop, timeout=timeout)
            inst.status = "stopped"
            return inst

    async def remove(self, name: str) -> None:
        deploy = self._deploys.pop(name, None)
        if deploy and not deploy.done():
            deploy.cancel()
            try:
                await deploy
            except asyncio.CancelledError:
                pass
        async with self._lock(name):
            self.get(name)
            await self._remove_container(self.container_name(name))
            self._instances.pop(name, None)
        logger.info("Removed tool instance %s", name)

    async def _container(self, inst: ManagedInstance):
        if inst.status in ("pending", "pulling", "creating"):
            raise InvalidStateError(f"tool instance {inst.name!r} is still deploying")
        try:
            return await asyncio.to_thread(self.client.containers.get, self.container_name(inst.name))
        except docker.errors.NotFound as exc:
            inst.status = "error"
            inst.error = "container missing"
            raise NotFoundError(f"container for {inst.name!r} is missing") from exc

    async def _remove_container(self, container_name: str) -> None:
        try:
            container = await asyncio.to_thread(self.client.containers.get, container_name)
        except docker.errors.NotFound:
            return
        await asyncio.to_thread(container.remove, force=True)

    # ── Execution & reporting ────────────────────────────────────────────

    async def exec_run(self, name: str, cmd: list[str], environment: dict[str, str]) -> tuple[int, bytes]:
        """Run ``cmd`` inside the instance's container with a per-exec environment."""
        inst = self.get(name)
        container = await self._container(inst)
        result = await asyncio.to_thread(
            container.exec_run, cmd, environment=environment, stdout=True, stderr=True, demux=False
        )
        return result.exit_code, result.output or b""

    async def refresh(self) -> None:
        """Sync statuses of created containers from docker."""
        for inst in list(self._instances.values()):
            if inst.status in ("pending", "pulling", "creating", "starting"):
                continue
            if inst.container_id is None:
                # Deploy failed before a container existed; keep its error.
                continue
            try:
                container = await asyncio.to_thread(
                    self.client.containers.get, self.container_name(inst.name)
                )
            except docker.errors.NotFound:
                inst.status = "error"
                inst.error = "container missing"
                continue
            except docker.errors.DockerException as exc:
                logger.warning("Could not inspect %s: %s", inst.name, exc)
                continue
            inst.status = _container_status(container.status)

    async def reports(self) -> list[InstanceReport]:
        await self.refresh()
        return [inst.report() for inst in self._instances.values()]

    async def shutdown(self) -> None:
        for task in list(self._deploys.values()):
            task.cancel()
        if self._deploys:
            await asyncio.gather(*self._deploys.values(), return_exceptions=True)
        self._deploys.clear()
