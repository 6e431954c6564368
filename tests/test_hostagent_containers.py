"""Tests for the host agent's ContainerManager against a mocked docker client."""

from __future__ import annotations

import asyncio
from unittest.mock import MagicMock

import docker.errors
import pytest
import requests.exceptions

from toolshed.errors import InvalidStateError, NotFoundError, ResourceConflictError
from toolshed.hostagent.containers import (
    LABEL_ENTRYPOINT,
    LABEL_INSTANCE_ID,
    LABEL_INSTANCE_NAME,
    LABEL_MANAGED,
    ContainerManager,
)


def _container(status: str = "running", labels: dict | None = None, container_id: str = "c0ffee"):
    container = MagicMock()
    container.id = container_id
    container.short_id = container_id[:6]
    container.status = status
    container.labels = labels or {}
    container.image.tags = ["echo:1"]
    return container


@pytest.fixture
def docker_client():
    client = MagicMock()
    client.containers.get.side_effect = docker.errors.NotFound("no such container")
    client.containers.create.return_value = _container()
    client.containers.list.return_value = []
    return client


@pytest.fixture
def manager(docker_client):
    return ContainerManager(docker_client)


async def _settle(manager: ContainerManager) -> None:
    if manager._deploys:
        await asyncio.gather(*manager._deploys.values())


# ── Deploy ───────────────────────────────────────────────────────────────────


class TestDeploy:
    async def test_acknowledged_then_running(self, manager, docker_client):
        inst = await manager.deploy("i1", "echo-1", "echo:1", ["/tool/run"])
        assert inst.status == "pending"

        await _settle(manager)
        assert inst.status == "running"
        assert inst.container_id == "c0ffee"
        docker_client.images.pull.assert_called_once_with("echo:1")
        _, kwargs = docker_client.containers.create.call_args
        assert kwargs["name"] == "toolshed-echo-1"
        assert kwargs["labels"][LABEL_INSTANCE_ID] == "i1"
        assert kwargs["labels"][LABEL_MANAGED] == "true"
        assert "environment" not in kwargs
        docker_client.containers.create.return_value.start.assert_called_once()

    async def test_redeploy_same_instance_is_idempotent(self, manager, docker_client):
        first = await manager.deploy("i1", "echo-1", "echo:1", [])
        await _settle(manager)
        second = await manager.deploy("i1", "echo-1", "echo:1", [])
        assert second is first
        assert docker_client.images.pull.call_count == 1

    async def test_name_taken_by_other_instance(self, manager):
        await manager.deploy("i1", "echo-1", "echo:1", [])
        await _settle(manager)
        with pytest.raises(ResourceConflictError):
            await manager.deploy("i2", "echo-1", "echo:1", [])

    async def test_pull_failure_reports_error(self, manager, docker_client):
        docker_client.images.pull.side_effect = docker.errors.ImageNotFound("manifest unknown")
        inst = await manager.deploy("i1", "echo-1", "echo:404", [])
        await _settle(manager)

        assert inst.status == "error"
        [report] = await manager.reports()
        assert report.status == "error"
        assert "manifest unknown" in report.details["error"]

    async def test_daemon_connection_loss_reports_error(self, manager, docker_client):
        docker_client.images.pull.side_effect = requests.exceptions.ConnectionError("socket closed")
        inst = await manager.deploy("i1", "echo-1", "echo:1", [])
        await _settle(manager)

        assert inst.status == "error"
        assert "socket closed" in inst.error
        assert manager._deploys == {}
        [report] = await manager.reports()
        assert report.status == "error"

    async def test_errored_deploy_can_retry(self, manager, docker_client):
        docker_client.images.pull.side_effect = [docker.errors.APIError("timeout"), None]
        await manager.deploy("i1", "echo-1", "echo:1", [])
        await _settle(manager)
        inst = await manager.deploy("i1", "echo-1", "echo:1", [])
        await _settle(manager)
        assert inst.status == "running"

    async def test_stale_container_replaced(self, manager, docker_client):
        stale = _container(status="exited")
        docker_client.containers.get.side_effect = None
        docker_client.containers.get.return_value = stale
        await manager.deploy("i1", "echo-1", "echo:1", [])
        await _settle(manager)
        stale.remove.assert_called_once_with(force=True)


# ── Start / stop / remove ────────────────────────────────────────────────────


class TestLifecycle:
    async def test_stop_and_start(self, manager, docker_client):
        await manager.deploy("i1", "echo-1", "echo:1", [])
        await _settle(manager)
        container = _container()
        docker_client.containers.get.side_effect = None
        docker_client.containers.get.return_value = container

        inst = await manager.stop("echo-1")
        assert inst.status == "stopped"
        container.stop.assert_called_once_with(timeout=10)

        inst = await manager.start("echo-1")
        assert inst.status == "running"

    async def test_unknown_name(self, manager):
        with pytest.raises(NotFoundError):
            await manager.stop("ghost")

    async def test_stop_while_deploying(self, manager):
        await manager.deploy("i1", "echo-1", "echo:1", [])
        with pytest.raises(InvalidStateError):
            await manager.start("echo-1")
        await _settle(manager)

    async def test_remove(self, manager, docker_client):
        await manager.deploy("i1", "echo-1", "echo:1", [])
        await _settle(manager)
        container = _container()
        docker_client.containers.get.side_effect = None
        docker_client.containers.get.return_value = container

        await manager.remove("echo-1")
        container.remove.assert_called_once_with(force=True)
        assert len(manager) == 0
        assert await manager.reports() == []

    async def test_remove_cancels_pending_deploy(self, manager, docker_client):
        await manager.deploy("i1", "echo-1", "echo:1", [])
        await manager.remove("echo-1")
        assert len(manager) == 0
        assert manager._deploys == {}
        docker_client.containers.create.assert_not_called()

    async def test_remove_keeps_name_lock(self, manager, docker_client):
        await manager.deploy("i1", "echo-1", "echo:1", [])
        await _settle(manager)
        lock = manager._lock("echo-1")
        docker_client.containers.get.side_effect = None
        docker_client.containers.get.return_value = _container()

        await manager.remove("echo-1")
        assert manager._lock("echo-1") is lock


# ── Recovery & reporting ─────────────────────────────────────────────────────


class TestRecovery:
    async def test_rebuilds_from_labels(self, manager, docker_client):
        docker_client.containers.list.return_value = [
            _container(
                status="running",
                labels={
                    LABEL_MANAGED: "true",
                    LABEL_INSTANCE_ID: "i1",
                    LABEL_INSTANCE_NAME: "echo-1",
                    LABEL_ENTRYPOINT: "/tool/run\x1f--json",
                },
            ),
            _container(status="exited", labels={LABEL_MANAGED: "true", LABEL_INSTANCE_ID: "i2"}),
        ]
        assert await manager.recover() == 1
        inst = manager.get("echo-1")
        assert inst.instance_id == "i1"
        assert inst.entrypoint == ["/tool/run", "--json"]
        assert inst.status == "running"
        assert inst.image == "echo:1"

    async def test_reports_follow_docker(self, manager, docker_client):
        await manager.deploy("i1", "echo-1", "echo:1", [])
        await _settle(manager)
        docker_client.containers.get.side_effect = None
        docker_client.containers.get.return_value = _container(status="exited")

        [report] = await manager.reports()
        assert report.instance_id == "i1"
        assert report.status == "stopped"

    async def test_missing_container_reported_as_error(self, manager):
        await manager.deploy("i1", "echo-1", "echo:1", [])
        await _settle(manager)
        [report] = await manager.reports()
        assert report.status == "error"
        assert report.details["error"] == "container missing"
