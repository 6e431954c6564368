"""Toolbox endpoints — provisioning, status and tool instance lifecycle.

All routes require a user bearer token. Only the toolbox owner (or an
admin) may see or act on a toolbox and the instances deployed on it.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from fastapi import APIRouter, Depends, HTTPException

from toolshed.errors import AuthorizationError, NotFoundError
from toolshed.models import DeployRequest, HostRecord, ProvisionRequest
from toolshed.security import Principal, require_principal

if TYPE_CHECKING:
    from toolshed.hosts import HostEnvironmentService
    from toolshed.instances import ToolInstanceService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/toolboxes", tags=["toolboxes"])

# Module-level references (configured at startup)
_hosts: "HostEnvironmentService | None" = None
_instances: "ToolInstanceService | None" = None


def configure(hosts: "HostEnvironmentService", instances: "ToolInstanceService") -> None:
    global _hosts, _instances
    _hosts = hosts
    _instances = instances


def _services() -> tuple["HostEnvironmentService", "ToolInstanceService"]:
    if _hosts is None or _instances is None:
        raise HTTPException(status_code=503, detail="Toolbox services not configured")
    return _hosts, _instances


def dump(model) -> dict:
    return model.model_dump(mode="json", by_alias=True)


async def _owned_host(host_id: str, principal: Principal) -> HostRecord:
    hosts, _ = _services()
    host = await hosts.get(host_id)
    if host.owner_id != principal.user_id and not principal.admin:
        raise AuthorizationError()
    return host


# ── Toolboxes ────────────────────────────────────────────────────────────────


@router.post("", status_code=202)
async def provision_toolbox(body: ProvisionRequest, principal: Principal = Depends(require_principal)):
    """Start provisioning; poll ``GET /toolboxes/{id}`` for progress."""
    hosts, _ = _services()
    host = await hosts.provision(principal.user_id, body)
    return dump(host)


@router.get("")
async def list_toolboxes(principal: Principal = Depends(require_principal)):
    hosts, _ = _services()
    records = await hosts.list(None if principal.admin else principal.user_id)
    return {"toolboxes": [dump(h) for h in records]}


@router.get("/{host_id}")
async def get_toolbox(host_id: str, principal: Principal = Depends(require_principal)):
    return dump(await _owned_host(host_id, principal))


@router.delete("/{host_id}")
async def deprovision_toolbox(host_id: str, principal: Principal = Depends(require_principal)):
    hosts, _ = _services()
    await _owned_host(host_id, principal)
    return dump(await hosts.deprovision(host_id))


# ── Tool instances ───────────────────────────────────────────────────────────


@router.post("/{host_id}/tools", status_code=202)
async def deploy_tool(
    host_id: str, body: DeployRequest, principal: Principal = Depends(require_principal)
):
    _, instances = _services()
    host = await _owned_host(host_id, principal)
    return dump(await instances.deploy(host, body))


@router.get("/{host_id}/tools")
async def list_tools(host_id: str, principal: Principal = Depends(require_principal)):
    _, instances = _services()
    await _owned_host(host_id, principal)
    return {"tools": [dump(i) for i in await instances.list(host_id)]}


async def _owned_instance(host_id: str, instance_id: str, principal: Principal):
    _, instances = _services()
    await _owned_host(host_id, principal)
    instance = await instances.get(instance_id)
    if instance.host_id != host_id:
        raise NotFoundError(f"tool instance {instance_id} not found on this toolbox")
    return instance


@router.delete("/{host_id}/tools/{instance_id}")
async def remove_tool(host_id: str, instance_id: str, principal: Principal = Depends(require_principal)):
    _, instances = _services()
    await _owned_instance(host_id, instance_id, principal)
    return dump(await instances.remove(instance_id))


@router.post("/{host_id}/tools/{instance_id}/start", status_code=202)
async def start_tool(host_id: str, instance_id: str, principal: Principal = Depends(require_principal)):
    _, instances = _services()
    await _owned_instance(host_id, instance_id, principal)
    return dump(await instances.start(instance_id))


@router.post("/{host_id}/tools/{instance_id}/stop", status_code=202)
async def stop_tool(host_id: str, instance_id: str, principal: Principal = Depends(require_principal)):
    _, instances = _services()
    await _owned_instance(host_id, instance_id, principal)
    return dump(await instances.stop(instance_id))
