"""Agent endpoints — registration, toolbelt management and execute.

``POST /agents/{id}/tools/{toolbeltItemId}/execute`` is the single
authorization choke-point in front of every host-agent execution.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from fastapi import APIRouter, Depends, HTTPException, Response

from toolshed.models import (
    AddToBeltRequest,
    ExecuteRequest,
    GrantAccessRequest,
    RegisterAgentRequest,
    SetCredentialRequest,
    SetPermissionRequest,
)
from toolshed.security import Principal, require_principal
from toolshed.toolboxes_api import dump

if TYPE_CHECKING:
    from toolshed.toolbelt import ToolbeltService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/agents", tags=["agents"])

_toolbelt: "ToolbeltService | None" = None


def configure(toolbelt: "ToolbeltService") -> None:
    global _toolbelt
    _toolbelt = toolbelt


def _service() -> "ToolbeltService":
    if _toolbelt is None:
        raise HTTPException(status_code=503, detail="Toolbelt service not configured")
    return _toolbelt


@router.post("", status_code=201)
async def register_agent(body: RegisterAgentRequest, principal: Principal = Depends(require_principal)):
    return dump(await _service().register_agent(principal, body.agent_id, body.name))


@router.get("/{agent_id}/toolbelt")
async def get_toolbelt(agent_id: str, principal: Principal = Depends(require_principal)):
    svc = _service()
    grants = await svc.list_grants(principal, agent_id)
    entries = await svc.list_belt(principal, agent_id)
    return {
        "agentId": agent_id,
        "toolboxAccess": [dump(g) for g in grants],
        "items": [dump(e) for e in entries],
    }


# ── Toolbox access ───────────────────────────────────────────────────────────


@router.post("/{agent_id}/toolbelt/toolbox-access", status_code=201)
async def grant_toolbox_access(
    agent_id: str, body: GrantAccessRequest, principal: Principal = Depends(require_principal)
):
    return dump(await _service().grant_host_access(principal, agent_id, body.host_id))


@router.delete("/{agent_id}/toolbelt/toolbox-access/{host_id}")
async def revoke_toolbox_access(
    agent_id: str, host_id: str, principal: Principal = Depends(require_principal)
):
    count = await _service().revoke_host_access(principal, agent_id, host_id)
    return {"agentId": agent_id, "hostId": host_id, "itemsDeactivated": count}


# ── Belt items ───────────────────────────────────────────────────────────────


@router.post("/{agent_id}/toolbelt/items", status_code=201)
async def add_toolbelt_item(
    agent_id: str, body: AddToBeltRequest, principal: Principal = Depends(require_principal)
):
    return dump(await _service().add_to_belt(principal, agent_id, body.tool_instance_id))


@router.delete("/{agent_id}/toolbelt/items/{item_id}", status_code=204)
async def remove_toolbelt_item(
    agent_id: str, item_id: str, principal: Principal = Depends(require_principal)
):
    await _service().remove_from_belt(principal, agent_id, item_id)
    return Response(status_code=204)


@router.post("/{agent_id}/toolbelt/items/{item_id}/credentials")
async def set_credential(
    agent_id: str,
    item_id: str,
    body: SetCredentialRequest,
    principal: Principal = Depends(require_principal),
):
    record = await _service().set_credential(
        principal, agent_id, item_id, body.credential_kind, body.secret
    )
    return dump(record)


@router.delete("/{agent_id}/toolbelt/items/{item_id}/credentials", status_code=204)
async def revoke_credential(
    agent_id: str, item_id: str, principal: Principal = Depends(require_principal)
):
    await _service().revoke_credential(principal, agent_id, item_id)
    return Response(status_code=204)


@router.post("/{agent_id}/toolbelt/items/{item_id}/permissions")
async def set_permission(
    agent_id: str,
    item_id: str,
    body: SetPermissionRequest,
    principal: Principal = Depends(require_principal),
):
    record = await _service().set_capability_permission(
        principal, agent_id, item_id, body.capability_name, body.allowed
    )
    return dump(record)


# ── Execute ──────────────────────────────────────────────────────────────────


@router.post("/{agent_id}/tools/{item_id}/execute")
async def execute_tool(
    agent_id: str,
    item_id: str,
    body: ExecuteRequest,
    principal: Principal = Depends(require_principal),
):
    result = await _service().execute(principal, agent_id, item_id, body)
    return dump(result)
