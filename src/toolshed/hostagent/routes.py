"""Command API exposed by the host agent to the control plane.

Every route requires the shared system key as a bearer token.
"""

from __future__ import annotations

import logging
import secrets
from typing import TYPE_CHECKING, Any, Callable, Optional

from fastapi import APIRouter, Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from toolshed.errors import AuthenticationError
from toolshed.hostagent import AGENT_VERSION
from toolshed.models import DeployCommand, ExecuteCommand

if TYPE_CHECKING:
    from toolshed.hostagent.containers import ContainerManager
    from toolshed.hostagent.executor import Executor

logger = logging.getLogger(__name__)

router = APIRouter(tags=["hostagent"])

_bearer_scheme = HTTPBearer(auto_error=False)

_containers: "ContainerManager | None" = None
_executor: "Executor | None" = None
_system_key: str = ""
_health_fn: Callable[[int], Any] | None = None


def configure(
    containers: "ContainerManager",
    executor: "Executor",
    system_key: str,
    health_fn: Callable[[int], Any] | None = None,
) -> None:
    global _containers, _executor, _system_key, _health_fn
    _containers = containers
    _executor = executor
    _system_key = system_key
    _health_fn = health_fn


async def require_system_key(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer_scheme),
) -> None:
    if not _system_key:
        raise AuthenticationError("host agent has no system key configured")
    if credentials is None or not secrets.compare_digest(credentials.credentials, _system_key):
        raise AuthenticationError("invalid system key")


def _require_containers() -> "ContainerManager":
    if _containers is None:
        raise HTTPException(status_code=503, detail="Host agent not configured")
    return _containers


@router.post("/tools", status_code=202, dependencies=[Depends(require_system_key)])
async def deploy_tool(body: DeployCommand):
    inst = await _require_containers().deploy(
        body.instance_id, body.instance_name, body.image, body.entrypoint
    )
    return inst.report().model_dump(mode="json", by_alias=True)


@router.delete("/tools/{name}", dependencies=[Depends(require_system_key)])
async def remove_tool(name: str):
    await _require_containers().remove(name)
    return {"removed": name}


@router.post("/tools/{name}/start", status_code=202, dependencies=[Depends(require_system_key)])
async def start_tool(name: str):
    inst = await _require_containers().start(name)
    return inst.report().model_dump(mode="json", by_alias=True)


@router.post("/tools/{name}/stop", status_code=202, dependencies=[Depends(require_system_key)])
async def stop_tool(name: str):
    inst = await _require_containers().stop(name)
    return inst.report().model_dump(mode="json", by_alias=True)


@router.get("/status", dependencies=[Depends(require_system_key)])
async def status():
    containers = _require_containers()
    reports = await containers.reports()
    health = _health_fn(len(reports)).to_dict() if _health_fn else {}
    return {
        "hostHealth": health,
        "agentVersion": AGENT_VERSION,
        "toolInstances": [r.model_dump(mode="json", by_alias=True) for r in reports],
    }


@router.post("/tools/{name}/execute", dependencies=[Depends(require_system_key)])
async def execute_tool(name: str, body: ExecuteCommand):
    if _executor is None:
        raise HTTPException(status_code=503, detail="Host agent not configured")
    result = await _executor.execute(name, body)
    return result.model_dump(mode="json", by_alias=True)
