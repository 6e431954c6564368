"""Host-agent-facing endpoints: heartbeat and credential fetch.

Authenticated by the per-host bearer secret, never by user tokens.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from fastapi import APIRouter, Depends, HTTPException

from toolshed.models import FetchCredentialRequest, HeartbeatPayload
from toolshed.security import host_bearer

if TYPE_CHECKING:
    from toolshed.broker import CredentialBroker
    from toolshed.hosts import HostEnvironmentService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/hostagent", tags=["hostagent"])

_hosts: "HostEnvironmentService | None" = None
_broker: "CredentialBroker | None" = None


def configure(hosts: "HostEnvironmentService", broker: "CredentialBroker") -> None:
    global _hosts, _broker
    _hosts = hosts
    _broker = broker


@router.post("/heartbeat")
async def heartbeat(body: HeartbeatPayload, bearer: str | None = Depends(host_bearer)):
    if _hosts is None:
        raise HTTPException(status_code=503, detail="Host registry not configured")
    host = await _hosts.receive_heartbeat(bearer, body)
    return {"status": host.status.value, "hostId": host.host_id}


@router.post("/fetch-credential")
async def fetch_credential(body: FetchCredentialRequest, bearer: str | None = Depends(host_bearer)):
    if _hosts is None or _broker is None:
        raise HTTPException(status_code=503, detail="Credential broker not configured")
    host = await _hosts.authenticate(bearer)
    response = await _broker.fetch_credential(host, body.agent_id, body.tool_instance_id)
    return response.model_dump(by_alias=True)
