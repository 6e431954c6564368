"""Host agent → control plane client (credential fetch and heartbeat).

Authenticates with this host's bearer secret.
"""

from __future__ import annotations

import logging

import httpx

from toolshed.errors import CommunicationError, CredentialError, error_from_body
from toolshed.models import FetchCredentialRequest, FetchCredentialResponse, HeartbeatPayload

logger = logging.getLogger(__name__)


class ControlPlaneClient:
    def __init__(self, base_url: str, bearer_secret: str, *, timeout: float = 10.0):
        self.base_url = base_url.rstrip("/")
        self._bearer_secret = bearer_secret
        self.timeout = timeout
        self._client: httpx.AsyncClient | None = None

    async def start(self) -> None:
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={
                "Authorization": f"Bearer {self._bearer_secret}",
                "User-Agent": "Toolshed-HostAgent/0.1.0",
            },
            timeout=self.timeout,
        )

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("Control plane client not started")
        return self._client

    async def fetch_credential(
        self, agent_id: str, instance_id: str, *, timeout: float
    ) -> FetchCredentialResponse:
        """Ask the broker for one agent's secret. Bounded by ``timeout``."""
        body = FetchCredentialRequest(agent_id=agent_id, tool_instance_id=instance_id)
        try:
            resp = await self.client.post(
                "/hostagent/fetch-credential",
                json=body.model_dump(by_alias=True),
                timeout=timeout,
            )
        except httpx.TimeoutException as exc:
            raise CredentialError("credential broker timed out") from exc
        except httpx.TransportError as exc:
            raise CommunicationError(f"control plane unreachable: {exc}") from exc
        if resp.status_code >= 400:
            try:
                payload = resp.json()
            except ValueError:
                payload = {}
            raise error_from_body(resp.status_code, payload)
        return FetchCredentialResponse.model_validate(resp.json())

    async def heartbeat(self, payload: HeartbeatPayload) -> dict:
        try:
            resp = await self.client.post(
                "/hostagent/heartbeat", json=payload.model_dump(mode="json", by_alias=True)
            )
        except httpx.TransportError as exc:
            raise CommunicationError(f"control plane unreachable: {exc}") from exc
        resp.raise_for_status()
        return resp.json()
