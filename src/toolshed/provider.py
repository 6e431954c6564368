"""Cloud provisioning adapter.

A thin async client over the DigitalOcean droplet API. It knows nothing
about tools; it creates, inspects and deletes hosts. Every failure is a
``ProvisioningError``, except a 404 which is ``ResourceGoneError`` so
deprovisioning can treat "already gone" as success.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Protocol

import httpx

from toolshed.errors import ProvisioningError, ResourceGoneError

logger = logging.getLogger(__name__)


@dataclass
class ProviderHost:
    """What the provider reports about one host."""

    provider_instance_id: str
    status: str  # "new", "active", "off", "archive", "errored"
    address: str | None = None
    raw: dict = field(default_factory=dict, repr=False)


class CloudProvider(Protocol):
    async def create_host(
        self,
        *,
        name: str,
        region: str,
        size: str,
        image: str,
        user_data: str,
        tags: list[str],
    ) -> ProviderHost: ...

    async def get_host(self, provider_instance_id: str) -> ProviderHost: ...

    async def delete_host(self, provider_instance_id: str) -> None: ...


def _public_ipv4(droplet: dict) -> str | None:
    for net in droplet.get("networks", {}).get("v4", []):
        if net.get("type") == "public" and net.get("ip_address"):
            return net["ip_address"]
    return None


class DigitalOceanProvider:
    """Async DigitalOcean client."""

    def __init__(
        self,
        *,
        api_token: str | None,
        api_base: str = "https://api.digitalocean.com",
        ssh_key_ids: list[str] | None = None,
        timeout: float = 30.0,
    ):
        self.api_token = api_token
        self.api_base = api_base.rstrip("/")
        self.ssh_key_ids = ssh_key_ids or []
        self.timeout = timeout
        self._client: httpx.AsyncClient | None = None

    async def start(self) -> None:
        self._client = httpx.AsyncClient(
            base_url=self.api_base,
            headers={
                "Authorization": f"Bearer {self.api_token or ''}",
                "Content-Type": "application/json",
                "User-Agent": "Toolshed/0.1.0",
            },
            timeout=self.timeout,
        )
        logger.info("DigitalOcean client started (%s)", self.api_base)

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("DigitalOcean client not started")
        return self._client

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        if not self.api_token:
            raise ProvisioningError("cloud provider API token is not configured")
        try:
            resp = await self.client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            raise ProvisioningError(f"cloud provider request failed: {exc}") from exc
        if resp.status_code == 404:
            raise ResourceGoneError(f"{path} not found at provider")
        if resp.status_code >= 400:
            try:
                message = resp.json().get("message") or resp.text
            except ValueError:
                message = resp.text
            raise ProvisioningError(f"provider returned {resp.status_code}: {message[:200]}")
        return resp

    async def create_host(
        self,
        *,
        name: str,
        region: str,
        size: str,
        image: str,
        user_data: str,
        tags: list[str],
    ) -> ProviderHost:
        body = {
            "name": name,
            "region": region,
            "size": size,
            "image": image,
            "user_data": user_data,
            "tags": tags,
            "monitoring": True,
            "ipv6": False,
        }
        if self.ssh_key_ids:
            body["ssh_keys"] = self.ssh_key_ids
        resp = await self._request("POST", "/v2/droplets", json=body)
        droplet = resp.json().get("droplet") or {}
        if "id" not in droplet:
            raise ProvisioningError("provider response did not include a droplet id")
        logger.info("Created droplet %s (%s in %s)", droplet["id"], name, region)
        return ProviderHost(
            provider_instance_id=str(droplet["id"]),
            status=droplet.get("status", "new"),
            address=_public_ipv4(droplet),
            raw=droplet,
        )

    async def get_host(self, provider_instance_id: str) -> ProviderHost:
        resp = await self._request("GET", f"/v2/droplets/{provider_instance_id}")
        droplet = resp.json().get("droplet") or {}
        return ProviderHost(
            provider_instance_id=provider_instance_id,
            status=droplet.get("status", "unknown"),
            address=_public_ipv4(droplet),
            raw=droplet,
        )

    async def delete_host(self, provider_instance_id: str) -> None:
        await self._request("DELETE", f"/v2/droplets/{provider_instance_id}")
        logger.info("Deleted droplet %s", provider_instance_id)
