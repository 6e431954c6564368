"""Control plane → host agent command client.

Every command carries the shared system key. Lifecycle commands are
retried with bounded exponential backoff on transport errors and 5xx
responses, then surface as ``CommunicationError``. Execute is never
retried: it is not idempotent and the caller is waiting on it.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

from toolshed.errors import CommunicationError, ExecutionTimeoutError, error_from_body
from toolshed.models import DeployCommand, ExecuteCommand, ExecuteResult, HostRecord

logger = logging.getLogger(__name__)

# Host-agent error codes that are real answers, not transient failures.
_TERMINAL_5XX = {"execution_timeout", "credential_unavailable"}


class HostAgentClient:
    """Async client for the host agent's command API."""

    def __init__(
        self,
        *,
        system_key: str | None,
        port: int = 30000,
        scheme: str = "http",
        timeout: float = 15.0,
        execute_timeout: float = 120.0,
        max_retries: int = 3,
        backoff_base: float = 0.5,
    ):
        self.system_key = system_key
        self.port = port
        self.scheme = scheme
        self.timeout = timeout
        self.execute_timeout = execute_timeout
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self._client: httpx.AsyncClient | None = None

    async def start(self) -> None:
        self._client = httpx.AsyncClient(
            headers={
                "Authorization": f"Bearer {self.system_key or ''}",
                "User-Agent": "Toolshed/0.1.0",
            },
            timeout=self.timeout,
        )
        logger.info("Host agent client started (port=%d)", self.port)

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("Host agent client not started")
        return self._client

    def base_url(self, host: HostRecord) -> str:
        if not host.address:
            raise CommunicationError(f"host {host.host_id} has no network address")
        return f"{self.scheme}://{host.address}:{self.port}"

    async def _command(self, host: HostRecord, method: str, path: str, json: Any = None) -> dict:
        url = self.base_url(host) + path
        last_error: str = ""
        for attempt in range(self.max_retries):
            try:
                resp = await self.client.request(method, url, json=json)
            except httpx.TransportError as exc:
                last_error = f"{type(exc).__name__}: {exc}"
            else:
                if resp.status_code < 400:
                    return resp.json() if resp.content else {}
                body = _safe_json(resp)
                if resp.status_code < 500 or body.get("error") in _TERMINAL_5XX:
                    raise error_from_body(resp.status_code, body)
                last_error = f"HTTP {resp.status_code}"

            if attempt + 1 < self.max_retries:
                wait = self.backoff_base * (2**attempt)
                logger.warning(
                    "Host %s %s %s attempt %d/%d failed (%s) — retrying in %.1fs",
                    host.host_id,
                    method,
                    path,
                    attempt + 1,
                    self.max_retries,
                    last_error,
                    wait,
                )
                await asyncio.sleep(wait)

        raise CommunicationError(f"host {host.host_id} unreachable: {last_error}")

    # ── Lifecycle commands ───────────────────────────────────────────────

    async def deploy(self, host: HostRecord, command: DeployCommand) -> dict:
        return await self._command(host, "POST", "/tools", command.model_dump(by_alias=True))

    async def remove(self, host: HostRecord, instance_name: str) -> dict:
        return await self._command(host, "DELETE", f"/tools/{instance_name}")

    async def start_instance(self, host: HostRecord, instance_name: str) -> dict:
        return await self._command(host, "POST", f"/tools/{instance_name}/start")

    async def stop_instance(self, host: HostRecord, instance_name: str) -> dict:
        return await self._command(host, "POST", f"/tools/{instance_name}/stop")

    async def status(self, host: HostRecord) -> dict:
        return await self._command(host, "GET", "/status")

    # ── Execute ──────────────────────────────────────────────────────────

    async def execute(
        self, host: HostRecord, instance_name: str, command: ExecuteCommand
    ) -> ExecuteResult:
        url = f"{self.base_url(host)}/tools/{instance_name}/execute"
        # Leave headroom so the host agent's own timeout answers first.
        timeout = httpx.Timeout(self.timeout, read=self.execute_timeout + 10)
        try:
            resp = await self.client.post(
                url, json=command.model_dump(by_alias=True), timeout=timeout
            )
        except httpx.ReadTimeout as exc:
            raise ExecutionTimeoutError(f"no answer from host {host.host_id}") from exc
        except httpx.TransportError as exc:
            raise CommunicationError(f"host {host.host_id} unreachable: {exc}") from exc
        if resp.status_code >= 400:
            raise error_from_body(resp.status_code, _safe_json(resp))
        return ExecuteResult.model_validate(resp.json())


def _safe_json(resp: httpx.Response) -> dict:
    try:
        body = resp.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}
