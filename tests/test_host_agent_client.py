"""Contract tests for HostAgentClient — system key, retries, error mapping."""

from __future__ import annotations

import json

import httpx
import pytest
import respx

from toolshed.errors import (
    AuthorizationError,
    CommunicationError,
    CredentialError,
    ExecutionTimeoutError,
    NotFoundError,
    ToolshedError,
)
from toolshed.host_agent_client import HostAgentClient
from toolshed.models import DeployCommand, ExecuteCommand, HostRecord, HostStatus

BASE = "http://203.0.113.10:30000"


# ── Fixtures ─────────────────────────────────────────────────────────────────


@pytest.fixture
async def client():
    c = HostAgentClient(system_key="system-key", max_retries=3, backoff_base=0)
    await c.start()
    yield c
    await c.close()


@pytest.fixture
def host() -> HostRecord:
    return HostRecord(
        host_id="h1",
        owner_id="u1",
        name="box",
        region="nyc3",
        size="s",
        image="i",
        address="203.0.113.10",
        status=HostStatus.ACTIVE,
    )


def _command() -> ExecuteCommand:
    return ExecuteCommand(agent_id="a1", tool_instance_id="i1", capability_name="echo.send", payload={"m": 1})


# ── Lifecycle commands ───────────────────────────────────────────────────────


class TestCommands:
    @respx.mock
    async def test_deploy_shape(self, client, host):
        route = respx.post(f"{BASE}/tools").mock(return_value=httpx.Response(202, json={"status": "pending"}))
        await client.deploy(
            host, DeployCommand(image="echo:1", instance_name="echo-1", instance_id="i1", entrypoint=["/tool/run"])
        )
        request = route.calls[0].request
        assert request.headers["Authorization"] == "Bearer system-key"
        assert json.loads(request.content) == {
            "image": "echo:1",
            "instanceName": "echo-1",
            "instanceId": "i1",
            "entrypoint": ["/tool/run"],
        }

    @respx.mock
    async def test_retries_5xx_then_succeeds(self, client, host):
        route = respx.post(f"{BASE}/tools/echo-1/stop").mock(
            side_effect=[httpx.Response(502), httpx.ConnectError("reset"), httpx.Response(202, json={})]
        )
        await client.stop_instance(host, "echo-1")
        assert route.call_count == 3

    @respx.mock
    async def test_gives_up_after_max_retries(self, client, host):
        route = respx.post(f"{BASE}/tools/echo-1/start").mock(side_effect=httpx.ConnectError("refused"))
        with pytest.raises(CommunicationError):
            await client.start_instance(host, "echo-1")
        assert route.call_count == 3

    @respx.mock
    async def test_4xx_not_retried(self, client, host):
        route = respx.delete(f"{BASE}/tools/echo-1").mock(
            return_value=httpx.Response(404, json={"error": "not_found", "detail": "no such instance"})
        )
        with pytest.raises(NotFoundError, match="no such instance"):
            await client.remove(host, "echo-1")
        assert route.call_count == 1

    async def test_host_without_address(self, client, host):
        host.address = None
        with pytest.raises(CommunicationError):
            await client.status(host)


# ── Execute ──────────────────────────────────────────────────────────────────


class TestExecute:
    @respx.mock
    async def test_result(self, client, host):
        respx.post(f"{BASE}/tools/echo-1/execute").mock(
            return_value=httpx.Response(200, json={"exitCode": 0, "output": {"echo": 1}})
        )
        result = await client.execute(host, "echo-1", _command())
        assert result.exit_code == 0
        assert result.output == {"echo": 1}

    @respx.mock
    async def test_never_retried(self, client, host):
        route = respx.post(f"{BASE}/tools/echo-1/execute").mock(return_value=httpx.Response(503))
        with pytest.raises(ToolshedError):
            await client.execute(host, "echo-1", _command())
        assert route.call_count == 1

    @respx.mock
    async def test_read_timeout(self, client, host):
        respx.post(f"{BASE}/tools/echo-1/execute").mock(side_effect=httpx.ReadTimeout("slow"))
        with pytest.raises(ExecutionTimeoutError):
            await client.execute(host, "echo-1", _command())

    @respx.mock
    async def test_unreachable(self, client, host):
        respx.post(f"{BASE}/tools/echo-1/execute").mock(side_effect=httpx.ConnectError("refused"))
        with pytest.raises(CommunicationError):
            await client.execute(host, "echo-1", _command())

    @respx.mock
    async def test_error_bodies_map_back(self, client, host):
        respx.post(f"{BASE}/tools/echo-1/execute").mock(
            side_effect=[
                httpx.Response(424, json={"error": "credential_unavailable", "detail": "reconnect"}),
                httpx.Response(403, json={"error": "not_authorized", "detail": "not authorized"}),
                httpx.Response(504, json={"error": "execution_timeout", "detail": "exceeded 60s"}),
            ]
        )
        with pytest.raises(CredentialError):
            await client.execute(host, "echo-1", _command())
        with pytest.raises(AuthorizationError):
            await client.execute(host, "echo-1", _command())
        with pytest.raises(ExecutionTimeoutError):
            await client.execute(host, "echo-1", _command())
