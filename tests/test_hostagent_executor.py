"""Tests for the host agent Executor: credential injection, cleanup and timeouts."""

from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from toolshed.errors import CredentialError, ExecutionTimeoutError, InvalidStateError, NotFoundError
from toolshed.hostagent.containers import ManagedInstance
from toolshed.hostagent.executor import (
    AGENT_ENV,
    CAPABILITY_ENV,
    PAYLOAD_ENV,
    Executor,
    parse_output,
)
from toolshed.models import ExecuteCommand, FetchCredentialResponse


def _command(**overrides) -> ExecuteCommand:
    fields = dict(agent_id="a1", tool_instance_id="i1", capability_name="echo.send", payload={"m": "hi"})
    fields.update(overrides)
    return ExecuteCommand(**fields)


# ── Fixtures ─────────────────────────────────────────────────────────────────


@pytest.fixture
def instance():
    return ManagedInstance(
        instance_id="i1", name="echo-1", image="echo:1", entrypoint=["/tool/run"], status="running"
    )


@pytest.fixture
def seen():
    """Captures what exec_run received: the live env mapping and a copy taken during the call."""
    return {}


@pytest.fixture
def containers(instance, seen):
    mgr = MagicMock()
    mgr.get.return_value = instance

    async def exec_run(name, cmd, environment):
        seen["env"] = environment
        seen["copy"] = dict(environment)
        seen["cmd"] = cmd
        return 0, b'{"echo": "hi"}\n'

    mgr.exec_run = AsyncMock(side_effect=exec_run)
    return mgr


@pytest.fixture
def control_plane():
    cp = MagicMock()
    cp.fetch_credential = AsyncMock(
        return_value=FetchCredentialResponse(secret="k-123", credential_kind="api_key", env_var="ECHO_API_KEY")
    )
    return cp


@pytest.fixture
def executor(containers, control_plane):
    return Executor(containers, control_plane, timeout=1.0, credential_timeout=0.5)


# ── Execute ──────────────────────────────────────────────────────────────────


class TestExecute:
    async def test_secret_injected_for_the_call(self, executor, control_plane, seen):
        result = await executor.execute("echo-1", _command())

        assert result.exit_code == 0
        assert result.output == {"echo": "hi"}
        assert seen["cmd"] == ["/tool/run", "echo.send"]
        assert seen["copy"]["ECHO_API_KEY"] == "k-123"
        assert seen["copy"][AGENT_ENV] == "a1"
        assert seen["copy"][CAPABILITY_ENV] == "echo.send"
        assert json.loads(seen["copy"][PAYLOAD_ENV]) == {"m": "hi"}
        control_plane.fetch_credential.assert_awaited_once_with("a1", "i1", timeout=0.5)

    async def test_env_cleared_afterwards(self, executor, seen):
        await executor.execute("echo-1", _command())
        assert seen["env"] == {}

    async def test_env_cleared_on_failure(self, executor, containers, seen):
        async def boom(name, cmd, environment):
            seen["env"] = environment
            raise RuntimeError("exec failed")

        containers.exec_run.side_effect = boom
        with pytest.raises(RuntimeError):
            await executor.execute("echo-1", _command())
        assert seen["env"] == {}

    async def test_timeout(self, executor, containers, seen):
        async def hang(name, cmd, environment):
            seen["env"] = environment
            await asyncio.sleep(10)

        containers.exec_run.side_effect = hang
        executor.timeout = 0.01
        with pytest.raises(ExecutionTimeoutError):
            await executor.execute("echo-1", _command())
        assert seen["env"] == {}

    async def test_caller_cancel_lets_attempt_finish(self, executor, containers, seen):
        started = asyncio.Event()
        release = asyncio.Event()

        async def blocked(name, cmd, environment):
            seen["env"] = environment
            started.set()
            await release.wait()
            seen["finished"] = True
            return 0, b"done"

        containers.exec_run.side_effect = blocked
        caller = asyncio.create_task(executor.execute("echo-1", _command()))
        await started.wait()
        assert seen["env"]["ECHO_API_KEY"] == "k-123"

        caller.cancel()
        with pytest.raises(asyncio.CancelledError):
            await caller
        [attempt] = executor._attempts
        assert not attempt.done()

        release.set()
        result = await attempt
        assert result.output == "done"
        assert seen["finished"] is True
        assert seen["env"] == {}
        assert executor._attempts == set()

    async def test_fetch_per_call(self, executor, control_plane):
        await executor.execute("echo-1", _command())
        await executor.execute("echo-1", _command(agent_id="a2"))
        assert [c.args[0] for c in control_plane.fetch_credential.await_args_list] == ["a1", "a2"]

    async def test_credential_failure_skips_exec(self, executor, control_plane, containers):
        control_plane.fetch_credential.side_effect = CredentialError()
        with pytest.raises(CredentialError):
            await executor.execute("echo-1", _command())
        containers.exec_run.assert_not_awaited()

    async def test_not_running(self, executor, instance, control_plane):
        instance.status = "stopped"
        with pytest.raises(InvalidStateError):
            await executor.execute("echo-1", _command())
        control_plane.fetch_credential.assert_not_awaited()

    async def test_instance_id_mismatch(self, executor, control_plane):
        with pytest.raises(NotFoundError):
            await executor.execute("echo-1", _command(tool_instance_id="i9"))
        control_plane.fetch_credential.assert_not_awaited()

    async def test_drain_waits(self, executor):
        await executor.execute("echo-1", _command())
        await executor.drain()
        assert executor._attempts == set()


class TestParseOutput:
    def test_json(self):
        assert parse_output(b'{"a": 1}', 100) == {"a": 1}

    def test_text(self):
        assert parse_output(b"plain text\n", 100) == "plain text"

    def test_truncated(self):
        assert parse_output(b"abcdef", 3) == "abc"
