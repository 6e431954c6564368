"""Capability execution with just-in-time credential injection.

For each call the executor fetches the requesting agent's secret from the
credential broker, runs ``<entrypoint> <capability>`` inside the tool's
container with the secret in that exec's environment only, and drops the
environment mapping when the attempt ends. The secret never reaches the
container's configuration and is not stored anywhere on this host.

The attempt runs in its own task shielded from the caller: if the control
plane hangs up mid-call, the exec still finishes and its ``finally``
still clears the secret.

A timeout only abandons the wait. Docker has no call to kill an exec, so
the process inside the container runs to completion with its environment;
the caller gets ``ExecutionTimeoutError`` and the mapping here is cleared.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import TYPE_CHECKING, Any

from toolshed.errors import ExecutionTimeoutError, InvalidStateError, NotFoundError
from toolshed.models import ExecuteCommand, ExecuteResult

if TYPE_CHECKING:
    from toolshed.hostagent.containers import ContainerManager
    from toolshed.hostagent.control_plane import ControlPlaneClient

logger = logging.getLogger(__name__)

PAYLOAD_ENV = "TOOLSHED_PAYLOAD"
AGENT_ENV = "TOOLSHED_AGENT_ID"
CAPABILITY_ENV = "TOOLSHED_CAPABILITY"


def parse_output(raw: bytes, limit: int) -> Any:
    text = raw[:limit].decode("utf-8", errors="replace").strip()
    try:
        return json.loads(text)
    except ValueError:
        return text


class Executor:
    def __init__(
        self,
        containers: ContainerManager,
        control_plane: ControlPlaneClient,
        *,
        timeout: float = 60.0,
        credential_timeout: float = 5.0,
        max_output_bytes: int = 1_000_000,
    ):
        self.containers = containers
        self.control_plane = control_plane
        self.timeout = timeout
        self.credential_timeout = credential_timeout
        self.max_output_bytes = max_output_bytes
        self._attempts: set[asyncio.Task] = set()

    async def execute(self, name: str, command: ExecuteCommand) -> ExecuteResult:
        inst = self.containers.get(name)
        if inst.instance_id != command.tool_instance_id:
            raise NotFoundError(f"{name!r} is not instance {command.tool_instance_id}")
        if inst.status != "running":
            raise InvalidStateError(f"tool instance {name!r} is {inst.status}, not running")

        attempt = asyncio.create_task(self._attempt(name, command), name=f"exec-{name}")
        self._attempts.add(attempt)
        attempt.add_done_callback(self._attempts.discard)
        return await asyncio.shield(attempt)

    async def _attempt(self, name: str, command: ExecuteCommand) -> ExecuteResult:
        credential = await self.control_plane.fetch_credential(
            command.agent_id, command.tool_instance_id, timeout=self.credential_timeout
        )
        inst = self.containers.get(name)
        environment = {
            credential.env_var: credential.secret,
            PAYLOAD_ENV: json.dumps(command.payload),
            AGENT_ENV: command.agent_id,
            CAPABILITY_ENV: command.capability_name,
        }
        del credential
        try:
            exit_code, output = await asyncio.wait_for(
                self.containers.exec_run(name, [*inst.entrypoint, command.capability_name], environment),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as exc:
            logger.warning(
                "Execute %s on %s for agent %s timed out after %.0fs",
                command.capability_name,
                name,
                command.agent_id,
                self.timeout,
            )
            raise ExecutionTimeoutError(
                f"{command.capability_name} exceeded {self.timeout:.0f}s"
            ) from exc
        finally:
            environment.clear()

        logger.info(
            "Executed %s on %s for agent %s (exit %d)",
            command.capability_name,
            name,
            command.agent_id,
            exit_code,
        )
        return ExecuteResult(exit_code=exit_code, output=parse_output(output, self.max_output_bytes))

    async def drain(self) -> None:
        """Wait for in-flight attempts (used on shutdown)."""
        if self._attempts:
            await asyncio.gather(*self._attempts, return_exceptions=True)
