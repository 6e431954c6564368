"""Host agent configuration, read entirely from the environment.

The startup script injected at provisioning time sets these variables on
the host agent container; there is no config file on the host.
"""

from __future__ import annotations

import os

from pydantic import BaseModel, Field


class HostAgentConfig(BaseModel):
    host_id: str = ""
    bearer_secret: str = Field(default="", repr=False)  # proves which host we are
    system_key: str = Field(default="", repr=False)  # proves the control plane is the control plane
    control_plane_url: str = "http://localhost:8000"
    port: int = 30000
    heartbeat_interval: float = 30.0
    execute_timeout: float = 60.0
    credential_timeout: float = 5.0
    container_prefix: str = "toolshed-"
    max_output_bytes: int = 1_000_000

    @classmethod
    def from_env(cls) -> HostAgentConfig:
        env = os.environ
        values: dict = {
            "host_id": env.get("TOOLSHED_HOST_ID", ""),
            "bearer_secret": env.get("TOOLSHED_HOST_BEARER", ""),
            "system_key": env.get("TOOLSHED_SYSTEM_KEY", ""),
            "control_plane_url": env.get("TOOLSHED_CONTROL_PLANE_URL", "http://localhost:8000").rstrip("/"),
        }
        optional = {
            "port": "TOOLSHED_HOSTAGENT_PORT",
            "heartbeat_interval": "TOOLSHED_HEARTBEAT_INTERVAL",
            "execute_timeout": "TOOLSHED_EXECUTE_TIMEOUT",
            "credential_timeout": "TOOLSHED_CREDENTIAL_TIMEOUT",
            "container_prefix": "TOOLSHED_CONTAINER_PREFIX",
        }
        for field, var in optional.items():
            if env.get(var):
                values[field] = env[var]
        return cls(**values)
