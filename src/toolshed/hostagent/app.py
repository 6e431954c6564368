"""Host agent process — FastAPI app run inside the agent container on each Toolbox.

Startup: connect to the local docker daemon, rebuild the instance map from
labelled containers, then start heartbeating. The first heartbeat is what
moves the host from awaiting_heartbeat to active.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

import docker
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from toolshed.errors import ToolshedError
from toolshed.hostagent import AGENT_VERSION
from toolshed.hostagent.config import HostAgentConfig
from toolshed.hostagent.containers import ContainerManager
from toolshed.hostagent.control_plane import ControlPlaneClient
from toolshed.hostagent.executor import Executor
from toolshed.hostagent.health import snapshot
from toolshed.hostagent.heartbeat import HeartbeatLoop
from toolshed.hostagent.routes import configure as configure_routes
from toolshed.hostagent.routes import router as command_router

logger = logging.getLogger(__name__)


class HostAgent:
    def __init__(self, config: HostAgentConfig | None = None, docker_client: docker.DockerClient | None = None):
        self.config = config
        self.docker_client = docker_client
        self.containers: ContainerManager | None = None
        self.control_plane: ControlPlaneClient | None = None
        self.executor: Executor | None = None
        self.heartbeat: HeartbeatLoop | None = None

    async def start(self) -> None:
        if self.config is None:
            self.config = HostAgentConfig.from_env()
        config = self.config
        if not config.host_id or not config.bearer_secret:
            raise RuntimeError("TOOLSHED_HOST_ID and TOOLSHED_HOST_BEARER must be set")
        logger.info("Host agent %s starting for host %s", AGENT_VERSION, config.host_id)

        if self.docker_client is None:
            self.docker_client = docker.from_env()
        self.containers = ContainerManager(self.docker_client, prefix=config.container_prefix)
        await self.containers.recover()

        self.control_plane = ControlPlaneClient(config.control_plane_url, config.bearer_secret)
        await self.control_plane.start()

        self.executor = Executor(
            self.containers,
            self.control_plane,
            timeout=config.execute_timeout,
            credential_timeout=config.credential_timeout,
            max_output_bytes=config.max_output_bytes,
        )
        configure_routes(self.containers, self.executor, config.system_key, snapshot)

        self.heartbeat = HeartbeatLoop(
            self.containers, self.control_plane, interval=config.heartbeat_interval
        )
        await self.heartbeat.start()
        logger.info("Host agent started (%d instance(s))", len(self.containers))

    async def stop(self) -> None:
        logger.info("Host agent shutting down...")
        if self.heartbeat:
            await self.heartbeat.stop()
        if self.executor:
            await self.executor.drain()
        if self.containers:
            await self.containers.shutdown()
        if self.control_plane:
            await self.control_plane.close()
        logger.info("Host agent stopped")


_agent = HostAgent()


@asynccontextmanager
async def lifespan(app: FastAPI):
    await _agent.start()
    yield
    await _agent.stop()


async def toolshed_error_handler(request: Request, exc: ToolshedError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code, content={"error": exc.code, "detail": exc.message}
    )


def create_app(
    config: HostAgentConfig | None = None, docker_client: docker.DockerClient | None = None
) -> FastAPI:
    global _agent
    _agent = HostAgent(config, docker_client)

    app = FastAPI(title="Toolshed Host Agent", version=AGENT_VERSION, lifespan=lifespan)
    app.add_exception_handler(ToolshedError, toolshed_error_handler)
    app.include_router(command_router)

    @app.get("/health")
    async def health():
        return {
            "status": "ok",
            "version": AGENT_VERSION,
            "instances": len(_agent.containers) if _agent.containers else 0,
        }

    return app
