"""Toolshed control plane — FastAPI application that ties all components together.

Startup sequence:
1. Load toolshed.yaml (+ environment overrides)
2. Initialize the registry and secret store databases
3. Fail hosts whose provisioning was interrupted by the previous shutdown
4. Start the cloud provider and host agent HTTP clients
5. Seed the tool catalog (if a catalog file is configured)
6. Wire routers and start the reconciliation loop

Shutdown:
1. Stop the reconciliation loop
2. Cancel in-flight provisioning tasks
3. Close HTTP clients and databases
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from toolshed import __version__
from toolshed.agents_api import configure as configure_agents
from toolshed.agents_api import router as agents_router
from toolshed.audit import AuditLog
from toolshed.broker import CredentialBroker
from toolshed.catalog import ToolCatalog
from toolshed.catalog_api import configure as configure_catalog
from toolshed.catalog_api import router as catalog_router
from toolshed.config import ToolshedConfig, load_config
from toolshed.errors import ToolshedError
from toolshed.host_agent_client import HostAgentClient
from toolshed.hostagent_api import configure as configure_hostagent
from toolshed.hostagent_api import router as hostagent_router
from toolshed.hosts import HostEnvironmentService
from toolshed.instances import ToolInstanceService
from toolshed.models import HostStatus
from toolshed.provider import DigitalOceanProvider
from toolshed.reconciliation import ReconciliationLoop
from toolshed.registry import ToolshedRegistry
from toolshed.secret_store import FernetSecretStore
from toolshed.security import configure as configure_security
from toolshed.toolbelt import ToolbeltService
from toolshed.toolboxes_api import configure as configure_toolboxes
from toolshed.toolboxes_api import router as toolboxes_router

logger = logging.getLogger(__name__)


class ControlPlaneServer:
    """Encapsulates all server components and lifecycle."""

    def __init__(self, config: ToolshedConfig | None = None, config_path: Path | None = None):
        self.config = config
        self.config_path = config_path

        # Components (initialized in start())
        self.registry: ToolshedRegistry | None = None
        self.secret_store: FernetSecretStore | None = None
        self.audit: AuditLog | None = None
        self.provider: DigitalOceanProvider | None = None
        self.host_agent: HostAgentClient | None = None
        self.catalog: ToolCatalog | None = None
        self.instances: ToolInstanceService | None = None
        self.hosts: HostEnvironmentService | None = None
        self.toolbelt: ToolbeltService | None = None
        self.broker: CredentialBroker | None = None
        self.reconciliation: ReconciliationLoop | None = None

    async def start(self) -> None:
        """Initialize all components and start background loops."""
        # 1. Load config
        if self.config is None:
            self.config = load_config(self.config_path)
        config = self.config
        logger.info("Toolshed control plane starting (base_url=%s)", config.server.base_url)

        # 2. Databases (local disk)
        data_dir = config.data_path
        data_dir.mkdir(parents=True, exist_ok=True)
        self.registry = ToolshedRegistry(str(data_dir / "registry.db"))
        await self.registry.initialize()

        secret_key = config.secret_store.key()
        if not secret_key:
            raise RuntimeError(
                f"Secret store key not set — export {config.secret_store.key_env} "
                "(generate one with `toolshed gen-secret-key`)"
            )
        self.secret_store = FernetSecretStore(str(data_dir / "secrets.db"), secret_key)
        await self.secret_store.initialize()

        self.audit = AuditLog(config.audit_path, enabled=config.audit.enabled)
        await self.audit.start()

        # 3. Recover hosts left mid-provisioning by a previous run
        await self._recover_hosts()

        # 4. HTTP clients
        prov = config.provisioning
        self.provider = DigitalOceanProvider(
            api_token=prov.api_token(), api_base=prov.api_base, ssh_key_ids=prov.ssh_key_ids
        )
        await self.provider.start()
        if not prov.api_token():
            logger.warning("Cloud API token not set (env %s) — provisioning will fail", prov.api_token_env)

        ha = config.host_agent
        if not ha.system_key():
            logger.warning("Host agent system key not set (env %s)", ha.system_key_env)
        self.host_agent = HostAgentClient(
            system_key=ha.system_key(),
            port=ha.port,
            scheme=ha.scheme,
            timeout=ha.command_timeout,
            execute_timeout=ha.execute_timeout,
            max_retries=ha.max_retries,
            backoff_base=ha.backoff_base,
        )
        await self.host_agent.start()

        # 5. Services
        self.catalog = ToolCatalog(self.registry)
        if config.server.catalog_file:
            await self.catalog.seed_from_file(Path(config.server.catalog_file))

        self.instances = ToolInstanceService(
            self.registry, self.catalog, self.host_agent, self.secret_store
        )
        self.reconciliation = ReconciliationLoop(config, self.registry, self.instances)
        self.hosts = HostEnvironmentService(
            config,
            self.registry,
            self.provider,
            self.secret_store,
            on_instance_reports=self.reconciliation.apply_reports,
        )
        self.toolbelt = ToolbeltService(
            self.registry, self.catalog, self.secret_store, self.host_agent, self.audit
        )
        self.broker = CredentialBroker(self.registry, self.catalog, self.secret_store, self.audit)

        # 6. Routers + background loop
        configure_security(config.auth)
        configure_toolboxes(self.hosts, self.instances)
        configure_agents(self.toolbelt)
        configure_catalog(self.catalog)
        configure_hostagent(self.hosts, self.broker)

        await self.reconciliation.start()
        logger.info("Toolshed control plane started")

    async def stop(self) -> None:
        """Graceful shutdown."""
        logger.info("Toolshed control plane shutting down...")
        if self.reconciliation:
            await self.reconciliation.stop()
        if self.hosts:
            await self.hosts.shutdown()
        if self.host_agent:
            await self.host_agent.close()
        if self.provider:
            await self.provider.close()
        if self.secret_store:
            await self.secret_store.close()
        if self.registry:
            await self.registry.close()
        logger.info("Toolshed control plane stopped")

    async def _recover_hosts(self) -> None:
        """Provisioning tasks do not survive a restart; surface them as failed."""
        stale = await self.registry.get_hosts_by_status(
            HostStatus.PENDING_PROVISION, HostStatus.PROVISIONING
        )
        for host in stale:
            await self.registry.transition_host(
                host.host_id,
                [HostStatus.PENDING_PROVISION, HostStatus.PROVISIONING],
                HostStatus.ERROR_PROVISIONING,
                message="provisioning interrupted by control-plane restart",
            )
        if stale:
            logger.warning("Marked %d interrupted provisioning host(s) as error_provisioning", len(stale))


_server = ControlPlaneServer()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """FastAPI lifespan — startup and shutdown."""
    await _server.start()
    yield
    await _server.stop()


async def toolshed_error_handler(request: Request, exc: ToolshedError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.warning("%s %s → %s: %s", request.method, request.url.path, exc.code, exc.message)
    return JSONResponse(
        status_code=exc.status_code, content={"error": exc.code, "detail": exc.message}
    )


def create_app(config: ToolshedConfig | None = None, config_path: Path | None = None) -> FastAPI:
    """Create the FastAPI application."""
    global _server
    _server = ControlPlaneServer(config, config_path)

    app = FastAPI(
        title="Toolshed",
        version=__version__,
        description="Multi-tenant tool execution and per-agent credential brokering",
        lifespan=lifespan,
    )
    app.add_exception_handler(ToolshedError, toolshed_error_handler)

    # Mount routes
    app.include_router(toolboxes_router)
    app.include_router(agents_router)
    app.include_router(catalog_router)
    app.include_router(hostagent_router)

    @app.get("/health")
    async def health():
        """Health check with host and instance counts."""
        host_counts: dict[str, int] = {}
        if _server.registry:
            for status in HostStatus:
                hosts = await _server.registry.get_hosts_by_status(status)
                if hosts:
                    host_counts[status.value] = len(hosts)
        return {
            "status": "ok",
            "version": __version__,
            "hosts": host_counts,
            "reconciliation_interval": _server.reconciliation.interval if _server.reconciliation else None,
        }

    return app
