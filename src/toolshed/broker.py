"""Credential Broker — hands a host agent one agent's secret, once.

Callable only with a host's bearer secret, and only for instances that
live on that host. Nothing is cached; the only side effect is an audit
entry.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from toolshed.errors import AuthorizationError, CredentialError, NotFoundError
from toolshed.models import CredentialStatus, FetchCredentialResponse, HostRecord

if TYPE_CHECKING:
    from toolshed.audit import AuditLog
    from toolshed.catalog import ToolCatalog
    from toolshed.registry import ToolshedRegistry
    from toolshed.secret_store import SecretStore

logger = logging.getLogger(__name__)


class CredentialBroker:
    def __init__(
        self,
        registry: ToolshedRegistry,
        catalog: ToolCatalog,
        secret_store: SecretStore,
        audit: AuditLog,
    ):
        self.registry = registry
        self.catalog = catalog
        self.secret_store = secret_store
        self.audit = audit

    async def fetch_credential(
        self, host: HostRecord, agent_id: str, instance_id: str
    ) -> FetchCredentialResponse:
        try:
            response = await self._resolve(host, agent_id, instance_id)
        except (AuthorizationError, CredentialError) as exc:
            await self.audit.record(
                "credential_fetch",
                agent_id=agent_id,
                host_id=host.host_id,
                instance_id=instance_id,
                outcome="denied" if isinstance(exc, AuthorizationError) else "error",
                detail=exc.code,
            )
            raise
        await self.audit.record(
            "credential_fetch",
            agent_id=agent_id,
            host_id=host.host_id,
            instance_id=instance_id,
            detail=response.credential_kind,
        )
        return response

    async def _resolve(self, host: HostRecord, agent_id: str, instance_id: str) -> FetchCredentialResponse:
        instance = await self.registry.get_instance(instance_id)
        if instance is None or instance.host_id != host.host_id:
            logger.warning(
                "Host %s asked for a credential on instance %s it does not run",
                host.host_id,
                instance_id,
            )
            raise AuthorizationError()

        item = await self.registry.get_item_for(agent_id, instance_id)
        if item is None or not item.active:
            raise AuthorizationError()

        credential = await self.registry.get_credential(item.item_id)
        if credential is None or credential.status != CredentialStatus.ACTIVE or not credential.secret_ref:
            raise CredentialError()

        try:
            entry = await self.catalog.get(instance.catalog_id)
        except NotFoundError as exc:
            raise CredentialError() from exc
        slot = entry.slot_for(credential.kind)
        if slot is None:
            raise CredentialError()

        try:
            secret = await self.secret_store.resolve(credential.secret_ref)
        except CredentialError:
            # Unresolvable reference: stop authorizing calls until a new secret is set.
            await self.registry.set_credential_status(item.item_id, CredentialStatus.ERROR)
            logger.warning(
                "Credential for agent %s on instance %s could not be resolved; marked error",
                agent_id,
                instance_id,
            )
            raise
        return FetchCredentialResponse(secret=secret, credential_kind=credential.kind, env_var=slot.env_var)
