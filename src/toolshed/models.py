"""Core data models for Toolshed.

Records mirror rows in the registry; request/report models are the wire
shapes exchanged with users and host agents. Everything that crosses HTTP
serializes with camelCase aliases and accepts snake_case on input.
"""

from __future__ import annotations

import enum
import re
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _Model(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ── Status enums ─────────────────────────────────────────────────────────────


class HostStatus(str, enum.Enum):
    """Toolbox lifecycle states."""

    PENDING_PROVISION = "pending_provision"
    PROVISIONING = "provisioning"
    AWAITING_HEARTBEAT = "awaiting_heartbeat"
    ACTIVE = "active"
    UNRESPONSIVE = "unresponsive"
    PENDING_DEPROVISION = "pending_deprovision"
    DEPROVISIONING = "deprovisioning"
    DEPROVISIONED = "deprovisioned"
    ERROR_PROVISIONING = "error_provisioning"
    ERROR_DEPROVISIONING = "error_deprovisioning"


# States a heartbeat may promote to ACTIVE. Everything else is left alone.
HEARTBEAT_PROMOTABLE = frozenset(
    {HostStatus.PROVISIONING, HostStatus.AWAITING_HEARTBEAT, HostStatus.UNRESPONSIVE}
)

DEPROVISIONABLE = frozenset(
    {
        HostStatus.PENDING_PROVISION,
        HostStatus.PROVISIONING,
        HostStatus.AWAITING_HEARTBEAT,
        HostStatus.ACTIVE,
        HostStatus.UNRESPONSIVE,
        HostStatus.ERROR_PROVISIONING,
        HostStatus.ERROR_DEPROVISIONING,
    }
)


class InstanceStatus(str, enum.Enum):
    """Tool instance lifecycle states."""

    PENDING_DEPLOY = "pending_deploy"
    DEPLOYING = "deploying"
    RUNNING = "running"
    PENDING_STOP = "pending_stop"
    STOPPED = "stopped"
    PENDING_START = "pending_start"
    PENDING_DELETE = "pending_delete"
    DELETING = "deleting"
    ERROR = "error"


DELETION_STATES = frozenset({InstanceStatus.PENDING_DELETE, InstanceStatus.DELETING})


class CredentialStatus(str, enum.Enum):
    ACTIVE = "active"
    REVOKED = "revoked"
    REQUIRES_REAUTH = "requires_reauth"
    ERROR = "error"


# ── Records ──────────────────────────────────────────────────────────────────


class AgentRecord(_Model):
    """An agent and the user it acts for."""

    agent_id: str
    owner_id: str
    name: str = ""
    created_at: datetime = Field(default_factory=_utcnow)


class HostRecord(_Model):
    """One provisioned compute host ("Toolbox")."""

    host_id: str
    owner_id: str
    name: str
    region: str
    size: str
    image: str
    provider_instance_id: str | None = None
    address: str | None = None
    bearer_secret: str | None = Field(default=None, exclude=True, repr=False)
    status: HostStatus = HostStatus.PENDING_PROVISION
    status_message: str | None = None
    last_heartbeat: datetime | None = None
    agent_version: str | None = None
    health: dict[str, Any] = Field(default_factory=dict)
    version: int = 1
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    deleted_at: datetime | None = None


_ENV_VAR_RE = re.compile(r"^[A-Z_][A-Z0-9_]*$")
_CAPABILITY_RE = re.compile(r"^[a-z0-9_.-]+$")


class SecretSlot(_Model):
    """A named secret the tool needs, injected as ``env_var`` at execute time."""

    name: str
    kind: str
    env_var: str
    description: str = ""

    @field_validator("env_var")
    @classmethod
    def _validate_env_var(cls, v: str) -> str:
        if not _ENV_VAR_RE.match(v):
            raise ValueError(f"env_var must be an upper-case identifier, got {v!r}")
        return v


class Capability(_Model):
    name: str
    label: str = ""

    @field_validator("name")
    @classmethod
    def _validate_name(cls, v: str) -> str:
        if not _CAPABILITY_RE.match(v):
            raise ValueError(f"invalid capability name {v!r}")
        return v


class CatalogEntry(_Model):
    """Admin-curated tool template."""

    catalog_id: str
    name: str
    display_name: str = ""
    description: str = ""
    image: str
    entrypoint: list[str] = Field(default_factory=lambda: ["/tool/run"])
    schema_version: int = 1
    secret_slots: list[SecretSlot] = Field(default_factory=list)
    capabilities: list[Capability] = Field(default_factory=list)
    enabled: bool = True
    version: int = 1
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @model_validator(mode="after")
    def _unique_names(self) -> CatalogEntry:
        kinds = [s.kind for s in self.secret_slots]
        if len(set(kinds)) != len(kinds):
            raise ValueError("secret slot kinds must be unique")
        caps = [c.name for c in self.capabilities]
        if len(set(caps)) != len(caps):
            raise ValueError("capability names must be unique")
        return self

    def slot_for(self, kind: str) -> SecretSlot | None:
        for slot in self.secret_slots:
            if slot.kind == kind:
                return slot
        return None

    def has_capability(self, name: str) -> bool:
        return any(c.name == name for c in self.capabilities)


class CatalogResolution(_Model):
    """What consumers of the catalog need to know about an entry."""

    image: str
    entrypoint: list[str]
    secret_slots: list[SecretSlot]
    capabilities: list[Capability]


class InstanceRecord(_Model):
    """One deployment of a catalog entry on a host."""

    instance_id: str
    host_id: str
    catalog_id: str
    instance_name: str
    status: InstanceStatus = InstanceStatus.PENDING_DEPLOY
    status_message: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)
    last_heartbeat: datetime | None = None
    version: int = 1
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class AccessGrant(_Model):
    agent_id: str
    host_id: str
    granted_by: str
    granted_at: datetime = Field(default_factory=_utcnow)


class ToolbeltItem(_Model):
    item_id: str
    agent_id: str
    instance_id: str
    active: bool = True
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class CredentialRecord(_Model):
    """Agent-scoped secret binding. Holds a store reference, never plaintext."""

    credential_id: str
    item_id: str
    kind: str
    secret_ref: str | None = Field(default=None, exclude=True, repr=False)
    display_id: str = ""
    status: CredentialStatus = CredentialStatus.ACTIVE
    version: int = 1
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class CapabilityPermission(_Model):
    item_id: str
    capability: str
    allowed: bool = False
    updated_at: datetime = Field(default_factory=_utcnow)


class BeltEntry(_Model):
    """A toolbelt item joined with its credential and permissions, for listing."""

    item: ToolbeltItem
    instance_name: str
    host_id: str
    credential: CredentialRecord | None = None
    permissions: list[CapabilityPermission] = Field(default_factory=list)


# ── Control-plane request bodies ─────────────────────────────────────────────


class ProvisionRequest(_Model):
    name: str
    region: str | None = None
    size: str | None = None
    image: str | None = None


class RegisterAgentRequest(_Model):
    agent_id: str
    name: str = ""


class DeployRequest(_Model):
    catalog_id: str
    instance_name: str

    @field_validator("instance_name")
    @classmethod
    def _validate_instance_name(cls, v: str) -> str:
        if not re.match(r"^[a-z0-9][a-z0-9_.-]{0,62}$", v):
            raise ValueError(f"invalid instance name {v!r}")
        return v


class GrantAccessRequest(_Model):
    host_id: str


class AddToBeltRequest(_Model):
    tool_instance_id: str


class SetCredentialRequest(_Model):
    credential_kind: str
    secret: str = Field(repr=False)


class SetPermissionRequest(_Model):
    capability_name: str
    allowed: bool


class ExecuteRequest(_Model):
    capability_name: str
    payload: dict[str, Any] = Field(default_factory=dict)


class CatalogUpdate(_Model):
    display_name: str | None = None
    description: str | None = None
    image: str | None = None
    entrypoint: list[str] | None = None
    secret_slots: list[SecretSlot] | None = None
    capabilities: list[Capability] | None = None
    enabled: bool | None = None


# ── Host agent wire shapes ───────────────────────────────────────────────────


class InstanceReport(_Model):
    instance_id: str
    status: str
    details: dict[str, Any] = Field(default_factory=dict)


class HeartbeatPayload(_Model):
    host_health: dict[str, Any] = Field(default_factory=dict)
    agent_version: str | None = None
    tool_instances: list[InstanceReport] = Field(default_factory=list)


class FetchCredentialRequest(_Model):
    agent_id: str
    tool_instance_id: str


class FetchCredentialResponse(_Model):
    secret: str = Field(repr=False)
    credential_kind: str
    env_var: str


class DeployCommand(_Model):
    """Body of ``POST /tools`` on the host agent."""

    image: str
    instance_name: str
    instance_id: str
    entrypoint: list[str] = Field(default_factory=list)


class ExecuteCommand(_Model):
    """Body of ``POST /tools/{name}/execute`` on the host agent."""

    agent_id: str
    tool_instance_id: str
    capability_name: str
    payload: dict[str, Any] = Field(default_factory=dict)


class ExecuteResult(_Model):
    exit_code: int
    output: Any = None
