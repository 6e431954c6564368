"""Configuration loading for the Toolshed control plane.

Reads ``toolshed.yaml`` into pydantic models. Deployment-specific values
can be overridden from the environment; secret material (cloud API token,
host-agent system key, secret-store key) is never placed in the YAML file,
only the *name* of the environment variable that holds it.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

CONFIG_ENV = "TOOLSHED_CONFIG"


class ServerConfig(BaseModel):
    base_url: str = "http://localhost:8000"  # what host agents call home to
    data_dir: str = ".toolshed-data"
    catalog_file: str | None = None


class ProvisioningConfig(BaseModel):
    """DigitalOcean droplet defaults and poll cadence."""

    api_base: str = "https://api.digitalocean.com"
    api_token_env: str = "DIGITALOCEAN_TOKEN"
    region: str = "nyc3"
    size: str = "s-1vcpu-1gb"
    image: str = "ubuntu-22-04-x64"
    ssh_key_ids: list[str] = Field(default_factory=list)
    host_agent_image: str = "ghcr.io/toolshed/hostagent:latest"
    poll_interval: float = 10.0
    poll_attempts: int = 30
    tags: list[str] = Field(default_factory=lambda: ["toolshed"])

    def api_token(self) -> str | None:
        return os.environ.get(self.api_token_env)


class HostAgentSettings(BaseModel):
    """How the control plane talks to host agents."""

    port: int = 30000
    scheme: str = "http"
    system_key_env: str = "TOOLSHED_SYSTEM_KEY"
    command_timeout: float = 15.0
    execute_timeout: float = 120.0
    max_retries: int = 3
    backoff_base: float = 0.5

    def system_key(self) -> str | None:
        return os.environ.get(self.system_key_env)


class HeartbeatConfig(BaseModel):
    interval: int = 30  # what host agents are told to use
    timeout: int = 120  # active → unresponsive after this many seconds of silence
    boot_timeout: int = 900  # awaiting_heartbeat → error_provisioning


class ReconciliationConfig(BaseModel):
    interval: int = 30


class SecretStoreConfig(BaseModel):
    key_env: str = "TOOLSHED_SECRET_KEY"

    def key(self) -> str | None:
        return os.environ.get(self.key_env)


class TokenEntry(BaseModel):
    """A user bearer token. Only the SHA-256 hex digest is kept in config."""

    token_sha256: str
    user_id: str
    admin: bool = False

    @field_validator("token_sha256")
    @classmethod
    def _validate_digest(cls, v: str) -> str:
        v = v.lower()
        if len(v) != 64 or any(c not in "0123456789abcdef" for c in v):
            raise ValueError("token_sha256 must be a 64-character hex digest")
        return v


class AuthConfig(BaseModel):
    tokens: list[TokenEntry] = Field(default_factory=list)


class AuditConfig(BaseModel):
    enabled: bool = True
    log_dir: str | None = None  # defaults to <data_dir>/audit


class ToolshedConfig(BaseModel):
    """Root of toolshed.yaml."""

    server: ServerConfig = Field(default_factory=ServerConfig)
    provisioning: ProvisioningConfig = Field(default_factory=ProvisioningConfig)
    host_agent: HostAgentSettings = Field(default_factory=HostAgentSettings)
    heartbeat: HeartbeatConfig = Field(default_factory=HeartbeatConfig)
    reconciliation: ReconciliationConfig = Field(default_factory=ReconciliationConfig)
    secret_store: SecretStoreConfig = Field(default_factory=SecretStoreConfig)
    auth: AuthConfig = Field(default_factory=AuthConfig)
    audit: AuditConfig = Field(default_factory=AuditConfig)

    @property
    def data_path(self) -> Path:
        return Path(self.server.data_dir)

    @property
    def audit_path(self) -> Path:
        if self.audit.log_dir:
            return Path(self.audit.log_dir)
        return self.data_path / "audit"


def load_config(path: Path | None = None) -> ToolshedConfig:
    """Load configuration from YAML, then apply environment overrides.

    A missing file is not an error when no path was given explicitly; the
    defaults plus environment are enough for local development.

    Raises:
        FileNotFoundError: If an explicit path doesn't exist.
        ValueError: If config validation fails.
    """
    explicit = path is not None or bool(os.environ.get(CONFIG_ENV))
    if path is None:
        path = Path(os.environ.get(CONFIG_ENV) or "toolshed.yaml")

    raw: dict = {}
    if path.exists():
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
    elif explicit:
        raise FileNotFoundError(f"Toolshed config not found: {path}")

    config = ToolshedConfig(**raw)

    # Environment variable overrides for deployment
    data_dir = os.environ.get("TOOLSHED_DATA_DIR")
    if data_dir:
        config.server.data_dir = data_dir

    base_url = os.environ.get("TOOLSHED_CONTROL_PLANE_URL")
    if base_url:
        config.server.base_url = base_url.rstrip("/")

    catalog_file = os.environ.get("TOOLSHED_CATALOG_FILE")
    if catalog_file:
        config.server.catalog_file = catalog_file

    logger.info(
        "Loaded Toolshed config: base_url=%s data_dir=%s tokens=%d",
        config.server.base_url,
        config.server.data_dir,
        len(config.auth.tokens),
    )
    return config
