"""Tests for Toolshed config loading."""

from pathlib import Path

import pytest
import yaml
from pydantic import ValidationError

from toolshed.config import ToolshedConfig, TokenEntry, load_config
from toolshed.security import token_hash


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in (
        "TOOLSHED_CONFIG",
        "TOOLSHED_DATA_DIR",
        "TOOLSHED_CONTROL_PLANE_URL",
        "TOOLSHED_CATALOG_FILE",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    raw = {
        "server": {"base_url": "https://cp.example.com", "data_dir": str(tmp_path / "data")},
        "provisioning": {"region": "ams3", "ssh_key_ids": ["7"], "poll_attempts": 5},
        "heartbeat": {"timeout": 90},
        "auth": {"tokens": [{"token_sha256": token_hash("tok"), "user_id": "u1", "admin": True}]},
    }
    path = tmp_path / "toolshed.yaml"
    path.write_text(yaml.dump(raw))
    return path


class TestLoadConfig:
    def test_defaults_without_file(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        config = load_config()
        assert config.server.base_url == "http://localhost:8000"
        assert config.heartbeat.interval == 30
        assert config.heartbeat.timeout == 120
        assert config.host_agent.port == 30000
        assert config.auth.tokens == []

    def test_reads_yaml(self, config_file):
        config = load_config(config_file)
        assert config.server.base_url == "https://cp.example.com"
        assert config.provisioning.region == "ams3"
        assert config.provisioning.size == "s-1vcpu-1gb"
        assert config.provisioning.poll_attempts == 5
        assert config.heartbeat.timeout == 90
        assert config.auth.tokens[0].user_id == "u1"
        assert config.auth.tokens[0].admin is True

    def test_explicit_missing_path(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "nope.yaml")

    def test_env_path_missing(self, tmp_path, monkeypatch):
        monkeypatch.setenv("TOOLSHED_CONFIG", str(tmp_path / "nope.yaml"))
        with pytest.raises(FileNotFoundError):
            load_config()

    def test_env_overrides(self, config_file, monkeypatch):
        monkeypatch.setenv("TOOLSHED_DATA_DIR", "/var/lib/toolshed")
        monkeypatch.setenv("TOOLSHED_CONTROL_PLANE_URL", "https://other.example.com/")
        monkeypatch.setenv("TOOLSHED_CATALOG_FILE", "/etc/toolshed/catalog.yaml")
        config = load_config(config_file)
        assert config.server.data_dir == "/var/lib/toolshed"
        assert config.server.base_url == "https://other.example.com"
        assert config.server.catalog_file == "/etc/toolshed/catalog.yaml"

    def test_audit_path(self, tmp_path):
        config = ToolshedConfig()
        config.server.data_dir = str(tmp_path)
        assert config.audit_path == tmp_path / "audit"
        config.audit.log_dir = str(tmp_path / "elsewhere")
        assert config.audit_path == tmp_path / "elsewhere"

    def test_secrets_come_from_env(self, monkeypatch):
        monkeypatch.setenv("DIGITALOCEAN_TOKEN", "do-token")
        monkeypatch.delenv("TOOLSHED_SYSTEM_KEY", raising=False)
        config = ToolshedConfig()
        assert config.provisioning.api_token() == "do-token"
        assert config.host_agent.system_key() is None


class TestTokenEntry:
    def test_digest_normalized(self):
        entry = TokenEntry(token_sha256=token_hash("tok").upper(), user_id="u1")
        assert entry.token_sha256 == token_hash("tok")

    @pytest.mark.parametrize("digest", ["abc", "z" * 64, ""])
    def test_bad_digest(self, digest):
        with pytest.raises(ValidationError):
            TokenEntry(token_sha256=digest, user_id="u1")
