"""Tests for the toolshed CLI subcommands that do not start a server."""

from __future__ import annotations

import sys

import pytest
from cryptography.fernet import Fernet

from toolshed.__main__ import main
from toolshed.catalog import ToolCatalog
from toolshed.config import load_config
from toolshed.security import token_hash


def _run(monkeypatch, *argv: str) -> None:
    monkeypatch.setattr(sys, "argv", ["toolshed", *argv])
    main()


class TestInit:
    async def test_writes_loadable_files(self, tmp_path, monkeypatch, registry):
        _run(monkeypatch, "init", "--root", str(tmp_path), "--base-url", "https://cp.example.com")

        config = load_config(tmp_path / "toolshed.yaml")
        assert config.server.base_url == "https://cp.example.com"

        catalog = ToolCatalog(registry)
        assert await catalog.seed_from_file(tmp_path / "catalog.yaml") == 1
        [entry] = await catalog.list()
        assert entry.name == "echo-tool"
        assert entry.slot_for("api_key").env_var == "ECHO_API_KEY"

    def test_refuses_to_overwrite(self, tmp_path, monkeypatch, capsys):
        (tmp_path / "toolshed.yaml").write_text("server: {}\n")
        with pytest.raises(SystemExit) as exc_info:
            _run(monkeypatch, "init", "--root", str(tmp_path))
        assert exc_info.value.code == 1
        assert "already exists" in capsys.readouterr().err
        assert not (tmp_path / "catalog.yaml").exists()


class TestGenerators:
    def test_gen_token(self, monkeypatch, capsys):
        _run(monkeypatch, "gen-token", "--user-id", "u1", "--admin")
        out = capsys.readouterr().out
        token = out.split("shown once): ")[1].splitlines()[0]
        assert f"token_sha256: {token_hash(token)}" in out
        assert "user_id: u1" in out
        assert "admin: true" in out

    def test_gen_secret_key(self, monkeypatch, capsys):
        _run(monkeypatch, "gen-secret-key")
        key = capsys.readouterr().out.strip()
        Fernet(key)

    def test_no_command(self, monkeypatch):
        with pytest.raises(SystemExit):
            _run(monkeypatch)
