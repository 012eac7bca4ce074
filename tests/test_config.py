"""Tests for mcpexec configuration loading."""

import json

import pytest

from mcpexec.config import EngineConfig, McpServerConfig, load_config, parse_config, parse_memory, save_mcp_server
from mcpexec.core.models import FilesystemScope, SecurityLevel
from mcpexec.exceptions import ConfigError


class TestParseMemory:
    def test_units(self):
        assert parse_memory("512M") == 512 * 1024 * 1024
        assert parse_memory("1G") == 1024**3
        assert parse_memory("64k") == 64 * 1024

    def test_raw_bytes(self):
        assert parse_memory(4096) == 4096
        assert parse_memory("4096") == 4096

    @pytest.mark.parametrize("value", ["", "12MB", "-1M", "1T", 0])
    def test_invalid(self, value):
        with pytest.raises(ValueError):
            parse_memory(value)


class TestDefaults:
    def test_every_key_has_a_default(self):
        config = EngineConfig()
        assert config.security.level == SecurityLevel.MODERATE
        assert config.sandbox.memory_bytes == 512 * 1024 * 1024
        assert config.sandbox.wall_timeout_ms == 30_000
        assert config.sandbox.filesystem_scope == FilesystemScope.WORKSPACE_ONLY
        assert config.network.allowed_domains == []
        assert config.network.rate_limit_requests == 100
        assert config.audit_retention_days == 400
        assert config.approval.auto_approve_low is True
        assert config.approval.auto_approve_critical is False

    def test_limits_follow_sandbox_section(self):
        config = parse_config({"sandbox": {"memory": "256M", "cpu_quota": 0.5, "wall_timeout_ms": 5000}})
        limits = config.sandbox.limits()
        assert limits.memory_bytes == 256 * 1024 * 1024
        assert limits.cpu_quota == 0.5
        assert limits.wall_timeout_ms == 5000


class TestParseConfig:
    def test_unknown_keys_are_warnings(self):
        config = parse_config({"bogus": 1, "sandbox": {"turbo": True}})
        assert any("'bogus'" in w for w in config.warnings)
        assert any("'sandbox.turbo'" in w for w in config.warnings)

    def test_critical_never_auto_approved(self):
        config = parse_config({"approval": {"auto_approve_critical": True}})
        assert config.approval.auto_approve_critical is False
        assert any("auto_approve_critical" in w for w in config.warnings)

    def test_invalid_memory_rejected(self):
        with pytest.raises(ConfigError):
            parse_config({"sandbox": {"memory": "lots"}})

    def test_timeout_bounds(self):
        with pytest.raises(ConfigError):
            parse_config({"sandbox": {"wall_timeout_ms": 10}})
        with pytest.raises(ConfigError):
            parse_config({"sandbox": {"wall_timeout_ms": 600_000}})

    def test_retention_must_cover_compliance_scopes(self):
        with pytest.raises(ConfigError):
            parse_config({"compliance_scopes": ["hipaa"], "audit_retention_days": 400})
        config = parse_config({"compliance_scopes": ["HIPAA"], "audit_retention_days": 2190})
        assert config.compliance_scopes == ["hipaa"]

    def test_unknown_compliance_scope(self):
        with pytest.raises(ConfigError):
            parse_config({"compliance_scopes": ["pci"]})

    def test_non_mapping_document(self):
        with pytest.raises(ConfigError):
            parse_config(["not", "a", "mapping"])


class TestLoadConfig:
    def test_defaults_without_path(self, monkeypatch):
        monkeypatch.delenv("MCPEXEC_CONFIG", raising=False)
        assert load_config() == EngineConfig()

    def test_yaml(self, tmp_path):
        path = tmp_path / "mcpexec.yaml"
        path.write_text(
            "security:\n  level: high\nnetwork:\n  allowed_domains: [api.example.com]\n",
            encoding="utf-8",
        )
        config = load_config(path)
        assert config.security.level == SecurityLevel.HIGH
        assert config.network.allowed_domains == ["api.example.com"]

    def test_json(self, tmp_path):
        path = tmp_path / "mcpexec.json"
        path.write_text(json.dumps({"audit_retention_days": 500}), encoding="utf-8")
        assert load_config(path).audit_retention_days == 500

    def test_env_var(self, tmp_path, monkeypatch):
        path = tmp_path / "env.yaml"
        path.write_text("sandbox:\n  pool_size: 2\n", encoding="utf-8")
        monkeypatch.setenv("MCPEXEC_CONFIG", str(path))
        assert load_config().sandbox.pool_size == 2

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError):
            load_config(tmp_path / "nope.yaml")

    def test_malformed_yaml(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("security: [unclosed\n", encoding="utf-8")
        with pytest.raises(ConfigError):
            load_config(path)


class TestMcpServers:
    def test_parsed_with_defaults(self):
        config = parse_config({"mcp_servers": {"fs": {"command": "npx", "args": ["-y", "server-fs"]}}})
        server = config.mcp_servers["fs"]
        assert server.args == ["-y", "server-fs"]
        assert server.enabled is True
        assert server.call_timeout_seconds == 60.0

    def test_command_required(self):
        with pytest.raises(ConfigError):
            parse_config({"mcp_servers": {"fs": {"args": []}}})

    def test_save_keeps_other_keys(self, tmp_path):
        path = tmp_path / "mcpexec.json"
        path.write_text(json.dumps({"audit_retention_days": 500}), encoding="utf-8")
        save_mcp_server(path, "fs", McpServerConfig(command="npx", args=["server-fs"]))
        data = json.loads(path.read_text(encoding="utf-8"))
        assert data["audit_retention_days"] == 500
        assert data["mcp_servers"] == {"fs": {"command": "npx", "args": ["server-fs"]}}

    def test_save_rejects_invalid_document(self, tmp_path):
        path = tmp_path / "mcpexec.yaml"
        path.write_text("- a list\n", encoding="utf-8")
        with pytest.raises(ConfigError):
            save_mcp_server(path, "fs", McpServerConfig(command="npx"))
