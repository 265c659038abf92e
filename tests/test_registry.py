"""Tests for servers.json loading."""

import os
from pathlib import Path

import pytest

from workflow_mcp_server.exceptions import (
    ConfigurationError,
    ExternalServerError,
    MissingEnvironmentVariableError,
)
from workflow_mcp_server.registry import (
    ServerRegistry,
    expand_placeholders,
    load_env_for_config_dir,
)


@pytest.fixture(autouse=True)
def clear_env_name(monkeypatch):
    monkeypatch.delenv("WORKFLOW_MCP_ENV", raising=False)


class TestServerRegistry:
    """Registry loading and validation."""

    def test_load_stdio_and_http(self, write_servers, tmp_path):
        write_servers(
            {
                "local": {
                    "type": "stdio",
                    "command": "npx",
                    "args": ["-y", "server", "--token=${TOKEN}"],
                    "env": {"API_TOKEN": "${TOKEN}"},
                    "timeoutMs": 5000,
                },
                "remote": {
                    "type": "http",
                    "url": "https://${HOST}/mcp",
                    "headers": {"Authorization": "Bearer ${TOKEN}"},
                    "auth": "oauth",
                    "tokenCacheDir": "tokens",
                },
            }
        )
        registry = ServerRegistry.load(tmp_path, environ={"TOKEN": "abc", "HOST": "mcp.example.com"})

        assert registry.names() == ["local", "remote"]
        assert len(registry) == 2
        assert "local" in registry

        local = registry.get("local")
        assert local.transport == "stdio"
        assert local.command == "npx"
        assert local.args == ("-y", "server", "--token=abc")
        assert local.env == {"API_TOKEN": "abc"}
        assert local.cwd == str(tmp_path.resolve())
        assert local.timeout_ms == 5000

        remote = registry.get("remote")
        assert remote.transport == "http"
        assert remote.url == "https://mcp.example.com/mcp"
        assert remote.headers == {"Authorization": "Bearer abc"}
        assert remote.auth == "oauth"
        assert remote.token_cache_dir == str((tmp_path / "tokens").resolve())

    def test_relative_cwd_resolves_against_config_dir(self, write_servers, tmp_path):
        write_servers({"local": {"type": "stdio", "command": "run", "cwd": "servers"}})
        registry = ServerRegistry.load(tmp_path, environ={})
        assert registry.get("local").cwd == str((tmp_path / "servers").resolve())

    def test_alias_with_colon_rejected(self, write_servers, tmp_path):
        write_servers({"context7:docs": {"type": "stdio", "command": "run"}})
        with pytest.raises(ConfigurationError, match="context7:docs"):
            ServerRegistry.load(tmp_path, environ={})

    def test_duplicate_normalized_alias_rejected(self, write_servers, tmp_path):
        write_servers(
            {
                "context7": {"type": "stdio", "command": "run"},
                "context7 ": {"type": "stdio", "command": "run"},
            }
        )
        with pytest.raises(ConfigurationError, match="Duplicate server alias 'context7'"):
            ServerRegistry.load(tmp_path, environ={})

    def test_blank_alias_rejected(self, write_servers, tmp_path):
        write_servers({"  ": {"type": "stdio", "command": "run"}})
        with pytest.raises(ConfigurationError, match="non-empty"):
            ServerRegistry.load(tmp_path, environ={})

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError, match="Missing MCP server registry"):
            ServerRegistry.load(tmp_path, environ={})

    def test_empty_servers(self, write_servers, tmp_path):
        write_servers({})
        with pytest.raises(ConfigurationError, match="No servers declared"):
            ServerRegistry.load(tmp_path, environ={})

    def test_malformed_json(self, tmp_path):
        (tmp_path / "servers.json").write_text("{not json")
        with pytest.raises(ConfigurationError, match="is invalid"):
            ServerRegistry.load(tmp_path, environ={})

    @pytest.mark.parametrize(
        "entry",
        [
            {"type": "http", "url": "ftp://example.com"},
            {"type": "http", "url": "not a url"},
            {"type": "stdio", "command": ""},
            {"type": "stdio", "command": "run", "timeoutMs": 0},
            {"type": "stdio", "command": "run", "timeoutMs": "100"},
            {"type": "stdio", "command": "run", "auth": "basic"},
            {"type": "socket", "command": "run"},
        ],
    )
    def test_invalid_entries(self, write_servers, tmp_path, entry):
        write_servers({"svc": entry})
        with pytest.raises(ConfigurationError, match="is invalid"):
            ServerRegistry.load(tmp_path, environ={})

    def test_missing_variable_names_alias_and_source(self, write_servers, tmp_path):
        write_servers({"svc": {"type": "stdio", "command": "run", "args": ["${NOPE}"]}})
        with pytest.raises(MissingEnvironmentVariableError) as exc_info:
            ServerRegistry.load(tmp_path, environ={})
        error = exc_info.value
        assert error.variable == "NOPE"
        assert error.alias == "svc"
        assert "servers.json" in error.message

    def test_unknown_alias(self, write_servers, tmp_path):
        write_servers({"svc": {"type": "stdio", "command": "run"}})
        registry = ServerRegistry.load(tmp_path, environ={})
        with pytest.raises(ExternalServerError, match="Server alias 'other' is not defined"):
            registry.get("other")

    def test_child_env_layers(self, write_servers, tmp_path, monkeypatch):
        monkeypatch.setenv("SHARED", "from_shell")
        (tmp_path / ".env").write_text("FILE_ONLY=1\nSHARED=from_file\n")
        write_servers({"svc": {"type": "stdio", "command": "run", "env": {"SHARED": "alias"}}})
        registry = ServerRegistry.load(tmp_path)
        env = registry.child_env("svc")
        assert env["FILE_ONLY"] == "1"
        assert env["SHARED"] == "alias"


class TestEnvironmentResolution:
    """``.env`` layering and placeholder precedence."""

    def test_process_env_wins_over_file(self, write_servers, tmp_path):
        (tmp_path / ".env").write_text("X=from_file\n")
        write_servers({"svc": {"type": "stdio", "command": "run", "args": ["${X}"]}})
        registry = ServerRegistry.load(tmp_path, environ={"X": "from_shell"})
        assert registry.get("svc").args == ("from_shell",)

    def test_file_value_used_when_process_env_unset(self, write_servers, tmp_path, monkeypatch):
        monkeypatch.delenv("X", raising=False)
        (tmp_path / ".env").write_text("X=from_file\n")
        write_servers({"svc": {"type": "stdio", "command": "run", "args": ["${X}"]}})
        registry = ServerRegistry.load(tmp_path)
        assert registry.get("svc").args == ("from_file",)
        assert "X" not in os.environ

    def test_file_precedence(self, tmp_path):
        (tmp_path / ".env").write_text("X=1\nA=base\n")
        (tmp_path / ".env.local").write_text("X=2\n")
        (tmp_path / ".env.staging").write_text("X=3\nB=staging\n")
        (tmp_path / ".env.staging.local").write_text("X=4\n")

        assert load_env_for_config_dir(tmp_path)["X"] == "2"
        staged = load_env_for_config_dir(tmp_path, "staging")
        assert staged == {"X": "4", "A": "base", "B": "staging"}

    def test_env_name_from_environment(self, tmp_path, monkeypatch):
        monkeypatch.setenv("WORKFLOW_MCP_ENV", "prod")
        (tmp_path / ".env").write_text("X=1\n")
        (tmp_path / ".env.prod").write_text("X=prod\n")
        assert load_env_for_config_dir(tmp_path)["X"] == "prod"

    def test_no_files(self, tmp_path):
        assert load_env_for_config_dir(Path(tmp_path)) == {}

    def test_expand_placeholders(self):
        assert expand_placeholders("a-${X}-${Y}", "svc", "servers.json", {"X": "1", "Y": "2"}) == "a-1-2"
        with pytest.raises(MissingEnvironmentVariableError, match="'Z'"):
            expand_placeholders("${Z}", "svc", "servers.json", {})
