"""Tests for the MCP stdio client pool against a fake server."""

import sys

import pytest
import yaml
from click.testing import CliRunner

from mcpexec.cli import cli
from mcpexec.config import McpServerConfig, load_config
from mcpexec.core.models import Outcome
from mcpexec.discovery.mcp_client import MCPClientPool
from mcpexec.engine.orchestrator import ExecutionEngine
from mcpexec.exceptions import ToolInvocationError
from mcpexec.logging import configure_logging

from conftest import FAKE_MCP_SERVER


class TestMCPClientPool:
    @pytest.mark.asyncio
    async def test_lists_tools(self, fake_mcp_server):
        async with MCPClientPool({"calc": fake_mcp_server}) as pool:
            descriptors = {d.key: d for d in pool.connections["calc"].tools}
            assert set(descriptors) == {"calc/add", "calc/fail"}
            assert descriptors["calc/add"].input_schema["required"] == ["a", "b"]
            assert pool.serves("calc")
            assert pool.status() == {"calc": True}

    @pytest.mark.asyncio
    async def test_invoke(self, fake_mcp_server):
        async with MCPClientPool({"calc": fake_mcp_server}) as pool:
            add = next(d for d in pool.connections["calc"].tools if d.name == "add")
            assert await pool.invoke(add, {"a": 2, "b": 3}) == 5

    @pytest.mark.asyncio
    async def test_tool_error(self, fake_mcp_server):
        async with MCPClientPool({"calc": fake_mcp_server}) as pool:
            fail = next(d for d in pool.connections["calc"].tools if d.name == "fail")
            with pytest.raises(ToolInvocationError, match="upstream down"):
                await pool.invoke(fail, {})

    @pytest.mark.asyncio
    async def test_broken_server_is_skipped(self, fake_mcp_server):
        broken = McpServerConfig(command=sys.executable, args=["-c", "import sys; sys.exit(3)"], connect_timeout_seconds=5)
        pool = MCPClientPool({"broken": broken, "calc": fake_mcp_server})
        try:
            descriptors = await pool.connect()
            assert "broken" in pool.failures
            assert not pool.serves("broken")
            assert {d.server for d in descriptors} == {"calc"}
        finally:
            await pool.close()

    @pytest.mark.asyncio
    async def test_disabled_server_not_started(self, fake_mcp_server):
        disabled = fake_mcp_server.model_copy(update={"enabled": False})
        pool = MCPClientPool({"calc": disabled})
        assert await pool.connect() == []
        assert pool.status() == {}


class TestEngineWithMCP:
    @pytest.mark.asyncio
    async def test_program_calls_mcp_tool(self, engine_config, fake_mcp_server):
        config = engine_config.model_copy(update={"mcp_servers": {"calc": fake_mcp_server}})
        program = "async def main(inputs):\n    return await add(a=inputs['a'], b=inputs['b'])\n"
        async with ExecutionEngine(config, resolver=None) as engine:
            assert "calc/add" in {d.key for d in engine.search_tools("add two numbers", k=10)}
            result = await engine.execute("add 2 and 3", program=program, inputs={"a": 2, "b": 3}, tools=["calc/add"])
            assert result.outcome == Outcome.SUCCESS, result.error
            assert result.value == 5
            status = await engine.status()
            assert status["mcp_servers"] == {"calc": True}

    @pytest.mark.asyncio
    async def test_local_invoker_still_serves_other_tools(self, engine_config, fake_mcp_server, invoker):
        config = engine_config.model_copy(update={"mcp_servers": {"calc": fake_mcp_server}})
        async with ExecutionEngine(config, tool_invoker=invoker, resolver=None) as engine:
            result = await engine.execute("add 2 and 3", inputs={"a": 2, "b": 3}, tools=["math/sum"])
            assert result.value == 5
            assert invoker.calls == [("math/sum", {"a": 2, "b": 3})]


class TestMcpAddCommand:
    @pytest.fixture(autouse=True)
    def _restore_logging(self):
        yield
        configure_logging()

    def test_writes_server(self, tmp_path):
        target = tmp_path / "mcpexec.yaml"
        target.write_text(yaml.safe_dump({"audit_retention_days": 30}), encoding="utf-8")
        result = CliRunner().invoke(
            cli,
            ["--log-level", "ERROR", "mcp-add", "calc", "--file", str(target), "--env", "TOKEN=abc",
             "--", sys.executable, str(FAKE_MCP_SERVER)],
        )
        assert result.exit_code == 0, result.output
        config = load_config(target)
        assert config.audit_retention_days == 30
        server = config.mcp_servers["calc"]
        assert server.command == sys.executable
        assert server.args == [str(FAKE_MCP_SERVER)]
        assert server.env == {"TOKEN": "abc"}

    def test_lists_tools_when_testing(self, tmp_path):
        target = tmp_path / "new.yaml"
        result = CliRunner().invoke(
            cli,
            ["--log-level", "ERROR", "mcp-add", "calc", "--file", str(target), "--test",
             "--", sys.executable, str(FAKE_MCP_SERVER)],
        )
        assert result.exit_code == 0, result.output
        assert "add" in result.output and "2 tools" in result.output
        assert "calc" in load_config(target).mcp_servers

    def test_bad_env_pair(self, tmp_path):
        result = CliRunner().invoke(
            cli, ["mcp-add", "calc", "--file", str(tmp_path / "x.yaml"), "--env", "NOVALUE", "--", "server"]
        )
        assert result.exit_code == 2
        assert not (tmp_path / "x.yaml").exists()
