"""Shared test fixtures for the mcpexec test suite."""

import json
import sys
from pathlib import Path

import pytest

from mcpexec.config import McpServerConfig, parse_config
from mcpexec.core.models import ToolDescriptor

SUM_TOOL = {
    "name": "sum",
    "description": "Add two numbers and return the total",
    "input_schema": {
        "type": "object",
        "properties": {"a": {"type": "number"}, "b": {"type": "number"}},
        "required": ["a", "b"],
    },
    "output_schema": {"type": "number"},
    "tags": ["math"],
}

SEND_MESSAGE_TOOL = {
    "name": "send_message",
    "description": "Send a notification message to a recipient",
    "input_schema": {
        "type": "object",
        "properties": {"to": {"type": "string"}, "body": {"type": "string"}},
        "required": ["to"],
    },
    "output_schema": {"type": "object", "properties": {"sent": {"type": "boolean"}}},
    "tags": ["notify"],
}


def write_tool(root, server, descriptor):
    server_dir = root / server
    server_dir.mkdir(parents=True, exist_ok=True)
    path = server_dir / f"{descriptor['name']}.json"
    path.write_text(json.dumps(descriptor), encoding="utf-8")
    return path


@pytest.fixture
def tools_dir(tmp_path):
    root = tmp_path / "tools"
    write_tool(root, "math", SUM_TOOL)
    write_tool(root, "notify", SEND_MESSAGE_TOOL)
    return root


@pytest.fixture
def sum_descriptor():
    return ToolDescriptor(server="math", **SUM_TOOL)


@pytest.fixture
def engine_config(tmp_path, tools_dir):
    return parse_config(
        {
            "security": {"level": "moderate"},
            "sandbox": {
                "python_executable": sys.executable,
                "wall_timeout_ms": 20_000,
                "workspace_root": str(tmp_path),
                "allow_degradation": False,
            },
            "network": {"resolve_dns": False},
            "audit": {"backend": "jsonl", "path": str(tmp_path / "audit.jsonl")},
            "index": {"tools_dir": str(tools_dir)},
        }
    )


class RecordingInvoker:
    """Tool invoker that records every call and computes a few tools locally."""

    def __init__(self):
        self.calls = []

    async def __call__(self, descriptor, arguments):
        self.calls.append((descriptor.key, arguments))
        if descriptor.name == "sum":
            return arguments["a"] + arguments["b"]
        if descriptor.name == "send_message":
            return {"sent": True}
        raise RuntimeError(f"unexpected tool {descriptor.key}")


@pytest.fixture
def invoker():
    return RecordingInvoker()


FAKE_MCP_SERVER = Path(__file__).with_name("fake_mcp_server.py")


@pytest.fixture
def fake_mcp_server():
    return McpServerConfig(command=sys.executable, args=[str(FAKE_MCP_SERVER)], connect_timeout_seconds=20)
