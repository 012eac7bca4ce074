"""Tests for the mcpexec command line."""

import json
import sys

import pytest
import yaml
from click.testing import CliRunner

from mcpexec.cli import cli
from mcpexec.logging import configure_logging


@pytest.fixture(autouse=True)
def _restore_logging():
    yield
    configure_logging()


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "mcpexec.yaml"
    config = {
        "sandbox": {
            "python_executable": sys.executable,
            "workspace_root": str(tmp_path),
            "docker_executable": "no-such-docker-binary",
        },
        "network": {"resolve_dns": False},
        "audit": {"backend": "jsonl", "path": str(tmp_path / "audit.jsonl")},
    }
    path.write_text(yaml.safe_dump(config), encoding="utf-8")
    return str(path)


def _invoke(config_file, *args):
    return CliRunner().invoke(cli, ["--config", config_file, "--log-level", "ERROR", *args])


class TestValidateCommand:
    def test_clean_program(self, config_file, tmp_path):
        program = tmp_path / "clean.py"
        program.write_text("async def main(inputs):\n    return 1\n", encoding="utf-8")
        result = _invoke(config_file, "validate", str(program))
        assert result.exit_code == 0
        assert "No violations" in result.output

    def test_critical_exits_2(self, config_file, tmp_path):
        program = tmp_path / "bad.py"
        program.write_text("eval('1')\n", encoding="utf-8")
        result = _invoke(config_file, "validate", "--json-output", str(program))
        assert result.exit_code == 2
        assert "eval_call" in result.output

    def test_language_from_suffix(self, config_file, tmp_path):
        program = tmp_path / "bad.ts"
        program.write_text('const f = new Function("return 1");\n', encoding="utf-8")
        result = _invoke(config_file, "validate", "--json-output", str(program))
        assert result.exit_code == 2
        assert "function_constructor" in result.output


class TestIndexCommands:
    def test_index(self, config_file, tools_dir, tmp_path):
        store = tmp_path / "store"
        result = _invoke(config_file, "index", str(tools_dir), "--store", str(store))
        assert result.exit_code == 0
        assert "2 loaded, 0 rejected" in result.output
        assert (store / "manifest.json").exists()

    def test_index_rejects_bad_descriptor(self, config_file, tools_dir):
        (tools_dir / "math" / "broken.json").write_text("{not json", encoding="utf-8")
        result = _invoke(config_file, "index", str(tools_dir))
        assert result.exit_code == 1
        assert "1 rejected" in result.output

    def test_search(self, config_file, tools_dir):
        result = _invoke(config_file, "search", "add numbers", "--tools-dir", str(tools_dir), "-k", "1")
        assert result.exit_code == 0
        assert "math/sum" in result.output

    def test_search_no_match(self, config_file, tools_dir):
        result = _invoke(config_file, "search", "teleport", "--tools-dir", str(tools_dir))
        assert "No matching tools" in result.output


class TestExecuteCommand:
    def test_program_runs(self, config_file, tmp_path):
        program = tmp_path / "double.py"
        program.write_text("async def main(inputs):\n    return inputs['x'] * 2\n", encoding="utf-8")
        result = _invoke(
            config_file, "execute", "double it", "--program", str(program), "--inputs", '{"x": 21}', "--json-output"
        )
        assert result.exit_code == 0, result.output
        assert '"value": 42' in result.output

    def test_blocked_exits_1(self, config_file, tmp_path):
        program = tmp_path / "bad.py"
        program.write_text("async def main(inputs):\n    return eval('1')\n", encoding="utf-8")
        result = _invoke(config_file, "execute", "compute", "--program", str(program))
        assert result.exit_code == 1
        assert "blocked" in result.output

    def test_bad_inputs(self, config_file):
        result = _invoke(config_file, "execute", "anything", "--inputs", "{oops")
        assert result.exit_code == 2


class TestAuditCommands:
    def test_verify_after_execute(self, config_file, tmp_path):
        program = tmp_path / "one.py"
        program.write_text("async def main(inputs):\n    return 1\n", encoding="utf-8")
        _invoke(config_file, "execute", "one", "--program", str(program))

        result = _invoke(config_file, "verify")
        assert result.exit_code == 0

        result = _invoke(config_file, "audit", "--json-output")
        entries = json.loads(result.stdout)
        assert [e["outcome"] for e in entries] == ["success"]

    def test_verify_detects_tampering(self, config_file, tmp_path):
        program = tmp_path / "one.py"
        program.write_text("async def main(inputs):\n    return 1\n", encoding="utf-8")
        _invoke(config_file, "execute", "one", "--program", str(program))

        path = tmp_path / "audit.jsonl"
        path.write_text(path.read_text(encoding="utf-8").replace('"success"', '"error"'), encoding="utf-8")
        result = _invoke(config_file, "verify")
        assert result.exit_code == 1

    def test_report(self, config_file):
        result = _invoke(config_file, "report", "--json-output")
        assert result.exit_code == 0
        assert json.loads(result.stdout)["total_entries"] == 0


class TestMisc:
    def test_status(self, config_file):
        result = _invoke(config_file, "status")
        assert result.exit_code == 0
        assert "process" in result.output

    def test_missing_config(self, tmp_path):
        result = CliRunner().invoke(cli, ["--config", str(tmp_path / "nope.yaml"), "status"])
        assert result.exit_code == 1
        assert "not found" in result.output

    def test_version(self):
        result = CliRunner().invoke(cli, ["--version"])
        assert "1.0.0" in result.output
