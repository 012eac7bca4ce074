"""Tests for tool descriptor parsing, query derivation and the tool index."""

import json

import pytest

from mcpexec.core.models import ToolDescriptor
from mcpexec.discovery.index import ToolIndex
from mcpexec.discovery.query import derive_query, infer_category, tokenize
from mcpexec.discovery.schema import SchemaParser
from mcpexec.exceptions import NotFoundError, SchemaError

from conftest import SUM_TOOL, write_tool


# ─── Schema Parser ───────────────────────────────────────────


class TestSchemaParser:
    def setup_method(self):
        self.parser = SchemaParser(max_depth=8)

    def test_canonical_shape(self):
        descriptor = self.parser.parse(SUM_TOOL, server="math")
        assert descriptor.key == "math/sum"
        assert descriptor.input_schema["required"] == ["a", "b"]
        assert descriptor.output_schema == {"type": "number"}
        assert descriptor.tags == ("math",)

    def test_mcp_wire_spelling(self):
        descriptor = self.parser.parse(
            {"name": "ping", "inputSchema": {"type": "object", "properties": {}}, "outputSchema": {"type": "string"}},
            server="net",
        )
        assert descriptor.output_schema == {"type": "string"}

    def test_legacy_parameter_list(self):
        descriptor = self.parser.parse(
            {
                "name": "greet",
                "parameters": [
                    {"name": "who", "type": "string", "required": True},
                    {"name": "loud", "type": "boolean"},
                ],
            },
            server="demo",
        )
        assert descriptor.input_schema == {
            "type": "object",
            "properties": {"who": {"type": "string"}, "loud": {"type": "boolean"}},
            "required": ["who"],
        }

    def test_local_refs_are_inlined(self):
        descriptor = self.parser.parse(
            {
                "name": "create_user",
                "input_schema": {
                    "type": "object",
                    "properties": {"address": {"$ref": "#/definitions/Address"}},
                    "definitions": {
                        "Address": {"type": "object", "properties": {"city": {"type": "string"}}}
                    },
                },
            },
            server="crm",
        )
        assert descriptor.input_schema["properties"]["address"]["properties"]["city"] == {"type": "string"}
        assert "definitions" not in descriptor.input_schema

    def test_external_ref_rejected(self):
        with pytest.raises(SchemaError, match="unresolved"):
            self.parser.parse(
                {"name": "x", "input_schema": {"$ref": "https://example.com/schema.json"}}, server="s"
            )

    def test_circular_ref_rejected(self):
        with pytest.raises(SchemaError, match="circular"):
            self.parser.parse(
                {
                    "name": "tree",
                    "input_schema": {
                        "type": "object",
                        "properties": {"node": {"$ref": "#/$defs/Node"}},
                        "$defs": {
                            "Node": {"type": "object", "properties": {"child": {"$ref": "#/$defs/Node"}}}
                        },
                    },
                },
                server="s",
            )

    def test_depth_limit(self):
        schema = {"type": "string"}
        for _ in range(10):
            schema = {"type": "object", "properties": {"inner": schema}}
        with pytest.raises(SchemaError, match="deeper"):
            self.parser.parse({"name": "deep", "input_schema": schema}, server="s")

    def test_unknown_type_rejected(self):
        with pytest.raises(SchemaError, match="unknown type"):
            self.parser.parse(
                {"name": "bad", "input_schema": {"type": "object", "properties": {"x": {"type": "decimal"}}}},
                server="s",
            )

    def test_missing_name(self):
        with pytest.raises(SchemaError):
            self.parser.parse({"description": "nameless"}, server="s")

    def test_negative_cost_hint(self):
        with pytest.raises(SchemaError):
            self.parser.parse({"name": "x", "cost_hint": -1}, server="s")


# ─── Query Derivation ────────────────────────────────────────


class TestQuery:
    def test_tokenize_splits_identifiers(self):
        assert tokenize("readFile and list_directories") == ["read", "file", "list", "directorie"]

    def test_numbers_dropped_and_synonyms_added(self):
        query = derive_query("add 2 and 3")
        assert query.terms == ("add",)
        assert "sum" in query.expansions

    def test_category(self):
        assert infer_category("commit the staged changes") == "git"
        assert infer_category("say hello") == "general"


# ─── Tool Index ──────────────────────────────────────────────


def _tool(name, description, server="demo", tags=(), cost_hint=0.0):
    return ToolDescriptor(name=name, server=server, description=description, tags=tags, cost_hint=cost_hint)


class TestToolIndex:
    def setup_method(self):
        self.index = ToolIndex()
        self.index.rebuild(
            [
                _tool("sum", "Add two numbers", server="math", tags=("math",)),
                _tool("read_file", "Read a file from disk", server="fs"),
                _tool("delete_file", "Remove a file", server="fs"),
                _tool("send_email", "Send an email message", server="mail"),
            ]
        )

    def test_exact_lookup(self):
        assert self.index.get("math", "sum").description == "Add two numbers"
        assert self.index.get_by_key("fs/read_file").name == "read_file"

    def test_unknown_tool_is_not_found(self):
        with pytest.raises(NotFoundError):
            self.index.get("math", "divide")
        with pytest.raises(NotFoundError):
            self.index.get_by_key("no-separator")

    def test_search_uses_synonyms(self):
        results = self.index.search("add 2 and 3", k=3)
        assert results[0].key == "math/sum"

    def test_search_respects_k(self):
        assert len(self.index.search("file", k=1)) == 1
        assert self.index.search("file", k=0) == []

    def test_no_match(self):
        assert self.index.search("quantum teleportation") == []

    def test_ties_break_on_cost_then_key(self):
        index = ToolIndex()
        index.rebuild(
            [
                _tool("lookup_two", "lookup", cost_hint=1.0),
                _tool("lookup_one", "lookup", cost_hint=1.0),
                _tool("lookup_six", "lookup", cost_hint=0.5),
            ]
        )
        keys = [d.key for d in index.search("lookup", k=3)]
        assert keys == ["demo/lookup_six", "demo/lookup_one", "demo/lookup_two"]

    def test_rebuild_bumps_generation(self):
        generation = self.index.generation
        self.index.register(_tool("ping", "Ping a host", server="net"))
        assert self.index.generation == generation + 1
        assert len(self.index) == 5

    def test_replace_server(self):
        self.index.replace_server("fs", [_tool("stat_file", "File metadata", server="fs")])
        assert [d.key for d in self.index.descriptors() if d.server == "fs"] == ["fs/stat_file"]

    def test_replace_server_rejects_foreign_descriptor(self):
        with pytest.raises(SchemaError):
            self.index.replace_server("fs", [_tool("sum", "Add", server="math")])


class TestIndexFilesystem:
    def test_load_directory_reports_rejections(self, tmp_path):
        root = tmp_path / "tools"
        write_tool(root, "math", SUM_TOOL)
        (root / "broken").mkdir()
        (root / "broken" / "bad.json").write_text("{not json", encoding="utf-8")
        write_tool(root, "broken", {"name": "ref", "input_schema": {"$ref": "#/definitions/Missing"}})

        index = ToolIndex()
        report = index.load_directory(root)
        assert report.loaded == ["math/sum"]
        assert len(report.errors) == 2
        assert not report.ok
        assert len(index) == 1

    def test_missing_directory(self, tmp_path):
        report = ToolIndex().load_directory(tmp_path / "absent")
        assert not report.ok

    def test_persist_and_restore(self, tmp_path, tools_dir):
        index = ToolIndex()
        index.load_directory(tools_dir)
        manifest = index.persist(tmp_path / "store")
        data = json.loads(manifest.read_text(encoding="utf-8"))
        assert {t["name"] for t in data["tools"]} == {"sum", "send_message"}

        restored = ToolIndex()
        restored.load_manifest(tmp_path / "store")
        assert restored.get("math", "sum") == index.get("math", "sum")

    def test_restore_detects_tampering(self, tmp_path, tools_dir):
        index = ToolIndex()
        index.load_directory(tools_dir)
        store = tmp_path / "store"
        index.persist(store)
        obj = next((store / "objects").glob("*.json"))
        data = json.loads(obj.read_text(encoding="utf-8"))
        data["description"] = "tampered"
        obj.write_text(json.dumps(data), encoding="utf-8")

        with pytest.raises(SchemaError, match="hash mismatch"):
            ToolIndex().load_manifest(store)
