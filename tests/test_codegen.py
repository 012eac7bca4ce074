"""Tests for the code generator, type mapping and artifact cache."""

import ast

import pytest

from mcpexec.codegen.cache import ArtifactCache
from mcpexec.codegen.generator import CodeGenerator, estimate_tokens, extract_dependencies
from mcpexec.codegen.typemap import TypeMapper, safe_identifier, to_camel_case, to_snake_case
from mcpexec.core.models import Language, ToolDescriptor
from mcpexec.exceptions import SchemaError


def _descriptor(name="sum", server="math", **schemas):
    return ToolDescriptor(
        name=name,
        server=server,
        description=f"{name} tool",
        input_schema=schemas.get(
            "input_schema",
            {
                "type": "object",
                "properties": {"a": {"type": "number"}, "b": {"type": "number"}},
                "required": ["a", "b"],
            },
        ),
        output_schema=schemas.get("output_schema", {"type": "number"}),
    )


# ─── Naming ──────────────────────────────────────────────────


class TestNaming:
    def test_case_conversion(self):
        assert to_camel_case("read-file_now") == "readFileNow"
        assert to_snake_case("readFileNow") == "read_file_now"

    def test_reserved_words_are_suffixed(self):
        assert safe_identifier("class", Language.PYTHON) == "class_"
        assert safe_identifier("delete", Language.TYPESCRIPT) == "delete_"
        assert safe_identifier("fetch", Language.PYTHON) == "fetch_"

    def test_leading_digit(self):
        assert safe_identifier("3d_render", Language.PYTHON) == "_3d_render"


# ─── Type Mapping ────────────────────────────────────────────


class TestTypeMapper:
    def test_scalars(self):
        ts = TypeMapper(Language.TYPESCRIPT)
        py = TypeMapper(Language.PYTHON)
        assert ts.map({"type": "integer"}, "X") == "number"
        assert py.map({"type": "integer"}, "X") == "int"
        assert py.map({"type": "array", "items": {"type": "string"}}, "X") == "List[str]"

    def test_enum_becomes_literal_union(self):
        assert TypeMapper(Language.TYPESCRIPT).map({"enum": ["a", "b"]}, "Mode") == '"a" | "b"'
        assert TypeMapper(Language.PYTHON).map({"enum": ["a", "b"]}, "Mode") == 'Literal["a", "b"]'

    def test_nullable_union(self):
        assert TypeMapper(Language.PYTHON).map({"type": ["string", "null"]}, "X") == "Optional[str]"

    def test_object_emits_declaration(self):
        mapper = TypeMapper(Language.TYPESCRIPT)
        name = mapper.map(
            {"type": "object", "properties": {"id": {"type": "string"}}, "required": ["id"]}, "user"
        )
        assert name == "User"
        assert mapper.declarations[0].fields[0].required is True

    def test_unknown_degrades_with_warning(self):
        mapper = TypeMapper(Language.PYTHON)
        assert mapper.map({"type": "decimal"}, "Price") == "Any"
        assert mapper.warnings

    def test_tagged_union_variant_names(self):
        mapper = TypeMapper(Language.TYPESCRIPT)
        result = mapper.map(
            {
                "oneOf": [
                    {"type": "object", "properties": {"kind": {"const": "circle"}, "r": {"type": "number"}}},
                    {"type": "object", "properties": {"kind": {"const": "square"}, "side": {"type": "number"}}},
                ]
            },
            "Shape",
        )
        assert result == "ShapeCircle | ShapeSquare"


# ─── Generator ───────────────────────────────────────────────


class TestCodeGenerator:
    def setup_method(self):
        self.generator = CodeGenerator()

    def test_python_surface_has_async_function(self):
        artifact = self.generator.generate([_descriptor()], Language.PYTHON)
        assert "async def sum(" in artifact.source
        assert artifact.tools == ("math/sum",)
        assert artifact.function_names == {"math/sum": "sum"}
        assert artifact.token_estimate == estimate_tokens(artifact.source)

    def test_typescript_surface_exports_function(self):
        artifact = self.generator.generate([_descriptor()], Language.TYPESCRIPT)
        assert "export async function sum(" in artifact.source
        assert "Promise<number>" in artifact.source

    def test_python_surface_parses(self):
        artifact = self.generator.generate([_descriptor()], Language.PYTHON)
        program = self.generator.default_program(artifact)
        prelude_names = "from typing import Any, Dict, List, Literal, NotRequired, Optional, TypedDict, Union\n"
        ast.parse(prelude_names + artifact.source + "\n" + program)

    def test_deterministic(self):
        first = self.generator.generate([_descriptor("b"), _descriptor("a")], Language.PYTHON)
        second = self.generator.generate([_descriptor("a"), _descriptor("b")], Language.PYTHON)
        assert first.fingerprint == second.fingerprint
        assert first.source == second.source

    def test_fingerprint_depends_on_language_and_schema(self):
        tools = [_descriptor()]
        assert self.generator.fingerprint(tools, Language.PYTHON) != self.generator.fingerprint(
            tools, Language.TYPESCRIPT
        )
        changed = [_descriptor(output_schema={"type": "string"})]
        assert self.generator.fingerprint(tools, Language.PYTHON) != self.generator.fingerprint(
            changed, Language.PYTHON
        )

    def test_name_collisions_use_server_prefix(self):
        artifact = self.generator.generate(
            [_descriptor("search", "web"), _descriptor("search", "docs")], Language.PYTHON
        )
        assert set(artifact.function_names.values()) == {"web_search", "docs_search"}

    def test_non_object_input_rejected(self):
        with pytest.raises(SchemaError):
            self.generator.generate([_descriptor(input_schema={"type": "string"})], Language.PYTHON)

    def test_assemble_wraps_program(self):
        artifact = self.generator.generate([_descriptor()], Language.PYTHON)
        source = self.generator.assemble(artifact, "async def main(inputs):\n    return 1\n")
        assert source.index("async def __rpc__") < source.index("async def sum(")
        assert source.index("async def sum(") < source.index("async def main(")
        assert source.rstrip().endswith("_mx_sys.exit(_mx_asyncio.run(_mx_main()))")
        assert repr("async def main(inputs):\n    return 1\n") in source
        assert "\nasync def main(" not in source


class TestDependencies:
    def test_python_stdlib_excluded(self):
        source = "import json\nimport numpy as np\nfrom pandas.core import frame\n"
        assert extract_dependencies(source, Language.PYTHON) == ("numpy", "pandas")

    def test_typescript_relative_excluded(self):
        source = 'import { z } from "zod";\nimport x from "./local.ts";\n'
        assert extract_dependencies(source, Language.TYPESCRIPT) == ("zod",)


# ─── Cache ───────────────────────────────────────────────────


class TestArtifactCache:
    def _artifact(self):
        return CodeGenerator().generate([_descriptor()], Language.PYTHON)

    def test_hit_and_miss(self):
        cache = ArtifactCache()
        artifact = self._artifact()
        assert cache.get(artifact.fingerprint) is None
        cache.put(artifact)
        assert cache.get(artifact.fingerprint) is artifact
        assert cache.stats() == {"entries": 1, "hits": 1, "misses": 1}

    def test_ttl_expiry(self):
        now = [0.0]
        cache = ArtifactCache(ttl_seconds=10, clock=lambda: now[0])
        artifact = self._artifact()
        cache.put(artifact)
        now[0] = 11.0
        assert cache.get(artifact.fingerprint) is None

    def test_invalidate_tool(self):
        cache = ArtifactCache()
        cache.put(self._artifact())
        assert cache.invalidate_tool("math/sum") == 1
        assert len(cache) == 0

    def test_spill_only_when_requested(self, tmp_path):
        cache = ArtifactCache(spill_dir=tmp_path / "spill")
        artifact = self._artifact()
        cache.put(artifact)
        assert not (tmp_path / "spill").exists()
        cache.put(artifact, persist=True)
        assert (tmp_path / "spill" / f"{artifact.fingerprint}.json").exists()
