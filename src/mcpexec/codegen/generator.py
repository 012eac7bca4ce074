"""
mcpexec Code Generator

Turns a set of tool descriptors into a typed, importable API surface in
TypeScript or Python. Generation is template-driven (jinja2, strict
undefined) and deterministic: the same descriptors, templates and
language always yield the same fingerprint and byte-identical source.

The generator also assembles the full sandbox program:

    prelude (runtime shim) + artifact + user program + entry epilogue

The prelude and epilogue are fixed templates owned by the engine; only
the artifact and the user program are subject to validation.
"""

from __future__ import annotations

import hashlib
import json
import math
import re
import sys
import textwrap
from dataclasses import dataclass, field
from typing import Any, Iterable

from jinja2 import Environment, PackageLoader, StrictUndefined
from jinja2 import TemplateError as JinjaTemplateError

from mcpexec.codegen.typemap import (
    TypeMapper,
    safe_identifier,
    to_camel_case,
    to_pascal_case,
    to_snake_case,
)
from mcpexec.core.models import GeneratedArtifact, Language, ToolDescriptor
from mcpexec.exceptions import SchemaError, TemplateError
from mcpexec.logging import get_logger

logger = get_logger("mcpexec.codegen")

GENERATOR_VERSION = "1.0"

_SUFFIX = {Language.PYTHON: "py", Language.TYPESCRIPT: "ts"}

_PY_IMPORT_RE = re.compile(r"^\s*(?:from\s+([A-Za-z_][\w.]*)\s+import|import\s+([A-Za-z_][\w.]*(?:\s*,\s*[A-Za-z_][\w.]*)*))", re.M)
_TS_IMPORT_RE = re.compile(r"""(?:import\s[^'"]*?from\s*|import\s*\(\s*|require\s*\(\s*|import\s+)['"]([^'"]+)['"]""")


def estimate_tokens(source: str) -> int:
    """Token estimate: whitespace-normalised length / 4, rounded up."""
    return math.ceil(len(" ".join(source.split())) / 4)


def extract_dependencies(source: str, language: Language) -> tuple[str, ...]:
    """Third-party modules a program imports (stdlib and relative imports excluded)."""
    found: set[str] = set()
    if language == Language.PYTHON:
        for match in _PY_IMPORT_RE.finditer(source):
            names = match.group(1) or match.group(2) or ""
            for name in names.split(","):
                top = name.strip().split(".")[0]
                if top and top not in sys.stdlib_module_names and not top.startswith("_mx_"):
                    found.add(top)
    else:
        for match in _TS_IMPORT_RE.finditer(source):
            spec = match.group(1)
            if spec.startswith((".", "/", "data:")):
                continue
            found.add(spec)
    return tuple(sorted(found))


def _comment_lines(text: str, width: int = 88) -> list[str]:
    text = " ".join(text.split())
    return textwrap.wrap(text, width=width) if text else []


@dataclass
class _ToolView:
    """Template-facing view of one tool."""

    descriptor: ToolDescriptor
    function: str
    input_type: str = ""
    input_required: bool = False
    return_type: str = ""
    params: list[Any] = field(default_factory=list)
    doc_lines: list[str] = field(default_factory=list)

    @property
    def name(self) -> str:
        return self.descriptor.name

    @property
    def server(self) -> str:
        return self.descriptor.server


class CodeGenerator:
    """Generates typed API surfaces from tool descriptors."""

    def __init__(self, env: Environment | None = None):
        self.env = env or Environment(
            loader=PackageLoader("mcpexec", "codegen/templates"),
            undefined=StrictUndefined,
            keep_trailing_newline=True,
            trim_blocks=True,
            lstrip_blocks=True,
            autoescape=False,
        )
        self.env.filters["pystr"] = lambda value: json.dumps(str(value))
        self.env.filters["tsstr"] = lambda value: json.dumps(str(value))
        self.env.filters["tsdoc"] = lambda value: str(value).replace("*/", "* /")
        self._template_hashes: dict[str, str] = {}

    # ─── Template Access ─────────────────────────────────────

    def _template_name(self, kind: str, language: Language) -> str:
        return f"{language.value}_{kind}.{_SUFFIX[language]}.j2"

    def _template_hash(self, name: str) -> str:
        if name not in self._template_hashes:
            try:
                source, _, _ = self.env.loader.get_source(self.env, name)
            except JinjaTemplateError as exc:
                raise TemplateError(name, f"template not found: {exc}") from exc
            self._template_hashes[name] = hashlib.sha256(source.encode()).hexdigest()
        return self._template_hashes[name]

    def _render(self, kind: str, language: Language, **context: Any) -> str:
        name = self._template_name(kind, language)
        try:
            template = self.env.get_template(name)
            return template.render(generator_version=GENERATOR_VERSION, **context)
        except JinjaTemplateError as exc:
            raise TemplateError(name, str(exc)) from exc

    # ─── Fingerprint ─────────────────────────────────────────

    def fingerprint(self, tools: Iterable[ToolDescriptor], language: Language) -> str:
        """Hash of the input schemas, template sources and target language."""
        ordered = sorted(tools, key=lambda t: t.key)
        digest = hashlib.sha256()
        digest.update(language.value.encode())
        digest.update(GENERATOR_VERSION.encode())
        digest.update(self._template_hash(self._template_name("artifact", language)).encode())
        for tool in ordered:
            digest.update(tool.content_hash.encode())
        return digest.hexdigest()

    # ─── Generation ──────────────────────────────────────────

    def _function_names(self, tools: list[ToolDescriptor], language: Language) -> dict[str, str]:
        convert = to_snake_case if language == Language.PYTHON else to_camel_case
        base = {t.key: safe_identifier(convert(t.name), language) for t in tools}
        counts: dict[str, int] = {}
        for name in base.values():
            counts[name] = counts.get(name, 0) + 1
        names: dict[str, str] = {}
        for tool in tools:
            name = base[tool.key]
            if counts[name] > 1:
                name = safe_identifier(convert(f"{tool.server}_{tool.name}"), language)
            names[tool.key] = name
        return names

    def generate(self, tools: Iterable[ToolDescriptor], language: Language) -> GeneratedArtifact:
        """Render the typed surface for ``tools`` in ``language``.

        Raises:
            SchemaError: If a descriptor's input schema is not an object schema.
            TemplateError: If a template is missing or fails to render.
        """
        ordered = sorted(tools, key=lambda t: t.key)
        fingerprint = self.fingerprint(ordered, language)
        names = self._function_names(ordered, language)
        mapper = TypeMapper(language)
        for name in names.values():
            mapper.reserve(name)

        views = []
        for tool in ordered:
            schema = tool.input_schema or {"type": "object", "properties": {}}
            if schema.get("type", "object") != "object":
                raise SchemaError(tool.name, "input schema must describe an object")
            function = names[tool.key]
            view = _ToolView(descriptor=tool, function=function)
            view.doc_lines = _comment_lines(tool.description)
            view.input_required = bool(schema.get("required"))
            if language == Language.TYPESCRIPT:
                view.input_type = mapper.map(schema, f"{to_pascal_case(function)}Input")
            else:
                view.params = mapper.record_fields(schema, f"{to_pascal_case(function)}Input")
            view.return_type = mapper.map(tool.output_schema or None, f"{to_pascal_case(function)}Output")
            views.append(view)

        source = self._render(
            "artifact",
            language,
            tools=views,
            declarations=mapper.declarations,
            fingerprint=fingerprint,
        )
        warnings = tuple(mapper.warnings)
        for warning in warnings:
            logger.warning("Type degraded: %s", warning, extra={"fingerprint": fingerprint[:16]})

        artifact = GeneratedArtifact(
            fingerprint=fingerprint,
            language=language,
            source=source,
            token_estimate=estimate_tokens(source),
            dependencies=extract_dependencies(source, language),
            tools=tuple(t.key for t in ordered),
            function_names=names,
            warnings=warnings,
        )
        logger.debug(
            "Generated %s surface for %d tools (%d tokens)",
            language.value, len(ordered), artifact.token_estimate,
            extra={"fingerprint": fingerprint[:16]},
        )
        return artifact

    # ─── Program Assembly ────────────────────────────────────

    def default_program(self, artifact: GeneratedArtifact) -> str:
        """A ``main`` that forwards the inputs to the first tool in the artifact."""
        if not artifact.tools:
            raise TemplateError(self._template_name("driver", artifact.language), "artifact exposes no tools")
        function = artifact.function_names[artifact.tools[0]]
        return self._render("driver", artifact.language, function=function)

    def assemble(self, artifact: GeneratedArtifact, program: str) -> str:
        """Full source run inside the sandbox.

        Python programs are embedded as a string literal and run by the entry
        in a namespace of their own, apart from the runtime's globals.
        """
        prelude = self._render("prelude", artifact.language)
        if artifact.language == Language.PYTHON:
            entry = self._render("entry", artifact.language, program_literal=repr(program))
            parts = (prelude, artifact.source, entry)
        else:
            entry = self._render("entry", artifact.language)
            parts = (prelude, artifact.source, program, entry)
        return "\n".join(part.rstrip("\n") + "\n" for part in parts)
