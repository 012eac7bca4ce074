"""
JSON Schema to host-language type mapping.

A total function: every schema maps to a type. ``object`` becomes a record
with required/optional fields, ``array`` a sequence, ``enum`` a union of
literals, ``oneOf``/``anyOf`` a (tagged) union. Anything the mapper does
not understand degrades to the permissive type (``any`` / ``Any``) and
records a warning.

Record types are emitted as named declarations, children before parents,
so the rendered artifact never needs forward references.
"""

from __future__ import annotations

import json
import keyword
import re
from dataclasses import dataclass, field
from typing import Any

from mcpexec.core.models import Language

TS_RESERVED = frozenset(
    """
    break case catch class const continue debugger default delete do else enum export extends
    false finally for function if import in instanceof new null return super switch this throw
    true try typeof var void while with as implements interface let package private protected
    public static yield any boolean number string symbol type from of await async
    """.split()
)

# Names the runtime prelude already binds
PRELUDE_NAMES = frozenset({"fetch", "main", "Response", "NetworkError", "ToolError", "__rpc__"})

_IDENT_RE = re.compile(r"[^0-9A-Za-z_]")


def to_camel_case(name: str) -> str:
    parts = [p for p in re.split(r"[^0-9A-Za-z]+", name) if p]
    if not parts:
        return "tool"
    head, *rest = parts
    return head[:1].lower() + head[1:] + "".join(p[:1].upper() + p[1:] for p in rest)


def to_snake_case(name: str) -> str:
    name = re.sub(r"(?<=[a-z0-9])([A-Z])", r"_\1", name)
    name = re.sub(r"[^0-9A-Za-z]+", "_", name).strip("_").lower()
    return name or "tool"


def to_pascal_case(name: str) -> str:
    camel = to_camel_case(name)
    return camel[:1].upper() + camel[1:]


def safe_identifier(name: str, language: Language) -> str:
    """Make ``name`` a legal, non-reserved identifier in the target language."""
    ident = _IDENT_RE.sub("_", name) or "_"
    if ident[0].isdigit():
        ident = "_" + ident
    if language == Language.PYTHON:
        if keyword.iskeyword(ident) or keyword.issoftkeyword(ident) or ident in PRELUDE_NAMES:
            ident += "_"
    elif ident in TS_RESERVED or ident in PRELUDE_NAMES:
        ident += "_"
    return ident


@dataclass
class RecordField:
    key: str
    name: str
    type: str
    required: bool
    description: str = ""


@dataclass
class Declaration:
    """A named type emitted ahead of the tool functions."""

    name: str
    kind: str  # "record" or "alias"
    fields: list[RecordField] = field(default_factory=list)
    type: str = ""


class TypeMapper:
    """Maps JSON Schemas to TypeScript or Python type expressions."""

    def __init__(self, language: Language):
        self.language = language
        self.declarations: list[Declaration] = []
        self.warnings: list[str] = []
        self._names: set[str] = set()

    @property
    def any_type(self) -> str:
        return "any" if self.language == Language.TYPESCRIPT else "Any"

    @property
    def unknown_record(self) -> str:
        return "Record<string, unknown>" if self.language == Language.TYPESCRIPT else "Dict[str, Any]"

    def reserve(self, name: str) -> str:
        candidate = name
        n = 2
        while candidate in self._names:
            candidate = f"{name}{n}"
            n += 1
        self._names.add(candidate)
        return candidate

    def map(self, schema: Any, hint: str) -> str:
        """Return the type expression for ``schema``; ``hint`` names records."""
        if schema is None or schema == {} or schema is True:
            return self.any_type
        if not isinstance(schema, dict):
            self.warnings.append(f"{hint}: schema is not an object; using {self.any_type}")
            return self.any_type

        if "const" in schema:
            return self._literal_union([schema["const"]], hint)
        if "enum" in schema:
            values = schema["enum"]
            if isinstance(values, list) and values:
                return self._literal_union(values, hint)
            self.warnings.append(f"{hint}: empty enum; using {self.any_type}")
            return self.any_type

        for combinator in ("oneOf", "anyOf"):
            if combinator in schema:
                variants = schema[combinator]
                if not isinstance(variants, list) or not variants:
                    self.warnings.append(f"{hint}: empty {combinator}; using {self.any_type}")
                    return self.any_type
                return self._union(
                    [self.map(v, f"{hint}{self._variant_suffix(v, i)}") for i, v in enumerate(variants)]
                )

        if "allOf" in schema:
            return self._all_of(schema["allOf"], hint)

        declared = schema.get("type")
        if isinstance(declared, list):
            return self._union([self.map({**schema, "type": t}, hint) for t in declared])

        if declared is None:
            if "properties" in schema:
                declared = "object"
            elif "items" in schema:
                declared = "array"
            else:
                return self.any_type

        if declared == "string":
            return "string" if self.language == Language.TYPESCRIPT else "str"
        if declared == "number":
            return "number" if self.language == Language.TYPESCRIPT else "float"
        if declared == "integer":
            return "number" if self.language == Language.TYPESCRIPT else "int"
        if declared == "boolean":
            return "boolean" if self.language == Language.TYPESCRIPT else "bool"
        if declared == "null":
            return "null" if self.language == Language.TYPESCRIPT else "None"
        if declared == "array":
            item = self.map(schema.get("items"), f"{hint}Item")
            return f"Array<{item}>" if self.language == Language.TYPESCRIPT else f"List[{item}]"
        if declared == "object":
            return self._object(schema, hint)

        self.warnings.append(f"{hint}: unknown type {declared!r}; using {self.any_type}")
        return self.any_type

    def record_fields(self, schema: dict[str, Any], hint: str) -> list[RecordField]:
        """Fields of an object schema in declaration order."""
        properties = schema.get("properties") or {}
        required = set(schema.get("required") or [])
        fields = []
        for key, sub in properties.items():
            description = sub.get("description", "") if isinstance(sub, dict) else ""
            fields.append(
                RecordField(
                    key=key,
                    name=safe_identifier(key if self.language == Language.TYPESCRIPT else to_snake_case(key), self.language),
                    type=self.map(sub, f"{hint}{to_pascal_case(key)}"),
                    required=key in required,
                    description=" ".join(str(description).split()),
                )
            )
        return fields

    def _object(self, schema: dict[str, Any], hint: str) -> str:
        properties = schema.get("properties")
        if not properties:
            extra = schema.get("additionalProperties")
            if isinstance(extra, dict) and extra:
                value = self.map(extra, f"{hint}Value")
                return f"Record<string, {value}>" if self.language == Language.TYPESCRIPT else f"Dict[str, {value}]"
            return self.unknown_record
        name = self.reserve(to_pascal_case(hint))
        fields = self.record_fields(schema, name)
        self.declarations.append(Declaration(name=name, kind="record", fields=fields))
        return name

    def _all_of(self, variants: Any, hint: str) -> str:
        if not isinstance(variants, list) or not variants:
            self.warnings.append(f"{hint}: empty allOf; using {self.any_type}")
            return self.any_type
        if all(isinstance(v, dict) and (v.get("type") == "object" or "properties" in v) for v in variants):
            merged: dict[str, Any] = {"type": "object", "properties": {}, "required": []}
            for variant in variants:
                merged["properties"].update(variant.get("properties") or {})
                merged["required"].extend(variant.get("required") or [])
            return self._object(merged, hint)
        if self.language == Language.TYPESCRIPT:
            return " & ".join(self.map(v, f"{hint}Part{i}") for i, v in enumerate(variants))
        self.warnings.append(f"{hint}: allOf over non-object schemas; using {self.any_type}")
        return self.any_type

    def _variant_suffix(self, variant: Any, index: int) -> str:
        """Name a union variant after its tag value when it has one."""
        if isinstance(variant, dict):
            for prop in (variant.get("properties") or {}).values():
                if isinstance(prop, dict):
                    tag = prop.get("const")
                    if tag is None and isinstance(prop.get("enum"), list) and len(prop["enum"]) == 1:
                        tag = prop["enum"][0]
                    if isinstance(tag, str) and tag:
                        return to_pascal_case(tag)
            if isinstance(variant.get("title"), str) and variant["title"]:
                return to_pascal_case(variant["title"])
        return f"Variant{index + 1}"

    def _literal_union(self, values: list[Any], hint: str) -> str:
        literals = []
        for value in values:
            if isinstance(value, bool):
                literals.append(("true" if value else "false") if self.language == Language.TYPESCRIPT else repr(value))
            elif isinstance(value, (str, int, float)):
                literals.append(json.dumps(value))
            elif value is None:
                literals.append("null" if self.language == Language.TYPESCRIPT else "None")
            else:
                self.warnings.append(f"{hint}: non-scalar enum value; using {self.any_type}")
                return self.any_type
        if self.language == Language.TYPESCRIPT:
            return " | ".join(dict.fromkeys(literals))
        return f"Literal[{', '.join(dict.fromkeys(literals))}]"

    def _union(self, types: list[str]) -> str:
        unique = list(dict.fromkeys(types))
        if len(unique) == 1:
            return unique[0]
        if self.any_type in unique:
            return self.any_type
        if self.language == Language.TYPESCRIPT:
            return " | ".join(unique)
        non_null = [t for t in unique if t != "None"]
        if len(non_null) < len(unique):
            inner = non_null[0] if len(non_null) == 1 else f"Union[{', '.join(non_null)}]"
            return f"Optional[{inner}]"
        return f"Union[{', '.join(unique)}]"
