"""
Tool Descriptor Schema Parser

Normalises descriptor files into ToolDescriptor objects. Accepts the
canonical shape ``{name, description, input_schema, output_schema, tags?,
cost_hint?}``, the MCP wire spelling (``inputSchema``/``outputSchema``)
and the legacy ``parameters``/``returns`` list form.

Local ``#/definitions/...`` and ``#/$defs/...`` references are inlined so
every stored schema is self-contained. Anything else is rejected with
SchemaError: external or dangling ``$ref``, circular references, schemas
nested deeper than the configured limit.
"""

from __future__ import annotations

from typing import Any

from mcpexec.core.models import ToolDescriptor
from mcpexec.exceptions import SchemaError

JSON_SCHEMA_TYPES = {"string", "number", "integer", "boolean", "array", "object", "null"}
_LOCAL_REF_PREFIXES = ("#/definitions/", "#/$defs/")


class SchemaParser:
    """Parses and validates raw tool descriptor documents."""

    def __init__(self, max_depth: int = 32):
        self._max_depth = max_depth

    def parse(self, data: dict[str, Any], server: str) -> ToolDescriptor:
        """Build a ToolDescriptor from a raw descriptor document."""
        if not isinstance(data, dict):
            raise SchemaError("<unknown>", "descriptor must be a JSON object")

        name = data.get("name")
        if not isinstance(name, str) or not name.strip():
            raise SchemaError("<unknown>", "descriptor is missing a non-empty 'name'")
        name = name.strip()

        description = data.get("description") or ""
        if not isinstance(description, str):
            raise SchemaError(name, "'description' must be a string")

        if "input_schema" in data or "inputSchema" in data:
            input_schema = data.get("input_schema", data.get("inputSchema")) or {}
        elif "parameters" in data:
            input_schema = self._from_parameter_list(name, data["parameters"])
        else:
            input_schema = {"type": "object", "properties": {}}

        if "output_schema" in data or "outputSchema" in data:
            output_schema = data.get("output_schema", data.get("outputSchema")) or {}
        elif isinstance(data.get("returns"), dict):
            output_schema = dict(data["returns"])
        else:
            output_schema = {}

        input_schema = self.resolve(name, input_schema)
        output_schema = self.resolve(name, output_schema)
        self.validate_schema(name, input_schema)
        self.validate_schema(name, output_schema)

        tags = data.get("tags") or []
        if not isinstance(tags, list) or not all(isinstance(t, str) for t in tags):
            raise SchemaError(name, "'tags' must be a list of strings")

        cost_hint = data.get("cost_hint", data.get("costHint", 0.0))
        try:
            cost_hint = float(cost_hint)
        except (TypeError, ValueError):
            raise SchemaError(name, f"'cost_hint' must be a number, got {cost_hint!r}") from None
        if cost_hint < 0:
            raise SchemaError(name, "'cost_hint' must be non-negative")

        return ToolDescriptor(
            name=name,
            server=server,
            description=description.strip(),
            input_schema=input_schema,
            output_schema=output_schema,
            tags=tuple(sorted({t.strip().lower() for t in tags if t.strip()})),
            cost_hint=cost_hint,
            version=str(data.get("version", "1")),
        )

    def _from_parameter_list(self, name: str, parameters: Any) -> dict[str, Any]:
        """Convert the legacy ``[{name, type, description, required}]`` form."""
        if isinstance(parameters, dict):
            return parameters
        if not isinstance(parameters, list):
            raise SchemaError(name, "'parameters' must be a list or a JSON Schema object")

        properties: dict[str, Any] = {}
        required: list[str] = []
        for param in parameters:
            if not isinstance(param, dict) or not param.get("name"):
                raise SchemaError(name, "every parameter needs a 'name'")
            pname = param["name"]
            if pname in properties:
                raise SchemaError(name, f"duplicate parameter '{pname}'")
            prop: dict[str, Any] = {"type": param.get("type", "string")}
            if param.get("description"):
                prop["description"] = param["description"]
            if "enum" in param:
                prop["enum"] = param["enum"]
            properties[pname] = prop
            if param.get("required"):
                required.append(pname)

        schema: dict[str, Any] = {"type": "object", "properties": properties}
        if required:
            schema["required"] = required
        return schema

    def resolve(self, name: str, schema: dict[str, Any]) -> dict[str, Any]:
        """Inline local references and enforce the depth limit."""
        if not isinstance(schema, dict):
            raise SchemaError(name, "schema must be a JSON object")
        resolved = self._resolve_node(name, schema, schema, (), 0)
        resolved.pop("definitions", None)
        resolved.pop("$defs", None)
        return resolved

    def _resolve_node(
        self,
        name: str,
        node: Any,
        root: dict[str, Any],
        stack: tuple[str, ...],
        depth: int,
    ) -> Any:
        if depth > self._max_depth:
            raise SchemaError(name, f"schema nested deeper than {self._max_depth} levels")

        if isinstance(node, list):
            return [self._resolve_node(name, item, root, stack, depth + 1) for item in node]
        if not isinstance(node, dict):
            return node

        if "$ref" in node:
            ref = node["$ref"]
            if not isinstance(ref, str) or not ref.startswith(_LOCAL_REF_PREFIXES):
                raise SchemaError(name, f"unresolved $ref {ref!r}")
            if ref in stack:
                raise SchemaError(name, f"circular $ref {ref!r}")
            target = _lookup_pointer(root, ref)
            if target is None:
                raise SchemaError(name, f"unresolved $ref {ref!r}")
            merged = {k: v for k, v in node.items() if k != "$ref"}
            inlined = self._resolve_node(name, target, root, stack + (ref,), depth + 1)
            if isinstance(inlined, dict):
                return {**inlined, **merged}
            return inlined

        return {
            key: self._resolve_node(name, value, root, stack, depth + 1)
            for key, value in node.items()
            if not (depth == 0 and key in ("definitions", "$defs"))
        }

    def validate_schema(self, name: str, schema: dict[str, Any]) -> None:
        """Structural checks on an already-resolved schema."""
        self._validate_node(name, schema, "$")

    def _validate_node(self, name: str, node: Any, path: str) -> None:
        if not isinstance(node, dict):
            return
        declared = node.get("type")
        types = declared if isinstance(declared, list) else [declared] if declared else []
        for t in types:
            if t not in JSON_SCHEMA_TYPES:
                raise SchemaError(name, f"unknown type {t!r} at {path}")

        properties = node.get("properties")
        if properties is not None:
            if not isinstance(properties, dict):
                raise SchemaError(name, f"'properties' must be an object at {path}")
            for key, sub in properties.items():
                self._validate_node(name, sub, f"{path}.{key}")

        required = node.get("required")
        if required is not None and not isinstance(required, list):
            raise SchemaError(name, f"'required' must be a list at {path}")

        if "items" in node:
            self._validate_node(name, node["items"], f"{path}[]")
        for combinator in ("oneOf", "anyOf", "allOf"):
            variants = node.get(combinator)
            if variants is not None:
                if not isinstance(variants, list):
                    raise SchemaError(name, f"'{combinator}' must be a list at {path}")
                for i, sub in enumerate(variants):
                    self._validate_node(name, sub, f"{path}.{combinator}[{i}]")


def _lookup_pointer(root: dict[str, Any], ref: str) -> Any:
    current: Any = root
    for part in ref[2:].split("/"):
        part = part.replace("~1", "/").replace("~0", "~")
        if not isinstance(current, dict) or part not in current:
            return None
        current = current[part]
    return current
