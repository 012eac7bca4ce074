"""
mcpexec Risk Classifier

Turns a ValidationReport into the final risk level and builds an
ImpactAssessment from code inspection:

- file paths in string literals passed to file sinks
- URLs in string literals passed to fetch sinks
- commands passed to exec-like sinks

The assessment is advisory. Enforcement is the sandbox's job.
"""

from __future__ import annotations

import ast
from urllib.parse import urlparse

from mcpexec.core.models import (
    BlastRadius,
    ImpactAssessment,
    Language,
    RiskLevel,
    ValidationReport,
)
from mcpexec.security.lexer import lex, string_value

_PY_WRITE_SINKS = {"open", "os.rename", "shutil.move", "shutil.copy", "os.mkdir", "os.makedirs"}
_PY_DELETE_SINKS = {"os.remove", "os.unlink", "os.rmdir", "shutil.rmtree"}
_PY_FETCH_SINKS = {"fetch", "httpx.get", "httpx.post", "requests.get", "requests.post", "urllib.request.urlopen"}
_PY_EXEC_SINKS = {
    "os.system", "os.popen", "subprocess.run", "subprocess.call", "subprocess.Popen",
    "subprocess.check_output", "subprocess.check_call",
}

_TS_WRITE_SINKS = {"writeTextFile", "writeFile", "open", "create", "rename", "mkdir", "readTextFile", "readFile"}
_TS_DELETE_SINKS = {"remove"}

_SYSTEM_PREFIXES = ("/etc", "/usr", "/bin", "/sbin", "/boot", "/proc", "/sys", "/dev", "/lib", "/var")


def _call_name(node: ast.AST) -> str:
    if isinstance(node, ast.Name):
        return node.id
    if isinstance(node, ast.Attribute):
        base = _call_name(node.value)
        return f"{base}.{node.attr}" if base else node.attr
    return ""


def _literal_text(node: ast.AST) -> str | None:
    if isinstance(node, ast.Constant) and isinstance(node.value, str):
        return node.value
    if isinstance(node, (ast.List, ast.Tuple)) and node.elts and all(
        isinstance(e, ast.Constant) and isinstance(e.value, str) for e in node.elts
    ):
        return " ".join(e.value for e in node.elts)
    return None


class RiskClassifier:
    """Final risk level plus impact assessment for a validated program."""

    def classify(
        self, source: str, language: Language | str, report: ValidationReport
    ) -> tuple[RiskLevel, ImpactAssessment]:
        language = Language(language)
        impact = self.assess_impact(source, language)
        risk = report.risk_level
        if risk != RiskLevel.CRITICAL and impact.blast_radius == BlastRadius.SYSTEM:
            risk = RiskLevel.highest(risk, RiskLevel.MEDIUM)
        return risk, impact

    def assess_impact(self, source: str, language: Language) -> ImpactAssessment:
        if language == Language.PYTHON:
            files, deleted, hosts, commands = self._inspect_python(source)
        else:
            files, deleted, hosts, commands = self._inspect_typescript(source)

        impact = ImpactAssessment(
            files_touched=sorted(set(files)),
            files_deleted_count=deleted,
            hosts_contacted=sorted(set(hosts)),
            commands_spawned=commands,
            reversible=deleted == 0 and not commands,
        )
        impact.blast_radius = self._blast_radius(impact)
        return impact

    @staticmethod
    def _blast_radius(impact: ImpactAssessment) -> BlastRadius:
        if impact.commands_spawned or any(p.startswith(_SYSTEM_PREFIXES) for p in impact.files_touched):
            return BlastRadius.SYSTEM
        if impact.hosts_contacted:
            return BlastRadius.NETWORK
        if any(p.startswith(("/", "~")) or ".." in p.split("/") for p in impact.files_touched):
            return BlastRadius.LOCAL
        return BlastRadius.CONTAINED

    def _inspect_python(self, source: str) -> tuple[list[str], int, list[str], list[str]]:
        files: list[str] = []
        hosts: list[str] = []
        commands: list[str] = []
        deleted = 0
        try:
            tree = ast.parse(source)
        except SyntaxError:
            return files, deleted, hosts, commands

        for node in ast.walk(tree):
            if not isinstance(node, ast.Call):
                continue
            name = _call_name(node.func)
            first = _literal_text(node.args[0]) if node.args else None
            if name in _PY_DELETE_SINKS or name.endswith(".unlink"):
                deleted += 1
                if first:
                    files.append(first)
            elif name in _PY_WRITE_SINKS or name.endswith((".write_text", ".write_bytes")):
                if first:
                    files.append(first)
            elif name in _PY_FETCH_SINKS:
                if first:
                    host = urlparse(first).hostname
                    if host:
                        hosts.append(host)
            elif name in _PY_EXEC_SINKS or name.startswith(("os.exec", "os.spawn")):
                commands.append(first or "<dynamic>")
        return files, deleted, hosts, commands

    def _inspect_typescript(self, source: str) -> tuple[list[str], int, list[str], list[str]]:
        files: list[str] = []
        hosts: list[str] = []
        commands: list[str] = []
        deleted = 0
        tokens = [t for t in lex(source, Language.TYPESCRIPT) if t.kind != "comment"]

        def literal_after(i: int) -> str | None:
            if i + 1 < len(tokens) and tokens[i].value == "(" and tokens[i + 1].kind == "string":
                return string_value(tokens[i + 1])
            return None

        for i, tok in enumerate(tokens):
            if tok.kind != "name":
                continue
            if tok.value == "fetch":
                url = literal_after(i + 1)
                if url:
                    host = urlparse(url).hostname
                    if host:
                        hosts.append(host)
            elif tok.value == "Deno" and i + 2 < len(tokens) and tokens[i + 1].value == ".":
                member = tokens[i + 2].value
                target = literal_after(i + 3)
                if member in _TS_DELETE_SINKS:
                    deleted += 1
                    if target:
                        files.append(target)
                elif member in _TS_WRITE_SINKS:
                    if target:
                        files.append(target)
                elif member in ("Command", "run"):
                    commands.append(target or "<dynamic>")
            elif tok.value in ("exec", "execSync", "spawn", "spawnSync"):
                target = literal_after(i + 1)
                if target is not None:
                    commands.append(target)
        return files, deleted, hosts, commands
