"""
mcpexec Code Validator

Four layers, evaluated in order; a critical violation short-circuits
the remaining layers:

  1. pattern      curated dangerous-construct regexes
  2. ast          structural checks (Python ``ast``; TypeScript token stream)
  3. complexity   control-flow keyword count, threshold 50
  4. obfuscation  symbol density, long literals, concatenation chains, blobs

Risk determination:
  any critical            -> critical
  two or more high        -> high
  exactly one high        -> medium
  otherwise               -> low
  complexity > threshold  -> one level up (non-critical only)

The validator is a pure function of its input.
"""

from __future__ import annotations

import ast
import re

from mcpexec.core.models import Language, ResourceEstimate, RiskLevel, ValidationReport, Violation
from mcpexec.logging import get_logger
from mcpexec.security.lexer import Token, lex, string_value, strip_comments
from mcpexec.security.patterns import rules_for

logger = get_logger("mcpexec.validator")

LAYERS = ("pattern", "ast", "complexity", "obfuscation")

_PY_BRANCH_NODES = (
    ast.If, ast.For, ast.AsyncFor, ast.While, ast.ExceptHandler, ast.With, ast.AsyncWith,
    ast.IfExp, ast.comprehension, ast.Assert, ast.match_case,
)
_TS_BRANCH_WORDS = frozenset({"if", "for", "while", "case", "catch", "do"})
_TS_BRANCH_OPS = frozenset({"&&", "||", "??", "?"})

_PY_DANGEROUS_BUILTINS = {"eval": RiskLevel.CRITICAL, "exec": RiskLevel.CRITICAL, "compile": RiskLevel.HIGH, "__import__": RiskLevel.HIGH}
_PY_DANGEROUS_MODULES = {
    "subprocess": "process spawning",
    "ctypes": "native code loading",
    "socket": "raw sockets",
    "pty": "pseudo-terminal spawning",
    "multiprocessing": "process spawning",
    "marshal": "raw code objects",
}
_PY_FILE_SINKS = {"open", "os.remove", "os.unlink", "os.rmdir", "os.rename", "shutil.rmtree", "shutil.move", "pathlib.Path.unlink"}
_PY_EXEC_SINKS = {"os.system", "os.popen", "subprocess.run", "subprocess.call", "subprocess.Popen", "subprocess.check_output", "subprocess.check_call"}
_PY_CODE_CONSTRUCTORS = {"types.FunctionType", "types.CodeType", "FunctionType", "CodeType"}

_BASE64_BLOCK = re.compile(r"[A-Za-z0-9+/]{80,}={0,2}")
_HEX_ESCAPES = re.compile(r"(?:\\x[0-9a-fA-F]{2}){8,}|(?:\\u[0-9a-fA-F]{4}){8,}")
_CHAR_CODES = re.compile(r"(?:\bchr\s*\(\s*\d+\s*\)\s*\+\s*){4,}|String\.fromCharCode\s*\((?:\s*\d+\s*,){7,}")
_CONCAT_CHAIN = re.compile(r"(?:[\"'`][^\"'`\n]{0,40}[\"'`]\s*\+\s*){5,}")


def _dotted(node: ast.AST) -> str:
    if isinstance(node, ast.Name):
        return node.id
    if isinstance(node, ast.Attribute):
        base = _dotted(node.value)
        return f"{base}.{node.attr}" if base else node.attr
    return ""


def _is_runtime_name(name: str) -> bool:
    return name.startswith("_mx_") or name == "__bundle__"


def _is_literal(node: ast.AST) -> bool:
    return isinstance(node, ast.Constant) or (
        isinstance(node, ast.JoinedStr) and all(isinstance(v, ast.Constant) for v in node.values)
    )


class CodeValidator:
    """Static validation of generated programs."""

    def __init__(
        self,
        complexity_threshold: int = 50,
        obfuscation_ratio: float = 0.45,
        long_string_threshold: int = 200,
    ):
        self.complexity_threshold = complexity_threshold
        self.obfuscation_ratio = obfuscation_ratio
        self.long_string_threshold = long_string_threshold

    def validate(self, source: str, language: Language | str) -> ValidationReport:
        language = Language(language)
        report = ValidationReport()
        stripped = strip_comments(source, language)
        tokens = [t for t in lex(source, language) if t.kind != "comment"]

        for layer in LAYERS:
            report.layers_run.append(layer)
            if layer == "pattern":
                report.violations.extend(self._pattern_layer(stripped, language))
            elif layer == "ast":
                if language == Language.PYTHON:
                    violations, estimate = self._python_ast_layer(source)
                else:
                    violations, estimate = self._typescript_ast_layer(tokens)
                report.violations.extend(violations)
                report.resource_estimate = estimate
            elif layer == "complexity":
                report.complexity_score = self._complexity(source, language, tokens)
                if report.complexity_score > self.complexity_threshold:
                    report.violations.append(
                        Violation(
                            rule="complexity",
                            severity=RiskLevel.MEDIUM,
                            layer=layer,
                            message=f"complexity {report.complexity_score} exceeds {self.complexity_threshold}",
                            recommendation="Split the program into smaller steps.",
                        )
                    )
            else:
                violations, flag = self._obfuscation_layer(stripped, tokens)
                report.violations.extend(violations)
                report.obfuscation_flag = flag

            if any(v.severity == RiskLevel.CRITICAL for v in report.violations):
                break

        report.violations.sort(key=lambda v: -v.severity.rank)
        report.risk_level = self._risk_level(report)
        logger.debug(
            "Validated %d chars: %d violations, risk=%s",
            len(source), len(report.violations), report.risk_level.value,
            extra={"risk_level": report.risk_level.value},
        )
        return report

    def _risk_level(self, report: ValidationReport) -> RiskLevel:
        severities = [v.severity for v in report.violations]
        if RiskLevel.CRITICAL in severities:
            return RiskLevel.CRITICAL
        highs = severities.count(RiskLevel.HIGH)
        if highs >= 2:
            level = RiskLevel.HIGH
        elif highs == 1:
            level = RiskLevel.MEDIUM
        else:
            level = RiskLevel.LOW
        if report.complexity_score > self.complexity_threshold:
            level = level.escalate()
            if level == RiskLevel.CRITICAL:
                level = RiskLevel.HIGH
        return level

    # ─── Layer 1: Patterns ───────────────────────────────────

    def _pattern_layer(self, stripped: str, language: Language) -> list[Violation]:
        violations = []
        for rule in rules_for(language):
            for match in rule.pattern.finditer(stripped):
                violations.append(
                    Violation(
                        rule=rule.name,
                        severity=rule.severity,
                        layer="pattern",
                        message=rule.message,
                        line=stripped.count("\n", 0, match.start()) + 1,
                        recommendation=rule.recommendation,
                    )
                )
        return violations

    # ─── Layer 2: Structure ──────────────────────────────────

    def _python_ast_layer(self, source: str) -> tuple[list[Violation], ResourceEstimate]:
        estimate = ResourceEstimate()
        try:
            tree = ast.parse(source)
        except SyntaxError as exc:
            return [
                Violation(
                    rule="syntax_error",
                    severity=RiskLevel.HIGH,
                    layer="ast",
                    message=f"program does not parse: {exc.msg}",
                    line=exc.lineno,
                    recommendation="Fix the syntax error before execution.",
                )
            ], estimate

        violations: list[Violation] = []

        def flag(node: ast.AST, rule: str, severity: RiskLevel, message: str, recommendation: str) -> None:
            violations.append(
                Violation(
                    rule=rule,
                    severity=severity,
                    layer="ast",
                    message=message,
                    line=getattr(node, "lineno", None),
                    recommendation=recommendation,
                )
            )

        for node in ast.walk(tree):
            if isinstance(node, (ast.For, ast.AsyncFor, ast.While)):
                estimate.loops += 1
                if isinstance(node, ast.While) and isinstance(node.test, ast.Constant) and node.test.value:
                    estimate.unbounded_loops += 1

            elif isinstance(node, (ast.Import, ast.ImportFrom)):
                names = [a.name for a in node.names] if isinstance(node, ast.Import) else [node.module or ""]
                for name in names:
                    top = name.split(".")[0]
                    if top in _PY_DANGEROUS_MODULES:
                        flag(node, "dangerous_import", RiskLevel.HIGH,
                             f"import of {top} ({_PY_DANGEROUS_MODULES[top]})",
                             "Use the typed tool functions instead.")
                        if top in ("subprocess", "multiprocessing", "pty"):
                            estimate.process_spawns += 1

            elif isinstance(node, (ast.Assign, ast.AnnAssign, ast.NamedExpr)):
                value = node.value
                if isinstance(value, ast.Name) and value.id in _PY_DANGEROUS_BUILTINS:
                    flag(node, "builtin_alias", _PY_DANGEROUS_BUILTINS[value.id],
                         f"{value.id} bound to another name",
                         "Do not alias code-evaluation builtins.")

            elif isinstance(node, ast.Call):
                name = _dotted(node.func)
                literal_args = all(_is_literal(a) for a in node.args)
                if name in _PY_DANGEROUS_BUILTINS and not literal_args:
                    flag(node, "dynamic_code", _PY_DANGEROUS_BUILTINS[name],
                         f"{name}() called with a computed argument",
                         "Express the logic as ordinary code.")
                elif name in ("importlib.import_module", "import_module") and not literal_args:
                    flag(node, "dynamic_module_load", RiskLevel.HIGH,
                         "module name computed at runtime",
                         "Import modules statically.")
                elif name in _PY_CODE_CONSTRUCTORS:
                    flag(node, "code_constructor", RiskLevel.CRITICAL,
                         f"{name} builds executable code objects",
                         "Define functions statically.")
                elif name in ("marshal.loads", "ctypes.CDLL", "ctypes.cdll.LoadLibrary") or (
                    name == "mmap.mmap"
                    and any("PROT_EXEC" in ast.dump(a) for a in node.args + [k.value for k in node.keywords])
                ):
                    flag(node, "raw_code_execution", RiskLevel.CRITICAL,
                         f"{name} can execute raw bytes",
                         "Raw code execution is never permitted.")

                if name in _PY_EXEC_SINKS or name.startswith("os.exec") or name.startswith("os.spawn"):
                    estimate.process_spawns += 1
                    if not literal_args:
                        flag(node, "exec_sink_dynamic", RiskLevel.HIGH,
                             f"{name} called with a computed command",
                             "Never build commands from runtime values.")
                if name in _PY_FILE_SINKS or name.endswith((".write_text", ".write_bytes", ".unlink")):
                    estimate.file_operations += 1
                if name in ("fetch", "httpx.get", "requests.get", "urllib.request.urlopen"):
                    estimate.network_calls += 1
                if name == "__rpc__":
                    estimate.tool_calls += 1

            elif isinstance(node, ast.Name) and _is_runtime_name(node.id):
                flag(node, "runtime_tampering", RiskLevel.CRITICAL,
                     f"reference to sandbox runtime state {node.id}",
                     "Programs may only use the generated tool functions and fetch().")

            elif isinstance(node, (ast.Global, ast.Nonlocal)) and any(_is_runtime_name(n) for n in node.names):
                flag(node, "runtime_tampering", RiskLevel.CRITICAL,
                     "rebinding of sandbox runtime state",
                     "Programs may only use the generated tool functions and fetch().")

            elif isinstance(node, ast.Constant) and isinstance(node.value, str) and _is_runtime_name(node.value):
                flag(node, "runtime_tampering", RiskLevel.CRITICAL,
                     f"lookup of sandbox runtime state {node.value!r}",
                     "Programs may only use the generated tool functions and fetch().")

            elif isinstance(node, ast.Attribute) and node.attr in ("__subclasses__", "__globals__", "__code__", "__builtins__"):
                flag(node, "interpreter_internals", RiskLevel.CRITICAL,
                     f"access to {node.attr}",
                     "Interpreter internals are a sandbox-escape vector.")

        return violations, estimate

    def _typescript_ast_layer(self, tokens: list[Token]) -> tuple[list[Violation], ResourceEstimate]:
        estimate = ResourceEstimate()
        violations: list[Violation] = []

        def flag(token: Token, rule: str, severity: RiskLevel, message: str, recommendation: str) -> None:
            violations.append(
                Violation(rule=rule, severity=severity, layer="ast", message=message,
                          line=token.line, recommendation=recommendation)
            )

        def at(i: int) -> Token | None:
            return tokens[i] if 0 <= i < len(tokens) else None

        def is_op(i: int, value: str) -> bool:
            tok = at(i)
            return tok is not None and tok.kind == "op" and tok.value == value

        def is_name(i: int, value: str) -> bool:
            tok = at(i)
            return tok is not None and tok.kind == "name" and tok.value == value

        for i, tok in enumerate(tokens):
            if tok.kind != "name":
                continue
            value = tok.value
            prev_dot = is_op(i - 1, ".") or is_op(i - 1, "?.")

            if value in ("for", "while") and not prev_dot:
                estimate.loops += 1
                if value == "while" and is_op(i + 1, "(") and is_name(i + 2, "true") and is_op(i + 3, ")"):
                    estimate.unbounded_loops += 1
                if value == "for" and is_op(i + 1, "(") and is_op(i + 2, ";") and is_op(i + 3, ";"):
                    estimate.unbounded_loops += 1

            elif value == "eval" and not prev_dot and not is_op(i + 1, "("):
                flag(tok, "builtin_alias", RiskLevel.CRITICAL, "eval referenced without a direct call",
                     "Do not alias code-evaluation builtins.")

            elif value == "constructor" and prev_dot and is_op(i + 1, ".") and is_name(i + 2, "constructor"):
                flag(tok, "function_constructor", RiskLevel.CRITICAL,
                     "constructor.constructor reaches the Function constructor",
                     "Define functions statically.")

            elif value in ("import", "require") and not prev_dot and is_op(i + 1, "("):
                nxt = at(i + 2)
                if nxt is not None and not (nxt.kind == "string" and not nxt.value.startswith("`")):
                    flag(tok, "dynamic_module_load", RiskLevel.HIGH, f"{value}() with a computed specifier",
                         "Use static imports with literal module names.")
                elif nxt is not None and nxt.kind == "string" and string_value(nxt) in ("child_process", "node:child_process"):
                    flag(tok, "process_spawn", RiskLevel.HIGH, "child_process loaded",
                         "Use a tool function instead of spawning processes.")

            elif value == "Deno" and is_op(i + 1, "."):
                member = at(i + 2)
                attr = member.value if member is not None else ""
                if attr in ("run", "Command"):
                    estimate.process_spawns += 1
                    flag(tok, "process_spawn", RiskLevel.HIGH, f"Deno.{attr} spawns a process",
                         "Use a tool function instead of spawning processes.")
                elif attr == "dlopen":
                    flag(tok, "raw_code_execution", RiskLevel.CRITICAL, "Deno.dlopen loads native code",
                         "Native code is never permitted.")
                elif attr in ("writeTextFile", "writeFile", "remove", "open", "create", "readTextFile", "readFile", "rename", "mkdir"):
                    estimate.file_operations += 1

            elif value.startswith("__mx") or value == "__bundle__":
                flag(tok, "runtime_tampering", RiskLevel.CRITICAL, f"reference to sandbox runtime state {value}",
                     "Programs may only use the generated tool functions and fetch().")

            elif value == "WebAssembly" and is_op(i + 1, "."):
                flag(tok, "raw_code_execution", RiskLevel.CRITICAL, "WebAssembly executes raw bytes",
                     "Raw code execution is never permitted.")

            elif value == "fetch" and not prev_dot and is_op(i + 1, "("):
                estimate.network_calls += 1

            elif value == "__rpc__" and is_op(i + 1, "("):
                estimate.tool_calls += 1

        return violations, estimate

    # ─── Layer 3: Complexity ─────────────────────────────────

    def _complexity(self, source: str, language: Language, tokens: list[Token]) -> int:
        """1 + number of decision points."""
        if language == Language.PYTHON:
            try:
                tree = ast.parse(source)
            except SyntaxError:
                tree = None
            if tree is not None:
                score = 1
                for node in ast.walk(tree):
                    if isinstance(node, _PY_BRANCH_NODES):
                        score += 1
                    elif isinstance(node, ast.BoolOp):
                        score += len(node.values) - 1
                return score
            words = {"if", "elif", "for", "while", "except", "with", "and", "or", "case"}
            return 1 + sum(1 for t in tokens if t.kind == "name" and t.value in words)
        score = 1
        for tok in tokens:
            if tok.kind == "name" and tok.value in _TS_BRANCH_WORDS:
                score += 1
            elif tok.kind == "op" and tok.value in _TS_BRANCH_OPS:
                score += 1
        return score

    # ─── Layer 4: Obfuscation ────────────────────────────────

    def _obfuscation_layer(self, stripped: str, tokens: list[Token]) -> tuple[list[Violation], bool]:
        violations: list[Violation] = []
        dense = [c for c in stripped if not c.isspace()]
        flag = False

        if len(dense) >= 100:
            ratio = sum(1 for c in dense if not (c.isalnum() or c == "_")) / len(dense)
            if ratio > self.obfuscation_ratio:
                flag = True
                violations.append(
                    Violation(
                        rule="symbol_density", severity=RiskLevel.MEDIUM, layer="obfuscation",
                        message=f"non-alphanumeric ratio {ratio:.2f} exceeds {self.obfuscation_ratio}",
                        recommendation="Write plain, readable code.",
                    )
                )

        for tok in tokens:
            if tok.kind == "string" and len(string_value(tok)) > self.long_string_threshold:
                violations.append(
                    Violation(
                        rule="long_string_literal", severity=RiskLevel.MEDIUM, layer="obfuscation",
                        message=f"string literal of {len(string_value(tok))} characters",
                        line=tok.line,
                        recommendation="Pass large data through inputs rather than literals.",
                    )
                )

        checks = (
            (_BASE64_BLOCK, "encoded_blob", "base64-like encoded block"),
            (_HEX_ESCAPES, "escape_sequence_run", "long run of hex/unicode escapes"),
            (_CHAR_CODES, "char_code_assembly", "string assembled from character codes"),
            (_CONCAT_CHAIN, "concatenation_chain", "chain of short string concatenations"),
        )
        for pattern, rule, message in checks:
            for match in pattern.finditer(stripped):
                flag = True
                violations.append(
                    Violation(
                        rule=rule, severity=RiskLevel.HIGH, layer="obfuscation", message=message,
                        line=stripped.count("\n", 0, match.start()) + 1,
                        recommendation="Write plain, readable code.",
                    )
                )
        return violations, flag
