"""
Dangerous-construct pattern rules.

Each rule is ``{name, severity, recommendation}`` plus a regex and the
languages it applies to. Rules run over comment-stripped source, so
prose in tool descriptions and comments never trips them.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from mcpexec.core.models import Language, RiskLevel

PY = frozenset({Language.PYTHON})
TS = frozenset({Language.TYPESCRIPT})
ALL = PY | TS


@dataclass(frozen=True)
class PatternRule:
    name: str
    pattern: re.Pattern[str]
    severity: RiskLevel
    recommendation: str
    languages: frozenset[Language] = ALL
    message: str = ""


def _rule(name, regex, severity, recommendation, languages=ALL, message="", flags=0) -> PatternRule:
    return PatternRule(
        name=name,
        pattern=re.compile(regex, flags),
        severity=severity,
        recommendation=recommendation,
        languages=languages,
        message=message or name.replace("_", " "),
    )


PATTERN_RULES: tuple[PatternRule, ...] = (
    # ─── Critical ────────────────────────────────────────────
    _rule(
        "eval_call", r"(?<![\w.$])eval\s*\(", RiskLevel.CRITICAL,
        "Call the typed tool functions directly instead of evaluating strings.",
        message="eval() executes arbitrary strings as code",
    ),
    _rule(
        "exec_call", r"(?<![\w.])exec\s*\(", RiskLevel.CRITICAL,
        "Express the logic as ordinary code; exec() is never permitted.", PY,
        message="exec() executes arbitrary strings as code",
    ),
    _rule(
        "function_constructor", r"\bnew\s+Function\s*\(|(?<![\w.$])Function\s*\(\s*[\"'`]", RiskLevel.CRITICAL,
        "Define functions statically; the Function constructor is an eval.", TS,
        message="Function constructor compiles strings into code",
    ),
    _rule(
        "string_timer", r"\bset(?:Timeout|Interval)\s*\(\s*[\"'`]", RiskLevel.CRITICAL,
        "Pass a function, not a string, to timers.", TS,
        message="timer with a string body is evaluated as code",
    ),
    _rule(
        "recursive_force_delete", r"\brm\s+-(?:[a-zA-Z]*r[a-zA-Z]*f|[a-zA-Z]*f[a-zA-Z]*r)\b", RiskLevel.CRITICAL,
        "Delete specific workspace files instead of forcing recursive removal.",
        message="recursive forced delete",
    ),
    _rule(
        "private_key_literal", r"-----BEGIN (?:RSA |EC |DSA |OPENSSH |PGP )?PRIVATE KEY", RiskLevel.CRITICAL,
        "Never embed private keys in code; pass credentials through tool inputs.",
        message="private key material embedded in source",
    ),
    _rule(
        "shell_interpolation",
        r"(?:exec(?:Sync)?|spawn(?:Sync)?)\s*\(\s*`[^`]*\$\{|(?:os\.system|os\.popen)\s*\(\s*f[\"']|shell\s*=\s*True[^)]*\bf[\"']|\bf[\"'][^\"']*\{[^}]+\}[^\"']*[\"'][^)]*shell\s*=\s*True",
        RiskLevel.CRITICAL,
        "Never build shell commands from interpolated values.",
        message="shell command built by string interpolation",
    ),
    # ─── High ────────────────────────────────────────────────
    _rule(
        "secret_literal",
        r"\bAKIA[0-9A-Z]{16}\b|\bsk-[A-Za-z0-9_-]{20,}\b|\bghp_[A-Za-z0-9]{36}\b|\bxox[baprs]-[A-Za-z0-9-]{10,}\b|\bAIza[0-9A-Za-z_-]{35}\b",
        RiskLevel.HIGH,
        "Move credentials out of the program and into tool inputs.",
        message="secret key literal in source",
    ),
    _rule(
        "dynamic_import", r"__import__\s*\(|importlib\.import_module\s*\(", RiskLevel.HIGH,
        "Import modules statically at the top of the program.", PY,
        message="dynamic module import",
    ),
    _rule(
        "dynamic_require", r"(?<![\w.$])(?:require|import)\s*\(\s*(?![\"'`]|\))", RiskLevel.HIGH,
        "Use static imports with literal module names.", TS,
        message="dynamic import/require with a computed specifier",
    ),
    _rule(
        "process_spawn",
        r"\bsubprocess\.\w+\s*\(|\bos\.(?:system|popen|exec\w*|spawn\w*|fork)\s*\(|\bchild_process\b|\bDeno\.(?:run|Command)\b",
        RiskLevel.HIGH,
        "Use a tool function instead of spawning processes.",
        message="process spawning",
    ),
    _rule(
        "shell_true", r"\bshell\s*=\s*True\b", RiskLevel.HIGH,
        "Pass an argument list and leave shell=False.", PY,
        message="subprocess invoked through a shell",
    ),
    _rule(
        "recursive_delete",
        r"\bshutil\.rmtree\s*\(|\bDeno\.remove\s*\([^)]*recursive\s*:\s*true|\bfs\.(?:rm|rmdir)(?:Sync)?\s*\([^)]*recursive\s*:\s*true",
        RiskLevel.HIGH,
        "Remove individual files inside the workspace only.",
        message="recursive delete",
    ),
    _rule(
        "unsafe_deserialization", r"\b(?:pickle|marshal|shelve|dill)\.loads?\s*\(|\byaml\.load\s*\((?![^)]*SafeLoader)",
        RiskLevel.HIGH,
        "Exchange data as JSON.", PY,
        message="deserialization that can execute code",
    ),
    _rule(
        "native_code", r"\bctypes\b|\bcffi\b|\bDeno\.dlopen\b|\bWebAssembly\.(?:instantiate|compile|Module)\b",
        RiskLevel.HIGH,
        "Native code is not available inside the sandbox.",
        message="native code loading",
    ),
    _rule(
        "sandbox_escape_dunder", r"__(?:subclasses|globals|code|builtins|mro|bases)__", RiskLevel.HIGH,
        "Avoid interpreter internals; use the typed tool functions.", PY,
        message="introspection of interpreter internals",
    ),
    _rule(
        "prototype_pollution", r"__proto__|\bconstructor\s*\[\s*[\"']prototype|\bObject\.setPrototypeOf\s*\(", RiskLevel.HIGH,
        "Do not modify object prototypes.", TS,
        message="prototype manipulation",
    ),
    _rule(
        "sensitive_path", r"/etc/(?:passwd|shadow|sudoers)|/proc/self|/root/\.ssh|\.aws/credentials|/var/run/docker\.sock",
        RiskLevel.HIGH,
        "Only read files inside the sandbox workspace.",
        message="reference to a sensitive host path",
    ),
    # ─── Medium ──────────────────────────────────────────────
    _rule(
        "environment_access", r"\bos\.environ\b|\bos\.getenv\s*\(|\bprocess\.env\b|\bDeno\.env\b", RiskLevel.MEDIUM,
        "Pass configuration through inputs; the sandbox environment is empty.",
        message="environment variable access",
    ),
    _rule(
        "unbounded_loop", r"\bwhile\s*\(\s*true\s*\)|\bwhile\s+True\s*:|\bfor\s*\(\s*;\s*;\s*\)", RiskLevel.MEDIUM,
        "Bound the loop; the sandbox kills programs at the wall-clock limit.",
        message="loop without an exit condition",
    ),
    _rule(
        "dynamic_attribute", r"\b(?:getattr|setattr|delattr)\s*\(\s*[\w.]+\s*,\s*(?![\"'])", RiskLevel.MEDIUM,
        "Use literal attribute names.", PY,
        message="attribute access with a computed name",
    ),
)


def rules_for(language: Language) -> list[PatternRule]:
    return [rule for rule in PATTERN_RULES if language in rule.languages]
