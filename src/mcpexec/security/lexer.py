"""
Tolerant source lexer for Python and TypeScript.

The validator must keep working on code that does not parse, so this
scanner never raises: unterminated strings and comments simply run to
the end of the input. It separates comments and string literals from
code, which lets the pattern layer ignore prose and the TypeScript
structural layer walk a token stream.
"""

from __future__ import annotations

from dataclasses import dataclass

from mcpexec.core.models import Language

_OPERATORS = (
    "===", "!==", "**=", "...", ">>>", "<<=", ">>=",
    "==", "!=", "<=", ">=", "=>", "&&", "||", "??", "?.", "**", "//", "->", ":=",
    "+=", "-=", "*=", "/=", "%=", "&=", "|=", "^=", "++", "--", "<<", ">>",
)
_PY_STRING_PREFIXES = set("rRbBuUfF")


@dataclass(frozen=True)
class Token:
    kind: str  # name | number | string | op | comment
    value: str
    line: int
    start: int
    end: int


def _scan_quoted(source: str, i: int, quote: str) -> int:
    """Return the index just past the closing ``quote`` starting at ``i``."""
    n = len(source)
    while i < n:
        ch = source[i]
        if ch == "\\":
            i += 2
            continue
        if source.startswith(quote, i):
            return i + len(quote)
        if len(quote) == 1 and quote != "`" and ch == "\n":
            return i
        i += 1
    return n


def lex(source: str, language: Language) -> list[Token]:
    tokens: list[Token] = []
    n = len(source)
    i = 0
    line = 1
    python = language == Language.PYTHON

    def emit(kind: str, start: int, end: int) -> None:
        nonlocal line
        text = source[start:end]
        tokens.append(Token(kind, text, line, start, end))
        line += text.count("\n")

    while i < n:
        ch = source[i]
        if ch == "\n":
            line += 1
            i += 1
            continue
        if ch.isspace():
            i += 1
            continue

        # Comments
        if python and ch == "#":
            end = source.find("\n", i)
            end = n if end == -1 else end
            emit("comment", i, end)
            i = end
            continue
        if not python and source.startswith("//", i):
            end = source.find("\n", i)
            end = n if end == -1 else end
            emit("comment", i, end)
            i = end
            continue
        if not python and source.startswith("/*", i):
            end = source.find("*/", i + 2)
            end = n if end == -1 else end + 2
            emit("comment", i, end)
            i = end
            continue

        # Strings (with Python prefixes like rb"" / f"")
        if python and ch in _PY_STRING_PREFIXES:
            j = i
            while j < n and j - i < 2 and source[j] in _PY_STRING_PREFIXES:
                j += 1
            if j < n and source[j] in "'\"":
                quote = source[j] * 3 if source.startswith(source[j] * 3, j) else source[j]
                end = _scan_quoted(source, j + len(quote), quote)
                emit("string", i, end)
                i = end
                continue
        if ch in "'\"" or (not python and ch == "`"):
            quote = ch * 3 if python and source.startswith(ch * 3, i) else ch
            end = _scan_quoted(source, i + len(quote), quote)
            emit("string", i, end)
            i = end
            continue

        if ch.isalpha() or ch == "_" or (not python and ch == "$"):
            j = i + 1
            while j < n and (source[j].isalnum() or source[j] == "_" or (not python and source[j] == "$")):
                j += 1
            emit("name", i, j)
            i = j
            continue
        if ch.isdigit():
            j = i + 1
            while j < n and (source[j].isalnum() or source[j] in "._"):
                j += 1
            emit("number", i, j)
            i = j
            continue

        for op in _OPERATORS:
            if source.startswith(op, i):
                emit("op", i, i + len(op))
                i += len(op)
                break
        else:
            emit("op", i, i + 1)
            i += 1
    return tokens


def strip_comments(source: str, language: Language) -> str:
    """Blank out comments, keeping offsets and line numbers intact."""
    parts = []
    last = 0
    for token in lex(source, language):
        if token.kind == "comment":
            parts.append(source[last:token.start])
            parts.append(" " * (token.end - token.start))
            last = token.end
    parts.append(source[last:])
    return "".join(parts)


def string_value(token: Token) -> str:
    """Contents of a string token without prefix and quotes."""
    text = token.value.lstrip("rRbBuUfF")
    for quote in ('"""', "'''", '"', "'", "`"):
        if text.startswith(quote):
            body = text[len(quote):]
            return body[: -len(quote)] if body.endswith(quote) else body
    return text
