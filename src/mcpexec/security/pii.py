"""
mcpexec PII Tokenizer

Bidirectional redaction across the sandbox boundary. Sensitive values
are replaced with opaque placeholders of shape ``[KIND_n]``; the
request-scoped TokenMap keeps the bijection so values can be restored
when they cross back out to an external tool.

- Inbound (host -> sandbox): inputs and tool results are tokenized.
- Outbound to tools: arguments are detokenized just before the call.
- Model-visible output and audit data keep placeholders; any raw PII the
  program produced itself is scrubbed on the way out.

Placeholders always end in ``]``, so no placeholder is a prefix of
another.
"""

from __future__ import annotations

import json
import re
from typing import Any

from mcpexec.logging import get_logger

logger = get_logger("mcpexec.pii")

PLACEHOLDER_RE = re.compile(r"\[([A-Z][A-Z_]*)_(\d+)\]")

# Evaluated in order; earlier kinds win overlapping text.
PII_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("EMAIL", re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}")),
    ("CREDIT_CARD", re.compile(r"(?<!\d)(?:\d[ -]?){12,18}\d(?!\d)")),
    ("SSN", re.compile(r"(?<!\d)\d{3}-\d{2}-\d{4}(?!\d)")),
    ("PHONE", re.compile(r"(?<![\w+])(?:\+\d{1,3}[ .-]?)?(?:\(\d{3}\)|\d{3})[ .-]?\d{3}[ .-]?\d{4}(?!\w)")),
    (
        "SECRET",
        re.compile(
            r"\b(?:sk-[A-Za-z0-9_-]{20,}|ghp_[A-Za-z0-9]{36}|AKIA[0-9A-Z]{16}|xox[baprs]-[A-Za-z0-9-]{10,}"
            r"|(?=[A-Za-z0-9_-]*\d)(?=[A-Za-z0-9_-]*[A-Za-z])[A-Za-z0-9_-]{32,})\b"
        ),
    ),
)

SENSITIVE_FIELDS: dict[str, str] = {
    "email": "EMAIL",
    "e_mail": "EMAIL",
    "email_address": "EMAIL",
    "mail": "EMAIL",
    "phone": "PHONE",
    "phone_number": "PHONE",
    "mobile": "PHONE",
    "telephone": "PHONE",
    "ssn": "SSN",
    "social_security_number": "SSN",
    "password": "PASSWORD",
    "passwd": "PASSWORD",
    "pwd": "PASSWORD",
    "secret": "SECRET",
    "client_secret": "SECRET",
    "api_key": "API_KEY",
    "apikey": "API_KEY",
    "access_key": "API_KEY",
    "token": "TOKEN",
    "access_token": "TOKEN",
    "auth_token": "TOKEN",
    "refresh_token": "TOKEN",
    "bearer_token": "TOKEN",
    "credit_card": "CREDIT_CARD",
    "card_number": "CREDIT_CARD",
    "cc_number": "CREDIT_CARD",
}


def normalize_field(name: str) -> str:
    name = re.sub(r"(?<=[a-z0-9])([A-Z])", r"_\1", name)
    return re.sub(r"[^a-z0-9]+", "_", name.lower()).strip("_")


def _luhn_valid(candidate: str) -> bool:
    digits = [int(c) for c in candidate if c.isdigit()]
    if not 13 <= len(digits) <= 19:
        return False
    total = 0
    for i, digit in enumerate(reversed(digits)):
        if i % 2 == 1:
            digit *= 2
            if digit > 9:
                digit -= 9
        total += digit
    return total % 10 == 0


class TokenMap:
    """Request-scoped bijection between placeholders and raw values."""

    def __init__(self):
        self._forward: dict[str, str] = {}
        self._reverse: dict[str, Any] = {}
        self._counters: dict[str, int] = {}

    def reserve(self, text: str) -> None:
        """Keep counters above any placeholder-shaped text already present."""
        for kind, index in PLACEHOLDER_RE.findall(text):
            self._counters[kind] = max(self._counters.get(kind, 0), int(index))

    def placeholder_for(self, raw: Any, kind: str) -> str:
        key = json.dumps(raw, sort_keys=True, default=str)
        existing = self._forward.get(key)
        if existing is not None:
            return existing
        self._counters[kind] = self._counters.get(kind, 0) + 1
        placeholder = f"[{kind}_{self._counters[kind]}]"
        self._forward[key] = placeholder
        self._reverse[placeholder] = raw
        return placeholder

    def lookup(self, placeholder: str) -> Any | None:
        return self._reverse.get(placeholder)

    def __contains__(self, placeholder: str) -> bool:
        return placeholder in self._reverse

    def __len__(self) -> int:
        return len(self._reverse)

    def clear(self) -> None:
        self._forward.clear()
        self._reverse.clear()
        self._counters.clear()


class PIITokenizer:
    """Tokenizes and restores sensitive values for one execution."""

    def __init__(self, enabled: bool = True):
        self.enabled = enabled
        self.map = TokenMap()
        self._seen = TokenMap()

    @property
    def count(self) -> int:
        """Distinct values tokenized so far."""
        return len(self.map)

    @property
    def detected(self) -> int:
        """Distinct sensitive values seen, whether or not they were replaced."""
        return len(self.map) if self.enabled else len(self._seen)

    def tokenize(self, value: Any) -> Any:
        """Replace sensitive values with placeholders. Idempotent."""
        if not self.enabled:
            self._observe(value)
            return value
        self._reserve(value)
        return self._tokenize(value, field=None)

    def detokenize(self, value: Any) -> Any:
        """Restore raw values for placeholders this map issued."""
        if isinstance(value, str):
            whole = self.map.lookup(value)
            if whole is not None:
                return whole
            return PLACEHOLDER_RE.sub(self._restore, value)
        if isinstance(value, dict):
            return {k: self.detokenize(v) for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            return type(value)(self.detokenize(v) for v in value)
        return value

    def scrub(self, value: Any) -> Any:
        """Model-visible form: placeholders kept, stray raw PII tokenized."""
        return self.tokenize(value)

    def clear(self) -> None:
        self.map.clear()
        self._seen.clear()

    def _observe(self, value: Any) -> None:
        # Detection only: run the same pass against a map nothing reads back.
        live, self.map = self.map, self._seen
        try:
            self._tokenize(value, field=None)
        finally:
            self.map = live

    def _restore(self, match: re.Match[str]) -> str:
        raw = self.map.lookup(match.group(0))
        return match.group(0) if raw is None else str(raw)

    def _reserve(self, value: Any) -> None:
        if isinstance(value, str):
            self.map.reserve(value)
        elif isinstance(value, dict):
            for item in value.values():
                self._reserve(item)
        elif isinstance(value, (list, tuple)):
            for item in value:
                self._reserve(item)

    def _tokenize(self, value: Any, field: str | None) -> Any:
        kind = SENSITIVE_FIELDS.get(normalize_field(field)) if field else None
        if isinstance(value, dict):
            return {k: self._tokenize(v, str(k)) for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            return type(value)(self._tokenize(v, field) for v in value)
        if isinstance(value, str):
            if kind is not None and value and not PLACEHOLDER_RE.fullmatch(value):
                return self.map.placeholder_for(value, kind)
            return self._tokenize_text(value)
        if kind is not None and isinstance(value, (int, float)) and not isinstance(value, bool):
            return self.map.placeholder_for(value, kind)
        return value

    def _tokenize_text(self, text: str) -> str:
        # (segment, is_placeholder) pairs; placeholders are never rescanned
        segments: list[tuple[str, bool]] = []
        last = 0
        for match in PLACEHOLDER_RE.finditer(text):
            segments.append((text[last:match.start()], False))
            segments.append((match.group(0), True))
            last = match.end()
        segments.append((text[last:], False))

        for kind, pattern in PII_PATTERNS:
            updated: list[tuple[str, bool]] = []
            for segment, is_placeholder in segments:
                if is_placeholder or not segment:
                    updated.append((segment, is_placeholder))
                    continue
                pos = 0
                for match in pattern.finditer(segment):
                    if kind == "CREDIT_CARD" and not _luhn_valid(match.group(0)):
                        continue
                    updated.append((segment[pos:match.start()], False))
                    updated.append((self.map.placeholder_for(match.group(0), kind), True))
                    pos = match.end()
                updated.append((segment[pos:], False))
            segments = updated
        return "".join(segment for segment, _ in segments)
