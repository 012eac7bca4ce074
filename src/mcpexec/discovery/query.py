"""
Intent to search-query derivation.

Turns a natural-language intent into lexical search terms: lower-cased
word tokens (camelCase and snake_case split), stop words removed, light
plural folding, a small synonym expansion and an inferred category.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

STOP_WORDS = frozenset(
    "the a an and or but in on at to for of with by from as is was".split()
)

# Verb/noun equivalents seen in tool names and intents
SYNONYMS: dict[str, tuple[str, ...]] = {
    "add": ("sum", "plus", "total"),
    "sum": ("add", "total"),
    "total": ("sum",),
    "subtract": ("minus", "difference"),
    "multiply": ("product", "times"),
    "delete": ("remove",),
    "remove": ("delete",),
    "fetch": ("get", "download", "http"),
    "download": ("fetch", "get"),
    "find": ("search", "lookup"),
    "search": ("find", "query"),
    "lookup": ("find", "get"),
    "list": ("ls", "enumerate"),
    "read": ("get", "open", "load"),
    "write": ("save", "store"),
    "save": ("write", "store"),
    "send": ("post", "notify"),
    "notify": ("send", "message"),
    "email": ("mail",),
    "mail": ("email",),
    "commit": ("git",),
}

CATEGORY_HINTS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("git", ("git", "commit", "branch", "merge", "repository", "repo")),
    ("filesystem", ("file", "directory", "folder", "path", "disk")),
    ("network", ("http", "url", "request", "api", "fetch", "download")),
    ("database", ("db", "database", "sql", "table", "query")),
    ("testing", ("test", "assert", "coverage")),
)

_CAMEL_RE = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")
_WORD_RE = re.compile(r"[A-Za-z0-9]+")


def normalize(word: str) -> str:
    """Lower-case and fold simple plurals (files -> file)."""
    word = word.lower()
    if len(word) > 3 and word.endswith("s") and not word.endswith(("ss", "us", "is")):
        word = word[:-1]
    return word


def tokenize(text: str) -> list[str]:
    """Split text into normalised terms, dropping stop words."""
    if not text:
        return []
    text = _CAMEL_RE.sub(" ", text).replace("_", " ").replace("-", " ")
    terms = []
    for raw in _WORD_RE.findall(text):
        word = normalize(raw)
        if word in STOP_WORDS:
            continue
        terms.append(word)
    return terms


def infer_category(text: str) -> str:
    terms = set(tokenize(text))
    for category, hints in CATEGORY_HINTS:
        if terms.intersection(hints):
            return category
    return "general"


@dataclass(frozen=True)
class SearchQuery:
    """Search terms derived from an intent."""

    text: str
    terms: tuple[str, ...]
    category: str = "general"
    expansions: tuple[str, ...] = field(default_factory=tuple)

    @property
    def all_terms(self) -> tuple[str, ...]:
        extra = (self.category,) if self.category != "general" else ()
        return self.terms + self.expansions + extra


def derive_query(intent: str) -> SearchQuery:
    """Derive a tool search query from a natural-language intent.

    Pure numbers are dropped; they are arguments, not tool names.
    """
    terms = tuple(t for t in tokenize(intent) if not t.isdigit())
    expansions: list[str] = []
    for term in terms:
        for synonym in SYNONYMS.get(term, ()):
            if synonym not in terms and synonym not in expansions:
                expansions.append(synonym)
    return SearchQuery(
        text=intent,
        terms=terms,
        category=infer_category(intent),
        expansions=tuple(expansions),
    )
