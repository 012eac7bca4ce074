"""
mcpexec Tool Index

Stores ToolDescriptors and answers two queries:

- ``search(query, k)``: top-k descriptors by a TF-IDF score over name,
  description, tags and parameter names, tie-broken by ``cost_hint``
  ascending and then by key.
- ``get(server, name)``: exact retrieval, NotFoundError otherwise.

The index is double-buffered: every rebuild produces a new immutable
snapshot that replaces the active one in a single reference swap, so
readers never observe a half-built index and never take a lock.

On disk the index is a content-addressed directory (``objects/<sha256>.json``)
plus a ``manifest.json`` listing the active versions.
"""

from __future__ import annotations

import json
import math
import threading
from collections import Counter
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from mcpexec.core.models import ToolDescriptor
from mcpexec.discovery.query import SearchQuery, derive_query, tokenize
from mcpexec.discovery.schema import SchemaParser
from mcpexec.exceptions import NotFoundError, SchemaError
from mcpexec.logging import get_logger

logger = get_logger("mcpexec.discovery")

# Field weights: a term in the name counts three times, a tag twice
NAME_WEIGHT = 3
TAG_WEIGHT = 2
MANIFEST_NAME = "manifest.json"
OBJECTS_DIR = "objects"


@dataclass(frozen=True)
class SearchHit:
    descriptor: ToolDescriptor
    score: float
    matched_terms: tuple[str, ...] = ()


@dataclass
class LoadReport:
    """Outcome of indexing a tools directory."""

    loaded: list[str] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.errors


def _document_terms(descriptor: ToolDescriptor) -> Counter:
    terms: Counter = Counter()
    for term in tokenize(descriptor.name):
        terms[term] += NAME_WEIGHT
    for term in tokenize(descriptor.description):
        terms[term] += 1
    for tag in descriptor.tags:
        for term in tokenize(tag):
            terms[term] += TAG_WEIGHT
    properties = descriptor.input_schema.get("properties") or {}
    for param in properties:
        for term in tokenize(param):
            terms[term] += 1
    return terms


class _Snapshot:
    """Immutable search structures for one index generation."""

    def __init__(self, descriptors: dict[tuple[str, str], ToolDescriptor], generation: int):
        self.descriptors = descriptors
        self.generation = generation
        self.documents: dict[tuple[str, str], Counter] = {
            key: _document_terms(d) for key, d in descriptors.items()
        }
        df: Counter = Counter()
        for terms in self.documents.values():
            df.update(terms.keys())
        n = len(self.documents)
        self.idf = {term: math.log((n + 1) / (count + 1)) + 1.0 for term, count in df.items()}
        self.lengths = {key: sum(terms.values()) or 1 for key, terms in self.documents.items()}


class ToolIndex:
    """Double-buffered, lexical tool index."""

    def __init__(self, parser: SchemaParser | None = None):
        self._parser = parser or SchemaParser()
        self._write_lock = threading.Lock()
        self._active = _Snapshot({}, generation=0)

    # ─── Reads (lock-free) ───────────────────────────────────

    @property
    def generation(self) -> int:
        return self._active.generation

    def __len__(self) -> int:
        return len(self._active.descriptors)

    def descriptors(self) -> list[ToolDescriptor]:
        snapshot = self._active
        return [snapshot.descriptors[key] for key in sorted(snapshot.descriptors)]

    def get(self, server: str, name: str) -> ToolDescriptor:
        """Exact lookup. Never fabricates a descriptor."""
        descriptor = self._active.descriptors.get((server, name))
        if descriptor is None:
            raise NotFoundError(server, name)
        return descriptor

    def get_by_key(self, key: str) -> ToolDescriptor:
        """Lookup by ``server/name``."""
        server, sep, name = key.partition("/")
        if not sep:
            raise NotFoundError("", key)
        return self.get(server, name)

    def rank(self, query: str | SearchQuery, k: int = 5) -> list[SearchHit]:
        """Score every descriptor against the query and return the top k hits."""
        if k <= 0:
            return []
        if isinstance(query, str):
            query = derive_query(query)
        terms = query.all_terms
        if not terms:
            return []

        snapshot = self._active
        hits: list[SearchHit] = []
        for key, doc in snapshot.documents.items():
            matched = tuple(t for t in dict.fromkeys(terms) if t in doc)
            if not matched:
                continue
            length = snapshot.lengths[key]
            score = sum((doc[t] / length) * snapshot.idf[t] for t in matched)
            hits.append(SearchHit(snapshot.descriptors[key], round(score, 9), matched))

        hits.sort(key=lambda h: (-h.score, h.descriptor.cost_hint, h.descriptor.key))
        return hits[:k]

    def search(self, query: str | SearchQuery, k: int = 5) -> list[ToolDescriptor]:
        """Top-k descriptors for a natural-language query."""
        return [hit.descriptor for hit in self.rank(query, k)]

    # ─── Writes (build new snapshot, then swap) ──────────────

    def rebuild(self, descriptors: Iterable[ToolDescriptor]) -> int:
        """Replace the whole index. Returns the new generation."""
        table: dict[tuple[str, str], ToolDescriptor] = {}
        for descriptor in descriptors:
            table[(descriptor.server, descriptor.name)] = descriptor
        with self._write_lock:
            snapshot = _Snapshot(table, generation=self._active.generation + 1)
            self._active = snapshot
        logger.info(
            "Tool index rebuilt",
            extra={"_extra": {"generation": snapshot.generation, "tools": len(table)}},
        )
        return snapshot.generation

    def register(self, *descriptors: ToolDescriptor) -> int:
        """Add descriptors; a descriptor with an existing key supersedes it."""
        with self._write_lock:
            table = dict(self._active.descriptors)
            for descriptor in descriptors:
                table[(descriptor.server, descriptor.name)] = descriptor
            snapshot = _Snapshot(table, generation=self._active.generation + 1)
            self._active = snapshot
        return snapshot.generation

    def replace_server(self, server: str, descriptors: Iterable[ToolDescriptor]) -> int:
        """Swap in a new version of one server's tools."""
        with self._write_lock:
            table = {k: v for k, v in self._active.descriptors.items() if k[0] != server}
            for descriptor in descriptors:
                if descriptor.server != server:
                    raise SchemaError(descriptor.name, f"descriptor belongs to '{descriptor.server}', not '{server}'")
                table[(server, descriptor.name)] = descriptor
            snapshot = _Snapshot(table, generation=self._active.generation + 1)
            self._active = snapshot
        return snapshot.generation

    # ─── Filesystem ──────────────────────────────────────────

    def load_directory(self, root: str | Path) -> LoadReport:
        """Index ``root/<server>/*.json``. Invalid files are rejected and reported."""
        root = Path(root)
        report = LoadReport()
        descriptors: list[ToolDescriptor] = []
        if not root.is_dir():
            report.errors[str(root)] = "tools directory does not exist"
            return report

        for server_dir in sorted(p for p in root.iterdir() if p.is_dir()):
            for path in sorted(server_dir.glob("*.json")):
                try:
                    data = json.loads(path.read_text(encoding="utf-8"))
                    descriptor = self._parser.parse(data, server=server_dir.name)
                except json.JSONDecodeError as exc:
                    report.errors[str(path)] = f"invalid JSON: {exc}"
                    continue
                except SchemaError as exc:
                    report.errors[str(path)] = str(exc)
                    continue
                descriptors.append(descriptor)
                report.loaded.append(descriptor.key)

        for path, error in report.errors.items():
            logger.warning("Rejected tool descriptor %s: %s", path, error)

        self.rebuild(descriptors)
        return report

    def persist(self, store_dir: str | Path) -> Path:
        """Write a content-addressed copy of the active descriptors plus a manifest."""
        store = Path(store_dir)
        objects = store / OBJECTS_DIR
        objects.mkdir(parents=True, exist_ok=True)

        snapshot = self._active
        entries = []
        for key in sorted(snapshot.descriptors):
            descriptor = snapshot.descriptors[key]
            digest = descriptor.content_hash
            target = objects / f"{digest}.json"
            if not target.exists():
                target.write_text(
                    json.dumps(descriptor.model_dump(mode="json"), sort_keys=True, indent=2),
                    encoding="utf-8",
                )
            entries.append(
                {"server": descriptor.server, "name": descriptor.name, "version": descriptor.version, "hash": digest}
            )

        manifest = {
            "generation": snapshot.generation,
            "written_at": datetime.now(timezone.utc).isoformat(),
            "tools": entries,
        }
        manifest_path = store / MANIFEST_NAME
        tmp = manifest_path.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(manifest, indent=2), encoding="utf-8")
        tmp.replace(manifest_path)
        return manifest_path

    def load_manifest(self, store_dir: str | Path) -> int:
        """Restore the active versions listed in a manifest."""
        store = Path(store_dir)
        manifest = json.loads((store / MANIFEST_NAME).read_text(encoding="utf-8"))
        descriptors = []
        for entry in manifest.get("tools", []):
            path = store / OBJECTS_DIR / f"{entry['hash']}.json"
            descriptor = ToolDescriptor.model_validate_json(path.read_text(encoding="utf-8"))
            if descriptor.content_hash != entry["hash"]:
                raise SchemaError(descriptor.name, f"content hash mismatch for {path.name}")
            descriptors.append(descriptor)
        return self.rebuild(descriptors)
