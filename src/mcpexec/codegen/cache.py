"""
Artifact cache keyed by fingerprint.

Entries live in memory for ``ttl_seconds`` (one hour by default). A
debug-only spill directory persists artifacts to disk; it is never used
when the engine runs at maximum security, where artifacts must stay in
memory.
"""

from __future__ import annotations

import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from pathlib import Path

from mcpexec.core.models import GeneratedArtifact
from mcpexec.logging import get_logger

logger = get_logger("mcpexec.codegen.cache")


@dataclass
class _Entry:
    artifact: GeneratedArtifact
    stored_at: float
    hits: int = 0


class ArtifactCache:
    """LRU + TTL cache of generated artifacts."""

    def __init__(
        self,
        ttl_seconds: float = 3600.0,
        max_entries: int = 256,
        spill_dir: str | Path | None = None,
        clock=time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self.spill_dir = Path(spill_dir) if spill_dir else None
        self._clock = clock
        self._entries: OrderedDict[str, _Entry] = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get(self, fingerprint: str) -> GeneratedArtifact | None:
        with self._lock:
            entry = self._entries.get(fingerprint)
            if entry is None or self._expired(entry):
                if entry is not None:
                    del self._entries[fingerprint]
                self.misses += 1
                return None
            entry.hits += 1
            self.hits += 1
            self._entries.move_to_end(fingerprint)
            return entry.artifact

    def put(self, artifact: GeneratedArtifact, persist: bool = False) -> None:
        """Store ``artifact``; ``persist`` additionally spills it to disk."""
        with self._lock:
            self._entries[artifact.fingerprint] = _Entry(artifact, self._clock())
            self._entries.move_to_end(artifact.fingerprint)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)
        if persist and self.spill_dir is not None:
            self.spill_dir.mkdir(parents=True, exist_ok=True)
            path = self.spill_dir / f"{artifact.fingerprint}.json"
            path.write_text(artifact.model_dump_json(indent=2))
            logger.debug("Artifact spilled to %s", path, extra={"fingerprint": artifact.fingerprint[:16]})

    def invalidate_tool(self, key: str) -> int:
        """Drop every artifact that includes the tool ``server/name``."""
        with self._lock:
            stale = [fp for fp, e in self._entries.items() if key in e.artifact.tools]
            for fp in stale:
                del self._entries[fp]
        return len(stale)

    def cleanup(self) -> int:
        """Evict expired entries. Returns the number removed."""
        with self._lock:
            expired = [fp for fp, e in self._entries.items() if self._expired(e)]
            for fp in expired:
                del self._entries[fp]
        if expired:
            logger.debug("Evicted %d expired artifacts", len(expired))
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def stats(self) -> dict[str, int]:
        with self._lock:
            size = len(self._entries)
        return {"entries": size, "hits": self.hits, "misses": self.misses}

    def __len__(self) -> int:
        return len(self._entries)

    def _expired(self, entry: _Entry) -> bool:
        return self._clock() - entry.stored_at > self.ttl_seconds
