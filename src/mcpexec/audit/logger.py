"""
mcpexec Audit Logger

Append-only, tamper-evident record of every execution.

Every entry is hash-chained to its predecessor (SHA-256 over canonical
JSON plus the previous hash), so modifying or removing an entry in the
middle of the log breaks verification. Entries are durable before
``record`` returns: SQLite runs with ``synchronous=FULL`` and the JSONL
backend fsyncs each append.

Features:
- Append-only: there is no update operation
- Monotonic per-session timestamps and ids
- Retention: ``compact()`` deletes whole entries older than the window
- Compliance reports over a time range

Usage:
    audit = AuditLogger.from_config(config)
    entry = await audit.record(AuditEntry(session_id="s-1", outcome=Outcome.SUCCESS))
    ok, message = await audit.verify_integrity()
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import os
import re
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Protocol

from mcpexec.config import RETENTION_OBLIGATIONS, EngineConfig
from mcpexec.core.models import AuditEntry, AuditFilter, ComplianceReport, RiskLevel
from mcpexec.logging import get_logger
from mcpexec.security.pii import PII_PATTERNS, PLACEHOLDER_RE
from mcpexec.storage.db import DbConnection, connect

logger = get_logger("mcpexec.audit")

GENESIS_HASH = "0" * 64
_HASH_RE = re.compile(r"^[0-9a-f]{64}$")


def _utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _ts(value: datetime) -> str:
    """Fixed-width UTC timestamp; sorts lexicographically."""
    return _utc(value).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def entry_hash(entry: AuditEntry, previous_hash: str) -> str:
    """SHA-256 over the entry's canonical JSON and the previous hash."""
    content = entry.model_dump(mode="json", exclude={"hash", "previous_hash"})
    content["timestamp"] = _ts(entry.timestamp)
    content["previous_hash"] = previous_hash
    canonical = json.dumps(content, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


def _matches(entry: AuditEntry, flt: AuditFilter) -> bool:
    if flt.session_id is not None and entry.session_id != flt.session_id:
        return False
    if flt.user_id is not None and entry.user_id != flt.user_id:
        return False
    if flt.risk_level is not None and entry.risk_level != flt.risk_level:
        return False
    if flt.outcome is not None and entry.outcome != flt.outcome:
        return False
    if flt.since is not None and _utc(entry.timestamp) < _utc(flt.since):
        return False
    if flt.until is not None and _utc(entry.timestamp) > _utc(flt.until):
        return False
    return True


# ─── Stores ──────────────────────────────────────────────────

class AuditStore(Protocol):
    """Synchronous storage backend. The logger serialises access."""

    def append(self, entry: AuditEntry) -> None: ...

    def last(self) -> AuditEntry | None: ...

    def query(self, flt: AuditFilter) -> list[AuditEntry]: ...

    def delete_before(self, cutoff: datetime) -> int: ...

    def close(self) -> None: ...


class SqliteAuditStore:
    """Row-based store through the storage connection wrapper (SQLite or PostgreSQL)."""

    def __init__(self, db_url: str = "mcpexec_audit.db"):
        self._conn: DbConnection = connect(db_url)
        self._conn.executescript("""
            CREATE TABLE IF NOT EXISTS audit_log (
                id INTEGER PRIMARY KEY,
                timestamp TEXT NOT NULL,
                session_id TEXT NOT NULL,
                user_id TEXT,
                risk_level TEXT,
                outcome TEXT NOT NULL,
                data TEXT NOT NULL,
                hash TEXT NOT NULL,
                previous_hash TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_audit_session ON audit_log(session_id);
            CREATE INDEX IF NOT EXISTS idx_audit_timestamp ON audit_log(timestamp)
        """)
        self._conn.commit()

    def append(self, entry: AuditEntry) -> None:
        self._conn.execute(
            "INSERT INTO audit_log (id, timestamp, session_id, user_id, risk_level, outcome, data, hash, previous_hash)"
            " VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                entry.id,
                _ts(entry.timestamp),
                entry.session_id,
                entry.user_id,
                entry.risk_level.value if entry.risk_level else None,
                entry.outcome.value,
                entry.model_dump_json(),
                entry.hash,
                entry.previous_hash,
            ),
        )
        self._conn.commit()

    def last(self) -> AuditEntry | None:
        row = self._conn.execute("SELECT data FROM audit_log ORDER BY id DESC LIMIT 1").fetchone()
        return AuditEntry.model_validate_json(row["data"]) if row else None

    def query(self, flt: AuditFilter) -> list[AuditEntry]:
        clauses: list[str] = []
        params: list[Any] = []
        for column, value in (
            ("session_id", flt.session_id),
            ("user_id", flt.user_id),
            ("risk_level", flt.risk_level.value if flt.risk_level else None),
            ("outcome", flt.outcome.value if flt.outcome else None),
        ):
            if value is not None:
                clauses.append(f"{column} = ?")
                params.append(value)
        if flt.since is not None:
            clauses.append("timestamp >= ?")
            params.append(_ts(flt.since))
        if flt.until is not None:
            clauses.append("timestamp <= ?")
            params.append(_ts(flt.until))
        sql = "SELECT data FROM audit_log"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY id"
        if flt.limit is not None:
            sql += f" LIMIT {int(flt.limit)}"
        rows = self._conn.execute(sql, tuple(params)).fetchall()
        return [AuditEntry.model_validate_json(row["data"]) for row in rows]

    def delete_before(self, cutoff: datetime) -> int:
        deleted = self._conn.execute("DELETE FROM audit_log WHERE timestamp < ?", (_ts(cutoff),)).rowcount
        self._conn.commit()
        return deleted

    def close(self) -> None:
        self._conn.close()


class JsonlAuditStore:
    """One JSON object per line; each append is fsynced."""

    def __init__(self, path: str | Path = "mcpexec_audit.jsonl"):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.touch(exist_ok=True)

    def _read(self) -> list[AuditEntry]:
        entries = []
        with self.path.open(encoding="utf-8") as f:
            for line in f:
                if line.strip():
                    entries.append(AuditEntry.model_validate_json(line))
        return entries

    def append(self, entry: AuditEntry) -> None:
        with self.path.open("a", encoding="utf-8") as f:
            f.write(entry.model_dump_json() + "\n")
            f.flush()
            os.fsync(f.fileno())

    def last(self) -> AuditEntry | None:
        entries = self._read()
        return entries[-1] if entries else None

    def query(self, flt: AuditFilter) -> list[AuditEntry]:
        matched = [e for e in self._read() if _matches(e, flt)]
        return matched[: flt.limit] if flt.limit is not None else matched

    def delete_before(self, cutoff: datetime) -> int:
        """Drop expired lines. Retained lines are copied byte for byte."""
        cutoff = _utc(cutoff)
        kept: list[str] = []
        deleted = 0
        with self.path.open(encoding="utf-8") as f:
            for line in f:
                if not line.strip():
                    continue
                if _utc(AuditEntry.model_validate_json(line).timestamp) < cutoff:
                    deleted += 1
                else:
                    kept.append(line)
        if deleted:
            tmp = self.path.with_suffix(self.path.suffix + ".tmp")
            with tmp.open("w", encoding="utf-8") as f:
                f.writelines(kept)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, self.path)
        return deleted

    def close(self) -> None:
        pass


# ─── Logger ──────────────────────────────────────────────────

class AuditLogger:
    """Async front of an AuditStore: ids, chaining, per-session clocks, reports."""

    def __init__(
        self,
        store: AuditStore,
        retention_days: int = 400,
        compliance_scopes: list[str] | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.store = store
        self.retention_days = retention_days
        self.compliance_scopes = list(compliance_scopes or [])
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._lock = asyncio.Lock()
        self._last_seen: dict[str, datetime] = {}
        self._head: AuditEntry | None = None
        self._loaded = False

    @classmethod
    def from_config(cls, config: EngineConfig) -> AuditLogger:
        if config.audit.backend == "jsonl":
            store: AuditStore = JsonlAuditStore(config.audit.path)
        else:
            store = SqliteAuditStore(config.audit.path)
        return cls(store, config.audit_retention_days, config.compliance_scopes)

    async def record(self, entry: AuditEntry) -> AuditEntry:
        """Append ``entry``; returns the stored copy with id, timestamp and hashes.

        The write is durable when this returns.
        """
        async with self._lock:
            if not self._loaded:
                self._head = await asyncio.to_thread(self.store.last)
                self._loaded = True
            head = self._head
            timestamp = _utc(self._clock())
            floor = self._last_seen.get(entry.session_id)
            if floor is not None and timestamp <= floor:
                timestamp = floor + timedelta(microseconds=1)
            if head is not None and timestamp < _utc(head.timestamp) and head.session_id == entry.session_id:
                timestamp = _utc(head.timestamp) + timedelta(microseconds=1)

            previous_hash = head.hash if head is not None else GENESIS_HASH
            stamped = entry.model_copy(
                update={"id": (head.id if head is not None else 0) + 1, "timestamp": timestamp, "hash": ""}
            )
            stored = stamped.model_copy(
                update={"hash": entry_hash(stamped, previous_hash), "previous_hash": previous_hash}
            )
            await asyncio.to_thread(self.store.append, stored)
            self._head = stored
            self._last_seen[entry.session_id] = timestamp

        logger.info(
            "Audit entry %d recorded", stored.id,
            extra={
                "session_id": stored.session_id,
                "outcome": stored.outcome.value,
                "risk_level": stored.risk_level.value if stored.risk_level else None,
                "event_type": "audit",
            },
        )
        return stored

    async def query(self, flt: AuditFilter | None = None) -> list[AuditEntry]:
        async with self._lock:
            return await asyncio.to_thread(self.store.query, flt or AuditFilter())

    async def verify_integrity(self) -> tuple[bool, str]:
        """Recompute the chain from the oldest retained entry.

        Returns (is_valid, message).
        """
        entries = await self.query()
        if not entries:
            return True, "Empty log, nothing to verify"
        expected_prev = entries[0].previous_hash
        for i, entry in enumerate(entries):
            if entry.previous_hash != expected_prev:
                return False, (
                    f"Chain broken at entry {entry.id}: "
                    f"expected previous_hash={expected_prev[:16]}..., got {entry.previous_hash[:16]}..."
                )
            recomputed = entry_hash(entry, entry.previous_hash)
            if recomputed != entry.hash:
                return False, (
                    f"Tampered entry {entry.id}: stored hash={entry.hash[:16]}..., recomputed={recomputed[:16]}..."
                )
            if i and entry.id <= entries[i - 1].id:
                return False, f"Non-monotonic id at entry {entry.id}"
            expected_prev = entry.hash
        return True, f"All {len(entries)} entries verified, chain intact"

    async def compact(self, now: datetime | None = None) -> int:
        """Delete entries older than the retention window. Returns the count removed."""
        cutoff = _utc(now or self._clock()) - timedelta(days=self.retention_days)
        async with self._lock:
            deleted = await asyncio.to_thread(self.store.delete_before, cutoff)
        if deleted:
            logger.info(
                "Audit compaction removed %d entries older than %s", deleted, cutoff.isoformat(),
                extra={"event_type": "audit_compaction"},
            )
        return deleted

    async def report(self, since: datetime | None = None, until: datetime | None = None) -> ComplianceReport:
        """Aggregate counts and high/critical entries over [since, until]."""
        entries = await self.query(AuditFilter(since=since, until=until))
        chain_intact, _ = await self.verify_integrity()

        by_outcome: dict[str, int] = {}
        by_risk: dict[str, int] = {}
        high_risk: list[AuditEntry] = []
        granted = auto = denied = 0
        for entry in entries:
            by_outcome[entry.outcome.value] = by_outcome.get(entry.outcome.value, 0) + 1
            if entry.risk_level is not None:
                by_risk[entry.risk_level.value] = by_risk.get(entry.risk_level.value, 0) + 1
                if entry.risk_level in (RiskLevel.HIGH, RiskLevel.CRITICAL):
                    high_risk.append(entry)
            if entry.approved is True:
                granted += 1
                if entry.auto_approved:
                    auto += 1
            elif entry.approved is False:
                denied += 1

        gdpr = all(_hashes_only(e) and _tokenized_when_seen(e) for e in entries)
        soc2 = chain_intact and all(e.approved is not None for e in high_risk)
        hipaa = gdpr and soc2 and self.retention_days >= RETENTION_OBLIGATIONS["hipaa"]
        return ComplianceReport(
            since=since,
            until=until,
            total_entries=len(entries),
            by_outcome=by_outcome,
            by_risk=by_risk,
            approvals_granted=granted,
            approvals_auto=auto,
            approvals_denied=denied,
            pii_tokenized=sum(e.pii_tokenized for e in entries),
            network_requests=sum(e.network_requests for e in entries),
            network_denied=sum(e.network_denied for e in entries),
            high_risk_entries=high_risk,
            chain_intact=chain_intact,
            gdpr=gdpr,
            soc2=soc2,
            hipaa=hipaa,
        )

    def close(self) -> None:
        self.store.close()


def _tokenized_when_seen(entry: AuditEntry) -> bool:
    """Tokenization was on for every run that handled PII."""
    return entry.tokenization_enabled or (entry.pii_tokenized == 0 and entry.pii_detected == 0)


def _hashes_only(entry: AuditEntry) -> bool:
    """No raw output and no cleartext PII in the entry's free-text fields."""
    for digest in (entry.code_hash, entry.stdout_hash, entry.stderr_hash):
        if digest is not None and not _HASH_RE.match(digest):
            return False
    for text in (entry.intent, *entry.warnings, *entry.violations):
        cleaned = PLACEHOLDER_RE.sub("", text)
        if any(pattern.search(cleaned) for _, pattern in PII_PATTERNS):
            return False
    return True


class RetentionJob:
    """Periodic ``compact()`` on the event loop."""

    def __init__(self, audit: AuditLogger, interval_hours: float = 24.0):
        self.audit = audit
        self.interval_seconds = interval_hours * 3600
        self._task: asyncio.Task | None = None

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self._loop())

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _loop(self) -> None:
        while True:
            try:
                await self.audit.compact()
            except OSError:
                logger.exception("Audit compaction failed")
            await asyncio.sleep(self.interval_seconds)
