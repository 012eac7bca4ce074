"""
mcpexec Core Data Models

All shared types used across the engine. This module is the foundation
that every other component imports from; it must have zero internal
dependencies beyond pydantic.
"""

import hashlib
import json
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


# ─── Enums ───────────────────────────────────────────────────

class RiskLevel(str, Enum):
    """Risk classification for validated code. Also used as violation severity."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _RISK_ORDER.index(self)

    def escalate(self) -> "RiskLevel":
        """Return the next level up (CRITICAL stays CRITICAL)."""
        return _RISK_ORDER[min(self.rank + 1, len(_RISK_ORDER) - 1)]

    @classmethod
    def highest(cls, *levels: "RiskLevel") -> "RiskLevel":
        return max(levels, key=lambda level: level.rank, default=cls.LOW)


_RISK_ORDER = [RiskLevel.LOW, RiskLevel.MEDIUM, RiskLevel.HIGH, RiskLevel.CRITICAL]


class Language(str, Enum):
    TYPESCRIPT = "typescript"
    PYTHON = "python"


class SecurityLevel(str, Enum):
    """Policy tier that selects the sandbox kind."""
    MAXIMUM = "maximum"
    HIGH = "high"
    MODERATE = "moderate"


class SandboxKind(str, Enum):
    DOCKER = "docker"
    VM = "vm"
    PROCESS = "process"


class NetworkMode(str, Enum):
    NONE = "none"
    WHITELIST = "whitelist"


class FilesystemScope(str, Enum):
    NONE = "none"
    WORKSPACE_ONLY = "workspace-only"
    READ_ONLY = "read-only"
    FULL = "full"


class SessionState(str, Enum):
    """Sandbox session lifecycle.

    created -> initialized -> running -> (finished | killed | failed) -> destroyed
    """
    CREATED = "created"
    INITIALIZED = "initialized"
    RUNNING = "running"
    FINISHED = "finished"
    KILLED = "killed"
    FAILED = "failed"
    DESTROYED = "destroyed"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionState.FINISHED, SessionState.KILLED, SessionState.FAILED)


class Outcome(str, Enum):
    """Envelope and audit outcome."""
    SUCCESS = "success"
    BLOCKED = "blocked"
    DENIED = "denied"
    TIMEOUT = "timeout"
    OOM = "oom"
    ERROR = "error"
    CANCELLED = "cancelled"


class BlastRadius(str, Enum):
    """Qualitative reach of a proposed action."""
    CONTAINED = "contained"
    LOCAL = "local"
    SYSTEM = "system"
    NETWORK = "network"


class NetworkReason(str, Enum):
    BLACKLISTED = "blacklisted"
    NOT_WHITELISTED = "not_whitelisted"
    RATE_LIMITED = "rate_limited"
    ALLOWED = "allowed"


# ─── Tool Descriptors ────────────────────────────────────────

class ToolDescriptor(BaseModel):
    """What a tool looks like to the engine.

    Never mutated in place: a new version is a new descriptor.
    """
    model_config = ConfigDict(frozen=True)

    name: str
    server: str
    description: str = ""
    input_schema: dict[str, Any] = Field(default_factory=lambda: {"type": "object", "properties": {}})
    output_schema: dict[str, Any] = Field(default_factory=dict)
    tags: tuple[str, ...] = ()
    cost_hint: float = 0.0
    version: str = "1"

    @property
    def key(self) -> str:
        return f"{self.server}/{self.name}"

    @property
    def content_hash(self) -> str:
        """SHA-256 over the canonical JSON of the descriptor."""
        payload = json.dumps(self.model_dump(mode="json"), sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(payload.encode()).hexdigest()


# ─── Generated Artifact ──────────────────────────────────────

class GeneratedArtifact(BaseModel):
    """The typed code surface the model writes against."""
    model_config = ConfigDict(frozen=True)

    fingerprint: str
    language: Language
    source: str
    token_estimate: int
    dependencies: tuple[str, ...] = ()
    tools: tuple[str, ...] = ()
    function_names: dict[str, str] = Field(default_factory=dict)
    warnings: tuple[str, ...] = ()


# ─── Validation ──────────────────────────────────────────────

class Violation(BaseModel):
    """A single finding from one validator layer."""
    model_config = ConfigDict(frozen=True)

    rule: str
    severity: RiskLevel
    layer: str
    message: str
    line: int | None = None
    recommendation: str = ""


class ResourceEstimate(BaseModel):
    """Static counts of resource-relevant constructs."""
    loops: int = 0
    unbounded_loops: int = 0
    network_calls: int = 0
    file_operations: int = 0
    process_spawns: int = 0
    tool_calls: int = 0


class ValidationReport(BaseModel):
    """Output of the code validator."""
    violations: list[Violation] = Field(default_factory=list)
    risk_level: RiskLevel = RiskLevel.LOW
    complexity_score: int = 1
    obfuscation_flag: bool = False
    resource_estimate: ResourceEstimate = Field(default_factory=ResourceEstimate)
    layers_run: list[str] = Field(default_factory=list)

    @property
    def blocked(self) -> bool:
        return any(v.severity == RiskLevel.CRITICAL for v in self.violations)

    def count(self, severity: RiskLevel) -> int:
        return sum(1 for v in self.violations if v.severity == severity)


class ImpactAssessment(BaseModel):
    """Advisory reach of the code, input to the approval gate."""
    files_touched: list[str] = Field(default_factory=list)
    files_deleted_count: int = 0
    hosts_contacted: list[str] = Field(default_factory=list)
    commands_spawned: list[str] = Field(default_factory=list)
    reversible: bool = True
    blast_radius: BlastRadius = BlastRadius.CONTAINED


# ─── Approval ────────────────────────────────────────────────

class ApprovalRequest(BaseModel):
    """A pending human approval for one execution."""
    id: str = Field(default_factory=lambda: f"apr-{uuid.uuid4().hex[:8]}")
    session_id: str
    action: str
    action_hash: str
    risk_level: RiskLevel
    impact: ImpactAssessment = Field(default_factory=ImpactAssessment)
    code_preview: str = ""
    violations: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class ApprovalDecision(BaseModel):
    approved: bool
    auto_approved: bool = False
    reason: str = ""
    remember_for_session: bool = False


# ─── Sandbox ─────────────────────────────────────────────────

class ResourceLimits(BaseModel):
    """Hard caps applied to one sandbox session."""
    memory_bytes: int = 512 * 1024 * 1024
    cpu_quota: float = 1.0
    wall_timeout_ms: int = 30_000
    fds: int = 256
    procs: int = 64
    output_limit_bytes: int = 1024 * 1024


class ResourceUsage(BaseModel):
    duration_ms: int = 0
    memory_bytes: int = 0
    cpu_ms: int = 0


class NetworkLogEntry(BaseModel):
    """One egress decision taken on behalf of a sandbox."""
    url: str
    host: str
    method: str = "GET"
    allowed: bool
    reason: NetworkReason
    status_code: int | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class RunResult(BaseModel):
    """Everything a sandbox returns after one run."""
    stdout: str = ""
    stderr: str = ""
    exit_code: int | None = None
    value: Any = None
    error: str | None = None
    error_type: str | None = None
    resource_usage: ResourceUsage = Field(default_factory=ResourceUsage)
    network_log: list[NetworkLogEntry] = Field(default_factory=list)
    tool_calls: list[str] = Field(default_factory=list)
    timed_out: bool = False
    oom_killed: bool = False
    truncated: bool = False

    @property
    def network_requests(self) -> int:
        return sum(1 for entry in self.network_log if entry.allowed)

    @property
    def network_denied(self) -> int:
        return sum(1 for entry in self.network_log if not entry.allowed)


# Allowed session transitions; every session passes through exactly one terminal state.
SESSION_TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.CREATED: frozenset({SessionState.INITIALIZED, SessionState.FAILED, SessionState.KILLED}),
    SessionState.INITIALIZED: frozenset({SessionState.RUNNING, SessionState.FAILED, SessionState.KILLED}),
    SessionState.RUNNING: frozenset({SessionState.FINISHED, SessionState.KILLED, SessionState.FAILED}),
    SessionState.FINISHED: frozenset({SessionState.DESTROYED}),
    SessionState.KILLED: frozenset({SessionState.DESTROYED}),
    SessionState.FAILED: frozenset({SessionState.DESTROYED}),
    SessionState.DESTROYED: frozenset(),
}


class SandboxSession(BaseModel):
    """One execution unit with enforced limits."""
    id: str = Field(default_factory=lambda: f"sbx-{uuid.uuid4().hex[:12]}")
    kind: SandboxKind
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    limits: ResourceLimits = Field(default_factory=ResourceLimits)
    workspace_path: str | None = None
    network_mode: NetworkMode = NetworkMode.NONE
    filesystem_scope: FilesystemScope = FilesystemScope.WORKSPACE_ONLY
    state: SessionState = SessionState.CREATED
    history: list[SessionState] = Field(default_factory=lambda: [SessionState.CREATED])

    def can_transition(self, target: SessionState) -> bool:
        return target in SESSION_TRANSITIONS[self.state]


# ─── Audit ───────────────────────────────────────────────────

class AuditEntry(BaseModel):
    """Append-only audit record. Immutable once written."""
    model_config = ConfigDict(frozen=True)

    id: int = 0
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    session_id: str
    user_id: str | None = None
    action: str = "execute"
    intent: str = ""
    language: Language | None = None
    fingerprint: str | None = None
    code_hash: str | None = None
    risk_level: RiskLevel | None = None
    violations: list[str] = Field(default_factory=list)
    approved: bool | None = None
    auto_approved: bool = False
    sandbox_kind: SandboxKind | None = None
    duration_ms: int = 0
    stdout_hash: str | None = None
    stderr_hash: str | None = None
    resource_usage: dict[str, Any] = Field(default_factory=dict)
    network_requests: int = 0
    network_denied: int = 0
    pii_tokenized: int = 0
    pii_detected: int = 0
    tokenization_enabled: bool = True
    outcome: Outcome
    error_kind: str | None = None
    warnings: list[str] = Field(default_factory=list)
    hash: str = ""
    previous_hash: str = ""


class AuditFilter(BaseModel):
    session_id: str | None = None
    user_id: str | None = None
    risk_level: RiskLevel | None = None
    outcome: Outcome | None = None
    since: datetime | None = None
    until: datetime | None = None
    limit: int | None = None


class Anomaly(BaseModel):
    type: str
    description: str
    severity: RiskLevel = RiskLevel.MEDIUM
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class ComplianceReport(BaseModel):
    """Aggregated audit view over a time range."""
    generated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    since: datetime | None = None
    until: datetime | None = None
    total_entries: int = 0
    by_outcome: dict[str, int] = Field(default_factory=dict)
    by_risk: dict[str, int] = Field(default_factory=dict)
    approvals_granted: int = 0
    approvals_auto: int = 0
    approvals_denied: int = 0
    pii_tokenized: int = 0
    network_requests: int = 0
    network_denied: int = 0
    high_risk_entries: list[AuditEntry] = Field(default_factory=list)
    chain_intact: bool = True
    gdpr: bool = False
    soc2: bool = False
    hipaa: bool = False


# ─── Execution Request / Envelope ────────────────────────────

class ExecutionOptions(BaseModel):
    """Per-request knobs for ``execute``. Unset values fall back to config."""
    security_level: SecurityLevel | None = None
    memory_limit: str | int | None = None
    cpu_quota: float | None = None
    wall_timeout: int | None = None
    filesystem_scope: FilesystemScope | None = None
    allow_network: bool = False
    allowed_domains: list[str] = Field(default_factory=list)
    force_approval: bool = False
    tokenize_pii: bool = True
    max_tools: int = 5
    session_id: str | None = None
    user_id: str | None = None


class ExecutionMetrics(BaseModel):
    duration_ms: int = 0
    memory_bytes: int = 0
    cpu_ms: int = 0
    token_estimate: int = 0
    network_requests: int = 0
    network_denied: int = 0


class ErrorInfo(BaseModel):
    kind: str
    message: str
    remediation: str = ""


class ExecutionResult(BaseModel):
    """Result envelope returned by the orchestrator."""
    outcome: Outcome
    value: Any = None
    warnings: list[str] = Field(default_factory=list)
    metrics: ExecutionMetrics = Field(default_factory=ExecutionMetrics)
    error: ErrorInfo | None = None
    session_id: str = ""
    risk_level: RiskLevel | None = None
    code_hash: str | None = None
    fingerprint: str | None = None
    audit_id: int | None = None
    stdout: str = ""

    @property
    def ok(self) -> bool:
        return self.outcome == Outcome.SUCCESS

    def summary(self) -> dict[str, Any]:
        """The compressed dict handed back to the model."""
        data: dict[str, Any] = {
            "ok": self.ok,
            "outcome": self.outcome.value,
            "value": self.value,
            "warnings": list(self.warnings),
            "metrics": self.metrics.model_dump(),
        }
        if self.error is not None:
            data["error"] = self.error.model_dump()
        return data
