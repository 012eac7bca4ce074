"""
mcpexec Execution Engine

Owns the end-to-end pipeline for one request:

    search -> generate -> validate -> classify/approve -> tokenize
           -> sandbox -> scrub -> audit -> envelope

Components are handed in by the engine and never reach back into it.
Pipeline failures never raise out of ``execute``: they become the
envelope's ``outcome`` and ``error``. Cancellation is the exception: the
sandbox is destroyed, the token map zeroised, an ``outcome=cancelled``
entry audited, and CancelledError re-raised.

Usage:
    engine = ExecutionEngine(config, tool_invoker=my_mcp_client.call)
    result = await engine.execute("add 2 and 3", "python", inputs={"a": 2, "b": 3})
    print(result.summary())
"""

from __future__ import annotations

import asyncio
import hashlib
import inspect
import os
import tempfile
import time
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import httpx

from mcpexec.audit.anomaly import AnomalyDetector
from mcpexec.audit.logger import AuditLogger
from mcpexec.codegen.cache import ArtifactCache
from mcpexec.codegen.generator import CodeGenerator
from mcpexec.config import EngineConfig, parse_memory
from mcpexec.core.models import (
    ApprovalRequest,
    AuditEntry,
    AuditFilter,
    ComplianceReport,
    ErrorInfo,
    ExecutionMetrics,
    ExecutionOptions,
    ExecutionResult,
    GeneratedArtifact,
    Language,
    NetworkMode,
    Outcome,
    ResourceLimits,
    RiskLevel,
    RunResult,
    SandboxKind,
    SecurityLevel,
    ToolDescriptor,
    ValidationReport,
)
from mcpexec.discovery.index import ToolIndex
from mcpexec.discovery.mcp_client import MCPClientPool
from mcpexec.discovery.query import derive_query
from mcpexec.discovery.schema import SchemaParser
from mcpexec.exceptions import (
    ApprovalDeniedError,
    MCPExecError,
    NotFoundError,
    SandboxError,
    SandboxOOMError,
    SandboxStartupError,
    SandboxTimeoutError,
    ToolInvocationError,
    ValidationBlockedError,
)
from mcpexec.logging import get_logger
from mcpexec.observability.metrics import record_execution
from mcpexec.sandbox.pool import SandboxPool
from mcpexec.sandbox.selector import fallback_kind, select_kind
from mcpexec.security.approval import ApprovalGate, Approver
from mcpexec.security.network import EgressGateway, NetworkPolicy, RateLimiter, Resolver, system_resolver
from mcpexec.security.pii import PIITokenizer
from mcpexec.security.risk import RiskClassifier
from mcpexec.security.validator import CodeValidator

logger = get_logger("mcpexec.engine")

ToolInvoker = Callable[[ToolDescriptor, dict[str, Any]], Any | Awaitable[Any]]

_OUTCOMES: dict[type[MCPExecError], Outcome] = {
    ValidationBlockedError: Outcome.BLOCKED,
    ApprovalDeniedError: Outcome.DENIED,
    SandboxTimeoutError: Outcome.TIMEOUT,
    SandboxOOMError: Outcome.OOM,
}


def sha256_text(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8", errors="replace")).hexdigest()


# ─── Host Handler ────────────────────────────────────────────

class HostHandler:
    """Serves the sandbox's tool calls and fetches for one request.

    Tool arguments are detokenized just before they leave for the tool;
    tool results are tokenized before they re-enter the sandbox.
    """

    def __init__(
        self,
        tools: dict[str, ToolDescriptor],
        invoker: ToolInvoker | None,
        tokenizer: PIITokenizer,
        gateway: EgressGateway,
        session_id: str,
    ):
        self.tools = tools
        self.invoker = invoker
        self.tokenizer = tokenizer
        self.gateway = gateway
        self.session_id = session_id

    async def call_tool(self, server: str, tool: str, arguments: dict[str, Any]) -> Any:
        key = f"{server}/{tool}"
        descriptor = self.tools.get(key)
        if descriptor is None:
            raise ToolInvocationError(key, "tool is not part of this execution")
        if self.invoker is None:
            raise ToolInvocationError(key, "no tool invoker configured")

        logger.info("Tool call %s", key, extra={"session_id": self.session_id, "tool_name": key})
        try:
            value = self.invoker(descriptor, self.tokenizer.detokenize(arguments))
            if inspect.isawaitable(value):
                value = await value
        except ToolInvocationError as exc:
            raise ToolInvocationError(key, self.tokenizer.scrub(exc.reason)) from exc
        except Exception as exc:
            raise ToolInvocationError(key, self.tokenizer.scrub(f"{type(exc).__name__}: {exc}")) from exc
        return self.tokenizer.tokenize(value)

    async def fetch(self, url: str, method: str, headers: dict[str, str], body: str | None) -> dict[str, Any]:
        response = await self.gateway.fetch(
            self.tokenizer.detokenize(url),
            method,
            self.tokenizer.detokenize(headers),
            self.tokenizer.detokenize(body),
        )
        return self.tokenizer.tokenize(response)


# ─── Run State ───────────────────────────────────────────────

@dataclass
class _RunState:
    """Everything one request learns on its way to the audit entry."""

    session_id: str
    user_id: str | None
    intent: str
    language: Language
    started: float = field(default_factory=time.monotonic)
    artifact: GeneratedArtifact | None = None
    code_hash: str | None = None
    report: ValidationReport | None = None
    risk_level: RiskLevel | None = None
    approved: bool | None = None
    auto_approved: bool = False
    sandbox_kind: SandboxKind | None = None
    run: RunResult | None = None
    gateway: EgressGateway | None = None
    warnings: list[str] = field(default_factory=list)

    @property
    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.started) * 1000)


# ─── Engine ──────────────────────────────────────────────────

class ExecutionEngine:
    """Sequences the pipeline and enforces the request budget."""

    def __init__(
        self,
        config: EngineConfig | None = None,
        *,
        index: ToolIndex | None = None,
        tool_invoker: ToolInvoker | None = None,
        approver: Approver | None = None,
        audit: AuditLogger | None = None,
        http_client: httpx.AsyncClient | None = None,
        resolver: Resolver | None = system_resolver,
    ):
        self.config = config or EngineConfig()
        security = self.config.security
        self.index = index if index is not None else ToolIndex(SchemaParser(max_depth=self.config.index.max_schema_depth))
        if index is None and self.config.index.tools_dir:
            self.index.load_directory(self.config.index.tools_dir)
        self.generator = CodeGenerator()
        spill_dir = None
        if self.config.sandbox.debug_persist_artifacts:
            spill_dir = os.path.join(self.config.sandbox.workspace_root or tempfile.gettempdir(), "mcpexec-artifacts")
        self.cache = ArtifactCache(spill_dir=spill_dir)
        self.validator = CodeValidator(
            complexity_threshold=security.complexity_threshold,
            obfuscation_ratio=security.obfuscation_ratio,
            long_string_threshold=security.long_string_threshold,
        )
        self.classifier = RiskClassifier()
        self.gate = ApprovalGate(self.config.approval, approver)
        self.audit = audit or AuditLogger.from_config(self.config)
        self.anomalies = AnomalyDetector()
        self.pool = SandboxPool(self.config.sandbox)
        self.rate_limiter = RateLimiter(
            self.config.network.rate_limit_requests, self.config.network.rate_limit_window_seconds
        )
        self.tool_invoker = tool_invoker
        self.mcp: MCPClientPool | None = None
        if self.config.mcp_servers:
            parser = SchemaParser(max_depth=self.config.index.max_schema_depth)
            self.mcp = MCPClientPool(self.config.mcp_servers, parser)
        self._started = False
        self._start_lock = asyncio.Lock()
        self.resolver = resolver if self.config.network.resolve_dns else None
        self._http = http_client
        self._owns_http = http_client is None

    # ─── Public API ──────────────────────────────────────────

    async def start(self) -> None:
        """Connect the configured MCP servers and index their tools. Runs once."""
        async with self._start_lock:
            if self._started:
                return
            self._started = True
            if self.mcp is None:
                return
            await self.mcp.connect()
            for name, connection in self.mcp.connections.items():
                self.index.replace_server(name, connection.tools)

    async def execute(
        self,
        intent: str,
        language: Language | str = Language.PYTHON,
        options: ExecutionOptions | None = None,
        *,
        program: str | None = None,
        inputs: Any = None,
        tools: list[str] | None = None,
    ) -> ExecutionResult:
        """Run one request end to end and return the result envelope."""
        options = options or ExecutionOptions()
        tokenizer = PIITokenizer(enabled=options.tokenize_pii and self.config.security.tokenize_pii)
        state = _RunState(
            session_id=options.session_id or f"exec-{uuid.uuid4().hex[:12]}",
            user_id=options.user_id,
            intent=tokenizer.scrub(intent),
            language=Language(language),
        )
        logger.info(
            "Execution started: %s", state.intent[:80],
            extra={"session_id": state.session_id, "event_type": "execute"},
        )
        try:
            await self.start()
            value, stdout = await self._pipeline(state, options, tokenizer, program, inputs, tools)
            return await self._finish(state, tokenizer, Outcome.SUCCESS, value=value, stdout=stdout)
        except asyncio.CancelledError:
            await asyncio.shield(self._finish(state, tokenizer, Outcome.CANCELLED))
            raise
        except MCPExecError as exc:
            if isinstance(exc, SandboxError) and isinstance(exc.result, RunResult):
                state.run = exc.result
            outcome = next((o for cls, o in _OUTCOMES.items() if isinstance(exc, cls)), Outcome.ERROR)
            error = ErrorInfo(kind=exc.kind, message=tokenizer.scrub(str(exc)), remediation=exc.remediation)
            return await self._finish(state, tokenizer, outcome, error=error)
        except Exception:
            logger.exception("Internal error in execution pipeline", extra={"session_id": state.session_id})
            error = ErrorInfo(
                kind="Internal",
                message=f"Internal error, reference session {state.session_id}",
                remediation=MCPExecError.remediation,
            )
            return await self._finish(state, tokenizer, Outcome.ERROR, error=error)
        finally:
            tokenizer.clear()
            if options.session_id is None:
                self.gate.forget_session(state.session_id)

    def validate(self, source: str, language: Language | str) -> ValidationReport:
        return self.validator.validate(source, language)

    def search_tools(self, query: str, k: int = 5) -> list[ToolDescriptor]:
        return self.index.search(query, k)

    async def query_audit(self, flt: AuditFilter | None = None) -> list[AuditEntry]:
        return await self.audit.query(flt)

    async def report(self, since: datetime | None = None, until: datetime | None = None) -> ComplianceReport:
        return await self.audit.report(since, until)

    async def status(self) -> dict[str, Any]:
        return {
            "tools": len(self.index),
            "index_generation": self.index.generation,
            "cache": self.cache.stats(),
            "pool": await self.pool.health(),
            "mcp_servers": self.mcp.status() if self.mcp is not None else {},
        }

    async def close(self) -> None:
        if self.mcp is not None:
            await self.mcp.close()
        await self.pool.close()
        if self._http is not None and self._owns_http:
            await self._http.aclose()
            self._http = None
        self.audit.close()

    async def __aenter__(self) -> ExecutionEngine:
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    # ─── Pipeline ────────────────────────────────────────────

    async def _pipeline(
        self,
        state: _RunState,
        options: ExecutionOptions,
        tokenizer: PIITokenizer,
        program: str | None,
        inputs: Any,
        tool_keys: list[str] | None,
    ) -> tuple[Any, str]:
        level = SecurityLevel(options.security_level or self.config.security.level)

        # 1-2. Discover tools and render the surface
        descriptors = self._resolve_tools(state, tool_keys, options.max_tools, program is not None)
        artifact = self._artifact(descriptors, state.language, level)
        state.artifact = artifact
        state.warnings.extend(f"TypeDegraded: {w}" for w in artifact.warnings)
        if program is None:
            program = self.generator.default_program(artifact)

        # 3. Validate what the model wrote together with the surface it wrote against
        code = artifact.source.rstrip("\n") + "\n\n" + program
        state.code_hash = sha256_text(code)
        report = self.validator.validate(code, state.language)
        state.report = report
        state.risk_level = report.risk_level
        logger.info(
            "Validation finished: %d violations", len(report.violations),
            extra={"session_id": state.session_id, "risk_level": report.risk_level.value},
        )
        if report.risk_level == RiskLevel.CRITICAL:
            critical = [v.rule for v in report.violations if v.severity == RiskLevel.CRITICAL]
            raise ValidationBlockedError(f"Critical violation: {', '.join(critical)}", violations=critical)

        # 4. Risk and approval
        risk, impact = self.classifier.classify(code, state.language, report)
        state.risk_level = risk
        request = ApprovalRequest(
            session_id=state.session_id,
            action=state.intent[:200],
            action_hash=sha256_text(f"{state.language.value}\n{code}"),
            risk_level=risk,
            impact=impact,
            code_preview=tokenizer.scrub(program[:2000]),
            violations=[f"{v.severity.value}: {v.message}" for v in report.violations],
        )
        decision = await self.gate.review(request, force=options.force_approval)
        state.approved = decision.approved
        state.auto_approved = decision.auto_approved
        if not decision.approved:
            raise ApprovalDeniedError(f"Approval denied: {decision.reason}", reason=decision.reason)

        # 5. Tokenize and run
        tokenized = tokenizer.tokenize(inputs)
        gateway = self._gateway(state, options)
        state.gateway = gateway
        handler = HostHandler({d.key: d for d in descriptors}, self._dispatch, tokenizer, gateway, state.session_id)
        source = self.generator.assemble(artifact, program)
        run = await self._run(state, options, level, source, tokenized, handler)
        state.run = run

        # 6. Scrub everything model-visible
        if run.truncated:
            state.warnings.append(f"Output truncated at {self._limits(options).output_limit_bytes} bytes")
        return tokenizer.scrub(run.value), tokenizer.scrub(run.stdout)

    async def _dispatch(self, descriptor: ToolDescriptor, arguments: dict[str, Any]) -> Any:
        """Route a tool call to the MCP server that owns it, else to ``tool_invoker``."""
        if self.mcp is not None and self.mcp.serves(descriptor.server):
            return await self.mcp.invoke(descriptor, arguments)
        if self.tool_invoker is None:
            raise ToolInvocationError(descriptor.key, "no tool invoker configured")
        value = self.tool_invoker(descriptor, arguments)
        if inspect.isawaitable(value):
            value = await value
        return value

    def _resolve_tools(
        self, state: _RunState, tool_keys: list[str] | None, max_tools: int, has_program: bool
    ) -> list[ToolDescriptor]:
        if tool_keys:
            return [self.index.get_by_key(key) for key in tool_keys]
        query = derive_query(state.intent)
        descriptors = self.index.search(query, k=max_tools)
        logger.info(
            "Tool search returned %d candidates", len(descriptors),
            extra={"session_id": state.session_id, "event_type": "search"},
        )
        if not descriptors and not has_program:
            raise NotFoundError("", state.intent, f"No indexed tool matches '{state.intent[:80]}'")
        return descriptors

    def _artifact(self, descriptors: list[ToolDescriptor], language: Language, level: SecurityLevel) -> GeneratedArtifact:
        """Render (or fetch from cache) the surface, dropping the lowest-ranked tools over budget."""
        budget = self.config.security.max_artifact_tokens
        chosen = list(descriptors)
        while True:
            fingerprint = self.generator.fingerprint(chosen, language)
            artifact = self.cache.get(fingerprint)
            if artifact is None:
                artifact = self.generator.generate(chosen, language)
                persist = self.config.sandbox.debug_persist_artifacts and level != SecurityLevel.MAXIMUM
                self.cache.put(artifact, persist=persist)
            if artifact.token_estimate <= budget or len(chosen) <= 1:
                return artifact
            chosen.pop()

    def _limits(self, options: ExecutionOptions) -> ResourceLimits:
        limits = self.config.sandbox.limits()
        update: dict[str, Any] = {}
        if options.memory_limit is not None:
            update["memory_bytes"] = parse_memory(options.memory_limit)
        if options.cpu_quota is not None:
            update["cpu_quota"] = options.cpu_quota
        if options.wall_timeout is not None:
            update["wall_timeout_ms"] = options.wall_timeout
        return limits.model_copy(update=update)

    def _gateway(self, state: _RunState, options: ExecutionOptions) -> EgressGateway:
        network = self.config.network
        if self._http is None:
            self._http = httpx.AsyncClient()
        policy = NetworkPolicy(
            allowed_domains=options.allowed_domains or network.allowed_domains,
            blocked_cidrs=network.blocked_cidrs,
            rate_limiter=self.rate_limiter,
            enabled=options.allow_network,
            resolver=self.resolver,
        )
        return EgressGateway(
            policy,
            self._http,
            max_response_bytes=network.max_response_bytes,
            timeout_seconds=network.request_timeout_seconds,
            session_id=state.session_id,
        )

    async def _run(
        self,
        state: _RunState,
        options: ExecutionOptions,
        level: SecurityLevel,
        source: str,
        inputs: Any,
        handler: HostHandler,
    ) -> RunResult:
        kind = select_kind(level)
        try:
            return await self._run_once(state, options, kind, source, inputs, handler)
        except SandboxStartupError as exc:
            alternate = fallback_kind(kind, level, self.config.sandbox.allow_degradation)
            if alternate is None:
                raise
            logger.warning(
                "%s sandbox unavailable (%s), retrying on %s", kind.value, exc, alternate.value,
                extra={"session_id": state.session_id, "sandbox_kind": kind.value},
            )
            state.warnings.append(f"SandboxStartupFailed: {kind.value} unavailable, ran on {alternate.value}")
            return await self._run_once(state, options, alternate, source, inputs, handler)

    async def _run_once(
        self,
        state: _RunState,
        options: ExecutionOptions,
        kind: SandboxKind,
        source: str,
        inputs: Any,
        handler: HostHandler,
    ) -> RunResult:
        network_mode = NetworkMode.WHITELIST if options.allow_network else NetworkMode.NONE
        async with self.pool.lease(
            kind, state.language, self._limits(options), network_mode, options.filesystem_scope
        ) as sandbox:
            state.sandbox_kind = kind
            logger.info(
                "Running in %s sandbox", kind.value,
                extra={"session_id": state.session_id, "sandbox_kind": kind.value},
            )
            return await sandbox.run(source, inputs, handler)

    # ─── Audit & Envelope ────────────────────────────────────

    async def _finish(
        self,
        state: _RunState,
        tokenizer: PIITokenizer,
        outcome: Outcome,
        value: Any = None,
        stdout: str = "",
        error: ErrorInfo | None = None,
    ) -> ExecutionResult:
        run = state.run
        gateway = state.gateway
        if gateway is not None:
            state.warnings.extend(gateway.warnings())
        usage = run.resource_usage if run is not None else None
        duration_ms = usage.duration_ms if usage is not None else state.elapsed_ms
        model_stdout = stdout if run is None or outcome == Outcome.SUCCESS else tokenizer.scrub(run.stdout)
        model_stderr = tokenizer.scrub(run.stderr) if run is not None else ""

        entry = AuditEntry(
            session_id=state.session_id,
            user_id=state.user_id,
            intent=state.intent,
            language=state.language,
            fingerprint=state.artifact.fingerprint if state.artifact else None,
            code_hash=state.code_hash,
            risk_level=state.risk_level,
            violations=[v.rule for v in state.report.violations] if state.report else [],
            approved=state.approved,
            auto_approved=state.auto_approved,
            sandbox_kind=state.sandbox_kind,
            duration_ms=duration_ms,
            stdout_hash=sha256_text(model_stdout) if run is not None else None,
            stderr_hash=sha256_text(model_stderr) if run is not None else None,
            resource_usage=usage.model_dump() if usage is not None else {},
            network_requests=gateway.requests if gateway else 0,
            network_denied=gateway.denied if gateway else 0,
            pii_tokenized=tokenizer.count,
            pii_detected=tokenizer.detected,
            tokenization_enabled=tokenizer.enabled,
            outcome=outcome,
            error_kind=error.kind if error else None,
            warnings=list(state.warnings),
        )
        for anomaly in self.anomalies.observe(entry):
            state.warnings.append(f"Anomaly: {anomaly.type}: {anomaly.description}")
        entry = entry.model_copy(update={"warnings": list(state.warnings)})
        stored = await self.audit.record(entry)

        record_execution(
            outcome=outcome.value,
            language=state.language.value,
            risk_level=state.risk_level.value if state.risk_level else "unknown",
        )
        log = logger.info if outcome in (Outcome.SUCCESS, Outcome.CANCELLED) else logger.warning
        log(
            "Execution finished: %s", outcome.value,
            extra={
                "session_id": state.session_id,
                "outcome": outcome.value,
                "risk_level": state.risk_level.value if state.risk_level else None,
                "duration_ms": duration_ms,
            },
        )
        return ExecutionResult(
            outcome=outcome,
            value=value,
            warnings=list(state.warnings),
            metrics=ExecutionMetrics(
                duration_ms=duration_ms,
                memory_bytes=usage.memory_bytes if usage is not None else 0,
                cpu_ms=usage.cpu_ms if usage is not None else 0,
                token_estimate=state.artifact.token_estimate if state.artifact else 0,
                network_requests=entry.network_requests,
                network_denied=entry.network_denied,
            ),
            error=error,
            session_id=state.session_id,
            risk_level=state.risk_level,
            code_hash=state.code_hash,
            fingerprint=state.artifact.fingerprint if state.artifact else None,
            audit_id=stored.id,
            stdout=model_stdout,
        )
