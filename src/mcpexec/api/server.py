"""
mcpexec API Server

FastAPI front of the execution engine. Human approval in API mode is a
pending future per request: ``POST /api/execute`` blocks on it until an
operator answers through ``POST /api/approvals/{request_id}`` or the
policy timeout denies it.

Usage:
    uvicorn mcpexec.api.server:app
"""

from __future__ import annotations

import asyncio
import shutil
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from mcpexec import __version__
from mcpexec.audit.logger import RetentionJob
from mcpexec.config import EngineConfig, load_config
from mcpexec.core.models import (
    ApprovalDecision,
    ApprovalRequest,
    AuditFilter,
    ExecutionOptions,
    Language,
    Outcome,
    RiskLevel,
)
from mcpexec.discovery.watcher import ToolDirectoryWatcher
from mcpexec.engine.orchestrator import ExecutionEngine
from mcpexec.logging import get_logger
from mcpexec.sandbox.cleanup import ContainerCleanupJob

logger = get_logger("mcpexec.api")


# ─── Request/Response Models ────────────────────────────────

class ExecuteRequest(BaseModel):
    intent: str
    language: Language = Language.PYTHON
    options: ExecutionOptions = Field(default_factory=ExecutionOptions)
    program: str | None = None
    inputs: Any = None
    tools: list[str] | None = None


class ValidateRequest(BaseModel):
    source: str
    language: Language = Language.PYTHON


class ApproveRequest(BaseModel):
    approved: bool
    reason: str = ""
    remember_for_session: bool = False


class StatusResponse(BaseModel):
    version: str = __version__
    tools: int = 0
    pending_approvals: int = 0
    running: int = 0
    pool: dict[str, Any] = Field(default_factory=dict)


# ─── Execution Manager ──────────────────────────────────────

class ExecutionManager:
    """Owns the engine and the queue of approvals waiting for a human."""

    def __init__(self, engine: ExecutionEngine | None = None, config: EngineConfig | None = None):
        self._pending: dict[str, asyncio.Future] = {}
        self._requests: dict[str, ApprovalRequest] = {}
        self.running = 0
        self.engine = engine or ExecutionEngine(config or load_config(), approver=self._handle_approval)
        if self.engine.gate.approver is None:
            self.engine.gate.approver = self._handle_approval
        self._jobs: list[Any] = []

    async def start(self) -> None:
        """Connect MCP servers, then start background jobs: retention, container cleanup, tools watcher."""
        await self.engine.start()
        config = self.engine.config
        retention = RetentionJob(self.engine.audit, config.audit.compaction_interval_hours)
        retention.start()
        self._jobs.append(retention)
        if shutil.which(config.sandbox.docker_executable):
            cleanup = ContainerCleanupJob(config.sandbox.docker_executable, config.sandbox.cleanup_max_age_hours)
            cleanup.start()
            self._jobs.append(cleanup)
        if config.index.watch and config.index.tools_dir:
            watcher = ToolDirectoryWatcher(self.engine.index, config.index.tools_dir)
            await watcher.start()
            self._jobs.append(watcher)

    async def stop(self) -> None:
        for job in reversed(self._jobs):
            await job.stop()
        self._jobs.clear()
        await self.engine.close()

    async def _handle_approval(self, request: ApprovalRequest) -> ApprovalDecision:
        """Approver used by the gate: waits until an operator resolves the request."""
        future = asyncio.get_running_loop().create_future()
        self._pending[request.id] = future
        self._requests[request.id] = request
        logger.info(
            "Approval %s waiting for an operator", request.id,
            extra={"session_id": request.session_id, "risk_level": request.risk_level.value},
        )
        try:
            return await future
        finally:
            self._pending.pop(request.id, None)
            self._requests.pop(request.id, None)

    def resolve_approval(self, request_id: str, body: ApproveRequest) -> bool:
        """Returns True if the approval was pending and is now resolved."""
        future = self._pending.get(request_id)
        if future is None or future.done():
            return False
        future.set_result(
            ApprovalDecision(
                approved=body.approved,
                reason=body.reason or ("approved by operator" if body.approved else "rejected by operator"),
                remember_for_session=body.remember_for_session,
            )
        )
        return True

    @property
    def pending_approvals(self) -> list[dict]:
        return [
            {
                "id": req.id,
                "session_id": req.session_id,
                "action": req.action,
                "risk_level": req.risk_level.value,
                "blast_radius": req.impact.blast_radius.value,
                "reversible": req.impact.reversible,
                "violations": req.violations,
                "code_preview": req.code_preview,
                "created_at": req.created_at.isoformat(),
            }
            for req in self._requests.values()
        ]

    async def execute(self, body: ExecuteRequest) -> dict[str, Any]:
        self.running += 1
        try:
            result = await self.engine.execute(
                body.intent,
                body.language,
                body.options,
                program=body.program,
                inputs=body.inputs,
                tools=body.tools,
            )
        finally:
            self.running -= 1
        return {
            **result.summary(),
            "session_id": result.session_id,
            "risk_level": result.risk_level.value if result.risk_level else None,
            "audit_id": result.audit_id,
        }

    async def status(self) -> StatusResponse:
        status = await self.engine.status()
        return StatusResponse(
            tools=status["tools"],
            pending_approvals=len(self._pending),
            running=self.running,
            pool=status["pool"],
        )


# ─── App ─────────────────────────────────────────────────────

def create_app(manager: ExecutionManager | None = None) -> FastAPI:
    """Build the API. Without ``manager`` one is created from the configuration at startup."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = getattr(app.state, "manager", None) is None
        if owned:
            app.state.manager = ExecutionManager()
            await app.state.manager.start()
        try:
            yield
        finally:
            if owned:
                await app.state.manager.stop()

    app = FastAPI(
        title="mcpexec API",
        description="Sandboxed code execution for MCP tool catalogs",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.manager = manager
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def _manager(request: Request) -> ExecutionManager:
        current = request.app.state.manager
        if current is None:
            raise HTTPException(status_code=503, detail="Engine not started")
        return current

    # ─── REST Endpoints ──────────────────────────────────────

    @app.get("/api/status")
    async def get_status(request: Request) -> StatusResponse:
        return await _manager(request).status()

    @app.post("/api/execute")
    async def execute(request: Request, body: ExecuteRequest) -> dict:
        return await _manager(request).execute(body)

    @app.post("/api/validate")
    async def validate(request: Request, body: ValidateRequest) -> dict:
        report = _manager(request).engine.validate(body.source, body.language)
        return report.model_dump(mode="json")

    @app.get("/api/audit")
    async def get_audit(
        request: Request,
        session_id: str | None = None,
        user_id: str | None = None,
        risk_level: RiskLevel | None = None,
        outcome: Outcome | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int | None = 100,
    ) -> dict:
        flt = AuditFilter(
            session_id=session_id,
            user_id=user_id,
            risk_level=risk_level,
            outcome=outcome,
            since=since,
            until=until,
            limit=limit,
        )
        entries = await _manager(request).engine.query_audit(flt)
        return {"entries": [e.model_dump(mode="json") for e in entries], "total": len(entries)}

    @app.get("/api/report")
    async def get_report(request: Request, since: datetime | None = None, until: datetime | None = None) -> dict:
        report = await _manager(request).engine.report(since, until)
        return report.model_dump(mode="json")

    @app.get("/api/tools/search")
    async def search_tools(request: Request, q: str, k: int = 5) -> dict:
        tools = _manager(request).engine.search_tools(q, k)
        return {
            "tools": [
                {"key": t.key, "name": t.name, "server": t.server, "description": t.description, "tags": list(t.tags)}
                for t in tools
            ]
        }

    @app.get("/api/approvals")
    async def get_approvals(request: Request) -> dict:
        pending = _manager(request).pending_approvals
        return {"approvals": pending, "total": len(pending)}

    @app.post("/api/approvals/{request_id}")
    async def resolve_approval(request: Request, request_id: str, body: ApproveRequest) -> dict:
        if not _manager(request).resolve_approval(request_id, body):
            raise HTTPException(status_code=404, detail=f"No pending approval '{request_id}'")
        return {"id": request_id, "approved": body.approved}

    return app


app = create_app()
