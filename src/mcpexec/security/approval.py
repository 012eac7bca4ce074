"""
mcpexec Approval Gate

Human-in-the-loop checkpoint for programs whose risk exceeds the active
auto-approval policy. Critical is never auto-approved; a timeout is a
denial.

Approvers are async callables ``(ApprovalRequest) -> ApprovalDecision | bool``:
the ConsoleApprover prompts on the terminal (rich), the HTTP API resolves
pending futures.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm
from rich.table import Table

from mcpexec.config import ApprovalPolicy
from mcpexec.core.models import ApprovalDecision, ApprovalRequest, RiskLevel
from mcpexec.logging import get_logger

logger = get_logger("mcpexec.approval")

Approver = Callable[[ApprovalRequest], Awaitable["ApprovalDecision | bool"]]

RISK_STYLES = {
    RiskLevel.LOW: "green",
    RiskLevel.MEDIUM: "yellow",
    RiskLevel.HIGH: "red",
    RiskLevel.CRITICAL: "bold red",
}


class ApprovalGate:
    """Consults the policy, the per-session cache and finally a human."""

    def __init__(self, policy: ApprovalPolicy | None = None, approver: Approver | None = None):
        self.policy = policy or ApprovalPolicy()
        self.approver = approver
        self._session_cache: set[tuple[str, str]] = set()

    def auto_approves(self, risk: RiskLevel) -> bool:
        if risk == RiskLevel.CRITICAL:
            return False
        return {
            RiskLevel.LOW: self.policy.auto_approve_low,
            RiskLevel.MEDIUM: self.policy.auto_approve_medium,
            RiskLevel.HIGH: self.policy.auto_approve_high,
        }[risk]

    def requires_approval(self, risk: RiskLevel, force: bool = False) -> bool:
        return force or not self.auto_approves(risk)

    async def review(self, request: ApprovalRequest, force: bool = False) -> ApprovalDecision:
        """Decide on ``request``. Never raises for a denial."""
        risk = request.risk_level
        if not force and self.auto_approves(risk):
            return ApprovalDecision(approved=True, auto_approved=True, reason=f"policy auto-approves {risk.value}")

        cache_key = (request.session_id, request.action_hash)
        if risk != RiskLevel.CRITICAL and cache_key in self._session_cache:
            return ApprovalDecision(approved=True, auto_approved=True, reason="approved earlier in this session")

        if self.approver is None:
            logger.warning(
                "Approval required but no approver configured",
                extra={"session_id": request.session_id, "risk_level": risk.value},
            )
            return ApprovalDecision(approved=False, reason="no approver configured")

        try:
            result = await asyncio.wait_for(self.approver(request), timeout=self.policy.timeout_seconds)
        except TimeoutError:
            logger.warning(
                "Approval timed out after %.0fs", self.policy.timeout_seconds,
                extra={"session_id": request.session_id, "risk_level": risk.value},
            )
            return ApprovalDecision(approved=False, reason="timeout")

        decision = result if isinstance(result, ApprovalDecision) else ApprovalDecision(
            approved=bool(result), reason="approved by user" if result else "rejected by user"
        )
        if decision.approved and decision.remember_for_session and risk != RiskLevel.CRITICAL:
            self._session_cache.add(cache_key)
        logger.info(
            "Approval %s", "granted" if decision.approved else "denied",
            extra={"session_id": request.session_id, "risk_level": risk.value, "reason": decision.reason},
        )
        return decision

    def forget_session(self, session_id: str) -> None:
        self._session_cache = {key for key in self._session_cache if key[0] != session_id}


def format_request(request: ApprovalRequest) -> Panel:
    """One-screen summary of an approval request."""
    impact = request.impact
    style = RISK_STYLES[request.risk_level]
    table = Table.grid(padding=(0, 2))
    table.add_column(style="bold")
    table.add_column()
    table.add_row("Action", request.action)
    table.add_row("Risk", f"[{style}]{request.risk_level.value}[/]")
    table.add_row("Blast radius", impact.blast_radius.value)
    table.add_row("Reversible", "yes" if impact.reversible else "[red]no[/]")
    table.add_row("Files", ", ".join(impact.files_touched) or "-")
    table.add_row("Deletions", str(impact.files_deleted_count))
    table.add_row("Hosts", ", ".join(impact.hosts_contacted) or "-")
    table.add_row("Commands", ", ".join(impact.commands_spawned) or "-")
    if request.violations:
        table.add_row("Violations", "\n".join(request.violations[:8]))
    table.add_row("Code", request.code_preview)
    return Panel(table, title="[bold]Approval required[/]", subtitle=request.id, border_style=style)


class ConsoleApprover:
    """Terminal approver. The blocking prompt runs in a worker thread."""

    def __init__(self, console: Console | None = None):
        self.console = console or Console(stderr=True)

    def _prompt(self, request: ApprovalRequest) -> ApprovalDecision:
        self.console.print(format_request(request))
        try:
            approved = Confirm.ask("Approve?", console=self.console, default=False)
            remember = approved and request.risk_level != RiskLevel.CRITICAL and Confirm.ask(
                "Remember for this session?", console=self.console, default=False
            )
        except (EOFError, KeyboardInterrupt):
            return ApprovalDecision(approved=False, reason="prompt aborted")
        return ApprovalDecision(
            approved=approved,
            reason="approved by user" if approved else "rejected by user",
            remember_for_session=bool(remember),
        )

    async def __call__(self, request: ApprovalRequest) -> ApprovalDecision:
        return await asyncio.to_thread(self._prompt, request)
