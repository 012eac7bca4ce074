"""End-to-end tests for the execution engine on the process sandbox."""

import asyncio
import hashlib

import httpx
import pytest

from mcpexec.core.models import AuditFilter, ExecutionOptions, Language, Outcome, RiskLevel
from mcpexec.engine.orchestrator import ExecutionEngine


def _http_client():
    def handler(request):
        return httpx.Response(200, json={"host": request.url.host})

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.fixture
def engine(engine_config, invoker):
    return ExecutionEngine(engine_config, tool_invoker=invoker, resolver=None)


# ─── Happy Path ──────────────────────────────────────────────


class TestExecute:
    @pytest.mark.asyncio
    async def test_sum_tool(self, engine, invoker):
        result = await engine.execute("add 2 and 3", Language.PYTHON, inputs={"a": 2, "b": 3})
        try:
            assert result.outcome == Outcome.SUCCESS, result.error
            assert result.value == 5
            assert result.risk_level == RiskLevel.LOW
            assert invoker.calls == [("math/sum", {"a": 2, "b": 3})]

            artifact = engine.cache.get(result.fingerprint)
            assert "async def sum(" in artifact.source

            entries = await engine.query_audit(AuditFilter(session_id=result.session_id))
            assert len(entries) == 1
            assert entries[0].id == result.audit_id
            assert entries[0].outcome == Outcome.SUCCESS
            assert entries[0].network_requests == 0
            assert entries[0].approved is True and entries[0].auto_approved is True
        finally:
            await engine.close()

    @pytest.mark.asyncio
    async def test_explicit_program_and_summary(self, engine):
        program = "async def main(inputs):\n    total = await sum(a=inputs['a'], b=10)\n    print(total)\n    return total\n"
        result = await engine.execute("add numbers", program=program, inputs={"a": 1}, tools=["math/sum"])
        try:
            assert result.value == 11
            assert result.stdout == "11\n"
            summary = result.summary()
            assert summary["ok"] is True
            assert summary["value"] == 11
        finally:
            await engine.close()

    @pytest.mark.asyncio
    async def test_artifact_is_cached(self, engine):
        try:
            first = await engine.execute("add 2 and 3", inputs={"a": 2, "b": 3})
            second = await engine.execute("add 4 and 5", inputs={"a": 4, "b": 5})
            assert first.fingerprint == second.fingerprint
            assert engine.cache.stats()["hits"] >= 1
        finally:
            await engine.close()

    @pytest.mark.asyncio
    async def test_tool_failure_reaches_the_program(self, engine):
        program = (
            "async def main(inputs):\n"
            "    try:\n"
            "        await __rpc__('math', 'sum', {'a': 1})\n"
            "    except ToolError as exc:\n"
            "        return str(exc)\n"
        )
        result = await engine.execute("add", program=program, tools=["math/sum"])
        try:
            assert result.outcome == Outcome.SUCCESS
            assert result.value.startswith("math/sum")
            assert "KeyError" in result.value
        finally:
            await engine.close()


# ─── Refusals ────────────────────────────────────────────────


class TestRefusals:
    @pytest.mark.asyncio
    async def test_critical_code_never_reaches_a_sandbox(self, engine):
        program = "async def main(inputs):\n    return eval('1+1')\n"
        result = await engine.execute("compute", program=program)
        try:
            assert result.outcome == Outcome.BLOCKED
            assert result.risk_level == RiskLevel.CRITICAL
            assert result.error.kind == "ValidationBlocked"
            assert engine.pool.leases == 0

            entries = await engine.query_audit(AuditFilter(outcome=Outcome.BLOCKED))
            assert [e.session_id for e in entries] == [result.session_id]
            assert "eval_call" in entries[0].violations
            assert entries[0].sandbox_kind is None
        finally:
            await engine.close()

    @pytest.mark.asyncio
    async def test_unapproved_medium_risk_is_denied(self, engine):
        program = "import subprocess\n\nasync def main(inputs):\n    return 1\n"
        result = await engine.execute("list processes", program=program)
        try:
            assert result.outcome == Outcome.DENIED
            assert result.risk_level == RiskLevel.MEDIUM
            assert engine.pool.leases == 0
        finally:
            await engine.close()

    @pytest.mark.asyncio
    async def test_approver_can_allow(self, engine_config, invoker):
        async def approve(request):
            return True

        engine = ExecutionEngine(engine_config, tool_invoker=invoker, approver=approve, resolver=None)
        program = "import subprocess\n\nasync def main(inputs):\n    return 1\n"
        result = await engine.execute("list processes", program=program)
        try:
            assert result.outcome == Outcome.SUCCESS
            entry = (await engine.query_audit())[-1]
            assert entry.approved is True and entry.auto_approved is False
        finally:
            await engine.close()

    @pytest.mark.asyncio
    async def test_internal_error_hides_detail(self, engine_config, invoker):
        async def broken(request):
            raise ValueError("db password mismatch at /srv/secret/approvals.py:42")

        engine = ExecutionEngine(engine_config, tool_invoker=invoker, approver=broken, resolver=None)
        program = "import subprocess\n\nasync def main(inputs):\n    return 1\n"
        result = await engine.execute("list processes", program=program)
        try:
            assert result.outcome == Outcome.ERROR
            assert result.error.kind == "Internal"
            assert result.session_id in result.error.message
            entry = (await engine.query_audit())[-1]
            assert entry.error_kind == "Internal"
            for text in [result.error.message, *result.warnings, *entry.warnings]:
                assert "password" not in text
                assert "ValueError" not in text
        finally:
            await engine.close()

    @pytest.mark.asyncio
    async def test_force_approval(self, engine):
        options = ExecutionOptions(force_approval=True)
        result = await engine.execute("add 2 and 3", options=options, inputs={"a": 2, "b": 3})
        try:
            assert result.outcome == Outcome.DENIED
        finally:
            await engine.close()

    @pytest.mark.asyncio
    async def test_no_matching_tool(self, engine):
        result = await engine.execute("teleport the quantum flux")
        try:
            assert result.outcome == Outcome.ERROR
            assert result.error.kind == "NotFound"
        finally:
            await engine.close()

    @pytest.mark.asyncio
    async def test_unknown_pinned_tool(self, engine):
        result = await engine.execute("anything", tools=["math/divide"], program="async def main(inputs):\n    return 1\n")
        try:
            assert result.outcome == Outcome.ERROR
            assert result.error.kind == "NotFound"
        finally:
            await engine.close()


# ─── PII ─────────────────────────────────────────────────────


class TestPII:
    @pytest.mark.asyncio
    async def test_round_trip(self, engine, engine_config, invoker):
        program = (
            "async def main(inputs):\n"
            "    print(inputs['email'])\n"
            "    await send_message(to=inputs['email'], body='hello')\n"
            "    return inputs['email']\n"
        )
        result = await engine.execute(
            "send a message", program=program, inputs={"email": "a@b.com"}, tools=["notify/send_message"]
        )
        try:
            assert result.outcome == Outcome.SUCCESS, result.error
            assert result.value == "[EMAIL_1]"
            assert result.stdout == "[EMAIL_1]\n"
            assert invoker.calls == [("notify/send_message", {"to": "a@b.com", "body": "hello"})]

            entry = (await engine.query_audit(AuditFilter(session_id=result.session_id)))[0]
            assert entry.pii_tokenized == 1
            assert entry.stdout_hash == hashlib.sha256(b"[EMAIL_1]\n").hexdigest()
        finally:
            await engine.close()

        with open(engine_config.audit.path, encoding="utf-8") as f:
            assert "a@b.com" not in f.read()

    @pytest.mark.asyncio
    async def test_raw_pii_in_output_is_scrubbed(self, engine):
        program = "async def main(inputs):\n    return {'contact': 'reach me at ops@example.org'}\n"
        result = await engine.execute("contact", program=program)
        try:
            assert result.value == {"contact": "reach me at [EMAIL_1]"}
        finally:
            await engine.close()


# ─── Network ─────────────────────────────────────────────────


class TestNetwork:
    @pytest.mark.asyncio
    async def test_whitelist(self, engine_config, invoker):
        engine = ExecutionEngine(engine_config, tool_invoker=invoker, http_client=_http_client(), resolver=None)
        program = (
            "async def main(inputs):\n"
            "    first = await fetch('https://api.example.com/data')\n"
            "    try:\n"
            "        await fetch('https://evil.test/')\n"
            "    except NetworkError:\n"
            "        return first.json()['host']\n"
        )
        options = ExecutionOptions(allow_network=True, allowed_domains=["api.example.com"])
        result = await engine.execute("fetch data", options=options, program=program)
        try:
            assert result.outcome == Outcome.SUCCESS, result.error
            assert result.value == "api.example.com"
            assert "PolicyViolation: not_whitelisted (evil.test)" in result.warnings
            assert result.metrics.network_requests == 1
            assert result.metrics.network_denied == 1
        finally:
            await engine.close()

    @pytest.mark.asyncio
    async def test_network_disabled_by_default(self, engine):
        program = (
            "async def main(inputs):\n"
            "    try:\n"
            "        await fetch('https://api.example.com/')\n"
            "    except NetworkError:\n"
            "        return 'offline'\n"
        )
        result = await engine.execute("fetch", program=program)
        try:
            assert result.value == "offline"
            assert result.metrics.network_denied == 1
        finally:
            await engine.close()

    @pytest.mark.asyncio
    async def test_rate_limit(self, engine_config, invoker):
        engine = ExecutionEngine(engine_config, tool_invoker=invoker, http_client=_http_client(), resolver=None)
        program = (
            "async def main(inputs):\n"
            "    ok = denied = 0\n"
            "    for _ in range(150):\n"
            "        try:\n"
            "            await fetch('https://api.example.com/')\n"
            "            ok += 1\n"
            "        except NetworkError:\n"
            "            denied += 1\n"
            "    return {'ok': ok, 'denied': denied}\n"
        )
        options = ExecutionOptions(allow_network=True, allowed_domains=["api.example.com"])
        result = await engine.execute("fetch repeatedly", options=options, program=program)
        try:
            assert result.value == {"ok": 100, "denied": 50}
            assert result.metrics.network_requests == 100
            assert result.metrics.network_denied == 50
            assert "PolicyViolation: rate_limited (api.example.com) x50" in result.warnings
        finally:
            await engine.close()


# ─── Limits ──────────────────────────────────────────────────


class TestLimits:
    @pytest.mark.asyncio
    async def test_timeout(self, engine, engine_config):
        program = "async def main(inputs):\n    while True:\n        pass\n"
        result = await engine.execute("spin", options=ExecutionOptions(wall_timeout=1000), program=program)
        try:
            assert result.outcome == Outcome.TIMEOUT
            assert result.error.kind == "SandboxTimeout"
            grace = engine_config.sandbox.kill_grace_ms
            assert 1000 <= result.metrics.duration_ms <= 1000 + grace
            entry = (await engine.query_audit(AuditFilter(session_id=result.session_id)))[0]
            assert entry.outcome == Outcome.TIMEOUT
        finally:
            await engine.close()

    @pytest.mark.asyncio
    async def test_program_error(self, engine):
        program = "async def main(inputs):\n    return 1 / 0\n"
        result = await engine.execute("divide", program=program)
        try:
            assert result.outcome == Outcome.ERROR
            assert "ZeroDivisionError" in result.error.message
        finally:
            await engine.close()

    @pytest.mark.asyncio
    async def test_cancellation_is_audited(self, engine):
        program = "import time\n\nasync def main(inputs):\n    time.sleep(30)\n"
        options = ExecutionOptions(session_id="cancel-me")
        task = asyncio.create_task(engine.execute("sleep", options=options, program=program))
        await asyncio.sleep(1.0)
        task.cancel()
        try:
            with pytest.raises(asyncio.CancelledError):
                await task
            entries = await engine.query_audit(AuditFilter(session_id="cancel-me"))
            assert [e.outcome for e in entries] == [Outcome.CANCELLED]
            assert engine.pool.stats()["in_use"] == 0
        finally:
            await engine.close()


# ─── Read-side API ───────────────────────────────────────────


class TestEngineQueries:
    @pytest.mark.asyncio
    async def test_search_validate_status(self, engine):
        try:
            assert [d.key for d in engine.search_tools("add numbers", k=1)] == ["math/sum"]
            assert engine.validate("eval('1')", "python").risk_level == RiskLevel.CRITICAL
            status = await engine.status()
            assert status["tools"] == 2
            assert status["pool"]["kinds"]["process"]["ready"] is True
        finally:
            await engine.close()

    @pytest.mark.asyncio
    async def test_report(self, engine):
        try:
            await engine.execute("add 2 and 3", inputs={"a": 2, "b": 3})
            await engine.execute("compute", program="async def main(inputs):\n    return eval('1')\n")
            report = await engine.report()
            assert report.total_entries == 2
            assert report.by_outcome == {"success": 1, "blocked": 1}
            assert report.chain_intact is True
        finally:
            await engine.close()
