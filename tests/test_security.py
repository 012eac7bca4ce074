"""Tests for risk classification, the approval gate, PII tokenization and egress policy."""

import asyncio

import httpx
import pytest

from mcpexec.config import ApprovalPolicy
from mcpexec.core.models import (
    ApprovalDecision,
    ApprovalRequest,
    BlastRadius,
    Language,
    NetworkReason,
    RiskLevel,
    ValidationReport,
)
from mcpexec.exceptions import PolicyViolationError
from mcpexec.security.approval import ApprovalGate, format_request
from mcpexec.security.network import EgressGateway, NetworkPolicy, RateLimiter
from mcpexec.security.pii import PIITokenizer
from mcpexec.security.risk import RiskClassifier

PY = Language.PYTHON


# ─── Risk Classifier ─────────────────────────────────────────


class TestRiskClassifier:
    def setup_method(self):
        self.classifier = RiskClassifier()

    def test_contained_program(self):
        risk, impact = self.classifier.classify("x = 1\n", PY, ValidationReport())
        assert risk == RiskLevel.LOW
        assert impact.blast_radius == BlastRadius.CONTAINED
        assert impact.reversible is True

    def test_delete_is_irreversible(self):
        source = "import os\nos.remove('data/out.csv')\n"
        _, impact = self.classifier.classify(source, PY, ValidationReport())
        assert impact.files_deleted_count == 1
        assert impact.files_touched == ["data/out.csv"]
        assert impact.reversible is False

    def test_fetch_host_recorded(self):
        source = "async def main(inputs):\n    return await fetch('https://api.example.com/v1')\n"
        _, impact = self.classifier.classify(source, PY, ValidationReport())
        assert impact.hosts_contacted == ["api.example.com"]
        assert impact.blast_radius == BlastRadius.NETWORK

    def test_system_path_raises_risk(self):
        source = "open('/etc/hosts', 'w')\n"
        risk, impact = self.classifier.classify(source, PY, ValidationReport())
        assert impact.blast_radius == BlastRadius.SYSTEM
        assert risk == RiskLevel.MEDIUM

    def test_critical_is_kept(self):
        report = ValidationReport(risk_level=RiskLevel.CRITICAL)
        risk, _ = self.classifier.classify("x = 1\n", PY, report)
        assert risk == RiskLevel.CRITICAL

    def test_typescript_command(self):
        source = 'await new Deno.Command("ls").output();'
        _, impact = self.classifier.classify(source, Language.TYPESCRIPT, ValidationReport())
        assert impact.commands_spawned == ["ls"]
        assert impact.blast_radius == BlastRadius.SYSTEM


# ─── Approval Gate ───────────────────────────────────────────


def _request(risk, session="s-1", action_hash="h-1"):
    return ApprovalRequest(session_id=session, action="run program", action_hash=action_hash, risk_level=risk)


class TestApprovalGate:
    @pytest.mark.asyncio
    async def test_low_is_auto_approved(self):
        decision = await ApprovalGate().review(_request(RiskLevel.LOW))
        assert decision.approved is True
        assert decision.auto_approved is True

    @pytest.mark.asyncio
    async def test_force_requires_a_human(self):
        decision = await ApprovalGate().review(_request(RiskLevel.LOW), force=True)
        assert decision.approved is False
        assert decision.reason == "no approver configured"

    @pytest.mark.asyncio
    async def test_critical_never_auto_approved(self):
        policy = ApprovalPolicy(auto_approve_low=True, auto_approve_medium=True, auto_approve_high=True)
        gate = ApprovalGate(policy)
        assert gate.auto_approves(RiskLevel.HIGH) is True
        assert gate.auto_approves(RiskLevel.CRITICAL) is False
        decision = await gate.review(_request(RiskLevel.CRITICAL))
        assert decision.approved is False

    @pytest.mark.asyncio
    async def test_boolean_approver(self):
        seen = []

        async def approver(request):
            seen.append(request.id)
            return True

        decision = await ApprovalGate(approver=approver).review(_request(RiskLevel.MEDIUM))
        assert decision.approved is True
        assert decision.auto_approved is False
        assert len(seen) == 1

    @pytest.mark.asyncio
    async def test_timeout_is_denial(self):
        async def slow(request):
            await asyncio.sleep(5)
            return True

        gate = ApprovalGate(ApprovalPolicy(timeout_seconds=0.05), approver=slow)
        decision = await gate.review(_request(RiskLevel.HIGH))
        assert decision.approved is False
        assert decision.reason == "timeout"

    @pytest.mark.asyncio
    async def test_session_memory(self):
        calls = []

        async def approver(request):
            calls.append(request.id)
            return ApprovalDecision(approved=True, remember_for_session=True)

        gate = ApprovalGate(approver=approver)
        await gate.review(_request(RiskLevel.MEDIUM))
        second = await gate.review(_request(RiskLevel.MEDIUM))
        assert second.auto_approved is True
        assert len(calls) == 1

        await gate.review(_request(RiskLevel.MEDIUM, session="s-2"))
        assert len(calls) == 2

        gate.forget_session("s-1")
        await gate.review(_request(RiskLevel.MEDIUM))
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_critical_never_remembered(self):
        calls = []

        async def approver(request):
            calls.append(request.id)
            return ApprovalDecision(approved=True, remember_for_session=True)

        gate = ApprovalGate(approver=approver)
        await gate.review(_request(RiskLevel.CRITICAL))
        await gate.review(_request(RiskLevel.CRITICAL))
        assert len(calls) == 2

    def test_format_request(self):
        panel = format_request(_request(RiskLevel.HIGH))
        assert panel.subtitle.startswith("apr-")


# ─── PII Tokenizer ───────────────────────────────────────────


class TestPIITokenizer:
    def setup_method(self):
        self.tokenizer = PIITokenizer()

    def test_email_in_text(self):
        assert self.tokenizer.tokenize("mail a@b.com now") == "mail [EMAIL_1] now"
        assert self.tokenizer.count == 1

    def test_same_value_same_placeholder(self):
        first = self.tokenizer.tokenize({"to": "x@y.org", "cc": "x@y.org"})
        assert first == {"to": "[EMAIL_1]", "cc": "[EMAIL_1]"}

    def test_sensitive_field_names(self):
        result = self.tokenizer.tokenize({"password": "hunter2", "userEmail": "not-an-address", "note": "hi"})
        assert result["password"] == "[PASSWORD_1]"
        assert result["note"] == "hi"

    def test_nested_structures(self):
        result = self.tokenizer.tokenize({"users": [{"email": "a@b.com"}, {"ssn": "123-45-6789"}]})
        assert result == {"users": [{"email": "[EMAIL_1]"}, {"ssn": "[SSN_1]"}]}

    def test_round_trip(self):
        value = {"to": "a@b.com", "body": "call 555-123-4567"}
        tokenized = self.tokenizer.tokenize(value)
        assert "a@b.com" not in str(tokenized)
        assert self.tokenizer.detokenize(tokenized) == value

    def test_idempotent(self):
        once = self.tokenizer.tokenize("a@b.com")
        assert self.tokenizer.tokenize(once) == once

    def test_existing_placeholders_not_reused(self):
        result = self.tokenizer.tokenize("[EMAIL_1] and c@d.com")
        assert result == "[EMAIL_1] and [EMAIL_2]"
        assert self.tokenizer.detokenize("[EMAIL_1]") == "[EMAIL_1]"

    def test_luhn_filters_card_numbers(self):
        assert self.tokenizer.tokenize("card 4111 1111 1111 1111") == "card [CREDIT_CARD_1]"
        assert "[CREDIT_CARD" not in self.tokenizer.tokenize("order 1234 5678 9012 3456")

    def test_disabled(self):
        tokenizer = PIITokenizer(enabled=False)
        assert tokenizer.tokenize({"email": "a@b.com", "note": "call 555-123-4567"}) == {
            "email": "a@b.com",
            "note": "call 555-123-4567",
        }
        assert tokenizer.count == 0
        assert tokenizer.detected == 2
        assert tokenizer.detokenize("[EMAIL_1]") == "[EMAIL_1]"


# ─── Network Policy ──────────────────────────────────────────


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class TestRateLimiter:
    @pytest.mark.asyncio
    async def test_window(self):
        clock = FakeClock()
        limiter = RateLimiter(max_requests=2, window_seconds=60, clock=clock)
        assert await limiter.acquire("h") is True
        assert await limiter.acquire("h") is True
        assert await limiter.acquire("h") is False
        assert await limiter.acquire("other") is True
        clock.now = 61.0
        assert await limiter.acquire("h") is True
        assert limiter.remaining("h") == 1

    @pytest.mark.asyncio
    async def test_idle_hosts_are_dropped(self):
        clock = FakeClock()
        limiter = RateLimiter(max_requests=5, window_seconds=60, clock=clock)
        for host in ("a.example.com", "b.example.com"):
            await limiter.acquire(host)
        clock.now = 61.0
        await limiter.acquire("c.example.com")
        assert limiter.hosts == ("c.example.com",)
        assert limiter.remaining("a.example.com") == 5


class TestNetworkPolicy:
    def _policy(self, **kwargs):
        kwargs.setdefault("allowed_domains", ["api.example.com", "*.cdn.example.com"])
        kwargs.setdefault("blocked_cidrs", ["127.0.0.0/8", "10.0.0.0/8", "169.254.0.0/16"])
        kwargs.setdefault("enabled", True)
        kwargs.setdefault("resolver", None)
        return NetworkPolicy(**kwargs)

    @pytest.mark.asyncio
    async def test_disabled(self):
        decision = await self._policy(enabled=False).check("https://api.example.com")
        assert decision.reason == NetworkReason.NOT_WHITELISTED

    @pytest.mark.asyncio
    async def test_whitelist(self):
        policy = self._policy()
        assert (await policy.check("https://api.example.com/x")).allowed
        assert (await policy.check("https://img.cdn.example.com/a.png")).allowed
        assert not (await policy.check("https://cdn.example.com/")).allowed
        assert not (await policy.check("https://evil.test/")).allowed

    @pytest.mark.asyncio
    async def test_blacklist_wins(self):
        policy = self._policy(allowed_domains=["*"])
        decision = await policy.check("http://169.254.169.254/latest/meta-data")
        assert decision.reason == NetworkReason.BLACKLISTED
        decision = await policy.check("http://localhost:8080/")
        assert decision.reason == NetworkReason.BLACKLISTED

    @pytest.mark.asyncio
    async def test_whitelisted_name_resolving_private(self):
        async def resolver(host):
            return ["10.1.2.3"]

        decision = await self._policy(resolver=resolver).check("https://api.example.com")
        assert decision.reason == NetworkReason.BLACKLISTED

    @pytest.mark.asyncio
    async def test_unsupported_scheme(self):
        decision = await self._policy().check("file:///etc/passwd")
        assert not decision.allowed

    @pytest.mark.asyncio
    async def test_unresolvable_name_refused(self):
        async def resolver(host):
            return []

        decision = await self._policy(resolver=resolver).check("https://api.example.com")
        assert not decision.allowed
        assert decision.detail == "does not resolve"


class TestEgressGateway:
    def _client(self):
        def handler(request):
            return httpx.Response(200, text=f"hello from {request.url.host}")

        return httpx.AsyncClient(transport=httpx.MockTransport(handler))

    @pytest.mark.asyncio
    async def test_allowed_and_denied(self):
        policy = NetworkPolicy(allowed_domains=["api.example.com"], enabled=True, resolver=None)
        async with self._client() as client:
            gateway = EgressGateway(policy, client)
            response = await gateway.fetch("https://api.example.com/ping")
            assert response["status"] == 200
            assert response["text"] == "hello from api.example.com"

            with pytest.raises(PolicyViolationError):
                await gateway.fetch("https://evil.test/")
            with pytest.raises(PolicyViolationError):
                await gateway.fetch("https://evil.test/again")

        assert gateway.requests == 1
        assert gateway.denied == 2
        assert gateway.warnings() == ["PolicyViolation: not_whitelisted (evil.test) x2"]

    @pytest.mark.asyncio
    async def test_response_truncated(self):
        policy = NetworkPolicy(allowed_domains=["api.example.com"], enabled=True, resolver=None)
        async with self._client() as client:
            gateway = EgressGateway(policy, client, max_response_bytes=5)
            response = await gateway.fetch("https://api.example.com/")
        assert response["text"] == "hello"
        assert response["truncated"] is True

    @pytest.mark.asyncio
    async def test_rate_limited(self):
        limiter = RateLimiter(max_requests=3, window_seconds=60, clock=FakeClock())
        policy = NetworkPolicy(allowed_domains=["api.example.com"], enabled=True, resolver=None, rate_limiter=limiter)
        async with self._client() as client:
            gateway = EgressGateway(policy, client)
            for _ in range(3):
                await gateway.fetch("https://api.example.com/")
            with pytest.raises(PolicyViolationError):
                await gateway.fetch("https://api.example.com/")
        assert gateway.warnings() == ["PolicyViolation: rate_limited (api.example.com)"]

    @pytest.mark.asyncio
    async def test_truncation_counts_bytes(self):
        def handler(request):
            return httpx.Response(200, content="é".encode() * 4096, headers={"content-type": "text/plain; charset=utf-8"})

        policy = NetworkPolicy(allowed_domains=["api.example.com"], enabled=True, resolver=None)
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            gateway = EgressGateway(policy, client, max_response_bytes=1025)
            response = await gateway.fetch("https://api.example.com/")
        assert response["truncated"] is True
        assert len(response["text"].encode()) <= 1025
        assert response["text"] == "é" * 512

    @pytest.mark.asyncio
    async def test_connection_pinned_to_vetted_address(self):
        answers = [["93.184.216.34"], ["127.0.0.1"]]
        seen = []

        async def rebinding_resolver(host):
            return answers.pop(0) if answers else ["127.0.0.1"]

        def handler(request):
            seen.append((request.url.host, request.headers["host"], request.extensions.get("sni_hostname")))
            return httpx.Response(200, text="ok")

        policy = NetworkPolicy(
            allowed_domains=["api.example.com"],
            blocked_cidrs=["127.0.0.0/8", "10.0.0.0/8"],
            enabled=True,
            resolver=rebinding_resolver,
        )
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            gateway = EgressGateway(policy, client)
            response = await gateway.fetch("https://api.example.com/data")
            assert response["text"] == "ok"
            with pytest.raises(PolicyViolationError):
                await gateway.fetch("https://api.example.com/data")
        assert seen == [("93.184.216.34", "api.example.com", "api.example.com")]
