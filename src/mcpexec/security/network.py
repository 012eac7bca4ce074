"""
mcpexec Network Policy

Egress is allowed only to whitelisted hosts (exact host or ``*.suffix``).
Private, loopback, link-local and multicast ranges are blacklisted, and
deny takes precedence: a whitelisted name that resolves into a blocked
range is still refused. A per-host sliding-window rate limiter bounds
runaway loops.

Check order for one request:
  1. network disabled                     -> not_whitelisted
  2. literal IP / localhost in blacklist  -> blacklisted
  3. host not whitelisted                 -> not_whitelisted
  4. DNS answer in blacklist              -> blacklisted
  5. rate limit exhausted                 -> rate_limited
  6. otherwise                            -> allowed

Denials never raise into the host pipeline: the gateway turns them into
network errors inside the sandbox and warnings in the envelope.
"""

from __future__ import annotations

import asyncio
import ipaddress
import socket
import time
from collections import Counter, deque
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from urllib.parse import urlsplit

import httpx

from mcpexec.core.models import NetworkLogEntry, NetworkReason
from mcpexec.exceptions import PolicyViolationError
from mcpexec.logging import get_logger
from mcpexec.observability.metrics import record_network_decision

logger = get_logger("mcpexec.network")

Resolver = Callable[[str], Awaitable[list[str]]]

IPNetwork = ipaddress.IPv4Network | ipaddress.IPv6Network


async def system_resolver(host: str) -> list[str]:
    loop = asyncio.get_running_loop()
    infos = await loop.getaddrinfo(host, None, type=socket.SOCK_STREAM)
    return sorted({info[4][0] for info in infos})


@dataclass(frozen=True)
class NetworkDecision:
    allowed: bool
    reason: NetworkReason
    host: str
    detail: str = ""
    addresses: tuple[str, ...] = ()


class RateLimiter:
    """Per-host sliding window. Shared by all requests of an engine."""

    def __init__(self, max_requests: int = 100, window_seconds: float = 60.0, clock=time.monotonic):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._hits: dict[str, deque[float]] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    @property
    def hosts(self) -> tuple[str, ...]:
        return tuple(self._hits)

    def _prune(self, now: float) -> None:
        for host, hits in list(self._hits.items()):
            if hits and now - hits[-1] < self.window_seconds:
                continue
            lock = self._locks.get(host)
            if lock is None or not lock.locked():
                del self._hits[host]
                self._locks.pop(host, None)

    async def acquire(self, host: str) -> bool:
        """Record one request for ``host``; False when the window is full."""
        self._prune(self._clock())
        lock = self._locks.setdefault(host, asyncio.Lock())
        async with lock:
            now = self._clock()
            hits = self._hits.setdefault(host, deque())
            while hits and now - hits[0] >= self.window_seconds:
                hits.popleft()
            if len(hits) >= self.max_requests:
                return False
            hits.append(now)
            return True

    def remaining(self, host: str) -> int:
        hits = self._hits.get(host, ())
        now = self._clock()
        live = sum(1 for t in hits if now - t < self.window_seconds)
        return max(self.max_requests - live, 0)


def _match_whitelist(host: str, allowed: Iterable[str]) -> bool:
    for entry in allowed:
        entry = entry.strip().lower().rstrip(".")
        if entry.startswith("*."):
            if host.endswith(entry[1:]) and host != entry[2:]:
                return True
        elif host == entry:
            return True
    return False


class NetworkPolicy:
    """Per-request egress policy."""

    def __init__(
        self,
        allowed_domains: Iterable[str] = (),
        blocked_cidrs: Iterable[str] = (),
        rate_limiter: RateLimiter | None = None,
        enabled: bool = False,
        resolver: Resolver | None = system_resolver,
    ):
        self.allowed_domains = [d.lower() for d in allowed_domains]
        self.blocked_networks: list[IPNetwork] = [ipaddress.ip_network(c, strict=False) for c in blocked_cidrs]
        self.rate_limiter = rate_limiter or RateLimiter()
        self.enabled = enabled
        self.resolver = resolver

    def _blocked(self, address: str) -> bool:
        try:
            ip = ipaddress.ip_address(address.split("%")[0])
        except ValueError:
            return False
        if ip.version == 6 and ip.ipv4_mapped is not None:
            ip = ip.ipv4_mapped
        return any(ip in net for net in self.blocked_networks if net.version == ip.version)

    async def check(self, url: str) -> NetworkDecision:
        parts = urlsplit(url)
        host = (parts.hostname or "").lower().rstrip(".")
        if not self.enabled:
            return NetworkDecision(False, NetworkReason.NOT_WHITELISTED, host, "network disabled")
        if parts.scheme not in ("http", "https") or not host:
            return NetworkDecision(False, NetworkReason.NOT_WHITELISTED, host, "unsupported URL")

        if host == "localhost" or host.endswith(".localhost") or self._blocked(host):
            return NetworkDecision(False, NetworkReason.BLACKLISTED, host, "address in blocked range")

        if not _match_whitelist(host, self.allowed_domains):
            return NetworkDecision(False, NetworkReason.NOT_WHITELISTED, host)

        addresses: list[str] = []
        if self.resolver is not None:
            try:
                addresses = list(await self.resolver(host))
            except (socket.gaierror, OSError):
                addresses = []
            if not addresses:
                return NetworkDecision(False, NetworkReason.NOT_WHITELISTED, host, "does not resolve")
            blocked = [a for a in addresses if self._blocked(a)]
            if blocked:
                return NetworkDecision(False, NetworkReason.BLACKLISTED, host, f"resolves to {blocked[0]}")

        if not await self.rate_limiter.acquire(host):
            return NetworkDecision(False, NetworkReason.RATE_LIMITED, host)

        # The connection goes to a vetted address so a second lookup cannot rebind it.
        return NetworkDecision(True, NetworkReason.ALLOWED, host, addresses=tuple(addresses))


def _pin(
    url: str, headers: dict[str, str], addresses: tuple[str, ...]
) -> tuple[httpx.URL, dict[str, str], dict]:
    """Point the request at the first vetted address, keeping Host and SNI."""
    target = httpx.URL(url)
    if not addresses:
        return target, dict(headers), {}
    pinned = {k: v for k, v in headers.items() if k.lower() != "host"}
    pinned["Host"] = target.netloc.decode("ascii")
    extensions = {"sni_hostname": target.host} if target.scheme == "https" else {}
    address = addresses[0]
    return target.copy_with(host=f"[{address}]" if ":" in address else address), pinned, extensions


class EgressGateway:
    """The single egress path of a sandbox in whitelist mode.

    Every request is checked by the policy, logged and, if allowed,
    performed by the host's httpx client.
    """

    def __init__(
        self,
        policy: NetworkPolicy,
        client: httpx.AsyncClient,
        max_response_bytes: int = 1024 * 1024,
        timeout_seconds: float = 10.0,
        session_id: str | None = None,
    ):
        self.policy = policy
        self.client = client
        self.max_response_bytes = max_response_bytes
        self.timeout_seconds = timeout_seconds
        self.session_id = session_id
        self.log: list[NetworkLogEntry] = []

    @property
    def requests(self) -> int:
        return sum(1 for entry in self.log if entry.allowed)

    @property
    def denied(self) -> int:
        return sum(1 for entry in self.log if not entry.allowed)

    async def fetch(
        self,
        url: str,
        method: str = "GET",
        headers: dict[str, str] | None = None,
        body: str | None = None,
    ) -> dict:
        """Perform one request.

        Raises:
            PolicyViolationError: The policy refused the request.
            httpx.HTTPError: The request itself failed.
        """
        method = (method or "GET").upper()
        decision = await self.policy.check(url)
        entry = NetworkLogEntry(url=url, host=decision.host, method=method, allowed=decision.allowed, reason=decision.reason)
        self.log.append(entry)
        record_network_decision(decision.reason.value)

        if not decision.allowed:
            logger.warning(
                "Egress denied: %s %s", method, decision.host,
                extra={"session_id": self.session_id, "host": decision.host, "reason": decision.reason.value},
            )
            raise PolicyViolationError(decision.host, decision.reason.value)

        target, request_headers, extensions = _pin(url, headers or {}, decision.addresses)
        chunks: list[bytes] = []
        size = 0
        truncated = False
        async with self.client.stream(
            method,
            target,
            headers=request_headers,
            content=body.encode() if isinstance(body, str) else None,
            timeout=self.timeout_seconds,
            follow_redirects=False,
            extensions=extensions,
        ) as response:
            async for chunk in response.aiter_bytes():
                room = self.max_response_bytes - size
                if len(chunk) > room:
                    chunks.append(chunk[:room])
                    truncated = True
                    break
                chunks.append(chunk)
                size += len(chunk)
            encoding = response.charset_encoding or "utf-8"
        entry.status_code = response.status_code
        data = b"".join(chunks)
        # A cut may split a multi-byte character; drop the partial tail.
        errors = "ignore" if truncated else "replace"
        try:
            text = data.decode(encoding, errors=errors)
        except LookupError:
            text = data.decode("utf-8", errors=errors)
        logger.debug(
            "Egress %s %s -> %d", method, decision.host, response.status_code,
            extra={"session_id": self.session_id, "host": decision.host, "truncated": truncated},
        )
        return {
            "status": response.status_code,
            "headers": dict(response.headers),
            "text": text,
            "truncated": truncated,
        }

    def warnings(self) -> list[str]:
        """Aggregated policy warnings, e.g. ``PolicyViolation: not_whitelisted (evil.test)``."""
        counts = Counter((e.reason.value, e.host) for e in self.log if not e.allowed)
        warnings = []
        for (reason, host), count in sorted(counts.items()):
            suffix = f" x{count}" if count > 1 else ""
            warnings.append(f"PolicyViolation: {reason} ({host}){suffix}")
        return warnings
