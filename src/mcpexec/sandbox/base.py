"""
mcpexec Sandbox Base

One interface over three isolates (process, container, microVM):

    initialize(limits, network_mode, filesystem_scope)
    run(source, inputs, handler) -> RunResult
    destroy()
    health()

Every variant launches one OS process whose stdio speaks the bridge
protocol; variants differ only in how that process is built, killed and
torn down. The session state machine is enforced here:

    created -> initialized -> running -> (finished | killed | failed) -> destroyed
"""

from __future__ import annotations

import asyncio
import os
import secrets
import shutil
import signal
import tempfile
import time
from abc import ABC, abstractmethod
from typing import Any

from mcpexec.config import SandboxConfig
from mcpexec.core.models import (
    FilesystemScope,
    Language,
    NetworkMode,
    ResourceLimits,
    ResourceUsage,
    RunResult,
    SandboxKind,
    SandboxSession,
    SessionState,
)
from mcpexec.exceptions import (
    ProgramFailedError,
    SandboxCrashedError,
    SandboxOOMError,
    SandboxStartupError,
    SandboxTimeoutError,
    SessionStateError,
)
from mcpexec.logging import get_logger
from mcpexec.observability.metrics import measure_sandbox
from mcpexec.sandbox.bridge import BridgeHandler, ChannelOutcome, DenyAllHandler, StdioBridge

logger = get_logger("mcpexec.sandbox")

_OOM_MARKERS = ("MemoryError", "out of memory", "Cannot allocate memory", "heap limit")


def truncate_output(text: str, limit: int) -> tuple[str, bool]:
    """Cap captured output at ``limit`` bytes, appending a marker."""
    data = text.encode("utf-8", errors="replace")
    if len(data) <= limit:
        return text, False
    head = data[:limit].decode("utf-8", errors="ignore")
    return head + f"\n[TRUNCATED at {limit} bytes]", True


class Sandbox(ABC):
    """Base class for all sandbox variants."""

    kind: SandboxKind

    def __init__(self, config: SandboxConfig, language: Language):
        self.config = config
        self.language = Language(language)
        self.session = SandboxSession(kind=self.kind)
        self.runtime_dir: str | None = None
        self._proc: asyncio.subprocess.Process | None = None

    # ─── State Machine ───────────────────────────────────────

    def _transition(self, target: SessionState) -> None:
        session = self.session
        if not session.can_transition(target):
            raise SessionStateError(session.id, session.state.value, target.value)
        session.state = target
        session.history.append(target)

    @property
    def state(self) -> SessionState:
        return self.session.state

    # ─── Lifecycle ───────────────────────────────────────────

    async def initialize(
        self,
        limits: ResourceLimits | None = None,
        network_mode: NetworkMode = NetworkMode.NONE,
        filesystem_scope: FilesystemScope = FilesystemScope.WORKSPACE_ONLY,
    ) -> SandboxSession:
        """Check the runtime and prepare the workspace.

        Raises:
            SandboxStartupError: The runtime (interpreter, image, VM) is not ready.
        """
        self.session.limits = limits or self.config.limits()
        self.session.network_mode = network_mode
        self.session.filesystem_scope = filesystem_scope
        try:
            await self._ensure_ready()
            workspace = tempfile.mkdtemp(prefix=f"mcpexec-{self.session.id}-", dir=self.config.workspace_root)
            self.session.workspace_path = os.path.realpath(workspace)
            self.runtime_dir = os.path.realpath(tempfile.mkdtemp(prefix="mcpexec-rt-", dir=self.config.workspace_root))
            await self._prepare()
        except SandboxStartupError:
            self._transition(SessionState.FAILED)
            raise
        except OSError as exc:
            self._transition(SessionState.FAILED)
            raise SandboxStartupError(f"cannot prepare {self.kind.value} sandbox: {exc}") from exc
        self._transition(SessionState.INITIALIZED)
        logger.debug(
            "Sandbox initialized", extra={"session_id": self.session.id, "sandbox_kind": self.kind.value}
        )
        return self.session

    async def run(self, source: str, inputs: Any = None, handler: BridgeHandler | None = None) -> RunResult:
        """Execute ``source`` once. Returns on success, raises a SandboxError otherwise.

        The raised error carries the partial RunResult as ``exc.result``.
        """
        self._transition(SessionState.RUNNING)
        limits = self.session.limits
        nonce = secrets.token_hex(16)
        bridge = StdioBridge(handler or DenyAllHandler(), nonce, limits.output_limit_bytes, self.session.id)
        bundle = {
            "source": source,
            "inputs": inputs,
            "nonce": nonce,
            "workspace": self.sandbox_workspace(),
            "filesystem_scope": self.session.filesystem_scope.value,
            "output_limit": limits.output_limit_bytes,
        }
        argv, env, cwd = self._command()

        start = time.monotonic()
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
                cwd=cwd,
                limit=max(4 * limits.output_limit_bytes, 4 * 1024 * 1024),
                start_new_session=True,
                preexec_fn=self._preexec(),
            )
        except OSError as exc:
            self._transition(SessionState.FAILED)
            raise SandboxStartupError(f"cannot start {self.kind.value} sandbox: {exc}") from exc
        self._proc = proc

        timed_out = False
        with measure_sandbox(self.kind.value):
            try:
                await asyncio.wait_for(bridge.serve(proc, bundle), timeout=limits.wall_timeout_ms / 1000)
                remaining = max(limits.wall_timeout_ms / 1000 - (time.monotonic() - start), 0.0)
                await asyncio.wait_for(proc.wait(), timeout=remaining + self.config.kill_grace_ms / 1000)
            except TimeoutError:
                timed_out = True
                await self._kill(proc)
            except BaseException:
                await self._kill(proc)
                if self.session.can_transition(SessionState.KILLED):
                    self._transition(SessionState.KILLED)
                raise
            if bridge.outcome.overflow and proc.returncode is None:
                await self._kill(proc)
        duration_ms = int((time.monotonic() - start) * 1000)

        result = self._build_result(bridge.outcome, proc.returncode, duration_ms, timed_out)
        result.oom_killed = not timed_out and await self._detect_oom(result, proc.returncode)
        return self._classify(result, bridge.outcome)

    async def destroy(self) -> None:
        """Tear everything down. Safe to call in any state, more than once."""
        if self.state == SessionState.DESTROYED:
            return
        if not self.state.is_terminal:
            if self._proc is not None and self._proc.returncode is None:
                await self._kill(self._proc)
            self._transition(SessionState.KILLED)
        try:
            await self._teardown()
        finally:
            for path in (self.session.workspace_path, self.runtime_dir):
                if path:
                    shutil.rmtree(path, ignore_errors=True)
            self._transition(SessionState.DESTROYED)
            logger.debug(
                "Sandbox destroyed", extra={"session_id": self.session.id, "sandbox_kind": self.kind.value}
            )

    async def health(self) -> dict[str, Any]:
        try:
            await self._ensure_ready()
        except SandboxStartupError as exc:
            return {"kind": self.kind.value, "ready": False, "detail": str(exc)}
        return {"kind": self.kind.value, "ready": True, "detail": "ok"}

    async def __aenter__(self) -> Sandbox:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.destroy()

    # ─── Result Handling ─────────────────────────────────────

    def _build_result(
        self, outcome: ChannelOutcome, returncode: int | None, duration_ms: int, timed_out: bool
    ) -> RunResult:
        limit = self.session.limits.output_limit_bytes
        message = outcome.result or {}
        stdout = str(message.get("stdout") or "") + "".join(outcome.stray_stdout)
        stderr = str(message.get("stderr") or "") + outcome.stderr.decode("utf-8", errors="replace")
        stdout, cut_out = truncate_output(stdout, limit)
        stderr, cut_err = truncate_output(stderr, limit)
        usage = message.get("usage") or {}
        return RunResult(
            stdout=stdout,
            stderr=stderr,
            exit_code=returncode,
            value=message.get("value"),
            error=message.get("error"),
            error_type=message.get("error_type"),
            resource_usage=ResourceUsage(
                duration_ms=duration_ms,
                memory_bytes=int(usage.get("memory_bytes") or 0),
                cpu_ms=int(usage.get("cpu_ms") or 0),
            ),
            tool_calls=list(outcome.tool_calls),
            timed_out=timed_out,
            truncated=cut_out or cut_err or outcome.overflow,
        )

    def _classify(self, result: RunResult, outcome: ChannelOutcome) -> RunResult:
        limits = self.session.limits
        if result.timed_out:
            self._transition(SessionState.KILLED)
            raise SandboxTimeoutError(f"wall-clock timeout of {limits.wall_timeout_ms} ms exceeded", result)
        if result.oom_killed:
            self._transition(SessionState.KILLED)
            raise SandboxOOMError(f"memory limit of {limits.memory_bytes} bytes exceeded", result)
        if outcome.overflow:
            self._transition(SessionState.KILLED)
            raise SandboxCrashedError("sandbox output exceeded the channel limit", result)
        if outcome.result is None:
            self._transition(SessionState.FAILED)
            if result.exit_code == 0:
                raise ProgramFailedError("program exited without returning a result", result)
            raise SandboxCrashedError(f"sandbox exited with code {result.exit_code} before reporting a result", result)
        if not outcome.result.get("ok"):
            self._transition(SessionState.FAILED)
            raise ProgramFailedError(result.error or "program failed", result)
        self._transition(SessionState.FINISHED)
        return result

    async def _detect_oom(self, result: RunResult, returncode: int | None) -> bool:
        if result.error_type == "MemoryError":
            return True
        if result.value is None and returncode not in (0, 1):
            return any(marker in result.stderr for marker in _OOM_MARKERS)
        return False

    # ─── Process Control ─────────────────────────────────────

    async def _kill(self, proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is None:
            try:
                os.killpg(proc.pid, signal.SIGKILL)
            except ProcessLookupError:
                pass
            except PermissionError:
                proc.kill()
        await proc.wait()

    def _preexec(self):
        return None

    def sandbox_workspace(self) -> str | None:
        """Workspace path as seen from inside the sandbox."""
        return self.session.workspace_path

    # ─── Variant Hooks ───────────────────────────────────────

    @abstractmethod
    async def _ensure_ready(self) -> None:
        """Raise SandboxStartupError when the runtime is unavailable."""

    async def _prepare(self) -> None:
        """Write runtime files after the workspace exists."""

    @abstractmethod
    def _command(self) -> tuple[list[str], dict[str, str] | None, str | None]:
        """argv, environment and working directory of the sandbox process."""

    async def _teardown(self) -> None:
        """Release variant resources (containers, VMs)."""
