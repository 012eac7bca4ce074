"""
mcpexec Sandbox Pool

Bounds how many sandboxes run at once. ``pool_size`` sessions may be
leased concurrently; up to ``queue_size`` more callers wait in line and
anything beyond that fails fast with OverloadedError.

Sessions are single-use: every lease ends in ``destroy()``, on every
exit path. With ``prewarm`` enabled the pool keeps initialized sessions
for the default limits ready and refills them in the background.

Usage:
    pool = SandboxPool(config.sandbox)
    async with pool.lease(SandboxKind.PROCESS, Language.PYTHON, limits) as sandbox:
        result = await sandbox.run(source, inputs, handler)
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from mcpexec.config import SandboxConfig
from mcpexec.core.models import FilesystemScope, Language, NetworkMode, ResourceLimits, SandboxKind
from mcpexec.exceptions import OverloadedError, SandboxStartupError
from mcpexec.logging import get_logger
from mcpexec.sandbox.base import Sandbox
from mcpexec.sandbox.selector import SANDBOX_CLASSES, create_sandbox

logger = get_logger("mcpexec.sandbox.pool")


class SandboxPool:
    """Concurrency gate and optional warm pool for sandbox sessions."""

    def __init__(self, config: SandboxConfig):
        self.config = config
        self._slots = asyncio.Semaphore(config.pool_size)
        self._in_use = 0
        self._waiting = 0
        self._warm: dict[tuple[SandboxKind, Language], list[Sandbox]] = {}
        self._refills: set[asyncio.Task] = set()
        self.leases = 0
        self.rejected = 0

    # ─── Leasing ─────────────────────────────────────────────

    @asynccontextmanager
    async def lease(
        self,
        kind: SandboxKind,
        language: Language,
        limits: ResourceLimits | None = None,
        network_mode: NetworkMode = NetworkMode.NONE,
        filesystem_scope: FilesystemScope | None = None,
    ) -> AsyncIterator[Sandbox]:
        """Acquire an initialized sandbox; it is destroyed when the block exits.

        Raises:
            OverloadedError: Every slot is busy and the wait queue is full.
            SandboxStartupError: The sandbox runtime is not ready.
        """
        await self._acquire_slot()
        sandbox: Sandbox | None = None
        try:
            scope = filesystem_scope or self.config.filesystem_scope
            sandbox = self._take_warm(kind, language, limits, network_mode, scope)
            if sandbox is None:
                sandbox = create_sandbox(kind, self.config, language)
                await sandbox.initialize(limits, network_mode, scope)
            self.leases += 1
            yield sandbox
        finally:
            try:
                if sandbox is not None:
                    await asyncio.shield(sandbox.destroy())
            finally:
                self._release_slot()
                if self.config.prewarm and sandbox is not None:
                    self._schedule_refill(sandbox.kind, sandbox.language)

    async def _acquire_slot(self) -> None:
        if self._slots.locked():
            if self._waiting >= self.config.queue_size:
                self.rejected += 1
                logger.warning(
                    "Sandbox pool saturated: %d in use, %d queued", self._in_use, self._waiting,
                    extra={"event_type": "pool_overloaded"},
                )
                raise OverloadedError(self._in_use, self._waiting)
            self._waiting += 1
            try:
                await self._slots.acquire()
            finally:
                self._waiting -= 1
        else:
            await self._slots.acquire()
        self._in_use += 1

    def _release_slot(self) -> None:
        self._in_use -= 1
        self._slots.release()

    # ─── Warm Pool ───────────────────────────────────────────

    def _take_warm(
        self,
        kind: SandboxKind,
        language: Language,
        limits: ResourceLimits | None,
        network_mode: NetworkMode,
        scope: FilesystemScope,
    ) -> Sandbox | None:
        if not self.config.prewarm:
            return None
        if (limits is not None and limits != self.config.limits()) or network_mode != NetworkMode.NONE:
            return None
        if scope != self.config.filesystem_scope:
            return None
        ready = self._warm.get((kind, Language(language)))
        return ready.pop() if ready else None

    async def prewarm(self, kind: SandboxKind, language: Language) -> None:
        """Fill the warm pool for (kind, language) up to ``pool_size``."""
        key = (SandboxKind(kind), Language(language))
        ready = self._warm.setdefault(key, [])
        while len(ready) < self.config.pool_size:
            sandbox = create_sandbox(kind, self.config, language)
            try:
                await sandbox.initialize(None, NetworkMode.NONE, self.config.filesystem_scope)
            except SandboxStartupError as exc:
                logger.warning(
                    "Prewarm of %s sandbox failed: %s", key[0].value, exc,
                    extra={"sandbox_kind": key[0].value},
                )
                await sandbox.destroy()
                return
            ready.append(sandbox)
        logger.info(
            "Warm pool ready: %d %s/%s sandboxes", len(ready), key[0].value, key[1].value,
            extra={"sandbox_kind": key[0].value},
        )

    def _schedule_refill(self, kind: SandboxKind, language: Language) -> None:
        try:
            task = asyncio.get_running_loop().create_task(self.prewarm(kind, language))
        except RuntimeError:
            return
        self._refills.add(task)
        task.add_done_callback(self._refills.discard)

    async def close(self) -> None:
        """Cancel refills and destroy every warm sandbox."""
        for task in list(self._refills):
            task.cancel()
        if self._refills:
            await asyncio.gather(*self._refills, return_exceptions=True)
        for ready in self._warm.values():
            while ready:
                await ready.pop().destroy()

    # ─── Status ──────────────────────────────────────────────

    async def health(self, language: Language = Language.PYTHON) -> dict[str, Any]:
        """Readiness of every sandbox kind for ``language``."""
        kinds = {}
        for kind, cls in SANDBOX_CLASSES.items():
            kinds[kind.value] = await cls(self.config, language).health()
        return {"kinds": kinds, **self.stats()}

    def stats(self) -> dict[str, Any]:
        return {
            "pool_size": self.config.pool_size,
            "queue_size": self.config.queue_size,
            "in_use": self._in_use,
            "waiting": self._waiting,
            "warm": {f"{k.value}/{lang.value}": len(v) for (k, lang), v in self._warm.items()},
            "leases": self.leases,
            "rejected": self.rejected,
        }
