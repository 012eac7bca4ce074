"""
Leftover container cleanup.

Every container sandbox is labelled ``mcpexec.sandbox=true`` and
``mcpexec.created=<unix seconds>``. A crashed host can leave containers
behind; this job removes the ones older than ``max_age_hours``, at most
``max_per_run`` per pass.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable

from mcpexec.logging import get_logger
from mcpexec.sandbox.docker import SANDBOX_LABEL, run_docker

logger = get_logger("mcpexec.sandbox.cleanup")


class ContainerCleanupJob:
    def __init__(
        self,
        docker: str = "docker",
        max_age_hours: float = 1.0,
        max_per_run: int = 100,
        clock: Callable[[], float] = time.time,
    ):
        self.docker = docker
        self.max_age_hours = max_age_hours
        self.max_per_run = max_per_run
        self._clock = clock
        self._task: asyncio.Task | None = None

    async def list_containers(self) -> list[tuple[str, float]]:
        """(name, created-at) of every labelled container."""
        code, out, err = await run_docker(
            self.docker, "ps", "-a",
            "--filter", f"label={SANDBOX_LABEL}=true",
            "--format", '{{.Names}}\t{{.Label "mcpexec.created"}}',
        )
        if code != 0:
            logger.warning("Cannot list sandbox containers: %s", err.strip() or code)
            return []
        containers = []
        for line in out.splitlines():
            name, _, created = line.partition("\t")
            if not name:
                continue
            try:
                containers.append((name.strip(), float(created)))
            except ValueError:
                containers.append((name.strip(), 0.0))
        return containers

    async def run_once(self) -> list[str]:
        """Remove stale containers. Returns the names removed."""
        cutoff = self._clock() - self.max_age_hours * 3600
        stale = [name for name, created in await self.list_containers() if created < cutoff]
        return await self._remove(stale[: self.max_per_run])

    async def emergency_cleanup(self) -> list[str]:
        """Remove every labelled container regardless of age."""
        return await self._remove([name for name, _ in await self.list_containers()])

    async def _remove(self, names: list[str]) -> list[str]:
        removed = []
        for name in names:
            code, _, err = await run_docker(self.docker, "rm", "-f", name)
            if code == 0:
                removed.append(name)
            else:
                logger.warning("Cannot remove container %s: %s", name, err.strip())
        if removed:
            logger.info("Removed %d stale sandbox containers", len(removed), extra={"event_type": "cleanup"})
        return removed

    # ─── Background Loop ─────────────────────────────────────

    def start(self, interval_seconds: float = 600.0) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self._loop(interval_seconds))

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _loop(self, interval_seconds: float) -> None:
        while True:
            await self.run_once()
            await asyncio.sleep(interval_seconds)
