"""
Child-process sandbox (security level ``moderate``).

Isolation comes from the interpreter and the kernel's per-process limits:

- Python: isolated mode (-I -S -B), an audit hook that refuses process
  spawning, raw sockets and writes outside the workspace, and
  RLIMIT_AS / RLIMIT_CPU / RLIMIT_NOFILE / RLIMIT_NPROC / RLIMIT_FSIZE.
- TypeScript: Deno with no permissions except workspace read/write,
  a V8 heap cap, RLIMIT_CPU / RLIMIT_NOFILE / RLIMIT_FSIZE.

The child runs in its own session so a timeout kills the whole group.
"""

from __future__ import annotations

import math
import os
import resource
import shutil
import sys

from mcpexec.core.models import Language, SandboxKind
from mcpexec.exceptions import SandboxStartupError
from mcpexec.sandbox.base import Sandbox
from mcpexec.sandbox.runtime import (
    BOOTSTRAP_FILENAME,
    TYPESCRIPT_BOOTSTRAP,
    deno_argv,
    python_argv,
    sandbox_env,
)


class ProcessSandbox(Sandbox):
    kind = SandboxKind.PROCESS

    @property
    def executable(self) -> str | None:
        if self.language == Language.PYTHON:
            return self.config.python_executable or sys.executable
        return self.config.deno_executable or shutil.which("deno")

    async def _ensure_ready(self) -> None:
        executable = self.executable
        if not executable or not (os.path.isfile(executable) or shutil.which(executable)):
            runtime = "python" if self.language == Language.PYTHON else "deno"
            raise SandboxStartupError(f"{runtime} runtime not found for the process sandbox")

    async def _prepare(self) -> None:
        if self.language == Language.TYPESCRIPT:
            path = os.path.join(self.runtime_dir, BOOTSTRAP_FILENAME)
            with open(path, "w", encoding="utf-8") as f:
                f.write(TYPESCRIPT_BOOTSTRAP)

    def _command(self) -> tuple[list[str], dict[str, str], str]:
        workspace = self.session.workspace_path
        if self.language == Language.PYTHON:
            return python_argv(self.executable), sandbox_env(workspace), workspace
        argv = deno_argv(
            self.executable,
            os.path.join(self.runtime_dir, BOOTSTRAP_FILENAME),
            self.session.limits,
            self.session.filesystem_scope,
            workspace,
        )
        return argv, sandbox_env(workspace, deno_dir=os.path.join(self.runtime_dir, "deno")), workspace

    def _preexec(self):
        limits = self.session.limits
        python = self.language == Language.PYTHON
        cpu_seconds = math.ceil(limits.wall_timeout_ms / 1000 * max(limits.cpu_quota, 1.0)) + 1

        def apply_limits() -> None:
            _cap(resource.RLIMIT_CPU, cpu_seconds)
            _cap(resource.RLIMIT_NOFILE, limits.fds)
            _cap(resource.RLIMIT_FSIZE, limits.memory_bytes)
            _cap(resource.RLIMIT_CORE, 0)
            if python:
                # V8 reserves far more address space than it uses; Deno gets a heap cap instead
                _cap(resource.RLIMIT_AS, limits.memory_bytes)
                _cap(resource.RLIMIT_NPROC, limits.procs)

        return apply_limits


def _cap(limit: int, value: int) -> None:
    """Lower ``limit`` to ``value`` without exceeding the inherited hard limit."""
    _, hard = resource.getrlimit(limit)
    if hard != resource.RLIM_INFINITY:
        value = min(value, hard)
    resource.setrlimit(limit, (value, value))
