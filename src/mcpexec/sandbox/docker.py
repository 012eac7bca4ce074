"""
Container sandbox (security level ``high``).

Runs the program in a throwaway container through the docker CLI:
read-only root, every capability dropped, no new privileges, a seccomp
allowlist, ``--network none`` (egress only ever goes through the stdio
bridge), memory equal to memory+swap, a CPU quota, a pids limit and a
file-descriptor ulimit. Containers carry the ``mcpexec.sandbox=true``
label so the cleanup job can find leftovers.
"""

from __future__ import annotations

import asyncio
import os
import shutil
import time

from mcpexec.core.models import FilesystemScope, Language, RunResult, SandboxKind
from mcpexec.exceptions import SandboxStartupError
from mcpexec.logging import get_logger
from mcpexec.sandbox.base import Sandbox
from mcpexec.sandbox.runtime import BOOTSTRAP_FILENAME, TYPESCRIPT_BOOTSTRAP, python_argv
from mcpexec.sandbox.seccomp import write_profile

logger = get_logger("mcpexec.sandbox.docker")

SANDBOX_LABEL = "mcpexec.sandbox"
WORKSPACE_MOUNT = "/workspace"
RUNTIME_MOUNT = "/opt/mcpexec"


async def run_docker(docker: str, *args: str, timeout: float = 30.0) -> tuple[int, str, str]:
    """Run one docker CLI command and return (returncode, stdout, stderr)."""
    try:
        proc = await asyncio.create_subprocess_exec(
            docker, *args, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE
        )
    except OSError as exc:
        return 127, "", str(exc)
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except TimeoutError:
        proc.kill()
        await proc.wait()
        return 124, "", f"docker {args[0]} timed out"
    return proc.returncode, stdout.decode(errors="replace"), stderr.decode(errors="replace")


class DockerSandbox(Sandbox):
    kind = SandboxKind.DOCKER

    @property
    def container_name(self) -> str:
        return f"mcpexec-{self.session.id}"

    @property
    def image(self) -> str:
        images = self.config.images
        return images.python if self.language == Language.PYTHON else images.typescript

    @property
    def docker(self) -> str:
        return self.config.docker_executable

    def runtime_flags(self) -> list[str]:
        return []

    async def _ensure_ready(self) -> None:
        if not shutil.which(self.docker):
            raise SandboxStartupError(f"docker executable '{self.docker}' not found")
        code, _, err = await run_docker(self.docker, "image", "inspect", "--format", "{{.Id}}", self.image)
        if code != 0:
            raise SandboxStartupError(f"sandbox image {self.image} is not available: {err.strip() or code}")

    async def _prepare(self) -> None:
        write_profile(self.runtime_dir)
        os.chmod(self.runtime_dir, 0o755)
        if self.language == Language.TYPESCRIPT:
            path = os.path.join(self.runtime_dir, BOOTSTRAP_FILENAME)
            with open(path, "w", encoding="utf-8") as f:
                f.write(TYPESCRIPT_BOOTSTRAP)
            os.chmod(path, 0o644)
        if self.session.filesystem_scope != FilesystemScope.NONE:
            # The container runs as nobody and must be able to use the workspace
            os.chmod(self.session.workspace_path, 0o777)

    def sandbox_workspace(self) -> str | None:
        return WORKSPACE_MOUNT if self.session.filesystem_scope != FilesystemScope.NONE else None

    def _command(self) -> tuple[list[str], None, None]:
        limits = self.session.limits
        scope = self.session.filesystem_scope
        argv = [
            self.docker, "run", "-i",
            "--name", self.container_name,
            "--label", f"{SANDBOX_LABEL}=true",
            "--label", f"mcpexec.session={self.session.id}",
            "--label", f"mcpexec.created={int(time.time())}",
            "--network", "none",
            "--cap-drop", "ALL",
            "--security-opt", "no-new-privileges",
            "--security-opt", f"seccomp={os.path.join(self.runtime_dir, 'seccomp.json')}",
            "--memory", str(limits.memory_bytes),
            "--memory-swap", str(limits.memory_bytes),
            "--cpus", f"{limits.cpu_quota:g}",
            "--pids-limit", str(limits.procs),
            "--ulimit", f"nofile={limits.fds}:{limits.fds}",
            "--user", "65534:65534",
            "--tmpfs", "/tmp:rw,noexec,nosuid,size=64m",
            "-e", "HOME=/tmp",
            "-e", "LANG=C.UTF-8",
            "-v", f"{self.runtime_dir}:{RUNTIME_MOUNT}:ro",
        ]
        if scope != FilesystemScope.FULL:
            argv.append("--read-only")
        if scope != FilesystemScope.NONE:
            mode = "ro" if scope == FilesystemScope.READ_ONLY else "rw"
            argv += ["-v", f"{self.session.workspace_path}:{WORKSPACE_MOUNT}:{mode}", "--workdir", WORKSPACE_MOUNT]
        else:
            argv += ["--workdir", "/tmp"]
        argv += self.runtime_flags()
        argv.append(self.image)
        argv += self._inner_command()
        return argv, None, None

    def _inner_command(self) -> list[str]:
        limits = self.session.limits
        if self.language == Language.PYTHON:
            return python_argv("python")
        heap_mb = max(16, int(limits.memory_bytes / (1024 * 1024) * 0.8))
        argv = ["deno", "run", "--no-prompt", "--no-remote", "--no-config", "--quiet",
                f"--v8-flags=--max-old-space-size={heap_mb}"]
        scope = self.session.filesystem_scope
        if scope in (FilesystemScope.WORKSPACE_ONLY, FilesystemScope.FULL):
            argv += [f"--allow-read={WORKSPACE_MOUNT}", f"--allow-write={WORKSPACE_MOUNT}"]
        elif scope == FilesystemScope.READ_ONLY:
            argv.append(f"--allow-read={WORKSPACE_MOUNT}")
        argv.append(f"{RUNTIME_MOUNT}/{BOOTSTRAP_FILENAME}")
        return ["env", "DENO_DIR=/tmp/deno", "DENO_NO_UPDATE_CHECK=1", "NO_COLOR=1", *argv]

    async def _kill(self, proc: asyncio.subprocess.Process) -> None:
        await run_docker(self.docker, "kill", self.container_name, timeout=10.0)
        await super()._kill(proc)

    async def _detect_oom(self, result: RunResult, returncode: int | None) -> bool:
        if await super()._detect_oom(result, returncode):
            return True
        code, out, _ = await run_docker(
            self.docker, "inspect", "--format", "{{.State.OOMKilled}}", self.container_name, timeout=10.0
        )
        return code == 0 and out.strip() == "true"

    async def _teardown(self) -> None:
        code, _, err = await run_docker(self.docker, "rm", "-f", self.container_name, timeout=30.0)
        if code != 0 and "No such container" not in err:
            logger.warning(
                "Container removal failed: %s", err.strip(),
                extra={"session_id": self.session.id, "sandbox_kind": self.kind.value},
            )
