"""
MicroVM sandbox (security level ``maximum``).

Same contract as the container sandbox, but the container runs under a
VM-backed OCI runtime (Kata Containers by default), so the program gets
its own guest kernel.
"""

from __future__ import annotations

import json

from mcpexec.core.models import SandboxKind
from mcpexec.exceptions import SandboxStartupError
from mcpexec.sandbox.docker import DockerSandbox, run_docker


class MicroVMSandbox(DockerSandbox):
    kind = SandboxKind.VM

    def runtime_flags(self) -> list[str]:
        return ["--runtime", self.config.vm_runtime]

    async def _ensure_ready(self) -> None:
        await super()._ensure_ready()
        code, out, err = await run_docker(self.docker, "info", "--format", "{{json .Runtimes}}")
        if code != 0:
            raise SandboxStartupError(f"cannot query docker runtimes: {err.strip() or code}")
        try:
            runtimes = json.loads(out or "{}")
        except json.JSONDecodeError:
            runtimes = {}
        if self.config.vm_runtime not in runtimes:
            raise SandboxStartupError(
                f"microVM runtime '{self.config.vm_runtime}' is not registered with docker"
            )
