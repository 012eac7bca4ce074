"""
Sandbox selection by policy tier.

    maximum  -> vm
    high     -> docker
    moderate -> process

A startup failure may be retried once on the alternate kind when the
configuration allows degradation. ``maximum`` never degrades.
"""

from __future__ import annotations

from mcpexec.config import SandboxConfig
from mcpexec.core.models import Language, SandboxKind, SecurityLevel
from mcpexec.sandbox.base import Sandbox
from mcpexec.sandbox.docker import DockerSandbox
from mcpexec.sandbox.process import ProcessSandbox
from mcpexec.sandbox.vm import MicroVMSandbox

TIER_KINDS: dict[SecurityLevel, SandboxKind] = {
    SecurityLevel.MAXIMUM: SandboxKind.VM,
    SecurityLevel.HIGH: SandboxKind.DOCKER,
    SecurityLevel.MODERATE: SandboxKind.PROCESS,
}

FALLBACK_KINDS: dict[SandboxKind, SandboxKind] = {
    SandboxKind.VM: SandboxKind.DOCKER,
    SandboxKind.DOCKER: SandboxKind.PROCESS,
    SandboxKind.PROCESS: SandboxKind.DOCKER,
}

SANDBOX_CLASSES: dict[SandboxKind, type[Sandbox]] = {
    SandboxKind.VM: MicroVMSandbox,
    SandboxKind.DOCKER: DockerSandbox,
    SandboxKind.PROCESS: ProcessSandbox,
}


def select_kind(level: SecurityLevel | str) -> SandboxKind:
    return TIER_KINDS[SecurityLevel(level)]


def fallback_kind(kind: SandboxKind, level: SecurityLevel | str, allow_degradation: bool) -> SandboxKind | None:
    """Alternate kind for the single startup retry, or None when not permitted."""
    if not allow_degradation or SecurityLevel(level) == SecurityLevel.MAXIMUM:
        return None
    return FALLBACK_KINDS.get(kind)


def create_sandbox(kind: SandboxKind | str, config: SandboxConfig, language: Language | str) -> Sandbox:
    return SANDBOX_CLASSES[SandboxKind(kind)](config, Language(language))
