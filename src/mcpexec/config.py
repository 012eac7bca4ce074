"""
mcpexec Configuration

A single configuration document with the top-level keys ``security``,
``sandbox``, ``network``, ``approval`` and ``audit_retention_days`` (plus
``audit``, ``index``, ``logging`` and ``mcp_servers``). Every key has a
documented default.
Unknown keys are warnings, not errors.

Usage:
    from mcpexec.config import load_config

    config = load_config("mcpexec.yaml")
    for warning in config.warnings:
        print(warning)
"""

from __future__ import annotations

import json
import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from mcpexec.core.models import FilesystemScope, ResourceLimits, SecurityLevel
from mcpexec.exceptions import ConfigError
from mcpexec.logging import get_logger

logger = get_logger("mcpexec.config")

CONFIG_ENV_VAR = "MCPEXEC_CONFIG"

_MEMORY_RE = re.compile(r"^(\d+)([KMG])$")
_MEMORY_UNITS = {"K": 1024, "M": 1024**2, "G": 1024**3}

# Minimum audit retention (days) per legal obligation
RETENTION_OBLIGATIONS = {
    "gdpr": 0,
    "soc2": 365,
    "hipaa": 2190,
}

DEFAULT_BLOCKED_CIDRS = [
    "0.0.0.0/8",
    "10.0.0.0/8",
    "100.64.0.0/10",
    "127.0.0.0/8",
    "169.254.0.0/16",
    "172.16.0.0/12",
    "192.168.0.0/16",
    "224.0.0.0/4",
    "240.0.0.0/4",
    "::1/128",
    "fc00::/7",
    "fe80::/10",
    "ff00::/8",
]


def parse_memory(value: str | int) -> int:
    """Parse ``512M`` / ``1G`` / raw byte counts into bytes."""
    if isinstance(value, int):
        if value <= 0:
            raise ValueError(f"memory must be positive, got {value}")
        return value
    text = str(value).strip().upper()
    if text.isdigit():
        return parse_memory(int(text))
    match = _MEMORY_RE.match(text)
    if not match:
        raise ValueError(f"memory must match ^\\d+[KMG]$, got {value!r}")
    return int(match.group(1)) * _MEMORY_UNITS[match.group(2)]


class SecurityConfig(BaseModel):
    """Validator thresholds and defaults for the security pipeline."""

    level: SecurityLevel = SecurityLevel.MODERATE
    tokenize_pii: bool = True
    complexity_threshold: int = Field(default=50, ge=1)
    obfuscation_ratio: float = Field(default=0.45, gt=0.0, lt=1.0)
    long_string_threshold: int = Field(default=200, ge=16)
    max_artifact_tokens: int = Field(default=4000, ge=100)


class DockerImages(BaseModel):
    python: str = "python:3.12-alpine"
    typescript: str = "denoland/deno:alpine"


class SandboxConfig(BaseModel):
    """Sandbox limits, pool sizing and runtime locations."""

    memory: str | int = "512M"
    cpu_quota: float = Field(default=1.0, ge=0.1, le=8.0)
    wall_timeout_ms: int = Field(default=30_000, ge=1_000, le=300_000)
    kill_grace_ms: int = Field(default=2_000, ge=0, le=60_000)
    fds: int = Field(default=256, ge=16)
    procs: int = Field(default=64, ge=1)
    output_limit_bytes: int = Field(default=1024 * 1024, ge=1024)
    filesystem_scope: FilesystemScope = FilesystemScope.WORKSPACE_ONLY
    pool_size: int = Field(default=4, ge=1)
    queue_size: int = Field(default=16, ge=0)
    prewarm: bool = False
    allow_degradation: bool = True
    debug_persist_artifacts: bool = False
    workspace_root: str | None = None
    python_executable: str | None = None
    deno_executable: str | None = None
    docker_executable: str = "docker"
    images: DockerImages = Field(default_factory=DockerImages)
    vm_runtime: str = "kata-runtime"
    cleanup_max_age_hours: float = Field(default=1.0, gt=0)

    @field_validator("memory")
    @classmethod
    def _check_memory(cls, value: str | int) -> str | int:
        parse_memory(value)
        return value

    @property
    def memory_bytes(self) -> int:
        return parse_memory(self.memory)

    def limits(self) -> ResourceLimits:
        return ResourceLimits(
            memory_bytes=self.memory_bytes,
            cpu_quota=self.cpu_quota,
            wall_timeout_ms=self.wall_timeout_ms,
            fds=self.fds,
            procs=self.procs,
            output_limit_bytes=self.output_limit_bytes,
        )


class NetworkConfig(BaseModel):
    """Egress whitelist, blacklist and rate limit."""

    allowed_domains: list[str] = Field(default_factory=list)
    blocked_cidrs: list[str] = Field(default_factory=lambda: list(DEFAULT_BLOCKED_CIDRS))
    rate_limit_requests: int = Field(default=100, ge=1)
    rate_limit_window_seconds: float = Field(default=60.0, gt=0)
    resolve_dns: bool = True
    request_timeout_seconds: float = Field(default=10.0, gt=0)
    max_response_bytes: int = Field(default=1024 * 1024, ge=1024)


class ApprovalPolicy(BaseModel):
    """Which risk levels skip the human approval gate. Critical never does."""

    auto_approve_low: bool = True
    auto_approve_medium: bool = False
    auto_approve_high: bool = False
    auto_approve_critical: bool = False
    timeout_seconds: float = Field(default=60.0, gt=0)

    @model_validator(mode="after")
    def _never_auto_approve_critical(self) -> ApprovalPolicy:
        if self.auto_approve_critical:
            self.auto_approve_critical = False
        return self


class AuditConfig(BaseModel):
    backend: str = Field(default="sqlite", pattern="^(sqlite|jsonl)$")
    path: str = "mcpexec_audit.db"
    compaction_interval_hours: float = Field(default=24.0, gt=0)


class IndexConfig(BaseModel):
    tools_dir: str | None = None
    store_dir: str | None = None
    max_schema_depth: int = Field(default=32, ge=1)
    watch: bool = False


class McpServerConfig(BaseModel):
    """One MCP server reached over stdio."""

    command: str
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)
    enabled: bool = True
    connect_timeout_seconds: float = Field(default=30.0, gt=0)
    call_timeout_seconds: float = Field(default=60.0, gt=0)


class LoggingConfig(BaseModel):
    level: str = "INFO"
    json_output: bool = False


class EngineConfig(BaseModel):
    """Root configuration document."""

    security: SecurityConfig = Field(default_factory=SecurityConfig)
    sandbox: SandboxConfig = Field(default_factory=SandboxConfig)
    network: NetworkConfig = Field(default_factory=NetworkConfig)
    approval: ApprovalPolicy = Field(default_factory=ApprovalPolicy)
    audit_retention_days: int = Field(default=400, ge=1)
    compliance_scopes: list[str] = Field(default_factory=list)
    audit: AuditConfig = Field(default_factory=AuditConfig)
    index: IndexConfig = Field(default_factory=IndexConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    mcp_servers: dict[str, McpServerConfig] = Field(default_factory=dict)
    warnings: list[str] = Field(default_factory=list, exclude=True)

    @field_validator("compliance_scopes")
    @classmethod
    def _known_scopes(cls, value: list[str]) -> list[str]:
        unknown = [s for s in value if s.lower() not in RETENTION_OBLIGATIONS]
        if unknown:
            raise ValueError(f"unknown compliance scopes: {unknown}")
        return [s.lower() for s in value]

    @model_validator(mode="after")
    def _retention_covers_obligations(self) -> EngineConfig:
        required = max((RETENTION_OBLIGATIONS[s] for s in self.compliance_scopes), default=0)
        if self.audit_retention_days < required:
            raise ValueError(
                f"audit_retention_days={self.audit_retention_days} is shorter than the "
                f"{required} days required by {self.compliance_scopes}"
            )
        return self


def _strip_unknown(data: dict[str, Any], model: type[BaseModel], path: str, warnings: list[str]) -> dict[str, Any]:
    """Drop keys the model does not declare, recording a warning for each."""
    cleaned: dict[str, Any] = {}
    for key, value in data.items():
        field = model.model_fields.get(key)
        dotted = f"{path}.{key}" if path else key
        if field is None or key == "warnings":
            warnings.append(f"Unknown configuration key '{dotted}' ignored")
            continue
        annotation = field.annotation
        if isinstance(value, dict) and isinstance(annotation, type) and issubclass(annotation, BaseModel):
            value = _strip_unknown(value, annotation, dotted, warnings)
        cleaned[key] = value
    return cleaned


def parse_config(data: dict[str, Any] | None) -> EngineConfig:
    """Build an EngineConfig from an already-parsed document."""
    data = data or {}
    if not isinstance(data, dict):
        raise ConfigError("Configuration document must be a mapping")

    warnings: list[str] = []
    approval = data.get("approval")
    if isinstance(approval, dict) and approval.get("auto_approve_critical"):
        warnings.append("approval.auto_approve_critical is ignored: critical is never auto-approved")

    cleaned = _strip_unknown(data, EngineConfig, "", warnings)
    try:
        config = EngineConfig.model_validate(cleaned)
    except ValidationError as exc:
        raise ConfigError(
            f"Invalid configuration: {exc.error_count()} error(s)",
            details={"errors": exc.errors(include_url=False)},
        ) from exc

    for warning in warnings:
        logger.warning(warning)
    config.warnings = warnings
    return config


def load_config(path: str | Path | None = None) -> EngineConfig:
    """Load configuration from YAML or JSON.

    Falls back to ``$MCPEXEC_CONFIG`` and then to built-in defaults.
    """
    if path is None:
        path = os.environ.get(CONFIG_ENV_VAR)
    if path is None:
        return EngineConfig()

    config_path = Path(path)
    if not config_path.exists():
        raise ConfigError(f"Configuration file not found: {config_path}")

    text = config_path.read_text(encoding="utf-8")
    try:
        if config_path.suffix.lower() == ".json":
            data = json.loads(text) if text.strip() else {}
        else:
            data = yaml.safe_load(text) or {}
    except (json.JSONDecodeError, yaml.YAMLError) as exc:
        raise ConfigError(f"Cannot parse configuration {config_path}: {exc}") from exc

    return parse_config(data)


def save_mcp_server(path: str | Path, name: str, server: McpServerConfig) -> Path:
    """Add or replace ``mcp_servers.<name>`` in the document at ``path``.

    The file is created when missing. Other keys are written back as found.
    """
    config_path = Path(path)
    data: dict[str, Any] = {}
    if config_path.exists():
        text = config_path.read_text(encoding="utf-8")
        try:
            if config_path.suffix.lower() == ".json":
                data = json.loads(text) if text.strip() else {}
            else:
                data = yaml.safe_load(text) or {}
        except (json.JSONDecodeError, yaml.YAMLError) as exc:
            raise ConfigError(f"Cannot parse configuration {config_path}: {exc}") from exc
        if not isinstance(data, dict):
            raise ConfigError("Configuration document must be a mapping")

    servers = data.get("mcp_servers") or {}
    servers[name] = server.model_dump(exclude_defaults=True)
    servers[name]["command"] = server.command
    data["mcp_servers"] = servers

    parse_config(data)
    config_path.parent.mkdir(parents=True, exist_ok=True)
    if config_path.suffix.lower() == ".json":
        config_path.write_text(json.dumps(data, indent=2) + "\n", encoding="utf-8")
    else:
        config_path.write_text(yaml.safe_dump(data, sort_keys=False), encoding="utf-8")
    logger.info("MCP server %s saved to %s", name, config_path)
    return config_path
