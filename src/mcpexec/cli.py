"""
mcpexec CLI

Commands:
    mcpexec execute "intent"      - Run the pipeline for an intent
    mcpexec validate FILE         - Static validation of a program
    mcpexec index TOOLS_DIR       - Index tool descriptor files
    mcpexec search QUERY          - Search the tool index
    mcpexec mcp-add NAME CMD ...  - Register an MCP server in the config file
    mcpexec audit                 - View audit entries
    mcpexec verify                - Verify audit hash chain integrity
    mcpexec report                - Compliance report
    mcpexec compact               - Apply audit retention
    mcpexec cleanup               - Remove leftover sandbox containers
    mcpexec serve                 - Start the API server
    mcpexec status                - Show engine status

Usage:
    mcpexec --config mcpexec.yaml execute "add 2 and 3" --tools-dir ./tools --inputs '{"a": 2, "b": 3}'
"""

from __future__ import annotations

import asyncio
import json
import os
import sys
from datetime import datetime
from pathlib import Path

import click
from rich.console import Console
from rich.table import Table

from mcpexec import __version__
from mcpexec.config import CONFIG_ENV_VAR, EngineConfig, McpServerConfig, load_config, save_mcp_server
from mcpexec.core.models import AuditFilter, ExecutionOptions, Language, Outcome, RiskLevel, SecurityLevel
from mcpexec.discovery.index import ToolIndex
from mcpexec.discovery.mcp_client import MCPClientPool
from mcpexec.discovery.schema import SchemaParser
from mcpexec.exceptions import ConfigError
from mcpexec.logging import configure_logging
from mcpexec.security.approval import RISK_STYLES, ConsoleApprover

console = Console()

DEFAULT_CONFIG_FILE = "mcpexec.yaml"

_SUFFIX_LANGUAGES = {".py": Language.PYTHON, ".ts": Language.TYPESCRIPT, ".mts": Language.TYPESCRIPT}


def _config(ctx: click.Context) -> EngineConfig:
    return ctx.obj["config"]


def _index(config: EngineConfig, tools_dir: str | None) -> ToolIndex:
    index = ToolIndex(SchemaParser(max_depth=config.index.max_schema_depth))
    directory = tools_dir or config.index.tools_dir
    if directory:
        report = index.load_directory(directory)
        for path, error in report.errors.items():
            console.print(f"  [yellow]skipped[/] {path}: {error}")
    elif config.index.store_dir and (Path(config.index.store_dir) / "manifest.json").exists():
        index.load_manifest(config.index.store_dir)
    return index


def _print_header(title: str) -> None:
    console.print(f"\n[bold]{title}[/]")
    console.rule(style="dim")


@click.group()
@click.version_option(version=__version__, prog_name="mcpexec")
@click.option("--config", "config_path", type=click.Path(), default=None, help="YAML or JSON config file")
@click.option("--log-level", default=None, help="Override the configured log level")
@click.pass_context
def cli(ctx: click.Context, config_path: str | None, log_level: str | None) -> None:
    """mcpexec: sandboxed code execution for MCP tool catalogs"""
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    configure_logging(log_level or config.logging.level, config.logging.json_output)
    for warning in config.warnings:
        console.print(f"[yellow]config:[/] {warning}")
    ctx.ensure_object(dict)
    ctx.obj["config"] = config
    ctx.obj["config_path"] = config_path


# ─── Execution ───────────────────────────────────────────────

@cli.command()
@click.argument("intent")
@click.option("--language", "-l", type=click.Choice([lang.value for lang in Language]), default="python")
@click.option("--program", type=click.Path(exists=True, dir_okay=False), help="Program defining main(inputs)")
@click.option("--inputs", default=None, help="Inputs as a JSON document")
@click.option("--security-level", type=click.Choice([level.value for level in SecurityLevel]), default=None)
@click.option("--timeout", type=int, default=None, help="Wall-clock timeout in ms")
@click.option("--max-tools", type=int, default=5, show_default=True)
@click.option("--tools-dir", type=click.Path(exists=True, file_okay=False), default=None)
@click.option("--tool", "tools", multiple=True, help="Pin a tool as server/name (repeatable)")
@click.option("--allow-network", is_flag=True, help="Enable whitelisted egress")
@click.option("--allow-domain", "domains", multiple=True, help="Whitelisted domain (repeatable)")
@click.option("--force-approval", is_flag=True, help="Ask for approval regardless of policy")
@click.option("--json-output", is_flag=True, help="Output as JSON")
@click.pass_context
def execute(
    ctx: click.Context,
    intent: str,
    language: str,
    program: str | None,
    inputs: str | None,
    security_level: str | None,
    timeout: int | None,
    max_tools: int,
    tools_dir: str | None,
    tools: tuple[str, ...],
    allow_network: bool,
    domains: tuple[str, ...],
    force_approval: bool,
    json_output: bool,
) -> None:
    """Run the execution pipeline for INTENT."""
    from mcpexec.engine.orchestrator import ExecutionEngine

    config = _config(ctx)
    try:
        parsed_inputs = json.loads(inputs) if inputs else None
    except json.JSONDecodeError as exc:
        raise click.BadParameter(f"not valid JSON: {exc}", param_hint="--inputs") from exc
    options = ExecutionOptions(
        security_level=security_level,
        wall_timeout=timeout,
        max_tools=max_tools,
        allow_network=allow_network,
        allowed_domains=list(domains),
        force_approval=force_approval,
    )
    source = Path(program).read_text(encoding="utf-8") if program else None

    async def _run():
        engine = ExecutionEngine(config, index=_index(config, tools_dir), approver=ConsoleApprover())
        async with engine:
            return await engine.execute(
                intent, language, options, program=source, inputs=parsed_inputs, tools=list(tools) or None
            )

    result = asyncio.run(_run())
    if json_output:
        click.echo(json.dumps({**result.summary(), "session_id": result.session_id}, indent=2, default=str))
    else:
        style = "green" if result.ok else "red"
        _print_header(f"Execution {result.session_id}")
        console.print(f"  Outcome: [{style}]{result.outcome.value}[/]")
        if result.risk_level:
            console.print(f"  Risk:    [{RISK_STYLES[result.risk_level]}]{result.risk_level.value}[/]")
        if result.ok:
            console.print(f"  Value:   {json.dumps(result.value, default=str)}")
        if result.error:
            console.print(f"  Error:   [red]{result.error.kind}[/] {result.error.message}")
            console.print(f"           [dim]{result.error.remediation}[/]")
        for warning in result.warnings:
            console.print(f"  [yellow]warning[/] {warning}")
        m = result.metrics
        console.print(
            f"  [dim]{m.duration_ms} ms | {m.memory_bytes // 1024} KiB | cpu {m.cpu_ms} ms | "
            f"~{m.token_estimate} tokens | net {m.network_requests} ok / {m.network_denied} denied[/]"
        )
    if not result.ok:
        sys.exit(1)


@cli.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False))
@click.option("--language", "-l", type=click.Choice([lang.value for lang in Language]), default=None)
@click.option("--json-output", is_flag=True, help="Output as JSON")
@click.pass_context
def validate(ctx: click.Context, file: str, language: str | None, json_output: bool) -> None:
    """Statically validate a program. Exits 2 on a critical violation."""
    from mcpexec.security.validator import CodeValidator

    security = _config(ctx).security
    path = Path(file)
    lang = Language(language) if language else _SUFFIX_LANGUAGES.get(path.suffix, Language.PYTHON)
    validator = CodeValidator(security.complexity_threshold, security.obfuscation_ratio, security.long_string_threshold)
    report = validator.validate(path.read_text(encoding="utf-8"), lang)

    if json_output:
        click.echo(report.model_dump_json(indent=2))
    else:
        _print_header(f"Validation: {path.name}")
        style = RISK_STYLES[report.risk_level]
        console.print(f"  Risk: [{style}]{report.risk_level.value}[/]  complexity={report.complexity_score}"
                      f"  obfuscated={'yes' if report.obfuscation_flag else 'no'}")
        if report.violations:
            table = Table("Severity", "Rule", "Line", "Message", "Recommendation")
            for v in report.violations:
                table.add_row(
                    f"[{RISK_STYLES[v.severity]}]{v.severity.value}[/]", v.rule, str(v.line or "-"),
                    v.message, v.recommendation,
                )
            console.print(table)
        else:
            console.print("  [green]No violations[/]")
    if report.risk_level == RiskLevel.CRITICAL:
        sys.exit(2)


# ─── Tool Index ──────────────────────────────────────────────

@cli.command()
@click.argument("tools_dir", type=click.Path(exists=True, file_okay=False))
@click.option("--store", type=click.Path(file_okay=False), default=None, help="Persist to a content-addressed store")
@click.pass_context
def index(ctx: click.Context, tools_dir: str, store: str | None) -> None:
    """Index TOOLS_DIR/<server>/*.json descriptor files."""
    config = _config(ctx)
    tool_index = ToolIndex(SchemaParser(max_depth=config.index.max_schema_depth))
    report = tool_index.load_directory(tools_dir)

    _print_header(f"Indexed {tools_dir}")
    for key in report.loaded:
        console.print(f"  [green]+[/] {key}")
    for path, error in report.errors.items():
        console.print(f"  [red]x[/] {path}: {error}")
    console.print(f"\n  {len(report.loaded)} loaded, {len(report.errors)} rejected")

    target = store or config.index.store_dir
    if target:
        manifest = tool_index.persist(target)
        console.print(f"  Manifest: {manifest}")
    if not report.ok:
        sys.exit(1)


@cli.command()
@click.argument("query")
@click.option("--tools-dir", type=click.Path(exists=True, file_okay=False), default=None)
@click.option("-k", "limit", type=int, default=5, show_default=True)
@click.pass_context
def search(ctx: click.Context, query: str, tools_dir: str | None, limit: int) -> None:
    """Search the tool index for QUERY."""
    tool_index = _index(_config(ctx), tools_dir)
    hits = tool_index.rank(query, limit)
    if not hits:
        console.print("  No matching tools.")
        return
    table = Table("Tool", "Score", "Matched", "Description")
    for hit in hits:
        table.add_row(hit.descriptor.key, f"{hit.score:.3f}", ", ".join(hit.matched_terms), hit.descriptor.description[:60])
    console.print(table)


@cli.command("mcp-add")
@click.argument("name")
@click.argument("command")
@click.argument("args", nargs=-1, type=click.UNPROCESSED)
@click.option("--env", "env_pairs", multiple=True, help="Environment variable as KEY=VALUE (repeatable)")
@click.option("--file", "target", type=click.Path(dir_okay=False), default=None, help="Config file to write")
@click.option("--test", "test_connection", is_flag=True, help="Start the server and list its tools first")
@click.pass_context
def mcp_add(
    ctx: click.Context,
    name: str,
    command: str,
    args: tuple[str, ...],
    env_pairs: tuple[str, ...],
    target: str | None,
    test_connection: bool,
) -> None:
    """Register an MCP server started as COMMAND [ARGS]... under NAME."""
    env: dict[str, str] = {}
    for pair in env_pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected KEY=VALUE, got '{pair}'", param_hint="--env")
        env[key] = value
    server = McpServerConfig(command=command, args=list(args), env=env)
    target = target or ctx.obj.get("config_path") or os.environ.get(CONFIG_ENV_VAR) or DEFAULT_CONFIG_FILE

    if test_connection:
        tools, failure = asyncio.run(_list_mcp_tools(name, server))
        if failure:
            raise click.ClickException(failure)
        _print_header(f"MCP server {name}")
        for tool in tools:
            console.print(f"  [green]+[/] {tool.name}  [dim]{tool.description[:60]}[/]")
        console.print(f"\n  {len(tools)} tools")

    try:
        path = save_mcp_server(target, name, server)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    console.print(f"  [green]Saved[/] mcp_servers.{name} to {path}")


async def _list_mcp_tools(name: str, server: McpServerConfig):
    pool = MCPClientPool({name: server})
    try:
        tools = await pool.connect()
    finally:
        await pool.close()
    return tools, pool.failures.get(name)


# ─── Audit ───────────────────────────────────────────────────

def _audit_logger(config: EngineConfig):
    from mcpexec.audit.logger import AuditLogger

    return AuditLogger.from_config(config)


@cli.command()
@click.option("--session", "session_id", default=None)
@click.option("--user", "user_id", default=None)
@click.option("--risk", type=click.Choice([r.value for r in RiskLevel]), default=None)
@click.option("--outcome", type=click.Choice([o.value for o in Outcome]), default=None)
@click.option("--limit", type=int, default=50, show_default=True)
@click.option("--json-output", is_flag=True, help="Output as JSON")
@click.pass_context
def audit(
    ctx: click.Context,
    session_id: str | None,
    user_id: str | None,
    risk: str | None,
    outcome: str | None,
    limit: int,
    json_output: bool,
) -> None:
    """View audit entries."""
    audit_log = _audit_logger(_config(ctx))
    flt = AuditFilter(session_id=session_id, user_id=user_id, risk_level=risk, outcome=outcome, limit=limit)
    try:
        entries = asyncio.run(audit_log.query(flt))
    finally:
        audit_log.close()

    if json_output:
        click.echo(json.dumps([e.model_dump(mode="json") for e in entries], indent=2))
        return
    if not entries:
        console.print("  No audit entries found.")
        return
    table = Table("#", "Timestamp", "Session", "Outcome", "Risk", "Sandbox", "ms", "Hash")
    for e in entries:
        risk_cell = f"[{RISK_STYLES[e.risk_level]}]{e.risk_level.value}[/]" if e.risk_level else "-"
        table.add_row(
            str(e.id), e.timestamp.isoformat(timespec="seconds"), e.session_id, e.outcome.value, risk_cell,
            e.sandbox_kind.value if e.sandbox_kind else "-", str(e.duration_ms), e.hash[:12],
        )
    console.print(table)


@cli.command()
@click.pass_context
def verify(ctx: click.Context) -> None:
    """Verify the audit hash chain."""
    audit_log = _audit_logger(_config(ctx))
    try:
        ok, message = asyncio.run(audit_log.verify_integrity())
    finally:
        audit_log.close()
    _print_header("Audit Chain Verification")
    console.print(f"  [{'green' if ok else 'bold red'}]{message}[/]")
    if not ok:
        sys.exit(1)


@cli.command()
@click.option("--since", type=click.DateTime(), default=None)
@click.option("--until", type=click.DateTime(), default=None)
@click.option("--json-output", is_flag=True, help="Output as JSON")
@click.pass_context
def report(ctx: click.Context, since: datetime | None, until: datetime | None, json_output: bool) -> None:
    """Compliance report over a time range."""
    audit_log = _audit_logger(_config(ctx))
    try:
        result = asyncio.run(audit_log.report(since, until))
    finally:
        audit_log.close()

    if json_output:
        click.echo(result.model_dump_json(indent=2))
        return
    _print_header("Compliance Report")
    console.print(f"  Entries:   {result.total_entries}")
    console.print(f"  Outcomes:  {', '.join(f'{k}={v}' for k, v in sorted(result.by_outcome.items())) or '-'}")
    console.print(f"  Risk:      {', '.join(f'{k}={v}' for k, v in sorted(result.by_risk.items())) or '-'}")
    console.print(
        f"  Approvals: {result.approvals_granted} granted ({result.approvals_auto} auto), "
        f"{result.approvals_denied} denied"
    )
    console.print(f"  Network:   {result.network_requests} allowed, {result.network_denied} denied")
    console.print(f"  PII:       {result.pii_tokenized} values tokenized")
    console.print(f"  Chain:     {'intact' if result.chain_intact else '[bold red]BROKEN[/]'}")
    for flag in ("gdpr", "soc2", "hipaa"):
        ok = getattr(result, flag)
        console.print(f"  {flag.upper():9s}  {'[green]pass[/]' if ok else '[red]fail[/]'}")
    console.print(f"  High/critical entries: {len(result.high_risk_entries)}")


@cli.command()
@click.pass_context
def compact(ctx: click.Context) -> None:
    """Delete audit entries older than the retention window."""
    config = _config(ctx)
    audit_log = _audit_logger(config)
    try:
        deleted = asyncio.run(audit_log.compact())
    finally:
        audit_log.close()
    console.print(f"  Removed {deleted} entries older than {config.audit_retention_days} days")


# ─── Operations ──────────────────────────────────────────────

@cli.command()
@click.option("--emergency", is_flag=True, help="Remove every sandbox container regardless of age")
@click.pass_context
def cleanup(ctx: click.Context, emergency: bool) -> None:
    """Remove leftover sandbox containers."""
    from mcpexec.sandbox.cleanup import ContainerCleanupJob

    sandbox = _config(ctx).sandbox
    job = ContainerCleanupJob(sandbox.docker_executable, sandbox.cleanup_max_age_hours)
    removed = asyncio.run(job.emergency_cleanup() if emergency else job.run_once())
    console.print(f"  Removed {len(removed)} containers")
    for name in removed:
        console.print(f"    {name}")


@cli.command()
@click.option("--host", default="127.0.0.1", help="Bind address")
@click.option("--port", default=8000, type=int, help="Port number")
@click.option("--reload", is_flag=True, help="Auto-reload on changes")
def serve(host: str, port: int, reload: bool) -> None:
    """Start the mcpexec API server."""
    import uvicorn

    _print_header("mcpexec API Server")
    console.print(f"  Binding: {host}:{port}")
    uvicorn.run("mcpexec.api.server:app", host=host, port=port, reload=reload)


@cli.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show engine status and sandbox readiness."""
    from mcpexec.sandbox.pool import SandboxPool

    config = _config(ctx)
    _print_header("mcpexec Status")
    console.print(f"  Version:        {__version__}")
    console.print(f"  Python:         {sys.version.split()[0]}")
    console.print(f"  Security level: {config.security.level.value}")
    console.print(f"  Audit:          {config.audit.backend} at {config.audit.path}")
    console.print(f"  Retention:      {config.audit_retention_days} days")
    console.print(f"  MCP servers:    {', '.join(config.mcp_servers) or 'none'}")

    health = asyncio.run(SandboxPool(config.sandbox).health())
    table = Table("Sandbox", "Ready", "Detail")
    for kind, info in health["kinds"].items():
        table.add_row(kind, "[green]yes[/]" if info["ready"] else "[red]no[/]", info["detail"])
    console.print(table)


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
