"""
mcpexec - Sandboxed Code Execution for MCP Tool Catalogs

Instead of forwarding tool calls one by one, the engine renders a small
typed code surface for the relevant tools, validates the program the
model writes against it, runs it in an isolated sandbox and returns a
compressed result.

Usage:
    from mcpexec import ExecutionEngine, ExecutionOptions

    engine = ExecutionEngine(tool_invoker=mcp_client.call_tool)
    result = await engine.execute(
        "add 2 and 3",
        "python",
        ExecutionOptions(security_level="moderate"),
        inputs={"a": 2, "b": 3},
    )
    print(result.summary())
"""

__version__ = "1.0.0"

from mcpexec.audit.logger import AuditLogger
from mcpexec.codegen.generator import CodeGenerator
from mcpexec.config import EngineConfig, load_config
from mcpexec.core.models import (
    AuditEntry,
    AuditFilter,
    ComplianceReport,
    ExecutionOptions,
    ExecutionResult,
    GeneratedArtifact,
    Language,
    Outcome,
    RiskLevel,
    SecurityLevel,
    ToolDescriptor,
    ValidationReport,
)
from mcpexec.discovery.index import ToolIndex
from mcpexec.engine.orchestrator import ExecutionEngine
from mcpexec.exceptions import MCPExecError
from mcpexec.security.approval import ApprovalGate, ConsoleApprover
from mcpexec.security.pii import PIITokenizer
from mcpexec.security.validator import CodeValidator

__all__ = [
    # Main API
    "ExecutionEngine",
    "__version__",
    # Configuration
    "EngineConfig",
    "load_config",
    # Models
    "AuditEntry",
    "AuditFilter",
    "ComplianceReport",
    "ExecutionOptions",
    "ExecutionResult",
    "GeneratedArtifact",
    "Language",
    "Outcome",
    "RiskLevel",
    "SecurityLevel",
    "ToolDescriptor",
    "ValidationReport",
    # Components
    "AuditLogger",
    "ApprovalGate",
    "CodeGenerator",
    "CodeValidator",
    "ConsoleApprover",
    "PIITokenizer",
    "ToolIndex",
    # Errors
    "MCPExecError",
]
