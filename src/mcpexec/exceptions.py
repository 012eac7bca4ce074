"""
mcpexec Custom Exceptions

Structured exception hierarchy for the execution engine.
All engine-specific exceptions inherit from MCPExecError and carry a
stable ``kind`` string plus a one-sentence ``remediation`` that is
surfaced in the result envelope.

Exception hierarchy:
    MCPExecError
    +-- SchemaError                (invalid tool descriptor)
    +-- TemplateError              (missing/corrupt code generator template)
    +-- NotFoundError              (unknown tool in the index)
    +-- ValidationBlockedError     (critical validator violation)
    +-- ApprovalDeniedError        (user rejected or approval timed out)
    +-- PolicyViolationError       (network egress refused)
    +-- SandboxError
    |   +-- SandboxStartupError    (image/VM/runtime not ready)
    |   +-- SandboxTimeoutError    (wall clock exceeded, SIGKILL)
    |   +-- SandboxOOMError        (memory limit exceeded)
    |   +-- SandboxCrashedError    (abnormal termination)
    |       +-- ProgramFailedError (generated program exited non-zero)
    +-- SessionStateError          (illegal sandbox state transition)
    +-- OverloadedError            (sandbox pool saturated)
    +-- ConfigError                (invalid configuration document)
    +-- InternalError              (bug; never leaks implementation detail)
    +-- ToolInvocationError        (external tool call failed; seen by the program)
    +-- MCPServerError             (configured MCP server could not be started)
"""

from __future__ import annotations

from typing import Any


class MCPExecError(Exception):
    """Base exception for all engine errors."""

    kind = "Internal"
    remediation = "Retry the request; report the session id if the problem persists."

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "message": str(self),
            "remediation": self.remediation,
        }


class SchemaError(MCPExecError):
    """Raised when a tool descriptor is invalid.

    Fatal for indexing, recoverable for execution (the tool is skipped).
    """

    kind = "SchemaError"
    remediation = "Fix the tool descriptor so its schema is self-contained and acyclic."

    def __init__(self, tool_name: str, message: str, details: dict | None = None):
        super().__init__(
            f"Invalid schema for tool '{tool_name}': {message}",
            details={"tool_name": tool_name, **(details or {})},
        )
        self.tool_name = tool_name


class TemplateError(MCPExecError):
    """Raised when a code generator template is missing or fails to render."""

    kind = "TemplateError"
    remediation = "Reinstall the package or restore the code generation templates."

    def __init__(self, template_name: str, message: str, details: dict | None = None):
        super().__init__(
            f"Template '{template_name}' error: {message}",
            details={"template_name": template_name, **(details or {})},
        )
        self.template_name = template_name


class NotFoundError(MCPExecError):
    """Raised when a tool lookup names an unknown descriptor."""

    kind = "NotFound"
    remediation = "Index the tool's server directory or correct the tool name."

    def __init__(self, server: str, name: str, message: str | None = None):
        super().__init__(
            message or f"Tool '{server}/{name}' is not in the index",
            details={"server": server, "name": name},
        )
        self.server = server
        self.name = name


class ValidationBlockedError(MCPExecError):
    """Raised when the validator reports a critical violation."""

    kind = "ValidationBlocked"
    remediation = "Remove the flagged construct from the program and resubmit."

    def __init__(self, message: str, violations: list[str] | None = None, details: dict | None = None):
        super().__init__(
            message,
            details={"violations": violations or [], **(details or {})},
        )
        self.violations = violations or []


class ApprovalDeniedError(MCPExecError):
    """Raised when a required approval was rejected or timed out."""

    kind = "ApprovalDenied"
    remediation = "Ask an operator to approve the action or lower its risk."

    def __init__(self, message: str, reason: str = "rejected", details: dict | None = None):
        super().__init__(message, details={"reason": reason, **(details or {})})
        self.reason = reason


class PolicyViolationError(MCPExecError):
    """Raised host-side when the network policy refuses egress.

    Inside the sandbox this surfaces as an ordinary network error.
    """

    kind = "PolicyViolation"
    remediation = "Add the host to allowed_domains or reduce the request rate."

    def __init__(self, host: str, reason: str, details: dict | None = None):
        super().__init__(
            f"Egress to '{host}' refused: {reason}",
            details={"host": host, "reason": reason, **(details or {})},
        )
        self.host = host
        self.reason = reason


class SandboxError(MCPExecError):
    """Base exception for sandbox failures.

    ``result`` carries the partial RunResult when one was collected.
    """

    def __init__(self, message: str, result: Any = None, details: dict | None = None):
        super().__init__(message, details=details)
        self.result = result


class SandboxStartupError(SandboxError):
    """Raised when the sandbox runtime (image, VM, interpreter) is not ready."""

    kind = "SandboxStartupFailed"
    remediation = "Install or start the sandbox runtime, or choose another security level."


class SandboxTimeoutError(SandboxError):
    """Raised when the wall-clock timeout expired and the sandbox was killed."""

    kind = "Timeout"
    remediation = "Raise wall_timeout or make the program terminate sooner."


class SandboxOOMError(SandboxError):
    """Raised when the program exceeded its memory limit."""

    kind = "OOM"
    remediation = "Raise memory_limit or reduce the program's memory use."


class SandboxCrashedError(SandboxError):
    """Raised when the sandbox terminated abnormally (signal, lost channel)."""

    kind = "Crashed"
    remediation = "Inspect stderr in the audit log and fix the program."


class ProgramFailedError(SandboxCrashedError):
    """Raised when the generated program raised or exited non-zero."""

    kind = "ProgramFailed"
    remediation = "Fix the exception reported in stderr and resubmit."


class SessionStateError(MCPExecError):
    """Raised on an illegal sandbox session state transition."""

    def __init__(self, session_id: str, current: str, target: str):
        super().__init__(
            f"Session '{session_id}' cannot move from {current} to {target}",
            details={"session_id": session_id, "current": current, "target": target},
        )


class OverloadedError(MCPExecError):
    """Raised when the sandbox pool queue is full."""

    kind = "Overloaded"
    remediation = "Retry later or raise sandbox.pool_size / sandbox.queue_size."

    def __init__(self, in_use: int, queued: int):
        super().__init__(
            f"Sandbox pool saturated ({in_use} in use, {queued} queued)",
            details={"in_use": in_use, "queued": queued},
        )


class ConfigError(MCPExecError):
    """Raised when the configuration document is invalid."""

    kind = "ConfigError"
    remediation = "Correct the configuration document and reload."


class InternalError(MCPExecError):
    """Raised for unexpected failures. The message never carries internals."""

    kind = "Internal"


class ToolInvocationError(MCPExecError):
    """Raised when an external tool call made from the sandbox fails.

    Never reaches the envelope directly: the program sees it as a ToolError.
    """

    kind = "ToolError"
    remediation = "Check the tool arguments and the tool server's availability."

    def __init__(self, tool_key: str, message: str):
        super().__init__(f"{tool_key}: {message}", details={"tool": tool_key})
        self.tool_key = tool_key
        self.reason = message


class MCPServerError(MCPExecError):
    """Raised when a configured MCP server cannot be started or initialized."""

    kind = "MCPServerError"
    remediation = "Check the server command in mcp_servers and run it by hand to see its output."

    def __init__(self, server: str, message: str):
        super().__init__(f"MCP server '{server}': {message}", details={"server": server})
        self.server = server
