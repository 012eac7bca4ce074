"""
Host side of the sandbox stdio protocol.

Line-delimited JSON over the sandbox's stdin/stdout:

  host -> sandbox   bundle   {source, inputs, nonce, workspace, filesystem_scope, output_limit}
  sandbox -> host   call     {type: "call", id, op: "tool" | "fetch", ..., nonce}
  host -> sandbox   reply    {type: "reply", id, ok, value | error, kind}
  sandbox -> host   result   {type: "result", ok, value, stdout, stderr, error, error_type, usage, nonce}

Lines without the run's nonce are treated as stray program output.
Failures of a call never raise into the host: they become ``reply``
errors that the sandboxed program observes as ToolError/NetworkError.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx

from mcpexec.exceptions import MCPExecError, PolicyViolationError
from mcpexec.logging import get_logger

logger = get_logger("mcpexec.sandbox.bridge")

STDERR_CHUNK = 65536


class BridgeHandler(Protocol):
    """What the sandbox may ask of the host."""

    async def call_tool(self, server: str, tool: str, arguments: dict[str, Any]) -> Any: ...

    async def fetch(self, url: str, method: str, headers: dict[str, str], body: str | None) -> dict[str, Any]: ...


class DenyAllHandler:
    """Handler for runs with no tools and no network."""

    async def call_tool(self, server: str, tool: str, arguments: dict[str, Any]) -> Any:
        raise MCPExecError(f"tool {server}/{tool} is not available in this run")

    async def fetch(self, url: str, method: str, headers: dict[str, str], body: str | None) -> dict[str, Any]:
        raise PolicyViolationError(url, "not_whitelisted")


@dataclass
class ChannelOutcome:
    """Everything the host learned from one sandbox conversation."""

    result: dict[str, Any] | None = None
    stray_stdout: list[str] = field(default_factory=list)
    stderr: bytearray = field(default_factory=bytearray)
    tool_calls: list[str] = field(default_factory=list)
    overflow: bool = False
    stray_bytes: int = 0


class StdioBridge:
    """Serves one sandbox process until its stdout closes."""

    def __init__(self, handler: BridgeHandler, nonce: str, output_limit: int, session_id: str | None = None):
        self.handler = handler
        self.nonce = nonce
        self.output_limit = output_limit
        self.session_id = session_id
        self.outcome = ChannelOutcome()

    async def serve(self, proc: asyncio.subprocess.Process, bundle: dict[str, Any]) -> ChannelOutcome:
        stderr_task = asyncio.create_task(self._drain_stderr(proc.stderr))
        try:
            await self._send(proc, bundle)
            while True:
                try:
                    line = await proc.stdout.readline()
                except (ValueError, asyncio.LimitOverrunError):
                    self.outcome.overflow = True
                    break
                if not line:
                    break
                message = self._parse(line)
                if message is None:
                    self._stray(line)
                elif message.get("type") == "call":
                    reply = await self._dispatch(message)
                    await self._send(proc, reply)
                elif message.get("type") == "result":
                    self.outcome.result = message
            if not self.outcome.overflow:
                await stderr_task
        finally:
            if not stderr_task.done():
                stderr_task.cancel()
        return self.outcome

    def _parse(self, line: bytes) -> dict[str, Any] | None:
        try:
            message = json.loads(line)
        except (json.JSONDecodeError, UnicodeDecodeError):
            return None
        if not isinstance(message, dict) or message.get("nonce") != self.nonce:
            return None
        return message

    def _stray(self, line: bytes) -> None:
        if self.outcome.stray_bytes <= self.output_limit:
            self.outcome.stray_stdout.append(line.decode("utf-8", errors="replace"))
        self.outcome.stray_bytes += len(line)

    async def _drain_stderr(self, stream: asyncio.StreamReader) -> None:
        while True:
            chunk = await stream.read(STDERR_CHUNK)
            if not chunk:
                return
            room = self.output_limit + 1 - len(self.outcome.stderr)
            if room > 0:
                self.outcome.stderr.extend(chunk[:room])

    async def _send(self, proc: asyncio.subprocess.Process, message: dict[str, Any]) -> None:
        try:
            proc.stdin.write((json.dumps(message, default=str) + "\n").encode())
            await proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            logger.debug("Sandbox closed its input channel", extra={"session_id": self.session_id})

    async def _dispatch(self, message: dict[str, Any]) -> dict[str, Any]:
        call_id = message.get("id")
        op = message.get("op")
        try:
            if op == "tool":
                server, tool = str(message.get("server")), str(message.get("tool"))
                self.outcome.tool_calls.append(f"{server}/{tool}")
                value = await self.handler.call_tool(server, tool, message.get("arguments") or {})
            elif op == "fetch":
                value = await self.handler.fetch(
                    str(message.get("url")),
                    str(message.get("method") or "GET"),
                    message.get("headers") or {},
                    message.get("body"),
                )
            else:
                return {"type": "reply", "id": call_id, "ok": False, "kind": "protocol", "error": f"unknown op {op!r}"}
        except PolicyViolationError as exc:
            return {"type": "reply", "id": call_id, "ok": False, "kind": "network", "error": str(exc)}
        except httpx.HTTPError as exc:
            return {"type": "reply", "id": call_id, "ok": False, "kind": "network", "error": f"{type(exc).__name__}: {exc}"}
        except MCPExecError as exc:
            return {"type": "reply", "id": call_id, "ok": False, "kind": "tool", "error": str(exc)}
        except Exception as exc:
            # Tool invoker failures are ordinary errors for the program
            logger.warning(
                "Tool call failed: %s", type(exc).__name__,
                extra={"session_id": self.session_id, "tool_name": message.get("tool")},
            )
            return {"type": "reply", "id": call_id, "ok": False, "kind": "tool", "error": f"{type(exc).__name__}: {exc}"}
        return {"type": "reply", "id": call_id, "ok": True, "value": value}
