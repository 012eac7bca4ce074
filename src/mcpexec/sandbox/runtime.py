"""
Interpreter bootstraps for the sandboxed runtimes.

Both bootstraps read the input bundle (first stdin line) before running
anything, keep the assembled program in memory, and leave stdin/stdout
to the bridge protocol.
"""

from __future__ import annotations

import math

from mcpexec.core.models import FilesystemScope, ResourceLimits

# Runs as ``python -I -S -B -c PYTHON_BOOTSTRAP``: isolated mode, no site, no bytecode.
PYTHON_BOOTSTRAP = (
    "import json, sys\n"
    "_bundle = json.loads(sys.stdin.readline())\n"
    "_code = compile(_bundle.pop('source'), '<program>', 'exec')\n"
    "exec(_code, {'__name__': '__sandbox__', '__bundle__': _bundle, '__builtins__': __builtins__})\n"
)

# Written to the runtime directory and run by ``deno run``; the program is
# imported from a data: URL so it never touches the disk.
TYPESCRIPT_BOOTSTRAP = """\
const decoder = new TextDecoder();
const reader = Deno.stdin.readable.getReader();
let buffered = "";

async function readLine() {
  while (true) {
    const index = buffered.indexOf("\\n");
    if (index >= 0) {
      const line = buffered.slice(0, index);
      buffered = buffered.slice(index + 1);
      return line;
    }
    const { value, done } = await reader.read();
    if (done) {
      if (!buffered.length) return null;
      const rest = buffered;
      buffered = "";
      return rest;
    }
    buffered += decoder.decode(value, { stream: true });
  }
}

function toBase64(text) {
  const bytes = new TextEncoder().encode(text);
  let binary = "";
  for (let i = 0; i < bytes.length; i += 0x8000) {
    binary += String.fromCharCode(...bytes.subarray(i, i + 0x8000));
  }
  return btoa(binary);
}

const bundle = JSON.parse(await readLine());
const source = bundle.source;
delete bundle.source;
globalThis.__bundle__ = bundle;
globalThis.__readLine__ = readLine;
await import(`data:application/typescript;base64,${toBase64(source)}`);
"""

BOOTSTRAP_FILENAME = "bootstrap.mjs"


def python_argv(executable: str) -> list[str]:
    return [executable, "-I", "-S", "-B", "-c", PYTHON_BOOTSTRAP]


def deno_argv(
    executable: str,
    bootstrap_path: str,
    limits: ResourceLimits,
    scope: FilesystemScope,
    workspace: str | None,
) -> list[str]:
    heap_mb = max(16, math.floor(limits.memory_bytes / (1024 * 1024) * 0.8))
    argv = [
        executable,
        "run",
        "--no-prompt",
        "--no-remote",
        "--no-config",
        "--quiet",
        f"--v8-flags=--max-old-space-size={heap_mb}",
    ]
    if scope == FilesystemScope.FULL:
        argv += ["--allow-read", "--allow-write"]
    elif workspace and scope == FilesystemScope.WORKSPACE_ONLY:
        argv += [f"--allow-read={workspace}", f"--allow-write={workspace}"]
    elif workspace and scope == FilesystemScope.READ_ONLY:
        argv += [f"--allow-read={workspace}"]
    argv.append(bootstrap_path)
    return argv


def sandbox_env(home: str, deno_dir: str | None = None) -> dict[str, str]:
    """Clean environment: nothing from the host leaks in."""
    env = {
        "PATH": "/usr/local/bin:/usr/bin:/bin",
        "HOME": home,
        "LANG": "C.UTF-8",
        "PYTHONIOENCODING": "utf-8",
        "NO_COLOR": "1",
    }
    if deno_dir:
        env["DENO_DIR"] = deno_dir
        env["DENO_NO_UPDATE_CHECK"] = "1"
    return env
