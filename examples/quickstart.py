"""mcpexec quickstart: run a generated tool program in a process sandbox."""

import asyncio

from mcpexec import ExecutionEngine, ExecutionOptions
from mcpexec.core.models import ToolDescriptor
from mcpexec.discovery.index import ToolIndex

SUM = ToolDescriptor(
    server="math",
    name="sum",
    description="Add two numbers and return the total",
    input_schema={
        "type": "object",
        "properties": {"a": {"type": "number"}, "b": {"type": "number"}},
        "required": ["a", "b"],
    },
    output_schema={"type": "number"},
)


async def invoke(descriptor, arguments):
    return arguments["a"] + arguments["b"]


async def main():
    index = ToolIndex()
    index.register(SUM)
    async with ExecutionEngine(index=index, tool_invoker=invoke) as engine:
        result = await engine.execute(
            "add 2 and 3",
            "python",
            ExecutionOptions(security_level="moderate"),
            inputs={"a": 2, "b": 3},
        )
    print(result.summary())


asyncio.run(main())
