from __future__ import annotations

import asyncio

from cmsagent.core.types import ToolCallPart
from cmsagent.tools.executor import ToolContext, ToolExecutor
from cmsagent.tools.registry import ToolRegistry

CONTEXT = ToolContext(session_id="s1", trace_id="t1", mode="cms-crud")


def _call(tool: str, args: dict | None = None) -> ToolCallPart:
    return ToolCallPart(tool_call_id="t1", tool_name=tool, input=args or {})


def test_executor_unknown_tool_returns_error() -> None:
    executor = ToolExecutor(ToolRegistry())

    result = asyncio.run(executor.execute(_call("wipeDatabase"), CONTEXT))

    assert result.ok is False
    assert result.error == "Tool 'wipeDatabase' not found"


def test_executor_wraps_handler_exceptions() -> None:
    registry = ToolRegistry()

    def handler(args: dict) -> dict:
        raise ValueError("Validation failed: slug is a required field")

    registry.register("createPage", handler)

    result = asyncio.run(ToolExecutor(registry).execute(_call("createPage"), CONTEXT))

    assert result.ok is False
    assert result.error == "Validation failed: slug is a required field"
    part = result.to_part()
    assert part.is_error
    assert part.tool_call_id == "t1"


def test_executor_awaits_async_handlers_and_passes_context() -> None:
    registry = ToolRegistry()
    seen: list[ToolContext] = []

    async def handler(args: dict, context: ToolContext) -> dict:
        seen.append(context)
        return {"echo": args["value"]}

    registry.register("echo", handler)

    result = asyncio.run(ToolExecutor(registry).execute(_call("echo", {"value": 3}), CONTEXT))

    assert result.ok is True
    assert result.output == {"echo": 3}
    assert seen == [CONTEXT]
    assert result.to_part().output == {"echo": 3}


def test_executor_lists_tools() -> None:
    registry = ToolRegistry()
    registry.register("getPage", lambda args: args)

    assert ToolExecutor(registry).list_tools() == ["getPage"]
