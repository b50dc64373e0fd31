from __future__ import annotations

import inspect
from dataclasses import dataclass, field
from typing import Any

from cmsagent.core.types import ToolCallPart
from cmsagent.tools.registry import ToolRegistry
from cmsagent.tools.results import ToolErr, ToolOk, ToolResult


@dataclass(slots=True)
class ToolContext:
    session_id: str
    trace_id: str
    mode: str
    extras: dict[str, Any] = field(default_factory=dict)


def _wants_context(handler: Any) -> bool:
    params = inspect.signature(handler).parameters.values()
    positional = [
        param
        for param in params
        if param.kind in (param.POSITIONAL_ONLY, param.POSITIONAL_OR_KEYWORD)
    ]
    has_varargs = any(param.kind is param.VAR_POSITIONAL for param in params)
    return has_varargs or len(positional) >= 2


class ToolExecutor:
    """Runs one tool call and turns every outcome into a ToolOk or ToolErr."""

    def __init__(self, registry: ToolRegistry) -> None:
        self._registry = registry

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    async def execute(self, call: ToolCallPart, context: ToolContext) -> ToolResult:
        spec = self._registry.get(call.tool_name)
        if spec is None:
            return ToolErr(
                id=call.tool_call_id,
                tool=call.tool_name,
                error=f"Tool '{call.tool_name}' not found",
            )
        try:
            handler = spec.handler
            if _wants_context(handler):
                output = handler(call.input, context)
            else:
                output = handler(call.input)
            if inspect.isawaitable(output):
                output = await output
        except Exception as exc:  # noqa: BLE001
            return ToolErr(id=call.tool_call_id, tool=call.tool_name, error=str(exc) or repr(exc))
        return ToolOk(id=call.tool_call_id, tool=call.tool_name, output=output)

    def list_tools(self) -> list[str]:
        return [spec.name for spec in self._registry.list_tools()]
