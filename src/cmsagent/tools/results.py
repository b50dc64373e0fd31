from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Union

from cmsagent.core.types import ToolResultPart


@dataclass(slots=True)
class ToolOk:
    id: str
    tool: str
    output: Any

    @property
    def ok(self) -> bool:
        return True

    def to_part(self) -> ToolResultPart:
        return ToolResultPart(tool_call_id=self.id, tool_name=self.tool, output=self.output)


@dataclass(slots=True)
class ToolErr:
    id: str
    tool: str
    error: str
    observation: str = ""
    # False for failures that never reached the tool (open circuit, denied approval).
    executed: bool = True

    @property
    def ok(self) -> bool:
        return False

    def to_part(self) -> ToolResultPart:
        return ToolResultPart(
            tool_call_id=self.id,
            tool_name=self.tool,
            output=self.observation or self.error,
            is_error=True,
        )


ToolResult = Union[ToolOk, ToolErr]


def result_to_dict(result: ToolResult) -> dict[str, Any]:
    if isinstance(result, ToolOk):
        return {"id": result.id, "tool": result.tool, "ok": True, "output": result.output}
    return {
        "id": result.id,
        "tool": result.tool,
        "ok": False,
        "error": result.error,
        "executed": result.executed,
    }
