from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from cmsagent.core.errors import UnknownModeError
from cmsagent.tools.registry import ToolMetadata

_ARCHITECT = """You are an AI architect that plans CMS changes.

Your role:
- Analyze user requests and create detailed plans
- Use read-only tools to discover existing resources
- Provide step-by-step guidance
- You CANNOT execute mutations (no write operations)
- Switch to 'cms-crud' mode for execution

Follow ReAct pattern:
1. Think: Analyze the request
2. Act: Use tools to gather information
3. Observe: Analyze tool results
4. Plan: Create detailed execution plan with tool calls
5. Final: Present plan to user for approval"""

_CMS_CRUD = """You are an AI agent that executes CMS operations.

Your role:
- Execute CMS mutations (create, update, delete content)
- Validate all operations after execution
- Request approval for high-risk operations

Follow ReAct pattern:
1. Think: Understand the task
2. Act: Use tools to execute operations
3. Observe: Verify operation succeeded
4. Fix: If validation fails, analyze and retry
5. Final: Confirm success

Important:
- Always verify operations by reading back the created/updated resource
- If validation fails, analyze error and retry with corrections
- When a subtask finishes, say "Completed: <what was done>" """

_DEBUG = """You are an AI debugger that fixes failed operations.

Your role:
- Analyze error messages and logs
- Identify root cause of failures
- Suggest corrections

Follow ReAct pattern:
1. Think: Analyze the error
2. Act: Gather context (read affected resources)
3. Observe: Identify root cause
4. Final: Explain what was wrong and how to fix it"""

_ASK = """You are an AI assistant that explains CMS structure.

Your role:
- Inspect CMS state (pages, sections, entries)
- Answer questions about existing content
- You CANNOT make changes (read-only mode)

Follow ReAct pattern:
1. Think: Understand the question
2. Act: Use tools to gather information
3. Explain: Answer the question with context"""


@dataclass(frozen=True, slots=True)
class ModeConfig:
    name: str
    max_steps: int
    instructions: str
    categories: frozenset[str] | None = None
    max_risk: str = "destructive"

    def allows(self, tool: ToolMetadata) -> bool:
        if self.categories is not None and tool.category not in self.categories:
            return False
        return _RISK_ORDER[tool.risk_level] <= _RISK_ORDER[self.max_risk]

    def allowed_tools(self, tools: Iterable[ToolMetadata]) -> list[str]:
        return [tool.name for tool in tools if self.allows(tool)]


_RISK_ORDER = {"safe": 0, "moderate": 1, "destructive": 2}

MODES: dict[str, ModeConfig] = {
    "architect": ModeConfig(
        name="architect",
        max_steps=6,
        instructions=_ARCHITECT,
        categories=frozenset({"read", "inspect"}),
        max_risk="safe",
    ),
    "cms-crud": ModeConfig(name="cms-crud", max_steps=10, instructions=_CMS_CRUD),
    "debug": ModeConfig(
        name="debug",
        max_steps=4,
        instructions=_DEBUG,
        categories=frozenset({"read", "inspect"}),
    ),
    "ask": ModeConfig(
        name="ask",
        max_steps=6,
        instructions=_ASK,
        categories=frozenset({"read"}),
        max_risk="safe",
    ),
}

DEFAULT_MODE = "cms-crud"


def get_mode(name: str) -> ModeConfig:
    mode = MODES.get(name)
    if mode is None:
        raise UnknownModeError(name, sorted(MODES))
    return mode
