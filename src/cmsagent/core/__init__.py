"""Core data contracts and utilities."""

from .errors import (
    AgentError,
    CheckpointError,
    CheckpointNotFoundError,
    ModelCallError,
    UnknownModeError,
)
from .tracing import NullTraceWriter, TraceEvent, TraceWriter
from .types import (
    Checkpoint,
    MemoryState,
    Message,
    Part,
    Subgoal,
    TextPart,
    ToolCallPart,
    ToolResultPart,
)

__all__ = [
    "AgentError",
    "Checkpoint",
    "CheckpointError",
    "CheckpointNotFoundError",
    "MemoryState",
    "Message",
    "ModelCallError",
    "NullTraceWriter",
    "Part",
    "Subgoal",
    "TextPart",
    "ToolCallPart",
    "ToolResultPart",
    "TraceEvent",
    "TraceWriter",
    "UnknownModeError",
]
