"""Tool registry, executor, and the demo CMS catalogue."""

from .demo import DemoCms, build_demo_registry
from .executor import ToolContext, ToolExecutor
from .registry import ToolMetadata, ToolRegistry, ToolSpec
from .results import ToolErr, ToolOk, ToolResult

__all__ = [
    "DemoCms",
    "ToolContext",
    "ToolErr",
    "ToolExecutor",
    "ToolMetadata",
    "ToolOk",
    "ToolRegistry",
    "ToolResult",
    "ToolSpec",
    "build_demo_registry",
]
