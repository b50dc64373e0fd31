from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, List

from cmsagent.backends.registry import ToolDefinition

ToolHandler = Callable[..., Any]

RISK_LEVELS = ("safe", "moderate", "destructive")


@dataclass(slots=True)
class ToolMetadata:
    name: str
    description: str
    phrases: List[str] = field(default_factory=list)
    category: str = "general"
    related_tools: List[str] = field(default_factory=list)
    risk_level: str = "safe"
    requires_confirmation: bool = False

    def __post_init__(self) -> None:
        if self.risk_level not in RISK_LEVELS:
            raise ValueError(f"risk_level must be one of {', '.join(RISK_LEVELS)}")


@dataclass(slots=True)
class ToolSpec:
    name: str
    handler: ToolHandler
    metadata: ToolMetadata
    input_schema: dict[str, Any] = field(default_factory=lambda: {"type": "object"})

    def definition(self) -> ToolDefinition:
        return ToolDefinition(
            name=self.name,
            description=self.metadata.description,
            parameters=self.input_schema,
        )


class ToolRegistry:
    def __init__(self) -> None:
        self._tools: dict[str, ToolSpec] = {}

    def register(
        self,
        name: str,
        handler: ToolHandler,
        metadata: ToolMetadata | None = None,
        input_schema: dict[str, Any] | None = None,
    ) -> ToolSpec:
        if name in self._tools:
            raise ValueError(f"Tool '{name}' is already registered")
        spec = ToolSpec(
            name=name,
            handler=handler,
            metadata=metadata or ToolMetadata(name=name, description=name),
            input_schema=input_schema or {"type": "object"},
        )
        self._tools[name] = spec
        return spec

    def get(self, name: str) -> ToolSpec | None:
        return self._tools.get(name)

    def list_tools(self) -> list[ToolSpec]:
        return list(self._tools.values())

    def metadata(self) -> list[ToolMetadata]:
        return [spec.metadata for spec in self._tools.values()]

    def definitions(self, names: list[str] | None = None) -> list[ToolDefinition]:
        if names is None:
            return [spec.definition() for spec in self._tools.values()]
        return [self._tools[name].definition() for name in names if name in self._tools]
