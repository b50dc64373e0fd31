from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, List, Protocol

from cmsagent.core.types import Message, ToolCallPart


@dataclass(slots=True)
class ToolDefinition:
    name: str
    description: str
    parameters: dict[str, Any] = field(default_factory=lambda: {"type": "object"})


@dataclass(slots=True)
class ModelRequest:
    system_prompt: str
    messages: List[Message]
    tools: List[ToolDefinition] = field(default_factory=list)
    step_limit: int | None = None
    model: str | None = None
    max_output_tokens: int | None = None
    params: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ModelResponse:
    text: str = ""
    tool_calls: List[ToolCallPart] = field(default_factory=list)
    finish_reason: str = "stop"
    usage: dict[str, int] = field(default_factory=dict)


class ModelBackend(Protocol):
    async def generate(self, request: ModelRequest) -> ModelResponse:
        ...


_BACKENDS: dict[str, Callable[..., ModelBackend]] = {}


def register_backend(name: str, factory: Callable[..., ModelBackend]) -> None:
    key = name.lower()
    if key in _BACKENDS:
        raise ValueError(f"Backend '{name}' is already registered")
    _BACKENDS[key] = factory


def get_backend(name: str, **kwargs: Any) -> ModelBackend:
    key = name.lower()
    factory = _BACKENDS.get(key)
    if factory is None:
        available = ", ".join(list_backends())
        raise ValueError(f"Unknown backend '{name}'. Available backends: {available}")
    return factory(**kwargs)


def list_backends() -> list[str]:
    return sorted(_BACKENDS)
