"""Language-model backend implementations."""

from .fake import FakeBackend, tool_call
from .openai_compat import OpenAICompatBackend
from .registry import (
    ModelBackend,
    ModelRequest,
    ModelResponse,
    ToolDefinition,
    get_backend,
    list_backends,
    register_backend,
)

__all__ = [
    "FakeBackend",
    "ModelBackend",
    "ModelRequest",
    "ModelResponse",
    "OpenAICompatBackend",
    "ToolDefinition",
    "get_backend",
    "list_backends",
    "register_backend",
    "tool_call",
]
